"""
Session State Data Model

In-memory state of one learning session, reconstructed from persistence on
resume. Answers and evaluations are sparse maps keyed by question index;
never assume they are filled contiguously.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from adaptive_math_tutor.learning_models import Evaluation, Question, StudentContext, TopicContext

MAX_RETRIES = 2


class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class SessionPhase(Enum):
    """Progression state machine."""
    INITIALIZING = "initializing"
    LOADING_QUESTIONS = "loading_questions"
    ANSWERING = "answering"
    EVALUATING = "evaluating"
    SHOWING_FEEDBACK = "showing_feedback"
    COMPLETED = "completed"


@dataclass
class SessionState:
    """State of one learning session."""
    session_id: str
    student_id: str
    topic_id: str
    questions: List[Question] = field(default_factory=list)
    current_question_index: int = 0
    # Review pointer, always <= current_question_index
    viewing_question_index: int = 0
    reviewing: bool = False
    answers: Dict[int, str] = field(default_factory=dict)
    evaluations: Dict[int, Evaluation] = field(default_factory=dict)
    retry_count: int = 0
    status: SessionStatus = SessionStatus.IN_PROGRESS
    phase: SessionPhase = SessionPhase.INITIALIZING
    # Counts from earlier batches of the same session
    carried_attempted: int = 0
    carried_correct: int = 0
    # Stamp of the current batch snapshot; interaction rows of this batch are not older
    batch_started_at: Optional[str] = None
    # Oracle context, rebuilt lazily after resume
    student_context: Optional[StudentContext] = None
    topic: Optional[TopicContext] = None
    started_at: datetime = field(default_factory=datetime.now)
    last_updated: datetime = field(default_factory=datetime.now)

    @property
    def current_question(self) -> Optional[Question]:
        if 0 <= self.current_question_index < len(self.questions):
            return self.questions[self.current_question_index]
        return None

    @property
    def batch_exhausted(self) -> bool:
        return self.current_question_index >= len(self.questions)

    @property
    def current_evaluation(self) -> Optional[Evaluation]:
        return self.evaluations.get(self.current_question_index)

    def can_retry(self) -> bool:
        evaluation = self.current_evaluation
        return (
            self.phase == SessionPhase.SHOWING_FEEDBACK
            and evaluation is not None
            and not evaluation.is_correct
            and self.retry_count < MAX_RETRIES
        )

    def is_resolved(self, index: int) -> bool:
        """
        Whether the canonical answer for a question may be shown.

        Earlier questions are always resolved; the current one only after a
        correct answer or once its retries are used up.
        """
        if index < self.current_question_index:
            return True
        if index > self.current_question_index:
            return False
        evaluation = self.evaluations.get(index)
        if evaluation is None:
            return False
        return evaluation.is_correct or self.retry_count >= MAX_RETRIES

    def can_advance(self) -> bool:
        evaluation = self.current_evaluation
        if self.phase != SessionPhase.SHOWING_FEEDBACK or evaluation is None:
            return False
        return evaluation.is_correct or self.retry_count >= MAX_RETRIES

    def attempted_count(self) -> int:
        return self.carried_attempted + len(self.evaluations)

    def correct_count(self) -> int:
        return self.carried_correct + sum(1 for e in self.evaluations.values() if e.is_correct)

    def touch(self):
        self.last_updated = datetime.now()

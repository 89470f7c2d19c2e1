"""
Session Progression Engine

Drives one learning session through its phases:

    initializing -> loading_questions -> answering -> evaluating
        -> showing_feedback -> (retry) answering
                            -> (next)  answering | completed

Review mode is orthogonal: it moves the viewing pointer only and never
touches the current question index.

The engine holds no per-session state itself; every operation takes the
SessionState it acts on. Callers must serialize calls for the same session
(see SessionManager).
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional

from adaptive_math_tutor.answer_matcher import QuickCheck, quick_check
from adaptive_math_tutor.badges import evaluate_badges
from adaptive_math_tutor.config import TutorConfig
from adaptive_math_tutor.difficulty_policy import DifficultyPolicy, DifficultyRecommendation
from adaptive_math_tutor.errors import (
    ChatFailure,
    EvaluationFailure,
    GenerationFailure,
    InvalidTransition,
)
from adaptive_math_tutor.learning_models import (
    ConversationMessage,
    ConversationRole,
    Evaluation,
    Question,
    SkillLevel,
    StudentContext,
    StudentProgressRecord,
)
from adaptive_math_tutor.persistence import InteractionRecord, Persistence
from adaptive_math_tutor.question_oracle import QuestionOracle
from adaptive_math_tutor.score_aggregator import BatchResult, ScoreAggregator
from adaptive_math_tutor.session_state import (
    SessionPhase,
    SessionState,
    SessionStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class SubmissionResult:
    """Outcome of submitting an answer."""
    evaluation: Evaluation
    quick_check: QuickCheck
    is_fallback: bool
    can_retry: bool
    can_advance: bool


@dataclass
class ReviewView:
    """A question shown in review mode."""
    index: int
    question: Question
    answer: Optional[str]
    evaluation: Optional[Evaluation]
    is_current: bool


@dataclass
class CompletionSummary:
    """Everything produced when a session completes."""
    session_id: str
    questions_attempted: int
    questions_correct: int
    accuracy: int  # percent
    progress: StudentProgressRecord
    recommendation: DifficultyRecommendation
    badges: FrozenSet[str] = field(default_factory=frozenset)


@dataclass
class TutorReply:
    """A tutor-chat exchange about the current question."""
    question_index: int
    message: ConversationMessage
    reply: ConversationMessage


class SessionProgressionEngine:
    """
    Orchestrates learning sessions against the Persistence and QuestionOracle
    collaborators.
    """

    def __init__(
        self,
        persistence: Persistence,
        oracle: QuestionOracle,
        config: Optional[TutorConfig] = None,
        score_aggregator: Optional[ScoreAggregator] = None,
        difficulty_policy: Optional[DifficultyPolicy] = None
    ):
        self.persistence = persistence
        self.oracle = oracle
        self.config = config or TutorConfig()
        self.score_aggregator = score_aggregator or ScoreAggregator()
        self.difficulty_policy = difficulty_policy or DifficultyPolicy()

    # ==================== Guards ====================

    def _require_in_progress(self, state: SessionState, action: str):
        if state.status != SessionStatus.IN_PROGRESS:
            raise InvalidTransition(
                f"Cannot {action}: session is {state.status.value}",
                session_id=state.session_id,
                question_index=state.current_question_index
            )

    def _require_phase(self, state: SessionState, action: str, *phases: SessionPhase):
        self._require_in_progress(state, action)
        if state.phase not in phases:
            raise InvalidTransition(
                f"Cannot {action} while {state.phase.value}",
                session_id=state.session_id,
                question_index=state.current_question_index
            )

    # ==================== Start / Resume ====================

    async def start_session(
        self,
        student_id: str,
        topic_id: str,
        session_type: str = "guided_practice"
    ) -> SessionState:
        """Create a new session. The caller loads the first batch next."""
        topic = await self.persistence.get_topic(topic_id)
        row = await self.persistence.create_session(
            student_id,
            topic_id,
            session_type=session_type,
            llm_model=self.config.openai_model
        )
        logger.info(f"💾 [SessionEngine] Started session {row['id']} on '{topic.title}'")
        return SessionState(
            session_id=row["id"],
            student_id=student_id,
            topic_id=topic_id,
            topic=topic
        )

    async def resume_session(self, session_id: str) -> SessionState:
        """
        Rebuild a session from persisted rows.

        Questions come from the stored batch snapshot or, if there is none,
        from the interaction rows (their correct answers are not stored).
        The resume index is the first question without an evaluated
        interaction; when every question is evaluated it equals the batch
        length and the session goes back to initializing for a fresh batch.

        Raises:
            SessionNotFound: if the session does not exist
        """
        row = await self.persistence.load_session(session_id)
        interactions = await self.persistence.load_interactions(session_id)

        questions = self._questions_from_snapshot(row)
        if not questions and interactions:
            questions = [
                Question.from_dict({
                    "question_text": r.get("question_text"),
                    "question_type": r.get("question_type"),
                    "difficulty": r.get("difficulty_level"),
                    "correct_answer": "",
                })
                for r in interactions
            ]

        state = SessionState(
            session_id=row["id"],
            student_id=row["student_id"],
            topic_id=row["topic_id"],
            questions=questions,
            status=SessionStatus(row.get("status") or SessionStatus.IN_PROGRESS.value),
        )
        summary = row.get("performance_summary")
        if isinstance(summary, dict):
            state.batch_started_at = summary.get("batch_started_at")

        # Later rows (retries) win for the same question text
        latest_by_text: Dict[str, dict] = {}
        for interaction in interactions:
            latest_by_text[interaction.get("question_text")] = interaction

        resume_index = len(questions)
        for index, question in enumerate(questions):
            interaction = latest_by_text.get(question.text)
            evaluation = Evaluation.from_interaction(interaction) if interaction else None
            if evaluation is None:
                resume_index = index
                break
            state.answers[index] = interaction.get("student_answer") or ""
            state.evaluations[index] = evaluation

        batch_texts = {q.text for q in questions}
        for text, interaction in latest_by_text.items():
            if text not in batch_texts and interaction.get("is_correct") is not None:
                state.carried_attempted += 1
                state.carried_correct += 1 if interaction["is_correct"] else 0

        state.current_question_index = resume_index
        state.viewing_question_index = resume_index

        if state.status != SessionStatus.IN_PROGRESS:
            state.phase = SessionPhase.COMPLETED
        elif state.batch_exhausted:
            state.phase = SessionPhase.INITIALIZING
        else:
            state.phase = SessionPhase.ANSWERING

        logger.info(
            f"🔄 [SessionEngine] Resumed session {session_id} at question {resume_index}/{len(questions)} "
            f"({len(interactions)} interactions)"
        )
        return state

    async def find_resumable_session(self, student_id: str, topic_id: Optional[str] = None) -> Optional[dict]:
        """Latest in-progress session row for the student, if any."""
        return await self.persistence.find_current_session(student_id, topic_id)

    @staticmethod
    def _questions_from_snapshot(row: dict) -> List[Question]:
        summary = row.get("performance_summary")
        if isinstance(summary, dict) and isinstance(summary.get("questions"), list):
            return [Question.from_dict(q) for q in summary["questions"] if isinstance(q, dict)]
        return []

    # ==================== Question loading ====================

    async def build_student_context(self, state: SessionState) -> StudentContext:
        """Student context with the difficulty directive for the next batch."""
        progress = await self.persistence.get_progress(state.student_id, state.topic_id)
        accuracies = await self.persistence.load_recent_session_accuracies(
            state.student_id, state.topic_id, limit=DifficultyPolicy.RECENT_SESSION_WINDOW
        )
        student = await self.persistence.get_student(state.student_id) or {}

        skill_level = progress.skill_level if progress else SkillLevel.NOT_STARTED
        recommendation = self.difficulty_policy.adapt(
            skill_level,
            accuracies,
            progress.questions_attempted if progress else 0,
            progress.questions_correct if progress else 0
        )

        return StudentContext(
            student_id=state.student_id,
            first_name=student.get("first_name") or "",
            grade_level=student.get("grade_level") or "",
            curriculum_level=student.get("curriculum_level"),
            skill_level=recommendation.recommended_skill_level,
            recent_accuracy=recommendation.recent_accuracy or 0.0,
            adaptive_instruction=recommendation.instruction.value if recommendation.instruction else None,
            strengths=list(progress.strengths) if progress else [],
            weaknesses=list(progress.weaknesses) if progress else [],
        )

    async def load_questions(self, state: SessionState, count: Optional[int] = None) -> SessionState:
        """
        Fetch a new question batch from the oracle.

        Raises:
            GenerationFailure: no valid questions (after the oracle's own retry)
            InvalidTransition: not in initializing/loading_questions
        """
        self._require_phase(
            state, "load questions", SessionPhase.INITIALIZING, SessionPhase.LOADING_QUESTIONS
        )
        count = count or self.config.questions_per_batch
        state.phase = SessionPhase.LOADING_QUESTIONS

        if state.topic is None:
            state.topic = await self.persistence.get_topic(state.topic_id)
        state.student_context = await self.build_student_context(state)
        history = await self.persistence.load_learning_history(state.student_id, state.topic_id)

        try:
            questions = await asyncio.wait_for(
                self.oracle.generate_questions(state.student_context, state.topic, count, history),
                timeout=self.config.oracle_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.error(f"❌ [SessionEngine] Question generation timed out for session {state.session_id}")
            raise GenerationFailure("Question generation timed out", session_id=state.session_id)
        except GenerationFailure as e:
            e.session_id = state.session_id
            logger.error(f"❌ [SessionEngine] {e}")
            raise

        if not questions:
            raise GenerationFailure("Oracle returned no questions", session_id=state.session_id)

        self._fold_finished_batch(state)
        state.questions = list(questions)
        state.current_question_index = 0
        state.viewing_question_index = 0
        state.reviewing = False
        state.retry_count = 0
        state.phase = SessionPhase.ANSWERING
        state.touch()

        state.batch_started_at = await self.persistence.save_question_batch(state.session_id, state.questions)
        logger.info(
            f"📚 [SessionEngine] Loaded {len(questions)} questions for session {state.session_id} "
            f"(instruction={state.student_context.adaptive_instruction})"
        )
        return state

    @staticmethod
    def _fold_finished_batch(state: SessionState):
        state.carried_attempted += len(state.evaluations)
        state.carried_correct += sum(1 for e in state.evaluations.values() if e.is_correct)
        state.answers = {}
        state.evaluations = {}

    # ==================== Answering ====================

    def update_draft(self, state: SessionState, text: str):
        """Store an in-progress answer for the current question."""
        self._require_phase(state, "edit answer", SessionPhase.ANSWERING)
        state.answers[state.current_question_index] = text

    async def submit_answer(self, state: SessionState, answer: str) -> SubmissionResult:
        """
        Evaluate an answer to the current question.

        The quick check is a non-authoritative hint; the oracle's verdict is
        always used. A failed evaluation returns a fallback evaluation and
        puts the session back into answering so the student can resubmit.
        """
        self._require_phase(state, "submit an answer", SessionPhase.ANSWERING)
        if not answer or not answer.strip():
            raise ValueError("Answer cannot be empty")

        index = state.current_question_index
        question = state.questions[index]
        state.answers[index] = answer
        state.phase = SessionPhase.EVALUATING

        hint = quick_check(question.correct_answer, answer)
        if state.student_context is None:
            state.student_context = await self.build_student_context(state)

        try:
            evaluation = await asyncio.wait_for(
                self.oracle.evaluate_answer(question, answer, state.student_context),
                timeout=self.config.oracle_timeout_seconds
            )
        except (EvaluationFailure, asyncio.TimeoutError) as e:
            logger.warning(
                f"⚠️ [SessionEngine] Evaluation failed for session {state.session_id} "
                f"question {index}: {str(e) or 'timeout'}"
            )
            state.phase = SessionPhase.ANSWERING
            return SubmissionResult(
                evaluation=Evaluation.fallback(),
                quick_check=hint,
                is_fallback=True,
                can_retry=False,
                can_advance=False
            )
        except Exception:
            state.phase = SessionPhase.ANSWERING
            raise

        state.evaluations[index] = evaluation
        state.phase = SessionPhase.SHOWING_FEEDBACK
        state.touch()

        await self.persistence.save_interaction(InteractionRecord(
            session_id=state.session_id,
            student_id=state.student_id,
            topic_id=state.topic_id,
            question=question,
            student_answer=answer,
            evaluation=evaluation,
            batch_started_at=state.batch_started_at
        ))

        if hint.likely_correct != evaluation.is_correct:
            logger.debug(
                f"🔍 [SessionEngine] Quick check disagreed with oracle on question {index} "
                f"(hint={hint.likely_correct}, oracle={evaluation.is_correct})"
            )

        return SubmissionResult(
            evaluation=evaluation,
            quick_check=hint,
            is_fallback=False,
            can_retry=state.can_retry(),
            can_advance=state.can_advance()
        )

    def retry(self, state: SessionState):
        """Try the current question again after an incorrect answer."""
        self._require_phase(state, "retry", SessionPhase.SHOWING_FEEDBACK)
        if not state.can_retry():
            raise InvalidTransition(
                "No retries available for this question",
                session_id=state.session_id,
                question_index=state.current_question_index
            )
        state.retry_count += 1
        state.phase = SessionPhase.ANSWERING
        state.touch()

    async def advance(self, state: SessionState) -> Optional[CompletionSummary]:
        """
        Move to the next question.

        Allowed after a correct answer, or as a skip once retries are
        exhausted. Moving past the last question completes the session.
        """
        self._require_phase(state, "advance", SessionPhase.SHOWING_FEEDBACK)
        if not state.can_advance():
            raise InvalidTransition(
                "Current question must be answered correctly or retries exhausted before moving on",
                session_id=state.session_id,
                question_index=state.current_question_index
            )

        state.current_question_index += 1
        state.viewing_question_index = state.current_question_index
        state.reviewing = False
        state.retry_count = 0
        # Drop any stale draft for the new current question
        if state.current_question_index not in state.evaluations:
            state.answers.pop(state.current_question_index, None)
        state.touch()

        if state.batch_exhausted:
            return await self.complete(state)

        state.phase = SessionPhase.ANSWERING
        return None

    # ==================== Review ====================

    async def view_question(self, state: SessionState, index: int) -> ReviewView:
        """
        Show an earlier (or the current) question without changing progress.

        Raises:
            InvalidTransition: index is ahead of the current question
        """
        last_index = min(state.current_question_index, len(state.questions) - 1)
        if index < 0 or index > last_index:
            raise InvalidTransition(
                f"Cannot view question {index}, current question is {state.current_question_index}",
                session_id=state.session_id,
                question_index=index
            )

        evaluation = state.evaluations.get(index)
        if evaluation is None and index < state.current_question_index:
            interaction = await self._find_interaction(state, index)
            if interaction:
                evaluation = Evaluation.from_interaction(interaction)
                if evaluation is not None:
                    state.answers[index] = interaction.get("student_answer") or ""
                    state.evaluations[index] = evaluation

        state.viewing_question_index = index
        state.reviewing = index != state.current_question_index

        return ReviewView(
            index=index,
            question=state.questions[index],
            answer=state.answers.get(index),
            evaluation=evaluation,
            is_current=index == state.current_question_index
        )

    async def _find_interaction(self, state: SessionState, index: int) -> Optional[dict]:
        """Latest row with the question's text. Rows are never matched by position."""
        text = state.questions[index].text
        matches = [
            row for row in await self.persistence.load_interactions(state.session_id)
            if row.get("question_text") == text
        ]
        return matches[-1] if matches else None

    def return_to_current(self, state: SessionState):
        state.viewing_question_index = state.current_question_index
        state.reviewing = False

    # ==================== Tutor chat ====================

    async def load_conversation(self, state: SessionState) -> List[ConversationMessage]:
        return await self.persistence.load_conversation(state.session_id)

    async def chat(self, state: SessionState, message: str) -> TutorReply:
        """
        Ask the tutor about the current question.

        Progress is untouched. Both sides of the exchange are stored only
        once the reply arrives.

        Raises:
            ChatFailure: the oracle failed or timed out
            InvalidTransition: no question is being worked on
        """
        self._require_phase(state, "chat", SessionPhase.ANSWERING, SessionPhase.SHOWING_FEEDBACK)
        if not message or not message.strip():
            raise ValueError("Message cannot be empty")

        index = state.current_question_index
        question = state.questions[index]
        if state.topic is None:
            state.topic = await self.persistence.get_topic(state.topic_id)
        if state.student_context is None:
            state.student_context = await self.build_student_context(state)
        history = await self.persistence.load_conversation(state.session_id)

        try:
            reply_text = await asyncio.wait_for(
                self.oracle.tutor_reply(question, history, message, state.student_context, state.topic),
                timeout=self.config.oracle_timeout_seconds
            )
        except (ChatFailure, asyncio.TimeoutError) as e:
            logger.warning(
                f"⚠️ [SessionEngine] Tutor chat failed for session {state.session_id} "
                f"question {index}: {str(e) or 'timeout'}"
            )
            raise ChatFailure(
                "Tutor is unavailable right now", session_id=state.session_id, question_index=index
            ) from e

        metadata: Dict[str, Any] = {"question_index": index}
        user_message = ConversationMessage(
            session_id=state.session_id,
            student_id=state.student_id,
            role=ConversationRole.USER,
            content=message,
            metadata=metadata
        )
        assistant_message = ConversationMessage(
            session_id=state.session_id,
            student_id=state.student_id,
            role=ConversationRole.ASSISTANT,
            content=reply_text,
            metadata=dict(metadata)
        )
        await self.persistence.save_conversation_message(user_message)
        await self.persistence.save_conversation_message(assistant_message)
        state.touch()

        logger.debug(f"💬 [SessionEngine] Tutor replied on session {state.session_id} question {index}")
        return TutorReply(question_index=index, message=user_message, reply=assistant_message)

    # ==================== Completion ====================

    async def complete(self, state: SessionState) -> CompletionSummary:
        """
        Finish the session and persist progress.

        Only allowed once the current batch is exhausted and at least one
        question has been evaluated.
        """
        self._require_in_progress(state, "complete session")
        if state.attempted_count() == 0:
            raise InvalidTransition(
                "Cannot complete a session with no answered questions",
                session_id=state.session_id,
                question_index=state.current_question_index
            )
        if not state.batch_exhausted or state.phase == SessionPhase.EVALUATING:
            raise InvalidTransition(
                "Session still has unanswered questions",
                session_id=state.session_id,
                question_index=state.current_question_index
            )

        attempted = state.attempted_count()
        correct = state.correct_count()
        await self.persistence.complete_session(state.session_id, attempted, correct, state.questions)

        existing = await self.persistence.get_progress(state.student_id, state.topic_id)
        progress = self.score_aggregator.apply_to_progress(
            existing, state.student_id, state.topic_id, BatchResult.from_counts(attempted, correct)
        )
        await self.persistence.upsert_progress(progress)

        accuracies = await self.persistence.load_recent_session_accuracies(
            state.student_id, state.topic_id, limit=DifficultyPolicy.RECENT_SESSION_WINDOW
        )
        recommendation = self.difficulty_policy.adapt(
            progress.skill_level, accuracies, progress.questions_attempted, progress.questions_correct
        )

        stats = await self.persistence.get_student_stats(state.student_id)
        badges = evaluate_badges(stats)

        state.status = SessionStatus.COMPLETED
        state.phase = SessionPhase.COMPLETED
        state.touch()

        summary = CompletionSummary(
            session_id=state.session_id,
            questions_attempted=attempted,
            questions_correct=correct,
            accuracy=round(correct / attempted * 100) if attempted > 0 else 0,
            progress=progress,
            recommendation=recommendation,
            badges=badges
        )
        logger.info(
            f"✅ [SessionEngine] Completed session {state.session_id}: {correct}/{attempted} correct, "
            f"skill={progress.skill_level.value}, next={recommendation.instruction}"
        )
        return summary

    async def abandon(self, state: SessionState):
        """Stop the session early. Progress is not updated."""
        self._require_in_progress(state, "abandon session")
        await self.persistence.update_session_status(state.session_id, SessionStatus.ABANDONED)
        state.status = SessionStatus.ABANDONED
        state.phase = SessionPhase.COMPLETED
        state.touch()
        logger.info(f"🛑 [SessionEngine] Abandoned session {state.session_id}")

"""
Learning Data Models

Questions, evaluations, progress records and the contexts handed to the
question oracle. Dictionaries use the column/JSON keys stored in Supabase.
"""

import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class SkillLevel(str, Enum):
    """Coarse mastery bucket per (student, topic)."""
    NOT_STARTED = "not_started"
    LEARNING = "learning"
    PRACTICING = "practicing"
    MASTERED = "mastered"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class ConceptualUnderstanding(str, Enum):
    STRONG = "strong"
    DEVELOPING = "developing"
    NEEDS_WORK = "needs_work"


def _coerce_enum(enum_cls, value, default):
    try:
        return enum_cls(value)
    except ValueError:
        return default


@dataclass(frozen=True)
class Question:
    """A generated question. Immutable once generated."""
    text: str
    type: str = "short_answer"
    difficulty: Difficulty = Difficulty.MEDIUM
    hints: Tuple[str, ...] = ()
    correct_answer: str = ""
    solution_steps: Tuple[str, ...] = ()
    focuses_on: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question_text": self.text,
            "question_type": self.type,
            "difficulty": self.difficulty.value,
            "hints": list(self.hints),
            "correct_answer": self.correct_answer,
            "solution_steps": list(self.solution_steps),
            "focuses_on": self.focuses_on,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Question":
        return cls(
            text=data.get("question_text") or data.get("text") or "",
            type=data.get("question_type") or data.get("type") or "short_answer",
            difficulty=_coerce_enum(Difficulty, data.get("difficulty") or "medium", Difficulty.MEDIUM),
            hints=tuple(data.get("hints") or ()),
            correct_answer=data.get("correct_answer") or "",
            solution_steps=tuple(data.get("solution_steps") or ()),
            focuses_on=data.get("focuses_on"),
        )


@dataclass(frozen=True)
class Evaluation:
    """Authoritative verdict on one submitted answer."""
    is_correct: bool
    accuracy_score: float
    feedback: str
    conceptual_understanding: ConceptualUnderstanding = ConceptualUnderstanding.DEVELOPING
    identified_weakness: Optional[str] = None
    encouragement: str = ""
    suggested_hint: Optional[str] = None

    @classmethod
    def fallback(cls) -> "Evaluation":
        """Shown when the evaluation call fails."""
        return cls(
            is_correct=False,
            accuracy_score=0.0,
            feedback="I'm having trouble evaluating your answer right now. Please try again or ask for help!",
            conceptual_understanding=ConceptualUnderstanding.DEVELOPING,
            encouragement="Keep trying! You can do this!",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_correct": self.is_correct,
            "accuracy_score": self.accuracy_score,
            "feedback": self.feedback,
            "conceptual_understanding": self.conceptual_understanding.value,
            "identified_weakness": self.identified_weakness,
            "encouragement": self.encouragement,
            "suggested_hint": self.suggested_hint,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Evaluation":
        """
        Build an Evaluation from a parsed oracle reply or a stored row.

        Raises:
            ValueError: if ``is_correct``, ``accuracy_score`` or ``feedback`` is missing
        """
        if not isinstance(data.get("is_correct"), bool):
            raise ValueError("Invalid evaluation: missing is_correct field")
        if not isinstance(data.get("accuracy_score"), (int, float)):
            raise ValueError("Invalid evaluation: missing accuracy_score field")
        if not data.get("feedback"):
            raise ValueError("Invalid evaluation: missing feedback field")

        return cls(
            is_correct=data["is_correct"],
            accuracy_score=max(0.0, min(1.0, float(data["accuracy_score"]))),
            feedback=data["feedback"],
            conceptual_understanding=_coerce_enum(
                ConceptualUnderstanding,
                data.get("conceptual_understanding") or "developing",
                ConceptualUnderstanding.DEVELOPING,
            ),
            identified_weakness=data.get("identified_weakness"),
            encouragement=data.get("encouragement") or "",
            suggested_hint=data.get("suggested_hint"),
        )

    @classmethod
    def from_interaction(cls, row: Dict[str, Any]) -> Optional["Evaluation"]:
        """
        Rebuild the evaluation stored on a question_interactions row.

        Returns None when the row has not been evaluated yet.
        """
        if row.get("is_correct") is None:
            return None

        blob = row.get("llm_evaluation")
        if isinstance(blob, str):
            try:
                blob = json.loads(blob)
            except json.JSONDecodeError:
                blob = None
        if isinstance(blob, dict):
            try:
                return cls.from_dict(blob)
            except ValueError:
                pass

        # Older rows only carry the verdict and the feedback text
        return cls(
            is_correct=bool(row["is_correct"]),
            accuracy_score=1.0 if row["is_correct"] else 0.0,
            feedback=row.get("llm_feedback") or "",
            encouragement="Keep practicing!",
        )


@dataclass
class StudentProgressRecord:
    """Per (student, topic) progress row."""
    student_id: str
    topic_id: str
    skill_level: SkillLevel = SkillLevel.NOT_STARTED
    confidence_score: float = 0.0
    questions_attempted: int = 0
    questions_correct: int = 0
    mastered_at: Optional[datetime] = None
    last_practiced_at: Optional[datetime] = None
    strengths: List[str] = field(default_factory=list)
    weaknesses: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "student_id": self.student_id,
            "topic_id": self.topic_id,
            "skill_level": self.skill_level.value,
            "confidence_score": self.confidence_score,
            "questions_attempted": self.questions_attempted,
            "questions_correct": self.questions_correct,
            "last_practiced_at": self.last_practiced_at.isoformat() if self.last_practiced_at else None,
        }
        if self.mastered_at:
            data["mastered_at"] = self.mastered_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StudentProgressRecord":
        return cls(
            student_id=data["student_id"],
            topic_id=data["topic_id"],
            skill_level=_coerce_enum(SkillLevel, data.get("skill_level") or "not_started", SkillLevel.NOT_STARTED),
            confidence_score=float(data.get("confidence_score") or 0.0),
            questions_attempted=int(data.get("questions_attempted") or 0),
            questions_correct=int(data.get("questions_correct") or 0),
            mastered_at=_parse_datetime(data.get("mastered_at")),
            last_practiced_at=_parse_datetime(data.get("last_practiced_at")),
            strengths=list(data.get("strengths") or []),
            weaknesses=list(data.get("weaknesses") or []),
        )

    def with_updates(self, **changes) -> "StudentProgressRecord":
        return replace(self, **changes)


@dataclass
class StudentContext:
    """What the oracle knows about the student when generating or evaluating."""
    student_id: str
    first_name: str = ""
    grade_level: str = ""
    curriculum_level: Optional[int] = None
    skill_level: SkillLevel = SkillLevel.NOT_STARTED
    recent_accuracy: float = 0.0
    adaptive_instruction: Optional[str] = None
    strengths: List[str] = field(default_factory=list)
    weaknesses: List[str] = field(default_factory=list)


@dataclass
class TopicContext:
    topic_id: str
    code: str = ""
    title: str = ""
    description: str = ""
    strand: str = ""
    level: int = 0
    elaborations: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TopicContext":
        return cls(
            topic_id=data["id"],
            code=data.get("code") or "",
            title=data.get("title") or "",
            description=data.get("description") or "",
            strand=data.get("strand") or "",
            level=int(data.get("level") or 0),
            elaborations=list(data.get("elaborations") or []),
        )


@dataclass
class LearningHistory:
    """Concepts covered in earlier completed sessions on a topic."""
    concepts_covered: List[str] = field(default_factory=list)
    total_sessions: int = 0


class ConversationRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass
class ConversationMessage:
    """One tutor-chat message stored in conversation_history."""
    session_id: str
    student_id: str
    role: ConversationRole
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "student_id": self.student_id,
            "role": self.role.value,
            "content": self.content,
            "metadata": self.metadata or None,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ConversationMessage":
        return cls(
            session_id=row["session_id"],
            student_id=row["student_id"],
            role=_coerce_enum(ConversationRole, row.get("role") or "user", ConversationRole.USER),
            content=row.get("content") or "",
            metadata=dict(row.get("metadata") or {}),
            created_at=row.get("created_at"),
        )

    def as_chat_message(self) -> Dict[str, str]:
        """OpenAI chat-completions message shape."""
        return {"role": self.role.value, "content": self.content}


def _parse_datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))

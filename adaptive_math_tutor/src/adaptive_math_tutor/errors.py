"""
Tutor Errors

Error taxonomy for session progression. Every error carries the session and
question index it happened at so callers can log and retry at a higher level.
"""

from typing import Optional


class TutorError(Exception):
    """Base class for all session-progression errors."""

    def __init__(
        self,
        message: str,
        session_id: Optional[str] = None,
        question_index: Optional[int] = None
    ):
        super().__init__(message)
        self.message = message
        self.session_id = session_id
        self.question_index = question_index

    def context(self) -> dict:
        """Structured context for log records and API error bodies."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "session_id": self.session_id,
            "question_index": self.question_index,
        }

    def __str__(self) -> str:
        parts = [self.message]
        if self.session_id:
            parts.append(f"session={self.session_id}")
        if self.question_index is not None:
            parts.append(f"question={self.question_index}")
        return " | ".join(parts)


class GenerationFailure(TutorError):
    """No valid questions were produced after the fallback attempt."""


class EvaluationFailure(TutorError):
    """The scoring call failed. Recovered locally with a fallback evaluation."""


class SessionNotFound(TutorError):
    """Session (or its topic) is missing on load or resume."""


class InvalidTransition(TutorError):
    """Operation not allowed in the current session phase. No state changes."""


class ChatFailure(TutorError):
    """The tutor chat reply could not be produced. Nothing is stored."""

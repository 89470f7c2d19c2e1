"""
Score Aggregation

Rolling confidence score and skill level per (student, topic). Pure
computation; the caller persists the result.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from adaptive_math_tutor.learning_models import SkillLevel, StudentProgressRecord


@dataclass(frozen=True)
class ScoreSnapshot:
    """Confidence plus attempt counters."""
    confidence: float
    attempted: int
    correct: int


@dataclass(frozen=True)
class BatchResult:
    """Outcome of one completed batch of questions."""
    accuracy: float
    attempted: int
    correct: int

    @classmethod
    def from_counts(cls, attempted: int, correct: int) -> "BatchResult":
        accuracy = correct / attempted if attempted > 0 else 0.0
        return cls(accuracy=accuracy, attempted=attempted, correct=correct)


class ScoreAggregator:
    """
    Folds batch results into a student's topic progress.

    Confidence is the attempt-weighted mean of the previous confidence and the
    new batch accuracy:

        confidence' = (prev_conf * prev_attempted + acc * batch_attempted)
                      / (prev_attempted + batch_attempted)

    Skill level is derived from (confidence, attempted) only.
    """

    MASTERED_CONFIDENCE = 0.9
    MASTERED_MIN_ATTEMPTS = 20
    PRACTICING_CONFIDENCE = 0.7
    PRACTICING_MIN_ATTEMPTS = 10
    PRACTICING_ANY_CONFIDENCE_ATTEMPTS = 5

    def update(self, previous: ScoreSnapshot, batch: BatchResult) -> ScoreSnapshot:
        """
        Combine previous progress with a batch result.

        Args:
            previous: Stored confidence and counters
            batch: Accuracy (0-1) and counters of the finished batch

        Returns:
            New ScoreSnapshot
        """
        attempted = previous.attempted + batch.attempted
        correct = previous.correct + batch.correct

        if previous.attempted == 0:
            confidence = batch.accuracy if batch.attempted > 0 else previous.confidence
        elif batch.attempted == 0:
            confidence = previous.confidence
        else:
            confidence = (
                previous.confidence * previous.attempted + batch.accuracy * batch.attempted
            ) / attempted

        return ScoreSnapshot(
            confidence=max(0.0, min(1.0, confidence)),
            attempted=attempted,
            correct=correct
        )

    def determine_skill_level(self, confidence: float, attempted: int) -> SkillLevel:
        """Map (confidence, attempted) to a skill level."""
        if attempted == 0:
            return SkillLevel.NOT_STARTED
        if confidence >= self.MASTERED_CONFIDENCE and attempted >= self.MASTERED_MIN_ATTEMPTS:
            return SkillLevel.MASTERED
        if confidence >= self.PRACTICING_CONFIDENCE and attempted >= self.PRACTICING_MIN_ATTEMPTS:
            return SkillLevel.PRACTICING
        if attempted >= self.PRACTICING_ANY_CONFIDENCE_ATTEMPTS:
            return SkillLevel.PRACTICING
        return SkillLevel.LEARNING

    def apply_to_progress(
        self,
        existing: Optional[StudentProgressRecord],
        student_id: str,
        topic_id: str,
        batch: BatchResult,
        now: Optional[datetime] = None
    ) -> StudentProgressRecord:
        """
        Produce the next progress record after a completed batch.

        ``mastered_at`` is stamped the first time the level becomes mastered
        and carried over unchanged afterwards.
        """
        now = now or datetime.now()
        if existing is None:
            existing = StudentProgressRecord(student_id=student_id, topic_id=topic_id)

        snapshot = self.update(
            ScoreSnapshot(
                confidence=existing.confidence_score,
                attempted=existing.questions_attempted,
                correct=existing.questions_correct
            ),
            batch
        )
        skill_level = self.determine_skill_level(snapshot.confidence, snapshot.attempted)

        mastered_at = existing.mastered_at
        if skill_level == SkillLevel.MASTERED and mastered_at is None:
            mastered_at = now

        return existing.with_updates(
            skill_level=skill_level,
            confidence_score=snapshot.confidence,
            questions_attempted=snapshot.attempted,
            questions_correct=snapshot.correct,
            mastered_at=mastered_at,
            last_practiced_at=now,
        )

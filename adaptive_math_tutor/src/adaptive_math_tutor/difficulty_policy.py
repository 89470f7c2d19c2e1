"""
Difficulty Policy

Chooses the adaptive instruction for the next question batch from the
student's skill level and recent accuracy.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from adaptive_math_tutor.learning_models import SkillLevel

logger = logging.getLogger(__name__)


class AdaptiveInstruction(str, Enum):
    STEP_BACK = "STEP_BACK"
    SLOW_DOWN = "SLOW_DOWN"
    CONSOLIDATE = "CONSOLIDATE"
    STANDARD_PROGRESSION = "STANDARD_PROGRESSION"
    CHALLENGE = "CHALLENGE"


@dataclass
class DifficultyRecommendation:
    """Result of a difficulty check."""
    instruction: Optional[AdaptiveInstruction]
    recommended_skill_level: SkillLevel
    reason: str
    recent_accuracy: Optional[float] = None


class DifficultyPolicy:
    """
    Tiered difficulty adaptation.

    Tiers, checked in order (first match wins):
    - accuracy < 40  -> STEP_BACK, level forced to learning
    - accuracy < 60  -> SLOW_DOWN
    - accuracy < 70  -> CONSOLIDATE
    - accuracy < 85  -> STANDARD_PROGRESSION, learning -> practicing
    - otherwise      -> CHALLENGE, practicing -> mastered
    """

    STEP_BACK_BELOW = 40.0
    SLOW_DOWN_BELOW = 60.0
    CONSOLIDATE_BELOW = 70.0
    STANDARD_BELOW = 85.0

    RECENT_SESSION_WINDOW = 3

    def recommend(self, skill_level: SkillLevel, recent_accuracy: float) -> DifficultyRecommendation:
        """
        Map skill level and recent accuracy (0-100) to a directive.

        Args:
            skill_level: Stored skill level for the topic
            recent_accuracy: Recent accuracy percentage

        Returns:
            DifficultyRecommendation with instruction and recommended level
        """
        if recent_accuracy < self.STEP_BACK_BELOW:
            return DifficultyRecommendation(
                instruction=AdaptiveInstruction.STEP_BACK,
                recommended_skill_level=SkillLevel.LEARNING,
                reason=f"Struggling (accuracy={recent_accuracy:.0f}%), returning to fundamentals",
                recent_accuracy=recent_accuracy
            )

        if recent_accuracy < self.SLOW_DOWN_BELOW:
            return DifficultyRecommendation(
                instruction=AdaptiveInstruction.SLOW_DOWN,
                recommended_skill_level=skill_level,
                reason=f"Low accuracy ({recent_accuracy:.0f}%), slowing down with more scaffolding",
                recent_accuracy=recent_accuracy
            )

        if recent_accuracy < self.CONSOLIDATE_BELOW:
            return DifficultyRecommendation(
                instruction=AdaptiveInstruction.CONSOLIDATE,
                recommended_skill_level=skill_level,
                reason=f"Moderate accuracy ({recent_accuracy:.0f}%), consolidating current level",
                recent_accuracy=recent_accuracy
            )

        if recent_accuracy < self.STANDARD_BELOW:
            recommended = SkillLevel.PRACTICING if skill_level == SkillLevel.LEARNING else skill_level
            return DifficultyRecommendation(
                instruction=AdaptiveInstruction.STANDARD_PROGRESSION,
                recommended_skill_level=recommended,
                reason=f"Good accuracy ({recent_accuracy:.0f}%), standard progression",
                recent_accuracy=recent_accuracy
            )

        recommended = SkillLevel.MASTERED if skill_level == SkillLevel.PRACTICING else skill_level
        return DifficultyRecommendation(
            instruction=AdaptiveInstruction.CHALLENGE,
            recommended_skill_level=recommended,
            reason=f"High accuracy ({recent_accuracy:.0f}%), challenging with harder problems",
            recent_accuracy=recent_accuracy
        )

    def compute_recent_accuracy(
        self,
        session_accuracies: Sequence[float],
        questions_attempted: int = 0,
        questions_correct: int = 0
    ) -> float:
        """
        Recent accuracy percentage.

        Mean of the last three completed-session accuracies (most recent
        first), or the lifetime ratio when there is no session history.
        """
        recent: List[float] = list(session_accuracies)[:self.RECENT_SESSION_WINDOW]
        if recent:
            return sum(recent) / len(recent)
        if questions_attempted > 0:
            return questions_correct / questions_attempted * 100
        return 0.0

    def adapt(
        self,
        skill_level: SkillLevel,
        session_accuracies: Sequence[float],
        questions_attempted: int = 0,
        questions_correct: int = 0
    ) -> DifficultyRecommendation:
        """
        Recommendation for the next batch.

        Adaptation is skipped when there are no completed sessions yet; the
        stored skill level passes through with no instruction.
        """
        if not session_accuracies:
            return DifficultyRecommendation(
                instruction=None,
                recommended_skill_level=skill_level,
                reason="No session history yet, keeping stored skill level",
                recent_accuracy=self.compute_recent_accuracy(
                    session_accuracies, questions_attempted, questions_correct
                )
            )

        recent_accuracy = self.compute_recent_accuracy(
            session_accuracies, questions_attempted, questions_correct
        )
        recommendation = self.recommend(skill_level, recent_accuracy)

        if recommendation.recommended_skill_level != skill_level:
            logger.info(
                f"📊 [DifficultyPolicy] {skill_level.value} → "
                f"{recommendation.recommended_skill_level.value} ({recommendation.reason})"
            )
        return recommendation

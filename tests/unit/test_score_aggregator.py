"""
Unit Tests for Score Aggregator

Tests confidence blending, skill level thresholds and progress updates.
"""

import pytest
import sys
import os
from datetime import datetime

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "adaptive_math_tutor", "src"))

from adaptive_math_tutor.learning_models import SkillLevel, StudentProgressRecord
from adaptive_math_tutor.score_aggregator import BatchResult, ScoreAggregator, ScoreSnapshot


class TestScoreAggregator:
    """Test suite for ScoreAggregator."""

    @pytest.fixture
    def aggregator(self):
        return ScoreAggregator()

    def test_first_batch_uses_batch_accuracy(self, aggregator):
        """4/5 on a first batch gives confidence 0.8."""
        snapshot = aggregator.update(ScoreSnapshot(0.0, 0, 0), BatchResult.from_counts(5, 4))

        assert snapshot.confidence == pytest.approx(0.8)
        assert snapshot.attempted == 5
        assert snapshot.correct == 4

    def test_weighted_by_attempts(self, aggregator):
        snapshot = aggregator.update(ScoreSnapshot(0.8, 5, 4), BatchResult.from_counts(5, 5))

        assert snapshot.confidence == pytest.approx(0.9)
        assert snapshot.attempted == 10
        assert snapshot.correct == 9

    def test_large_history_dominates_small_batch(self, aggregator):
        snapshot = aggregator.update(ScoreSnapshot(0.9, 45, 40), BatchResult.from_counts(5, 0))

        assert snapshot.confidence == pytest.approx(0.81)

    def test_empty_batch_keeps_confidence(self, aggregator):
        previous = ScoreSnapshot(0.65, 12, 8)
        snapshot = aggregator.update(previous, BatchResult.from_counts(0, 0))

        assert snapshot == previous

    def test_empty_batch_with_no_history(self, aggregator):
        snapshot = aggregator.update(ScoreSnapshot(0.0, 0, 0), BatchResult.from_counts(0, 0))

        assert snapshot.confidence == 0.0
        assert snapshot.attempted == 0

    def test_confidence_is_clamped(self, aggregator):
        snapshot = aggregator.update(ScoreSnapshot(1.4, 3, 3), BatchResult(accuracy=1.2, attempted=2, correct=2))

        assert snapshot.confidence == 1.0

    @pytest.mark.parametrize("confidence,attempted,expected", [
        (0.0, 0, SkillLevel.NOT_STARTED),
        (1.0, 0, SkillLevel.NOT_STARTED),
        (0.75, 4, SkillLevel.LEARNING),
        (0.2, 5, SkillLevel.PRACTICING),
        (0.7, 10, SkillLevel.PRACTICING),
        (0.95, 19, SkillLevel.PRACTICING),
        (0.9, 20, SkillLevel.MASTERED),
        (0.89, 40, SkillLevel.PRACTICING),
    ])
    def test_skill_level_thresholds(self, aggregator, confidence, attempted, expected):
        assert aggregator.determine_skill_level(confidence, attempted) == expected

    def test_first_batch_four_of_five_is_practicing(self, aggregator):
        progress = aggregator.apply_to_progress(None, "student-1", "topic-1", BatchResult.from_counts(5, 4))

        assert progress.confidence_score == pytest.approx(0.8)
        assert progress.skill_level == SkillLevel.PRACTICING
        assert progress.questions_attempted == 5
        assert progress.questions_correct == 4
        assert progress.mastered_at is None
        assert progress.last_practiced_at is not None

    def test_mastered_at_stamped_once(self, aggregator):
        existing = StudentProgressRecord(
            student_id="student-1",
            topic_id="topic-1",
            skill_level=SkillLevel.PRACTICING,
            confidence_score=0.9,
            questions_attempted=15,
            questions_correct=14
        )
        first_time = datetime(2024, 3, 1, 10, 0)
        mastered = aggregator.apply_to_progress(
            existing, "student-1", "topic-1", BatchResult.from_counts(5, 5), now=first_time
        )

        assert mastered.skill_level == SkillLevel.MASTERED
        assert mastered.mastered_at == first_time

        later = aggregator.apply_to_progress(
            mastered, "student-1", "topic-1", BatchResult.from_counts(5, 5), now=datetime(2024, 3, 8)
        )
        assert later.mastered_at == first_time
        assert later.last_practiced_at == datetime(2024, 3, 8)

    def test_keeps_strengths_and_weaknesses(self, aggregator):
        existing = StudentProgressRecord(
            student_id="student-1",
            topic_id="topic-1",
            strengths=["place value"],
            weaknesses=["carrying"]
        )
        progress = aggregator.apply_to_progress(existing, "student-1", "topic-1", BatchResult.from_counts(2, 1))

        assert progress.strengths == ["place value"]
        assert progress.weaknesses == ["carrying"]
        assert progress.skill_level == SkillLevel.LEARNING

    def test_counts_add_and_confidence_stays_bounded(self, aggregator):
        for prev_attempted in range(0, 12, 3):
            for prev_correct in range(0, prev_attempted + 1):
                previous = aggregator.update(ScoreSnapshot(0.0, 0, 0), BatchResult.from_counts(prev_attempted, prev_correct))
                for batch_attempted in range(1, 6):
                    for batch_correct in range(0, batch_attempted + 1):
                        snapshot = aggregator.update(previous, BatchResult.from_counts(batch_attempted, batch_correct))

                        assert snapshot.attempted == prev_attempted + batch_attempted
                        assert snapshot.correct == prev_correct + batch_correct
                        assert 0.0 <= snapshot.confidence <= 1.0

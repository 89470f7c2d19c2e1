"""
Unit Tests for Badges

Tests badge evaluation from aggregate statistics and streak helpers.
"""

import pytest
import sys
import os
from datetime import date, timedelta

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "adaptive_math_tutor", "src"))

from adaptive_math_tutor.badges import (
    BADGE_DEFINITIONS,
    UNSUPPORTED_CRITERIA,
    BadgeStats,
    answer_streak,
    daily_streak,
    evaluate_badges,
    get_badge,
    next_badge,
)


class TestEvaluateBadges:
    """Test suite for badge evaluation."""

    def test_no_activity_no_badges(self):
        assert evaluate_badges(BadgeStats()) == frozenset()

    def test_first_answer(self):
        assert evaluate_badges(BadgeStats(total_questions=1, accuracy=0)) == frozenset({"first_answer"})

    def test_accuracy_badges_need_volume(self):
        few = evaluate_badges(BadgeStats(total_questions=9, correct_questions=9, accuracy=100))
        enough = evaluate_badges(BadgeStats(total_questions=20, correct_questions=19, accuracy=95))

        assert "sharp_mind" not in few
        assert {"sharp_mind", "perfectionist", "curious_learner"} <= enough

    def test_streak_and_mastery_badges(self):
        earned = evaluate_badges(BadgeStats(
            total_questions=30, correct_questions=25, accuracy=83,
            topics_mastered=3, current_streak=10, daily_streak=7
        ))

        assert {"flawless", "unstoppable", "topic_master", "subject_expert",
                "daily_learner", "weekly_warrior"} <= earned
        assert "math_genius" not in earned
        assert "dedication_master" not in earned

    def test_missing_streaks_count_as_zero(self):
        earned = evaluate_badges(BadgeStats(total_questions=5, current_streak=None, daily_streak=None))

        assert "flawless" not in earned
        assert "daily_learner" not in earned

    def test_special_badges_never_awarded(self):
        earned = evaluate_badges(BadgeStats(
            total_questions=1000, correct_questions=1000, accuracy=100,
            topics_mastered=50, current_streak=1000, daily_streak=365
        ))
        special = {b.id for b in BADGE_DEFINITIONS if b.criteria_type in UNSUPPORTED_CRITERIA}

        assert special
        assert not (earned & special)
        assert len(earned) == len(BADGE_DEFINITIONS) - len(special)

    def test_evaluation_is_idempotent(self):
        stats = BadgeStats(total_questions=12, correct_questions=10, accuracy=83, current_streak=5)

        assert evaluate_badges(stats) == evaluate_badges(stats)

    def test_earned_set_grows_with_stats(self):
        """Higher statistics never lose a badge."""
        smaller = BadgeStats(total_questions=10, correct_questions=9, accuracy=90,
                             topics_mastered=1, current_streak=5, daily_streak=3)
        larger = BadgeStats(total_questions=60, correct_questions=55, accuracy=91,
                            topics_mastered=2, current_streak=8, daily_streak=4)

        assert evaluate_badges(smaller) <= evaluate_badges(larger)


class TestBadgeLookup:

    def test_get_badge(self):
        badge = get_badge("topic_master")

        assert badge.category == "mastery"
        assert badge.threshold == 1
        assert get_badge("no_such_badge") is None

    def test_next_badge(self):
        assert next_badge([]).id == "first_answer"
        assert next_badge(["first_answer"]).id == "curious_learner"
        assert next_badge(["topic_master"], category="mastery").id == "subject_expert"

    def test_next_badge_when_all_earned(self):
        assert next_badge([b.id for b in BADGE_DEFINITIONS]) is None


class TestStreaks:

    def test_answer_streak_counts_from_newest(self):
        assert answer_streak([True, True, False, True]) == 2
        assert answer_streak([False, True]) == 0
        assert answer_streak([]) == 0

    def test_daily_streak_ending_today(self):
        today = date(2024, 5, 10)
        days = [today, today - timedelta(days=1), today - timedelta(days=2), today - timedelta(days=4)]

        assert daily_streak(days, today) == 3

    def test_daily_streak_ending_yesterday_still_counts(self):
        today = date(2024, 5, 10)
        days = [today - timedelta(days=1), today - timedelta(days=2)]

        assert daily_streak(days, today) == 2

    def test_daily_streak_broken(self):
        today = date(2024, 5, 10)

        assert daily_streak([today - timedelta(days=2)], today) == 0
        assert daily_streak([], today) == 0

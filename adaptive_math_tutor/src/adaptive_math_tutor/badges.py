"""
Badge Definitions and Evaluation

Badges are never stored individually; the earned set is recomputed from
aggregate statistics each time. Every threshold is "at least X", so the
earned set only grows as statistics grow.

The special families (session_speed, late_night_session,
early_morning_session) need per-session timing context that aggregate
statistics do not carry. They are defined for display but never awarded
here.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import FrozenSet, Iterable, List, Optional, Sequence


@dataclass(frozen=True)
class Badge:
    id: str
    name: str
    description: str
    icon: str
    category: str  # achievement, performance, mastery, streak, special
    rarity: str  # common, rare, epic, legendary
    criteria_type: str
    threshold: int


@dataclass(frozen=True)
class BadgeStats:
    """Aggregate statistics badges are computed from."""
    total_questions: int = 0
    correct_questions: int = 0
    accuracy: float = 0.0  # percent, 0-100
    topics_mastered: int = 0
    current_streak: Optional[int] = None
    daily_streak: Optional[int] = None


BADGE_DEFINITIONS: List[Badge] = [
    # Achievement - questions answered
    Badge("first_answer", "First Steps", "Answered your first question", "👣",
          "achievement", "common", "questions_answered", 1),
    Badge("curious_learner", "Curious Learner", "Answered 10 questions", "🤔",
          "achievement", "common", "questions_answered", 10),
    Badge("dedicated_student", "Dedicated Student", "Answered 50 questions", "📚",
          "achievement", "rare", "questions_answered", 50),
    Badge("math_champion", "Math Champion", "Answered 100 questions", "🏆",
          "achievement", "epic", "questions_answered", 100),
    Badge("math_legend", "Math Legend", "Answered 250 questions", "⭐",
          "achievement", "legendary", "questions_answered", 250),

    # Performance - accuracy and answer streaks
    Badge("sharp_mind", "Sharp Mind", "Achieved 80% accuracy on 10+ questions", "🎯",
          "performance", "common", "accuracy_80", 10),
    Badge("perfectionist", "Perfectionist", "Achieved 90% accuracy on 20+ questions", "💯",
          "performance", "rare", "accuracy_90", 20),
    Badge("flawless", "Flawless", "Answered 5 questions in a row correctly", "✨",
          "performance", "epic", "streak", 5),
    Badge("unstoppable", "Unstoppable", "Answered 10 questions in a row correctly", "🔥",
          "performance", "legendary", "streak", 10),

    # Mastery - topics mastered
    Badge("topic_master", "Topic Master", "Mastered your first topic", "🎓",
          "mastery", "rare", "topics_mastered", 1),
    Badge("subject_expert", "Subject Expert", "Mastered 3 topics", "🧠",
          "mastery", "epic", "topics_mastered", 3),
    Badge("math_genius", "Math Genius", "Mastered 5 topics", "👑",
          "mastery", "legendary", "topics_mastered", 5),

    # Streak - consecutive learning days
    Badge("daily_learner", "Daily Learner", "Learned for 3 days in a row", "📅",
          "streak", "common", "daily_streak", 3),
    Badge("weekly_warrior", "Weekly Warrior", "Learned for 7 days in a row", "💪",
          "streak", "rare", "daily_streak", 7),
    Badge("dedication_master", "Dedication Master", "Learned for 30 days in a row", "🌟",
          "streak", "legendary", "daily_streak", 30),

    # Special - need session timing context, not awarded by evaluate()
    Badge("speed_demon", "Speed Demon", "Completed a session in under 10 minutes", "⚡",
          "special", "rare", "session_speed", 600),
    Badge("night_owl", "Night Owl", "Completed a session after 9 PM", "🦉",
          "special", "common", "late_night_session", 1),
    Badge("early_bird", "Early Bird", "Completed a session before 7 AM", "🐦",
          "special", "common", "early_morning_session", 1),
]

UNSUPPORTED_CRITERIA = frozenset({"session_speed", "late_night_session", "early_morning_session"})


def _meets(badge: Badge, stats: BadgeStats) -> bool:
    criteria = badge.criteria_type
    if criteria == "questions_answered":
        return stats.total_questions >= badge.threshold
    if criteria == "accuracy_80":
        return stats.accuracy >= 80 and stats.total_questions >= badge.threshold
    if criteria == "accuracy_90":
        return stats.accuracy >= 90 and stats.total_questions >= badge.threshold
    if criteria == "topics_mastered":
        return stats.topics_mastered >= badge.threshold
    if criteria == "daily_streak":
        return (stats.daily_streak or 0) >= badge.threshold
    if criteria == "streak":
        return (stats.current_streak or 0) >= badge.threshold
    return False


def evaluate_badges(stats: BadgeStats) -> FrozenSet[str]:
    """Set of badge ids earned for the given statistics."""
    return frozenset(
        badge.id
        for badge in BADGE_DEFINITIONS
        if badge.criteria_type not in UNSUPPORTED_CRITERIA and _meets(badge, stats)
    )


def get_badge(badge_id: str) -> Optional[Badge]:
    for badge in BADGE_DEFINITIONS:
        if badge.id == badge_id:
            return badge
    return None


def next_badge(earned: Iterable[str], category: Optional[str] = None) -> Optional[Badge]:
    """First not-yet-earned badge, optionally within one category."""
    earned_ids = set(earned)
    for badge in BADGE_DEFINITIONS:
        if category and badge.category != category:
            continue
        if badge.id not in earned_ids:
            return badge
    return None


def answer_streak(results_newest_first: Sequence[bool]) -> int:
    """Number of consecutive correct answers counting back from the newest."""
    streak = 0
    for is_correct in results_newest_first:
        if not is_correct:
            break
        streak += 1
    return streak


def daily_streak(active_days: Iterable[date], today: date) -> int:
    """
    Consecutive active days ending today.

    A streak whose last day is yesterday still counts, so a student who has
    not studied yet today keeps it until the day ends.
    """
    days = set(active_days)
    if today in days:
        cursor = today
    elif today - timedelta(days=1) in days:
        cursor = today - timedelta(days=1)
    else:
        return 0

    streak = 0
    while cursor in days:
        streak += 1
        cursor -= timedelta(days=1)
    return streak

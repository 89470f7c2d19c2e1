"""
Answer Matcher

Fast heuristic pre-check of a free-text answer against the canonical answer.
Advisory only: the oracle's evaluation is always authoritative. Useful for
optimistic UI and input pre-validation.
"""

import re
from dataclasses import dataclass
from typing import Optional

_WHITESPACE = re.compile(r"\s+")
_STRIP_CHARS = re.compile(r"[,$€£¥]")
# Keep a single zero so "0" and "0.5" survive normalization
_LEADING_ZEROS = re.compile(r"^0+(?=\d)")
_NUMBER = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


@dataclass(frozen=True)
class QuickCheck:
    likely_correct: bool
    confidence: float


NO_MATCH = QuickCheck(likely_correct=False, confidence=0.0)


def normalize_answer(answer: str) -> str:
    """Lowercase, trim, collapse whitespace, drop commas/currency and leading zeros."""
    normalized = _WHITESPACE.sub(" ", answer.lower().strip())
    normalized = _STRIP_CHARS.sub("", normalized).strip()
    return _LEADING_ZEROS.sub("", normalized)


def parse_number(text: str) -> Optional[float]:
    if not _NUMBER.match(text):
        return None
    return float(text)


def quick_check(correct_answer: str, student_answer: str) -> QuickCheck:
    """
    Heuristic equivalence check.

    Tiers, in order:
    - equal after normalization (or numerically equal) -> 1.0
    - numbers within max(0.1%, 0.01) of each other     -> 0.95
    - one contains the other                           -> 0.7
    """
    if not correct_answer or not student_answer:
        return NO_MATCH

    correct = normalize_answer(correct_answer)
    student = normalize_answer(student_answer)
    if not correct or not student:
        return NO_MATCH

    correct_num = parse_number(correct)
    student_num = parse_number(student)

    if correct == student or (
        correct_num is not None and student_num is not None and correct_num == student_num
    ):
        return QuickCheck(likely_correct=True, confidence=1.0)

    if correct_num is not None and student_num is not None:
        tolerance = max(abs(correct_num) * 0.001, 0.01)
        if abs(correct_num - student_num) < tolerance:
            return QuickCheck(likely_correct=True, confidence=0.95)

    if correct in student or student in correct:
        return QuickCheck(likely_correct=True, confidence=0.7)

    return NO_MATCH

"""
Shared test doubles: a scripted question oracle and a seeded in-memory store.
"""

import asyncio
import os
import sys

import pytest

# Add project root to path
project_root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.join(project_root, "adaptive_math_tutor", "src"))

from adaptive_math_tutor.learning_models import Evaluation, Question
from adaptive_math_tutor.persistence import InMemoryPersistence


def make_questions(count=5, prefix="What is"):
    return [
        Question(
            text=f"{prefix} {i} + {i}?",
            correct_answer=str(i * 2),
            hints=("Count up",),
            solution_steps=(f"{i} + {i} = {i * 2}",),
            focuses_on=f"doubling {i}",
        )
        for i in range(1, count + 1)
    ]


class ScriptedOracle:
    """Oracle double: marks an answer correct when it equals the stored answer."""

    def __init__(self, questions=None):
        self.questions = questions or make_questions()
        self.generate_calls = []
        self.evaluate_calls = []
        self.generation_error = None
        self.evaluation_error = None
        self.evaluation_delay = 0.0
        self.chat_calls = []
        self.chat_error = None

    async def generate_questions(self, student, topic, count, history=None):
        self.generate_calls.append({"student": student, "topic": topic, "count": count, "history": history})
        if self.generation_error:
            raise self.generation_error
        return self.questions[:count]

    async def evaluate_answer(self, question, student_answer, student):
        self.evaluate_calls.append((question.text, student_answer))
        if self.evaluation_delay:
            await asyncio.sleep(self.evaluation_delay)
        if self.evaluation_error:
            raise self.evaluation_error
        is_correct = student_answer.strip() == question.correct_answer
        return Evaluation(
            is_correct=is_correct,
            accuracy_score=1.0 if is_correct else 0.0,
            feedback="Well done!" if is_correct else "Not quite, check your addition.",
        )

    async def tutor_reply(self, question, history, message, student, topic):
        self.chat_calls.append({"question": question.text, "history": list(history), "message": message})
        if self.chat_error:
            raise self.chat_error
        return f"What do you get if you count up from the first number in '{question.text}'?"


@pytest.fixture
def persistence():
    store = InMemoryPersistence()
    store.add_student("student-1", first_name="Aroha", grade_level="Year 5")
    store.add_topic("topic-1", title="Doubling", code="MA5-1", level=3)
    return store


@pytest.fixture
def oracle():
    return ScriptedOracle()

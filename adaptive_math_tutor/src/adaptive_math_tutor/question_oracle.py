"""
Question Oracle

Generates question batches, evaluates answers and answers tutor-chat
messages through a hosted LLM.
The session engine only depends on the QuestionOracle protocol, so the
OpenAI-backed implementation can be swapped for a test double.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Protocol, Sequence

from openai import AsyncOpenAI

from adaptive_math_tutor.config import TutorConfig
from adaptive_math_tutor.errors import ChatFailure, EvaluationFailure, GenerationFailure
from adaptive_math_tutor.learning_models import (
    ConversationMessage,
    Evaluation,
    LearningHistory,
    Question,
    StudentContext,
    TopicContext,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a patient mathematics tutor. Build understanding from fundamentals, "
    "be encouraging, and return only valid JSON."
)

TUTOR_CHAT_PROMPT = (
    "You are a patient, encouraging mathematics tutor. Guide the student with "
    "questions instead of telling them. Never reveal the answer to their current "
    "problem; if you explain a concept, use a different example with different numbers."
)

# Last 10 messages (5 exchanges) go to the model
CHAT_HISTORY_LIMIT = 10

_REQUIRED_QUESTION_FIELDS = ("question_text", "question_type", "difficulty", "correct_answer")


class QuestionOracle(Protocol):
    """External generator/evaluator of questions and answers."""

    async def generate_questions(
        self,
        student: StudentContext,
        topic: TopicContext,
        count: int,
        history: Optional[LearningHistory] = None
    ) -> List[Question]:
        """Raises GenerationFailure when no valid questions can be produced."""
        ...

    async def evaluate_answer(
        self,
        question: Question,
        student_answer: str,
        student: StudentContext
    ) -> Evaluation:
        """Raises EvaluationFailure when the verdict cannot be obtained."""
        ...

    async def tutor_reply(
        self,
        question: Question,
        history: Sequence[ConversationMessage],
        message: str,
        student: StudentContext,
        topic: TopicContext
    ) -> str:
        """Raises ChatFailure when no reply can be produced."""
        ...


def parse_json_response(content: str) -> Dict[str, Any]:
    """
    Parse a JSON object out of an LLM reply.

    Handles markdown code fences and stray text around the object.

    Raises:
        ValueError: if no JSON object can be parsed
    """
    cleaned = content.strip()
    fenced = re.match(r"^```(?:json)?\s*(.*?)\s*```$", cleaned, re.DOTALL)
    if fenced:
        cleaned = fenced.group(1)

    json_match = re.search(r"\{.*\}", cleaned, re.DOTALL)
    if json_match:
        cleaned = json_match.group(0)

    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ValueError(f"Failed to parse JSON response: {e}") from e
    if not isinstance(parsed, dict):
        raise ValueError("Expected a JSON object")
    return parsed


def valid_questions(raw_questions: Sequence[Any]) -> List[Question]:
    """Keep only complete question entries."""
    questions = []
    for raw in raw_questions:
        if not isinstance(raw, dict):
            continue
        if not all(raw.get(key) for key in _REQUIRED_QUESTION_FIELDS):
            continue
        if not isinstance(raw.get("hints"), list) or not isinstance(raw.get("solution_steps"), list):
            continue
        questions.append(Question.from_dict(raw))
    return questions


def build_generation_prompt(
    student: StudentContext,
    topic: TopicContext,
    count: int,
    history: Optional[LearningHistory] = None
) -> str:
    lines = [
        f"Topic: {topic.code} - {topic.title} (level {topic.level})",
        f"Description: {topic.description}",
        f"Student skill level: {student.skill_level.value}",
        f"Recent accuracy: {student.recent_accuracy:.0f}%",
    ]
    if student.adaptive_instruction:
        lines.append(f"Adaptive instruction: {student.adaptive_instruction}")
    if student.strengths:
        lines.append(f"Strengths: {', '.join(student.strengths)}")
    if student.weaknesses:
        lines.append(f"Weaknesses: {', '.join(student.weaknesses)}")
    if history and history.concepts_covered:
        lines.append(
            f"Already covered in {history.total_sessions} earlier session(s): "
            f"{', '.join(history.concepts_covered)}"
        )
    lines.append(
        f"Generate {count} question(s). Return JSON: "
        '{"questions": [{"question_text", "question_type", "difficulty" (easy|medium|hard), '
        '"hints": [], "correct_answer", "solution_steps": [], "focuses_on"}]}'
    )
    return "\n".join(lines)


def build_evaluation_prompt(question: Question, student_answer: str, student: StudentContext) -> str:
    return "\n".join([
        f"Question: {question.text}",
        f"Correct answer: {question.correct_answer}",
        f"Student answer: {student_answer}",
        f"Student skill level: {student.skill_level.value}",
        "Return JSON: {\"is_correct\": bool, \"accuracy_score\": 0-1, \"feedback\", "
        "\"conceptual_understanding\" (strong|developing|needs_work), "
        "\"identified_weakness\", \"suggested_hint\", \"encouragement\"}",
    ])


def build_chat_messages(
    question: Question,
    history: Sequence[ConversationMessage],
    message: str,
    student: StudentContext,
    topic: TopicContext
) -> List[Dict[str, str]]:
    """Chat-completions messages for one tutor reply."""
    context = "\n".join([
        TUTOR_CHAT_PROMPT,
        "",
        f"Student: {student.first_name or 'the student'} ({student.grade_level or 'unknown grade'})",
        f"Topic: {topic.title or 'Mathematics'}",
        f"Current question: {question.text}",
    ])
    messages = [{"role": "system", "content": context}]
    for previous in list(history)[-CHAT_HISTORY_LIMIT:]:
        messages.append(previous.as_chat_message())
    messages.append({"role": "user", "content": message})
    return messages


class OpenAIQuestionOracle:
    """
    QuestionOracle backed by the OpenAI chat completions API.

    Generation tries the primary model, then once more with the fallback
    model before giving up.
    """

    GENERATION_ATTEMPTS = 2

    def __init__(self, config: Optional[TutorConfig] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or TutorConfig.from_env()
        self.llm_client = client or AsyncOpenAI(api_key=self.config.openai_api_key)
        self.model = self.config.openai_model
        self.fallback_model = self.config.openai_fallback_model

    async def _complete(self, prompt: str, model: str, temperature: float, max_tokens: int) -> str:
        return await self._chat(
            [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt}
            ],
            model,
            temperature,
            max_tokens
        )

    async def _chat(self, messages: List[Dict[str, str]], model: str, temperature: float, max_tokens: int) -> str:
        completion = await self.llm_client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens
        )
        return (completion.choices[0].message.content or "").strip()

    async def generate_questions(
        self,
        student: StudentContext,
        topic: TopicContext,
        count: int,
        history: Optional[LearningHistory] = None
    ) -> List[Question]:
        prompt = build_generation_prompt(student, topic, count, history)
        last_error: Optional[Exception] = None

        for attempt in range(1, self.GENERATION_ATTEMPTS + 1):
            model = self.model if attempt == 1 else self.fallback_model
            try:
                content = await self._complete(prompt, model, temperature=0.7, max_tokens=3000)
                parsed = parse_json_response(content)
                raw_questions = parsed.get("questions")
                if not isinstance(raw_questions, list):
                    raise ValueError("Invalid response format: missing questions array")

                questions = valid_questions(raw_questions)
                if not questions:
                    raise ValueError("No valid questions generated after filtering")

                logger.info(f"✅ [QuestionOracle] Generated {len(questions)} questions for '{topic.title}' with {model}")
                return questions
            except Exception as e:
                last_error = e
                logger.warning(f"⚠️ [QuestionOracle] Generation attempt {attempt} with {model} failed: {e}")

        raise GenerationFailure(
            f"Failed to generate questions after {self.GENERATION_ATTEMPTS} attempts: {last_error}"
        )

    async def evaluate_answer(
        self,
        question: Question,
        student_answer: str,
        student: StudentContext
    ) -> Evaluation:
        prompt = build_evaluation_prompt(question, student_answer, student)
        try:
            content = await self._complete(prompt, self.model, temperature=0.3, max_tokens=800)
            evaluation = Evaluation.from_dict(parse_json_response(content))
        except Exception as e:
            logger.warning(f"⚠️ [QuestionOracle] Evaluation failed: {e}")
            raise EvaluationFailure(f"Evaluation failed: {e}") from e

        logger.debug(
            f"✅ [QuestionOracle] Evaluated answer - correct={evaluation.is_correct}, "
            f"score={evaluation.accuracy_score}"
        )
        return evaluation

    async def tutor_reply(
        self,
        question: Question,
        history: Sequence[ConversationMessage],
        message: str,
        student: StudentContext,
        topic: TopicContext
    ) -> str:
        messages = build_chat_messages(question, history, message, student, topic)
        try:
            reply = await self._chat(messages, self.model, temperature=0.7, max_tokens=500)
        except Exception as e:
            logger.warning(f"⚠️ [QuestionOracle] Tutor reply failed: {e}")
            raise ChatFailure(f"Tutor reply failed: {e}") from e

        if not reply:
            raise ChatFailure("Tutor reply was empty")
        return reply

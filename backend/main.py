"""
FastAPI Backend for the Adaptive Math Tutor

REST API over the session progression engine:
- Start, resume and abandon learning sessions
- Generate question batches and evaluate answers
- Retry, advance and review questions
- Tutor chat about the current question
- Progress and badge lookups, current-session lookup

Persistence is Supabase when configured, otherwise in-memory (TUTOR_OFFLINE).
"""

from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from typing import Optional, List, Dict, Any
import os
import sys
import time
import logging
import signal

# Add the adaptive_math_tutor package to Python path
backend_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(backend_dir)
package_src = os.path.join(project_root, 'adaptive_math_tutor', 'src')
if os.path.exists(package_src) and package_src not in sys.path:
    sys.path.insert(0, package_src)

from lib.logger import setup_logging, get_logger

setup_logging(level=logging.INFO, use_colors=True)

logger = get_logger("backend.main")

from lib.supabase_client import get_supabase_client

from adaptive_math_tutor.badges import BADGE_DEFINITIONS, evaluate_badges, get_badge, next_badge
from adaptive_math_tutor.config import TutorConfig
from adaptive_math_tutor.errors import (
    ChatFailure,
    GenerationFailure,
    InvalidTransition,
    SessionNotFound,
    TutorError,
)
from adaptive_math_tutor.learning_models import ConversationMessage, Question
from adaptive_math_tutor.persistence import InMemoryPersistence, SupabasePersistence
from adaptive_math_tutor.question_oracle import OpenAIQuestionOracle
from adaptive_math_tutor.session_engine import (
    CompletionSummary,
    SessionProgressionEngine,
    SubmissionResult,
)
from adaptive_math_tutor.session_manager import SessionManager
from adaptive_math_tutor.session_state import SessionState

# Singletons, built on first use
_session_manager: Optional[SessionManager] = None


def get_session_manager() -> SessionManager:
    """Get or create the SessionManager wired to persistence and the oracle."""
    global _session_manager
    if _session_manager is None:
        config = TutorConfig.from_env()
        if config.offline or not config.has_supabase:
            logger.warning("Supabase not configured, using in-memory persistence")
            persistence = InMemoryPersistence()
        else:
            persistence = SupabasePersistence(get_supabase_client(config))
        engine = SessionProgressionEngine(persistence, OpenAIQuestionOracle(config), config=config)
        _session_manager = SessionManager(engine)
        logger.success("Session manager initialized", data={
            "persistence": type(persistence).__name__,
            "model": config.openai_model,
            "questions_per_batch": config.questions_per_batch,
        })
    return _session_manager


app = FastAPI(
    title="Adaptive Math Tutor API",
    description="REST API for adaptive, LLM-backed mathematics practice sessions",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:3001",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ==================== Error Handling ====================

ERROR_STATUS = {
    SessionNotFound: 404,
    InvalidTransition: 409,
    GenerationFailure: 502,
    ChatFailure: 502,
}


@app.exception_handler(TutorError)
async def tutor_error_handler(request: Request, exc: TutorError):
    status = ERROR_STATUS.get(type(exc), 500)
    logger.warning(f"{type(exc).__name__} on {request.url.path}", data=exc.context())
    return JSONResponse(status_code=status, content={"detail": exc.context()})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    logger.response(response.status_code, request.url.path, time.time() - start_time)
    return response

# ==================== Pydantic Models ====================


class StartSessionRequest(BaseModel):
    student_id: str
    topic_id: str
    session_type: str = "guided_practice"


class GenerateQuestionsRequest(BaseModel):
    count: Optional[int] = None


class AnswerRequest(BaseModel):
    answer: str


class ChatRequest(BaseModel):
    message: str


class QuestionView(BaseModel):
    index: int
    question_text: str
    question_type: str
    difficulty: str
    hints: List[str]
    focuses_on: Optional[str] = None
    # Only revealed once the question is resolved: correct, out of retries, or behind us
    correct_answer: Optional[str] = None
    solution_steps: Optional[List[str]] = None


class SessionView(BaseModel):
    session_id: str
    student_id: str
    topic_id: str
    status: str
    phase: str
    current_question_index: int
    viewing_question_index: int
    reviewing: bool
    total_questions: int
    retry_count: int
    can_retry: bool
    can_advance: bool
    questions_attempted: int
    questions_correct: int
    current_question: Optional[QuestionView] = None
    draft_answer: Optional[str] = None


# ==================== Serialization ====================

def question_view(index: int, question: Question, reveal: bool) -> QuestionView:
    return QuestionView(
        index=index,
        question_text=question.text,
        question_type=question.type,
        difficulty=question.difficulty.value,
        hints=list(question.hints),
        focuses_on=question.focuses_on,
        correct_answer=question.correct_answer if reveal else None,
        solution_steps=list(question.solution_steps) if reveal else None,
    )


def session_view(state: SessionState) -> SessionView:
    current = state.current_question
    index = state.current_question_index
    return SessionView(
        session_id=state.session_id,
        student_id=state.student_id,
        topic_id=state.topic_id,
        status=state.status.value,
        phase=state.phase.value,
        current_question_index=index,
        viewing_question_index=state.viewing_question_index,
        reviewing=state.reviewing,
        total_questions=len(state.questions),
        retry_count=state.retry_count,
        can_retry=state.can_retry(),
        can_advance=state.can_advance(),
        questions_attempted=state.attempted_count(),
        questions_correct=state.correct_count(),
        current_question=question_view(index, current, state.is_resolved(index)) if current else None,
        draft_answer=state.answers.get(index),
    )


def submission_view(state: SessionState, result: SubmissionResult) -> Dict[str, Any]:
    return {
        "evaluation": result.evaluation.to_dict(),
        "quick_check": {
            "likely_correct": result.quick_check.likely_correct,
            "confidence": result.quick_check.confidence,
        },
        "is_fallback": result.is_fallback,
        "can_retry": result.can_retry,
        "can_advance": result.can_advance,
        "session": session_view(state).model_dump(),
    }


def completion_view(summary: CompletionSummary) -> Dict[str, Any]:
    recommendation = summary.recommendation
    return {
        "session_id": summary.session_id,
        "questions_attempted": summary.questions_attempted,
        "questions_correct": summary.questions_correct,
        "accuracy": summary.accuracy,
        "progress": summary.progress.to_dict(),
        "next_batch": {
            "instruction": recommendation.instruction.value if recommendation.instruction else None,
            "recommended_skill_level": recommendation.recommended_skill_level.value,
            "reason": recommendation.reason,
            "recent_accuracy": recommendation.recent_accuracy,
        },
        "badges": sorted(summary.badges),
    }


def badge_view(badge_id: str) -> Dict[str, Any]:
    badge = get_badge(badge_id)
    return {
        "id": badge.id,
        "name": badge.name,
        "description": badge.description,
        "icon": badge.icon,
        "category": badge.category,
        "rarity": badge.rarity,
    }


def message_view(message: ConversationMessage) -> Dict[str, Any]:
    return {
        "role": message.role.value,
        "content": message.content,
        "created_at": message.created_at,
        "question_index": message.metadata.get("question_index"),
    }


# ==================== API Endpoints ====================

@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "Adaptive Math Tutor API",
        "version": "1.0.0",
    }


@app.post("/api/sessions", response_model=SessionView)
async def start_session(body: StartSessionRequest, manager: SessionManager = Depends(get_session_manager)):
    logger.request("POST", "/api/sessions", student_id=body.student_id, data={"topic_id": body.topic_id})
    state = await manager.start_session(body.student_id, body.topic_id, body.session_type)
    return session_view(state)


@app.get("/api/sessions/{session_id}", response_model=SessionView)
async def get_session(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    """Current state, resuming from persistence if the session is not live."""
    async with manager.session(session_id) as state:
        return session_view(state)


@app.post("/api/sessions/{session_id}/questions", response_model=SessionView)
async def generate_questions(
    session_id: str,
    body: Optional[GenerateQuestionsRequest] = None,
    manager: SessionManager = Depends(get_session_manager)
):
    async with manager.session(session_id) as state:
        await manager.engine.load_questions(state, body.count if body else None)
        return session_view(state)


@app.put("/api/sessions/{session_id}/draft", response_model=SessionView)
async def update_draft(session_id: str, body: AnswerRequest, manager: SessionManager = Depends(get_session_manager)):
    async with manager.session(session_id) as state:
        manager.engine.update_draft(state, body.answer)
        return session_view(state)


@app.post("/api/sessions/{session_id}/answers")
async def submit_answer(session_id: str, body: AnswerRequest, manager: SessionManager = Depends(get_session_manager)):
    async with manager.session(session_id) as state:
        result = await manager.engine.submit_answer(state, body.answer)
        return submission_view(state, result)


@app.post("/api/sessions/{session_id}/retry", response_model=SessionView)
async def retry_question(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    async with manager.session(session_id) as state:
        manager.engine.retry(state)
        return session_view(state)


@app.post("/api/sessions/{session_id}/next")
async def next_question(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    """Advance; the response carries a completion summary after the last question."""
    async with manager.session(session_id) as state:
        summary = await manager.engine.advance(state)
        return {
            "session": session_view(state).model_dump(),
            "completion": completion_view(summary) if summary else None,
        }


@app.get("/api/sessions/{session_id}/questions/{index}")
async def review_question(session_id: str, index: int, manager: SessionManager = Depends(get_session_manager)):
    async with manager.session(session_id) as state:
        view = await manager.engine.view_question(state, index)
        return {
            "question": question_view(view.index, view.question, state.is_resolved(view.index)).model_dump(),
            "answer": view.answer,
            "evaluation": view.evaluation.to_dict() if view.evaluation else None,
            "is_current": view.is_current,
            "current_question_index": state.current_question_index,
        }


@app.post("/api/sessions/{session_id}/return", response_model=SessionView)
async def return_to_current(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    async with manager.session(session_id) as state:
        manager.engine.return_to_current(state)
        return session_view(state)


@app.post("/api/sessions/{session_id}/complete")
async def complete_session(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    async with manager.session(session_id) as state:
        summary = await manager.engine.complete(state)
        logger.subsection("Session completed", {
            "session_id": session_id,
            "accuracy": summary.accuracy,
            "skill_level": summary.progress.skill_level.value,
        })
        return completion_view(summary)


@app.post("/api/sessions/{session_id}/chat")
async def chat_with_tutor(session_id: str, body: ChatRequest, manager: SessionManager = Depends(get_session_manager)):
    """Ask the tutor about the current question. Never changes progress."""
    async with manager.session(session_id) as state:
        exchange = await manager.engine.chat(state, body.message)
        return {
            "question_index": exchange.question_index,
            "message": message_view(exchange.message),
            "reply": message_view(exchange.reply),
        }


@app.get("/api/sessions/{session_id}/chat")
async def get_conversation(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    async with manager.session(session_id) as state:
        messages = await manager.engine.load_conversation(state)
        return {"messages": [message_view(m) for m in messages]}


@app.post("/api/sessions/{session_id}/abandon", response_model=SessionView)
async def abandon_session(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    async with manager.session(session_id) as state:
        await manager.engine.abandon(state)
        return session_view(state)


@app.get("/api/progress/{student_id}/{topic_id}")
async def get_progress(student_id: str, topic_id: str, manager: SessionManager = Depends(get_session_manager)):
    progress = await manager.engine.persistence.get_progress(student_id, topic_id)
    if progress is None:
        return {"student_id": student_id, "topic_id": topic_id, "skill_level": "not_started",
                "confidence_score": 0.0, "questions_attempted": 0, "questions_correct": 0}
    return progress.to_dict()


@app.get("/api/students/{student_id}/badges")
async def get_badges(student_id: str, manager: SessionManager = Depends(get_session_manager)):
    """Earned badges (recomputed from statistics) and the next one to aim for."""
    stats = await manager.engine.persistence.get_student_stats(student_id)
    earned = evaluate_badges(stats)
    upcoming = next_badge(earned)
    return {
        "earned": [badge_view(b.id) for b in BADGE_DEFINITIONS if b.id in earned],
        "next": badge_view(upcoming.id) if upcoming else None,
        "stats": {
            "total_questions": stats.total_questions,
            "correct_questions": stats.correct_questions,
            "accuracy": stats.accuracy,
            "topics_mastered": stats.topics_mastered,
            "current_streak": stats.current_streak,
            "daily_streak": stats.daily_streak,
        },
    }


@app.get("/api/students/{student_id}/current-session")
async def get_current_session(
    student_id: str,
    topic_id: Optional[str] = None,
    manager: SessionManager = Depends(get_session_manager)
):
    """The session to resume on the dashboard, or null when nothing is in progress."""
    row = await manager.engine.find_resumable_session(student_id, topic_id)
    if row is None:
        return {"session": None, "topic": None}
    async with manager.session(row["id"]) as state:
        return {"session": session_view(state).model_dump(), "topic": row.get("topic")}


if __name__ == "__main__":
    import uvicorn

    def handle_exit(*args):
        """Handle graceful shutdown."""
        logger.section("SERVER SHUTDOWN", {"reason": "signal received"})
        sys.exit(0)

    signal.signal(signal.SIGINT, handle_exit)
    signal.signal(signal.SIGTERM, handle_exit)

    try:
        uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
    except KeyboardInterrupt:
        logger.info("🛑 Server stopped.")
        sys.exit(0)

"""
Persistence for Learning Sessions

The session engine reaches the database only through the Persistence
protocol. SupabasePersistence talks to the Supabase tables (students,
curriculum_topics, student_progress, learning_sessions,
question_interactions, conversation_history); InMemoryPersistence keeps the
same contract in dictionaries for tests and offline runs.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence

from adaptive_math_tutor.badges import BadgeStats, answer_streak, daily_streak
from adaptive_math_tutor.errors import SessionNotFound
from adaptive_math_tutor.learning_models import (
    ConversationMessage,
    Evaluation,
    LearningHistory,
    Question,
    SkillLevel,
    StudentProgressRecord,
    TopicContext,
)
from adaptive_math_tutor.session_state import SessionStatus

logger = logging.getLogger(__name__)


@dataclass
class InteractionRecord:
    """One evaluated answer, ready to be stored."""
    session_id: str
    student_id: str
    topic_id: str
    question: Question
    student_answer: str
    evaluation: Evaluation
    time_spent_seconds: int = 0
    # Retries only update rows of the batch started at this stamp
    batch_started_at: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "student_id": self.student_id,
            "topic_id": self.topic_id,
            "question_text": self.question.text,
            "question_type": self.question.type,
            "difficulty_level": self.question.difficulty.value,
            "correct_answer": self.question.correct_answer or None,
            "student_answer": self.student_answer,
            "is_correct": self.evaluation.is_correct,
            "llm_evaluation": json.dumps(self.evaluation.to_dict()),
            "llm_feedback": self.evaluation.feedback,
            "time_spent_seconds": self.time_spent_seconds,
        }


def session_summary(
    attempted: int,
    correct: int,
    questions: Sequence[Question]
) -> Dict[str, Any]:
    """performance_summary payload written when a session completes."""
    return {
        "total": attempted,
        "correct": correct,
        "accuracy": round(correct / attempted * 100) if attempted > 0 else 0,
        "concepts_covered": [q.focuses_on for q in questions if q.focuses_on],
        "questions": [q.to_dict() for q in questions],
    }


def _dedupe(items: Sequence[str]) -> List[str]:
    seen = set()
    ordered = []
    for item in items:
        if item not in seen:
            seen.add(item)
            ordered.append(item)
    return ordered


def _stats_from_rows(
    interaction_rows: Sequence[Dict[str, Any]],
    mastered_topics: int,
    session_days: Sequence[date],
    today: date
) -> BadgeStats:
    """Aggregate badge statistics. interaction_rows are newest first."""
    evaluated = [row for row in interaction_rows if row.get("is_correct") is not None]
    total = len(evaluated)
    correct = sum(1 for row in evaluated if row["is_correct"])
    return BadgeStats(
        total_questions=total,
        correct_questions=correct,
        accuracy=round(correct / total * 100) if total > 0 else 0,
        topics_mastered=mastered_topics,
        current_streak=answer_streak([bool(row["is_correct"]) for row in evaluated]),
        daily_streak=daily_streak(session_days, today),
    )


def _to_day(value) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date()


class Persistence(Protocol):
    """Database operations the session engine depends on."""

    async def create_session(self, student_id: str, topic_id: str, session_type: str = "guided_practice",
                             llm_model: Optional[str] = None) -> Dict[str, Any]: ...

    async def load_session(self, session_id: str) -> Dict[str, Any]: ...

    async def save_question_batch(self, session_id: str, questions: Sequence[Question]) -> str:
        """Store the batch snapshot and return its start stamp."""
        ...

    async def load_interactions(self, session_id: str) -> List[Dict[str, Any]]: ...

    async def save_interaction(self, record: InteractionRecord) -> Optional[Dict[str, Any]]: ...

    async def get_progress(self, student_id: str, topic_id: str) -> Optional[StudentProgressRecord]: ...

    async def upsert_progress(self, record: StudentProgressRecord) -> None: ...

    async def complete_session(self, session_id: str, attempted: int, correct: int,
                               questions: Sequence[Question]) -> None: ...

    async def update_session_status(self, session_id: str, status: SessionStatus) -> None: ...

    async def load_recent_session_accuracies(self, student_id: str, topic_id: str,
                                             limit: int = 3) -> List[float]: ...

    async def load_learning_history(self, student_id: str, topic_id: str) -> LearningHistory: ...

    async def get_topic(self, topic_id: str) -> TopicContext: ...

    async def get_student(self, student_id: str) -> Optional[Dict[str, Any]]: ...

    async def get_student_stats(self, student_id: str) -> BadgeStats: ...

    async def find_current_session(self, student_id: str,
                                   topic_id: Optional[str] = None) -> Optional[Dict[str, Any]]: ...

    async def save_conversation_message(self, message: ConversationMessage) -> Optional[ConversationMessage]: ...

    async def load_conversation(self, session_id: str) -> List[ConversationMessage]: ...


class SupabasePersistence:
    """
    Persistence backed by Supabase.

    Writes that fail are logged and reported as None so a lost interaction
    row never aborts a running session; missing sessions and topics raise
    SessionNotFound.
    """

    def __init__(self, supabase_client):
        """
        Args:
            supabase_client: Supabase client instance
        """
        self.supabase = supabase_client

    async def create_session(
        self,
        student_id: str,
        topic_id: str,
        session_type: str = "guided_practice",
        llm_model: Optional[str] = None
    ) -> Dict[str, Any]:
        result = self.supabase.table('learning_sessions').insert({
            "student_id": student_id,
            "topic_id": topic_id,
            "session_type": session_type,
            "status": SessionStatus.IN_PROGRESS.value,
            "llm_model": llm_model,
        }).execute()

        if not result.data:
            raise RuntimeError("Failed to create session")

        logger.info(f"✅ [Persistence] Created session {result.data[0]['id']}")
        return result.data[0]

    async def load_session(self, session_id: str) -> Dict[str, Any]:
        result = self.supabase.table('learning_sessions') \
            .select('*') \
            .eq('id', session_id) \
            .execute()

        if not result.data:
            raise SessionNotFound("Session not found", session_id=session_id)
        return result.data[0]

    async def save_question_batch(self, session_id: str, questions: Sequence[Question]) -> str:
        started_at = datetime.now(timezone.utc).isoformat()
        self.supabase.table('learning_sessions').update({
            "performance_summary": {
                "questions": [q.to_dict() for q in questions],
                "batch_started_at": started_at,
            },
            "updated_at": started_at,
        }).eq('id', session_id).execute()
        return started_at

    async def load_interactions(self, session_id: str) -> List[Dict[str, Any]]:
        result = self.supabase.table('question_interactions') \
            .select('*') \
            .eq('session_id', session_id) \
            .order('created_at', desc=False) \
            .execute()
        return result.data or []

    async def save_interaction(self, record: InteractionRecord) -> Optional[Dict[str, Any]]:
        """
        Store an evaluated answer.

        A retry on the same question of the current batch updates the
        existing row instead of inserting a second one. Rows from earlier
        batches with the same text are left alone.
        """
        row = record.to_row()
        try:
            query = self.supabase.table('question_interactions') \
                .select('id') \
                .eq('session_id', record.session_id) \
                .eq('question_text', record.question.text)
            if record.batch_started_at:
                query = query.gte('created_at', record.batch_started_at)
            existing = query.order('created_at', desc=True).limit(1).execute()

            if existing.data:
                result = self.supabase.table('question_interactions') \
                    .update({
                        "student_answer": row["student_answer"],
                        "is_correct": row["is_correct"],
                        "llm_evaluation": row["llm_evaluation"],
                        "llm_feedback": row["llm_feedback"],
                    }) \
                    .eq('id', existing.data[0]['id']) \
                    .execute()
                logger.debug("✅ [Persistence] Updated existing question interaction (retry)")
            else:
                result = self.supabase.table('question_interactions').insert(row).execute()
                self._refresh_questions_completed(record.session_id)
                logger.debug("✅ [Persistence] Saved new question interaction")

            return result.data[0] if result.data else None
        except Exception as e:
            logger.error(f"❌ [Persistence] Error saving question interaction: {e}", exc_info=True)
            return None

    def _refresh_questions_completed(self, session_id: str):
        count_result = self.supabase.table('question_interactions') \
            .select('id', count='exact') \
            .eq('session_id', session_id) \
            .execute()
        self.supabase.table('learning_sessions').update({
            "questions_completed": count_result.count or 0,
            "updated_at": datetime.now().isoformat(),
        }).eq('id', session_id).execute()

    async def get_progress(self, student_id: str, topic_id: str) -> Optional[StudentProgressRecord]:
        result = self.supabase.table('student_progress') \
            .select('*') \
            .eq('student_id', student_id) \
            .eq('topic_id', topic_id) \
            .execute()
        if not result.data:
            return None
        return StudentProgressRecord.from_dict(result.data[0])

    async def upsert_progress(self, record: StudentProgressRecord) -> None:
        try:
            self.supabase.table('student_progress') \
                .upsert(record.to_dict(), on_conflict='student_id,topic_id') \
                .execute()
            logger.info(
                f"✅ [Persistence] Progress for {record.topic_id}: {record.skill_level.value} "
                f"(confidence={record.confidence_score:.2f}, attempted={record.questions_attempted})"
            )
        except Exception as e:
            logger.error(f"❌ [Persistence] Error upserting progress: {e}", exc_info=True)

    async def complete_session(
        self,
        session_id: str,
        attempted: int,
        correct: int,
        questions: Sequence[Question]
    ) -> None:
        self.supabase.table('learning_sessions').update({
            "status": SessionStatus.COMPLETED.value,
            "ended_at": datetime.now().isoformat(),
            "questions_completed": attempted,
            "performance_summary": session_summary(attempted, correct, questions),
        }).eq('id', session_id).execute()

    async def update_session_status(self, session_id: str, status: SessionStatus) -> None:
        update_data: Dict[str, Any] = {"status": status.value}
        if status != SessionStatus.IN_PROGRESS:
            update_data["ended_at"] = datetime.now().isoformat()
        self.supabase.table('learning_sessions').update(update_data).eq('id', session_id).execute()

    def _completed_sessions(self, student_id: str, topic_id: str, limit: Optional[int] = None):
        query = self.supabase.table('learning_sessions') \
            .select('performance_summary, ended_at') \
            .eq('student_id', student_id) \
            .eq('topic_id', topic_id) \
            .eq('status', SessionStatus.COMPLETED.value) \
            .order('ended_at', desc=True)
        if limit:
            query = query.limit(limit)
        return query.execute().data or []

    async def load_recent_session_accuracies(
        self,
        student_id: str,
        topic_id: str,
        limit: int = 3
    ) -> List[float]:
        try:
            sessions = self._completed_sessions(student_id, topic_id, limit)
        except Exception as e:
            logger.warning(f"⚠️ [Persistence] Could not load session history: {e}")
            return []
        return [
            float(s["performance_summary"]["accuracy"])
            for s in sessions
            if isinstance(s.get("performance_summary"), dict)
            and s["performance_summary"].get("accuracy") is not None
        ]

    async def load_learning_history(self, student_id: str, topic_id: str) -> LearningHistory:
        try:
            sessions = self._completed_sessions(student_id, topic_id)
        except Exception as e:
            logger.warning(f"⚠️ [Persistence] Could not load learning history: {e}")
            return LearningHistory()

        concepts: List[str] = []
        for s in sessions:
            summary = s.get("performance_summary")
            if isinstance(summary, dict):
                concepts.extend(summary.get("concepts_covered") or [])
        return LearningHistory(concepts_covered=_dedupe(concepts), total_sessions=len(sessions))

    async def get_topic(self, topic_id: str) -> TopicContext:
        result = self.supabase.table('curriculum_topics').select('*').eq('id', topic_id).execute()
        if not result.data:
            raise SessionNotFound(f"Topic not found: {topic_id}")
        return TopicContext.from_dict(result.data[0])

    async def get_student(self, student_id: str) -> Optional[Dict[str, Any]]:
        result = self.supabase.table('students').select('*').eq('id', student_id).execute()
        return result.data[0] if result.data else None

    async def get_student_stats(self, student_id: str) -> BadgeStats:
        interactions = self.supabase.table('question_interactions') \
            .select('is_correct, created_at') \
            .eq('student_id', student_id) \
            .order('created_at', desc=True) \
            .execute()
        mastered = self.supabase.table('student_progress') \
            .select('id') \
            .eq('student_id', student_id) \
            .eq('skill_level', SkillLevel.MASTERED.value) \
            .execute()
        sessions = self.supabase.table('learning_sessions') \
            .select('started_at') \
            .eq('student_id', student_id) \
            .execute()

        session_days = [d for d in (_to_day(s.get("started_at")) for s in sessions.data or []) if d]
        return _stats_from_rows(
            interactions.data or [],
            len(mastered.data or []),
            session_days,
            date.today()
        )

    async def find_current_session(self, student_id: str, topic_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Most recently started in-progress session, optionally on one topic."""
        query = self.supabase.table('learning_sessions') \
            .select('*, topic:curriculum_topics(*)') \
            .eq('student_id', student_id) \
            .eq('status', SessionStatus.IN_PROGRESS.value)
        if topic_id:
            query = query.eq('topic_id', topic_id)
        result = query.order('started_at', desc=True).limit(1).execute()
        return result.data[0] if result.data else None

    async def save_conversation_message(self, message: ConversationMessage) -> Optional[ConversationMessage]:
        try:
            result = self.supabase.table('conversation_history').insert(message.to_row()).execute()
        except Exception as e:
            logger.error(f"❌ [Persistence] Error saving conversation message: {e}", exc_info=True)
            return None
        return ConversationMessage.from_row(result.data[0]) if result.data else None

    async def load_conversation(self, session_id: str) -> List[ConversationMessage]:
        try:
            result = self.supabase.table('conversation_history') \
                .select('*') \
                .eq('session_id', session_id) \
                .order('created_at', desc=False) \
                .execute()
        except Exception as e:
            logger.warning(f"⚠️ [Persistence] Could not load conversation history: {e}")
            return []
        return [ConversationMessage.from_row(row) for row in result.data or []]


class InMemoryPersistence:
    """Dictionary-backed Persistence with the same contract as Supabase."""

    def __init__(self):
        self.students: Dict[str, Dict[str, Any]] = {}
        self.topics: Dict[str, Dict[str, Any]] = {}
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.interactions: List[Dict[str, Any]] = []
        self.progress: Dict[tuple, StudentProgressRecord] = {}
        self.conversations: List[ConversationMessage] = []
        # Completion order, timestamps can tie
        self._completion_seq = 0
        self._last_stamp: Optional[datetime] = None

    def _stamp(self) -> str:
        """Strictly increasing created_at values, so string order is insertion order."""
        now = datetime.now()
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now.isoformat(timespec="microseconds")

    def add_student(self, student_id: str, first_name: str = "", grade_level: str = "", **extra) -> Dict[str, Any]:
        self.students[student_id] = {"id": student_id, "first_name": first_name, "grade_level": grade_level, **extra}
        return self.students[student_id]

    def add_topic(self, topic_id: str, title: str = "", **extra) -> Dict[str, Any]:
        self.topics[topic_id] = {"id": topic_id, "title": title, **extra}
        return self.topics[topic_id]

    async def create_session(
        self,
        student_id: str,
        topic_id: str,
        session_type: str = "guided_practice",
        llm_model: Optional[str] = None
    ) -> Dict[str, Any]:
        session_id = str(uuid.uuid4())
        now = self._stamp()
        self.sessions[session_id] = {
            "id": session_id,
            "student_id": student_id,
            "topic_id": topic_id,
            "session_type": session_type,
            "status": SessionStatus.IN_PROGRESS.value,
            "started_at": now,
            "ended_at": None,
            "questions_completed": 0,
            "performance_summary": None,
            "llm_model": llm_model,
        }
        return dict(self.sessions[session_id])

    async def load_session(self, session_id: str) -> Dict[str, Any]:
        if session_id not in self.sessions:
            raise SessionNotFound("Session not found", session_id=session_id)
        return dict(self.sessions[session_id])

    async def save_question_batch(self, session_id: str, questions: Sequence[Question]) -> str:
        started_at = self._stamp()
        if session_id in self.sessions:
            self.sessions[session_id]["performance_summary"] = {
                "questions": [q.to_dict() for q in questions],
                "batch_started_at": started_at,
            }
        return started_at

    async def load_interactions(self, session_id: str) -> List[Dict[str, Any]]:
        return [dict(row) for row in self.interactions if row["session_id"] == session_id]

    async def save_interaction(self, record: InteractionRecord) -> Optional[Dict[str, Any]]:
        row = record.to_row()
        for existing in reversed(self.interactions):
            if existing["session_id"] != record.session_id or existing["question_text"] != record.question.text:
                continue
            if record.batch_started_at and existing["created_at"] < record.batch_started_at:
                break
            existing.update({
                "student_answer": row["student_answer"],
                "is_correct": row["is_correct"],
                "llm_evaluation": row["llm_evaluation"],
                "llm_feedback": row["llm_feedback"],
            })
            return dict(existing)

        row["id"] = str(uuid.uuid4())
        row["created_at"] = self._stamp()
        self.interactions.append(row)
        if record.session_id in self.sessions:
            self.sessions[record.session_id]["questions_completed"] = len(
                [r for r in self.interactions if r["session_id"] == record.session_id]
            )
        return dict(row)

    async def get_progress(self, student_id: str, topic_id: str) -> Optional[StudentProgressRecord]:
        return self.progress.get((student_id, topic_id))

    async def upsert_progress(self, record: StudentProgressRecord) -> None:
        self.progress[(record.student_id, record.topic_id)] = record

    async def complete_session(
        self,
        session_id: str,
        attempted: int,
        correct: int,
        questions: Sequence[Question]
    ) -> None:
        session = self.sessions[session_id]
        self._completion_seq += 1
        session.update({
            "status": SessionStatus.COMPLETED.value,
            "ended_at": datetime.now().isoformat(),
            "questions_completed": attempted,
            "performance_summary": session_summary(attempted, correct, questions),
            "completion_seq": self._completion_seq,
        })

    async def update_session_status(self, session_id: str, status: SessionStatus) -> None:
        session = self.sessions[session_id]
        session["status"] = status.value
        if status != SessionStatus.IN_PROGRESS:
            session["ended_at"] = datetime.now().isoformat()

    def _completed_sessions(self, student_id: str, topic_id: str) -> List[Dict[str, Any]]:
        completed = [
            s for s in self.sessions.values()
            if s["student_id"] == student_id
            and s["topic_id"] == topic_id
            and s["status"] == SessionStatus.COMPLETED.value
        ]
        return sorted(completed, key=lambda s: s.get("completion_seq", 0), reverse=True)

    async def load_recent_session_accuracies(
        self,
        student_id: str,
        topic_id: str,
        limit: int = 3
    ) -> List[float]:
        return [
            float(s["performance_summary"]["accuracy"])
            for s in self._completed_sessions(student_id, topic_id)[:limit]
        ]

    async def load_learning_history(self, student_id: str, topic_id: str) -> LearningHistory:
        sessions = self._completed_sessions(student_id, topic_id)
        concepts: List[str] = []
        for s in sessions:
            concepts.extend(s["performance_summary"].get("concepts_covered") or [])
        return LearningHistory(concepts_covered=_dedupe(concepts), total_sessions=len(sessions))

    async def get_topic(self, topic_id: str) -> TopicContext:
        if topic_id not in self.topics:
            raise SessionNotFound(f"Topic not found: {topic_id}")
        return TopicContext.from_dict(self.topics[topic_id])

    async def get_student(self, student_id: str) -> Optional[Dict[str, Any]]:
        return self.students.get(student_id)

    async def get_student_stats(self, student_id: str) -> BadgeStats:
        rows = [r for r in reversed(self.interactions) if r["student_id"] == student_id]
        mastered = sum(
            1 for (sid, _), record in self.progress.items()
            if sid == student_id and record.skill_level == SkillLevel.MASTERED
        )
        session_days = [
            _to_day(s["started_at"]) for s in self.sessions.values() if s["student_id"] == student_id
        ]
        return _stats_from_rows(rows, mastered, session_days, date.today())

    async def find_current_session(self, student_id: str, topic_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        candidates = [
            s for s in self.sessions.values()
            if s["student_id"] == student_id
            and s["status"] == SessionStatus.IN_PROGRESS.value
            and (topic_id is None or s["topic_id"] == topic_id)
        ]
        if not candidates:
            return None
        latest = dict(max(candidates, key=lambda s: s["started_at"]))
        latest["topic"] = self.topics.get(latest["topic_id"])
        return latest

    async def save_conversation_message(self, message: ConversationMessage) -> Optional[ConversationMessage]:
        message.created_at = self._stamp()
        self.conversations.append(message)
        return message

    async def load_conversation(self, session_id: str) -> List[ConversationMessage]:
        return [m for m in self.conversations if m.session_id == session_id]

"""
Unit Tests for Persistence

Tests SupabasePersistence against a recording fake of the Supabase query
builder, plus the helpers shared with InMemoryPersistence.
"""

import pytest
import json
import sys
import os
from datetime import date
from types import SimpleNamespace

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "adaptive_math_tutor", "src"))

from adaptive_math_tutor.errors import SessionNotFound
from adaptive_math_tutor.learning_models import (
    ConversationMessage,
    ConversationRole,
    Evaluation,
    Question,
    SkillLevel,
    StudentProgressRecord,
)
from adaptive_math_tutor.persistence import (
    InMemoryPersistence,
    InteractionRecord,
    SupabasePersistence,
    _stats_from_rows,
    session_summary,
)
from adaptive_math_tutor.session_state import SessionStatus


class FakeQuery:
    """Chainable query that records calls and returns queued responses."""

    def __init__(self, client, table):
        self.client = client
        self.table_name = table
        self.calls = []

    def __getattr__(self, name):
        def method(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self
        return method

    def execute(self):
        self.client.executed.append(self)
        queue = self.client.responses.get(self.table_name) or []
        if queue:
            return queue.pop(0)
        return SimpleNamespace(data=[], count=0)

    def called(self, name):
        return [call for call in self.calls if call[0] == name]


class FakeSupabase:

    def __init__(self):
        self.responses = {}
        self.executed = []

    def respond(self, table, data=None, count=None):
        self.responses.setdefault(table, []).append(SimpleNamespace(data=data or [], count=count))

    def table(self, name):
        return FakeQuery(self, name)

    def queries(self, table, method):
        return [q for q in self.executed if q.table_name == table and q.called(method)]


class BrokenSupabase:

    def table(self, name):
        raise ConnectionError("database unavailable")


@pytest.fixture
def supabase():
    return FakeSupabase()


@pytest.fixture
def persistence(supabase):
    return SupabasePersistence(supabase)


def make_record(is_correct=True, batch_started_at=None):
    return InteractionRecord(
        session_id="session-1",
        student_id="student-1",
        topic_id="topic-1",
        question=Question(text="What is 6 x 7?", correct_answer="42"),
        student_answer="42" if is_correct else "48",
        evaluation=Evaluation(is_correct=is_correct, accuracy_score=1.0 if is_correct else 0.0, feedback="ok"),
        batch_started_at=batch_started_at,
    )


class TestSupabasePersistence:

    @pytest.mark.asyncio
    async def test_load_session_missing(self, persistence):
        with pytest.raises(SessionNotFound):
            await persistence.load_session("missing")

    @pytest.mark.asyncio
    async def test_load_session(self, persistence, supabase):
        supabase.respond("learning_sessions", [{"id": "session-1", "status": "in_progress"}])

        row = await persistence.load_session("session-1")

        assert row["id"] == "session-1"

    @pytest.mark.asyncio
    async def test_create_session(self, persistence, supabase):
        supabase.respond("learning_sessions", [{"id": "session-9"}])

        row = await persistence.create_session("student-1", "topic-1", llm_model="gpt-4o-mini")

        assert row["id"] == "session-9"
        inserted = supabase.queries("learning_sessions", "insert")[0].called("insert")[0][1][0]
        assert inserted["status"] == "in_progress"
        assert inserted["llm_model"] == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_save_interaction_inserts_new_row(self, persistence, supabase):
        supabase.respond("question_interactions", [])                      # no existing row
        supabase.respond("question_interactions", [{"id": "row-1"}])       # insert
        supabase.respond("question_interactions", [{"id": "row-1"}], count=3)  # count

        saved = await persistence.save_interaction(make_record())

        assert saved == {"id": "row-1"}
        inserted = supabase.queries("question_interactions", "insert")[0].called("insert")[0][1][0]
        assert inserted["question_text"] == "What is 6 x 7?"
        assert inserted["is_correct"] is True
        assert json.loads(inserted["llm_evaluation"])["feedback"] == "ok"

        session_update = supabase.queries("learning_sessions", "update")[0].called("update")[0][1][0]
        assert session_update["questions_completed"] == 3

    @pytest.mark.asyncio
    async def test_save_interaction_updates_on_retry(self, persistence, supabase):
        supabase.respond("question_interactions", [{"id": "row-1"}])
        supabase.respond("question_interactions", [{"id": "row-1", "is_correct": False}])

        await persistence.save_interaction(make_record(is_correct=False))

        assert supabase.queries("question_interactions", "insert") == []
        update = supabase.queries("question_interactions", "update")[0]
        assert update.called("eq")[0][1] == ("id", "row-1")
        assert update.called("update")[0][1][0]["student_answer"] == "48"

    @pytest.mark.asyncio
    async def test_save_interaction_logs_and_returns_none_on_error(self):
        persistence = SupabasePersistence(BrokenSupabase())

        assert await persistence.save_interaction(make_record()) is None

    @pytest.mark.asyncio
    async def test_save_interaction_looks_only_at_current_batch(self, persistence, supabase):
        supabase.respond("question_interactions", [])
        supabase.respond("question_interactions", [{"id": "row-2"}])
        supabase.respond("question_interactions", [], count=2)

        await persistence.save_interaction(make_record(batch_started_at="2026-10-18T09:30:00+00:00"))

        lookup = supabase.queries("question_interactions", "select")[0]
        assert lookup.called("gte")[0][1] == ("created_at", "2026-10-18T09:30:00+00:00")
        assert len(supabase.queries("question_interactions", "insert")) == 1

    @pytest.mark.asyncio
    async def test_save_question_batch_returns_stamp(self, persistence, supabase):
        stamp = await persistence.save_question_batch("session-1", [Question(text="What is 2 + 2?", correct_answer="4")])

        update = supabase.queries("learning_sessions", "update")[0].called("update")[0][1][0]
        assert update["performance_summary"]["batch_started_at"] == stamp
        assert update["performance_summary"]["questions"][0]["question_text"] == "What is 2 + 2?"

    @pytest.mark.asyncio
    async def test_find_current_session(self, persistence, supabase):
        supabase.respond("learning_sessions", [{"id": "session-2", "topic": {"title": "Fractions"}}])

        row = await persistence.find_current_session("student-1", "topic-1")

        assert row["topic"]["title"] == "Fractions"
        query = supabase.queries("learning_sessions", "select")[0]
        assert "curriculum_topics" in query.called("select")[0][1][0]
        assert ("status", "in_progress") in [call[1] for call in query.called("eq")]
        assert ("topic_id", "topic-1") in [call[1] for call in query.called("eq")]
        assert query.called("order")[0] == ("order", ("started_at",), {"desc": True})

    @pytest.mark.asyncio
    async def test_find_current_session_none(self, persistence):
        assert await persistence.find_current_session("student-1") is None

    @pytest.mark.asyncio
    async def test_conversation_round_trip(self, persistence, supabase):
        supabase.respond("conversation_history", [{
            "session_id": "session-1", "student_id": "student-1", "role": "user",
            "content": "Why?", "metadata": {"question_index": 2}, "created_at": "2026-10-18T09:31:00+00:00",
        }])
        supabase.respond("conversation_history", [
            {"session_id": "session-1", "student_id": "student-1", "role": "user", "content": "Why?"},
            {"session_id": "session-1", "student_id": "student-1", "role": "assistant", "content": "Try 3 + 3."},
        ])

        saved = await persistence.save_conversation_message(ConversationMessage(
            session_id="session-1", student_id="student-1", role=ConversationRole.USER,
            content="Why?", metadata={"question_index": 2},
        ))
        history = await persistence.load_conversation("session-1")

        inserted = supabase.queries("conversation_history", "insert")[0].called("insert")[0][1][0]
        assert inserted["role"] == "user"
        assert inserted["metadata"] == {"question_index": 2}
        assert saved.created_at == "2026-10-18T09:31:00+00:00"
        assert [m.role for m in history] == [ConversationRole.USER, ConversationRole.ASSISTANT]
        assert history[1].metadata == {}

    @pytest.mark.asyncio
    async def test_conversation_errors_degrade(self):
        persistence = SupabasePersistence(BrokenSupabase())
        message = ConversationMessage(
            session_id="session-1", student_id="student-1", role=ConversationRole.USER, content="Hi"
        )

        assert await persistence.save_conversation_message(message) is None
        assert await persistence.load_conversation("session-1") == []

    @pytest.mark.asyncio
    async def test_upsert_progress(self, persistence, supabase):
        record = StudentProgressRecord("student-1", "topic-1", SkillLevel.PRACTICING, 0.8, 5, 4)

        await persistence.upsert_progress(record)

        upsert = supabase.queries("student_progress", "upsert")[0].called("upsert")[0]
        assert upsert[1][0]["skill_level"] == "practicing"
        assert "mastered_at" not in upsert[1][0]
        assert upsert[2]["on_conflict"] == "student_id,topic_id"

    @pytest.mark.asyncio
    async def test_get_progress(self, persistence, supabase):
        supabase.respond("student_progress", [{
            "student_id": "student-1", "topic_id": "topic-1", "skill_level": "mastered",
            "confidence_score": 0.93, "questions_attempted": 25, "questions_correct": 23,
            "mastered_at": "2024-04-02T09:30:00+00:00",
        }])

        progress = await persistence.get_progress("student-1", "topic-1")

        assert progress.skill_level == SkillLevel.MASTERED
        assert progress.mastered_at.year == 2024

    @pytest.mark.asyncio
    async def test_recent_accuracies_skip_malformed_summaries(self, persistence, supabase):
        supabase.respond("learning_sessions", [
            {"performance_summary": {"accuracy": 80}},
            {"performance_summary": None},
            {"performance_summary": {"accuracy": 60}},
        ])

        assert await persistence.load_recent_session_accuracies("student-1", "topic-1") == [80.0, 60.0]

    @pytest.mark.asyncio
    async def test_history_reads_degrade_to_empty(self):
        persistence = SupabasePersistence(BrokenSupabase())

        assert await persistence.load_recent_session_accuracies("student-1", "topic-1") == []
        history = await persistence.load_learning_history("student-1", "topic-1")
        assert history.total_sessions == 0

    @pytest.mark.asyncio
    async def test_complete_session(self, persistence, supabase):
        questions = [Question(text="What is 2 + 2?", correct_answer="4", focuses_on="addition")]

        await persistence.complete_session("session-1", 5, 4, questions)

        update = supabase.queries("learning_sessions", "update")[0].called("update")[0][1][0]
        assert update["status"] == SessionStatus.COMPLETED.value
        assert update["performance_summary"]["accuracy"] == 80
        assert update["performance_summary"]["concepts_covered"] == ["addition"]


class TestHelpers:

    def test_session_summary_without_attempts(self):
        summary = session_summary(0, 0, [])

        assert summary["accuracy"] == 0
        assert summary["questions"] == []

    def test_stats_from_rows(self):
        rows = [
            {"is_correct": True},
            {"is_correct": True},
            {"is_correct": None},
            {"is_correct": False},
            {"is_correct": True},
        ]
        today = date(2024, 5, 10)

        stats = _stats_from_rows(rows, 2, [today, date(2024, 5, 9)], today)

        assert stats.total_questions == 4
        assert stats.correct_questions == 3
        assert stats.accuracy == 75
        assert stats.current_streak == 2
        assert stats.topics_mastered == 2
        assert stats.daily_streak == 2


class TestInMemoryPersistence:

    @pytest.mark.asyncio
    async def test_unknown_topic(self):
        with pytest.raises(SessionNotFound):
            await InMemoryPersistence().get_topic("nope")

    @pytest.mark.asyncio
    async def test_recent_accuracies_newest_first(self):
        store = InMemoryPersistence()
        for correct in (2, 5, 3):
            row = await store.create_session("student-1", "topic-1")
            await store.complete_session(row["id"], 5, correct, [])

        assert await store.load_recent_session_accuracies("student-1", "topic-1", limit=2) == [60.0, 100.0]

    @pytest.mark.asyncio
    async def test_retry_update_stays_in_current_batch(self):
        store = InMemoryPersistence()
        first_batch = await store.save_question_batch("session-1", [])
        await store.save_interaction(make_record(is_correct=False, batch_started_at=first_batch))
        await store.save_interaction(make_record(is_correct=True, batch_started_at=first_batch))
        assert len(store.interactions) == 1

        second_batch = await store.save_question_batch("session-1", [])
        await store.save_interaction(make_record(is_correct=False, batch_started_at=second_batch))

        rows = await store.load_interactions("session-1")
        assert [row["is_correct"] for row in rows] == [True, False]

    @pytest.mark.asyncio
    async def test_conversation_is_per_session(self):
        store = InMemoryPersistence()
        for session_id in ("session-1", "session-2", "session-1"):
            await store.save_conversation_message(ConversationMessage(
                session_id=session_id, student_id="student-1", role=ConversationRole.USER, content=session_id
            ))

        history = await store.load_conversation("session-1")

        assert [m.content for m in history] == ["session-1", "session-1"]
        assert history[0].created_at < history[1].created_at

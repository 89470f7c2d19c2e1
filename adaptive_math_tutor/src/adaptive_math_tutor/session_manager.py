"""
Session Manager

Keeps live SessionState objects in memory and reconstructs them from
persistence when they are missing (server restart, another instance).
Completed and abandoned sessions are dropped from memory once released.
Each session gets its own asyncio.Lock so calls for the same session are
serialized while different sessions proceed concurrently.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from adaptive_math_tutor.session_engine import SessionProgressionEngine
from adaptive_math_tutor.session_state import SessionState, SessionStatus

logger = logging.getLogger(__name__)


class SessionManager:
    """
    Manages live sessions for the API layer.

    Usage:
        async with manager.session(session_id) as state:
            await engine.submit_answer(state, answer)

    A session's lock lives as long as someone holds or waits for it, or the
    session is cached. It is never replaced while in use, so eviction cannot
    let two callers run on the same session at once.
    """

    def __init__(self, engine: SessionProgressionEngine):
        """
        Args:
            engine: Engine used to start and resume sessions
        """
        self.engine = engine
        self._sessions: Dict[str, SessionState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # Holders plus waiters per session lock
        self._lock_users: Dict[str, int] = {}

    def _acquire_lock_ref(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        return lock

    def _release_lock_ref(self, session_id: str):
        remaining = self._lock_users.get(session_id, 1) - 1
        if remaining > 0:
            self._lock_users[session_id] = remaining
            return
        self._lock_users.pop(session_id, None)
        if session_id not in self._sessions:
            self._locks.pop(session_id, None)

    async def start_session(
        self,
        student_id: str,
        topic_id: str,
        session_type: str = "guided_practice"
    ) -> SessionState:
        state = await self.engine.start_session(student_id, topic_id, session_type)
        self._sessions[state.session_id] = state
        return state

    def get_cached(self, session_id: str) -> Optional[SessionState]:
        return self._sessions.get(session_id)

    async def get_session(self, session_id: str) -> SessionState:
        """
        Return the live session, resuming it from persistence on a miss.

        Raises:
            SessionNotFound: if the session does not exist
        """
        state = self._sessions.get(session_id)
        if state is None:
            state = await self.engine.resume_session(session_id)
            self._sessions[session_id] = state
            logger.info(f"🔄 [SessionManager] Restored session {session_id} from persistence")
        return state

    @asynccontextmanager
    async def session(self, session_id: str) -> AsyncIterator[SessionState]:
        """
        Hold the session's lock for the duration of the block.

        Sessions that are closed when the block exits are evicted.
        """
        lock = self._acquire_lock_ref(session_id)
        try:
            async with lock:
                state = await self.get_session(session_id)
                try:
                    yield state
                finally:
                    if state.status != SessionStatus.IN_PROGRESS:
                        self.evict(session_id)
        finally:
            self._release_lock_ref(session_id)

    def evict(self, session_id: str) -> bool:
        """
        Drop a session from memory. It can still be resumed later.

        The lock is dropped too unless a caller still holds or waits on it;
        the last of them drops it on release.
        """
        removed = self._sessions.pop(session_id, None) is not None
        if session_id not in self._lock_users:
            self._locks.pop(session_id, None)
        return removed

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    @property
    def lock_count(self) -> int:
        return len(self._locks)

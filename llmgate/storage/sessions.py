from __future__ import annotations

import copy
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

from llmgate.logging import get_logger
from llmgate.storage.models import Message, Session, SessionInfo

logger = get_logger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 24 * 60 * 60


class SessionStore:
    """In-process conversation history keyed by session id.

    Sessions are created lazily on the first append and destroyed only by
    idle expiry: either the periodic ``sweep`` or a ``read`` that finds the
    session past its TTL. When ``max_sessions`` is set, the least recently
    updated tenth is dropped to make room for a new session.
    """

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        *,
        max_sessions: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_sessions = max_sessions
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        # RLock so helpers can be called while the lock is held
        self._lock = threading.RLock()
        logger.info(
            "session_store_initialized",
            ttl_seconds=ttl_seconds,
            max_sessions=max_sessions,
        )

    def _is_expired(self, session: Session, now: float) -> bool:
        return now - session.updated_at > self.ttl_seconds

    def _make_room(self) -> None:
        if not self.max_sessions or len(self._sessions) < self.max_sessions:
            return
        oldest = sorted(self._sessions.values(), key=lambda s: s.updated_at)
        evict_count = max(1, self.max_sessions // 10)
        for session in oldest[:evict_count]:
            self._sessions.pop(session.session_id, None)
        logger.warning(
            "session_capacity_eviction",
            evicted=evict_count,
            max_sessions=self.max_sessions,
        )

    def append(self, session_id: str, messages: Iterable[Message]) -> None:
        """Append messages in order, creating the session if needed."""
        new_messages = [copy.deepcopy(m) for m in messages]
        if not new_messages:
            return
        with self._lock:
            now = self._clock()
            session = self._sessions.get(session_id)
            if session is not None and self._is_expired(session, now):
                self._sessions.pop(session_id, None)
                session = None
            if session is None:
                self._make_room()
                session = Session(
                    session_id=session_id,
                    messages=new_messages,
                    created_at=now,
                    updated_at=now,
                )
                self._sessions[session_id] = session
                logger.info(
                    "session_created",
                    session_id=session_id,
                    message_count=len(new_messages),
                )
                return
            session.messages.extend(new_messages)
            session.updated_at = now

    def add_message(self, session_id: str, message: Message) -> None:
        self.append(session_id, [message])

    def read(self, session_id: str) -> List[Message]:
        """Return a copy of the session history; empty for unknown or expired ids."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return []
            if self._is_expired(session, self._clock()):
                self._sessions.pop(session_id, None)
                logger.info("session_expired_on_read", session_id=session_id)
                return []
            return copy.deepcopy(session.messages)

    def clear(self, session_id: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(session_id, None) is not None
        if removed:
            logger.info("session_cleared", session_id=session_id)
        return removed

    def info(self, session_id: str) -> Optional[SessionInfo]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or self._is_expired(session, self._clock()):
                return None
            return SessionInfo(
                session_id=session.session_id,
                message_count=len(session.messages),
                created_at=session.created_at,
                updated_at=session.updated_at,
            )

    def sweep(self) -> int:
        """Evict every session idle past the TTL. Returns the number evicted."""
        with self._lock:
            now = self._clock()
            expired = [
                sid for sid, session in self._sessions.items()
                if self._is_expired(session, now)
            ]
            for sid in expired:
                del self._sessions[sid]
            remaining = len(self._sessions)
        if expired:
            logger.info(
                "sessions_evicted",
                evicted=len(expired),
                remaining_sessions=remaining,
            )
        return len(expired)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            total_messages = sum(len(s.messages) for s in self._sessions.values())
            return {
                "total_sessions": len(self._sessions),
                "total_messages": total_messages,
            }

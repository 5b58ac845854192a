"""In-memory registry of tile proxy sessions with lazy TTL expiry."""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from tileproxy.exceptions import (
    SessionCollisionError,
    SessionExpiredError,
    SessionNotFoundError,
)
from tileproxy.utils import generate_session_id, short_id

logger = logging.getLogger("ee_tile_proxy")

# Process-wide session lifetime, not configurable per session.
SESSION_TTL_SECONDS = 15 * 60
DEFAULT_SHARD_COUNT = 16


@dataclass(frozen=True)
class Session:
    """A write-once binding from a session id to a backend map resource."""

    session_id: str
    backend_resource_name: str
    created_at: float

    def age(self, now: float) -> float:
        return now - self.created_at

    def is_expired(self, now: float, ttl: float = SESSION_TTL_SECONDS) -> bool:
        return self.age(now) > ttl


@dataclass
class _Shard:
    entries: Dict[str, Session] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)


class SessionRegistry:
    """
    Thread-safe map of session ids to backend resource names.

    Entries are spread over independently locked shards. Lookups read the
    shard dict without taking its lock, so readers never wait on each other
    and a write only excludes writers to the same shard.

    Attributes:
        ttl: Session lifetime in seconds.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        shard_count: int = DEFAULT_SHARD_COUNT,
    ) -> None:
        if shard_count < 1:
            raise ValueError("shard_count must be at least 1")
        self.ttl: float = SESSION_TTL_SECONDS
        self.clock = clock
        self._shards: List[_Shard] = [_Shard() for _ in range(shard_count)]

    def _shard_for(self, session_id: str) -> _Shard:
        return self._shards[hash(session_id) % len(self._shards)]

    def create(self, backend_resource_name: str) -> str:
        """
        Register a backend resource under a freshly generated session id.

        Args:
            backend_resource_name: Opaque upstream map name.

        Returns:
            The new session id.

        Raises:
            SessionCollisionError: If the generated id is already registered.
        """
        session_id = generate_session_id()
        session = Session(session_id, backend_resource_name, self.clock())
        shard = self._shard_for(session_id)

        with shard.lock:
            if session_id in shard.entries:
                raise SessionCollisionError(f"Session id collision: {session_id}")
            shard.entries[session_id] = session

        logger.debug(
            "Created tile session %s for %s", short_id(session_id), backend_resource_name
        )
        return session_id

    def resolve(self, session_id: str) -> str:
        """
        Look up the backend resource name for a session.

        An expired entry is removed before SessionExpiredError is raised, so
        the next lookup of the same id raises SessionNotFoundError.

        Raises:
            SessionNotFoundError: If the id was never issued or was evicted.
            SessionExpiredError: If the session is older than the TTL.
        """
        shard = self._shard_for(session_id)
        # dict.get is atomic; no lock on the read path
        session = shard.entries.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        now = self.clock()
        if session.is_expired(now, self.ttl):
            with shard.lock:
                # Only evict the entry we judged expired
                if shard.entries.get(session_id) is session:
                    del shard.entries[session_id]
            logger.info("Tile session %s expired", short_id(session_id))
            raise SessionExpiredError(session_id, session.age(now))

        return session.backend_resource_name

    def sweep_expired(self) -> int:
        """
        Remove every expired session.

        Returns:
            Number of sessions removed.
        """
        now = self.clock()
        removed = 0
        for shard in self._shards:
            with shard.lock:
                stale = [
                    sid
                    for sid, session in shard.entries.items()
                    if session.is_expired(now, self.ttl)
                ]
                for sid in stale:
                    del shard.entries[sid]
            removed += len(stale)

        if removed:
            logger.info("Swept %d expired tile sessions", removed)
        return removed

    def status(self) -> Dict[str, Any]:
        """Summary of registry contents for the admin endpoint."""
        now = self.clock()
        total = 0
        expired = 0
        for shard in self._shards:
            with shard.lock:
                sessions = list(shard.entries.values())
            total += len(sessions)
            expired += sum(1 for s in sessions if s.is_expired(now, self.ttl))
        return {
            "sessions": total,
            "active": total - expired,
            "expired_pending": expired,
            "ttl_seconds": self.ttl,
            "shards": len(self._shards),
        }

    def __len__(self) -> int:
        return sum(len(shard.entries) for shard in self._shards)

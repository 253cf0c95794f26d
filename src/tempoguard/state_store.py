"""State preservation store.

Keyed snapshots with a fixed TTL, used to resume a multi-step workflow at the
exact step it was interrupted. Entries are checked for expiry on every read,
so an expired entry is unreachable even before the sweeper removes it.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

from tempoguard.events import EventType, TelemetryRecorder, get_telemetry_recorder
from tempoguard.logging import get_logger

logger = get_logger(__name__, component="state_store")

DEFAULT_TTL_SECONDS = 7200


@dataclass
class PreservedState:
    """A snapshot of interrupted work."""

    key: str
    payload: Any
    created_at: float
    expires_at: float
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "payload": self.payload,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "user_id": self.user_id,
            "metadata": self.metadata,
        }


class StateBackend(ABC):
    """Storage behind the preservation store.

    Implementations must make each call atomic with respect to other calls;
    the in-memory backend gets this for free from cooperative scheduling.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[PreservedState]:
        """Return the raw entry for a key, expired or not."""

    @abstractmethod
    def set(self, state: PreservedState) -> None:
        """Store an entry, replacing any entry with the same key."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete an entry. Returns True if it existed."""

    @abstractmethod
    def sweep(self, now: float) -> int:
        """Remove entries expired at ``now``. Returns the number removed."""

    @abstractmethod
    def values(self) -> Iterator[PreservedState]:
        """Iterate over a snapshot of all raw entries."""

    @abstractmethod
    def count(self) -> int:
        """Number of raw entries, expired ones included."""


class InMemoryStateBackend(StateBackend):
    """Process-local dictionary backend."""

    def __init__(self) -> None:
        self._entries: Dict[str, PreservedState] = {}

    def get(self, key: str) -> Optional[PreservedState]:
        return self._entries.get(key)

    def set(self, state: PreservedState) -> None:
        self._entries[state.key] = state

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def sweep(self, now: float) -> int:
        expired = [key for key, state in self._entries.items() if state.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def values(self) -> Iterator[PreservedState]:
        return iter(list(self._entries.values()))

    def count(self) -> int:
        return len(self._entries)


class StatePreservationStore:
    """TTL-bounded snapshot store keyed by user id or operation id.

    ``save`` is last-write-wins; there is no versioning.

    Example:
        >>> store = StatePreservationStore()
        >>> _ = store.save("user-42", {"workflow_step": "attendees"}, ttl_seconds=3600)
        >>> store.load("user-42")
        {'workflow_step': 'attendees'}
    """

    def __init__(
        self,
        backend: Optional[StateBackend] = None,
        default_ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        telemetry: Optional[TelemetryRecorder] = None,
    ):
        """Initialize store.

        Args:
            backend: Storage backend (default: in-memory).
            default_ttl_seconds: TTL used when ``save`` is given none.
            clock: Wall-clock source in seconds.
            telemetry: Recorder for state events.
        """
        self.backend = backend or InMemoryStateBackend()
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self.telemetry = telemetry or get_telemetry_recorder()
        self._sweep_task: Optional[asyncio.Task] = None

    def save(
        self,
        key: str,
        payload: Any,
        ttl_seconds: Optional[float] = None,
        user_id: Optional[str] = None,
        **metadata: Any,
    ) -> PreservedState:
        """Save a snapshot, replacing any previous one for the key.

        Args:
            key: User id or operation id.
            payload: Opaque context to restore later.
            ttl_seconds: Lifetime from now (default: store default).
            user_id: Owner, for ``load_for_user``.
            **metadata: Extra descriptive fields.

        Returns:
            The stored entry.
        """
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")

        now = self._clock()
        state = PreservedState(
            key=key,
            payload=payload,
            created_at=now,
            expires_at=now + ttl,
            user_id=user_id,
            metadata=dict(metadata),
        )
        self.backend.set(state)

        logger.info("state_preserved", key=key, user_id=user_id, ttl_seconds=ttl)
        self.telemetry.emit(
            EventType.STATE_SAVED,
            operation=key,
            data={"preserved_count": self.backend.count(), "ttl_seconds": ttl},
        )
        return state

    def get_entry(self, key: str) -> Optional[PreservedState]:
        """Return the live entry for a key, or None if absent or expired."""
        state = self.backend.get(key)
        if state is None:
            return None
        if state.is_expired(self._clock()):
            self.backend.delete(key)
            logger.debug("state_expired", key=key)
            return None
        return state

    def load(self, key: str) -> Optional[Any]:
        """Return the payload for a key, or None if absent or expired."""
        state = self.get_entry(key)
        return state.payload if state is not None else None

    def clear(self, key: str) -> bool:
        """Remove a snapshot. Returns True if one was stored."""
        removed = self.backend.delete(key)
        if removed:
            logger.info("state_cleared", key=key)
            self.telemetry.emit(
                EventType.STATE_CLEARED,
                operation=key,
                data={"preserved_count": self.backend.count()},
            )
        return removed

    def load_for_user(self, user_id: str) -> List[PreservedState]:
        """All live entries owned by a user, oldest first."""
        now = self._clock()
        entries = [
            state
            for state in self.backend.values()
            if state.user_id == user_id and not state.is_expired(now)
        ]
        return sorted(entries, key=lambda s: s.created_at)

    def sweep(self) -> int:
        """Remove expired entries now. Returns the number removed."""
        removed = self.backend.sweep(self._clock())
        if removed:
            logger.debug("state_swept", removed=removed, remaining=self.backend.count())
        return removed

    def count(self) -> int:
        """Number of live entries."""
        now = self._clock()
        return sum(1 for state in self.backend.values() if not state.is_expired(now))

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, key: str) -> bool:
        return self.get_entry(key) is not None

    async def start_sweeping(self, interval_seconds: float = 300) -> None:
        """Start the periodic background sweep.

        Args:
            interval_seconds: Seconds between sweeps.
        """
        if self._sweep_task is not None:
            logger.warning("state_sweeper_already_running")
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(interval_seconds))
        logger.info("state_sweeper_started", interval_seconds=interval_seconds)

    async def stop_sweeping(self) -> None:
        """Stop the periodic background sweep."""
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None
        logger.info("state_sweeper_stopped")

    async def _sweep_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self.sweep()

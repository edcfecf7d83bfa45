"""In-memory conversation state for multi-step data entry.

One session per conversation id, holding the current ``Step``, a small
string-to-string scratch map, and an expiry timestamp. Expiry is a sliding
inactivity window evaluated lazily on read: an expired entry behaves exactly
like an absent one and is dropped the next time it is looked at (or by
``sweep``). Nothing is persisted; a restart forgets every pending flow.

All operations take one lock around the whole map. Sessions handed out are
copies, so callers write back through ``set`` or ``stash``.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Callable

log = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 5 * 60

# Side-channel keys for the second id of a two-id action.
PENDING_PARTICIPANT = "pending_participant_id"
PENDING_EPIC = "pending_epic_id"


class Step(StrEnum):
    # Holds side-channel values only; plain text is not consumed.
    IDLE = "idle"

    ADD_USER_HANDLE = "adduser_handle"
    ADD_USER_FIRST_NAME = "adduser_first_name"
    ADD_USER_LAST_NAME = "adduser_last_name"
    ADD_USER_WEIGHT = "adduser_weight"

    RENAME_USER_FIRST_NAME = "renameuser_first_name"
    RENAME_USER_LAST_NAME = "renameuser_last_name"

    CHANGE_RATE_WEIGHT = "changerate_weight"

    ADD_EPIC_NUMBER = "addepic_number"
    ADD_EPIC_NAME = "addepic_name"
    ADD_EPIC_DESCRIPTION = "addepic_description"

    ADD_RISK_DESCRIPTION = "addrisk_description"

    SCORE_EPIC_EFFORT = "score_epic_effort"


@dataclass
class ConversationSession:
    step: Step
    scratch: dict[str, str] = field(default_factory=dict)
    expires_at: float = 0.0

    def copy(self) -> ConversationSession:
        return replace(self, scratch=dict(self.scratch))


class SessionStore:
    """Thread-safe map of conversation id -> ``ConversationSession``.

    ``clock`` returns seconds as a float and defaults to ``time.monotonic``;
    tests pass a fake to move time forward.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._items: dict[str, ConversationSession] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _live_unlocked(self, key: str) -> ConversationSession | None:
        item = self._items.get(key)
        if item is None:
            return None
        if item.expires_at <= self._clock():
            del self._items[key]
            return None
        return item

    def set(self, conversation_id: str | int, step: Step, scratch: dict[str, str] | None = None) -> None:
        """Replace whatever the conversation had. Last write wins."""
        key = str(conversation_id)
        with self._lock:
            self._items[key] = ConversationSession(
                step=step,
                scratch=dict(scratch or {}),
                expires_at=self._clock() + self.ttl_seconds,
            )

    def get(self, conversation_id: str | int) -> ConversationSession | None:
        with self._lock:
            item = self._live_unlocked(str(conversation_id))
            return item.copy() if item is not None else None

    def touch(self, conversation_id: str | int) -> bool:
        """Restart the inactivity window. False when there is nothing live to extend."""
        with self._lock:
            item = self._live_unlocked(str(conversation_id))
            if item is None:
                return False
            item.expires_at = self._clock() + self.ttl_seconds
            return True

    def clear(self, conversation_id: str | int) -> None:
        with self._lock:
            self._items.pop(str(conversation_id), None)

    def stash(self, conversation_id: str | int, key: str, value: str) -> None:
        """Write one scratch value, opening an idle session if none is live."""
        conv = str(conversation_id)
        with self._lock:
            item = self._live_unlocked(conv)
            if item is None:
                item = ConversationSession(step=Step.IDLE)
                self._items[conv] = item
            item.scratch[key] = value
            item.expires_at = self._clock() + self.ttl_seconds

    def sweep(self) -> int:
        """Drop expired sessions. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, v in self._items.items() if v.expires_at <= now]
            for k in expired:
                del self._items[k]
        if expired:
            log.debug("Swept %d expired sessions", len(expired))
        return len(expired)

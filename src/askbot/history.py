"""In-process conversation history keyed by user identifier (thread-safe)."""
from __future__ import annotations

import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Deque, Dict, Iterator, List, Tuple

ROLES = ("user", "assistant", "system")
DEFAULT_WINDOW = 20


# -----------------------------
# Turn
# -----------------------------
@dataclass(frozen=True)
class Turn:
    """A single message in a conversation."""
    role: str
    content: str

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"role must be one of {ROLES}, got {self.role!r}")
        if not isinstance(self.content, str):
            raise TypeError("content must be a str")

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


# -----------------------------
# ConversationStore
# -----------------------------
class ConversationStore:
    """Per-identifier bounded history living for the life of the process.

    Each identifier owns a deque capped at ``window`` turns, so the oldest
    turn is evicted first. Nothing is persisted.

    Known limitation: histories are never expired, so memory grows with the
    number of distinct identifiers seen.
    """

    def __init__(self, window: int = DEFAULT_WINDOW) -> None:
        if window < 1:
            raise ValueError("window must be >= 1")
        self.window = int(window)
        self._histories: Dict[str, Deque[Turn]] = {}
        self._locks: Dict[str, threading.RLock] = {}
        # guards the two dicts above, never held across a provider call
        self._registry_lock = threading.Lock()

    # --------- locking ----------
    def _lock_for(self, user_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.RLock()
            return lock

    @contextmanager
    def lock(self, user_id: str) -> Iterator[None]:
        """Hold the identifier's lock; other identifiers are unaffected."""
        lock = self._lock_for(user_id)
        with lock:
            yield

    # --------- core API ----------
    def append(self, user_id: str, turn: Turn) -> None:
        """Append ``turn`` and trim the front down to the window bound."""
        with self.lock(user_id):
            with self._registry_lock:
                history = self._histories.get(user_id)
                if history is None:
                    history = self._histories[user_id] = deque(maxlen=self.window)
            history.append(turn)

    def snapshot(self, user_id: str) -> Tuple[Turn, ...]:
        """Return the current ordered history (empty for unknown ids)."""
        with self._registry_lock:
            history = self._histories.get(user_id)
        if history is None:
            return ()
        with self.lock(user_id):
            return tuple(history)

    # --------- convenience ----------
    def clear(self, user_id: str) -> None:
        with self._registry_lock:
            self._histories.pop(user_id, None)

    def identities(self) -> List[str]:
        with self._registry_lock:
            return sorted(self._histories)

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._histories)

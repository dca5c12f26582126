"""
Session credential cache.

Holds the session password and the most recently decrypted master key for
the lifetime of one user session, so a freshly constructed SecretStore or
KeyManager (a "reload") can pick the credentials back up without the
password ever being written to durable storage.

Eviction policy:
- clear()  - explicit lock or logout
- close()  - session end; further writes are refused until reopen()
- idle timeout - entries are wiped on the first access after
  `idle_timeout_seconds` without activity

Values are stored as `bytearray` and zero-filled when evicted.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

PASSWORD_KEY = "wallet_session_key"
PRIVATE_KEY_KEY = "wallet_private_key_session"


@dataclass
class SessionPolicy:
    """Eviction policy for the session credential cache."""
    idle_timeout_seconds: Optional[float] = 15 * 60  # None = never expires

    @classmethod
    def from_auto_lock(cls, auto_lock: bool, timeout_minutes: int) -> "SessionPolicy":
        """Build a policy from wallet auto-lock settings."""
        if not auto_lock or timeout_minutes <= 0:
            return cls(idle_timeout_seconds=None)
        return cls(idle_timeout_seconds=timeout_minutes * 60)


class SessionCache:
    """Scope-bound, wipeable credential cache."""

    def __init__(self, policy: Optional[SessionPolicy] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.policy = policy or SessionPolicy()
        self._clock = clock
        self._entries: dict[str, bytearray] = {}
        self._last_access = clock()
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _expired(self) -> bool:
        timeout = self.policy.idle_timeout_seconds
        if timeout is None:
            return False
        return self._clock() - self._last_access > timeout

    def _check_expiry(self) -> None:
        if self._entries and self._expired():
            logger.info("Session credentials expired after inactivity")
            self.clear()
        self._last_access = self._clock()

    def set(self, key: str, value: str) -> None:
        """Store a credential. Ignored once the session is closed."""
        if self._closed:
            logger.warning("Session closed; refusing to cache credential")
            return
        self._check_expiry()
        old = self._entries.pop(key, None)
        if old is not None:
            self._zero_fill(old)
        self._entries[key] = bytearray(value.encode("utf-8"))

    def get(self, key: str) -> Optional[str]:
        """Read a credential, or None if absent or evicted."""
        self._check_expiry()
        buf = self._entries.get(key)
        return buf.decode("utf-8") if buf is not None else None

    def remove(self, key: str) -> None:
        buf = self._entries.pop(key, None)
        if buf is not None:
            self._zero_fill(buf)

    def clear(self) -> int:
        """Wipe every credential. Returns the number wiped."""
        count = len(self._entries)
        for buf in self._entries.values():
            self._zero_fill(buf)
        self._entries.clear()
        return count

    def close(self) -> None:
        """End the session: wipe and refuse further writes."""
        self.clear()
        self._closed = True

    def reopen(self) -> None:
        """Start a new session on the same cache object."""
        self._closed = False
        self._last_access = self._clock()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"<SessionCache keys={list(self._entries.keys())} closed={self._closed}>"

    @staticmethod
    def _zero_fill(buf: bytearray) -> None:
        for i in range(len(buf)):
            buf[i] = 0

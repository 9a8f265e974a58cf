import threading
import time
from collections.abc import Callable
from typing import Optional

from pydantic import BaseModel


class IssuedToken(BaseModel):
    token: str
    accessor: Optional[str] = None
    policies: list[str] = []
    expires_at: float


class TokenSessionStore:
    """Tokens issued through the connector, each held until its TTL runs out.

    Thread-safe via a single RLock. Expired entries are dropped lazily on
    access and by :meth:`purge_expired`.
    """

    def __init__(self, default_ttl: int = 3600, clock: Callable[[], float] = time.monotonic) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._tokens: dict[str, IssuedToken] = {}
        self._lock = threading.RLock()

    def add(
        self,
        token: str,
        accessor: Optional[str] = None,
        policies: Optional[list[str]] = None,
        ttl: Optional[int] = None,
    ) -> IssuedToken:
        entry = IssuedToken(
            token=token,
            accessor=accessor,
            policies=policies or [],
            expires_at=self._clock() + (ttl if ttl is not None else self.default_ttl),
        )
        with self._lock:
            self._tokens[token] = entry
        return entry

    def get(self, token: str) -> Optional[IssuedToken]:
        with self._lock:
            entry = self._tokens.get(token)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._tokens[token]
                return None
            return entry

    def __contains__(self, token: str) -> bool:
        return self.get(token) is not None

    def refresh(self, token: str, ttl: Optional[int] = None) -> Optional[IssuedToken]:
        with self._lock:
            entry = self.get(token)
            if entry is None:
                return None
            entry.expires_at = self._clock() + (ttl if ttl is not None else self.default_ttl)
            return entry

    def remove(self, token: str) -> bool:
        with self._lock:
            return self._tokens.pop(token, None) is not None

    def active_tokens(self) -> list[str]:
        self.purge_expired()
        with self._lock:
            return list(self._tokens)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [t for t, e in self._tokens.items() if e.expires_at <= now]
            for token in expired:
                del self._tokens[token]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._tokens.clear()

from __future__ import annotations

import threading
from typing import Callable, Optional

from secretsfs.identity import CallerIdentity


class _Flight:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.token: Optional[str] = None
        self.error: Optional[BaseException] = None


class SessionCache:
    """
    Per-identity backend tokens, keyed by uid.

    A miss runs `login` for that identity; concurrent misses for the same uid
    join the in-flight exchange and receive its token (or its exception)
    instead of starting their own. Tokens live in memory only.
    """

    def __init__(self, login: Callable[[CallerIdentity], str]) -> None:
        self._login = login
        self._lock = threading.Lock()
        self._tokens: dict[int, str] = {}
        self._flights: dict[int, _Flight] = {}

    def token(self, identity: CallerIdentity) -> str:
        uid = identity.uid
        with self._lock:
            cached = self._tokens.get(uid)
            if cached is not None:
                return cached
            flight = self._flights.get(uid)
            leader = flight is None
            if flight is None:
                flight = _Flight()
                self._flights[uid] = flight

        if not leader:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            assert flight.token is not None
            return flight.token

        try:
            flight.token = self._login(identity)
        except BaseException as e:
            flight.error = e
            raise
        finally:
            with self._lock:
                if flight.error is None and flight.token is not None:
                    self._tokens[uid] = flight.token
                self._flights.pop(uid, None)
            flight.done.set()
        return flight.token

    def invalidate(self, identity: CallerIdentity, token: str) -> None:
        """Drop the cached token only if it is still `token` (compare-and-delete)."""
        with self._lock:
            if self._tokens.get(identity.uid) == token:
                del self._tokens[identity.uid]

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)

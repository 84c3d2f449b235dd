from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Hashable

if TYPE_CHECKING:
    from .core import RelayCore


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


class SessionManager:
    """
    Per-connection session bookkeeping.

    Tracks which connections are open, when they opened, and a token
    bucket per connection for inbound rate limiting. Identity bindings
    live in the presence registry, not here.
    """

    def __init__(self, hub: RelayCore) -> None:
        self.hub = hub
        self.log = logging.getLogger("crelayd.session")
        self._lock = threading.Lock()
        self.sessions: dict[Hashable, dict[str, Any]] = {}
        self._rate: dict[Hashable, _RateState] = {}

    def on_connect(self, conn: Hashable) -> None:
        with self._lock:
            self.sessions[conn] = {
                "connected_at": time.time(),
                "identified": False,
            }
            self._rate[conn] = _RateState(
                tokens=float(self.hub.config.rate_limit_msgs_per_minute),
                last_refill=time.monotonic(),
            )

    def mark_identified(self, conn: Hashable) -> None:
        with self._lock:
            sess = self.sessions.get(conn)
            if sess is not None:
                sess["identified"] = True

    def on_disconnect(self, conn: Hashable) -> dict[str, Any] | None:
        with self._lock:
            self._rate.pop(conn, None)
            return self.sessions.pop(conn, None)

    def has_session(self, conn: Hashable) -> bool:
        with self._lock:
            return conn in self.sessions

    def refill_and_take(self, conn: Hashable, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take `cost` tokens.
        Returns True if tokens were available and taken, False if rate limited.
        """
        with self._lock:
            state = self._rate.get(conn)
            if state is None:
                return True

            now = time.monotonic()
            per_min = float(max(1, int(self.hub.config.rate_limit_msgs_per_minute)))
            rate_per_s = per_min / 60.0
            elapsed = max(0.0, now - state.last_refill)
            state.tokens = min(per_min, state.tokens + elapsed * rate_per_s)
            state.last_refill = now

            if state.tokens < cost:
                return False

            state.tokens -= cost
            return True

    def clear_all(self) -> list[Hashable]:
        with self._lock:
            conns = list(self.sessions.keys())
            self.sessions.clear()
            self._rate.clear()
            return conns

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            total = len(self.sessions)
            identified = sum(1 for s in self.sessions.values() if s.get("identified"))
        return {"total": total, "identified": identified}

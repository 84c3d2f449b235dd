"""Identity to live connection bindings."""

from __future__ import annotations

import logging
import threading
from typing import Any, Hashable


class PresenceRegistry:
    """
    Bidirectional map of identity <-> live connection.

    At most one connection per identity (last bind wins) and at most one
    identity per connection. Entries live only as long as the connection.
    Every method takes the registry lock for the duration of a dict update
    only; callers never hold it across I/O.
    """

    def __init__(self) -> None:
        self.log = logging.getLogger("crelayd.presence")
        self._lock = threading.Lock()
        self._by_identity: dict[str, Hashable] = {}
        self._by_conn: dict[Hashable, str] = {}

    def bind(self, identity: str, conn: Hashable) -> Hashable | None:
        """Bind ``identity`` to ``conn``. Returns the connection it replaced."""
        with self._lock:
            prior_identity = self._by_conn.get(conn)
            if prior_identity is not None and prior_identity != identity:
                if self._by_identity.get(prior_identity) is conn:
                    self._by_identity.pop(prior_identity, None)

            replaced = self._by_identity.get(identity)
            if replaced is not None and replaced is not conn:
                self._by_conn.pop(replaced, None)
            else:
                replaced = None

            self._by_identity[identity] = conn
            self._by_conn[conn] = identity

        if replaced is not None:
            self.log.debug("Replaced binding identity=%s", identity)
        return replaced

    def unbind(self, conn: Hashable) -> str | None:
        """Remove the entry bound to exactly ``conn``; None if there is none."""
        with self._lock:
            identity = self._by_conn.pop(conn, None)
            if identity is None:
                return None
            if self._by_identity.get(identity) is conn:
                self._by_identity.pop(identity, None)
            return identity

    def lookup(self, identity: str) -> Hashable | None:
        with self._lock:
            return self._by_identity.get(identity)

    def identity_of(self, conn: Hashable) -> str | None:
        with self._lock:
            return self._by_conn.get(conn)

    def online(self) -> list[str]:
        with self._lock:
            return sorted(self._by_identity)

    def clear_all(self) -> list[Hashable]:
        with self._lock:
            conns = list(self._by_conn)
            self._by_identity.clear()
            self._by_conn.clear()
        return conns

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {"online": len(self._by_identity)}

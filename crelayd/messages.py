"""Event emission and outgoing queue helpers for the relay."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Hashable

from .codec import encode
from .constants import T_ERROR
from .envelope import make_envelope

if TYPE_CHECKING:
    from .core import RelayCore

Outgoing = list[tuple[Hashable, bytes]]


class MessageHelper:
    """
    Builds outbound envelopes and either queues them or transmits now.

    Handlers pass an ``outgoing`` list so that payloads are transmitted
    after every lock has been released. With ``outgoing=None`` the payload
    is handed to the transport immediately.
    """

    def __init__(self, hub: RelayCore) -> None:
        self.hub = hub
        self.log = hub.log

    def queue_payload(self, outgoing: Outgoing, conn: Hashable, payload: bytes) -> None:
        outgoing.append((conn, payload))

    def deliver_payload(
        self, outgoing: Outgoing | None, conn: Hashable, payload: bytes
    ) -> None:
        if outgoing is None:
            self.hub.transmit(conn, payload)
        else:
            self.queue_payload(outgoing, conn, payload)

    def emit(
        self,
        outgoing: Outgoing | None,
        conn: Hashable,
        event_type: int,
        body: Any = None,
        *,
        src: str | bytes | None = None,
    ) -> None:
        """Send one event to one connection."""
        env = make_envelope(
            event_type, src=src if src is not None else self.hub.src, body=body
        )
        self.deliver_payload(outgoing, conn, encode(env))

    def emit_to_identity(
        self,
        outgoing: Outgoing | None,
        identity: str,
        event_type: int,
        body: Any = None,
    ) -> bool:
        """Send to the identity's live connection. False when offline."""
        conn = self.hub.presence.lookup(identity)
        if conn is None:
            return False
        self.emit(outgoing, conn, event_type, body)
        return True

    def emit_error(
        self,
        outgoing: Outgoing | None,
        conn: Hashable,
        *,
        operation: str,
        code: str,
        text: str,
    ) -> None:
        self.hub.stats_manager.inc("errors_sent")
        self.emit(
            outgoing,
            conn,
            T_ERROR,
            {"operation": operation, "code": code, "error": text},
        )

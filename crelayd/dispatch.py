from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Hashable

from .codec import decode
from .constants import (
    E_INTERNAL,
    E_INVALID,
    E_RATE_LIMITED,
    EVENT_NAMES,
    K_BODY,
    K_T,
    T_ACCEPT_INVITE,
    T_CREATE_GROUP,
    T_DELETE_CONTACT,
    T_DELETE_GROUP,
    T_FETCH_GROUP_HISTORY,
    T_FETCH_HISTORY,
    T_GROUP_HISTORY,
    T_HISTORY,
    T_IDENTIFY,
    T_REQUEST_CONTACTS,
    T_RESOURCE_ENVELOPE,
    T_SEND_MESSAGE,
)
from .envelope import validate_envelope
from .errors import InvalidRequest, RelayError

if TYPE_CHECKING:
    from .core import RelayCore
    from .messages import Outgoing

Handler = Callable[[Hashable, Any, "Outgoing"], None]


class EventDispatcher:
    """
    Decodes inbound packets and dispatches them by event type.

    This class is responsible for:
    - Decoding and validating envelopes
    - Per-connection rate limiting
    - Requiring ``identify`` before any other event
    - Mapping event bodies onto relay operations
    - Turning operation failures into ``group-error`` events for the
      originating connection only
    """

    def __init__(self, hub: RelayCore) -> None:
        self.hub = hub
        self.log = logging.getLogger("crelayd.dispatch")
        self._handlers: dict[int, Handler] = {
            T_IDENTIFY: self._handle_identify,
            T_REQUEST_CONTACTS: self._handle_request_contacts,
            T_ACCEPT_INVITE: self._handle_accept_invite,
            T_DELETE_CONTACT: self._handle_delete_contact,
            T_CREATE_GROUP: self._handle_create_group,
            T_DELETE_GROUP: self._handle_delete_group,
            T_SEND_MESSAGE: self._handle_send_message,
            T_FETCH_HISTORY: self._handle_fetch_history,
            T_FETCH_GROUP_HISTORY: self._handle_fetch_group_history,
            T_RESOURCE_ENVELOPE: self._handle_resource_envelope,
        }

    def route_packet(self, conn: Hashable, data: bytes, outgoing: Outgoing) -> None:
        if not self.hub.session_manager.has_session(conn):
            return

        stats = self.hub.stats_manager
        stats.inc("pkts_in")
        stats.inc("bytes_in", len(data))

        if not self.hub.session_manager.refill_and_take(conn, 1.0):
            stats.inc("rate_limited")
            if self.log.isEnabledFor(logging.DEBUG):
                self.log.debug("Rate limited conn=%s", self.hub.fmt_conn(conn))
            self.hub.message_helper.emit_error(
                outgoing, conn, operation="rate-limit", code=E_RATE_LIMITED, text="rate limited"
            )
            return

        try:
            env = decode(data)
            validate_envelope(env)
        except (TypeError, ValueError) as e:
            stats.inc("pkts_bad")
            self.log.debug(
                "Bad packet conn=%s bytes=%s err=%s", self.hub.fmt_conn(conn), len(data), e
            )
            self.hub.message_helper.emit_error(
                outgoing, conn, operation="decode", code=E_INVALID, text=f"bad message: {e}"
            )
            return

        t = env[K_T]
        body = env.get(K_BODY)
        name = EVENT_NAMES.get(t, str(t))

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX conn=%s event=%s bytes=%s body_type=%s",
                self.hub.fmt_conn(conn),
                name,
                len(data),
                type(body).__name__,
            )

        handler = self._handlers.get(t)
        if handler is None:
            self.hub.message_helper.emit_error(
                outgoing, conn, operation=name, code=E_INVALID, text="unknown event"
            )
            return

        if t not in (T_IDENTIFY, T_RESOURCE_ENVELOPE) and self.hub.presence.identity_of(conn) is None:
            self.hub.message_helper.emit_error(
                outgoing, conn, operation=name, code=E_INVALID, text="identify first"
            )
            return

        try:
            handler(conn, body, outgoing)
        except RelayError as e:
            self.log.info(
                "Operation failed conn=%s event=%s code=%s err=%s",
                self.hub.fmt_conn(conn),
                name,
                e.code,
                e,
            )
            self.hub.message_helper.emit_error(
                outgoing, conn, operation=name, code=e.code, text=str(e)
            )
        except Exception:
            self.log.exception(
                "Unhandled error conn=%s event=%s", self.hub.fmt_conn(conn), name
            )
            self.hub.message_helper.emit_error(
                outgoing, conn, operation=name, code=E_INTERNAL, text="internal error"
            )

    # Body helpers

    def _require_map(self, body: Any) -> dict:
        if not isinstance(body, dict):
            raise InvalidRequest("event body must be a map")
        return body

    def _bound_identity(self, conn: Hashable, claimed: Any = None) -> Any:
        """Use the claimed identity when given, else the connection's own."""
        if claimed is not None:
            return claimed
        return self.hub.presence.identity_of(conn)

    # Handlers

    def _handle_identify(self, conn: Hashable, body: Any, outgoing: Outgoing) -> None:
        identity = body.get("identity") if isinstance(body, dict) else body
        self.hub.identify(conn, identity, outgoing)

    def _handle_request_contacts(self, conn: Hashable, body: Any, outgoing: Outgoing) -> None:
        identity = self._bound_identity(conn, body if isinstance(body, str) else None)
        self.hub.contacts.push_snapshot(identity, outgoing)

    def _handle_accept_invite(self, conn: Hashable, body: Any, outgoing: Outgoing) -> None:
        b = self._require_map(body)
        self.hub.contacts.accept_invite(
            b.get("from"),
            b.get("to"),
            b.get("displayName"),
            b.get("inviteCode"),
            peer_display_name=b.get("peerDisplayName"),
            outgoing=outgoing,
        )

    def _handle_delete_contact(self, conn: Hashable, body: Any, outgoing: Outgoing) -> None:
        b = self._require_map(body)
        identity = self._bound_identity(conn, b.get("identity"))
        self.hub.contacts.delete_contact(identity, b.get("peer"), outgoing)

    def _handle_create_group(self, conn: Hashable, body: Any, outgoing: Outgoing) -> None:
        b = self._require_map(body)
        members = b.get("members", [])
        if not isinstance(members, list):
            raise InvalidRequest("members must be a list")
        creator = self._bound_identity(conn, b.get("creator"))
        self.hub.create_group(creator, b.get("name"), members, outgoing)

    def _handle_delete_group(self, conn: Hashable, body: Any, outgoing: Outgoing) -> None:
        b = self._require_map(body)
        requester = self._bound_identity(conn, b.get("identity"))
        self.hub.delete_group(b.get("channelId"), requester, outgoing)

    def _handle_send_message(self, conn: Hashable, body: Any, outgoing: Outgoing) -> None:
        b = self._require_map(body)
        sender = self._bound_identity(conn, b.get("from"))
        if bool(b.get("isGroup", False)):
            self.hub.router.send_group(sender, b.get("to"), b.get("content"), outgoing)
        else:
            self.hub.router.send_direct(sender, b.get("to"), b.get("content"), outgoing)

    def _handle_fetch_history(self, conn: Hashable, body: Any, outgoing: Outgoing) -> None:
        b = self._require_map(body)
        identity = self._bound_identity(conn, b.get("identity"))
        peer = b.get("peer")
        messages = self.hub.router.fetch_history(identity, peer)
        self.hub.message_helper.emit(
            outgoing,
            conn,
            T_HISTORY,
            {"peer": peer, "messages": [m.project() for m in messages]},
        )

    def _handle_fetch_group_history(
        self, conn: Hashable, body: Any, outgoing: Outgoing
    ) -> None:
        b = self._require_map(body)
        group_id = b.get("channelId")
        messages = self.hub.router.fetch_group_history(group_id)
        self.hub.message_helper.emit(
            outgoing,
            conn,
            T_GROUP_HISTORY,
            {"channelId": group_id, "messages": [m.project() for m in messages]},
        )

    def _handle_resource_envelope(
        self, conn: Hashable, body: Any, outgoing: Outgoing
    ) -> None:
        self.hub.expect_resource(conn, self._require_map(body))

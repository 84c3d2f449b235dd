from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Hashable, Iterable

from . import __version__
from .channels import ChannelManager
from .config import RelayRuntimeConfig
from .constants import T_WELCOME
from .contacts import ContactSynchronizer
from .dispatch import EventDispatcher
from .messages import MessageHelper, Outgoing
from .models import Group
from .presence import PresenceRegistry
from .resources import ResourceManager
from .router import MessageRouter
from .session import SessionManager
from .stats import StatsManager
from .store import MemoryStore, Store
from .util import require_identity

Transmit = Callable[[Hashable, bytes], None]


class RelayCore:
    """
    Transport-independent relay: presence, channels, contacts and routing.

    Connections are opaque hashable objects supplied by the transport.
    Outbound payloads go through ``transmit``, which the RNS service
    overrides and tests replace with a capturing callable.
    """

    def __init__(
        self,
        config: RelayRuntimeConfig,
        *,
        store: Store | None = None,
        transmit: Transmit | None = None,
        src: str | bytes | None = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("crelayd.relay")

        self._shutdown = threading.Event()
        self._transmit = transmit

        self.store: Store = store if store is not None else MemoryStore()
        self.src: str | bytes = src if src is not None else config.hub_name

        self.stats_manager = StatsManager(self)
        self.session_manager = SessionManager(self)
        self.presence = PresenceRegistry()
        self.message_helper = MessageHelper(self)
        self.channels = ChannelManager(self)
        self.contacts = ContactSynchronizer(self)
        self.router = MessageRouter(self)
        self.dispatcher = EventDispatcher(self)
        self.resource_manager = ResourceManager(self)

    def fmt_conn(self, conn: Any) -> str:
        lid = getattr(conn, "link_id", None)
        if isinstance(lid, (bytes, bytearray)):
            return bytes(lid).hex()
        h = getattr(conn, "hash", None)
        if isinstance(h, (bytes, bytearray)):
            return bytes(h).hex()
        return "-"

    # Transport

    def _send_payload(self, conn: Hashable, payload: bytes) -> None:
        if self._transmit is None:
            self.log.debug("No transport; dropping %s bytes", len(payload))
            return
        self._transmit(conn, payload)

    def transmit(self, conn: Hashable, payload: bytes) -> None:
        self.stats_manager.inc("bytes_out", len(payload))
        try:
            self._send_payload(conn, payload)
        except OSError as e:
            self.log.warning(
                "Send failed link_id=%s bytes=%s err=%s",
                self.fmt_conn(conn),
                len(payload),
                e,
            )
        except Exception:
            self.log.debug(
                "Send failed link_id=%s bytes=%s",
                self.fmt_conn(conn),
                len(payload),
                exc_info=True,
            )

    def flush(self, outgoing: Outgoing) -> None:
        if self.log.isEnabledFor(logging.DEBUG) and outgoing:
            self.log.debug("Sending %d payload(s)", len(outgoing))
        for conn, payload in outgoing:
            self.transmit(conn, payload)
        outgoing.clear()

    # Connection lifecycle

    def on_connect(self, conn: Hashable) -> None:
        self.session_manager.on_connect(conn)
        self.resource_manager.on_connect(conn)
        self.log.info("Link established link_id=%s", self.fmt_conn(conn))

    def identify(
        self, conn: Hashable, identity: Any, outgoing: Outgoing | None = None
    ) -> str:
        """Bind ``identity`` to ``conn``, subscribe it, then send snapshot and welcome."""
        identity = require_identity(identity, max_chars=self.config.max_identity_chars)

        previous = self.presence.identity_of(conn)
        if previous is not None and previous != identity:
            self.channels.unsubscribe_all(conn)

        replaced = self.presence.bind(identity, conn)
        if replaced is not None:
            self.channels.unsubscribe_all(replaced)
            self.log.info(
                "Identity rebound identity=%s old_link_id=%s new_link_id=%s",
                identity,
                self.fmt_conn(replaced),
                self.fmt_conn(conn),
            )

        self.session_manager.mark_identified(conn)
        self.stats_manager.inc("identifies")

        group_ids = self.channels.subscribe_on_connect(identity, conn)
        if self.presence.lookup(identity) is not conn:
            # Lost a race with a newer bind or a disconnect.
            self.channels.unsubscribe_all(conn)
            return identity

        self.contacts.push_snapshot(identity, outgoing)
        self.message_helper.emit(
            outgoing,
            conn,
            T_WELCOME,
            {"hub": self.config.hub_name, "version": __version__, "identity": identity},
        )

        self.log.info(
            "Identified identity=%s groups=%s link_id=%s",
            identity,
            len(group_ids),
            self.fmt_conn(conn),
        )
        return identity

    def disconnect(self, conn: Hashable) -> None:
        identity = self.presence.unbind(conn)
        dropped = self.channels.unsubscribe_all(conn)
        self.resource_manager.on_disconnect(conn)
        self.session_manager.on_disconnect(conn)
        self.log.info(
            "Link closed identity=%s subscriptions=%s link_id=%s",
            identity,
            dropped,
            self.fmt_conn(conn),
        )

    # Inbound

    def handle_packet(
        self, conn: Hashable, data: bytes, outgoing: Outgoing | None = None
    ) -> None:
        """Dispatch one inbound payload. Sends immediately unless ``outgoing`` is given."""
        flush = outgoing is None
        if outgoing is None:
            outgoing = []
        self.dispatcher.route_packet(conn, data, outgoing)
        if flush:
            self.flush(outgoing)

    def expect_resource(self, conn: Hashable, body: dict) -> None:
        self.resource_manager.expect(conn, body)

    # Operations spanning components

    def create_group(
        self,
        creator: str,
        name: str,
        members: Iterable[Any],
        outgoing: Outgoing | None = None,
    ) -> Group:
        group = self.channels.create_channel(creator, name, members, outgoing)
        self.contacts.push_snapshot_to_many(group.members, outgoing)
        return group

    def delete_group(
        self, group_id: str, requester: str, outgoing: Outgoing | None = None
    ) -> Group:
        return self.channels.delete_channel(group_id, requester, outgoing)

    def stop(self) -> None:
        self._shutdown.set()
        self.presence.clear_all()
        self.channels.clear_all()
        self.resource_manager.clear_all()
        self.session_manager.clear_all()

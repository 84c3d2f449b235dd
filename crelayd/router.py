from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Hashable

from .codec import encode
from .constants import T_RECEIVE_MESSAGE
from .envelope import make_envelope
from .errors import InvalidRequest, NotFound
from .models import Message
from .util import require_identity

if TYPE_CHECKING:
    from .core import RelayCore
    from .messages import Outgoing


class MessageRouter:
    """
    Persists and fans out direct and group messages.

    Every message is persisted before any delivery is attempted; a store
    failure propagates and nothing is delivered. Delivery is best-effort
    and at most once per live connection. Offline recipients are skipped
    and pick the message up from history.
    """

    def __init__(self, hub: RelayCore) -> None:
        self.hub = hub
        self.log = logging.getLogger("crelayd.router")

    def _check_content(self, content) -> str:
        if not isinstance(content, str) or not content.strip():
            raise InvalidRequest("message content must be a non-empty string")
        limit = int(self.hub.config.max_content_chars)
        if limit > 0 and len(content) > limit:
            raise InvalidRequest(f"message too long (max {limit} chars)")
        return content

    def _fan_out(
        self, msg: Message, conns: list[Hashable], outgoing: Outgoing | None
    ) -> int:
        env = make_envelope(T_RECEIVE_MESSAGE, src=msg.sender, body=msg.project())
        payload = encode(env)
        delivered = 0
        seen: list[Hashable] = []
        for conn in conns:
            if conn is None or any(conn is s for s in seen):
                continue
            seen.append(conn)
            self.hub.message_helper.deliver_payload(outgoing, conn, payload)
            delivered += 1
        self.hub.stats_manager.inc("deliveries", delivered)
        return delivered

    def send_direct(
        self, sender: str, to: str, content: str, outgoing: Outgoing | None = None
    ) -> Message:
        cfg = self.hub.config
        sender = require_identity(sender, max_chars=cfg.max_identity_chars, field="from")
        to = require_identity(to, max_chars=cfg.max_identity_chars, field="to")
        content = self._check_content(content)

        msg = self.hub.store.create_message(sender, to, content, is_group=False)
        self.hub.stats_manager.inc("direct_msgs")

        # Recipient first, then the sender's echo carrying the stored id/timestamp.
        targets = [self.hub.presence.lookup(to), self.hub.presence.lookup(sender)]
        delivered = self._fan_out(msg, targets, outgoing)

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "Direct message id=%s from=%s to=%s delivered=%s",
                msg.id,
                sender,
                to,
                delivered,
            )
        return msg

    def send_group(
        self,
        sender: str,
        group_id: str,
        content: str,
        outgoing: Outgoing | None = None,
    ) -> Message:
        sender = require_identity(
            sender, max_chars=self.hub.config.max_identity_chars, field="from"
        )
        if not isinstance(group_id, str) or not group_id:
            raise InvalidRequest("invalid channel id")
        content = self._check_content(content)

        # Validate before persisting so no message references a missing group.
        if self.hub.store.get_group(group_id) is None:
            raise NotFound(f"no such group {group_id}")

        msg = self.hub.store.create_message(sender, group_id, content, is_group=True)
        self.hub.stats_manager.inc("group_msgs")

        delivered = self._fan_out(msg, self.hub.channels.subscribers(group_id), outgoing)

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "Group message id=%s from=%s group=%s delivered=%s",
                msg.id,
                sender,
                group_id,
                delivered,
            )
        return msg

    def fetch_history(self, a: str, b: str) -> list[Message]:
        cfg = self.hub.config
        a = require_identity(a, max_chars=cfg.max_identity_chars)
        b = require_identity(b, max_chars=cfg.max_identity_chars, field="peer")
        return self.hub.store.find_direct_messages(a, b)

    def fetch_group_history(self, group_id: str) -> list[Message]:
        if not isinstance(group_id, str) or not group_id:
            raise InvalidRequest("invalid channel id")
        return self.hub.store.find_group_messages(group_id)

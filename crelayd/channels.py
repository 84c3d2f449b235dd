"""Group channel membership and live subscription tracking.

Durable membership lives in the store. This module keeps the in-memory
subscription cache (group id -> live connections) that group delivery
rides on, and keeps it in step with create/delete/connect events.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any, Hashable, Iterable

from .constants import T_GROUP_CREATED, T_GROUP_DELETED
from .errors import Forbidden, InvalidRequest, NotFound
from .models import Group, collapse_members
from .util import normalize_text, require_identity

if TYPE_CHECKING:
    from .core import RelayCore
    from .messages import Outgoing


class ChannelManager:
    """Manages channel creation/deletion and connection subscriptions."""

    def __init__(self, hub: RelayCore) -> None:
        self.hub = hub
        self.log = logging.getLogger("crelayd.channels")
        self._lock = threading.Lock()
        self._subscribers: dict[str, set[Hashable]] = {}
        self._conn_channels: dict[Hashable, set[str]] = {}

    # Subscription cache

    def subscribe(self, conn: Hashable, group_ids: Iterable[str]) -> None:
        with self._lock:
            joined = self._conn_channels.setdefault(conn, set())
            for gid in group_ids:
                self._subscribers.setdefault(gid, set()).add(conn)
                joined.add(gid)

    def unsubscribe_all(self, conn: Hashable) -> int:
        """Drop every subscription held by ``conn``. Returns how many."""
        with self._lock:
            joined = self._conn_channels.pop(conn, set())
            for gid in joined:
                subs = self._subscribers.get(gid)
                if subs is None:
                    continue
                subs.discard(conn)
                if not subs:
                    self._subscribers.pop(gid, None)
            return len(joined)

    def unsubscribe(self, conn: Hashable, group_ids: Iterable[str]) -> None:
        with self._lock:
            joined = self._conn_channels.get(conn)
            for gid in group_ids:
                subs = self._subscribers.get(gid)
                if subs is not None:
                    subs.discard(conn)
                    if not subs:
                        self._subscribers.pop(gid, None)
                if joined is not None:
                    joined.discard(gid)
            if joined is not None and not joined:
                self._conn_channels.pop(conn, None)

    def drop_channel(self, group_id: str) -> None:
        with self._lock:
            for conn in self._subscribers.pop(group_id, set()):
                joined = self._conn_channels.get(conn)
                if joined is not None:
                    joined.discard(group_id)

    def subscribers(self, group_id: str) -> list[Hashable]:
        with self._lock:
            return list(self._subscribers.get(group_id, ()))

    def channels_of(self, conn: Hashable) -> set[str]:
        with self._lock:
            return set(self._conn_channels.get(conn, ()))

    def subscribe_on_connect(self, identity: str, conn: Hashable) -> list[str]:
        """Subscribe ``conn`` to every channel ``identity`` belongs to."""
        group_ids = [g.id for g in self.hub.store.find_groups_for(identity)]
        self.subscribe(conn, group_ids)
        return group_ids

    # Channel lifecycle

    def create_channel(
        self,
        creator: str,
        name: str,
        proposed_members: Iterable[Any],
        outgoing: Outgoing | None = None,
    ) -> Group:
        cfg = self.hub.config
        creator = require_identity(creator, max_chars=cfg.max_identity_chars, field="creator")
        group_name = normalize_text(name, max_chars=cfg.max_group_name_chars)
        if group_name is None:
            raise InvalidRequest("invalid group name")

        if isinstance(proposed_members, (str, bytes)):
            raise InvalidRequest("members must be a list")
        proposed = [
            require_identity(m, max_chars=cfg.max_identity_chars, field="member")
            for m in proposed_members
        ]
        members = collapse_members(creator, proposed)
        if cfg.max_group_members > 0 and len(members) > cfg.max_group_members:
            raise InvalidRequest(f"too many members (max {cfg.max_group_members})")

        group = self.hub.store.create_group(group_name, creator, members)

        live: list[Hashable] = []
        for member in members:
            conn = self.hub.presence.lookup(member)
            if conn is None:
                # Offline members resubscribe on their next identify.
                continue
            self.subscribe(conn, [group.id])
            if self.hub.presence.lookup(member) is not conn:
                # Disconnected or rebound since the lookup.
                self.unsubscribe(conn, [group.id])
                continue
            live.append(conn)

        body = group.project()
        for conn in live:
            self.hub.message_helper.emit(outgoing, conn, T_GROUP_CREATED, body)

        self.hub.stats_manager.inc("groups_created")
        self.log.info(
            "Group created id=%s name=%r creator=%s members=%s live=%s",
            group.id,
            group.name,
            creator,
            len(members),
            len(live),
        )
        return group

    def delete_channel(
        self, group_id: str, requester: str, outgoing: Outgoing | None = None
    ) -> Group:
        """Delete a channel and its messages. Only the creator may do this."""
        if not isinstance(group_id, str) or not group_id:
            raise InvalidRequest("invalid channel id")
        requester = require_identity(
            requester, max_chars=self.hub.config.max_identity_chars
        )

        group = self.hub.store.get_group(group_id)
        if group is None:
            raise NotFound(f"no such group {group_id}")
        if group.creator != requester:
            raise Forbidden("only the group creator can delete the group")

        self.hub.store.delete_group_cascade(group.id)
        self.drop_channel(group.id)

        notified = 0
        for member in group.members:
            if self.hub.message_helper.emit_to_identity(
                outgoing, member, T_GROUP_DELETED, {"channelId": group.id}
            ):
                notified += 1

        self.hub.stats_manager.inc("groups_deleted")
        self.log.info(
            "Group deleted id=%s by=%s notified=%s", group.id, requester, notified
        )
        return group

    def clear_all(self) -> None:
        with self._lock:
            self._subscribers.clear()
            self._conn_channels.clear()

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            top = sorted(
                ((gid, len(conns)) for gid, conns in self._subscribers.items()),
                key=lambda x: (-x[1], x[0]),
            )[:5]
            return {
                "channels_live": len(self._subscribers),
                "subscriptions": sum(len(v) for v in self._subscribers.values()),
                "top_channels": top,
            }

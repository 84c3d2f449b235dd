"""Statistics tracking and reporting for the relay."""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .core import RelayCore


class StatsManager:
    """
    Lifetime counters for the relay plus a one-shot text report.

    Counters cover traffic (bytes/packets), rejected input, contact and
    group lifecycle, message fanout and resource transfers.
    """

    def __init__(self, hub: RelayCore) -> None:
        self.hub = hub
        self._lock = threading.Lock()

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "pkts_in": 0,
            "pkts_bad": 0,
            "rate_limited": 0,
            "errors_sent": 0,
            "identifies": 0,
            "invites_accepted": 0,
            "contacts_created": 0,
            "contacts_deleted": 0,
            "groups_created": 0,
            "groups_deleted": 0,
            "direct_msgs": 0,
            "group_msgs": 0,
            "deliveries": 0,
            "snapshots_pushed": 0,
            "resources_sent": 0,
            "resources_received": 0,
            "resources_rejected": 0,
            "resource_bytes_sent": 0,
            "resource_bytes_received": 0,
            "announces": 0,
        }

    def set_start_time(self) -> None:
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        with self._lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return int(self._counters.get(key, 0))

    def format_stats(self) -> str:
        from . import __version__

        started = self.started_monotonic
        uptime_s = (time.monotonic() - started) if started is not None else 0.0

        session_stats = self.hub.session_manager.get_stats()
        presence_stats = self.hub.presence.get_stats()
        channel_stats = self.hub.channels.get_stats()
        store_stats = self.hub.store.get_stats()
        with self._lock:
            c = dict(self._counters)

        lines: list[str] = []
        lines.append(f"crelayd {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        lines.append(
            f"links_total={session_stats['total']} "
            f"links_identified={session_stats['identified']} "
            f"online={presence_stats['online']}"
        )
        lines.append(
            f"channels_live={channel_stats['channels_live']} "
            f"subscriptions={channel_stats['subscriptions']}"
        )
        top = channel_stats["top_channels"]
        if top:
            lines.append("top_channels=" + ", ".join(f"{g}:{n}" for g, n in top))
        lines.append(
            "store: contacts={} groups={} messages={}".format(
                store_stats.get("contacts", 0),
                store_stats.get("groups", 0),
                store_stats.get("messages", 0),
            )
        )
        lines.append(
            "io: pkts_in={} pkts_bad={} bytes_in={} bytes_out={} rate_limited={} errors_sent={}".format(
                c["pkts_in"],
                c["pkts_bad"],
                c["bytes_in"],
                c["bytes_out"],
                c["rate_limited"],
                c["errors_sent"],
            )
        )
        lines.append(
            "events: identifies={} invites={} contacts_created={} contacts_deleted={} "
            "groups_created={} groups_deleted={}".format(
                c["identifies"],
                c["invites_accepted"],
                c["contacts_created"],
                c["contacts_deleted"],
                c["groups_created"],
                c["groups_deleted"],
            )
        )
        lines.append(
            "messages: direct={} group={} deliveries={} snapshots={}".format(
                c["direct_msgs"],
                c["group_msgs"],
                c["deliveries"],
                c["snapshots_pushed"],
            )
        )
        lines.append(
            "resources: sent={} received={} rejected={} bytes_sent={} bytes_received={}".format(
                c["resources_sent"],
                c["resources_received"],
                c["resources_rejected"],
                c["resource_bytes_sent"],
                c["resource_bytes_received"],
            )
        )

        return "\n".join(lines)

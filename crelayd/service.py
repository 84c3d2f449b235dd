from __future__ import annotations

import logging
import os
import signal
import threading
import time

import RNS

from .codec import encode
from .config import RelayRuntimeConfig
from .core import RelayCore
from .store import MemoryStore, Store, TomlStore
from .util import expand_path


class RelayService:
    """Runs a ``RelayCore`` on top of a Reticulum destination."""

    def __init__(self, config: RelayRuntimeConfig, *, store: Store | None = None) -> None:
        self.config = config
        self.log = logging.getLogger("crelayd.service")
        self._shutdown = threading.Event()

        if store is None:
            store = (
                TomlStore(expand_path(config.store_path))
                if config.store_path
                else MemoryStore()
            )

        self.core = RelayCore(config, store=store, transmit=self._send_payload)

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        self._announce_thread: threading.Thread | None = None
        self._resource_cleanup_thread: threading.Thread | None = None

    def _packet_would_fit(self, link: RNS.Link, payload: bytes) -> bool:
        """Check if payload fits within link MDU without creating/packing packets."""
        try:
            if hasattr(link, "MDU") and link.MDU is not None:
                return len(payload) <= link.MDU
            pkt = RNS.Packet(link, payload)
            pkt.pack()
            return True
        except Exception:
            return False

    def _send_payload(self, link: RNS.Link, payload: bytes) -> None:
        if self._packet_would_fit(link, payload):
            RNS.Packet(link, payload).send()
            return
        if not self.core.resource_manager.send_via_resource(link, payload):
            self.log.warning(
                "Dropped oversized payload link_id=%s bytes=%s",
                self.core.fmt_conn(link),
                len(payload),
            )

    def start(self) -> None:
        self.log.info("Starting Reticulum")
        self.core.stats_manager.set_start_time()
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)
        self.core.src = self.identity.hash

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        app_name, aspects = parts[0], parts[1:]

        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()

        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._announce_thread = threading.Thread(
                target=self._announce_loop,
                name="crelayd-announce",
                daemon=True,
            )
            self._announce_thread.start()

        if self.config.enable_resource_transfer:
            self._resource_cleanup_thread = threading.Thread(
                target=self._resource_cleanup_loop,
                name="crelayd-resource-cleanup",
                daemon=True,
            )
            self._resource_cleanup_thread.start()

        self.log.info(
            "Relay running dest_name=%s dest_hash=%s",
            self.config.dest_name,
            self.destination.hash.hex() if self.destination else "-",
        )
        self.log.info(
            "Policy max_identity_chars=%s max_group_members=%s max_content_chars=%s rate_limit_msgs_per_minute=%s",
            self.config.max_identity_chars,
            self.config.max_group_members,
            self.config.max_content_chars,
            self.config.rate_limit_msgs_per_minute,
        )

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "crelay", "v": 1, "hub": self.config.hub_name})
            )
            self.core.stats_manager.inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        while not self._shutdown.is_set():
            period = float(self.config.announce_period_s)
            if period <= 0:
                time.sleep(1.0)
                continue

            time.sleep(period)
            if self._shutdown.is_set():
                break
            self._announce_once()

    def _resource_cleanup_loop(self) -> None:
        """Periodically cleanup expired resource expectations."""
        while not self._shutdown.is_set():
            time.sleep(30.0)
            if self._shutdown.is_set():
                break
            try:
                self.core.resource_manager.cleanup_all_expired_expectations()
            except Exception:
                self.log.exception("Resource cleanup failed")

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()

        self.log.info("Shutting down\n%s", self.core.stats_manager.format_stats())
        links = self.core.session_manager.clear_all()
        self.core.stop()

        for link in links:
            try:
                link.teardown()
            except Exception:
                self.log.debug(
                    "Teardown failed link_id=%s", self.core.fmt_conn(link), exc_info=True
                )

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    # Link callbacks

    def _on_link(self, link: RNS.Link) -> None:
        self.core.on_connect(link)

        link.set_packet_callback(lambda data, pkt: self._on_packet(link, data))
        link.set_link_closed_callback(lambda closed_link: self._on_close(closed_link))
        self.core.resource_manager.configure_link_callbacks(link)

    def _on_close(self, link: RNS.Link) -> None:
        self.core.disconnect(link)

    def _on_packet(self, link: RNS.Link, data: bytes) -> None:
        # Handlers only queue; sending happens here with no lock held.
        outgoing: list[tuple[RNS.Link, bytes]] = []
        self.core.handle_packet(link, data, outgoing)
        self.core.flush(outgoing)

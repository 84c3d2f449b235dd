"""Resource transfer management for crelayd."""

from __future__ import annotations

import hashlib
import os
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Hashable

import RNS

from .codec import encode
from .constants import B_RES_ID, B_RES_SHA256, B_RES_SIZE, T_RESOURCE_ENVELOPE
from .envelope import make_envelope
from .errors import InvalidRequest

if TYPE_CHECKING:
    from .core import RelayCore


@dataclass
class _ResourceExpectation:
    """Tracks an expected incoming Resource transfer."""
    id: bytes
    size: int
    sha256: bytes | None
    created_at: float
    expires_at: float


class ResourceManager:
    """
    Manages RNS Resource transfers for the relay.

    Outbound: payloads too large for one packet are announced with a
    ``resource-envelope`` and then sent as an ``RNS.Resource``.

    Inbound: a client announces a payload with ``resource-envelope``; an
    advertised Resource is accepted only when it matches a pending
    expectation, and its SHA-256 is verified before the payload is
    dispatched like any other packet.
    """

    def __init__(self, hub: RelayCore) -> None:
        self.hub = hub
        self.log = hub.log
        self._lock = threading.Lock()

        self._expectations: dict[Hashable, dict[bytes, _ResourceExpectation]] = {}
        self._active: dict[Hashable, set[Any]] = {}
        # Which expectation id an advertised Resource was matched to.
        self._bindings: dict[Any, bytes] = {}

    def on_connect(self, conn: Hashable) -> None:
        with self._lock:
            self._expectations[conn] = {}
            self._active[conn] = set()

    def on_disconnect(self, conn: Hashable) -> None:
        with self._lock:
            self._expectations.pop(conn, None)
            for resource in self._active.pop(conn, set()):
                self._bindings.pop(resource, None)

    def clear_all(self) -> None:
        with self._lock:
            self._expectations.clear()
            self._active.clear()
            self._bindings.clear()

    def configure_link_callbacks(self, link: RNS.Link) -> None:
        """Set up resource callbacks for a link if resource transfer is enabled."""
        if not self.hub.config.enable_resource_transfer:
            return

        try:
            link.set_resource_strategy(RNS.Link.ACCEPT_APP)
            link.set_resource_callback(self._resource_advertised)
            link.set_resource_concluded_callback(self._resource_concluded)
            self.log.debug(
                "Resource callbacks configured link_id=%s", self.hub.fmt_conn(link)
            )
        except Exception as e:
            self.log.warning(
                "Failed to set resource callbacks link_id=%s: %s",
                self.hub.fmt_conn(link),
                e,
            )

    # Expectations

    def _cleanup_expired_locked(self, conn: Hashable, now: float) -> None:
        exp_dict = self._expectations.get(conn)
        if not exp_dict:
            return
        expired = [rid for rid, exp in exp_dict.items() if exp.expires_at <= now]
        for rid in expired:
            exp_dict.pop(rid, None)
            self.log.debug(
                "Expired resource expectation link_id=%s rid=%s",
                self.hub.fmt_conn(conn),
                rid.hex(),
            )

    def cleanup_all_expired_expectations(self) -> None:
        now = time.time()
        with self._lock:
            for conn in list(self._expectations):
                self._cleanup_expired_locked(conn, now)

    def expect(self, conn: Hashable, body: dict) -> _ResourceExpectation:
        """Register an inbound ``resource-envelope`` announcement."""
        cfg = self.hub.config
        if not cfg.enable_resource_transfer:
            raise InvalidRequest("resource transfer disabled")

        rid = body.get(B_RES_ID)
        size = body.get(B_RES_SIZE)
        sha256 = body.get(B_RES_SHA256)
        if not isinstance(rid, (bytes, bytearray)) or not rid:
            raise InvalidRequest("resource id must be bytes")
        if not isinstance(size, int) or isinstance(size, bool) or size <= 0:
            raise InvalidRequest("resource size must be a positive integer")
        if size > cfg.max_resource_bytes:
            raise InvalidRequest(f"resource too large (max {cfg.max_resource_bytes} bytes)")
        if sha256 is not None and (
            not isinstance(sha256, (bytes, bytearray)) or len(sha256) != 32
        ):
            raise InvalidRequest("resource sha256 must be 32 bytes")

        now = time.time()
        exp = _ResourceExpectation(
            id=bytes(rid),
            size=size,
            sha256=bytes(sha256) if sha256 is not None else None,
            created_at=now,
            expires_at=now + float(cfg.resource_expectation_ttl_s),
        )
        with self._lock:
            self._cleanup_expired_locked(conn, now)
            exp_dict = self._expectations.setdefault(conn, {})
            if (
                exp.id not in exp_dict
                and len(exp_dict) >= cfg.max_pending_resource_expectations
            ):
                raise InvalidRequest("too many pending resources")
            exp_dict[exp.id] = exp

        self.log.debug(
            "Added resource expectation link_id=%s rid=%s size=%s",
            self.hub.fmt_conn(conn),
            exp.id.hex(),
            size,
        )
        return exp

    def pending(self, conn: Hashable) -> int:
        with self._lock:
            return len(self._expectations.get(conn, ()))

    def find_expectation(self, conn: Hashable, size: int) -> _ResourceExpectation | None:
        """First pending expectation with a matching size."""
        with self._lock:
            self._cleanup_expired_locked(conn, time.time())
            for exp in self._expectations.get(conn, {}).values():
                if exp.size == size:
                    return exp
        return None

    def match_expectation(
        self, conn: Hashable, *, rid: bytes | None, size: int, sha256: bytes | None
    ) -> _ResourceExpectation | None:
        """Find the expectation a completed resource satisfies.

        The bound id from the advertisement wins; otherwise fall back to
        the first size match whose sha256 (if announced) agrees.
        """
        with self._lock:
            self._cleanup_expired_locked(conn, time.time())
            exp_dict = self._expectations.get(conn)
            if not exp_dict:
                return None
            if rid is not None and rid in exp_dict:
                return exp_dict[rid]
            for exp in exp_dict.values():
                if exp.size != size:
                    continue
                if exp.sha256 and sha256 and exp.sha256 != sha256:
                    continue
                return exp
        return None

    def pop_expectation(self, conn: Hashable, rid: bytes) -> _ResourceExpectation | None:
        with self._lock:
            exp_dict = self._expectations.get(conn)
            if not exp_dict:
                return None
            return exp_dict.pop(rid, None)

    def accept_payload(
        self, conn: Hashable, payload: bytes, *, bound_rid: bytes | None = None
    ) -> bool:
        """Verify a received payload against its expectation and dispatch it."""
        size = len(payload)
        actual_hash = hashlib.sha256(payload).digest()

        exp = self.match_expectation(conn, rid=bound_rid, size=size, sha256=actual_hash)
        if exp is None:
            self.log.warning(
                "Received resource without expectation link_id=%s size=%s",
                self.hub.fmt_conn(conn),
                size,
            )
            self.hub.stats_manager.inc("resources_rejected")
            return False

        # Keep the expectation on mismatch so the sender can retry.
        if exp.sha256 and actual_hash != exp.sha256:
            self.log.error(
                "Resource SHA256 mismatch link_id=%s expected=%s actual=%s",
                self.hub.fmt_conn(conn),
                exp.sha256.hex(),
                actual_hash.hex(),
            )
            self.hub.stats_manager.inc("resources_rejected")
            return False

        self.pop_expectation(conn, exp.id)
        self.hub.stats_manager.inc("resources_received")
        self.hub.stats_manager.inc("resource_bytes_received", size)
        self.log.info(
            "Resource received link_id=%s rid=%s size=%s",
            self.hub.fmt_conn(conn),
            exp.id.hex(),
            size,
        )

        self.hub.handle_packet(conn, payload)
        return True

    # RNS callbacks

    def _resource_advertised(self, resource: RNS.Resource) -> bool:
        """Accept an advertised Resource only against a pending expectation."""
        link = resource.link
        cfg = self.hub.config

        if not cfg.enable_resource_transfer:
            self.hub.stats_manager.inc("resources_rejected")
            return False

        size = resource.total_size if hasattr(resource, "total_size") else resource.size
        if size > cfg.max_resource_bytes:
            self.log.warning(
                "Rejecting resource (too large: %s > %s) link_id=%s",
                size,
                cfg.max_resource_bytes,
                self.hub.fmt_conn(link),
            )
            self.hub.stats_manager.inc("resources_rejected")
            return False

        if not self.hub.session_manager.has_session(link):
            self.log.debug(
                "Rejecting resource (no session) link_id=%s", self.hub.fmt_conn(link)
            )
            self.hub.stats_manager.inc("resources_rejected")
            return False

        exp = self.find_expectation(link, size)
        if exp is None:
            self.log.warning(
                "Rejecting resource (no matching expectation) link_id=%s size=%s",
                self.hub.fmt_conn(link),
                size,
            )
            self.hub.stats_manager.inc("resources_rejected")
            return False

        with self._lock:
            self._active.setdefault(link, set()).add(resource)
            self._bindings[resource] = exp.id

        self.log.debug(
            "Accepting resource link_id=%s size=%s", self.hub.fmt_conn(link), size
        )
        return True

    def _resource_concluded(self, resource: RNS.Resource) -> None:
        link = resource.link

        with self._lock:
            active = self._active.get(link)
            if active:
                active.discard(resource)
            bound_rid = self._bindings.pop(resource, None)

        if resource.status != RNS.Resource.COMPLETE:
            self.log.warning(
                "Resource transfer failed link_id=%s status=%s",
                self.hub.fmt_conn(link),
                resource.status,
            )
            return

        try:
            payload = resource.data.read() if hasattr(resource.data, "read") else resource.data
            if isinstance(payload, bytearray):
                payload = bytes(payload)
        except Exception as e:
            self.log.error(
                "Failed to read resource data link_id=%s: %s", self.hub.fmt_conn(link), e
            )
            return

        self.accept_payload(link, payload, bound_rid=bound_rid)

    # Outbound

    def send_via_resource(self, link: RNS.Link, payload: bytes) -> bool:
        """Announce and send ``payload`` as a Resource. False if not possible."""
        cfg = self.hub.config
        if not cfg.enable_resource_transfer:
            return False

        size = len(payload)
        if size > cfg.max_resource_bytes:
            self.log.error(
                "Payload too large for resource transfer: %s > %s",
                size,
                cfg.max_resource_bytes,
            )
            return False

        rid = os.urandom(8)
        envelope = make_envelope(
            T_RESOURCE_ENVELOPE,
            src=self.hub.src,
            body={
                B_RES_ID: rid,
                B_RES_SIZE: size,
                B_RES_SHA256: hashlib.sha256(payload).digest(),
            },
        )

        try:
            envelope_payload = encode(envelope)
            RNS.Packet(link, envelope_payload).send()
            self.hub.stats_manager.inc("bytes_out", len(envelope_payload))
        except Exception as e:
            self.log.error(
                "Failed to send resource envelope link_id=%s: %s",
                self.hub.fmt_conn(link),
                e,
            )
            return False

        try:
            resource = RNS.Resource(payload, link, advertise=True, auto_compress=False)
        except Exception as e:
            self.log.error(
                "Failed to create resource link_id=%s: %s", self.hub.fmt_conn(link), e
            )
            return False

        with self._lock:
            self._active.setdefault(link, set()).add(resource)

        self.hub.stats_manager.inc("resources_sent")
        self.hub.stats_manager.inc("resource_bytes_sent", size)
        self.log.debug(
            "Sent resource link_id=%s rid=%s size=%s",
            self.hub.fmt_conn(link),
            rid.hex(),
            size,
        )
        return True

"""Contact creation from invites and contact/group snapshot pushes."""

from __future__ import annotations

import logging
import threading
import zlib
from typing import TYPE_CHECKING, Any, Iterable

from .constants import T_CONTACT_DELETED, T_NEW_CONTACT, T_UPDATE_CONTACTS
from .errors import InvalidRequest, RelayError
from .models import Contact
from .util import normalize_text, pair_key, require_identity

if TYPE_CHECKING:
    from .core import RelayCore
    from .messages import Outgoing

_INVITE_STRIPES = 16


class ContactSynchronizer:
    """
    Keeps contacts consistent and pushes snapshots to live clients.

    Invite acceptance is idempotent per unordered identity pair: the
    exists-by-pair lookup and the create run under a lock striped by the
    pair, so duplicate or concurrent deliveries of one invite produce a
    single contact.
    """

    def __init__(self, hub: RelayCore) -> None:
        self.hub = hub
        self.log = logging.getLogger("crelayd.contacts")
        self._invite_locks = [threading.Lock() for _ in range(_INVITE_STRIPES)]

    def _invite_lock(self, a: str, b: str) -> threading.Lock:
        lo, hi = pair_key(a, b)
        idx = zlib.crc32(f"{lo}\x00{hi}".encode("utf-8")) % _INVITE_STRIPES
        return self._invite_locks[idx]

    def accept_invite(
        self,
        inviter: str,
        invitee: str,
        display_name: str | None,
        invite_code: str,
        *,
        peer_display_name: str | None = None,
        outgoing: Outgoing | None = None,
    ) -> Contact:
        cfg = self.hub.config
        inviter = require_identity(inviter, max_chars=cfg.max_identity_chars, field="from")
        invitee = require_identity(invitee, max_chars=cfg.max_identity_chars, field="to")
        if inviter == invitee:
            raise InvalidRequest("cannot add yourself as a contact")
        if not isinstance(invite_code, str) or not invite_code.strip():
            raise InvalidRequest("invalid invite code")

        names: dict[str, str] = {}
        for ident, raw in ((inviter, display_name), (invitee, peer_display_name)):
            if raw is None:
                continue
            name = normalize_text(raw, max_chars=cfg.max_display_name_chars)
            if name is None:
                raise InvalidRequest("invalid display name")
            names[ident] = name

        with self._invite_lock(inviter, invitee):
            contact = self.hub.store.find_contact_by_pair(inviter, invitee)
            created = contact is None
            if contact is None:
                contact = self.hub.store.create_contact(
                    (inviter, invitee), invite_code.strip(), names
                )

        self.hub.stats_manager.inc("invites_accepted")
        if created:
            self.hub.stats_manager.inc("contacts_created")
            self.log.info(
                "Contact created id=%s peers=%s,%s", contact.id, inviter, invitee
            )
        else:
            self.log.debug(
                "Invite for existing contact id=%s peers=%s,%s",
                contact.id,
                inviter,
                invitee,
            )

        for ident in contact.peers:
            self.hub.message_helper.emit_to_identity(
                outgoing, ident, T_NEW_CONTACT, contact.project(ident)
            )
        self.push_snapshot_to_many(contact.peers, outgoing)
        return contact

    def build_snapshot(self, identity: str) -> dict[str, list[dict[str, Any]]]:
        contacts = self.hub.store.find_contacts_for(identity)
        groups = self.hub.store.find_groups_for(identity)
        return {
            "contacts": [c.project(identity) for c in contacts],
            "groups": [g.project() for g in groups],
        }

    def push_snapshot(self, identity: str, outgoing: Outgoing | None = None) -> bool:
        """Send ``update-contacts`` to the live connection, if any."""
        conn = self.hub.presence.lookup(identity)
        if conn is None:
            return False
        snapshot = self.build_snapshot(identity)
        self.hub.message_helper.emit(outgoing, conn, T_UPDATE_CONTACTS, snapshot)
        self.hub.stats_manager.inc("snapshots_pushed")
        return True

    def push_snapshot_to_many(
        self, identities: Iterable[str], outgoing: Outgoing | None = None
    ) -> int:
        pushed = 0
        for identity in dict.fromkeys(identities):
            try:
                if self.push_snapshot(identity, outgoing):
                    pushed += 1
            except RelayError as e:
                self.log.warning("Snapshot push failed identity=%s err=%s", identity, e)
        return pushed

    def delete_contact(
        self, identity: str, peer: str, outgoing: Outgoing | None = None
    ) -> bool:
        """Delete the pair's contact and every direct message between them."""
        cfg = self.hub.config
        identity = require_identity(identity, max_chars=cfg.max_identity_chars)
        peer = require_identity(peer, max_chars=cfg.max_identity_chars, field="peer")

        removed, purged = self.hub.store.delete_contact_cascade(identity, peer)

        if removed:
            self.hub.stats_manager.inc("contacts_deleted")
        self.log.info(
            "Contact deleted peers=%s,%s removed=%s messages=%s",
            identity,
            peer,
            removed,
            purged,
        )

        for a, b in ((identity, peer), (peer, identity)):
            self.hub.message_helper.emit_to_identity(
                outgoing, a, T_CONTACT_DELETED, {"peer": b}
            )
        self.push_snapshot_to_many((identity, peer), outgoing)
        return removed

"""Durable records owned by the store, and their wire projections."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Contact:
    """A mutual-messaging relationship between exactly two identities.

    ``names`` maps an identity to the name that identity displays for its
    peer. Either side may be missing, in which case the peer's identity is
    shown instead.
    """

    id: str
    peers: tuple[str, str]
    invite_code: str
    names: dict[str, str] = field(default_factory=dict)
    created_ts: int = 0

    def has_member(self, identity: str) -> bool:
        return identity in self.peers

    def other(self, identity: str) -> str:
        a, b = self.peers
        return b if identity == a else a

    def project(self, identity: str) -> dict[str, Any]:
        other = self.other(identity)
        return {
            "id": self.id,
            "peers": list(self.peers),
            "otherUser": other,
            "displayName": self.names.get(identity) or other,
        }


@dataclass(frozen=True)
class Group:
    id: str
    name: str
    creator: str
    members: tuple[str, ...]
    created_ts: int = 0

    def has_member(self, identity: str) -> bool:
        return identity in self.members

    def project(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "creator": self.creator,
            "members": list(self.members),
        }


@dataclass(frozen=True)
class Message:
    """A persisted message.

    ``target`` is the peer identity for direct messages and the group id
    when ``is_group`` is set.
    """

    id: str
    sender: str
    target: str
    content: str
    timestamp: int
    is_group: bool = False

    def project(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "from": self.sender,
            "to": self.target,
            "content": self.content,
            "timestamp": self.timestamp,
            "isGroup": self.is_group,
        }


def collapse_members(creator: str, proposed) -> tuple[str, ...]:
    """Creator first, then proposed members in order, duplicates dropped."""
    seen: set[str] = set()
    out: list[str] = []
    for ident in [creator, *proposed]:
        if ident in seen:
            continue
        seen.add(ident)
        out.append(ident)
    return tuple(out)

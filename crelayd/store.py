"""Persistence gateway for contacts, groups and messages.

The relay core only talks to the ``Store`` protocol. ``MemoryStore`` keeps
everything in process memory; ``TomlStore`` additionally mirrors the full
state into a TOML document after every write.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Any, Callable, Iterable, Protocol, TypeVar

from .envelope import now_ms
from .errors import PersistenceFailure
from .models import Contact, Group, Message
from .util import pair_key

_T = TypeVar("_T")


def new_record_id() -> str:
    return os.urandom(8).hex()


class Store(Protocol):
    def create_contact(
        self, peers: tuple[str, str], invite_code: str, names: dict[str, str]
    ) -> Contact: ...

    def find_contact_by_pair(self, a: str, b: str) -> Contact | None: ...

    def find_contacts_for(self, identity: str) -> list[Contact]: ...

    def delete_contact_by_pair(self, a: str, b: str) -> bool: ...

    def delete_contact_cascade(self, a: str, b: str) -> tuple[bool, int]: ...

    def create_group(self, name: str, creator: str, members: tuple[str, ...]) -> Group: ...

    def get_group(self, group_id: str) -> Group | None: ...

    def find_groups_for(self, identity: str) -> list[Group]: ...

    def delete_group(self, group_id: str) -> bool: ...

    def delete_group_cascade(self, group_id: str) -> tuple[bool, int]: ...

    def create_message(
        self, sender: str, target: str, content: str, *, is_group: bool
    ) -> Message: ...

    def find_direct_messages(self, a: str, b: str) -> list[Message]: ...

    def find_group_messages(self, group_id: str) -> list[Message]: ...

    def delete_direct_messages(self, a: str, b: str) -> int: ...

    def delete_group_messages(self, group_id: str) -> int: ...

    def get_stats(self) -> dict[str, int]: ...


def _by_time(messages: Iterable[Message]) -> list[Message]:
    # sorted() is stable, so equal timestamps keep insertion order.
    return sorted(messages, key=lambda m: m.timestamp)


class MemoryStore:
    """Process-local store. All access is serialised by one lock."""

    durable = False

    def __init__(self) -> None:
        self.log = logging.getLogger("crelayd.store")
        self._lock = threading.Lock()
        self._contacts: dict[str, Contact] = {}
        self._groups: dict[str, Group] = {}
        self._messages: list[Message] = []

    # Write path

    def _persist(self) -> None:
        """Hook run after every mutation with the lock held."""

    def _write(self, change: Callable[[], _T]) -> _T:
        with self._lock:
            saved = None
            if self.durable:
                saved = (dict(self._contacts), dict(self._groups), list(self._messages))
            try:
                result = change()
                self._persist()
            except PersistenceFailure:
                if saved is not None:
                    self._contacts, self._groups, self._messages = saved
                raise
            return result

    # Contacts

    def create_contact(
        self, peers: tuple[str, str], invite_code: str, names: dict[str, str]
    ) -> Contact:
        contact = Contact(
            id=new_record_id(),
            peers=(peers[0], peers[1]),
            invite_code=invite_code,
            names=dict(names),
            created_ts=now_ms(),
        )

        def change() -> Contact:
            self._contacts[contact.id] = contact
            return contact

        return self._write(change)

    def find_contact_by_pair(self, a: str, b: str) -> Contact | None:
        key = pair_key(a, b)
        with self._lock:
            for c in self._contacts.values():
                if pair_key(*c.peers) == key:
                    return c
        return None

    def find_contacts_for(self, identity: str) -> list[Contact]:
        with self._lock:
            return [c for c in self._contacts.values() if c.has_member(identity)]

    def delete_contact_by_pair(self, a: str, b: str) -> bool:
        key = pair_key(a, b)
        return self._write(lambda: self._drop_contacts(key))

    def delete_contact_cascade(self, a: str, b: str) -> tuple[bool, int]:
        """Delete the pair's contact and their direct messages in one write."""
        key = pair_key(a, b)
        return self._write(
            lambda: (self._drop_contacts(key), self._drop_direct_messages(key))
        )

    def _drop_contacts(self, key: tuple[str, str]) -> bool:
        doomed = [cid for cid, c in self._contacts.items() if pair_key(*c.peers) == key]
        for cid in doomed:
            self._contacts.pop(cid, None)
        return bool(doomed)

    # Groups

    def create_group(self, name: str, creator: str, members: tuple[str, ...]) -> Group:
        group = Group(
            id=new_record_id(),
            name=name,
            creator=creator,
            members=tuple(members),
            created_ts=now_ms(),
        )

        def change() -> Group:
            self._groups[group.id] = group
            return group

        return self._write(change)

    def get_group(self, group_id: str) -> Group | None:
        with self._lock:
            return self._groups.get(group_id)

    def find_groups_for(self, identity: str) -> list[Group]:
        with self._lock:
            return [g for g in self._groups.values() if g.has_member(identity)]

    def delete_group(self, group_id: str) -> bool:
        return self._write(lambda: self._groups.pop(group_id, None) is not None)

    def delete_group_cascade(self, group_id: str) -> tuple[bool, int]:
        """Delete a group and its messages in one write."""
        return self._write(
            lambda: (
                self._groups.pop(group_id, None) is not None,
                self._drop_group_messages(group_id),
            )
        )

    # Messages

    def create_message(
        self, sender: str, target: str, content: str, *, is_group: bool
    ) -> Message:
        msg = Message(
            id=new_record_id(),
            sender=sender,
            target=target,
            content=content,
            timestamp=now_ms(),
            is_group=bool(is_group),
        )

        def change() -> Message:
            self._messages.append(msg)
            return msg

        return self._write(change)

    def find_direct_messages(self, a: str, b: str) -> list[Message]:
        key = pair_key(a, b)
        with self._lock:
            return _by_time(
                m
                for m in self._messages
                if not m.is_group and pair_key(m.sender, m.target) == key
            )

    def find_group_messages(self, group_id: str) -> list[Message]:
        with self._lock:
            return _by_time(
                m for m in self._messages if m.is_group and m.target == group_id
            )

    def delete_direct_messages(self, a: str, b: str) -> int:
        key = pair_key(a, b)
        return self._write(lambda: self._drop_direct_messages(key))

    def delete_group_messages(self, group_id: str) -> int:
        return self._write(lambda: self._drop_group_messages(group_id))

    # Mutation helpers, called with the lock held.

    def _drop_direct_messages(self, key: tuple[str, str]) -> int:
        before = len(self._messages)
        self._messages = [
            m
            for m in self._messages
            if m.is_group or pair_key(m.sender, m.target) != key
        ]
        return before - len(self._messages)

    def _drop_group_messages(self, group_id: str) -> int:
        before = len(self._messages)
        self._messages = [
            m for m in self._messages if not (m.is_group and m.target == group_id)
        ]
        return before - len(self._messages)

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "contacts": len(self._contacts),
                "groups": len(self._groups),
                "messages": len(self._messages),
            }


_STORE_HEADER = """# crelayd store (TOML)
#
# Contacts, groups and messages. This file is rewritten by crelayd after
# every change; stop the relay before editing it by hand.

"""


class TomlStore(MemoryStore):
    """MemoryStore mirrored to a TOML file via tomlkit."""

    durable = True

    def __init__(self, path: str) -> None:
        super().__init__()
        self.path = path
        self._load()

    def _load(self) -> None:
        if not os.path.exists(self.path):
            return

        from tomlkit import parse

        try:
            with open(self.path, encoding="utf-8") as f:
                data = parse(f.read()).unwrap()
        except Exception as e:
            raise PersistenceFailure(f"failed to parse store {self.path}: {e}") from e

        try:
            self._contacts = _load_contacts(data.get("contacts"))
            self._groups = _load_groups(data.get("groups"))
            self._messages = _load_messages(data.get("messages"))
        except (TypeError, ValueError, KeyError) as e:
            raise PersistenceFailure(f"malformed store {self.path}: {e}") from e

        self.log.info(
            "Loaded store path=%s contacts=%s groups=%s messages=%s",
            self.path,
            len(self._contacts),
            len(self._groups),
            len(self._messages),
        )

    def _persist(self) -> None:
        from tomlkit import dumps

        doc: dict[str, Any] = {
            "contacts": {
                c.id: {
                    "peers": list(c.peers),
                    "invite_code": c.invite_code,
                    "created_ts": c.created_ts,
                    "names": dict(c.names),
                }
                for c in self._contacts.values()
            },
            "groups": {
                g.id: {
                    "name": g.name,
                    "creator": g.creator,
                    "members": list(g.members),
                    "created_ts": g.created_ts,
                }
                for g in self._groups.values()
            },
            "messages": [
                {
                    "id": m.id,
                    "sender": m.sender,
                    "target": m.target,
                    "content": m.content,
                    "timestamp": m.timestamp,
                    "is_group": m.is_group,
                }
                for m in self._messages
            ],
        }

        try:
            new_text = _STORE_HEADER + dumps(doc)
            file_stat = None
            try:
                file_stat = os.stat(self.path)
            except OSError:
                file_stat = None

            with open(self.path, "w", encoding="utf-8") as f:
                f.write(new_text)

            mode = file_stat.st_mode if file_stat is not None else 0o600
            try:
                os.chmod(self.path, mode)
            except OSError:
                pass
        except Exception as e:
            self.log.error("Store write failed path=%s err=%s", self.path, e)
            raise PersistenceFailure(f"store write failed: {e}") from e


def _load_contacts(section: Any) -> dict[str, Contact]:
    out: dict[str, Contact] = {}
    if not isinstance(section, dict):
        return out
    for cid, raw in section.items():
        if not isinstance(raw, dict):
            continue
        peers = raw.get("peers")
        if not isinstance(peers, list) or len(peers) != 2:
            continue
        names = raw.get("names")
        out[str(cid)] = Contact(
            id=str(cid),
            peers=(str(peers[0]), str(peers[1])),
            invite_code=str(raw.get("invite_code", "")),
            names={str(k): str(v) for k, v in names.items()} if isinstance(names, dict) else {},
            created_ts=int(raw.get("created_ts", 0)),
        )
    return out


def _load_groups(section: Any) -> dict[str, Group]:
    out: dict[str, Group] = {}
    if not isinstance(section, dict):
        return out
    for gid, raw in section.items():
        if not isinstance(raw, dict):
            continue
        members = raw.get("members")
        out[str(gid)] = Group(
            id=str(gid),
            name=str(raw["name"]),
            creator=str(raw["creator"]),
            members=tuple(str(m) for m in members) if isinstance(members, list) else (),
            created_ts=int(raw.get("created_ts", 0)),
        )
    return out


def _load_messages(section: Any) -> list[Message]:
    out: list[Message] = []
    if not isinstance(section, list):
        return out
    for raw in section:
        if not isinstance(raw, dict):
            continue
        out.append(
            Message(
                id=str(raw["id"]),
                sender=str(raw["sender"]),
                target=str(raw["target"]),
                content=str(raw["content"]),
                timestamp=int(raw["timestamp"]),
                is_group=bool(raw.get("is_group", False)),
            )
        )
    return out

from __future__ import annotations

import os

import pytest

from crelayd.codec import decode, encode
from crelayd.config import RelayRuntimeConfig
from crelayd.constants import K_BODY, K_T
from crelayd.core import RelayCore
from crelayd.envelope import make_envelope


class FakeLink:
    """Stands in for an RNS.Link; records every envelope sent to it."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.link_id = os.urandom(16)
        self.inbox: list[dict] = []

    def __repr__(self) -> str:
        return f"FakeLink({self.name!r})"

    def events(self, event_type: int | None = None) -> list[dict]:
        return [e for e in self.inbox if event_type is None or e[K_T] == event_type]

    def bodies(self, event_type: int) -> list:
        return [e.get(K_BODY) for e in self.events(event_type)]

    def types(self) -> list[int]:
        return [e[K_T] for e in self.inbox]

    def clear(self) -> None:
        self.inbox.clear()


def _capture(conn: FakeLink, payload: bytes) -> None:
    conn.inbox.append(decode(payload))


@pytest.fixture
def config() -> RelayRuntimeConfig:
    return RelayRuntimeConfig()


@pytest.fixture
def make_core(config: RelayRuntimeConfig):
    """Build a RelayCore whose transport records into FakeLink inboxes."""

    def _make(cfg: RelayRuntimeConfig | None = None, *, store=None) -> RelayCore:
        return RelayCore(cfg or config, store=store, transmit=_capture)

    return _make


@pytest.fixture
def core(make_core) -> RelayCore:
    return make_core()


@pytest.fixture
def open_link():
    """Open a fake link on ``core`` and identify it. The inbox starts empty."""

    def _open(core: RelayCore, identity: str | None, *, keep_inbox: bool = False) -> FakeLink:
        link = FakeLink(identity or "anonymous")
        core.on_connect(link)
        if identity is not None:
            core.identify(link, identity)
        if not keep_inbox:
            link.clear()
        return link

    return _open


@pytest.fixture
def connect(core: RelayCore, open_link):
    def _connect(identity: str, *, keep_inbox: bool = False) -> FakeLink:
        return open_link(core, identity, keep_inbox=keep_inbox)

    return _connect


@pytest.fixture
def send_event():
    """Feed one encoded envelope into ``core`` as if it arrived on ``link``."""

    def _send(core: RelayCore, link: FakeLink, event_type: int, body=None) -> None:
        core.handle_packet(link, encode(make_envelope(event_type, body=body)))

    return _send

from dataclasses import replace

from crelayd import __version__
from crelayd.constants import (
    E_FORBIDDEN,
    E_INTERNAL,
    E_INVALID,
    E_NOT_FOUND,
    E_PERSISTENCE,
    E_RATE_LIMITED,
    T_ACCEPT_INVITE,
    T_CREATE_GROUP,
    T_DELETE_CONTACT,
    T_DELETE_GROUP,
    T_ERROR,
    T_FETCH_GROUP_HISTORY,
    T_FETCH_HISTORY,
    T_GROUP_CREATED,
    T_GROUP_DELETED,
    T_GROUP_HISTORY,
    T_HISTORY,
    T_IDENTIFY,
    T_NEW_CONTACT,
    T_RECEIVE_MESSAGE,
    T_REQUEST_CONTACTS,
    T_SEND_MESSAGE,
    T_UPDATE_CONTACTS,
    T_WELCOME,
)
from crelayd.errors import PersistenceFailure
from crelayd.store import MemoryStore


def test_identify_sends_snapshot_then_welcome(core, open_link, send_event) -> None:
    link = open_link(core, None)

    send_event(core, link, T_IDENTIFY, "alice")

    assert link.types() == [T_UPDATE_CONTACTS, T_WELCOME]
    assert link.bodies(T_WELCOME) == [
        {"hub": core.config.hub_name, "version": __version__, "identity": "alice"}
    ]
    assert core.presence.lookup("alice") is link
    assert core.session_manager.get_stats() == {"total": 1, "identified": 1}


def test_events_before_identify_are_rejected(core, open_link, send_event) -> None:
    link = open_link(core, None)

    send_event(core, link, T_SEND_MESSAGE, {"from": "alice", "to": "bob", "content": "hi"})

    errors = link.bodies(T_ERROR)
    assert errors == [
        {"operation": "send-message", "code": E_INVALID, "error": "identify first"}
    ]
    assert core.store.get_stats()["messages"] == 0


def test_malformed_packet_reports_decode_error(core, connect) -> None:
    alice = connect("alice")

    core.handle_packet(alice, b"\xff\x00garbage")

    [err] = alice.bodies(T_ERROR)
    assert err["operation"] == "decode"
    assert err["code"] == E_INVALID
    assert core.stats_manager.get("pkts_bad") == 1


def test_unknown_event_type(core, connect, send_event) -> None:
    alice = connect("alice")
    send_event(core, alice, 999, {})
    [err] = alice.bodies(T_ERROR)
    assert err["code"] == E_INVALID
    assert err["error"] == "unknown event"


def test_packets_from_closed_links_are_ignored(core, open_link, send_event) -> None:
    stranger = open_link(core, None)
    core.disconnect(stranger)

    send_event(core, stranger, T_IDENTIFY, "alice")
    assert stranger.inbox == []
    assert core.presence.lookup("alice") is None


def test_full_conversation_flow(core, connect, send_event) -> None:
    alice = connect("alice")
    bob = connect("bob")

    send_event(
        core,
        alice,
        T_ACCEPT_INVITE,
        {"from": "alice", "to": "bob", "displayName": "Bob", "inviteCode": "c1"},
    )
    assert alice.bodies(T_NEW_CONTACT)[0]["otherUser"] == "bob"
    assert bob.bodies(T_NEW_CONTACT)[0]["otherUser"] == "alice"

    send_event(core, alice, T_SEND_MESSAGE, {"to": "bob", "content": "hi bob"})
    [received] = bob.bodies(T_RECEIVE_MESSAGE)
    assert received["from"] == "alice"
    assert received["content"] == "hi bob"

    bob.clear()
    send_event(core, bob, T_FETCH_HISTORY, {"peer": "alice"})
    [history] = bob.bodies(T_HISTORY)
    assert history["peer"] == "alice"
    assert [m["content"] for m in history["messages"]] == ["hi bob"]
    assert alice.bodies(T_HISTORY) == []

    send_event(core, alice, T_DELETE_CONTACT, {"peer": "bob"})
    alice.clear()
    send_event(core, alice, T_FETCH_HISTORY, {"identity": "alice", "peer": "bob"})
    assert alice.bodies(T_HISTORY)[0]["messages"] == []


def test_group_flow(core, connect, send_event) -> None:
    alice = connect("alice")
    bob = connect("bob")

    send_event(core, alice, T_CREATE_GROUP, {"name": "Team", "members": ["bob"]})
    [created] = bob.bodies(T_GROUP_CREATED)
    assert created["members"] == ["alice", "bob"]
    gid = created["id"]

    send_event(
        core, bob, T_SEND_MESSAGE, {"to": gid, "content": "hello", "isGroup": True}
    )
    assert [m["content"] for m in alice.bodies(T_RECEIVE_MESSAGE)] == ["hello"]

    send_event(core, bob, T_FETCH_GROUP_HISTORY, {"channelId": gid})
    [history] = bob.bodies(T_GROUP_HISTORY)
    assert history["channelId"] == gid
    assert [m["content"] for m in history["messages"]] == ["hello"]

    bob.clear()
    send_event(core, bob, T_DELETE_GROUP, {"channelId": gid})
    [err] = bob.bodies(T_ERROR)
    assert err == {
        "operation": "delete-group",
        "code": E_FORBIDDEN,
        "error": "only the group creator can delete the group",
    }
    assert alice.bodies(T_ERROR) == []

    send_event(core, alice, T_DELETE_GROUP, {"channelId": gid})
    assert bob.bodies(T_GROUP_DELETED) == [{"channelId": gid}]


def test_errors_go_to_originator_only(core, connect, send_event) -> None:
    alice = connect("alice")
    bob = connect("bob")

    send_event(
        core, alice, T_SEND_MESSAGE, {"to": "missing", "content": "x", "isGroup": True}
    )

    [err] = alice.bodies(T_ERROR)
    assert err["operation"] == "send-message"
    assert err["code"] == E_NOT_FOUND
    assert bob.inbox == []


def test_persistence_failure_reported_to_originator(make_core, open_link, send_event) -> None:
    class FailingStore(MemoryStore):
        def create_message(self, sender, target, content, *, is_group):
            raise PersistenceFailure("store unavailable")

    core = make_core(store=FailingStore())
    alice = open_link(core, "alice")
    bob = open_link(core, "bob")

    send_event(core, alice, T_SEND_MESSAGE, {"to": "bob", "content": "hi"})

    [err] = alice.bodies(T_ERROR)
    assert err["code"] == E_PERSISTENCE
    assert bob.inbox == []
    assert core.presence.online() == ["alice", "bob"]


def test_unexpected_exception_is_internal_error(core, connect, send_event, monkeypatch) -> None:
    alice = connect("alice")

    def boom(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(core.contacts, "push_snapshot", boom)
    send_event(core, alice, T_REQUEST_CONTACTS)

    [err] = alice.bodies(T_ERROR)
    assert err == {"operation": "request-contacts", "code": E_INTERNAL, "error": "internal error"}


def test_request_contacts_defaults_to_bound_identity(core, connect, send_event) -> None:
    core.contacts.accept_invite("alice", "bob", "Bob", "c1")
    alice = connect("alice")

    send_event(core, alice, T_REQUEST_CONTACTS)

    [snapshot] = alice.bodies(T_UPDATE_CONTACTS)
    assert [c["displayName"] for c in snapshot["contacts"]] == ["Bob"]


def test_rate_limit(config, make_core, open_link, send_event) -> None:
    core = make_core(replace(config, rate_limit_msgs_per_minute=2))
    link = open_link(core, None)

    for _ in range(3):
        send_event(core, link, T_IDENTIFY, "alice")

    [err] = link.bodies(T_ERROR)
    assert err["code"] == E_RATE_LIMITED
    assert err["operation"] == "rate-limit"
    assert core.stats_manager.get("rate_limited") == 1


def test_disconnect_unbinds_and_unsubscribes(core, connect) -> None:
    alice = connect("alice")
    group = core.create_group("alice", "Team", [])

    core.disconnect(alice)
    core.disconnect(alice)

    assert core.presence.lookup("alice") is None
    assert core.channels.subscribers(group.id) == []
    assert not core.session_manager.has_session(alice)


def test_identify_losing_to_a_newer_bind_keeps_nothing(core, open_link, monkeypatch) -> None:
    group = core.create_group("alice", "Team", [])
    first = open_link(core, None)
    find_groups_for = core.store.find_groups_for
    newer = []

    def rebind_midway(identity):
        if not newer:
            newer.append(open_link(core, identity))
        return find_groups_for(identity)

    monkeypatch.setattr(core.store, "find_groups_for", rebind_midway)
    core.identify(first, "alice")

    [second] = newer
    assert core.presence.lookup("alice") is second
    assert core.channels.channels_of(first) == set()
    assert core.channels.subscribers(group.id) == [second]
    assert first.inbox == []


def test_identify_racing_disconnect_keeps_nothing(core, open_link, monkeypatch) -> None:
    group = core.create_group("alice", "Team", [])
    link = open_link(core, None)
    find_groups_for = core.store.find_groups_for

    def disconnect_midway(identity):
        core.disconnect(link)
        return find_groups_for(identity)

    monkeypatch.setattr(core.store, "find_groups_for", disconnect_midway)
    core.identify(link, "alice")

    assert core.presence.lookup("alice") is None
    assert core.channels.channels_of(link) == set()
    assert core.channels.subscribers(group.id) == []
    assert T_UPDATE_CONTACTS not in link.types()
    assert T_WELCOME not in link.types()

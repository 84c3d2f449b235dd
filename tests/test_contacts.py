import threading

import pytest

from crelayd.constants import T_CONTACT_DELETED, T_NEW_CONTACT, T_UPDATE_CONTACTS
from crelayd.errors import InvalidRequest, PersistenceFailure
from crelayd.store import TomlStore


def test_accept_invite_builds_both_snapshots(core) -> None:
    core.contacts.accept_invite("A", "B", "Bob", "code1")

    snap_a = core.contacts.build_snapshot("A")
    snap_b = core.contacts.build_snapshot("B")
    assert [c["otherUser"] for c in snap_a["contacts"]] == ["B"]
    assert [c["otherUser"] for c in snap_b["contacts"]] == ["A"]
    assert snap_a["contacts"][0]["displayName"] == "Bob"
    # No name supplied for B's side, so it falls back to the peer identity.
    assert snap_b["contacts"][0]["displayName"] == "A"
    assert snap_a["groups"] == [] and snap_b["groups"] == []


def test_accept_invite_stores_names_per_identity(core) -> None:
    contact = core.contacts.accept_invite(
        "alice", "bob", "Bob", "code1", peer_display_name="Alice"
    )
    assert contact.names == {"alice": "Bob", "bob": "Alice"}
    assert contact.project("alice")["displayName"] == "Bob"
    assert contact.project("bob")["displayName"] == "Alice"


def test_accept_invite_is_idempotent(core) -> None:
    first = core.contacts.accept_invite("A", "B", "Bob", "code1")
    second = core.contacts.accept_invite("B", "A", "Alice", "code2")
    assert first.id == second.id
    assert core.store.get_stats()["contacts"] == 1


def test_concurrent_invites_create_one_contact(core) -> None:
    barrier = threading.Barrier(8)

    def accept() -> None:
        barrier.wait()
        core.contacts.accept_invite("A", "B", "Bob", "code1")

    threads = [threading.Thread(target=accept) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(core.store.find_contacts_for("A")) == 1


def test_accept_invite_rejects_self_and_bad_input(core) -> None:
    with pytest.raises(InvalidRequest):
        core.contacts.accept_invite("A", "A", "Me", "code1")
    with pytest.raises(InvalidRequest):
        core.contacts.accept_invite("A", "B", "Bob", "")
    with pytest.raises(InvalidRequest):
        core.contacts.accept_invite("A", "", "Bob", "code1")
    with pytest.raises(InvalidRequest):
        core.contacts.accept_invite("A", "B", "two\nlines", "code1")
    assert core.store.get_stats()["contacts"] == 0


def test_accept_invite_notifies_live_sides(core, connect) -> None:
    alice = connect("alice")

    core.contacts.accept_invite("alice", "bob", "Bob", "code1")

    new_contacts = alice.bodies(T_NEW_CONTACT)
    assert len(new_contacts) == 1
    assert new_contacts[0]["otherUser"] == "bob"
    assert new_contacts[0]["displayName"] == "Bob"
    snapshot = alice.bodies(T_UPDATE_CONTACTS)[-1]
    assert [c["otherUser"] for c in snapshot["contacts"]] == ["bob"]


def test_push_snapshot_offline_is_noop(core) -> None:
    assert core.contacts.push_snapshot("ghost") is False
    assert core.stats_manager.get("snapshots_pushed") == 0


def test_snapshot_includes_groups(core) -> None:
    group = core.create_group("alice", "Team", ["bob"])
    snap = core.contacts.build_snapshot("bob")
    assert snap["groups"] == [group.project()]
    assert core.contacts.build_snapshot("carol") == {"contacts": [], "groups": []}


def test_delete_contact_cascades_pair_messages_only(core) -> None:
    core.contacts.accept_invite("A", "B", "Bob", "code1")
    core.contacts.accept_invite("A", "C", "Carol", "code2")
    core.router.send_direct("A", "B", "one")
    core.router.send_direct("B", "A", "two")
    core.router.send_direct("A", "B", "three")
    core.router.send_direct("A", "C", "keep")
    group = core.create_group("A", "Team", ["B"])
    core.router.send_group("B", group.id, "group keep")

    assert core.contacts.delete_contact("A", "B") is True

    assert core.router.fetch_history("A", "B") == []
    assert core.store.find_contact_by_pair("A", "B") is None
    assert [m.content for m in core.router.fetch_history("A", "C")] == ["keep"]
    assert [m.content for m in core.router.fetch_group_history(group.id)] == ["group keep"]
    assert core.store.find_contact_by_pair("C", "A") is not None


def test_delete_missing_contact_still_purges_messages(core) -> None:
    core.router.send_direct("A", "B", "stray")
    assert core.contacts.delete_contact("B", "A") is False
    assert core.router.fetch_history("A", "B") == []


def test_delete_contact_notifies_both_sides(core, connect) -> None:
    core.contacts.accept_invite("alice", "bob", "Bob", "code1")
    alice = connect("alice")
    bob = connect("bob")

    core.contacts.delete_contact("alice", "bob")

    assert alice.bodies(T_CONTACT_DELETED) == [{"peer": "bob"}]
    assert bob.bodies(T_CONTACT_DELETED) == [{"peer": "alice"}]
    assert alice.bodies(T_UPDATE_CONTACTS)[-1]["contacts"] == []
    assert bob.bodies(T_UPDATE_CONTACTS)[-1]["contacts"] == []


def test_snapshot_failure_for_one_identity_does_not_block_others(core, connect, monkeypatch) -> None:
    alice = connect("alice")
    bob = connect("bob")
    build_snapshot = core.contacts.build_snapshot

    def failing_for_alice(identity):
        if identity == "alice":
            raise PersistenceFailure("store unavailable")
        return build_snapshot(identity)

    monkeypatch.setattr(core.contacts, "build_snapshot", failing_for_alice)

    assert core.contacts.push_snapshot_to_many(["alice", "bob"]) == 1
    assert alice.inbox == []
    assert bob.bodies(T_UPDATE_CONTACTS) == [{"contacts": [], "groups": []}]


def test_delete_contact_failure_keeps_contact_and_messages(make_core, tmp_path) -> None:
    store = TomlStore(str(tmp_path / "store.toml"))
    core = make_core(store=store)
    core.contacts.accept_invite("alice", "bob", "Bob", "code1")
    core.router.send_direct("alice", "bob", "hi")

    store.path = str(tmp_path)
    with pytest.raises(PersistenceFailure):
        core.contacts.delete_contact("alice", "bob")

    assert core.store.find_contact_by_pair("alice", "bob") is not None
    assert [m.content for m in core.router.fetch_history("alice", "bob")] == ["hi"]

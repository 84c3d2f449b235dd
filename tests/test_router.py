import pytest

from crelayd.constants import K_SRC, T_RECEIVE_MESSAGE
from crelayd.errors import InvalidRequest, NotFound, PersistenceFailure
from crelayd.store import MemoryStore


class FailingStore(MemoryStore):
    def create_message(self, sender, target, content, *, is_group):
        raise PersistenceFailure("disk full")


def test_send_direct_delivers_to_recipient_and_echoes(core, connect) -> None:
    alice = connect("alice")
    bob = connect("bob")

    msg = core.router.send_direct("alice", "bob", "hi")

    assert bob.bodies(T_RECEIVE_MESSAGE) == [msg.project()]
    assert alice.bodies(T_RECEIVE_MESSAGE) == [msg.project()]
    assert bob.events(T_RECEIVE_MESSAGE)[0][K_SRC] == "alice"
    assert msg.project()["isGroup"] is False
    assert core.stats_manager.get("deliveries") == 2


def test_send_direct_offline_recipient(core, connect) -> None:
    alice = connect("A")

    msg = core.router.send_direct("A", "B", "hi")

    assert alice.bodies(T_RECEIVE_MESSAGE) == [msg.project()]
    assert core.router.fetch_history("A", "B") == [msg]
    assert core.router.fetch_history("B", "A") == [msg]


def test_send_direct_to_self_delivers_once(core, connect) -> None:
    alice = connect("alice")
    core.router.send_direct("alice", "alice", "note to self")
    assert len(alice.events(T_RECEIVE_MESSAGE)) == 1


def test_send_direct_rejects_bad_content(core) -> None:
    with pytest.raises(InvalidRequest):
        core.router.send_direct("alice", "bob", "   ")
    with pytest.raises(InvalidRequest):
        core.router.send_direct("alice", "bob", None)
    with pytest.raises(InvalidRequest):
        core.router.send_direct("alice", "bob", "x" * (core.config.max_content_chars + 1))
    assert core.store.get_stats()["messages"] == 0


def test_persistence_failure_aborts_delivery(make_core, open_link) -> None:
    core = make_core(store=FailingStore())
    links = {ident: open_link(core, ident) for ident in ("alice", "bob")}

    with pytest.raises(PersistenceFailure):
        core.router.send_direct("alice", "bob", "hi")

    assert links["alice"].inbox == []
    assert links["bob"].inbox == []
    assert core.presence.lookup("alice") is links["alice"]


def test_send_group_reaches_subscribers_only(core, connect) -> None:
    alice = connect("alice")
    bob = connect("bob")
    mallory = connect("mallory")
    group = core.create_group("alice", "Team", ["bob", "carol"])
    for link in (alice, bob, mallory):
        link.clear()

    msg = core.router.send_group("bob", group.id, "hello team")

    assert alice.bodies(T_RECEIVE_MESSAGE) == [msg.project()]
    assert bob.bodies(T_RECEIVE_MESSAGE) == [msg.project()]
    assert mallory.inbox == []
    assert msg.project()["isGroup"] is True
    assert msg.target == group.id


def test_send_group_unknown_group_persists_nothing(core) -> None:
    with pytest.raises(NotFound):
        core.router.send_group("alice", "missing", "hello")
    assert core.store.get_stats()["messages"] == 0


def test_reconnect_moves_group_delivery_to_new_link(core, connect) -> None:
    connect("alice")
    old_bob = connect("bob")
    group = core.create_group("alice", "Team", ["bob"])
    new_bob = connect("bob")
    old_bob.clear()

    core.router.send_group("alice", group.id, "after reconnect")

    assert old_bob.inbox == []
    assert len(new_bob.events(T_RECEIVE_MESSAGE)) == 1

    # The stale link closing must not unbind the new one.
    core.disconnect(old_bob)
    assert core.presence.lookup("bob") is new_bob
    assert new_bob in core.channels.subscribers(group.id)


def test_history_is_time_ordered(core, monkeypatch) -> None:
    import crelayd.store as store_mod

    clock = iter([300, 100, 200, 200, 50])
    monkeypatch.setattr(store_mod, "now_ms", lambda: next(clock))

    for text in ("c", "a", "b1", "b2"):
        core.router.send_direct("A", "B", text)
    core.router.send_direct("A", "C", "other")

    history = core.router.fetch_history("B", "A")
    assert [m.content for m in history] == ["a", "b1", "b2", "c"]
    stamps = [m.timestamp for m in history]
    assert stamps == sorted(stamps)


def test_group_history_is_time_ordered(core, monkeypatch) -> None:
    import crelayd.store as store_mod

    group = core.create_group("A", "Team", ["B"])
    clock = iter([20, 10, 30])
    monkeypatch.setattr(store_mod, "now_ms", lambda: next(clock))

    for text in ("second", "first", "third"):
        core.router.send_group("A", group.id, text)

    assert [m.content for m in core.router.fetch_group_history(group.id)] == [
        "first",
        "second",
        "third",
    ]

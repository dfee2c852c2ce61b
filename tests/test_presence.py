from concurrent.futures import ThreadPoolExecutor

from rapidgig_chat.realtime.presence import PresenceTracker


def test_first_handle_brings_user_online_and_last_takes_them_offline():
    tracker = PresenceTracker()
    tab_one, tab_two = object(), object()

    assert tracker.register("alice", tab_one) is True
    assert tracker.register("alice", tab_two) is False
    assert tracker.is_online("alice")
    assert tracker.connections_for("alice") == frozenset({tab_one, tab_two})

    assert tracker.unregister("alice", tab_one) is False
    assert tracker.is_online("alice")
    assert tracker.unregister("alice", tab_two) is True
    assert not tracker.is_online("alice")
    assert tracker.connections_for("alice") == frozenset()


def test_unregister_unknown_handle_is_a_noop():
    tracker = PresenceTracker()
    tab = object()
    tracker.register("alice", tab)

    assert tracker.unregister("alice", object()) is False
    assert tracker.unregister("bob", tab) is False
    assert tracker.is_online("alice")


def test_online_users_keeps_requested_order():
    tracker = PresenceTracker()
    tracker.register("carol", object())
    tracker.register("alice", object())

    assert tracker.online_users(["alice", "bob", "carol"]) == ["alice", "carol"]
    assert tracker.online_users([]) == []


def test_clear_returns_every_handle():
    tracker = PresenceTracker()
    handles = [object(), object(), object()]
    tracker.register("alice", handles[0])
    tracker.register("alice", handles[1])
    tracker.register("bob", handles[2])

    assert tracker.connection_count == 3
    assert set(tracker.clear()) == set(handles)
    assert tracker.connection_count == 0
    assert tracker.all_connections() == []


def test_concurrent_register_unregister_leaves_consistent_state():
    tracker = PresenceTracker()
    keep = object()
    tracker.register("alice", keep)
    handles = [object() for _ in range(200)]

    def churn(handle):
        tracker.register("alice", handle)
        tracker.unregister("alice", handle)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(churn, handles))

    assert tracker.connections_for("alice") == frozenset({keep})
    assert tracker.connection_count == 1

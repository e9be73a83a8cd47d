import threading
from datetime import timedelta

import misc
from state import ControlState, PENDING_CREATION


def test_creation_guard_transitions():
    s = ControlState()
    assert s.creation_in_flight is None
    assert s.try_begin_creation()
    assert s.creation_in_flight == PENDING_CREATION
    assert not s.try_begin_creation()
    s.set_creation_node(12)
    assert s.creation_in_flight == 12
    assert not s.clear_creation(13)
    assert s.creation_in_flight == 12
    assert s.clear_creation(12)
    assert s.creation_in_flight is None


def test_creation_guard_is_atomic_under_contention():
    s       = ControlState()
    barrier = threading.Barrier(16)
    wins    = []

    def _claim():
        barrier.wait()
        if s.try_begin_creation():
            wins.append(threading.current_thread().name)

    threads = [threading.Thread(target=_claim) for _ in range(16)]
    for t in threads: t.start()
    for t in threads: t.join()
    assert len(wins) == 1


def test_cooldown_expires():
    s   = ControlState()
    now = misc.utc_now()
    assert not s.in_cooldown(now)
    until = s.start_cooldown(60, now=now)
    assert until == now + timedelta(seconds=60)
    assert s.in_cooldown(now + timedelta(seconds=59))
    assert not s.in_cooldown(now + timedelta(seconds=60))
    assert s.cooldown_until is None


def test_probe_batch_single_flight():
    s = ControlState()
    assert s.try_begin_probe_batch()
    assert not s.try_begin_probe_batch()
    s.end_probe_batch()
    assert s.try_begin_probe_batch()


def test_describe():
    s = ControlState()
    s.set_pushed_members([1, 2])
    d = s.describe()
    assert d["LoadBalancerMembers"] == [1, 2]
    assert d["FleetSize"] is None
    assert d["CreationInFlight"] is None


def test_dead_ids_are_forgotten_when_no_longer_listed():
    from fleet import FleetSnapshot, Node
    s = ControlState()
    s.mark_dead(1001)
    s.set_snapshot(FleetSnapshot([Node(1), Node(1001)]))
    assert s.dead_ids == {1001}
    s.set_snapshot(FleetSnapshot([Node(1)]))
    assert s.dead_ids == set()
    assert s.describe()["DeadNodes"] == []

import pytest

from conftest import ORIGIN
from broadcasts.models import BroadcastKind, BroadcastPhase, BroadcastRecord, BroadcastStatus
from broadcasts.store import DuplicatePendingBroadcast, InMemoryBroadcastStore
from dispatch.state_machines.broadcast_state import (
    BroadcastStateException,
    start_next_round,
    transition_to_accepted,
    transition_to_extended,
    transition_to_failed,
)


@pytest.fixture
def store():
    return InMemoryBroadcastStore()


@pytest.fixture
def record(store, t0, at):
    record = BroadcastRecord.new(
        BroadcastKind.CART_ORDER,
        "cart_1",
        "customer_1",
        ORIGIN,
        phase_deadline=at(15),
        overall_deadline=at(180),
        radius_km=10,
        now=t0,
    )
    record.notified_candidate_ids = ["ph_01", "ph_02"]
    return store.insert_broadcast(record)


def test_compare_and_set_applies_and_bumps_version(store, record, at):
    updated = store.compare_and_set(
        record.id,
        BroadcastStatus.PENDING,
        transition_to_accepted(record, "ph_01", "order_1", at(2)),
        now=at(2),
    )

    assert updated.status == BroadcastStatus.ACCEPTED
    assert updated.accepted_by == "ph_01"
    assert updated.result_resource_id == "order_1"
    assert updated.version == record.version + 1
    assert updated.updated_at == at(2)
    assert store.get_broadcast(record.id) == updated


def test_compare_and_set_refuses_stale_expectations(store, record, at):
    changes = transition_to_accepted(record, "ph_01", "order_1", at(2))
    assert store.compare_and_set(record.id, BroadcastStatus.PENDING, changes, now=at(2)) is not None

    # status no longer pending
    assert store.compare_and_set(record.id, BroadcastStatus.PENDING, {"failure_reason": "x"}) is None
    # unknown id
    assert store.compare_and_set("missing", BroadcastStatus.PENDING, {"failure_reason": "x"}) is None


def test_compare_and_set_checks_version(store, record, at):
    changes = transition_to_extended(record, ["ph_03"], [], at(30))
    assert store.compare_and_set(record.id, BroadcastStatus.PENDING, changes, expected_version=record.version + 5) is None
    assert store.compare_and_set(record.id, BroadcastStatus.PENDING, changes, expected_version=record.version).phase == BroadcastPhase.EXTENDED


def test_compare_and_set_guards_fields(store, record):
    with pytest.raises(ValueError):
        store.compare_and_set(record.id, BroadcastStatus.PENDING, {"requester_id": "someone_else"})
    with pytest.raises(ValueError):
        store.compare_and_set(record.id, BroadcastStatus.PENDING, {"notified_candidate_ids": ["ph_02"]})
    with pytest.raises(ValueError):
        store.compare_and_set(record.id, BroadcastStatus.PENDING, {"no_such_field": 1})


def test_store_hands_out_copies(store, record):
    fetched = store.get_broadcast(record.id)
    fetched.notified_candidate_ids.append("ph_99")
    assert store.get_broadcast(record.id).notified_candidate_ids == ["ph_01", "ph_02"]


def test_subscribers_see_changes_until_unsubscribed(store, record, at):
    seen = []
    unsubscribe = store.subscribe(record.id, seen.append)

    store.compare_and_set(record.id, BroadcastStatus.PENDING, {"failure_reason": "x"}, now=at(1))
    unsubscribe()
    store.compare_and_set(record.id, BroadcastStatus.PENDING, {"failure_reason": "y"}, now=at(2))

    assert [snapshot.failure_reason for snapshot in seen] == ["x"]
    assert store.listener_count(record.id) == 0


def test_failing_listener_does_not_break_the_write(store, record):
    def broken_listener(snapshot):
        raise RuntimeError("listener bug")

    store.subscribe(record.id, broken_listener)
    assert store.compare_and_set(record.id, BroadcastStatus.PENDING, {"failure_reason": "x"}) is not None


def test_transitions_only_from_pending(record, at):
    accepted = BroadcastRecord(**{**record.__dict__, "status": BroadcastStatus.ACCEPTED})
    with pytest.raises(BroadcastStateException):
        transition_to_accepted(accepted, "ph_01", "order_1", at(3))

    with pytest.raises(BroadcastStateException):
        start_next_round(record, 1, 10, [], [], at(30), {})
    with pytest.raises(BroadcastStateException):
        start_next_round(record, 2, 5, [], [], at(30), {})

    changes = start_next_round(record, 2, 20, ["ph_01", "ph_05"], [], at(30), {"ph_05": 12.0})
    assert changes["notified_candidate_ids"] == ["ph_01", "ph_02", "ph_05"]
    assert changes["phase"] == BroadcastPhase.PRIORITY


def test_one_pending_broadcast_per_target(store, record, t0, at):
    def new_broadcast(kind=BroadcastKind.CART_ORDER):
        return BroadcastRecord.new(
            kind, "cart_1", "customer_1", ORIGIN, phase_deadline=at(15), overall_deadline=at(180), radius_km=10, now=t0
        )

    with pytest.raises(DuplicatePendingBroadcast) as excinfo:
        store.insert_broadcast(new_broadcast())
    assert excinfo.value.existing.id == record.id
    assert len(store.list_broadcasts(target_id="cart_1")) == 1

    # a different kind is a different target
    assert store.insert_broadcast(new_broadcast(BroadcastKind.DELIVERY)).kind == BroadcastKind.DELIVERY

    # once the running broadcast is over the target may be broadcast again
    store.compare_and_set(record.id, BroadcastStatus.PENDING, transition_to_failed(record, "timeout", at(180)))
    again = store.insert_broadcast(new_broadcast())
    assert store.find_pending_for_target(BroadcastKind.CART_ORDER, "cart_1").id == again.id

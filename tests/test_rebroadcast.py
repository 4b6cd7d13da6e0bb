import pytest

from conftest import ORIGIN, provider_at
from broadcasts.models import BroadcastKind, BroadcastStatus
from dispatch.rebroadcast import RebroadcastSweep
from providers.models import ProviderKind


def refresh_partners(system, pinged_at):
    """Both partners report their position at `pinged_at`."""
    system.providers[:] = [
        provider_at("dp_1", 2.0, kind=ProviderKind.DELIVERY_PARTNER, location_updated_at=pinged_at),
        provider_at("dp_2", 3.0, kind=ProviderKind.DELIVERY_PARTNER, location_updated_at=pinged_at),
    ]


def fail_round(system, broadcast_id, now):
    """Every partner of the broadcast rejects."""
    for candidate_id in system.store.get_broadcast(broadcast_id).notified_candidate_ids:
        system.arbiter.respond(broadcast_id, candidate_id, "reject", now=now)
    assert system.store.get_broadcast(broadcast_id).status == BroadcastStatus.FAILED


@pytest.fixture
def failed_delivery(system, t0, at):
    refresh_partners(system, t0)
    record = system.scheduler.start(
        BroadcastKind.DELIVERY,
        "order_1",
        "customer_1",
        ORIGIN,
        payload={"order_number": "A-100"},
        now=t0,
    )
    fail_round(system, record.id, at(5))
    return record


def test_cooldown_blocks_rebroadcast(system, failed_delivery, at):
    sweep = RebroadcastSweep(system.store, system.scheduler)

    result = sweep.run(now=at(100))

    assert result.checked == 1
    assert result.rebroadcast == []
    assert result.skipped == {"order_1": "cooldown"}


def test_rebroadcast_widens_radius_until_round_cap(system, failed_delivery, at):
    sweep = RebroadcastSweep(system.store, system.scheduler)

    # round 2
    refresh_partners(system, at(200))
    assert sweep.run(now=at(200)).rebroadcast == ["order_1"]
    second = system.store.find_pending_for_target(BroadcastKind.DELIVERY, "order_1")
    assert second.round_number == 2
    assert second.radius_km == 20
    assert second.base_radius_km == 10
    assert second.payload == {"order_number": "A-100"}
    assert second.notified_candidate_ids == ["dp_1", "dp_2"]

    # nothing to do while that broadcast is running
    assert sweep.run(now=at(210)).checked == 0

    fail_round(system, second.id, at(210))

    # round 3
    refresh_partners(system, at(400))
    assert sweep.run(now=at(400)).rebroadcast == ["order_1"]
    third = system.store.find_pending_for_target(BroadcastKind.DELIVERY, "order_1")
    assert third.round_number == 3
    assert third.radius_km == 30

    fail_round(system, third.id, at(410))

    # three rounds spent: left for manual handling
    refresh_partners(system, at(700))
    result = sweep.run(now=at(700))
    assert result.rebroadcast == []
    assert result.skipped == {"order_1": "max_rounds"}
    assert len(system.store.list_broadcasts(target_id="order_1")) == 3


def test_accepted_delivery_is_left_alone(system, t0, at):
    refresh_partners(system, t0)
    record = system.scheduler.start(BroadcastKind.DELIVERY, "order_2", "customer_1", ORIGIN, now=t0)
    assert system.arbiter.respond(record.id, "dp_1", "accept", now=at(3)).success

    result = RebroadcastSweep(system.store, system.scheduler).run(now=at(1000))
    assert result.checked == 0
    assert result.rebroadcast == []

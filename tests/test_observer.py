import pytest
import threading
from dataclasses import replace

from conftest import ORIGIN
from broadcasts.models import BroadcastKind, BroadcastRecord, BroadcastStatus
from dispatch.observer import BroadcastOutcome, BroadcastWatcher, CompletionToken, apply_broadcast_update


@pytest.fixture
def record(t0, at):
    return BroadcastRecord.new(
        BroadcastKind.CART_ORDER,
        "cart_1",
        "customer_1",
        ORIGIN,
        phase_deadline=at(15),
        overall_deadline=at(180),
        radius_km=10,
        now=t0,
    )


def test_reducer_keeps_newest_version(record):
    newer = replace(record, version=3)
    older = replace(record, version=1)

    assert apply_broadcast_update(None, record) is record
    assert apply_broadcast_update(record, None) is record
    assert apply_broadcast_update(older, newer) is newer
    assert apply_broadcast_update(newer, older) is newer
    # same snapshot twice (push + poll) changes nothing
    assert apply_broadcast_update(newer, replace(newer)) is newer


def test_reducer_terminal_state_is_sticky(record):
    accepted = replace(record, status=BroadcastStatus.ACCEPTED, accepted_by="ph_01", version=4)
    stale_pending = replace(record, version=9)

    assert apply_broadcast_update(accepted, stale_pending) is accepted
    assert apply_broadcast_update(stale_pending, accepted) is accepted


def test_completion_token_claims_once():
    token = CompletionToken()
    claims = []
    barrier = threading.Barrier(8)

    def claim():
        barrier.wait()
        claims.append(token.claim())

    threads = [threading.Thread(target=claim) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert claims.count(True) == 1
    assert token.claimed


def test_watcher_reports_acceptance_once_via_push_and_poll(system, pharmacies, t0, at):
    system.providers.extend(pharmacies)
    broadcast = system.scheduler.start(BroadcastKind.CART_ORDER, "cart_1", "customer_1", ORIGIN, now=t0)
    outcomes = []

    watcher = BroadcastWatcher(system.store, broadcast.id, on_terminal=outcomes.append, poll_interval=60, clock=lambda: at(1))
    watcher.start()
    assert watcher.record.id == broadcast.id
    assert not watcher.done

    result = system.arbiter.respond(broadcast.id, "ph_01", "accept", now=at(2))

    # the change notification already finished the watcher; a poll afterwards is a no-op
    assert watcher.done
    watcher.poll_once(now=at(3))
    watcher.close()

    assert outcomes == [BroadcastOutcome(
        broadcast_id=broadcast.id,
        status=BroadcastStatus.ACCEPTED,
        result_resource_id=result.result_resource_id,
        accepted_by="ph_01",
    )]
    assert watcher.wait(0) == outcomes[0]
    assert system.store.listener_count(broadcast.id) == 0


def test_watcher_works_from_polling_alone(system, pharmacies, t0, at, monkeypatch):
    system.providers.extend(pharmacies)
    broadcast = system.scheduler.start(BroadcastKind.CART_ORDER, "cart_1", "customer_1", ORIGIN, now=t0)

    # change notification is down: subscribe hands back a no-op
    monkeypatch.setattr(system.store, "subscribe", lambda broadcast_id, listener: (lambda: None))

    changes = []
    outcomes = []
    watcher = BroadcastWatcher(system.store, broadcast.id, on_change=changes.append, on_terminal=outcomes.append, poll_interval=60, clock=lambda: at(1))
    watcher.start()

    system.arbiter.respond(broadcast.id, "ph_02", "accept", now=at(2))
    assert not watcher.done

    watcher.poll_once(now=at(4))
    watcher.close()

    assert watcher.done
    assert [outcome.accepted_by for outcome in outcomes] == ["ph_02"]
    assert [change.status for change in changes] == [BroadcastStatus.PENDING, BroadcastStatus.ACCEPTED]


def test_watcher_local_countdown_reports_timeout(system, pharmacies, t0, at):
    system.providers.extend(pharmacies)
    broadcast = system.scheduler.start(BroadcastKind.CART_ORDER, "cart_1", "customer_1", ORIGIN, now=t0)
    outcomes = []

    with BroadcastWatcher(system.store, broadcast.id, on_terminal=outcomes.append, poll_interval=60, clock=lambda: at(1)) as watcher:
        assert watcher.remaining_seconds(at(100)) == 80
        watcher.poll_once(now=at(179))
        assert outcomes == []

        watcher.poll_once(now=at(181))
        assert watcher.done

        # the server-side failure arriving later is not reported a second time
        system.scheduler.sweep(now=at(185))
        watcher.poll_once(now=at(186))

    assert len(outcomes) == 1
    assert outcomes[0].status == BroadcastStatus.FAILED
    assert outcomes[0].reason == "timeout"


def test_watcher_background_polling_thread(system, pharmacies, t0, at):
    system.providers.extend(pharmacies)
    broadcast = system.scheduler.start(BroadcastKind.CART_ORDER, "cart_1", "customer_1", ORIGIN, now=t0)

    watcher = BroadcastWatcher(system.store, broadcast.id, poll_interval=0.05, clock=lambda: at(1)).start()
    system.arbiter.cancel(broadcast.id, requester_id="customer_1", now=at(1))

    outcome = watcher.wait(timeout=2)
    watcher.close()
    watcher.close()

    assert outcome is not None
    assert outcome.status == BroadcastStatus.CANCELLED


def test_watcher_poll_interval_comes_from_policy(system, pharmacies, t0, monkeypatch):
    system.providers.extend(pharmacies)
    broadcast = system.scheduler.start(BroadcastKind.CART_ORDER, "cart_1", "customer_1", ORIGIN, now=t0)

    monkeypatch.delenv("BROADCAST_POLL_INTERVAL_SECONDS", raising=False)
    assert BroadcastWatcher(system.store, broadcast.id).poll_interval == 2.0

    monkeypatch.setenv("BROADCAST_POLL_INTERVAL_SECONDS", "0.5")
    assert BroadcastWatcher(system.store, broadcast.id).poll_interval == 0.5
    # an explicit value is kept
    assert BroadcastWatcher(system.store, broadcast.id, poll_interval=10).poll_interval == 10


def test_watcher_and_arbiter_agree_at_deadline_instant(system, pharmacies, t0, at):
    system.providers.extend(pharmacies)
    broadcast = system.scheduler.start(BroadcastKind.CART_ORDER, "cart_1", "customer_1", ORIGIN, now=t0)
    outcomes = []

    with BroadcastWatcher(system.store, broadcast.id, on_terminal=outcomes.append, poll_interval=60, clock=lambda: at(1)) as watcher:
        watcher.poll_once(now=at(180))

        assert [outcome.status for outcome in outcomes] == [BroadcastStatus.FAILED]
        assert system.store.get_broadcast(broadcast.id).is_expired(at(180))
        assert system.arbiter.respond(broadcast.id, "ph_01", "accept", now=at(180)).error == "already_resolved"

    assert system.resources.resources_for(broadcast.id) == []
    assert system.store.get_broadcast(broadcast.id).status == BroadcastStatus.FAILED

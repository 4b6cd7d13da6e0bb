import pytest
import requests
from datetime import timedelta

from conftest import ORIGIN, RecordingPushClient
from broadcasts.models import BroadcastKind, BroadcastRecord, OfferStatus
from broadcasts.store import InMemoryBroadcastStore
from dispatch.errors import TransportFailure
from dispatch.notifier import Notifier, offer_message
from dispatch.push_client import PushClient


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse(payload={"ok": True})
        self.error = error
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error:
            raise self.error
        return self.response


class BrokenPushClient:
    def send(self, recipient_ids, title, body, data=None):
        raise TransportFailure("gateway down")


@pytest.fixture
def store():
    return InMemoryBroadcastStore()


@pytest.fixture
def broadcast(store, t0, at):
    record = BroadcastRecord.new(
        BroadcastKind.CART_ORDER,
        "cart_1",
        "customer_1",
        ORIGIN,
        phase_deadline=at(15),
        overall_deadline=at(180),
        radius_km=10,
        payload={"items": [{"medicine_id": "m1"}, {"medicine_id": "m2"}], "total_amount": 24},
        now=t0,
    )
    return store.insert_broadcast(record)


def test_notify_persists_offer_then_pushes(store, broadcast, t0, at):
    push = RecordingPushClient()
    notifier = Notifier(store, push)

    offer = notifier.notify("ph_01", broadcast, {"distance_km": 1.2}, at(15), now=t0)

    assert offer.status == OfferStatus.PENDING
    assert offer.expires_at == at(15)
    assert store.list_offers(broadcast_id=broadcast.id) == [offer]

    assert push.sent[0]["recipient_ids"] == ["ph_01"]
    assert push.sent[0]["title"] == "New Cart Order - Quick Response!"
    assert push.sent[0]["body"] == "Order with 2 item(s) worth 24.00. Accept within 15 seconds!"


def test_push_failure_is_swallowed(store, broadcast, t0, at):
    notifier = Notifier(store, BrokenPushClient())

    offers = notifier.notify_many(["ph_01", "ph_02"], broadcast, {}, at(15), now=t0)

    # the offers exist even though nothing was pushed
    assert [offer.candidate_id for offer in offers] == ["ph_01", "ph_02"]
    assert len(store.list_offers(broadcast_id=broadcast.id, status=OfferStatus.PENDING)) == 2


def test_notify_many_skips_offers_that_cannot_be_stored(store, broadcast, t0, at, monkeypatch):
    push = RecordingPushClient()
    notifier = Notifier(store, push)
    add_offer = store.add_offer

    def flaky_add_offer(offer):
        if offer.candidate_id == "ph_02":
            raise RuntimeError("write failed")
        return add_offer(offer)

    monkeypatch.setattr(store, "add_offer", flaky_add_offer)

    offers = notifier.notify_many(["ph_01", "ph_02", "ph_03"], broadcast, {}, at(15), now=t0)

    assert [offer.candidate_id for offer in offers] == ["ph_01", "ph_03"]
    assert push.sent[0]["recipient_ids"] == ["ph_01", "ph_03"]


def test_notify_requester_is_best_effort(store, broadcast, monkeypatch):
    notifier = Notifier(store)

    notice = notifier.notify_requester(broadcast, "broadcast_failed", "No provider available", "Try again later.")
    assert notice.requester_id == "customer_1"
    assert store.list_requester_notifications(broadcast.id) == [notice]

    def broken_add(notification):
        raise RuntimeError("notifications table down")

    monkeypatch.setattr(store, "add_requester_notification", broken_add)
    assert notifier.notify_requester(broadcast, "broadcast_failed", "x", "y") is None


def test_delivery_offer_message(store, t0, at):
    record = BroadcastRecord.new(
        BroadcastKind.DELIVERY,
        "order_7",
        "customer_1",
        ORIGIN,
        phase_deadline=at(20),
        overall_deadline=at(180),
        radius_km=10,
        payload={"order_number": "A-7"},
        now=t0,
    )
    assert offer_message(record, at(20), t0) == "Order #A-7 is ready for pickup. Accept within 20 seconds!"
    # a deadline in the past never shows a negative countdown
    assert offer_message(record, t0 - timedelta(seconds=5), t0).endswith("within 0 seconds!")


def test_push_client_posts_json_with_bearer_key():
    session = FakeSession()
    client = PushClient(base_url="https://push.example.org/send", api_key="secret", timeout=3, session=session)

    answer = client.send(["ph_01"], "New Order", "Accept within 15 seconds!", {"broadcast_id": "b1"})

    assert answer == {"ok": True}
    call = session.calls[0]
    assert call["url"] == "https://push.example.org/send"
    assert call["headers"]["Authorization"] == "Bearer secret"
    assert call["timeout"] == 3
    assert call["json"] == {
        "recipient_ids": ["ph_01"],
        "title": "New Order",
        "body": "Accept within 15 seconds!",
        "data": {"broadcast_id": "b1"},
    }


def test_push_client_errors_become_transport_failures():
    unreachable = PushClient(base_url="https://push.example.org/send", session=FakeSession(error=requests.ConnectionError("refused")))
    with pytest.raises(TransportFailure):
        unreachable.send(["ph_01"], "t", "b")

    rejected = PushClient(base_url="https://push.example.org/send", session=FakeSession(FakeResponse(status_code=503, text="busy")))
    with pytest.raises(TransportFailure) as exc_info:
        rejected.send(["ph_01"], "t", "b")
    assert exc_info.value.code == "transport_failure"


def test_push_client_edge_cases(monkeypatch):
    session = FakeSession(FakeResponse(status_code=204))
    client = PushClient(base_url="https://push.example.org/send", session=session)

    assert client.send([], "t", "b") == {}
    assert session.calls == []
    assert client.send(["ph_01"], "t", "b") == {}

    monkeypatch.setattr("dispatch.push_client.PUSH_NOTIFICATION_URL", None)
    with pytest.raises(ValueError):
        PushClient(base_url=None)

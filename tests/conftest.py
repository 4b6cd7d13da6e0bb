import pytest
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List

from broadcasts.store import InMemoryBroadcastStore
from dispatch.arbiter import AcceptanceArbiter, InMemoryResourceCreator
from dispatch.notifier import Notifier
from dispatch.scheduler import PhaseScheduler
from providers.models import Provider, ProviderKind

# Example: Center of Harare
ORIGIN = (-17.824858, 31.053028)

# km per degree of latitude on the haversine sphere (6371km)
KM_PER_DEGREE = 111.19492664455873


def provider_at(provider_id, distance_km, kind=ProviderKind.PHARMACY, origin=ORIGIN, **kwargs):
    """
    A provider due north of `origin`, exactly `distance_km` away.
    """
    return Provider.new(
        provider_id,
        origin[0] + distance_km / KM_PER_DEGREE,
        origin[1],
        kind=kind,
        **kwargs,
    )


class RecordingPushClient:
    def __init__(self):
        self.sent = []

    def send(self, recipient_ids, title, body, data=None):
        self.sent.append({"recipient_ids": list(recipient_ids), "title": title, "body": body, "data": data or {}})
        return {}


@dataclass
class BroadcastSystem:
    store: InMemoryBroadcastStore
    notifier: Notifier
    scheduler: PhaseScheduler
    arbiter: AcceptanceArbiter
    resources: InMemoryResourceCreator
    push: RecordingPushClient
    providers: List[Provider] = field(default_factory=list)


@pytest.fixture
def t0():
    return datetime(2024, 5, 1, 9, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def at(t0):
    """at(15) -> t0 + 15 seconds"""
    return lambda seconds: t0 + timedelta(seconds=seconds)


@pytest.fixture
def system():
    store = InMemoryBroadcastStore()
    push = RecordingPushClient()
    notifier = Notifier(store, push)
    providers: List[Provider] = []
    scheduler = PhaseScheduler(store, notifier, lambda kind: [p for p in providers if p.kind == kind])
    resources = InMemoryResourceCreator()
    arbiter = AcceptanceArbiter(store, resources, notifier=notifier, scheduler=scheduler)
    return BroadcastSystem(store, notifier, scheduler, arbiter, resources, push, providers)


@pytest.fixture
def pharmacies():
    """
    Ten pharmacies 0.5km..9.5km north of the origin (ph_01 closest).
    """
    return [provider_at(f"ph_{index:02d}", index - 0.5) for index in range(1, 11)]

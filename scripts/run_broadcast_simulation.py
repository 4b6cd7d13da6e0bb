import os
import random
from datetime import datetime, timedelta, timezone
from typing import List

import numpy as np
import pandas as pd

from broadcasts.models import BroadcastKind, BroadcastStatus, OfferStatus
from broadcasts.store import InMemoryBroadcastStore
from dispatch.arbiter import AcceptanceArbiter, InMemoryResourceCreator
from dispatch.notifier import Notifier
from dispatch.scheduler import PhaseScheduler
from providers.models import Provider, ProviderKind

# Center around Harare, Zimbabwe
CENTER_LAT = -17.824858
CENTER_LON = 31.053028

TICK_SECONDS = 5


def load_providers(filepath="mock_providers.csv", now=None) -> List[Provider]:
    """
    Reads the CSV written by generate_mock_providers.py.
    Falls back to a random pool when the file is not there.
    """
    now = now or datetime.now(timezone.utc)
    base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    absolute_path = os.path.join(base_dir, filepath)

    if not os.path.exists(absolute_path):
        print(f"'{filepath}' not found, generating a random provider pool.")
        providers = []
        for index in range(60):
            kind = ProviderKind.PHARMACY if index % 2 == 0 else ProviderKind.DELIVERY_PARTNER
            providers.append(Provider.new(
                f"{kind.value[:2]}_{index}",
                CENTER_LAT + np.random.uniform(-0.15, 0.15),
                CENTER_LON + np.random.uniform(-0.15, 0.15),
                kind=kind,
                location_updated_at=now,
            ))
        return providers

    df = pd.read_csv(absolute_path, keep_default_na=False)
    providers = []
    for row in df.to_dict("records"):
        updated_at = datetime.fromisoformat(row["location_updated_at"]) if row["location_updated_at"] else None
        providers.append(Provider.new(
            row["provider_id"],
            float(row["lat"]),
            float(row["lon"]),
            kind=row["kind"],
            is_available=bool(row["is_available"]),
            is_verified=bool(row["is_verified"]),
            name=row["name"],
            location_updated_at=updated_at,
        ))
    return providers


def run_simulation(num_orders=20, accept_probability=0.08, seed=7):
    print("=== STARTING BROADCAST SIMULATION ===")
    random.seed(seed)
    np.random.seed(seed)

    clock = datetime.now(timezone.utc)
    providers = load_providers(now=clock)
    print(f"Loaded {len(providers)} providers.\n")

    store = InMemoryBroadcastStore()
    notifier = Notifier(store)
    scheduler = PhaseScheduler(store, notifier, lambda kind: [p for p in providers if p.kind == kind])
    resources = InMemoryResourceCreator()
    arbiter = AcceptanceArbiter(store, resources, notifier=notifier, scheduler=scheduler)

    # 1. Place orders (mix of cart, prescription and delivery broadcasts)
    kinds = [BroadcastKind.CART_ORDER, BroadcastKind.PRESCRIPTION_ORDER, BroadcastKind.DELIVERY]
    broadcast_ids = []
    for order_index in range(num_orders):
        kind = kinds[order_index % len(kinds)]
        origin = (CENTER_LAT + np.random.uniform(-0.1, 0.1), CENTER_LON + np.random.uniform(-0.1, 0.1))
        record = scheduler.start(
            kind,
            f"o_{str(order_index+1).zfill(4)}",
            f"c_{np.random.randint(1000, 9999)}",
            origin,
            payload={"items": [{"medicine_id": "m_1", "quantity": 1}], "total_amount": float(np.round(np.random.uniform(5, 60), 2))},
            now=clock,
        )
        broadcast_ids.append(record.id)

    # 2. Advance the clock: every tick, candidates answer their open offers, then the sweep runs
    while store.list_broadcasts(status=BroadcastStatus.PENDING):
        clock += timedelta(seconds=TICK_SECONDS)
        for offer in store.list_offers(status=OfferStatus.PENDING):
            roll = random.random()
            if roll < accept_probability:
                arbiter.respond(offer.broadcast_id, offer.candidate_id, "accept", now=clock)
            elif roll < accept_probability + 0.3:
                arbiter.respond(offer.broadcast_id, offer.candidate_id, "reject", now=clock)
        scheduler.sweep(now=clock)

    # 3. Report
    rows = []
    for broadcast_id in broadcast_ids:
        record = store.get_broadcast(broadcast_id)
        rows.append({
            "broadcast_id": record.id,
            "kind": record.kind.value,
            "status": record.status.value,
            "accepted_by": record.accepted_by or "",
            "rounds": scheduler.rounds_used(record),
            "final_radius_km": record.radius_km,
            "notified": len(record.notified_candidate_ids),
            "resources": len(resources.resources_for(record.id)),
            "seconds_to_resolve": (record.resolved_at - record.created_at).total_seconds() if record.resolved_at else None,
            "failure_reason": record.failure_reason or "",
        })
        print(f"[{record.status.value.upper()}] {record.kind.value} {record.target_id} -> "
              f"{record.accepted_by or record.failure_reason} (round {record.round_number}, {len(record.notified_candidate_ids)} notified)")

    df = pd.DataFrame(rows)
    base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    output_path = os.path.join(base_dir, "broadcast_results.csv")
    df.to_csv(output_path, index=False)

    print("\n=== SIMULATION COMPLETE ===")
    print(df.groupby(["kind", "status"]).size().to_string())
    print(f"Max resources per broadcast: {int(df['resources'].max())}")
    print(f"Results written to '{output_path}'.")


if __name__ == "__main__":
    run_simulation()

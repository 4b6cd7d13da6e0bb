"""
Purpose: Periodic re-broadcast of delivery jobs nobody took.
What it does:
Finds delivery targets whose broadcasts all failed, whose offers are all closed,
and whose last offer is older than the cooldown. The number of rounds already
spent is read from the offers themselves (issue-time clusters); below the cap a
new broadcast starts at the next round with radius = base * (round + 1).
Targets at the cap are left for manual handling.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from broadcasts.models import BroadcastKind, BroadcastStatus, utcnow
from broadcasts.policy import BroadcastPolicy, delivery_policy
from broadcasts.rounds import all_offers_closed, count_notification_rounds, latest_issue_time
from broadcasts.store import BroadcastStore
from .scheduler import PhaseScheduler

logger = logging.getLogger(__name__)


@dataclass
class RebroadcastResult:
    checked: int = 0
    rebroadcast: List[str] = field(default_factory=list)
    #target id -> why it was left alone
    skipped: Dict[str, str] = field(default_factory=dict)


class RebroadcastSweep:
    def __init__(self, store: BroadcastStore, scheduler: PhaseScheduler, policy: Optional[BroadcastPolicy] = None):
        self.store = store
        self.scheduler = scheduler
        self.policy = policy or delivery_policy()

    def run(self, now: Optional[datetime] = None) -> RebroadcastResult:
        now = now or utcnow()
        result = RebroadcastResult()

        by_target: Dict[str, list] = {}
        for record in self.store.list_broadcasts(kind=BroadcastKind.DELIVERY):
            by_target.setdefault(record.target_id, []).append(record)

        for target_id, records in by_target.items():
            # accepted, cancelled or still running: nothing to do
            if any(record.status != BroadcastStatus.FAILED for record in records):
                continue

            result.checked += 1
            try:
                reason = self._rebroadcast(target_id, records, now)
            except Exception:
                logger.exception(f"[Rebroadcast] Error re-broadcasting delivery {target_id}")
                reason = "error"

            if reason:
                result.skipped[target_id] = reason
            else:
                result.rebroadcast.append(target_id)

        if result.rebroadcast:
            logger.info(f"[Rebroadcast] Re-broadcast {len(result.rebroadcast)} of {result.checked} stuck deliveries")
        return result

    def _rebroadcast(self, target_id: str, records: list, now: datetime) -> Optional[str]:
        """
        Returns the skip reason, or None after starting a new broadcast.
        """
        offers = self.store.list_offers(target_id=target_id)
        if not offers:
            return "no_offers"

        if not all_offers_closed(offers, now):
            return "pending_offers"

        if now - latest_issue_time(offers) < timedelta(seconds=self.policy.rebroadcast_cooldown_seconds):
            return "cooldown"

        rounds = count_notification_rounds(offers, self.policy.round_cluster_window_seconds)
        if rounds >= self.policy.max_rounds:
            logger.info(f"[Rebroadcast] Delivery {target_id} used {rounds} rounds, leaving it for manual handling")
            return "max_rounds"

        latest = max(records, key=lambda record: record.created_at)
        logger.info(f"[Rebroadcast] Delivery {target_id}: starting round {rounds + 1}")

        self.scheduler.start(
            BroadcastKind.DELIVERY,
            target_id,
            latest.requester_id,
            latest.origin,
            radius_km=latest.base_radius_km,
            payload=latest.payload,
            now=now,
            first_round=rounds + 1,
        )
        return None

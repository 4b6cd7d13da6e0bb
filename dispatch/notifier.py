"""
Purpose: Fire-and-forget dispatch of offers.
What it does:
Persists one OfferNotification row per candidate (that row IS the offer, candidates
poll/subscribe for it), then attempts a best-effort push. A failed push is logged
and swallowed; arbitration never waits on it.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from broadcasts.models import (
    BroadcastKind,
    BroadcastRecord,
    OfferNotification,
    RequesterNotification,
    new_id,
    utcnow,
)
from broadcasts.store import BroadcastStore
from .errors import TransportFailure

logger = logging.getLogger(__name__)

OFFER_TITLES = {
    BroadcastKind.CART_ORDER: "New Cart Order - Quick Response!",
    BroadcastKind.PRESCRIPTION_ORDER: "New Prescription Order",
    BroadcastKind.DELIVERY: "New Delivery Request!",
}


def offer_message(record: BroadcastRecord, expires_at: datetime, now: datetime) -> str:
    seconds = max(0, int((expires_at - now).total_seconds()))
    if record.kind == BroadcastKind.DELIVERY:
        return f"Order #{record.payload.get('order_number', record.target_id)} is ready for pickup. Accept within {seconds} seconds!"

    items = record.payload.get("items") or []
    amount = record.payload.get("final_amount", record.payload.get("total_amount"))
    if amount is not None:
        return f"Order with {len(items)} item(s) worth {float(amount):.2f}. Accept within {seconds} seconds!"
    return f"Order with {len(items)} item(s). Accept within {seconds} seconds!"


class Notifier:
    """
    Offers go to the store first and to the push gateway second.
    `push_client` is anything with `send(recipient_ids, title, body, data)`.
    """
    def __init__(self, store: BroadcastStore, push_client=None):
        self.store = store
        self.push_client = push_client

    def notify(
        self,
        candidate_id: str,
        broadcast: BroadcastRecord,
        payload: Mapping[str, Any],
        expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> OfferNotification:
        """
        Persist one offer and push it. Store errors propagate, push errors do not.
        """
        now = now or utcnow()
        offer = self.store.add_offer(self._build_offer(candidate_id, broadcast, payload, expires_at, now))
        self._push([candidate_id], OFFER_TITLES[broadcast.kind], offer_message(broadcast, expires_at, now), dict(payload))
        return offer

    def notify_many(
        self,
        candidate_ids: Sequence[str],
        broadcast: BroadcastRecord,
        payloads: Mapping[str, Mapping[str, Any]],
        expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> List[OfferNotification]:
        """
        Parallel phase: one offer row per candidate, one push for all of them.
        A candidate whose offer row could not be written is skipped (and logged);
        the rest still get their offer.
        """
        now = now or utcnow()
        offers: List[OfferNotification] = []

        for candidate_id in candidate_ids:
            payload = payloads.get(candidate_id, {})
            try:
                offers.append(self.store.add_offer(self._build_offer(candidate_id, broadcast, payload, expires_at, now)))
            except Exception:
                logger.exception(f"[Notifier] Error persisting offer of broadcast {broadcast.id} for {candidate_id}")

        logger.info(f"[Notifier] Broadcast {broadcast.id}: offered to {len(offers)}/{len(candidate_ids)} candidates")

        if offers:
            self._push(
                [offer.candidate_id for offer in offers],
                OFFER_TITLES[broadcast.kind],
                offer_message(broadcast, expires_at, now),
                {"broadcast_id": broadcast.id, "kind": broadcast.kind.value, "target_id": broadcast.target_id},
            )
        return offers

    def revoke(self, candidate_ids: Sequence[str], broadcast: BroadcastRecord) -> None:
        """
        Silent push so losing devices drop the offer card right away.
        The offer row has already been withdrawn; this only speeds up the UI.
        """
        if not candidate_ids:
            return
        self._push(
            list(candidate_ids),
            "",
            "",
            {"type": "offer_withdrawn", "broadcast_id": broadcast.id, "target_id": broadcast.target_id},
        )

    def notify_requester(
        self,
        broadcast: BroadcastRecord,
        notification_type: str,
        title: str,
        body: str,
        resource_id: Optional[str] = None,
    ) -> Optional[RequesterNotification]:
        """
        Requester-facing notice. Best effort: the requester also observes the record itself.
        """
        notification = RequesterNotification(
            id=new_id(),
            requester_id=broadcast.requester_id,
            broadcast_id=broadcast.id,
            target_id=broadcast.target_id,
            notification_type=notification_type,
            title=title,
            body=body,
            resource_id=resource_id,
        )
        try:
            self.store.add_requester_notification(notification)
        except Exception as exc:
            logger.warning(f"[Notifier] Error creating requester notification for broadcast {broadcast.id}: {exc}")
            return None

        self._push([broadcast.requester_id], title, body, {"broadcast_id": broadcast.id, "type": notification_type})
        return notification

    # --- internals ---

    def _build_offer(
        self,
        candidate_id: str,
        broadcast: BroadcastRecord,
        payload: Mapping[str, Any],
        expires_at: datetime,
        now: datetime,
    ) -> OfferNotification:
        return OfferNotification(
            id=new_id(),
            broadcast_id=broadcast.id,
            target_id=broadcast.target_id,
            candidate_id=candidate_id,
            round_number=broadcast.round_number,
            phase=broadcast.phase,
            issued_at=now,
            expires_at=expires_at,
            payload=dict(payload),
        )

    def _push(self, recipient_ids: List[str], title: str, body: str, data: Dict[str, Any]) -> None:
        if self.push_client is None:
            return
        try:
            self.push_client.send(recipient_ids, title, body, data)
        except TransportFailure as exc:
            logger.warning(f"[Notifier] Push failed for {len(recipient_ids)} recipient(s): {exc}")
        except Exception:
            logger.exception(f"[Notifier] Unexpected push error for {len(recipient_ids)} recipient(s)")

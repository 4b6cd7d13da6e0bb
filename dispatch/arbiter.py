"""
Purpose: Acceptance Arbiter (race resolver).
What it does:
Called when a candidate's app hits "Accept" or "Reject" on an offer.
Guarantees that out of any number of simultaneous accepts exactly one wins:

1. create the downstream resource (order / delivery assignment), unique per broadcast
2. compare_and_set(status == pending -> accepted, winner, resource)
3. the loser of step 2 discards its resource and gets `already_resolved`

Sibling offers are withdrawn after the commit; the status check above stays
authoritative for anyone who still answers a stale offer.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from broadcasts.models import (
    BroadcastKind,
    BroadcastRecord,
    BroadcastStatus,
    Decision,
    OfferNotification,
    OfferStatus,
    new_id,
    utcnow,
)
from broadcasts.policy import policy_for_kind, policy_from_env
from broadcasts.store import BroadcastStore
from .errors import (
    AlreadyResolved,
    BroadcastError,
    BroadcastNotFound,
    DuplicateResource,
    InvalidDecision,
    NotOffered,
    NotRequester,
    OfferExpired,
    RaceLost,
    ResourceCreationFailure,
)
from .notifier import Notifier
from .state_machines.broadcast_state import (
    transition_to_accepted,
    transition_to_cancelled,
    transition_to_failed,
)

logger = logging.getLogger(__name__)

REJECTION_REASON = "Not available"
WITHDRAWN_ACCEPTED = "Another provider accepted"
WITHDRAWN_CANCELLED = "Cancelled by requester"

ACCEPTED_MESSAGES = {
    BroadcastKind.CART_ORDER: ("Order accepted", "A pharmacy accepted your order."),
    BroadcastKind.PRESCRIPTION_ORDER: ("Prescription accepted", "A pharmacy accepted your prescription order."),
    BroadcastKind.DELIVERY: ("Delivery partner assigned", "A delivery partner is on the way to the pharmacy."),
}


@dataclass
class RespondResult:
    success: bool
    result_resource_id: Optional[str] = None
    error: Optional[str] = None
    message: str = ""

    @staticmethod
    def ok(resource_id: Optional[str] = None, message: str = "") -> "RespondResult":
        return RespondResult(success=True, result_resource_id=resource_id, message=message)

    @staticmethod
    def failed(error: BroadcastError) -> "RespondResult":
        return RespondResult(success=False, error=error.code, message=str(error))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "result_resource_id": self.result_resource_id,
            "error": self.error,
            "message": self.message,
        }


class ResourceCreator(ABC):
    """
    Creates the downstream artefact of a won broadcast (an order for a pharmacy,
    an assignment for a delivery partner).

    `create` must be unique per broadcast at the storage layer and raise
    DuplicateResource on a second attempt.
    """

    @abstractmethod
    def existing_resource(self, record: BroadcastRecord) -> Optional[str]:
        ...

    @abstractmethod
    def create(self, record: BroadcastRecord, candidate_id: str) -> str:
        ...

    @abstractmethod
    def discard(self, resource_id: str) -> None:
        ...


class InMemoryResourceCreator(ResourceCreator):
    """
    Resource ledger for tests and the simulation. The lock plays the role of a
    unique constraint on broadcast id.
    """
    def __init__(self):
        self._lock = threading.Lock()
        self._by_broadcast: Dict[str, str] = {}
        self.resources: Dict[str, Dict[str, Any]] = {}

    def existing_resource(self, record: BroadcastRecord) -> Optional[str]:
        with self._lock:
            return self._by_broadcast.get(record.id)

    def create(self, record: BroadcastRecord, candidate_id: str) -> str:
        with self._lock:
            if record.id in self._by_broadcast:
                raise DuplicateResource()
            resource_id = new_id()
            self._by_broadcast[record.id] = resource_id
            self.resources[resource_id] = {
                "id": resource_id,
                "broadcast_id": record.id,
                "kind": record.kind.value,
                "target_id": record.target_id,
                "provider_id": candidate_id,
                "requester_id": record.requester_id,
                "status": "placed" if record.kind != BroadcastKind.DELIVERY else "assigned",
            }
            return resource_id

    def discard(self, resource_id: str) -> None:
        with self._lock:
            resource = self.resources.pop(resource_id, None)
            if resource:
                self._by_broadcast.pop(resource["broadcast_id"], None)

    def resources_for(self, broadcast_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [r for r in self.resources.values() if r["broadcast_id"] == broadcast_id]


class AcceptanceArbiter:
    """
    Serialises concurrent responses to one broadcast through compare_and_set.
    `scheduler` (optional) is told about early exhaustion and deadline expiry.
    `offer_grace_seconds` overrides the grace period of the broadcast policy.
    """
    def __init__(
        self,
        store: BroadcastStore,
        resource_creator: ResourceCreator,
        notifier: Optional[Notifier] = None,
        scheduler=None,
        offer_grace_seconds: Optional[int] = None,
    ):
        self.store = store
        self.resource_creator = resource_creator
        self.notifier = notifier
        self.scheduler = scheduler
        self.offer_grace_seconds = offer_grace_seconds

    # --- Public API ---

    def respond(
        self,
        broadcast_id: str,
        candidate_id: str,
        decision,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RespondResult:
        """
        Record a candidate's accept/reject. Never raises; every failure comes
        back as RespondResult(success=False, error=<code>).
        """
        now = now or utcnow()
        try:
            return self._respond(broadcast_id, candidate_id, decision, reason, now)
        except BroadcastError as exc:
            logger.info(f"[Arbiter] {candidate_id} -> broadcast {broadcast_id}: {exc.code} ({exc})")
            return RespondResult.failed(exc)
        except Exception:
            logger.exception(f"[Arbiter] Error handling response of {candidate_id} to broadcast {broadcast_id}")
            return RespondResult(success=False, error="internal_error", message="Failed to process response")

    def cancel(
        self,
        broadcast_id: str,
        requester_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RespondResult:
        """
        Requester withdraws the broadcast. Races with accepts exactly like
        another accept would: whoever commits first wins.
        """
        now = now or utcnow()
        try:
            record = self._get(broadcast_id)
            if requester_id is not None and record.requester_id != requester_id:
                raise NotRequester()
            if record.is_terminal:
                raise AlreadyResolved(f"Broadcast is already {record.status.value}")

            updated = self.store.compare_and_set(
                broadcast_id,
                BroadcastStatus.PENDING,
                transition_to_cancelled(record, now),
                now=now,
            )
            if updated is None:
                raise AlreadyResolved()
        except BroadcastError as exc:
            logger.info(f"[Arbiter] Cancel of broadcast {broadcast_id} refused: {exc.code}")
            return RespondResult.failed(exc)
        except Exception:
            logger.exception(f"[Arbiter] Error cancelling broadcast {broadcast_id}")
            return RespondResult(success=False, error="internal_error", message="Failed to cancel broadcast")

        logger.info(f"[Arbiter] Broadcast {broadcast_id} cancelled by requester")
        self._withdraw_others(updated, None, WITHDRAWN_CANCELLED, now)
        return RespondResult.ok(message="Broadcast cancelled")

    # --- internals ---

    def _get(self, broadcast_id: str) -> BroadcastRecord:
        record = self.store.get_broadcast(broadcast_id)
        if record is None:
            raise BroadcastNotFound()
        return record

    def _respond(
        self,
        broadcast_id: str,
        candidate_id: str,
        decision,
        reason: Optional[str],
        now: datetime,
    ) -> RespondResult:
        try:
            decision = Decision(decision)
        except ValueError:
            raise InvalidDecision(f"Invalid response type: {decision}")

        record = self._get(broadcast_id)
        offer = self._offer_for(record, candidate_id)

        if record.is_terminal:
            if decision == Decision.REJECT:
                self._mark_rejected(record, candidate_id, reason, now)
                return RespondResult.ok(message="Order rejected")
            raise AlreadyResolved(f"This order is already {record.status.value}")

        if record.is_expired(now):
            self._expire(record, now)
            if decision == Decision.REJECT:
                self._mark_rejected(record, candidate_id, reason, now)
                return RespondResult.ok(message="Order rejected")
            # same outcome as a broadcast that is already resolved
            raise AlreadyResolved("This order request has expired")

        if decision == Decision.REJECT:
            return self._reject(record, candidate_id, reason, now)
        return self._accept(record, offer, candidate_id, now)

    def _offer_for(self, record: BroadcastRecord, candidate_id: str) -> OfferNotification:
        if candidate_id not in record.notified_candidate_ids:
            raise NotOffered()
        offers = self.store.list_offers(broadcast_id=record.id, candidate_id=candidate_id)
        if not offers:
            raise NotOffered()
        pending = [offer for offer in offers if offer.status == OfferStatus.PENDING]
        # latest pending offer first, otherwise the latest offer of any status
        return (pending or offers)[-1]

    def _reject(self, record: BroadcastRecord, candidate_id: str, reason: Optional[str], now: datetime) -> RespondResult:
        changed = self._mark_rejected(record, candidate_id, reason, now)
        logger.info(f"[Arbiter] {candidate_id} rejected broadcast {record.id} ({changed} offer(s) closed)")

        policy = self.scheduler.policy_for(record.kind) if self.scheduler else None
        if changed and self.scheduler and policy.early_exhaustion:
            if not self.store.list_offers(broadcast_id=record.id, status=OfferStatus.PENDING):
                self.scheduler.on_phase_exhausted(record.id, now=now, expected_version=record.version)

        return RespondResult.ok(message="Order rejected")

    def _mark_rejected(self, record: BroadcastRecord, candidate_id: str, reason: Optional[str], now: datetime) -> int:
        return self.store.update_offers(
            record.id,
            to_status=OfferStatus.REJECTED,
            candidate_id=candidate_id,
            rejection_reason=reason or REJECTION_REASON,
            now=now,
        )

    def _accept(
        self,
        record: BroadcastRecord,
        offer: OfferNotification,
        candidate_id: str,
        now: datetime,
    ) -> RespondResult:
        # an offer closed by escalation is still honoured within the grace period
        if offer.status not in (OfferStatus.PENDING, OfferStatus.EXPIRED):
            raise AlreadyResolved(f"Your offer is already {offer.status.value}")
        if now > offer.expires_at + timedelta(seconds=self._grace_seconds(record)):
            raise OfferExpired()

        if self.resource_creator.existing_resource(record):
            raise AlreadyResolved()

        try:
            resource_id = self.resource_creator.create(record, candidate_id)
        except DuplicateResource:
            raise RaceLost()
        except Exception as exc:
            logger.exception(f"[Arbiter] Error creating resource for broadcast {record.id}")
            raise ResourceCreationFailure(f"Failed to create order: {exc}")

        try:
            updated = self.store.compare_and_set(
                record.id,
                BroadcastStatus.PENDING,
                transition_to_accepted(record, candidate_id, resource_id, now),
                now=now,
            )
        except Exception:
            self.resource_creator.discard(resource_id)
            raise

        if updated is None:
            self.resource_creator.discard(resource_id)
            raise RaceLost()

        logger.info(f"[Arbiter] {candidate_id} won broadcast {record.id}, resource {resource_id}")
        self._after_accept(updated, offer, now)
        return RespondResult.ok(resource_id, message="Order accepted successfully")

    def _grace_seconds(self, record: BroadcastRecord) -> int:
        if self.offer_grace_seconds is not None:
            return self.offer_grace_seconds
        if self.scheduler:
            return self.scheduler.policy_for(record.kind).offer_grace_seconds
        return policy_from_env(policy_for_kind(record.kind)).offer_grace_seconds

    def _after_accept(self, record: BroadcastRecord, offer: OfferNotification, now: datetime) -> None:
        """
        Post-commit bookkeeping. Failures here are logged, the win already stands.
        """
        try:
            self.store.update_offers(
                record.id,
                to_status=OfferStatus.ACCEPTED,
                from_status=offer.status,
                candidate_id=offer.candidate_id,
                now=now,
            )
        except Exception:
            logger.exception(f"[Arbiter] Error marking offer of {offer.candidate_id} accepted on broadcast {record.id}")

        self._withdraw_others(record, offer.candidate_id, WITHDRAWN_ACCEPTED, now)

        if self.notifier:
            title, body = ACCEPTED_MESSAGES[record.kind]
            self.notifier.notify_requester(record, "broadcast_accepted", title, body, resource_id=record.result_resource_id)

    def _withdraw_others(
        self,
        record: BroadcastRecord,
        winner_id: Optional[str],
        reason: str,
        now: datetime,
    ) -> None:
        try:
            pending = self.store.list_offers(broadcast_id=record.id, status=OfferStatus.PENDING)
            self.store.update_offers(
                record.id,
                to_status=OfferStatus.WITHDRAWN,
                exclude_candidate_id=winner_id,
                rejection_reason=reason,
                now=now,
            )
        except Exception:
            logger.exception(f"[Arbiter] Error withdrawing offers of broadcast {record.id}")
            return

        losers = sorted({offer.candidate_id for offer in pending if offer.candidate_id != winner_id})
        if self.notifier and losers:
            self.notifier.revoke(losers, record)

    def _expire(self, record: BroadcastRecord, now: datetime) -> None:
        if self.scheduler:
            self.scheduler.expire(record.id, now=now)
            return
        updated = self.store.compare_and_set(
            record.id,
            BroadcastStatus.PENDING,
            transition_to_failed(record, "timeout", now),
            now=now,
        )
        if updated is not None:
            self.store.update_offers(record.id, to_status=OfferStatus.EXPIRED, now=now)
            logger.info(f"[Arbiter] Broadcast {record.id} expired while answering")

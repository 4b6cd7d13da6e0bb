"""
Purpose: Persistence contract for broadcasts and offers.
What it does:
- BroadcastStore: the interface the scheduler, arbiter, notifier and observer rely on.
- InMemoryBroadcastStore: thread-safe reference implementation (tests, simulation, single process).

compare_and_set is the ONLY mutual-exclusion primitive of the protocol.
A store must make it atomic at the storage layer (a single conditional
UPDATE, or a transaction holding the row lock). Every other method is a
plain read or an append.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import fields
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from .models import (
    BroadcastKind,
    BroadcastRecord,
    BroadcastStatus,
    OfferNotification,
    OfferStatus,
    RequesterNotification,
    utcnow,
)

logger = logging.getLogger(__name__)

BroadcastListener = Callable[[BroadcastRecord], None]
Unsubscribe = Callable[[], None]

#fields compare_and_set refuses to touch
IMMUTABLE_FIELDS = frozenset({"id", "kind", "target_id", "requester_id", "created_at", "version"})
MUTABLE_FIELDS = frozenset(f.name for f in fields(BroadcastRecord)) - IMMUTABLE_FIELDS


def validate_changes(current: BroadcastRecord, changes: Mapping[str, Any]) -> None:
    """
    Shared guard for store implementations.
    Raises ValueError on unknown/immutable fields or a shrinking notified set.
    """
    unknown = set(changes) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"compare_and_set cannot change fields: {sorted(unknown)}")

    if "notified_candidate_ids" in changes:
        updated = list(changes["notified_candidate_ids"])
        if updated[: len(current.notified_candidate_ids)] != current.notified_candidate_ids:
            raise ValueError("notified_candidate_ids may only grow")


class DuplicatePendingBroadcast(ValueError):
    """
    Raised by insert_broadcast when the target already has a pending broadcast
    of the same kind. `existing` is that broadcast.
    """
    def __init__(self, existing: BroadcastRecord):
        super().__init__(f"{existing.kind.value} {existing.target_id} already has pending broadcast {existing.id}")
        self.existing = existing


class BroadcastStore(ABC):
    """
    Relational-store shaped interface: broadcasts, offers, requester notifications,
    plus change notification keyed by broadcast id.
    """

    # --- Broadcasts ---

    @abstractmethod
    def insert_broadcast(self, record: BroadcastRecord) -> BroadcastRecord:
        """
        At most one pending broadcast per (kind, target_id): the check and the
        insert are one atomic step. Raises DuplicatePendingBroadcast otherwise.
        """

    @abstractmethod
    def get_broadcast(self, broadcast_id: str) -> Optional[BroadcastRecord]:
        ...

    @abstractmethod
    def list_broadcasts(
        self,
        *,
        kind: Optional[BroadcastKind] = None,
        status: Optional[BroadcastStatus] = None,
        target_id: Optional[str] = None,
    ) -> List[BroadcastRecord]:
        ...

    def find_pending_for_target(self, kind: BroadcastKind, target_id: str) -> Optional[BroadcastRecord]:
        pending = self.list_broadcasts(kind=kind, status=BroadcastStatus.PENDING, target_id=target_id)
        return pending[0] if pending else None

    @abstractmethod
    def compare_and_set(
        self,
        broadcast_id: str,
        expected_status: BroadcastStatus,
        changes: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[BroadcastRecord]:
        """
        Atomically apply `changes` iff the stored status still equals
        `expected_status` (and the version, when given). Bumps `version`.

        Returns the updated record, or None when the condition did not hold.
        """

    # --- Offers ---

    @abstractmethod
    def add_offer(self, offer: OfferNotification) -> OfferNotification:
        ...

    @abstractmethod
    def list_offers(
        self,
        *,
        broadcast_id: Optional[str] = None,
        target_id: Optional[str] = None,
        candidate_id: Optional[str] = None,
        status: Optional[OfferStatus] = None,
    ) -> List[OfferNotification]:
        ...

    @abstractmethod
    def update_offers(
        self,
        broadcast_id: str,
        *,
        to_status: OfferStatus,
        from_status: OfferStatus = OfferStatus.PENDING,
        candidate_id: Optional[str] = None,
        exclude_candidate_id: Optional[str] = None,
        rejection_reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Move matching offers from `from_status` to `to_status`. Returns the count.
        """

    # --- Requester notifications ---

    @abstractmethod
    def add_requester_notification(self, notification: RequesterNotification) -> RequesterNotification:
        ...

    @abstractmethod
    def list_requester_notifications(self, broadcast_id: str) -> List[RequesterNotification]:
        ...

    # --- Change notification ---

    @abstractmethod
    def subscribe(self, broadcast_id: str, listener: BroadcastListener) -> Unsubscribe:
        """
        Call `listener` with a fresh copy after every change of the broadcast.
        Delivery is best effort; observers keep a polling fallback.
        """


class InMemoryBroadcastStore(BroadcastStore):
    """
    In-memory store. One re-entrant lock guards every read-modify-write,
    listeners are called after the lock is released.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._broadcasts: Dict[str, BroadcastRecord] = {}
        self._offers: Dict[str, OfferNotification] = {}
        self._requester_notifications: List[RequesterNotification] = []
        self._listeners: Dict[str, List[BroadcastListener]] = {}

    # --- Broadcasts ---

    def insert_broadcast(self, record: BroadcastRecord) -> BroadcastRecord:
        with self._lock:
            if record.id in self._broadcasts:
                raise ValueError(f"Broadcast {record.id} already exists")
            if record.status == BroadcastStatus.PENDING:
                for other in self._broadcasts.values():
                    if (
                        other.status == BroadcastStatus.PENDING
                        and other.kind == record.kind
                        and other.target_id == record.target_id
                    ):
                        raise DuplicatePendingBroadcast(other.copy())
            self._broadcasts[record.id] = record.copy()
            stored = record.copy()
        self._publish(stored)
        return stored

    def get_broadcast(self, broadcast_id: str) -> Optional[BroadcastRecord]:
        with self._lock:
            record = self._broadcasts.get(broadcast_id)
            return record.copy() if record else None

    def list_broadcasts(self, *, kind=None, status=None, target_id=None) -> List[BroadcastRecord]:
        with self._lock:
            records = [
                record.copy()
                for record in self._broadcasts.values()
                if (kind is None or record.kind == kind)
                and (status is None or record.status == status)
                and (target_id is None or record.target_id == target_id)
            ]
        records.sort(key=lambda record: record.created_at)
        return records

    def compare_and_set(self, broadcast_id, expected_status, changes, *, expected_version=None, now=None):
        now = now or utcnow()
        with self._lock:
            current = self._broadcasts.get(broadcast_id)
            if current is None:
                return None
            if current.status != expected_status:
                return None
            if expected_version is not None and current.version != expected_version:
                return None

            validate_changes(current, changes)

            updated = current.copy()
            for name, value in changes.items():
                if isinstance(value, list):
                    value = list(value)
                elif isinstance(value, dict):
                    value = dict(value)
                setattr(updated, name, value)
            updated.version = current.version + 1
            updated.updated_at = now

            self._broadcasts[broadcast_id] = updated
            stored = updated.copy()

        self._publish(stored)
        return stored

    # --- Offers ---

    def add_offer(self, offer: OfferNotification) -> OfferNotification:
        with self._lock:
            self._offers[offer.id] = offer.copy()
        return offer.copy()

    def list_offers(self, *, broadcast_id=None, target_id=None, candidate_id=None, status=None):
        with self._lock:
            offers = [
                offer.copy()
                for offer in self._offers.values()
                if (broadcast_id is None or offer.broadcast_id == broadcast_id)
                and (target_id is None or offer.target_id == target_id)
                and (candidate_id is None or offer.candidate_id == candidate_id)
                and (status is None or offer.status == status)
            ]
        offers.sort(key=lambda offer: offer.issued_at)
        return offers

    def update_offers(
        self,
        broadcast_id,
        *,
        to_status,
        from_status=OfferStatus.PENDING,
        candidate_id=None,
        exclude_candidate_id=None,
        rejection_reason=None,
        now=None,
    ) -> int:
        now = now or utcnow()
        changed = 0
        with self._lock:
            for offer in self._offers.values():
                if offer.broadcast_id != broadcast_id or offer.status != from_status:
                    continue
                if candidate_id is not None and offer.candidate_id != candidate_id:
                    continue
                if exclude_candidate_id is not None and offer.candidate_id == exclude_candidate_id:
                    continue
                offer.status = to_status
                offer.responded_at = now
                if rejection_reason is not None:
                    offer.rejection_reason = rejection_reason
                changed += 1
        return changed

    # --- Requester notifications ---

    def add_requester_notification(self, notification: RequesterNotification) -> RequesterNotification:
        with self._lock:
            self._requester_notifications.append(notification)
        return notification

    def list_requester_notifications(self, broadcast_id: str) -> List[RequesterNotification]:
        with self._lock:
            return [n for n in self._requester_notifications if n.broadcast_id == broadcast_id]

    # --- Change notification ---

    def subscribe(self, broadcast_id: str, listener: BroadcastListener) -> Unsubscribe:
        with self._lock:
            self._listeners.setdefault(broadcast_id, []).append(listener)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(broadcast_id, [])
                if listener in listeners:
                    listeners.remove(listener)
                if not listeners:
                    self._listeners.pop(broadcast_id, None)

        return unsubscribe

    def listener_count(self, broadcast_id: str) -> int:
        with self._lock:
            return len(self._listeners.get(broadcast_id, []))

    def _publish(self, record: BroadcastRecord) -> None:
        with self._lock:
            listeners = list(self._listeners.get(record.id, []))
        for listener in listeners:
            try:
                listener(record.copy())
            except Exception:
                logger.exception(f"[Store] Listener failed for broadcast {record.id}")

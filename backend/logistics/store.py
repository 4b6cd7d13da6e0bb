"""
Purpose: BroadcastStore over the Django ORM.
What it does:
Maps BroadcastRecord / OfferNotification / RequesterNotification to their
tables. compare_and_set is one conditional UPDATE:

    UPDATE broadcast SET ..., version = version + 1
    WHERE id = %s AND status = %s [AND version = %s]

so two concurrent accepts can never both see a matching row.
In-process listeners are called after the surrounding transaction commits.
"""

import logging
import threading
from enum import Enum
from typing import Any, Dict, List, Optional

from django.db import IntegrityError, transaction
from django.db.models import F

from broadcasts.models import (
    BroadcastKind,
    BroadcastPhase,
    BroadcastRecord,
    BroadcastStatus,
    OfferNotification as OfferEntity,
    OfferStatus,
    RequesterNotification as RequesterNotificationEntity,
    utcnow,
)
from broadcasts.store import (
    BroadcastListener,
    BroadcastStore,
    DuplicatePendingBroadcast,
    Unsubscribe,
    validate_changes,
)

from .models import Broadcast, OfferNotification, RequesterNotification

logger = logging.getLogger(__name__)

#record fields that are stored as-is on the Broadcast row
PLAIN_FIELDS = (
    "id",
    "target_id",
    "requester_id",
    "round_number",
    "radius_km",
    "base_radius_km",
    "priority_candidates",
    "notified_candidate_ids",
    "remaining_candidate_ids",
    "candidate_distances_km",
    "accepted_by",
    "result_resource_id",
    "failure_reason",
    "payload",
    "phase_deadline",
    "overall_deadline",
    "created_at",
    "updated_at",
    "resolved_at",
    "version",
)


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return list(value)
    if isinstance(value, dict):
        return dict(value)
    return value


def record_to_columns(changes: Dict[str, Any]) -> Dict[str, Any]:
    """
    Domain field names -> Broadcast column names.
    """
    columns = {}
    for name, value in changes.items():
        if name == "origin":
            columns["origin_lat"], columns["origin_lng"] = value
        else:
            columns[name] = _db_value(value)
    return columns


def broadcast_to_record(row: Broadcast) -> BroadcastRecord:
    return BroadcastRecord(
        kind=BroadcastKind(row.kind),
        origin=(row.origin_lat, row.origin_lng),
        status=BroadcastStatus(row.status),
        phase=BroadcastPhase(row.phase),
        **{name: getattr(row, name) for name in PLAIN_FIELDS},
    )


def offer_to_entity(row: OfferNotification) -> OfferEntity:
    return OfferEntity(
        id=row.id,
        broadcast_id=row.broadcast_id,
        target_id=row.target_id,
        candidate_id=row.candidate_id,
        round_number=row.round_number,
        phase=BroadcastPhase(row.phase),
        issued_at=row.issued_at,
        expires_at=row.expires_at,
        status=OfferStatus(row.status),
        responded_at=row.responded_at,
        rejection_reason=row.rejection_reason,
        payload=dict(row.payload or {}),
    )


def requester_notification_to_entity(row: RequesterNotification) -> RequesterNotificationEntity:
    return RequesterNotificationEntity(
        id=row.id,
        requester_id=row.requester_id,
        broadcast_id=row.broadcast_id,
        target_id=row.target_id,
        notification_type=row.notification_type,
        title=row.title,
        body=row.body,
        resource_id=row.resource_id,
        created_at=row.created_at,
    )


class DjangoBroadcastStore(BroadcastStore):
    def __init__(self):
        self._listeners_lock = threading.Lock()
        self._listeners: Dict[str, List[BroadcastListener]] = {}

    # --- Broadcasts ---

    def insert_broadcast(self, record: BroadcastRecord) -> BroadcastRecord:
        fields = {name: getattr(record, name) for name in PLAIN_FIELDS}
        fields.update(kind=record.kind, origin=record.origin, status=record.status, phase=record.phase)
        try:
            with transaction.atomic():
                row = Broadcast.objects.create(**record_to_columns(fields))
        except IntegrityError as exc:
            # the partial unique constraint on (kind, target_id) for pending rows
            existing = self.find_pending_for_target(record.kind, record.target_id)
            if existing is None:
                raise
            raise DuplicatePendingBroadcast(existing) from exc
        stored = broadcast_to_record(row)
        self._publish_on_commit(stored.id)
        return stored

    def get_broadcast(self, broadcast_id: str) -> Optional[BroadcastRecord]:
        row = Broadcast.objects.filter(pk=broadcast_id).first()
        return broadcast_to_record(row) if row else None

    def list_broadcasts(self, *, kind=None, status=None, target_id=None) -> List[BroadcastRecord]:
        queryset = Broadcast.objects.all()
        if kind is not None:
            queryset = queryset.filter(kind=_db_value(kind))
        if status is not None:
            queryset = queryset.filter(status=_db_value(status))
        if target_id is not None:
            queryset = queryset.filter(target_id=target_id)
        return [broadcast_to_record(row) for row in queryset.order_by("created_at")]

    def compare_and_set(self, broadcast_id, expected_status, changes, *, expected_version=None, now=None):
        now = now or utcnow()

        current = self.get_broadcast(broadcast_id)
        if current is None:
            return None
        validate_changes(current, changes)

        columns = record_to_columns(changes)
        columns["updated_at"] = now

        with transaction.atomic():
            queryset = Broadcast.objects.filter(pk=broadcast_id, status=_db_value(expected_status))
            if expected_version is not None:
                queryset = queryset.filter(version=expected_version)
            updated_rows = queryset.update(version=F("version") + 1, **columns)

        if updated_rows == 0:
            return None

        self._publish_on_commit(broadcast_id)
        return self.get_broadcast(broadcast_id)

    # --- Offers ---

    def add_offer(self, offer: OfferEntity) -> OfferEntity:
        row = OfferNotification.objects.create(
            id=offer.id,
            broadcast_id=offer.broadcast_id,
            target_id=offer.target_id,
            candidate_id=offer.candidate_id,
            round_number=offer.round_number,
            phase=_db_value(offer.phase),
            issued_at=offer.issued_at,
            expires_at=offer.expires_at,
            status=_db_value(offer.status),
            responded_at=offer.responded_at,
            rejection_reason=offer.rejection_reason,
            payload=dict(offer.payload),
        )
        return offer_to_entity(row)

    def list_offers(self, *, broadcast_id=None, target_id=None, candidate_id=None, status=None):
        queryset = OfferNotification.objects.all()
        if broadcast_id is not None:
            queryset = queryset.filter(broadcast_id=broadcast_id)
        if target_id is not None:
            queryset = queryset.filter(target_id=target_id)
        if candidate_id is not None:
            queryset = queryset.filter(candidate_id=candidate_id)
        if status is not None:
            queryset = queryset.filter(status=_db_value(status))
        return [offer_to_entity(row) for row in queryset.order_by("issued_at")]

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
        queryset = OfferNotification.objects.filter(broadcast_id=broadcast_id, status=_db_value(from_status))
        if candidate_id is not None:
            queryset = queryset.filter(candidate_id=candidate_id)
        if exclude_candidate_id is not None:
            queryset = queryset.exclude(candidate_id=exclude_candidate_id)

        columns = {"status": _db_value(to_status), "responded_at": now}
        if rejection_reason is not None:
            columns["rejection_reason"] = rejection_reason
        return queryset.update(**columns)

    # --- Requester notifications ---

    def add_requester_notification(self, notification: RequesterNotificationEntity) -> RequesterNotificationEntity:
        row = RequesterNotification.objects.create(
            id=notification.id,
            requester_id=notification.requester_id,
            broadcast_id=notification.broadcast_id,
            target_id=notification.target_id,
            notification_type=notification.notification_type,
            title=notification.title,
            body=notification.body,
            resource_id=notification.resource_id,
            created_at=notification.created_at,
        )
        return requester_notification_to_entity(row)

    def list_requester_notifications(self, broadcast_id: str) -> List[RequesterNotificationEntity]:
        queryset = RequesterNotification.objects.filter(broadcast_id=broadcast_id).order_by("created_at")
        return [requester_notification_to_entity(row) for row in queryset]

    # --- Change notification ---

    def subscribe(self, broadcast_id: str, listener: BroadcastListener) -> Unsubscribe:
        with self._listeners_lock:
            self._listeners.setdefault(broadcast_id, []).append(listener)

        def unsubscribe() -> None:
            with self._listeners_lock:
                listeners = self._listeners.get(broadcast_id, [])
                if listener in listeners:
                    listeners.remove(listener)
                if not listeners:
                    self._listeners.pop(broadcast_id, None)

        return unsubscribe

    def _publish_on_commit(self, broadcast_id: str) -> None:
        with self._listeners_lock:
            if not self._listeners.get(broadcast_id):
                return
        transaction.on_commit(lambda: self._publish(broadcast_id))

    def _publish(self, broadcast_id: str) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners.get(broadcast_id, []))
        if not listeners:
            return

        record = self.get_broadcast(broadcast_id)
        if record is None:
            return
        for listener in listeners:
            try:
                listener(record.copy())
            except Exception:
                logger.exception(f"[Store] Listener failed for broadcast {broadcast_id}")

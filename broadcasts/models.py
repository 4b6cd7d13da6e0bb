"""
Purpose: Domain models for the Broadcasts capability.
What it does:
- Defines core data structures:
- BroadcastRecord (target, phase, notified set, deadlines, terminal status, winner)
- OfferNotification (one offer to one candidate in one round/phase)
- RequesterNotification (what the requesting party is told on a terminal transition)

Defines enums/constants:
- BroadcastKind = CART_ORDER | PRESCRIPTION_ORDER | DELIVERY
- BroadcastStatus = PENDING | ACCEPTED | FAILED | CANCELLED
- BroadcastPhase = PRIORITY | EXTENDED
- OfferStatus = PENDING | ACCEPTED | REJECTED | EXPIRED | WITHDRAWN
- Decision = ACCEPT | REJECT

Rule: No store access, no scheduling logic. Models only.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import uuid

LatLon = Tuple[float, float]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class BroadcastKind(str, Enum):
    CART_ORDER = "cart_order"
    PRESCRIPTION_ORDER = "prescription_order"
    DELIVERY = "delivery"


class BroadcastStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({BroadcastStatus.ACCEPTED, BroadcastStatus.FAILED, BroadcastStatus.CANCELLED})


class BroadcastPhase(str, Enum):
    # tight parallel window over the top candidates
    PRIORITY = "priority"
    # wider / sequential window over the rest of the round
    EXTENDED = "extended"


class OfferStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    WITHDRAWN = "withdrawn"


class Decision(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"


@dataclass
class BroadcastRecord:
    """
    Persistent state of one outstanding assignment attempt.

    Mutated only through BroadcastStore.compare_and_set; immutable once terminal.
    `notified_candidate_ids` is cumulative across rounds and never shrinks.
    """
    id: str
    kind: BroadcastKind
    target_id: str
    requester_id: str
    origin: LatLon

    phase_deadline: datetime
    overall_deadline: datetime

    status: BroadcastStatus = BroadcastStatus.PENDING
    phase: BroadcastPhase = BroadcastPhase.PRIORITY
    round_number: int = 1
    radius_km: float = 0.0
    #round 1 radius and priority fan-out this broadcast was created with
    base_radius_km: float = 0.0
    priority_candidates: int = 0

    notified_candidate_ids: List[str] = field(default_factory=list)
    #ranked candidates of the current round that have not been offered yet
    remaining_candidate_ids: List[str] = field(default_factory=list)
    candidate_distances_km: Dict[str, float] = field(default_factory=dict)

    accepted_by: Optional[str] = None
    result_resource_id: Optional[str] = None
    failure_reason: Optional[str] = None

    #opaque order data carried into offers and into the created resource
    payload: Dict[str, Any] = field(default_factory=dict)

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    #bumped by every successful compare_and_set
    version: int = 0

    @staticmethod
    def new(
        kind: BroadcastKind,
        target_id: str,
        requester_id: str,
        origin: LatLon,
        *,
        phase_deadline: datetime,
        overall_deadline: datetime,
        radius_km: float,
        base_radius_km: Optional[float] = None,
        priority_candidates: int = 0,
        round_number: int = 1,
        payload: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> BroadcastRecord:
        now = now or utcnow()
        return BroadcastRecord(
            id=new_id(),
            kind=kind,
            target_id=target_id,
            requester_id=requester_id,
            origin=origin,
            phase_deadline=phase_deadline,
            overall_deadline=overall_deadline,
            round_number=round_number,
            radius_km=radius_km,
            base_radius_km=radius_km if base_radius_km is None else base_radius_km,
            priority_candidates=priority_candidates,
            payload=dict(payload or {}),
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        # the deadline instant itself is past, matching remaining_seconds() == 0
        now = now or utcnow()
        return now >= self.overall_deadline

    def remaining_seconds(self, now: Optional[datetime] = None) -> float:
        """
        Seconds left before the overall deadline, never negative.
        Any client can compute this without trusting push timing.
        """
        now = now or utcnow()
        return max(0.0, (self.overall_deadline - now).total_seconds())

    def copy(self) -> BroadcastRecord:
        return replace(
            self,
            notified_candidate_ids=list(self.notified_candidate_ids),
            remaining_candidate_ids=list(self.remaining_candidate_ids),
            candidate_distances_km=dict(self.candidate_distances_km),
            payload=dict(self.payload),
        )


@dataclass
class OfferNotification:
    """
    One offer of a broadcast to one candidate.
    Read (status != PENDING) once the candidate responded, the offer expired,
    or it was withdrawn because somebody else won.
    """
    id: str
    broadcast_id: str
    target_id: str
    candidate_id: str
    round_number: int
    phase: BroadcastPhase
    issued_at: datetime
    expires_at: datetime

    status: OfferStatus = OfferStatus.PENDING
    responded_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_read(self) -> bool:
        return self.status != OfferStatus.PENDING

    def copy(self) -> OfferNotification:
        return replace(self, payload=dict(self.payload))


@dataclass
class RequesterNotification:
    """
    Requester-facing notice inserted on acceptance or failure.
    """
    id: str
    requester_id: str
    broadcast_id: str
    target_id: str
    notification_type: str
    title: str
    body: str
    resource_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

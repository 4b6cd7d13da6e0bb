"""
Purpose: Phase Scheduler (the "glue" between selection, the store and the notifier).
What it does:
Creates a broadcast for an order/delivery job, offers it to the top candidates of
round 1 (priority phase), and on every phase deadline escalates:

    priority -> extended (next candidates of the same round)
    extended -> next round, radius = base * round (excluding everyone already offered)
    rounds exhausted / overall deadline passed -> failed

There is no in-process timer. A worker (cron, management command, simulation loop)
calls `sweep()`; the arbiter calls `on_phase_exhausted()` when everyone in the
current phase has rejected. Every write is a compare_and_set on `status == pending`,
so escalation can never revive a broadcast a candidate just won.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from broadcasts.models import (
    BroadcastKind,
    BroadcastPhase,
    BroadcastRecord,
    BroadcastStatus,
    OfferStatus,
    utcnow,
)
from broadcasts.policy import BroadcastPolicy, ExtendedMode, policy_for_kind, policy_from_env
from broadcasts.store import BroadcastStore, DuplicatePendingBroadcast
from providers.models import Provider, ProviderKind, RankedCandidate
from providers.policy import SelectionPolicy, default_selection_policy, delivery_selection_policy
from providers.selection import escalation_radius, select_candidates
from routing.geofence import LatLon
from .errors import NoCandidatesFound
from .notifier import Notifier
from .state_machines.broadcast_state import (
    offer_next_candidates,
    start_next_round,
    transition_to_extended,
    transition_to_failed,
)

logger = logging.getLogger(__name__)

ProviderSource = Callable[[ProviderKind], List[Provider]]

PROVIDER_KIND_FOR = {
    BroadcastKind.CART_ORDER: ProviderKind.PHARMACY,
    BroadcastKind.PRESCRIPTION_ORDER: ProviderKind.PHARMACY,
    BroadcastKind.DELIVERY: ProviderKind.DELIVERY_PARTNER,
}

FAILURE_MESSAGES = {
    "timeout": "No provider accepted your order in time.",
    "no_candidates": "No providers available in your area.",
    "exhausted": "No provider was able to take your order.",
}


@dataclass
class SweepResult:
    expired: List[str] = field(default_factory=list)
    escalated: List[str] = field(default_factory=list)


def _deadline(now: datetime, seconds: float, cap: datetime) -> datetime:
    return min(now + timedelta(seconds=seconds), cap)


class PhaseScheduler:
    """
    Drives a BroadcastRecord through phases and rounds.

    `provider_source(kind)` returns the current provider pool (pharmacies or
    delivery partners); it is read fresh on every search.
    """
    def __init__(
        self,
        store: BroadcastStore,
        notifier: Notifier,
        provider_source: ProviderSource,
        policy: Optional[BroadcastPolicy] = None,
        selection_policy: Optional[SelectionPolicy] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.provider_source = provider_source
        self.policy = policy
        self.selection_policy = selection_policy

    # --- configuration lookups ---

    def policy_for(self, kind: BroadcastKind) -> BroadcastPolicy:
        return self.policy or policy_from_env(policy_for_kind(kind))

    def selection_policy_for(self, kind: BroadcastKind) -> SelectionPolicy:
        if self.selection_policy:
            return self.selection_policy
        if kind == BroadcastKind.DELIVERY:
            return delivery_selection_policy()
        return default_selection_policy()

    # --- Public API ---

    def start(
        self,
        kind: BroadcastKind,
        target_id: str,
        requester_id: str,
        origin: LatLon,
        radius_km: Optional[float] = None,
        max_candidates: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
        first_round: int = 1,
    ) -> BroadcastRecord:
        """
        Create the broadcast for `target_id` and offer it to the first candidates.

        Idempotent per target: while a pending broadcast exists it is returned as is.
        A round that finds nobody is skipped in favour of the next, wider round;
        when every round is empty the broadcast is created already failed.
        """
        now = now or utcnow()
        kind = BroadcastKind(kind)

        existing = self.store.find_pending_for_target(kind, target_id)
        if existing:
            logger.info(f"[Scheduler] Broadcast already in progress for {kind.value} {target_id}: {existing.id}")
            return existing

        policy = self.policy_for(kind)
        selection_policy = self.selection_policy_for(kind)
        base_radius_km = radius_km or selection_policy.base_radius_km
        priority_count = max_candidates or policy.priority_candidates

        overall_deadline = now + timedelta(seconds=policy.overall_timeout_seconds)
        record = BroadcastRecord.new(
            kind,
            target_id,
            requester_id,
            origin,
            phase_deadline=self._priority_deadline(policy, now, overall_deadline),
            overall_deadline=overall_deadline,
            radius_km=escalation_radius(base_radius_km, first_round),
            base_radius_km=base_radius_km,
            priority_candidates=priority_count,
            round_number=first_round,
            payload=payload,
            now=now,
        )

        try:
            round_number, round_radius, ranked = self._search(record, first_round, now)
        except NoCandidatesFound as exc:
            logger.info(f"[Scheduler] No candidates for {kind.value} {target_id}: {exc}")
            record.round_number = exc.round_number
            record.radius_km = exc.radius_km
            stored, created = self._insert(record)
            if not created:
                return stored
            return self.expire(stored.id, now=now, reason=exc.code)

        record.round_number = round_number
        record.radius_km = round_radius

        offered, remaining = self._split_round(record, policy, ranked)
        record.notified_candidate_ids = [candidate.provider_id for candidate in offered]
        record.remaining_candidate_ids = [candidate.provider_id for candidate in remaining]
        record.candidate_distances_km = {candidate.provider_id: round(candidate.distance_km, 3) for candidate in ranked}

        stored, created = self._insert(record)
        if not created:
            return stored
        logger.info(
            f"[Scheduler] Created broadcast {stored.id} for {kind.value} {target_id}: "
            f"round {round_number} ({round_radius}km), offering {len(offered)}, {len(remaining)} in reserve"
        )

        self._send_offers(stored, record.notified_candidate_ids, self._offer_expiry(stored, policy), now)
        return stored

    def escalate(
        self,
        broadcast_id: str,
        now: Optional[datetime] = None,
        expected_version: Optional[int] = None,
    ) -> Optional[BroadcastRecord]:
        """
        Move a pending broadcast to its next phase or round.
        With `expected_version` the escalation only happens from that exact
        version; a trigger that saw an older version is dropped.
        Returns the record as it stands afterwards (None when it does not exist).
        """
        now = now or utcnow()
        record = self.store.get_broadcast(broadcast_id)
        if record is None or record.is_terminal:
            return record

        if expected_version is not None and record.version != expected_version:
            logger.info(f"[Scheduler] Broadcast {broadcast_id} moved past version {expected_version}, escalation skipped")
            return record

        # the overall deadline itself ends the broadcast, no new phase opens at it
        if record.is_expired(now):
            return self.expire(broadcast_id, now=now)

        policy = self.policy_for(record.kind)
        changes, offered_ids = self._next_step(record, policy, now)

        if changes is None:
            return self.expire(broadcast_id, now=now, reason="exhausted")

        updated = self.store.compare_and_set(
            broadcast_id,
            BroadcastStatus.PENDING,
            changes,
            expected_version=record.version,
            now=now,
        )
        if updated is None:
            # Somebody else moved it first (winner, cancel, another sweeper).
            logger.info(f"[Scheduler] Broadcast {broadcast_id} changed concurrently, escalation skipped")
            return self.store.get_broadcast(broadcast_id)

        expired_count = self.store.update_offers(broadcast_id, to_status=OfferStatus.EXPIRED, now=now)
        logger.info(
            f"[Scheduler] Broadcast {broadcast_id}: {record.phase.value}/round {record.round_number} -> "
            f"{updated.phase.value}/round {updated.round_number}, expired {expired_count} offer(s), "
            f"offering {len(offered_ids)}"
        )

        current = self.store.get_broadcast(broadcast_id)
        if current is not None and current.is_terminal:
            return current

        self._send_offers(updated, offered_ids, self._offer_expiry(updated, policy), now)
        return updated

    def expire(
        self,
        broadcast_id: str,
        now: Optional[datetime] = None,
        reason: str = "timeout",
    ) -> Optional[BroadcastRecord]:
        """
        pending -> failed. A no-op on terminal broadcasts.
        """
        now = now or utcnow()
        record = self.store.get_broadcast(broadcast_id)
        if record is None or record.is_terminal:
            return record

        updated = self.store.compare_and_set(
            broadcast_id,
            BroadcastStatus.PENDING,
            transition_to_failed(record, reason, now),
            now=now,
        )
        if updated is None:
            return self.store.get_broadcast(broadcast_id)

        self.store.update_offers(broadcast_id, to_status=OfferStatus.EXPIRED, now=now)
        logger.info(f"[Scheduler] Broadcast {broadcast_id} failed ({reason}) after {updated.round_number} round(s)")

        self.notifier.notify_requester(
            updated,
            "broadcast_failed",
            "No provider available",
            FAILURE_MESSAGES.get(reason, FAILURE_MESSAGES["exhausted"]),
        )
        return updated

    def on_phase_exhausted(
        self,
        broadcast_id: str,
        now: Optional[datetime] = None,
        expected_version: Optional[int] = None,
    ) -> Optional[BroadcastRecord]:
        """
        Early exhaustion: every offer of the current phase has been answered
        with a reject, so there is no reason to wait for the phase deadline.
        `expected_version` is the version the rejecting response read; once the
        phase has moved on the call does nothing.
        """
        now = now or utcnow()
        record = self.store.get_broadcast(broadcast_id)
        if record is None or record.is_terminal:
            return record

        if self.store.list_offers(broadcast_id=broadcast_id, status=OfferStatus.PENDING):
            return record

        logger.info(f"[Scheduler] Broadcast {broadcast_id}: all {record.phase.value} offers rejected, escalating early")
        return self.escalate(broadcast_id, now=now, expected_version=expected_version)

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """
        One pass of the periodic worker over every pending broadcast.
        """
        now = now or utcnow()
        result = SweepResult()

        for record in self.store.list_broadcasts(status=BroadcastStatus.PENDING):
            try:
                if now < record.phase_deadline:
                    continue
                updated = self.escalate(record.id, now=now, expected_version=record.version)
                if updated is None or updated.version == record.version:
                    continue
                if updated.status == BroadcastStatus.FAILED:
                    result.expired.append(record.id)
                elif not updated.is_terminal:
                    result.escalated.append(record.id)
            except Exception:
                logger.exception(f"[Scheduler] Error sweeping broadcast {record.id}")

        if result.expired or result.escalated:
            logger.info(f"[Scheduler] Sweep: {len(result.escalated)} escalated, {len(result.expired)} expired")
        return result

    @staticmethod
    def rounds_used(record: BroadcastRecord) -> int:
        return record.round_number

    # --- internals ---

    def _priority_deadline(self, policy: BroadcastPolicy, now: datetime, overall_deadline: datetime) -> datetime:
        if not policy.phased:
            return overall_deadline
        return _deadline(now, policy.priority_window_seconds, overall_deadline)

    def _insert(self, record: BroadcastRecord) -> Tuple[BroadcastRecord, bool]:
        """
        (stored record, True), or (the pending broadcast that won the insert, False).
        """
        try:
            return self.store.insert_broadcast(record), True
        except DuplicatePendingBroadcast as exc:
            logger.info(
                f"[Scheduler] Broadcast already in progress for {record.kind.value} {record.target_id}: {exc.existing.id}"
            )
            return exc.existing, False

    def _search(
        self,
        record: BroadcastRecord,
        first_round: int,
        now: datetime,
    ) -> Tuple[int, float, List[RankedCandidate]]:
        """
        Try rounds first_round..max_rounds until one finds somebody not offered yet.
        Raises NoCandidatesFound when none does.
        """
        policy = self.policy_for(record.kind)
        selection_policy = self.selection_policy_for(record.kind)
        providers = self.provider_source(PROVIDER_KIND_FOR[record.kind])

        round_number = first_round
        radius_km = escalation_radius(record.base_radius_km, round_number)
        while round_number <= policy.max_rounds:
            radius_km = escalation_radius(record.base_radius_km, round_number)
            ranked = select_candidates(
                record.origin,
                providers,
                radius_km=radius_km,
                max_candidates=record.priority_candidates + policy.extended_pool_size,
                policy=selection_policy,
                now=now,
                exclude_ids=record.notified_candidate_ids,
            )
            if ranked:
                return round_number, radius_km, ranked

            logger.info(f"[Scheduler] Broadcast {record.id}: round {round_number} found nobody within {radius_km}km")
            if round_number == policy.max_rounds:
                break
            round_number += 1

        raise NoCandidatesFound(
            f"Nobody found up to round {round_number} ({radius_km}km)",
            round_number=round_number,
            radius_km=radius_km,
        )

    def _split_round(
        self,
        record: BroadcastRecord,
        policy: BroadcastPolicy,
        ranked: Sequence[RankedCandidate],
    ) -> Tuple[List[RankedCandidate], List[RankedCandidate]]:
        fan_out = record.priority_candidates or policy.priority_candidates
        if not policy.phased:
            return list(ranked), []
        return list(ranked[:fan_out]), list(ranked[fan_out:])

    def _next_step(
        self,
        record: BroadcastRecord,
        policy: BroadcastPolicy,
        now: datetime,
    ) -> Tuple[Optional[Dict[str, Any]], List[str]]:
        """
        Work out the next transition. (None, []) means nothing is left to try.
        """
        remaining = list(record.remaining_candidate_ids)
        sequential = policy.extended_mode == ExtendedMode.SEQUENTIAL

        if policy.phased and remaining:
            if sequential:
                offered, rest = remaining[:1], remaining[1:]
                phase_deadline = _deadline(now, policy.sequential_window_seconds, record.overall_deadline)
            else:
                offered, rest = remaining, []
                phase_deadline = record.overall_deadline

            if record.phase == BroadcastPhase.PRIORITY:
                return transition_to_extended(record, offered, rest, phase_deadline), offered
            return offer_next_candidates(record, offered, rest, phase_deadline), offered

        if record.round_number >= policy.max_rounds:
            return None, []

        try:
            round_number, radius_km, ranked = self._search(record, record.round_number + 1, now)
        except NoCandidatesFound:
            return None, []

        offered, rest = self._split_round(record, policy, ranked)
        offered_ids = [candidate.provider_id for candidate in offered]
        changes = start_next_round(
            record,
            round_number,
            radius_km,
            offered_ids,
            [candidate.provider_id for candidate in rest],
            self._priority_deadline(policy, now, record.overall_deadline),
            {candidate.provider_id: round(candidate.distance_km, 3) for candidate in ranked},
        )
        return changes, offered_ids

    def _offer_expiry(self, record: BroadcastRecord, policy: BroadcastPolicy) -> datetime:
        # Parallel extended offers and phase-less offers live until the overall deadline.
        if record.phase == BroadcastPhase.EXTENDED and policy.extended_mode == ExtendedMode.PARALLEL:
            return record.overall_deadline
        return record.phase_deadline

    def _send_offers(
        self,
        record: BroadcastRecord,
        candidate_ids: Sequence[str],
        expires_at: datetime,
        now: datetime,
    ) -> None:
        if not candidate_ids:
            return

        payloads = {
            candidate_id: {
                "broadcast_id": record.id,
                "kind": record.kind.value,
                "target_id": record.target_id,
                "phase": record.phase.value,
                "round": record.round_number,
                "distance_km": record.candidate_distances_km.get(candidate_id),
                "origin": list(record.origin),
                "phase_deadline": record.phase_deadline.isoformat(),
                "overall_deadline": record.overall_deadline.isoformat(),
                "order": dict(record.payload),
            }
            for candidate_id in candidate_ids
        }
        self.notifier.notify_many(candidate_ids, record, payloads, expires_at, now=now)

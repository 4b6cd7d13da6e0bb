"""
Pure transition rules for a BroadcastRecord.

Each function validates the transition against the record as it was read and
returns the `changes` mapping for BroadcastStore.compare_and_set. Nothing here
writes; the conditional update decides whether the transition actually lands.
"""
from datetime import datetime
from typing import Any, Dict, List, Sequence

from broadcasts.models import BroadcastPhase, BroadcastRecord, BroadcastStatus


class BroadcastStateException(Exception):
    """Raised when an invalid broadcast transition is attempted."""
    pass


def _require_pending(record: BroadcastRecord) -> None:
    if record.status != BroadcastStatus.PENDING:
        raise BroadcastStateException(f"Broadcast {record.id} is {record.status.value}, transitions need pending")


def _grow(notified: Sequence[str], new_ids: Sequence[str]) -> List[str]:
    grown = list(notified)
    for candidate_id in new_ids:
        if candidate_id not in grown:
            grown.append(candidate_id)
    return grown


def transition_to_extended(
    record: BroadcastRecord,
    offered_ids: Sequence[str],
    remaining_ids: Sequence[str],
    phase_deadline: datetime,
) -> Dict[str, Any]:
    """
    Priority window closed without a winner: open the extended window of the same round.
    """
    _require_pending(record)
    if record.phase != BroadcastPhase.PRIORITY:
        raise BroadcastStateException(f"Broadcast {record.id} already left the priority phase")

    return {
        "phase": BroadcastPhase.EXTENDED,
        "phase_deadline": phase_deadline,
        "notified_candidate_ids": _grow(record.notified_candidate_ids, offered_ids),
        "remaining_candidate_ids": list(remaining_ids),
    }


def offer_next_candidates(
    record: BroadcastRecord,
    offered_ids: Sequence[str],
    remaining_ids: Sequence[str],
    phase_deadline: datetime,
) -> Dict[str, Any]:
    """
    Sequential extended phase: move on to the next untried candidate(s).
    """
    _require_pending(record)
    if record.phase != BroadcastPhase.EXTENDED:
        raise BroadcastStateException(f"Broadcast {record.id} is not in the extended phase")

    return {
        "phase_deadline": phase_deadline,
        "notified_candidate_ids": _grow(record.notified_candidate_ids, offered_ids),
        "remaining_candidate_ids": list(remaining_ids),
    }


def start_next_round(
    record: BroadcastRecord,
    round_number: int,
    radius_km: float,
    offered_ids: Sequence[str],
    remaining_ids: Sequence[str],
    phase_deadline: datetime,
    distances_km: Dict[str, float],
) -> Dict[str, Any]:
    """
    The round ran out of candidates: search again with a wider radius.
    Rounds and radii only ever grow.
    """
    _require_pending(record)
    if round_number <= record.round_number:
        raise BroadcastStateException(f"Round {round_number} does not follow round {record.round_number}")
    if radius_km < record.radius_km:
        raise BroadcastStateException(f"Radius may not shrink ({record.radius_km} -> {radius_km})")

    merged_distances = dict(record.candidate_distances_km)
    merged_distances.update(distances_km)

    return {
        "phase": BroadcastPhase.PRIORITY,
        "phase_deadline": phase_deadline,
        "round_number": round_number,
        "radius_km": radius_km,
        "notified_candidate_ids": _grow(record.notified_candidate_ids, offered_ids),
        "remaining_candidate_ids": list(remaining_ids),
        "candidate_distances_km": merged_distances,
    }


def transition_to_accepted(
    record: BroadcastRecord,
    candidate_id: str,
    resource_id: str,
    now: datetime,
) -> Dict[str, Any]:
    """
    Winner and resource are set together, never one without the other.
    """
    _require_pending(record)
    if not candidate_id or not resource_id:
        raise BroadcastStateException("Acceptance needs both a candidate and a resource id")

    return {
        "status": BroadcastStatus.ACCEPTED,
        "accepted_by": candidate_id,
        "result_resource_id": resource_id,
        "remaining_candidate_ids": [],
        "resolved_at": now,
    }


def transition_to_failed(record: BroadcastRecord, reason: str, now: datetime) -> Dict[str, Any]:
    _require_pending(record)
    return {
        "status": BroadcastStatus.FAILED,
        "failure_reason": reason,
        "remaining_candidate_ids": [],
        "resolved_at": now,
    }


def transition_to_cancelled(record: BroadcastRecord, now: datetime) -> Dict[str, Any]:
    _require_pending(record)
    return {
        "status": BroadcastStatus.CANCELLED,
        "failure_reason": "cancelled",
        "remaining_candidate_ids": [],
        "resolved_at": now,
    }

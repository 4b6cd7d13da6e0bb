"""
Purpose: Business rules and distance math for choosing who gets an offer.
What it does:
Accepts an origin and a pool of providers, filters out ineligible providers,
and ranks the remaining ones by great-circle distance to the origin.
Pure functions, no side effects.
"""

from datetime import datetime
from typing import Iterable, List, Optional

from routing.geofence import LatLon, has_coordinates, haversine_km, is_location_stale
from .models import Provider, RankedCandidate
from .policy import SelectionPolicy, default_selection_policy


def filter_eligible_providers(
    providers: List[Provider],
    policy: Optional[SelectionPolicy] = None,
    now: Optional[datetime] = None,
) -> List[Provider]:
    """
    Returns only providers that pass the required flags and carry a usable location.
    """
    policy = policy or default_selection_policy()
    eligible = []

    for provider in providers:
        if policy.require_available and not provider.is_available:
            continue

        if policy.require_verified and not provider.is_verified:
            continue

        if not has_coordinates(provider.location):
            continue

        if policy.enforce_location_freshness and is_location_stale(
            provider.location_updated_at, now, max_age_s=policy.location_max_age_seconds
        ):
            continue

        eligible.append(provider)

    return eligible


def select_candidates(
    origin: Optional[LatLon],
    providers: List[Provider],
    radius_km: Optional[float] = None,
    max_candidates: Optional[int] = None,
    policy: Optional[SelectionPolicy] = None,
    now: Optional[datetime] = None,
    exclude_ids: Iterable[str] = (),
) -> List[RankedCandidate]:
    """
    Given an origin, filter out ineligible providers, keep those within
    `radius_km`, sort them closest first and truncate to `max_candidates`.

    Ties on distance are broken by provider id so the order is deterministic.
    An origin without coordinates yields an empty list; the caller decides
    whether to widen the radius or give up.
    """
    policy = policy or default_selection_policy()
    radius_km = policy.base_radius_km if radius_km is None else radius_km
    max_candidates = policy.max_candidates if max_candidates is None else max_candidates

    if not has_coordinates(origin) or max_candidates <= 0:
        return []

    excluded = set(exclude_ids)
    ranked: List[RankedCandidate] = []

    for provider in filter_eligible_providers(providers, policy, now):
        if provider.id in excluded:
            continue

        distance_km = haversine_km(origin, provider.location)
        if distance_km > radius_km:
            continue

        ranked.append(RankedCandidate(provider_id=provider.id, distance_km=distance_km, name=provider.name))

    ranked.sort(key=lambda candidate: (candidate.distance_km, candidate.provider_id))
    return ranked[:max_candidates]


def escalation_radius(base_radius_km: float, round_number: int) -> float:
    """
    Search radius for a 1-based round: base, 2x base, 3x base, ...
    """
    if round_number < 1:
        raise ValueError("round_number must be >= 1")
    return base_radius_km * round_number

"""
Purpose: Central configuration for candidate selection.
What it does:

Stores all tunable thresholds/caps for finding providers around an origin:

BASE_RADIUS_KM = 10
MAX_CANDIDATES = 5
LOCATION_MAX_AGE_SECONDS = 120

Rule: No logic here, just parameters so you can tune without rewriting code.
"""

from __future__ import annotations
from dataclasses import dataclass


@dataclass(frozen=True)
class SelectionPolicy:
    """
    Central configuration for provider eligibility and ranking.
    """

    # --- Geofencing ---
    # Radius of the first search round. Later rounds multiply it (1x, 2x, 3x).
    base_radius_km: float = 10.0

    # Never offer to more providers than this in one selection.
    max_candidates: int = 5

    # --- Eligibility flags ---
    require_available: bool = True
    require_verified: bool = True

    # --- Location freshness ---
    # Pharmacies are static, delivery partners report GPS pings.
    # When enabled, a ping older than the threshold counts as "unknown location".
    enforce_location_freshness: bool = False
    location_max_age_seconds: int = 120

    def validate(self) -> None:
        """
        Basic sanity checks.
        """
        if self.base_radius_km <= 0:
            raise ValueError("base_radius_km must be > 0")

        if self.max_candidates <= 0:
            raise ValueError("max_candidates must be > 0")

        if self.location_max_age_seconds <= 0:
            raise ValueError("location_max_age_seconds must be > 0")


def default_selection_policy() -> SelectionPolicy:
    """
    Convenience factory for the default policy (static pharmacies).
    """
    p = SelectionPolicy()
    p.validate()
    return p


def delivery_selection_policy() -> SelectionPolicy:
    """
    Delivery partners move around, so stale GPS pings disqualify them.
    """
    p = SelectionPolicy(enforce_location_freshness=True)
    p.validate()
    return p

"""
Purpose: Core data models for the providers domain.
What it does:
Defines the structure of a Provider (a pharmacy or a delivery partner) and the
ranked candidate the selector hands to the broadcast scheduler, without relying
on Django ORM constraints.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

LatLon = Tuple[float, float]


class ProviderKind(str, Enum):
    """
    Who can be offered a broadcast.
    Pharmacies receive cart and prescription orders, delivery partners receive delivery jobs.
    """
    PHARMACY = "pharmacy"
    DELIVERY_PARTNER = "delivery_partner"


@dataclass(frozen=True)
class Provider:
    """
    A purely stateless representation of a Provider at a specific point in time.
    The broadcast protocol only ever reads these.
    """
    id: str
    kind: ProviderKind
    location: Optional[LatLon]
    is_available: bool = True
    is_verified: bool = True

    # Optional fields used for ranking audit and offer payloads.
    name: str = ""
    location_updated_at: datetime | None = None
    reliability_score: float | None = None

    @classmethod
    def new(
        cls,
        provider_id: str,
        lat: float | None,
        lon: float | None,
        kind: str | ProviderKind = ProviderKind.PHARMACY,
        is_available: bool = True,
        is_verified: bool = True,
        name: str = "",
        location_updated_at: datetime | None = None,
        reliability_score: float | None = None,
    ) -> Provider:
        if isinstance(kind, str):
            kind = ProviderKind(kind)

        location = None
        if lat is not None and lon is not None:
            location = (float(lat), float(lon))

        return cls(
            id=provider_id,
            kind=kind,
            location=location,
            is_available=is_available,
            is_verified=is_verified,
            name=name,
            location_updated_at=location_updated_at,
            reliability_score=reliability_score,
        )


@dataclass(frozen=True)
class RankedCandidate:
    """
    Output of the selector for a single provider: who, and how far from the origin.
    This is what the scheduler consumes to decide who gets an offer.
    """
    provider_id: str
    distance_km: float
    name: str = ""

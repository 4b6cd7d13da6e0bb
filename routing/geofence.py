#Purpose: Great-circle geofencing logic.
#Computes straight-line distances between an origin and provider positions.
#Typical responsibilities:
#Given origin point + provider position -> distance in km (Haversine)
#Radius thresholds (distance <= radius_km) are applied by the selection layer
#Decide whether a reported position is fresh enough to trust
#Output: distances the selection layer ranks on.

from datetime import datetime, timezone
from typing import Optional, Tuple
import math

#internal coordinate type :(lat,lon)
LatLon = Tuple[float, float]

EARTH_RADIUS_KM = 6371.0

#positions older than this are treated as unknown
DEFAULT_LOCATION_MAX_AGE_S = 120


def has_coordinates(location: Optional[LatLon]) -> bool:
    """
    True when a location carries both a latitude and a longitude.
    """
    if location is None:
        return False
    latitude, longitude = location
    return latitude is not None and longitude is not None


def haversine_km(origin: LatLon, destination: LatLon) -> float:
    """
    Great-circle distance between two (lat, lon) points in kilometres.

    Args:
        origin: (lat, lon) in degrees
        destination: (lat, lon) in degrees

    Returns:
        distance in km on a sphere of radius EARTH_RADIUS_KM
    """
    origin_lat, origin_lon = origin
    dest_lat, dest_lon = destination

    delta_lat = math.radians(dest_lat - origin_lat)
    delta_lon = math.radians(dest_lon - origin_lon)

    a = (
        math.sin(delta_lat / 2) ** 2
        + math.cos(math.radians(origin_lat))
        * math.cos(math.radians(dest_lat))
        * math.sin(delta_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def is_location_stale(
        updated_at: Optional[datetime],
        now: Optional[datetime] = None,
        *,
        max_age_s: float = DEFAULT_LOCATION_MAX_AGE_S,
) -> bool:
    """
    A position with no timestamp, or one reported more than `max_age_s`
    seconds ago, is stale. Stale positions count as "unknown location".
    """
    if updated_at is None:
        return True
    now = now or datetime.now(timezone.utc)
    #naive timestamps are assumed to be UTC
    if updated_at.tzinfo is None:
        updated_at = updated_at.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return (now - updated_at).total_seconds() > max_age_s

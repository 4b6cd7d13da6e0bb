#Marks routing as a package.
#Re-exports the geofence helpers so other modules import from routing
#without knowing internal file names.
#No business logic.

from .geofence import (
    EARTH_RADIUS_KM,
    LatLon,
    has_coordinates,
    haversine_km,
    is_location_stale,
)

__all__ = [
    "EARTH_RADIUS_KM",
    "LatLon",
    "has_coordinates",
    "haversine_km",
    "is_location_stale",
]

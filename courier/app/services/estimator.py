"""
Distance and delivery-time estimation.

Great-circle distances and a banded ETA model. No I/O; every function is
pure and safe to call from anywhere.
"""

import math
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from courier.app.core.exceptions import InvalidCoordinatesError

EARTH_RADIUS_KM = 6371.0

# Fixed handling overhead added to every estimate (pickup + drop-off stops)
STOP_BUFFER_MINUTES = 10

# (upper bound km inclusive, minutes per km, floor minutes)
ETA_BANDS: Tuple[Tuple[float, float, int], ...] = (
    (5.0, 4.0, 15),
    (15.0, 3.0, 30),
    (50.0, 2.5, 60),
    (math.inf, 2.0, 180),
)

LatLng = Tuple[float, float]


@dataclass(frozen=True)
class RouteEstimate:
    distance_km: float
    eta_minutes: int
    waypoints: List[LatLng]


def validate_coordinates(lat: float, lng: float) -> None:
    """Raise InvalidCoordinatesError for NaN, infinite or out-of-range values."""
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        raise InvalidCoordinatesError(lat, lng)

    if not (math.isfinite(lat_f) and math.isfinite(lng_f)):
        raise InvalidCoordinatesError(lat, lng)
    if not (-90.0 <= lat_f <= 90.0 and -180.0 <= lng_f <= 180.0):
        raise InvalidCoordinatesError(lat, lng)


def distance_km(a: LatLng, b: LatLng) -> float:
    """
    Haversine distance between two (lat, lng) pairs in kilometers,
    rounded to 2 decimal places.

    Raises:
        InvalidCoordinatesError: If either point is not a valid coordinate
    """
    validate_coordinates(*a)
    validate_coordinates(*b)

    lat1_rad = math.radians(a[0])
    lat2_rad = math.radians(b[0])
    dlat = math.radians(b[0] - a[0])
    dlng = math.radians(b[1] - a[1])

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlng / 2) ** 2
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))

    return round(EARTH_RADIUS_KM * c, 2)


def _round_half_up(value: float) -> int:
    # Math.round semantics; Python's round() is banker's rounding
    return int(math.floor(value + 0.5))


def estimate_eta_minutes(distance: float) -> int:
    """
    Banded delivery-time estimate in minutes.

    | distance (km) | formula        | floor |
    |---------------|----------------|-------|
    | <= 5          | round(d * 4)   | 15    |
    | 5 - 15        | round(d * 3)   | 30    |
    | 15 - 50       | round(d * 2.5) | 60    |
    | > 50          | round(d * 2)   | 180   |

    Band upper bounds are inclusive, and every estimate gets the fixed
    10 minute stop buffer on top.
    """
    if distance is None or not math.isfinite(distance) or distance < 0:
        raise ValueError(f"distance must be a finite non-negative number, got {distance!r}")

    for upper_km, minutes_per_km, floor_minutes in ETA_BANDS:
        if distance <= upper_km:
            return max(floor_minutes, _round_half_up(distance * minutes_per_km)) + STOP_BUFFER_MINUTES

    raise AssertionError("unreachable: last band is unbounded")


def estimate_route(waypoints: Sequence[LatLng]) -> RouteEstimate:
    """
    Total distance over consecutive legs and the ETA for that total.

    A single waypoint (or none) is a zero-length route.
    """
    total = 0.0
    for start, end in zip(waypoints, waypoints[1:]):
        total += distance_km(start, end)
    for point in waypoints[:1]:
        validate_coordinates(*point)

    total = round(total, 2)
    return RouteEstimate(
        distance_km=total,
        eta_minutes=estimate_eta_minutes(total),
        waypoints=list(waypoints),
    )

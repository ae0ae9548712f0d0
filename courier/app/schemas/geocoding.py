"""
Geocoding and route estimation schemas.
"""

from pydantic import BaseModel, Field
from typing import Optional, List


class Coordinates(BaseModel):
    lat: float
    lng: float


class GeocodeResponse(BaseModel):
    """Resolved address. is_fallback marks the default-city substitute."""
    lat: float
    lng: float
    canonical_address: str
    is_fallback: bool = False


class GeocodeErrorInfo(BaseModel):
    kind: str
    message: str


class SuggestionItem(BaseModel):
    name: str
    display_name: str
    lat: float
    lng: float


class SuggestionResponse(BaseModel):
    suggestions: List[SuggestionItem]
    error: Optional[GeocodeErrorInfo] = None


class ReverseGeocodeResponse(BaseModel):
    address: str


class RouteEstimateRequest(BaseModel):
    """
    Route to estimate: either two or more waypoints, or a pair of
    addresses to be resolved first.
    """
    waypoints: Optional[List[Coordinates]] = None
    pickup_address: Optional[str] = Field(None, max_length=500)
    delivery_address: Optional[str] = Field(None, max_length=500)


class RouteEstimateResponse(BaseModel):
    distance_km: float
    eta_minutes: int
    waypoints: List[Coordinates]

"""
Driver schemas for dispatch.
"""

from pydantic import BaseModel
from typing import Optional, List


class DriverResponse(BaseModel):
    """Schema for a driver as dispatch sees it."""
    id: int
    name: str
    vehicle_type: Optional[str]
    is_available: bool
    current_lat: Optional[float]
    current_lng: Optional[float]
    average_rating: float
    completed_deliveries: int

    class Config:
        from_attributes = True


class DriverCandidatesResponse(BaseModel):
    """Eligible drivers for an assignment, best first."""
    drivers: List[DriverResponse]
    total: int

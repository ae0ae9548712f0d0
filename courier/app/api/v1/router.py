"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from courier.app.api.v1.endpoints import parcels, drivers, geocoding

router = APIRouter()

# Parcel workflow
router.include_router(parcels.router)

# Dispatch
router.include_router(drivers.router)

# Geocoding and route estimation
router.include_router(geocoding.router)

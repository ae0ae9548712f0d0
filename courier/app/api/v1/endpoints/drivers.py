"""
Driver dispatch endpoints.

Lists drivers eligible for an assignment so dispatch can pick one.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from courier.app.db.session import get_db
from courier.app.core.guards import require_role
from courier.app.core.exceptions import ResourceNotFoundError
from courier.app.models.enums import UserRole
from courier.app.schemas.driver import DriverResponse, DriverCandidatesResponse
from courier.app.services import parcel_store
from courier.app.services.eligibility import (
    EligibilityCriteria,
    eligible,
    load_driver_roster,
    rank_candidates,
)

router = APIRouter(prefix="/drivers", tags=["Drivers"])


@router.get("/candidates", response_model=DriverCandidatesResponse)
async def list_candidate_drivers(
    vehicle_type: Optional[str] = Query(None, description="Required vehicle type"),
    min_rating: Optional[float] = Query(None, ge=0, le=5, description="Minimum average rating"),
    exclude_ids: Optional[List[int]] = Query(None, description="Driver IDs to leave out"),
    parcel_id: Optional[int] = Query(None, description="Exclude this parcel's current driver"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db),
):
    """
    Available drivers matching the criteria, most experienced first (Admin only).

    With parcel_id, the parcel's current driver is left out so the list can
    be used directly for a reassignment.
    """
    excluded = set(exclude_ids or [])
    if parcel_id is not None:
        parcel = await parcel_store.get_parcel(db, parcel_id)
        if not parcel:
            raise ResourceNotFoundError("Parcel", parcel_id)
        if parcel.driver_id is not None:
            excluded.add(parcel.driver_id)

    criteria = EligibilityCriteria(
        vehicle_type=vehicle_type,
        min_rating=min_rating,
        exclude_ids=frozenset(excluded),
    )
    roster = await load_driver_roster(db)
    candidates = rank_candidates(eligible(roster, criteria))

    return DriverCandidatesResponse(
        drivers=[DriverResponse.model_validate(d) for d in candidates],
        total=len(candidates),
    )

"""
Parcel API Endpoints.

Creation, queries, public tracking and workflow transitions. Every status
change is delegated to the workflow engine; this layer only decides who
may ask for what.
"""

from fastapi import APIRouter, Depends, HTTPException, status, Query, Path
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from courier.app.db.session import get_db
from courier.app.core.redis_client import get_redis
from courier.app.core.guards import require_role, ParcelAccessGuard
from courier.app.core.dependencies import get_current_user
from courier.app.core.exceptions import ResourceNotFoundError
from courier.app.models.enums import UserRole
from courier.app.models.parcel_enums import ParcelStatus
from courier.app.schemas.parcel import (
    ParcelCreate,
    ParcelResponse,
    ParcelListResponse,
    StatusHistoryResponse,
    TrackingResponse,
    TransitionRequest,
    TransitionResponse,
    AutoConfirmResponse,
)
from courier.app.services import parcel_store
from courier.app.services.events import EventPublisher
from courier.app.services.geocoding import Geocoder, get_geocoder
from courier.app.services.workflow import ParcelWorkflowEngine, TransitionPayload

router = APIRouter(prefix="/parcels", tags=["Parcels"])
access_guard = ParcelAccessGuard()


def get_workflow_engine(
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    geocoder: Geocoder = Depends(get_geocoder),
) -> ParcelWorkflowEngine:
    return ParcelWorkflowEngine(db=db, geocoder=geocoder, publisher=EventPublisher(redis))


@router.post("", response_model=ParcelResponse, status_code=status.HTTP_201_CREATED)
async def create_parcel(
    parcel_data: ParcelCreate,
    current_user: dict = Depends(require_role([UserRole.ADMIN, UserRole.CUSTOMER])),
    engine: ParcelWorkflowEngine = Depends(get_workflow_engine),
):
    """
    Create a parcel (Admin or Customer).

    Customers always send as themselves; admins may create on behalf of
    any sender.
    """
    if current_user["role"] == UserRole.CUSTOMER.value:
        parcel_data = parcel_data.model_copy(update={"sender_id": current_user["user_id"]})

    parcel, _ = await engine.create_parcel(parcel_data, actor_id=current_user["user_id"])
    return ParcelResponse.model_validate(parcel)


@router.get("", response_model=ParcelListResponse)
async def list_parcels(
    status_filter: Optional[ParcelStatus] = Query(None, alias="status", description="Filter by status"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    List parcels visible to the caller.

    Admins see all parcels, drivers their assigned parcels and customers
    the parcels they sent.
    """
    role = current_user.get("role")
    filters = {}
    if role == UserRole.DRIVER.value:
        filters["driver_id"] = current_user["user_id"]
    elif role != UserRole.ADMIN.value:
        filters["sender_id"] = current_user["user_id"]

    parcels, total = await parcel_store.list_parcels(
        db, status=status_filter, page=page, page_size=page_size, **filters
    )

    return ParcelListResponse(
        parcels=[ParcelResponse.model_validate(p) for p in parcels],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/track/{tracking_number}", response_model=TrackingResponse)
async def track_parcel(
    tracking_number: str = Path(..., min_length=6, max_length=32),
    db: AsyncSession = Depends(get_db),
):
    """
    Public tracking by tracking number. No authentication; contact details
    are not exposed.
    """
    parcel = await parcel_store.get_parcel_by_tracking_number(db, tracking_number)
    if not parcel:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No parcel found with this tracking number"
        )

    history = await parcel_store.get_history(db, parcel.id)
    return TrackingResponse(
        tracking_number=parcel.tracking_number,
        status=parcel.status,
        pickup_address=parcel.pickup_address,
        delivery_address=parcel.delivery_address,
        current_location=parcel.current_location,
        estimated_delivery_time=parcel.estimated_delivery_time,
        actual_delivery_time=parcel.actual_delivery_time,
        history=[StatusHistoryResponse.model_validate(h) for h in history],
    )


@router.post("/auto-confirm", response_model=AutoConfirmResponse)
async def auto_confirm_deliveries(
    older_than_hours: Optional[int] = Query(None, ge=0, description="Override the confirmation window"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    engine: ParcelWorkflowEngine = Depends(get_workflow_engine),
):
    """
    Confirm deliveries the recipient left unconfirmed (Admin only).

    Meant to be driven by a scheduler.
    """
    confirmed, skipped = await engine.auto_confirm_deliveries(older_than_hours=older_than_hours)
    return AutoConfirmResponse(confirmed_parcel_ids=confirmed, skipped_parcel_ids=skipped)


@router.get("/{parcel_id}", response_model=ParcelResponse)
async def get_parcel(
    parcel_id: int = Path(..., description="Parcel ID"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    parcel = await parcel_store.get_parcel(db, parcel_id)
    if not parcel:
        raise ResourceNotFoundError("Parcel", parcel_id)

    access_guard.enforce_view(parcel, current_user)
    return ParcelResponse.model_validate(parcel)


@router.get("/{parcel_id}/history", response_model=list[StatusHistoryResponse])
async def get_parcel_history(
    parcel_id: int = Path(..., description="Parcel ID"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Full audit trail for a parcel, oldest first."""
    parcel = await parcel_store.get_parcel(db, parcel_id)
    if not parcel:
        raise ResourceNotFoundError("Parcel", parcel_id)

    access_guard.enforce_view(parcel, current_user)
    history = await parcel_store.get_history(db, parcel_id)
    return [StatusHistoryResponse.model_validate(h) for h in history]


@router.post("/{parcel_id}/transitions", response_model=TransitionResponse)
async def apply_transition(
    request: TransitionRequest,
    parcel_id: int = Path(..., description="Parcel ID"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    engine: ParcelWorkflowEngine = Depends(get_workflow_engine),
):
    """
    Request a workflow action on a parcel.

    Role permissions:
    - ADMIN: assign, reassign, cancel, confirm_delivery
    - DRIVER: pickup, depart, arrive (own parcels only)
    - CUSTOMER: cancel (sender), confirm_delivery (recipient), complete (recipient)
    """
    parcel = await parcel_store.get_parcel(db, parcel_id)
    if not parcel:
        raise ResourceNotFoundError("Parcel", parcel_id)

    access_guard.enforce_action(parcel, request.action, current_user)

    result = await engine.apply_transition(
        parcel_id,
        request.action,
        actor_id=current_user["user_id"],
        payload=TransitionPayload(
            driver_id=request.driver_id,
            notes=request.notes,
            location=request.location,
            latitude=request.latitude,
            longitude=request.longitude,
            signature=request.signature,
        ),
    )

    return TransitionResponse(
        parcel=ParcelResponse.model_validate(result.parcel),
        history_entry=StatusHistoryResponse.model_validate(result.history_entry),
    )

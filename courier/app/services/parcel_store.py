"""
Parcel persistence helpers.

Queries used by the workflow engine and the API. Writes that change a
parcel's status go through the workflow engine, never through here.
"""

from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from courier.app.models.driver import Driver
from courier.app.models.parcel import Parcel
from courier.app.models.parcel_enums import ParcelStatus
from courier.app.models.status_history import ParcelStatusHistory


async def get_parcel(db: AsyncSession, parcel_id: int) -> Optional[Parcel]:
    result = await db.execute(select(Parcel).where(Parcel.id == parcel_id))
    return result.scalar_one_or_none()


async def get_parcel_for_update(db: AsyncSession, parcel_id: int) -> Optional[Parcel]:
    """
    Load a parcel with a row lock held until the transaction ends.

    FOR UPDATE is dropped by dialects without row locks (SQLite); the
    version column still catches lost updates there.
    """
    result = await db.execute(
        select(Parcel)
        .where(Parcel.id == parcel_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_parcel_by_tracking_number(db: AsyncSession, tracking_number: str) -> Optional[Parcel]:
    result = await db.execute(
        select(Parcel).where(Parcel.tracking_number == tracking_number.strip().upper())
    )
    return result.scalar_one_or_none()


async def tracking_number_exists(db: AsyncSession, tracking_number: str) -> bool:
    result = await db.execute(
        select(func.count(Parcel.id)).where(Parcel.tracking_number == tracking_number)
    )
    return result.scalar() > 0


async def list_parcels(
    db: AsyncSession,
    status: Optional[ParcelStatus] = None,
    driver_id: Optional[int] = None,
    sender_id: Optional[int] = None,
    recipient_id: Optional[int] = None,
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[Parcel], int]:
    """
    Paginated parcel listing, newest first.

    Returns:
        (parcels, total matching count)
    """
    filters = []
    if status:
        filters.append(Parcel.status == status)
    if driver_id:
        filters.append(Parcel.driver_id == driver_id)
    if sender_id:
        filters.append(Parcel.sender_id == sender_id)
    if recipient_id:
        filters.append(Parcel.recipient_id == recipient_id)

    count_result = await db.execute(select(func.count(Parcel.id)).where(*filters))
    total = count_result.scalar()

    result = await db.execute(
        select(Parcel)
        .where(*filters)
        .order_by(Parcel.created_at.desc(), Parcel.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(result.scalars().all()), total


async def list_parcels_awaiting_confirmation(db: AsyncSession, delivered_before: datetime) -> List[Parcel]:
    """Parcels dropped off at the recipient on or before the given time."""
    result = await db.execute(
        select(Parcel)
        .where(
            Parcel.status == ParcelStatus.DELIVERED_TO_RECIPIENT,
            Parcel.actual_delivery_time <= delivered_before,
        )
        .order_by(Parcel.actual_delivery_time)
    )
    return list(result.scalars().all())


async def get_history(db: AsyncSession, parcel_id: int) -> List[ParcelStatusHistory]:
    """Status history, oldest first."""
    result = await db.execute(
        select(ParcelStatusHistory)
        .where(ParcelStatusHistory.parcel_id == parcel_id)
        .order_by(ParcelStatusHistory.timestamp, ParcelStatusHistory.id)
    )
    return list(result.scalars().all())


async def get_latest_history_entry(db: AsyncSession, parcel_id: int) -> Optional[ParcelStatusHistory]:
    result = await db.execute(
        select(ParcelStatusHistory)
        .where(ParcelStatusHistory.parcel_id == parcel_id)
        .order_by(ParcelStatusHistory.timestamp.desc(), ParcelStatusHistory.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_driver(db: AsyncSession, driver_id: int) -> Optional[Driver]:
    result = await db.execute(select(Driver).where(Driver.id == driver_id))
    return result.scalar_one_or_none()

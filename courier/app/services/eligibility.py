"""
Driver eligibility filtering.

Selects which drivers may legally receive an assignment. The filter is
pure: it works on any driver-like objects (ORM rows or plain objects with
the same attributes) and never raises for criteria that match nothing.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, FrozenSet

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from courier.app.models.driver import Driver


@dataclass(frozen=True)
class EligibilityCriteria:
    vehicle_type: Optional[str] = None
    min_rating: Optional[float] = None
    exclude_ids: FrozenSet[int] = field(default_factory=frozenset)
    available_only: bool = True


def is_eligible(driver, criteria: EligibilityCriteria) -> bool:
    if criteria.available_only and not driver.is_available:
        return False
    if driver.id in criteria.exclude_ids:
        return False
    if criteria.vehicle_type and (driver.vehicle_type or "").lower() != criteria.vehicle_type.lower():
        return False
    if criteria.min_rating is not None and (driver.average_rating or 0.0) < criteria.min_rating:
        return False
    return True


def eligible(drivers: Iterable, criteria: Optional[EligibilityCriteria] = None) -> List:
    """
    Return the drivers that satisfy every criterion, preserving input order.

    Args:
        drivers: Driver roster (any iterable of driver-like objects)
        criteria: Filter criteria; defaults to "available drivers"

    Returns:
        List of matching drivers, possibly empty
    """
    criteria = criteria or EligibilityCriteria()
    return [driver for driver in drivers if is_eligible(driver, criteria)]


def rank_candidates(drivers: Iterable) -> List:
    """Order candidates the way dispatch lists them: experience first, then rating."""
    return sorted(
        drivers,
        key=lambda d: (d.completed_deliveries or 0, d.average_rating or 0.0),
        reverse=True,
    )


async def load_driver_roster(db: AsyncSession) -> List[Driver]:
    """Fetch the full driver roster from the persistence boundary."""
    result = await db.execute(select(Driver).order_by(Driver.id))
    return list(result.scalars().all())

"""
Parcel workflow engine.

Owns the parcel state machine. Every status change goes through
apply_transition, which validates the action against the transition table,
writes the new state and exactly one history row in a single commit, and
emits one transition event.

    pending ──assign/reassign──> assigned ──pickup──> picked_up ──depart──> in_transit
    in_transit ──arrive──> delivered_to_recipient ──confirm_delivery──> delivered
    delivered ──complete──> completed
    pending | assigned | picked_up | in_transit ──cancel──> cancelled

Concurrency: transitions are serialized per parcel. A second request for a
parcel that is mid-transition fails with ConcurrentModificationError, as
does a write that loses the optimistic version check in the database.
"""

import asyncio
import logging
import secrets
import string
import time
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from courier.app.core.clock import utcnow
from courier.app.core.config import settings
from courier.app.core.exceptions import (
    AppException,
    ConcurrentModificationError,
    DriverUnavailableError,
    IllegalTransitionError,
    InvalidAddressError,
    InvalidCoordinatesError,
    InvalidStateError,
    InvalidTransitionPayloadError,
    NotAssignedDriverError,
    NotParcelCustomerError,
    ResourceNotFoundError,
    SameDriverError,
    TooLateToReassignError,
)
from courier.app.models.driver import Driver
from courier.app.models.parcel import Parcel
from courier.app.models.parcel_enums import ParcelAction, ParcelStatus, TERMINAL_STATUSES
from courier.app.models.status_history import ParcelStatusHistory
from courier.app.schemas.parcel import ParcelCreate
from courier.app.services import parcel_store
from courier.app.services.eligibility import EligibilityCriteria, eligible
from courier.app.services.estimator import distance_km, estimate_eta_minutes, validate_coordinates
from courier.app.services.events import EventPublisher, TransitionEvent
from courier.app.services.geocoding import Geocoder, GeocodeResult

logger = logging.getLogger(__name__)


TRANSITIONS: Dict[ParcelStatus, Dict[ParcelAction, ParcelStatus]] = {
    ParcelStatus.PENDING: {
        ParcelAction.ASSIGN: ParcelStatus.ASSIGNED,
        ParcelAction.REASSIGN: ParcelStatus.ASSIGNED,
        ParcelAction.CANCEL: ParcelStatus.CANCELLED,
    },
    ParcelStatus.ASSIGNED: {
        ParcelAction.REASSIGN: ParcelStatus.ASSIGNED,
        ParcelAction.PICKUP: ParcelStatus.PICKED_UP,
        ParcelAction.CANCEL: ParcelStatus.CANCELLED,
    },
    ParcelStatus.PICKED_UP: {
        ParcelAction.DEPART: ParcelStatus.IN_TRANSIT,
        ParcelAction.CANCEL: ParcelStatus.CANCELLED,
    },
    ParcelStatus.IN_TRANSIT: {
        ParcelAction.ARRIVE: ParcelStatus.DELIVERED_TO_RECIPIENT,
        ParcelAction.CANCEL: ParcelStatus.CANCELLED,
    },
    ParcelStatus.DELIVERED_TO_RECIPIENT: {
        ParcelAction.CONFIRM_DELIVERY: ParcelStatus.DELIVERED,
    },
    ParcelStatus.DELIVERED: {
        ParcelAction.COMPLETE: ParcelStatus.COMPLETED,
    },
    ParcelStatus.COMPLETED: {},
    ParcelStatus.CANCELLED: {},
}

# Reassignment is a domain policy: only before the driver has the parcel
REASSIGNABLE_STATUSES = frozenset({ParcelStatus.PENDING, ParcelStatus.ASSIGNED})

ASSIGNMENT_ACTIONS = frozenset({ParcelAction.ASSIGN, ParcelAction.REASSIGN})

# Only the driver currently holding the parcel may perform these
DRIVER_ACTIONS = frozenset({ParcelAction.PICKUP, ParcelAction.DEPART, ParcelAction.ARRIVE})

# Actions after which the delivery estimate is refreshed
ESTIMATE_ACTIONS = frozenset({
    ParcelAction.ASSIGN,
    ParcelAction.REASSIGN,
    ParcelAction.PICKUP,
    ParcelAction.DEPART,
})

DEFAULT_NOTES = {
    ParcelAction.ASSIGN: "Driver assigned - Pending pickup",
    ParcelAction.REASSIGN: "Driver reassigned - Pending pickup",
    ParcelAction.PICKUP: "Parcel picked up by driver",
    ParcelAction.DEPART: "Parcel in transit",
    ParcelAction.ARRIVE: "Parcel handed to recipient",
    ParcelAction.CONFIRM_DELIVERY: "Delivery confirmed by recipient",
    ParcelAction.COMPLETE: "Parcel completed by customer",
    ParcelAction.CANCEL: "Parcel cancelled",
}

TRACKING_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits
TRACKING_NUMBER_ATTEMPTS = 5


def allowed_actions(status: ParcelStatus) -> List[ParcelAction]:
    return list(TRANSITIONS.get(status, {}))


def next_status(status: ParcelStatus, action: ParcelAction) -> ParcelStatus:
    """
    Target status for an action, straight from the transition table.

    Raises:
        IllegalTransitionError: If the action is not legal in this status
    """
    target = TRANSITIONS.get(status, {}).get(action)
    if target is None:
        raise IllegalTransitionError(
            current_status=status.value,
            action=action.value,
            allowed_actions=[a.value for a in allowed_actions(status)],
        )
    return target


def generate_tracking_number(prefix: str = settings.tracking_number_prefix) -> str:
    """<prefix><last 8 digits of epoch ms><6 random [A-Z0-9]>"""
    timestamp = str(int(time.time() * 1000))[-8:]
    suffix = "".join(secrets.choice(TRACKING_SUFFIX_ALPHABET) for _ in range(6))
    return f"{prefix}{timestamp}{suffix}"


@dataclass
class TransitionPayload:
    driver_id: Optional[int] = None
    notes: Optional[str] = None
    location: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    signature: Optional[str] = None

    @property
    def coordinates(self) -> Optional[Tuple[float, float]]:
        if self.latitude is None or self.longitude is None:
            return None
        return (self.latitude, self.longitude)


@dataclass
class TransitionResult:
    parcel: Parcel
    history_entry: ParcelStatusHistory
    previous_status: ParcelStatus


class ParcelLockRegistry:
    """
    One asyncio lock per parcel id, held for the length of a transition.

    Locks live only while someone holds them, so the registry does not
    grow with the number of parcels ever touched.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    @asynccontextmanager
    async def hold(self, parcel_id: int):
        lock = self._locks.get(parcel_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[parcel_id] = lock

        if lock.locked():
            raise ConcurrentModificationError(parcel_id)

        async with lock:
            yield


parcel_locks = ParcelLockRegistry()


class ParcelWorkflowEngine:
    """
    Applies validated transitions to parcels.

    Args:
        db: Session used for the whole unit of work
        geocoder: Resolves addresses for delivery estimates; None disables estimates
        publisher: Receives one event per committed transition; None disables events
        locks: Per-parcel lock registry (shared across engines in a process)
        clock: Source of naive-UTC timestamps
    """

    def __init__(
        self,
        db: AsyncSession,
        geocoder: Optional[Geocoder] = None,
        publisher: Optional[EventPublisher] = None,
        locks: ParcelLockRegistry = parcel_locks,
        clock: Callable = utcnow,
    ):
        self.db = db
        self.geocoder = geocoder
        self.publisher = publisher
        self.locks = locks
        self.clock = clock

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_parcel(self, data: ParcelCreate, actor_id: Optional[int] = None) -> Tuple[Parcel, ParcelStatusHistory]:
        """
        Create a parcel in PENDING with its creation history entry.

        Raises:
            InvalidAddressError: If either address is blank after trimming
        """
        pickup_address = data.pickup_address.strip()
        delivery_address = data.delivery_address.strip()
        for address in (pickup_address, delivery_address):
            if len(address) < 3:
                raise InvalidAddressError(address)

        now = self.clock()
        parcel = Parcel(
            tracking_number=await self._issue_tracking_number(),
            sender_id=data.sender_id,
            sender_name=data.sender_name,
            sender_email=data.sender_email,
            sender_phone=data.sender_phone,
            recipient_id=data.recipient_id,
            recipient_name=data.recipient_name,
            recipient_email=data.recipient_email,
            recipient_phone=data.recipient_phone,
            pickup_address=pickup_address,
            pickup_lat=data.pickup_lat,
            pickup_lng=data.pickup_lng,
            delivery_address=delivery_address,
            delivery_lat=data.delivery_lat,
            delivery_lng=data.delivery_lng,
            weight_kg=data.weight_kg,
            value=data.value,
            description=data.description,
            delivery_instructions=data.delivery_instructions,
            delivery_fee=data.delivery_fee,
            status=ParcelStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self.db.add(parcel)
        await self.db.flush()

        entry = ParcelStatusHistory(
            parcel_id=parcel.id,
            status=ParcelStatus.PENDING,
            action="create",
            actor_id=actor_id,
            location=pickup_address,
            notes="Parcel created",
            timestamp=now,
        )
        self.db.add(entry)
        await self.db.commit()
        await self.db.refresh(parcel)

        logger.info(
            "Parcel created",
            extra={"parcel_id": parcel.id, "tracking_number": parcel.tracking_number, "actor_id": actor_id},
        )

        if self.publisher is not None:
            await self.publisher.publish(self._event(parcel, "create", None, actor_id, now))

        return parcel, entry

    async def _issue_tracking_number(self) -> str:
        for _ in range(TRACKING_NUMBER_ATTEMPTS):
            candidate = generate_tracking_number()
            if not await parcel_store.tracking_number_exists(self.db, candidate):
                return candidate
        raise RuntimeError("Could not issue a unique tracking number")

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def apply_transition(
        self,
        parcel_id: int,
        action: Union[ParcelAction, str],
        actor_id: Optional[int],
        payload: Optional[TransitionPayload] = None,
    ) -> TransitionResult:
        """
        Validate and apply one workflow action.

        Args:
            parcel_id: Parcel to act on
            action: ParcelAction (or its string value)
            actor_id: Account performing the action; None for system actions
            payload: Driver id, notes, location and signature as the action needs

        Returns:
            TransitionResult with the updated parcel and the new history entry

        Raises:
            ResourceNotFoundError: Parcel or target driver does not exist
            InvalidStateError: Parcel is completed or cancelled
            TooLateToReassignError: Reassignment after pickup
            IllegalTransitionError: Action not legal for the current status
            SameDriverError / DriverUnavailableError: Assignment target rejected
            NotParcelCustomerError: Completion by anyone but the recipient
            NotAssignedDriverError: Driver action by anyone but the assigned driver
            ConcurrentModificationError: Another transition on this parcel won
        """
        action_name = action.value if isinstance(action, ParcelAction) else str(action)
        payload = payload or TransitionPayload()

        async with self.locks.hold(parcel_id):
            try:
                result = await self._apply_locked(parcel_id, action_name, actor_id, payload)
            except StaleDataError:
                await self.db.rollback()
                logger.warning(
                    "Transition lost version check",
                    extra={"parcel_id": parcel_id, "action": action_name},
                )
                raise ConcurrentModificationError(parcel_id)
            except AppException as exc:
                await self.db.rollback()
                logger.warning(
                    "Transition rejected",
                    extra={
                        "parcel_id": parcel_id,
                        "action": action_name,
                        "actor_id": actor_id,
                        "error_code": exc.error_code,
                    },
                )
                raise

        logger.info(
            "Transition applied",
            extra={
                "parcel_id": parcel_id,
                "action": action_name,
                "from_status": result.previous_status.value,
                "to_status": result.parcel.status.value,
                "actor_id": actor_id,
            },
        )

        if self.publisher is not None:
            await self.publisher.publish(
                self._event(result.parcel, action_name, result.previous_status, actor_id, result.history_entry.timestamp)
            )

        return result

    async def _apply_locked(
        self,
        parcel_id: int,
        action_name: str,
        actor_id: Optional[int],
        payload: TransitionPayload,
    ) -> TransitionResult:
        parcel = await parcel_store.get_parcel_for_update(self.db, parcel_id)
        if parcel is None:
            raise ResourceNotFoundError("Parcel", parcel_id)

        try:
            action = ParcelAction(action_name)
        except ValueError:
            raise IllegalTransitionError(
                current_status=parcel.status.value,
                action=action_name,
                allowed_actions=[a.value for a in allowed_actions(parcel.status)],
            )

        previous_status = parcel.status
        target = self._validate(parcel, action)

        driver = None
        if action in ASSIGNMENT_ACTIONS:
            driver = await self._check_driver(parcel, action, payload.driver_id)
        # Checked against the locked row: a concurrent reassignment wins
        if action in DRIVER_ACTIONS and parcel.driver_id != actor_id:
            raise NotAssignedDriverError(parcel.id, actor_id)
        if action == ParcelAction.COMPLETE and parcel.recipient_id != actor_id:
            raise NotParcelCustomerError(parcel.id)
        if payload.coordinates is not None:
            validate_coordinates(*payload.coordinates)

        # History must never go backwards in time
        now = self.clock()
        latest = await parcel_store.get_latest_history_entry(self.db, parcel.id)
        if latest is not None and latest.timestamp > now:
            now = latest.timestamp

        self._apply_effects(parcel, action, target, actor_id, payload, driver, now)

        if action in ESTIMATE_ACTIONS:
            await self._refresh_estimates(parcel, action, payload, driver, now)

        parcel.status = target
        parcel.updated_at = now

        entry = ParcelStatusHistory(
            parcel_id=parcel.id,
            status=target,
            action=action.value,
            actor_id=actor_id,
            location=payload.location or parcel.current_location,
            latitude=payload.latitude,
            longitude=payload.longitude,
            notes=payload.notes or DEFAULT_NOTES[action],
            timestamp=now,
        )
        self.db.add(entry)
        await self.db.commit()

        return TransitionResult(parcel=parcel, history_entry=entry, previous_status=previous_status)

    def _validate(self, parcel: Parcel, action: ParcelAction) -> ParcelStatus:
        if parcel.status in TERMINAL_STATUSES:
            raise InvalidStateError(parcel.id, parcel.status.value)
        if action == ParcelAction.REASSIGN and parcel.status not in REASSIGNABLE_STATUSES:
            raise TooLateToReassignError(parcel.id, parcel.status.value)
        return next_status(parcel.status, action)

    async def _check_driver(self, parcel: Parcel, action: ParcelAction, driver_id: Optional[int]) -> Driver:
        """
        Confirm the target driver through the eligibility filter.

        The currently assigned driver is excluded for this reassignment only;
        they are eligible again for any later one.
        """
        if driver_id is None:
            raise InvalidTransitionPayloadError(action.value, f"Action '{action.value}' requires a driver_id")

        driver = await parcel_store.get_driver(self.db, driver_id)
        if driver is None:
            raise ResourceNotFoundError("Driver", driver_id)

        if parcel.driver_id is not None and parcel.driver_id == driver_id:
            raise SameDriverError(driver_id)

        excluded = frozenset({parcel.driver_id}) if parcel.driver_id is not None else frozenset()
        if not eligible([driver], EligibilityCriteria(exclude_ids=excluded)):
            raise DriverUnavailableError(driver_id)

        return driver

    def _apply_effects(
        self,
        parcel: Parcel,
        action: ParcelAction,
        target: ParcelStatus,
        actor_id: Optional[int],
        payload: TransitionPayload,
        driver: Optional[Driver],
        now,
    ) -> None:
        if payload.location:
            parcel.current_location = payload.location
        if payload.coordinates is not None:
            parcel.latitude, parcel.longitude = payload.coordinates

        if action in ASSIGNMENT_ACTIONS:
            parcel.driver_id = driver.id
            parcel.assigned_at = now
        elif target == ParcelStatus.PICKED_UP:
            if parcel.actual_pickup_time is None:
                parcel.actual_pickup_time = now
        elif target == ParcelStatus.DELIVERED_TO_RECIPIENT:
            if parcel.actual_delivery_time is None:
                parcel.actual_delivery_time = now
            if parcel.actual_pickup_time is not None:
                elapsed = parcel.actual_delivery_time - parcel.actual_pickup_time
                parcel.total_delivery_duration = int(elapsed.total_seconds() // 60)
        elif target == ParcelStatus.DELIVERED:
            parcel.delivered_to_recipient = True
            parcel.delivery_confirmed_at = now
            parcel.delivery_confirmed_by = actor_id
            parcel.customer_signature = payload.signature
            parcel.customer_notes = payload.notes
        elif target == ParcelStatus.COMPLETED:
            parcel.completed_at = now
            parcel.completed_by = actor_id
        elif target == ParcelStatus.CANCELLED:
            parcel.driver_id = None
            parcel.assigned_at = None

    # ------------------------------------------------------------------
    # Estimates (never block a transition)
    # ------------------------------------------------------------------

    async def _refresh_estimates(
        self,
        parcel: Parcel,
        action: ParcelAction,
        payload: TransitionPayload,
        driver: Optional[Driver],
        now,
    ) -> None:
        try:
            pickup = await self._route_point(parcel, "pickup")
            delivery = await self._route_point(parcel, "delivery")

            # Once moving, estimate from the reported position when we have one
            origin = pickup
            if action == ParcelAction.DEPART and payload.coordinates is not None:
                origin = payload.coordinates

            if origin is not None and delivery is not None:
                eta = estimate_eta_minutes(distance_km(origin, delivery))
                parcel.estimated_delivery_time = now + timedelta(minutes=eta)

            if action in ASSIGNMENT_ACTIONS and pickup is not None and driver is not None \
                    and driver.current_lat is not None and driver.current_lng is not None:
                eta = estimate_eta_minutes(distance_km((driver.current_lat, driver.current_lng), pickup))
                parcel.estimated_pickup_time = now + timedelta(minutes=eta)
        except (InvalidAddressError, InvalidCoordinatesError) as exc:
            logger.warning(
                "Delivery estimate skipped",
                extra={"parcel_id": parcel.id, "reason": exc.message},
            )

    async def _route_point(self, parcel: Parcel, end: str) -> Optional[Tuple[float, float]]:
        """
        Coordinates for the pickup or delivery end of the route, geocoding
        and storing them on first use. None when they cannot be resolved.
        """
        lat = getattr(parcel, f"{end}_lat")
        lng = getattr(parcel, f"{end}_lng")
        if lat is not None and lng is not None:
            return (lat, lng)

        if self.geocoder is None:
            return None

        address = getattr(parcel, f"{end}_address")
        result = await self.geocoder.resolve(address)
        if not isinstance(result, GeocodeResult):
            logger.warning(
                "Address not resolved, estimate left unchanged",
                extra={"parcel_id": parcel.id, "end": end, "kind": result.kind.value},
            )
            return None

        setattr(parcel, f"{end}_lat", result.lat)
        setattr(parcel, f"{end}_lng", result.lng)
        return result.coordinates

    # ------------------------------------------------------------------
    # Automatic delivery confirmation
    # ------------------------------------------------------------------

    async def auto_confirm_deliveries(self, older_than_hours: Optional[int] = None) -> Tuple[List[int], List[int]]:
        """
        Confirm deliveries the recipient has not confirmed in time.

        Parcels dropped off more than older_than_hours ago move from
        delivered_to_recipient to delivered with the system actor.

        Returns:
            (confirmed parcel ids, skipped parcel ids)
        """
        hours = older_than_hours if older_than_hours is not None else settings.delivery_auto_confirm_hours
        cutoff = self.clock() - timedelta(hours=hours)
        due = await parcel_store.list_parcels_awaiting_confirmation(self.db, cutoff)

        confirmed, skipped = [], []
        for parcel_id in [p.id for p in due]:
            try:
                await self.apply_transition(
                    parcel_id,
                    ParcelAction.CONFIRM_DELIVERY,
                    actor_id=None,
                    payload=TransitionPayload(notes=f"Delivery auto-confirmed after {hours} hours"),
                )
                confirmed.append(parcel_id)
            except (ConcurrentModificationError, InvalidStateError, IllegalTransitionError) as exc:
                # Someone else moved the parcel first
                logger.info(
                    "Auto-confirmation skipped",
                    extra={"parcel_id": parcel_id, "error_code": exc.error_code},
                )
                skipped.append(parcel_id)

        return confirmed, skipped

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _event(self, parcel: Parcel, action: str, previous: Optional[ParcelStatus], actor_id, timestamp) -> TransitionEvent:
        return TransitionEvent(
            parcel_id=parcel.id,
            tracking_number=parcel.tracking_number,
            action=action,
            status=parcel.status.value,
            previous_status=previous.value if previous is not None else None,
            actor_id=actor_id,
            driver_id=parcel.driver_id,
            timestamp=timestamp,
        )

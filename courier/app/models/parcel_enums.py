"""
Parcel status, workflow action and payment enumerations.
"""

import enum


class ParcelStatus(str, enum.Enum):
    """
    Parcel status enumeration.

    Status flow:
        PENDING → ASSIGNED → PICKED_UP → IN_TRANSIT
            → DELIVERED_TO_RECIPIENT → DELIVERED → COMPLETED
        PENDING/ASSIGNED/PICKED_UP/IN_TRANSIT can transition to CANCELLED
    """
    PENDING = "pending"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED_TO_RECIPIENT = "delivered_to_recipient"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({ParcelStatus.COMPLETED, ParcelStatus.CANCELLED})


class ParcelAction(str, enum.Enum):
    """Actions a caller can request against a parcel."""
    ASSIGN = "assign"
    REASSIGN = "reassign"
    PICKUP = "pickup"
    DEPART = "depart"
    ARRIVE = "arrive"
    CONFIRM_DELIVERY = "confirm_delivery"
    COMPLETE = "complete"
    CANCEL = "cancel"


class PaymentStatus(str, enum.Enum):
    """Payment lifecycle, owned by the payment service."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"

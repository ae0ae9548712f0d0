"""
Parcel database model.

A parcel is a single courier shipment tracked from creation to completion.
Its status is only ever changed by the workflow engine.
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Enum, Boolean, Text
from courier.app.core.clock import utcnow
from courier.app.db.session import Base
from courier.app.models.parcel_enums import ParcelStatus, PaymentStatus


class Parcel(Base):
    __tablename__ = "parcels"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    tracking_number = Column(String(32), unique=True, nullable=False, index=True)

    # Sender
    sender_id = Column(Integer, nullable=True, index=True)
    sender_name = Column(String(255), nullable=False)
    sender_email = Column(String(255), nullable=False)
    sender_phone = Column(String(50), nullable=False)

    # Recipient
    recipient_id = Column(Integer, nullable=True, index=True)
    recipient_name = Column(String(255), nullable=False)
    recipient_email = Column(String(255), nullable=False, index=True)
    recipient_phone = Column(String(50), nullable=False)

    # Assignment (at most one active driver)
    driver_id = Column(Integer, ForeignKey("drivers.id"), nullable=True, index=True)
    assigned_at = Column(DateTime, nullable=True)

    # Route
    pickup_address = Column(String(500), nullable=False)
    pickup_lat = Column(Float, nullable=True)
    pickup_lng = Column(Float, nullable=True)
    delivery_address = Column(String(500), nullable=False)
    delivery_lat = Column(Float, nullable=True)
    delivery_lng = Column(Float, nullable=True)

    # Last reported position
    current_location = Column(String(500), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    # Physical attributes
    weight_kg = Column(Float, nullable=False)
    value = Column(Float, nullable=True)
    description = Column(String(500), nullable=True)
    delivery_instructions = Column(Text, nullable=True)

    status = Column(Enum(ParcelStatus), default=ParcelStatus.PENDING, nullable=False, index=True)

    # Timing
    estimated_pickup_time = Column(DateTime, nullable=True)
    actual_pickup_time = Column(DateTime, nullable=True)
    estimated_delivery_time = Column(DateTime, nullable=True)
    actual_delivery_time = Column(DateTime, nullable=True)
    total_delivery_duration = Column(Integer, nullable=True)  # minutes

    # Financial (payment service owns the lifecycle)
    delivery_fee = Column(Float, nullable=True)
    payment_status = Column(Enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False)

    # Delivery confirmation
    delivered_to_recipient = Column(Boolean, default=False, nullable=False)
    delivery_confirmed_at = Column(DateTime, nullable=True)
    delivery_confirmed_by = Column(Integer, nullable=True)
    customer_signature = Column(Text, nullable=True)
    customer_notes = Column(Text, nullable=True)

    completed_at = Column(DateTime, nullable=True)
    completed_by = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Optimistic concurrency: stale writes raise StaleDataError
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<Parcel(id={self.id}, tracking='{self.tracking_number}', status='{self.status.value}')>"

"""
Parcel Pydantic schemas.

Defines request and response models for parcel creation, tracking and
workflow transitions.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List
from courier.app.models.parcel_enums import ParcelStatus, ParcelAction, PaymentStatus


class ParcelCreate(BaseModel):
    """Schema for creating a new parcel."""
    sender_id: Optional[int] = Field(None, description="Sender account id (set from token for customers)")
    sender_name: str = Field(..., min_length=1, max_length=255)
    sender_email: str = Field(..., min_length=3, max_length=255)
    sender_phone: str = Field(..., min_length=3, max_length=50)

    recipient_id: Optional[int] = Field(None, description="Recipient account id, if registered")
    recipient_name: str = Field(..., min_length=1, max_length=255)
    recipient_email: str = Field(..., min_length=3, max_length=255)
    recipient_phone: str = Field(..., min_length=3, max_length=50)

    pickup_address: str = Field(..., min_length=3, max_length=500)
    pickup_lat: Optional[float] = Field(None, ge=-90, le=90)
    pickup_lng: Optional[float] = Field(None, ge=-180, le=180)
    delivery_address: str = Field(..., min_length=3, max_length=500)
    delivery_lat: Optional[float] = Field(None, ge=-90, le=90)
    delivery_lng: Optional[float] = Field(None, ge=-180, le=180)

    weight_kg: float = Field(..., gt=0, description="Weight in kilograms")
    value: Optional[float] = Field(None, ge=0, description="Declared value")
    description: Optional[str] = Field(None, max_length=500)
    delivery_instructions: Optional[str] = Field(None, max_length=2000)
    delivery_fee: Optional[float] = Field(None, ge=0, description="Fee quoted by the payment service")


class TransitionRequest(BaseModel):
    """Schema for requesting a workflow action on a parcel."""
    action: ParcelAction
    driver_id: Optional[int] = Field(None, description="Target driver for assign/reassign")
    notes: Optional[str] = Field(None, max_length=2000)
    location: Optional[str] = Field(None, max_length=500)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    signature: Optional[str] = Field(None, description="Recipient signature for delivery confirmation")


class StatusHistoryResponse(BaseModel):
    """Schema for one audit trail entry."""
    id: int
    parcel_id: int
    status: ParcelStatus
    action: str
    actor_id: Optional[int]
    location: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    notes: Optional[str]
    timestamp: datetime

    class Config:
        from_attributes = True


class ParcelResponse(BaseModel):
    """Schema for parcel response."""
    id: int
    tracking_number: str
    sender_id: Optional[int]
    sender_name: str
    sender_email: str
    sender_phone: str
    recipient_id: Optional[int]
    recipient_name: str
    recipient_email: str
    recipient_phone: str
    driver_id: Optional[int]
    assigned_at: Optional[datetime]
    pickup_address: str
    pickup_lat: Optional[float]
    pickup_lng: Optional[float]
    delivery_address: str
    delivery_lat: Optional[float]
    delivery_lng: Optional[float]
    current_location: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    weight_kg: float
    value: Optional[float]
    description: Optional[str]
    delivery_instructions: Optional[str]
    status: ParcelStatus
    estimated_pickup_time: Optional[datetime]
    actual_pickup_time: Optional[datetime]
    estimated_delivery_time: Optional[datetime]
    actual_delivery_time: Optional[datetime]
    total_delivery_duration: Optional[int]
    delivery_fee: Optional[float]
    payment_status: PaymentStatus
    delivered_to_recipient: bool
    delivery_confirmed_at: Optional[datetime]
    delivery_confirmed_by: Optional[int]
    customer_notes: Optional[str]
    completed_at: Optional[datetime]
    completed_by: Optional[int]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class TrackingResponse(BaseModel):
    """Public tracking view: no contact details."""
    tracking_number: str
    status: ParcelStatus
    pickup_address: str
    delivery_address: str
    current_location: Optional[str]
    estimated_delivery_time: Optional[datetime]
    actual_delivery_time: Optional[datetime]
    history: List[StatusHistoryResponse]


class TransitionResponse(BaseModel):
    """Schema for the result of an applied transition."""
    parcel: ParcelResponse
    history_entry: StatusHistoryResponse


class AutoConfirmResponse(BaseModel):
    """Schema for the delivery auto-confirmation sweep."""
    confirmed_parcel_ids: List[int]
    skipped_parcel_ids: List[int]


class ParcelListResponse(BaseModel):
    """Schema for paginated parcel list."""
    parcels: List[ParcelResponse]
    total: int
    page: int
    page_size: int

"""
Parcel status history model.

Append-only audit trail: every transition writes exactly one row and rows
are never updated or deleted.
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Enum, Text
from courier.app.core.clock import utcnow
from courier.app.db.session import Base
from courier.app.models.parcel_enums import ParcelStatus


class ParcelStatusHistory(Base):
    __tablename__ = "parcel_status_history"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    parcel_id = Column(Integer, ForeignKey("parcels.id"), nullable=False, index=True)

    status = Column(Enum(ParcelStatus), nullable=False)
    action = Column(String(50), nullable=False)

    # None for system actions (e.g. automatic delivery confirmation)
    actor_id = Column(Integer, nullable=True, index=True)

    location = Column(String(500), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    notes = Column(Text, nullable=True)

    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<ParcelStatusHistory(id={self.id}, parcel={self.parcel_id}, status='{self.status.value}')>"

"""
Driver model.

Subset of the driver profile that dispatch needs. Profiles are owned by the
account service; the workflow only reads eligibility fields.
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, Boolean
from courier.app.core.clock import utcnow
from courier.app.db.session import Base


class Driver(Base):
    __tablename__ = "drivers"

    # Same id as the driver's account
    id = Column(Integer, primary_key=True, index=True, autoincrement=False)
    name = Column(String(255), nullable=False)
    vehicle_type = Column(String(50), nullable=True, index=True)
    is_available = Column(Boolean, default=True, nullable=False, index=True)

    current_lat = Column(Float, nullable=True)
    current_lng = Column(Float, nullable=True)

    average_rating = Column(Float, default=0.0, nullable=False)
    completed_deliveries = Column(Integer, default=0, nullable=False)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<Driver(id={self.id}, vehicle='{self.vehicle_type}', available={self.is_available})>"

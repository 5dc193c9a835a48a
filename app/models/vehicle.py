# app/models/vehicle.py
"""
Vehicles table.
One row per normalized plate, created on first sighting or on registration.
Rows are never deleted — deactivation flips is_active.
"""

from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text
from app.database import Base


class Vehicle(Base):
    __tablename__ = "vehicles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    plate_number = Column(String(32), unique=True, nullable=False, index=True)  # normalized
    owner_name = Column(String(200))
    owner_contact = Column(String(200))
    is_active = Column(Boolean, default=True, nullable=False)
    first_seen_at = Column(DateTime)
    last_seen_at = Column(DateTime)
    registered_at = Column(DateTime)   # set when an owner profile is registered
    deactivated_at = Column(DateTime)
    notes = Column(Text)

    def __repr__(self):
        return f"<Vehicle {self.plate_number} owner={self.owner_name} active={self.is_active}>"

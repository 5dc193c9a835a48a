# app/schemas/vehicle.py
from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class VehicleCreate(BaseModel):
    plate_number: str
    owner_name: Optional[str] = None
    owner_contact: Optional[str] = None
    notes: Optional[str] = None


class VehicleOut(BaseModel):
    id: int
    plate_number: str
    owner_name: Optional[str]
    owner_contact: Optional[str]
    is_active: bool
    first_seen_at: Optional[datetime]
    last_seen_at: Optional[datetime]
    registered_at: Optional[datetime]
    deactivated_at: Optional[datetime]
    notes: Optional[str]

    class Config:
        from_attributes = True

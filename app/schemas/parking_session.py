# app/schemas/parking_session.py
from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional


class ParkingSessionOut(BaseModel):
    id: int
    plate: str
    state: str
    active: bool
    entry_time: datetime
    entry_gate: Optional[str]
    entry_image_ref: Optional[str]
    entry_confidence: Optional[float] = None
    rate_snapshot_id: int
    free_time_extension_minutes: int
    exit_requested_at: Optional[datetime]
    exit_gate: Optional[str]
    exit_image_ref: Optional[str]
    exit_confidence: Optional[float] = None
    quoted_fee: Optional[Decimal]
    exit_time: Optional[datetime]
    fee: Optional[Decimal]
    payment_state: str
    gateway_ref: Optional[str]
    closed_at: Optional[datetime]

    class Config:
        from_attributes = True


class ExtensionRequest(BaseModel):
    additional_minutes: int = Field(gt=0)


class WaiveRequest(BaseModel):
    reason: Optional[str] = None

# app/schemas/rate.py
from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional


class RateUpdate(BaseModel):
    hourly_rate: Decimal = Field(ge=0)
    free_minutes: int = Field(ge=0)
    max_daily_rate: Decimal = Field(gt=0)
    effective_at: Optional[datetime] = None   # defaults to now


class RateSnapshotOut(BaseModel):
    snapshot_id: int
    version: int
    hourly_rate: Decimal
    free_minutes: int
    max_daily_rate: Decimal
    created_at: datetime
    superseded_at: Optional[datetime]

    class Config:
        from_attributes = True

# app/schemas/detection.py
from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional


class DetectionIn(BaseModel):
    """One read from an edge ANPR camera."""
    plate: str
    gate: str
    direction: Literal["entry", "exit"]
    timestamp: datetime
    confidence: float = Field(ge=0, le=100)
    image_ref: Optional[str] = None


class EngineOutcomeOut(BaseModel):
    status: str
    plate: Optional[str] = None
    session_id: Optional[int] = None
    fee: Optional[Decimal] = None
    idempotency_key: Optional[str] = None
    gate_command_id: Optional[int] = None
    assistance_required: bool = False
    duplicate: bool = False
    detail: Optional[str] = None

    class Config:
        from_attributes = True

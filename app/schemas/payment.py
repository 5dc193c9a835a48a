# app/schemas/payment.py
from pydantic import BaseModel
from datetime import datetime
from decimal import Decimal
from typing import Optional


class PaymentConfirmationIn(BaseModel):
    idempotency_key: str
    amount: Decimal
    gateway_ref: Optional[str] = None


class PaymentFailureIn(BaseModel):
    idempotency_key: str
    reason: Optional[str] = None


class PaymentAttemptOut(BaseModel):
    id: int
    session_id: int
    sequence: int
    amount: Decimal
    idempotency_key: str
    gateway_ref: Optional[str]
    status: str
    failure_reason: Optional[str]
    confirmed_amount: Optional[Decimal]
    requested_at: datetime
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True

# app/models/payment_attempt.py
"""
Payment attempts table — one row per charge request sent to the gateway.
idempotency_key is UNIQUE so a retried request can never create a second row.
Only the Payment Orchestrator writes to this table.
"""

import enum

from sqlalchemy import Column, Integer, String, DateTime, Numeric, ForeignKey, Text
from app.database import Base


class PaymentStatus(str, enum.Enum):
    REQUESTED = "requested"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class PaymentAttempt(Base):
    __tablename__ = "payment_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("parking_sessions.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False, default=0)    # failed attempts before this one
    amount = Column(Numeric(10, 2), nullable=False)
    idempotency_key = Column(String(64), unique=True, nullable=False, index=True)
    gateway_ref = Column(String(200))                        # set once the gateway acknowledges
    status = Column(String(20), nullable=False, default=PaymentStatus.REQUESTED.value)
    failure_reason = Column(Text)
    confirmed_amount = Column(Numeric(10, 2))
    requested_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime)

    def __repr__(self):
        return f"<PaymentAttempt {self.idempotency_key} session={self.session_id} status={self.status}>"

# app/models/parking_session.py
"""
Parking sessions table — one row per vehicle occupancy interval.

Only the Session Manager writes to this table. The partial unique index on
(plate WHERE active) backs the one-active-session-per-plate rule at the
storage level; exit_time, fee and the terminal payment_state are written in
the single closing transaction and never touched afterwards.
"""

import enum

from sqlalchemy import Column, Integer, String, DateTime, Boolean, Numeric, Float, ForeignKey, Index
from app.database import Base


class SessionState(str, enum.Enum):
    OPEN = "OPEN"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    CLOSED = "CLOSED"


class PaymentState(str, enum.Enum):
    NONE = "none"          # still parked
    PENDING = "pending"    # exit requested, fee > 0
    PAID = "paid"
    FREE = "free"
    WAIVED = "waived"      # admin override


TERMINAL_PAYMENT_STATES = {PaymentState.PAID.value, PaymentState.FREE.value, PaymentState.WAIVED.value}


class ParkingSession(Base):
    __tablename__ = "parking_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    plate = Column(String(32), nullable=False, index=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"))
    state = Column(String(20), nullable=False, default=SessionState.OPEN.value, index=True)
    active = Column(Boolean, nullable=False, default=True)

    entry_time = Column(DateTime, nullable=False, index=True)
    entry_gate = Column(String(50))
    entry_image_ref = Column(String(500))
    entry_confidence = Column(Float)                 # of the read behind entry_image_ref
    rate_snapshot_id = Column(Integer, ForeignKey("rate_snapshots.id"), nullable=False)
    free_time_extension_minutes = Column(Integer, nullable=False, default=0)

    # Exit request — filled when the exit camera sees the vehicle
    exit_requested_at = Column(DateTime)
    exit_gate = Column(String(50))
    exit_image_ref = Column(String(500))
    exit_confidence = Column(Float)
    quoted_fee = Column(Numeric(10, 2))

    # Terminal fields — written once by the closing transition
    exit_time = Column(DateTime)
    fee = Column(Numeric(10, 2))
    payment_state = Column(String(20), nullable=False, default=PaymentState.NONE.value)
    gateway_ref = Column(String(200))
    closed_at = Column(DateTime)

    created_at = Column(DateTime)
    updated_at = Column(DateTime)

    def __repr__(self):
        return f"<ParkingSession {self.id} plate={self.plate} state={self.state}>"


Index(
    "uq_parking_sessions_active_plate",
    ParkingSession.plate,
    unique=True,
    sqlite_where=ParkingSession.active == True,      # noqa: E712
    postgresql_where=ParkingSession.active == True,  # noqa: E712
)

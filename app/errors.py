# app/errors.py
"""
Domain error taxonomy.

SessionInvariantError subclasses mean a logic or data problem: they are
rejected at the Session Manager boundary and never retried blindly.
TransientFault subclasses are retried inside their owning component and only
surface here once retries are exhausted.
"""

from decimal import Decimal
from typing import Optional


class ParkingError(Exception):
    """Base class — `http_status` is used by the API exception handler."""
    http_status = 400
    code = "parking_error"


# ── Session invariants ───────────────────────────────────────────────────────
class SessionInvariantError(ParkingError):
    http_status = 409


class DuplicateActiveSession(SessionInvariantError):
    code = "duplicate_active_session"

    def __init__(self, plate: str, session_id: Optional[int] = None):
        self.plate = plate
        self.session_id = session_id
        super().__init__(f"Plate {plate} already has an active session ({session_id})")


class NoActiveSession(SessionInvariantError):
    code = "no_active_session"

    def __init__(self, plate: str):
        self.plate = plate
        super().__init__(f"No active session for plate {plate}")


class SessionNotFound(SessionInvariantError):
    http_status = 404
    code = "session_not_found"

    def __init__(self, session_id):
        self.session_id = session_id
        super().__init__(f"Session {session_id} does not exist")


class SessionNotAwaitingPayment(SessionInvariantError):
    code = "session_not_awaiting_payment"

    def __init__(self, session_id, state: str):
        self.session_id = session_id
        self.state = state
        super().__init__(f"Session {session_id} is {state}, not AWAITING_PAYMENT")


class AmountMismatch(SessionInvariantError):
    code = "amount_mismatch"

    def __init__(self, session_id, expected: Decimal, received: Decimal):
        self.session_id = session_id
        self.expected = expected
        self.received = received
        super().__init__(f"Session {session_id}: expected {expected}, received {received}")


class SessionAlreadyClosed(SessionInvariantError):
    code = "session_already_closed"

    def __init__(self, session_id):
        self.session_id = session_id
        super().__init__(f"Session {session_id} is already closed")


# ── Input validation ─────────────────────────────────────────────────────────
class NegativeDuration(ParkingError):
    http_status = 422
    code = "negative_duration"

    def __init__(self, entry_time, exit_time):
        self.entry_time = entry_time
        self.exit_time = exit_time
        super().__init__(f"Exit time {exit_time} is before entry time {entry_time}")


class InvalidRate(ParkingError):
    http_status = 422
    code = "invalid_rate"


class InvalidExtension(ParkingError):
    http_status = 422
    code = "invalid_extension"


class NoRateConfigured(ParkingError):
    http_status = 503
    code = "no_rate_configured"

    def __init__(self):
        super().__init__("Rate catalog is empty — create a rate before opening sessions")


# ── Transient faults ─────────────────────────────────────────────────────────
class TransientFault(ParkingError):
    http_status = 503


class GateUnresponsive(TransientFault):
    code = "gate_unresponsive"

    def __init__(self, gate: str, direction: str, action: str, attempts: int, command_id=None):
        self.gate = gate
        self.direction = direction
        self.action = action
        self.attempts = attempts
        self.command_id = command_id
        super().__init__(f"Gate {gate}/{direction} did not acknowledge '{action}' after {attempts} attempts")


class PaymentRequestFailed(TransientFault):
    http_status = 502
    code = "payment_request_failed"

    def __init__(self, session_id, idempotency_key: str, reason: str):
        self.session_id = session_id
        self.idempotency_key = idempotency_key
        self.reason = reason
        super().__init__(f"Payment request {idempotency_key} for session {session_id} failed: {reason}")

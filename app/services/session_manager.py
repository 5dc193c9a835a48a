# app/services/session_manager.py
"""
Session Manager — the parking session state machine.

    OPEN ──exit, fee = 0──────────────────────────────► CLOSED (free)
    OPEN ──exit, fee > 0──► AWAITING_PAYMENT ──paid───► CLOSED (paid)
                                    │ ──extension → fee 0─► CLOSED (free)
                                    └──admin waive──────► CLOSED (waived)

This is the only writer of ParkingSession rows. Every operation for a plate
runs under that plate's lock, and every state change is a compare-and-set
UPDATE guarded on the expected current state, so a transition that lost a
race touches nothing. A gate signal is returned only by the call that
performed the transition; replays get `duplicate=True` and no signal.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from app.errors import (
    AmountMismatch,
    DuplicateActiveSession,
    InvalidExtension,
    NoActiveSession,
    SessionAlreadyClosed,
    SessionNotAwaitingPayment,
    SessionNotFound,
)
from app.models.parking_session import ParkingSession, PaymentState, SessionState
from app.services.fee_calculator import ZERO, calculate_fee, to_money
from app.services.rate_catalog import RateCatalog
from app.services.vehicle_service import normalize_plate, record_sighting
from app.utils.keyed_lock import KeyedLock
from app.utils.logger import get_logger
from app.utils.timeutils import to_naive_utc, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class GateSignal:
    gate: Optional[str]
    direction: str           # entry | exit
    action: str = "open"


@dataclass(frozen=True)
class SessionTransition:
    session_id: int
    plate: str
    state: str
    payment_state: str
    fee: Optional[Decimal] = None
    gate_signal: Optional[GateSignal] = None
    payment_required: bool = False
    duplicate: bool = False


class SessionManager:
    def __init__(self, session_factory, rate_catalog: RateCatalog, locks: Optional[KeyedLock] = None):
        self._session_factory = session_factory
        self._rates = rate_catalog
        self._locks = locks or KeyedLock()

    # ── Entry ──────────────────────────────────────────────────────────────
    async def open_session(self, plate: str, entry_time: datetime, image_ref: Optional[str] = None,
                           gate: Optional[str] = None, confidence: Optional[float] = None) -> SessionTransition:
        plate = normalize_plate(plate)
        if not plate:
            raise ValueError("Cannot open a session without a plate")
        entry_time = to_naive_utc(entry_time)
        rate = self._rates.snapshot_at(entry_time)

        async with self._locks.hold(plate):
            db = self._session_factory()
            try:
                existing = self._active_for_plate(db, plate)
                if existing is not None:
                    raise DuplicateActiveSession(plate, existing.id)

                now = utcnow()
                vehicle = record_sighting(db, plate, entry_time)
                session = ParkingSession(
                    plate=plate,
                    vehicle_id=vehicle.id,
                    state=SessionState.OPEN.value,
                    active=True,
                    entry_time=entry_time,
                    entry_gate=gate,
                    entry_image_ref=image_ref,
                    entry_confidence=confidence,
                    rate_snapshot_id=rate.snapshot_id,
                    free_time_extension_minutes=0,
                    payment_state=PaymentState.NONE.value,
                    created_at=now,
                    updated_at=now,
                )
                db.add(session)
                try:
                    db.commit()
                except IntegrityError:
                    # Another writer won the (plate WHERE active) unique index
                    db.rollback()
                    existing = self._active_for_plate(db, plate)
                    raise DuplicateActiveSession(plate, existing.id if existing else None)
                session_id = session.id
            finally:
                db.close()

        logger.info(f"[SESSION] Opened #{session_id} plate={plate} gate={gate} rate=v{rate.version}")
        return SessionTransition(
            session_id=session_id,
            plate=plate,
            state=SessionState.OPEN.value,
            payment_state=PaymentState.NONE.value,
            gate_signal=GateSignal(gate=gate, direction="entry"),
        )

    # ── Exit ───────────────────────────────────────────────────────────────
    async def request_exit(self, plate: str, exit_time: datetime, image_ref: Optional[str] = None,
                           gate: Optional[str] = None, confidence: Optional[float] = None) -> SessionTransition:
        plate = normalize_plate(plate)
        exit_time = to_naive_utc(exit_time)

        async with self._locks.hold(plate):
            db = self._session_factory()
            try:
                session = self._active_for_plate(db, plate)
                if session is None:
                    raise NoActiveSession(plate)

                if session.state == SessionState.AWAITING_PAYMENT.value:
                    # Vehicle seen again at the exit while the quote is outstanding.
                    # It may have moved to another lane: the paid exit opens where it is now.
                    if gate and gate != session.exit_gate:
                        logger.info(f"[SESSION] #{session.id} plate={plate} moved {session.exit_gate} → {gate}")
                        self._compare_and_set(db, session, SessionState.AWAITING_PAYMENT, {
                            "exit_gate": gate,
                            "exit_image_ref": image_ref,
                            "exit_confidence": confidence,
                        })
                        db.commit()
                    return SessionTransition(
                        session_id=session.id,
                        plate=plate,
                        state=session.state,
                        payment_state=session.payment_state,
                        fee=to_money(session.quoted_fee),
                        payment_required=True,
                        duplicate=True,
                    )

                rate = self._rates.get(session.rate_snapshot_id)
                fee = calculate_fee(session.entry_time, exit_time, rate, session.free_time_extension_minutes)
                request = {
                    "exit_requested_at": exit_time,
                    "exit_gate": gate,
                    "exit_image_ref": image_ref,
                    "exit_confidence": confidence,
                    "quoted_fee": fee,
                }

                if fee <= ZERO:
                    self._close(db, session, SessionState.OPEN, PaymentState.FREE, exit_time, ZERO, extra=request)
                    logger.info(f"[SESSION] #{session.id} plate={plate} free exit")
                    return SessionTransition(
                        session_id=session.id,
                        plate=plate,
                        state=SessionState.CLOSED.value,
                        payment_state=PaymentState.FREE.value,
                        fee=ZERO,
                        gate_signal=GateSignal(gate=gate, direction="exit"),
                    )

                request.update(state=SessionState.AWAITING_PAYMENT.value, payment_state=PaymentState.PENDING.value)
                self._compare_and_set(db, session, SessionState.OPEN, request)
                db.commit()
                logger.info(f"[SESSION] #{session.id} plate={plate} awaiting payment of {fee}")
                return SessionTransition(
                    session_id=session.id,
                    plate=plate,
                    state=SessionState.AWAITING_PAYMENT.value,
                    payment_state=PaymentState.PENDING.value,
                    fee=fee,
                    payment_required=True,
                )
            finally:
                db.close()

    # ── Payment ────────────────────────────────────────────────────────────
    async def confirm_payment(self, session_id: int, amount, gateway_ref: Optional[str]) -> SessionTransition:
        amount = to_money(amount)
        plate = self._plate_of(session_id)

        async with self._locks.hold(plate):
            db = self._session_factory()
            try:
                session = self._load(db, session_id)

                if session.state == SessionState.CLOSED.value:
                    if (session.payment_state == PaymentState.PAID.value
                            and to_money(session.fee) == amount
                            and session.gateway_ref == gateway_ref):
                        logger.info(f"[SESSION] #{session_id} payment {gateway_ref} already applied")
                        return self._snapshot(session, duplicate=True)
                    raise SessionNotAwaitingPayment(session_id, session.state)

                if session.state != SessionState.AWAITING_PAYMENT.value:
                    raise SessionNotAwaitingPayment(session_id, session.state)

                expected = to_money(session.quoted_fee)
                if amount != expected:
                    raise AmountMismatch(session_id, expected, amount)

                self._close(db, session, SessionState.AWAITING_PAYMENT, PaymentState.PAID,
                            session.exit_requested_at, expected, gateway_ref=gateway_ref)
                logger.info(f"[SESSION] #{session_id} plate={plate} paid {expected} ref={gateway_ref}")
                return SessionTransition(
                    session_id=session_id,
                    plate=plate,
                    state=SessionState.CLOSED.value,
                    payment_state=PaymentState.PAID.value,
                    fee=expected,
                    gate_signal=GateSignal(gate=session.exit_gate, direction="exit"),
                )
            finally:
                db.close()

    # ── Detection quality ──────────────────────────────────────────────────
    async def adopt_better_read(self, plate: str, gate: str, direction: str, image_ref: Optional[str],
                                confidence: float, burst_started_at: Optional[datetime] = None) -> bool:
        """
        A later read of the same burst beat the one the session was opened or
        quoted with: keep its image and confidence. Only the image evidence
        changes; state, times and fees are left alone. A session stamped before
        `burst_started_at` belongs to an earlier visit and is not touched.
        Returns True if updated.
        """
        plate = normalize_plate(plate)
        async with self._locks.hold(plate):
            db = self._session_factory()
            try:
                if direction == "entry":
                    session = self._active_for_plate(db, plate)
                    image_field, confidence_field, gate_field = "entry_image_ref", "entry_confidence", "entry_gate"
                    stamped_at = session.entry_time if session is not None else None
                else:
                    # a free exit has already closed the session by the time the burst goes on
                    session = (
                        db.query(ParkingSession)
                        .filter(ParkingSession.plate == plate, ParkingSession.exit_requested_at != None)  # noqa: E711
                        .order_by(ParkingSession.id.desc())
                        .first()
                    )
                    image_field, confidence_field, gate_field = "exit_image_ref", "exit_confidence", "exit_gate"
                    stamped_at = session.exit_requested_at if session is not None else None

                if session is None or getattr(session, gate_field) != gate:
                    return False
                if burst_started_at is not None and stamped_at < to_naive_utc(burst_started_at):
                    return False
                stored = getattr(session, confidence_field)
                if stored is not None and stored >= confidence:
                    return False

                updated = (
                    db.query(ParkingSession)
                    .filter(ParkingSession.id == session.id, ParkingSession.state == session.state)
                    .update({image_field: image_ref, confidence_field: confidence, "updated_at": utcnow()},
                            synchronize_session=False)
                )
                db.commit()
                if updated:
                    logger.debug(f"[SESSION] #{session.id} {direction} read upgraded to {confidence:.1f} ({image_ref})")
                return bool(updated)
            finally:
                db.close()

    # ── Admin overrides ────────────────────────────────────────────────────
    async def apply_free_time_extension(self, session_id: int, minutes: int) -> SessionTransition:
        if minutes is None or int(minutes) <= 0:
            raise InvalidExtension(f"Extension must be a positive number of minutes, got {minutes!r}")
        plate = self._plate_of(session_id)

        async with self._locks.hold(plate):
            db = self._session_factory()
            try:
                session = self._load(db, session_id)
                if session.state == SessionState.CLOSED.value:
                    raise SessionAlreadyClosed(session_id)

                total = (session.free_time_extension_minutes or 0) + int(minutes)
                state = SessionState(session.state)

                if state == SessionState.OPEN:
                    self._compare_and_set(db, session, state, {"free_time_extension_minutes": total})
                    db.commit()
                    logger.info(f"[SESSION] #{session_id} extension now {total} min")
                    return SessionTransition(session_id, plate, state.value, session.payment_state)

                rate = self._rates.get(session.rate_snapshot_id)
                fee = calculate_fee(session.entry_time, session.exit_requested_at, rate, total)
                if fee <= ZERO:
                    self._close(db, session, state, PaymentState.FREE, session.exit_requested_at, ZERO,
                                extra={"free_time_extension_minutes": total, "quoted_fee": ZERO})
                    logger.info(f"[SESSION] #{session_id} extension of {minutes} min made the stay free")
                    return SessionTransition(
                        session_id=session_id,
                        plate=plate,
                        state=SessionState.CLOSED.value,
                        payment_state=PaymentState.FREE.value,
                        fee=ZERO,
                        gate_signal=GateSignal(gate=session.exit_gate, direction="exit"),
                    )

                self._compare_and_set(db, session, state, {"free_time_extension_minutes": total, "quoted_fee": fee})
                db.commit()
                logger.info(f"[SESSION] #{session_id} extension now {total} min, fee re-quoted at {fee}")
                return SessionTransition(
                    session_id=session_id,
                    plate=plate,
                    state=state.value,
                    payment_state=session.payment_state,
                    fee=fee,
                    payment_required=True,
                )
            finally:
                db.close()

    async def waive_payment(self, session_id: int, reason: Optional[str] = None) -> SessionTransition:
        """Close an AWAITING_PAYMENT session without payment. The owed fee is kept for audit."""
        plate = self._plate_of(session_id)

        async with self._locks.hold(plate):
            db = self._session_factory()
            try:
                session = self._load(db, session_id)
                if session.state != SessionState.AWAITING_PAYMENT.value:
                    raise SessionNotAwaitingPayment(session_id, session.state)
                fee = to_money(session.quoted_fee)
                self._close(db, session, SessionState.AWAITING_PAYMENT, PaymentState.WAIVED,
                            session.exit_requested_at, fee)
                logger.warning(f"[SESSION] #{session_id} plate={plate} fee {fee} waived: {reason or 'no reason given'}")
                return SessionTransition(
                    session_id=session_id,
                    plate=plate,
                    state=SessionState.CLOSED.value,
                    payment_state=PaymentState.WAIVED.value,
                    fee=fee,
                    gate_signal=GateSignal(gate=session.exit_gate, direction="exit"),
                )
            finally:
                db.close()

    # ── Reads ──────────────────────────────────────────────────────────────
    def get_session(self, session_id: int) -> ParkingSession:
        db = self._session_factory()
        try:
            return self._load(db, session_id)
        finally:
            db.close()

    def get_active_session(self, plate: str) -> Optional[ParkingSession]:
        db = self._session_factory()
        try:
            return self._active_for_plate(db, normalize_plate(plate))
        finally:
            db.close()

    def list_sessions(self, active: Optional[bool] = None, plate: Optional[str] = None,
                      limit: int = 50) -> List[ParkingSession]:
        db = self._session_factory()
        try:
            q = db.query(ParkingSession)
            if active is not None:
                q = q.filter(ParkingSession.active == active)
            if plate:
                q = q.filter(ParkingSession.plate == normalize_plate(plate))
            return q.order_by(ParkingSession.id.desc()).limit(limit).all()
        finally:
            db.close()

    # ── Internals ──────────────────────────────────────────────────────────
    @staticmethod
    def _active_for_plate(db, plate: str) -> Optional[ParkingSession]:
        return (
            db.query(ParkingSession)
            .filter(ParkingSession.plate == plate, ParkingSession.active == True)  # noqa: E712
            .first()
        )

    @staticmethod
    def _load(db, session_id: int) -> ParkingSession:
        session = db.get(ParkingSession, session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def _plate_of(self, session_id: int) -> str:
        # plate never changes, so it is safe to read before taking the lock
        return self.get_session(session_id).plate

    @staticmethod
    def _compare_and_set(db, session: ParkingSession, expected: SessionState, values: dict):
        values = dict(values, updated_at=utcnow())
        updated = (
            db.query(ParkingSession)
            .filter(ParkingSession.id == session.id, ParkingSession.state == expected.value)
            .update(values, synchronize_session=False)
        )
        if updated != 1:
            db.rollback()
            current = db.get(ParkingSession, session.id)
            state = current.state if current is not None else "missing"
            if state == SessionState.CLOSED.value:
                raise SessionAlreadyClosed(session.id)
            raise SessionNotAwaitingPayment(session.id, state)

    def _close(self, db, session: ParkingSession, expected: SessionState, payment_state: PaymentState,
               exit_time: datetime, fee: Decimal, gateway_ref: Optional[str] = None, extra: Optional[dict] = None):
        """The one closing transition: terminal fields land in a single UPDATE."""
        now = utcnow()
        values = dict(extra or {})
        values.update(
            state=SessionState.CLOSED.value,
            active=False,
            exit_time=exit_time,
            fee=fee,
            payment_state=payment_state.value,
            gateway_ref=gateway_ref,
            closed_at=now,
        )
        self._compare_and_set(db, session, expected, values)
        db.commit()

    @staticmethod
    def _snapshot(session: ParkingSession, duplicate: bool = False) -> SessionTransition:
        return SessionTransition(
            session_id=session.id,
            plate=session.plate,
            state=session.state,
            payment_state=session.payment_state,
            fee=to_money(session.fee) if session.fee is not None else None,
            duplicate=duplicate,
        )

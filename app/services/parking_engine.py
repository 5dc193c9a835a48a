# app/services/parking_engine.py
"""
Orchestration Engine — wires the parking core together.

    detection → deduplicator → session manager ─┬─ entry → open entry gate
                                                 └─ exit ─┬─ free → open exit gate
                                                          └─ fee > 0 → payment request
    payment confirmation → payment orchestrator → session manager → open exit gate

Session invariant violations are never retried here: they are logged,
alerted and answered with a deny command. An unresponsive gate always ends
in a gate_unresponsive alert and an outcome flagged assistance_required, so
a vehicle is never silently left at a closed barrier.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import Request

from app.config import settings
from app.errors import (
    AmountMismatch,
    DuplicateActiveSession,
    GateUnresponsive,
    NoActiveSession,
    ParkingError,
    PaymentRequestFailed,
    SessionInvariantError,
)
from app.models.detection_log import DetectionLog
from app.services import alert_service
from app.services.detection_deduplicator import DetectionDeduplicator, DetectionEvent
from app.services.fee_calculator import to_money
from app.services.gate_dispatcher import GateCommandDispatcher, HttpGateChannel
from app.services.payment_gateway import HttpPaymentGateway
from app.services.payment_orchestrator import PaymentOrchestrator
from app.services.rate_catalog import RateCatalog, RateTerms
from app.services.session_manager import GateSignal, SessionManager
from app.services.vehicle_service import normalize_plate
from app.utils.keyed_lock import KeyedLock
from app.utils.logger import get_logger
from app.utils.timeutils import to_naive_utc, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class EngineOutcome:
    status: str
    plate: Optional[str] = None
    session_id: Optional[int] = None
    fee: Optional[Decimal] = None
    idempotency_key: Optional[str] = None
    gate_command_id: Optional[int] = None
    assistance_required: bool = False
    duplicate: bool = False
    detail: Optional[str] = None


class ParkingEngine:
    def __init__(self, session_factory, rate_catalog: RateCatalog, session_manager: SessionManager,
                 payment_orchestrator: PaymentOrchestrator, gate_dispatcher: GateCommandDispatcher,
                 deduplicator: DetectionDeduplicator):
        self._session_factory = session_factory
        self.rates = rate_catalog
        self.sessions = session_manager
        self.payments = payment_orchestrator
        self.gates = gate_dispatcher
        self.deduplicator = deduplicator

    # ── Detector input ─────────────────────────────────────────────────────
    async def handle_detection(self, plate: str, gate: str, direction: str, timestamp: datetime,
                               confidence: float, image_ref: Optional[str] = None) -> EngineOutcome:
        event = self.deduplicator.ingest(plate, gate, timestamp, confidence, image_ref, direction)
        reason = self.deduplicator.last_suppress_reason if event is None else None
        self._log_detection(plate, gate, direction, timestamp, confidence, image_ref, reason)

        if event is None:
            logger.debug(f"[ENGINE] Detection {plate}@{gate} suppressed ({reason})")
            if self.deduplicator.last_improved:
                await self._adopt_best_read(plate, gate)
            return EngineOutcome("suppressed", plate=normalize_plate(plate), detail=reason)

        logger.info(f"[ENGINE] {event.direction.upper()} plate={event.plate} gate={event.gate} "
                    f"conf={event.confidence:.1f}")
        if event.direction == "entry":
            return await self._handle_entry(event)
        return await self._handle_exit(event)

    async def _adopt_best_read(self, plate: str, gate: str):
        best = self.deduplicator.representative(plate, gate)
        if best is not None:
            await self.sessions.adopt_better_read(best.plate, best.gate, best.direction, best.image_ref,
                                                  best.confidence, self.deduplicator.burst_started_at(plate, gate))

    async def _handle_entry(self, event: DetectionEvent) -> EngineOutcome:
        try:
            transition = await self.sessions.open_session(event.plate, event.detected_at, event.image_ref, event.gate,
                                                         confidence=event.confidence)
        except DuplicateActiveSession as e:
            await self._alert(alert_service.ENTRY_REJECTED,
                              f"Entry denied at {event.gate}: plate {event.plate} already has active session "
                              f"#{e.session_id}", gate=event.gate, plate=event.plate, session_id=e.session_id)
            return await self._deny(event, "entry_denied", session_id=e.session_id, detail=str(e))
        except ParkingError as e:
            await self._alert(alert_service.INVARIANT_VIOLATION, f"Entry for {event.plate} at {event.gate} "
                              f"failed: {e}", gate=event.gate, plate=event.plate)
            return await self._deny(event, "entry_denied", detail=str(e))

        return await self._open_gate(transition.gate_signal, "entry_opened", event.plate, transition.session_id)

    async def _handle_exit(self, event: DetectionEvent) -> EngineOutcome:
        try:
            transition = await self.sessions.request_exit(event.plate, event.detected_at, event.image_ref, event.gate,
                                                         confidence=event.confidence)
        except NoActiveSession as e:
            await self._alert(alert_service.EXIT_REJECTED,
                              f"No entry record for {event.plate} at {event.gate} — attended assistance required",
                              gate=event.gate, plate=event.plate)
            return await self._deny(event, "exit_denied", detail=str(e), assistance_required=True)
        except ParkingError as e:
            await self._alert(alert_service.INVARIANT_VIOLATION, f"Exit for {event.plate} at {event.gate} "
                              f"failed: {e} — attended assistance required", gate=event.gate, plate=event.plate)
            return await self._deny(event, "exit_denied", detail=str(e), assistance_required=True)

        if transition.gate_signal is not None:
            return await self._open_gate(transition.gate_signal, "exit_opened", event.plate,
                                         transition.session_id, fee=transition.fee)
        return await self._request_payment(transition.session_id, transition.fee, event.plate,
                                           duplicate=transition.duplicate)

    # ── Payments ───────────────────────────────────────────────────────────
    async def request_payment(self, session_id: int) -> EngineOutcome:
        """Caller/UI re-initiates payment after a failed attempt."""
        session = self.sessions.get_session(session_id)
        return await self._request_payment(session_id, session.quoted_fee, session.plate)

    async def _request_payment(self, session_id: int, fee, plate: str, duplicate: bool = False) -> EngineOutcome:
        fee = to_money(fee) if fee is not None else None
        try:
            request = await self.payments.request_payment(session_id, fee)
        except PaymentRequestFailed as e:
            await self._alert(alert_service.PAYMENT_REQUEST_FAILED,
                              f"Payment request for session #{session_id} ({plate}) failed: {e.reason}",
                              plate=plate, session_id=session_id)
            return EngineOutcome("payment_request_failed", plate, session_id, fee,
                                 idempotency_key=e.idempotency_key, detail=e.reason)
        except SessionInvariantError as e:
            await self._alert(alert_service.INVARIANT_VIOLATION,
                              f"Payment request for session #{session_id} rejected: {e}",
                              plate=plate, session_id=session_id)
            return EngineOutcome("rejected", plate, session_id, fee, detail=str(e))

        return EngineOutcome("payment_required", plate, session_id, request.amount,
                             idempotency_key=request.idempotency_key, duplicate=duplicate or request.reused)

    async def handle_payment_confirmation(self, idempotency_key: str, gateway_ref: Optional[str],
                                          amount) -> EngineOutcome:
        try:
            result = await self.payments.on_confirmation(idempotency_key, gateway_ref, amount)
        except AmountMismatch as e:
            await self._alert(alert_service.INVARIANT_VIOLATION,
                              f"Payment {idempotency_key} amount {e.received} does not match fee {e.expected} "
                              f"for session #{e.session_id}", session_id=e.session_id)
            return EngineOutcome("rejected", session_id=e.session_id, idempotency_key=idempotency_key,
                                 detail=str(e))

        if result.status == "conflict":
            await self._alert(alert_service.PAYMENT_CONFLICT,
                              f"Payment {idempotency_key} ({gateway_ref}) received for settled session "
                              f"#{result.session_id}: {result.detail} — refund required",
                              session_id=result.session_id)
            return EngineOutcome("conflict", session_id=result.session_id, idempotency_key=idempotency_key,
                                 detail=result.detail)
        if result.status != "confirmed":
            return EngineOutcome(result.status, session_id=result.session_id, idempotency_key=idempotency_key,
                                 detail=result.detail)

        session = self.sessions.get_session(result.session_id)
        if result.gate_signal is not None:
            return await self._open_gate(result.gate_signal, "exit_opened", session.plate, session.id,
                                         fee=to_money(session.fee), idempotency_key=idempotency_key)
        return EngineOutcome("payment_confirmed", session.plate, session.id, to_money(session.fee),
                             idempotency_key=idempotency_key, duplicate=True)

    async def handle_payment_failure(self, idempotency_key: str, reason: Optional[str]) -> EngineOutcome:
        result = await self.payments.on_failure(idempotency_key, reason)
        status = "payment_failed" if result.status == "failed" else result.status
        return EngineOutcome(status, session_id=result.session_id, idempotency_key=idempotency_key,
                             duplicate=result.duplicate, detail=result.detail)

    # ── Admin ──────────────────────────────────────────────────────────────
    async def update_rate(self, hourly_rate, free_minutes, max_daily_rate,
                          effective_at: Optional[datetime] = None) -> RateTerms:
        return await self.rates.update(hourly_rate, free_minutes, max_daily_rate, effective_at)

    async def extend_free_time(self, session_id: int, minutes: int) -> EngineOutcome:
        transition = await self.sessions.apply_free_time_extension(session_id, minutes)
        if transition.gate_signal is not None:
            return await self._open_gate(transition.gate_signal, "exit_opened", transition.plate,
                                         transition.session_id, fee=transition.fee)
        return EngineOutcome("extended", transition.plate, transition.session_id, transition.fee,
                             detail=f"state={transition.state}")

    async def waive_payment(self, session_id: int, reason: Optional[str] = None) -> EngineOutcome:
        transition = await self.sessions.waive_payment(session_id, reason)
        return await self._open_gate(transition.gate_signal, "exit_opened", transition.plate,
                                     transition.session_id, fee=transition.fee, detail="fee waived")

    # ── Gate helpers ───────────────────────────────────────────────────────
    async def _open_gate(self, signal: GateSignal, status: str, plate: str, session_id: Optional[int],
                         fee: Optional[Decimal] = None, idempotency_key: Optional[str] = None,
                         detail: Optional[str] = None) -> EngineOutcome:
        try:
            result = await self.gates.send(signal.gate, signal.direction, signal.action, session_id)
        except GateUnresponsive as e:
            await self._alert(alert_service.GATE_UNRESPONSIVE,
                              f"Gate {e.gate}/{e.direction} did not acknowledge '{e.action}' for {plate} "
                              f"(session #{session_id}) — attended assistance required",
                              gate=e.gate, plate=plate, session_id=session_id)
            return EngineOutcome("assistance_required", plate, session_id, fee, idempotency_key,
                                 gate_command_id=e.command_id, assistance_required=True, detail=str(e))
        return EngineOutcome(status, plate, session_id, fee, idempotency_key,
                             gate_command_id=result.command_id, detail=detail)

    async def _deny(self, event: DetectionEvent, status: str, session_id: Optional[int] = None,
                    detail: Optional[str] = None, assistance_required: bool = False) -> EngineOutcome:
        signal = GateSignal(gate=event.gate, direction=event.direction, action="deny")
        outcome = await self._open_gate(signal, status, event.plate, session_id, detail=detail)
        if assistance_required and not outcome.assistance_required:
            return EngineOutcome(outcome.status, outcome.plate, outcome.session_id,
                                 gate_command_id=outcome.gate_command_id, assistance_required=True, detail=detail)
        return outcome

    # ── Persistence helpers ────────────────────────────────────────────────
    async def _alert(self, alert_type: str, description: str, gate: Optional[str] = None,
                     plate: Optional[str] = None, session_id: Optional[int] = None):
        db = self._session_factory()
        try:
            await alert_service.create_alert(db, alert_type, description, gate=gate, plate=plate,
                                             session_id=session_id)
        finally:
            db.close()

    def _log_detection(self, plate: str, gate: str, direction: str, timestamp: datetime, confidence: float,
                       image_ref: Optional[str], suppress_reason: Optional[str]):
        db = self._session_factory()
        try:
            db.add(DetectionLog(
                plate_raw=plate,
                plate=normalize_plate(plate),
                gate=gate,
                direction=direction,
                confidence=confidence,
                image_ref=image_ref,
                detected_at=to_naive_utc(timestamp),
                suppressed=suppress_reason is not None,
                suppress_reason=suppress_reason,
                received_at=utcnow(),
            ))
            db.commit()
        finally:
            db.close()


def build_engine(session_factory, payment_gateway=None, gate_channel=None) -> ParkingEngine:
    """Assemble the engine with production collaborators and a seeded rate catalog."""
    rates = RateCatalog(session_factory)
    rates.seed_default(settings.DEFAULT_HOURLY_RATE, settings.DEFAULT_FREE_MINUTES, settings.DEFAULT_MAX_DAILY_RATE)
    plate_locks = KeyedLock()
    sessions = SessionManager(session_factory, rates, locks=plate_locks)
    payments = PaymentOrchestrator(session_factory, sessions, payment_gateway or HttpPaymentGateway())
    gates = GateCommandDispatcher(session_factory, gate_channel or HttpGateChannel())
    return ParkingEngine(session_factory, rates, sessions, payments, gates, DetectionDeduplicator())


def get_engine(request: Request) -> ParkingEngine:
    """FastAPI dependency — the engine built at startup."""
    return request.app.state.engine

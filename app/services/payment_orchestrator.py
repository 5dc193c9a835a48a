# app/services/payment_orchestrator.py
"""
Payment Orchestrator — owns PaymentAttempt rows.

Idempotency keys are derived from (session id, amount, attempt sequence),
where the sequence is the number of attempts for the session that already
failed. Retrying a request therefore lands on the same key and the same row,
while a fresh attempt after a failure gets a new one.

Provider webhooks are delivered at least once and possibly out of order, so
on_confirmation / on_failure never raise for replays: they report what
happened through a PaymentEventResult. Only the Session Manager closes a
session; this module asks it to through confirm_payment().
"""

import asyncio
import hashlib
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from app.config import settings
from app.errors import AmountMismatch, PaymentRequestFailed, SessionNotAwaitingPayment
from app.models.parking_session import SessionState
from app.models.payment_attempt import PaymentAttempt, PaymentStatus
from app.services.fee_calculator import to_money
from app.services.payment_gateway import GatewayError
from app.services.session_manager import GateSignal, SessionManager
from app.utils.keyed_lock import KeyedLock
from app.utils.logger import get_logger
from app.utils.timeutils import utcnow

logger = get_logger(__name__)


def make_idempotency_key(session_id: int, amount, sequence: int = 0) -> str:
    digest = hashlib.sha256(f"{session_id}:{to_money(amount)}:{sequence}".encode()).hexdigest()
    return f"pay_{digest[:40]}"


@dataclass(frozen=True)
class PaymentRequest:
    idempotency_key: str
    amount: Decimal
    session_id: int
    status: str
    gateway_ref: Optional[str] = None
    reused: bool = False


@dataclass(frozen=True)
class PaymentEventResult:
    idempotency_key: str
    status: str                      # confirmed | failed | ignored | conflict
    session_id: Optional[int] = None
    gateway_ref: Optional[str] = None
    duplicate: bool = False
    gate_signal: Optional[GateSignal] = None
    detail: Optional[str] = None


class PaymentOrchestrator:
    def __init__(self, session_factory, session_manager: SessionManager, gateway,
                 max_retries: int = None, backoff_seconds: float = None, locks: Optional[KeyedLock] = None):
        self._session_factory = session_factory
        self._sessions = session_manager
        self._gateway = gateway
        self.max_retries = settings.PAYMENT_REQUEST_RETRIES if max_retries is None else max_retries
        self.backoff_seconds = settings.PAYMENT_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self._locks = locks or KeyedLock()

    # ── Outbound ───────────────────────────────────────────────────────────
    async def request_payment(self, session_id: int, amount) -> PaymentRequest:
        session = self._sessions.get_session(session_id)
        if session.state != SessionState.AWAITING_PAYMENT.value:
            raise SessionNotAwaitingPayment(session_id, session.state)
        if amount is None:
            amount = session.quoted_fee
        amount = to_money(amount)
        if to_money(session.quoted_fee) != amount:
            raise AmountMismatch(session_id, to_money(session.quoted_fee), amount)

        async with self._locks.hold(session_id):
            db = self._session_factory()
            try:
                self._supersede_stale(db, session_id, amount)
                sequence = (
                    db.query(PaymentAttempt)
                    .filter(PaymentAttempt.session_id == session_id,
                            PaymentAttempt.status == PaymentStatus.FAILED.value)
                    .count()
                )
                key = make_idempotency_key(session_id, amount, sequence)
                attempt = self._by_key(db, key)
                if attempt is not None and (attempt.gateway_ref or attempt.status == PaymentStatus.CONFIRMED.value):
                    logger.info(f"[PAYMENT] Reusing acknowledged attempt {key} for session #{session_id}")
                    return self._as_request(attempt, reused=True)
                reused = attempt is not None
                if attempt is None:
                    attempt = PaymentAttempt(
                        session_id=session_id,
                        sequence=sequence,
                        amount=amount,
                        idempotency_key=key,
                        status=PaymentStatus.REQUESTED.value,
                        requested_at=utcnow(),
                    )
                    db.add(attempt)
                    db.commit()
                    logger.info(f"[PAYMENT] Attempt {key} created for session #{session_id} amount={amount}")
            finally:
                db.close()

            gateway_ref = await self._send_with_retry(session_id, key, amount)
            if gateway_ref:
                self._update_attempt(key, only_if=PaymentStatus.REQUESTED, gateway_ref=gateway_ref)
            return PaymentRequest(
                idempotency_key=key,
                amount=amount,
                session_id=session_id,
                status=PaymentStatus.REQUESTED.value,
                gateway_ref=gateway_ref,
                reused=reused,
            )

    async def _send_with_retry(self, session_id: int, key: str, amount: Decimal) -> Optional[str]:
        reason = "no attempt made"
        for attempt_no in range(self.max_retries + 1):
            try:
                return await self._gateway.create_charge(key, amount, session_id)
            except GatewayError as e:
                reason = str(e)
                logger.warning(f"[PAYMENT] Charge {key} attempt {attempt_no + 1} failed: {reason}")
                if not e.retryable or attempt_no == self.max_retries:
                    break
                await asyncio.sleep(self.backoff_seconds * (2 ** attempt_no))

        self._update_attempt(key, only_if=PaymentStatus.REQUESTED,
                             status=PaymentStatus.FAILED.value, failure_reason=f"request failed: {reason}")
        raise PaymentRequestFailed(session_id, key, reason)

    # ── Inbound webhooks ───────────────────────────────────────────────────
    async def on_confirmation(self, idempotency_key: str, gateway_ref: Optional[str],
                              confirmed_amount) -> PaymentEventResult:
        confirmed_amount = to_money(confirmed_amount)
        session_id = self._session_of(idempotency_key)
        if session_id is None:
            logger.warning(f"[PAYMENT] Confirmation for unknown key {idempotency_key} ignored")
            return PaymentEventResult(idempotency_key, "ignored", detail="unknown idempotency key")

        async with self._locks.hold(session_id):
            db = self._session_factory()
            try:
                attempt = self._by_key(db, idempotency_key)
                if attempt.status == PaymentStatus.CONFIRMED.value:
                    logger.info(f"[PAYMENT] Duplicate confirmation for {idempotency_key} absorbed")
                    return PaymentEventResult(idempotency_key, "confirmed", session_id,
                                              attempt.gateway_ref, duplicate=True)

                settled = (
                    db.query(PaymentAttempt)
                    .filter(PaymentAttempt.session_id == session_id,
                            PaymentAttempt.status == PaymentStatus.CONFIRMED.value,
                            PaymentAttempt.id != attempt.id)
                    .first()
                )
                settled_key = settled.idempotency_key if settled else None
            finally:
                db.close()

            if settled_key:
                return self._conflict(idempotency_key, session_id, gateway_ref, confirmed_amount,
                                      f"session already settled by {settled_key}")

            try:
                transition = await self._sessions.confirm_payment(session_id, confirmed_amount, gateway_ref)
            except SessionNotAwaitingPayment as e:
                return self._conflict(idempotency_key, session_id, gateway_ref, confirmed_amount,
                                      f"session is {e.state}")

            self._update_attempt(
                idempotency_key,
                status=PaymentStatus.CONFIRMED.value,
                gateway_ref=gateway_ref,
                confirmed_amount=confirmed_amount,
                failure_reason=None,
            )
            logger.info(f"[PAYMENT] {idempotency_key} confirmed for session #{session_id} ref={gateway_ref}")
            return PaymentEventResult(
                idempotency_key, "confirmed", session_id, gateway_ref,
                duplicate=transition.duplicate, gate_signal=transition.gate_signal,
            )

    async def on_failure(self, idempotency_key: str, reason: Optional[str]) -> PaymentEventResult:
        session_id = self._session_of(idempotency_key)
        if session_id is None:
            logger.warning(f"[PAYMENT] Failure for unknown key {idempotency_key} ignored")
            return PaymentEventResult(idempotency_key, "ignored", detail="unknown idempotency key")

        async with self._locks.hold(session_id):
            db = self._session_factory()
            try:
                attempt = self._by_key(db, idempotency_key)
                if attempt.status == PaymentStatus.CONFIRMED.value:
                    logger.warning(f"[PAYMENT] Late failure for confirmed {idempotency_key} ignored: {reason}")
                    return PaymentEventResult(idempotency_key, "ignored", session_id, attempt.gateway_ref,
                                              detail="attempt already confirmed")
                if attempt.status == PaymentStatus.FAILED.value:
                    return PaymentEventResult(idempotency_key, "failed", session_id, duplicate=True,
                                              detail=attempt.failure_reason)
                attempt.status = PaymentStatus.FAILED.value
                attempt.failure_reason = reason or "declined"
                attempt.updated_at = utcnow()
                db.commit()
            finally:
                db.close()

        logger.info(f"[PAYMENT] {idempotency_key} failed for session #{session_id}: {reason}")
        return PaymentEventResult(idempotency_key, "failed", session_id, detail=reason)

    # ── Reads ──────────────────────────────────────────────────────────────
    def list_attempts(self, session_id: int) -> List[PaymentAttempt]:
        db = self._session_factory()
        try:
            return (
                db.query(PaymentAttempt)
                .filter(PaymentAttempt.session_id == session_id)
                .order_by(PaymentAttempt.id.asc())
                .all()
            )
        finally:
            db.close()

    def get_attempt(self, idempotency_key: str) -> Optional[PaymentAttempt]:
        db = self._session_factory()
        try:
            return self._by_key(db, idempotency_key)
        finally:
            db.close()

    # ── Internals ──────────────────────────────────────────────────────────
    @staticmethod
    def _by_key(db, key: str) -> Optional[PaymentAttempt]:
        return db.query(PaymentAttempt).filter(PaymentAttempt.idempotency_key == key).first()

    def _session_of(self, key: str) -> Optional[int]:
        attempt = self.get_attempt(key)
        return attempt.session_id if attempt else None

    @staticmethod
    def _supersede_stale(db, session_id: int, amount: Decimal):
        """Open attempts quoted at a different amount (fee re-quoted by an extension) are retired."""
        stale = (
            db.query(PaymentAttempt)
            .filter(PaymentAttempt.session_id == session_id,
                    PaymentAttempt.status == PaymentStatus.REQUESTED.value)
            .all()
        )
        for attempt in stale:
            if to_money(attempt.amount) != amount:
                attempt.status = PaymentStatus.FAILED.value
                attempt.failure_reason = f"superseded: fee re-quoted at {amount}"
                attempt.updated_at = utcnow()
        db.commit()

    def _update_attempt(self, key: str, only_if: Optional[PaymentStatus] = None, **values):
        db = self._session_factory()
        try:
            attempt = self._by_key(db, key)
            if attempt is None or (only_if is not None and attempt.status != only_if.value):
                return
            for field, value in values.items():
                setattr(attempt, field, value)
            attempt.updated_at = utcnow()
            db.commit()
        finally:
            db.close()

    def _conflict(self, key: str, session_id: int, gateway_ref: Optional[str], amount: Decimal,
                  reason: str) -> PaymentEventResult:
        """Money arrived for a session that is already settled. Recorded, never applied."""
        self._update_attempt(key, status=PaymentStatus.FAILED.value, gateway_ref=gateway_ref,
                             confirmed_amount=amount, failure_reason=f"refund required: {reason}")
        logger.error(f"[PAYMENT] Confirmation {key} for session #{session_id} rejected, refund required: {reason}")
        return PaymentEventResult(key, "conflict", session_id, gateway_ref, detail=reason)

    @staticmethod
    def _as_request(attempt: PaymentAttempt, reused: bool = False) -> PaymentRequest:
        return PaymentRequest(
            idempotency_key=attempt.idempotency_key,
            amount=to_money(attempt.amount),
            session_id=attempt.session_id,
            status=attempt.status,
            gateway_ref=attempt.gateway_ref,
            reused=reused,
        )

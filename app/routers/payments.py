# app/routers/payments.py
"""
Payment provider webhooks + payment attempt viewer.
Confirmations and failures may be delivered more than once; the engine
answers replays with the original result, so these endpoints are safe to retry.
"""

from fastapi import APIRouter, Depends
from app.schemas.detection import EngineOutcomeOut
from app.schemas.payment import PaymentAttemptOut, PaymentConfirmationIn, PaymentFailureIn
from app.services.parking_engine import ParkingEngine, get_engine

router = APIRouter()


@router.post("/payments/confirmation", response_model=EngineOutcomeOut, summary="Provider webhook — payment confirmed")
async def payment_confirmation(body: PaymentConfirmationIn, engine: ParkingEngine = Depends(get_engine)):
    outcome = await engine.handle_payment_confirmation(body.idempotency_key, body.gateway_ref, body.amount)
    return EngineOutcomeOut.model_validate(outcome)


@router.post("/payments/failure", response_model=EngineOutcomeOut, summary="Provider webhook — payment failed")
async def payment_failure(body: PaymentFailureIn, engine: ParkingEngine = Depends(get_engine)):
    outcome = await engine.handle_payment_failure(body.idempotency_key, body.reason)
    return EngineOutcomeOut.model_validate(outcome)


@router.post("/sessions/{session_id}/payment", response_model=EngineOutcomeOut, summary="Request payment for a session")
async def request_payment(session_id: int, engine: ParkingEngine = Depends(get_engine)):
    """Re-initiates payment after a failed attempt. Retrying returns the same idempotency key."""
    outcome = await engine.request_payment(session_id)
    return EngineOutcomeOut.model_validate(outcome)


@router.get("/sessions/{session_id}/payments", response_model=list[PaymentAttemptOut], summary="Payment attempts for a session")
def list_payment_attempts(session_id: int, engine: ParkingEngine = Depends(get_engine)):
    engine.sessions.get_session(session_id)
    return engine.payments.list_attempts(session_id)

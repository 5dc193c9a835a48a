# app/routers/sessions.py
"""Parking sessions — listing, lookup and admin overrides."""

from typing import Optional

from fastapi import APIRouter, Depends
from app.schemas.detection import EngineOutcomeOut
from app.schemas.parking_session import ExtensionRequest, ParkingSessionOut, WaiveRequest
from app.services.parking_engine import ParkingEngine, get_engine

router = APIRouter()


@router.get("/sessions", response_model=list[ParkingSessionOut], summary="List parking sessions")
def list_sessions(active: Optional[bool] = None, plate: Optional[str] = None, limit: int = 50,
                  engine: ParkingEngine = Depends(get_engine)):
    return engine.sessions.list_sessions(active=active, plate=plate, limit=limit)


@router.get("/sessions/{session_id}", response_model=ParkingSessionOut, summary="Get one parking session")
def get_session(session_id: int, engine: ParkingEngine = Depends(get_engine)):
    return engine.sessions.get_session(session_id)


@router.post("/sessions/{session_id}/extensions", response_model=EngineOutcomeOut, summary="Grant free time")
async def extend_free_time(session_id: int, body: ExtensionRequest, engine: ParkingEngine = Depends(get_engine)):
    """Adds free minutes. A session waiting at the exit may close for free and open the gate."""
    outcome = await engine.extend_free_time(session_id, body.additional_minutes)
    return EngineOutcomeOut.model_validate(outcome)


@router.post("/sessions/{session_id}/waive", response_model=EngineOutcomeOut, summary="Waive an outstanding fee")
async def waive_payment(session_id: int, body: WaiveRequest, engine: ParkingEngine = Depends(get_engine)):
    outcome = await engine.waive_payment(session_id, body.reason)
    return EngineOutcomeOut.model_validate(outcome)

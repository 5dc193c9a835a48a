# app/routers/gate_commands.py
"""Gate command log — delivery status of every open/deny directive."""

from typing import Optional

from fastapi import APIRouter, Depends
from app.schemas.gate_command import GateCommandOut
from app.services.parking_engine import ParkingEngine, get_engine

router = APIRouter()


@router.get("/gate-commands", response_model=list[GateCommandOut], summary="List gate commands")
def list_gate_commands(gate: Optional[str] = None, status: Optional[str] = None, limit: int = 50,
                       engine: ParkingEngine = Depends(get_engine)):
    """Filter by gate or status (pending | acked | timed_out)."""
    return engine.gates.list_commands(gate=gate, status=status, limit=limit)

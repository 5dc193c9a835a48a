# app/routers/rates.py
"""Rate catalog admin — every update creates a new immutable snapshot."""

from fastapi import APIRouter, Depends, HTTPException
from app.schemas.rate import RateSnapshotOut, RateUpdate
from app.services.parking_engine import ParkingEngine, get_engine

router = APIRouter()


@router.get("/rates/current", response_model=RateSnapshotOut, summary="Current rate")
def current_rate(engine: ParkingEngine = Depends(get_engine)):
    terms = engine.rates.current()
    if terms is None:
        raise HTTPException(status_code=404, detail="No rate configured")
    return terms


@router.get("/rates", response_model=list[RateSnapshotOut], summary="Rate history, newest first")
def rate_history(engine: ParkingEngine = Depends(get_engine)):
    return list(reversed(engine.rates.history()))


@router.post("/rates", response_model=RateSnapshotOut, summary="Publish a new rate")
async def update_rate(body: RateUpdate, engine: ParkingEngine = Depends(get_engine)):
    """Supersedes the current rate. Vehicles already parked keep the rate they entered under."""
    return await engine.update_rate(body.hourly_rate, body.free_minutes, body.max_daily_rate, body.effective_at)

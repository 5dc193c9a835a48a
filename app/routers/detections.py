# app/routers/detections.py
"""
Detector webhook endpoint + raw detection log viewer.
POST /detections — receives plate reads from the edge ANPR cameras.
GET  /detections — lists the raw detection log with optional filters.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from app.database import get_db
from app.models.detection_log import DetectionLog
from app.schemas.detection import DetectionIn, EngineOutcomeOut
from app.services.parking_engine import ParkingEngine, get_engine
from app.services.vehicle_service import normalize_plate
from app.utils.logger import get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.post("/detections", response_model=EngineOutcomeOut, summary="Camera webhook — plate detections")
async def receive_detection(body: DetectionIn, engine: ParkingEngine = Depends(get_engine)):
    """
    Single entry point for every plate read, entry and exit.
    Always returns HTTP 200 once the body validates. Cameras retry on non-200,
    and a retried burst is exactly what the deduplicator is there to absorb.
    """
    try:
        outcome = await engine.handle_detection(
            plate=body.plate,
            gate=body.gate,
            direction=body.direction,
            timestamp=body.timestamp,
            confidence=body.confidence,
            image_ref=body.image_ref,
        )
        return EngineOutcomeOut.model_validate(outcome)
    except Exception as e:
        logger.error(f"Detection processing error: {e}", exc_info=True)
        return EngineOutcomeOut(status="error", plate=body.plate, detail=str(e))  # Still return 200


@router.get("/detections", summary="List raw detections")
def list_detections(limit: int = 50, gate: str = None, plate: str = None, suppressed: bool = None,
                    db: Session = Depends(get_db)):
    """Returns raw detection log with optional gate, plate and suppressed filters."""
    q = db.query(DetectionLog)
    if gate:
        q = q.filter(DetectionLog.gate == gate)
    if plate:
        q = q.filter(DetectionLog.plate == normalize_plate(plate))
    if suppressed is not None:
        q = q.filter(DetectionLog.suppressed == suppressed)
    return q.order_by(DetectionLog.received_at.desc()).limit(limit).all()

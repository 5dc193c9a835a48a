# app/routers/health.py
"""
System health check endpoint.
Returns status of backend + DB + rate catalog + gate controller reachability.
"""

import requests
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from sqlalchemy import text
from app.database import get_db
from app.config import settings
from app.utils.timeutils import utcnow

router = APIRouter()


@router.get("/health", summary="System health check")
def health_check(request: Request, db: Session = Depends(get_db)):
    """
    Returns:
    - Backend status
    - Database connectivity
    - Current rate version
    - Gate controller reachability (GET /api/gate/status on each controller)
    """
    result = {
        "status": "ok",
        "timestamp": utcnow().isoformat(),
        "backend": "ok",
        "database": "unknown",
        "rate_version": None,
        "gates": {},
    }

    # Check database
    try:
        db.execute(text("SELECT 1"))
        result["database"] = "ok"
    except Exception as e:
        result["database"] = f"error: {str(e)}"
        result["status"] = "degraded"

    engine = getattr(request.app.state, "engine", None)
    current = engine.rates.current() if engine else None
    if current is None:
        result["status"] = "degraded"
    else:
        result["rate_version"] = current.version

    # Ping each gate controller
    for gate_id, gate in settings.GATES.items():
        try:
            resp = requests.get(f"http://{gate['ip']}:{gate['port']}/api/gate/status", timeout=3)
            result["gates"][gate_id] = "ok" if resp.status_code == 200 else f"http_{resp.status_code}"
        except requests.exceptions.ConnectionError:
            result["gates"][gate_id] = "unreachable"
            result["status"] = "degraded"
        except requests.exceptions.RequestException as e:
            result["gates"][gate_id] = f"error: {str(e)}"

    return result

# app/routers/vehicles.py
"""Vehicle registry — owner profiles for plates. Plates are deactivated, never deleted."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from app.database import get_db
from app.models.vehicle import Vehicle
from app.schemas.vehicle import VehicleCreate, VehicleOut
from app.services.vehicle_service import (
    deactivate_vehicle,
    is_registered,
    lookup_vehicle_by_plate,
    normalize_plate,
    register_vehicle,
)

router = APIRouter()


@router.get("/vehicles", response_model=list[VehicleOut], summary="List vehicles")
def list_vehicles(active: bool = None, registered: bool = None, limit: int = 100, db: Session = Depends(get_db)):
    q = db.query(Vehicle)
    if active is not None:
        q = q.filter(Vehicle.is_active == active)
    if registered is True:
        q = q.filter(Vehicle.registered_at != None)  # noqa: E711
    elif registered is False:
        q = q.filter(Vehicle.registered_at == None)  # noqa: E711
    return q.order_by(Vehicle.id.desc()).limit(limit).all()


@router.post("/vehicles", response_model=VehicleOut, summary="Register or update a vehicle owner profile")
def register(body: VehicleCreate, db: Session = Depends(get_db)):
    if not normalize_plate(body.plate_number):
        raise HTTPException(status_code=422, detail="Plate number has no letters or digits")
    return register_vehicle(db, body.plate_number, body.owner_name, body.owner_contact, body.notes)


@router.delete("/vehicles/{plate}", response_model=VehicleOut, summary="Deactivate a vehicle")
def deactivate(plate: str, db: Session = Depends(get_db)):
    vehicle = deactivate_vehicle(db, plate)
    if not vehicle:
        raise HTTPException(status_code=404, detail="Vehicle not found")
    return vehicle


@router.get("/vehicles/lookup/{plate}", summary="Look up a plate number")
def lookup_vehicle(plate: str, db: Session = Depends(get_db)):
    vehicle = lookup_vehicle_by_plate(db, plate)
    if not vehicle:
        return {"plate": normalize_plate(plate), "status": "unknown", "registered": False}
    return {"plate": vehicle.plate_number, "status": "known" if vehicle.is_active else "deactivated",
            "registered": is_registered(db, plate),
            "owner": vehicle.owner_name, "last_seen_at": vehicle.last_seen_at}

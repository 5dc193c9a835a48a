# app/services/vehicle_service.py
"""
Vehicle registry helpers.
Plates are always stored normalized: uppercase, alphanumerics only.
Used by the session manager (sightings) and the vehicles router.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session
from app.models.vehicle import Vehicle
from app.utils.logger import get_logger
from app.utils.timeutils import utcnow

logger = get_logger(__name__)


def normalize_plate(text: Optional[str]) -> str:
    """'ab-123 cd' -> 'AB123CD'."""
    return "".join(ch for ch in (text or "").upper() if ch.isalnum())


def lookup_vehicle_by_plate(db: Session, plate_number: str) -> Optional[Vehicle]:
    """Find a vehicle by plate number. Returns None if never seen or registered."""
    return db.query(Vehicle).filter(Vehicle.plate_number == normalize_plate(plate_number)).first()


def is_registered(db: Session, plate_number: str) -> bool:
    vehicle = lookup_vehicle_by_plate(db, plate_number)
    return vehicle is not None and vehicle.registered_at is not None and vehicle.is_active


def record_sighting(db: Session, plate_number: str, seen_at: datetime) -> Vehicle:
    """Create the vehicle on first sighting, otherwise bump last_seen_at. Caller commits."""
    vehicle = lookup_vehicle_by_plate(db, plate_number)
    if vehicle is None:
        vehicle = Vehicle(
            plate_number=normalize_plate(plate_number),
            is_active=True,
            first_seen_at=seen_at,
            last_seen_at=seen_at,
        )
        db.add(vehicle)
        db.flush()
        logger.info(f"[VEHICLE] First sighting of {vehicle.plate_number}")
    elif vehicle.last_seen_at is None or seen_at > vehicle.last_seen_at:
        vehicle.last_seen_at = seen_at
    return vehicle


def register_vehicle(db: Session, plate_number: str, owner_name: Optional[str] = None,
                     owner_contact: Optional[str] = None, notes: Optional[str] = None) -> Vehicle:
    """Attach an owner profile. Reactivates a previously deactivated plate."""
    now = utcnow()
    vehicle = lookup_vehicle_by_plate(db, plate_number)
    if vehicle is None:
        vehicle = Vehicle(plate_number=normalize_plate(plate_number), first_seen_at=None)
        db.add(vehicle)
    vehicle.owner_name = owner_name
    vehicle.owner_contact = owner_contact
    vehicle.notes = notes
    vehicle.is_active = True
    vehicle.deactivated_at = None
    vehicle.registered_at = vehicle.registered_at or now
    db.commit()
    db.refresh(vehicle)
    logger.info(f"[VEHICLE] Registered {vehicle.plate_number} owner={owner_name}")
    return vehicle


def deactivate_vehicle(db: Session, plate_number: str) -> Optional[Vehicle]:
    """Vehicles are never deleted; returns None if the plate is unknown."""
    vehicle = lookup_vehicle_by_plate(db, plate_number)
    if vehicle is None:
        return None
    if vehicle.is_active:
        vehicle.is_active = False
        vehicle.deactivated_at = utcnow()
        db.commit()
        logger.info(f"[VEHICLE] Deactivated {vehicle.plate_number}")
    return vehicle

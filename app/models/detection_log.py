# app/models/detection_log.py
"""
Raw detection log table.
Stores every plate detection received from the edge cameras, including the
ones the deduplicator suppressed. Used for audit trail and event replay.
"""

from sqlalchemy import Column, Integer, String, DateTime, Float, Boolean
from app.database import Base


class DetectionLog(Base):
    __tablename__ = "detection_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    plate_raw = Column(String(50))
    plate = Column(String(32), index=True)           # normalized
    gate = Column(String(50), nullable=False, index=True)
    direction = Column(String(10), nullable=False)
    confidence = Column(Float)
    image_ref = Column(String(500))
    detected_at = Column(DateTime, nullable=False, index=True)
    suppressed = Column(Boolean, nullable=False, default=False)
    suppress_reason = Column(String(50))             # low_confidence | debounced | empty_plate
    received_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<DetectionLog {self.id} plate={self.plate} gate={self.gate} suppressed={self.suppressed}>"

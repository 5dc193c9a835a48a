# app/models/alert.py
"""
Alerts table — everything an operator has to look at: unresponsive gates,
entry/exit rejections, failed payment requests, settlement conflicts.
Written by alert_service on behalf of the parking engine.
"""

from sqlalchemy import Column, Integer, String, DateTime, Text
from app.database import Base


class Alert(Base):
    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_type = Column(String(50), nullable=False, index=True)
    gate = Column(String(50))
    plate = Column(String(32), index=True)
    session_id = Column(Integer, index=True)
    description = Column(Text)
    is_resolved = Column(Integer, default=0, nullable=False)
    triggered_at = Column(DateTime, nullable=False, index=True)
    resolved_at = Column(DateTime)

    def __repr__(self):
        return f"<Alert {self.id} type={self.alert_type} resolved={self.is_resolved}>"

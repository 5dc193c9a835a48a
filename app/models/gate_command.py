# app/models/gate_command.py
"""
Gate commands table — every open/deny directive sent to a gate actuator,
with its delivery status and retry counter.
"""

import enum

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text
from app.database import Base


class GateAction(str, enum.Enum):
    OPEN = "open"
    DENY = "deny"


class GateCommandStatus(str, enum.Enum):
    PENDING = "pending"
    ACKED = "acked"
    TIMED_OUT = "timed_out"


class GateCommand(Base):
    __tablename__ = "gate_commands"

    id = Column(Integer, primary_key=True, autoincrement=True)
    gate = Column(String(50), nullable=False, index=True)
    direction = Column(String(10), nullable=False)   # entry | exit
    action = Column(String(10), nullable=False)      # open | deny
    session_id = Column(Integer, ForeignKey("parking_sessions.id"), index=True)
    status = Column(String(20), nullable=False, default=GateCommandStatus.PENDING.value, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    created_at = Column(DateTime, nullable=False)
    acked_at = Column(DateTime)
    updated_at = Column(DateTime)

    def __repr__(self):
        return f"<GateCommand {self.id} {self.action} {self.gate}/{self.direction} status={self.status}>"

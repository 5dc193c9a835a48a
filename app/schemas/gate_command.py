# app/schemas/gate_command.py
from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class GateCommandOut(BaseModel):
    id: int
    gate: str
    direction: str
    action: str
    session_id: Optional[int]
    status: str
    attempts: int
    last_error: Optional[str]
    created_at: datetime
    acked_at: Optional[datetime]

    class Config:
        from_attributes = True

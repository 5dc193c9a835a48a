# app/models/rate_snapshot.py
"""
Rate snapshots table — an append-only, versioned chain of billing rules.
The row with superseded_at IS NULL is the current rate. Rows are never
updated except to stamp superseded_at when the next version is created.
"""

from sqlalchemy import Column, Integer, Numeric, DateTime
from app.database import Base


class RateSnapshot(Base):
    __tablename__ = "rate_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    version = Column(Integer, unique=True, nullable=False)
    hourly_rate = Column(Numeric(10, 2), nullable=False)
    free_minutes = Column(Integer, nullable=False, default=0)
    max_daily_rate = Column(Numeric(10, 2), nullable=False)
    created_at = Column(DateTime, nullable=False, index=True)
    superseded_at = Column(DateTime, index=True)

    def __repr__(self):
        return f"<RateSnapshot v{self.version} {self.hourly_rate}/h free={self.free_minutes}m cap={self.max_daily_rate}>"

# app/database.py
"""
Database connection, session management, and table creation.
Uses SQLAlchemy (PostgreSQL in production, SQLite for local runs). All models
are auto-imported here so create_tables() creates every table in one call.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from app.config import settings


def engine_options(url: str) -> dict:
    """Pool options per backend — SQLite rejects the pool sizing arguments."""
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,   # Auto-reconnect if DB connection drops
        "pool_size": 10,
        "max_overflow": 20,
    }


engine = create_engine(
    settings.DATABASE_URL,
    echo=False,                  # Set True to log all SQL queries (debug only)
    **engine_options(settings.DATABASE_URL),
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency — yields a DB session and closes it after request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables(bind=None):
    """
    Creates all DB tables on startup. Safe to call multiple times.
    Import all models here so SQLAlchemy knows about them.
    """
    from app.models.vehicle import Vehicle                 # noqa
    from app.models.rate_snapshot import RateSnapshot      # noqa
    from app.models.parking_session import ParkingSession  # noqa
    from app.models.payment_attempt import PaymentAttempt  # noqa
    from app.models.gate_command import GateCommand        # noqa
    from app.models.detection_log import DetectionLog      # noqa
    from app.models.alert import Alert                     # noqa

    Base.metadata.create_all(bind=bind or engine)

# scripts/setup/init_db.py
"""
Initialize database — creates all tables and seeds the default rate.
Run once before first launch, or after adding new models.
Usage: python scripts/setup/init_db.py
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from app.database import SessionLocal, create_tables, engine
from app.config import settings
from app.services.rate_catalog import RateCatalog
from sqlalchemy import inspect, text


def main():
    print("🗄️  ParkGate DB Initialization")
    print("=" * 40)
    print(f"📡 Database: {settings.DATABASE_URL}")

    # Test connection
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("✅ Database connection OK")
    except Exception as e:
        print(f"❌ Cannot connect to database: {e}")
        print("\nCheck DATABASE_URL in .env, and for PostgreSQL that the server is running:")
        print("  docker-compose up -d db")
        sys.exit(1)

    # Create all tables
    print("\n📋 Creating tables...")
    create_tables()
    tables = sorted(inspect(engine).get_table_names())
    print(f"✅ Tables in database ({len(tables)} total):")
    for t in tables:
        print(f"   ✓ {t}")

    # Seed the rate catalog
    rates = RateCatalog(SessionLocal)
    current = rates.seed_default(
        settings.DEFAULT_HOURLY_RATE, settings.DEFAULT_FREE_MINUTES, settings.DEFAULT_MAX_DAILY_RATE
    )
    print(f"\n💲 Current rate v{current.version}: {current.hourly_rate}/h, "
          f"{current.free_minutes} free min, daily cap {current.max_daily_rate}")

    print("\n🎉 Database ready! You can now start the backend:")
    print(f"   uvicorn app.main:app --host 0.0.0.0 --port {settings.BACKEND_PORT} --reload")


if __name__ == "__main__":
    main()

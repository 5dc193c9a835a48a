# tests/test_rate_catalog.py
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from app.errors import InvalidRate, NoRateConfigured
from app.models.rate_snapshot import RateSnapshot
from app.services.rate_catalog import RateCatalog, validate_rate
from conftest import RATE_EPOCH


class TestSeed:

    def test_seed_creates_version_one(self, rate_catalog):
        current = rate_catalog.current()
        assert current.version == 1
        assert current.hourly_rate == Decimal("2.00")
        assert current.free_minutes == 15
        assert current.max_daily_rate == Decimal("10.00")
        assert current.created_at == RATE_EPOCH

    def test_seed_is_noop_when_catalog_exists(self, session_factory, rate_catalog):
        other = RateCatalog(session_factory)
        terms = other.seed_default("9.00", 0, "90.00")
        assert terms.version == 1
        assert terms.hourly_rate == Decimal("2.00")

    def test_empty_catalog(self, session_factory):
        catalog = RateCatalog(session_factory)
        assert catalog.current() is None
        with pytest.raises(NoRateConfigured):
            catalog.snapshot_at(datetime(2026, 3, 1))


class TestUpdate:

    @pytest.mark.asyncio
    async def test_update_appends_and_supersedes(self, session_factory, rate_catalog):
        effective = datetime(2026, 3, 1)
        terms = await rate_catalog.update("3.00", 10, "25.00", effective_at=effective)

        assert terms.version == 2
        assert rate_catalog.current() == terms
        assert [t.version for t in rate_catalog.history()] == [1, 2]
        assert rate_catalog.history()[0].superseded_at == effective

        db = session_factory()
        try:
            rows = db.query(RateSnapshot).order_by(RateSnapshot.version).all()
            assert len(rows) == 2
            assert rows[0].superseded_at == effective
            assert rows[1].superseded_at is None
        finally:
            db.close()

    @pytest.mark.asyncio
    async def test_snapshot_at_resolves_by_time(self, rate_catalog):
        change = datetime(2026, 3, 1, 12, 0)
        await rate_catalog.update("5.00", 15, "30.00", effective_at=change)

        assert rate_catalog.snapshot_at(change - timedelta(seconds=1)).version == 1
        assert rate_catalog.snapshot_at(change).version == 2
        assert rate_catalog.snapshot_at(change + timedelta(days=3)).version == 2

    def test_timestamp_before_chain_binds_to_first(self, rate_catalog):
        assert rate_catalog.snapshot_at(RATE_EPOCH - timedelta(days=30)).version == 1

    @pytest.mark.asyncio
    async def test_backdated_update_rejected(self, rate_catalog):
        with pytest.raises(InvalidRate):
            await rate_catalog.update("3.00", 15, "20.00", effective_at=RATE_EPOCH - timedelta(days=1))
        assert rate_catalog.current().version == 1

    @pytest.mark.asyncio
    async def test_invalid_values_rejected(self, rate_catalog):
        with pytest.raises(InvalidRate):
            await rate_catalog.update("-1.00", 15, "20.00")
        with pytest.raises(InvalidRate):
            await rate_catalog.update("2.00", -5, "20.00")
        with pytest.raises(InvalidRate):
            await rate_catalog.update("2.00", 15, "0")
        assert len(rate_catalog.history()) == 1

    @pytest.mark.asyncio
    async def test_get_reloads_snapshots_written_elsewhere(self, session_factory, rate_catalog):
        writer = RateCatalog(session_factory)
        writer.load()
        terms = await writer.update("4.00", 15, "20.00", effective_at=datetime(2026, 2, 1))

        assert rate_catalog.current().version == 1
        assert rate_catalog.get(terms.snapshot_id).hourly_rate == Decimal("4.00")
        assert rate_catalog.current().version == 2

    def test_get_unknown_snapshot(self, rate_catalog):
        with pytest.raises(NoRateConfigured):
            rate_catalog.get(999)


class TestValidateRate:

    def test_normalizes_amounts(self):
        assert validate_rate("2", "15", 10) == (Decimal("2.00"), 15, Decimal("10.00"))

    def test_non_numeric(self):
        with pytest.raises(InvalidRate):
            validate_rate("two", 15, "10.00")

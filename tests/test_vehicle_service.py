# tests/test_vehicle_service.py
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import asyncio
import pytest

from app.services.vehicle_service import (
    deactivate_vehicle,
    is_registered,
    lookup_vehicle_by_plate,
    normalize_plate,
    record_sighting,
    register_vehicle,
)
from app.utils.keyed_lock import KeyedLock
from conftest import T0, minutes


class TestNormalizePlate:

    def test_strips_separators_and_uppercases(self):
        assert normalize_plate("ab-123 cd") == "AB123CD"

    def test_none(self):
        assert normalize_plate(None) == ""


class TestRegistry:

    def test_sighting_creates_then_updates(self, session_factory):
        db = session_factory()
        try:
            record_sighting(db, "abc123", T0)
            db.commit()
            record_sighting(db, "ABC-123", T0 + minutes(30))
            db.commit()
            vehicle = lookup_vehicle_by_plate(db, "ABC123")
            assert vehicle.first_seen_at == T0
            assert vehicle.last_seen_at == T0 + minutes(30)
            assert not is_registered(db, "ABC123")
        finally:
            db.close()

    def test_register_and_deactivate(self, session_factory):
        db = session_factory()
        try:
            vehicle = register_vehicle(db, "xyz 789", owner_name="R. Haddad", owner_contact="+961 1 000000")
            assert vehicle.plate_number == "XYZ789"
            assert is_registered(db, "XYZ789")

            deactivated = deactivate_vehicle(db, "XYZ789")
            assert deactivated.is_active is False
            assert deactivated.deactivated_at is not None
            assert not is_registered(db, "XYZ789")

            assert register_vehicle(db, "XYZ789").is_active is True
        finally:
            db.close()

    def test_deactivate_unknown(self, session_factory):
        db = session_factory()
        try:
            assert deactivate_vehicle(db, "NOPE1") is None
        finally:
            db.close()


class TestKeyedLock:

    @pytest.mark.asyncio
    async def test_same_key_serialized(self):
        locks = KeyedLock()
        order = []

        async def worker(name):
            async with locks.hold("ABC123"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_different_keys_do_not_contend(self):
        locks = KeyedLock()
        async with locks.hold("ABC123"):
            async with locks.hold("XYZ789"):
                assert len(locks) == 2
        assert len(locks) == 0

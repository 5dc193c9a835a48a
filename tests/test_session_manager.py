# tests/test_session_manager.py
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import asyncio
import pytest
from datetime import datetime
from decimal import Decimal
from unittest.mock import patch

from app.errors import (
    AmountMismatch,
    DuplicateActiveSession,
    InvalidExtension,
    NegativeDuration,
    NoActiveSession,
    SessionAlreadyClosed,
    SessionNotAwaitingPayment,
    SessionNotFound,
)
from app.models.parking_session import ParkingSession, SessionState
from app.models.vehicle import Vehicle
from app.services.session_manager import SessionManager, SessionTransition
from conftest import T0, minutes


async def park_until_payment(manager, plate="ABC123", stay=90):
    opened = await manager.open_session(plate, T0, gate="GATE-ENTRY")
    quoted = await manager.request_exit(plate, T0 + minutes(stay), gate="GATE-EXIT")
    return opened, quoted


class TestOpenSession:

    @pytest.mark.asyncio
    async def test_open_returns_entry_signal(self, session_manager):
        transition = await session_manager.open_session("abc-123", T0, image_ref="img-1", gate="GATE-ENTRY")

        assert transition.plate == "ABC123"
        assert transition.state == "OPEN"
        assert transition.payment_state == "none"
        assert transition.gate_signal.gate == "GATE-ENTRY"
        assert transition.gate_signal.direction == "entry"
        assert transition.gate_signal.action == "open"

        session = session_manager.get_session(transition.session_id)
        assert session.active is True
        assert session.entry_time == T0
        assert session.entry_image_ref == "img-1"
        assert session.rate_snapshot_id is not None

    @pytest.mark.asyncio
    async def test_open_records_vehicle_sighting(self, session_factory, session_manager):
        await session_manager.open_session("ABC123", T0, gate="GATE-ENTRY")
        db = session_factory()
        try:
            vehicle = db.query(Vehicle).filter(Vehicle.plate_number == "ABC123").first()
            assert vehicle is not None
            assert vehicle.first_seen_at == T0
        finally:
            db.close()

    @pytest.mark.asyncio
    async def test_second_open_rejected(self, session_manager):
        first = await session_manager.open_session("ABC123", T0, gate="GATE-ENTRY")
        with pytest.raises(DuplicateActiveSession) as exc:
            await session_manager.open_session("ABC123", T0 + minutes(5), gate="GATE-ENTRY")
        assert exc.value.session_id == first.session_id

    @pytest.mark.asyncio
    async def test_concurrent_opens_yield_one_session(self, session_manager):
        results = await asyncio.gather(
            *[session_manager.open_session("ABC123", T0, gate="GATE-ENTRY") for _ in range(10)],
            return_exceptions=True,
        )
        opened = [r for r in results if isinstance(r, SessionTransition)]
        rejected = [r for r in results if isinstance(r, DuplicateActiveSession)]
        assert len(opened) == 1
        assert len(rejected) == 9
        assert len(session_manager.list_sessions(active=True, plate="ABC123")) == 1

    @pytest.mark.asyncio
    async def test_storage_index_rejects_second_active_row(self, session_manager):
        await session_manager.open_session("ABC123", T0, gate="GATE-ENTRY")
        with patch.object(SessionManager, "_active_for_plate", return_value=None):
            with pytest.raises(DuplicateActiveSession):
                await session_manager.open_session("ABC123", T0 + minutes(1), gate="GATE-ENTRY")
        assert len(session_manager.list_sessions(plate="ABC123")) == 1

    @pytest.mark.asyncio
    async def test_reentry_after_close(self, session_manager):
        await session_manager.open_session("ABC123", T0, gate="GATE-ENTRY")
        await session_manager.request_exit("ABC123", T0 + minutes(5), gate="GATE-EXIT")
        again = await session_manager.open_session("ABC123", T0 + minutes(30), gate="GATE-ENTRY")
        assert again.state == "OPEN"
        assert len(session_manager.list_sessions(plate="ABC123")) == 2

    @pytest.mark.asyncio
    async def test_empty_plate_rejected(self, session_manager):
        with pytest.raises(ValueError):
            await session_manager.open_session(" ", T0)


class TestRequestExit:

    @pytest.mark.asyncio
    async def test_free_exit_closes_immediately(self, session_manager):
        opened = await session_manager.open_session("ABC123", T0, gate="GATE-ENTRY")
        transition = await session_manager.request_exit("ABC123", T0 + minutes(10), gate="GATE-EXIT")

        assert transition.state == "CLOSED"
        assert transition.payment_state == "free"
        assert transition.fee == Decimal("0.00")
        assert transition.gate_signal.gate == "GATE-EXIT"
        assert transition.gate_signal.direction == "exit"

        session = session_manager.get_session(opened.session_id)
        assert session.active is False
        assert session.exit_time == T0 + minutes(10)
        assert session.fee == Decimal("0.00")
        assert session.payment_state == "free"
        assert session_manager.get_active_session("ABC123") is None

    @pytest.mark.asyncio
    async def test_paid_exit_awaits_payment(self, session_manager):
        opened, quoted = await park_until_payment(session_manager, stay=90)

        # 75 billable minutes at 2.00 → 2 hours
        assert quoted.state == "AWAITING_PAYMENT"
        assert quoted.payment_state == "pending"
        assert quoted.fee == Decimal("4.00")
        assert quoted.payment_required is True
        assert quoted.gate_signal is None

        session = session_manager.get_session(opened.session_id)
        assert session.active is True
        assert session.exit_time is None
        assert session.fee is None
        assert session.quoted_fee == Decimal("4.00")
        assert session.exit_requested_at == T0 + minutes(90)

    @pytest.mark.asyncio
    async def test_repeat_exit_returns_existing_quote(self, session_manager):
        _, quoted = await park_until_payment(session_manager, stay=90)
        again = await session_manager.request_exit("ABC123", T0 + minutes(120), gate="GATE-EXIT")

        assert again.duplicate is True
        assert again.fee == quoted.fee
        assert again.gate_signal is None

    @pytest.mark.asyncio
    async def test_exit_without_session(self, session_manager):
        with pytest.raises(NoActiveSession):
            await session_manager.request_exit("ZZZ999", T0, gate="GATE-EXIT")

    @pytest.mark.asyncio
    async def test_exit_before_entry_rejected(self, session_manager):
        opened = await session_manager.open_session("ABC123", T0, gate="GATE-ENTRY")
        with pytest.raises(NegativeDuration):
            await session_manager.request_exit("ABC123", T0 - minutes(1), gate="GATE-EXIT")
        assert session_manager.get_session(opened.session_id).state == "OPEN"

    @pytest.mark.asyncio
    async def test_fee_uses_rate_bound_at_entry(self, session_manager, rate_catalog):
        opened = await session_manager.open_session("ABC123", T0, gate="GATE-ENTRY")
        await rate_catalog.update("5.00", 15, "50.00", effective_at=T0 + minutes(30))

        quoted = await session_manager.request_exit("ABC123", T0 + minutes(90), gate="GATE-EXIT")
        assert quoted.fee == Decimal("4.00")

        later = await session_manager.open_session("XYZ789", T0 + minutes(45), gate="GATE-ENTRY")
        assert session_manager.get_session(later.session_id).rate_snapshot_id != \
            session_manager.get_session(opened.session_id).rate_snapshot_id
        quoted_later = await session_manager.request_exit("XYZ789", T0 + minutes(135), gate="GATE-EXIT")
        assert quoted_later.fee == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_daily_cap(self, session_manager):
        await session_manager.open_session("ABC123", T0, gate="GATE-ENTRY")
        quoted = await session_manager.request_exit("ABC123", T0 + minutes(8 * 60), gate="GATE-EXIT")
        assert quoted.fee == Decimal("10.00")


class TestConfirmPayment:

    @pytest.mark.asyncio
    async def test_confirm_closes_session(self, session_manager):
        opened, quoted = await park_until_payment(session_manager)
        transition = await session_manager.confirm_payment(opened.session_id, "4.00", "ch_1")

        assert transition.state == "CLOSED"
        assert transition.payment_state == "paid"
        assert transition.fee == Decimal("4.00")
        assert transition.gate_signal.gate == "GATE-EXIT"

        session = session_manager.get_session(opened.session_id)
        assert session.active is False
        assert session.exit_time == T0 + minutes(90)
        assert session.fee == Decimal("4.00")
        assert session.gateway_ref == "ch_1"
        assert session.closed_at is not None

    @pytest.mark.asyncio
    async def test_replayed_confirmation_is_idempotent(self, session_manager):
        opened, _ = await park_until_payment(session_manager)
        await session_manager.confirm_payment(opened.session_id, "4.00", "ch_1")
        replay = await session_manager.confirm_payment(opened.session_id, Decimal("4.00"), "ch_1")

        assert replay.duplicate is True
        assert replay.gate_signal is None
        assert replay.state == "CLOSED"

    @pytest.mark.asyncio
    async def test_different_payment_for_closed_session_rejected(self, session_manager):
        opened, _ = await park_until_payment(session_manager)
        await session_manager.confirm_payment(opened.session_id, "4.00", "ch_1")
        with pytest.raises(SessionNotAwaitingPayment):
            await session_manager.confirm_payment(opened.session_id, "4.00", "ch_2")

    @pytest.mark.asyncio
    async def test_amount_mismatch(self, session_manager):
        opened, _ = await park_until_payment(session_manager)
        with pytest.raises(AmountMismatch) as exc:
            await session_manager.confirm_payment(opened.session_id, "3.99", "ch_1")
        assert exc.value.expected == Decimal("4.00")
        assert session_manager.get_session(opened.session_id).state == "AWAITING_PAYMENT"

    @pytest.mark.asyncio
    async def test_confirm_on_open_session_rejected(self, session_manager):
        opened = await session_manager.open_session("ABC123", T0, gate="GATE-ENTRY")
        with pytest.raises(SessionNotAwaitingPayment):
            await session_manager.confirm_payment(opened.session_id, "4.00", "ch_1")

    @pytest.mark.asyncio
    async def test_unknown_session(self, session_manager):
        with pytest.raises(SessionNotFound):
            await session_manager.confirm_payment(404, "4.00", "ch_1")

    @pytest.mark.asyncio
    async def test_concurrent_confirmations_close_once(self, session_manager):
        opened, _ = await park_until_payment(session_manager)
        results = await asyncio.gather(
            *[session_manager.confirm_payment(opened.session_id, "4.00", "ch_1") for _ in range(5)]
        )
        signals = [r for r in results if r.gate_signal is not None]
        assert len(signals) == 1
        assert sum(1 for r in results if r.duplicate) == 4


class TestFreeTimeExtension:

    @pytest.mark.asyncio
    async def test_extension_on_open_session_applies_at_exit(self, session_manager):
        opened = await session_manager.open_session("ABC123", T0, gate="GATE-ENTRY")
        transition = await session_manager.apply_free_time_extension(opened.session_id, 30)
        assert transition.state == "OPEN"
        assert session_manager.get_session(opened.session_id).free_time_extension_minutes == 30

        exit_transition = await session_manager.request_exit("ABC123", T0 + minutes(40), gate="GATE-EXIT")
        assert exit_transition.payment_state == "free"

    @pytest.mark.asyncio
    async def test_extension_can_make_awaiting_session_free(self, session_manager):
        opened, _ = await park_until_payment(session_manager, stay=40)
        transition = await session_manager.apply_free_time_extension(opened.session_id, 30)

        assert transition.state == "CLOSED"
        assert transition.payment_state == "free"
        assert transition.gate_signal.gate == "GATE-EXIT"
        session = session_manager.get_session(opened.session_id)
        assert session.fee == Decimal("0.00")
        assert session.exit_time == T0 + minutes(40)

    @pytest.mark.asyncio
    async def test_extension_requotes_awaiting_session(self, session_manager):
        opened, quoted = await park_until_payment(session_manager, stay=90)
        transition = await session_manager.apply_free_time_extension(opened.session_id, 30)

        assert quoted.fee == Decimal("4.00")
        assert transition.state == "AWAITING_PAYMENT"
        assert transition.fee == Decimal("2.00")
        assert transition.gate_signal is None
        assert session_manager.get_session(opened.session_id).quoted_fee == Decimal("2.00")

    @pytest.mark.asyncio
    async def test_extension_on_closed_session_rejected(self, session_manager):
        opened = await session_manager.open_session("ABC123", T0, gate="GATE-ENTRY")
        await session_manager.request_exit("ABC123", T0 + minutes(5), gate="GATE-EXIT")
        with pytest.raises(SessionAlreadyClosed):
            await session_manager.apply_free_time_extension(opened.session_id, 10)

    @pytest.mark.asyncio
    async def test_non_positive_extension_rejected(self, session_manager):
        opened = await session_manager.open_session("ABC123", T0, gate="GATE-ENTRY")
        with pytest.raises(InvalidExtension):
            await session_manager.apply_free_time_extension(opened.session_id, 0)


class TestWaivePayment:

    @pytest.mark.asyncio
    async def test_waive_closes_and_keeps_fee(self, session_manager):
        opened, _ = await park_until_payment(session_manager)
        transition = await session_manager.waive_payment(opened.session_id, "operator goodwill")

        assert transition.payment_state == "waived"
        assert transition.gate_signal.direction == "exit"
        session = session_manager.get_session(opened.session_id)
        assert session.state == "CLOSED"
        assert session.fee == Decimal("4.00")
        assert session.active is False

    @pytest.mark.asyncio
    async def test_waive_requires_awaiting_payment(self, session_manager):
        opened = await session_manager.open_session("ABC123", T0, gate="GATE-ENTRY")
        with pytest.raises(SessionNotAwaitingPayment):
            await session_manager.waive_payment(opened.session_id)


class TestClosedSessionsAreFinal:

    @pytest.mark.asyncio
    async def test_lost_race_touches_nothing(self, session_factory, session_manager):
        opened, _ = await park_until_payment(session_manager)
        await session_manager.confirm_payment(opened.session_id, "4.00", "ch_1")

        db = session_factory()
        try:
            session = db.get(ParkingSession, opened.session_id)
            with pytest.raises(SessionAlreadyClosed):
                SessionManager._compare_and_set(db, session, SessionState.AWAITING_PAYMENT, {"fee": Decimal("99.00")})
        finally:
            db.close()
        assert session_manager.get_session(opened.session_id).fee == Decimal("4.00")


class TestRepeatedExitAtAnotherGate:

    @pytest.mark.asyncio
    async def test_exit_gate_follows_the_vehicle(self, session_manager):
        opened, quoted = await park_until_payment(session_manager)
        again = await session_manager.request_exit("ABC123", T0 + minutes(95), image_ref="lane2.jpg",
                                                   gate="GATE-EXIT-2", confidence=93.0)

        assert again.duplicate is True
        assert again.fee == quoted.fee
        session = session_manager.get_session(opened.session_id)
        assert session.exit_gate == "GATE-EXIT-2"
        assert session.exit_image_ref == "lane2.jpg"
        assert session.exit_requested_at == T0 + minutes(90)

        paid = await session_manager.confirm_payment(opened.session_id, quoted.fee, "ch_1")
        assert paid.gate_signal.gate == "GATE-EXIT-2"

    @pytest.mark.asyncio
    async def test_same_gate_keeps_original_read(self, session_manager):
        await session_manager.open_session("ABC123", T0, gate="GATE-ENTRY")
        await session_manager.request_exit("ABC123", T0 + minutes(90), image_ref="first.jpg", gate="GATE-EXIT")
        await session_manager.request_exit("ABC123", T0 + minutes(95), image_ref="second.jpg", gate="GATE-EXIT")
        assert session_manager.get_active_session("ABC123").exit_image_ref == "first.jpg"


class TestAdoptBetterRead:

    @pytest.mark.asyncio
    async def test_entry_read_upgraded(self, session_manager):
        opened = await session_manager.open_session("ABC123", T0, image_ref="blurry.jpg", gate="GATE-ENTRY",
                                                    confidence=86.0)
        updated = await session_manager.adopt_better_read("ABC123", "GATE-ENTRY", "entry", "sharp.jpg", 99.0, T0)

        assert updated is True
        session = session_manager.get_session(opened.session_id)
        assert session.entry_image_ref == "sharp.jpg"
        assert session.entry_confidence == 99.0
        assert session.entry_time == T0
        assert session.state == "OPEN"

    @pytest.mark.asyncio
    async def test_weaker_read_ignored(self, session_manager):
        opened = await session_manager.open_session("ABC123", T0, image_ref="sharp.jpg", gate="GATE-ENTRY",
                                                    confidence=97.0)
        assert await session_manager.adopt_better_read("ABC123", "GATE-ENTRY", "entry", "meh.jpg", 90.0) is False
        assert session_manager.get_session(opened.session_id).entry_image_ref == "sharp.jpg"

    @pytest.mark.asyncio
    async def test_other_gate_or_earlier_visit_untouched(self, session_manager):
        opened = await session_manager.open_session("ABC123", T0, image_ref="in.jpg", gate="GATE-ENTRY",
                                                    confidence=86.0)
        assert await session_manager.adopt_better_read("ABC123", "GATE-ENTRY-2", "entry", "x.jpg", 99.0) is False
        assert await session_manager.adopt_better_read("ABC123", "GATE-ENTRY", "entry", "x.jpg", 99.0,
                                                       T0 + minutes(60)) is False
        assert session_manager.get_session(opened.session_id).entry_image_ref == "in.jpg"

    @pytest.mark.asyncio
    async def test_exit_read_upgraded_after_free_close(self, session_manager):
        opened = await session_manager.open_session("ABC123", T0, gate="GATE-ENTRY")
        exit_at = T0 + minutes(10)
        await session_manager.request_exit("ABC123", exit_at, image_ref="out-blurry.jpg", gate="GATE-EXIT",
                                           confidence=87.0)

        updated = await session_manager.adopt_better_read("ABC123", "GATE-EXIT", "exit", "out-sharp.jpg", 98.0,
                                                          exit_at)

        assert updated is True
        session = session_manager.get_session(opened.session_id)
        assert session.exit_image_ref == "out-sharp.jpg"
        assert session.state == "CLOSED"
        assert session.fee == Decimal("0.00")

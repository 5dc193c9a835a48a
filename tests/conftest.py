# tests/conftest.py
"""Shared fixtures: an in-memory session store, a seeded rate catalog and fake edge devices."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
os.environ.setdefault("LOG_TO_FILE", "false")

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import create_tables
from app.services.detection_deduplicator import DetectionDeduplicator
from app.services.gate_dispatcher import GateChannelError, GateCommandDispatcher
from app.services.parking_engine import ParkingEngine
from app.services.payment_gateway import GatewayError
from app.services.payment_orchestrator import PaymentOrchestrator
from app.services.rate_catalog import RateCatalog
from app.services.session_manager import SessionManager

RATE_EPOCH = datetime(2026, 1, 1)
T0 = datetime(2026, 3, 2, 10, 0)


def minutes(n):
    return timedelta(minutes=n)


class FakeGateChannel:
    """Acks everything unless told to fail the next N deliveries ("error" or "timeout")."""

    def __init__(self, fail_times=0, mode="error"):
        self.fail_times = fail_times
        self.mode = mode
        self.messages = []

    async def deliver(self, message):
        self.messages.append(message)
        if self.fail_times:
            self.fail_times -= 1
            if self.mode == "timeout":
                await asyncio.sleep(5)
            raise GateChannelError("controller offline")

    def sent(self, direction=None, action=None):
        return [m for m in self.messages
                if (direction is None or m.direction == direction) and (action is None or m.action == action)]


class FakePaymentGateway:
    """Returns a charge id per call; raises queued GatewayErrors first."""

    def __init__(self, errors=None):
        self.errors = list(errors or [])
        self.calls = []

    async def create_charge(self, idempotency_key, amount, session_id):
        self.calls.append((idempotency_key, amount, session_id))
        if self.errors:
            raise self.errors.pop(0)
        return f"ch_{len(self.calls)}"


@pytest.fixture
def session_factory():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    create_tables(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def rate_catalog(session_factory):
    catalog = RateCatalog(session_factory)
    catalog.seed_default("2.00", 15, "10.00", effective_at=RATE_EPOCH)
    return catalog


@pytest.fixture
def session_manager(session_factory, rate_catalog):
    return SessionManager(session_factory, rate_catalog)


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def payments(session_factory, session_manager, gateway):
    return PaymentOrchestrator(session_factory, session_manager, gateway, max_retries=2, backoff_seconds=0)


@pytest.fixture
def gate_channel():
    return FakeGateChannel()


@pytest.fixture
def make_engine(session_factory, rate_catalog, session_manager, gateway):
    def _make(channel=None, gateway_override=None, gate_retries=1):
        channel = channel or FakeGateChannel()
        payments = PaymentOrchestrator(session_factory, session_manager, gateway_override or gateway,
                                       max_retries=1, backoff_seconds=0)
        gates = GateCommandDispatcher(session_factory, channel, ack_timeout=0.05,
                                      max_retries=gate_retries, backoff_seconds=0)
        engine = ParkingEngine(session_factory, rate_catalog, session_manager, payments, gates,
                               DetectionDeduplicator(confidence_threshold=85.0, debounce_seconds=5))
        return engine, channel
    return _make


def gateway_error(message="provider down", retryable=True):
    return GatewayError(message, retryable=retryable)

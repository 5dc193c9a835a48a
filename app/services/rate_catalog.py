# app/services/rate_catalog.py
"""
Rate Catalog — versioned, immutable billing rules.

Each admin update appends a new RateSnapshot and stamps superseded_at on the
previous one in the same transaction. Readers work on an in-memory tuple of
frozen RateTerms that is swapped wholesale after every write, so a fee
computation never sees a half-applied update and never waits on a writer.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

import asyncio

from app.errors import InvalidRate, NoRateConfigured
from app.models.rate_snapshot import RateSnapshot
from app.services.fee_calculator import to_money
from app.utils.logger import get_logger
from app.utils.timeutils import to_naive_utc, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateTerms:
    snapshot_id: int
    version: int
    hourly_rate: Decimal
    free_minutes: int
    max_daily_rate: Decimal
    created_at: datetime
    superseded_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: RateSnapshot) -> "RateTerms":
        return cls(
            snapshot_id=row.id,
            version=row.version,
            hourly_rate=to_money(row.hourly_rate),
            free_minutes=int(row.free_minutes),
            max_daily_rate=to_money(row.max_daily_rate),
            created_at=row.created_at,
            superseded_at=row.superseded_at,
        )


def validate_rate(hourly_rate, free_minutes, max_daily_rate) -> Tuple[Decimal, int, Decimal]:
    try:
        hourly = to_money(hourly_rate)
        cap = to_money(max_daily_rate)
    except (ArithmeticError, ValueError, TypeError):
        raise InvalidRate(f"Rates must be decimal amounts, got {hourly_rate!r} / {max_daily_rate!r}")
    if hourly < 0:
        raise InvalidRate("hourly_rate must not be negative")
    if cap <= 0:
        raise InvalidRate("max_daily_rate must be positive")
    if free_minutes is None or int(free_minutes) < 0:
        raise InvalidRate("free_minutes must not be negative")
    return hourly, int(free_minutes), cap


class RateCatalog:
    def __init__(self, session_factory):
        self._session_factory = session_factory
        self._snapshots: Tuple[RateTerms, ...] = ()
        self._write_lock = asyncio.Lock()

    # ── Reads (lock-free) ──────────────────────────────────────────────────
    def current(self) -> Optional[RateTerms]:
        snapshots = self._snapshots
        return snapshots[-1] if snapshots else None

    def history(self) -> Tuple[RateTerms, ...]:
        return self._snapshots

    def snapshot_at(self, when: datetime) -> RateTerms:
        """
        The snapshot in force at `when`. A timestamp older than the whole
        chain (backdated camera clock) binds to the first snapshot.
        """
        snapshots = self._snapshots
        if not snapshots:
            raise NoRateConfigured()
        when = to_naive_utc(when)
        for terms in reversed(snapshots):
            if terms.created_at <= when:
                return terms
        return snapshots[0]

    def get(self, snapshot_id: int) -> RateTerms:
        for terms in self._snapshots:
            if terms.snapshot_id == snapshot_id:
                return terms
        # Written by another process since our last load
        self.load()
        for terms in self._snapshots:
            if terms.snapshot_id == snapshot_id:
                return terms
        raise NoRateConfigured()

    # ── Writes ─────────────────────────────────────────────────────────────
    def load(self) -> Tuple[RateTerms, ...]:
        db = self._session_factory()
        try:
            rows = db.query(RateSnapshot).order_by(RateSnapshot.version.asc()).all()
            self._snapshots = tuple(RateTerms.from_row(r) for r in rows)
        finally:
            db.close()
        return self._snapshots

    def seed_default(self, hourly_rate, free_minutes, max_daily_rate, effective_at: Optional[datetime] = None) -> RateTerms:
        """Create version 1 when the catalog is empty. Called once at startup."""
        if not self.load():
            self._append(*validate_rate(hourly_rate, free_minutes, max_daily_rate), effective_at)
            logger.info(f"[RATE] Seeded default rate {self.current()}")
        return self.current()

    async def update(self, hourly_rate, free_minutes, max_daily_rate,
                     effective_at: Optional[datetime] = None) -> RateTerms:
        """Supersede the current snapshot with a new one. Open sessions keep theirs."""
        hourly, free, cap = validate_rate(hourly_rate, free_minutes, max_daily_rate)
        async with self._write_lock:
            terms = self._append(hourly, free, cap, effective_at)
        logger.info(
            f"[RATE] v{terms.version} active from {terms.created_at}: "
            f"{terms.hourly_rate}/h, {terms.free_minutes} free min, cap {terms.max_daily_rate}"
        )
        return terms

    def _append(self, hourly: Decimal, free: int, cap: Decimal, effective_at: Optional[datetime]) -> RateTerms:
        effective_at = to_naive_utc(effective_at) if effective_at else utcnow()
        db = self._session_factory()
        try:
            previous = (
                db.query(RateSnapshot)
                .filter(RateSnapshot.superseded_at == None)  # noqa: E711
                .order_by(RateSnapshot.version.desc())
                .first()
            )
            if previous is not None:
                if effective_at < previous.created_at:
                    raise InvalidRate(
                        f"New rate cannot take effect at {effective_at}, before v{previous.version} "
                        f"({previous.created_at})"
                    )
                previous.superseded_at = effective_at
            row = RateSnapshot(
                version=(previous.version + 1) if previous else 1,
                hourly_rate=hourly,
                free_minutes=free,
                max_daily_rate=cap,
                created_at=effective_at,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            terms = RateTerms.from_row(row)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        self.load()
        return terms

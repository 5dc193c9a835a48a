# app/services/detection_deduplicator.py
"""
Detection Deduplicator.

Edge ANPR cameras emit bursts of near-identical reads while a vehicle sits in
front of a gate. This stage turns each burst into one logical event:

  - reads below the confidence threshold are suppressed outright
  - the first read for a (plate, gate) pair is emitted
  - further reads for that pair within the debounce window are suppressed;
    the window slides with each accepted read, and the highest-confidence
    read of the burst is kept as its representative

Timing uses the detection timestamps, not the wall clock, so replays and
tests behave the same as live traffic.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from app.config import settings
from app.services.vehicle_service import normalize_plate
from app.utils.logger import get_logger
from app.utils.timeutils import to_naive_utc

logger = get_logger(__name__)


@dataclass(frozen=True)
class DetectionEvent:
    plate: str               # normalized
    gate: str
    direction: str           # entry | exit
    detected_at: datetime
    confidence: float
    image_ref: Optional[str]
    samples: int = 1


@dataclass
class _Burst:
    best: DetectionEvent
    started: datetime
    last_seen: datetime
    samples: int


class DetectionDeduplicator:
    def __init__(self, confidence_threshold: float = None, debounce_seconds: float = None):
        self.confidence_threshold = (
            settings.DETECTION_CONFIDENCE_THRESHOLD if confidence_threshold is None else confidence_threshold
        )
        self.window = timedelta(
            seconds=settings.DETECTION_DEBOUNCE_SECONDS if debounce_seconds is None else debounce_seconds
        )
        self._bursts: Dict[Tuple[str, str], _Burst] = {}
        self.last_suppress_reason: Optional[str] = None
        self.last_improved = False             # the last debounced read became its burst's representative

    def ingest(self, plate: str, gate: str, detected_at: datetime, confidence: float,
               image_ref: Optional[str] = None, direction: str = "entry") -> Optional[DetectionEvent]:
        """Returns the logical event for a new burst, or None when suppressed."""
        detected_at = to_naive_utc(detected_at)
        self.prune(detected_at)
        self.last_improved = False

        plate = normalize_plate(plate)
        if not plate:
            return self._suppress("empty_plate")
        if confidence is None or confidence < self.confidence_threshold:
            logger.debug(f"[DEDUP] {plate}@{gate} confidence {confidence} below {self.confidence_threshold}")
            return self._suppress("low_confidence")

        sample = DetectionEvent(
            plate=plate, gate=gate, direction=direction, detected_at=detected_at,
            confidence=float(confidence), image_ref=image_ref,
        )
        key = (plate, gate)
        burst = self._bursts.get(key)
        if burst is not None and detected_at - burst.last_seen <= self.window:
            burst.samples += 1
            burst.last_seen = max(burst.last_seen, detected_at)
            if sample.confidence > burst.best.confidence:
                burst.best = sample
                self.last_improved = True
            return self._suppress("debounced")

        self._bursts[key] = _Burst(best=sample, started=detected_at, last_seen=detected_at, samples=1)
        self.last_suppress_reason = None
        return sample

    def representative(self, plate: str, gate: str) -> Optional[DetectionEvent]:
        """Highest-confidence read of the current burst for (plate, gate)."""
        burst = self._bursts.get((normalize_plate(plate), gate))
        if burst is None:
            return None
        return replace(burst.best, samples=burst.samples)

    def burst_started_at(self, plate: str, gate: str) -> Optional[datetime]:
        burst = self._bursts.get((normalize_plate(plate), gate))
        return burst.started if burst is not None else None

    def prune(self, now: datetime):
        """Drop bursts whose debounce window has elapsed."""
        expired = [k for k, b in self._bursts.items() if now - b.last_seen > self.window]
        for key in expired:
            del self._bursts[key]

    def _suppress(self, reason: str) -> None:
        self.last_suppress_reason = reason
        return None

    def __len__(self):
        return len(self._bursts)

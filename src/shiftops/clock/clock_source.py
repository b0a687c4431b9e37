# src/shiftops/clock/clock_source.py

from __future__ import annotations

"""
Clock source.

Real wall clock plus an optional test offset. The offset lives in the SyncBus
shadow slot "clock_offset" so every session agrees on simulated time; each
session re-reads it on tick (refresh) or when a clock_offset message arrives.
"""

import logging
import math
import time
from collections.abc import Callable
from datetime import datetime, timedelta, tzinfo

from ..core.errors import ClockAnomaly
from ..core.ports import ShadowStore

logger = logging.getLogger(__name__)

CLOCK_OFFSET_SLOT = "clock_offset"

# Readings may jitter slightly backwards (NTP slew); below this it's not an anomaly.
_BACKWARD_TOLERANCE = timedelta(seconds=2)


class ClockSource:
    def __init__(
        self,
        *,
        tz: tzinfo | None = None,
        shadow: ShadowStore | None = None,
        offset_ttl_seconds: float | None = 3600.0,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._tz = tz
        self._shadow = shadow
        self._ttl = offset_ttl_seconds
        self._wall_clock = wall_clock
        self._offset: timedelta | None = None
        self._offset_updated_at: float | None = None
        self._last: datetime | None = None
        self._rebased = True

    @property
    def offset(self) -> timedelta | None:
        return self._offset

    @property
    def tz(self) -> tzinfo | None:
        return self._tz

    def real_now(self) -> datetime:
        return datetime.fromtimestamp(self._wall_clock(), tz=self._tz)

    def now(self) -> datetime:
        """
        Current (possibly simulated) instant.

        A reading that goes backwards without an explicit offset change is a
        ClockAnomaly: it is logged and the offset is dropped (real clock fallback).
        """
        real = self.real_now()
        candidate = real + self._offset if self._offset is not None else real

        if self._offset is not None and self._ttl is not None and self._offset_updated_at is not None:
            if self._wall_clock() - self._offset_updated_at > self._ttl:
                self._anomaly(f"offset {self._offset} is stale (older than {self._ttl:.0f}s)")
                candidate = real

        if (
            not self._rebased
            and self._last is not None
            and self._offset is not None
            and candidate < self._last - _BACKWARD_TOLERANCE
        ):
            self._anomaly(f"negative clock delta {candidate - self._last}")
            candidate = real

        self._rebased = False
        self._last = candidate
        return candidate

    def set_offset(self, delta: timedelta) -> None:
        seconds = delta.total_seconds()
        if not math.isfinite(seconds):
            raise ClockAnomaly(f"non-finite clock offset: {delta!r}")
        try:
            self.real_now() + delta
        except OverflowError as e:
            raise ClockAnomaly(f"clock offset out of range: {delta!r}") from e
        self._apply_offset(delta, self._wall_clock())
        if self._shadow is not None:
            try:
                self._shadow.write_slot(
                    CLOCK_OFFSET_SLOT,
                    {"enabled": True, "offset_seconds": seconds, "updated_at": self._offset_updated_at},
                )
            except Exception:
                logger.exception("Failed to write clock offset shadow slot")
        logger.info("Clock offset set to %s", delta)

    def set_simulated_time(self, target: datetime) -> timedelta:
        """Convenience: pick the offset that makes now() return target."""
        delta = target - self.real_now()
        self.set_offset(delta)
        return delta

    def clear_offset(self) -> None:
        self._clear_local()
        if self._shadow is not None:
            try:
                self._shadow.write_slot(
                    CLOCK_OFFSET_SLOT,
                    {"enabled": False, "offset_seconds": 0.0, "updated_at": self._wall_clock()},
                )
            except Exception:
                logger.exception("Failed to clear clock offset shadow slot")
        logger.info("Clock offset cleared")

    def refresh(self) -> None:
        """Adopt the offset another session may have written to the shadow slot."""
        if self._shadow is None:
            return
        try:
            slot = self._shadow.read_slot(CLOCK_OFFSET_SLOT)
        except Exception:
            logger.exception("Failed to read clock offset shadow slot")
            return
        if slot is None:
            return

        try:
            enabled = bool(slot.get("enabled"))
            seconds = float(slot.get("offset_seconds", 0.0))
            updated_at = float(slot.get("updated_at", 0.0))
        except (TypeError, ValueError):
            self._anomaly(f"inconsistent clock offset slot: {slot!r}")
            return

        if not enabled:
            if self._offset is not None:
                self._clear_local()
            return
        if not math.isfinite(seconds):
            self._anomaly(f"inconsistent clock offset slot: {slot!r}")
            return
        if self._ttl is not None and self._wall_clock() - updated_at > self._ttl:
            # Stale offset left behind by a closed session; ignore it.
            if self._offset is not None:
                self._anomaly("shadowed clock offset is stale")
            return
        if self._offset_updated_at == updated_at and self._offset == timedelta(seconds=seconds):
            return
        self._apply_offset(timedelta(seconds=seconds), updated_at)
        logger.info("Clock offset adopted from shadow: %s", self._offset)

    # ---- internals ----

    def _apply_offset(self, delta: timedelta, updated_at: float) -> None:
        self._offset = delta
        self._offset_updated_at = updated_at
        self._rebased = True

    def _clear_local(self) -> None:
        self._offset = None
        self._offset_updated_at = None
        self._rebased = True

    def _anomaly(self, reason: str) -> None:
        err = ClockAnomaly(reason)
        logger.warning("Clock anomaly: %s; falling back to real clock", err)
        self._clear_local()

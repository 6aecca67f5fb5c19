"""Consistency gatekeeper.

Holds back snapshots that fail the conservation check for a short window and
publishes the best candidate seen, so a momentary disagreement between sources
does not reach consumers as a visible glitch.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .balance import Tolerances, is_balance_consistent, power_balance_mismatch
from .models import MINIMUM_UPDATE_INTERVAL, PowerSnapshot

logger = logging.getLogger(__name__)

MIN_HOLD_WINDOW = 1.0  # seconds
MAX_HOLD_WINDOW = 2.5
HOLD_WINDOW_FACTOR = 0.75
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_INTERVAL = 0.4


def hold_window(update_interval: float) -> float:
    """Hold window for a sampling interval, clamped to [1.0, 2.5] seconds."""
    base = max(update_interval, MINIMUM_UPDATE_INTERVAL)
    return min(max(base * HOLD_WINDOW_FACTOR, MIN_HOLD_WINDOW), MAX_HOLD_WINDOW)


@dataclass
class PendingSnapshot:
    best_snapshot: PowerSnapshot
    best_score: float
    started_at: float
    attempts: int = 1


class ConsistencyGate:
    """Idle/holding state machine in front of publication.

    ``submit`` returns the snapshot to publish, or None while holding. While
    holding and visible, ``on_retry`` is called (rate limited) to ask the
    scheduler for an immediate full-detail resample.
    """

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        update_interval: float = 2.0,
        on_retry: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        consistency = (config or {}).get("consistency", {})
        self.tolerances = Tolerances.from_config(config)
        self.max_attempts = int(consistency.get("max_attempts", DEFAULT_MAX_ATTEMPTS))
        self.retry_interval = float(consistency.get("retry_interval", DEFAULT_RETRY_INTERVAL))
        self.update_interval = update_interval
        self.visible = False
        self.on_retry = on_retry
        self.clock = clock
        self.pending: PendingSnapshot | None = None
        self._last_retry_at: float | None = None

    @property
    def is_holding(self) -> bool:
        return self.pending is not None

    @property
    def hold_window(self) -> float:
        return hold_window(self.update_interval)

    def is_consistent(self, snapshot: PowerSnapshot) -> bool:
        return is_balance_consistent(
            snapshot.system_in,
            snapshot.system_load,
            snapshot.battery_power,
            self.tolerances.absolute_floor,
            self.tolerances.relative,
        )

    def submit(self, snapshot: PowerSnapshot, now: float | None = None) -> PowerSnapshot | None:
        """Feed one snapshot through the gate.

        Args:
            snapshot: Freshly reconciled snapshot
            now: Current monotonic time (defaults to the gate's clock)

        Returns:
            The snapshot to publish, or None if the gate is still holding
        """
        if self.is_consistent(snapshot):
            if self.pending is not None:
                logger.debug(f"Consistent snapshot replaced pending candidate after {self.pending.attempts} attempt(s)")
            self.pending = None
            return snapshot

        now = now if now is not None else self.clock()
        score = power_balance_mismatch(snapshot.system_in, snapshot.system_load, snapshot.battery_power)

        if self.pending is None:
            logger.debug(f"Holding inconsistent snapshot (mismatch {score:.2f} W)")
            self.pending = PendingSnapshot(best_snapshot=snapshot, best_score=score, started_at=now)
        else:
            pending = self.pending
            pending.attempts += 1
            if score < pending.best_score:
                pending.best_score = score
                pending.best_snapshot = snapshot
            if self._should_accept(pending, now):
                self.pending = None
                logger.debug(
                    f"Publishing best candidate (mismatch {pending.best_score:.2f} W) "
                    f"after {pending.attempts} attempt(s)"
                )
                return pending.best_snapshot

        self._request_retry(now)
        return None

    def reset(self) -> None:
        self.pending = None

    def _should_accept(self, pending: PendingSnapshot, now: float) -> bool:
        if now - pending.started_at >= self.hold_window:
            return True
        return pending.attempts >= self.max_attempts

    def _request_retry(self, now: float) -> None:
        if not self.visible or self.on_retry is None:
            return
        if self._last_retry_at is not None and now - self._last_retry_at < self.retry_interval:
            return
        self._last_retry_at = now
        self.on_retry()

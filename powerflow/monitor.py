"""Sampling scheduler.

One worker task consumes a queue of sample requests so no two reconciliation
passes ever overlap. The repeating timer and external triggers only enqueue.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .constants import DetailLevel
from .models import PowerSettings, PowerSnapshot
from .reconcile import ReconciliationEngine

logger = logging.getLogger(__name__)

BACKGROUND_UPDATE_INTERVAL = 10.0  # seconds
WARMUP_SAMPLE_TARGET = 12
WARMUP_MAX_DURATION = 60.0


@dataclass(frozen=True)
class SampleRequest:
    detail_override: DetailLevel | None = None
    count_warmup: bool = True


@dataclass
class WarmupState:
    remaining_samples: int
    deadline: float


class PowerMonitor:
    """Drives the read/reconcile cycle in background, foreground or warm-up mode."""

    def __init__(
        self,
        engine: ReconciliationEngine,
        config: dict[str, Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        sampling = (config or {}).get("sampling", {})
        self.engine = engine
        self.clock = clock
        self.background_interval = float(sampling.get("background_interval", BACKGROUND_UPDATE_INTERVAL))
        self.warmup_sample_target = int(sampling.get("warmup_samples", WARMUP_SAMPLE_TARGET))
        self.warmup_max_duration = float(sampling.get("warmup_duration", WARMUP_MAX_DURATION))

        self.settings = PowerSettings()
        self.visible = False
        self.interval = self.settings.effective_interval
        self.detail_level = DetailLevel.SUMMARY
        self.warmup: WarmupState | None = None

        self.on_update: Callable[[PowerSnapshot], None] | None = None
        self.on_warmup_completed: Callable[[], None] | None = None

        self._running = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[SampleRequest] | None = None
        self._worker_task: asyncio.Task | None = None
        self._timer_task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_warming_up(self) -> bool:
        return self.warmup is not None

    @property
    def mode(self) -> str:
        if self.warmup is not None:
            return "warmup"
        return "foreground" if self.visible else "background"

    async def start(self, settings: PowerSettings, visible: bool = False, warmup: bool = False) -> None:
        """Start the worker and the timer.

        Args:
            settings: Display configuration (interval, format)
            visible: Whether a detailed view is currently shown
            warmup: Run the accelerated key-discovery burst first
        """
        if self._running:
            logger.debug("Power monitor already running")
            return
        self._running = True
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._worker_task = asyncio.create_task(self._worker())

        self.settings = settings.clamped()
        self.visible = visible
        if warmup:
            self.warmup = WarmupState(
                remaining_samples=self.warmup_sample_target,
                deadline=self.clock() + self.warmup_max_duration,
            )
            logger.info(
                f"🔥 Warm-up started: {self.warmup_sample_target} samples or {self.warmup_max_duration:.0f}s"
            )
        else:
            self.warmup = None
        self._refresh_schedule(force=True)

        if warmup:
            self._enqueue(SampleRequest(detail_override=DetailLevel.SUMMARY, count_warmup=False))
        else:
            self._enqueue(SampleRequest())

    async def stop(self) -> None:
        """Stop rescheduling; an in-flight sample is allowed to finish."""
        if not self._running:
            return
        logger.info("Stopping power monitor")
        self._running = False
        tasks = [t for t in (self._timer_task, self._worker_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._timer_task = None
        self._worker_task = None

    def apply_settings(self, settings: PowerSettings, visible: bool) -> None:
        self.settings = settings.clamped()
        self.visible = visible
        self._refresh_schedule(force=False)

    def trigger_immediate_update(self, detail_override: DetailLevel | None = None, count_warmup: bool = True) -> None:
        """Queue an out-of-band sample behind any pending work.

        Safe to call from another thread (e.g. an OS power-source callback).
        """
        request = SampleRequest(detail_override=detail_override, count_warmup=count_warmup)
        if self._loop is None or not self._running:
            logger.debug("Immediate update ignored, monitor not running")
            return
        self._loop.call_soon_threadsafe(self._enqueue, request)

    async def drain(self) -> None:
        """Wait until every queued request has been processed."""
        if self._queue is not None:
            await self._queue.join()

    def sample(self, detail_override: DetailLevel | None = None, count_warmup: bool = True) -> PowerSnapshot:
        """Take one sample synchronously and hand it to ``on_update``."""
        level = detail_override or self.detail_level
        snapshot = self.engine.read_snapshot(level, self.settings)
        if count_warmup:
            self._update_warmup_state()
        if self.on_update is not None:
            self.on_update(snapshot)
        return snapshot

    def resolved_interval(self) -> float:
        base = self.settings.effective_interval
        if self.warmup is not None or self.visible:
            return base
        return max(base, self.background_interval)

    def resolved_detail_level(self) -> DetailLevel:
        return DetailLevel.FULL if (self.visible or self.warmup is not None) else DetailLevel.SUMMARY

    def _enqueue(self, request: SampleRequest) -> None:
        if self._queue is None or not self._running:
            return
        self._queue.put_nowait(request)

    async def _worker(self) -> None:
        while self._running:
            try:
                request = await self._queue.get()
            except asyncio.CancelledError:
                break
            try:
                self.sample(request.detail_override, request.count_warmup)
            except Exception as e:
                logger.error(f"Error in sampling worker: {e}")
            finally:
                self._queue.task_done()

    async def _timer_loop(self, interval: float) -> None:
        while self._running:
            try:
                await asyncio.sleep(interval)
                self._enqueue(SampleRequest())
            except asyncio.CancelledError:
                break

    def _schedule_timer(self) -> None:
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
        if not self._running or self._loop is None:
            return
        self._timer_task = self._loop.create_task(self._timer_loop(self.interval))

    def _refresh_schedule(self, force: bool) -> None:
        target_interval = self.resolved_interval()
        target_detail = self.resolved_detail_level()
        interval_changed = abs(target_interval - self.interval) > 0.01
        detail_changed = target_detail != self.detail_level
        self.detail_level = target_detail
        if force or interval_changed or detail_changed:
            self.interval = target_interval
            logger.info(f"📈 Sampling every {self.interval:.1f}s ({self.detail_level.value} detail, {self.mode})")
            self._schedule_timer()

    def _update_warmup_state(self) -> None:
        state = self.warmup
        if state is None:
            return
        if self.clock() >= state.deadline:
            self._finish_warmup()
            return
        state.remaining_samples -= 1
        if state.remaining_samples <= 0:
            self._finish_warmup()

    def _finish_warmup(self) -> None:
        if self.warmup is None:
            return
        self.warmup = None
        logger.info("✅ Warm-up completed")
        if self.on_warmup_completed is not None:
            try:
                self.on_warmup_completed()
            except Exception as e:
                logger.warning(f"Warm-up completion handler failed: {e}")
        self._refresh_schedule(force=True)

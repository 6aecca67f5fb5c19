"""Bounded in-memory history of accepted snapshots for charting."""

from collections import deque
from dataclasses import dataclass

from .models import MINIMUM_UPDATE_INTERVAL, PowerSnapshot

DEFAULT_CAPACITY = 600


@dataclass(frozen=True)
class HistoryPoint:
    timestamp: float
    system_load: float
    screen_power: float
    input_power: float
    temperature_c: float | None
    fan_percent_max: float | None

    @classmethod
    def from_snapshot(cls, snapshot: PowerSnapshot) -> "HistoryPoint":
        return cls(
            timestamp=snapshot.timestamp,
            system_load=snapshot.system_load,
            screen_power=snapshot.screen_power,
            input_power=snapshot.system_in,
            temperature_c=snapshot.temperature_c,
            fan_percent_max=snapshot.max_fan_percent,
        )


def history_sample_interval(update_interval: float, visible: bool) -> float:
    base = max(update_interval, MINIMUM_UPDATE_INTERVAL)
    if visible:
        return max(base * 2.0, 4.0)
    return max(base * 4.0, 10.0)


class PowerHistory:
    """FIFO ring buffer that down-samples accepted snapshots."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        self.points: deque[HistoryPoint] = deque(maxlen=capacity)
        self._last_sample_at: float | None = None

    def __len__(self) -> int:
        return len(self.points)

    @property
    def capacity(self) -> int:
        return self.points.maxlen or 0

    def append(self, snapshot: PowerSnapshot, update_interval: float, visible: bool) -> bool:
        """Record ``snapshot`` unless the last point is too recent.

        Returns:
            True if a point was added
        """
        now = snapshot.timestamp
        if self._last_sample_at is not None:
            if now - self._last_sample_at < history_sample_interval(update_interval, visible):
                return False
        self._last_sample_at = now
        self.points.append(HistoryPoint.from_snapshot(snapshot))
        return True

    def snapshot(self) -> list[HistoryPoint]:
        return list(self.points)

    def clear(self) -> None:
        self.points.clear()
        self._last_sample_at = None

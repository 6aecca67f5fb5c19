"""Key discovery for registers whose name changes across hardware generations."""

import logging
import time
from collections.abc import Callable, Iterable

from ..constants import CPU_TEMPERATURE_SCAN_COOLDOWN, MAX_PLAUSIBLE_TEMPERATURE_C

logger = logging.getLogger(__name__)

ReadFn = Callable[[str], float | None]


class CapabilityCache:
    """Ordered alias list with a memoised winning key.

    The remembered key is queried first; the full candidate list is scanned
    only when there is no remembered key or it stops producing an accepted
    value.
    """

    def __init__(self, name: str, candidates: Iterable[str], preferred_key: str | None = None):
        self.name = name
        self.candidates = list(dict.fromkeys(candidates))
        self.preferred_key = preferred_key if preferred_key in self.candidates else None
        self.scan_count = 0

    def read(self, read_fn: ReadFn, require_positive: bool = True) -> tuple[float, str] | None:
        """Return (value, key) from the first accepted candidate.

        Args:
            read_fn: Reads a key, returning None when absent
            require_positive: Reject zero and negative readings

        Returns:
            Tuple of value and winning key, or None if no candidate is accepted
        """
        if self.preferred_key is not None:
            value = read_fn(self.preferred_key)
            if self._accept(value, require_positive):
                return value, self.preferred_key
            logger.debug(f"{self.name}: remembered key {self.preferred_key} stopped responding, re-probing")

        self.scan_count += 1
        for key in self.candidates:
            value = read_fn(key)
            if not self._accept(value, require_positive):
                continue
            if key != self.preferred_key:
                logger.debug(f"{self.name}: resolved to {key}")
            self.preferred_key = key
            return value, key

        return None

    def reset(self) -> None:
        self.preferred_key = None

    @staticmethod
    def _accept(value: float | None, require_positive: bool) -> bool:
        if value is None:
            return False
        return not require_positive or value > 0


class CpuTemperatureProbe:
    """Discovers which CPU temperature keys exist and reports the hottest one.

    A full scan remembers every key that answered. When a scan finds nothing,
    rescans are suppressed for a cooldown so a machine without these sensors
    is not probed on every tick.
    """

    def __init__(
        self,
        candidates: Iterable[str],
        cached_keys: Iterable[str] | None = None,
        cooldown: float = CPU_TEMPERATURE_SCAN_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.candidates = list(dict.fromkeys(candidates))
        self.cooldown = cooldown
        self._clock = clock
        self.discovered_keys: list[str] = list(dict.fromkeys(cached_keys or []))
        self._did_scan = bool(self.discovered_keys)
        self._last_scan_failure: float | None = None
        self.scan_count = 0

    def read(self, read_fn: ReadFn, allow_scan: bool) -> tuple[float, str] | None:
        use_cached = self._did_scan and bool(self.discovered_keys)
        if not use_cached:
            if not allow_scan:
                return None
            now = self._clock()
            if self._last_scan_failure is not None and now - self._last_scan_failure < self.cooldown:
                return None

        keys = self.discovered_keys if use_cached else self.candidates
        if not use_cached:
            self.scan_count += 1

        max_temp = 0.0
        max_key = ""
        found: list[str] = []
        for key in keys:
            value = read_fn(key)
            if value is None:
                continue
            found.append(key)
            if max_temp < value < MAX_PLAUSIBLE_TEMPERATURE_C:
                max_temp = value
                max_key = key

        if use_cached and not found:
            # Remembered keys went silent (e.g. a store migrated from another model)
            logger.info("Remembered CPU temperature keys stopped answering, rescanning")
            self._did_scan = False
        elif not use_cached:
            if found:
                self.discovered_keys = found
                self._did_scan = True
                self._last_scan_failure = None
                logger.info(f"🌡️ Discovered {len(found)} CPU temperature key(s)")
            else:
                self._did_scan = False
                self._last_scan_failure = self._clock()
                logger.debug("CPU temperature scan found no keys")

        return (max_temp, max_key) if max_temp > 0 else None

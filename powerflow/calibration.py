"""Per-hardware-model calibration learned at runtime.

Facts such as the battery-rate sign convention or which alias key carries
package power differ between models but never change for a given model. They
are learned once, then persisted to a small YAML store keyed by the model
identifier so the next launch can skip re-learning them.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

GLOBAL_RECORD = "_global"
WARMUP_RETRY_INTERVAL = 24 * 60 * 60  # seconds


def normalize_model_identifier(model_id: str | None) -> str | None:
    """Trimmed identifier, or None when absent, empty or 'unknown'."""
    if model_id is None:
        return None
    trimmed = model_id.strip()
    if not trimmed or trimmed == "unknown":
        return None
    return trimmed


@dataclass(frozen=True)
class CachedTemperature:
    value: float
    source: str | None
    timestamp: float


class CalibrationStore:
    """YAML-backed key-value store of calibration records.

    Each model gets one record; an absent identifier maps to a single global
    record. Writes are best effort: a failed write is logged and dropped.
    Passing ``path=None`` keeps everything in memory.
    """

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path else None
        self._records: dict[str, dict[str, Any]] = {}
        self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            with open(self.path) as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load calibration store {self.path}: {e}")
            return
        models = raw.get("models", {})
        if isinstance(models, dict):
            self._records = {str(k): dict(v) for k, v in models.items() if isinstance(v, dict)}

    def _save(self) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                yaml.safe_dump({"models": self._records}, f, default_flow_style=False, indent=2)
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to save calibration store {self.path}: {e}")

    def _record(self, model_id: str | None) -> dict[str, Any]:
        return self._records.get(normalize_model_identifier(model_id) or GLOBAL_RECORD, {})

    def _update(self, model_id: str | None, **values: Any) -> None:
        key = normalize_model_identifier(model_id) or GLOBAL_RECORD
        self._records.setdefault(key, {}).update(values)
        self._save()

    def load_polarity(self, model_id: str | None) -> int | None:
        value = self._record(model_id).get("polarity")
        return value if value in (1, -1) else None

    def save_polarity(self, model_id: str | None, sign: int) -> None:
        if sign not in (1, -1):
            raise ValueError(f"Polarity must be +1 or -1, got {sign}")
        self._update(model_id, polarity=sign)

    def load_discovered_keys(self, model_id: str | None) -> list[str]:
        keys = self._record(model_id).get("cpu_temperature_keys") or []
        return [str(k) for k in keys]

    def save_discovered_keys(self, model_id: str | None, keys: list[str]) -> None:
        self._update(model_id, cpu_temperature_keys=list(keys))

    def load_preferred_keys(self, model_id: str | None) -> dict[str, str]:
        keys = self._record(model_id).get("preferred_keys") or {}
        return {str(k): str(v) for k, v in keys.items()} if isinstance(keys, dict) else {}

    def save_preferred_keys(self, model_id: str | None, keys: dict[str, str]) -> None:
        self._update(model_id, preferred_keys=dict(keys))

    def load_warmup_done(self, model_id: str | None) -> bool:
        return bool(self._record(model_id).get("warmup_done", False))

    def mark_warmup_done(self, model_id: str | None) -> None:
        self._update(model_id, warmup_done=True)

    def load_last_warmup_attempt(self, model_id: str | None) -> float | None:
        value = self._record(model_id).get("last_warmup_attempt")
        return float(value) if isinstance(value, int | float) else None

    def mark_warmup_attempted(self, model_id: str | None, timestamp: float | None = None) -> None:
        if normalize_model_identifier(model_id) is None:
            return
        self._update(model_id, last_warmup_attempt=timestamp if timestamp is not None else time.time())

    def load_cached_temperature(self, model_id: str | None) -> CachedTemperature | None:
        raw = self._record(model_id).get("cached_temperature")
        if not isinstance(raw, dict):
            return None
        try:
            return CachedTemperature(
                value=float(raw["value"]),
                source=raw.get("source"),
                timestamp=float(raw["timestamp"]),
            )
        except (KeyError, TypeError, ValueError):
            return None

    def save_cached_temperature(self, model_id: str | None, cached: CachedTemperature) -> None:
        self._update(
            model_id,
            cached_temperature={
                "value": cached.value,
                "source": cached.source,
                "timestamp": cached.timestamp,
            },
        )

    def should_warmup(self, model_id: str | None, now: float | None = None) -> bool:
        """Whether the accelerated discovery burst should run on this launch.

        Runs until a model has completed it once. A completed model warms up
        again only if it still has no CPU temperature keys and the last
        attempt was at least a day ago.
        """
        now = now if now is not None else time.time()
        normalized = normalize_model_identifier(model_id)
        global_done = bool(self._records.get(GLOBAL_RECORD, {}).get("warmup_done", False))
        if normalized is None:
            return not global_done
        if not (self.load_warmup_done(normalized) or global_done):
            return True
        if self.load_discovered_keys(normalized):
            return False
        last_attempt = self.load_last_warmup_attempt(normalized)
        if last_attempt is None:
            return True
        return now - last_attempt >= WARMUP_RETRY_INTERVAL


@dataclass
class CalibrationState:
    """Learned facts for one hardware model, owned by the reconciliation engine."""

    model_id: str
    polarity: int | None = None
    preferred_keys: dict[str, str] = field(default_factory=dict)
    cpu_temperature_keys: list[str] = field(default_factory=list)
    warmup_done: bool = False
    cached_temperature: CachedTemperature | None = None

    @classmethod
    def load(cls, store: CalibrationStore, model_id: str | None) -> "CalibrationState":
        return cls(
            model_id=normalize_model_identifier(model_id) or GLOBAL_RECORD,
            polarity=store.load_polarity(model_id),
            preferred_keys=store.load_preferred_keys(model_id),
            cpu_temperature_keys=store.load_discovered_keys(model_id),
            warmup_done=store.load_warmup_done(model_id),
            cached_temperature=store.load_cached_temperature(model_id),
        )

"""CSV log of accepted power snapshots."""

import csv
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from .models import PowerSnapshot

logger = logging.getLogger(__name__)

CSV_HEADERS = [
    "timestamp",
    "power_state",
    "battery_level_percent",
    "battery_level_precise",
    "system_in_w",
    "system_load_w",
    "battery_power_w",
    "battery_power_source",
    "adapter_power_w",
    "screen_power_w",
    "package_power_w",
    "temperature_c",
    "temperature_source",
    "battery_health_percent",
    "time_remaining_min",
    "balance_mismatch_w",
    "notes",
]


def _optional(value: float | None, digits: int = 2) -> float | None:
    return round(value, digits) if value is not None else None


class MetricsLogger:
    """Appends one row per accepted snapshot to a date-named CSV file."""

    def __init__(self, config: dict[str, Any]):
        self.config = config
        self.csv_file = None
        self.csv_writer = None
        self.csv_file_path: Path | None = None
        self._initialize_logging()

    def _initialize_logging(self) -> None:
        metrics_config = self.config.get("metrics", {})
        if not metrics_config.get("enabled", False):
            logger.info("Metrics logging disabled")
            return

        metrics_dir = Path(metrics_config.get("folder", "data/powerflow/metrics"))
        metrics_dir.mkdir(parents=True, exist_ok=True)
        self.csv_file_path = metrics_dir / f"{datetime.now().strftime('%Y%m%d')}.csv"

        try:
            file_exists = self.csv_file_path.exists()
            self.csv_file = open(self.csv_file_path, "a" if file_exists else "w", newline="", buffering=1)
            self.csv_writer = csv.DictWriter(self.csv_file, fieldnames=CSV_HEADERS)
            if not file_exists:
                self.csv_writer.writeheader()
                self.csv_file.flush()
                logger.info(f"Metrics logging initialized (new file): {self.csv_file_path}")
            else:
                logger.info(f"Metrics logging initialized (appending to existing): {self.csv_file_path}")
        except OSError as e:
            logger.error(f"Failed to initialize metrics logging: {e}")
            self.csv_file = None
            self.csv_writer = None

    @property
    def enabled(self) -> bool:
        return self.csv_writer is not None

    def log_snapshot(self, snapshot: PowerSnapshot, notes: str = "") -> None:
        if not self.csv_writer or not self.csv_file:
            return

        level_known = snapshot.battery_level_available
        row = {
            "timestamp": datetime.fromtimestamp(snapshot.timestamp).isoformat(),
            "power_state": snapshot.power_state_label,
            "battery_level_percent": snapshot.battery_level if level_known else None,
            "battery_level_precise": _optional(snapshot.battery_level_precise if level_known else None),
            "system_in_w": round(snapshot.system_in, 2),
            "system_load_w": round(snapshot.system_load, 2),
            "battery_power_w": round(snapshot.battery_power, 2),
            "battery_power_source": snapshot.battery_power_source,
            "adapter_power_w": round(snapshot.adapter_power, 2),
            "screen_power_w": _optional(snapshot.screen_power if snapshot.screen_power_available else None),
            "package_power_w": _optional(snapshot.package_power if snapshot.package_power_available else None),
            "temperature_c": _optional(snapshot.temperature_c, 1),
            "temperature_source": snapshot.temperature_source,
            "battery_health_percent": _optional(snapshot.battery_health_percent, 1),
            "time_remaining_min": snapshot.time_remaining_minutes,
            "balance_mismatch_w": round(snapshot.power_balance_mismatch, 2),
            "notes": notes,
        }
        try:
            self.csv_writer.writerow(row)
            self.csv_file.flush()
            logger.debug(
                f"Logged snapshot: in={snapshot.system_in:.1f}W load={snapshot.system_load:.1f}W "
                f"batt={snapshot.battery_power:+.1f}W"
            )
        except (OSError, ValueError) as e:
            logger.error(f"Failed to log metrics: {e}")

    def close(self) -> None:
        """Close CSV file and cleanup resources."""
        if self.csv_file:
            try:
                self.csv_file.close()
                logger.info(f"Metrics logging closed: {self.csv_file_path}")
            except OSError as e:
                logger.error(f"Error closing metrics file: {e}")
            finally:
                self.csv_file = None
                self.csv_writer = None

    def __del__(self) -> None:
        self.close()

"""Main entry point for Powerflow."""

import argparse
import asyncio
import logging

from powerflow.config import load_config
from powerflow.core import PowerflowManager
from powerflow.models import PowerSnapshot
from powerflow.reconcile import flow_direction


class ConditionalFormatter(logging.Formatter):
    def format(self, record):
        if record.levelno >= logging.DEBUG and record.levelno < logging.INFO:
            # Debug level: show module name
            self._style._fmt = "%(asctime)s %(name)s %(message)s"
        else:
            self._style._fmt = "%(asctime)s %(message)s"
        return super().format(record)


logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        datefmt="%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler()],
    )
    formatter = ConditionalFormatter(datefmt="%m-%d %H:%M:%S")
    for handler in logging.getLogger().handlers:
        handler.setFormatter(formatter)


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Powerflow - laptop power flow monitor (adapter -> system -> battery)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", help="Path to config YAML (default: POWERFLOW_CONFIG or config.yaml)")
    parser.add_argument("--registers", help="Replay a YAML register dump instead of live registers")
    parser.add_argument("--properties", help="Read the device-property bag from a YAML file")
    parser.add_argument("--model", help="Hardware model identifier for calibration records")
    parser.add_argument("--visible", action="store_true", help="Sample as if the detailed view is shown")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def describe_snapshot(snapshot: PowerSnapshot) -> str:
    direction = flow_direction(snapshot)
    arrow = "⬆️" if direction.charging else "⬇️"
    parts = [
        f"{snapshot.power_state_label}",
        f"🔋 {snapshot.battery_level_precise:.1f}%" if snapshot.battery_level_available else "🔋 --",
        f"in {snapshot.system_in:.1f}W",
        f"load {snapshot.system_load:.1f}W",
        f"batt {arrow} {direction.magnitude:.1f}W",
    ]
    if snapshot.screen_power_available:
        parts.append(f"screen {snapshot.screen_power:.1f}W")
    if snapshot.temperature_c is not None:
        parts.append(f"🌡️ {snapshot.temperature_c:.0f}°C ({snapshot.temperature_source})")
    if snapshot.time_remaining_minutes is not None:
        hours, minutes = divmod(snapshot.time_remaining_minutes, 60)
        parts.append(f"{hours}:{minutes:02d} left")
    return " | ".join(parts)


async def main(argv=None) -> None:
    """Main application loop."""
    args = parse_args(argv)
    config = load_config(args.config)
    if args.registers:
        config["sources"]["registers"] = {"kind": "static", "path": args.registers}
    if args.properties:
        config["sources"]["properties"] = {"kind": "static", "path": args.properties}
    if args.visible:
        config["display"]["visible"] = True

    setup_logging("DEBUG" if args.debug else config.get("logging", {}).get("level", "INFO"))

    manager = PowerflowManager(config, model_id=args.model)
    manager.subscribe(lambda snapshot: logger.info(describe_snapshot(snapshot)))

    try:
        await manager.start()
        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Shutting down Powerflow")
    finally:
        await manager.stop()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()

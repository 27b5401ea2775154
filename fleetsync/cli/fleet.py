"""fleetsync CLI entrypoint.

Subcommands:
    run     connect to a push channel and print periodic status lines (JSON)
    config  print the resolved configuration (defaults < file < env < --set)
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import sys
import time
from pathlib import Path
from typing import Any, Mapping, Optional

import orjson
from pydantic import BaseModel

from fleetsync import __version__
from fleetsync.config.config_loader import ConfigLoader
from fleetsync.config.configs import RealtimeConfig
from fleetsync.core.bus import Event
from fleetsync.errors.errors import RealtimeError
from fleetsync.realtime.manager import RealtimeManager

logger = logging.getLogger(__name__)

LOG_LEVEL_CHOICES = ("DEBUG", "INFO", "WARNING", "ERROR")


def build_parser() -> argparse.ArgumentParser:
    """
    Return the top-level CLI argument parser.
    """
    p = argparse.ArgumentParser(prog="fleetsync")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = p.add_subparsers(dest="command", required=True)

    def add_common(sp: argparse.ArgumentParser) -> None:
        """Add arguments shared across all subcommands."""
        sp.add_argument("--config", type=Path, required=False, help="Path to a TOML config file")
        sp.add_argument(
            "--set",
            dest="config_overrides",
            action="append",
            default=[],
            metavar="KEY=VALUE",
            help="Override a config entry, e.g. queue.max_retries=5 (may be repeated)",
        )
        sp.add_argument("--url", help="Push channel URL (shorthand for --set connection.url=...)")
        sp.add_argument(
            "--log-level", default="INFO", choices=LOG_LEVEL_CHOICES, help="Logging level"
        )

    run = sub.add_parser("run", help="Connect and print periodic status")
    add_common(run)
    run.add_argument(
        "--duration", type=float, default=None, help="Seconds to run (default: until Ctrl-C)"
    )
    run.add_argument(
        "--status-interval", type=float, default=10.0, help="Seconds between status lines"
    )

    cfg = sub.add_parser("config", help="Print the resolved configuration")
    add_common(cfg)
    return p


def load_config(
    args: argparse.Namespace, environ: Optional[Mapping[str, str]] = None
) -> RealtimeConfig:
    """Resolve defaults, the --config file, FLEETSYNC_* env vars and --set flags."""
    overrides = list(args.config_overrides)
    if args.url:
        overrides.append(f"connection.url={args.url}")
    return ConfigLoader().load_realtime_config(args.config, overrides=overrides, environ=environ)


def config_to_dict(config: RealtimeConfig) -> dict[str, Any]:
    return dataclasses.asdict(config)


def _default(obj: Any) -> Any:
    if isinstance(obj, BaseModel):
        return obj.model_dump()
    return str(obj)


def _dumps(obj: Any, *, indent: bool = False) -> str:
    option = orjson.OPT_INDENT_2 if indent else 0
    return orjson.dumps(obj, option=option | orjson.OPT_SORT_KEYS, default=_default).decode()


def status_line(status: Mapping[str, Any]) -> dict[str, Any]:
    """The subset of get_system_status() printed by `run`."""
    store = status["store"]
    queue = status["queue"]
    return {
        "state": status["state"],
        "connection": status["connection"]["state"],
        "reconnect_attempts": status["connection"]["reconnect_attempts"],
        "version": store["version"],
        "vehicles": store["vehicles"],
        "positions": store["total_positions"],
        "queued": queue["current_queue_size"],
        "retrying": queue["retry_queue_size"],
        "failed": queue["total_failed"],
        "healthy": status["health"]["healthy"],
    }


async def run_realtime(
    config: RealtimeConfig,
    *,
    duration_s: Optional[float] = None,
    status_interval_s: float = 10.0,
    manager: Optional[RealtimeManager] = None,
) -> int:
    """Run the engine, printing a status line every status_interval_s."""
    manager = manager or RealtimeManager(config)

    def on_alert(event: Event) -> None:
        print(_dumps({"alert": event.topic, "payload": event.payload}), flush=True)

    manager.on("alerts.*", on_alert)
    try:
        await manager.start()
        deadline = None if duration_s is None else time.monotonic() + duration_s
        while True:
            wait_s = status_interval_s
            if deadline is not None:
                wait_s = min(wait_s, deadline - time.monotonic())
                if wait_s <= 0:
                    break
            await asyncio.sleep(wait_s)
            print(_dumps(status_line(manager.get_system_status())), flush=True)
    finally:
        await manager.destroy()
    return 0


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint wrapper compatible with setuptools scripts."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config(args)
    except (RealtimeError, FileNotFoundError, ValueError) as e:
        print(f"fleetsync: {e}", file=sys.stderr)
        return 2

    if args.command == "config":
        print(_dumps(config_to_dict(config), indent=True))
        return 0

    try:
        return asyncio.run(
            run_realtime(
                config, duration_s=args.duration, status_interval_s=args.status_interval
            )
        )
    except RealtimeError as e:
        print(f"fleetsync: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())

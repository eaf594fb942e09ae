#!/usr/bin/env python3
"""
CLI for the process watcher.

Usage:
    procwatch run --handlers ./handlers
    procwatch scan --handlers ./handlers
    procwatch ps --handlers ./handlers
    procwatch init --handlers ./handlers
"""

import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .config import MonitorConfig
from .engine import MonitorEngine
from .event_source import find_processes
from .registry import scan

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger("procwatch.cli")


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> None:
    """
    Configure the root logger.

    Args:
        verbose: Log DEBUG messages to the console
        log_file: Also write DEBUG-level logs to this file
    """
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # watchdog is chatty at DEBUG
    logging.getLogger("watchdog").setLevel(logging.INFO)


class GracefulShutdown:
    """Stop the engine on SIGINT/SIGTERM."""

    def __init__(self, engine: MonitorEngine):
        self.engine = engine
        signal.signal(signal.SIGINT, self._handler)
        signal.signal(signal.SIGTERM, self._handler)

    def _handler(self, signum, frame):
        logger.info("Received shutdown signal, stopping...")
        self.engine.stop()


def build_config(args) -> MonitorConfig:
    """Environment defaults overridden by command line flags."""
    config = MonitorConfig.from_env()
    if getattr(args, "handlers", None):
        config.handlers_dir = Path(args.handlers)
    if getattr(args, "poll_interval", None) is not None:
        config.poll_interval_s = args.poll_interval
    if getattr(args, "settle_ms", None) is not None:
        config.settle_delay_ms = args.settle_ms
    if getattr(args, "polling_only", False):
        config.prefer_native = False
    config.handlers_dir = config.handlers_dir.resolve()
    return config


def cmd_run(args) -> int:
    """Run the monitoring engine until interrupted."""
    config = build_config(args)
    handlers_dir = config.handlers_dir

    if handlers_dir.exists() and not handlers_dir.is_dir():
        logger.error(f"Handlers path is not a directory: {handlers_dir}")
        return 1
    if not handlers_dir.exists():
        logger.warning(f"Handlers directory does not exist yet: {handlers_dir}")

    engine = MonitorEngine(config=config)
    GracefulShutdown(engine)

    logger.info(f"Handlers directory: {handlers_dir}")
    logger.info("Press Ctrl+C to stop")
    engine.start()
    return 0


def cmd_scan(args) -> int:
    """Print the handler table and watch list."""
    config = build_config(args)
    registry = scan(config.handlers_dir, config)

    if not len(registry):
        print(f"No handlers found in {config.handlers_dir}")
        return 0

    print(f"\nHandlers in {config.handlers_dir}:\n")
    for entry in registry.entries():
        print(f"  {entry.process_name:<24} {entry.kind.value:<10} {entry.script_path.name}")
    print(f"\nWatch list: {', '.join(registry.watch_list)}")
    return 0


def cmd_ps(args) -> int:
    """List running processes that match the watch list."""
    config = build_config(args)
    registry = scan(config.handlers_dir, config)
    processes = find_processes(registry.watch_list, config)

    if not processes:
        print("No watched processes running.")
        return 0

    for info in sorted(processes, key=lambda p: (p.name, p.pid)):
        print(f"  {info.name:<24} {info.pid:>8}  {info.exe}")
    return 0


def cmd_init(args) -> int:
    """Create the handlers directory and its examples folder."""
    config = build_config(args)
    examples = config.handlers_dir / config.examples_dirname
    examples.mkdir(parents=True, exist_ok=True)
    print(f"Handlers directory ready: {config.handlers_dir}")
    print(f"Examples folder (never scanned): {examples}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="procwatch",
        description="Run handler scripts when watched processes start or stop",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Handler files:
  <name>.<ext>        runs on start and stop of <name>
  start.<name>.<ext>  runs when <name> starts
  end.<name>.<ext>    runs when <name> stops

Examples:
  # Watch processes using handlers in ./handlers
  procwatch run --handlers ./handlers

  # Show which processes would be watched
  procwatch scan --handlers ./handlers
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the monitoring engine")
    run_parser.add_argument("--handlers", default=None, help="Handlers directory (or PROCWATCH_HANDLERS_DIR)")
    run_parser.add_argument("--poll-interval", type=float, default=None, help="Polling interval in seconds")
    run_parser.add_argument("--settle-ms", type=int, default=None, help="Settle delay after handler changes in ms")
    run_parser.add_argument("--polling-only", action="store_true", help="Skip native process notifications")
    run_parser.add_argument("--log-file", default=None, help="Also write debug logs to this file")
    run_parser.set_defaults(func=cmd_run)

    scan_parser = subparsers.add_parser("scan", help="List handlers and the resulting watch list")
    scan_parser.add_argument("--handlers", default=None, help="Handlers directory (or PROCWATCH_HANDLERS_DIR)")
    scan_parser.set_defaults(func=cmd_scan)

    ps_parser = subparsers.add_parser("ps", help="List running processes on the watch list")
    ps_parser.add_argument("--handlers", default=None, help="Handlers directory (or PROCWATCH_HANDLERS_DIR)")
    ps_parser.set_defaults(func=cmd_ps)

    init_parser = subparsers.add_parser("init", help="Create the handlers directory")
    init_parser.add_argument("--handlers", default=None, help="Handlers directory (or PROCWATCH_HANDLERS_DIR)")
    init_parser.set_defaults(func=cmd_init)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)

    log_file = Path(args.log_file) if getattr(args, "log_file", None) else None
    setup_logging(verbose=args.verbose, log_file=log_file)

    sys.exit(args.func(args))


if __name__ == "__main__":
    main()

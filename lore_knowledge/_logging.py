"""Logging setup for the CLI and the sync daemon."""

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

# Daemon log tags, registered as level names so daemon.log lines read
# "[2024-01-01 12:00:00] SYNC  Sync complete: ...".
START = 21
STOP = 22
SYNC = 23
INDEX = 24
FILE = 25
PULL = 26

_LEVEL_NAMES = {
    START: "START",
    STOP: "STOP",
    SYNC: "SYNC",
    INDEX: "INDEX",
    FILE: "FILE",
    PULL: "PULL",
    logging.WARNING: "WARN",
    logging.CRITICAL: "FATAL",
}

DAEMON_LOG_FORMAT = "[%(asctime)s] %(levelname)-5s %(message)s"
DAEMON_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_PACKAGE_LOGGER = "lore_knowledge"


def register_level_names() -> None:
    for level, name in _LEVEL_NAMES.items():
        logging.addLevelName(level, name)


def configure_daemon_logging(log_file: Path, level: int = logging.INFO) -> logging.Handler:
    """Send package logs to the append-only daemon log file.

    Args:
        log_file: Path of daemon.log.
        level: Minimum level written.

    Returns:
        The installed file handler.
    """
    register_level_names()
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file, encoding="utf-8")
    handler.setFormatter(logging.Formatter(DAEMON_LOG_FORMAT, datefmt=DAEMON_DATE_FORMAT))

    root = logging.getLogger(_PACKAGE_LOGGER)
    root.handlers = [h for h in root.handlers if not isinstance(h, logging.FileHandler)]
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False
    return handler


def configure_cli_logging(verbose: bool = False) -> None:
    """Render package warnings (or everything, when verbose) on stderr."""
    register_level_names()
    handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        show_time=verbose,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))

    root = logging.getLogger(_PACKAGE_LOGGER)
    root.handlers = [h for h in root.handlers if not isinstance(h, RichHandler)]
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.propagate = False

    # Quiet noisy libraries
    for name in ("chromadb", "httpx", "sentence_transformers", "watchdog"):
        logging.getLogger(name).setLevel(logging.WARNING)

"""
Logging for bidledger.

Every subsystem logs under the ``bidledger`` namespace (``bidledger.ledger``,
``bidledger.auction``, ``bidledger.sweeper``...). Records carry the thread
name because request threads and the timeout sweeper write side by side.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union

import colorlog

ROOT_NAME = "bidledger"
LOG_FILE = "bidledger.log"

_DATEFMT = "%Y-%m-%d %H:%M:%S"
_LEVEL_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}


def _resolve_level(level: Union[int, str]) -> int:
    """Accept logging constants or names such as "debug"."""
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level}")
        return resolved
    return level


def _console_handler(level: int) -> logging.Handler:
    handler = colorlog.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(colorlog.ColoredFormatter(
        "%(log_color)s%(asctime)s [%(name)s/%(threadName)s] %(levelname)-8s%(reset)s %(message)s",
        datefmt=_DATEFMT,
        log_colors=_LEVEL_COLORS,
    ))
    return handler


def _file_handler(log_dir: Path, level: int) -> logging.Handler:
    handler = logging.FileHandler(log_dir / LOG_FILE)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s [%(name)s/%(threadName)s] %(levelname)-8s %(message)s",
        datefmt=_DATEFMT,
    ))
    return handler


class BidLedgerLogger:
    """Owns the handlers of the bidledger logger tree"""

    _initialized = False
    _log_dir: Optional[Path] = None

    @classmethod
    def setup(
        cls,
        level: Union[int, str] = logging.INFO,
        log_dir: Optional[str] = None,
        log_to_file: bool = False,
        force: bool = False,
    ):
        """
        Attach console (and optionally file) handlers to the bidledger root.

        The first call wins unless force is set; the CLI forces so its
        --debug/--log-file flags apply after modules have fetched loggers.
        Replaced handlers are closed so no log file stays open.
        """
        if cls._initialized and not force:
            return

        level = _resolve_level(level)
        root = logging.getLogger(ROOT_NAME)
        root.setLevel(level)
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()

        root.addHandler(_console_handler(level))

        cls._log_dir = None
        if log_to_file:
            cls._log_dir = Path(log_dir) if log_dir else Path("logs")
            cls._log_dir.mkdir(parents=True, exist_ok=True)
            root.addHandler(_file_handler(cls._log_dir, level))

        cls._initialized = True

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        if not cls._initialized:
            cls.setup()
        return logging.getLogger(f"{ROOT_NAME}.{name}")


def get_logger(name: str) -> logging.Logger:
    """Logger for one subsystem, e.g. get_logger("ledger") -> bidledger.ledger"""
    return BidLedgerLogger.get_logger(name)


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_dir: Optional[str] = None,
    log_to_file: bool = False,
):
    """(Re)configure logging; always replaces the current handlers"""
    BidLedgerLogger.setup(level=level, log_dir=log_dir, log_to_file=log_to_file, force=True)

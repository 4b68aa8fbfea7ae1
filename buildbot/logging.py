# buildbot/logging.py
# -*- coding: utf-8 -*-
"""
Build bot logging

Features:
 - Console color formatter
 - Run log file handler (buildbot.log under the workspace root)
 - Per-module log level thresholds (logging.module_levels)
 - LoggerAdapter per module injecting 'buildbot_module' into records
 - LogFollower thread that tails a log file to the console (host mode
   follows the run log written from inside the build VM)
"""

from __future__ import annotations

import sys
import time
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO

_logger = logging.getLogger("buildbot.logging")


# ----------------------
# Console formatter
# ----------------------
_LEVEL_COLORS = {
    "DEBUG": "2",         # dim
    "INFO": "36",         # cyan
    "WARNING": "33;1",    # bold yellow
    "ERROR": "31;1",      # bold red
    "CRITICAL": "37;41",  # white on red
}


class ColorFormatter(logging.Formatter):
    """Paints the level name only; the message text stays uncolored."""

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, color: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.color = color

    def format(self, record):
        if not self.color or record.levelname not in _LEVEL_COLORS:
            return super().format(record)
        painted = logging.makeLogRecord(record.__dict__)
        painted.levelname = f"\033[{_LEVEL_COLORS[record.levelname]}m{record.levelname}\033[0m"
        return super().format(painted)


# ----------------------
# Filter
# ----------------------
class ModuleFilter(logging.Filter):
    """
    Tags every record with 'buildbot_module' (records from plain loggers such
    as buildbot.config get the last name component) and drops records below
    the threshold configured for that module in logging.module_levels.
    """

    def __init__(self, module_levels: Optional[Dict[str, str]] = None):
        super().__init__()
        self.thresholds = {module: _level(level, logging.INFO) for module, level in (module_levels or {}).items()}

    def filter(self, record):
        module = getattr(record, "buildbot_module", None)
        if module is None:
            module = record.buildbot_module = record.name.rsplit(".", 1)[-1]
        return record.levelno >= self.thresholds.get(module, logging.NOTSET)


def _level(name: Any, default: int) -> int:
    value = logging.getLevelName(str(name).upper())
    return value if isinstance(value, int) else default


# ----------------------
# BuildbotLogger (singleton)
# ----------------------
class BuildbotLogger:
    _instance = None
    _singleton_lock = threading.Lock()

    def __new__(cls):
        with cls._singleton_lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._inited = False
        return cls._instance

    def __init__(self):
        if self._inited:
            return
        self._lock = threading.RLock()
        self._root = logging.getLogger("buildbot")
        self._root.setLevel(logging.DEBUG)  # handlers filter
        self._handlers: List[logging.Handler] = []
        self._inited = True

    def configure(self, cfg: Optional[Dict[str, Any]] = None, log_file: Optional[Path] = None,
                  stream: Optional[TextIO] = None) -> None:
        """(Re)install console and run-log handlers from the logging config section."""
        cfg = cfg or {}
        with self._lock:
            for h in self._handlers:
                self._root.removeHandler(h)
                h.close()
            self._handlers = []

            fmt = cfg.get("format") or "[%(asctime)s] [%(levelname)s] [%(buildbot_module)s] %(message)s"
            datefmt = cfg.get("datefmt", "%H:%M:%S")
            module_filter = ModuleFilter(cfg.get("module_levels"))

            stream = stream or sys.stderr
            # colors default to on for terminals only
            color = cfg.get("color")
            if color is None:
                color = hasattr(stream, "isatty") and stream.isatty()
            ch = logging.StreamHandler(stream)
            ch.setLevel(_level(cfg.get("level", "INFO"), logging.INFO))
            ch.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=bool(color)))
            self._handlers.append(ch)

            if log_file is not None:
                log_file = Path(log_file)
                log_file.parent.mkdir(parents=True, exist_ok=True)
                fh = logging.FileHandler(str(log_file), mode="a", encoding="utf-8")
                fh.setLevel(_level(cfg.get("file_level", "DEBUG"), logging.DEBUG))
                fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(buildbot_module)s] %(message)s"))
                self._handlers.append(fh)

            for h in self._handlers:
                h.addFilter(module_filter)
                self._root.addHandler(h)
            _logger.debug("logging: configuration applied (log_file=%s)", log_file)

    def get_logger(self, module_name: str) -> logging.LoggerAdapter:
        """Return a LoggerAdapter that injects 'buildbot_module' into records."""
        return logging.LoggerAdapter(logging.getLogger("buildbot"), {"buildbot_module": module_name})


# ----------------------
# Log follower (tail -f)
# ----------------------
class LogFollower(threading.Thread):
    """
    Echo lines appended to `path` until stop() is called. Lines written by
    the build VM into the shared run log show up on the host console.
    """

    def __init__(self, path: Path, out: Optional[TextIO] = None, interval: float = 0.5):
        super().__init__(daemon=True)
        self.path = Path(path)
        self.out = out or sys.stdout
        self.interval = interval
        self._stop_event = threading.Event()
        self._position = self.path.stat().st_size if self.path.exists() else 0

    def _drain(self) -> None:
        if not self.path.exists():
            return
        size = self.path.stat().st_size
        if size < self._position:
            # truncated underneath us
            self._position = 0
        with open(self.path, "rb") as fh:
            fh.seek(self._position)
            data = fh.read()
        self._position += len(data)
        if data:
            self.out.write(data.decode("utf-8", errors="replace"))
            self.out.flush()

    def run(self):
        while not self._stop_event.is_set():
            self._drain()
            time.sleep(self.interval)
        self._drain()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout)


# ----------------------
# Public factory
# ----------------------
_GLOBAL_LOGGER = BuildbotLogger()


def get_logger(module: str) -> logging.LoggerAdapter:
    return _GLOBAL_LOGGER.get_logger(module)


def configure(cfg: Optional[Dict[str, Any]] = None, log_file: Optional[Path] = None,
              stream: Optional[TextIO] = None) -> None:
    _GLOBAL_LOGGER.configure(cfg, log_file=log_file, stream=stream)

# cratepack/logging.py
# -*- coding: utf-8 -*-
"""
cratepack logging

Features:
 - Reads the `logging` section of cratepack.config
 - Console color formatter
 - Rotating file handler
 - JSONL transparency log (one record per line, optional fsync)
 - Module-level configurable log levels (module_levels)
 - Per-level counters for end-of-run summaries
"""

from __future__ import annotations
import os
import sys
import json
import time
import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Dict, Any, Optional, List

from cratepack.config import get_config

_logger = logging.getLogger("cratepack.logging")


# ----------------------
# Color formatter
# ----------------------
class ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: "\033[37m",    # light gray
        logging.INFO: "\033[36m",     # cyan
        logging.WARNING: "\033[33m",  # yellow
        logging.ERROR: "\033[31m",    # red
        logging.CRITICAL: "\033[41;37m",  # white on red
    }
    RESET = "\033[0m"

    def __init__(self, fmt: str = None, datefmt: str = None, color: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.color = color

    def format(self, record):
        if not hasattr(record, "cratepack_module"):
            record.cratepack_module = record.name
        msg = super().format(record)
        if self.color:
            return f"{self.COLORS.get(record.levelno, '')}{msg}{self.RESET}"
        return msg


# ----------------------
# JSONL formatter for transparency log
# ----------------------
class JSONLineFormatter(logging.Formatter):
    def format(self, record):
        obj = {
            "timestamp": time.time(),
            "level": record.levelname,
            "module": getattr(record, "cratepack_module", record.name),
            "message": record.getMessage(),
        }
        node = getattr(record, "node", None)
        if node:
            obj["node"] = node
        if record.exc_info:
            obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False)


# ----------------------
# Module-level filter for per-module levels
# ----------------------
class ModuleLevelFilter(logging.Filter):
    def __init__(self, module_levels: Dict[str, str]):
        super().__init__()
        self.module_levels = {m: getattr(logging, str(lvl).upper(), logging.INFO)
                              for m, lvl in (module_levels or {}).items()}

    def filter(self, record):
        mod = getattr(record, "cratepack_module", None)
        if mod and mod in self.module_levels:
            return record.levelno >= self.module_levels[mod]
        return True


class _FsyncFileHandler(logging.FileHandler):
    def __init__(self, filename: str, fsync: bool = False):
        super().__init__(filename, encoding="utf-8")
        self._fsync = fsync

    def emit(self, record):
        super().emit(record)
        if self._fsync and self.stream:
            try:
                os.fsync(self.stream.fileno())
            except OSError:
                pass


# ----------------------
# CratepackLogger (singleton)
# ----------------------
class CratepackLogger:
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
        self._root = logging.getLogger("cratepack")
        self._root.setLevel(logging.DEBUG)
        self._handlers: List[logging.Handler] = []
        self._module_filter: Optional[ModuleLevelFilter] = None
        self._metrics: Dict[str, int] = {lvl: 0 for lvl in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")}
        self._jsonl_path: Optional[Path] = None
        self._root.addFilter(self._count_levels_filter)
        self._inited = True
        self.configure(get_config().merged.get("logging", {}))

    def _count_levels_filter(self, record):
        name = record.levelname
        if name in self._metrics:
            self._metrics[name] += 1
        return True

    # ----------------------
    # Configuration
    # ----------------------
    def configure(self, cfg: Dict[str, Any]):
        """(Re)build handlers from a `logging` config section."""
        with self._lock:
            for h in list(self._handlers):
                self._root.removeHandler(h)
                h.close()
            self._handlers.clear()
            if self._module_filter is not None:
                self._root.removeFilter(self._module_filter)
            self._module_filter = ModuleLevelFilter(cfg.get("module_levels", {}) or {})
            self._root.addFilter(self._module_filter)

            level = getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO)
            fmt = cfg.get("format") or "[%(asctime)s] [%(levelname)s] [%(cratepack_module)s] %(message)s"
            datefmt = cfg.get("datefmt", "%H:%M:%S")

            console_cfg = cfg.get("console", {"enabled": True}) or {}
            if console_cfg.get("enabled", True):
                ch = logging.StreamHandler(sys.stderr)
                ch.setLevel(level)
                ch.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=bool(cfg.get("color", True))))
                self._root.addHandler(ch)
                self._handlers.append(ch)

            if cfg.get("file"):
                try:
                    file_path = Path(cfg["file"]).expanduser()
                    file_path.parent.mkdir(parents=True, exist_ok=True)
                    max_bytes = _parse_size(cfg.get("max_size", "10M"))
                    fh = logging.handlers.RotatingFileHandler(
                        str(file_path), maxBytes=max_bytes or 10 * 1024 * 1024,
                        backupCount=int(cfg.get("backups", 5)), encoding="utf-8")
                    fh.setLevel(getattr(logging, str(cfg.get("file_level", "DEBUG")).upper(), logging.DEBUG))
                    fh.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=False))
                    self._root.addHandler(fh)
                    self._handlers.append(fh)
                except OSError:
                    _logger.exception("logging: failed to configure file handler")

            jsonl_cfg = cfg.get("jsonl", {}) or {}
            if jsonl_cfg.get("enabled"):
                try:
                    path = Path(jsonl_cfg.get("path", "~/.cache/cratepack/transparency.jsonl")).expanduser()
                    path.parent.mkdir(parents=True, exist_ok=True)
                    jh = _FsyncFileHandler(str(path), fsync=bool(jsonl_cfg.get("fsync", False)))
                    jh.setLevel(getattr(logging, str(jsonl_cfg.get("level", "INFO")).upper(), logging.INFO))
                    jh.setFormatter(JSONLineFormatter())
                    self._root.addHandler(jh)
                    self._handlers.append(jh)
                    self._jsonl_path = path
                except OSError:
                    _logger.exception("logging: failed to configure jsonl handler")
            else:
                self._jsonl_path = None

            self._root.setLevel(min(level, logging.DEBUG if cfg.get("file") else level))

    def set_level(self, level: str):
        lvl = getattr(logging, level.upper(), logging.INFO)
        with self._lock:
            self._root.setLevel(lvl)
            for h in self._handlers:
                if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler):
                    h.setLevel(lvl)

    # ----------------------
    # Public API
    # ----------------------
    def get_logger(self, module_name: str) -> logging.LoggerAdapter:
        """Return a LoggerAdapter that injects 'cratepack_module' into records."""
        return logging.LoggerAdapter(self._root, {"cratepack_module": module_name})

    def get_metrics(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._metrics)


def _parse_size(s: Any) -> Optional[int]:
    if s is None:
        return None
    if isinstance(s, int):
        return s
    ss = str(s).strip().upper()
    units = (("KB", 1024), ("K", 1024), ("MB", 1024**2), ("M", 1024**2), ("GB", 1024**3), ("G", 1024**3))
    try:
        for suffix, mul in units:
            if ss.endswith(suffix):
                return int(float(ss[: -len(suffix)]) * mul)
        return int(float(ss))
    except ValueError:
        _logger.debug("logging: parse size failed for %s", s)
        return None


# ----------------------
# Public factory
# ----------------------
_GLOBAL_LOGGER = CratepackLogger()


def get_logger(module: str) -> logging.LoggerAdapter:
    return _GLOBAL_LOGGER.get_logger(module)


def configure(cfg: Dict[str, Any]):
    return _GLOBAL_LOGGER.configure(cfg)


def set_level(level: str):
    return _GLOBAL_LOGGER.set_level(level)


def get_metrics() -> Dict[str, int]:
    return _GLOBAL_LOGGER.get_metrics()

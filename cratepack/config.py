# cratepack/config.py
# -*- coding: utf-8 -*-
"""
cratepack central configuration loader

Features:
- Read YAML/JSON config from multiple locations (explicit, env override, cwd, user, system)
- Merge with authoritative DEFAULTS, normalize/coerce types and expand paths
- Validate structure and types, warn or raise ConfigurationError (fatal optional)
- Dotted access via the Config dataclass (get_config())
- RunConfig: the explicit per-invocation state handed to the orchestrator
"""

from __future__ import annotations
import os
import json
import logging
import threading
from pathlib import Path
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, List, Tuple

import yaml

from cratepack.errors import ConfigurationError

logger = logging.getLogger("cratepack.config")

# ----------------------------
# DEFAULT configuration (authoritative base)
# ----------------------------
DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
        "file": None,
        "color": True,
        "max_size": "10M",
        "module_levels": {},
        "jsonl": {"enabled": False},
    },
    "build": {
        "output_dir": "./output",
        "keep_files": False,
        "keep_work_dirs": False,
        "timeout": 3600,
    },
    "resolver": {
        "index_url": "https://index.crates.io",
        "http_timeout": 30,
        "allow_prerelease": False,
        "include_platform_gated": True,
        "local_index": None,
    },
    "sources": {
        "download_url": "https://static.crates.io/crates",
        "cache_dir": "~/.cache/cratepack/crates",
        "http_timeout": 60,
    },
    "overlays": {
        "config_dir": None,
        "fallback_name": "old-version",
        # suffix-differs | always | never
        "fallback_policy": "suffix-differs",
    },
    "packaging": {
        "command": ["debcargo", "package", "--no-overlay-write-back",
                    "--directory", "{directory}", "{config_args}", "{extra_args}",
                    "{name}", "{version}"],
        "extra_args": [],
        "env": {"DEBCARGO_FORCE_FOR_TESTING": "1"},
        "test_command": None,
        "install_command": None,
        "suppress_test": False,
        "suppress_install_check": False,
        "source_build": True,
        "source_build_command": ["dpkg-buildpackage", "-d", "-S", "--no-sign"],
    },
    "policy": {
        "allow_failures": None,
        "failures_file": None,
    },
    "lint": {
        "enabled": True,
        "command": ["lintian", "-EIL", "+pedantic"],
        "suppress_tags_file": None,
    },
    "sandbox": {
        "enabled": False,
        "chroot": None,
        "arch": None,
        "command": ["sbuild", "--arch-all", "--arch-any", "--no-run-lintian",
                    "--build-dep-resolver=aspcud", "-d", "unstable", "--extra-package=."],
    },
}


# ----------------------------
# Dataclass to hold config
# ----------------------------
@dataclass
class Config:
    raw: Dict[str, Any] = field(default_factory=dict)     # values loaded from file (if any)
    merged: Dict[str, Any] = field(default_factory=dict)  # merged with DEFAULTS
    path: Optional[Path] = None

    def get(self, path: str, default: Any = None) -> Any:
        """Dot-separated getter for merged config."""
        parts = path.split(".") if path else []
        cur: Any = self.merged
        for p in parts:
            if isinstance(cur, dict) and p in cur:
                cur = cur[p]
            else:
                return default
        return cur

    def section(self, name: str) -> Dict[str, Any]:
        val = self.merged.get(name)
        return deepcopy(val) if isinstance(val, dict) else {}

    def as_dict(self) -> Dict[str, Any]:
        return deepcopy(self.merged)


_CONFIG: Optional[Config] = None
_CONFIG_LOCK = threading.RLock()


# ----------------------------
# Utilities
# ----------------------------
def _expand_path(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    return os.path.abspath(os.path.expanduser(os.path.expandvars(str(val))))


def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    res = deepcopy(a)
    for k, v in b.items():
        if k in res and isinstance(res[k], dict) and isinstance(v, dict):
            res[k] = _deep_merge(res[k], v)
        else:
            res[k] = deepcopy(v)
    return res


def _find_candidates(explicit: Optional[str] = None) -> List[Path]:
    candidates: List[Path] = []
    env = os.environ.get("CRATEPACK_CONFIG")
    if explicit:
        candidates.append(Path(explicit))
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path.cwd() / "cratepack.yaml",
        Path.cwd() / "cratepack.yml",
        Path.cwd() / "cratepack.json",
        Path.home() / ".config" / "cratepack" / "config.yaml",
        Path("/etc") / "cratepack" / "config.yaml",
    ])
    return candidates


def _load_file(path: Path) -> Dict[str, Any]:
    try:
        txt = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"cannot read config {path}: {e}") from e
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(txt)
        else:
            data = yaml.safe_load(txt)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigurationError(f"cannot parse config {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"config {path} must contain a mapping at top level")
    return data


def _normalize_and_coerce(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Expand path fields and coerce basic types."""
    out = deepcopy(cfg)
    path_keys = [
        ("build", "output_dir"),
        ("sources", "cache_dir"),
        ("overlays", "config_dir"),
        ("policy", "allow_failures"),
        ("lint", "suppress_tags_file"),
        ("logging", "file"),
        ("resolver", "local_index"),
    ]
    for section, key in path_keys:
        ref = out.get(section)
        if isinstance(ref, dict) and isinstance(ref.get(key), str) and ref[key]:
            ref[key] = _expand_path(ref[key])

    for section, key in (("build", "timeout"), ("resolver", "http_timeout"), ("sources", "http_timeout")):
        ref = out.get(section)
        if isinstance(ref, dict) and key in ref:
            try:
                ref[key] = int(ref[key])
            except (TypeError, ValueError):
                logger.debug("config: cannot coerce %s.%s=%r", section, key, ref[key])

    pk = out.get("packaging")
    if isinstance(pk, dict) and isinstance(pk.get("extra_args"), str):
        pk["extra_args"] = pk["extra_args"].split()
    return out


def _validate_structure(cfg: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Return (ok, issues_list)."""
    issues: List[str] = []
    for k in cfg.keys():
        if k not in DEFAULTS:
            issues.append(f"Unknown top-level config key: {k}")
    for k, v in cfg.items():
        if k in DEFAULTS and not isinstance(v, dict):
            issues.append(f"{k} must be a mapping")
    timeout = cfg.get("build", {}).get("timeout")
    if not isinstance(timeout, int) or timeout < 0:
        issues.append("build.timeout must be integer >= 0")
    policy = cfg.get("overlays", {}).get("fallback_policy")
    if policy not in ("suffix-differs", "always", "never"):
        issues.append("overlays.fallback_policy must be one of suffix-differs, always, never")
    for section, key in (("packaging", "command"), ("packaging", "source_build_command"),
                         ("lint", "command"), ("sandbox", "command"), ("packaging", "extra_args")):
        val = cfg.get(section, {}).get(key)
        if val is not None and not isinstance(val, list):
            issues.append(f"{section}.{key} should be a list")
    return (len(issues) == 0, issues)


def _find_path(explicit: Optional[str] = None) -> Optional[Path]:
    if explicit and not Path(explicit).exists():
        raise ConfigurationError(f"config file not found: {explicit}")
    for p in _find_candidates(explicit):
        if p.exists():
            return p
    return None


def load(explicit_path: Optional[str] = None, fatal: bool = False,
         overrides: Optional[Dict[str, Any]] = None) -> Config:
    """
    Load and merge config. If fatal=True then structural validation failures raise.
    Returns Config object and installs it as the process default.
    """
    global _CONFIG
    with _CONFIG_LOCK:
        cfg_path = _find_path(explicit_path)
        raw: Dict[str, Any] = _load_file(cfg_path) if cfg_path else {}
        merged = _deep_merge(DEFAULTS, raw)
        if overrides:
            merged = _deep_merge(merged, overrides)
        normalized = _normalize_and_coerce(merged)
        ok, issues = _validate_structure(normalized)
        if not ok:
            msg = f"config: validation issues: {issues}"
            if fatal:
                raise ConfigurationError(msg)
            logger.warning(msg)
        _CONFIG = Config(raw=raw, merged=normalized, path=cfg_path)
        logger.debug("config: loaded merged config (from=%s)", str(cfg_path) if cfg_path else "<defaults>")
        return _CONFIG


def get_config() -> Config:
    global _CONFIG
    with _CONFIG_LOCK:
        if _CONFIG is None:
            try:
                _CONFIG = load()
            except ConfigurationError:
                logger.exception("config: initial load failed, using defaults")
                _CONFIG = Config(raw={}, merged=_normalize_and_coerce(DEFAULTS))
        return _CONFIG


# ----------------------------
# Per-invocation run state
# ----------------------------
@dataclass
class RunConfig:
    """Everything one orchestrated run needs; passed explicitly, never global."""
    output_dir: Path
    failures_file: Optional[Path] = None
    allow_list_file: Optional[Path] = None
    config_dir: Optional[Path] = None
    recursive: bool = False
    keep_files: bool = False
    keep_work_dirs: bool = False
    lint: bool = True
    sandbox: bool = False
    extra_args: List[str] = field(default_factory=list)
    suppress_test: bool = False
    suppress_install_check: bool = False
    timeout: Optional[int] = None

    def __post_init__(self):
        self.output_dir = Path(self.output_dir).expanduser().absolute()
        if self.failures_file is not None:
            ff = Path(self.failures_file).expanduser()
            # relative sinks live inside the output directory
            self.failures_file = ff if ff.is_absolute() else self.output_dir / ff
        if self.allow_list_file is not None:
            self.allow_list_file = Path(self.allow_list_file).expanduser().absolute()
        if self.config_dir is not None:
            self.config_dir = Path(self.config_dir).expanduser().absolute()

    @property
    def state_dir(self) -> Path:
        return self.output_dir / ".cratepack"

    @classmethod
    def from_config(cls, cfg: Config, **overrides) -> "RunConfig":
        """Build run state from a loaded Config, with explicit (CLI) values taking precedence."""
        values: Dict[str, Any] = {
            "output_dir": cfg.get("build.output_dir", "./output"),
            "failures_file": cfg.get("policy.failures_file"),
            "allow_list_file": cfg.get("policy.allow_failures"),
            "config_dir": cfg.get("overlays.config_dir"),
            "keep_files": bool(cfg.get("build.keep_files", False)),
            "keep_work_dirs": bool(cfg.get("build.keep_work_dirs", False)),
            "lint": bool(cfg.get("lint.enabled", True)),
            "sandbox": bool(cfg.get("sandbox.enabled", False)),
            "extra_args": list(cfg.get("packaging.extra_args", []) or []),
            "suppress_test": bool(cfg.get("packaging.suppress_test", False)),
            "suppress_install_check": bool(cfg.get("packaging.suppress_install_check", False)),
            "timeout": cfg.get("build.timeout") or None,
        }
        for k, v in overrides.items():
            if v is not None:
                values[k] = v
        return cls(**values)

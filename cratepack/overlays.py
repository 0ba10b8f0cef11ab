# cratepack/overlays.py
# -*- coding: utf-8 -*-
"""
Override overlays: per-crate patches, step suppressions and metadata corrections.

Layout under the overlay search path (config_dir):

    <config_dir>/<deb-src-name>/debian/
        patches/series          ordered patch list, `name.patch [-pN]` per line
        patches/*.patch
        debcargo.toml           metadata corrections for the packaging tool
        cratepack.yaml          `suppress: [test, install, ...]`

Lookup tries the versioned canonical name first, then the shared fallback
overlay (default `old-version`) according to the configured fallback policy.
"""

from __future__ import annotations
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from cratepack.config import get_config
from cratepack.errors import OverlayError
from cratepack.logging import get_logger
from cratepack.models import Node
from cratepack.naming import deb_src_name

logger = get_logger("overlays")

SUPPRESSIBLE_STEPS = ("package", "test", "install", "source-build", "lint", "sandbox")
FALLBACK_POLICIES = ("suffix-differs", "always", "never")


# ----------------------------
# Metadata corrections (debcargo.toml)
# ----------------------------
class SourceOverride(BaseModel):
    model_config = ConfigDict(extra="allow")

    section: Optional[str] = None
    policy: Optional[str] = None
    homepage: Optional[str] = None
    vcs_git: Optional[str] = None
    vcs_browser: Optional[str] = None
    build_depends: Optional[List[str]] = None


class PackageOverride(BaseModel):
    model_config = ConfigDict(extra="allow")

    summary: Optional[str] = None
    description: Optional[str] = None
    depends: Optional[List[str]] = None


class OverlayMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    bin: bool = True
    bin_name: str = "<default>"
    overlay: Optional[str] = None
    overlay_write_back: bool = True
    allow_prerelease_deps: bool = False
    source: Optional[SourceOverride] = None
    packages: Optional[Dict[str, PackageOverride]] = None


class OverlaySettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    suppress: List[str] = []

    @field_validator("suppress")
    @classmethod
    def _known_steps(cls, v: List[str]) -> List[str]:
        bad = [s for s in v if s not in SUPPRESSIBLE_STEPS]
        if bad:
            raise ValueError(f"cannot suppress {bad}; suppressible steps: {list(SUPPRESSIBLE_STEPS)}")
        return v


@dataclass(frozen=True)
class PatchEntry:
    path: Path
    strip: int = 1

    @property
    def name(self) -> str:
        return self.path.name


@dataclass(frozen=True, eq=False)
class Overlay:
    name: str
    path: Path
    patches: Tuple[PatchEntry, ...] = ()
    suppressed_steps: frozenset = field(default_factory=frozenset)
    metadata: Optional[OverlayMetadata] = None
    config_file: Optional[Path] = None
    fallback: bool = False

    @property
    def debian_dir(self) -> Path:
        return self.path / "debian"

    def suppresses(self, step: str) -> bool:
        return step in self.suppressed_steps


def _read_series(patch_dir: Path) -> Tuple[PatchEntry, ...]:
    series = patch_dir / "series"
    if not series.exists():
        return ()
    entries: List[PatchEntry] = []
    for lineno, line in enumerate(series.read_text(encoding="utf-8").splitlines(), 1):
        line = line.split("#", 1)[0].strip()
        if not line:
            continue
        fields = line.split()
        strip = 1
        for opt in fields[1:]:
            if opt.startswith("-p") and opt[2:].isdigit():
                strip = int(opt[2:])
            else:
                raise OverlayError(f"{series}:{lineno}: unsupported series option {opt!r}")
        p = patch_dir / fields[0]
        if not p.is_file():
            raise OverlayError(f"{series}:{lineno}: patch {fields[0]} not found")
        entries.append(PatchEntry(path=p, strip=strip))
    return tuple(entries)


def load_overlay(path: Path, fallback: bool = False) -> Overlay:
    """Read an overlay directory once; errors name the offending file."""
    debian = path / "debian"
    metadata = None
    config_file = None
    toml_path = debian / "debcargo.toml"
    if toml_path.exists():
        try:
            with open(toml_path, "rb") as fh:
                metadata = OverlayMetadata.model_validate(tomllib.load(fh))
        except (tomllib.TOMLDecodeError, ValidationError) as e:
            raise OverlayError(f"invalid {toml_path}: {e}") from e
        config_file = toml_path

    suppressed: frozenset = frozenset()
    settings_path = debian / "cratepack.yaml"
    if settings_path.exists():
        try:
            data = yaml.safe_load(settings_path.read_text(encoding="utf-8")) or {}
            suppressed = frozenset(OverlaySettings.model_validate(data).suppress)
        except (yaml.YAMLError, ValidationError) as e:
            raise OverlayError(f"invalid {settings_path}: {e}") from e

    return Overlay(
        name=path.name,
        path=path,
        patches=_read_series(debian / "patches"),
        suppressed_steps=suppressed,
        metadata=metadata,
        config_file=config_file,
        fallback=fallback,
    )


class OverlayLocator:
    def __init__(self, config_dir: Optional[Path], fallback_name: Optional[str] = None,
                 fallback_policy: Optional[str] = None):
        cfg = get_config()
        self.config_dir = Path(config_dir) if config_dir else None
        self.fallback_name = fallback_name or cfg.get("overlays.fallback_name", "old-version")
        self.fallback_policy = fallback_policy or cfg.get("overlays.fallback_policy", "suffix-differs")
        if self.fallback_policy not in FALLBACK_POLICIES:
            raise ValueError(f"unknown fallback policy {self.fallback_policy!r}")
        self._cache: Dict[Tuple[str, str, bool], Optional[Overlay]] = {}

    def _wants_fallback(self, name: str, version: Optional[str]) -> bool:
        if self.fallback_policy == "always":
            return True
        if self.fallback_policy == "never":
            return False
        return deb_src_name(name, version) != deb_src_name(name, None)

    def locate(self, name: str, version: Optional[str]) -> Optional[Path]:
        """Overlay directory for a crate, or None when packaging proceeds with defaults."""
        if self.config_dir is None:
            return None
        exact = self.config_dir / deb_src_name(name, version)
        if (exact / "debian").is_dir():
            return exact
        if self._wants_fallback(name, version):
            fb = self.config_dir / self.fallback_name
            if (fb / "debian").is_dir():
                return fb
        return None

    def for_node(self, node: Node) -> Optional[Overlay]:
        version = node.version if node.pinned else None
        key = (node.name, node.version, node.pinned)
        if key not in self._cache:
            path = self.locate(node.name, version)
            if path is None:
                self._cache[key] = None
            else:
                is_fallback = path.name == self.fallback_name
                overlay = load_overlay(path, fallback=is_fallback)
                logger.info("%s: using %soverlay %s", node.label, "fallback " if is_fallback else "", path)
                self._cache[key] = overlay
        return self._cache[key]

# cratepack/catalog.py
# -*- coding: utf-8 -*-
"""
Crate index access.

A Catalog answers one question: which releases of crate X exist, and what does
each declare (dependencies, features, yanked flag, checksum). Two providers:

- RegistryIndex: the crates.io sparse HTTP index (JSON lines per crate)
- LocalIndex: an in-memory or JSON-file mapping in the same record format
"""

from __future__ import annotations
from abc import ABC, abstractmethod
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import requests
import semantic_version

from cratepack.config import get_config
from cratepack.errors import ConfigurationError, ResolutionError
from cratepack.logging import get_logger

logger = get_logger("catalog")


def _normalize_name(name: str) -> str:
    # the index treats - and _ as the same crate
    return name.strip().lower().replace("_", "-")


def index_path(name: str) -> str:
    """Sparse index path of a crate: 1/a, 2/ab, 3/a/abc, ab/cd/abcd..."""
    n = name.lower()
    if len(n) == 1:
        return f"1/{n}"
    if len(n) == 2:
        return f"2/{n}"
    if len(n) == 3:
        return f"3/{n[0]}/{n}"
    return f"{n[:2]}/{n[2:4]}/{n}"


@dataclass
class Dependency:
    name: str          # crate name on the index
    req: str
    alias: str         # name the depending crate uses in its features table
    optional: bool = False
    kind: str = "normal"
    target: Optional[str] = None
    features: List[str] = field(default_factory=list)
    default_features: bool = True

    @classmethod
    def from_index(cls, obj: Dict[str, Any]) -> "Dependency":
        alias = obj["name"]
        return cls(
            name=obj.get("package") or alias,
            req=obj.get("req") or "*",
            alias=alias,
            optional=bool(obj.get("optional", False)),
            kind=obj.get("kind") or "normal",
            target=obj.get("target"),
            features=list(obj.get("features") or []),
            default_features=obj.get("default_features", True) is not False,
        )


@dataclass
class Release:
    name: str
    version: str
    deps: List[Dependency] = field(default_factory=list)
    features: Dict[str, List[str]] = field(default_factory=dict)
    yanked: bool = False
    checksum: Optional[str] = None

    @property
    def semver(self) -> semantic_version.Version:
        return semantic_version.Version(self.version)

    @classmethod
    def from_index(cls, obj: Dict[str, Any]) -> "Release":
        features = dict(obj.get("features") or {})
        features.update(obj.get("features2") or {})
        return cls(
            name=obj["name"],
            version=obj["vers"],
            deps=[Dependency.from_index(d) for d in obj.get("deps") or []],
            features={k: list(v) for k, v in features.items()},
            yanked=bool(obj.get("yanked", False)),
            checksum=obj.get("cksum"),
        )


class Catalog(ABC):
    """
    Provides methods:
    - entries(name) -> raw index records (dicts) for every published version
    - releases(name) -> parsed Release objects, unparsable versions dropped
    - get_release(name, version) -> Release or None
    """

    def __init__(self):
        self._memo: Dict[str, List[Release]] = {}

    @abstractmethod
    def entries(self, name: str) -> List[Dict[str, Any]]:
        ...

    def releases(self, name: str) -> List[Release]:
        key = _normalize_name(name)
        if key not in self._memo:
            out: List[Release] = []
            for obj in self.entries(name):
                try:
                    rel = Release.from_index(obj)
                    semantic_version.Version(rel.version)
                except (KeyError, ValueError):
                    logger.debug("skipping malformed index record for %s: %r", name, obj)
                    continue
                out.append(rel)
            self._memo[key] = out
        return list(self._memo[key])

    def get_release(self, name: str, version: str) -> Optional[Release]:
        for r in self.releases(name):
            if r.version == version:
                return r
        return None


class RegistryIndex(Catalog):
    def __init__(self, index_url: Optional[str] = None, timeout: Optional[int] = None,
                 session: Optional[requests.Session] = None):
        super().__init__()
        cfg = get_config()
        self.index_url = (index_url or cfg.get("resolver.index_url", "https://index.crates.io")).rstrip("/")
        self.timeout = timeout or int(cfg.get("resolver.http_timeout", 30))
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", "cratepack (https://crates.io index client)")

    def entries(self, name: str) -> List[Dict[str, Any]]:
        url = f"{self.index_url}/{index_path(name)}"
        logger.debug("fetching index %s", url)
        try:
            resp = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise ResolutionError(f"index query for {name} failed: {e}", name=name) from e
        if resp.status_code in (404, 410):
            return []
        try:
            resp.raise_for_status()
        except requests.HTTPError as e:
            raise ResolutionError(f"index query for {name} failed: {e}", name=name) from e
        out = []
        for line in resp.text.splitlines():
            line = line.strip()
            if line:
                out.append(json.loads(line))
        return out


class LocalIndex(Catalog):
    """In-memory index: {crate name: [index record, ...]}."""

    def __init__(self, index: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        super().__init__()
        self._index: Dict[str, List[Dict[str, Any]]] = {}
        for name, records in (index or {}).items():
            for rec in records:
                self._index.setdefault(_normalize_name(name), []).append(dict(rec, name=rec.get("name", name)))

    @classmethod
    def from_file(cls, path: str) -> "LocalIndex":
        with open(path, encoding="utf-8") as fh:
            return cls(json.load(fh))

    def add(self, name: str, version: str, deps: Iterable[Dict[str, Any]] = (),
            features: Optional[Dict[str, List[str]]] = None, yanked: bool = False) -> "LocalIndex":
        """Register a release; dependency dicts use index field names."""
        self._index.setdefault(_normalize_name(name), []).append({
            "name": name, "vers": version, "deps": [dict(d) for d in deps],
            "features": dict(features or {}), "yanked": yanked,
        })
        self._memo.pop(_normalize_name(name), None)
        return self

    def entries(self, name: str) -> List[Dict[str, Any]]:
        return [dict(r) for r in self._index.get(_normalize_name(name), [])]


def get_catalog(local_index: Optional[str] = None) -> Catalog:
    path = local_index or get_config().get("resolver.local_index")
    if path:
        if not Path(path).exists():
            raise ConfigurationError(f"local index {path} does not exist")
        logger.info("using local index %s", path)
        return LocalIndex.from_file(path)
    return RegistryIndex()

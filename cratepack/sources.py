# cratepack/sources.py
"""
Upstream source providers: produce a pristine working copy of name-version.

- RegistrySource: download the .crate archive from crates.io (cached), verify sha256, unpack
- LocalSource: unpacked directories or .crate files on disk
"""

from __future__ import annotations
from abc import ABC, abstractmethod
import os
import shutil
import hashlib
import tarfile
import tempfile
from pathlib import Path
from typing import Dict, Optional, Tuple

import requests

from cratepack.config import get_config
from cratepack.errors import PackagingFailure
from cratepack.logging import get_logger

logger = get_logger("sources")


def _sha256_of_file(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def _unpack_crate(archive: Path, dest: Path) -> None:
    """Extract a .crate (gzip tarball with one top-level dir) so its contents land in dest."""
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(dir=dest.parent, prefix=".unpack-") as tmp:
        with tarfile.open(archive, "r:gz") as tar:
            for member in tar.getmembers():
                target = os.path.realpath(os.path.join(tmp, member.name))
                if not target.startswith(os.path.realpath(tmp) + os.sep):
                    raise PackagingFailure(f"unsafe path in {archive.name}: {member.name}", step="unpack")
                if member.issym() or member.islnk():
                    raise PackagingFailure(f"link in {archive.name}: {member.name}", step="unpack")
            tar.extractall(tmp)
        entries = [p for p in Path(tmp).iterdir()]
        top = entries[0] if len(entries) == 1 and entries[0].is_dir() else Path(tmp)
        if dest.exists():
            shutil.rmtree(dest)
        if top == Path(tmp):
            shutil.copytree(tmp, dest)
        else:
            shutil.move(str(top), str(dest))


class SourceProvider(ABC):
    @abstractmethod
    def materialize(self, name: str, version: str, dest: Path, checksum: Optional[str] = None) -> Path:
        ...


class RegistrySource(SourceProvider):
    def __init__(self, download_url: Optional[str] = None, cache_dir: Optional[str] = None,
                 timeout: Optional[int] = None, session: Optional[requests.Session] = None):
        cfg = get_config()
        self.download_url = (download_url or cfg.get("sources.download_url")).rstrip("/")
        self.cache_dir = Path(cache_dir or cfg.get("sources.cache_dir")).expanduser()
        self.timeout = timeout or int(cfg.get("sources.http_timeout", 60))
        self.session = session or requests.Session()

    def _cache_path_for(self, name: str, version: str) -> Path:
        return self.cache_dir / name / f"{name}-{version}.crate"

    def fetch(self, name: str, version: str, checksum: Optional[str] = None) -> Path:
        path = self._cache_path_for(name, version)
        if path.exists() and (checksum is None or _sha256_of_file(path) == checksum):
            logger.debug("cache hit %s", path)
            return path
        url = f"{self.download_url}/{name}/{name}-{version}.crate"
        logger.info("downloading %s", url)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".part")
        try:
            with self.session.get(url, timeout=self.timeout, stream=True) as resp:
                resp.raise_for_status()
                with open(tmp, "wb") as f:
                    for chunk in resp.iter_content(chunk_size=65536):
                        f.write(chunk)
        except requests.RequestException as e:
            tmp.unlink(missing_ok=True)
            raise PackagingFailure(f"download of {url} failed: {e}", name=name, version=version,
                                   step="unpack") from e
        if checksum and _sha256_of_file(tmp) != checksum:
            tmp.unlink(missing_ok=True)
            raise PackagingFailure(f"checksum mismatch for {name}-{version}.crate", name=name,
                                   version=version, step="unpack")
        tmp.replace(path)
        return path

    def materialize(self, name: str, version: str, dest: Path, checksum: Optional[str] = None) -> Path:
        archive = self.fetch(name, version, checksum)
        try:
            _unpack_crate(archive, dest)
        except (tarfile.TarError, OSError) as e:
            raise PackagingFailure(f"cannot unpack {archive}: {e}", name=name, version=version,
                                   step="unpack") from e
        return Path(dest)


class LocalSource(SourceProvider):
    """Sources from disk: explicit {(name, version): path} entries, or <root>/<name>-<version>[.crate]."""

    def __init__(self, root: Optional[Path] = None, mapping: Optional[Dict[Tuple[str, str], Path]] = None):
        self.root = Path(root) if root else None
        self.mapping = {k: Path(v) for k, v in (mapping or {}).items()}

    def _lookup(self, name: str, version: str) -> Optional[Path]:
        if (name, version) in self.mapping:
            return self.mapping[(name, version)]
        if self.root is not None:
            for cand in (self.root / f"{name}-{version}", self.root / f"{name}-{version}.crate"):
                if cand.exists():
                    return cand
        return None

    def materialize(self, name: str, version: str, dest: Path, checksum: Optional[str] = None) -> Path:
        src = self._lookup(name, version)
        if src is None:
            raise PackagingFailure(f"no local source for {name} {version}", name=name, version=version,
                                   step="unpack")
        dest = Path(dest)
        try:
            if src.is_dir():
                if dest.exists():
                    shutil.rmtree(dest)
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copytree(src, dest, symlinks=True)
            else:
                _unpack_crate(src, dest)
        except (tarfile.TarError, OSError) as e:
            raise PackagingFailure(f"cannot unpack {src}: {e}", name=name, version=version,
                                   step="unpack") from e
        return dest

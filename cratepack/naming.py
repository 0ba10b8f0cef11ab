# cratepack/naming.py
# -*- coding: utf-8 -*-
"""Canonical Debian naming for crates."""

from __future__ import annotations
import re
from pathlib import Path
from typing import Optional

import semantic_version

_CHANGELOG_HEAD = re.compile(r"^(?P<source>[a-z0-9][a-z0-9+.-]+)\s+\((?P<version>[^)\s]+)\)")


def base_package_name(name: str) -> str:
    return name.replace("_", "-").lower()


def semver_suffix(version: str) -> str:
    """`0.<minor>` for 0.x versions, `<major>` otherwise."""
    v = semantic_version.Version.coerce(version)
    if v.major == 0:
        return f"0.{v.minor}"
    return str(v.major)


def deb_src_name(name: str, version: Optional[str] = None, binary_only: bool = False) -> str:
    """Overlay key for a crate, e.g. `foo` unversioned or `foo-2` for foo 2.x.

    Binary-only crates never carry the semver suffix.
    """
    base = base_package_name(name)
    if version and not binary_only:
        return f"{base}-{semver_suffix(version)}"
    return base


def deb_source(name: str, version: Optional[str] = None, binary_only: bool = False) -> str:
    return f"rust-{deb_src_name(name, version, binary_only)}"


def deb_version(version: str) -> str:
    """Upstream version as a Debian upstream version: prerelease separator becomes `~`."""
    v = semantic_version.Version(version)
    out = f"{v.major}.{v.minor}.{v.patch}"
    if v.prerelease:
        out += "~" + ".".join(v.prerelease)
    if v.build:
        out += "+" + ".".join(v.build)
    return out


def crate_dir(name: str, version: Optional[str], pinned: bool = True) -> str:
    """Output directory name of a node: `name-version` when pinned, bare `name` otherwise."""
    if pinned and version:
        return f"{name}-{version}"
    return name


def changes_base(srcdir: Path) -> Optional[str]:
    """`<source>_<version without epoch>` from the newest debian/changelog entry."""
    changelog = Path(srcdir) / "debian" / "changelog"
    if not changelog.exists():
        return None
    with open(changelog, encoding="utf-8") as fh:
        for line in fh:
            m = _CHANGELOG_HEAD.match(line)
            if m:
                version = m.group("version").split(":", 1)[-1]
                return f"{m.group('source')}_{version}"
    return None

import shutil
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import pytest

from cratepack.catalog import LocalIndex
from cratepack.naming import changes_base
from cratepack.packager import NodePackager, PackagingBackend
from cratepack.process import CommandResult, run_command
from cratepack.sources import LocalSource


class FakeRunner:
    """Stands in for run_command: records every call, exit codes by program name.

    `codes` values may be ints or callables taking the command list.
    Programs in `passthrough` run for real.
    """

    def __init__(self, codes=None, effects=None, passthrough=(), events=None):
        self.calls: List[Tuple[List[str], Optional[Path]]] = []
        self.codes = dict(codes or {})
        self.effects = dict(effects or {})
        self.passthrough = set(passthrough)
        self.events = events if events is not None else []

    def __call__(self, cmd, cwd=None, env=None, timeout=None, log_path=None):
        cmd = [str(c) for c in cmd]
        cwd = Path(cwd) if cwd else None
        self.calls.append((cmd, cwd))
        prog = cmd[0]
        self.events.append((prog, cmd[-1]))
        if prog in self.passthrough:
            return run_command(cmd, cwd=cwd, env=env, timeout=timeout, log_path=log_path)
        if prog in self.effects:
            self.effects[prog](cmd, cwd)
        code = self.codes.get(prog, 0)
        if callable(code):
            code = code(cmd)
        return CommandResult(cmd, code, stderr="" if code == 0 else f"{prog} failed")

    def programs(self) -> List[str]:
        return [c[0][0] for c in self.calls]


class FakeBackend(PackagingBackend):
    """Copies the (patched) Cargo.toml into the artifact and writes a debian/changelog."""

    def __init__(self, fail: Iterable[str] = (), events=None):
        self.calls: List[Tuple[str, str]] = []
        self.fail = set(fail)
        self.events = events if events is not None else []

    def package(self, node, source_dir, artifact_dir, overlay, options, log_path=None):
        self.calls.append(node.key)
        self.events.append(("package", node.name))
        if node.name in self.fail:
            return CommandResult(["fake-debcargo"], 1, stderr="boom")
        artifact_dir.mkdir(parents=True, exist_ok=True)
        manifest = Path(source_dir) / "Cargo.toml"
        if manifest.exists():
            shutil.copy(manifest, artifact_dir / "Cargo.toml")
        debian = artifact_dir / "debian"
        debian.mkdir(exist_ok=True)
        (debian / "changelog").write_text(
            f"rust-{node.name} ({node.version}-1) unstable; urgency=medium\n\n  * Package.\n",
            encoding="utf-8")
        return CommandResult(["fake-debcargo"], 0)


def write_changes(cmd, cwd):
    """Effect for a faked dpkg-buildpackage: drop the .changes next to the artifact."""
    base = changes_base(cwd)
    (cwd.parent / f"{base}_source.changes").write_text("Format: 1.8\n", encoding="utf-8")
    (cwd.parent / f"{base}.dsc").write_text("Format: 3.0 (quilt)\n", encoding="utf-8")


def make_crate(root: Path, name: str, version: str, body: str = "") -> Path:
    d = root / f"{name}-{version}"
    d.mkdir(parents=True, exist_ok=True)
    (d / "Cargo.toml").write_text(
        f'[package]\nname = "{name}"\nversion = "{version}"\n{body}', encoding="utf-8")
    return d


def dep(name: str, req: str, **kw) -> Dict:
    d = {"name": name, "req": req, "features": [], "optional": False,
         "default_features": True, "target": None, "kind": "normal"}
    d.update(kw)
    return d


@pytest.fixture
def chain_index():
    """a -> b -> c"""
    idx = LocalIndex()
    idx.add("a", "1.0.0", deps=[dep("b", "^1.0")])
    idx.add("b", "1.0.0", deps=[dep("c", "^1.0")])
    idx.add("c", "1.0.0")
    return idx


@pytest.fixture
def source_root(tmp_path):
    root = tmp_path / "upstream"
    for name in ("a", "b", "c"):
        make_crate(root, name, "1.0.0")
    return root


@pytest.fixture
def make_packager(tmp_path, source_root):
    def factory(backend=None, runner=None, **kw):
        runner = runner or FakeRunner(effects={"dpkg-buildpackage": write_changes})
        kw.setdefault("source_build_command", ["dpkg-buildpackage", "-d", "-S", "--no-sign"])
        return NodePackager(
            output_dir=kw.pop("output_dir", tmp_path / "out"),
            sources=kw.pop("sources", LocalSource(root=source_root)),
            backend=backend or FakeBackend(),
            runner=runner,
            **kw,
        )
    return factory

# cratepack/packager.py
# -*- coding: utf-8 -*-
"""
Node packager: turn one resolved crate into a Debian source package directory.

Steps, in order (names are used in logs, overlay suppressions and failure reports):

    unpack        pristine upstream copy in <output>/.cratepack/work/<crate-dir>
    patch         overlay patch series applied to that copy; a stale patch fails here
                  before the backend, which is handed the same overlay through --config
    package       packaging backend writes <output>/<crate-dir>
    test          optional test command; failure is only a warning
    install       optional install-check command; failure is only a warning
    source-build  dpkg-buildpackage -S in the artifact directory

A node is complete only when its artifact directory AND its completion stamp
(<output>/.cratepack/stamps/<crate-dir>.json) exist. An artifact without a
stamp is left over from an interrupted run and is rebuilt.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
import json
import time
import shutil
from enum import Enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from cratepack.errors import ConfigurationError, NodeFailure, PackagingFailure
from cratepack.logging import get_logger
from cratepack.models import Node
from cratepack.naming import crate_dir
from cratepack.overlays import Overlay, OverlayLocator
from cratepack.patches import PatchManager
from cratepack.process import CommandResult, run_command
from cratepack.sources import SourceProvider

logger = get_logger("packager")

STEPS = ("unpack", "patch", "package", "test", "install", "source-build")


class NodeStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class NodeOutcome:
    node: Node
    status: NodeStatus
    step: Optional[str] = None
    error: Optional[NodeFailure] = None
    warnings: List[str] = field(default_factory=list)
    artifact: Optional[Path] = None
    patches: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is not NodeStatus.FAILED


@dataclass
class PackagingOptions:
    suppress_test: bool = False
    suppress_install_check: bool = False
    extra_args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[int] = None


# ----------------------------
# Backends
# ----------------------------
class PackagingBackend(ABC):
    """The external manifest generator / source assembler."""

    @abstractmethod
    def package(self, node: Node, source_dir: Path, artifact_dir: Path, overlay: Optional[Overlay],
                options: PackagingOptions, log_path: Optional[Path] = None) -> CommandResult:
        ...


def _expand_template(template: List[str], values: Dict[str, object]) -> List[str]:
    """Fill a command template. List-valued placeholders splice, empty strings drop out."""
    out: List[str] = []
    for part in template:
        key = part[1:-1] if part.startswith("{") and part.endswith("}") else None
        if key is not None and isinstance(values.get(key), list):
            out.extend(str(v) for v in values[key])
            continue
        try:
            text = part.format(**{k: v for k, v in values.items() if not isinstance(v, list)})
        except (KeyError, IndexError, ValueError) as e:
            raise ConfigurationError(f"bad command template part {part!r}: {e}") from e
        if text != "":
            out.append(text)
    return out


class CommandBackend(PackagingBackend):
    """Runs a configured command template (default: `debcargo package ...`)."""

    def __init__(self, command: List[str], runner: Callable[..., CommandResult] = run_command):
        self.command = list(command)
        self.runner = runner

    @staticmethod
    def overlay_config(overlay: Overlay, state_dir: Path) -> Path:
        """Config file handed to the tool so it copies the overlay and applies its series.

        An overlay whose debcargo.toml already names its overlay directory is used as is.
        Otherwise a copy with `overlay` pointing at the overlay's debian/ dir is written
        under the state dir.
        """
        if overlay.config_file is not None and overlay.metadata is not None and overlay.metadata.overlay:
            return overlay.config_file
        body = overlay.config_file.read_text(encoding="utf-8") if overlay.config_file is not None else ""
        generated = state_dir / "overlay-config" / f"{overlay.name}.toml"
        generated.parent.mkdir(parents=True, exist_ok=True)
        # top-level key must precede any [table] of the copied body
        generated.write_text(f"overlay = {json.dumps(str(overlay.debian_dir.resolve()))}\n{body}",
                             encoding="utf-8")
        return generated

    def build_command(self, node: Node, source_dir: Path, artifact_dir: Path, overlay: Optional[Overlay],
                      options: PackagingOptions) -> List[str]:
        config_args: List[str] = []
        if overlay is not None:
            state_dir = artifact_dir.parent / ".cratepack"
            config_args = ["--config", str(self.overlay_config(overlay, state_dir))]
        return _expand_template(self.command, {
            "name": node.name,
            "version": node.version if node.pinned else "",
            "directory": str(artifact_dir),
            "source": str(source_dir),
            "overlay": str(overlay.debian_dir) if overlay else "",
            "config_args": config_args,
            "extra_args": list(options.extra_args),
        })

    def package(self, node: Node, source_dir: Path, artifact_dir: Path, overlay: Optional[Overlay],
                options: PackagingOptions, log_path: Optional[Path] = None) -> CommandResult:
        cmd = self.build_command(node, source_dir, artifact_dir, overlay, options)
        return self.runner(cmd, cwd=artifact_dir.parent, env=options.env, timeout=options.timeout,
                           log_path=log_path)


# ----------------------------
# Packager
# ----------------------------
class NodePackager:
    def __init__(self, output_dir: Path, sources: SourceProvider, backend: PackagingBackend,
                 locator: Optional[OverlayLocator] = None, options: Optional[PackagingOptions] = None,
                 runner: Callable[..., CommandResult] = run_command,
                 test_command: Optional[List[str]] = None, install_command: Optional[List[str]] = None,
                 source_build_command: Optional[List[str]] = None, keep_work_dirs: bool = False,
                 checksums: Optional[Callable[[str, str], Optional[str]]] = None):
        self.output_dir = Path(output_dir)
        self.sources = sources
        self.backend = backend
        self.locator = locator or OverlayLocator(None)
        self.options = options or PackagingOptions()
        self.runner = runner
        self.test_command = test_command
        self.install_command = install_command
        self.source_build_command = source_build_command
        self.keep_work_dirs = keep_work_dirs
        self.checksums = checksums
        state = self.output_dir / ".cratepack"
        self.stamp_dir = state / "stamps"
        self.work_root = state / "work"
        self.log_dir = state / "logs"
        self.patches = PatchManager(runner=runner, transparency_log=state / "patches.jsonl",
                                    timeout=self.options.timeout)

    # -------------------------
    # paths and stamps
    # -------------------------
    def artifact_dir(self, node: Node) -> Path:
        return self.output_dir / crate_dir(node.name, node.version, node.pinned)

    def stamp_path(self, node: Node) -> Path:
        return self.stamp_dir / f"{crate_dir(node.name, node.version, node.pinned)}.json"

    def is_complete(self, node: Node) -> bool:
        return self.artifact_dir(node).is_dir() and self.stamp_path(node).is_file()

    def _write_stamp(self, node: Node, outcome: NodeOutcome) -> None:
        self.stamp_dir.mkdir(parents=True, exist_ok=True)
        path = self.stamp_path(node)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(json.dumps({
            "name": node.name,
            "version": node.version,
            "pinned": node.pinned,
            "patches": outcome.patches,
            "warnings": outcome.warnings,
            "finished_at": int(time.time()),
        }, indent=2), encoding="utf-8")
        tmp.replace(path)

    def read_stamp(self, node: Node) -> Optional[Dict]:
        path = self.stamp_path(node)
        if not path.is_file():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    # -------------------------
    # sub-steps
    # -------------------------
    def _run_optional_step(self, step: str, command: Optional[List[str]], suppressed: bool, node: Node,
                           artifact: Path, outcome: NodeOutcome) -> None:
        if not command or suppressed:
            logger.debug("%s: %s step not run", node.label, step)
            return
        cmd = _expand_template(command, {"name": node.name, "version": node.version,
                                         "directory": str(artifact)})
        res = self.runner(cmd, cwd=artifact, env=self.options.env, timeout=self.options.timeout,
                          log_path=self.log_dir / f"{artifact.name}.{step}.log")
        if not res.ok:
            msg = f"{step} step exited {res.returncode} (tolerated)"
            outcome.warnings.append(msg)
            logger.warning("%s: %s", node.label, msg)

    def _source_build(self, node: Node, artifact: Path) -> None:
        (artifact / "debian" / "source").mkdir(parents=True, exist_ok=True)
        res = self.runner(list(self.source_build_command), cwd=artifact, env=self.options.env,
                          timeout=self.options.timeout,
                          log_path=self.log_dir / f"{artifact.name}.source-build.log")
        if not res.ok:
            raise PackagingFailure(f"source build exited {res.returncode}", returncode=res.returncode,
                                   log_path=str(res.log_path) if res.log_path else None, step="source-build")

    def _tolerate(self, overlay: Optional[Overlay], failure: NodeFailure, node: Node,
                  outcome: NodeOutcome) -> bool:
        if overlay is not None and overlay.suppresses(failure.step):
            msg = f"{failure.step} failure suppressed by overlay {overlay.name}: {failure}"
            outcome.warnings.append(msg)
            logger.warning("%s: %s", node.label, msg)
            return True
        return False

    # -------------------------
    # main entry
    # -------------------------
    def package(self, node: Node) -> NodeOutcome:
        artifact = self.artifact_dir(node)
        if self.is_complete(node):
            logger.info("%s: already packaged, skipping", node.label)
            return NodeOutcome(node, NodeStatus.SKIPPED, artifact=artifact)
        if artifact.exists():
            logger.warning("%s: removing incomplete artifact %s from an interrupted run", node.label, artifact)
            shutil.rmtree(artifact)

        self.output_dir.mkdir(parents=True, exist_ok=True)
        outcome = NodeOutcome(node, NodeStatus.SUCCESS, artifact=artifact)
        workdir = self.work_root / artifact.name
        step = "overlay"
        overlay: Optional[Overlay] = None
        try:
            overlay = self.locator.for_node(node)

            step = "unpack"
            checksum = self.checksums(node.name, node.version) if self.checksums else None
            self.sources.materialize(node.name, node.version, workdir, checksum)

            step = "patch"
            outcome.patches = self.patches.apply_series(overlay, workdir, node.name, node.version)

            step = "package"
            logger.info("%s: packaging", node.label)
            res = self.backend.package(node, workdir, artifact, overlay, self.options,
                                       log_path=self.log_dir / f"{artifact.name}.package.log")
            packaged = res.ok
            if not res.ok:
                failure = PackagingFailure(f"packaging exited {res.returncode}: {res.tail(5)}",
                                           returncode=res.returncode, step="package",
                                           log_path=str(res.log_path) if res.log_path else None)
                if not self._tolerate(overlay, failure, node, outcome):
                    raise failure

            if packaged and artifact.is_dir():
                step = "test"
                self._run_optional_step("test", self.test_command, self.options.suppress_test,
                                        node, artifact, outcome)
                step = "install"
                self._run_optional_step("install", self.install_command, self.options.suppress_install_check,
                                        node, artifact, outcome)
                if self.source_build_command:
                    step = "source-build"
                    try:
                        self._source_build(node, artifact)
                    except PackagingFailure as failure:
                        if not self._tolerate(overlay, failure, node, outcome):
                            raise
            elif packaged:
                raise PackagingFailure(f"packaging produced no {artifact.name} directory", step="package")

            artifact.mkdir(parents=True, exist_ok=True)
            self._write_stamp(node, outcome)
            logger.info("%s: done%s", node.label,
                        f" with {len(outcome.warnings)} warning(s)" if outcome.warnings else "")
            return outcome
        except (NodeFailure, OSError) as e:
            failure = e if isinstance(e, NodeFailure) else PackagingFailure(str(e), step=step)
            if failure.step == "unknown":
                failure.step = step
            failure.name, failure.version = node.name, node.version
            outcome.status = NodeStatus.FAILED
            outcome.step = failure.step
            outcome.error = failure
            logger.error("%s: step '%s' failed: %s", node.label, failure.step, failure)
            return outcome
        finally:
            if not self.keep_work_dirs and workdir.exists():
                shutil.rmtree(workdir, ignore_errors=True)

# cratepack/verification.py
# -*- coding: utf-8 -*-
"""
Downstream verification of packaged nodes.

- LintPass: lintian over the source (and host-arch) .changes of each node
- SandboxPass: sbuild rebuild of the .dsc inside a schroot

Both skip nodes with no completed artifact and nodes already verified by an
earlier run, and hand failures to the run's failure policy.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
import os
from pathlib import Path
from typing import Callable, List, Optional

from cratepack.config import get_config
from cratepack.errors import ConfigurationError, VerificationFailure
from cratepack.logging import get_logger
from cratepack.models import Node
from cratepack.naming import changes_base
from cratepack.packager import NodeOutcome, NodePackager, NodeStatus
from cratepack.process import CommandResult, run_command

logger = get_logger("verification")


def host_arch(runner: Callable[..., CommandResult] = run_command) -> Optional[str]:
    arch = os.environ.get("DEB_HOST_ARCH")
    if arch:
        return arch
    res = runner(["dpkg-architecture", "-qDEB_HOST_ARCH"])
    if res.ok and res.stdout.strip():
        return res.stdout.strip()
    return None


class VerificationPass(ABC):
    step = "verify"

    def __init__(self, packager: NodePackager, runner: Callable[..., CommandResult] = run_command,
                 arch: Optional[str] = None, timeout: Optional[int] = None):
        self.packager = packager
        self.output_dir = packager.output_dir
        self.runner = runner
        self.arch = arch
        self.timeout = timeout
        self.log_dir = self.output_dir / ".cratepack" / "logs"

    def check_environment(self) -> None:
        """Raise ConfigurationError if the external tooling cannot work at all."""

    def _base(self, node: Node) -> Optional[str]:
        return changes_base(self.packager.artifact_dir(node))

    @abstractmethod
    def _verify(self, node: Node, base: str, outcome: NodeOutcome) -> None:
        ...

    def _already_verified(self, node: Node, base: str) -> bool:
        return False

    def run(self, node: Node) -> NodeOutcome:
        outcome = NodeOutcome(node, NodeStatus.SUCCESS, step=self.step,
                              artifact=self.packager.artifact_dir(node))
        if not self.packager.is_complete(node):
            logger.info("%s: no completed artifact, skipping %s", node.label, self.step)
            outcome.status = NodeStatus.SKIPPED
            return outcome
        base = self._base(node)
        if base is None:
            outcome.status = NodeStatus.SKIPPED
            outcome.warnings.append("no debian/changelog in artifact")
            logger.warning("%s: no debian/changelog, skipping %s", node.label, self.step)
            return outcome
        if self._already_verified(node, base):
            logger.info("%s: %s already verified", node.label, self.step)
            outcome.status = NodeStatus.SKIPPED
            return outcome
        try:
            self._verify(node, base, outcome)
        except VerificationFailure as failure:
            overlay = self.packager.locator.for_node(node)
            failure.name, failure.version = node.name, node.version
            if overlay is not None and overlay.suppresses(self.step):
                outcome.warnings.append(f"{self.step} failure suppressed by overlay {overlay.name}: {failure}")
                logger.warning("%s: %s", node.label, outcome.warnings[-1])
                return outcome
            outcome.status = NodeStatus.FAILED
            outcome.error = failure
            logger.error("%s: step '%s' failed: %s", node.label, self.step, failure)
        return outcome


class LintPass(VerificationPass):
    step = "lint"

    def __init__(self, packager: NodePackager, runner: Callable[..., CommandResult] = run_command,
                 arch: Optional[str] = None, timeout: Optional[int] = None,
                 command: Optional[List[str]] = None, suppress_tags_file: Optional[Path] = None):
        super().__init__(packager, runner, arch, timeout)
        cfg = get_config()
        self.command = list(command or cfg.get("lint.command"))
        tags = suppress_tags_file or cfg.get("lint.suppress_tags_file")
        self.suppress_tags_file = Path(tags) if tags else None

    def _marker(self, base: str) -> Path:
        return self.output_dir / ".cratepack" / "lint" / f"{base}.ok"

    def _already_verified(self, node: Node, base: str) -> bool:
        return self._marker(base).exists()

    def _verify(self, node: Node, base: str, outcome: NodeOutcome) -> None:
        targets = [self.output_dir / f"{base}_source.changes"]
        if self.arch:
            targets.append(self.output_dir / f"{base}_{self.arch}.changes")
        targets = [t for t in targets if t.exists()]
        if not targets:
            outcome.status = NodeStatus.SKIPPED
            outcome.warnings.append(f"no .changes file for {base}")
            return
        args = list(self.command)
        if self.suppress_tags_file:
            args[1:1] = ["--suppress-tags-from-file", str(self.suppress_tags_file)]
        for changes in targets:
            res = self.runner(args + [str(changes)], cwd=self.output_dir, timeout=self.timeout,
                              log_path=self.log_dir / f"{base}.lintian.log")
            if not res.ok:
                raise VerificationFailure(f"lintian exited {res.returncode} on {changes.name}",
                                          returncode=res.returncode, step="lint",
                                          log_path=str(res.log_path) if res.log_path else None)
        marker = self._marker(base)
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.write_text("\n".join(t.name for t in targets) + "\n", encoding="utf-8")


class SandboxPass(VerificationPass):
    step = "sandbox"

    def __init__(self, packager: NodePackager, runner: Callable[..., CommandResult] = run_command,
                 arch: Optional[str] = None, timeout: Optional[int] = None,
                 command: Optional[List[str]] = None, chroot: Optional[str] = None):
        super().__init__(packager, runner, arch, timeout)
        cfg = get_config()
        self.command = list(command or cfg.get("sandbox.command"))
        self.chroot = chroot or os.environ.get("CHROOT") or cfg.get("sandbox.chroot")

    def _chroot_exists(self, name: str) -> bool:
        return self.runner(["schroot", "-i", "-c", name]).ok

    def check_environment(self) -> None:
        if not self.arch:
            self.arch = host_arch(self.runner)
        if not self.arch:
            raise ConfigurationError("cannot determine host architecture (set DEB_HOST_ARCH)")
        if self.chroot:
            if not self._chroot_exists(self.chroot):
                raise ConfigurationError(f"sbuild chroot {self.chroot} does not exist")
            return
        for candidate in (f"debcargo-unstable-{self.arch}-sbuild", f"unstable-{self.arch}-sbuild"):
            if self._chroot_exists(candidate):
                self.chroot = candidate
                logger.info("using sbuild chroot %s", candidate)
                return
        raise ConfigurationError(
            f"no sbuild chroot found for {self.arch}; create one with:\n"
            f"  sudo sbuild-createchroot --include=eatmydata,ccache unstable "
            f"/srv/chroot/debcargo-unstable-{self.arch}-sbuild http://deb.debian.org/debian\n"
            f"or set CHROOT / sandbox.chroot")

    def _already_verified(self, node: Node, base: str) -> bool:
        return (self.output_dir / f"{base}_{self.arch}.changes").exists()

    def _verify(self, node: Node, base: str, outcome: NodeOutcome) -> None:
        if not self.chroot:
            raise ConfigurationError("sandbox pass used before check_environment()")
        dsc = self.output_dir / f"{base}.dsc"
        if not dsc.exists():
            outcome.status = NodeStatus.SKIPPED
            outcome.warnings.append(f"no {dsc.name} to rebuild")
            return
        logger.info("%s: sbuild %s in %s", node.label, dsc.name, self.chroot)
        res = self.runner(self.command + ["-c", self.chroot, str(dsc)], cwd=self.output_dir,
                          timeout=self.timeout, log_path=self.log_dir / f"{base}.sbuild.log")
        if not res.ok:
            raise VerificationFailure(f"sbuild exited {res.returncode}", returncode=res.returncode,
                                      step="sandbox", log_path=str(res.log_path) if res.log_path else None)

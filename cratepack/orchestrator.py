# cratepack/orchestrator.py
# -*- coding: utf-8 -*-
"""
Run orchestration: resolve each requested spec, linearize, package every node
in build order, then run the sandbox and lint passes over the same orders.

Nodes are processed strictly one at a time: a dependent's packaging may need
its dependencies' artifacts on disk.
"""

from __future__ import annotations
import shutil
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from cratepack.build_order import cache_path, linearize, read_cache, write_cache
from cratepack.config import RunConfig
from cratepack.errors import CycleError, ResolutionError
from cratepack.logging import get_logger
from cratepack.models import Node, NodeKey, PackageSpec
from cratepack.packager import NodeOutcome, NodePackager, NodeStatus
from cratepack.policy import Decision, FailurePolicy
from cratepack.resolver import Resolver
from cratepack.verification import LintPass, SandboxPass, VerificationPass

logger = get_logger("orchestrator")


class RunAborted(Exception):
    """Internal signal: the failure policy decided to stop the run."""


@dataclass
class NodeReport:
    stage: str
    outcome: NodeOutcome
    decision: Optional[Decision] = None


@dataclass
class RunReport:
    reports: List[NodeReport] = field(default_factory=list)
    spec_errors: List[Tuple[str, str]] = field(default_factory=list)
    aborted: bool = False
    fatal: bool = False

    @property
    def exit_code(self) -> int:
        return 1 if (self.fatal or self.aborted or self.spec_errors) else 0

    def outcomes(self, stage: str = "package") -> List[NodeOutcome]:
        return [r.outcome for r in self.reports if r.stage == stage]

    def failed(self) -> List[NodeReport]:
        return [r for r in self.reports if r.outcome.status is NodeStatus.FAILED]

    def packaged_order(self) -> List[NodeKey]:
        return [r.outcome.node.key for r in self.reports if r.stage == "package"]


class RunOrchestrator:
    def __init__(self, run_config: RunConfig, resolver: Resolver, packager: NodePackager,
                 policy: FailurePolicy, lint: Optional[LintPass] = None,
                 sandbox: Optional[SandboxPass] = None):
        self.run_config = run_config
        self.resolver = resolver
        self.packager = packager
        self.policy = policy
        self.lint = lint if run_config.lint else None
        self.sandbox = sandbox if run_config.sandbox else None

    # -------------------------
    # setup
    # -------------------------
    def prepare(self) -> None:
        """Reset the output directory and check external environments before any node work."""
        out = self.run_config.output_dir
        if out.exists() and not self.run_config.keep_files:
            logger.info("clearing output directory %s", out)
            for child in out.iterdir():
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child)
                else:
                    child.unlink()
        out.mkdir(parents=True, exist_ok=True)
        if self.sandbox is not None:
            self.sandbox.check_environment()
            if self.lint is not None and not self.lint.arch:
                self.lint.arch = self.sandbox.arch

    def plan(self, spec: PackageSpec) -> List[Node]:
        """Build order for one spec: full closure (root last) when recursive, else the root alone."""
        if not self.run_config.recursive:
            return [self.resolver.resolve_root(spec)]
        path = cache_path(self.run_config.output_dir, spec)
        order = read_cache(path, spec) if self.run_config.keep_files else None
        if order is None:
            graph = self.resolver.resolve(spec)
            order = linearize(graph)
            write_cache(path, order)
        logger.info("%s: build order has %d crate(s)", spec, len(order))
        return order

    # -------------------------
    # per-node handling
    # -------------------------
    def _handle(self, report: RunReport, stage: str, outcome: NodeOutcome) -> None:
        entry = NodeReport(stage, outcome)
        report.reports.append(entry)
        if outcome.status is not NodeStatus.FAILED:
            return
        entry.decision = self.policy.decide(outcome.node, outcome.error)
        if entry.decision.fatal:
            report.fatal = True
        if entry.decision is Decision.ABORT:
            report.aborted = True
            raise RunAborted(outcome.error.describe())

    def _package_pass(self, report: RunReport, plans: Dict[PackageSpec, List[Node]]) -> None:
        done: Dict[NodeKey, bool] = {}
        for spec, order in plans.items():
            for node in order:
                marker = (node.name, node.version if node.pinned else "")
                if marker in done:
                    continue
                done[marker] = True
                self._handle(report, "package", self.packager.package(node))

    def _verification_pass(self, report: RunReport, plans: Dict[PackageSpec, List[Node]],
                           vpass: VerificationPass) -> None:
        seen = set()
        for order in plans.values():
            for node in order:
                marker = (node.name, node.version if node.pinned else "")
                if marker in seen:
                    continue
                seen.add(marker)
                self._handle(report, vpass.step, vpass.run(node))

    # -------------------------
    # main entry
    # -------------------------
    def run(self, specs: Sequence[PackageSpec]) -> RunReport:
        report = RunReport()
        self.prepare()
        plans: Dict[PackageSpec, List[Node]] = {}
        try:
            for spec in specs:
                try:
                    plans[spec] = self.plan(spec)
                except ResolutionError as e:
                    logger.error("%s: resolution failed: %s", spec, e)
                    report.spec_errors.append((str(spec), str(e)))
            self._package_pass(report, plans)
            if self.sandbox is not None:
                self._verification_pass(report, plans, self.sandbox)
            if self.lint is not None:
                self._verification_pass(report, plans, self.lint)
        except CycleError as e:
            logger.error("internal consistency fault: %s", e)
            report.aborted = True
            report.spec_errors.append(("<graph>", str(e)))
        except RunAborted as e:
            logger.error("run aborted: %s", e)
        self._summarize(report)
        return report

    def _summarize(self, report: RunReport) -> None:
        counts: Dict[str, int] = {}
        for r in report.reports:
            key = f"{r.stage}:{r.outcome.status.value}"
            counts[key] = counts.get(key, 0) + 1
        logger.info("run finished: %s, exit=%d",
                    ", ".join(f"{k}={v}" for k, v in sorted(counts.items())) or "nothing done",
                    report.exit_code)
        for r in report.failed():
            err = r.outcome.error
            logger.error("FAILED %s %s step=%s decision=%s: %s", r.outcome.node.name, r.outcome.node.version,
                         r.outcome.step, r.decision.value if r.decision else "-", err)

# cratepack/policy.py
# -*- coding: utf-8 -*-
"""
Failure policy: what happens to the run when one node fails.

Two variants share one interface, `decide(node, failure) -> Decision`:

- FailFastPolicy: allow-listed failures are tolerated, anything else aborts
- RecordAndContinuePolicy: allow-listed failures are tolerated, anything else
  is appended to the failures sink and the run moves on

Patch application failures ignore the allow-list: a stale override is never a
tolerated failure. In batch runs they are still isolated to their node.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import FrozenSet, Iterable, Optional

from cratepack.errors import NodeFailure, PatchApplicationError
from cratepack.logging import get_logger
from cratepack.models import Node

logger = get_logger("policy")


class Decision(str, Enum):
    TOLERATED = "tolerated"   # allow-listed; does not affect exit status
    RECORDED = "recorded"     # written to the sink; does not affect exit status
    ISOLATED = "isolated"     # run continues but exits non-zero
    ABORT = "abort"           # stop processing, exit non-zero

    @property
    def fatal(self) -> bool:
        return self in (Decision.ISOLATED, Decision.ABORT)


class AllowList:
    """Entries are bare crate names (any version) or `name-version` (that version only)."""

    def __init__(self, entries: Iterable[str] = ()):
        self._entries: FrozenSet[str] = frozenset(e.strip() for e in entries if e and e.strip())

    @classmethod
    def load(cls, path: Optional[Path]) -> "AllowList":
        if path is None:
            return cls()
        path = Path(path)
        if not path.exists():
            logger.warning("allow-list %s does not exist, treating as empty", path)
            return cls()
        return cls(path.read_text(encoding="utf-8").splitlines())

    def allows(self, name: str, version: Optional[str] = None) -> bool:
        if name in self._entries:
            return True
        return bool(version) and f"{name}-{version}" in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, item: str) -> bool:
        return item in self._entries


class FailureSink:
    """Append-only `name version` lines."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def record(self, name: str, version: Optional[str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as fh:
            fh.write(f"{name} {version or ''}".rstrip() + "\n")

    def entries(self):
        if not self.path.exists():
            return []
        return [tuple(line.split(" ", 1)) for line in self.path.read_text(encoding="utf-8").splitlines() if line]


class FailurePolicy(ABC):
    def __init__(self, allow_list: Optional[AllowList] = None):
        self.allow_list = allow_list or AllowList()

    def decide(self, node: Node, failure: NodeFailure) -> Decision:
        version = node.version if node.pinned else None
        if not isinstance(failure, PatchApplicationError) and self.allow_list.allows(node.name, version):
            logger.warning("%s: %s failure tolerated by allow-list: %s", node.label, failure.step, failure)
            return Decision.TOLERATED
        return self._not_allowed(node, failure)

    @abstractmethod
    def _not_allowed(self, node: Node, failure: NodeFailure) -> Decision:
        """Decision for a failure the allow-list does not cover."""


class FailFastPolicy(FailurePolicy):
    def _not_allowed(self, node: Node, failure: NodeFailure) -> Decision:
        logger.error("%s %s: step '%s' failed, aborting run: %s", node.name, node.version, failure.step, failure)
        return Decision.ABORT


class RecordAndContinuePolicy(FailurePolicy):
    def __init__(self, sink: FailureSink, allow_list: Optional[AllowList] = None):
        super().__init__(allow_list)
        self.sink = sink

    def _not_allowed(self, node: Node, failure: NodeFailure) -> Decision:
        self.sink.record(node.name, node.version if node.pinned else None)
        if isinstance(failure, PatchApplicationError):
            logger.error("%s %s: stale overlay, patch failed: %s", node.name, node.version, failure)
            return Decision.ISOLATED
        logger.error("%s %s: step '%s' failed, recorded in %s: %s",
                     node.name, node.version, failure.step, self.sink.path, failure)
        return Decision.RECORDED


def build_policy(allow_list: Optional[AllowList] = None, failures_file: Optional[Path] = None) -> FailurePolicy:
    if failures_file is not None:
        return RecordAndContinuePolicy(FailureSink(failures_file), allow_list)
    return FailFastPolicy(allow_list)

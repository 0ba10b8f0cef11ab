# cratepack/errors.py
# -*- coding: utf-8 -*-
"""
Exception taxonomy shared by every cratepack stage.

Node-level failures carry the offending (name, version) and the failing step so
the orchestrator and the failure policy can report them without re-deriving
context.
"""

from __future__ import annotations
from typing import Optional, Sequence, Tuple


class CratepackError(Exception):
    """Base class for all cratepack errors."""


class ConfigurationError(CratepackError):
    """Invalid run configuration or missing external environment (e.g. chroot)."""


class ResolutionError(CratepackError):
    """No version satisfies a request, or a requirement is not valid cargo grammar."""

    def __init__(self, message: str, name: Optional[str] = None, requirement: Optional[str] = None):
        super().__init__(message)
        self.name = name
        self.requirement = requirement


class CycleError(CratepackError):
    """The dependency graph is not acyclic. Always fatal."""

    def __init__(self, remaining: Sequence[Tuple[str, str]]):
        self.remaining = list(remaining)
        shown = ", ".join(f"{n} {v}" for n, v in self.remaining[:10])
        more = "" if len(self.remaining) <= 10 else f" (+{len(self.remaining) - 10} more)"
        super().__init__(f"dependency cycle among: {shown}{more}")


class NodeFailure(CratepackError):
    """A failure attributable to one node and one step."""

    step = "unknown"

    def __init__(self, message: str, name: Optional[str] = None, version: Optional[str] = None,
                 step: Optional[str] = None):
        super().__init__(message)
        self.name = name
        self.version = version
        if step:
            self.step = step

    def describe(self) -> str:
        who = f"{self.name} {self.version or ''}".strip() if self.name else "<unknown>"
        return f"{who}: step '{self.step}' failed: {self}"


class OverlayError(NodeFailure):
    """An overlay exists but its files cannot be read."""

    step = "overlay"


class PatchApplicationError(NodeFailure):
    """An overlay patch does not apply. Never allow-listable."""

    step = "patch"

    def __init__(self, message: str, patch: Optional[str] = None, output: str = "", **kw):
        super().__init__(message, **kw)
        self.patch = patch
        self.output = output


class PackagingFailure(NodeFailure):
    """A packaging sub-step failed (unpack, package, source-build, ...)."""

    step = "package"

    def __init__(self, message: str, returncode: Optional[int] = None,
                 log_path: Optional[str] = None, **kw):
        super().__init__(message, **kw)
        self.returncode = returncode
        self.log_path = log_path


class VerificationFailure(NodeFailure):
    """Lint or sandboxed rebuild of a produced artifact failed."""

    step = "verify"

    def __init__(self, message: str, returncode: Optional[int] = None,
                 log_path: Optional[str] = None, **kw):
        super().__init__(message, **kw)
        self.returncode = returncode
        self.log_path = log_path

# cratepack/build_order.py
# -*- coding: utf-8 -*-
"""
Build-order linearization and the per-run build-order cache.

`linearize` emits dependencies before dependents, each (name, version) once,
choosing among ready nodes by (name, semantic version, raw version) so the
same graph always produces the same sequence.
"""

from __future__ import annotations
import heapq
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import semantic_version

from cratepack.errors import CycleError
from cratepack.logging import get_logger
from cratepack.models import DependencyGraph, Node, NodeKey, PackageSpec, ResolutionMode

logger = get_logger("build_order")


def _sort_key(key: NodeKey) -> Tuple[str, semantic_version.Version, str]:
    name, version = key
    try:
        v = semantic_version.Version.coerce(version)
    except ValueError:
        v = semantic_version.Version("0.0.0")
    return (name, v, version)


def linearize(graph: DependencyGraph) -> List[Node]:
    """Kahn's algorithm over a min-heap of ready nodes."""
    pending: Dict[NodeKey, int] = {k: len(graph.dependencies(k)) for k in graph.nodes}
    ready = [(_sort_key(k), k) for k, n in pending.items() if n == 0]
    heapq.heapify(ready)
    order: List[Node] = []
    while ready:
        _, key = heapq.heappop(ready)
        order.append(graph.nodes[key])
        for dependent in graph.dependents(key):
            pending[dependent] -= 1
            if pending[dependent] == 0:
                heapq.heappush(ready, (_sort_key(dependent), dependent))
    if len(order) != len(graph.nodes):
        emitted = {n.key for n in order}
        remaining = sorted((k for k in graph.nodes if k not in emitted), key=_sort_key)
        raise CycleError(remaining)
    return order


def format_order(order: List[Node]) -> str:
    return "".join(f"{n.name} {n.version}\n" for n in order)


# -----------------------
# Cache file
# -----------------------
def cache_path(output_dir: Path, spec: PackageSpec) -> Path:
    parts = [spec.name]
    if spec.version:
        parts.append(spec.version.replace("/", "_"))
    if spec.mode is not ResolutionMode.DEFAULT:
        parts.append(spec.mode.value)
    return Path(output_dir) / ("z-cache_" + "_".join(parts))


def write_cache(path: Path, order: List[Node]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(format_order(order), encoding="utf-8")
    tmp.replace(path)


def read_cache(path: Path, spec: PackageSpec) -> Optional[List[Node]]:
    """Return the cached order (root last), or None if absent or unreadable."""
    if not path.exists():
        return None
    order: List[Node] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        fields = line.split()
        if not fields:
            continue
        if len(fields) != 2:
            logger.warning("ignoring malformed build-order cache %s", path)
            return None
        order.append(Node(name=fields[0], version=fields[1]))
    if not order:
        return None
    order[-1].pinned = spec.pinned
    logger.debug("using cached build order %s (%d crates)", path, len(order))
    return order

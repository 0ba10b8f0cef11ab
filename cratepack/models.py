# cratepack/models.py
# -*- coding: utf-8 -*-
"""
Core data model: package requests, graph nodes and the dependency graph.

The graph keeps one identity table keyed by (name, version) plus an adjacency
map referencing those keys, so a crate reached from several parents is a
single Node.
"""

from __future__ import annotations
import re
from collections import deque
from enum import Enum
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Set, Tuple

NodeKey = Tuple[str, str]


class ResolutionMode(str, Enum):
    """Which optional edges the resolver follows."""
    DEFAULT = "default"
    ALL_FEATURES = "binary-all-for-testing"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ResolutionMode":
        if value is None or value == "":
            return cls.DEFAULT
        if isinstance(value, cls):
            return value
        for m in cls:
            if m.value == value or m.name.lower() == str(value).lower().replace("-", "_"):
                return m
        raise ValueError(f"unknown resolution mode: {value}")


_SPEC_SEP = re.compile(r"^(?P<name>[A-Za-z0-9_][A-Za-z0-9_-]*?)(?:[:@ ]|-(?=v?\d))(?P<version>\S+)$")


@dataclass(frozen=True)
class PackageSpec:
    """A single input request: crate name, optional exact version or range, resolution mode."""
    name: str
    version: Optional[str] = None
    mode: ResolutionMode = ResolutionMode.DEFAULT

    def __post_init__(self):
        if not self.name:
            raise ValueError("package spec requires a name")
        if self.version is not None:
            v = self.version.strip()
            if v.startswith("v") and v[1:2].isdigit():
                v = v[1:]
            object.__setattr__(self, "version", v or None)

    @classmethod
    def parse(cls, token: str, mode: ResolutionMode = ResolutionMode.DEFAULT) -> "PackageSpec":
        """Parse `name`, `name-1.2.3`, `name:1.2.3`, `name@^1.2` or `name 1.2.3`."""
        token = token.strip()
        m = _SPEC_SEP.match(token)
        if m:
            return cls(m.group("name"), m.group("version"), mode)
        return cls(token, None, mode)

    @property
    def pinned(self) -> bool:
        return self.version is not None

    def __str__(self) -> str:
        return f"{self.name}-{self.version}" if self.version else self.name


@dataclass(eq=False)
class Node:
    name: str
    version: str
    # False only for an unversioned root request: it is packaged under its bare name
    pinned: bool = True
    architecture_restricted: bool = False
    feature_gated: bool = False
    parents: Set[NodeKey] = field(default_factory=set)

    @property
    def key(self) -> NodeKey:
        return (self.name, self.version)

    @property
    def label(self) -> str:
        return f"{self.name}-{self.version}" if self.pinned else self.name

    def __eq__(self, other) -> bool:
        return isinstance(other, Node) and self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def __repr__(self) -> str:
        return f"Node({self.name!r}, {self.version!r})"


@dataclass(frozen=True)
class Edge:
    source: NodeKey
    target: NodeKey
    optional: bool = False
    target_cfg: Optional[str] = None
    kind: str = "normal"


class DependencyGraph:
    """Directed acyclic multigraph over Nodes, edges point from dependent to dependency."""

    def __init__(self):
        self.nodes: Dict[NodeKey, Node] = {}
        self._out: Dict[NodeKey, Dict[NodeKey, Set[Edge]]] = {}
        self._in: Dict[NodeKey, Set[NodeKey]] = {}
        self.root: Optional[NodeKey] = None

    def add_node(self, name: str, version: str, pinned: bool = True) -> Node:
        key = (name, version)
        node = self.nodes.get(key)
        if node is None:
            node = Node(name=name, version=version, pinned=pinned)
            self.nodes[key] = node
            self._out[key] = {}
            self._in[key] = set()
        return node

    def add_edge(self, edge: Edge) -> None:
        if edge.source not in self.nodes or edge.target not in self.nodes:
            raise KeyError(f"edge references unknown node: {edge}")
        self._out[edge.source].setdefault(edge.target, set()).add(edge)
        self._in[edge.target].add(edge.source)
        self.nodes[edge.target].parents.add(edge.source)

    def dependencies(self, key: NodeKey) -> List[NodeKey]:
        return sorted(self._out.get(key, {}))

    def dependents(self, key: NodeKey) -> List[NodeKey]:
        return sorted(self._in.get(key, set()))

    def edges(self) -> Iterator[Edge]:
        for src in sorted(self._out):
            for tgt in sorted(self._out[src]):
                for e in sorted(self._out[src][tgt], key=lambda e: (e.kind, e.optional, e.target_cfg or "")):
                    yield e

    def compute_flags(self) -> None:
        """Mark nodes reachable only through platform-gated or optional edges.

        A node is flagged when every incoming edge is gated or comes from a
        flagged parent. Computed as a least fixed point over a worklist: flags
        only ever flip from False to True, and a cycle with no gated entry stays
        unflagged.
        """
        arch: Dict[NodeKey, bool] = {key: False for key in self.nodes}
        feat: Dict[NodeKey, bool] = {key: False for key in self.nodes}
        pending = deque(sorted(self.nodes))
        queued = set(pending)
        while pending:
            key = pending.popleft()
            queued.discard(key)
            parents = self._in.get(key, set())
            if not parents:
                continue
            a_all, f_all = True, True
            for p in parents:
                for e in self._out[p][key]:
                    a_all = a_all and (arch[p] or e.target_cfg is not None)
                    f_all = f_all and (feat[p] or e.optional)
            if (a_all and not arch[key]) or (f_all and not feat[key]):
                arch[key] = arch[key] or a_all
                feat[key] = feat[key] or f_all
                for child in self._out[key]:
                    if child not in queued:
                        pending.append(child)
                        queued.add(child)

        for key, node in self.nodes.items():
            node.architecture_restricted, node.feature_gated = arch[key], feat[key]

    def __contains__(self, key) -> bool:
        return key in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes.values())

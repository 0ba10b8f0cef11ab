# cratepack/resolver.py
"""
resolver.py - crate dependency resolver

Features:
- Cargo requirement grammar (bare, =, ^, ~, comparators, wildcards) via semantic_version
- Feature unification: default features, `dep:x`, `x/feat`, weak `x?/feat`, implicit features
- Resolution modes: normal consumer build vs. all optional edges for test coverage
- One choice per (crate, requirement) per resolver instance, preferring versions already in the graph
- Platform-gated and optional edges kept with their qualifiers
- Export to JSON and Graphviz DOT
"""

from __future__ import annotations

import re
import json
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

import semantic_version

from cratepack.catalog import Catalog, Release, get_catalog, _normalize_name
from cratepack.config import get_config
from cratepack.errors import ResolutionError
from cratepack.logging import get_logger
from cratepack.models import DependencyGraph, Edge, Node, NodeKey, PackageSpec, ResolutionMode

logger = get_logger("resolver")

_WS = re.compile(r"\s+")


def cargo_requirement(req: str) -> semantic_version.SimpleSpec:
    """Translate a cargo version requirement into a SimpleSpec.

    A bare version means caret, `=1.2` means exact.
    """
    parts = []
    for raw in (req or "*").split(","):
        p = _WS.sub("", raw)
        if not p:
            raise ResolutionError(f"invalid version requirement: {req!r}", requirement=req)
        if p[0].isdigit():
            p = "^" + p
        elif p.startswith("=") and not p.startswith("=="):
            p = "=" + p
        parts.append(p)
    try:
        return semantic_version.SimpleSpec(",".join(parts))
    except ValueError as e:
        raise ResolutionError(f"invalid version requirement: {req!r}: {e}", requirement=req) from e


def _is_exact(version: str) -> bool:
    try:
        semantic_version.Version(version)
        return True
    except ValueError:
        return False


@dataclass
class FeatureClosure:
    enabled: Set[str] = field(default_factory=set)
    optional_deps: Set[str] = field(default_factory=set)
    dep_features: Dict[str, Set[str]] = field(default_factory=dict)


def feature_closure(release: Release, requested: Set[str], use_default: bool,
                    all_features: bool = False) -> FeatureClosure:
    """Expand requested features of a release into enabled features and optional deps."""
    table = release.features
    optional_names = {d.alias for d in release.deps if d.optional}
    explicit_dep_refs = {v[4:] for vals in table.values() for v in vals if v.startswith("dep:")}
    out = FeatureClosure()
    pending: List[str] = list(requested)
    if use_default and "default" in table:
        pending.append("default")
    if all_features:
        pending.extend(table.keys())
        out.optional_deps |= optional_names
    while pending:
        f = pending.pop()
        if f.startswith("dep:"):
            out.optional_deps.add(f[4:])
            continue
        if "/" in f:
            dep, sub = f.split("/", 1)
            weak = dep.endswith("?")
            dep = dep.rstrip("?")
            if not weak and dep in optional_names:
                out.optional_deps.add(dep)
                if dep not in explicit_dep_refs:
                    pending.append(dep)
            out.dep_features.setdefault(dep, set()).add(sub)
            continue
        if f in out.enabled:
            continue
        out.enabled.add(f)
        if f in table:
            pending.extend(table[f])
        elif f in optional_names and f not in explicit_dep_refs:
            out.optional_deps.add(f)
        else:
            logger.debug("%s %s: unknown feature %r ignored", release.name, release.version, f)
    return out


@dataclass
class _Activation:
    release: Release
    features: Set[str] = field(default_factory=set)
    default: bool = False


class Resolver:
    def __init__(self, catalog: Optional[Catalog] = None, cfg: Optional[Dict[str, Any]] = None):
        self._cfg = cfg if cfg is not None else get_config().section("resolver")
        self.catalog = catalog or get_catalog(self._cfg.get("local_index"))
        self.allow_prerelease = bool(self._cfg.get("allow_prerelease", False))
        self.include_platform_gated = bool(self._cfg.get("include_platform_gated", True))
        self._choices: Dict[Tuple[str, str, bool], Release] = {}

    # -----------------------
    # Version selection
    # -----------------------
    def select(self, name: str, req: str, graph: Optional[DependencyGraph] = None,
               exact: bool = False) -> Release:
        memo_key = (_normalize_name(name), req, exact)
        if memo_key in self._choices:
            return self._choices[memo_key]
        releases = self.catalog.releases(name)
        if not releases:
            raise ResolutionError(f"unknown crate: {name}", name=name, requirement=req)
        if exact:
            candidates = [r for r in releases if r.semver == semantic_version.Version(req)]
        else:
            spec = cargo_requirement(req)
            wants_pre = "-" in req
            candidates = [r for r in releases
                          if not r.yanked and spec.match(r.semver)
                          and (not r.semver.prerelease or self.allow_prerelease or wants_pre)]
        if not candidates:
            raise ResolutionError(f"no version of {name} satisfies {req!r}", name=name, requirement=req)
        in_graph = [r for r in candidates if graph is not None and (r.name, r.version) in graph]
        chosen = max(in_graph or candidates, key=lambda r: r.semver)
        if chosen.yanked:
            logger.warning("%s %s is yanked but was requested exactly", chosen.name, chosen.version)
        self._choices[memo_key] = chosen
        logger.debug("selected %s %s for %r", chosen.name, chosen.version, req)
        return chosen

    def _select_root(self, spec: PackageSpec, graph: Optional[DependencyGraph] = None) -> Release:
        if spec.version is None:
            return self.select(spec.name, "*", graph)
        if _is_exact(spec.version):
            return self.select(spec.name, spec.version, graph, exact=True)
        return self.select(spec.name, spec.version, graph)

    def resolve_root(self, spec: PackageSpec) -> Node:
        """Resolve only the requested crate (single-node mode)."""
        rel = self._select_root(spec)
        return Node(name=rel.name, version=rel.version, pinned=spec.pinned)

    # -----------------------
    # Graph expansion
    # -----------------------
    def resolve(self, spec: PackageSpec) -> DependencyGraph:
        """Build the dependency graph rooted at spec."""
        graph = DependencyGraph()
        root_rel = self._select_root(spec, graph)
        root = graph.add_node(root_rel.name, root_rel.version, pinned=spec.pinned)
        graph.root = root.key
        all_features = spec.mode is ResolutionMode.ALL_FEATURES

        active: Dict[NodeKey, _Activation] = {}
        queue: deque = deque()
        queued: Set[NodeKey] = set()

        def activate(rel: Release, features: Set[str], default: bool):
            key = (rel.name, rel.version)
            act = active.get(key)
            changed = act is None
            if act is None:
                act = active[key] = _Activation(rel)
            new = set(features) - act.features
            if new:
                act.features |= new
                changed = True
            if default and not act.default:
                act.default = True
                changed = True
            if changed and key not in queued:
                queue.append(key)
                queued.add(key)

        activate(root_rel, set(), True)
        while queue:
            key = queue.popleft()
            queued.discard(key)
            act = active[key]
            closure = feature_closure(act.release, act.features, act.default,
                                      all_features=all_features and key == graph.root)
            for dep in act.release.deps:
                if dep.kind == "dev":
                    continue
                if dep.target and not self.include_platform_gated:
                    continue
                if dep.optional and dep.alias not in closure.optional_deps:
                    continue
                try:
                    child_rel = self.select(dep.name, dep.req, graph)
                except ResolutionError as e:
                    raise ResolutionError(f"{e} (required by {key[0]} {key[1]})",
                                          name=dep.name, requirement=dep.req) from e
                child = graph.add_node(child_rel.name, child_rel.version)
                graph.add_edge(Edge(source=key, target=child.key, optional=dep.optional,
                                    target_cfg=dep.target, kind=dep.kind))
                feats = set(dep.features) | closure.dep_features.get(dep.alias, set())
                activate(child_rel, feats, dep.default_features)

        graph.compute_flags()
        logger.info("resolved %s: %d crates", spec, len(graph))
        return graph

    # -----------------------
    # Exporters: JSON, Graphviz DOT
    # -----------------------
    def to_dict(self, graph: DependencyGraph) -> Dict[str, Any]:
        nodes = []
        for key in sorted(graph.nodes):
            n = graph.nodes[key]
            nodes.append({
                "name": n.name,
                "version": n.version,
                "architecture_restricted": n.architecture_restricted,
                "feature_gated": n.feature_gated,
                "dependencies": [{"name": d[0], "version": d[1]} for d in graph.dependencies(key)],
            })
        root = {"name": graph.root[0], "version": graph.root[1]} if graph.root else None
        return {"root": root, "nodes": nodes}

    def export_json(self, graph: DependencyGraph, path: str) -> None:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(graph), f, indent=2, ensure_ascii=False)

    def export_graphviz(self, graph: DependencyGraph, path: str) -> None:
        """Write the graph as DOT; optional edges dashed, platform-gated edges labelled."""
        lines = ["digraph deps {"]
        for key in sorted(graph.nodes):
            lines.append(f'  "{key[0]} {key[1]}" [label="{key[0]}\\n{key[1]}"];')
        for e in graph.edges():
            attrs = []
            if e.optional:
                attrs.append("style=dashed")
            if e.target_cfg:
                label = e.target_cfg.replace('"', '\\"')
                attrs.append(f'label="{label}"')
            suffix = f" [{', '.join(attrs)}]" if attrs else ""
            lines.append(f'  "{e.source[0]} {e.source[1]}" -> "{e.target[0]} {e.target[1]}"{suffix};')
        lines.append("}")
        with open(path, "w", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")

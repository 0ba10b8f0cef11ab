#!/usr/bin/env python3
# cratepack/cli.py
"""
cratepack CLI

Sub-commands:
- package       resolve, package and verify one or more crates (integration run)
- build-order   print the dependency-first build order of a crate
- resolve       print or export the resolved dependency graph
- deb-src-name  print the canonical overlay / source name of a crate
"""

from __future__ import annotations

import sys
import argparse
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from cratepack import config as config_mod
from cratepack import logging as logging_mod
from cratepack.build_order import format_order, linearize
from cratepack.catalog import Catalog, get_catalog
from cratepack.config import RunConfig
from cratepack.errors import ConfigurationError, CratepackError
from cratepack.models import PackageSpec, ResolutionMode
from cratepack.naming import deb_src_name
from cratepack.orchestrator import RunOrchestrator, RunReport
from cratepack.overlays import OverlayLocator
from cratepack.packager import CommandBackend, NodePackager, NodeStatus, PackagingOptions
from cratepack.policy import AllowList, build_policy
from cratepack.resolver import Resolver
from cratepack.sources import LocalSource, RegistrySource, SourceProvider
from cratepack.verification import LintPass, SandboxPass

logger = logging_mod.get_logger("cli")
console = Console()


# -----------------------
# Small pretty helpers
# -----------------------
def print_ok(msg: str):
    console.print(f"[bold green]✔[/] {msg}")


def print_warn(msg: str):
    console.print(f"[bold yellow]![/] {msg}")


def print_err(msg: str):
    console.print(f"[bold red]✖[/] {msg}")


def print_info(msg: str):
    console.print(f"[cyan]{msg}[/cyan]")


# -----------------------
# CLI Implementation
# -----------------------
class CratepackCLI:
    def __init__(self, cfg: config_mod.Config, local_index: Optional[str] = None):
        self.config = cfg
        self._local_index = local_index
        self._catalog: Optional[Catalog] = None

    @property
    def catalog(self) -> Catalog:
        if self._catalog is None:
            self._catalog = get_catalog(self._local_index)
        return self._catalog

    def resolver(self) -> Resolver:
        return Resolver(self.catalog, self.config.section("resolver"))

    def _checksum(self, name: str, version: str) -> Optional[str]:
        rel = self.catalog.get_release(name, version)
        return rel.checksum if rel else None

    def _sources(self, source_dir: Optional[str]) -> SourceProvider:
        if source_dir:
            return LocalSource(root=Path(source_dir))
        return RegistrySource()

    def build_orchestrator(self, run_config: RunConfig, source_dir: Optional[str] = None) -> RunOrchestrator:
        cfg = self.config
        options = PackagingOptions(
            suppress_test=run_config.suppress_test,
            suppress_install_check=run_config.suppress_install_check,
            extra_args=list(run_config.extra_args),
            env=dict(cfg.get("packaging.env", {}) or {}),
            timeout=run_config.timeout,
        )
        packager = NodePackager(
            output_dir=run_config.output_dir,
            sources=self._sources(source_dir),
            backend=CommandBackend(cfg.get("packaging.command")),
            locator=OverlayLocator(run_config.config_dir),
            options=options,
            test_command=cfg.get("packaging.test_command"),
            install_command=cfg.get("packaging.install_command"),
            source_build_command=(cfg.get("packaging.source_build_command")
                                  if cfg.get("packaging.source_build", True) else None),
            keep_work_dirs=run_config.keep_work_dirs,
            checksums=self._checksum,
        )
        policy = build_policy(AllowList.load(run_config.allow_list_file), run_config.failures_file)
        arch = cfg.get("sandbox.arch")
        lint = LintPass(packager, arch=arch, timeout=run_config.timeout)
        sandbox = SandboxPass(packager, arch=arch, timeout=run_config.timeout)
        return RunOrchestrator(run_config, self.resolver(), packager, policy, lint=lint, sandbox=sandbox)

    # --------------
    # commands
    # --------------
    def package(self, args) -> int:
        run_config = RunConfig.from_config(
            self.config,
            output_dir=args.directory,
            failures_file=args.failures_file,
            allow_list_file=args.allow_failures,
            config_dir=args.config_dir,
            recursive=args.recursive or None,
            keep_files=args.keep or None,
            lint=False if args.no_lint else None,
            sandbox=args.sbuild or None,
            extra_args=args.extra_arg or None,
        )
        specs = [PackageSpec.parse(s, ResolutionMode.parse(args.mode)) for s in args.specs]
        orchestrator = self.build_orchestrator(run_config, source_dir=args.source_dir)
        report = orchestrator.run(specs)
        self.print_report(report)
        return report.exit_code

    def build_order(self, args) -> int:
        spec = PackageSpec.parse(args.spec, ResolutionMode.parse(args.mode))
        order = linearize(self.resolver().resolve(spec))
        sys.stdout.write(format_order(order))
        return 0

    def resolve(self, args) -> int:
        spec = PackageSpec.parse(args.spec, ResolutionMode.parse(args.mode))
        resolver = self.resolver()
        graph = resolver.resolve(spec)
        if args.json:
            resolver.export_json(graph, args.json)
            print_ok(f"wrote {args.json}")
        if args.dot:
            resolver.export_graphviz(graph, args.dot)
            print_ok(f"wrote {args.dot}")
        if not args.json and not args.dot:
            table = Table(title=f"{spec} ({len(graph)} crates)")
            table.add_column("crate")
            table.add_column("version")
            table.add_column("flags")
            for node in linearize(graph):
                flags = []
                if node.architecture_restricted:
                    flags.append("platform")
                if node.feature_gated:
                    flags.append("optional")
                table.add_row(node.name, node.version, ",".join(flags))
            console.print(table)
        return 0

    def deb_src_name(self, args) -> int:
        sys.stdout.write(deb_src_name(args.name, args.version or None) + "\n")
        return 0

    def print_report(self, report: RunReport) -> None:
        for r in report.reports:
            o = r.outcome
            label = f"{r.stage} {o.node.label}"
            if o.status is NodeStatus.FAILED:
                decision = r.decision.value if r.decision else "failed"
                print_err(f"{label}: step '{o.step}' {decision}: {o.error}")
            elif o.status is NodeStatus.SKIPPED:
                print_info(f"{label}: skipped")
            elif o.warnings:
                print_warn(f"{label}: ok with warnings: {'; '.join(o.warnings)}")
            else:
                print_ok(label)
        for spec, err in report.spec_errors:
            print_err(f"{spec}: {err}")
        if report.exit_code == 0:
            print_ok("run succeeded")
        else:
            print_err("run failed")


def make_parser():
    ap = argparse.ArgumentParser(prog="cratepack", description="Crate dependency packaging orchestrator")
    ap.add_argument("--config", help="explicit config file (YAML or JSON)")
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    ap.add_argument("--local-index", help="JSON crate index to use instead of crates.io")
    sub = ap.add_subparsers(dest="cmd")

    mode_help = "resolution mode: default or binary-all-for-testing"

    # package
    p_pkg = sub.add_parser("package", help="package crates and their dependencies")
    p_pkg.add_argument("specs", nargs="+", metavar="SPEC", help="crate, crate-VERSION or crate:REQ")
    p_pkg.add_argument("-d", "--directory", help="output directory (cleared unless -k)")
    p_pkg.add_argument("-f", "--failures-file", help="record failures here and keep going (relative to -d)")
    p_pkg.add_argument("-a", "--allow-failures", help="file of crate or crate-version entries allowed to fail")
    p_pkg.add_argument("-c", "--config-dir", help="overlay directory")
    p_pkg.add_argument("-b", "--sbuild", action="store_true", help="rebuild results with sbuild")
    p_pkg.add_argument("-k", "--keep", action="store_true", help="keep previous output, skip finished crates")
    p_pkg.add_argument("-r", "--recursive", action="store_true", help="package all dependencies first")
    p_pkg.add_argument("-x", "--extra-arg", action="append", help="extra argument for the packaging tool")
    p_pkg.add_argument("--no-lint", action="store_true", help="skip the lintian pass")
    p_pkg.add_argument("--mode", default="default", help=mode_help)
    p_pkg.add_argument("--source-dir", help="take sources from this directory instead of crates.io")

    # build-order
    p_order = sub.add_parser("build-order", help="print dependency-first build order")
    p_order.add_argument("spec")
    p_order.add_argument("--mode", default="default", help=mode_help)

    # resolve
    p_res = sub.add_parser("resolve", help="show or export the dependency graph")
    p_res.add_argument("spec")
    p_res.add_argument("--mode", default="default", help=mode_help)
    p_res.add_argument("--json", help="write graph as JSON")
    p_res.add_argument("--dot", help="write graph as Graphviz DOT")

    # deb-src-name
    p_name = sub.add_parser("deb-src-name", help="print canonical overlay name")
    p_name.add_argument("name")
    p_name.add_argument("version", nargs="?")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = make_parser()
    args = parser.parse_args(argv)
    if not args.cmd:
        parser.print_help()
        return 2

    try:
        cfg = config_mod.load(args.config, fatal=True)
        logging_mod.configure(cfg.get("logging", {}))
        if args.verbose:
            logging_mod.set_level("DEBUG")
        cli = CratepackCLI(cfg, local_index=args.local_index)
        if args.cmd == "package":
            return cli.package(args)
        if args.cmd == "build-order":
            return cli.build_order(args)
        if args.cmd == "resolve":
            return cli.resolve(args)
        if args.cmd == "deb-src-name":
            return cli.deb_src_name(args)
        parser.print_help()
        return 2
    except ConfigurationError as e:
        print_err(f"configuration error: {e}")
        return 2
    except ValueError as e:
        print_err(str(e))
        return 2
    except CratepackError as e:
        print_err(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())

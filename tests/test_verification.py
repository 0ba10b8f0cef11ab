import pytest

from cratepack.errors import ConfigurationError
from cratepack.models import Node
from cratepack.overlays import OverlayLocator
from cratepack.packager import NodeStatus
from cratepack.verification import LintPass, SandboxPass, host_arch

from conftest import FakeRunner


@pytest.fixture
def packaged(make_packager):
    """A packager with c 1.0.0 already packaged (changes and dsc written)."""
    packager = make_packager()
    node = Node("c", "1.0.0")
    assert packager.package(node).ok
    return packager, node


class TestLintPass:
    def test_lints_source_and_arch_changes(self, packaged):
        packager, node = packaged
        (packager.output_dir / "rust-c_1.0.0-1_amd64.changes").write_text("x")
        runner = FakeRunner()
        lint = LintPass(packager, runner=runner, arch="amd64", command=["lintian", "-EIL"],
                        suppress_tags_file=packager.output_dir / "tags")
        outcome = lint.run(node)
        assert outcome.status is NodeStatus.SUCCESS
        targets = [c[-1].rsplit("/", 1)[-1] for c, _ in runner.calls]
        assert targets == ["rust-c_1.0.0-1_source.changes", "rust-c_1.0.0-1_amd64.changes"]
        assert runner.calls[0][0][1:3] == ["--suppress-tags-from-file", str(packager.output_dir / "tags")]

    def test_second_pass_skips(self, packaged):
        packager, node = packaged
        runner = FakeRunner()
        lint = LintPass(packager, runner=runner, command=["lintian"])
        assert lint.run(node).status is NodeStatus.SUCCESS
        assert lint.run(node).status is NodeStatus.SKIPPED
        assert len(runner.calls) == 1

    def test_failure(self, packaged):
        packager, node = packaged
        lint = LintPass(packager, runner=FakeRunner(codes={"lintian": 1}), command=["lintian"])
        outcome = lint.run(node)
        assert outcome.status is NodeStatus.FAILED
        assert outcome.error.step == "lint"
        assert outcome.error.name == "c"

    def test_overlay_suppresses_lint(self, packaged, tmp_path):
        packager, node = packaged
        debian = tmp_path / "overlays" / "c-1" / "debian"
        debian.mkdir(parents=True)
        (debian / "cratepack.yaml").write_text("suppress: [lint]\n")
        packager.locator = OverlayLocator(tmp_path / "overlays")
        outcome = LintPass(packager, runner=FakeRunner(codes={"lintian": 1}), command=["lintian"]).run(node)
        assert outcome.status is NodeStatus.SUCCESS
        assert outcome.warnings

    def test_unpackaged_node_skipped(self, make_packager):
        lint = LintPass(make_packager(), runner=FakeRunner(), command=["lintian"])
        assert lint.run(Node("zzz", "1.0.0")).status is NodeStatus.SKIPPED


class TestSandboxPass:
    def test_explicit_chroot_must_exist(self, packaged):
        packager, _ = packaged
        sandbox = SandboxPass(packager, runner=FakeRunner(codes={"schroot": 1}), arch="amd64",
                              chroot="custom", command=["sbuild"])
        with pytest.raises(ConfigurationError):
            sandbox.check_environment()

    def test_second_candidate_chroot(self, packaged, monkeypatch):
        monkeypatch.delenv("CHROOT", raising=False)
        packager, node = packaged
        runner = FakeRunner(codes={"schroot": lambda cmd: 0 if cmd[-1] == "unstable-amd64-sbuild" else 1})
        sandbox = SandboxPass(packager, runner=runner, arch="amd64", command=["sbuild"])
        sandbox.check_environment()
        assert sandbox.chroot == "unstable-amd64-sbuild"

    def test_failure_and_already_built(self, packaged):
        packager, node = packaged
        runner = FakeRunner(codes={"sbuild": 3})
        sandbox = SandboxPass(packager, runner=runner, arch="amd64", chroot="c", command=["sbuild"])
        outcome = sandbox.run(node)
        assert outcome.status is NodeStatus.FAILED
        assert outcome.error.step == "sandbox"
        (packager.output_dir / "rust-c_1.0.0-1_amd64.changes").write_text("x")
        assert sandbox.run(node).status is NodeStatus.SKIPPED


def test_host_arch(monkeypatch):
    monkeypatch.setenv("DEB_HOST_ARCH", "arm64")
    assert host_arch(FakeRunner()) == "arm64"
    monkeypatch.delenv("DEB_HOST_ARCH")
    assert host_arch(FakeRunner(codes={"dpkg-architecture": 1})) is None


def test_fixture_writes_changes(packaged):
    packager, _ = packaged
    assert (packager.output_dir / "rust-c_1.0.0-1_source.changes").exists()

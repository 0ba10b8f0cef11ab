import json
import shutil

import pytest

from cratepack import config as config_mod
from cratepack import logging as logging_mod
from cratepack.cli import main, make_parser

from conftest import make_crate


@pytest.fixture(autouse=True)
def restore_globals():
    yield
    config_mod._CONFIG = None
    logging_mod.configure(config_mod.get_config().get("logging", {}))


@pytest.fixture
def workspace(tmp_path):
    index = {
        "a": [{"vers": "1.0.0", "deps": [{"name": "b", "req": "^1.0"}]}],
        "b": [{"vers": "1.0.0", "deps": [{"name": "c", "req": "^1.0"}]}],
        "c": [{"vers": "1.0.0", "deps": []}],
    }
    (tmp_path / "index.json").write_text(json.dumps(index))
    for name in ("a", "b", "c"):
        make_crate(tmp_path / "upstream", name, "1.0.0")
    (tmp_path / "cratepack.yaml").write_text(
        "logging:\n"
        "  console: {enabled: false}\n"
        "packaging:\n"
        '  command: ["cp", "-r", "{source}", "{directory}"]\n'
        "  source_build: false\n"
        "lint:\n"
        "  enabled: false\n")
    return tmp_path


def _base_args(ws):
    return ["--config", str(ws / "cratepack.yaml"), "--local-index", str(ws / "index.json")]


def test_parser_package_options():
    args = make_parser().parse_args(
        ["package", "-r", "-k", "-d", "out", "-f", "fails", "--extra-arg=--foo", "-x", "bar", "x", "y-1.0.0"])
    assert args.recursive and args.keep
    assert args.extra_arg == ["--foo", "bar"]
    assert args.specs == ["x", "y-1.0.0"]
    assert args.failures_file == "fails"


def test_no_command_prints_help(capsys):
    assert main([]) == 2


def test_deb_src_name(workspace, capsys):
    assert main(["--config", str(workspace / "cratepack.yaml"), "deb-src-name", "Foo_Bar", "0.3.1"]) == 0
    assert capsys.readouterr().out == "foo-bar-0.3\n"


def test_build_order(workspace, capsys):
    assert main(_base_args(workspace) + ["build-order", "a"]) == 0
    assert capsys.readouterr().out == "c 1.0.0\nb 1.0.0\na 1.0.0\n"


def test_resolve_json(workspace):
    out = workspace / "graph.json"
    assert main(_base_args(workspace) + ["resolve", "a", "--json", str(out)]) == 0
    assert len(json.loads(out.read_text())["nodes"]) == 3


def test_missing_config_is_usage_error(tmp_path):
    assert main(["--config", str(tmp_path / "nope.yaml"), "deb-src-name", "x"]) == 2


def test_unknown_mode(workspace):
    assert main(_base_args(workspace) + ["build-order", "a", "--mode", "everything"]) == 2


def test_unknown_crate(workspace):
    assert main(_base_args(workspace) + ["build-order", "zzz"]) == 1


@pytest.mark.skipif(shutil.which("cp") is None, reason="cp not available")
class TestPackageCommand:
    def test_recursive_run(self, workspace):
        out = workspace / "out"
        rc = main(_base_args(workspace) + ["package", "-r", "-d", str(out),
                                           "--source-dir", str(workspace / "upstream"), "a"])
        assert rc == 0
        assert (out / "a" / "Cargo.toml").exists()
        assert (out / "b-1.0.0").is_dir()
        assert (out / "c-1.0.0").is_dir()
        assert (out / ".cratepack" / "stamps" / "a.json").exists()

    def test_failure_exits_non_zero(self, workspace):
        empty = workspace / "empty"
        empty.mkdir()
        rc = main(_base_args(workspace) + ["package", "-r", "-d", str(workspace / "out"),
                                           "--source-dir", str(empty), "a"])
        assert rc == 1

    def test_failures_file_keeps_going(self, workspace):
        shutil.rmtree(workspace / "upstream" / "b-1.0.0")
        out = workspace / "out"
        rc = main(_base_args(workspace) + ["package", "-r", "-d", str(out), "-f", "failed.txt",
                                           "--source-dir", str(workspace / "upstream"), "a"])
        assert rc == 0
        assert (out / "failed.txt").read_text() == "b 1.0.0\n"
        assert (out / "a").is_dir()

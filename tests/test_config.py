import json
from pathlib import Path

import pytest

from cratepack import config as config_mod
from cratepack.config import DEFAULTS, RunConfig, load
from cratepack.errors import ConfigurationError


@pytest.fixture(autouse=True)
def reset_config(monkeypatch):
    monkeypatch.delenv("CRATEPACK_CONFIG", raising=False)
    yield
    config_mod._CONFIG = None


class TestLoad:
    def test_defaults_without_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        cfg = load()
        assert cfg.path is None
        assert cfg.get("overlays.fallback_name") == "old-version"
        assert cfg.get("missing.key", 42) == 42

    def test_yaml_merges_over_defaults(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text("build:\n  timeout: '120'\n  output_dir: out\nlint:\n  enabled: false\n")
        cfg = load(str(path))
        assert cfg.path == path
        assert cfg.get("build.timeout") == 120
        assert Path(cfg.get("build.output_dir")).is_absolute()
        assert cfg.get("lint.enabled") is False
        assert cfg.get("lint.command") == DEFAULTS["lint"]["command"]

    def test_json_config(self, tmp_path):
        path = tmp_path / "c.json"
        path.write_text(json.dumps({"packaging": {"extra_args": "--a --b"}}))
        assert load(str(path)).get("packaging.extra_args") == ["--a", "--b"]

    def test_env_override(self, tmp_path, monkeypatch):
        path = tmp_path / "env.yaml"
        path.write_text("overlays:\n  fallback_policy: never\n")
        monkeypatch.setenv("CRATEPACK_CONFIG", str(path))
        assert load().get("overlays.fallback_policy") == "never"

    def test_overrides(self, tmp_path):
        cfg = load(overrides={"sandbox": {"chroot": "my-chroot"}})
        assert cfg.get("sandbox.chroot") == "my-chroot"
        assert cfg.get("sandbox.command")[0] == "sbuild"

    def test_invalid_structure(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("bogus: 1\noverlays:\n  fallback_policy: sometimes\n")
        with pytest.raises(ConfigurationError):
            load(str(path), fatal=True)
        # non-fatal loads warn and keep going
        assert load(str(path)).get("bogus") == 1

    def test_unparsable(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("build: [unclosed\n")
        with pytest.raises(ConfigurationError):
            load(str(path))

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load(str(tmp_path / "none.yaml"))


class TestRunConfig:
    def test_relative_failures_file_lives_in_output(self, tmp_path):
        rc = RunConfig(output_dir=tmp_path / "out", failures_file="failed.txt")
        assert rc.failures_file == tmp_path / "out" / "failed.txt"
        assert rc.state_dir == tmp_path / "out" / ".cratepack"

    def test_absolute_failures_file_kept(self, tmp_path):
        rc = RunConfig(output_dir=tmp_path / "out", failures_file=tmp_path / "f.txt")
        assert rc.failures_file == tmp_path / "f.txt"

    def test_from_config_explicit_values_win(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text(f"build:\n  output_dir: {tmp_path / 'cfg-out'}\n  keep_files: true\n")
        cfg = load(str(path))
        rc = RunConfig.from_config(cfg, output_dir=tmp_path / "cli-out", lint=None, recursive=True)
        assert rc.output_dir == tmp_path / "cli-out"
        assert rc.keep_files is True
        assert rc.lint is True
        assert rc.recursive is True
        assert rc.timeout == 3600

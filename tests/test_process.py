import shutil
import subprocess

import pytest

from cratepack.models import Node
from cratepack.process import NOT_FOUND_RC, TIMEOUT_RC, run_command

from conftest import FakeBackend

needs_sleep = pytest.mark.skipif(shutil.which("sleep") is None, reason="sleep(1) not installed")


class TestRunCommand:
    @needs_sleep
    def test_timeout_kills_child(self, tmp_path):
        log = tmp_path / "logs" / "slow.log"
        res = run_command(["sleep", "30"], timeout=1, log_path=log)
        assert res.returncode == TIMEOUT_RC
        assert res.timed_out
        assert not res.ok
        assert res.duration < 30
        assert log.read_text().splitlines()[-1] == f"[exit {TIMEOUT_RC}]"

    def test_missing_binary(self, tmp_path):
        res = run_command([str(tmp_path / "no-such-tool"), "--version"])
        assert res.returncode == NOT_FOUND_RC
        assert not res.timed_out
        assert res.stderr

    @needs_sleep
    def test_interrupt_kills_child_and_reraises(self, monkeypatch):
        real = subprocess.Popen.communicate
        children = []

        def interrupted(self, *args, **kwargs):
            children.append(self)
            if len(children) == 1:
                raise KeyboardInterrupt
            return real(self, *args, **kwargs)

        monkeypatch.setattr(subprocess.Popen, "communicate", interrupted)
        with pytest.raises(KeyboardInterrupt):
            run_command(["sleep", "30"], timeout=60)
        assert children[0].returncode is not None
        assert children[0].returncode != 0

    def test_env_merged_over_environment(self, monkeypatch):
        monkeypatch.setenv("CRATEPACK_OUTER", "outer")
        res = run_command(["sh", "-c", "echo $CRATEPACK_OUTER $CRATEPACK_INNER"], env={"CRATEPACK_INNER": 1})
        assert res.stdout.strip() == "outer 1"


class InterruptedBackend(FakeBackend):
    def package(self, node, source_dir, artifact_dir, overlay, options, log_path=None):
        artifact_dir.mkdir(parents=True)
        (artifact_dir / "half-written").write_text("x")
        raise KeyboardInterrupt


class TestInterruptedPackaging:
    def test_work_dir_removed_and_no_stamp(self, make_packager):
        packager = make_packager(backend=InterruptedBackend())
        node = Node("c", "1.0.0")
        with pytest.raises(KeyboardInterrupt):
            packager.package(node)
        assert not (packager.work_root / "c-1.0.0").exists()
        assert not packager.stamp_path(node).exists()
        assert not packager.is_complete(node)

    def test_next_run_rebuilds(self, make_packager):
        node = Node("c", "1.0.0")
        with pytest.raises(KeyboardInterrupt):
            make_packager(backend=InterruptedBackend()).package(node)
        backend = FakeBackend()
        packager = make_packager(backend=backend)
        assert packager.package(node).ok
        assert backend.calls == [("c", "1.0.0")]
        assert not (packager.artifact_dir(node) / "half-written").exists()

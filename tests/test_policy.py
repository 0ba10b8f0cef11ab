import pytest

from cratepack.errors import PackagingFailure, PatchApplicationError, VerificationFailure
from cratepack.models import Node
from cratepack.policy import (
    AllowList, Decision, FailFastPolicy, FailurePolicy, FailureSink, RecordAndContinuePolicy, build_policy,
)


class TestAllowList:
    @pytest.fixture
    def allow(self):
        return AllowList(["foo", "bar-1.2.3", "", "  "])

    @pytest.mark.parametrize("name,version,expected", [
        ("foo", "1.2.3", True),
        ("foo", "9.9.9", True),
        ("foo", None, True),
        ("bar", "1.2.3", True),
        ("bar", "1.2.4", False),
        ("bar", None, False),
        ("baz", "1.2.3", False),
    ])
    def test_entries(self, allow, name, version, expected):
        assert allow.allows(name, version) is expected

    def test_blank_lines_ignored(self, allow):
        assert len(allow) == 2

    def test_load(self, tmp_path):
        f = tmp_path / "allow.txt"
        f.write_text("foo\nbar-1.2.3\n")
        assert AllowList.load(f).allows("bar", "1.2.3")
        assert len(AllowList.load(tmp_path / "missing.txt")) == 0
        assert len(AllowList.load(None)) == 0


class TestPolicies:
    node = Node("foo", "1.2.3")

    def test_fail_fast_aborts(self):
        decision = FailFastPolicy().decide(self.node, PackagingFailure("boom"))
        assert decision is Decision.ABORT
        assert decision.fatal

    def test_allow_listed_failure_tolerated(self):
        policy = FailFastPolicy(AllowList(["foo"]))
        decision = policy.decide(self.node, VerificationFailure("lintian", step="lint"))
        assert decision is Decision.TOLERATED
        assert not decision.fatal

    def test_patch_failure_bypasses_allow_list(self, tmp_path):
        failure = PatchApplicationError("stale", patch="x.patch")
        assert FailFastPolicy(AllowList(["foo"])).decide(self.node, failure) is Decision.ABORT
        sink = FailureSink(tmp_path / "failures")
        policy = RecordAndContinuePolicy(sink, AllowList(["foo"]))
        assert policy.decide(self.node, failure) is Decision.ISOLATED
        assert sink.entries() == [("foo", "1.2.3")]

    def test_sink_records_and_continues(self, tmp_path):
        sink = FailureSink(tmp_path / "sub" / "failures")
        policy = RecordAndContinuePolicy(sink)
        assert policy.decide(self.node, PackagingFailure("boom")) is Decision.RECORDED
        assert policy.decide(Node("top", "0.1.0", pinned=False), PackagingFailure("boom")) is Decision.RECORDED
        assert sink.path.read_text() == "foo 1.2.3\ntop\n"

    def test_build_policy(self, tmp_path):
        assert isinstance(build_policy(), FailFastPolicy)
        assert isinstance(build_policy(failures_file=tmp_path / "f"), RecordAndContinuePolicy)

    def test_base_policy_is_abstract(self):
        with pytest.raises(TypeError):
            FailurePolicy()

"""Unit tests for reports and the final verdict."""

from __future__ import annotations

import json
import threading

import pytest
import yaml

from plangate.model import CANCELLED, FAILED, PASSED, SKIPPED, Outcome, TriggerEvent
from plangate.report import FinalVerdict, JobResult, Report, ReportStore


class TestReport:
    def test_each_step_recorded_once(self):
        report = Report("tests")
        report.record("1-a.sh", Outcome.passed())
        with pytest.raises(ValueError):
            report.record("1-a.sh", Outcome.failed("exit code 1"))
        assert len(report) == 1

    def test_first_failure_is_kept(self):
        report = Report("tests")
        report.record("1-a.sh", Outcome.passed())
        report.record("2-b.sh", Outcome.failed("exit code 3", exit_code=3, output_tail=["boom"]))
        report.record("3-c.sh", Outcome.failed("exit code 1", exit_code=1))
        assert report.first_failure.name == "2-b.sh"

        outcome = report.outcome()
        assert outcome.is_failed
        assert outcome.detail == "2-b.sh: exit code 3"
        assert outcome.exit_code == 3
        assert outcome.output_tail == ("boom",)

    @pytest.mark.parametrize("outcomes,status", [
        ([Outcome.passed(), Outcome.passed()], PASSED),
        ([Outcome.passed(), Outcome.failed("x"), Outcome.skipped("upstream failure")], FAILED),
        ([Outcome.cancelled(), Outcome.skipped("cancelled")], CANCELLED),
        ([Outcome.skipped("cancelled")], CANCELLED),
        ([Outcome.skipped("upstream failure")], SKIPPED),
        ([], SKIPPED),
    ])
    def test_status(self, outcomes, status):
        report = Report("tests")
        for i, o in enumerate(outcomes):
            report.record(f"{i}.sh", o)
        assert report.status == status

    def test_to_dict(self):
        report = Report("tests")
        report.record("1-a.sh", Outcome.passed(), 1.23456)
        report.record("2-b.sh", Outcome.failed("timeout"), 3.0)
        d = report.to_dict()
        assert d["status"] == FAILED
        assert d["first_failure"] == "2-b.sh"
        assert d["counts"] == {PASSED: 1, FAILED: 1, SKIPPED: 0, CANCELLED: 0}
        assert d["steps"][0] == {"name": "1-a.sh", "duration": 1.235, "status": "passed"}


class TestReportStore:
    def test_concurrent_writers(self):
        store = ReportStore()

        def write(i):
            store.record(JobResult(f"job-{i}", Outcome.passed()))

        threads = [threading.Thread(target=write, args=(i,)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(store.snapshot()) == 20

    def test_job_written_once(self):
        store = ReportStore()
        store.record(JobResult("a", Outcome.passed()))
        with pytest.raises(ValueError):
            store.record(JobResult("a", Outcome.failed("x")))
        assert "a" in store
        assert store.get("b") is None


class TestFinalVerdict:
    def test_success_ignores_gated_and_skipped(self):
        verdict = FinalVerdict({
            "tests": JobResult("tests", Outcome.passed()),
            "docs": JobResult("docs", Outcome.skipped("requires label"), gated=True),
        })
        assert verdict.success
        assert verdict.exit_code == 0

    def test_blocking_failure(self):
        verdict = FinalVerdict({
            "tests": JobResult("tests", Outcome.failed("1-a.sh: exit code 1")),
            "install": JobResult("install", Outcome.skipped("dependency failed")),
        })
        assert not verdict.success
        assert verdict.exit_code == 1
        assert verdict.failures() == [("tests", "1-a.sh: exit code 1")]

    def test_non_blocking_failure_does_not_fail(self):
        verdict = FinalVerdict({
            "docs": JobResult("docs", Outcome.failed("exit code 1"), blocking=False),
        })
        assert verdict.success
        assert verdict.failures() == [("docs", "exit code 1")]

    def test_provisioning_only_failures(self):
        verdict = FinalVerdict({
            "a": JobResult("a", Outcome.failed("provisioning: build_failed: x", kind="provisioning")),
        })
        assert verdict.exit_code == 3
        verdict.results["b"] = JobResult("b", Outcome.failed("exit code 1"))
        assert verdict.exit_code == 1

    def test_cancelled_is_not_failure(self):
        verdict = FinalVerdict({"a": JobResult("a", Outcome.cancelled())})
        assert verdict.success

    @pytest.mark.parametrize("suffix", [".yaml", ".json"])
    def test_write(self, tmp_path, suffix):
        verdict = FinalVerdict(
            {"tests": JobResult("tests", Outcome.failed("exit code 1"))},
            trigger=TriggerEvent("push", "refs/heads/main", branch="main"),
            workflow="ci",
        )
        path = verdict.write(tmp_path / "out" / f"verdict{suffix}")
        text = path.read_text()
        data = yaml.safe_load(text) if suffix == ".yaml" else json.loads(text)
        assert data["verdict"] == "failure"
        assert data["workflow"] == "ci"
        assert data["trigger"]["branch"] == "main"
        assert data["failures"] == [{"job": "tests", "detail": "exit code 1"}]

"""Tests for the job graph executor, run against real local workspaces."""

from __future__ import annotations

import threading
import time

import pytest

from conftest import RecordingBackend
from plangate.errors import ConfigurationError, CyclicDependency, MalformedPlan
from plangate.executor import ConcurrencyGroups, JobGraphExecutor, JobRun
from plangate.jobs import job
from plangate.model import TriggerEvent
from plangate.runner import ScriptRunner

PUSH = TriggerEvent("push", "refs/heads/main", branch="main")


def _executor(backend, **kwargs) -> JobGraphExecutor:
    return JobGraphExecutor(
        backends={"local": backend},
        runner=ScriptRunner(terminate_grace=2, poll_interval=0.01),
        retries=kwargs.pop("retries", 0),
        backoff=0,
        max_workers=4,
        workflow="ci",
        **kwargs,
    )


@pytest.fixture
def passing_plan(script, plan_file):
    script("1-ok.sh", directory="pass")
    return plan_file("pass.yaml", discover="pass/*.sh")


@pytest.fixture
def failing_plan(script, plan_file):
    script("1-bad.sh", "echo nope\nexit 1\n", directory="fail")
    return plan_file("fail.yaml", discover="fail/*.sh")


class TestGraph:
    def test_all_pass(self, backend, passing_plan):
        jobs = [job("a", passing_plan), job("b", passing_plan, needs=["a"])]
        verdict = _executor(backend).execute(jobs, PUSH)
        assert verdict.success
        assert verdict.exit_code == 0
        assert [r.outcome.status for r in verdict.results.values()] == ["passed", "passed"]
        assert backend.teardowns == 2

    def test_failure_skips_dependents(self, backend, passing_plan, failing_plan):
        jobs = [
            job("a", failing_plan),
            job("b", passing_plan, needs=["a"]),
            job("c", passing_plan, needs=["b"]),
            job("d", passing_plan),
        ]
        verdict = _executor(backend).execute(jobs, PUSH)
        results = verdict.results
        assert results["a"].outcome.is_failed
        assert results["a"].outcome.detail == "1-bad.sh: exit code 1"
        assert results["b"].outcome.is_skipped
        assert results["b"].outcome.detail == "dependency failed"
        assert results["c"].outcome.detail == "dependency failed"
        assert results["d"].outcome.is_passed
        assert not verdict.success
        assert verdict.exit_code == 1
        # b and c never provisioned
        assert backend.teardowns == 2

    def test_gated_job_not_counted(self, backend, passing_plan, failing_plan):
        jobs = [
            job("tests", passing_plan),
            job("docs", failing_plan, include_labels=["documentation"]),
            job("publish", passing_plan, needs=["docs"]),
        ]
        verdict = _executor(backend).execute(jobs, PUSH)
        assert verdict.success
        docs = verdict.results["docs"]
        assert docs.gated
        assert docs.outcome.is_skipped
        assert verdict.results["publish"].outcome.detail == "dependency skipped"

    def test_skip_ci_label(self, backend, passing_plan):
        event = TriggerEvent("pull_request", "refs/pull/1/head", labels=frozenset({"control/skip-ci"}))
        verdict = _executor(backend).execute([job("tests", passing_plan)], event)
        assert verdict.results["tests"].gated
        assert backend.attempts == 0

    def test_non_blocking_failure(self, backend, passing_plan, failing_plan):
        jobs = [job("tests", passing_plan), job("docs", failing_plan, blocking=False)]
        verdict = _executor(backend).execute(jobs, PUSH)
        assert verdict.success
        assert verdict.failures() == [("docs", "1-bad.sh: exit code 1")]

    def test_job_env(self, backend, script, plan_file):
        script("1-env.sh", 'test "$FLAVOUR" = bootc\n', directory="env")
        plan = plan_file("env.yaml", discover="env/*.sh")
        verdict = _executor(backend).execute([job("a", plan, env={"FLAVOUR": "bootc"})], PUSH)
        assert verdict.success


class TestValidation:
    def test_cycle_fails_before_provisioning(self, backend, passing_plan):
        jobs = [job("a", passing_plan, needs=["b"]), job("b", passing_plan, needs=["a"])]
        with pytest.raises(CyclicDependency):
            _executor(backend).execute(jobs, PUSH)
        assert backend.attempts == 0

    def test_bad_plan_fails_before_provisioning(self, backend, passing_plan, tmp_path):
        broken = tmp_path / "broken.yaml"
        broken.write_text("provision:\n  how: libvirt\nexecute:\n  discover: pass/*.sh\n")
        jobs = [job("a", passing_plan), job("b", broken)]
        with pytest.raises(MalformedPlan):
            _executor(backend).execute(jobs, PUSH)
        assert backend.attempts == 0

    def test_gated_job_plan_not_resolved(self, backend, passing_plan, tmp_path):
        jobs = [job("a", passing_plan), job("b", tmp_path / "missing.yaml", on=["dispatch"])]
        assert _executor(backend).execute(jobs, PUSH).success

    def test_job_without_plan(self, backend):
        with pytest.raises(ConfigurationError):
            _executor(backend).execute([job("a")], PUSH)

    @pytest.mark.parametrize("template", ["{workflow}-{pr}", "{0}", "{ref.name}", "group-{"])
    def test_bad_concurrency_template_fails_before_provisioning(self, backend, passing_plan, template):
        jobs = [job("a", passing_plan), job("b", passing_plan, concurrency=template)]
        with pytest.raises(ConfigurationError) as exc:
            _executor(backend).execute(jobs, PUSH)
        assert exc.value.exit_code == 2
        assert exc.value.details == {"job": "b"}
        assert backend.attempts == 0


class TestProvisioningFailures:
    def test_retries_then_succeeds(self, tmp_path, passing_plan):
        backend = RecordingBackend(tmp_path / "envs", fail_times=2)
        verdict = _executor(backend, retries=3).execute([job("a", passing_plan)], PUSH)
        assert verdict.success
        assert backend.attempts == 3

    def test_exhausted_retries(self, tmp_path, passing_plan):
        backend = RecordingBackend(tmp_path / "envs", fail_times=10)
        jobs = [job("a", passing_plan), job("b", passing_plan, needs=["a"])]
        verdict = _executor(backend, retries=1).execute(jobs, PUSH)
        a = verdict.results["a"].outcome
        assert a.is_failed
        assert a.kind == "provisioning"
        assert a.detail.startswith("provisioning: build_failed")
        assert verdict.results["b"].outcome.detail == "dependency failed"
        assert verdict.exit_code == 3
        assert backend.attempts == 2


class TestConcurrency:
    def test_newer_trigger_cancels_older_run(self, backend, tmp_path, script, plan_file):
        started = tmp_path / "started"
        script("1-wait.sh", f"touch {started}\nsleep 30\n", directory="slow")
        slow = plan_file("slow.yaml", discover="slow/*.sh")
        script("1-ok.sh", directory="fast")
        fast = plan_file("fast.yaml", discover="fast/*.sh")

        executor = _executor(backend)
        first = {}

        def older():
            first["verdict"] = executor.execute([job("tests", slow, concurrency="{workflow}-{ref}")], PUSH)

        thread = threading.Thread(target=older)
        thread.start()
        deadline = time.monotonic() + 10
        while not started.exists() and time.monotonic() < deadline:
            time.sleep(0.01)
        assert started.exists()

        began = time.monotonic()
        second = executor.execute([job("tests", fast, concurrency="{workflow}-{ref}")], PUSH)
        thread.join(timeout=20)
        assert time.monotonic() - began < 20

        assert second.success
        older_result = first["verdict"].results["tests"]
        assert older_result.outcome.is_cancelled
        assert first["verdict"].success

        # the old environment is gone before the new one exists
        kinds = [e.split(":")[0] for e in backend.events]
        assert kinds == ["provision", "teardown", "provision", "teardown"]
        assert backend.events[0].split(":")[1] == backend.events[1].split(":")[1]

    def test_different_refs_do_not_interfere(self, backend, passing_plan):
        executor = _executor(backend)
        jobs = [job("tests", passing_plan, concurrency="{workflow}-{ref}")]
        one = executor.execute(jobs, PUSH)
        two = executor.execute(jobs, TriggerEvent("push", "refs/heads/other", branch="other"))
        assert one.success and two.success

    def test_same_key_within_one_execution(self, backend, passing_plan):
        jobs = [
            job("a", passing_plan, concurrency="group"),
            job("b", passing_plan, concurrency="group"),
        ]
        verdict = _executor(backend).execute(jobs, PUSH)
        assert all(r.outcome.is_passed for r in verdict.results.values())

    def test_late_older_run_is_cancelled_up_front(self):
        groups = ConcurrencyGroups()
        old, new = groups.next_generation(), groups.next_generation()
        current = groups.acquire("tests", "ci-main", new)
        late = groups.acquire("tests", "ci-main", old)
        assert late.cancelled
        assert not current.cancelled

    def test_cancel_after_completion_is_noop(self):
        run = JobRun("tests", "ci-main", 1)
        run.finish()
        assert run.cancel() is False
        assert not run.cancelled

    def test_cancellation_skips_dependents(self, backend, tmp_path, script, plan_file):
        started = tmp_path / "started"
        script("1-wait.sh", f"touch {started}\nsleep 30\n", directory="slow")
        slow = plan_file("slow.yaml", discover="slow/*.sh")
        script("1-ok.sh", directory="fast")
        fast = plan_file("fast.yaml", discover="fast/*.sh")

        executor = _executor(backend)
        first = {}

        def older():
            first["verdict"] = executor.execute([
                job("build", slow, concurrency="{workflow}-{ref}"),
                job("install", fast, needs=["build"]),
            ], PUSH)

        thread = threading.Thread(target=older)
        thread.start()
        deadline = time.monotonic() + 10
        while not started.exists() and time.monotonic() < deadline:
            time.sleep(0.01)

        executor.execute([job("build", fast, concurrency="{workflow}-{ref}")], PUSH)
        thread.join(timeout=20)

        results = first["verdict"].results
        assert results["build"].outcome.is_cancelled
        assert results["install"].outcome.is_skipped
        assert results["install"].outcome.detail == "cancelled"

    def test_idle_keys_are_forgotten(self):
        groups = ConcurrencyGroups(max_keys=2)
        for ref in ("a", "b", "c"):
            run = groups.acquire("tests", ref, groups.next_generation())
            groups.release(run)
        assert list(groups._latest) == ["b", "c"]

    def test_active_keys_are_kept(self):
        groups = ConcurrencyGroups(max_keys=1)
        first = groups.acquire("tests", "a", groups.next_generation())
        groups.acquire("tests", "b", groups.next_generation())
        assert set(groups._latest) == {"a", "b"}
        groups.release(first)

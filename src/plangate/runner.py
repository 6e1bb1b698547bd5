# runner.py
from __future__ import annotations

import os
import shlex
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from . import settings
from .model import ExecutionPlan, Outcome, ScriptStep
from .provision.base import Environment
from .report import Report
from .ui.console import Console, get_console

UPSTREAM_FAILURE = "upstream failure"
TIMEOUT = "timeout"


@dataclass(frozen=True)
class StepResult:
    exit_code: Optional[int]
    timed_out: bool
    cancelled: bool
    output_tail: Tuple[str, ...]
    duration: float
    error: Optional[str] = None  # could not launch


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def step_label(plan: ExecutionPlan, step: ScriptStep) -> str:
    """Step name for reports: path relative to the discovery directory."""
    try:
        return step.path.relative_to(plan.discovery.directory).as_posix()
    except ValueError:
        return step.name


def step_argv(
    plan: ExecutionPlan,
    step: ScriptStep,
    environment: Environment,
    env: Optional[Dict[str, str]] = None,
) -> List[str]:
    """Command line for one step, as seen from inside the environment."""
    path = environment.guest_path(step.path)
    if not plan.script:
        argv = [path]
    elif "{path}" in plan.script:
        argv = shlex.split(plan.script.replace("{path}", shlex.quote(path)))
    else:
        argv = [*shlex.split(plan.script), path]
    return environment.command(argv, env)


def _terminate(proc: subprocess.Popen, grace: float) -> None:
    """SIGTERM the step's process group, SIGKILL it if it lingers."""
    for sig in (signal.SIGTERM, signal.SIGKILL):
        try:
            if os.name != "nt":
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except ProcessLookupError:
            return
        try:
            proc.wait(timeout=grace)
            return
        except subprocess.TimeoutExpired:
            continue


class ScriptRunner:
    """
    Runs the steps of an ExecutionPlan inside an Environment, one at a time,
    in ordinal order.
    """

    def __init__(
        self,
        console: Optional[Console] = None,
        *,
        tail_lines: int = settings.OUTPUT_TAIL_LINES,
        default_timeout: float = settings.STEP_TIMEOUT_SECONDS,
        terminate_grace: float = settings.TERMINATE_GRACE_SECONDS,
        poll_interval: float = 0.05,
    ):
        self._console = console
        self.tail_lines = tail_lines
        self.default_timeout = default_timeout
        self.terminate_grace = terminate_grace
        self.poll_interval = poll_interval

    @property
    def console(self) -> Console:
        return self._console or get_console()

    def step_vars(
        self,
        plan: ExecutionPlan,
        step: ScriptStep,
        environment: Environment,
        extra: Optional[Dict[str, str]] = None,
    ) -> Dict[str, str]:
        """Variables every step sees: the job's env plus the PLANGATE_* ones."""
        env = dict(extra or {})
        env.update({
            "PLANGATE_PLAN": plan.name,
            "PLANGATE_STEP": step.name,
            "PLANGATE_ORDINAL": "" if step.ordinal is None else str(step.ordinal),
            "PLANGATE_ROOT": environment.root,
            "PLANGATE_EXTRA_DEPS": "1" if plan.provisioning.extra_deps else "0",
        })
        return env

    def _run_step(
        self,
        job: str,
        plan: ExecutionPlan,
        step: ScriptStep,
        environment: Environment,
        cancel: Optional[threading.Event],
        extra_env: Optional[Dict[str, str]],
    ) -> StepResult:
        timeout = plan.step_timeout or self.default_timeout
        tail: deque[str] = deque(maxlen=self.tail_lines)
        start = time.monotonic()

        variables = self.step_vars(plan, step, environment, extra_env)
        try:
            proc = subprocess.Popen(
                step_argv(plan, step, environment, variables),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                bufsize=1,
                cwd=str(environment.host_cwd) if environment.host_cwd else None,
                env={**os.environ, **variables},
                start_new_session=(os.name != "nt"),
            )
        except OSError as e:
            return StepResult(None, False, False, (), time.monotonic() - start, error=f"could not execute: {e}")

        def drain() -> None:
            assert proc.stdout is not None
            for raw in iter(proc.stdout.readline, ""):
                line = raw.rstrip("\n")
                tail.append(line)
                self.console.print_step_output(job, step.name, line)
            proc.stdout.close()

        reader = threading.Thread(target=drain, daemon=True)
        reader.start()

        deadline = start + timeout
        timed_out = cancelled = False
        while proc.poll() is None:
            if cancel is not None and cancel.is_set():
                cancelled = True
                _terminate(proc, self.terminate_grace)
                break
            if time.monotonic() >= deadline:
                timed_out = True
                _terminate(proc, self.terminate_grace)
                break
            time.sleep(self.poll_interval)

        proc.wait()
        reader.join(timeout=self.terminate_grace)
        return StepResult(
            exit_code=proc.returncode,
            timed_out=timed_out,
            cancelled=cancelled,
            output_tail=tuple(tail),
            duration=time.monotonic() - start,
        )

    def run(
        self,
        plan: ExecutionPlan,
        environment: Environment,
        *,
        cancel: Optional[threading.Event] = None,
        job: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> Report:
        """
        Execute every step of `plan` and return the per-step Report.

        Fail-fast mode stops at the first failing step; continue mode runs
        everything. A timeout or cancellation always stops the sequence.
        """
        job = job or plan.name
        report = Report(job)
        skip_reason: Optional[str] = None

        for step in plan.steps:
            label = step_label(plan, step)
            if skip_reason is not None:
                report.record(label, Outcome.skipped(skip_reason))
                continue
            if cancel is not None and cancel.is_set():
                skip_reason = "cancelled"
                report.record(label, Outcome.skipped(skip_reason))
                continue

            self.console.print_step(job, label)
            result = self._run_step(job, plan, step, environment, cancel, env)

            if result.cancelled:
                outcome = Outcome.cancelled()
                skip_reason = "cancelled"
            elif result.timed_out:
                outcome = Outcome.failed(TIMEOUT, exit_code=result.exit_code, output_tail=result.output_tail)
                skip_reason = UPSTREAM_FAILURE
            elif result.error is not None:
                outcome = Outcome.failed(result.error)
                if plan.fail_fast:
                    skip_reason = UPSTREAM_FAILURE
            elif result.exit_code != 0:
                outcome = Outcome.failed(
                    f"exit code {result.exit_code}",
                    exit_code=result.exit_code,
                    output_tail=result.output_tail,
                )
                if plan.fail_fast:
                    skip_reason = UPSTREAM_FAILURE
            else:
                outcome = Outcome.passed()

            report.record(label, outcome, result.duration)
            self.console.print_step_outcome(job, label, outcome)

        return report

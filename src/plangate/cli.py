# cli.py
from __future__ import annotations

import dataclasses
import json
import subprocess
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional

import click

from . import settings
from .errors import CancellationError, ConfigurationError, PlangateError, ProvisionError
from .executor import JobGraphExecutor
from .git_facts.git import current_branch, current_ref
from .jobs import load_jobs
from .model import EVENT_TYPES, EXECUTION_MODES, PUSH, ExecutionPlan, Outcome, TriggerEvent
from .plan import resolve_file
from .provision import get_backend, provisioned
from .report import FinalVerdict, JobResult
from .runner import ScriptRunner
from .ui.console import Console, get_console, set_console

EXIT_INTERRUPTED = 130


def _fail(ctx: click.Context, err: PlangateError, title: str, suggestion: Optional[str] = None) -> None:
    console = get_console()
    details = [f"{k}={v}" for k, v in err.details.items()]
    console.print_error(title, f"{err.kind}: {err.message}", details=details or None, suggestion=suggestion)
    if ctx.obj.get("debug", False):
        console.print_exception(err)
    ctx.exit(err.exit_code)


def _resolve_or_exit(ctx: click.Context, plan_path: str) -> ExecutionPlan:
    try:
        return resolve_file(plan_path)
    except ConfigurationError as e:
        _fail(ctx, e, "Invalid test plan", suggestion="Fix the plan document and run `plangate resolve` again.")
        raise  # unreachable, ctx.exit raises


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Do not stream step output")
@click.pass_context
def cli(ctx, debug, quiet):
    """plangate: provision, run ordered test plans, gate CI jobs."""
    set_console(Console(debug=debug, stream_output=not quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("plan", type=click.Path(dir_okay=False))
@click.pass_context
def resolve(ctx, plan):
    """Resolve PLAN and print the execution plan as JSON."""
    resolved = _resolve_or_exit(ctx, plan)
    click.echo(json.dumps(resolved.to_dict(), indent=2))


def _run_plan(plan: ExecutionPlan, cancel: threading.Event, retries: int, backoff: float) -> JobResult:
    backend = get_backend(plan.provisioning.how)
    try:
        with provisioned(backend, plan.provisioning, retries=retries, backoff=backoff, cancel=cancel, job=plan.name) as env:
            report = ScriptRunner().run(plan, env, cancel=cancel, job=plan.name)
    except CancellationError:
        return JobResult(plan.name, Outcome.cancelled())
    get_console().print_report(report)
    return JobResult(plan.name, report.outcome(), report)


@cli.command()
@click.argument("plan", type=click.Path(dir_okay=False))
@click.option("--mode", type=click.Choice(EXECUTION_MODES), default=None, help="Override the plan's execution mode")
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), default=None, help="Per-step timeout in seconds")
@click.option("--retries", type=int, default=settings.PROVISION_RETRIES, show_default=True, help="Provisioning retries")
@click.option("--backoff", type=float, default=settings.PROVISION_BACKOFF_SECONDS, show_default=True, help="Initial retry backoff (s)")
@click.option("--report", "report_path", default=None, help="Write a JSON/YAML summary to this file")
@click.pass_context
def run(ctx, plan, mode, timeout, retries, backoff, report_path):
    """Provision an environment for PLAN and run its scripts."""
    console = get_console()
    resolved = _resolve_or_exit(ctx, plan)
    try:
        overrides = {}
        if mode:
            overrides["mode"] = mode
        if timeout is not None:
            overrides["step_timeout"] = timeout
        if overrides:
            resolved = dataclasses.replace(resolved, **overrides)
    except ConfigurationError as e:
        _fail(ctx, e, "Invalid test plan")

    console.print_plan(resolved.name, resolved.summary, len(resolved.steps), resolved.mode)

    cancel = threading.Event()
    pool = ThreadPoolExecutor(max_workers=1)
    fut = pool.submit(_run_plan, resolved, cancel, retries, backoff)
    try:
        result = fut.result()
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user, tearing down...")
        cancel.set()
        fut.result()
        ctx.exit(EXIT_INTERRUPTED)
    except ProvisionError as e:
        verdict = FinalVerdict({resolved.name: JobResult(resolved.name, Outcome.failed(e.message, kind="provisioning"))})
        if report_path:
            verdict.write(report_path)
        _fail(ctx, e, "Provisioning failed", suggestion="Check the provisioning backend and retry.")
    finally:
        pool.shutdown(wait=True)

    verdict = FinalVerdict({resolved.name: result})
    if report_path:
        verdict.write(report_path)
    console.print_results(verdict)
    ctx.exit(verdict.exit_code)


def _git_default(fn, fallback: Optional[str]) -> Optional[str]:
    try:
        return fn()
    except (subprocess.CalledProcessError, FileNotFoundError):
        return fallback


@cli.command("execute-graph")
@click.argument("jobs_file", required=False, default=None)
@click.option("--event", "event_type", type=click.Choice(EVENT_TYPES), default=PUSH, show_default=True)
@click.option("--ref", default=None, help="Git ref (defaults to the current checkout)")
@click.option("--branch", default=None, help="Branch (defaults to the current branch)")
@click.option("--label", "labels", multiple=True, help="Review-request label (repeatable)")
@click.option("--workers", default=None, type=int, help="Number of parallel jobs")
@click.option("--retries", type=int, default=settings.PROVISION_RETRIES, show_default=True, help="Provisioning retries")
@click.option("--report", "report_path", default=None, help="Write a JSON/YAML summary to this file")
@click.pass_context
def execute_graph(ctx, jobs_file, event_type, ref, branch, labels, workers, retries, report_path):
    """Run every job of JOBS_FILE admitted for the given trigger."""
    console = get_console()
    jobs_file = jobs_file or settings.JOBS_FILE
    if not Path(jobs_file).exists():
        console.print_error(
            "Job file not found",
            f"Could not find job file: {jobs_file}",
            suggestion="Create plangate_jobs.yaml or pass a path:\n  plangate execute-graph ci/jobs.yaml",
        )
        ctx.exit(ConfigurationError.exit_code)

    branch = branch or _git_default(current_branch, None)
    ref = ref or _git_default(current_ref, None) or (f"refs/heads/{branch}" if branch else "HEAD")
    event = TriggerEvent(type=event_type, ref=ref, branch=branch, labels=frozenset(labels))

    try:
        workflow = load_jobs(jobs_file)
        executor = JobGraphExecutor(max_workers=workers, retries=retries, workflow=workflow.name)
        verdict = executor.execute(workflow.jobs, event)
    except ConfigurationError as e:
        _fail(ctx, e, "Invalid job graph")
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        ctx.exit(EXIT_INTERRUPTED)

    if report_path:
        verdict.write(report_path)
    for job_name, detail in verdict.failures():
        console.print_failure(job_name, detail, is_job=True)
    ctx.exit(verdict.exit_code)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    sys.exit(main())

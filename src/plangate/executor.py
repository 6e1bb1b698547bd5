# executor.py
from __future__ import annotations

import os
import threading
from collections import OrderedDict
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from . import settings
from .dag import build_graph, descendants, topo_levels
from .errors import CancellationError, ConfigurationError, ProvisionError
from .gating import Decision, admit, is_blocking
from .model import ExecutionPlan, JobSpec, Outcome, TriggerEvent, check_concurrency_template
from .plan import resolve_file
from .provision import ProvisioningBackend, get_backend, provisioned
from .report import FinalVerdict, JobResult, ReportStore
from .runner import ScriptRunner
from .ui.console import Console, get_console


# ----------------------------------------------------------------------
# Job runs and concurrency groups
# ----------------------------------------------------------------------

class JobRun:
    """Cancellation handle for one job run."""

    def __init__(self, job: str, key: Optional[str], generation: int):
        self.job = job
        self.key = key
        self.generation = generation
        self.cancel_event = threading.Event()
        self._done = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def cancel(self) -> bool:
        """Request cancellation. Returns False (and does nothing) once the run finished."""
        if self._done.is_set():
            return False
        self.cancel_event.set()
        return True

    def finish(self) -> None:
        self._done.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)


class ConcurrencyGroups:
    """
    Tracks in-flight job runs per concurrency key.

    Every execution gets a generation number. A run for a key cancels the
    runs of older generations holding that key and waits for them to finish
    (environment torn down) before it starts. A run whose generation is
    older than the newest one seen for its key is cancelled up front.
    """

    def __init__(self, console: Optional[Console] = None, max_keys: int = settings.MAX_CONCURRENCY_KEYS):
        self._console = console
        self._lock = threading.Lock()
        self._generation = 0
        self.max_keys = max_keys
        self._latest: OrderedDict[str, int] = OrderedDict()
        self._active: Dict[str, List[JobRun]] = {}

    def next_generation(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    def acquire(self, job: str, key: Optional[str], generation: int) -> JobRun:
        run = JobRun(job, key, generation)
        if key is None:
            return run

        with self._lock:
            if generation < self._latest.get(key, 0):
                run.cancel()
                return run
            self._latest[key] = generation
            self._latest.move_to_end(key)
            active = self._active.setdefault(key, [])
            superseded = [r for r in active if r.generation < generation]
            active.append(run)
            self._forget_idle_keys()

        console = self._console or get_console()
        for previous in superseded:
            if previous.cancel():
                console.print_info(f"[{job}] cancelling superseded run of {previous.job} (group {key})")
            previous.wait()
        return run

    def _forget_idle_keys(self) -> None:
        # oldest keys without active runs go first; caller holds the lock
        while len(self._latest) > self.max_keys:
            idle = next((k for k in self._latest if k not in self._active), None)
            if idle is None:
                return
            del self._latest[idle]

    def release(self, run: JobRun) -> None:
        if run.key is None:
            return
        with self._lock:
            active = self._active.get(run.key, [])
            if run in active:
                active.remove(run)
            if not active:
                self._active.pop(run.key, None)


# ----------------------------------------------------------------------
# Executor
# ----------------------------------------------------------------------

class JobGraphExecutor:
    """
    Runs a job graph for one trigger:

    - validates the graph and resolves every admitted job's plan up front
    - runs ready jobs concurrently, each in its own provisioned environment
    - turns failures/cancellations into skipped dependents
    - folds every job result into a FinalVerdict
    """

    def __init__(
        self,
        *,
        backends: Optional[Dict[str, ProvisioningBackend]] = None,
        runner: Optional[ScriptRunner] = None,
        groups: Optional[ConcurrencyGroups] = None,
        resolver: Callable[[Path], ExecutionPlan] = resolve_file,
        console: Optional[Console] = None,
        max_workers: Optional[int] = settings.MAX_WORKERS,
        retries: int = settings.PROVISION_RETRIES,
        backoff: float = settings.PROVISION_BACKOFF_SECONDS,
        workflow: str = "",
    ):
        self.backends = dict(backends or {})
        self.runner = runner or ScriptRunner(console)
        self.groups = groups or ConcurrencyGroups(console)
        self.resolver = resolver
        self._console = console
        self.max_workers = max_workers
        self.retries = retries
        self.backoff = backoff
        self.workflow = workflow
        self._lock = threading.Lock()
        self._runs: Set[JobRun] = set()

    @property
    def console(self) -> Console:
        return self._console or get_console()

    def _backend(self, how: str) -> ProvisioningBackend:
        if how not in self.backends:
            self.backends[how] = get_backend(how)
        return self.backends[how]

    # ---- validation ----

    def validate(self, jobs: List[JobSpec], event: TriggerEvent):
        """
        Structural validation before anything runs.

        Returns:
          (by_name, adj, indeg, decisions, plans)

        Raises:
          ConfigurationError (incl. CyclicDependency, MalformedPlan,
          NoScriptsFound)
        """
        by_name, adj, indeg = build_graph(jobs)
        topo_levels(adj, indeg)
        for name, job in by_name.items():
            if job.concurrency:
                try:
                    check_concurrency_template(job.concurrency)
                except ValueError as e:
                    raise ConfigurationError(str(e), details={"job": name}) from e

        decisions: Dict[str, Decision] = {name: admit(event, job) for name, job in by_name.items()}
        plans: Dict[str, ExecutionPlan] = {}
        for name, job in by_name.items():
            if not decisions[name]:
                continue
            if job.plan is None:
                raise ConfigurationError(f"job {name!r} has no plan")
            plans[name] = self.resolver(Path(job.plan))
        return by_name, adj, indeg, decisions, plans

    # ---- cancellation ----

    def _track(self, run: JobRun) -> None:
        with self._lock:
            self._runs.add(run)

    def _untrack(self, run: JobRun) -> None:
        with self._lock:
            self._runs.discard(run)

    def cancel_all(self) -> int:
        """Cancel every in-flight job run of this executor."""
        with self._lock:
            runs = list(self._runs)
        return sum(1 for r in runs if r.cancel())

    # ---- one job ----

    def run_job(self, job: JobSpec, plan: ExecutionPlan, event: TriggerEvent, generation: int) -> JobResult:
        run = self.groups.acquire(job.name, job.concurrency_key(event, self.workflow), generation)
        self._track(run)
        try:
            return self._run(job, plan, run)
        finally:
            run.finish()
            self.groups.release(run)
            self._untrack(run)

    def _run(self, job: JobSpec, plan: ExecutionPlan, run: JobRun) -> JobResult:
        console = self.console
        blocking = is_blocking(job)
        if run.cancelled:
            console.print_info(f"[{job.name}] superseded by a newer run, not started")
            return JobResult(job.name, Outcome.cancelled("superseded by a newer run"), blocking=blocking)

        console.print_job_start(job.name)
        backend = self._backend(plan.provisioning.how)
        try:
            with provisioned(
                backend,
                plan.provisioning,
                retries=self.retries,
                backoff=self.backoff,
                cancel=run.cancel_event,
                job=job.name,
            ) as environment:
                report = self.runner.run(plan, environment, cancel=run.cancel_event, job=job.name, env=job.env)
        except CancellationError:
            return JobResult(job.name, Outcome.cancelled(), blocking=blocking)
        except ProvisionError as e:
            console.print_failure(job.name, str(e), is_job=True)
            return JobResult(
                job.name,
                Outcome.failed(f"provisioning: {e.kind}: {e.message}", kind="provisioning"),
                blocking=blocking,
            )

        console.print_report(report)
        return JobResult(job.name, report.outcome(), report, blocking=blocking)

    # ---- the graph ----

    def _skip_descendants(
        self,
        name: str,
        result: JobResult,
        adj,
        store: ReportStore,
        decisions: Dict[str, Decision],
        by_name: Dict[str, JobSpec],
    ) -> None:
        if result.outcome.is_cancelled:
            reason = "cancelled"
        elif result.outcome.is_failed:
            reason = "dependency failed"
        else:
            reason = "dependency skipped"

        for d in descendants(adj, name):
            if d in store:
                continue
            blocking = is_blocking(by_name[d])
            if not decisions[d]:
                store.record(JobResult(d, Outcome.skipped(decisions[d].reason), gated=True, blocking=blocking))
            else:
                store.record(JobResult(d, Outcome.skipped(reason), blocking=blocking))
            self.console.print_gated(d, store.get(d).outcome.detail)

    def execute(self, jobs: List[JobSpec], event: TriggerEvent) -> FinalVerdict:
        """
        Run every admitted job of the graph for `event`.

        Raises:
          ConfigurationError before any provisioning when the graph or a plan
          is invalid.
        """
        jobs = list(jobs)
        by_name, adj, indeg, decisions, plans = self.validate(jobs, event)
        indeg = dict(indeg)
        store = ReportStore()
        generation = self.groups.next_generation()

        self.console.print_run_started(
            workflow=self.workflow or "-",
            trigger=f"{event.type} {event.ref}",
            job_count=len(by_name),
        )

        max_workers = self.max_workers or max(1, (os.cpu_count() or 2) - 1)
        ready: List[str] = sorted(n for n, d in indeg.items() if d == 0)
        in_flight: Dict[Future, str] = {}

        def finished(name: str) -> None:
            result = store.get(name)
            if result.outcome.is_passed:
                # unlock dependents only on success
                for nxt in sorted(adj[name]):
                    indeg[nxt] -= 1
                    if indeg[nxt] == 0 and nxt not in store:
                        ready.append(nxt)
            else:
                self._skip_descendants(name, result, adj, store, decisions, by_name)

        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            try:
                while ready or in_flight:
                    # schedule all currently ready
                    while ready:
                        name = ready.pop(0)
                        if name in store:
                            continue
                        decision = decisions[name]
                        if not decision:
                            store.record(JobResult(
                                name,
                                Outcome.skipped(decision.reason),
                                gated=True,
                                blocking=is_blocking(by_name[name]),
                            ))
                            self.console.print_gated(name, decision.reason)
                            finished(name)
                            continue
                        fut = pool.submit(self.run_job, by_name[name], plans[name], event, generation)
                        in_flight[fut] = name

                    if not in_flight:
                        break

                    # wait for a completion, then loop to schedule newly-ready jobs
                    done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                    for fut in done:
                        name = in_flight.pop(fut)
                        try:
                            result = fut.result()
                        except Exception as e:
                            self.console.print_exception(e)
                            result = JobResult(
                                name,
                                Outcome.failed(f"internal error: {e}", kind="internal"),
                                blocking=is_blocking(by_name[name]),
                            )
                        store.record(result)
                        finished(name)
            except KeyboardInterrupt:
                pool.shutdown(wait=False, cancel_futures=True)
                self.cancel_all()
                raise

        snapshot = store.snapshot()
        verdict = FinalVerdict(
            results={n: snapshot[n] for n in by_name if n in snapshot},
            trigger=event,
            workflow=self.workflow,
        )
        self.console.print_results(verdict)
        return verdict

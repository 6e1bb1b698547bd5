# report.py
from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from .model import CANCELLED, FAILED, PASSED, SKIPPED, Outcome, TriggerEvent


@dataclass(frozen=True)
class ReportEntry:
    name: str
    outcome: Outcome
    duration: float = 0.0


class Report:
    """
    Append-only outcome log for one job (or one plan run).

    Each step is recorded exactly once; the first failure is kept for
    diagnostics.
    """

    def __init__(self, name: str):
        self.name = name
        self._entries: List[ReportEntry] = []

    def record(self, name: str, outcome: Outcome, duration: float = 0.0) -> ReportEntry:
        if any(e.name == name for e in self._entries):
            raise ValueError(f"[{self.name}] outcome for {name!r} already recorded")
        entry = ReportEntry(name=name, outcome=outcome, duration=duration)
        self._entries.append(entry)
        return entry

    @property
    def entries(self) -> List[ReportEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def first_failure(self) -> Optional[ReportEntry]:
        return next((e for e in self._entries if e.outcome.is_failed), None)

    def counts(self) -> Dict[str, int]:
        counts = {PASSED: 0, FAILED: 0, SKIPPED: 0, CANCELLED: 0}
        for e in self._entries:
            counts[e.outcome.status] += 1
        return counts

    @property
    def status(self) -> str:
        counts = self.counts()
        if counts[FAILED]:
            return FAILED
        if counts[CANCELLED] or any(
            e.outcome.is_skipped and e.outcome.detail == "cancelled" for e in self._entries
        ):
            return CANCELLED
        if counts[PASSED]:
            return PASSED
        return SKIPPED

    def outcome(self) -> Outcome:
        """Collapse the step outcomes into one job-level outcome."""
        first = self.first_failure
        if first is not None:
            return Outcome.failed(
                f"{first.name}: {first.outcome.detail}",
                exit_code=first.outcome.exit_code,
                output_tail=first.outcome.output_tail,
            )
        if self.status == CANCELLED:
            return Outcome.cancelled()
        if self.status == SKIPPED:
            return Outcome.skipped("no steps ran")
        return Outcome.passed()

    def to_dict(self) -> dict:
        first = self.first_failure
        return {
            "name": self.name,
            "status": self.status,
            "counts": self.counts(),
            "first_failure": first.name if first else None,
            "steps": [
                {"name": e.name, "duration": round(e.duration, 3), **e.outcome.to_dict()}
                for e in self._entries
            ],
        }


@dataclass(frozen=True)
class JobResult:
    name: str
    outcome: Outcome
    report: Optional[Report] = None
    gated: bool = False       # skipped by the gating policy, never counted
    blocking: bool = True

    def to_dict(self) -> dict:
        d = {
            "name": self.name,
            "gated": self.gated,
            "blocking": self.blocking,
            **self.outcome.to_dict(),
        }
        if self.report is not None:
            d["report"] = self.report.to_dict()
        return d


class ReportStore:
    """Shared result store. Each job writes its result exactly once."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._results: Dict[str, JobResult] = {}

    def record(self, result: JobResult) -> None:
        with self._lock:
            if result.name in self._results:
                raise ValueError(f"result for job {result.name!r} already recorded")
            self._results[result.name] = result

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._results

    def get(self, name: str) -> Optional[JobResult]:
        with self._lock:
            return self._results.get(name)

    def snapshot(self) -> Dict[str, JobResult]:
        with self._lock:
            return dict(self._results)


@dataclass
class FinalVerdict:
    results: Dict[str, JobResult] = field(default_factory=dict)
    trigger: Optional[TriggerEvent] = None
    workflow: str = ""

    def _blocking_failures(self) -> List[JobResult]:
        return [
            r for r in self.results.values()
            if r.outcome.is_failed and r.blocking and not r.gated
        ]

    @property
    def success(self) -> bool:
        return not self._blocking_failures()

    @property
    def exit_code(self) -> int:
        failures = self._blocking_failures()
        if not failures:
            return 0
        if all(r.outcome.kind == "provisioning" for r in failures):
            return 3
        return 1

    def failures(self) -> List[tuple[str, str]]:
        """(job, first-failure detail) for every failed job."""
        return [(r.name, r.outcome.detail) for r in self.results.values() if r.outcome.is_failed]

    def to_dict(self) -> dict:
        return {
            "workflow": self.workflow,
            "verdict": "success" if self.success else "failure",
            "trigger": self.trigger.to_dict() if self.trigger else None,
            "jobs": {name: r.to_dict() for name, r in self.results.items()},
            "failures": [{"job": j, "detail": d} for j, d in self.failures()],
        }

    def write(self, path: str | Path) -> Path:
        """Write the machine-readable summary; YAML for .yaml/.yml, JSON otherwise."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.to_dict()
        if path.suffix in (".yaml", ".yml"):
            path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
        else:
            path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        return path

# model.py
from __future__ import annotations

import string
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Tuple

from .errors import MalformedPlan


FAIL_FAST = "fail-fast"
CONTINUE = "continue"
EXECUTION_MODES = (FAIL_FAST, CONTINUE)

PUSH = "push"
PULL_REQUEST = "pull_request"
DISPATCH = "dispatch"
EVENT_TYPES = (PUSH, PULL_REQUEST, DISPATCH)

SKIP_CI_LABEL = "control/skip-ci"

# placeholders a concurrency template may use
CONCURRENCY_FIELDS = ("workflow", "job", "ref", "branch", "event")


def check_concurrency_template(template: str) -> str:
    """Raise ValueError unless `template` only uses CONCURRENCY_FIELDS."""
    try:
        parsed = list(string.Formatter().parse(template))
    except ValueError as e:
        raise ValueError(f"invalid concurrency template {template!r}: {e}") from e
    for _, field_name, _, _ in parsed:
        if field_name is None:
            continue
        if field_name not in CONCURRENCY_FIELDS:
            raise ValueError(
                f"unknown placeholder {{{field_name}}} in concurrency template {template!r}; "
                f"expected one of {list(CONCURRENCY_FIELDS)}"
            )
    return template


# ----------------------------------------------------------------------
# Outcomes
# ----------------------------------------------------------------------

PASSED = "passed"
FAILED = "failed"
SKIPPED = "skipped"
CANCELLED = "cancelled"


@dataclass(frozen=True)
class Outcome:
    """Terminal result of a script step or a job. Never mutated once created."""
    status: str
    detail: str = ""
    exit_code: Optional[int] = None
    output_tail: Tuple[str, ...] = ()
    kind: Optional[str] = None  # "test" | "provisioning" for failures

    @classmethod
    def passed(cls) -> Outcome:
        return cls(PASSED)

    @classmethod
    def failed(
        cls,
        detail: str,
        *,
        exit_code: Optional[int] = None,
        output_tail: Tuple[str, ...] | List[str] = (),
        kind: str = "test",
    ) -> Outcome:
        return cls(FAILED, detail, exit_code, tuple(output_tail), kind)

    @classmethod
    def skipped(cls, reason: str) -> Outcome:
        return cls(SKIPPED, reason)

    @classmethod
    def cancelled(cls, reason: str = "cancelled") -> Outcome:
        return cls(CANCELLED, reason)

    @property
    def is_passed(self) -> bool:
        return self.status == PASSED

    @property
    def is_failed(self) -> bool:
        return self.status == FAILED

    @property
    def is_skipped(self) -> bool:
        return self.status == SKIPPED

    @property
    def is_cancelled(self) -> bool:
        return self.status == CANCELLED

    def to_dict(self) -> dict:
        d: dict = {"status": self.status}
        if self.detail:
            d["detail"] = self.detail
        if self.exit_code is not None:
            d["exit_code"] = self.exit_code
        if self.output_tail:
            d["output_tail"] = list(self.output_tail)
        if self.kind and self.is_failed:
            d["kind"] = self.kind
        return d


# ----------------------------------------------------------------------
# Plans
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ProvisioningSpec:
    """What to provision: handed to a provisioning backend as-is."""
    how: str                      # builder identity, must name a backend
    image: Optional[str] = None   # base image reference
    disk_gb: int = 10
    workdir: Optional[Path] = None
    containerfile: Optional[Path] = None
    extra_deps: bool = False
    privileged: bool = False

    def to_dict(self) -> dict:
        return {
            "how": self.how,
            "image": self.image,
            "disk_gb": self.disk_gb,
            "workdir": str(self.workdir) if self.workdir else None,
            "containerfile": str(self.containerfile) if self.containerfile else None,
            "extra_deps": self.extra_deps,
            "privileged": self.privileged,
        }


@dataclass(frozen=True)
class ScriptStep:
    path: Path
    ordinal: Optional[int]
    readonly: bool = True

    @property
    def name(self) -> str:
        return self.path.name


@dataclass(frozen=True)
class DiscoveryRule:
    directory: Path
    pattern: str


@dataclass(frozen=True)
class ExecutionPlan:
    """
    A resolved test plan: what to provision and which scripts to run,
    in which order and mode. Immutable once built.
    """
    name: str
    provisioning: ProvisioningSpec
    discovery: DiscoveryRule
    steps: Tuple[ScriptStep, ...]
    mode: str = FAIL_FAST
    summary: str = ""
    destructive: bool = False
    step_timeout: Optional[float] = None
    script: Optional[str] = None  # invocation template, "{path}" is substituted

    def __post_init__(self) -> None:
        if self.mode not in EXECUTION_MODES:
            raise MalformedPlan(
                f"unknown execution mode {self.mode!r}",
                details={"plan": self.name, "allowed": ",".join(EXECUTION_MODES)},
            )
        writers = [s.name for s in self.steps if not s.readonly]
        if writers and not self.destructive:
            raise MalformedPlan(
                "plan runs steps that are not readonly but is not marked destructive",
                details={"plan": self.name, "steps": ",".join(writers)},
            )

    @property
    def fail_fast(self) -> bool:
        return self.mode == FAIL_FAST

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "summary": self.summary,
            "mode": self.mode,
            "destructive": self.destructive,
            "step_timeout": self.step_timeout,
            "script": self.script,
            "provision": self.provisioning.to_dict(),
            "discover": {
                "directory": str(self.discovery.directory),
                "pattern": self.discovery.pattern,
            },
            "steps": [
                {"path": str(s.path), "ordinal": s.ordinal, "readonly": s.readonly}
                for s in self.steps
            ],
        }


# ----------------------------------------------------------------------
# Triggers and jobs
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class TriggerEvent:
    type: str
    ref: str
    branch: Optional[str] = None
    labels: FrozenSet[str] = frozenset()

    def __post_init__(self) -> None:
        if self.type not in EVENT_TYPES:
            raise ValueError(f"unknown trigger type {self.type!r}; expected one of {EVENT_TYPES}")
        # accept any iterable of labels
        object.__setattr__(self, "labels", frozenset(self.labels))

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "ref": self.ref,
            "branch": self.branch,
            "labels": sorted(self.labels),
        }


@dataclass
class JobSpec:
    """
    A CI job: one test plan + trigger predicates + dependencies.

    Canonical dependency field: `needs`
    """
    name: str
    plan: Optional[Path] = None

    # names of jobs that must pass BEFORE this job
    needs: List[str] = field(default_factory=list)

    # gating
    on: Tuple[str, ...] = EVENT_TYPES
    branches: Optional[List[str]] = None       # e.g. ["main", "release/*"]
    exclude_labels: List[str] = field(default_factory=lambda: [SKIP_CI_LABEL])
    include_labels: List[str] = field(default_factory=list)
    blocking: bool = True

    # e.g. "{workflow}-{ref}"; None disables cancellation of superseded runs
    concurrency: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)

    def concurrency_key(self, event: TriggerEvent, workflow: str = "") -> Optional[str]:
        if not self.concurrency:
            return None
        return self.concurrency.format(
            workflow=workflow,
            job=self.name,
            ref=event.ref,
            branch=event.branch or "",
            event=event.type,
        )

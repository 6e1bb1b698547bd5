# gating.py
"""
Gating policy: decide whether a trigger runs a job.

Each rule is a small predicate object returning a Decision; `admit` chains
them in a fixed order and returns the first skip:

  1. TriggerFilter  - the job runs only for its configured event types
  2. LabelFilter    - deny labels always win; the allow-list is bypassed
                      by manual dispatch
  3. BranchFilter   - applies to push and dispatch, never to pull requests
"""
from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatch
from typing import AbstractSet, FrozenSet, Iterable, Optional

from .model import DISPATCH, PULL_REQUEST, JobSpec, TriggerEvent


@dataclass(frozen=True)
class Decision:
    admitted: bool
    reason: str = ""

    @classmethod
    def admit(cls) -> Decision:
        return cls(True)

    @classmethod
    def skip(cls, reason: str) -> Decision:
        return cls(False, reason)

    def __bool__(self) -> bool:
        return self.admitted


ADMIT = Decision.admit()


@dataclass(frozen=True)
class TriggerFilter:
    types: FrozenSet[str]

    def __call__(self, event: TriggerEvent, labels: AbstractSet[str]) -> Decision:
        if event.type not in self.types:
            return Decision.skip(f"not enabled for {event.type} triggers")
        return ADMIT


@dataclass(frozen=True)
class LabelFilter:
    allow: FrozenSet[str] = frozenset()
    deny: FrozenSet[str] = frozenset()

    def __call__(self, event: TriggerEvent, labels: AbstractSet[str]) -> Decision:
        excluded = sorted(self.deny & labels)
        if excluded:
            return Decision.skip(f"excluded by label {excluded[0]!r}")
        if self.allow and event.type != DISPATCH and not (self.allow & labels):
            return Decision.skip(f"requires one of labels {sorted(self.allow)}")
        return ADMIT


@dataclass(frozen=True)
class BranchFilter:
    patterns: Optional[tuple[str, ...]] = None

    def __call__(self, event: TriggerEvent, labels: AbstractSet[str]) -> Decision:
        if self.patterns is None or event.type == PULL_REQUEST:
            return ADMIT
        branch = event.branch or ""
        if any(fnmatch(branch, p) for p in self.patterns):
            return ADMIT
        return Decision.skip(f"branch {branch!r} not in {list(self.patterns)}")


def policy_for(job: JobSpec) -> list:
    return [
        TriggerFilter(frozenset(job.on)),
        LabelFilter(allow=frozenset(job.include_labels), deny=frozenset(job.exclude_labels)),
        BranchFilter(tuple(job.branches) if job.branches is not None else None),
    ]


def admit(event: TriggerEvent, job: JobSpec, labels: Optional[Iterable[str]] = None) -> Decision:
    """Admit or skip `job` for `event`; `labels` defaults to the event's labels."""
    current = frozenset(event.labels if labels is None else labels)
    for rule in policy_for(job):
        decision = rule(event, current)
        if not decision:
            return decision
    return ADMIT


def is_blocking(job: JobSpec) -> bool:
    """Whether a failure of `job` blocks merge."""
    return job.blocking

# jobs.py
from __future__ import annotations

import runpy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError
from .model import EVENT_TYPES, SKIP_CI_LABEL, JobSpec, check_concurrency_template


@dataclass
class Workflow:
    name: str
    jobs: List[JobSpec]


# ---------------------------------------------------------------------
# DSL helpers (python workflow files)
# ---------------------------------------------------------------------

def job(
    name: str,
    plan: str | Path | None = None,
    *,
    needs: Optional[List[str]] = None,
    on: Optional[List[str]] = None,
    branches: Optional[List[str]] = None,
    exclude_labels: Optional[List[str]] = None,
    include_labels: Optional[List[str]] = None,
    blocking: bool = True,
    concurrency: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> JobSpec:
    """Create a JobSpec; plan paths are kept as given (relative to the workflow file)."""
    return JobSpec(
        name=name,
        plan=Path(plan) if plan is not None else None,
        needs=list(needs or []),
        on=tuple(on or EVENT_TYPES),
        branches=list(branches) if branches is not None else None,
        exclude_labels=list(exclude_labels) if exclude_labels is not None else [SKIP_CI_LABEL],
        include_labels=list(include_labels or []),
        blocking=blocking,
        concurrency=concurrency,
        env={k: str(v) for k, v in (env or {}).items()},
    )


def wf(*jobs: JobSpec) -> List[JobSpec]:
    """
    Workflow definition helper. Users can write:

        from plangate.jobs import wf, job

        def workflow():
            return wf(
                job("tests", "plans/readonly.yaml"),
                job("install", "plans/install.yaml", needs=["tests"]),
            )

    Or use JOBS directly:
        JOBS = wf(job(...), job(...))
    """
    return list(jobs)


# ---------------------------------------------------------------------
# YAML job files
# ---------------------------------------------------------------------

class JobEntry(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    plan: Optional[str] = None
    on: List[str] = Field(default_factory=lambda: list(EVENT_TYPES))
    branches: Optional[List[str]] = None
    exclude_labels: List[str] = Field(
        default_factory=lambda: [SKIP_CI_LABEL],
        validation_alias=AliasChoices("exclude-labels", "exclude_labels"),
    )
    include_labels: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("include-labels", "include_labels"),
    )
    needs: List[str] = Field(default_factory=list)
    concurrency: Optional[str] = None
    blocking: bool = True
    env: Dict[str, str] = Field(default_factory=dict)

    @field_validator("on", mode="before")
    @classmethod
    def _one_or_many(cls, value: Any) -> Any:
        return [value] if isinstance(value, str) else value

    @field_validator("on")
    @classmethod
    def _known_events(cls, value: List[str]) -> List[str]:
        unknown = [v for v in value if v not in EVENT_TYPES]
        if unknown:
            raise ValueError(f"unknown trigger types {unknown}; expected {list(EVENT_TYPES)}")
        return value

    @field_validator("needs", mode="before")
    @classmethod
    def _needs_one_or_many(cls, value: Any) -> Any:
        return [value] if isinstance(value, str) else value

    @field_validator("concurrency")
    @classmethod
    def _known_placeholders(cls, value: Optional[str]) -> Optional[str]:
        return check_concurrency_template(value) if value else value


class JobsDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    concurrency: Optional[str] = None
    jobs: Dict[str, JobEntry]

    @field_validator("concurrency")
    @classmethod
    def _known_placeholders(cls, value: Optional[str]) -> Optional[str]:
        return check_concurrency_template(value) if value else value


def _load_yaml_jobs(path: Path) -> Workflow:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid YAML in {path}: {e}") from e
    # YAML 1.1 reads a bare `on:` key as boolean True
    entries = raw.get("jobs") if isinstance(raw, dict) else None
    if isinstance(entries, dict):
        for entry in entries.values():
            if isinstance(entry, dict) and True in entry:
                entry["on"] = entry.pop(True)
    try:
        doc = JobsDocument.model_validate(raw or {})
    except ValidationError as e:
        raise ConfigurationError(f"invalid job file {path}", details={"errors": e.error_count(), "first": e.errors()[0]["msg"]}) from e

    base = path.parent
    jobs = []
    for name, entry in doc.jobs.items():
        jobs.append(job(
            name,
            (base / entry.plan) if entry.plan else None,
            needs=entry.needs,
            on=entry.on,
            branches=entry.branches,
            exclude_labels=entry.exclude_labels,
            include_labels=entry.include_labels,
            blocking=entry.blocking,
            concurrency=entry.concurrency or doc.concurrency,
            env=entry.env,
        ))
    return Workflow(name=doc.name or path.stem, jobs=jobs)


def _load_python_jobs(path: Path) -> Workflow:
    module_name = f"plangate_workflow_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    jobs = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        jobs = globals_dict["workflow"]()
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if not isinstance(jobs, list) or not all(isinstance(j, JobSpec) for j in jobs):
        raise ConfigurationError(
            "workflow must return/define a List[JobSpec]. "
            "Define workflow() -> List[JobSpec] or JOBS = [JobSpec, ...].",
            details={"path": str(path)},
        )

    # plan paths are relative to the workflow file
    for j in jobs:
        if j.plan is not None and not j.plan.is_absolute():
            j.plan = path.parent / j.plan
    return Workflow(name=str(globals_dict.get("NAME", path.stem)), jobs=jobs)


def load_jobs(path: str | Path) -> Workflow:
    """
    Load job specs from a YAML job file or a python workflow file.

    The python file must define either:
      - workflow() -> List[JobSpec]
      - JOBS = [JobSpec, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ConfigurationError(f"job file not found: {wf_path}")
    if wf_path.suffix == ".py":
        return _load_python_jobs(wf_path)
    if wf_path.suffix in (".yaml", ".yml"):
        return _load_yaml_jobs(wf_path)
    raise ConfigurationError(f"job file must be .yaml, .yml or .py, got: {wf_path.name}")

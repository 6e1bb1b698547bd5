# plan.py
from __future__ import annotations

import re
from pathlib import Path
from typing import Any, List, Mapping, Optional, Union

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import MalformedPlan, NoScriptsFound
from .model import (
    EXECUTION_MODES,
    FAIL_FAST,
    DiscoveryRule,
    ExecutionPlan,
    ProvisioningSpec,
    ScriptStep,
)
from .provision import SUPPORTED_BUILDERS

# ---------------------------------------------------------------------
# Plan document schema
# ---------------------------------------------------------------------

_DISK_RE = re.compile(r"^\s*(-?\d+)\s*(g|gb|gi|gib)?\s*$", re.IGNORECASE)


class ProvisionSection(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    how: str
    image: Optional[str] = Field(default=None, validation_alias=AliasChoices("image", "builder-image", "builder_image"))
    disk: int = 10
    workdir: Optional[str] = None
    containerfile: Optional[str] = Field(default=None, validation_alias=AliasChoices("containerfile", "container-file"))
    add_deps: bool = Field(default=False, validation_alias=AliasChoices("add-deps", "add_deps", "extra-deps"))
    privileged: bool = False

    @field_validator("disk", mode="before")
    @classmethod
    def _parse_disk(cls, value: Any) -> Any:
        # accept 20, "20", "20G", "20GiB"
        if isinstance(value, str):
            m = _DISK_RE.match(value)
            if not m:
                raise ValueError(f"cannot parse disk size {value!r}")
            return int(m.group(1))
        return value


class ExecuteSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    how: str = "script"
    discover: str
    script: Optional[str] = None
    mode: str = FAIL_FAST
    timeout: Optional[float] = None
    readonly: bool = True


class PlanDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    summary: str = ""
    destructive: bool = False
    provision: ProvisionSection
    execute: ExecuteSection


# ---------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------

_PREFIX_RE = re.compile(r"^(\d+)")


def numeric_prefix(path: Path) -> Optional[int]:
    m = _PREFIX_RE.match(path.name)
    return int(m.group(1)) if m else None


def _order_key(path: Path) -> tuple:
    ordinal = numeric_prefix(path)
    # unprefixed files go after every numbered one
    return (ordinal is None, ordinal or 0, str(path))


def discover_steps(directory: Path, pattern: str, *, readonly: bool = True) -> List[ScriptStep]:
    """
    Apply `pattern` under `directory` and order the hits by leading numeric
    prefix (1, 2, 10 ...), ties broken by full path.
    """
    paths = [p for p in directory.glob(pattern) if p.is_file()]
    return [
        ScriptStep(path=p, ordinal=numeric_prefix(p), readonly=readonly)
        for p in sorted(paths, key=_order_key)
    ]


# ---------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------

def _validation_message(err: ValidationError) -> str:
    parts = []
    for e in err.errors():
        loc = ".".join(str(x) for x in e["loc"])
        parts.append(f"{loc}: {e['msg']}")
    return "; ".join(parts)


def resolve(
    document: Union[Mapping[str, Any], PlanDocument],
    base_dir: str | Path = ".",
    *,
    name: str = "plan",
) -> ExecutionPlan:
    """
    Turn a plan document into an ExecutionPlan.

    Paths in the document (workdir, containerfile, discovery glob) are
    relative to `base_dir`, normally the directory holding the plan file.

    Raises:
        MalformedPlan: invalid fields, unknown builder, non-positive disk
        NoScriptsFound: the discovery glob matched nothing
    """
    base = Path(base_dir).resolve()

    if isinstance(document, PlanDocument):
        doc = document
    else:
        if not isinstance(document, Mapping):
            raise MalformedPlan("plan document must be a mapping", details={"plan": name})
        try:
            doc = PlanDocument.model_validate(dict(document))
        except ValidationError as e:
            raise MalformedPlan(_validation_message(e), details={"plan": name}) from e

    prov = doc.provision
    if prov.how not in SUPPORTED_BUILDERS:
        raise MalformedPlan(
            f"unrecognized builder {prov.how!r}",
            details={"plan": name, "supported": ",".join(SUPPORTED_BUILDERS)},
        )
    if prov.disk <= 0:
        raise MalformedPlan(f"disk size must be positive, got {prov.disk}", details={"plan": name})

    execute = doc.execute
    if execute.how != "script":
        raise MalformedPlan(f"unsupported execute.how {execute.how!r}", details={"plan": name})
    if execute.mode not in EXECUTION_MODES:
        raise MalformedPlan(
            f"unknown execution mode {execute.mode!r}",
            details={"plan": name, "allowed": ",".join(EXECUTION_MODES)},
        )
    if not execute.discover.strip() or Path(execute.discover).is_absolute():
        raise MalformedPlan(
            f"discover must be a relative glob, got {execute.discover!r}",
            details={"plan": name},
        )
    if execute.timeout is not None and execute.timeout <= 0:
        raise MalformedPlan(f"timeout must be positive, got {execute.timeout}", details={"plan": name})

    workdir = (base / prov.workdir).resolve() if prov.workdir else None
    if workdir is not None and not workdir.is_dir():
        raise MalformedPlan(f"workdir not found: {workdir}", details={"plan": name})
    containerfile = None
    if prov.containerfile:
        containerfile = ((workdir or base) / prov.containerfile).resolve()

    spec = ProvisioningSpec(
        how=prov.how,
        image=prov.image,
        disk_gb=prov.disk,
        workdir=workdir,
        containerfile=containerfile,
        extra_deps=prov.add_deps,
        privileged=prov.privileged,
    )

    if any("**" in part and part != "**" for part in Path(execute.discover).parts):
        raise MalformedPlan(
            f"invalid discover glob {execute.discover!r}: '**' must be a whole path component",
            details={"plan": name},
        )
    try:
        steps = discover_steps(base, execute.discover, readonly=execute.readonly)
    except ValueError as e:
        raise MalformedPlan(f"invalid discover glob {execute.discover!r}: {e}", details={"plan": name}) from e
    if not steps:
        raise NoScriptsFound(
            f"no scripts match {execute.discover!r}",
            details={"plan": name, "directory": str(base)},
        )

    return ExecutionPlan(
        name=name,
        provisioning=spec,
        discovery=DiscoveryRule(directory=base, pattern=execute.discover),
        steps=tuple(steps),
        mode=execute.mode,
        summary=doc.summary,
        destructive=doc.destructive,
        step_timeout=execute.timeout,
        script=execute.script,
    )


def load_plan_document(path: str | Path) -> dict:
    path = Path(path)
    if not path.exists():
        raise MalformedPlan(f"plan file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise MalformedPlan(f"invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise MalformedPlan(f"plan file {path} must contain a mapping")
    return data


def resolve_file(path: str | Path) -> ExecutionPlan:
    """Load a YAML plan file and resolve it relative to its own directory."""
    path = Path(path).expanduser().resolve()
    return resolve(load_plan_document(path), path.parent, name=path.stem)

# errors.py
from __future__ import annotations

from typing import Any, Dict, Optional


class PlangateError(Exception):
    """
    Structured error with enough context for:
      - clean CLI output (and the exit code to use)
      - machine-readable reports
      - debugging without full tracebacks
    """

    kind = "error"
    exit_code = 1

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Configuration errors: fatal, never retried, raised before provisioning
# ----------------------------------------------------------------------

class ConfigurationError(PlangateError):
    kind = "configuration_error"
    exit_code = 2


class MalformedPlan(ConfigurationError):
    kind = "malformed_plan"


class NoScriptsFound(ConfigurationError):
    kind = "no_scripts_found"


class CyclicDependency(ConfigurationError):
    kind = "cyclic_dependency"

    def __init__(self, nodes: list[str]):
        super().__init__(
            f"job graph has a cycle; stuck jobs: {nodes}",
            details={"jobs": ",".join(nodes)},
        )
        self.nodes = list(nodes)


# ----------------------------------------------------------------------
# Provisioning errors: retried with backoff, then fatal for the job only
# ----------------------------------------------------------------------

class ProvisionError(PlangateError):
    kind = "provision_error"
    exit_code = 3


class BuilderUnavailable(ProvisionError):
    kind = "builder_unavailable"


class InsufficientDisk(ProvisionError):
    kind = "insufficient_disk"

    def __init__(self, required_gb: int, available_gb: float, where: str):
        super().__init__(
            f"need {required_gb}G free, only {available_gb:.1f}G available",
            details={"path": where},
        )
        self.required_gb = required_gb
        self.available_gb = available_gb


class BuildFailed(ProvisionError):
    kind = "build_failed"

    def __init__(self, message: str, detail: str = ""):
        super().__init__(message, details={"output": detail} if detail else None)
        self.detail = detail


# ----------------------------------------------------------------------
# Cancellation: a terminal state, never counted as a failure
# ----------------------------------------------------------------------

class CancellationError(PlangateError):
    kind = "cancelled"
    exit_code = 130

from .executor import ConcurrencyGroups, JobGraphExecutor
from .gating import admit
from .jobs import job, load_jobs, wf
from .model import ExecutionPlan, JobSpec, Outcome, ScriptStep, TriggerEvent
from .plan import resolve, resolve_file
from .report import FinalVerdict, Report
from .runner import ScriptRunner

__all__ = [
    "ConcurrencyGroups",
    "ExecutionPlan",
    "FinalVerdict",
    "JobGraphExecutor",
    "JobSpec",
    "Outcome",
    "Report",
    "ScriptRunner",
    "ScriptStep",
    "TriggerEvent",
    "admit",
    "job",
    "load_jobs",
    "resolve",
    "resolve_file",
    "wf",
]

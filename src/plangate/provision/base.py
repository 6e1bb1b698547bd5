# provision/base.py
from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from .. import settings
from ..errors import CancellationError, ProvisionError
from ..model import ProvisioningSpec
from ..ui.console import get_console


@dataclass
class Environment:
    """
    Handle to a running provisioned target (container, VM or workspace).

    Owned by exactly one job run and released exactly once.
    """
    name: str
    backend: str
    root: str                                   # filesystem root/working context inside the target
    command_prefix: Tuple[str, ...] = ()        # prepended to every step invocation
    command_target: Tuple[str, ...] = ()        # follows the env flags, e.g. the container name
    env_option: Optional[str] = None            # flag that sets a variable inside the target
    host_cwd: Optional[Path] = None             # cwd of the spawned process on the host
    host_workdir: Optional[Path] = None         # host dir visible inside the target ...
    guest_workdir: Optional[str] = None         # ... at this path
    handle: Dict[str, Any] = field(default_factory=dict)
    released: bool = field(default=False, init=False)

    def command(self, argv: Sequence[str], env: Optional[Mapping[str, str]] = None) -> List[str]:
        """
        Full command line for `argv` inside the target.

        Targets that do not inherit the caller's environment get `env` as
        `<env_option> KEY=VALUE` flags.
        """
        flags: List[str] = []
        if self.env_option and env:
            for key, value in env.items():
                flags.extend([self.env_option, f"{key}={value}"])
        return [*self.command_prefix, *flags, *self.command_target, *argv]

    def guest_path(self, path: Path) -> str:
        """Translate a host path into the path the target sees."""
        if self.host_workdir is not None and self.guest_workdir is not None:
            try:
                rel = Path(path).resolve().relative_to(self.host_workdir.resolve())
            except ValueError:
                return str(path)
            return f"{self.guest_workdir.rstrip('/')}/{rel.as_posix()}"
        return str(path)


class ProvisioningBackend:
    """Builds/boots a target for a ProvisioningSpec and tears it down again."""

    name = "abstract"

    def provision(self, spec: ProvisioningSpec) -> Environment:
        raise NotImplementedError

    def teardown(self, environment: Environment) -> None:
        raise NotImplementedError


def _backoff_delay(attempt: int, base: float, cap: float) -> float:
    return min(cap, base * (2 ** max(attempt - 1, 0)))


def provision_with_retry(
    backend: ProvisioningBackend,
    spec: ProvisioningSpec,
    *,
    retries: int = settings.PROVISION_RETRIES,
    backoff: float = settings.PROVISION_BACKOFF_SECONDS,
    backoff_max: float = settings.PROVISION_BACKOFF_MAX_SECONDS,
    cancel: Optional[threading.Event] = None,
    job: str = "",
) -> Environment:
    """
    Provision, retrying provisioning errors at most `retries` times.

    Waits between attempts grow exponentially and are interrupted by
    `cancel`, which raises CancellationError.
    """
    console = get_console()
    attempt = 0
    while True:
        attempt += 1
        if cancel is not None and cancel.is_set():
            raise CancellationError("cancelled before provisioning", details={"job": job})
        console.print_provision(job or spec.how, backend.name, attempt)
        try:
            return backend.provision(spec)
        except ProvisionError as e:
            if attempt > retries:
                raise
            delay = _backoff_delay(attempt, backoff, backoff_max)
            console.print_info(f"[{job}] provisioning failed ({e.kind}): {e.message}; retrying in {delay:.1f}s")
            if cancel is not None:
                if cancel.wait(delay):
                    raise CancellationError("cancelled while waiting to retry provisioning", details={"job": job})
            elif delay > 0:
                time.sleep(delay)


def release(backend: ProvisioningBackend, environment: Environment, job: str = "") -> None:
    """Tear the environment down unless that already happened."""
    if environment.released:
        return
    environment.released = True
    get_console().print_teardown(job or environment.backend, environment.name)
    backend.teardown(environment)


@contextmanager
def provisioned(
    backend: ProvisioningBackend,
    spec: ProvisioningSpec,
    **retry_options: Any,
) -> Iterator[Environment]:
    """Scoped environment: teardown runs exactly once on every exit path."""
    environment = provision_with_retry(backend, spec, **retry_options)
    try:
        yield environment
    finally:
        release(backend, environment, retry_options.get("job", ""))

# provision/container.py
from __future__ import annotations

import shutil
import subprocess
import uuid
from pathlib import Path
from typing import List, Optional

from .. import settings
from ..errors import BuildFailed, BuilderUnavailable, InsufficientDisk
from ..model import ProvisioningSpec
from .base import Environment, ProvisioningBackend

GIB = 1024 ** 3
GUEST_WORKDIR = "/src"
GUEST_ROOT = "/var/tmp/plangate"

TOOL_HINTS = {
    "podman": "Install podman (or set PLANGATE_CONTAINER_ENGINE) and ensure it can run containers.",
    "docker": "Install Docker and ensure the daemon is running.",
}


def _tail(text: str, lines: int = 40) -> str:
    return "\n".join((text or "").splitlines()[-lines:])


class ContainerBackend(ProvisioningBackend):
    """
    Container target driven through the podman (or docker) CLI.

    With a Containerfile in the workdir the image is built first, passing the
    base image as `--build-arg=base=...`; otherwise the base image runs
    as-is. The workdir is mounted read-only at /src and steps run through
    `<engine> exec`.
    """

    name = "container"

    def __init__(self, engine: str = settings.CONTAINER_ENGINE, storage_path: Optional[str | Path] = None):
        self.engine = engine
        self.storage_path = Path(storage_path) if storage_path else Path("/var/tmp")

    def _check_engine_available(self) -> None:
        if shutil.which(self.engine) is None:
            raise BuilderUnavailable(
                f"{self.engine} is not available",
                details={"hint": TOOL_HINTS.get(self.engine, f"Install {self.engine}.")},
            )

    def _check_disk(self, spec: ProvisioningSpec) -> None:
        if not self.storage_path.exists():
            return
        free = shutil.disk_usage(self.storage_path).free
        if free < spec.disk_gb * GIB:
            raise InsufficientDisk(spec.disk_gb, free / GIB, str(self.storage_path))

    def _engine(self, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run(
            [self.engine, *args],
            text=True,
            capture_output=True,
        )

    def build_command(self, spec: ProvisioningSpec, tag: str) -> List[str]:
        if spec.workdir is None or spec.containerfile is None:
            raise BuildFailed("building an image needs both provision.workdir and provision.containerfile")
        cmd = [self.engine, "build", "-t", tag, "-f", str(spec.containerfile)]
        if spec.image:
            cmd.append(f"--build-arg=base={spec.image}")
        if spec.extra_deps:
            cmd.append("--build-arg=extra_deps=1")
        cmd.append(str(spec.workdir))
        return cmd

    def run_command(self, spec: ProvisioningSpec, name: str, image: str) -> List[str]:
        cmd = [self.engine, "run", "-d", "--name", name]
        if spec.privileged:
            cmd.extend(["--privileged", "--pid=host", "-v", "/:/run/host"])
        if spec.workdir is not None:
            cmd.extend(["-v", f"{Path(spec.workdir).resolve()}:{GUEST_WORKDIR}:ro"])
        cmd.extend([image, "sleep", "infinity"])
        return cmd

    def provision(self, spec: ProvisioningSpec) -> Environment:
        self._check_engine_available()
        self._check_disk(spec)

        token = uuid.uuid4().hex[:12]
        name = f"plangate-{token}"
        image = spec.image
        built: Optional[str] = None

        if spec.workdir is not None and spec.containerfile is not None:
            built = f"localhost/plangate-{token}"
            proc = subprocess.run(self.build_command(spec, built), text=True, capture_output=True)
            if proc.returncode != 0:
                raise BuildFailed(f"image build failed (exit={proc.returncode})", _tail(proc.stderr or proc.stdout))
            image = built

        if not image:
            raise BuildFailed("no image to run: set provision.image or a containerfile")

        proc = subprocess.run(self.run_command(spec, name, image), text=True, capture_output=True)
        if proc.returncode != 0:
            # clean up what we created ourselves; no Environment exists yet
            self._engine("rm", "-f", name)
            if built:
                self._engine("rmi", "-f", built)
            raise BuildFailed(f"container start failed (exit={proc.returncode})", _tail(proc.stderr or proc.stdout))

        mkdir = self._engine("exec", name, "mkdir", "-p", GUEST_ROOT)
        if mkdir.returncode != 0:
            self._engine("rm", "-f", name)
            if built:
                self._engine("rmi", "-f", built)
            raise BuildFailed("could not prepare working directory in container", _tail(mkdir.stderr))

        return Environment(
            name=name,
            backend=self.name,
            root=GUEST_ROOT,
            command_prefix=(self.engine, "exec", "-w", GUEST_ROOT),
            command_target=(name,),
            env_option="--env",
            host_workdir=spec.workdir,
            guest_workdir=GUEST_WORKDIR if spec.workdir is not None else None,
            handle={"image": image, "built_image": built},
        )

    def teardown(self, environment: Environment) -> None:
        self._engine("rm", "-f", "-t", "0", environment.name)
        built = environment.handle.get("built_image")
        if built:
            self._engine("rmi", "-f", built)

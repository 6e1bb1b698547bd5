# provision/local.py
from __future__ import annotations

import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Optional

from ..errors import BuildFailed, InsufficientDisk
from ..model import ProvisioningSpec
from .base import Environment, ProvisioningBackend

GIB = 1024 ** 3


class LocalBackend(ProvisioningBackend):
    """
    Disposable workspace on the host.

    The workdir (if any) is copied into a fresh temporary directory so steps
    never write into the source tree; teardown deletes the directory.
    """

    name = "local"

    def __init__(self, base_dir: Optional[str | Path] = None):
        self.base_dir = Path(base_dir) if base_dir else Path(tempfile.gettempdir())

    def provision(self, spec: ProvisioningSpec) -> Environment:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        free = shutil.disk_usage(self.base_dir).free
        if free < spec.disk_gb * GIB:
            raise InsufficientDisk(spec.disk_gb, free / GIB, str(self.base_dir))

        name = f"plangate-{uuid.uuid4().hex[:12]}"
        root = self.base_dir / name
        try:
            if spec.workdir is not None:
                shutil.copytree(spec.workdir, root, symlinks=True)
            else:
                root.mkdir()
        except OSError as e:
            shutil.rmtree(root, ignore_errors=True)
            raise BuildFailed(f"could not prepare workspace {root}", str(e)) from e

        return Environment(
            name=name,
            backend=self.name,
            root=str(root),
            host_cwd=root,
            host_workdir=spec.workdir,
            guest_workdir=str(root) if spec.workdir is not None else None,
        )

    def teardown(self, environment: Environment) -> None:
        shutil.rmtree(environment.root, ignore_errors=True)

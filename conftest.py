from __future__ import annotations

import os
import stat
import textwrap
import threading
from collections import namedtuple
from pathlib import Path

import pytest
import yaml

from plangate.errors import BuildFailed
from plangate.provision.local import LocalBackend
from plangate.ui.console import Console, set_console

DiskUsage = namedtuple("DiskUsage", "total used free")


@pytest.fixture(autouse=True)
def _quiet_console():
    set_console(Console(stream_output=False))
    yield
    set_console(Console())


@pytest.fixture(autouse=True)
def _plenty_of_disk(monkeypatch):
    """Local workspaces check free space; keep tests independent of the host disk."""
    usage = DiskUsage(total=2 ** 41, used=0, free=2 ** 41)
    monkeypatch.setattr("plangate.provision.local.shutil.disk_usage", lambda path: usage)


def write_script(path: Path, body: str) -> Path:
    """Create an executable shell script at `path`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n" + textwrap.dedent(body))
    os.chmod(path, stat.S_IRWXU)
    return path


def write_plan(path: Path, *, discover: str = "tests/*.sh", how: str = "local", **execute) -> Path:
    doc = {
        "summary": "test plan",
        "provision": {"how": how, "disk": 1},
        "execute": {"how": "script", "discover": discover, **execute},
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(doc))
    return path


class RecordingBackend(LocalBackend):
    """Local workspaces that log provision/teardown calls; can fail the first N attempts."""

    def __init__(self, base_dir, fail_times: int = 0):
        super().__init__(base_dir)
        self.fail_times = fail_times
        self.attempts = 0
        self.events: list[str] = []
        self.teardowns = 0
        self.provisioned = threading.Event()
        self._lock = threading.Lock()

    def provision(self, spec):
        with self._lock:
            self.attempts += 1
            if self.attempts <= self.fail_times:
                self.events.append("provision-failed")
                raise BuildFailed("flaky builder", "boom")
        env = super().provision(spec)
        with self._lock:
            self.events.append(f"provision:{env.name}")
        self.provisioned.set()
        return env

    def teardown(self, environment):
        with self._lock:
            self.teardowns += 1
            self.events.append(f"teardown:{environment.name}")
        super().teardown(environment)


@pytest.fixture
def backend(tmp_path):
    return RecordingBackend(tmp_path / "envs")


@pytest.fixture
def script(tmp_path):
    def make(name: str, body: str = "exit 0\n", directory: str = "tests") -> Path:
        return write_script(tmp_path / directory / name, body)
    return make


@pytest.fixture
def plan_file(tmp_path):
    def make(name: str = "plan.yaml", **kwargs) -> Path:
        return write_plan(tmp_path / name, **kwargs)
    return make

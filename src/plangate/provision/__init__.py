from __future__ import annotations

from typing import Callable, Dict

from .base import Environment, ProvisioningBackend, provision_with_retry, provisioned, release
from .container import ContainerBackend
from .local import LocalBackend

# builder identity -> backend factory
BACKENDS: Dict[str, Callable[[], ProvisioningBackend]] = {
    LocalBackend.name: LocalBackend,
    ContainerBackend.name: ContainerBackend,
}

SUPPORTED_BUILDERS = tuple(sorted(BACKENDS))


def get_backend(how: str) -> ProvisioningBackend:
    try:
        return BACKENDS[how]()
    except KeyError:
        raise KeyError(f"no provisioning backend named {how!r}; known: {SUPPORTED_BUILDERS}") from None


__all__ = [
    "BACKENDS",
    "SUPPORTED_BUILDERS",
    "ContainerBackend",
    "Environment",
    "LocalBackend",
    "ProvisioningBackend",
    "get_backend",
    "provision_with_retry",
    "provisioned",
    "release",
]

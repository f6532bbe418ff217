from __future__ import annotations

from typing import Optional

from .base import (
    ContainerRuntime,
    ImageNotFound,
    RuntimeConfig,
    RuntimeFailure,
    SandboxResult,
    parse_image_ref,
)
from .docker import DockerRuntime
from .local import LocalRuntime

RUNTIMES = {
    "docker": DockerRuntime,
    "local": LocalRuntime,
}


def create_runtime(name: str, config: Optional[RuntimeConfig] = None) -> ContainerRuntime:
    try:
        cls = RUNTIMES[name]
    except KeyError:
        raise ValueError(f"Unknown runtime {name!r}. Known runtimes: {sorted(RUNTIMES)}")
    return cls(config)


__all__ = [
    "ContainerRuntime",
    "DockerRuntime",
    "ImageNotFound",
    "LocalRuntime",
    "RuntimeConfig",
    "RuntimeFailure",
    "SandboxResult",
    "create_runtime",
    "parse_image_ref",
]

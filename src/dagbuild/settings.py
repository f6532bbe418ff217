from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .cache import DEFAULT_STORE_DIR


def _int_or_none(value: Optional[str]) -> Optional[int]:
    if value is None or value.strip() == "":
        return None
    return int(value)


@dataclass(frozen=True)
class Settings:
    store_dir: str = DEFAULT_STORE_DIR
    concurrency: Optional[int] = None
    runtime: str = "docker"
    registry: str = ""
    registry_user: Optional[str] = None
    registry_password: Optional[str] = None
    retries: int = 0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> "Settings":
        return cls(
            store_dir=environ.get("DAGBUILD_STORE_DIR", DEFAULT_STORE_DIR),
            concurrency=_int_or_none(environ.get("DAGBUILD_CONCURRENCY")),
            runtime=environ.get("DAGBUILD_RUNTIME", "docker"),
            registry=environ.get("DAGBUILD_REGISTRY", ""),
            registry_user=environ.get("DAGBUILD_REGISTRY_USER") or None,
            registry_password=environ.get("DAGBUILD_REGISTRY_PASSWORD") or None,
            retries=_int_or_none(environ.get("DAGBUILD_RETRIES")) or 0,
        )

# runtime/base.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..fsutil import export_tree, missing_paths, overlay_tree


# seconds between SIGTERM and SIGKILL when terminating sandboxes
TERMINATE_GRACE = 2.0


class RuntimeFailure(Exception):
    """Raised by runtimes when a primitive cannot be carried out."""


class ImageNotFound(RuntimeFailure):
    pass


def parse_image_ref(ref: str) -> Tuple[str, str, Optional[str]]:
    """
    "rust:1-buster"            -> ("rust", "1-buster", None)
    "rust"                     -> ("rust", "latest", None)
    "rust@sha256:abc..."       -> ("rust", "latest", "sha256:abc...")
    "host:5000/team/app:v1"    -> ("host:5000/team/app", "v1", None)
    """
    ref = ref.strip()
    digest = None
    if "@" in ref:
        ref, digest = ref.split("@", 1)
    name, tag = ref, "latest"
    last = ref.rsplit("/", 1)[-1]
    if ":" in last:
        name, tag = ref.rsplit(":", 1)
    if not name:
        raise ValueError(f"invalid image reference: {ref!r}")
    return name, tag, digest


@dataclass(frozen=True)
class RuntimeConfig:
    """
    Everything a runtime needs from the outside world, passed explicitly.

    registry: where images come from (a directory for LocalRuntime, a
    registry host for DockerRuntime; empty means the runtime default).
    """
    registry: str = ""
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    env: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SandboxResult:
    exit_code: int
    stderr: str = ""
    stdout: str = ""


class ContainerRuntime(ABC):
    """
    The four capabilities the engine needs from a container runtime.

    Snapshots are handed over as plain directories: pull_image fills
    `dest`, run_sandbox mutates `rootfs` in place.
    """

    def __init__(self, config: Optional[RuntimeConfig] = None):
        self.config = config or RuntimeConfig()
        self._procs: Set[subprocess.Popen] = set()
        self._procs_lock = threading.Lock()
        self._terminated = threading.Event()

    @abstractmethod
    def resolve_image(self, ref: str) -> str:
        """Resolve an image reference to a stable digest ("sha256:...")."""

    @abstractmethod
    def pull_image(self, ref: str, dest: Path) -> str:
        """Write the image filesystem into `dest`, return its digest."""

    @abstractmethod
    def run_sandbox(
        self,
        rootfs: Path,
        script: str,
        *,
        env: Optional[Dict[str, str]] = None,
        workdir: str = "/",
    ) -> SandboxResult:
        """Run `script` against `rootfs`; `rootfs` holds the final state afterwards."""

    def copy_overlay(self, base: Path, overlay: Path) -> None:
        overlay_tree(overlay, base)

    def export_paths(self, rootfs: Path, paths: Iterable[str], dest: Path) -> List[str]:
        """Copy `paths` out of `rootfs` into `dest`. Returns the missing ones (nothing copied then)."""
        paths = list(paths)
        missing = missing_paths(rootfs, paths)
        if missing:
            return missing
        export_tree(rootfs, paths, dest)
        return []

    # -----------------------------------------------------------------
    # in-flight process tracking
    # -----------------------------------------------------------------

    def _spawn(self, cmd, **kwargs) -> subprocess.Popen:
        # own process group, so termination reaches everything the script started
        kwargs.setdefault("start_new_session", True)
        with self._procs_lock:
            if self._terminated.is_set():
                raise RuntimeFailure("runtime terminated")
            proc = subprocess.Popen(cmd, **kwargs)
            self._procs.add(proc)
        return proc

    def _communicate(self, proc: subprocess.Popen, stdin: Optional[str] = None):
        try:
            return proc.communicate(input=stdin)
        finally:
            with self._procs_lock:
                self._procs.discard(proc)

    def terminate_all(self) -> None:
        """Ask every in-flight sandbox to stop. Later spawns are refused."""
        self._terminated.set()
        with self._procs_lock:
            procs = list(self._procs)
        # a leader that already exited may leave children holding its pipes
        for proc in procs:
            _signal_group(proc, signal.SIGTERM)
        if procs:
            killer = threading.Timer(TERMINATE_GRACE, self._kill_remaining, args=(procs,))
            killer.daemon = True
            killer.start()

    def _kill_remaining(self, procs: List[subprocess.Popen]) -> None:
        with self._procs_lock:
            remaining = [p for p in procs if p in self._procs]
        for proc in remaining:
            _signal_group(proc, signal.SIGKILL)

    def reset(self) -> None:
        self._terminated.clear()


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        # group already gone; fall back to the leader itself
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            pass

"""Pytest fixtures for dagbuild tests."""

from __future__ import annotations

import sys
import threading
from pathlib import Path
from typing import Dict, List

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

import pytest
import structlog

from dagbuild.cache import ArtifactStore
from dagbuild.dag import ExecutionPlan, topo_levels
from dagbuild.executor import StepExecutor
from dagbuild.model import Snapshot
from dagbuild.runner import PlanRunner
from dagbuild.runtime import LocalRuntime, RuntimeConfig


class RecordingRuntime(LocalRuntime):
    """LocalRuntime that remembers which primitives were invoked."""

    def __init__(self, config=None):
        super().__init__(config)
        self.calls: List[tuple] = []
        self._calls_lock = threading.Lock()

    def _record(self, *call) -> None:
        with self._calls_lock:
            self.calls.append(call)

    def pull_image(self, ref, dest):
        self._record("pull", ref)
        return super().pull_image(ref, dest)

    def run_sandbox(self, rootfs, script, *, env=None, workdir="/"):
        self._record("run", script)
        return super().run_sandbox(rootfs, script, env=env, workdir=workdir)

    def count(self, kind: str) -> int:
        return len([c for c in self.calls if c[0] == kind])


def make_image(registry: Path, name: str, tag: str, files: Dict[str, str]) -> Path:
    image = registry / name / tag
    for rel, text in files.items():
        p = image / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(text)
    image.mkdir(parents=True, exist_ok=True)
    return image


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.fixture
def registry(tmp_path: Path) -> Path:
    """Image registry with base:latest holding /etc/image-release."""
    reg = tmp_path / "registry"
    make_image(reg, "base", "latest", {"etc/image-release": "base 1\n"})
    return reg


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Client directory with a small source tree."""
    ws = tmp_path / "ws"
    (ws / "src").mkdir(parents=True)
    (ws / "src" / "main.txt").write_text("hello\n")
    (ws / "README").write_text("readme\n")
    return ws


@pytest.fixture
def store(tmp_path: Path) -> ArtifactStore:
    return ArtifactStore(tmp_path / "store")


@pytest.fixture
def runtime(registry: Path) -> RecordingRuntime:
    return RecordingRuntime(RuntimeConfig(registry=str(registry)))


@pytest.fixture
def executor(store, runtime, workspace) -> StepExecutor:
    return StepExecutor(store, runtime, workdir=workspace)


@pytest.fixture
def runner(store, runtime, workspace) -> PlanRunner:
    return PlanRunner(store, runtime, workdir=workspace, max_workers=4)


@pytest.fixture
def execute_graph():
    """Run every node of a graph through an executor, stage by stage, without a scheduler."""

    def _execute(executor: StepExecutor, graph: ExecutionPlan) -> Dict[str, Snapshot]:
        snaps: Dict[str, Snapshot] = {}
        for level in topo_levels(graph):
            for nid in level:
                node = graph.nodes[nid]
                inputs = {slot: snaps[p] for slot, p in node.inputs}
                prepared = executor.prepare(node, inputs)
                snaps[nid] = executor.execute(node, inputs, prepared)
        return snaps

    return _execute

# executor.py
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping

import structlog

from .cache import DEFAULT_SOURCE_EXCLUDES, ArtifactStore, hash_tree, step_digest
from .dag import StepNode
from .errors import (
    ExecutionError,
    ExportPathMissingError,
    ImagePullError,
    ScriptExecutionError,
    SourceNotFoundError,
)
from .fsutil import to_posix
from .model import Snapshot
from .runtime.base import ContainerRuntime, RuntimeFailure, parse_image_ref

logger = structlog.get_logger()

STDERR_TAIL = 4000


@dataclass(frozen=True)
class PreparedStep:
    """The cache key of a node plus whatever was resolved to compute it."""
    key: str
    resolved: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


class StepExecutor:
    """
    Executes one step at a time against a container runtime.

    prepare() computes the cache key without doing the work: sources are
    hashed, image tags are resolved to digests. execute() does the work
    and stores the result under that key.
    """

    def __init__(
        self,
        store: ArtifactStore,
        runtime: ContainerRuntime,
        *,
        workdir: str | Path = ".",
        client_paths: Iterable[str | Path] = (),
    ):
        self.store = store
        self.runtime = runtime
        self.workdir = Path(workdir).resolve()
        # client write targets never become part of a source snapshot
        self.client_paths: List[Path] = [self._client_path(p) for p in client_paths]

    def _client_path(self, p: str | Path) -> Path:
        return (self.workdir / p).resolve()

    # -----------------------------------------------------------------
    # cache keys
    # -----------------------------------------------------------------

    def prepare(self, node: StepNode, inputs: Mapping[str, Snapshot]) -> PreparedStep:
        if node.kind == "source":
            return self._prepare_source(node)
        if node.kind == "pull":
            return self._prepare_pull(node)
        input_digests = [(slot, inputs[slot].digest) for slot, _ in node.inputs]
        return PreparedStep(key=step_digest(node.kind, node.params, input_digests))

    def cache_key(self, node: StepNode, inputs: Mapping[str, Snapshot]) -> str:
        return self.prepare(node, inputs).key

    def _source_excludes(self, root: Path, extra: Iterable[str]) -> List[str]:
        excludes = list(DEFAULT_SOURCE_EXCLUDES) + list(extra)
        for p in self.client_paths:
            if p != root and root in p.parents:
                excludes.append(to_posix(os.path.relpath(p, root)))
        return excludes

    def _prepare_source(self, node: StepNode) -> PreparedStep:
        path = node.params["path"]
        root = (self.workdir / path).resolve()
        if not root.is_dir():
            reason = "is not a directory" if root.exists() else "does not exist"
            raise SourceNotFoundError(step=node.name, message=f"source {path} {reason}", path=str(root))

        excludes = self._source_excludes(root, node.params.get("exclude", ()))
        tree_hash, info = hash_tree(root, excludes=excludes)
        key = step_digest("source", {"tree": tree_hash}, [])
        return PreparedStep(key=key, resolved={"root": str(root), "exclude": excludes, "files": info["files"]})

    def _prepare_pull(self, node: StepNode) -> PreparedStep:
        image = node.params["image"]
        try:
            digest = self.runtime.resolve_image(image)
        except (RuntimeFailure, ValueError) as e:
            raise ImagePullError(step=node.name, message=f"cannot resolve {image}: {e}", image=image)
        name, _tag, _ = parse_image_ref(image)
        key = step_digest("pull", {"digest": digest}, [])
        return PreparedStep(key=key, resolved={"digest": digest, "pinned": f"{name}@{digest}"})

    # -----------------------------------------------------------------
    # execution
    # -----------------------------------------------------------------

    def execute(self, node: StepNode, inputs: Mapping[str, Snapshot], prepared: PreparedStep) -> Snapshot:
        manifest = {
            "kind": node.kind,
            "step": node.name,
            "params": node.params,
            "inputs": {slot: inputs[slot].digest for slot, _ in node.inputs},
            "resolved": prepared.resolved,
        }
        logger.info("step.execute", step=node.name, kind=node.kind, key=prepared.key[:12])

        if node.kind == "source":
            return self.store.put(
                prepared.key,
                Path(prepared.resolved["root"]),
                manifest,
                exclude=prepared.resolved["exclude"],
            )

        scratch = self.store.scratch_dir(prefix=f"{node.kind}-")
        try:
            if node.kind == "pull":
                result_dir = self._pull(node, prepared, scratch)
            elif node.kind == "copy":
                result_dir = self._copy(inputs, scratch)
            elif node.kind == "run":
                result_dir = self._run(node, inputs, scratch)
            else:
                raise ExecutionError(step=node.name, message=f"unknown step kind {node.kind!r}")
            return self.store.put(prepared.key, result_dir, manifest)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def _pull(self, node: StepNode, prepared: PreparedStep, scratch: Path) -> Path:
        rootfs = scratch / "rootfs"
        rootfs.mkdir()
        image = node.params["image"]
        try:
            # pinned to the digest the cache key was computed from
            self.runtime.pull_image(prepared.resolved["pinned"], rootfs)
        except RuntimeFailure as e:
            raise ImagePullError(step=node.name, message=f"cannot pull {image}: {e}", image=image)
        return rootfs

    def _copy(self, inputs: Mapping[str, Snapshot], scratch: Path) -> Path:
        base = self.store.materialize(inputs["input"], scratch / "base")
        overlay = self.store.materialize(inputs["contents"], scratch / "contents")
        self.runtime.copy_overlay(base, overlay)
        return base

    def _run(self, node: StepNode, inputs: Mapping[str, Snapshot], scratch: Path) -> Path:
        rootfs = self.store.materialize(inputs["input"], scratch / "rootfs")
        script = node.params["script"]
        env = {k: v for k, v in node.params.get("env", [])}

        try:
            result = self.runtime.run_sandbox(rootfs, script, env=env, workdir=node.params.get("workdir", "/"))
        except (RuntimeFailure, OSError) as e:
            raise ExecutionError(step=node.name, message=f"sandbox failed to start: {e}")

        if result.exit_code != 0:
            raise ScriptExecutionError(
                step=node.name,
                message=f"script exited with {result.exit_code}: {script}",
                exit_code=result.exit_code,
                stderr_tail=result.stderr[-STDERR_TAIL:],
            )

        export_dir = scratch / "export"
        missing = self.runtime.export_paths(rootfs, node.params.get("exports", []), export_dir)
        if missing:
            raise ExportPathMissingError(
                step=node.name,
                message=f"exported path {missing[0]} does not exist after the script ran",
                path=missing[0],
            )
        return export_dir

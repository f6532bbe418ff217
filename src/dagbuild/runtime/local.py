# runtime/local.py
from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Dict, Optional, Tuple

import structlog

from ..cache import hash_tree
from ..fsutil import inner_path, overlay_tree
from .base import ContainerRuntime, ImageNotFound, RuntimeConfig, SandboxResult, parse_image_ref

logger = structlog.get_logger()

DEFAULT_REGISTRY_DIR = ".dagbuild/images"


class LocalRuntime(ContainerRuntime):
    """
    Runtime backed by plain directories, no container daemon needed.

    Images live in a registry directory as <registry>/<name>/<tag>/ trees;
    an image digest is the hash of its tree, so re-tagging new content
    yields a new digest. Scripts run under `sh -c` with the working
    directory inside the rootfs; there is no isolation beyond that.
    """

    def __init__(self, config: Optional[RuntimeConfig] = None):
        super().__init__(config)
        self.registry_dir = Path(self.config.registry or DEFAULT_REGISTRY_DIR).expanduser().resolve()

    def _image_dir(self, name: str, tag: str) -> Path:
        return self.registry_dir / name / tag

    def _locate(self, ref: str) -> Tuple[Path, str]:
        name, tag, digest = parse_image_ref(ref)
        if digest is not None:
            # pinned: find the tag whose content has this digest
            repo = self.registry_dir / name
            if repo.is_dir():
                for tag_dir in sorted(p for p in repo.iterdir() if p.is_dir()):
                    if self._digest_of(tag_dir) == digest:
                        return tag_dir, digest
            raise ImageNotFound(f"no image {name} with digest {digest} in {self.registry_dir}")

        image_dir = self._image_dir(name, tag)
        if not image_dir.is_dir():
            raise ImageNotFound(f"image {name}:{tag} not found in {self.registry_dir}")
        return image_dir, self._digest_of(image_dir)

    def _digest_of(self, image_dir: Path) -> str:
        tree_hash, _ = hash_tree(image_dir)
        return f"sha256:{tree_hash}"

    def resolve_image(self, ref: str) -> str:
        _, digest = self._locate(ref)
        return digest

    def pull_image(self, ref: str, dest: Path) -> str:
        image_dir, digest = self._locate(ref)
        overlay_tree(image_dir, dest)
        logger.debug("runtime.pull", image=ref, digest=digest[:19])
        return digest

    def run_sandbox(
        self,
        rootfs: Path,
        script: str,
        *,
        env: Optional[Dict[str, str]] = None,
        workdir: str = "/",
    ) -> SandboxResult:
        cwd = rootfs / inner_path(workdir)
        cwd.mkdir(parents=True, exist_ok=True)

        proc_env = os.environ.copy()
        proc_env.update(self.config.env)
        proc_env.update(env or {})
        proc_env["DAGBUILD_ROOTFS"] = str(rootfs)

        proc = self._spawn(
            ["sh", "-c", script],
            cwd=str(cwd),
            env=proc_env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        stdout, stderr = self._communicate(proc)
        return SandboxResult(exit_code=proc.returncode, stderr=stderr or "", stdout=stdout or "")

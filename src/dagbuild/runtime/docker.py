# runtime/docker.py
from __future__ import annotations

import subprocess
import tarfile
import threading
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Set

import structlog

from ..fsutil import remove_path
from .base import (
    ContainerRuntime,
    ImageNotFound,
    RuntimeConfig,
    RuntimeFailure,
    SandboxResult,
    parse_image_ref,
)

logger = structlog.get_logger()

DOCKER_HINT = "Install Docker and ensure the daemon is running."


def _rootfs_filter(member: tarfile.TarInfo, dest_path: str) -> Optional[tarfile.TarInfo]:
    # device nodes from `docker export` cannot be recreated unprivileged
    if member.ischr() or member.isblk() or member.isfifo():
        return None
    return tarfile.tar_filter(member, dest_path)


class DockerRuntime(ContainerRuntime):
    """
    Runtime driving the docker CLI.

    - pull:    docker pull + docker create + docker export
    - sandbox: docker import (rootfs -> image), docker create/start -a,
               docker export (container -> rootfs)
    - digest:  RepoDigests of the pulled image, so tags are pinned at pull time
    """

    def __init__(self, config: Optional[RuntimeConfig] = None, docker: str = "docker"):
        super().__init__(config)
        self.docker = docker
        self._containers: Set[str] = set()
        self._containers_lock = threading.Lock()
        self._logged_in = False
        self._login_lock = threading.Lock()

    # -----------------------------------------------------------------
    # plumbing
    # -----------------------------------------------------------------

    def _docker(self, args: List[str], *, stdin: Optional[str] = None, check: bool = True) -> str:
        try:
            proc = self._spawn(
                [self.docker, *args],
                text=True,
                stdin=subprocess.PIPE if stdin is not None else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError:
            raise RuntimeFailure(f"docker is not available. {DOCKER_HINT}")
        out, err = self._communicate(proc, stdin=stdin)
        if check and proc.returncode != 0:
            raise RuntimeFailure(f"docker {args[0]} failed (exit={proc.returncode}): {(err or '').strip()}")
        return (out or "").strip()

    def _qualify(self, ref: str) -> str:
        registry = self.config.registry.rstrip("/")
        if registry and not ref.startswith(registry + "/"):
            return f"{registry}/{ref}"
        return ref

    def _login(self) -> None:
        if not (self.config.username and self.config.password):
            return
        with self._login_lock:
            if self._logged_in:
                return
            args = ["login", "--username", self.config.username, "--password-stdin"]
            if self.config.registry:
                args.append(self.config.registry)
            self._docker(args, stdin=self.config.password)
            self._logged_in = True

    def _export_container(self, container: str, dest: Path) -> None:
        proc = self._spawn([self.docker, "export", container], stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        try:
            with tarfile.open(fileobj=proc.stdout, mode="r|") as tar:
                tar.extractall(path=str(dest), filter=_rootfs_filter)
        finally:
            _, err = self._communicate(proc)
        if proc.returncode != 0:
            raise RuntimeFailure(f"docker export failed: {err.decode(errors='replace').strip()}")

    def _track(self, container: str) -> None:
        with self._containers_lock:
            self._containers.add(container)

    def _untrack(self, container: str) -> None:
        with self._containers_lock:
            self._containers.discard(container)
        # cleanup still runs after terminate_all, so bypass _spawn
        subprocess.run([self.docker, "rm", "-f", container], capture_output=True, check=False)

    # -----------------------------------------------------------------
    # primitives
    # -----------------------------------------------------------------

    def resolve_image(self, ref: str) -> str:
        if "@sha256:" in ref:
            return ref.split("@", 1)[1]
        self._login()
        qualified = self._qualify(ref)
        try:
            self._docker(["pull", "--quiet", qualified])
        except RuntimeFailure as e:
            raise ImageNotFound(str(e))
        repo_digest = self._docker(["image", "inspect", "--format", "{{index .RepoDigests 0}}", qualified])
        if "@" not in repo_digest:
            raise ImageNotFound(f"image {qualified} has no registry digest")
        return repo_digest.split("@", 1)[1]

    def pull_image(self, ref: str, dest: Path) -> str:
        digest = self.resolve_image(ref)
        name, _tag, _ = parse_image_ref(ref)
        pinned = f"{self._qualify(name)}@{digest}"
        if "@sha256:" in ref:
            self._login()
            try:
                self._docker(["pull", "--quiet", pinned])
            except RuntimeFailure as e:
                raise ImageNotFound(str(e))
        container = self._docker(["create", pinned, "true"])
        self._track(container)
        try:
            self._export_container(container, dest)
        finally:
            self._untrack(container)
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
        tag = f"dagbuild-sandbox:{uuid.uuid4().hex[:12]}"
        tarball = rootfs.parent / f"{rootfs.name}.tar"
        with tarfile.open(str(tarball), mode="w") as tar:
            tar.add(str(rootfs), arcname=".")
        try:
            self._docker(["import", str(tarball), tag])
        finally:
            tarball.unlink(missing_ok=True)

        cmd = ["create", "-w", workdir]
        merged_env = dict(self.config.env)
        merged_env.update(env or {})
        for key, value in merged_env.items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.extend([tag, "sh", "-c", script])

        container = self._docker(cmd)
        self._track(container)
        try:
            proc = self._spawn(
                [self.docker, "start", "-a", container],
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
            stdout, stderr = self._communicate(proc)
            exit_code = proc.returncode

            # replace rootfs with the container's final filesystem
            for child in list(rootfs.iterdir()):
                remove_path(child)
            self._export_container(container, rootfs)
        finally:
            self._untrack(container)
            subprocess.run([self.docker, "rmi", "-f", tag], capture_output=True, check=False)

        return SandboxResult(exit_code=exit_code, stderr=stderr or "", stdout=stdout or "")

    def terminate_all(self) -> None:
        with self._containers_lock:
            containers = list(self._containers)
        super().terminate_all()
        for container in containers:
            # docker kill goes straight to subprocess: spawning is refused now
            subprocess.run([self.docker, "kill", container], capture_output=True, check=False)

# cache.py
from __future__ import annotations

import hashlib
import json
import os
import shutil
import stat
import tarfile
import tempfile
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

from .errors import StoreError
from .fsutil import matches_any_glob, to_posix
from .model import Snapshot

logger = structlog.get_logger()

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Content-addressed snapshot store:
#   digest = sha256(stable json of {
#       kind, params, digests of input snapshots
#   })
#   except for sources, whose digest is the hash of the files themselves,
#   and pulls, whose digest comes from the resolved image digest.
#
# Snapshot artifact:
#   a tar.gz of the filesystem state plus a manifest.json for
#   explainability (what produced it, from which inputs).
#
#   root/
#     <digest[:2]>/
#       <digest>.tar.gz
#       <digest>.manifest.json
#     tmp/            scratch space for executing steps
# ---------------------------------------------------------------------


DEFAULT_STORE_DIR = ".dagbuild/store"
DEFAULT_SOURCE_EXCLUDES = [
    ".git",
    ".dagbuild",
    "__pycache__",
    "*/__pycache__",
    "*.pyc",
    ".DS_Store",
    "*/.DS_Store",
]

HASH_VERSION = 1  # bump this if you change hashing format


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def stable_hash(obj) -> str:
    return _sha256_str(_json_dumps_stable(obj))


def step_digest(kind: str, params: Dict[str, Any], inputs: Iterable[Tuple[str, str]]) -> str:
    """Digest of a derived snapshot: same kind, params and input digests -> same digest."""
    return stable_hash(
        {
            "v": HASH_VERSION,
            "kind": kind,
            "params": params,
            "inputs": [[slot, digest] for slot, digest in inputs],
        }
    )


def hash_tree(root: Path, *, excludes: Iterable[str] = ()) -> Tuple[str, Dict]:
    """
    Hash a directory tree deterministically:
      - relative path
      - file contents (symlinks hash their target string)
      - executable bit
    Excluded paths are left out entirely.
    """
    exclude_globs = list(excludes)
    entries: List[Tuple[str, str, str]] = []

    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        base = Path(dirpath)
        rel_dir = to_posix(os.path.relpath(dirpath, root))
        rel_dir = "" if rel_dir == "." else rel_dir + "/"

        # prune excluded dirs in place; symlinked dirs are recorded as links
        keep = []
        for d in sorted(dirnames):
            rel = rel_dir + d
            if matches_any_glob(rel, exclude_globs):
                continue
            if (base / d).is_symlink():
                entries.append((rel, "link", os.readlink(base / d)))
                continue
            keep.append(d)
        dirnames[:] = keep

        for name in sorted(filenames):
            rel = rel_dir + name
            if matches_any_glob(rel, exclude_globs):
                continue
            p = base / name
            if p.is_symlink():
                entries.append((rel, "link", os.readlink(p)))
                continue
            mode = "x" if os.stat(p).st_mode & stat.S_IXUSR else "f"
            entries.append((rel, mode, _hash_file_contents(p)))

    entries.sort(key=lambda t: t[0])  # stable ordering by relpath
    payload = {"v": HASH_VERSION, "files": entries}
    return _sha256_str(_json_dumps_stable(payload)), {"files": len(entries)}


def _tar_filter(exclude_globs: List[str]):
    def _filter(info: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
        name = info.name[2:] if info.name.startswith("./") else info.name
        if name in ("", ".") or not exclude_globs:
            return info
        if matches_any_glob(name, exclude_globs):
            return None
        return info

    return _filter


class ArtifactStore:
    """
    File-based content-addressed snapshot store.

    Safe for concurrent get/put from worker threads: writers of one digest
    are serialized, and every write lands in a uniquely named temp file
    that is moved into place atomically. A second put of an existing
    digest is a no-op returning the stored snapshot.

    Refcounts track which snapshots an in-flight run still needs; prune()
    never removes a retained snapshot.
    """

    def __init__(self, root: str | Path = DEFAULT_STORE_DIR):
        self.root = Path(root).resolve()
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            self.tmp_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"cannot create store at {self.root}: {e}")
        self._lock = threading.Lock()
        self._digest_locks: Dict[str, threading.Lock] = {}
        self._refs: Dict[str, int] = {}

    @property
    def tmp_root(self) -> Path:
        return self.root / "tmp"

    def _dir(self, digest: str) -> Path:
        return self.root / digest[:2]

    def artifact_path(self, digest: str) -> Path:
        return self._dir(digest) / f"{digest}.tar.gz"

    def manifest_path(self, digest: str) -> Path:
        return self._dir(digest) / f"{digest}.manifest.json"

    def _digest_lock(self, digest: str) -> threading.Lock:
        with self._lock:
            lock = self._digest_locks.get(digest)
            if lock is None:
                lock = self._digest_locks[digest] = threading.Lock()
            return lock

    # -----------------------------------------------------------------
    # get / put
    # -----------------------------------------------------------------

    def get(self, digest: str) -> Optional[Snapshot]:
        art = self.artifact_path(digest)
        man = self.manifest_path(digest)
        if not art.exists() or not man.exists():
            return None
        try:
            manifest = json.loads(man.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StoreError(f"unreadable manifest: {e}", digest=digest)
        return Snapshot(digest=digest, path=art, manifest=manifest)

    def put(
        self,
        digest: str,
        root: Path,
        manifest: Optional[Dict] = None,
        *,
        exclude: Iterable[str] = (),
    ) -> Snapshot:
        """
        Archive the directory `root` under `digest`.
        Paths matching `exclude` (relative globs) are left out.
        """
        with self._digest_lock(digest):
            existing = self.get(digest)
            if existing is not None:
                return existing

            art = self.artifact_path(digest)
            man = self.manifest_path(digest)
            manifest = dict(manifest or {})
            manifest.setdefault("digest", digest)
            manifest.setdefault("created_at_unix", int(time.time()))

            token = uuid.uuid4().hex[:8]
            tmp_art = art.with_name(f"{digest}.{token}.tar.gz.tmp")
            tmp_man = man.with_name(f"{digest}.{token}.manifest.tmp")
            try:
                art.parent.mkdir(parents=True, exist_ok=True)
                # Build tar.gz in tmp, then atomic rename
                with tarfile.open(str(tmp_art), mode="w:gz") as tar:
                    tar.add(str(root), arcname=".", filter=_tar_filter(list(exclude)))
                tmp_man.write_text(
                    json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False),
                    encoding="utf-8",
                )
                os.replace(tmp_art, art)
                os.replace(tmp_man, man)
            except (OSError, tarfile.TarError) as e:
                raise StoreError(f"cannot write snapshot: {e}", digest=digest)
            finally:
                tmp_art.unlink(missing_ok=True)
                tmp_man.unlink(missing_ok=True)

        logger.debug("store.put", digest=digest[:12], kind=manifest.get("kind"))
        return Snapshot(digest=digest, path=art, manifest=manifest)

    def materialize(self, snapshot: Snapshot, dest: Path) -> Path:
        """Extract a snapshot into `dest` (created if needed)."""
        try:
            dest.mkdir(parents=True, exist_ok=True)
            with tarfile.open(str(snapshot.path), mode="r:gz") as tar:
                tar.extractall(path=str(dest), filter="tar")
        except (OSError, tarfile.TarError, EOFError) as e:
            raise StoreError(f"cannot restore snapshot: {e}", digest=snapshot.digest)
        return dest

    def scratch_dir(self, prefix: str = "step-") -> Path:
        try:
            return Path(tempfile.mkdtemp(prefix=prefix, dir=str(self.tmp_root)))
        except OSError as e:
            raise StoreError(f"cannot create scratch dir: {e}")

    # -----------------------------------------------------------------
    # refcounts
    # -----------------------------------------------------------------

    def retain(self, digest: str, count: int = 1) -> int:
        if count <= 0:
            return self.refcount(digest)
        with self._lock:
            self._refs[digest] = self._refs.get(digest, 0) + count
            return self._refs[digest]

    def release(self, digest: str, count: int = 1) -> int:
        with self._lock:
            left = self._refs.get(digest, 0) - count
            if left <= 0:
                self._refs.pop(digest, None)
                return 0
            self._refs[digest] = left
            return left

    def refcount(self, digest: str) -> int:
        with self._lock:
            return self._refs.get(digest, 0)

    # -----------------------------------------------------------------
    # listing / pruning
    # -----------------------------------------------------------------

    def entries(self) -> List[Snapshot]:
        """All stored snapshots, newest first."""
        out: List[Snapshot] = []
        for art in self.root.glob("??/*.tar.gz"):
            digest = art.name[: -len(".tar.gz")]
            snap = self.get(digest)
            if snap is not None:
                out.append(snap)
        out.sort(key=lambda s: s.path.stat().st_mtime, reverse=True)
        return out

    def prune(self, keep: int = 50) -> List[str]:
        """
        Keep only the newest N snapshots. Uses file mtime as "newest".
        Retained snapshots are never removed.
        """
        removed: List[str] = []
        for snap in self.entries()[keep:]:
            if self.refcount(snap.digest) > 0:
                continue
            with self._digest_lock(snap.digest):
                self.artifact_path(snap.digest).unlink(missing_ok=True)
                self.manifest_path(snap.digest).unlink(missing_ok=True)
            removed.append(snap.digest)
        if removed:
            logger.info("store.prune", removed=len(removed), kept=keep)
        return removed

    def clear_scratch(self) -> None:
        shutil.rmtree(self.tmp_root, ignore_errors=True)
        self.tmp_root.mkdir(parents=True, exist_ok=True)

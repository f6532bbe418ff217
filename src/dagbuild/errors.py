# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class DagbuildError(Exception):
    """Root of every error raised by the engine."""

    @property
    def kind(self) -> str:
        return type(self).__name__


# ----------------------------------------------------------------------
# Graph errors (fatal, raised before anything executes)
# ----------------------------------------------------------------------

class GraphError(DagbuildError):
    pass


@dataclass(eq=False)
class CycleError(GraphError):
    chain: List[str]

    def __str__(self) -> str:
        return f"{self.kind}: dependency cycle: {' -> '.join(self.chain)}"


@dataclass(eq=False)
class UnresolvedReferenceError(GraphError):
    reference: str
    message: str

    def __str__(self) -> str:
        return f"{self.kind}: {self.reference}: {self.message}"


@dataclass(eq=False)
class PlanFileError(GraphError):
    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.kind}: {self.path}: {self.message}"


# ----------------------------------------------------------------------
# Execution errors (scoped to one step)
# ----------------------------------------------------------------------

@dataclass(eq=False)
class ExecutionError(DagbuildError):
    """
    A step failed. The node moves to Failed and its dependents follow.

    step is the display name of the failing node.
    """
    step: str
    message: str

    def details(self) -> dict:
        return {}

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"step={self.step}"]
        for k, v in self.details().items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass(eq=False)
class SourceNotFoundError(ExecutionError):
    path: str = ""

    def details(self) -> dict:
        return {"path": self.path}


@dataclass(eq=False)
class ImagePullError(ExecutionError):
    image: str = ""

    def details(self) -> dict:
        return {"image": self.image}


@dataclass(eq=False)
class ScriptExecutionError(ExecutionError):
    exit_code: int = 1
    stderr_tail: str = ""

    def details(self) -> dict:
        d = {"exit_code": self.exit_code}
        tail = self.stderr_tail.strip()
        if tail:
            # last line only; the full tail stays on the exception
            d["stderr"] = tail.splitlines()[-1]
        return d


@dataclass(eq=False)
class ExportPathMissingError(ExecutionError):
    path: str = ""

    def details(self) -> dict:
        return {"path": self.path}


@dataclass(eq=False)
class UpstreamFailedError(ExecutionError):
    """A dependency failed; origin names the node that actually failed."""
    origin: str = ""
    cause: Optional[BaseException] = None

    @property
    def origin_kind(self) -> str:
        if isinstance(self.cause, DagbuildError):
            return self.cause.kind
        return type(self.cause).__name__ if self.cause is not None else "unknown"

    def details(self) -> dict:
        return {"origin": self.origin, "origin_kind": self.origin_kind}


@dataclass(eq=False)
class CancelledError(ExecutionError):
    reason: str = "cancelled"

    def details(self) -> dict:
        return {"reason": self.reason}


# ----------------------------------------------------------------------
# Run-level errors
# ----------------------------------------------------------------------

@dataclass(eq=False)
class StoreError(DagbuildError):
    message: str
    digest: Optional[str] = None

    def __str__(self) -> str:
        if self.digest:
            return f"{self.kind}: {self.message} (digest={self.digest[:12]})"
        return f"{self.kind}: {self.message}"


@dataclass(eq=False)
class WriteTargetError(DagbuildError):
    path: str
    action: str
    message: str = "source action did not complete"
    causes: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"{self.kind}: cannot write {self.path} from '{self.action}': {self.message}"

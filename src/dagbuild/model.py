# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple, Union


# ---------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------
# A Step is one primitive operation. Steps are plain values: two equal
# Steps are the same work, which is what lets the graph builder share them
# across actions. Inputs are either another Step or a Ref into an Action.


@dataclass(frozen=True)
class Ref:
    """Reference to the value of another action's field."""
    action: str
    field: str

    def __str__(self) -> str:
        return f"{self.action}.{self.field}"


@dataclass(frozen=True)
class Source:
    """A subtree of the client filesystem."""
    path: str
    exclude: Tuple[str, ...] = ()

    kind = "source"

    def params(self) -> Dict[str, Any]:
        return {"path": self.path, "exclude": list(self.exclude)}


@dataclass(frozen=True)
class Pull:
    """A container image, by tag or by digest."""
    image: str

    kind = "pull"

    def params(self) -> Dict[str, Any]:
        return {"image": self.image}


@dataclass(frozen=True)
class Copy:
    """`input` filesystem with `contents` merged over its root."""
    input: "StepInput"
    contents: "StepInput"

    kind = "copy"

    def params(self) -> Dict[str, Any]:
        return {}

    def slots(self) -> Tuple[Tuple[str, "StepInput"], ...]:
        return (("input", self.input), ("contents", self.contents))


@dataclass(frozen=True)
class Run:
    """Run `script` in a sandbox seeded from `input`, keep only `exports`."""
    input: "StepInput"
    script: str
    exports: Tuple[str, ...] = ()
    env: Tuple[Tuple[str, str], ...] = ()
    workdir: str = "/"

    kind = "run"

    def params(self) -> Dict[str, Any]:
        return {
            "script": self.script,
            "exports": list(self.exports),
            "env": [list(kv) for kv in self.env],
            "workdir": self.workdir,
        }

    def slots(self) -> Tuple[Tuple[str, "StepInput"], ...]:
        return (("input", self.input),)


Step = Union[Source, Pull, Copy, Run]
StepInput = Union[Source, Pull, Copy, Run, Ref]

STEP_TYPES = (Source, Pull, Copy, Run)
LITERAL_TYPES = (str, int, float, bool, type(None))


def step_slots(step: Step) -> Tuple[Tuple[str, StepInput], ...]:
    """(slot name, input) pairs of a step; leaves have none."""
    slots = getattr(step, "slots", None)
    return slots() if slots is not None else ()


# ---------------------------------------------------------------------
# Actions & plans
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Action:
    """
    A named group of fields. Each field holds a Step, a Ref or a literal.
    The mapping is frozen on construction.
    """
    name: str
    fields: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    def step_fields(self) -> Dict[str, Any]:
        return {k: v for k, v in self.fields.items() if isinstance(v, STEP_TYPES + (Ref,))}


@dataclass(frozen=True)
class ClientWrite:
    """
    Write the snapshot behind `action.field` to the client path `path`.
    With `subpath`, only that subtree of the snapshot is written.
    """
    path: str
    action: str
    field: str
    subpath: Optional[str] = None


@dataclass(frozen=True)
class Plan:
    """A resolved plan: actions, client writes and the requested actions."""
    actions: Mapping[str, Action]
    writes: Tuple[ClientWrite, ...] = ()
    targets: Optional[Tuple[str, ...]] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "actions", MappingProxyType(dict(self.actions)))
        object.__setattr__(self, "writes", tuple(self.writes))
        if self.targets is not None:
            object.__setattr__(self, "targets", tuple(self.targets))

    def requested(self) -> Tuple[str, ...]:
        if self.targets is None:
            return tuple(self.actions)
        return self.targets


# ---------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Snapshot:
    """An immutable filesystem state held by the artifact store."""
    digest: str
    path: Path
    manifest: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def short(self) -> str:
        return self.digest[:12]

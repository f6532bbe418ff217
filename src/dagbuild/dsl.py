# src/dagbuild/dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

from .model import Action, ClientWrite, Copy, Plan, Pull, Ref, Run, Source, StepInput


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def source(path: str = ".", *, exclude: Sequence[str] = ()) -> Source:
    """A client directory (relative paths resolve against the plan's workdir)."""
    return Source(path=path, exclude=tuple(exclude))


def pull(image: str) -> Pull:
    return Pull(image=image)


def copy(input: StepInput, contents: StepInput) -> Copy:
    """Overlay `contents` onto the root of `input`; `contents` wins."""
    return Copy(input=input, contents=contents)


def run(
    input: StepInput,
    script: str,
    *,
    exports: Sequence[str] = (),
    env: Optional[Mapping[str, Any]] = None,
    workdir: str = "/",
) -> Run:
    # force values to str for stable hashing + env compatibility
    env_pairs = tuple(sorted((str(k), str(v)) for k, v in (env or {}).items()))
    return Run(input=input, script=script, exports=tuple(exports), env=env_pairs, workdir=workdir)


def ref(target: str, field: Optional[str] = None) -> Ref:
    """
    ref("build", "image") or ref("build.image").
    """
    if field is None:
        action_name, sep, field = target.partition(".")
        if not sep or not action_name or not field:
            raise ValueError(f"ref({target!r}) must look like 'action.field'")
        return Ref(action=action_name, field=field)
    return Ref(action=target, field=field)


# ---------------------------------------------------------------------
# Action / plan helpers
# ---------------------------------------------------------------------

def action(name: str, **fields: Any) -> Action:
    if not fields:
        raise ValueError(f"action({name!r}) must have at least one field")
    return Action(name=name, fields=fields)


def write(path: str, target: str, *, subpath: Optional[str] = None) -> ClientWrite:
    """write("./target", "build.export") writes that field's snapshot to ./target."""
    r = ref(target)
    return ClientWrite(path=path, action=r.action, field=r.field, subpath=subpath)


def plan(
    *actions: Action,
    writes: Iterable[ClientWrite] = (),
    targets: Optional[Iterable[str]] = None,
) -> Plan:
    """
    Plan definition helper for plan files.

        from dagbuild import action, copy, plan, pull, run, source, write

        def build_plan():
            return plan(
                action("build", export=run(copy(pull("rust:1-buster"), source(".")),
                                           "cargo build --release", exports=["/target"])),
                writes=[write("./target", "build.export", subpath="/target")],
            )

        PLAN = build_plan()
    """
    by_name: Dict[str, Action] = {}
    for a in actions:
        if a.name in by_name:
            raise ValueError(f"Duplicate action name: {a.name}")
        by_name[a.name] = a
    return Plan(
        actions=by_name,
        writes=tuple(writes),
        targets=tuple(targets) if targets is not None else None,
    )

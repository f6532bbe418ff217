# planfile.py
# Plan documents: the resolved action tree as JSON or YAML.
#
#   actions:
#     build:
#       image: {kind: pull, image: "rust:1-buster"}
#       export:
#         kind: run
#         input:
#           kind: copy
#           input: {kind: ref, action: build, field: image}
#           contents: {kind: source, path: "."}
#         script: cargo build --release
#         exports: [/target]
#   writes:
#     - {path: ./target, from: build.export, subpath: /target}
#   targets: [build]
import json
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .dsl import copy, pull, ref, run, source
from .errors import PlanFileError
from .model import Action, ClientWrite, Plan


class _Spec(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class SourceSpec(_Spec):
    kind: Literal["source"]
    path: str = "."
    exclude: List[str] = Field(default_factory=list)


class PullSpec(_Spec):
    kind: Literal["pull"]
    image: str


class RefSpec(_Spec):
    kind: Literal["ref"]
    action: str
    field: str


class CopySpec(_Spec):
    kind: Literal["copy"]
    input: "NodeSpec"
    contents: "NodeSpec"


class RunSpec(_Spec):
    kind: Literal["run"]
    input: "NodeSpec"
    script: str
    exports: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    workdir: str = "/"


NodeSpec = Annotated[
    Union[SourceSpec, PullSpec, CopySpec, RunSpec, RefSpec],
    Field(discriminator="kind"),
]
FieldValue = Union[NodeSpec, str, int, float, bool, None]


class WriteSpec(_Spec):
    path: str
    from_: str = Field(alias="from")
    subpath: Optional[str] = None


class PlanDocument(_Spec):
    actions: Dict[str, Dict[str, FieldValue]]
    writes: List[WriteSpec] = Field(default_factory=list)
    targets: Optional[List[str]] = None


CopySpec.model_rebuild()
RunSpec.model_rebuild()
PlanDocument.model_rebuild()


# ---------------------------------------------------------------------
# Document -> Plan
# ---------------------------------------------------------------------

def _to_value(spec: Any) -> Any:
    if isinstance(spec, SourceSpec):
        return source(spec.path, exclude=spec.exclude)
    if isinstance(spec, PullSpec):
        return pull(spec.image)
    if isinstance(spec, RefSpec):
        return ref(spec.action, spec.field)
    if isinstance(spec, CopySpec):
        return copy(_to_value(spec.input), _to_value(spec.contents))
    if isinstance(spec, RunSpec):
        return run(
            _to_value(spec.input),
            spec.script,
            exports=spec.exports,
            env=spec.env,
            workdir=spec.workdir,
        )
    return spec  # literal


def parse_plan_document(data: Any, origin: str = "<document>") -> Plan:
    try:
        doc = PlanDocument.model_validate(data)
    except ValidationError as e:
        raise PlanFileError(path=origin, message=f"invalid plan document ({e.error_count()} errors)\n{e}")

    actions = {
        name: Action(name=name, fields={k: _to_value(v) for k, v in fields.items()})
        for name, fields in doc.actions.items()
    }

    writes = []
    for w in doc.writes:
        try:
            r = ref(w.from_)
        except ValueError as e:
            raise PlanFileError(path=origin, message=f"write {w.path}: {e}")
        writes.append(ClientWrite(path=w.path, action=r.action, field=r.field, subpath=w.subpath))

    return Plan(actions=actions, writes=tuple(writes), targets=tuple(doc.targets) if doc.targets is not None else None)


def load_plan_document(path: Union[str, Path]) -> Plan:
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
        if p.suffix == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise PlanFileError(path=str(p), message=f"cannot read plan document: {e}")
    return parse_plan_document(data, origin=str(p))

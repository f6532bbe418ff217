"""Tests for JSON/YAML plan documents."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from dagbuild.dag import build_plan
from dagbuild.errors import PlanFileError
from dagbuild.model import ClientWrite, Copy, Pull, Ref, Run, Source
from dagbuild.planfile import load_plan_document, parse_plan_document

DOCUMENT = {
    "actions": {
        "build": {
            "image": {"kind": "pull", "image": "rust:1-buster"},
            "export": {
                "kind": "run",
                "input": {
                    "kind": "copy",
                    "input": {"kind": "ref", "action": "build", "field": "image"},
                    "contents": {"kind": "source", "path": ".", "exclude": ["target"]},
                },
                "script": "cargo build --release",
                "exports": ["/target"],
                "env": {"CARGO_TERM_COLOR": "never"},
            },
            "channel": "stable",
        },
    },
    "writes": [{"path": "./target", "from": "build.export", "subpath": "/target"}],
}


def test_document_becomes_a_plan() -> None:
    p = parse_plan_document(DOCUMENT)
    build = p.actions["build"]

    assert build.fields["image"] == Pull("rust:1-buster")
    export = build.fields["export"]
    assert isinstance(export, Run)
    assert export.exports == ("/target",)
    assert export.env == (("CARGO_TERM_COLOR", "never"),)
    assert export.input == Copy(Ref("build", "image"), Source(".", ("target",)))
    assert build.fields["channel"] == "stable"
    assert p.writes == (ClientWrite("./target", "build", "export", "/target"),)
    assert p.targets is None


def test_document_plan_builds_a_graph() -> None:
    g = build_plan(parse_plan_document(DOCUMENT))
    assert len(g.nodes) == 4


def test_unknown_step_kind() -> None:
    doc = {"actions": {"a": {"x": {"kind": "teleport", "to": "mars"}}}}
    with pytest.raises(PlanFileError) as exc:
        parse_plan_document(doc, origin="plan.json")
    assert exc.value.path == "plan.json"


def test_missing_required_parameter() -> None:
    doc = {"actions": {"a": {"x": {"kind": "run", "input": {"kind": "pull", "image": "base"}}}}}
    with pytest.raises(PlanFileError, match="invalid plan document"):
        parse_plan_document(doc)


def test_malformed_write_source() -> None:
    doc = {"actions": {"a": {"x": {"kind": "pull", "image": "base"}}}, "writes": [{"path": "out", "from": "a"}]}
    with pytest.raises(PlanFileError, match="write out"):
        parse_plan_document(doc)


def test_targets_are_kept() -> None:
    doc = dict(DOCUMENT, targets=["build"])
    assert parse_plan_document(doc).targets == ("build",)


def test_json_and_yaml_files(tmp_path: Path) -> None:
    as_json = tmp_path / "plan.json"
    as_json.write_text(json.dumps(DOCUMENT))
    as_yaml = tmp_path / "plan.yml"
    as_yaml.write_text(
        "actions:\n"
        "  build:\n"
        "    image: {kind: pull, image: 'rust:1-buster'}\n"
    )
    assert load_plan_document(as_json).actions["build"].fields["image"] == Pull("rust:1-buster")
    assert load_plan_document(as_yaml).actions["build"].fields["image"] == Pull("rust:1-buster")


def test_invalid_json_file(tmp_path: Path) -> None:
    f = tmp_path / "plan.json"
    f.write_text("{")
    with pytest.raises(PlanFileError, match="cannot read"):
        load_plan_document(f)

# dagbuild_plan.py
# Plan for building and testing a Rust crate in the working directory.
from __future__ import annotations

from dagbuild import action, copy, plan, pull, ref, run, source, write


def build_plan():
    rust = pull("rust:1-buster")
    workspace = copy(rust, source(".", exclude=["target"]))

    return plan(
        action(
            "build",
            image=rust,
            export=run(
                workspace,
                "cargo build --release",
                exports=["/target"],
                workdir="/",
            ),
        ),
        action(
            "test",
            # same workspace as build: shares the pull and copy steps
            report=run(workspace, "cargo test 2>&1 | tee /test-report.txt", exports=["/test-report.txt"]),
            image=ref("build.image"),
        ),
        writes=[write("./target", "build.export", subpath="/target")],
    )

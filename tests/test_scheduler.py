"""Tests for dependency-driven scheduling, failure propagation and cancellation."""

from __future__ import annotations

import time
from pathlib import Path

import pytest

from conftest import RecordingRuntime
from dagbuild.cache import ArtifactStore
from dagbuild.dag import build_plan
from dagbuild.dsl import action, copy, plan, pull, run, source
from dagbuild.errors import CancelledError, ImagePullError, StoreError, UpstreamFailedError
from dagbuild.executor import StepExecutor
from dagbuild.runtime import ImageNotFound, RuntimeConfig, SandboxResult
from dagbuild.scheduler import CancelToken, NodeState, Scheduler


def _scheduler(store, runtime, workspace, **kwargs) -> Scheduler:
    return Scheduler(StepExecutor(store, runtime, workdir=workspace), store, **kwargs)


def _result(graph, result, name: str, field: str):
    return result.results[graph.outputs[(name, field)]]


class FlakyRuntime(RecordingRuntime):
    """Fails to resolve images a fixed number of times."""

    def __init__(self, config=None, failures: int = 1):
        super().__init__(config)
        self.failures = failures

    def resolve_image(self, ref):
        if self.failures > 0:
            self.failures -= 1
            raise ImageNotFound("registry unavailable")
        return super().resolve_image(ref)


class StubbornRuntime(RecordingRuntime):
    """Sandboxes that ignore termination and return late."""

    def run_sandbox(self, rootfs, script, *, env=None, workdir="/"):
        self._record("run", script)
        time.sleep(1.5)
        return SandboxResult(exit_code=1, stderr="terminated")


class BrokenStore(ArtifactStore):
    def put(self, digest, root, manifest=None, *, exclude=()):
        raise StoreError("disk full", digest=digest)


class TestExecution:
    def test_all_nodes_done_and_each_executed_once(self, store, runtime, workspace) -> None:
        g = build_plan(
            plan(
                action("build", export=run(copy(pull("base"), source(".")), "mkdir o && touch o/b", exports=["/o"])),
                action("lint", report=run(copy(pull("base"), source(".")), "mkdir o && touch o/l", exports=["/o"])),
            )
        )
        result = _scheduler(store, runtime, workspace, max_workers=4).run(g)

        assert result.success
        assert len(result.executed) == len(g.nodes) == 5
        assert runtime.count("pull") == 1
        assert runtime.count("run") == 2

    def test_second_run_is_all_cache_hits(self, store, runtime, workspace) -> None:
        g = build_plan(plan(action("build", export=run(copy(pull("base"), source(".")), "mkdir o", exports=["/o"]))))
        _scheduler(store, runtime, workspace).run(g)
        calls = len(runtime.calls)

        again = _scheduler(store, runtime, workspace).run(build_plan(
            plan(action("build", export=run(copy(pull("base"), source(".")), "mkdir o", exports=["/o"])))
        ))

        assert again.success
        assert again.executed == []
        assert len(again.cache_hits) == 4
        assert len(runtime.calls) == calls

    def test_independent_steps_run_concurrently(self, store, runtime, workspace, tmp_path: Path) -> None:
        sync = tmp_path / "sync"
        sync.mkdir()
        # each script waits for the other's marker; run serially, the first would time out
        wait_for = (
            'touch "$SYNC/{me}"; i=0; '
            'while [ ! -f "$SYNC/{other}" ] && [ $i -lt 100 ]; do sleep 0.05; i=$((i+1)); done; '
            'test -f "$SYNC/{other}" && mkdir o'
        )
        env = {"SYNC": str(sync)}
        g = build_plan(
            plan(
                action("a", out=run(pull("base"), wait_for.format(me="a", other="b"), exports=["/o"], env=env)),
                action("b", out=run(pull("base"), wait_for.format(me="b", other="a"), exports=["/o"], env=env)),
            )
        )
        result = _scheduler(store, runtime, workspace, max_workers=2).run(g)
        assert result.success

    def test_equal_keys_execute_once_when_concurrent(self, store, runtime, workspace, tmp_path: Path) -> None:
        for name in ("a", "b"):
            (workspace / name).mkdir()
            (workspace / name / "data.txt").write_text("same\n")
        counter = tmp_path / "counter"
        script = 'echo x >> "$COUNTER"; mkdir o'
        env = {"COUNTER": str(counter)}
        g = build_plan(
            plan(
                action("a", out=run(copy(pull("base"), source("a")), script, exports=["/o"], env=env)),
                action("b", out=run(copy(pull("base"), source("b")), script, exports=["/o"], env=env)),
            )
        )
        assert g.outputs[("a", "out")] != g.outputs[("b", "out")]

        result = _scheduler(store, runtime, workspace, max_workers=4).run(g)

        assert result.success
        assert counter.read_text().splitlines() == ["x"]
        assert runtime.count("run") == 1
        a = _result(g, result, "a", "out")
        b = _result(g, result, "b", "out")
        assert a.snapshot.digest == b.snapshot.digest
        assert [a.cached, b.cached].count(True) == 1

    def test_requested_subset_only(self, store, runtime, workspace) -> None:
        g = build_plan(
            plan(
                action("a", out=run(pull("base"), "mkdir o", exports=["/o"])),
                action("b", out=run(pull("base"), "exit 1")),
                targets=["a"],
            )
        )
        result = _scheduler(store, runtime, workspace).run(g)
        assert result.success
        assert g.outputs[("b", "out")] not in result.results


class TestFailures:
    def test_failure_propagates_to_dependents_only(self, store, runtime, workspace) -> None:
        broken = run(pull("base"), "exit 2", exports=["/o"])
        g = build_plan(
            plan(
                action("build", export=broken, packaged=run(broken, "mkdir p", exports=["/p"])),
                action("docs", site=run(pull("base"), "mkdir site", exports=["/site"])),
            )
        )
        result = _scheduler(store, runtime, workspace).run(g)

        assert not result.success
        origin = _result(g, result, "build", "export")
        assert origin.state == NodeState.FAILED
        assert origin.error_kind == "ScriptExecutionError"

        dependent = _result(g, result, "build", "packaged")
        assert dependent.state == NodeState.FAILED
        assert isinstance(dependent.error, UpstreamFailedError)
        assert dependent.origin == "build.export"
        assert dependent.error_kind == "ScriptExecutionError"
        assert dependent.attempts == 0

        assert _result(g, result, "docs", "site").state == NodeState.DONE
        assert runtime.count("run") == 2

    def test_halt_on_failure_stops_other_branches(self, store, runtime, workspace) -> None:
        slow = run(pull("base"), "sleep 1; mkdir o", exports=["/o"])
        g = build_plan(
            plan(
                action("fail", out=run(pull("base"), "exit 1")),
                action("slow", out=run(slow, "mkdir p", exports=["/p"])),
            )
        )
        result = _scheduler(store, runtime, workspace, max_workers=2, halt_on_failure=True).run(g)

        last = _result(g, result, "slow", "out")
        assert last.state == NodeState.FAILED
        assert isinstance(last.error, CancelledError)
        assert result.results[g.nodes[g.outputs[("slow", "out")]].inputs[0][1]].state == NodeState.DONE

    def test_retries_recover_from_transient_errors(self, store, registry, workspace) -> None:
        flaky = FlakyRuntime(RuntimeConfig(registry=str(registry)), failures=1)
        g = build_plan(plan(action("a", img=pull("base"))))

        failed = _scheduler(store, flaky, workspace).run(g)
        assert isinstance(_result(g, failed, "a", "img").error, ImagePullError)

        flaky.failures = 1
        result = _scheduler(store, flaky, workspace, retries=1).run(g)
        assert result.success
        assert _result(g, result, "a", "img").attempts == 2

    def test_store_failure_is_raised(self, registry, runtime, workspace, tmp_path) -> None:
        broken = BrokenStore(tmp_path / "broken")
        g = build_plan(plan(action("a", img=pull("base"))))
        with pytest.raises(StoreError, match="disk full"):
            _scheduler(broken, runtime, workspace).run(g)


class TestCancellation:
    def test_cancelled_before_start_executes_nothing(self, store, runtime, workspace) -> None:
        g = build_plan(plan(action("a", out=run(pull("base"), "mkdir o", exports=["/o"]))))
        token = CancelToken()
        token.cancel("stop")

        result = _scheduler(store, runtime, workspace).run(g, cancel_token=token)

        assert runtime.calls == []
        assert all(isinstance(r.error, CancelledError) for r in result.results.values())
        assert {r.error.reason for r in result.results.values()} == {"stop"}

    def test_timeout_terminates_running_sandbox(self, store, runtime, workspace) -> None:
        g = build_plan(plan(action("a", out=run(pull("base"), "sleep 20", exports=["/o"]))))
        started = time.monotonic()

        result = _scheduler(store, runtime, workspace).run(g, cancel_token=CancelToken(timeout=0.5))

        assert time.monotonic() - started < 5
        r = _result(g, result, "a", "out")
        assert isinstance(r.error, CancelledError)
        assert r.error.reason == "timeout"

    def test_timeout_kills_background_children(self, store, runtime, workspace) -> None:
        g = build_plan(plan(action("a", out=run(pull("base"), "sleep 20 & sleep 20", exports=["/o"]))))
        started = time.monotonic()

        result = _scheduler(store, runtime, workspace).run(g, cancel_token=CancelToken(timeout=0.5))

        assert time.monotonic() - started < 5
        assert _result(g, result, "a", "out").error.reason == "timeout"

    def test_waiting_after_timeout_does_not_spin(self, store, registry, workspace) -> None:
        runtime = StubbornRuntime(RuntimeConfig(registry=str(registry)))
        g = build_plan(plan(action("a", out=run(pull("base"), "true", exports=["/o"]))))
        cpu = time.thread_time()

        result = _scheduler(store, runtime, workspace).run(g, cancel_token=CancelToken(timeout=0.5))

        assert time.thread_time() - cpu < 0.5
        assert runtime.count("run") == 1
        assert _result(g, result, "a", "out").error.reason == "timeout"

    def test_runtime_usable_after_cancelled_run(self, store, runtime, workspace) -> None:
        g = build_plan(plan(action("a", out=run(pull("base"), "mkdir o", exports=["/o"]))))
        token = CancelToken()
        token.cancel()
        _scheduler(store, runtime, workspace).run(g, cancel_token=token)

        assert _scheduler(store, runtime, workspace).run(g).success


def test_refcounts_are_balanced_after_run(store, runtime, workspace) -> None:
    g = build_plan(
        plan(action("build", export=run(copy(pull("base"), source(".")), "mkdir o", exports=["/o"])))
    )
    result = _scheduler(store, runtime, workspace).run(g, outputs_retained=False)
    assert result.success
    assert all(store.refcount(s.digest) == 0 for s in store.entries())


def test_script_change_reexecutes_only_its_branch(store, runtime, workspace) -> None:
    def make(script: str):
        compiled = run(copy(pull("base"), source(".")), script, exports=["/o"])
        return build_plan(
            plan(
                action("build", export=compiled, packaged=run(compiled, "mkdir p", exports=["/p"])),
                action("docs", site=run(pull("base"), "mkdir o", exports=["/o"])),
            )
        )

    _scheduler(store, runtime, workspace).run(make("mkdir o && echo 1 > o/v"))
    g = make("mkdir o && echo 2 > o/v")
    result = _scheduler(store, runtime, workspace).run(g)

    executed = {g.nodes[n].name for n in result.executed}
    assert executed == {"build.export", "build.packaged"}
    assert g.outputs[("docs", "site")] in result.cache_hits

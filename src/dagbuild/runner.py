# runner.py
from __future__ import annotations

import runpy
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

import structlog

from .cache import ArtifactStore
from .dag import ExecutionPlan, build_plan
from .errors import DagbuildError, WriteTargetError
from .executor import StepExecutor
from .fsutil import inner_path, overlay_tree
from .model import ClientWrite, Plan
from .runtime.base import ContainerRuntime
from .scheduler import CancelToken, NodeState, Scheduler, SchedulerResult

logger = structlog.get_logger()


# ----------------------------------------------------------------------
# Plan loading (local file)
# ----------------------------------------------------------------------

def load_plan(path: str | Path) -> Plan:
    """
    Load a plan from a file.

    .py files must define either:
      - build_plan() -> Plan
      - PLAN = Plan(...)
    .json / .yaml / .yml files hold a plan document (see dagbuild.planfile).
    """
    plan_path = Path(path).expanduser().resolve()
    if not plan_path.exists():
        raise FileNotFoundError(f"Plan file not found: {plan_path}")

    if plan_path.suffix in (".json", ".yaml", ".yml"):
        from .planfile import load_plan_document

        return load_plan_document(plan_path)

    if plan_path.suffix != ".py":
        raise ValueError(f"Plan must be a .py, .json or .yaml file, got: {plan_path.name}")

    module_name = f"dagbuild_plan_{plan_path.stem}"
    globals_dict = runpy.run_path(str(plan_path), run_name=module_name)

    plan = None
    if "build_plan" in globals_dict and callable(globals_dict["build_plan"]):
        plan = globals_dict["build_plan"]()
    elif "PLAN" in globals_dict:
        plan = globals_dict["PLAN"]

    if not isinstance(plan, Plan):
        raise TypeError(
            "Plan file must return/define a Plan. "
            "Define build_plan() -> Plan or PLAN = plan(action(...), ...)."
        )
    return plan


# ----------------------------------------------------------------------
# Reports
# ----------------------------------------------------------------------

@dataclass
class ActionReport:
    name: str
    status: str  # done | failed
    duration: float = 0.0
    cache_hits: int = 0
    cache_misses: int = 0
    origin_step: Optional[str] = None
    error_kind: Optional[str] = None
    error: Optional[BaseException] = None


@dataclass
class WriteResult:
    path: str
    action: str
    field: str
    error: Optional[DagbuildError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RunReport:
    actions: Dict[str, ActionReport] = field(default_factory=dict)
    writes: List[WriteResult] = field(default_factory=list)
    scheduler: Optional[SchedulerResult] = None
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return (
            self.scheduler is not None
            and self.scheduler.success
            and all(w.ok for w in self.writes)
        )

    def first_error(self) -> Optional[BaseException]:
        for a in self.actions.values():
            if a.error is not None:
                return a.error
        for w in self.writes:
            if w.error is not None:
                return w.error
        return None


# ----------------------------------------------------------------------
# Runner
# ----------------------------------------------------------------------

class PlanRunner:
    """
    Top-level driver: build the graph, run the scheduler, write declared
    outputs back to the client filesystem, summarize per action.
    """

    def __init__(
        self,
        store: ArtifactStore,
        runtime: ContainerRuntime,
        *,
        workdir: str | Path = ".",
        max_workers: Optional[int] = None,
        halt_on_failure: bool = False,
        retries: int = 0,
    ):
        self.store = store
        self.runtime = runtime
        self.workdir = Path(workdir).resolve()
        self.max_workers = max_workers
        self.halt_on_failure = halt_on_failure
        self.retries = retries

    def run(
        self,
        plan: Union[Plan, ExecutionPlan],
        *,
        cancel_token: Optional[CancelToken] = None,
    ) -> RunReport:
        """
        Raises GraphError before anything runs and StoreError when the store
        fails mid-run. Step and write failures are reported, not raised.
        """
        graph = plan if isinstance(plan, ExecutionPlan) else build_plan(plan)

        executor = StepExecutor(
            self.store,
            self.runtime,
            workdir=self.workdir,
            client_paths=[w.path for w in graph.writes],
        )
        scheduler = Scheduler(
            executor,
            self.store,
            max_workers=self.max_workers,
            halt_on_failure=self.halt_on_failure,
            retries=self.retries,
        )

        started = time.monotonic()
        logger.info("run.start", actions=len(graph.targets), steps=len(graph.nodes))
        result = scheduler.run(graph, cancel_token=cancel_token)

        report = RunReport(scheduler=result)
        try:
            for w in graph.writes:
                if w.action in graph.targets:
                    report.writes.append(self._write(graph, result, w))
        finally:
            for nid in result.requested:
                r = result.results.get(nid)
                if r is not None and r.snapshot is not None and r.state == NodeState.DONE:
                    self.store.release(r.snapshot.digest)

        report.actions = self._summarize(graph, result)
        report.duration = time.monotonic() - started
        logger.info(
            "run.finish",
            success=report.success,
            executed=len(result.executed),
            cached=len(result.cache_hits),
        )
        return report

    # -----------------------------------------------------------------

    def _write(self, graph: ExecutionPlan, result: SchedulerResult, w: ClientWrite) -> WriteResult:
        out = WriteResult(path=w.path, action=w.action, field=w.field)
        nid = graph.outputs[(w.action, w.field)]
        r = result.results.get(nid)

        if r is None or r.state != NodeState.DONE or r.snapshot is None:
            causes = [r.origin] if r is not None and r.error is not None else []
            out.error = WriteTargetError(path=w.path, action=w.action, causes=causes)
            logger.error("write.skipped", path=w.path, action=w.action)
            return out

        dest = (self.workdir / w.path).resolve()
        scratch = self.store.scratch_dir(prefix="write-")
        try:
            extracted = self.store.materialize(r.snapshot, scratch / "snapshot")
            src = extracted / inner_path(w.subpath) if w.subpath else extracted
            if not src.exists():
                out.error = WriteTargetError(
                    path=w.path,
                    action=w.action,
                    message=f"snapshot has no path {w.subpath}",
                )
                return out
            if src.is_dir():
                overlay_tree(src, dest)
            else:
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, dest)
            logger.info("write.done", path=str(dest), action=w.action, snapshot=r.snapshot.short)
        except OSError as e:
            out.error = WriteTargetError(path=w.path, action=w.action, message=str(e))
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
        return out

    def _summarize(self, graph: ExecutionPlan, result: SchedulerResult) -> Dict[str, ActionReport]:
        reports: Dict[str, ActionReport] = {}
        for name in graph.targets:
            node_ids = graph.reachable(graph.action_nodes(name))
            rs = [result.results[n] for n in node_ids if n in result.results]
            failed = [r for r in rs if r.state == NodeState.FAILED]

            rep = ActionReport(name=name, status="failed" if failed else "done")
            starts = [r.started_at for r in rs if r.started_at is not None]
            ends = [r.finished_at for r in rs if r.finished_at is not None]
            if starts and ends:
                rep.duration = max(ends) - min(starts)
            rep.cache_hits = len([r for r in rs if r.state == NodeState.DONE and r.cached])
            rep.cache_misses = len([r for r in rs if r.state == NodeState.DONE and not r.cached])

            if failed:
                # prefer a node that failed on its own over propagated failures
                own = [r for r in failed if r.origin == r.name]
                first = sorted(own or failed, key=lambda r: r.finished_at or 0.0)[0]
                rep.origin_step = first.origin
                rep.error_kind = first.error_kind
                rep.error = first.error
            reports[name] = rep
        return reports

# scheduler.py
from __future__ import annotations

import os
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

import structlog

from .cache import ArtifactStore
from .dag import ExecutionPlan, StepNode
from .errors import CancelledError, ExecutionError, StoreError, UpstreamFailedError
from .executor import StepExecutor
from .model import Snapshot

logger = structlog.get_logger()


class NodeState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


TERMINAL = (NodeState.DONE, NodeState.FAILED)


@dataclass
class NodeResult:
    node_id: str
    name: str
    state: NodeState = NodeState.PENDING
    snapshot: Optional[Snapshot] = None
    cached: bool = False
    attempts: int = 0
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[BaseException] = None
    # set when another node of this run was already executing the same cache key
    deferred_to: Optional[str] = None

    @property
    def duration(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return self.finished_at - self.started_at

    @property
    def origin(self) -> str:
        """The node whose own failure caused this one to fail."""
        if isinstance(self.error, UpstreamFailedError):
            return self.error.origin
        return self.name

    @property
    def error_kind(self) -> Optional[str]:
        if self.error is None:
            return None
        if isinstance(self.error, UpstreamFailedError):
            return self.error.origin_kind
        return getattr(self.error, "kind", type(self.error).__name__)


@dataclass
class SchedulerResult:
    results: Dict[str, NodeResult] = field(default_factory=dict)
    requested: Set[str] = field(default_factory=set)

    @property
    def success(self) -> bool:
        return all(r.state == NodeState.DONE for r in self.results.values())

    @property
    def executed(self) -> List[str]:
        return [nid for nid, r in self.results.items() if r.state == NodeState.DONE and not r.cached]

    @property
    def cache_hits(self) -> List[str]:
        return [nid for nid, r in self.results.items() if r.state == NodeState.DONE and r.cached]

    def failed(self) -> List[NodeResult]:
        return [r for r in self.results.values() if r.state == NodeState.FAILED]


class CancelToken:
    """
    Run-level cancellation. cancel() may be called from any thread; an
    optional timeout turns into a cancel once the deadline passes.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason: Optional[str] = None
        self.deadline = time.monotonic() + timeout if timeout is not None else None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def add_callback(self, fn: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(fn)
                return
        fn()

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
        logger.warning("run.cancel", reason=reason)
        for fn in callbacks:
            fn()


class Scheduler:
    """
    Dependency-driven scheduler:

    - a node is dispatched once every producer is Done
    - all ready nodes run concurrently, bounded by max_workers
    - the artifact store is consulted first; a hit completes the node
      without executing it
    - nodes whose cache keys collide are executed once; the others are
      parked until that execution finishes and then share its result
    - a failure fails every dependent without executing it; independent
      branches keep going (halt_on_failure stops all new dispatch)
    - the dispatch loop waits on completions, workers never wait on
      other steps
    """

    def __init__(
        self,
        executor: StepExecutor,
        store: ArtifactStore,
        *,
        max_workers: Optional[int] = None,
        halt_on_failure: bool = False,
        retries: int = 0,
    ):
        self.executor = executor
        self.store = store
        self.max_workers = max(1, max_workers or os.cpu_count() or 1)
        self.halt_on_failure = halt_on_failure
        self.retries = max(0, retries)
        # cache key -> node executing it, for the current run
        self._claims: Dict[str, str] = {}
        self._claims_lock = threading.Lock()

    def _claim(self, key: str, node_id: str) -> str:
        """Claim `key` for `node_id`; returns the node that owns it."""
        with self._claims_lock:
            return self._claims.setdefault(key, node_id)

    # -----------------------------------------------------------------
    # worker
    # -----------------------------------------------------------------

    def _run_node(
        self,
        node: StepNode,
        inputs: Dict[str, Snapshot],
        result: NodeResult,
        token: CancelToken,
    ) -> None:
        """Runs on a worker thread. Raises ExecutionError / StoreError."""
        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            result.attempts = attempt
            try:
                prepared = self.executor.prepare(node, inputs)
                hit = self.store.get(prepared.key)
                if hit is not None:
                    logger.info("step.cache_hit", step=node.name, key=prepared.key[:12])
                    result.snapshot = hit
                    result.cached = True
                    return
                owner = self._claim(prepared.key, node.id)
                if owner != node.id:
                    logger.debug("step.deferred", step=node.name, key=prepared.key[:12])
                    result.deferred_to = owner
                    return
                logger.debug("step.cache_miss", step=node.name, key=prepared.key[:12])
                result.snapshot = self.executor.execute(node, inputs, prepared)
                result.cached = False
                return
            except ExecutionError as e:
                if attempt >= attempts or token.cancelled:
                    raise
                logger.warning("step.retry", step=node.name, attempt=attempt, error=e.kind)

    # -----------------------------------------------------------------
    # dispatch loop
    # -----------------------------------------------------------------

    def run(
        self,
        graph: ExecutionPlan,
        requested: Optional[Set[str]] = None,
        *,
        cancel_token: Optional[CancelToken] = None,
        outputs_retained: bool = True,
    ) -> SchedulerResult:
        """
        Execute every node reachable from `requested` (default: the plan's
        requested outputs). Snapshots backing requested nodes stay retained
        in the store when outputs_retained is set; the caller releases them.
        """
        token = cancel_token or CancelToken()
        self.executor.runtime.reset()
        token.add_callback(self.executor.runtime.terminate_all)
        with self._claims_lock:
            self._claims = {}

        requested = set(requested) if requested is not None else graph.requested_nodes()
        scope = graph.reachable(requested)
        results: Dict[str, NodeResult] = {
            nid: NodeResult(node_id=nid, name=graph.nodes[nid].name) for nid in scope
        }
        waiting: Dict[str, int] = {
            nid: len([p for p in graph.nodes[nid].producers() if p in scope]) for nid in scope
        }
        ready: List[str] = sorted(nid for nid, n in waiting.items() if n == 0)
        for nid in ready:
            results[nid].state = NodeState.READY

        in_flight: Dict[Future, str] = {}
        # owner node -> nodes waiting for its result
        parked: Dict[str, List[str]] = {}
        store_error: Optional[StoreError] = None
        halted = False

        def consumers_in_scope(nid: str) -> Set[str]:
            return {c for c in graph.consumers.get(nid, ()) if c in scope}

        def finish(nid: str) -> None:
            # terminal: hand back references this node held on its producers
            for p in graph.nodes[nid].producers():
                pr = results.get(p)
                if pr is not None and pr.state == NodeState.DONE and pr.snapshot is not None:
                    self.store.release(pr.snapshot.digest)

        def fail(nid: str, error: BaseException) -> None:
            r = results[nid]
            r.state = NodeState.FAILED
            r.error = error
            if r.finished_at is None:
                r.finished_at = time.monotonic()
            finish(nid)

        def propagate(origin: str, error: BaseException) -> None:
            origin_name = graph.nodes[origin].name
            for d in sorted(graph.descendants(origin, within=scope)):
                if results[d].state in TERMINAL:
                    continue
                fail(
                    d,
                    UpstreamFailedError(
                        step=graph.nodes[d].name,
                        message=f"dependency {origin_name} failed",
                        origin=origin_name,
                        cause=error,
                    ),
                )
                if d in ready:
                    ready.remove(d)

        def failed(nid: str, error: BaseException) -> None:
            nonlocal halted
            fail(nid, error)
            propagate(nid, error)
            if self.halt_on_failure:
                halted = True
            for p in parked.pop(nid, []):
                settle(p, nid)

        def done(nid: str) -> None:
            r = results[nid]
            r.state = NodeState.DONE
            live = [c for c in consumers_in_scope(nid) if results[c].state not in TERMINAL]
            retain = len(live) + (1 if outputs_retained and nid in requested else 0)
            self.store.retain(r.snapshot.digest, retain)
            finish(nid)

            # unlock dependents
            for c in sorted(live):
                waiting[c] -= 1
                if waiting[c] == 0 and results[c].state == NodeState.PENDING:
                    results[c].state = NodeState.READY
                    ready.append(c)

            for p in parked.pop(nid, []):
                settle(p, nid)

        def settle(nid: str, owner: str) -> None:
            # a node whose key was being executed by `owner`
            o = results[owner]
            r = results[nid]
            if o.state == NodeState.DONE:
                r.snapshot = o.snapshot
                r.cached = True
                r.finished_at = time.monotonic()
                logger.info("step.cache_hit", step=r.name, key=o.snapshot.short, shared_with=o.name)
                done(nid)
            elif o.state == NodeState.FAILED:
                r.finished_at = time.monotonic()
                failed(nid, o.error)
            else:
                parked.setdefault(owner, []).append(nid)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="dagbuild") as pool:
            while ready or in_flight:
                if token.expired():
                    token.cancel("timeout")

                # schedule all currently ready
                while ready and not token.cancelled and not halted:
                    nid = ready.pop(0)
                    node = graph.nodes[nid]
                    r = results[nid]
                    inputs = {slot: results[p].snapshot for slot, p in node.inputs}
                    r.state = NodeState.RUNNING
                    r.started_at = time.monotonic()
                    logger.debug("step.dispatch", step=node.name, kind=node.kind)
                    fut = pool.submit(self._run_node, node, inputs, r, token)
                    in_flight[fut] = nid

                if not in_flight:
                    break

                # wait for one completion, then loop to schedule newly-ready nodes;
                # once cancelled only completions matter, so block on them
                timeout = None if token.cancelled else token.remaining()
                finished, _ = wait(list(in_flight), timeout=timeout, return_when=FIRST_COMPLETED)
                if not finished:
                    # deadline reached; terminated sandboxes complete their futures
                    token.cancel("timeout")
                    continue

                for fut in finished:
                    nid = in_flight.pop(fut)
                    r = results[nid]
                    r.finished_at = time.monotonic()
                    try:
                        fut.result()
                    except StoreError as e:
                        logger.error("store.failure", step=r.name, error=str(e))
                        store_error = store_error or e
                        failed(nid, e)
                        token.cancel("store failure")
                        continue
                    except ExecutionError as e:
                        if token.cancelled:
                            e = CancelledError(step=r.name, message=str(e), reason=token.reason or "cancelled")
                        logger.error("step.failed", step=r.name, error=e.kind)
                        failed(nid, e)
                        continue
                    except Exception as e:
                        logger.exception("step.crashed", step=r.name)
                        failed(nid, e)
                        continue

                    if r.deferred_to is not None:
                        r.finished_at = None
                        settle(nid, r.deferred_to)
                    else:
                        done(nid)

        # anything never dispatched (cancelled or halted) or still parked
        reason = token.reason if token.cancelled else "halted after failure"
        for nid, r in results.items():
            if r.state not in TERMINAL:
                fail(nid, CancelledError(step=r.name, message="not executed", reason=reason or "cancelled"))

        if store_error is not None:
            raise store_error

        return SchedulerResult(results=results, requested=requested)

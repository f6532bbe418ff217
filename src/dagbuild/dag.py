# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Set, Tuple

from .cache import stable_hash
from .errors import CycleError, UnresolvedReferenceError
from .model import STEP_TYPES, ClientWrite, Plan, Ref, step_slots

WHITE, GRAY, BLACK = 0, 1, 2


class Edge(NamedTuple):
    producer: str
    consumer: str
    slot: str


@dataclass
class StepNode:
    """
    One deduplicated step of the execution graph.

    inputs: (slot, producer node id) pairs, in slot order.
    labels: every "action.field" (or nested "action.field/slot") that
    resolved to this node; the first one is used for display.
    """
    id: str
    kind: str
    params: Dict[str, Any]
    inputs: Tuple[Tuple[str, str], ...] = ()
    labels: List[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        if self.labels:
            return self.labels[0]
        return f"{self.kind}:{self.id[:8]}"

    def producers(self) -> List[str]:
        # distinct, in slot order
        seen: List[str] = []
        for _slot, producer in self.inputs:
            if producer not in seen:
                seen.append(producer)
        return seen


@dataclass
class ExecutionPlan:
    nodes: Dict[str, StepNode]
    edges: Set[Edge]
    outputs: Dict[Tuple[str, str], str]
    writes: Tuple[ClientWrite, ...] = ()
    targets: Tuple[str, ...] = ()
    consumers: Dict[str, Set[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.consumers:
            self.consumers = {nid: set() for nid in self.nodes}
            for e in self.edges:
                self.consumers[e.producer].add(e.consumer)

    def action_nodes(self, action: str) -> List[str]:
        return [nid for (a, _f), nid in self.outputs.items() if a == action]

    def requested_nodes(self) -> Set[str]:
        out: Set[str] = set()
        for a in self.targets:
            out.update(self.action_nodes(a))
        return out

    def reachable(self, roots: Iterable[str]) -> Set[str]:
        """roots plus everything they transitively depend on."""
        seen: Set[str] = set()
        stack = list(roots)
        while stack:
            nid = stack.pop()
            if nid in seen:
                continue
            seen.add(nid)
            stack.extend(self.nodes[nid].producers())
        return seen

    def descendants(self, node_id: str, within: Optional[Set[str]] = None) -> Set[str]:
        seen: Set[str] = set()
        q = deque(self.consumers.get(node_id, ()))
        while q:
            nid = q.popleft()
            if nid in seen or (within is not None and nid not in within):
                continue
            seen.add(nid)
            q.extend(self.consumers.get(nid, ()))
        return seen


# ---------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------

class _Builder:
    def __init__(self, plan: Plan):
        self.plan = plan
        self.nodes: Dict[str, StepNode] = {}
        self.edges: Set[Edge] = set()
        self.color: Dict[Tuple[str, str], int] = {}
        self.stack: List[Tuple[str, str]] = []
        self.memo: Dict[Tuple[str, str], str] = {}

    def resolve_field(self, action_name: str, field_name: str, referrer: Optional[str] = None) -> str:
        key = (action_name, field_name)
        color = self.color.get(key, WHITE)
        if color == BLACK:
            return self.memo[key]
        if color == GRAY:
            start = self.stack.index(key)
            chain = [f"{a}.{f}" for a, f in self.stack[start:]] + [f"{action_name}.{field_name}"]
            raise CycleError(chain=chain)

        reference = f"{action_name}.{field_name}"
        where = f" (referenced from {referrer})" if referrer else ""
        action = self.plan.actions.get(action_name)
        if action is None:
            raise UnresolvedReferenceError(
                reference=reference,
                message=f"unknown action '{action_name}'{where}. Known actions: {sorted(self.plan.actions)}",
            )
        if field_name not in action.fields:
            raise UnresolvedReferenceError(
                reference=reference,
                message=f"action '{action_name}' has no field '{field_name}'{where}. "
                f"Known fields: {sorted(action.fields)}",
            )
        value = action.fields[field_name]
        if not isinstance(value, STEP_TYPES + (Ref,)):
            raise UnresolvedReferenceError(
                reference=reference,
                message=f"field holds a literal ({type(value).__name__}), not a step{where}",
            )

        self.color[key] = GRAY
        self.stack.append(key)
        node_id = self.resolve_value(value, reference)
        self.stack.pop()
        self.color[key] = BLACK
        self.memo[key] = node_id
        return node_id

    def resolve_value(self, value: Any, label: str) -> str:
        if isinstance(value, Ref):
            return self.resolve_field(value.action, value.field, referrer=label)
        if not isinstance(value, STEP_TYPES):
            raise UnresolvedReferenceError(
                reference=label,
                message=f"expected a step or a reference, got {type(value).__name__}",
            )

        inputs = tuple((slot, self.resolve_value(inner, f"{label}/{slot}")) for slot, inner in step_slots(value))
        params = value.params()
        node_id = stable_hash({"kind": value.kind, "params": params, "inputs": [list(i) for i in inputs]})

        node = self.nodes.get(node_id)
        if node is None:
            node = self.nodes[node_id] = StepNode(id=node_id, kind=value.kind, params=params, inputs=inputs)
        if label not in node.labels:
            node.labels.append(label)
        for slot, producer in inputs:
            self.edges.add(Edge(producer=producer, consumer=node_id, slot=slot))
        return node_id


def build_plan(plan: Plan) -> ExecutionPlan:
    """
    Resolve every step field of every action into a deduplicated DAG.

    Raises:
      CycleError               a reference chain leads back to itself
      UnresolvedReferenceError a reference, target or write that does not resolve
    """
    b = _Builder(plan)
    outputs: Dict[Tuple[str, str], str] = {}

    for action in plan.actions.values():
        for field_name in action.step_fields():
            outputs[(action.name, field_name)] = b.resolve_field(action.name, field_name)

    targets = plan.requested()
    for t in targets:
        if t not in plan.actions:
            raise UnresolvedReferenceError(
                reference=t,
                message=f"requested action does not exist. Known actions: {sorted(plan.actions)}",
            )

    for w in plan.writes:
        if (w.action, w.field) not in outputs:
            # raises with the precise reason
            b.resolve_field(w.action, w.field, referrer=f"write {w.path}")

    return ExecutionPlan(
        nodes=b.nodes,
        edges=b.edges,
        outputs=outputs,
        writes=tuple(plan.writes),
        targets=tuple(targets),
    )


def topo_levels(graph: ExecutionPlan, node_ids: Optional[Iterable[str]] = None) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel.
    """
    names = set(node_ids) if node_ids is not None else set(graph.nodes)
    indeg: Dict[str, int] = {
        n: len([p for p in graph.nodes[n].producers() if p in names]) for n in names
    }
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(graph.consumers.get(node, set())):
                if child not in names:
                    continue
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise CycleError(chain=[graph.nodes[n].name for n in remaining])

    return levels

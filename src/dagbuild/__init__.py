from .dsl import action, copy, plan, pull, ref, run, source, write
from .model import Action, ClientWrite, Copy, Plan, Pull, Ref, Run, Snapshot, Source
from .runner import PlanRunner, RunReport, load_plan

__all__ = [
    "action", "copy", "plan", "pull", "ref", "run", "source", "write",
    "Action", "ClientWrite", "Copy", "Plan", "Pull", "Ref", "Run", "Snapshot", "Source",
    "PlanRunner", "RunReport", "load_plan",
]

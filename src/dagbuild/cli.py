# cli.py
from __future__ import annotations

import os
import re
import signal
import sys
from pathlib import Path
import click

from .cache import ArtifactStore
from .dag import build_plan, topo_levels
from .errors import GraphError, StoreError
from .log import configure_logging
from .model import Plan
from .runner import PlanRunner, load_plan
from .runtime import RUNTIMES, RuntimeConfig, create_runtime
from .scheduler import CancelToken
from .settings import Settings
from .ui.console import Console, get_console, set_console

EXIT_FAILURE = 1
EXIT_PLAN_ERROR = 2
EXIT_INTERRUPTED = 130

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*$")
_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600}


def parse_duration(value: str) -> float:
    """
    "90" / "90s" -> 90.0, "5m" -> 300.0, "1h" -> 3600.0
    """
    m = _DURATION_RE.match(value)
    if not m:
        raise ValueError(f"invalid duration {value!r} (expected e.g. 30, 30s, 5m, 1h)")
    return float(m.group(1)) * _UNITS[m.group(2)]


def _duration_option(ctx, param, value):
    if value is None:
        return None
    try:
        return parse_duration(value)
    except ValueError as e:
        raise click.BadParameter(str(e))


def _load_or_exit(plan_file: str):
    console = get_console()
    try:
        plan = load_plan(plan_file)
        return plan, build_plan(plan)
    except GraphError as e:
        console.print_error("Invalid plan", str(e))
    except (FileNotFoundError, ValueError, TypeError) as e:
        console.print_error(
            "Failed to load plan",
            f"Could not load plan from {plan_file}",
            details=[str(e)],
            suggestion="A plan file is a .py file defining build_plan() or PLAN, or a .json/.yaml plan document.",
        )
    sys.exit(EXIT_PLAN_ERROR)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """dagbuild: content-addressed, parallel build plan runner."""
    console = Console(debug=debug)
    set_console(console)
    configure_logging(debug)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = Settings.from_env()


@cli.command()
@click.argument("plan_file", type=click.Path(dir_okay=False))
@click.option("--concurrency", default=None, type=click.IntRange(min=1), help="Max steps running at once (default: CPU count)")
@click.option("--timeout", default=None, callback=_duration_option, help="Cancel the run after this long (e.g. 90, 30s, 5m, 1h)")
@click.option("--store-dir", default=None, help="Artifact store directory")
@click.option("--runtime", "runtime_name", default=None, type=click.Choice(sorted(RUNTIMES)), help="Container runtime")
@click.option("--registry", default=None, help="Image registry (a directory for the local runtime)")
@click.option("--target", "targets", multiple=True, help="Action to build (repeatable; default: all)")
@click.option("--retries", default=None, type=click.IntRange(min=0), help="Retries per failed step")
@click.option("--halt-on-failure/--keep-going", default=False, show_default=True, help="Stop dispatching every branch after the first failure")
@click.pass_context
def run(ctx, plan_file, concurrency, timeout, store_dir, runtime_name, registry, targets, retries, halt_on_failure):
    """Run a build plan."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]

    plan, graph = _load_or_exit(plan_file)
    if targets:
        unknown = [t for t in targets if t not in plan.actions]
        if unknown:
            console.print_error(
                "Unknown target",
                f"Plan has no action(s): {', '.join(unknown)}",
                details=[f"Known actions: {', '.join(sorted(plan.actions))}"],
            )
            sys.exit(EXIT_PLAN_ERROR)
        graph = build_plan(Plan(actions=plan.actions, writes=plan.writes, targets=tuple(targets)))

    workers = concurrency or settings.concurrency or os.cpu_count() or 1
    runtime_name = runtime_name or settings.runtime
    config = RuntimeConfig(
        registry=registry if registry is not None else settings.registry,
        username=settings.registry_user,
        password=settings.registry_password,
    )

    token = CancelToken(timeout=timeout)

    def _on_sigint(signum, frame):
        token.cancel("interrupted")

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        store = ArtifactStore(store_dir or settings.store_dir)
        runtime = create_runtime(runtime_name, config)
        runner = PlanRunner(
            store,
            runtime,
            workdir=Path("."),
            max_workers=workers,
            halt_on_failure=halt_on_failure,
            retries=retries if retries is not None else settings.retries,
        )

        console.print_run_started(
            plan_file=Path(plan_file).name,
            action_count=len(graph.targets),
            step_count=len(graph.reachable(graph.requested_nodes())),
            runtime=runtime_name,
            concurrency=workers,
        )
        console.print_debug(f"store: {store.root}")
        console.print_debug(f"registry: {config.registry or '(runtime default)'}")
        if timeout is not None:
            console.print_debug(f"timeout: {timeout:g}s")

        report = runner.run(graph, cancel_token=token)
        console.print_results(report)

        if token.cancelled and token.reason == "interrupted":
            console.print_info("\nInterrupted by user")
            sys.exit(EXIT_INTERRUPTED)
        if not report.success:
            err = report.first_error()
            kind = getattr(err, "kind", type(err).__name__) if err is not None else "unknown"
            console.print_error(f"Run failed: {kind}", str(err) if err is not None else "")
            sys.exit(EXIT_FAILURE)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except StoreError as e:
        console.print_error(f"Run failed: {e.kind}", str(e))
        sys.exit(EXIT_FAILURE)
    except GraphError as e:
        console.print_error("Invalid plan", str(e))
        sys.exit(EXIT_PLAN_ERROR)
    except ValueError as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILURE)
    finally:
        signal.signal(signal.SIGINT, previous)


@cli.command()
@click.argument("plan_file", type=click.Path(dir_okay=False))
def graph(plan_file):
    """Print the deduplicated step graph of a plan, stage by stage."""
    console = get_console()
    _plan, g = _load_or_exit(plan_file)
    levels = topo_levels(g, g.reachable(g.requested_nodes()))
    console.print_header(f"{len(g.nodes)} steps, {len(g.edges)} edges")
    for i, level in enumerate(levels, start=1):
        console.print_stage(i, [f"{g.nodes[n].name} [{g.nodes[n].kind}] {n[:12]}" for n in level])


@cli.group()
@click.option("--store-dir", default=None, help="Artifact store directory")
@click.pass_context
def cache(ctx, store_dir):
    """Inspect or prune the artifact store."""
    settings: Settings = ctx.obj["settings"]
    ctx.obj["store_dir"] = store_dir or settings.store_dir


def _open_store(ctx) -> ArtifactStore:
    try:
        return ArtifactStore(ctx.obj["store_dir"])
    except StoreError as e:
        get_console().print_error("Cannot open store", str(e))
        sys.exit(EXIT_FAILURE)


@cache.command("ls")
@click.pass_context
def cache_ls(ctx):
    """List stored snapshots, newest first."""
    store = _open_store(ctx)
    get_console().print_snapshots(store.entries())


@cache.command("prune")
@click.option("--keep", default=50, show_default=True, type=click.IntRange(min=0), help="Snapshots to keep")
@click.pass_context
def cache_prune(ctx, keep: int):
    """Delete all but the newest KEEP snapshots."""
    store = _open_store(ctx)
    removed = store.prune(keep=keep)
    store.clear_scratch()
    get_console().print_info(f"Removed {len(removed)} snapshot(s)")


if __name__ == "__main__":
    cli()

"""Console output formatting utilities for dagbuild."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, Iterable, List, Optional

if TYPE_CHECKING:
    from ..model import Snapshot
    from ..runner import RunReport


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(
        self,
        plan_file: str,
        action_count: int,
        step_count: int,
        runtime: str,
        concurrency: int,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Plan: {plan_file}")
        print(f"Actions: {action_count}")
        print(f"Steps: {step_count}")
        print(f"Runtime: {runtime} (concurrency {concurrency})")
        print()

    def print_stage(self, index: int, names: Iterable[str]) -> None:
        print(f"STAGE {index}:")
        for name in names:
            print(f"  {name}")

    def print_results(self, report: "RunReport") -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for name, a in report.actions.items():
            status_display = "SUCCESS" if a.status == "done" else a.status.upper()
            line = f"  {name}: {status_display} ({a.duration:.1f}s, cached {a.cache_hits}, executed {a.cache_misses})"
            print(line)
            if a.origin_step:
                print(f"    failed at {a.origin_step}: {a.error_kind}")
        for w in report.writes:
            if w.ok:
                print(f"  write {w.path}: OK")
            else:
                print(f"  write {w.path}: FAILED ({w.error.kind})")
        print(f"\nDuration: {report.duration:.1f}s")

    def print_snapshots(self, snapshots: List["Snapshot"]) -> None:
        if not snapshots:
            print("(store is empty)")
            return
        for s in snapshots:
            kind = s.manifest.get("kind", "?")
            step = s.manifest.get("step", "")
            print(f"{s.short}  {kind:<6}  {step}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(exc)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console

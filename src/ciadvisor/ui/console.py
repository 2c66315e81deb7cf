"""Console output formatting utilities for ciadvisor."""

from __future__ import annotations

import json
import sys
from typing import Any, Optional


def _minutes(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds}s"
    return f"{seconds / 60:.1f}min"


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

    def print_json(self, data: Any) -> None:
        """Print machine-readable output."""
        print(json.dumps(data, indent=2, sort_keys=False, ensure_ascii=False))

    def print_report(self, report) -> None:
        """
        Print one analysis report.

        Args:
            report: engine.Report
        """
        print(f"\nANALYSIS: {report.path or '<stdin>'}")
        print(f"Score: {report.score}/100")
        if report.error:
            print(f"Error: {report.error}")
            return
        for name, sub in report.sub_scores.items():
            suffix = f" (skipped: {sub.reason})" if sub.skipped else ""
            print(f"  {name}: {sub.score}{suffix}")
        if report.plan is not None and report.plan.waves:
            print("Waves:")
            for i, wave in enumerate(report.plan.waves):
                print(f"  {i}: {', '.join(wave)}")
            if report.plan.unschedulable:
                print(f"Unschedulable: {', '.join(report.plan.unschedulable)}")

        self.print_header(f"FINDINGS ({len(report.findings)})")
        for f in report.findings:
            marker = " [degraded]" if f.degraded else ""
            print(f"  [{f.severity.value.upper()}] {f.kind.value}: {f.title}{marker}")
            if self.debug:
                print(f"      {f.description}")
        self.print_recommendations(report.recommendations)

    def print_recommendations(self, recommendations) -> None:
        """Print ranked recommendations with their ids."""
        self.print_header(f"RECOMMENDATIONS ({len(recommendations)})")
        if not recommendations:
            print("  none")
            return
        for r in recommendations:
            saving = f", saves ~{_minutes(r.estimated_time_saving)}" if r.estimated_time_saving else ""
            fix = "" if r.applicable else " (manual)"
            print(f"  {r.id}")
            print(f"      {r.priority.value}{saving}{fix}: {r.title}")

    def print_plan(self, plan) -> None:
        """
        Print a coordination plan, including every available resolution of
        unresolved conflicts.

        Args:
            plan: coordination.CoordinationPlan
        """
        print("\nCOORDINATION PLAN")
        print(f"Resolved: {'yes' if plan.resolved else 'no'}")
        print(f"Order: {' -> '.join(plan.execution_order)}")
        for p in plan.pipelines:
            print(f"  {p.id}: {p.display_name} -> {p.output_path}")
        if plan.edges:
            self.print_header("TRIGGERS")
            for e in plan.edges:
                print(f"  {e.upstream} -> {e.downstream} (on {e.condition})")
        if plan.conflicts:
            self.print_header("CONFLICTS")
            for c in plan.conflicts:
                state = f"resolved: {c.applied}" if c.applied else "unresolved"
                print(f"  {c.id} [{state}] {c.description}")
                if not c.applied:
                    for r in c.resolutions:
                        auto = " (automatic)" if r.automatic else ""
                        print(f"      --resolve '{c.id}={r.action}'{auto}: {r.description}")
        if plan.shared_secrets:
            print(f"Shared secrets: {', '.join(plan.shared_secrets)}")
        if plan.shared_variables:
            shared = ", ".join(f"{k}={v}" for k, v in plan.shared_variables.items())
            print(f"Shared variables: {shared}")
        for w in plan.warnings:
            print(f"WARNING: {w}")
        for f in plan.cross_pipeline:
            print(f"  [{f.severity.value.upper()}] {f.title} (~{_minutes(f.estimated_time_saving)})")

    def print_batch(self, result) -> None:
        """Print final results summary of a scan."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for path, score in result.scores.items():
            cached = " (cached)" if path in result.cached else ""
            print(f"  {path}: {score}/100{cached}")
        for path, error in sorted(result.failures.items()):
            print(f"  {path}: FAILED ({error.splitlines()[0] if error else 'unknown error'})")
        if result.cancelled:
            print(f"Cancelled; {len(result.skipped)} file(s) not analysed")

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

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
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

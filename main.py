"""MCP server exposing planloom plan tracking tools."""

from __future__ import annotations

from typing import Any, Dict, Optional

from mcp.server.fastmcp import FastMCP

from planloom.config import Settings
from planloom.plan_logging import setup_logging
from planloom.status import render_status
from planloom.storage import read_text_if_exists
from planloom.workflow import PlanContext, PlanManager

mcp = FastMCP("planloom")

settings = Settings.from_env()
manager = PlanManager(PlanContext(), settings)


@mcp.tool()
def plan_status(path: Optional[str] = None) -> Dict[str, Any]:
    """Summarize a plan: status, progress, current step, ready steps, blockers and issues.
    The plan directory defaults to PLANLOOM_PLAN_PATH, then the working directory."""

    return manager.plan_status(path)


@mcp.tool()
def list_steps(path: Optional[str] = None) -> Dict[str, Any]:
    """List every step with its status, dates, notes and declared dependencies."""

    return manager.list_steps(path)


@mcp.tool()
def step_start(step: int, path: Optional[str] = None) -> Dict[str, Any]:
    """Start a pending or blocked step and make it the current step.
    Dependencies are not enforced; check ready_steps first to follow the suggested order."""

    return manager.start_step(step, path)


@mcp.tool()
def step_complete(step: int, notes: Optional[str] = None, path: Optional[str] = None) -> Dict[str, Any]:
    """Mark a step completed, optionally recording notes, and advance to the next ready step."""

    return manager.complete_step(step, notes=notes, path=path)


@mcp.tool()
def step_block(step: int, reason: str, severity: str = "medium", path: Optional[str] = None) -> Dict[str, Any]:
    """Mark a step blocked and record the reason as a plan blocker (severity: high, medium or low)."""

    return manager.block_step(step, reason, severity=severity, path=path)


@mcp.tool()
def step_unblock(step: int, path: Optional[str] = None) -> Dict[str, Any]:
    """Resolve a blocked step; it resumes in progress if it had been started, otherwise returns to pending."""

    return manager.unblock_step(step, path)


@mcp.tool()
def step_skip(step: int, reason: Optional[str] = None, path: Optional[str] = None) -> Dict[str, Any]:
    """Skip a step. Skipped steps satisfy dependencies and count as done for plan completion."""

    return manager.skip_step(step, reason=reason, path=path)


@mcp.tool()
def step_fail(step: int, reason: Optional[str] = None, path: Optional[str] = None) -> Dict[str, Any]:
    """Mark a step failed and record the reason as a plan issue."""

    return manager.fail_step(step, reason=reason, path=path)


@mcp.tool()
def step_add(
    title: str,
    position: Optional[int] = None,
    after: Optional[int] = None,
    description: Optional[str] = None,
    path: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a new step file. Insert at `position`, after step `after`, or append when neither is given.
    Later step files are renumbered."""

    return manager.insert_step(title, position=position, after=after, description=description, path=path)


@mcp.tool()
def step_remove(step: int, path: Optional[str] = None) -> Dict[str, Any]:
    """Delete a step file and renumber the steps after it."""

    return manager.remove_step(step, path)


@mcp.tool()
def execution_order(path: Optional[str] = None) -> Dict[str, Any]:
    """Compute a dependency-respecting order, grouped into levels of steps that can run side by side."""

    return manager.compute_execution_order(path)


@mcp.tool()
def critical_path(path: Optional[str] = None) -> Dict[str, Any]:
    """Find a longest chain of dependent steps through the plan."""

    return manager.find_critical_path(path)


@mcp.tool()
def ready_steps(path: Optional[str] = None) -> Dict[str, Any]:
    """List pending steps whose dependencies are all completed or skipped."""

    return manager.get_ready_steps(path)


@mcp.tool()
def dependency_chain(step: int, path: Optional[str] = None) -> Dict[str, Any]:
    """Show a step's direct dependencies, all transitive dependencies and the steps it blocks."""

    return manager.get_dependency_chain(step, path)


@mcp.tool()
def validate_dependencies(path: Optional[str] = None) -> Dict[str, Any]:
    """Check for circular dependencies and references to missing steps, plus long-chain and bottleneck warnings."""

    return manager.validate_dependencies(path)


@mcp.resource("planloom://status")
def resource_status() -> str:
    """STATUS.md for the configured plan, rendered from its current state."""

    try:
        plan = manager.get_plan(refresh=True)
    except FileNotFoundError:
        return "No plan directory found. Set PLANLOOM_PLAN_PATH or start the server inside a plan directory."

    existing = read_text_if_exists(plan.status_path)
    return render_status(plan, existing, preserve_notes=settings.preserve_notes)


def main() -> None:
    setup_logging(settings.log_level, settings.log_file)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()

"""Plan operations for the protocol server and other front ends.

:class:`PlanManager` wraps the engine in JSON-ready results. Every mutation
is a transaction: take the plan lock, reload the plan from disk, apply the
change, write STATUS.md atomically, release the lock and refresh the cache.
Concurrent writers in other processes therefore never overwrite each
other's updates.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from .config import Settings
from .errors import (
    InvalidPositionError,
    InvalidTransitionError,
    PlanError,
    PlanNotFoundError,
    StepNotFoundError,
)
from .graph import (
    build_dependency_graph,
    compute_execution_order,
    find_critical_path,
    get_blocked_steps,
    get_dependency_chain,
    get_ready_steps,
    validate_dependencies,
)
from .loader import load_plan, write_status
from .models import STATUS_FILENAME, Plan, Step, TaskStatus
from .plan_logging import (
    log_error_with_context,
    log_operation,
    log_performance,
    log_validation_result,
)
from .status import format_date
from .steps import insert_step, remove_step
from .storage import PlanLock
from .transitions import (
    block_step,
    complete_step,
    fail_step,
    skip_step,
    start_step,
    unblock_step,
)

logger = logging.getLogger("planloom.workflow")

T = TypeVar("T")


class PlanContext:
    """Owns the in-memory plan cache, keyed by resolved plan directory."""

    def __init__(self):
        self._plans: Dict[Path, Plan] = {}

    def __contains__(self, path: Path) -> bool:
        return Path(path).resolve() in self._plans

    def __len__(self) -> int:
        return len(self._plans)

    def get_plan(self, path: Path, refresh: bool = False) -> Plan:
        """Return the cached plan for ``path``, loading it when absent or ``refresh`` is set."""
        key = Path(path).resolve()
        if refresh or key not in self._plans:
            self._plans[key] = load_plan(key)
        return self._plans[key]

    def store(self, plan: Plan) -> None:
        self._plans[plan.path.resolve()] = plan

    def invalidate(self, path: Optional[Path] = None) -> None:
        """Drop one cached plan, or all of them when ``path`` is None."""
        if path is None:
            self._plans.clear()
        else:
            self._plans.pop(Path(path).resolve(), None)


def _error_result(error: Exception, suggestion: str, **extra: Any) -> Dict[str, Any]:
    return {
        "error": str(error),
        "error_type": type(error).__name__,
        "suggestion": suggestion,
        **extra,
    }


def _suggestion_for(error: Exception) -> Tuple[str, Optional[str]]:
    """Return a hint and the tool to try next for a failed operation."""
    if isinstance(error, StepNotFoundError):
        return "Check the step number against the plan's steps", "list_steps"
    if isinstance(error, InvalidTransitionError):
        allowed = ", ".join(error.allowed)
        return (
            f"Step {error.step_number} is '{error.current}'; {error.operation} requires one of: {allowed}",
            "plan_status",
        )
    if isinstance(error, PlanNotFoundError):
        return "Pass an existing plan directory or set PLANLOOM_PLAN_PATH", None
    if isinstance(error, InvalidPositionError):
        return "Choose a position between 1 and the number of steps plus one", "list_steps"
    return "Check the input parameters", None


def _renumber_warning(stale_dependents: List[int]) -> str:
    warning = "Later steps were renumbered; dependency declarations in step files were not updated"
    if stale_dependents:
        warning += f". Review the dependencies of steps: {', '.join(str(n) for n in stale_dependents)}"
    return warning


def _ready_numbers(plan: Plan) -> List[int]:
    return [step.number for step in get_ready_steps(plan)]


def _step_summary(step: Step) -> Dict[str, Any]:
    return {
        "number": step.number,
        "title": step.title,
        "status": step.status.value,
        "emoji": step.status.emoji,
        "dependencies": list(step.dependencies),
        "started": format_date(step.started_at),
        "completed": format_date(step.completed_at),
        "notes": step.notes,
    }


class PlanManager:
    """Operations on plan directories, returning JSON-ready dictionaries."""

    def __init__(self, context: Optional[PlanContext] = None, settings: Optional[Settings] = None):
        self.context = context or PlanContext()
        self.settings = settings or Settings()

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def resolve_path(self, path: Optional[str] = None) -> Path:
        plan_path = self.settings.resolve_plan_path(path)
        if not plan_path.is_dir():
            raise PlanNotFoundError(f"Plan directory not found: {plan_path}")
        return plan_path

    def get_plan(self, path: Optional[str] = None, refresh: bool = False) -> Plan:
        return self.context.get_plan(self.resolve_path(path), refresh=refresh)

    def transaction(self, path: Optional[str], operation: str, apply: Callable[[Plan], T]) -> Tuple[Plan, T]:
        """Apply ``apply`` to a freshly loaded plan under the plan lock and persist it."""
        plan_path = self.resolve_path(path)
        with log_operation(operation, plan_path=str(plan_path)):
            with PlanLock(plan_path / STATUS_FILENAME, timeout=self.settings.lock_timeout):
                plan = load_plan(plan_path)
                result = apply(plan)
                write_status(plan, preserve_notes=self.settings.preserve_notes)
        self.context.store(plan)
        return plan, result

    def _run(self, operation: str, func: Callable[[], Dict[str, Any]], **context: Any) -> Dict[str, Any]:
        """Run ``func``; plan errors become error results, I/O errors propagate."""
        try:
            return func()
        except (PlanError, ValueError) as e:
            logger.warning(f"{operation} failed: {e}")
            suggestion, next_step = _suggestion_for(e)
            return _error_result(e, suggestion, next_suggested_step=next_step)
        except OSError as e:
            log_error_with_context(e, {"operation": operation, **context})
            raise

    def _transition_result(self, plan: Plan, step: Step, message: str) -> Dict[str, Any]:
        ready = _ready_numbers(plan)
        return {
            "step": step.to_dict(),
            "plan_status": plan.state.status.value,
            "progress": plan.state.progress,
            "current_step": plan.state.current_step,
            "last_completed_step": plan.state.last_completed_step,
            "ready_steps": ready,
            "status_path": str(plan.status_path),
            "next_suggested_step": "step_start" if ready else "plan_status",
            "message": message,
        }

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    @log_performance("load_plan_summary")
    def load_plan(self, path: Optional[str] = None, refresh: bool = True) -> Dict[str, Any]:
        def run() -> Dict[str, Any]:
            plan = self.get_plan(path, refresh=refresh)
            return {
                "plan": plan.to_dict(),
                "ready_steps": _ready_numbers(plan),
                "message": f"Loaded '{plan.metadata.name}' ({len(plan.steps)} steps)",
            }
        return self._run("load_plan", run, path=path)

    def plan_status(self, path: Optional[str] = None, refresh: bool = True) -> Dict[str, Any]:
        """Summarize progress, blockers, issues and dependency health."""
        def run() -> Dict[str, Any]:
            plan = self.get_plan(path, refresh=refresh)
            graph = build_dependency_graph(plan)
            validation = validate_dependencies(plan, graph)
            state = plan.state
            counts = {status.value: 0 for status in TaskStatus}
            for step in plan.steps:
                counts[step.status.value] += 1
            return {
                "name": plan.metadata.name,
                "path": str(plan.path),
                "status": state.status.value,
                "progress": state.progress,
                "total_steps": len(plan.steps),
                "counts": counts,
                "current_step": state.current_step,
                "last_completed_step": state.last_completed_step,
                "started": format_date(state.started_at),
                "last_updated": format_date(state.last_updated_at),
                "ready_steps": [step.number for step in get_ready_steps(plan, graph)],
                "blockers": [blocker.to_dict() for blocker in state.active_blockers()],
                "issues": [issue.to_dict() for issue in state.open_issues()],
                "dependencies_valid": validation.valid,
                "dependency_errors": [error.message for error in validation.errors],
            }
        return self._run("plan_status", run, path=path)

    def list_steps(self, path: Optional[str] = None) -> Dict[str, Any]:
        def run() -> Dict[str, Any]:
            plan = self.get_plan(path)
            return {"steps": [_step_summary(step) for step in plan.steps], "total": len(plan.steps)}
        return self._run("list_steps", run, path=path)

    def compute_execution_order(self, path: Optional[str] = None) -> Dict[str, Any]:
        def run() -> Dict[str, Any]:
            plan = self.get_plan(path)
            graph = build_dependency_graph(plan)
            result = compute_execution_order(graph).to_dict()
            result["has_circular"] = graph.has_circular
            if graph.has_circular:
                result["message"] = "Circular dependencies prevent a valid execution order"
                result["circular_chains"] = graph.circular_chains
            return result
        return self._run("compute_execution_order", run, path=path)

    def find_critical_path(self, path: Optional[str] = None) -> Dict[str, Any]:
        def run() -> Dict[str, Any]:
            plan = self.get_plan(path)
            graph = build_dependency_graph(plan)
            result = find_critical_path(graph).to_dict()
            result["has_circular"] = graph.has_circular
            return result
        return self._run("find_critical_path", run, path=path)

    def get_ready_steps(self, path: Optional[str] = None) -> Dict[str, Any]:
        def run() -> Dict[str, Any]:
            plan = self.get_plan(path)
            ready = get_ready_steps(plan)
            return {
                "ready_steps": [_step_summary(step) for step in ready],
                "count": len(ready),
                "next_suggested_step": "step_start" if ready else "plan_status",
            }
        return self._run("get_ready_steps", run, path=path)

    def get_dependency_chain(self, step_number: int, path: Optional[str] = None) -> Dict[str, Any]:
        def run() -> Dict[str, Any]:
            plan = self.get_plan(path)
            graph = build_dependency_graph(plan)
            return {
                "step": step_number,
                "depends_on": graph.depends_on(step_number),
                "chain": get_dependency_chain(plan, step_number, graph),
                "blocks": [step.number for step in get_blocked_steps(plan, step_number, graph)],
            }
        return self._run("get_dependency_chain", run, path=path, step=step_number)

    def validate_dependencies(self, path: Optional[str] = None) -> Dict[str, Any]:
        def run() -> Dict[str, Any]:
            plan = self.get_plan(path)
            result = validate_dependencies(plan)
            log_validation_result(plan.path, result.valid, len(result.errors), len(result.warnings))
            return result.to_dict()
        return self._run("validate_dependencies", run, path=path)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start_step(self, step_number: int, path: Optional[str] = None) -> Dict[str, Any]:
        def run() -> Dict[str, Any]:
            plan, step = self.transaction(path, "start_step", lambda p: start_step(p, step_number))
            done = {s.number for s in plan.steps if s.is_done}
            unmet = [d for d in step.dependencies if d not in done]
            result = self._transition_result(plan, step, f"Started step {step.number}: {step.title}")
            if unmet:
                result["warning"] = f"Started before dependencies finished: {', '.join(str(d) for d in unmet)}"
            return result
        return self._run("start_step", run, path=path, step=step_number)

    def complete_step(self, step_number: int, notes: Optional[str] = None, path: Optional[str] = None) -> Dict[str, Any]:
        def run() -> Dict[str, Any]:
            plan, step = self.transaction(path, "complete_step", lambda p: complete_step(p, step_number, notes))
            message = f"Completed step {step.number}: {step.title}"
            if plan.state.status == TaskStatus.COMPLETED:
                message += ". All steps are done"
            return self._transition_result(plan, step, message)
        return self._run("complete_step", run, path=path, step=step_number)

    def block_step(self, step_number: int, reason: str, severity: str = "medium", path: Optional[str] = None) -> Dict[str, Any]:
        def run() -> Dict[str, Any]:
            if not reason or not reason.strip():
                raise ValueError("A reason is required to block a step")
            plan, step = self.transaction(path, "block_step", lambda p: block_step(p, step_number, reason, severity))
            return self._transition_result(plan, step, f"Blocked step {step.number}: {reason}")
        return self._run("block_step", run, path=path, step=step_number)

    def unblock_step(self, step_number: int, path: Optional[str] = None) -> Dict[str, Any]:
        def run() -> Dict[str, Any]:
            plan, step = self.transaction(path, "unblock_step", lambda p: unblock_step(p, step_number))
            return self._transition_result(plan, step, f"Unblocked step {step.number} ({step.status.value})")
        return self._run("unblock_step", run, path=path, step=step_number)

    def skip_step(self, step_number: int, reason: Optional[str] = None, path: Optional[str] = None) -> Dict[str, Any]:
        def run() -> Dict[str, Any]:
            plan, step = self.transaction(path, "skip_step", lambda p: skip_step(p, step_number, reason))
            return self._transition_result(plan, step, f"Skipped step {step.number}: {step.title}")
        return self._run("skip_step", run, path=path, step=step_number)

    def fail_step(self, step_number: int, reason: Optional[str] = None, path: Optional[str] = None) -> Dict[str, Any]:
        def run() -> Dict[str, Any]:
            plan, step = self.transaction(path, "fail_step", lambda p: fail_step(p, step_number, reason))
            return self._transition_result(plan, step, f"Step {step.number} failed: {step.title}")
        return self._run("fail_step", run, path=path, step=step_number)

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    def insert_step(
        self,
        title: str,
        position: Optional[int] = None,
        after: Optional[int] = None,
        description: Optional[str] = None,
        path: Optional[str] = None,
    ) -> Dict[str, Any]:
        def run() -> Dict[str, Any]:
            plan, inserted = self.transaction(
                path,
                "insert_step",
                lambda p: insert_step(p, title, position=position, after=after, description=description),
            )
            result = inserted.to_dict()
            result.update({
                "total_steps": len(plan.steps),
                "progress": plan.state.progress,
                "message": f"Inserted step {inserted.step.number}: {inserted.step.title}",
            })
            if inserted.renamed_files:
                result["warning"] = _renumber_warning(inserted.stale_dependents)
            return result
        return self._run("insert_step", run, path=path, title=title)

    def remove_step(self, step_number: int, path: Optional[str] = None) -> Dict[str, Any]:
        def run() -> Dict[str, Any]:
            plan, removed = self.transaction(path, "remove_step", lambda p: remove_step(p, step_number))
            result = removed.to_dict()
            result.update({
                "total_steps": len(plan.steps),
                "progress": plan.state.progress,
                "message": f"Removed step {step_number}: {removed.removed_step.title}",
            })
            if removed.stale_dependents:
                result["warning"] = _renumber_warning(removed.stale_dependents)
            return result
        return self._run("remove_step", run, path=path, step=step_number)

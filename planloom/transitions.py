"""Step status transitions and aggregate plan state.

Every operation mutates the plan in place and returns the affected step.
The dependency graph is never consulted to refuse a transition: starting a
step whose dependencies are unfinished is allowed, and callers use
:func:`planloom.graph.get_ready_steps` to suggest an order instead.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Tuple

from .errors import InvalidTransitionError, StepNotFoundError
from .graph import get_ready_steps
from .models import (
    SEVERITIES,
    Blocker,
    Issue,
    Plan,
    Step,
    TaskStatus,
    compute_progress,
    utc_now,
)
from .plan_logging import log_step_transition

logger = logging.getLogger("planloom.transitions")

_START_FROM = (TaskStatus.PENDING, TaskStatus.BLOCKED)
_COMPLETE_FROM = (TaskStatus.IN_PROGRESS, TaskStatus.PENDING)
_BLOCK_FROM = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED, TaskStatus.FAILED)
_UNBLOCK_FROM = (TaskStatus.BLOCKED,)
_SKIP_FROM = (
    TaskStatus.PENDING,
    TaskStatus.IN_PROGRESS,
    TaskStatus.BLOCKED,
    TaskStatus.FAILED,
    TaskStatus.SKIPPED,
)
_FAIL_FROM = (TaskStatus.IN_PROGRESS, TaskStatus.PENDING)


def _require_step(plan: Plan, step_number: int) -> Step:
    step = plan.get_step(step_number)
    if step is None:
        raise StepNotFoundError(step_number)
    return step


def _check(step: Step, operation: str, allowed: Tuple[TaskStatus, ...]) -> None:
    if step.status not in allowed:
        raise InvalidTransitionError(
            step.number,
            operation,
            step.status.value,
            tuple(status.value for status in allowed),
        )


def refresh_plan_state(plan: Plan, now: Optional[datetime] = None) -> None:
    """Recompute progress and the aggregate plan status from the steps.

    The plan is ``completed`` when every step is completed or skipped and
    ``in_progress`` once any step has left ``pending``.
    """
    now = now or utc_now()
    state = plan.state
    state.progress = compute_progress(plan.completed_count(), len(plan.steps))

    if plan.steps and all(step.is_done for step in plan.steps):
        state.status = TaskStatus.COMPLETED
        state.current_step = None
        if state.completed_at is None:
            state.completed_at = now
    elif state.started_at is not None or any(step.status != TaskStatus.PENDING for step in plan.steps):
        state.status = TaskStatus.IN_PROGRESS
        state.completed_at = None
        if state.started_at is None:
            state.started_at = now
    else:
        state.status = TaskStatus.PENDING
        state.completed_at = None


def _finish(plan: Plan, step: Step, previous: TaskStatus, operation: str, now: datetime) -> Step:
    refresh_plan_state(plan, now)
    plan.state.last_updated_at = now
    logger.info(f"Step {step.number} {operation}: {previous.value} -> {step.status.value}")
    log_step_transition(
        plan.path,
        step.number,
        previous.value,
        step.status.value,
        operation=operation,
        progress=plan.state.progress,
        plan_status=plan.state.status.value,
    )
    return step


def _resume_status(plan: Plan, step: Step) -> TaskStatus:
    """Status a blocked step returns to: the one recorded when it was first blocked."""
    for blocker in plan.state.active_blockers():
        if step.number in blocker.affected_steps and blocker.resume_status is not None:
            return blocker.resume_status
    return TaskStatus.IN_PROGRESS if step.started_at else TaskStatus.PENDING


def _resolve_blockers(plan: Plan, step_number: int, resolution: str) -> int:
    resolved = 0
    for blocker in plan.state.active_blockers():
        if step_number in blocker.affected_steps:
            blocker.resolve(resolution)
            resolved += 1
    return resolved


def start_step(plan: Plan, step_number: int, now: Optional[datetime] = None) -> Step:
    """Move a pending or blocked step to ``in_progress`` and make it current."""
    now = now or utc_now()
    step = _require_step(plan, step_number)
    _check(step, "start", _START_FROM)

    previous = step.status
    step.status = TaskStatus.IN_PROGRESS
    if step.started_at is None:
        step.started_at = now

    plan.state.current_step = step.number
    if plan.state.status == TaskStatus.PENDING:
        plan.state.started_at = plan.state.started_at or now
    _resolve_blockers(plan, step.number, f"Step {step.number} started")
    return _finish(plan, step, previous, "start", now)


def complete_step(
    plan: Plan,
    step_number: int,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Step:
    """Mark a step completed and advance the current step.

    ``pending`` steps may be completed directly for work tracked elsewhere.
    """
    now = now or utc_now()
    step = _require_step(plan, step_number)
    _check(step, "complete", _COMPLETE_FROM)

    previous = step.status
    step.status = TaskStatus.COMPLETED
    step.completed_at = now
    if notes:
        step.notes = notes
    plan.state.last_completed_step = step.number

    ready = get_ready_steps(plan)
    if ready:
        plan.state.current_step = ready[0].number
    elif plan.state.current_step == step.number:
        plan.state.current_step = None

    return _finish(plan, step, previous, "complete", now)


def block_step(
    plan: Plan,
    step_number: int,
    reason: str,
    severity: str = "medium",
    now: Optional[datetime] = None,
) -> Step:
    """Mark a step blocked and record a plan-level blocker for it."""
    now = now or utc_now()
    step = _require_step(plan, step_number)
    _check(step, "block", _BLOCK_FROM)
    if severity not in SEVERITIES:
        raise ValueError(f"Unknown severity '{severity}', expected one of: {', '.join(SEVERITIES)}")

    previous = step.status
    resume = _resume_status(plan, step) if previous == TaskStatus.BLOCKED else previous
    step.status = TaskStatus.BLOCKED
    plan.state.blockers.append(Blocker(
        id=f"blocker-{len(plan.state.blockers) + 1}",
        description=reason,
        severity=severity,
        affected_steps=[step.number],
        created_at=now,
        resume_status=resume,
    ))
    return _finish(plan, step, previous, "block", now)


def unblock_step(plan: Plan, step_number: int, now: Optional[datetime] = None) -> Step:
    """Return a blocked step to the status it had before it was blocked.

    Blockers written without that status fall back to ``in_progress`` if the
    step had started, else ``pending``.
    """
    now = now or utc_now()
    step = _require_step(plan, step_number)
    _check(step, "unblock", _UNBLOCK_FROM)

    previous = step.status
    step.status = _resume_status(plan, step)
    _resolve_blockers(plan, step.number, f"Step {step.number} unblocked")
    return _finish(plan, step, previous, "unblock", now)


def skip_step(
    plan: Plan,
    step_number: int,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Step:
    now = now or utc_now()
    step = _require_step(plan, step_number)
    _check(step, "skip", _SKIP_FROM)

    previous = step.status
    step.status = TaskStatus.SKIPPED
    if reason:
        step.notes = reason
    _resolve_blockers(plan, step.number, f"Step {step.number} skipped")
    if plan.state.current_step == step.number:
        ready = get_ready_steps(plan)
        plan.state.current_step = ready[0].number if ready else None
    return _finish(plan, step, previous, "skip", now)


def fail_step(
    plan: Plan,
    step_number: int,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Step:
    """Mark a step failed and record the reason as a plan-level issue."""
    now = now or utc_now()
    step = _require_step(plan, step_number)
    _check(step, "fail", _FAIL_FROM)

    previous = step.status
    step.status = TaskStatus.FAILED
    description = reason or "No reason given"
    if reason:
        step.notes = reason
    plan.state.issues.append(Issue(
        id=f"issue-{len(plan.state.issues) + 1}",
        title=f"Step {step.number} failed",
        description=description,
        severity="high",
        step=step.number,
        created_at=now,
    ))
    return _finish(plan, step, previous, "fail", now)

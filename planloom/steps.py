"""Adding and removing step files with automatic renumbering."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidPositionError, StepNotFoundError
from .models import Plan, Step, TaskStatus, utc_now
from .plan_logging import log_error_with_context, log_step_inserted, log_step_removed
from .transitions import refresh_plan_state

logger = logging.getLogger("planloom.steps")

_STEP_HEADING_PATTERN = re.compile(r"^#\s+Step\s+\d+:", re.MULTILINE)

STEP_TEMPLATE = """# Step {number:02d}: {title}

## Objective

{description}

## Dependencies

None.

## Tasks

- [ ] Describe the first task

## Acceptance Criteria

- [ ] Define how to verify this step

## Notes

"""


@dataclass(slots=True)
class InsertStepResult:
    step: Step
    renamed_files: List[Tuple[str, str]] = field(default_factory=list)
    created_file: Optional[Path] = None
    stale_dependents: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step.to_dict(),
            "renamed_files": [{"from": old, "to": new} for old, new in self.renamed_files],
            "created_file": str(self.created_file) if self.created_file else None,
            "stale_dependents": list(self.stale_dependents),
        }


@dataclass(slots=True)
class RemoveStepResult:
    removed_step: Step
    renamed_files: List[Tuple[str, str]] = field(default_factory=list)
    deleted_file: Optional[Path] = None
    stale_dependents: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "removed_step": self.removed_step.to_dict(),
            "renamed_files": [{"from": old, "to": new} for old, new in self.renamed_files],
            "deleted_file": str(self.deleted_file) if self.deleted_file else None,
            "stale_dependents": list(self.stale_dependents),
        }


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "step"


def step_filename(number: int, code: str) -> str:
    return f"{number:02d}-{code}.md"


def _renumber(plan: Plan, step: Step, new_number: int) -> Tuple[str, str]:
    """Rename a step's file to ``new_number`` and rewrite its ``# Step NN:`` heading."""
    directory = step.file_path.parent if step.file_path else (plan.step_dir or plan.path)
    old_name = step.filename
    new_name = step_filename(new_number, step.code)
    new_path = directory / new_name

    if step.file_path is not None and step.file_path.exists():
        step.file_path.rename(new_path)
        content = new_path.read_text(encoding="utf-8")
        updated = _STEP_HEADING_PATTERN.sub(f"# Step {new_number:02d}:", content, count=1)
        if updated != content:
            new_path.write_text(updated, encoding="utf-8")

    step.number = new_number
    step.filename = new_name
    step.file_path = new_path
    return old_name, new_name


def _shift_references(plan: Plan, mapping: Dict[int, Optional[int]]) -> None:
    """Apply an old->new step number mapping to plan-level references."""
    state = plan.state

    def shift(number: Optional[int]) -> Optional[int]:
        if number is None:
            return None
        return mapping.get(number, number)

    state.current_step = shift(state.current_step)
    state.last_completed_step = shift(state.last_completed_step)
    for blocker in state.blockers:
        blocker.affected_steps = [n for n in (shift(n) for n in blocker.affected_steps) if n is not None]
    for issue in state.issues:
        issue.step = shift(issue.step)


def _stale_dependents(plan: Plan, first_moved: int) -> List[int]:
    """Steps whose declared dependencies name a number that is being renumbered.

    Run after renumbering; numbers returned are the steps' new numbers.
    """
    return [
        step.number
        for step in plan.steps
        if any(dep >= first_moved for dep in step.dependencies)
    ]


def insert_step(
    plan: Plan,
    title: str,
    position: Optional[int] = None,
    after: Optional[int] = None,
    description: Optional[str] = None,
    status: TaskStatus = TaskStatus.PENDING,
    now: Optional[datetime] = None,
) -> InsertStepResult:
    """Create a new step file at ``position`` and shift later steps up by one.

    ``position`` defaults to ``after + 1`` and otherwise to the end of the
    plan. Dependency declarations inside existing step files are left as
    written; steps whose declarations now name different steps are listed
    in ``stale_dependents``.
    """
    if not title or not title.strip():
        raise ValueError("Step title cannot be empty")

    count = len(plan.steps)
    if position is None:
        position = after + 1 if after is not None else count + 1
    if position < 1 or position > count + 1:
        raise InvalidPositionError(f"Invalid position {position}. Must be between 1 and {count + 1}")

    now = now or utc_now()
    directory = plan.step_dir or plan.path
    renamed: List[Tuple[str, str]] = []

    try:
        moving = sorted((s for s in plan.steps if s.number >= position), key=lambda s: s.number, reverse=True)
        mapping: Dict[int, Optional[int]] = {s.number: s.number + 1 for s in moving}
        for step in moving:
            renamed.append(_renumber(plan, step, step.number + 1))
        _shift_references(plan, mapping)

        code = slugify(title)
        file_path = directory / step_filename(position, code)
        content = STEP_TEMPLATE.format(
            number=position,
            title=title.strip(),
            description=description or "Describe the objective of this step.",
        )
        with open(file_path, "x", encoding="utf-8") as handle:
            handle.write(content)
    except Exception as e:
        log_error_with_context(e, {"operation": "insert_step", "path": str(plan.path), "position": position})
        raise

    step = Step(
        number=position,
        title=title.strip(),
        code=code,
        filename=file_path.name,
        description=description,
        status=status,
        file_path=file_path,
    )
    plan.steps.append(step)
    plan.steps.sort(key=lambda s: s.number)

    refresh_plan_state(plan, now)
    plan.state.last_updated_at = now
    logger.info(f"Inserted step {position} '{step.title}' ({len(renamed)} files renamed)")
    log_step_inserted(plan.path, position, len(renamed), title=step.title)

    return InsertStepResult(
        step=step,
        renamed_files=list(reversed(renamed)),
        created_file=file_path,
        stale_dependents=_stale_dependents(plan, position) if renamed else [],
    )


def remove_step(plan: Plan, step_number: int, now: Optional[datetime] = None) -> RemoveStepResult:
    """Delete a step's file and shift later steps down by one."""
    step = plan.get_step(step_number)
    if step is None:
        raise StepNotFoundError(step_number)

    now = now or utc_now()
    renamed: List[Tuple[str, str]] = []

    try:
        if step.file_path is not None:
            step.file_path.unlink()
        plan.steps.remove(step)

        moving = sorted((s for s in plan.steps if s.number > step_number), key=lambda s: s.number)
        mapping: Dict[int, Optional[int]] = {step_number: None}
        mapping.update({s.number: s.number - 1 for s in moving})
        for later in moving:
            renamed.append(_renumber(plan, later, later.number - 1))
        _shift_references(plan, mapping)
    except Exception as e:
        log_error_with_context(e, {"operation": "remove_step", "path": str(plan.path), "step": step_number})
        raise

    refresh_plan_state(plan, now)
    plan.state.last_updated_at = now
    logger.info(f"Removed step {step_number} '{step.title}' ({len(renamed)} files renamed)")
    log_step_removed(plan.path, step_number, len(renamed), title=step.title)

    return RemoveStepResult(
        removed_step=step,
        renamed_files=renamed,
        deleted_file=step.file_path,
        stale_dependents=_stale_dependents(plan, step_number),
    )

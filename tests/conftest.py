"""Shared fixtures for planloom tests."""

from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from planloom.models import Plan, PlanMetadata, PlanState, Step, TaskStatus
from planloom.plan_logging import observability_hooks, performance_monitor

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

# Five steps: 1 -> 2 -> {3, 4} -> 5, with 3 also depending on 1
FIVE_STEP_DEPENDENCIES = {1: [], 2: [1], 3: [1, 2], 4: [2], 5: [3, 4]}


def build_plan(
    dependencies: Dict[int, List[int]],
    statuses: Optional[Dict[int, TaskStatus]] = None,
    path: Optional[Path] = None,
    name: str = "Test Plan",
) -> Plan:
    """Build an in-memory plan from a step -> dependencies map."""
    statuses = statuses or {}
    steps = [
        Step(
            number=number,
            title=f"Step {number} title",
            code=f"step-{number}",
            filename=f"{number:02d}-step-{number}.md",
            status=statuses.get(number, TaskStatus.PENDING),
            dependencies=sorted(deps),
        )
        for number, deps in sorted(dependencies.items())
    ]
    plan_path = path or Path("/tmp/test-plan")
    return Plan(
        metadata=PlanMetadata(code=plan_path.name, name=name, path=plan_path),
        steps=steps,
        state=PlanState(last_updated_at=NOW),
        step_dir=plan_path,
    )


def write_plan_dir(
    root: Path,
    dependencies: Dict[int, List[int]],
    subdir: bool = True,
    name: Optional[str] = "Test Plan",
    status: Optional[str] = None,
) -> Path:
    """Write a plan directory with one step file per entry of ``dependencies``."""
    plan_dir = root / "test-plan"
    step_dir = plan_dir / "plan" if subdir else plan_dir
    step_dir.mkdir(parents=True, exist_ok=True)

    if name:
        (plan_dir / "SUMMARY.md").write_text(f"# {name}\n\nA plan used in tests.\n", encoding="utf-8")

    for number, deps in sorted(dependencies.items()):
        lines = [f"# Step {number:02d}: Step {number} title", "", f"Do the work for step {number}.", ""]
        if deps:
            lines.extend(["## Dependencies", ""])
            lines.extend(f"- Step {dep:02d}" for dep in deps)
            lines.append("")
        lines.extend(["## Tasks", "", "- [ ] Something", ""])
        (step_dir / f"{number:02d}-step-{number}.md").write_text("\n".join(lines), encoding="utf-8")

    if status is not None:
        (plan_dir / "STATUS.md").write_text(status, encoding="utf-8")

    return plan_dir


@pytest.fixture
def five_step_plan() -> Plan:
    return build_plan(FIVE_STEP_DEPENDENCIES)


@pytest.fixture
def plan_dir(tmp_path: Path) -> Path:
    return write_plan_dir(tmp_path, FIVE_STEP_DEPENDENCIES)


@pytest.fixture(autouse=True)
def reset_observability():
    """Keep hooks and metrics registered by one test out of the next."""
    yield
    observability_hooks.hooks.clear()
    performance_monitor.clear()

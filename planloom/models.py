"""Data models for planloom plans.

This module contains the core data structures used throughout planloom,
representing plan steps, their statuses, plan-level blockers and issues,
and the aggregate plan state.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TaskStatus(str, Enum):
    """Status of a step, or of the plan as a whole."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"

    @property
    def emoji(self) -> str:
        return STATUS_EMOJI[self]

    @property
    def label(self) -> str:
        """Upper-case display text, e.g. ``IN PROGRESS``."""
        return self.value.upper().replace("_", " ")

    @classmethod
    def from_text(cls, text: str) -> "TaskStatus":
        """Best-effort conversion of free text or an emoji to a status.

        Unrecognized text maps to ``PENDING``.
        """
        for emoji, status in EMOJI_STATUS.items():
            if emoji in text:
                return status

        normalized = "".join(ch for ch in text.lower() if ch.isalpha() or ch == "_")
        for status in cls:
            if normalized == status.value:
                return status
        if "progress" in normalized:
            return cls.IN_PROGRESS
        if "complete" in normalized or "done" in normalized:
            return cls.COMPLETED
        if "block" in normalized:
            return cls.BLOCKED
        if "skip" in normalized:
            return cls.SKIPPED
        if "fail" in normalized or "error" in normalized:
            return cls.FAILED
        return cls.PENDING


STATUS_EMOJI: Dict[TaskStatus, str] = {
    TaskStatus.PENDING: "⬜",
    TaskStatus.IN_PROGRESS: "🔄",
    TaskStatus.COMPLETED: "✅",
    TaskStatus.FAILED: "❌",
    TaskStatus.BLOCKED: "⏸️",
    TaskStatus.SKIPPED: "⏭️",
}

EMOJI_STATUS: Dict[str, TaskStatus] = {emoji: status for status, emoji in STATUS_EMOJI.items()}

# Statuses that satisfy a dependency and count towards plan completion.
DONE_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.SKIPPED})

SEVERITIES = ("high", "medium", "low")


@dataclass(slots=True)
class Step:
    """A single numbered step of a plan (one ``NN-code.md`` file)."""

    number: int
    title: str
    code: str = ""
    filename: str = ""
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    dependencies: List[int] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None
    file_path: Optional[Path] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "number": self.number,
            "code": self.code,
            "filename": self.filename,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "dependencies": list(self.dependencies),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "notes": self.notes,
            "file_path": str(self.file_path) if self.file_path else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        """Create from dictionary representation."""
        return cls(
            number=int(data["number"]),
            title=data["title"],
            code=data.get("code", ""),
            filename=data.get("filename", ""),
            description=data.get("description"),
            status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
            dependencies=sorted({int(d) for d in data.get("dependencies", [])}),
            started_at=_parse_iso(data.get("started_at")),
            completed_at=_parse_iso(data.get("completed_at")),
            notes=data.get("notes"),
            file_path=Path(data["file_path"]) if data.get("file_path") else None,
        )

    @property
    def is_done(self) -> bool:
        return self.status in DONE_STATUSES

    def validate(self) -> List[str]:
        """Validate the step and return any issues."""
        issues = []
        if self.number < 1:
            issues.append(f"Step number must be positive, got: {self.number}")
        if not self.title:
            issues.append("Title is required")
        if self.number in self.dependencies:
            issues.append(f"Step {self.number} depends on itself")
        return issues


@dataclass(slots=True)
class Blocker:
    """Something preventing progress on one or more steps."""

    id: str
    description: str
    severity: str = "medium"
    affected_steps: List[int] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None
    resume_status: Optional[TaskStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "severity": self.severity,
            "affected_steps": list(self.affected_steps),
            "resume_status": self.resume_status.value if self.resume_status else None,
            "created_at": _iso(self.created_at),
            "resolved_at": _iso(self.resolved_at),
            "resolution": self.resolution,
        }

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def resolve(self, resolution: Optional[str] = None) -> None:
        self.resolved_at = utc_now()
        self.resolution = resolution


@dataclass(slots=True)
class Issue:
    """A problem encountered while executing the plan."""

    id: str
    title: str
    description: str
    severity: str = "medium"
    step: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "severity": self.severity,
            "step": self.step,
            "created_at": _iso(self.created_at),
            "resolved_at": _iso(self.resolved_at),
            "resolution": self.resolution,
        }

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


@dataclass(slots=True)
class PlanState:
    """Aggregate execution state of a plan."""

    status: TaskStatus = TaskStatus.PENDING
    current_step: Optional[int] = None
    last_completed_step: Optional[int] = None
    started_at: Optional[datetime] = None
    last_updated_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    blockers: List[Blocker] = field(default_factory=list)
    issues: List[Issue] = field(default_factory=list)
    progress: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "status": self.status.value,
            "current_step": self.current_step,
            "last_completed_step": self.last_completed_step,
            "started_at": _iso(self.started_at),
            "last_updated_at": _iso(self.last_updated_at),
            "completed_at": _iso(self.completed_at),
            "blockers": [blocker.to_dict() for blocker in self.blockers],
            "issues": [issue.to_dict() for issue in self.issues],
            "progress": self.progress,
        }

    def active_blockers(self) -> List[Blocker]:
        return [blocker for blocker in self.blockers if not blocker.is_resolved]

    def open_issues(self) -> List[Issue]:
        return [issue for issue in self.issues if not issue.is_resolved]


@dataclass(slots=True)
class PlanMetadata:
    """Identity of a plan directory."""

    code: str
    name: str
    path: Path
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "path": str(self.path),
            "description": self.description,
        }


@dataclass(slots=True)
class Plan:
    """A plan: its steps plus the aggregate state."""

    metadata: PlanMetadata
    steps: List[Step] = field(default_factory=list)
    state: PlanState = field(default_factory=PlanState)
    step_dir: Optional[Path] = None
    # Digest of STATUS.md as loaded; None when the plan was not read from disk.
    status_fingerprint: Optional[str] = None

    @property
    def path(self) -> Path:
        return self.metadata.path

    @property
    def status_path(self) -> Path:
        return self.metadata.path / STATUS_FILENAME

    def get_step(self, number: int) -> Optional[Step]:
        for step in self.steps:
            if step.number == number:
                return step
        return None

    def step_numbers(self) -> List[int]:
        return [step.number for step in self.steps]

    def dependency_map(self) -> Dict[int, List[int]]:
        return {step.number: list(step.dependencies) for step in self.steps}

    def completed_count(self) -> int:
        return sum(1 for step in self.steps if step.status == TaskStatus.COMPLETED)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "metadata": self.metadata.to_dict(),
            "steps": [step.to_dict() for step in self.steps],
            "state": self.state.to_dict(),
        }


def compute_progress(completed: int, total: int) -> int:
    """Percentage of completed steps, rounded half up (0 for an empty plan)."""
    if total <= 0:
        return 0
    return int(math.floor(100 * completed / total + 0.5))


# Plan directory conventions
STATUS_FILENAME = "STATUS.md"
SUMMARY_FILENAME = "SUMMARY.md"
STEP_SUBDIR = "plan"
LOCK_SUFFIX = ".lock"

"""STATUS.md rendering and parsing.

The document layout is::

    # <Plan name> Status
    ## Current State      (field/value table)
    ## Step Progress      (one row per step)
    ## Blockers
    ## Issues
    ## Notes              (free text, preserved across regeneration)
    ---                   (legend and last-updated footer)

Rendering is deterministic for a given plan and existing document. Parsing
is lenient: anything it cannot read falls back to a default and, where it
matters, adds a warning instead of raising.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .models import (
    SEVERITIES,
    STATUS_EMOJI,
    Blocker,
    Issue,
    Plan,
    Step,
    TaskStatus,
    compute_progress,
)

EMPTY_CELL = "-"
NONE_CURRENTLY = "None currently."

STEP_TABLE_HEADER = "| Step | Name | Status | Started | Completed | Notes |"
STEP_TABLE_SEPARATOR = "|------|------|--------|---------|-----------|-------|"

_NOTES_HEADING = re.compile(r"^##\s+Notes\s*$", re.IGNORECASE)
_SECTION_HEADING = re.compile(r"^##(?!#)")
_TITLE_PATTERN = re.compile(r"^#\s+(.+?)\s*$")
_FIELD_PATTERN = re.compile(r"^\|\s*\*\*(?P<field>[^*]+)\*\*\s*\|\s*(?P<value>.*?)\s*\|\s*$")
_STEP_HEADER_PATTERN = re.compile(r"^\|\s*Step\s*\|\s*Name\s*\|", re.IGNORECASE)
_SEPARATOR_PATTERN = re.compile(r"^\|[-:\s|]+\|\s*$")
_CELL_SPLIT_PATTERN = re.compile(r"(?<!\\)\|")
_LEADING_NUMBER = re.compile(r"^\s*(\d+)")
_DATE_PATTERN = re.compile(r"(\d{4})-(\d{2})-(\d{2})")
_PROGRESS_PATTERN = re.compile(r"(\d+)%")
_SEVERITY_PREFIX = r"(?:\[(?P<severity>" + "|".join(SEVERITIES) + r")\]\s+)?"
_RESUME_SUFFIX = r"(?:\s*\(resumes as (?P<resume>" + "|".join(s.value for s in TaskStatus) + r")\))?"
_BLOCKER_PATTERN = re.compile(
    r"^[-*]\s+" + _SEVERITY_PREFIX
    + r"(?P<description>.*?)(?:\s*\(affects steps?:\s*(?P<steps>[\d,\s]*)\))?" + _RESUME_SUFFIX + r"\s*$",
    re.IGNORECASE,
)
_ISSUE_PATTERN = re.compile(
    r"^[-*]\s+" + _SEVERITY_PREFIX + r"(?:\*\*(?P<title>.+?)\*\*:\s*)?(?P<description>.*?)(?:\s*\(step\s+(?P<step>\d+)\))?\s*$",
    re.IGNORECASE,
)


@dataclass(slots=True)
class StepRow:
    """One row of the Step Progress table."""

    number: int
    title: str
    status: TaskStatus = TaskStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "title": self.title,
            "status": self.status.value,
            "started_at": format_date(self.started_at),
            "completed_at": format_date(self.completed_at),
            "notes": self.notes,
        }


@dataclass(slots=True)
class StatusDocument:
    """The contents of a parsed STATUS.md."""

    title: str = "Unknown Plan"
    status: TaskStatus = TaskStatus.PENDING
    current_step: Optional[int] = None
    last_completed_step: Optional[int] = None
    started_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None
    progress: int = 0
    steps: List[StepRow] = field(default_factory=list)
    blockers: List[Blocker] = field(default_factory=list)
    issues: List[Issue] = field(default_factory=list)
    notes: str = ""
    warnings: List[str] = field(default_factory=list)

    def get_row(self, number: int) -> Optional[StepRow]:
        for row in self.steps:
            if row.number == number:
                return row
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "status": self.status.value,
            "current_step": self.current_step,
            "last_completed_step": self.last_completed_step,
            "started_at": format_date(self.started_at),
            "last_updated_at": format_date(self.last_updated_at),
            "progress": self.progress,
            "steps": [row.to_dict() for row in self.steps],
            "blockers": [blocker.to_dict() for blocker in self.blockers],
            "issues": [issue.to_dict() for issue in self.issues],
            "notes": self.notes,
            "warnings": list(self.warnings),
        }


def format_date(value: Optional[datetime]) -> str:
    if value is None:
        return EMPTY_CELL
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%d")


def parse_date(text: str) -> Optional[datetime]:
    match = _DATE_PATTERN.search(text or "")
    if not match:
        return None
    try:
        return datetime(int(match.group(1)), int(match.group(2)), int(match.group(3)), tzinfo=timezone.utc)
    except ValueError:
        return None


def escape_cell(text: Optional[str]) -> str:
    """Make ``text`` safe for a single markdown table cell."""
    if not text:
        return ""
    collapsed = " ".join(text.split())
    return collapsed.replace("|", "\\|")


def unescape_cell(text: str) -> str:
    return text.strip().replace("\\|", "|")


def status_display(status: TaskStatus) -> str:
    return f"{status.emoji} {status.label}"


def _step_label(step: Optional[Step]) -> str:
    if step is None:
        return EMPTY_CELL
    return f"{step.number:02d} - {escape_cell(step.title)}"


def extract_notes(content: Optional[str]) -> str:
    """Return the trimmed text under ``## Notes``.

    The section ends at the next level-two heading or ``---`` rule. Lines
    are scanned one at a time.
    """
    if not content:
        return ""

    collected: List[str] = []
    in_notes = False
    for line in content.splitlines():
        if not in_notes:
            if _NOTES_HEADING.match(line):
                in_notes = True
            continue
        if _SECTION_HEADING.match(line) or line.startswith("---"):
            break
        collected.append(line)

    return "\n".join(collected).strip()


def _render_current_state(plan: Plan) -> List[str]:
    state = plan.state
    completed = plan.completed_count()
    total = len(plan.steps)
    progress = compute_progress(completed, total)

    current = plan.get_step(state.current_step) if state.current_step is not None else None
    last_completed = plan.get_step(state.last_completed_step) if state.last_completed_step is not None else None

    return [
        "## Current State",
        "",
        "| Field | Value |",
        "|-------|-------|",
        f"| **Status** | {status_display(state.status)} |",
        f"| **Current Step** | {_step_label(current)} |",
        f"| **Last Completed** | {_step_label(last_completed)} |",
        f"| **Started** | {format_date(state.started_at)} |",
        f"| **Last Updated** | {format_date(state.last_updated_at)} |",
        f"| **Progress** | {progress}% ({completed}/{total} steps) |",
        "",
    ]


def _render_steps(plan: Plan) -> List[str]:
    lines = ["## Step Progress", "", STEP_TABLE_HEADER, STEP_TABLE_SEPARATOR]
    for step in sorted(plan.steps, key=lambda s: s.number):
        lines.append(
            f"| {step.number:02d} | {escape_cell(step.title)} | {step.status.emoji} "
            f"| {format_date(step.started_at)} | {format_date(step.completed_at)} "
            f"| {escape_cell(step.notes)} |"
        )
    lines.append("")
    return lines


def _render_blockers(plan: Plan) -> List[str]:
    lines = ["## Blockers", ""]
    blockers = plan.state.active_blockers()
    if not blockers:
        return lines + [NONE_CURRENTLY, ""]
    for blocker in blockers:
        entry = f"- [{blocker.severity}] {' '.join(blocker.description.split())}"
        if blocker.affected_steps:
            entry += f" (affects steps: {', '.join(str(n) for n in blocker.affected_steps)})"
        if blocker.resume_status is not None:
            entry += f" (resumes as {blocker.resume_status.value})"
        lines.append(entry)
    lines.append("")
    return lines


def _render_issues(plan: Plan) -> List[str]:
    lines = ["## Issues", ""]
    issues = plan.state.open_issues()
    if not issues:
        return lines + [NONE_CURRENTLY, ""]
    for issue in issues:
        entry = f"- [{issue.severity}] **{' '.join(issue.title.split())}**: {' '.join(issue.description.split())}"
        if issue.step is not None:
            entry += f" (step {issue.step})"
        lines.append(entry)
    lines.append("")
    return lines


def _render_footer(plan: Plan) -> List[str]:
    lines = ["---", "", "**Status Legend**:"]
    for status, emoji in STATUS_EMOJI.items():
        lines.append(f"- {emoji} {status.label.title()}")
    lines.extend(["", f"*Last updated: {format_date(plan.state.last_updated_at)}*", ""])
    return lines


def render_status(plan: Plan, existing_content: Optional[str] = None, preserve_notes: bool = True) -> str:
    """Render the STATUS.md document for ``plan``.

    When ``preserve_notes`` is set, the ``## Notes`` section of
    ``existing_content`` is carried over verbatim (trimmed).
    """
    notes = extract_notes(existing_content) if preserve_notes else ""

    lines = [f"# {plan.metadata.name} Status", ""]
    lines.extend(_render_current_state(plan))
    lines.extend(_render_steps(plan))
    lines.extend(_render_blockers(plan))
    lines.extend(_render_issues(plan))
    lines.extend(["## Notes", "", notes, ""] if notes else ["## Notes", ""])
    lines.extend(_render_footer(plan))
    return "\n".join(lines)


def _section_lines(lines: List[str], name: str) -> List[str]:
    heading = re.compile(rf"^##\s+{re.escape(name)}\s*$", re.IGNORECASE)
    collected: List[str] = []
    inside = False
    for line in lines:
        if not inside:
            inside = bool(heading.match(line))
            continue
        if _SECTION_HEADING.match(line) or line.startswith("---"):
            break
        collected.append(line)
    return collected


def _parse_fields(lines: List[str], document: StatusDocument) -> None:
    for line in lines:
        match = _FIELD_PATTERN.match(line.strip())
        if not match:
            continue
        name = match.group("field").strip().lower()
        value = match.group("value").strip()

        if name == "status":
            document.status = TaskStatus.from_text(value)
        elif name == "current step":
            document.current_step = _leading_number(value)
        elif name == "last completed":
            document.last_completed_step = _leading_number(value)
        elif name == "started":
            document.started_at = parse_date(value)
        elif name == "last updated":
            document.last_updated_at = parse_date(value)
        elif name == "progress":
            progress = _PROGRESS_PATTERN.search(value)
            if progress:
                document.progress = int(progress.group(1))


def _leading_number(text: str) -> Optional[int]:
    match = _LEADING_NUMBER.match(text)
    return int(match.group(1)) if match else None


def _split_row(line: str) -> List[str]:
    stripped = line.strip()
    if stripped.startswith("|"):
        stripped = stripped[1:]
    if stripped.endswith("|") and not stripped.endswith("\\|"):
        stripped = stripped[:-1]
    return [unescape_cell(cell) for cell in _CELL_SPLIT_PATTERN.split(stripped)]


def _parse_step_rows(lines: List[str], document: StatusDocument) -> None:
    in_table = False
    for line in lines:
        stripped = line.strip()
        if not in_table:
            in_table = bool(_STEP_HEADER_PATTERN.match(stripped))
            continue
        if not stripped.startswith("|"):
            if document.steps:
                break
            continue
        if _SEPARATOR_PATTERN.match(stripped):
            continue

        cells = _split_row(stripped)
        if len(cells) < 3:
            document.warnings.append(f"Ignoring malformed step row: {stripped}")
            continue
        number = _leading_number(cells[0])
        if number is None:
            document.warnings.append(f"Ignoring step row without a step number: {stripped}")
            continue

        cells.extend([""] * (6 - len(cells)))
        document.steps.append(StepRow(
            number=number,
            title=cells[1],
            status=TaskStatus.from_text(cells[2]),
            started_at=parse_date(cells[3]),
            completed_at=parse_date(cells[4]),
            notes=cells[5] or None,
        ))


def _list_items(lines: List[str]) -> List[str]:
    return [line.strip() for line in lines if line.strip().startswith(("- ", "* "))]


def _severity(match: re.Match) -> str:
    return (match.group("severity") or "medium").lower()


def _parse_blockers(lines: List[str], document: StatusDocument) -> None:
    for index, item in enumerate(_list_items(lines), start=1):
        match = _BLOCKER_PATTERN.match(item)
        if not match:
            continue
        steps = match.group("steps") or ""
        resume = match.group("resume")
        document.blockers.append(Blocker(
            id=f"blocker-{index}",
            description=match.group("description"),
            severity=_severity(match),
            affected_steps=[int(n) for n in re.findall(r"\d+", steps)],
            resume_status=TaskStatus(resume.lower()) if resume else None,
        ))


def _parse_issues(lines: List[str], document: StatusDocument) -> None:
    for index, item in enumerate(_list_items(lines), start=1):
        match = _ISSUE_PATTERN.match(item)
        if not match:
            continue
        description = match.group("description")
        title = match.group("title") or description[:50]
        step = match.group("step")
        document.issues.append(Issue(
            id=f"issue-{index}",
            title=title,
            description=description,
            severity=_severity(match),
            step=int(step) if step else None,
        ))


def parse_status(content: Optional[str], expected_steps: Optional[int] = None) -> StatusDocument:
    """Parse a STATUS.md document.

    ``expected_steps`` is the number of steps found on disk; a different row
    count is reported as a warning. This function does not raise on
    malformed content.
    """
    document = StatusDocument()
    if not content:
        return document

    lines = content.splitlines()
    for line in lines:
        match = _TITLE_PATTERN.match(line)
        if match:
            title = match.group(1)
            document.title = title[: -len(" Status")] if title.endswith(" Status") else title
            break

    _parse_fields(_section_lines(lines, "Current State"), document)
    _parse_step_rows(lines, document)
    _parse_blockers(_section_lines(lines, "Blockers"), document)
    _parse_issues(_section_lines(lines, "Issues"), document)
    document.notes = extract_notes(content)

    if not document.steps and "## Step Progress" not in content:
        document.warnings.append("No Step Progress table found")
    if expected_steps is not None and document.steps and len(document.steps) != expected_steps:
        document.warnings.append(
            f"Step count mismatch: STATUS.md has {len(document.steps)}, plan has {expected_steps}"
        )

    return document

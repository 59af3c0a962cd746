"""Loading plan directories from disk and persisting their STATUS.md.

A plan directory contains numbered step files (``01-setup.md``,
``02-build.md``...), either directly or under ``plan/``, an optional
``SUMMARY.md`` naming the plan, and an optional ``STATUS.md`` holding the
execution state.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .dependencies import parse_dependencies
from .errors import PlanConflictError, PlanNotFoundError
from .models import (
    STEP_SUBDIR,
    SUMMARY_FILENAME,
    Plan,
    PlanMetadata,
    PlanState,
    Step,
)
from .plan_logging import log_error_with_context, log_performance, log_status_written
from .status import StatusDocument, parse_status, render_status
from .storage import PlanLock, atomic_write_text, content_fingerprint, read_text_if_exists
from .transitions import refresh_plan_state

logger = logging.getLogger("planloom.loader")

STEP_FILE_PATTERN = re.compile(r"^(\d{2})-(.+)\.md$")
_TITLE_PATTERN = re.compile(r"^#\s+(.+?)\s*$")
_STEP_PREFIX_PATTERN = re.compile(r"^Step\s+\d+\s*[:.\-]\s*", re.IGNORECASE)
_NON_PARAGRAPH_PREFIXES = ("-", "*", "|", ">", "```", "---")


def format_code(code: str) -> str:
    """``api-client_setup`` -> ``Api Client Setup``."""
    words = re.split(r"[-_\s]+", code.strip())
    return " ".join(word[:1].upper() + word[1:] for word in words if word)


def extract_title(markdown: str) -> Optional[str]:
    for line in markdown.splitlines():
        match = _TITLE_PATTERN.match(line)
        if match:
            return match.group(1)
    return None


def extract_first_paragraph(markdown: str) -> Optional[str]:
    """Return the first prose paragraph following the first heading."""
    found_title = False
    paragraph: List[str] = []
    in_frontmatter = markdown.startswith("---")

    for index, line in enumerate(markdown.splitlines()):
        stripped = line.strip()
        if in_frontmatter:
            if index > 0 and stripped == "---":
                in_frontmatter = False
            continue
        if line.startswith("#"):
            if found_title and paragraph:
                break
            found_title = True
            continue
        if not found_title:
            continue
        if not stripped:
            if paragraph:
                break
            continue
        if stripped.startswith(_NON_PARAGRAPH_PREFIXES):
            if paragraph:
                break
            continue
        paragraph.append(stripped)

    return " ".join(paragraph) or None


def find_step_files(plan_path: Path) -> Tuple[Path, List[Tuple[int, str, Path]]]:
    """Return the directory holding step files and ``(number, code, path)`` entries.

    ``plan/`` is used when it contains step files; otherwise the plan root.
    """
    candidates = [plan_path / STEP_SUBDIR, plan_path]
    for directory in candidates:
        if not directory.is_dir():
            continue
        entries = []
        for entry in directory.iterdir():
            match = STEP_FILE_PATTERN.match(entry.name)
            if match and entry.is_file():
                entries.append((int(match.group(1)), match.group(2), entry))
        if entries or directory == plan_path:
            return directory, sorted(entries, key=lambda item: (item[0], item[2].name))
    return plan_path, []


def read_step(number: int, code: str, path: Path) -> Step:
    """Build a step from its file, degrading to defaults if it cannot be read."""
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Could not read step file {path}: {e}")
        content = ""

    title = extract_title(content)
    if title:
        title = _STEP_PREFIX_PATTERN.sub("", title).strip() or None

    return Step(
        number=number,
        code=code,
        filename=path.name,
        title=title or format_code(code),
        description=extract_first_paragraph(content),
        dependencies=parse_dependencies(content),
        file_path=path,
    )


def read_metadata(plan_path: Path) -> PlanMetadata:
    code = plan_path.name
    metadata = PlanMetadata(code=code, name=format_code(code), path=plan_path)
    try:
        summary = read_text_if_exists(plan_path / SUMMARY_FILENAME)
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Could not read {SUMMARY_FILENAME} in {plan_path}: {e}")
        summary = None
    if summary:
        metadata.name = extract_title(summary) or metadata.name
        metadata.description = extract_first_paragraph(summary)
    return metadata


def apply_status(plan: Plan, document: StatusDocument) -> None:
    """Copy persisted step and plan state from ``document`` onto ``plan``."""
    numbers = set(plan.step_numbers())

    for step in plan.steps:
        row = document.get_row(step.number)
        if row is None:
            continue
        step.status = row.status
        step.started_at = row.started_at
        step.completed_at = row.completed_at
        step.notes = row.notes

    state = plan.state
    state.status = document.status
    state.started_at = document.started_at
    state.last_updated_at = document.last_updated_at or state.last_updated_at
    state.current_step = document.current_step if document.current_step in numbers else None
    state.last_completed_step = (
        document.last_completed_step if document.last_completed_step in numbers else None
    )
    state.blockers = list(document.blockers)
    state.issues = list(document.issues)


@log_performance("load_plan")
def load_plan(path: Union[str, Path]) -> Plan:
    """Load the plan stored in directory ``path``.

    A missing ``STATUS.md`` means nothing has started yet. Progress and the
    aggregate status are recomputed from the steps after loading.
    """
    plan_path = Path(path).expanduser().resolve()
    if not plan_path.is_dir():
        raise PlanNotFoundError(f"Plan directory not found: {plan_path}")

    try:
        step_dir, entries = find_step_files(plan_path)
        steps = [read_step(number, code, file_path) for number, code, file_path in entries]
        plan = Plan(
            metadata=read_metadata(plan_path),
            steps=steps,
            state=PlanState(),
            step_dir=step_dir,
        )

        content = read_text_if_exists(plan.status_path)
        plan.status_fingerprint = content_fingerprint(content)
        if content is not None:
            document = parse_status(content, expected_steps=len(steps))
            for warning in document.warnings:
                logger.warning(f"{plan.status_path}: {warning}")
            apply_status(plan, document)

        refresh_plan_state(plan, plan.state.last_updated_at)
        logger.info(f"Loaded plan '{plan.metadata.name}' with {len(steps)} steps from {plan_path}")
        return plan
    except Exception as e:
        log_error_with_context(e, {"operation": "load_plan", "path": str(plan_path)})
        raise


def write_status(plan: Plan, preserve_notes: bool = True) -> Path:
    """Render and atomically write STATUS.md without taking the plan lock.

    Callers that already hold the :class:`~planloom.storage.PlanLock` use
    this; everyone else should call :func:`save_plan`.
    """
    existing = read_text_if_exists(plan.status_path)
    content = render_status(plan, existing, preserve_notes=preserve_notes)
    atomic_write_text(plan.status_path, content)
    plan.status_fingerprint = content_fingerprint(content)
    log_status_written(plan.path, plan.state.progress, status=plan.state.status.value)
    return plan.status_path


def save_plan(plan: Plan, lock_timeout: Optional[float] = None, preserve_notes: bool = True) -> Path:
    """Persist ``plan`` to STATUS.md under the plan lock.

    A plan read by :func:`load_plan` is only written if STATUS.md is still
    the version it was loaded from; otherwise :class:`PlanConflictError` is
    raised and the file is left alone. Reload, reapply the change and save
    again to resolve it.
    """
    try:
        with PlanLock(plan.status_path, timeout=lock_timeout):
            if plan.status_fingerprint is not None:
                current = content_fingerprint(read_text_if_exists(plan.status_path))
                if current != plan.status_fingerprint:
                    raise PlanConflictError(
                        f"{plan.status_path} was modified after the plan was loaded"
                    )
            return write_status(plan, preserve_notes=preserve_notes)
    except Exception as e:
        log_error_with_context(e, {"operation": "save_plan", "path": str(plan.status_path)})
        raise

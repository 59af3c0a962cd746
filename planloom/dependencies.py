"""Dependency declaration parsing for step files.

A step file may declare the steps it depends on in several ways, and all of
them are honoured at once:

* a ``## Dependencies`` section with ``- Step 01`` or ``- 1`` bullets,
* ``Requires: Step 01, Step 02`` lines,
* inline ``(depends on Step 01, 02)`` references,
* ``depends-on: 1, 2`` in a leading ``---`` frontmatter block.

Parsing is best-effort: an extractor that cannot make sense of its input
contributes nothing instead of failing the whole step.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Callable, Iterable, List, Set, Tuple, Union

logger = logging.getLogger("planloom.dependencies")

_NUMBER_PATTERN = re.compile(r"\d+")
_SECTION_HEADING_PATTERN = re.compile(r"^##\s+Dependenc(?:y|ies)\b", re.IGNORECASE)
_BULLET_PATTERN = re.compile(r"^\s*[-*]\s+(?:Step\s*)?(\d+)\b", re.IGNORECASE)
_REQUIRES_PATTERN = re.compile(r"Requires:\s*(.+)$", re.IGNORECASE)
_REQUIRES_ITEM_PATTERN = re.compile(r"^\W*(?:Step\s*)?(\d+)\b", re.IGNORECASE)
_INLINE_PATTERN = re.compile(
    r"\(depends\s+on\s+((?:Step\s*)?\d+(?:\s*,\s*(?:Step\s*)?\d+)*)\)",
    re.IGNORECASE,
)
_FRONTMATTER_FIELD_PATTERN = re.compile(r"^depends-on:\s*(.*)$", re.IGNORECASE)

Extractor = Callable[[str], Set[int]]


def _numbers(text: str) -> Set[int]:
    return {int(match) for match in _NUMBER_PATTERN.findall(text)}


def extract_section(content: str) -> Set[int]:
    """Numbers from bullets under a ``## Dependencies`` heading."""
    found: Set[int] = set()
    in_section = False
    for line in content.splitlines():
        if _SECTION_HEADING_PATTERN.match(line):
            in_section = True
            continue
        if not in_section:
            continue
        if line.startswith("#"):
            in_section = False
            continue
        match = _BULLET_PATTERN.match(line)
        if match:
            found.add(int(match.group(1)))
    return found


def extract_requires(content: str) -> Set[int]:
    """Numbers listed on ``Requires:`` lines."""
    found: Set[int] = set()
    for line in content.splitlines():
        match = _REQUIRES_PATTERN.search(line)
        if not match:
            continue
        for item in match.group(1).split(","):
            item_match = _REQUIRES_ITEM_PATTERN.match(item.strip())
            if item_match:
                found.add(int(item_match.group(1)))
    return found


def extract_inline(content: str) -> Set[int]:
    """Numbers from ``(depends on Step NN, NN)`` references."""
    found: Set[int] = set()
    for match in _INLINE_PATTERN.finditer(content):
        found |= _numbers(match.group(1))
    return found


def extract_frontmatter(content: str) -> Set[int]:
    """Numbers from a ``depends-on:`` field in leading frontmatter."""
    lines = content.splitlines()
    if not lines or lines[0].strip() != "---":
        return set()

    found: Set[int] = set()
    for line in lines[1:]:
        if line.strip() == "---":
            return found
        match = _FRONTMATTER_FIELD_PATTERN.match(line.strip())
        if match:
            found |= _numbers(match.group(1))
    # Unterminated frontmatter is not frontmatter
    return set()


EXTRACTORS: Tuple[Tuple[str, Extractor], ...] = (
    ("section", extract_section),
    ("requires", extract_requires),
    ("inline", extract_inline),
    ("frontmatter", extract_frontmatter),
)


def parse_dependencies(content: str, extractors: Iterable[Tuple[str, Extractor]] = EXTRACTORS) -> List[int]:
    """Return the sorted, de-duplicated step numbers declared in ``content``.

    Step numbers that do not exist in the plan are kept; the graph
    validator reports them.
    """
    if not content:
        return []

    dependencies: Set[int] = set()
    for name, extractor in extractors:
        try:
            dependencies |= extractor(content)
        except Exception as e:
            logger.debug(f"Dependency extractor '{name}' failed: {e}")
    return sorted(dependencies)


def parse_dependencies_from_file(path: Union[str, Path]) -> List[int]:
    """Parse a step file, treating an unreadable file as declaring nothing."""
    try:
        content = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Could not read step file {path}: {e}")
        return []
    return parse_dependencies(content)

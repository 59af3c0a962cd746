"""Exception types raised by planloom.

Parsing never raises and dependency validation problems are returned as
data, so these exceptions only cover operator misuse (unknown steps,
illegal transitions, bad insert positions), missing plan directories and
stale saves.
File I/O failures are left as plain ``OSError`` and reach the caller
unmodified.
"""

from __future__ import annotations

from typing import Optional


class PlanError(Exception):
    """Base class for all planloom errors."""


class PlanNotFoundError(PlanError, FileNotFoundError):
    """The plan path does not exist or is not a directory."""


class TransitionError(PlanError):
    """A step operation could not be applied."""

    def __init__(self, message: str, step_number: Optional[int] = None):
        super().__init__(message)
        self.step_number = step_number


class StepNotFoundError(TransitionError, LookupError):
    """The requested step number is not part of the plan."""

    def __init__(self, step_number: int):
        super().__init__(f"Step {step_number} not found", step_number)


class InvalidTransitionError(TransitionError, ValueError):
    """The step's current status does not allow the requested operation."""

    def __init__(self, step_number: int, operation: str, current: str, allowed: tuple[str, ...]):
        allowed_text = ", ".join(allowed)
        super().__init__(
            f"Cannot {operation} step {step_number}: status is '{current}' (allowed: {allowed_text})",
            step_number,
        )
        self.operation = operation
        self.current = current
        self.allowed = allowed


class InvalidPositionError(PlanError, ValueError):
    """An insert position lies outside ``1..len(steps) + 1``."""


class PlanConflictError(PlanError):
    """STATUS.md changed on disk after the plan was loaded."""

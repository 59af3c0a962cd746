"""planloom: dependency-aware step tracking for markdown plans."""

from .config import Settings
from .dependencies import parse_dependencies, parse_dependencies_from_file
from .errors import (
    InvalidPositionError,
    InvalidTransitionError,
    PlanConflictError,
    PlanError,
    PlanNotFoundError,
    StepNotFoundError,
    TransitionError,
)
from .graph import (
    CriticalPath,
    DependencyGraph,
    DependencyIssue,
    ExecutionOrder,
    StepDependency,
    ValidationResult,
    build_dependency_graph,
    compute_execution_order,
    find_critical_path,
    find_cycles,
    get_blocked_steps,
    get_dependency_chain,
    get_ready_steps,
    validate_dependencies,
)
from .loader import load_plan, save_plan
from .models import (
    Blocker,
    Issue,
    Plan,
    PlanMetadata,
    PlanState,
    Step,
    TaskStatus,
)
from .status import StatusDocument, extract_notes, parse_status, render_status
from .steps import InsertStepResult, RemoveStepResult, insert_step, remove_step
from .storage import PlanLock, atomic_write_text
from .transitions import (
    block_step,
    complete_step,
    fail_step,
    skip_step,
    start_step,
    unblock_step,
)
from .workflow import PlanContext, PlanManager

__all__ = [
    "Blocker",
    "CriticalPath",
    "DependencyGraph",
    "DependencyIssue",
    "ExecutionOrder",
    "InsertStepResult",
    "InvalidPositionError",
    "InvalidTransitionError",
    "Issue",
    "Plan",
    "PlanConflictError",
    "PlanContext",
    "PlanError",
    "PlanLock",
    "PlanManager",
    "PlanMetadata",
    "PlanNotFoundError",
    "PlanState",
    "RemoveStepResult",
    "Settings",
    "StatusDocument",
    "Step",
    "StepDependency",
    "StepNotFoundError",
    "TaskStatus",
    "TransitionError",
    "ValidationResult",
    "atomic_write_text",
    "block_step",
    "build_dependency_graph",
    "complete_step",
    "compute_execution_order",
    "extract_notes",
    "fail_step",
    "find_critical_path",
    "find_cycles",
    "get_blocked_steps",
    "get_dependency_chain",
    "get_ready_steps",
    "insert_step",
    "load_plan",
    "parse_dependencies",
    "parse_dependencies_from_file",
    "parse_status",
    "remove_step",
    "render_status",
    "save_plan",
    "skip_step",
    "start_step",
    "unblock_step",
    "validate_dependencies",
]

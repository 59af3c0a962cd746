"""Unit tests for step status transitions."""

from datetime import timedelta

import pytest

from planloom.errors import InvalidTransitionError, StepNotFoundError
from planloom.models import TaskStatus
from planloom.transitions import (
    block_step,
    complete_step,
    fail_step,
    refresh_plan_state,
    skip_step,
    start_step,
    unblock_step,
)

from conftest import NOW, build_plan

LATER = NOW + timedelta(hours=2)


class TestStartStep:
    """Test cases for starting steps."""

    def test_start_pending_step(self, five_step_plan):
        """Test that starting sets the timestamps and current step."""
        step = start_step(five_step_plan, 1, now=NOW)

        assert step.status is TaskStatus.IN_PROGRESS
        assert step.started_at == NOW
        state = five_step_plan.state
        assert state.current_step == 1
        assert state.status is TaskStatus.IN_PROGRESS
        assert state.started_at == NOW
        assert state.last_updated_at == NOW

    def test_start_keeps_first_start_time(self, five_step_plan):
        """Test that restarting a blocked step keeps its original start time."""
        start_step(five_step_plan, 1, now=NOW)
        block_step(five_step_plan, 1, "waiting", now=NOW)
        step = start_step(five_step_plan, 1, now=LATER)

        assert step.started_at == NOW
        assert step.status is TaskStatus.IN_PROGRESS

    def test_start_with_unmet_dependencies_is_allowed(self, five_step_plan):
        """Test that dependencies do not refuse a start."""
        step = start_step(five_step_plan, 5, now=NOW)
        assert step.status is TaskStatus.IN_PROGRESS

    def test_start_completed_step_fails(self, five_step_plan):
        """Test that a completed step cannot be started again."""
        complete_step(five_step_plan, 1, now=NOW)

        with pytest.raises(InvalidTransitionError) as excinfo:
            start_step(five_step_plan, 1, now=NOW)

        error = excinfo.value
        assert error.step_number == 1
        assert error.operation == "start"
        assert error.current == "completed"
        assert error.allowed == ("pending", "blocked")

    def test_unknown_step(self, five_step_plan):
        """Test that an unknown step raises StepNotFoundError."""
        with pytest.raises(StepNotFoundError, match="Step 9 not found"):
            start_step(five_step_plan, 9)

    def test_start_resolves_blockers(self, five_step_plan):
        """Test that starting a blocked step resolves its blockers."""
        block_step(five_step_plan, 2, "needs credentials", now=NOW)
        start_step(five_step_plan, 2, now=LATER)

        assert five_step_plan.state.active_blockers() == []
        assert five_step_plan.state.blockers[0].resolution == "Step 2 started"


class TestCompleteStep:
    """Test cases for completing steps."""

    def test_complete_advances_current_step(self, five_step_plan):
        """Test that completion moves the current step to the next ready step."""
        start_step(five_step_plan, 1, now=NOW)
        step = complete_step(five_step_plan, 1, notes="done quickly", now=LATER)

        assert step.status is TaskStatus.COMPLETED
        assert step.completed_at == LATER
        assert step.notes == "done quickly"
        state = five_step_plan.state
        assert state.last_completed_step == 1
        assert state.current_step == 2
        assert state.progress == 20

    def test_complete_pending_step(self, five_step_plan):
        """Test completing a step that was never started."""
        step = complete_step(five_step_plan, 1, now=NOW)

        assert step.status is TaskStatus.COMPLETED
        assert step.started_at is None

    def test_complete_without_notes_keeps_existing(self, five_step_plan):
        """Test that an empty note does not clear an existing one."""
        five_step_plan.get_step(1).notes = "earlier"
        complete_step(five_step_plan, 1, now=NOW)
        assert five_step_plan.get_step(1).notes == "earlier"

    def test_complete_blocked_step_fails(self, five_step_plan):
        """Test that a blocked step must be unblocked first."""
        block_step(five_step_plan, 1, "waiting", now=NOW)
        with pytest.raises(InvalidTransitionError):
            complete_step(five_step_plan, 1, now=NOW)

    def test_complete_all_steps(self):
        """Test that completing the last step completes the plan."""
        plan = build_plan({1: [], 2: [1]})
        complete_step(plan, 1, now=NOW)
        complete_step(plan, 2, now=LATER)

        assert plan.state.status is TaskStatus.COMPLETED
        assert plan.state.completed_at == LATER
        assert plan.state.current_step is None
        assert plan.state.progress == 100

    def test_current_step_cleared_when_nothing_is_ready(self):
        """Test that current step is cleared when the completed step was current."""
        plan = build_plan({1: [], 2: [1, 99]})
        start_step(plan, 1, now=NOW)
        complete_step(plan, 1, now=LATER)

        assert plan.state.current_step is None
        assert plan.state.status is TaskStatus.IN_PROGRESS


class TestBlockAndUnblock:
    """Test cases for blocking steps."""

    def test_block_records_blocker(self, five_step_plan):
        """Test that blocking records a plan-level blocker."""
        step = block_step(five_step_plan, 2, "waiting on review", severity="high", now=NOW)

        assert step.status is TaskStatus.BLOCKED
        blocker = five_step_plan.state.blockers[0]
        assert blocker.id == "blocker-1"
        assert blocker.description == "waiting on review"
        assert blocker.severity == "high"
        assert blocker.affected_steps == [2]
        assert blocker.created_at == NOW

    def test_block_unknown_severity(self, five_step_plan):
        """Test that an unknown severity is rejected before any change."""
        with pytest.raises(ValueError, match="Unknown severity"):
            block_step(five_step_plan, 2, "why", severity="urgent")

        assert five_step_plan.get_step(2).status is TaskStatus.PENDING
        assert five_step_plan.state.blockers == []

    def test_block_completed_step_fails(self, five_step_plan):
        """Test that finished work cannot be blocked."""
        complete_step(five_step_plan, 1, now=NOW)
        with pytest.raises(InvalidTransitionError):
            block_step(five_step_plan, 1, "late")

    def test_unblock_returns_to_pending(self, five_step_plan):
        """Test that an unstarted step goes back to pending."""
        block_step(five_step_plan, 2, "waiting", now=NOW)
        step = unblock_step(five_step_plan, 2, now=LATER)

        assert step.status is TaskStatus.PENDING
        assert five_step_plan.state.blockers[0].is_resolved

    def test_unblock_returns_to_in_progress(self, five_step_plan):
        """Test that a started step resumes."""
        start_step(five_step_plan, 1, now=NOW)
        block_step(five_step_plan, 1, "waiting", now=NOW)
        step = unblock_step(five_step_plan, 1, now=LATER)

        assert step.status is TaskStatus.IN_PROGRESS

    def test_unblock_restores_failed(self, five_step_plan):
        """Test that blocking a failed step and unblocking it keeps the failure."""
        start_step(five_step_plan, 1, now=NOW)
        fail_step(five_step_plan, 1, reason="tests broke", now=NOW)
        block_step(five_step_plan, 1, "waiting on a fix upstream", now=NOW)

        assert five_step_plan.state.blockers[0].resume_status is TaskStatus.FAILED

        step = unblock_step(five_step_plan, 1, now=LATER)

        assert step.status is TaskStatus.FAILED
        assert five_step_plan.state.issues[0].step == 1

    def test_reblocking_keeps_first_status(self, five_step_plan):
        """Test that a second blocker resumes to the status before the first one."""
        start_step(five_step_plan, 1, now=NOW)
        block_step(five_step_plan, 1, "first", now=NOW)
        block_step(five_step_plan, 1, "second", now=NOW)

        assert [b.resume_status for b in five_step_plan.state.blockers] == [
            TaskStatus.IN_PROGRESS,
            TaskStatus.IN_PROGRESS,
        ]
        assert unblock_step(five_step_plan, 1, now=LATER).status is TaskStatus.IN_PROGRESS
        assert five_step_plan.state.active_blockers() == []

    def test_unblock_without_recorded_status(self, five_step_plan):
        """Test the fallback for blockers that carry no resume status."""
        block_step(five_step_plan, 2, "waiting", now=NOW)
        five_step_plan.state.blockers[0].resume_status = None
        five_step_plan.get_step(2).started_at = NOW

        assert unblock_step(five_step_plan, 2, now=LATER).status is TaskStatus.IN_PROGRESS

    def test_unblock_requires_blocked(self, five_step_plan):
        """Test that only blocked steps can be unblocked."""
        with pytest.raises(InvalidTransitionError) as excinfo:
            unblock_step(five_step_plan, 1)
        assert excinfo.value.allowed == ("blocked",)


class TestSkipAndFail:
    """Test cases for skipping and failing steps."""

    def test_skip_satisfies_dependents(self, five_step_plan):
        """Test that a skipped step counts as done for its dependents."""
        start_step(five_step_plan, 1, now=NOW)
        step = skip_step(five_step_plan, 1, reason="not needed", now=LATER)

        assert step.status is TaskStatus.SKIPPED
        assert step.notes == "not needed"
        assert five_step_plan.state.current_step == 2
        assert five_step_plan.state.progress == 0

    def test_skip_completed_step_fails(self, five_step_plan):
        """Test that completed work cannot be skipped."""
        complete_step(five_step_plan, 1, now=NOW)
        with pytest.raises(InvalidTransitionError):
            skip_step(five_step_plan, 1)

    def test_all_skipped_completes_plan(self):
        """Test that a plan of skipped steps is completed with zero progress."""
        plan = build_plan({1: [], 2: []})
        skip_step(plan, 1, now=NOW)
        skip_step(plan, 2, now=NOW)

        assert plan.state.status is TaskStatus.COMPLETED
        assert plan.state.progress == 0

    def test_fail_records_issue(self, five_step_plan):
        """Test that failing records a high severity issue."""
        start_step(five_step_plan, 1, now=NOW)
        step = fail_step(five_step_plan, 1, reason="tests broke", now=LATER)

        assert step.status is TaskStatus.FAILED
        issue = five_step_plan.state.issues[0]
        assert issue.id == "issue-1"
        assert issue.title == "Step 1 failed"
        assert issue.description == "tests broke"
        assert issue.severity == "high"
        assert issue.step == 1

    def test_failed_step_can_be_skipped(self, five_step_plan):
        """Test that a failed step can still be skipped."""
        fail_step(five_step_plan, 1, now=NOW)
        assert skip_step(five_step_plan, 1, now=NOW).status is TaskStatus.SKIPPED


class TestRefreshPlanState:
    """Test cases for aggregate plan state."""

    def test_untouched_plan_is_pending(self, five_step_plan):
        """Test a plan where nothing has started."""
        refresh_plan_state(five_step_plan, NOW)

        assert five_step_plan.state.status is TaskStatus.PENDING
        assert five_step_plan.state.progress == 0

    def test_started_plan_stays_in_progress(self, five_step_plan):
        """Test that a started plan does not revert to pending."""
        five_step_plan.state.started_at = NOW
        refresh_plan_state(five_step_plan, LATER)

        assert five_step_plan.state.status is TaskStatus.IN_PROGRESS
        assert five_step_plan.state.started_at == NOW

    def test_empty_plan(self):
        """Test that a plan without steps is pending, not completed."""
        plan = build_plan({})
        refresh_plan_state(plan, NOW)

        assert plan.state.status is TaskStatus.PENDING
        assert plan.state.progress == 0

    def test_progress_matches_completed_steps(self, five_step_plan):
        """Test progress after each completion."""
        expected = {1: 20, 2: 40, 3: 60, 4: 80, 5: 100}
        for number in range(1, 6):
            complete_step(five_step_plan, number, now=NOW)
            assert five_step_plan.state.progress == expected[number]

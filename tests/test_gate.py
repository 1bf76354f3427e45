"""Tests for the trigger gate: stage eligibility, ordering and fail-fast."""

import pytest

from shipyard.exceptions import StageTransitionError
from shipyard.models.entities import RunStatus, StageStatus, StageType, TriggerKind
from shipyard.pipeline.gate import (
    STAGE_ORDER,
    TriggerEvent,
    TriggerPolicy,
    check_transition,
    eligible_stages,
    next_step,
    plan_stages,
)

SHA = "1a2b3c4d5e6f708192a3b4c5d6e7f8091a2b3c4d"
POLICY = TriggerPolicy()

P = StageStatus.PENDING
R = StageStatus.RUNNING
S = StageStatus.SUCCEEDED
F = StageStatus.FAILED
K = StageStatus.SKIPPED


def statuses(test, build, scan, deploy) -> dict[StageType, StageStatus]:
    return dict(zip(STAGE_ORDER, (test, build, scan, deploy), strict=True))


# ──────────────────────────────────────────────
# Eligibility
# ──────────────────────────────────────────────


class TestEligibleStages:
    def test_push_to_main_runs_everything(self) -> None:
        event = TriggerEvent(TriggerKind.PUSH, "main", SHA)

        assert eligible_stages(event, POLICY) == set(STAGE_ORDER)

    def test_push_to_develop_does_not_deploy(self) -> None:
        event = TriggerEvent(TriggerKind.PUSH, "develop", SHA)

        assert eligible_stages(event, POLICY) == {
            StageType.TEST,
            StageType.BUILD,
            StageType.SECURITY_SCAN,
        }

    def test_feature_branch_push_only_tests(self) -> None:
        event = TriggerEvent(TriggerKind.PUSH, "feature/login", SHA)

        assert eligible_stages(event, POLICY) == {StageType.TEST}

    @pytest.mark.parametrize("branch", ["main", "develop", "feature/login"])
    def test_pull_request_only_tests(self, branch: str) -> None:
        """Pull requests never build, scan or deploy, whatever the branch."""
        event = TriggerEvent(TriggerKind.PULL_REQUEST, branch, SHA)

        assert eligible_stages(event, POLICY) == {StageType.TEST}

    def test_custom_policy(self) -> None:
        policy = TriggerPolicy(primary_branch="trunk", build_branches=frozenset({"trunk"}))

        assert StageType.DEPLOY in eligible_stages(TriggerEvent(TriggerKind.PUSH, "trunk", SHA), policy)
        assert eligible_stages(TriggerEvent(TriggerKind.PUSH, "main", SHA), policy) == {StageType.TEST}

    def test_plan_marks_ineligible_stages_skipped(self) -> None:
        plan = plan_stages(TriggerEvent(TriggerKind.PULL_REQUEST, "feat", SHA), POLICY)

        assert plan == statuses(P, K, K, K)


# ──────────────────────────────────────────────
# Next step
# ──────────────────────────────────────────────


class TestNextStep:
    def test_starts_with_test(self) -> None:
        step = next_step(statuses(P, P, P, P))

        assert step.start == StageType.TEST
        assert step.skip == []
        assert not step.finished

    def test_waits_while_a_stage_runs(self) -> None:
        step = next_step(statuses(R, P, P, P))

        assert step.start is None
        assert step.skip == []
        assert not step.finished

    @pytest.mark.parametrize(
        ("current", "expected"),
        [
            (statuses(S, P, P, P), StageType.BUILD),
            (statuses(S, S, P, P), StageType.SECURITY_SCAN),
            (statuses(S, S, S, P), StageType.DEPLOY),
        ],
    )
    def test_sequential_order(self, current, expected) -> None:
        assert next_step(current).start == expected

    def test_failed_test_skips_everything_downstream(self) -> None:
        """A failed Test stage prevents any Build from starting."""
        step = next_step(statuses(F, P, P, P))

        assert step.start is None
        assert step.skip == [StageType.BUILD, StageType.SECURITY_SCAN, StageType.DEPLOY]
        assert step.run_status == RunStatus.FAILED

    def test_failed_scan_blocks_deploy(self) -> None:
        step = next_step(statuses(S, S, F, P))

        assert step.start is None
        assert step.skip == [StageType.DEPLOY]
        assert step.run_status == RunStatus.FAILED

    def test_failed_build_blocks_scan_and_deploy(self) -> None:
        step = next_step(statuses(S, F, P, P))

        assert step.skip == [StageType.SECURITY_SCAN, StageType.DEPLOY]
        assert step.run_status == RunStatus.FAILED

    def test_pull_request_run_finishes_after_test(self) -> None:
        step = next_step(statuses(S, K, K, K))

        assert step.start is None
        assert step.skip == []
        assert step.run_status == RunStatus.SUCCEEDED

    def test_skipped_deploy_still_succeeds(self) -> None:
        """No deploy target configured: the run is still a success."""
        step = next_step(statuses(S, S, S, K))

        assert step.run_status == RunStatus.SUCCEEDED

    def test_cancelled_run_waits_for_running_stage(self) -> None:
        step = next_step(statuses(S, R, P, P), cancelled=True)

        assert step.start is None
        assert step.skip == [StageType.SECURITY_SCAN, StageType.DEPLOY]
        assert not step.finished

    def test_cancelled_run_finishes_once_idle(self) -> None:
        step = next_step(statuses(S, S, P, P), cancelled=True)

        assert step.start is None
        assert step.skip == [StageType.SECURITY_SCAN, StageType.DEPLOY]
        assert step.run_status == RunStatus.CANCELLED

    def test_deploy_never_starts_unless_build_and_scan_succeeded(self) -> None:
        for build in (P, R, F, K):
            for scan in (P, R, F, K):
                step = next_step(statuses(S, build, scan, P))
                assert step.start != StageType.DEPLOY


# ──────────────────────────────────────────────
# Transition guard
# ──────────────────────────────────────────────


class TestCheckTransition:
    def test_allows_start_when_dependencies_succeeded(self) -> None:
        check_transition(StageType.DEPLOY, R, statuses(S, S, S, P))

    def test_refuses_deploy_without_scan(self) -> None:
        with pytest.raises(StageTransitionError, match="security_scan"):
            check_transition(StageType.DEPLOY, R, statuses(S, S, F, P))

    def test_refuses_build_after_failed_test(self) -> None:
        with pytest.raises(StageTransitionError):
            check_transition(StageType.BUILD, R, statuses(F, P, P, P))

    def test_allows_failing_without_dependencies(self) -> None:
        check_transition(StageType.BUILD, F, statuses(S, R, P, P))
        check_transition(StageType.DEPLOY, K, statuses(F, K, K, P))

    def test_terminal_stage_cannot_reopen(self) -> None:
        with pytest.raises(StageTransitionError, match="already succeeded"):
            check_transition(StageType.TEST, R, statuses(S, P, P, P))

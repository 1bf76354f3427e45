"""Trigger gate: which stages may run, and what runs next.

Pure functions over plain values, no database and no I/O. The webhook
handler uses ``plan_stages`` when a run is created; the
``advance_pipeline`` task uses ``next_step`` after every stage
transition; ``check_transition`` guards every status write.

Stage graph:

    test ──► build ──► security_scan ──► deploy
                 └────────────────────────▲
"""

from collections.abc import Mapping
from dataclasses import dataclass, field

from shipyard.exceptions import StageTransitionError
from shipyard.models.entities import RunStatus, StageStatus, StageType, TriggerKind

STAGE_ORDER: tuple[StageType, ...] = (
    StageType.TEST,
    StageType.BUILD,
    StageType.SECURITY_SCAN,
    StageType.DEPLOY,
)

DEPENDENCIES: dict[StageType, tuple[StageType, ...]] = {
    StageType.TEST: (),
    StageType.BUILD: (StageType.TEST,),
    StageType.SECURITY_SCAN: (StageType.BUILD,),
    StageType.DEPLOY: (StageType.BUILD, StageType.SECURITY_SCAN),
}

TERMINAL_STATUSES = frozenset({StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED})


@dataclass(frozen=True)
class TriggerEvent:
    """A source-control event: push to a branch, or pull-request update."""

    kind: TriggerKind
    branch: str
    commit_sha: str


@dataclass(frozen=True)
class TriggerPolicy:
    primary_branch: str = "main"
    build_branches: frozenset[str] = frozenset({"main", "develop"})

    @classmethod
    def from_settings(cls, settings) -> "TriggerPolicy":
        return cls(
            primary_branch=settings.primary_branch,
            build_branches=frozenset(settings.build_branches),
        )


@dataclass
class NextStep:
    """What ``advance_pipeline`` should do now.

    start: the stage to dispatch, if any.
    skip: pending stages that can no longer run.
    run_status: set once every stage is terminal (or the run was cancelled).
    """

    start: StageType | None = None
    skip: list[StageType] = field(default_factory=list)
    run_status: RunStatus | None = None

    @property
    def finished(self) -> bool:
        return self.run_status is not None


def eligible_stages(event: TriggerEvent, policy: TriggerPolicy) -> set[StageType]:
    """Stages allowed to run for this event, before any of them executes."""
    stages = {StageType.TEST}

    is_push = event.kind == TriggerKind.PUSH
    if is_push and event.branch in policy.build_branches:
        stages.add(StageType.BUILD)
        stages.add(StageType.SECURITY_SCAN)
        if event.branch == policy.primary_branch:
            stages.add(StageType.DEPLOY)

    return stages


def plan_stages(event: TriggerEvent, policy: TriggerPolicy) -> dict[StageType, StageStatus]:
    """Initial status of every stage for a new run."""
    eligible = eligible_stages(event, policy)
    return {
        stage: StageStatus.PENDING if stage in eligible else StageStatus.SKIPPED
        for stage in STAGE_ORDER
    }


def _final_status(statuses: Mapping[StageType, StageStatus]) -> RunStatus:
    if any(status == StageStatus.FAILED for status in statuses.values()):
        return RunStatus.FAILED
    return RunStatus.SUCCEEDED


def next_step(
    statuses: Mapping[StageType, StageStatus],
    *,
    cancelled: bool = False,
) -> NextStep:
    """Decide the next action from the current stage statuses.

    Stages run one at a time in STAGE_ORDER. A pending stage starts when all
    of its dependencies succeeded, and is skipped as soon as one of them
    failed or was skipped. A cancelled run skips everything still pending
    and only finishes once no stage is running.
    """
    current = dict(statuses)
    step = NextStep()

    if any(status == StageStatus.RUNNING for status in current.values()):
        if cancelled:
            step.skip = [s for s in STAGE_ORDER if current.get(s) == StageStatus.PENDING]
        return step

    for stage in STAGE_ORDER:
        if current.get(stage) != StageStatus.PENDING:
            continue

        upstream = [current.get(dep, StageStatus.SKIPPED) for dep in DEPENDENCIES[stage]]

        if cancelled or any(s in (StageStatus.FAILED, StageStatus.SKIPPED) for s in upstream):
            step.skip.append(stage)
            current[stage] = StageStatus.SKIPPED
            continue

        if all(s == StageStatus.SUCCEEDED for s in upstream):
            step.start = stage
            return step

        # Upstream still pending: sequential order makes this unreachable
        # unless statuses were edited by hand; wait rather than guess.
        return step

    if cancelled:
        step.run_status = RunStatus.CANCELLED
    else:
        step.run_status = _final_status(current)
    return step


def check_transition(
    stage: StageType,
    new_status: StageStatus,
    statuses: Mapping[StageType, StageStatus],
) -> None:
    """Refuse status writes that would break the dependency ordering.

    Raises StageTransitionError when a stage would start or succeed while
    one of its dependencies has not succeeded, or when a terminal stage
    would be reopened.
    """
    current = statuses.get(stage, StageStatus.PENDING)

    if current in TERMINAL_STATUSES and new_status != current:
        # Terminal stages are final; re-running means a new run.
        raise StageTransitionError(
            f"{stage.value} is already {current.value}, cannot move to {new_status.value}"
        )

    if new_status in (StageStatus.RUNNING, StageStatus.SUCCEEDED):
        blocked = [
            dep.value
            for dep in DEPENDENCIES[stage]
            if statuses.get(dep) != StageStatus.SUCCEEDED
        ]
        if blocked:
            raise StageTransitionError(
                f"{stage.value} cannot be {new_status.value}: "
                f"{', '.join(blocked)} not succeeded"
            )

"""Data model package

Allow to import with:
    from shipyard.models import PipelineRun, RunStatus
instead of :
    from shipyard.models.entities import PipelineRun, RunStatus
"""

from shipyard.models.entities import (
    Base,
    BuildJob,
    ContainerImage,
    Deployment,
    DeployOutcome,
    Event,
    EventType,
    Finding,
    ImageTag,
    PipelineRun,
    RunStatus,
    Severity,
    StageResult,
    StageStatus,
    StageType,
    TriggerKind,
    VulnerabilityReport,
)

__all__ = [
    "Base",
    "BuildJob",
    "ContainerImage",
    "Deployment",
    "DeployOutcome",
    "Event",
    "EventType",
    "Finding",
    "ImageTag",
    "PipelineRun",
    "RunStatus",
    "Severity",
    "StageResult",
    "StageStatus",
    "StageType",
    "TriggerKind",
    "VulnerabilityReport",
]

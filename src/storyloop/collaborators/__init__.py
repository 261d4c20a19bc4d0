from storyloop.collaborators.base import (
    AgentSessionClient,
    ExternalTrackerWriteback,
    ModelParams,
    QualityGateRunner,
    SnapshotRef,
    VersionControlAdapter,
)

__all__ = [
    "AgentSessionClient",
    "ExternalTrackerWriteback",
    "ModelParams",
    "QualityGateRunner",
    "SnapshotRef",
    "VersionControlAdapter",
]

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional


class StoryPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class StoryStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class LoopStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_LOOP_STATUSES


ACTIVE_LOOP_STATUSES = frozenset({LoopStatus.RUNNING, LoopStatus.PAUSED})
TERMINAL_LOOP_STATUSES = frozenset(
    {LoopStatus.COMPLETED, LoopStatus.FAILED, LoopStatus.CANCELLED}
)


class LoopAction(str, Enum):
    STARTED = "started"
    SNAPSHOT = "snapshot"
    QUALITY_CHECK = "quality_check"
    PASSED = "passed"
    FAILED = "failed"
    COMMITTED = "committed"
    SKIPPED = "skipped"
    LEARNING = "learning"


class QualityCheckType(str, Enum):
    TYPECHECK = "typecheck"
    LINT = "lint"
    TEST = "test"
    BUILD = "build"
    CUSTOM = "custom"


@dataclass
class QualityCheckConfig:
    id: str
    name: str
    command: str
    type: QualityCheckType = QualityCheckType.CUSTOM
    timeout_seconds: float = 300.0
    required: bool = True
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QualityCheckConfig":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            command=str(data["command"]),
            type=QualityCheckType(data.get("type") or QualityCheckType.CUSTOM.value),
            timeout_seconds=float(data.get("timeout_seconds", 300.0)),
            required=bool(data.get("required", True)),
            enabled=bool(data.get("enabled", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["type"] = self.type.value
        return payload


@dataclass
class QualityCheckResult:
    check_id: str
    check_name: str
    check_type: QualityCheckType
    passed: bool
    required: bool = True
    output: str = ""
    duration_ms: int = 0
    exit_code: Optional[int] = None

    @property
    def blocking(self) -> bool:
        """A failed required check blocks acceptance of the item."""
        return self.required and not self.passed

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QualityCheckResult":
        return cls(
            check_id=str(data["check_id"]),
            check_name=str(data.get("check_name") or data["check_id"]),
            check_type=QualityCheckType(data.get("check_type") or QualityCheckType.CUSTOM.value),
            passed=bool(data["passed"]),
            required=bool(data.get("required", True)),
            output=str(data.get("output") or ""),
            duration_ms=int(data.get("duration_ms") or 0),
            exit_code=data.get("exit_code"),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["check_type"] = self.check_type.value
        return payload


@dataclass
class LoopConfig:
    max_iterations: int = 50
    max_attempts_per_item: int = 3
    max_fix_up_attempts: int = 2
    model: str = "sonnet"
    effort: str = "medium"
    auto_snapshot: bool = True
    auto_commit: bool = True
    pause_on_failure: bool = False
    quality_checks: list[QualityCheckConfig] = field(default_factory=list)
    system_prompt_override: Optional[str] = None

    def enabled_checks(self) -> list[QualityCheckConfig]:
        return [check for check in self.quality_checks if check.enabled]

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "LoopConfig":
        data = dict(data or {})
        checks = [
            check if isinstance(check, QualityCheckConfig) else QualityCheckConfig.from_dict(check)
            for check in data.pop("quality_checks", None) or []
        ]
        known = {name for name in cls.__dataclass_fields__ if name != "quality_checks"}
        kwargs = {key: value for key, value in data.items() if key in known}
        return cls(quality_checks=checks, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["quality_checks"] = [check.to_dict() for check in self.quality_checks]
        return payload


@dataclass
class ExternalRef:
    provider: str
    external_id: str
    url: Optional[str] = None
    synced_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> Optional["ExternalRef"]:
        if not data:
            return None
        return cls(
            provider=str(data["provider"]),
            external_id=str(data["external_id"]),
            url=data.get("url"),
            synced_at=data.get("synced_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class WorkGroup:
    id: str
    name: str
    workspace_path: str
    description: str = ""
    created_at: Optional[str] = None


@dataclass
class WorkItem:
    id: str
    title: str
    description: str = ""
    group_id: Optional[str] = None
    workspace_path: Optional[str] = None
    acceptance_criteria: list[str] = field(default_factory=list)
    priority: StoryPriority = StoryPriority.MEDIUM
    depends_on: list[str] = field(default_factory=list)
    status: StoryStatus = StoryStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    research_only: bool = False
    learnings: list[str] = field(default_factory=list)
    external_ref: Optional[ExternalRef] = None
    session_id: Optional[str] = None
    commit_sha: Optional[str] = None
    sort_order: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["priority"] = self.priority.value
        payload["status"] = self.status.value
        payload["external_ref"] = self.external_ref.to_dict() if self.external_ref else None
        return payload


@dataclass
class IterationLogEntry:
    iteration: int
    item_id: str
    item_title: str
    action: LoopAction
    detail: str = ""
    timestamp: Optional[str] = None
    quality_results: Optional[list[QualityCheckResult]] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "item_id": self.item_id,
            "item_title": self.item_title,
            "action": self.action.value,
            "detail": self.detail,
            "timestamp": self.timestamp,
            "quality_results": (
                [result.to_dict() for result in self.quality_results]
                if self.quality_results is not None
                else None
            ),
        }


@dataclass
class LoopScope:
    """Which items a loop works on: a group, or a bare workspace."""

    workspace_path: str
    group_id: Optional[str] = None


@dataclass
class LoopRecord:
    id: str
    workspace_path: str
    status: LoopStatus
    config: LoopConfig
    group_id: Optional[str] = None
    current_iteration: int = 0
    current_item_id: Optional[str] = None
    current_agent_id: Optional[str] = None
    started_at: Optional[str] = None
    paused_at: Optional[str] = None
    completed_at: Optional[str] = None
    last_heartbeat_at: Optional[str] = None
    total_items_completed: int = 0
    total_items_failed: int = 0
    total_iterations: int = 0
    status_message: Optional[str] = None
    iteration_log: list[IterationLogEntry] = field(default_factory=list)

    @property
    def scope(self) -> LoopScope:
        return LoopScope(workspace_path=self.workspace_path, group_id=self.group_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "workspace_path": self.workspace_path,
            "status": self.status.value,
            "config": self.config.to_dict(),
            "current_iteration": self.current_iteration,
            "current_item_id": self.current_item_id,
            "current_agent_id": self.current_agent_id,
            "started_at": self.started_at,
            "paused_at": self.paused_at,
            "completed_at": self.completed_at,
            "last_heartbeat_at": self.last_heartbeat_at,
            "total_items_completed": self.total_items_completed,
            "total_items_failed": self.total_items_failed,
            "total_iterations": self.total_iterations,
            "status_message": self.status_message,
            "iteration_log": [entry.to_dict() for entry in self.iteration_log],
        }


@dataclass
class FixUpState:
    """In-place repair progress for one item within its current attempt."""

    sub_attempts: int = 0
    last_results: list[QualityCheckResult] = field(default_factory=list)


@dataclass
class AgentNote:
    """Markdown report written after each story attempt, completed or failed."""

    id: str
    loop_id: str
    item_id: str
    workspace_path: str
    outcome: StoryStatus
    title: str
    content: str
    session_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "loop_id": self.loop_id,
            "item_id": self.item_id,
            "workspace_path": self.workspace_path,
            "outcome": self.outcome.value,
            "title": self.title,
            "content": self.content,
            "session_id": self.session_id,
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
        }

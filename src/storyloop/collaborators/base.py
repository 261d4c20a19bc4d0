from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

from storyloop.models import ExternalRef, QualityCheckConfig, QualityCheckResult


@dataclass(frozen=True)
class ModelParams:
    model: str = "sonnet"
    effort: str = "medium"
    system_prompt: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SnapshotRef:
    head_sha: Optional[str] = None
    stash_sha: Optional[str] = None

    def describe(self) -> str:
        parts = []
        if self.head_sha:
            parts.append(f"HEAD {self.head_sha[:12]}")
        if self.stash_sha:
            parts.append(f"stash {self.stash_sha[:12]}")
        return ", ".join(parts) or "empty snapshot"


class AgentSessionClient(ABC):
    @abstractmethod
    async def create_session(self, workspace_path: str, model_params: ModelParams) -> str:
        raise NotImplementedError

    @abstractmethod
    def send_prompt(self, session_id: str, text: str) -> AsyncIterator[str]:
        """Stream the agent's text output for one prompt."""
        raise NotImplementedError

    async def close_session(self, session_id: str) -> None:
        return None


class QualityGateRunner(ABC):
    @abstractmethod
    async def run(
        self, checks: list[QualityCheckConfig], workspace_path: str
    ) -> list[QualityCheckResult]:
        raise NotImplementedError


class VersionControlAdapter(ABC):
    @abstractmethod
    async def is_dirty(self, workspace_path: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def snapshot(self, workspace_path: str) -> SnapshotRef:
        raise NotImplementedError

    @abstractmethod
    async def revert_to_clean(self, workspace_path: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def commit(self, workspace_path: str, message: str) -> Optional[str]:
        """Commit everything and return the new sha, or None if nothing changed."""
        raise NotImplementedError


class ExternalTrackerWriteback(ABC):
    @abstractmethod
    async def push_status(
        self, ref: ExternalRef, outcome: str, metadata: dict[str, Any]
    ) -> None:
        raise NotImplementedError

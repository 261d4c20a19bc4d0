import asyncio
import os
import re
from collections import defaultdict, deque
from typing import Any, Optional

import pytest

os.environ["SL_DISABLE_LOGFIRE"] = "1"
os.environ["LOGFIRE_TOKEN"] = ""
os.environ["LOGFIRE_WRITE_TOKEN"] = ""
os.environ["SL_DISABLE_STARTUP_RECOVERY"] = "1"

from storyloop.collaborators.base import (  # noqa: E402
    AgentSessionClient,
    ExternalTrackerWriteback,
    ModelParams,
    QualityGateRunner,
    SnapshotRef,
    VersionControlAdapter,
)
from storyloop.collaborators.trackers import TrackerRegistry  # noqa: E402
from storyloop.durable import loops as loop_store  # noqa: E402
from storyloop.durable import work_items as item_store  # noqa: E402
from storyloop.durable.db import connect_loop_db  # noqa: E402
from storyloop.errors import AgentTransportError  # noqa: E402
from storyloop.events import LoopEventBus  # noqa: E402
from storyloop.feature_flags import RunnerTimings  # noqa: E402
from storyloop.models import (  # noqa: E402
    ExternalRef,
    LoopConfig,
    LoopRecord,
    LoopScope,
    QualityCheckConfig,
    QualityCheckResult,
    QualityCheckType,
    StoryPriority,
    WorkItem,
)
from storyloop.orchestrator import LoopOrchestrator  # noqa: E402
from storyloop.runner import LoopRunner, RunnerDependencies  # noqa: E402

WORKSPACE = "/tmp/storyloop-ws"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow running")
    config.addinivalue_line("markers", "integration: marks tests requiring external tools")


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------


class FakeWorkspace:
    """Shared state the fake agent, gate and VCS act on."""

    def __init__(self) -> None:
        self.broken = False
        self.dirty = False
        self.revert_calls = 0
        self.commits: list[str] = []
        self.snapshots = 0


_TITLE_RE = re.compile(r"^## User Story: (.+)$", re.MULTILINE)


class FakeAgent(AgentSessionClient):
    """Scripted agent. Behaviours are queued per story title.

    ``ok`` leaves a clean build, ``broken`` leaves a failing build, ``error``
    raises a transport error, ``hang`` never returns output, ``partial`` emits
    one chunk and then hangs, ``block`` waits for ``release`` to be set.
    """

    def __init__(self, workspace: FakeWorkspace) -> None:
        self.workspace = workspace
        self.scripts: dict[str, deque[str]] = defaultdict(deque)
        self.default = "ok"
        self.prompts: list[tuple[str, str]] = []
        self.system_prompts: list[Optional[str]] = []
        self.release = asyncio.Event()
        self.started = asyncio.Event()
        self._counter = 0

    def script(self, title: str, *behaviours: str) -> None:
        self.scripts[title].extend(behaviours)

    async def create_session(self, workspace_path: str, model_params: ModelParams) -> str:
        self._counter += 1
        self.system_prompts.append(model_params.system_prompt)
        return f"session-{self._counter}"

    async def send_prompt(self, session_id: str, text: str):
        match = _TITLE_RE.search(text)
        title = match.group(1).strip() if match else ""
        self.prompts.append((title, text))
        queue = self.scripts.get(title)
        behaviour = queue.popleft() if queue else self.default
        self.started.set()
        if behaviour == "error":
            raise AgentTransportError("connection reset by peer")
        if behaviour == "hang":
            await asyncio.sleep(3600)
        if behaviour == "partial":
            yield "partial work"
            await asyncio.sleep(3600)
        if behaviour == "block":
            await self.release.wait()
        self.workspace.dirty = True
        self.workspace.broken = behaviour == "broken"
        yield f"Implemented {title}"

    def prompts_for(self, title: str) -> list[str]:
        return [text for prompt_title, text in self.prompts if prompt_title == title]


class FakeGate(QualityGateRunner):
    def __init__(self, workspace: FakeWorkspace) -> None:
        self.workspace = workspace
        self.runs = 0
        self.crash_next = False

    async def run(self, checks: list[QualityCheckConfig], workspace_path: str) -> list[QualityCheckResult]:
        self.runs += 1
        if self.crash_next:
            self.crash_next = False
            raise RuntimeError("quality gate exploded")
        results = []
        for check in checks:
            if not check.enabled:
                continue
            passed = not self.workspace.broken
            results.append(
                QualityCheckResult(
                    check_id=check.id,
                    check_name=check.name,
                    check_type=check.type,
                    passed=passed,
                    required=check.required,
                    output="" if passed else "src/app.py:3: error: name 'x' is not defined",
                    duration_ms=5,
                    exit_code=0 if passed else 1,
                )
            )
        return results


class FakeVcs(VersionControlAdapter):
    def __init__(self, workspace: FakeWorkspace) -> None:
        self.workspace = workspace
        self.fail_dirty_check = False

    async def is_dirty(self, workspace_path: str) -> bool:
        if self.fail_dirty_check:
            raise RuntimeError("git not installed")
        return self.workspace.dirty

    async def snapshot(self, workspace_path: str) -> SnapshotRef:
        self.workspace.snapshots += 1
        return SnapshotRef(head_sha="a" * 40)

    async def revert_to_clean(self, workspace_path: str) -> None:
        self.workspace.revert_calls += 1
        self.workspace.broken = False
        self.workspace.dirty = False

    async def commit(self, workspace_path: str, message: str) -> Optional[str]:
        if not self.workspace.dirty:
            return None
        self.workspace.dirty = False
        self.workspace.commits.append(message)
        return f"{len(self.workspace.commits):040d}"


class FakeTracker(ExternalTrackerWriteback):
    def __init__(self) -> None:
        self.pushes: list[tuple[str, str, dict[str, Any]]] = []

    async def push_status(self, ref: ExternalRef, outcome: str, metadata: dict[str, Any]) -> None:
        self.pushes.append((ref.external_id, outcome, metadata))


class Harness:
    def __init__(self, conn) -> None:
        self.conn = conn
        self.workspace = FakeWorkspace()
        self.agent = FakeAgent(self.workspace)
        self.gate = FakeGate(self.workspace)
        self.vcs = FakeVcs(self.workspace)
        self.tracker = FakeTracker()
        self.trackers = TrackerRegistry()
        self.trackers.register("jira", self.tracker)
        self.bus = LoopEventBus()

    @property
    def deps(self) -> RunnerDependencies:
        return RunnerDependencies(
            agent=self.agent,
            quality_gate=self.gate,
            vcs=self.vcs,
            trackers=self.trackers,
        )

    def orchestrator(self, timings: Optional[RunnerTimings] = None) -> LoopOrchestrator:
        return LoopOrchestrator(self.conn, self.deps, bus=self.bus, timings=timings or fast_timings())

    def runner(
        self,
        config: Optional[LoopConfig] = None,
        *,
        scope: Optional[LoopScope] = None,
        timings: Optional[RunnerTimings] = None,
        loop_id: str = "loop_test",
    ) -> LoopRunner:
        record = loop_store.insert_loop(
            self.conn, loop_id, scope or LoopScope(workspace_path=WORKSPACE), config or loop_config()
        )
        return LoopRunner(self.conn, record, self.deps, self.bus, timings or fast_timings())

    async def run_loop(self, config: Optional[LoopConfig] = None, **kwargs: Any) -> LoopRecord:
        """Run a loop to its end and return the stored record."""
        runner = self.runner(config, **kwargs)
        await asyncio.wait_for(runner.run(), timeout=10)
        return loop_store.get_loop(self.conn, runner.loop_id)

    def log_details(self, loop_id: str = "loop_test") -> list[str]:
        return [entry.detail for entry in loop_store.list_iteration_entries(self.conn, loop_id)]


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


def fast_timings(**overrides) -> RunnerTimings:
    values = dict(
        heartbeat_interval_seconds=0.05,
        heartbeat_stale_seconds=90.0,
        zombie_sweep_interval_seconds=3600.0,
        agent_timeout_seconds=0.2,
        iteration_delay_seconds=0.0,
        selection_retry_delay_seconds=0.0,
        selection_error_delay_seconds=0.0,
        empty_scope_retry_delay_seconds=0.0,
        empty_scope_retries=3,
        selection_retry_limit=5,
    )
    values.update(overrides)
    return RunnerTimings(**values)


def check(check_id: str = "typecheck", required: bool = True) -> QualityCheckConfig:
    return QualityCheckConfig(
        id=check_id,
        name=check_id,
        command="true",
        type=QualityCheckType.TYPECHECK,
        required=required,
    )


def loop_config(**overrides) -> LoopConfig:
    values: dict[str, Any] = dict(quality_checks=[check()], max_iterations=50)
    values.update(overrides)
    return LoopConfig(**values)


def add_item(
    conn,
    item_id: str,
    *,
    title: Optional[str] = None,
    workspace: str = WORKSPACE,
    group_id: Optional[str] = None,
    priority: StoryPriority = StoryPriority.MEDIUM,
    depends_on: Optional[list[str]] = None,
    sort_order: int = 0,
    **fields: Any,
) -> WorkItem:
    item = WorkItem(
        id=item_id,
        title=title or item_id,
        description=f"Implement {item_id}",
        group_id=group_id,
        workspace_path=None if group_id else workspace,
        acceptance_criteria=[f"{item_id} works"],
        priority=priority,
        depends_on=depends_on or [],
        sort_order=sort_order,
        **fields,
    )
    return item_store.insert_work_item(conn, item)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def conn():
    connection = connect_loop_db(":memory:")
    yield connection
    connection.close()


@pytest.fixture
def harness(conn):
    return Harness(conn)


@pytest.fixture
def temp_workspace(tmp_path):
    """Create temporary workspace directory for tests."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace

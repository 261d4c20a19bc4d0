"""Process-wide owner of loop runners.

The orchestrator is created once at startup (see ``build_orchestrator``) and
handed to the HTTP layer. It validates start requests, owns the map of live
runners, turns pause/resume/cancel calls into runner signals plus guarded
store transitions, and keeps persisted state honest with a periodic zombie
sweep and a startup recovery pass.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
import uuid
from typing import Iterable, Optional

from storyloop.collaborators.base import VersionControlAdapter
from storyloop.collaborators.claude_agent import ClaudeAgentSessionClient
from storyloop.collaborators.git_adapter import GitVersionControlAdapter
from storyloop.collaborators.quality_gate import SubprocessQualityGateRunner
from storyloop.collaborators.trackers import TrackerRegistry
from storyloop.durable.db import connect_loop_db
from storyloop.durable import loops as loop_store
from storyloop.durable import notes as note_store
from storyloop.durable import work_items as item_store
from storyloop.errors import (
    DirtyWorkspace,
    GroupNotFound,
    LoopNotFound,
    NoEligibleWork,
    PreconditionFailed,
    RunnerUnavailable,
)
from storyloop.events import EventSubscription, LoopEvent, LoopEventBus, LoopEventKind
from storyloop.feature_flags import RunnerTimings, startup_recovery_enabled
from storyloop.models import (
    ACTIVE_LOOP_STATUSES,
    AgentNote,
    LoopConfig,
    LoopRecord,
    LoopScope,
    LoopStatus,
)
from storyloop.runner import (
    ALL_COMPLETED_MESSAGE,
    CANCELLED_MESSAGE,
    LoopRunner,
    RunnerDependencies,
)
from storyloop.selection import describe_stall, is_retryable, is_scope_finished

logger = logging.getLogger(__name__)

RUNNER_LOST_MESSAGE = "Loop runner lost. The loop must be restarted."


class LoopOrchestrator:
    def __init__(
        self,
        conn: sqlite3.Connection,
        deps: RunnerDependencies,
        *,
        bus: Optional[LoopEventBus] = None,
        timings: Optional[RunnerTimings] = None,
    ) -> None:
        self._conn = conn
        self._deps = deps
        self.bus = bus or LoopEventBus()
        self.timings = timings or RunnerTimings.from_env()
        self._runners: dict[str, LoopRunner] = {}
        self._lock = threading.RLock()
        self._stop_event = asyncio.Event()
        self._sweep_task: Optional[asyncio.Task] = None

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    @property
    def vcs(self) -> VersionControlAdapter:
        return self._deps.vcs

    def subscribe(self, loop_id: Optional[str] = None) -> EventSubscription:
        return self.bus.subscribe(loop_id)

    def _emit(self, kind: LoopEventKind, loop_id: str, message: Optional[str] = None) -> None:
        self.bus.publish(LoopEvent(kind=kind, loop_id=loop_id, message=message))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, *, recover: Optional[bool] = None) -> None:
        if recover is None:
            recover = startup_recovery_enabled()
        if recover:
            await self.recover_or_resume_loops()
        self._stop_event.clear()
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "Loop orchestrator started (sweep every %ss)",
            self.timings.zombie_sweep_interval_seconds,
        )

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Stop the sweep and interrupt live runners.

        Interrupted loops keep their persisted status so the next process
        start can recover them.
        """
        self._stop_event.set()
        if self._sweep_task:
            try:
                await asyncio.wait_for(self._sweep_task, timeout=timeout)
            except Exception:
                self._sweep_task.cancel()
            self._sweep_task = None

        with self._lock:
            runners = list(self._runners.values())
            self._runners.clear()
        tasks = [runner.task for runner in runners if runner.task and not runner.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    async def _sweep_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.recover_zombie_loops()
            except Exception as exc:
                logger.exception("Zombie sweep failed: %s", exc)
            await self._sleep_or_stop(self.timings.zombie_sweep_interval_seconds)

    async def _sleep_or_stop(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # ------------------------------------------------------------------
    # Runner map
    # ------------------------------------------------------------------

    def _spawn(self, record: LoopRecord, *, start_paused: bool = False) -> LoopRunner:
        runner = LoopRunner(
            self._conn,
            record,
            self._deps,
            self.bus,
            self.timings,
            start_paused=start_paused,
            on_exit=self._on_runner_exit,
        )
        with self._lock:
            self._runners[record.id] = runner
        runner.start()
        return runner

    def _on_runner_exit(self, loop_id: str, runner: LoopRunner) -> None:
        with self._lock:
            if self._runners.get(loop_id) is runner:
                del self._runners[loop_id]

    def get_runner(self, loop_id: str) -> Optional[LoopRunner]:
        """Return the live runner for a loop, dropping finished ones."""
        with self._lock:
            runner = self._runners.get(loop_id)
            if runner is not None and runner.done:
                del self._runners[loop_id]
                return None
            return runner

    def active_loop_ids(self) -> list[str]:
        with self._lock:
            return [loop_id for loop_id, runner in self._runners.items() if not runner.done]

    async def wait_for_loop(self, loop_id: str, timeout: Optional[float] = None) -> LoopRecord:
        """Wait until the loop's runner exits, then return the stored record."""
        runner = self.get_runner(loop_id)
        if runner is not None:
            await runner.wait(timeout=timeout)
        return self._require(loop_id)

    def _require(self, loop_id: str) -> LoopRecord:
        record = loop_store.get_loop(self._conn, loop_id)
        if record is None:
            raise LoopNotFound(f"Loop not found: {loop_id}")
        return record

    # ------------------------------------------------------------------
    # Control operations
    # ------------------------------------------------------------------

    async def start_loop(
        self,
        workspace_path: Optional[str] = None,
        config: Optional[LoopConfig] = None,
        *,
        group_id: Optional[str] = None,
    ) -> str:
        config = config or LoopConfig()
        if group_id:
            group = item_store.get_group(self._conn, group_id)
            if group is None:
                raise GroupNotFound(f"Group not found: {group_id}")
            workspace_path = workspace_path or group.workspace_path
        if not workspace_path:
            raise PreconditionFailed("A workspace path or group is required to start a loop")

        scope = LoopScope(workspace_path=workspace_path, group_id=group_id)
        open_items = item_store.count_open_items(self._conn, scope)
        if open_items == 0:
            raise NoEligibleWork("No pending stories to work on")

        try:
            dirty = await self._deps.vcs.is_dirty(workspace_path)
        except Exception as exc:
            logger.warning("Could not check workspace state for %s: %s", workspace_path, exc)
            dirty = False
        if dirty:
            raise DirtyWorkspace(
                "Workspace has uncommitted changes. Commit or stash them before "
                "starting a loop."
            )

        loop_id = f"loop_{uuid.uuid4().hex[:12]}"
        record = loop_store.insert_loop(self._conn, loop_id, scope, config)
        logger.info("Starting loop %s for %s (%s open stories)", loop_id, workspace_path, open_items)
        self._emit(LoopEventKind.STARTED, loop_id, f"Loop started with {open_items} open stories")
        self._spawn(record)
        return loop_id

    async def pause_loop(self, loop_id: str) -> LoopRecord:
        record = self._require(loop_id)
        if record.status != LoopStatus.RUNNING:
            return record
        if loop_store.set_loop_paused(self._conn, loop_id):
            runner = self.get_runner(loop_id)
            if runner is not None:
                runner.pause()
            self._emit(LoopEventKind.PAUSED, loop_id, "Loop paused")
        return self._require(loop_id)

    async def resume_loop(self, loop_id: str) -> LoopRecord:
        record = self._require(loop_id)
        if record.status not in ACTIVE_LOOP_STATUSES:
            return record
        runner = self.get_runner(loop_id)
        if runner is None:
            self._fail_zombie(record, RUNNER_LOST_MESSAGE)
            raise RunnerUnavailable(
                f"Loop {loop_id} has no live runner and cannot be resumed; start a new loop"
            )
        if record.status == LoopStatus.PAUSED and loop_store.set_loop_running(self._conn, loop_id):
            self._emit(LoopEventKind.RESUMED, loop_id, "Loop resumed")
        runner.resume()
        return self._require(loop_id)

    async def cancel_loop(self, loop_id: str) -> LoopRecord:
        record = self._require(loop_id)
        if record.status not in ACTIVE_LOOP_STATUSES:
            return record
        runner = self.get_runner(loop_id)
        if runner is not None:
            runner.cancel()
        if loop_store.finalize_loop(self._conn, loop_id, LoopStatus.CANCELLED, CANCELLED_MESSAGE):
            self._emit(LoopEventKind.CANCELLED, loop_id, CANCELLED_MESSAGE)
        if runner is None:
            item_store.reset_in_progress_items(self._conn, record.scope)
        return self._require(loop_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_loop_state(self, loop_id: str) -> LoopRecord:
        record = self._require(loop_id)
        if record.status in ACTIVE_LOOP_STATUSES:
            self.recover_zombie_loops()
            record = self._require(loop_id)
        return record

    def list_loops(
        self,
        status: Optional[Iterable[LoopStatus]] = None,
        limit: int = 50,
    ) -> list[LoopRecord]:
        statuses = [LoopStatus(value) for value in (status or [])]
        if not statuses or any(value in ACTIVE_LOOP_STATUSES for value in statuses):
            self.recover_zombie_loops()
        return loop_store.list_loops(self._conn, statuses or None, limit=limit)

    def list_agent_notes(self, loop_id: str, item_id: Optional[str] = None) -> list[AgentNote]:
        self._require(loop_id)
        return note_store.list_agent_notes(self._conn, loop_id=loop_id, item_id=item_id)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def _fail_zombie(self, record: LoopRecord, message: str) -> bool:
        finalized = loop_store.finalize_loop(self._conn, record.id, LoopStatus.FAILED, message)
        reset = item_store.reset_in_progress_items(self._conn, record.scope)
        if finalized:
            logger.warning(
                "Recovered zombie loop %s (%s); reset %s in-progress stories",
                record.id,
                message,
                reset,
            )
            self._emit(LoopEventKind.FAILED, record.id, message)
        return finalized

    def recover_zombie_loops(self) -> list[str]:
        """Fail active loops whose runner is missing or has stopped heartbeating."""
        recovered: list[str] = []
        stale_after = self.timings.heartbeat_stale_seconds
        for record in loop_store.list_active_loops(self._conn):
            runner = self.get_runner(record.id)
            age = loop_store.heartbeat_age_seconds(record)
            stale = age is not None and age > stale_after
            if runner is not None and not stale:
                continue
            if runner is not None:
                runner.cancel()
                with self._lock:
                    if self._runners.get(record.id) is runner:
                        del self._runners[record.id]
                message = f"Loop runner lost (no heartbeat for {int(age or 0)}s)."
            else:
                message = RUNNER_LOST_MESSAGE
            if self._fail_zombie(record, message):
                recovered.append(record.id)
        return recovered

    async def recover_or_resume_loops(self) -> dict[str, str]:
        """Startup pass over loops left active by a previous process.

        Returns a map of loop id to the action taken.
        """
        actions: dict[str, str] = {}
        for record in loop_store.list_active_loops(self._conn):
            if self.get_runner(record.id) is not None:
                continue
            item_store.reset_in_progress_items(self._conn, record.scope)
            items = item_store.list_items_for_scope(self._conn, record.scope)
            if any(is_retryable(item) for item in items):
                paused = record.status == LoopStatus.PAUSED
                loop_store.touch_heartbeat(self._conn, record.id)
                self._spawn(record, start_paused=paused)
                actions[record.id] = "resumed_paused" if paused else "resumed"
                logger.info("Resumed loop %s after restart (paused=%s)", record.id, paused)
                if not paused:
                    self._emit(LoopEventKind.RESUMED, record.id, "Loop resumed after restart")
                continue

            if is_scope_finished(items):
                status, kind, message = (
                    LoopStatus.COMPLETED,
                    LoopEventKind.COMPLETED,
                    ALL_COMPLETED_MESSAGE,
                )
            else:
                status, kind = LoopStatus.FAILED, LoopEventKind.FAILED
                message = describe_stall(items)[1]
            if loop_store.finalize_loop(self._conn, record.id, status, message):
                self._emit(kind, record.id, message)
            actions[record.id] = status.value
            logger.info("Finalized loop %s after restart as %s", record.id, status.value)
        return actions


def build_orchestrator(
    db_path: Optional[str] = None,
    *,
    deps: Optional[RunnerDependencies] = None,
    timings: Optional[RunnerTimings] = None,
) -> LoopOrchestrator:
    """Wire the orchestrator with the default collaborators."""
    conn = connect_loop_db(db_path)
    if deps is None:
        deps = RunnerDependencies(
            agent=ClaudeAgentSessionClient(),
            quality_gate=SubprocessQualityGateRunner(),
            vcs=GitVersionControlAdapter(),
            trackers=TrackerRegistry.from_env(),
        )
    return LoopOrchestrator(conn, deps, timings=timings)

"""The per-loop worker.

A ``LoopRunner`` owns one loop record while it is alive. Each iteration
selects an item, hands it to the coding agent, runs the quality gate and then
accepts the work, keeps it for an in-place fix-up pass, or rolls the
workspace back for a fresh attempt.

All loop-record writes go through the guarded helpers in
``storyloop.durable.loops``, so once the record is terminal (for example after
a user cancel) anything the runner still writes is dropped.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

import logfire

from storyloop.collaborators.base import (
    AgentSessionClient,
    ModelParams,
    QualityGateRunner,
    VersionControlAdapter,
)
from storyloop.collaborators.trackers import TrackerRegistry
from storyloop.durable import loops as loop_store
from storyloop.durable import notes as note_store
from storyloop.durable import work_items as item_store
from storyloop.events import LoopEvent, LoopEventBus, LoopEventKind
from storyloop.feature_flags import RunnerTimings
from storyloop.models import (
    ACTIVE_LOOP_STATUSES,
    FixUpState,
    IterationLogEntry,
    LoopAction,
    LoopRecord,
    LoopStatus,
    QualityCheckResult,
    StoryStatus,
    WorkItem,
)
from storyloop.prompts import (
    SUCCESS_SUMMARY,
    build_agent_note,
    build_item_prompt,
    build_system_prompt,
    commit_message,
    failure_reason,
    summarize_outcome,
    tracker_comment,
)
from storyloop.selection import (
    completed_ids,
    describe_stall,
    is_eligible,
    is_scope_finished,
    select_next_item,
)

logger = logging.getLogger(__name__)

ALL_COMPLETED_MESSAGE = "All stories completed!"
CANCELLED_MESSAGE = "Loop cancelled by user"
EMPTY_SCOPE_MESSAGE = "No stories found. They may have been deleted or the workspace path changed."
UNEXPECTED_EXIT_MESSAGE = "Loop runner exited unexpectedly."


@dataclass
class RunnerDependencies:
    agent: AgentSessionClient
    quality_gate: QualityGateRunner
    vcs: VersionControlAdapter
    trackers: TrackerRegistry = field(default_factory=TrackerRegistry)


@dataclass
class AgentOutcome:
    output: str = ""
    error: Optional[str] = None
    session_id: Optional[str] = None
    timed_out: bool = False


class _SelectionRetry(Exception):
    """Internal signal: selection found nothing but the loop should try again."""


class _StopLoop(Exception):
    """Internal signal: the loop record was finalized during selection."""


class LoopRunner:
    def __init__(
        self,
        conn: sqlite3.Connection,
        record: LoopRecord,
        deps: RunnerDependencies,
        bus: LoopEventBus,
        timings: Optional[RunnerTimings] = None,
        *,
        start_paused: bool = False,
        on_exit: Optional[Callable[[str, "LoopRunner"], None]] = None,
    ) -> None:
        self.loop_id = record.id
        self.scope = record.scope
        self.config = replace(record.config, quality_checks=list(record.config.quality_checks))
        self._conn = conn
        self._deps = deps
        self._bus = bus
        self._timings = timings or RunnerTimings.from_env()
        self._on_exit = on_exit
        self._iteration = record.current_iteration
        self._fix_ups: dict[str, FixUpState] = {}
        self._resume_event = asyncio.Event()
        if not start_paused:
            self._resume_event.set()
        self._cancel_event = asyncio.Event()
        self._heartbeat_stop = asyncio.Event()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._task: Optional[asyncio.Task] = None
        self._empty_streak = 0
        self._null_streak = 0

    # ------------------------------------------------------------------
    # Control surface (called by the orchestrator)
    # ------------------------------------------------------------------

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def paused(self) -> bool:
        return not self._resume_event.is_set()

    @property
    def iteration(self) -> int:
        return self._iteration

    def fix_up_state(self, item_id: str) -> Optional[FixUpState]:
        return self._fix_ups.get(item_id)

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=f"storyloop-{self.loop_id}")
        return self._task

    def pause(self) -> None:
        self._resume_event.clear()

    def resume(self) -> None:
        self._resume_event.set()

    def cancel(self) -> None:
        self._cancel_event.set()
        # Wake the pause gate so the cancel is observed.
        self._resume_event.set()

    async def wait(self, timeout: Optional[float] = None) -> None:
        if self._task is None:
            return
        await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _emit(self, kind: LoopEventKind, **fields) -> None:
        self._bus.publish(LoopEvent(kind=kind, loop_id=self.loop_id, **fields))

    def _log(
        self,
        iteration: int,
        item: WorkItem,
        action: LoopAction,
        detail: str,
        quality_results: Optional[list[QualityCheckResult]] = None,
    ) -> None:
        loop_store.append_iteration_entry(
            self._conn,
            self.loop_id,
            IterationLogEntry(
                iteration=iteration,
                item_id=item.id,
                item_title=item.title,
                action=action,
                detail=detail,
                quality_results=quality_results,
            ),
        )

    def _finish(self, status: LoopStatus, message: str) -> bool:
        finalized = loop_store.finalize_loop(self._conn, self.loop_id, status, message)
        if finalized:
            kind = {
                LoopStatus.COMPLETED: LoopEventKind.COMPLETED,
                LoopStatus.CANCELLED: LoopEventKind.CANCELLED,
                LoopStatus.FAILED: LoopEventKind.FAILED,
            }[status]
            logger.info("[loop:%s] %s: %s", self.loop_id, status.value, message)
            self._emit(kind, message=message, iteration=self._iteration)
        return finalized

    async def _sleep_or_cancel(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _wait_if_paused(self) -> None:
        if self._resume_event.is_set():
            return
        logger.info("[loop:%s] Paused, waiting for resume", self.loop_id)
        await self._resume_event.wait()

    async def _heartbeat_loop(self) -> None:
        interval = self._timings.heartbeat_interval_seconds
        while not self._heartbeat_stop.is_set():
            try:
                loop_store.touch_heartbeat(self._conn, self.loop_id)
            except Exception as exc:
                logger.warning("[loop:%s] Heartbeat write failed: %s", self.loop_id, exc)
            try:
                await asyncio.wait_for(self._heartbeat_stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    async def _stop_heartbeat(self) -> None:
        self._heartbeat_stop.set()
        if self._heartbeat_task is not None:
            try:
                await asyncio.wait_for(self._heartbeat_task, timeout=5)
            except Exception:
                self._heartbeat_task.cancel()
            self._heartbeat_task = None

    async def _revert(self) -> None:
        try:
            await self._deps.vcs.revert_to_clean(self.scope.workspace_path)
        except Exception as exc:
            logger.error(
                "[loop:%s] Failed to revert uncommitted changes: %s", self.loop_id, exc
            )

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        interrupted = False
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        try:
            self._prepare()
            await self._run_iterations()
        except asyncio.CancelledError:
            # Process shutdown. The record stays active for startup recovery.
            interrupted = True
            logger.info("[loop:%s] Runner interrupted; leaving loop for recovery", self.loop_id)
            raise
        except Exception as exc:
            logger.exception("[loop:%s] Runner crashed: %s", self.loop_id, exc)
        finally:
            await self._stop_heartbeat()
            if not interrupted:
                self._safety_net()
            if self._on_exit is not None:
                self._on_exit(self.loop_id, self)

    def _safety_net(self) -> None:
        try:
            record = loop_store.get_loop(self._conn, self.loop_id)
            if record is not None and record.status in ACTIVE_LOOP_STATUSES:
                logger.warning(
                    "[loop:%s] Safety net: runner exited while %s, marking failed",
                    self.loop_id,
                    record.status.value,
                )
                self._finish(LoopStatus.FAILED, UNEXPECTED_EXIT_MESSAGE)
        except Exception as exc:
            logger.error("[loop:%s] Safety net failed: %s", self.loop_id, exc)

    def _prepare(self) -> None:
        applied = item_store.apply_max_attempts(
            self._conn, self.scope, self.config.max_attempts_per_item
        )
        if applied:
            logger.info(
                "[loop:%s] Applied max_attempts_per_item=%s to %s stories",
                self.loop_id,
                self.config.max_attempts_per_item,
                applied,
            )
        open_items = item_store.count_open_items(self._conn, self.scope)
        per_attempt = 1 + self.config.max_fix_up_attempts
        needed = open_items * self.config.max_attempts_per_item * per_attempt
        if self.config.max_iterations < needed:
            logger.info(
                "[loop:%s] Raising max_iterations from %s to %s "
                "(%s stories x %s attempts x %s iterations/attempt)",
                self.loop_id,
                self.config.max_iterations,
                needed,
                open_items,
                self.config.max_attempts_per_item,
                per_attempt,
            )
            self.config.max_iterations = needed
            loop_store.update_loop(self._conn, self.loop_id, config=self.config)

    async def _run_iterations(self) -> None:
        logger.info(
            "[loop:%s] Starting loop in %s (max_iterations=%s)",
            self.loop_id,
            self.scope.workspace_path,
            self.config.max_iterations,
        )
        while self._iteration < self.config.max_iterations and not self.cancelled:
            await self._wait_if_paused()
            if self.cancelled:
                break
            loop_store.touch_heartbeat(self._conn, self.loop_id)
            self._recover_orphans()

            try:
                item = await self._select()
            except _SelectionRetry:
                continue
            if item is None:
                return

            self._iteration += 1
            iteration = self._iteration
            logger.info(
                '[loop:%s] Iteration %s: "%s" (attempt %s/%s)',
                self.loop_id,
                iteration,
                item.title,
                item.attempts + (0 if item.id in self._fix_ups else 1),
                item.max_attempts,
            )
            try:
                with logfire.span(
                    "loop_iteration",
                    loop_id=self.loop_id,
                    iteration=iteration,
                    item_id=item.id,
                ):
                    await self._run_iteration(iteration, item)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("[loop:%s] Iteration %s crashed", self.loop_id, iteration)
                self._handle_iteration_crash(iteration, item, exc)

            if self.cancelled:
                break
            await self._sleep_or_cancel(self._timings.iteration_delay_seconds)

        if self.cancelled:
            self._finish(LoopStatus.CANCELLED, CANCELLED_MESSAGE)
            return

        items = item_store.list_items_for_scope(self._conn, self.scope)
        if is_scope_finished(items):
            self._finish(LoopStatus.COMPLETED, ALL_COMPLETED_MESSAGE)
        else:
            self._finish(
                LoopStatus.FAILED,
                f"Max iterations ({self.config.max_iterations}) reached. "
                "Some stories remain incomplete.",
            )

    # ------------------------------------------------------------------
    # Select
    # ------------------------------------------------------------------

    def _recover_orphans(self) -> None:
        """Release in_progress items left behind by a crashed iteration."""
        try:
            record = loop_store.get_loop(self._conn, self.loop_id)
            current = record.current_item_id if record else None
            for item in item_store.list_items_for_scope(self._conn, self.scope):
                if item.status != StoryStatus.IN_PROGRESS or item.id == current:
                    continue
                status = item_store.release_item(self._conn, item.id)
                logger.warning(
                    '[loop:%s] Recovered orphaned story "%s" (%s) -> %s',
                    self.loop_id,
                    item.title,
                    item.id,
                    status.value,
                )
        except Exception as exc:
            logger.error("[loop:%s] Orphan recovery failed (non-fatal): %s", self.loop_id, exc)

    def _bump_null_streak(self, reason: str) -> None:
        self._null_streak += 1
        limit = self._timings.selection_retry_limit
        if self._null_streak >= limit:
            self._finish(
                LoopStatus.FAILED,
                f"Story selection stayed inconsistent after {limit} retries: {reason}",
            )
            raise _StopLoop()

    async def _select(self) -> Optional[WorkItem]:
        """Return the next item, raise ``_SelectionRetry`` to go around again,
        or return None once the loop has been finalized."""
        try:
            return await self._select_or_finish()
        except _StopLoop:
            return None

    async def _select_or_finish(self) -> Optional[WorkItem]:
        try:
            items = item_store.list_items_for_scope(self._conn, self.scope)
            item = select_next_item(items, self._fix_ups)
            if item is None:
                # One delayed re-read before deciding why nothing qualifies.
                await self._sleep_or_cancel(self._timings.selection_retry_delay_seconds)
                items = item_store.list_items_for_scope(self._conn, self.scope)
                item = select_next_item(items, self._fix_ups)
        except Exception as exc:
            logger.error("[loop:%s] Story selection failed: %s", self.loop_id, exc)
            self._bump_null_streak(f"selection error: {exc}")
            await self._sleep_or_cancel(self._timings.selection_error_delay_seconds)
            raise _SelectionRetry() from exc

        if item is not None:
            self._null_streak = 0
            self._empty_streak = 0
            return item

        if self.cancelled:
            raise _SelectionRetry()

        logger.info(
            "[loop:%s] No eligible story. %s total: %s",
            self.loop_id,
            len(items),
            ", ".join(
                f"{other.title}[{other.status.value}:{other.attempts}/{other.max_attempts}"
                f"{':research' if other.research_only else ''}]"
                for other in items
            ),
        )

        if not items:
            self._empty_streak += 1
            if self._empty_streak < self._timings.empty_scope_retries:
                logger.warning(
                    "[loop:%s] Scope returned no stories (attempt %s/%s). Retrying...",
                    self.loop_id,
                    self._empty_streak,
                    self._timings.empty_scope_retries,
                )
                await self._sleep_or_cancel(self._timings.empty_scope_retry_delay_seconds)
                raise _SelectionRetry()
            self._finish(LoopStatus.FAILED, EMPTY_SCOPE_MESSAGE)
            return None

        if is_scope_finished(items):
            self._finish(LoopStatus.COMPLETED, ALL_COMPLETED_MESSAGE)
            return None

        stuck = [other for other in items if other.status == StoryStatus.IN_PROGRESS]
        if stuck:
            logger.warning(
                "[loop:%s] %s stories still in_progress after recovery, forcing reset",
                self.loop_id,
                len(stuck),
            )
            self._bump_null_streak("stories stuck in_progress")
            for other in stuck:
                item_store.release_item(self._conn, other.id)
            raise _SelectionRetry()

        done = completed_ids(items)
        eligible = [other for other in items if is_eligible(other, done, self._fix_ups)]
        if eligible:
            logger.warning(
                "[loop:%s] Selection returned nothing but %s eligible stories exist "
                "(streak %s)",
                self.loop_id,
                len(eligible),
                self._null_streak + 1,
            )
            self._bump_null_streak("eligible stories were not selected")
            await self._sleep_or_cancel(self._timings.selection_error_delay_seconds)
            raise _SelectionRetry()

        deadlock, message = describe_stall(items)
        if deadlock:
            logger.warning("[loop:%s] %s", self.loop_id, message)
        self._finish(LoopStatus.FAILED, message)
        return None

    # ------------------------------------------------------------------
    # Delegate / gate / decide / persist
    # ------------------------------------------------------------------

    async def _run_iteration(self, iteration: int, item: WorkItem) -> None:
        checks = self.config.enabled_checks()
        fix_up = self._fix_ups.get(item.id)
        max_fix_ups = self.config.max_fix_up_attempts

        loop_store.update_loop(
            self._conn,
            self.loop_id,
            current_iteration=iteration,
            current_item_id=item.id,
        )
        loop_store.increment_loop_counters(self._conn, self.loop_id, iterations=1)
        self._emit(
            LoopEventKind.ITERATION_START,
            iteration=iteration,
            item_id=item.id,
            item_title=item.title,
        )
        if fix_up is not None:
            detail = (
                f"Fix-up pass {fix_up.sub_attempts}/{max_fix_ups} for: {item.title} "
                f"(attempt {item.attempts}/{item.max_attempts}), fixing errors in place"
            )
        else:
            detail = (
                f"Starting story: {item.title} "
                f"(attempt {item.attempts + 1}/{item.max_attempts})"
            )
        self._log(iteration, item, LoopAction.STARTED, detail)

        item = item_store.mark_in_progress(
            self._conn, item.id, count_attempt=fix_up is None
        ) or item
        workspace = self.scope.workspace_path

        if self.config.auto_snapshot:
            try:
                snapshot = await self._deps.vcs.snapshot(workspace)
                self._log(iteration, item, LoopAction.SNAPSHOT, f"Snapshot: {snapshot.describe()}")
            except Exception as exc:
                logger.error("[loop:%s] Snapshot failed: %s", self.loop_id, exc)

        if checks and fix_up is None:
            pre_results = await self._deps.quality_gate.run(checks, workspace)
            if any(result.blocking for result in pre_results):
                logger.warning(
                    "[loop:%s] Pre-story quality gate failed, reverting uncommitted changes",
                    self.loop_id,
                )
                self._log(
                    iteration,
                    item,
                    LoopAction.QUALITY_CHECK,
                    "Pre-story gate: build already broken, reverting uncommitted changes",
                    pre_results,
                )
                await self._revert()

        scope_items = item_store.list_items_for_scope(self._conn, self.scope)
        system_prompt = build_system_prompt(
            item_store.list_workspace_learnings(self._conn, workspace),
            self.config.system_prompt_override,
        )
        prompt = build_item_prompt(item, scope_items, fix_up, max_fix_ups)

        self._emit(
            LoopEventKind.STORY_STARTED,
            iteration=iteration,
            item_id=item.id,
            item_title=item.title,
        )
        outcome = await self._invoke_agent(item, prompt, system_prompt)

        if self.cancelled:
            await self._discard_after_cancel(item)
            return

        results: list[QualityCheckResult] = []
        if checks:
            results = await self._deps.quality_gate.run(checks, workspace)
            for result in results:
                self._emit(
                    LoopEventKind.QUALITY_CHECK,
                    iteration=iteration,
                    item_id=item.id,
                    item_title=item.title,
                    quality_result=result,
                )
                self._log(
                    iteration,
                    item,
                    LoopAction.QUALITY_CHECK,
                    f"{result.check_name}: {'PASSED' if result.passed else 'FAILED'} "
                    f"({result.duration_ms}ms)",
                    [result],
                )

        if outcome.error is None and not any(result.blocking for result in results):
            await self._accept(iteration, item, outcome, results)
        else:
            await self._reject(iteration, item, outcome, results)

        loop_store.update_loop(
            self._conn, self.loop_id, current_item_id=None, current_agent_id=None
        )
        self._emit(
            LoopEventKind.ITERATION_END,
            iteration=iteration,
            item_id=item.id,
            item_title=item.title,
        )

    async def _invoke_agent(self, item: WorkItem, prompt: str, system_prompt: str) -> AgentOutcome:
        outcome = AgentOutcome()
        chunks: list[str] = []
        timeout = self._timings.agent_timeout_seconds
        agent = self._deps.agent
        try:
            outcome.session_id = await agent.create_session(
                self.scope.workspace_path,
                ModelParams(
                    model=self.config.model,
                    effort=self.config.effort,
                    system_prompt=system_prompt,
                ),
            )
            loop_store.update_loop(
                self._conn, self.loop_id, current_agent_id=outcome.session_id
            )

            async def _consume() -> None:
                async for chunk in agent.send_prompt(outcome.session_id, prompt):
                    chunks.append(chunk)

            try:
                await asyncio.wait_for(_consume(), timeout=timeout)
            except asyncio.TimeoutError:
                outcome.timed_out = True
                if not chunks:
                    outcome.error = f"Agent timed out after {timeout:g}s with no output"
                    logger.error("[loop:%s] Agent timeout for story %s", self.loop_id, item.id)
                else:
                    logger.warning(
                        "[loop:%s] Agent timed out for story %s, keeping partial output",
                        self.loop_id,
                        item.id,
                    )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            outcome.error = str(exc) or exc.__class__.__name__
            logger.error("[loop:%s] Agent error for story %s: %s", self.loop_id, item.id, exc)
        finally:
            if outcome.session_id:
                try:
                    await agent.close_session(outcome.session_id)
                except Exception as exc:
                    logger.debug("Closing agent session failed: %s", exc)
        outcome.output = "".join(chunks)
        return outcome

    async def _discard_after_cancel(self, item: WorkItem) -> None:
        logger.info(
            '[loop:%s] Cancelled during "%s", discarding agent result', self.loop_id, item.title
        )
        self._fix_ups.pop(item.id, None)
        item_store.release_item(self._conn, item.id)
        await self._revert()

    async def _accept(
        self,
        iteration: int,
        item: WorkItem,
        outcome: AgentOutcome,
        results: list[QualityCheckResult],
    ) -> None:
        self._fix_ups.pop(item.id, None)
        item_store.set_item_status(
            self._conn, item.id, StoryStatus.COMPLETED, session_id=outcome.session_id
        )
        loop_store.increment_loop_counters(self._conn, self.loop_id, completed=1)

        if self.config.auto_commit:
            try:
                sha = await self._deps.vcs.commit(self.scope.workspace_path, commit_message(item))
            except Exception as exc:
                sha = None
                logger.error("[loop:%s] Commit failed: %s", self.loop_id, exc)
            if sha:
                item_store.set_item_status(
                    self._conn, item.id, StoryStatus.COMPLETED, commit_sha=sha
                )
                self._log(iteration, item, LoopAction.COMMITTED, f"Committed: {sha[:8]}")

        self._record_learning(iteration, item, summarize_outcome(SUCCESS_SUMMARY, results))
        self._write_note(item, StoryStatus.COMPLETED, outcome, results)
        self._emit(
            LoopEventKind.STORY_COMPLETED,
            iteration=iteration,
            item_id=item.id,
            item_title=item.title,
            session_id=outcome.session_id,
        )
        self._log(iteration, item, LoopAction.PASSED, "Story completed successfully", results)
        await self._push_external(item.id, StoryStatus.COMPLETED.value)

    async def _reject(
        self,
        iteration: int,
        item: WorkItem,
        outcome: AgentOutcome,
        results: list[QualityCheckResult],
    ) -> None:
        reason = failure_reason(outcome.error, results)
        self._record_learning(iteration, item, summarize_outcome(reason, results))
        self._write_note(item, StoryStatus.FAILED, outcome, results, reason)

        max_fix_ups = self.config.max_fix_up_attempts
        current = self._fix_ups.get(item.id)
        sub_attempts = current.sub_attempts if current else 0
        reverted = False

        if outcome.error is not None:
            self._fix_ups.pop(item.id, None)
            self._log(
                iteration,
                item,
                LoopAction.QUALITY_CHECK,
                "Post-failure rollback: agent error, reverting to clean state",
            )
            await self._revert()
            reverted = True
        elif sub_attempts >= max_fix_ups:
            self._fix_ups.pop(item.id, None)
            self._log(
                iteration,
                item,
                LoopAction.QUALITY_CHECK,
                f"Post-failure rollback: fix-up attempts exhausted "
                f"({sub_attempts}/{max_fix_ups}), reverting for fresh attempt",
            )
            await self._revert()
            reverted = True
        else:
            next_sub = sub_attempts + 1
            self._fix_ups[item.id] = FixUpState(
                sub_attempts=next_sub,
                last_results=[result for result in results if not result.passed],
            )
            self._log(
                iteration,
                item,
                LoopAction.QUALITY_CHECK,
                f"Skipping revert, next attempt will be fix-up pass {next_sub}/{max_fix_ups}",
            )

        refreshed = item_store.get_work_item(self._conn, item.id) or item
        exhausted = reverted and refreshed.attempts_exhausted
        if exhausted:
            self._fix_ups.pop(item.id, None)
            item_store.set_item_status(
                self._conn, item.id, StoryStatus.FAILED, session_id=outcome.session_id
            )
            loop_store.increment_loop_counters(self._conn, self.loop_id, failed=1)
        else:
            item_store.set_item_status(
                self._conn, item.id, StoryStatus.PENDING, session_id=outcome.session_id
            )

        self._emit(
            LoopEventKind.STORY_FAILED,
            iteration=iteration,
            item_id=item.id,
            item_title=item.title,
            message=reason,
            will_retry=not exhausted,
            session_id=outcome.session_id,
        )
        next_fix_up = self._fix_ups.get(item.id)
        if next_fix_up is not None:
            suffix = f" (fix-up pass {next_fix_up.sub_attempts}/{max_fix_ups} next)"
        elif reverted and not exhausted:
            suffix = " (reverted, fresh start next)"
        else:
            suffix = ""
        self._log(iteration, item, LoopAction.FAILED, reason + suffix, results)

        if exhausted:
            await self._push_external(item.id, StoryStatus.FAILED.value)

        if self.config.pause_on_failure and not self.cancelled:
            if loop_store.set_loop_paused(self._conn, self.loop_id):
                self.pause()
                self._emit(
                    LoopEventKind.PAUSED,
                    iteration=iteration,
                    item_id=item.id,
                    item_title=item.title,
                    message=f'Paused: story "{item.title}" failed',
                )

    def _record_learning(self, iteration: int, item: WorkItem, learning: str) -> None:
        item_store.append_learning(self._conn, item.id, learning)
        try:
            item_store.upsert_workspace_learning(
                self._conn,
                self.scope.workspace_path,
                f"loop-learning:{item.title[:60]}",
                learning,
                source_item_id=item.id,
            )
        except Exception as exc:
            logger.warning("[loop:%s] Workspace learning not stored: %s", self.loop_id, exc)
        self._log(iteration, item, LoopAction.LEARNING, learning)
        self._emit(
            LoopEventKind.LEARNING,
            iteration=iteration,
            item_id=item.id,
            item_title=item.title,
            learning=learning,
        )

    def _write_note(
        self,
        item: WorkItem,
        status: StoryStatus,
        outcome: AgentOutcome,
        results: list[QualityCheckResult],
        reason: Optional[str] = None,
    ) -> None:
        title, content = build_agent_note(
            item, self.loop_id, status, outcome.output, results, reason
        )
        try:
            note_store.insert_agent_note(
                self._conn,
                loop_id=self.loop_id,
                item_id=item.id,
                workspace_path=self.scope.workspace_path,
                outcome=status,
                title=title,
                content=content,
                session_id=outcome.session_id,
                metadata={
                    "attempts": item.attempts,
                    "max_attempts": item.max_attempts,
                    "quality_passed": sum(1 for result in results if result.passed),
                    "quality_failed": sum(1 for result in results if not result.passed),
                },
            )
        except Exception as exc:
            logger.warning("[loop:%s] Agent note not stored for %s: %s", self.loop_id, item.id, exc)

    async def _push_external(self, item_id: str, outcome: str) -> None:
        item = item_store.get_work_item(self._conn, item_id)
        if item is None or item.external_ref is None:
            return
        writeback = self._deps.trackers.get(item.external_ref.provider)
        if writeback is None:
            return
        try:
            await writeback.push_status(
                item.external_ref,
                outcome,
                {"commit_sha": item.commit_sha, "comment": tracker_comment(item, outcome)},
            )
            item_store.mark_external_synced(self._conn, item_id)
        except Exception as exc:
            logger.error(
                "[loop:%s] External status push failed for %s: %s", self.loop_id, item_id, exc
            )

    def _handle_iteration_crash(self, iteration: int, item: WorkItem, exc: Exception) -> None:
        will_retry = False
        try:
            self._log(
                iteration, item, LoopAction.FAILED, f"Iteration crashed: {str(exc)[:500]}"
            )
            current = item_store.get_work_item(self._conn, item.id)
            if current is not None and current.status == StoryStatus.IN_PROGRESS:
                status = item_store.release_item(self._conn, item.id)
                will_retry = status == StoryStatus.PENDING
                if status == StoryStatus.FAILED:
                    loop_store.increment_loop_counters(self._conn, self.loop_id, failed=1)
            loop_store.update_loop(
                self._conn, self.loop_id, current_item_id=None, current_agent_id=None
            )
        except Exception as cleanup_exc:
            logger.error(
                "[loop:%s] Cleanup after crashed iteration failed: %s", self.loop_id, cleanup_exc
            )
        self._emit(
            LoopEventKind.STORY_FAILED,
            iteration=iteration,
            item_id=item.id,
            item_title=item.title,
            message=f"Iteration crashed: {str(exc)[:200]}",
            will_retry=will_retry,
        )


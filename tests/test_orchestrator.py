import asyncio

import pytest

from conftest import WORKSPACE, add_item, fast_timings, loop_config, wait_until
from storyloop.durable import loops as loop_store
from storyloop.durable import work_items as item_store
from storyloop.errors import (
    DirtyWorkspace,
    GroupNotFound,
    LoopNotFound,
    NoEligibleWork,
    PreconditionFailed,
    RunnerUnavailable,
)
from storyloop.events import LoopEventKind
from storyloop.models import LoopScope, LoopStatus, StoryStatus, WorkGroup
from storyloop.orchestrator import RUNNER_LOST_MESSAGE
from storyloop.runner import ALL_COMPLETED_MESSAGE, CANCELLED_MESSAGE

SCOPE = LoopScope(workspace_path=WORKSPACE)


def _orphan_loop(conn, loop_id="loop_orphan", scope=SCOPE, status=LoopStatus.RUNNING):
    """A persisted active loop with no runner behind it, as left by a dead process."""
    loop_store.insert_loop(conn, loop_id, scope, loop_config())
    if status == LoopStatus.PAUSED:
        loop_store.set_loop_paused(conn, loop_id)
    return loop_id


# ---------------------------------------------------------------------------
# start_loop preconditions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_dirty_workspace_is_rejected_before_any_work(harness):
    add_item(harness.conn, "s1")
    harness.workspace.dirty = True
    orch = harness.orchestrator()

    with pytest.raises(DirtyWorkspace):
        await orch.start_loop(WORKSPACE, loop_config())

    assert item_store.get_work_item(harness.conn, "s1").status == StoryStatus.PENDING
    assert loop_store.list_loops(harness.conn) == []
    assert harness.agent.prompts == []


@pytest.mark.asyncio
async def test_dirty_check_failure_is_treated_as_clean(harness):
    add_item(harness.conn, "s1")
    harness.vcs.fail_dirty_check = True
    orch = harness.orchestrator()

    loop_id = await orch.start_loop(WORKSPACE, loop_config())
    record = await orch.wait_for_loop(loop_id, timeout=10)

    assert record.status == LoopStatus.COMPLETED


@pytest.mark.asyncio
async def test_start_without_open_work_is_rejected(harness):
    add_item(harness.conn, "done", status=StoryStatus.COMPLETED)
    add_item(harness.conn, "notes", research_only=True)
    orch = harness.orchestrator()

    with pytest.raises(NoEligibleWork):
        await orch.start_loop(WORKSPACE)


@pytest.mark.asyncio
async def test_start_requires_known_group_or_workspace(harness):
    orch = harness.orchestrator()

    with pytest.raises(GroupNotFound):
        await orch.start_loop(group_id="missing")
    with pytest.raises(PreconditionFailed):
        await orch.start_loop()


@pytest.mark.asyncio
async def test_group_loop_uses_group_workspace(harness):
    item_store.insert_group(harness.conn, WorkGroup(id="g1", name="Auth", workspace_path=WORKSPACE))
    add_item(harness.conn, "s1", group_id="g1")
    add_item(harness.conn, "loose")
    orch = harness.orchestrator()
    events = orch.subscribe()

    loop_id = await orch.start_loop(group_id="g1", config=loop_config())
    record = await orch.wait_for_loop(loop_id, timeout=10)

    assert loop_id.startswith("loop_")
    assert record.group_id == "g1"
    assert record.workspace_path == WORKSPACE
    assert record.status == LoopStatus.COMPLETED
    assert item_store.get_work_item(harness.conn, "loose").status == StoryStatus.PENDING
    first = events.drain()[0]
    assert first.kind == LoopEventKind.STARTED
    assert first.message == "Loop started with 1 open stories"


# ---------------------------------------------------------------------------
# Control operations
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_pause_is_idempotent_and_resume_continues(harness):
    add_item(harness.conn, "s1")
    harness.agent.script("s1", "block")
    orch = harness.orchestrator()
    events = orch.subscribe()

    loop_id = await orch.start_loop(WORKSPACE, loop_config())
    await wait_until(harness.agent.started.is_set)

    first = await orch.pause_loop(loop_id)
    second = await orch.pause_loop(loop_id)
    assert first.status == LoopStatus.PAUSED
    assert second.status == LoopStatus.PAUSED

    harness.agent.release.set()
    await wait_until(lambda: item_store.get_work_item(harness.conn, "s1").status == StoryStatus.COMPLETED)
    assert orch.get_loop_state(loop_id).status == LoopStatus.PAUSED

    resumed = await orch.resume_loop(loop_id)
    assert resumed.status == LoopStatus.RUNNING
    record = await orch.wait_for_loop(loop_id, timeout=10)

    assert record.status == LoopStatus.COMPLETED
    kinds = [event.kind for event in events.drain()]
    assert kinds.count(LoopEventKind.PAUSED) == 1
    assert kinds.count(LoopEventKind.RESUMED) == 1


@pytest.mark.asyncio
async def test_cancel_is_immediate_and_emits_once(harness):
    add_item(harness.conn, "s1")
    harness.agent.script("s1", "block")
    orch = harness.orchestrator()
    events = orch.subscribe()

    loop_id = await orch.start_loop(WORKSPACE, loop_config())
    await wait_until(harness.agent.started.is_set)

    record = await orch.cancel_loop(loop_id)
    assert record.status == LoopStatus.CANCELLED
    assert record.status_message == CANCELLED_MESSAGE

    harness.agent.release.set()
    record = await orch.wait_for_loop(loop_id, timeout=10)

    assert record.status == LoopStatus.CANCELLED
    item = item_store.get_work_item(harness.conn, "s1")
    assert item.status == StoryStatus.PENDING
    assert item.commit_sha is None
    assert harness.workspace.revert_calls == 1
    kinds = [event.kind for event in events.drain()]
    assert kinds.count(LoopEventKind.CANCELLED) == 1
    assert LoopEventKind.STORY_COMPLETED not in kinds


@pytest.mark.asyncio
async def test_controls_on_terminal_loop_are_noops(harness):
    add_item(harness.conn, "s1")
    orch = harness.orchestrator()
    loop_id = await orch.start_loop(WORKSPACE, loop_config())
    await orch.wait_for_loop(loop_id, timeout=10)

    assert (await orch.cancel_loop(loop_id)).status == LoopStatus.COMPLETED
    assert (await orch.pause_loop(loop_id)).status == LoopStatus.COMPLETED
    assert (await orch.resume_loop(loop_id)).status == LoopStatus.COMPLETED
    assert orch.get_loop_state(loop_id).status_message == ALL_COMPLETED_MESSAGE


@pytest.mark.asyncio
async def test_unknown_loop_raises_not_found(harness):
    orch = harness.orchestrator()
    with pytest.raises(LoopNotFound):
        orch.get_loop_state("loop_nope")
    with pytest.raises(LoopNotFound):
        await orch.pause_loop("loop_nope")


@pytest.mark.asyncio
async def test_resume_without_runner_fails_the_loop(harness):
    add_item(harness.conn, "s1", status=StoryStatus.IN_PROGRESS, attempts=1)
    loop_id = _orphan_loop(harness.conn, status=LoopStatus.PAUSED)
    orch = harness.orchestrator()

    with pytest.raises(RunnerUnavailable):
        await orch.resume_loop(loop_id)

    record = loop_store.get_loop(harness.conn, loop_id)
    assert record.status == LoopStatus.FAILED
    assert record.status_message == RUNNER_LOST_MESSAGE
    assert item_store.get_work_item(harness.conn, "s1").status == StoryStatus.PENDING


@pytest.mark.asyncio
async def test_cancel_without_runner_resets_items(harness):
    add_item(harness.conn, "s1", status=StoryStatus.IN_PROGRESS, attempts=1)
    loop_id = _orphan_loop(harness.conn)
    orch = harness.orchestrator()

    record = await orch.cancel_loop(loop_id)

    assert record.status == LoopStatus.CANCELLED
    assert item_store.get_work_item(harness.conn, "s1").status == StoryStatus.PENDING


# ---------------------------------------------------------------------------
# Zombie sweep
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_zombie_sweep_only_resets_its_own_scope(harness):
    add_item(harness.conn, "mine", status=StoryStatus.IN_PROGRESS, attempts=1)
    add_item(harness.conn, "theirs", workspace="/tmp/other-ws", status=StoryStatus.IN_PROGRESS)
    loop_id = _orphan_loop(harness.conn)
    orch = harness.orchestrator()
    events = orch.subscribe()

    assert orch.recover_zombie_loops() == [loop_id]
    assert orch.recover_zombie_loops() == []

    assert loop_store.get_loop(harness.conn, loop_id).status == LoopStatus.FAILED
    assert item_store.get_work_item(harness.conn, "mine").status == StoryStatus.PENDING
    assert item_store.get_work_item(harness.conn, "theirs").status == StoryStatus.IN_PROGRESS
    assert [event.kind for event in events.drain()] == [LoopEventKind.FAILED]


@pytest.mark.asyncio
async def test_queries_sweep_zombies(harness):
    loop_id = _orphan_loop(harness.conn)
    orch = harness.orchestrator()

    assert orch.get_loop_state(loop_id).status == LoopStatus.FAILED
    assert orch.list_loops([LoopStatus.RUNNING]) == []


@pytest.mark.asyncio
async def test_stale_heartbeat_fails_live_runner(harness):
    add_item(harness.conn, "s1")
    harness.agent.script("s1", "block")
    orch = harness.orchestrator(fast_timings(heartbeat_interval_seconds=3600))

    loop_id = await orch.start_loop(WORKSPACE, loop_config())
    await wait_until(harness.agent.started.is_set)
    runner = orch.get_runner(loop_id)
    harness.conn.execute(
        "UPDATE loops SET last_heartbeat_at = ? WHERE loop_id = ?",
        ("2000-01-01T00:00:00+00:00", loop_id),
    )
    harness.conn.commit()

    assert orch.recover_zombie_loops() == [loop_id]
    record = loop_store.get_loop(harness.conn, loop_id)
    assert record.status == LoopStatus.FAILED
    assert record.status_message.startswith("Loop runner lost (no heartbeat for ")
    assert orch.get_runner(loop_id) is None

    harness.agent.release.set()
    await runner.wait(timeout=5)
    assert harness.workspace.revert_calls == 1
    assert item_store.get_work_item(harness.conn, "s1").status == StoryStatus.PENDING


@pytest.mark.asyncio
async def test_list_loops_filters_by_status(harness):
    add_item(harness.conn, "s1")
    orch = harness.orchestrator()
    loop_id = await orch.start_loop(WORKSPACE, loop_config())
    await orch.wait_for_loop(loop_id, timeout=10)
    failed_id = _orphan_loop(harness.conn, loop_id="loop_dead")
    orch.recover_zombie_loops()

    assert [record.id for record in orch.list_loops([LoopStatus.COMPLETED])] == [loop_id]
    assert [record.id for record in orch.list_loops([LoopStatus.FAILED])] == [failed_id]
    assert len(orch.list_loops()) == 2


# ---------------------------------------------------------------------------
# Startup recovery and shutdown
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_startup_recovery_resumes_running_loop(harness):
    add_item(harness.conn, "s1", status=StoryStatus.IN_PROGRESS, attempts=1)
    add_item(harness.conn, "s2")
    loop_id = _orphan_loop(harness.conn)
    orch = harness.orchestrator()

    actions = await orch.recover_or_resume_loops()
    assert actions == {loop_id: "resumed"}
    assert item_store.get_work_item(harness.conn, "s1").status != StoryStatus.IN_PROGRESS

    record = await orch.wait_for_loop(loop_id, timeout=10)
    assert record.status == LoopStatus.COMPLETED
    assert record.total_items_completed == 2
    assert item_store.get_work_item(harness.conn, "s1").attempts == 2


@pytest.mark.asyncio
async def test_startup_recovery_keeps_paused_loop_paused(harness):
    add_item(harness.conn, "s1")
    loop_id = _orphan_loop(harness.conn, status=LoopStatus.PAUSED)
    orch = harness.orchestrator()

    assert await orch.recover_or_resume_loops() == {loop_id: "resumed_paused"}
    await asyncio.sleep(0.05)
    assert harness.agent.prompts == []
    assert orch.get_loop_state(loop_id).status == LoopStatus.PAUSED

    await orch.resume_loop(loop_id)
    record = await orch.wait_for_loop(loop_id, timeout=10)
    assert record.status == LoopStatus.COMPLETED


@pytest.mark.asyncio
async def test_startup_recovery_finalizes_loops_without_work(harness):
    add_item(harness.conn, "done", status=StoryStatus.COMPLETED)
    add_item(harness.conn, "lost", workspace="/tmp/other-ws", status=StoryStatus.FAILED, attempts=3)
    done_id = _orphan_loop(harness.conn, loop_id="loop_done")
    lost_id = _orphan_loop(
        harness.conn, loop_id="loop_lost", scope=LoopScope(workspace_path="/tmp/other-ws")
    )
    orch = harness.orchestrator()

    actions = await orch.recover_or_resume_loops()

    assert actions == {done_id: "completed", lost_id: "failed"}
    assert loop_store.get_loop(harness.conn, done_id).status_message == ALL_COMPLETED_MESSAGE
    assert loop_store.get_loop(harness.conn, lost_id).status == LoopStatus.FAILED


@pytest.mark.asyncio
async def test_shutdown_leaves_loop_for_next_process(harness):
    add_item(harness.conn, "s1")
    harness.agent.script("s1", "block")
    orch = harness.orchestrator()
    await orch.start(recover=False)

    loop_id = await orch.start_loop(WORKSPACE, loop_config())
    await wait_until(harness.agent.started.is_set)
    await orch.shutdown(timeout=5)

    record = loop_store.get_loop(harness.conn, loop_id)
    assert record.status == LoopStatus.RUNNING
    assert item_store.get_work_item(harness.conn, "s1").status == StoryStatus.IN_PROGRESS

    restarted = harness.orchestrator()
    await restarted.start(recover=True)
    try:
        record = await restarted.wait_for_loop(loop_id, timeout=10)
    finally:
        await restarted.shutdown(timeout=5)

    assert record.status == LoopStatus.COMPLETED
    item = item_store.get_work_item(harness.conn, "s1")
    assert item.status == StoryStatus.COMPLETED
    assert item.attempts == 2


from datetime import datetime, timedelta, timezone

import pytest

from conftest import WORKSPACE, check
from storyloop.durable import loops as loop_store
from storyloop.models import IterationLogEntry, LoopAction, LoopConfig, LoopScope, LoopStatus

SCOPE = LoopScope(workspace_path=WORKSPACE)


def _entry(detail: str = "Starting story") -> IterationLogEntry:
    return IterationLogEntry(
        iteration=1,
        item_id="s1",
        item_title="Story one",
        action=LoopAction.STARTED,
        detail=detail,
    )


def test_insert_loop_persists_config(conn):
    config = LoopConfig(max_iterations=7, quality_checks=[check("lint", required=False)])
    record = loop_store.insert_loop(conn, "loop_1", SCOPE, config)

    assert record.status == LoopStatus.RUNNING
    assert record.started_at and record.last_heartbeat_at
    assert record.config.max_iterations == 7
    assert record.config.quality_checks[0].id == "lint"
    assert record.config.quality_checks[0].required is False


def test_finalize_happens_exactly_once(conn):
    loop_store.insert_loop(conn, "loop_1", SCOPE, LoopConfig())

    assert loop_store.finalize_loop(conn, "loop_1", LoopStatus.CANCELLED, "Loop cancelled by user")
    assert not loop_store.finalize_loop(conn, "loop_1", LoopStatus.COMPLETED, "All stories completed!")

    record = loop_store.get_loop(conn, "loop_1")
    assert record.status == LoopStatus.CANCELLED
    assert record.status_message == "Loop cancelled by user"
    assert record.completed_at is not None


def test_finalize_rejects_active_status(conn):
    loop_store.insert_loop(conn, "loop_1", SCOPE, LoopConfig())
    with pytest.raises(ValueError):
        loop_store.finalize_loop(conn, "loop_1", LoopStatus.PAUSED)


def test_terminal_record_is_frozen(conn):
    loop_store.insert_loop(conn, "loop_1", SCOPE, LoopConfig())
    loop_store.finalize_loop(conn, "loop_1", LoopStatus.COMPLETED, "done")

    assert not loop_store.update_loop(conn, "loop_1", current_iteration=9)
    assert not loop_store.increment_loop_counters(conn, "loop_1", completed=1, iterations=1)
    assert not loop_store.touch_heartbeat(conn, "loop_1")
    assert not loop_store.set_loop_paused(conn, "loop_1")
    assert not loop_store.set_loop_running(conn, "loop_1")
    assert not loop_store.append_iteration_entry(conn, "loop_1", _entry())

    record = loop_store.get_loop(conn, "loop_1")
    assert record.status == LoopStatus.COMPLETED
    assert record.current_iteration == 0
    assert record.total_items_completed == 0
    assert record.iteration_log == []


def test_pause_and_resume_transitions(conn):
    loop_store.insert_loop(conn, "loop_1", SCOPE, LoopConfig())

    assert loop_store.set_loop_paused(conn, "loop_1")
    assert not loop_store.set_loop_paused(conn, "loop_1")
    assert loop_store.get_loop(conn, "loop_1").paused_at is not None

    assert loop_store.set_loop_running(conn, "loop_1")
    assert not loop_store.set_loop_running(conn, "loop_1")
    record = loop_store.get_loop(conn, "loop_1")
    assert record.status == LoopStatus.RUNNING
    assert record.paused_at is None


def test_update_loop_rejects_unknown_fields(conn):
    loop_store.insert_loop(conn, "loop_1", SCOPE, LoopConfig())
    with pytest.raises(ValueError):
        loop_store.update_loop(conn, "loop_1", status="completed")


def test_iteration_log_is_ordered_and_keeps_quality_results(conn):
    loop_store.insert_loop(conn, "loop_1", SCOPE, LoopConfig())
    loop_store.append_iteration_entry(conn, "loop_1", _entry("first"))
    loop_store.append_iteration_entry(
        conn,
        "loop_1",
        IterationLogEntry(
            iteration=1,
            item_id="s1",
            item_title="Story one",
            action=LoopAction.QUALITY_CHECK,
            detail="typecheck: PASSED (5ms)",
            quality_results=[],
        ),
    )

    log = loop_store.get_loop(conn, "loop_1").iteration_log
    assert [entry.detail for entry in log] == ["first", "typecheck: PASSED (5ms)"]
    assert log[0].quality_results is None
    assert log[1].quality_results == []
    assert log[0].timestamp is not None


def test_list_loops_filters_by_status(conn):
    loop_store.insert_loop(conn, "loop_a", SCOPE, LoopConfig())
    loop_store.insert_loop(conn, "loop_b", SCOPE, LoopConfig())
    loop_store.finalize_loop(conn, "loop_b", LoopStatus.FAILED, "boom")

    running = loop_store.list_loops(conn, [LoopStatus.RUNNING])
    assert [record.id for record in running] == ["loop_a"]
    assert {record.id for record in loop_store.list_loops(conn)} == {"loop_a", "loop_b"}
    assert [record.id for record in loop_store.list_active_loops(conn)] == ["loop_a"]
    assert len(loop_store.list_loops(conn, limit=1)) == 1


def test_heartbeat_age_seconds(conn):
    record = loop_store.insert_loop(conn, "loop_1", SCOPE, LoopConfig())
    later = datetime.now(timezone.utc) + timedelta(seconds=120)
    age = loop_store.heartbeat_age_seconds(record, now=later)
    assert age is not None and 115 <= age <= 125

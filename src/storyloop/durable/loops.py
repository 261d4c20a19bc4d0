"""Loop record persistence.

Every mutation is guarded with ``status IN ('running', 'paused')`` so a loop
record is frozen once it reaches a terminal status. ``finalize_loop`` returns
whether this call performed the terminal transition, which lets callers emit
exactly one terminal event.
"""

import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from storyloop.models import (
    ACTIVE_LOOP_STATUSES,
    IterationLogEntry,
    LoopAction,
    LoopConfig,
    LoopRecord,
    LoopScope,
    LoopStatus,
    QualityCheckResult,
)

_ACTIVE = tuple(status.value for status in ACTIVE_LOOP_STATUSES)
_ACTIVE_GUARD = "status IN (?, ?)"

_UPDATABLE_COLUMNS = {
    "current_iteration",
    "current_item_id",
    "current_agent_id",
    "config",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_entry(row: sqlite3.Row) -> IterationLogEntry:
    raw_results = row["quality_results_json"]
    return IterationLogEntry(
        iteration=int(row["iteration"]),
        item_id=row["item_id"],
        item_title=row["item_title"],
        action=LoopAction(row["action"]),
        detail=row["detail"] or "",
        timestamp=row["created_at"],
        quality_results=(
            [QualityCheckResult.from_dict(item) for item in json.loads(raw_results)]
            if raw_results
            else None
        ),
    )


def _row_to_loop(row: sqlite3.Row, log: list[IterationLogEntry]) -> LoopRecord:
    return LoopRecord(
        id=row["loop_id"],
        group_id=row["group_id"],
        workspace_path=row["workspace_path"],
        status=LoopStatus(row["status"]),
        config=LoopConfig.from_dict(json.loads(row["config_json"] or "{}")),
        current_iteration=int(row["current_iteration"] or 0),
        current_item_id=row["current_item_id"],
        current_agent_id=row["current_agent_id"],
        started_at=row["started_at"],
        paused_at=row["paused_at"],
        completed_at=row["completed_at"],
        last_heartbeat_at=row["last_heartbeat_at"],
        total_items_completed=int(row["total_items_completed"] or 0),
        total_items_failed=int(row["total_items_failed"] or 0),
        total_iterations=int(row["total_iterations"] or 0),
        status_message=row["status_message"],
        iteration_log=log,
    )


def insert_loop(
    conn: sqlite3.Connection,
    loop_id: str,
    scope: LoopScope,
    config: LoopConfig,
) -> LoopRecord:
    now = _now()
    conn.execute(
        """
        INSERT INTO loops (
            loop_id, group_id, workspace_path, status, config_json,
            started_at, last_heartbeat_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            loop_id,
            scope.group_id,
            scope.workspace_path,
            LoopStatus.RUNNING.value,
            json.dumps(config.to_dict()),
            now,
            now,
            now,
        ),
    )
    conn.commit()
    record = get_loop(conn, loop_id)
    assert record is not None
    return record


def list_iteration_entries(conn: sqlite3.Connection, loop_id: str) -> list[IterationLogEntry]:
    rows = conn.execute(
        "SELECT * FROM loop_iterations WHERE loop_id = ? ORDER BY entry_id ASC",
        (loop_id,),
    ).fetchall()
    return [_row_to_entry(row) for row in rows]


def get_loop(conn: sqlite3.Connection, loop_id: str) -> Optional[LoopRecord]:
    row = conn.execute("SELECT * FROM loops WHERE loop_id = ?", (loop_id,)).fetchone()
    if row is None:
        return None
    return _row_to_loop(row, list_iteration_entries(conn, loop_id))


def list_loops(
    conn: sqlite3.Connection,
    status: Optional[Iterable[LoopStatus]] = None,
    limit: int = 50,
) -> list[LoopRecord]:
    where = ""
    params: list[Any] = []
    statuses = [LoopStatus(value).value for value in (status or [])]
    if statuses:
        where = f"WHERE status IN ({', '.join('?' for _ in statuses)})"
        params.extend(statuses)
    rows = conn.execute(
        f"SELECT * FROM loops {where} ORDER BY started_at DESC, rowid DESC LIMIT ?",
        (*params, max(1, int(limit))),
    ).fetchall()
    return [_row_to_loop(row, list_iteration_entries(conn, row["loop_id"])) for row in rows]


def list_active_loops(conn: sqlite3.Connection) -> list[LoopRecord]:
    rows = conn.execute(
        f"SELECT * FROM loops WHERE {_ACTIVE_GUARD} ORDER BY started_at ASC",
        _ACTIVE,
    ).fetchall()
    return [_row_to_loop(row, list_iteration_entries(conn, row["loop_id"])) for row in rows]


def update_loop(conn: sqlite3.Connection, loop_id: str, **fields: Any) -> bool:
    unknown = set(fields) - _UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"Unsupported loop fields: {sorted(unknown)}")
    if not fields:
        return False
    assignments = []
    params: list[Any] = []
    for key, value in fields.items():
        if key == "config":
            assignments.append("config_json = ?")
            params.append(json.dumps(value.to_dict()))
        else:
            assignments.append(f"{key} = ?")
            params.append(value)
    assignments.append("updated_at = ?")
    params.append(_now())
    cursor = conn.execute(
        f"UPDATE loops SET {', '.join(assignments)} WHERE loop_id = ? AND {_ACTIVE_GUARD}",
        (*params, loop_id, *_ACTIVE),
    )
    conn.commit()
    return cursor.rowcount == 1


def set_loop_paused(conn: sqlite3.Connection, loop_id: str) -> bool:
    now = _now()
    cursor = conn.execute(
        """
        UPDATE loops SET status = ?, paused_at = ?, updated_at = ?
        WHERE loop_id = ? AND status = ?
        """,
        (LoopStatus.PAUSED.value, now, now, loop_id, LoopStatus.RUNNING.value),
    )
    conn.commit()
    return cursor.rowcount == 1


def set_loop_running(conn: sqlite3.Connection, loop_id: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE loops SET status = ?, paused_at = NULL, updated_at = ?
        WHERE loop_id = ? AND status = ?
        """,
        (LoopStatus.RUNNING.value, _now(), loop_id, LoopStatus.PAUSED.value),
    )
    conn.commit()
    return cursor.rowcount == 1


def touch_heartbeat(conn: sqlite3.Connection, loop_id: str) -> bool:
    now = _now()
    cursor = conn.execute(
        f"UPDATE loops SET last_heartbeat_at = ?, updated_at = ? WHERE loop_id = ? AND {_ACTIVE_GUARD}",
        (now, now, loop_id, *_ACTIVE),
    )
    conn.commit()
    return cursor.rowcount == 1


def increment_loop_counters(
    conn: sqlite3.Connection,
    loop_id: str,
    *,
    completed: int = 0,
    failed: int = 0,
    iterations: int = 0,
) -> bool:
    cursor = conn.execute(
        f"""
        UPDATE loops
        SET total_items_completed = total_items_completed + ?,
            total_items_failed = total_items_failed + ?,
            total_iterations = total_iterations + ?,
            updated_at = ?
        WHERE loop_id = ? AND {_ACTIVE_GUARD}
        """,
        (completed, failed, iterations, _now(), loop_id, *_ACTIVE),
    )
    conn.commit()
    return cursor.rowcount == 1


def finalize_loop(
    conn: sqlite3.Connection,
    loop_id: str,
    status: LoopStatus,
    message: Optional[str] = None,
) -> bool:
    if not status.is_terminal:
        raise ValueError(f"{status.value} is not a terminal loop status")
    now = _now()
    cursor = conn.execute(
        f"""
        UPDATE loops
        SET status = ?,
            status_message = ?,
            completed_at = ?,
            current_item_id = NULL,
            current_agent_id = NULL,
            updated_at = ?
        WHERE loop_id = ? AND {_ACTIVE_GUARD}
        """,
        (status.value, message, now, now, loop_id, *_ACTIVE),
    )
    conn.commit()
    return cursor.rowcount == 1


def append_iteration_entry(
    conn: sqlite3.Connection, loop_id: str, entry: IterationLogEntry
) -> bool:
    timestamp = entry.timestamp or _now()
    results = (
        json.dumps([result.to_dict() for result in entry.quality_results])
        if entry.quality_results is not None
        else None
    )
    cursor = conn.execute(
        f"""
        INSERT INTO loop_iterations (
            loop_id, iteration, item_id, item_title, action, detail,
            quality_results_json, created_at
        )
        SELECT ?, ?, ?, ?, ?, ?, ?, ?
        WHERE EXISTS (SELECT 1 FROM loops WHERE loop_id = ? AND {_ACTIVE_GUARD})
        """,
        (
            loop_id,
            entry.iteration,
            entry.item_id,
            entry.item_title,
            entry.action.value,
            entry.detail,
            results,
            timestamp,
            loop_id,
            *_ACTIVE,
        ),
    )
    conn.commit()
    return cursor.rowcount == 1


def heartbeat_age_seconds(record: LoopRecord, now: Optional[datetime] = None) -> Optional[float]:
    stamp = record.last_heartbeat_at or record.started_at
    if not stamp:
        return None
    try:
        parsed = datetime.fromisoformat(stamp)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return ((now or datetime.now(timezone.utc)) - parsed).total_seconds()

import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Optional

from storyloop.models import (
    ExternalRef,
    LoopScope,
    StoryPriority,
    StoryStatus,
    WorkGroup,
    WorkItem,
)

OPEN_STATUSES = (StoryStatus.PENDING.value, StoryStatus.IN_PROGRESS.value)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _scope_clause(scope: LoopScope) -> tuple[str, tuple[Any, ...]]:
    if scope.group_id:
        return "group_id = ?", (scope.group_id,)
    return "group_id IS NULL AND workspace_path = ?", (scope.workspace_path,)


def _row_to_item(row: sqlite3.Row) -> WorkItem:
    external = row["external_ref_json"]
    return WorkItem(
        id=row["item_id"],
        group_id=row["group_id"],
        workspace_path=row["workspace_path"],
        title=row["title"],
        description=row["description"] or "",
        acceptance_criteria=json.loads(row["acceptance_criteria_json"] or "[]"),
        priority=StoryPriority(row["priority"]),
        depends_on=json.loads(row["depends_on_json"] or "[]"),
        status=StoryStatus(row["status"]),
        attempts=int(row["attempts"] or 0),
        max_attempts=int(row["max_attempts"] or 0),
        research_only=bool(row["research_only"]),
        learnings=json.loads(row["learnings_json"] or "[]"),
        external_ref=ExternalRef.from_dict(json.loads(external)) if external else None,
        session_id=row["session_id"],
        commit_sha=row["commit_sha"],
        sort_order=int(row["sort_order"] or 0),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def insert_group(conn: sqlite3.Connection, group: WorkGroup) -> WorkGroup:
    now = _now()
    conn.execute(
        """
        INSERT INTO work_groups (group_id, name, workspace_path, description, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (group.id, group.name, group.workspace_path, group.description, now),
    )
    conn.commit()
    group.created_at = now
    return group


def get_group(conn: sqlite3.Connection, group_id: str) -> Optional[WorkGroup]:
    row = conn.execute(
        "SELECT * FROM work_groups WHERE group_id = ?", (group_id,)
    ).fetchone()
    if row is None:
        return None
    return WorkGroup(
        id=row["group_id"],
        name=row["name"],
        workspace_path=row["workspace_path"],
        description=row["description"] or "",
        created_at=row["created_at"],
    )


def insert_work_item(conn: sqlite3.Connection, item: WorkItem) -> WorkItem:
    now = _now()
    conn.execute(
        """
        INSERT INTO work_items (
            item_id, group_id, workspace_path, title, description,
            acceptance_criteria_json, priority, depends_on_json, status,
            attempts, max_attempts, research_only, learnings_json,
            external_ref_json, session_id, commit_sha, sort_order,
            created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            item.id,
            item.group_id,
            item.workspace_path,
            item.title,
            item.description,
            json.dumps(item.acceptance_criteria),
            item.priority.value,
            json.dumps(item.depends_on),
            item.status.value,
            item.attempts,
            item.max_attempts,
            1 if item.research_only else 0,
            json.dumps(item.learnings),
            json.dumps(item.external_ref.to_dict()) if item.external_ref else None,
            item.session_id,
            item.commit_sha,
            item.sort_order,
            now,
            now,
        ),
    )
    conn.commit()
    item.created_at = now
    item.updated_at = now
    return item


def get_work_item(conn: sqlite3.Connection, item_id: str) -> Optional[WorkItem]:
    row = conn.execute(
        "SELECT * FROM work_items WHERE item_id = ?", (item_id,)
    ).fetchone()
    return _row_to_item(row) if row else None


def list_items_for_scope(conn: sqlite3.Connection, scope: LoopScope) -> list[WorkItem]:
    clause, params = _scope_clause(scope)
    rows = conn.execute(
        f"SELECT * FROM work_items WHERE {clause} ORDER BY sort_order ASC, created_at ASC",
        params,
    ).fetchall()
    return [_row_to_item(row) for row in rows]


def count_open_items(conn: sqlite3.Connection, scope: LoopScope) -> int:
    """Count pending/in_progress items that an agent would actually work on."""
    clause, params = _scope_clause(scope)
    row = conn.execute(
        f"""
        SELECT COUNT(*) AS c FROM work_items
        WHERE {clause} AND status IN (?, ?) AND research_only = 0
        """,
        (*params, *OPEN_STATUSES),
    ).fetchone()
    return int(row["c"] if row else 0)


def mark_in_progress(
    conn: sqlite3.Connection, item_id: str, *, count_attempt: bool
) -> Optional[WorkItem]:
    conn.execute(
        """
        UPDATE work_items
        SET status = ?, attempts = attempts + ?, updated_at = ?
        WHERE item_id = ?
        """,
        (StoryStatus.IN_PROGRESS.value, 1 if count_attempt else 0, _now(), item_id),
    )
    conn.commit()
    return get_work_item(conn, item_id)


def set_item_status(
    conn: sqlite3.Connection,
    item_id: str,
    status: StoryStatus,
    *,
    session_id: Optional[str] = None,
    commit_sha: Optional[str] = None,
) -> None:
    conn.execute(
        """
        UPDATE work_items
        SET status = ?,
            session_id = COALESCE(?, session_id),
            commit_sha = COALESCE(?, commit_sha),
            updated_at = ?
        WHERE item_id = ?
        """,
        (status.value, session_id, commit_sha, _now(), item_id),
    )
    conn.commit()


def release_item(conn: sqlite3.Connection, item_id: str) -> StoryStatus:
    """Return an in-flight item to the queue, or fail it when out of attempts."""
    item = get_work_item(conn, item_id)
    if item is None:
        return StoryStatus.FAILED
    status = StoryStatus.FAILED if item.attempts_exhausted else StoryStatus.PENDING
    set_item_status(conn, item_id, status)
    return status


def append_learning(conn: sqlite3.Connection, item_id: str, learning: str) -> list[str]:
    item = get_work_item(conn, item_id)
    if item is None:
        return []
    learnings = [*item.learnings, learning]
    conn.execute(
        "UPDATE work_items SET learnings_json = ?, updated_at = ? WHERE item_id = ?",
        (json.dumps(learnings), _now(), item_id),
    )
    conn.commit()
    return learnings


def mark_external_synced(conn: sqlite3.Connection, item_id: str) -> Optional[ExternalRef]:
    item = get_work_item(conn, item_id)
    if item is None or item.external_ref is None:
        return None
    ref = item.external_ref
    ref.synced_at = _now()
    conn.execute(
        "UPDATE work_items SET external_ref_json = ?, updated_at = ? WHERE item_id = ?",
        (json.dumps(ref.to_dict()), _now(), item_id),
    )
    conn.commit()
    return ref


def reset_in_progress_items(conn: sqlite3.Connection, scope: LoopScope) -> int:
    """Put every in_progress item in the scope back to pending. Idempotent."""
    clause, params = _scope_clause(scope)
    cursor = conn.execute(
        f"""
        UPDATE work_items SET status = ?, updated_at = ?
        WHERE {clause} AND status = ?
        """,
        (StoryStatus.PENDING.value, _now(), *params, StoryStatus.IN_PROGRESS.value),
    )
    conn.commit()
    return cursor.rowcount


def apply_max_attempts(conn: sqlite3.Connection, scope: LoopScope, max_attempts: int) -> int:
    """Apply the loop's per-item attempt cap, never below attempts already used."""
    clause, params = _scope_clause(scope)
    cursor = conn.execute(
        f"""
        UPDATE work_items SET max_attempts = MAX(?, attempts), updated_at = ?
        WHERE {clause} AND status IN (?, ?) AND research_only = 0
        """,
        (max_attempts, _now(), *params, *OPEN_STATUSES),
    )
    conn.commit()
    return cursor.rowcount


def upsert_workspace_learning(
    conn: sqlite3.Connection,
    workspace_path: str,
    key: str,
    content: str,
    source_item_id: Optional[str] = None,
) -> None:
    """Store the latest learning under ``key`` so later loops in the workspace see it."""
    now = _now()
    conn.execute(
        """
        INSERT INTO workspace_learnings (
            workspace_path, learning_key, content, source_item_id,
            times_seen, created_at, updated_at
        ) VALUES (?, ?, ?, ?, 1, ?, ?)
        ON CONFLICT(workspace_path, learning_key) DO UPDATE SET
            content = excluded.content,
            source_item_id = excluded.source_item_id,
            times_seen = times_seen + 1,
            updated_at = excluded.updated_at
        """,
        (workspace_path, key, content[:500], source_item_id, now, now),
    )
    conn.commit()


def list_workspace_learnings(
    conn: sqlite3.Connection, workspace_path: str, limit: int = 50
) -> list[tuple[str, str]]:
    rows = conn.execute(
        """
        SELECT learning_key, content FROM workspace_learnings
        WHERE workspace_path = ?
        ORDER BY times_seen DESC, updated_at DESC
        LIMIT ?
        """,
        (workspace_path, limit),
    ).fetchall()
    return [(row["learning_key"], row["content"]) for row in rows]

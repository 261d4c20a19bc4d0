import json
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from storyloop.models import AgentNote, StoryStatus


def _row_to_note(row: sqlite3.Row) -> AgentNote:
    return AgentNote(
        id=row["note_id"],
        loop_id=row["loop_id"],
        item_id=row["item_id"],
        workspace_path=row["workspace_path"],
        outcome=StoryStatus(row["outcome"]),
        title=row["title"],
        content=row["content"],
        session_id=row["session_id"],
        metadata=json.loads(row["metadata_json"] or "{}"),
        created_at=row["created_at"],
    )


def insert_agent_note(
    conn: sqlite3.Connection,
    *,
    loop_id: str,
    item_id: str,
    workspace_path: str,
    outcome: StoryStatus,
    title: str,
    content: str,
    session_id: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> AgentNote:
    note = AgentNote(
        id=f"note_{uuid.uuid4().hex[:12]}",
        loop_id=loop_id,
        item_id=item_id,
        workspace_path=workspace_path,
        outcome=outcome,
        title=title,
        content=content,
        session_id=session_id,
        metadata=dict(metadata or {}),
        created_at=datetime.now(timezone.utc).isoformat(),
    )
    conn.execute(
        """
        INSERT INTO agent_notes (
            note_id, loop_id, item_id, workspace_path, session_id,
            outcome, title, content, metadata_json, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            note.id,
            note.loop_id,
            note.item_id,
            note.workspace_path,
            note.session_id,
            note.outcome.value,
            note.title,
            note.content,
            json.dumps(note.metadata),
            note.created_at,
        ),
    )
    conn.commit()
    return note


def list_agent_notes(
    conn: sqlite3.Connection,
    *,
    loop_id: Optional[str] = None,
    item_id: Optional[str] = None,
    limit: int = 100,
) -> list[AgentNote]:
    """Notes oldest first, optionally narrowed to one loop and/or one item."""
    clauses: list[str] = []
    params: list[Any] = []
    if loop_id:
        clauses.append("loop_id = ?")
        params.append(loop_id)
    if item_id:
        clauses.append("item_id = ?")
        params.append(item_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        f"SELECT * FROM agent_notes {where} ORDER BY created_at ASC, rowid ASC LIMIT ?",
        (*params, max(1, int(limit))),
    ).fetchall()
    return [_row_to_note(row) for row in rows]

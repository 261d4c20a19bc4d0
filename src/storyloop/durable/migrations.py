import sqlite3


# Nested list values (acceptance criteria, dependencies, learnings, loop
# config, quality results) live in *_json TEXT columns. The iteration log is
# its own append-only table.
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS work_groups (
  group_id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  workspace_path TEXT NOT NULL,
  description TEXT NOT NULL DEFAULT '',
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS work_items (
  item_id TEXT PRIMARY KEY,
  group_id TEXT,
  workspace_path TEXT,
  title TEXT NOT NULL,
  description TEXT NOT NULL DEFAULT '',
  acceptance_criteria_json TEXT NOT NULL DEFAULT '[]',
  priority TEXT NOT NULL DEFAULT 'medium',
  depends_on_json TEXT NOT NULL DEFAULT '[]',
  status TEXT NOT NULL DEFAULT 'pending',
  attempts INTEGER NOT NULL DEFAULT 0,
  max_attempts INTEGER NOT NULL DEFAULT 3,
  research_only INTEGER NOT NULL DEFAULT 0,
  learnings_json TEXT NOT NULL DEFAULT '[]',
  external_ref_json TEXT,
  session_id TEXT,
  commit_sha TEXT,
  sort_order INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  FOREIGN KEY(group_id) REFERENCES work_groups(group_id)
);

CREATE INDEX IF NOT EXISTS idx_work_items_group
  ON work_items(group_id, status);
CREATE INDEX IF NOT EXISTS idx_work_items_workspace
  ON work_items(workspace_path, status);

CREATE TABLE IF NOT EXISTS loops (
  loop_id TEXT PRIMARY KEY,
  group_id TEXT,
  workspace_path TEXT NOT NULL,
  status TEXT NOT NULL,
  config_json TEXT NOT NULL,
  current_iteration INTEGER NOT NULL DEFAULT 0,
  current_item_id TEXT,
  current_agent_id TEXT,
  started_at TEXT NOT NULL,
  paused_at TEXT,
  completed_at TEXT,
  last_heartbeat_at TEXT,
  total_items_completed INTEGER NOT NULL DEFAULT 0,
  total_items_failed INTEGER NOT NULL DEFAULT 0,
  total_iterations INTEGER NOT NULL DEFAULT 0,
  status_message TEXT,
  updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_loops_status
  ON loops(status, started_at);

CREATE TABLE IF NOT EXISTS loop_iterations (
  entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
  loop_id TEXT NOT NULL,
  iteration INTEGER NOT NULL,
  item_id TEXT NOT NULL,
  item_title TEXT NOT NULL,
  action TEXT NOT NULL,
  detail TEXT NOT NULL DEFAULT '',
  quality_results_json TEXT,
  created_at TEXT NOT NULL,
  FOREIGN KEY(loop_id) REFERENCES loops(loop_id)
);

CREATE INDEX IF NOT EXISTS idx_loop_iterations_loop
  ON loop_iterations(loop_id, entry_id);

CREATE TABLE IF NOT EXISTS workspace_learnings (
  learning_id INTEGER PRIMARY KEY AUTOINCREMENT,
  workspace_path TEXT NOT NULL,
  learning_key TEXT NOT NULL,
  content TEXT NOT NULL,
  source_item_id TEXT,
  times_seen INTEGER NOT NULL DEFAULT 1,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  UNIQUE(workspace_path, learning_key)
);

CREATE TABLE IF NOT EXISTS agent_notes (
  note_id TEXT PRIMARY KEY,
  loop_id TEXT NOT NULL,
  item_id TEXT NOT NULL,
  workspace_path TEXT NOT NULL,
  session_id TEXT,
  outcome TEXT NOT NULL,
  title TEXT NOT NULL,
  content TEXT NOT NULL,
  metadata_json TEXT NOT NULL DEFAULT '{}',
  created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_agent_notes_loop
  ON agent_notes(loop_id, created_at);
CREATE INDEX IF NOT EXISTS idx_agent_notes_item
  ON agent_notes(item_id);
"""


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(row[1] == column for row in rows)


def _add_column_if_missing(
    conn: sqlite3.Connection, table: str, column: str, column_type: str
) -> None:
    if _column_exists(conn, table, column):
        return
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")


def ensure_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    _add_column_if_missing(conn, "loops", "status_message", "TEXT")
    _add_column_if_missing(conn, "loops", "last_heartbeat_at", "TEXT")
    _add_column_if_missing(conn, "work_items", "external_ref_json", "TEXT")
    conn.commit()

import sqlite3
from typing import Optional

from storyloop.durable.migrations import ensure_schema
from storyloop.feature_flags import get_db_path


def connect_loop_db(db_path: Optional[str] = None) -> sqlite3.Connection:
    path = db_path or get_db_path()
    # NOTE: the API process and the CLI can open the same file.
    # - Use a generous busy timeout for lock contention.
    # - Disable same-thread checks: the connection is opened before the server
    #   starts, then used from whichever thread runs the event loop (uvicorn,
    #   TestClient's portal). API routes are async, so access stays on that one
    #   thread.
    conn = sqlite3.connect(path, timeout=60.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    if path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA busy_timeout=60000;")
    ensure_schema(conn)
    return conn

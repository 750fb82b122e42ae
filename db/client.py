"""Database connection helper for prompt-relay.

Every connection enables WAL mode and foreign keys. The composite
(script_id, project_id) references between prompts, edges and projects
are only enforced while foreign keys are on.
"""

import sqlite3
from pathlib import Path


def get_connection(db_path: str | Path) -> sqlite3.Connection:
    """Create a new SQLite connection with WAL mode and foreign keys enabled.

    ``check_same_thread`` is off so a request-scoped connection can be
    closed from FastAPI's threadpool after the handler ran elsewhere.
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    return conn

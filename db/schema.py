"""Database table definitions for prompt-relay.

Uses raw SQL strings. The script graph (projects, prompts, edges) is
replaced wholesale on every save, so its child tables cascade from
``scripts`` and reference projects through the composite
(script_id, project_id) key.
"""

TABLES = {
    "scripts": """
        CREATE TABLE IF NOT EXISTS scripts (
            id          TEXT PRIMARY KEY,
            topic_id    TEXT NOT NULL,
            user_id     TEXT NOT NULL,
            created_at  TEXT NOT NULL,
            updated_at  TEXT NOT NULL,
            UNIQUE(topic_id, user_id)
        )
    """,
    "script_projects": """
        CREATE TABLE IF NOT EXISTS script_projects (
            script_id     TEXT NOT NULL REFERENCES scripts(id) ON DELETE CASCADE,
            project_id    TEXT NOT NULL,
            name          TEXT NOT NULL,
            output_name   TEXT,
            description   TEXT,
            instructions  TEXT,
            created_at    TEXT NOT NULL,
            created_at_db TEXT NOT NULL,
            PRIMARY KEY (script_id, project_id)
        )
    """,
    "script_prompts": """
        CREATE TABLE IF NOT EXISTS script_prompts (
            id            TEXT PRIMARY KEY,
            script_id     TEXT NOT NULL,
            project_id    TEXT NOT NULL,
            text          TEXT NOT NULL,
            filename      TEXT,
            input_files   TEXT NOT NULL DEFAULT '[]',
            exit          INTEGER NOT NULL DEFAULT 0,
            merge         INTEGER NOT NULL DEFAULT 0,
            prompt_order  INTEGER NOT NULL,
            created_at    TEXT NOT NULL,
            FOREIGN KEY (script_id, project_id)
                REFERENCES script_projects(script_id, project_id) ON DELETE CASCADE,
            UNIQUE(script_id, project_id, prompt_order)
        )
    """,
    "script_edges": """
        CREATE TABLE IF NOT EXISTS script_edges (
            id           TEXT PRIMARY KEY,
            script_id    TEXT NOT NULL REFERENCES scripts(id) ON DELETE CASCADE,
            edge_id      TEXT NOT NULL,
            source       TEXT NOT NULL,
            target       TEXT NOT NULL,
            source_name  TEXT,
            target_name  TEXT,
            created_at   TEXT NOT NULL,
            FOREIGN KEY (script_id, source)
                REFERENCES script_projects(script_id, project_id) ON DELETE CASCADE,
            FOREIGN KEY (script_id, target)
                REFERENCES script_projects(script_id, project_id) ON DELETE CASCADE,
            CHECK (source <> target)
        )
    """,
    "script_executions": """
        CREATE TABLE IF NOT EXISTS script_executions (
            id                  TEXT PRIMARY KEY,
            script_id           TEXT NOT NULL REFERENCES scripts(id) ON DELETE CASCADE,
            topic_id            TEXT NOT NULL,
            user_id             TEXT NOT NULL,
            status              TEXT NOT NULL DEFAULT 'pending',
            current_project_id  TEXT,
            error_message       TEXT,
            retry_count         INTEGER NOT NULL DEFAULT 0,
            started_at          TEXT,
            completed_at        TEXT,
            created_at          TEXT NOT NULL,
            updated_at          TEXT NOT NULL
        )
    """,
    "script_project_executions": """
        CREATE TABLE IF NOT EXISTS script_project_executions (
            id             TEXT PRIMARY KEY,
            execution_id   TEXT NOT NULL REFERENCES script_executions(id) ON DELETE CASCADE,
            project_id     TEXT NOT NULL,
            project_order  INTEGER NOT NULL,
            status         TEXT NOT NULL DEFAULT 'pending',
            started_at     TEXT,
            completed_at   TEXT,
            error_message  TEXT,
            retry_count    INTEGER NOT NULL DEFAULT 0,
            created_at     TEXT NOT NULL,
            updated_at     TEXT NOT NULL,
            UNIQUE(execution_id, project_order),
            UNIQUE(execution_id, project_id)
        )
    """,
    "process_logs": """
        CREATE TABLE IF NOT EXISTS process_logs (
            id           TEXT PRIMARY KEY,
            entity_type  TEXT NOT NULL,
            entity_id    TEXT NOT NULL,
            user_id      TEXT NOT NULL,
            machine_id   TEXT,
            stage        TEXT NOT NULL,
            status       TEXT NOT NULL,
            message      TEXT NOT NULL,
            metadata     TEXT,
            created_at   TEXT NOT NULL
        )
    """,
    "log_queue": """
        CREATE TABLE IF NOT EXISTS log_queue (
            id                TEXT PRIMARY KEY,
            body              TEXT NOT NULL,
            enqueued_at       TEXT NOT NULL,
            delivery_count    INTEGER NOT NULL DEFAULT 0,
            acked_at          TEXT,
            dead_lettered_at  TEXT,
            last_error        TEXT
        )
    """,
}

# Creation order follows foreign key dependencies
TABLE_CREATION_ORDER = [
    "scripts",
    "script_projects",
    "script_prompts",
    "script_edges",
    "script_executions",
    "script_project_executions",
    "process_logs",
    "log_queue",
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_process_logs_entity "
    "ON process_logs(entity_type, entity_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_process_logs_user ON process_logs(user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_process_logs_created ON process_logs(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_executions_user_status "
    "ON script_executions(user_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_log_queue_pending "
    "ON log_queue(acked_at, dead_lettered_at, enqueued_at)",
]

"""Script graph persistence for prompt-relay.

Each function takes a sqlite3.Connection and explicit params, returns a dict.
Errors come back as ``{"error": code, "message": ...}`` so the API layer can
map them onto HTTP statuses.

A script is owned 1:1 by (topic_id, user_id). Saving replaces the whole
graph: existing projects, prompts and edges are deleted and recreated in
one transaction, after validation has rejected orphan references.
"""

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _uuid() -> str:
    return str(uuid.uuid4())


def normalize_timestamp(value: str) -> str:
    """Parse an ISO-8601 timestamp and return it as a UTC isoformat string.

    Naive timestamps are taken as UTC. Raises ValueError on bad input.
    """
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def _invalid(message: str) -> dict[str, Any]:
    return {"error": "invalid_input", "message": message}


def validate_graph(
    projects: list[dict[str, Any]], edges: list[dict[str, Any]]
) -> dict[str, Any] | None:
    """Check a graph before it is written. Returns an error dict or None.

    Rejects duplicate project ids, projects without prompts, duplicate
    prompt orders within a project, unparseable ``created_at`` values,
    edges whose endpoints are not projects of this script, and self loops.
    Cycles are allowed here; they are rejected when the script is executed.
    """
    project_ids: set[str] = set()
    for project in projects:
        pid = project["id"]
        if pid in project_ids:
            return _invalid(f"Duplicate project id '{pid}'")
        project_ids.add(pid)

        try:
            normalize_timestamp(project["created_at"])
        except (ValueError, TypeError):
            return _invalid(
                f"Invalid created_at for project '{pid}': {project.get('created_at')!r}"
            )

        prompts = project.get("prompts") or []
        if not prompts:
            return _invalid(f"Project '{pid}' has no prompts")

        orders: set[int] = set()
        for index, prompt in enumerate(prompts):
            order = prompt.get("prompt_order")
            order = index if order is None else order
            if order in orders:
                return _invalid(f"Duplicate prompt_order {order} in project '{pid}'")
            orders.add(order)

    for edge in edges:
        source, target = edge["source"], edge["target"]
        if source == target:
            return _invalid(f"Edge '{edge['id']}' is a self loop on '{source}'")
        for endpoint in (source, target):
            if endpoint not in project_ids:
                return _invalid(
                    f"Edge '{edge['id']}' references unknown project '{endpoint}'"
                )

    return None


def save_script(
    conn: sqlite3.Connection,
    topic_id: str,
    user_id: str,
    projects: list[dict[str, Any]],
    edges: list[dict[str, Any]],
) -> dict[str, Any]:
    """Create or replace the script for (topic_id, user_id).

    Args:
        conn: Active SQLite connection.
        topic_id: Owning topic (opaque id).
        user_id: Owning user.
        projects: Dicts with id, name, created_at, prompts and optional
                  output_name, description, instructions.
        edges: Dicts with id, source, target and optional source_name, target_name.

    Returns:
        The saved script (see get_script), or an error dict.
    """
    error = validate_graph(projects, edges)
    if error:
        return error

    now = _now()
    try:
        existing = conn.execute(
            "SELECT id FROM scripts WHERE topic_id = ? AND user_id = ?",
            (topic_id, user_id),
        ).fetchone()

        if existing:
            script_id = existing["id"]
            conn.execute(
                "UPDATE scripts SET updated_at = ? WHERE id = ?", (now, script_id)
            )
            # Prompts and edges cascade from their projects
            conn.execute("DELETE FROM script_edges WHERE script_id = ?", (script_id,))
            conn.execute("DELETE FROM script_prompts WHERE script_id = ?", (script_id,))
            conn.execute("DELETE FROM script_projects WHERE script_id = ?", (script_id,))
        else:
            script_id = _uuid()
            conn.execute(
                "INSERT INTO scripts (id, topic_id, user_id, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (script_id, topic_id, user_id, now, now),
            )

        for project in projects:
            conn.execute(
                """INSERT INTO script_projects
                   (script_id, project_id, name, output_name, description,
                    instructions, created_at, created_at_db)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    script_id,
                    project["id"],
                    project["name"],
                    project.get("output_name"),
                    project.get("description"),
                    project.get("instructions"),
                    normalize_timestamp(project["created_at"]),
                    now,
                ),
            )
            for index, prompt in enumerate(project["prompts"]):
                order = prompt.get("prompt_order")
                conn.execute(
                    """INSERT INTO script_prompts
                       (id, script_id, project_id, text, filename, input_files,
                        exit, merge, prompt_order, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        _uuid(),
                        script_id,
                        project["id"],
                        prompt["text"],
                        prompt.get("filename"),
                        json.dumps(prompt.get("input_files") or []),
                        int(bool(prompt.get("exit"))),
                        int(bool(prompt.get("merge"))),
                        index if order is None else order,
                        now,
                    ),
                )

        for edge in edges:
            conn.execute(
                """INSERT INTO script_edges
                   (id, script_id, edge_id, source, target, source_name, target_name, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    _uuid(),
                    script_id,
                    edge["id"],
                    edge["source"],
                    edge["target"],
                    edge.get("source_name"),
                    edge.get("target_name"),
                    now,
                ),
            )
        conn.commit()
    except sqlite3.IntegrityError as e:
        conn.rollback()
        return _invalid(f"Script graph rejected by the store: {e}")

    return get_script(conn, topic_id, user_id)


def _prompt_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    prompt = dict(row)
    prompt["input_files"] = json.loads(prompt["input_files"] or "[]")
    prompt["exit"] = bool(prompt["exit"])
    prompt["merge"] = bool(prompt["merge"])
    return prompt


def load_graph(conn: sqlite3.Connection, script_id: str) -> dict[str, Any]:
    """Load projects (with ordered prompts) and edges for a script id."""
    project_rows = conn.execute(
        """SELECT * FROM script_projects WHERE script_id = ?
           ORDER BY created_at, project_id""",
        (script_id,),
    ).fetchall()
    prompt_rows = conn.execute(
        "SELECT * FROM script_prompts WHERE script_id = ? ORDER BY project_id, prompt_order",
        (script_id,),
    ).fetchall()
    edge_rows = conn.execute(
        "SELECT * FROM script_edges WHERE script_id = ? ORDER BY created_at, edge_id",
        (script_id,),
    ).fetchall()

    prompts_by_project: dict[str, list[dict[str, Any]]] = {}
    for row in prompt_rows:
        prompts_by_project.setdefault(row["project_id"], []).append(_prompt_to_dict(row))

    projects = []
    for row in project_rows:
        project = dict(row)
        project["prompts"] = prompts_by_project.get(row["project_id"], [])
        projects.append(project)

    return {"projects": projects, "edges": [dict(e) for e in edge_rows]}


def get_script(conn: sqlite3.Connection, topic_id: str, user_id: str) -> dict[str, Any]:
    """Return the script for (topic_id, user_id) with its full graph."""
    row = conn.execute(
        "SELECT * FROM scripts WHERE topic_id = ? AND user_id = ?",
        (topic_id, user_id),
    ).fetchone()
    if row is None:
        return {
            "error": "not_found",
            "message": f"No script for topic '{topic_id}'",
        }

    script = dict(row)
    script.update(load_graph(conn, script["id"]))
    return script


def delete_script(conn: sqlite3.Connection, topic_id: str, user_id: str) -> dict[str, Any]:
    """Delete a script and, by cascade, its graph and executions."""
    row = conn.execute(
        "SELECT id FROM scripts WHERE topic_id = ? AND user_id = ?",
        (topic_id, user_id),
    ).fetchone()
    if row is None:
        return {
            "error": "not_found",
            "message": f"No script for topic '{topic_id}'",
        }

    conn.execute("DELETE FROM scripts WHERE id = ?", (row["id"],))
    conn.commit()
    return {"status": "deleted", "script_id": row["id"]}

"""CLI entry point for prompt-relay.

Commands:
    prompt-relay init         write a starter config in the current directory
    prompt-relay serve        start the API server
    prompt-relay migrate      create the database tables
    prompt-relay sweep-logs   delete expired process logs once
    prompt-relay enqueue-log  put a JSON log event on the log queue
    prompt-relay dead-letters list queue messages that could not be delivered
"""

import json
import logging
import sys
from pathlib import Path
from typing import Any

import click

from prompt_relay.config import CONFIG_FILENAME, DEFAULTS, ConfigError, load_config

DEFAULT_CONFIG: dict[str, Any] = {
    "db_path": "~/.prompt-relay/prompt-relay.db",
    "automation_url": "http://localhost:9000",
    **DEFAULTS,
}


def _load_or_exit(config_path: str | None) -> dict[str, Any]:
    try:
        return load_config(config_path)
    except ConfigError as e:
        click.echo(f"Config error: {e}", err=True)
        sys.exit(1)


@click.group()
def main() -> None:
    """prompt-relay: run prompt scripts against the automation backend."""


@main.command()
def init() -> None:
    """Create a starter prompt-relay.config.json."""
    config_path = Path.cwd() / CONFIG_FILENAME
    if config_path.exists():
        click.echo(f"Config already exists: {config_path}")
        return
    config_path.write_text(json.dumps(DEFAULT_CONFIG, indent=2) + "\n")
    click.echo(f"Created {config_path}")
    click.echo(f"Done. Edit {CONFIG_FILENAME} to set your automation_url.")


@main.command()
@click.option("--config", "config_path", default=None, help="Path to the config file")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.option(
    "--log-level",
    default="info",
    show_default=True,
    type=click.Choice(["debug", "info", "warning", "error"]),
)
def serve(config_path: str | None, host: str, port: int, log_level: str) -> None:
    """Start the prompt-relay API server."""
    config = _load_or_exit(config_path)
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    import uvicorn

    from api.app import create_app

    app = create_app(config["db_path"], config)
    uvicorn.run(app, host=host, port=port, log_level=log_level)


@main.command()
@click.option("--config", "config_path", default=None, help="Path to the config file")
def migrate(config_path: str | None) -> None:
    """Create any missing tables and indexes."""
    from db.migrations import init_db

    config = _load_or_exit(config_path)
    conn = init_db(config["db_path"])
    conn.close()
    click.echo(f"Database ready: {config['db_path']}")


@main.command("sweep-logs")
@click.option("--config", "config_path", default=None, help="Path to the config file")
@click.option("--days", type=int, default=None, help="Override log_retention_days")
def sweep_logs(config_path: str | None, days: int | None) -> None:
    """Delete process logs older than the retention window."""
    from db.migrations import init_db
    from runner.retention import delete_old_logs

    config = _load_or_exit(config_path)
    retention_days = days if days is not None else config["log_retention_days"]
    if retention_days <= 0:
        click.echo("Error: --days must be positive", err=True)
        sys.exit(1)

    conn = init_db(config["db_path"])
    try:
        deleted = delete_old_logs(conn, retention_days)
    finally:
        conn.close()
    click.echo(f"Deleted {deleted} expired log entries (retention {retention_days} day(s))")


@main.command("enqueue-log")
@click.option("--config", "config_path", default=None, help="Path to the config file")
@click.argument("payload")
def enqueue_log_cmd(config_path: str | None, payload: str) -> None:
    """Put a JSON log event (PAYLOAD, or - for stdin) on the log queue."""
    from db.migrations import init_db
    from prompt_relay.logs import enqueue_log

    config = _load_or_exit(config_path)
    raw = sys.stdin.read() if payload == "-" else payload
    try:
        body = json.loads(raw)
    except json.JSONDecodeError as e:
        click.echo(f"Error: payload is not valid JSON: {e}", err=True)
        sys.exit(1)

    conn = init_db(config["db_path"])
    try:
        message_id = enqueue_log(conn, body)
    finally:
        conn.close()
    click.echo(message_id)


@main.command("dead-letters")
@click.option("--config", "config_path", default=None, help="Path to the config file")
def dead_letters(config_path: str | None) -> None:
    """List log queue messages that were parked after failing delivery."""
    from api.deps import get_dead_letters
    from db.migrations import init_db

    config = _load_or_exit(config_path)
    conn = init_db(config["db_path"])
    try:
        messages = get_dead_letters(conn)
    finally:
        conn.close()

    if not messages:
        click.echo("No dead-lettered messages")
        return
    for message in messages:
        click.echo(
            f"{message['id']}  deliveries={message['delivery_count']}  "
            f"parked={message['dead_lettered_at']}  error={message['last_error']}"
        )
        click.echo(f"    {message['body']}")

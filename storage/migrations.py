"""Ad-hoc database migrations for the task sync store."""

from __future__ import annotations

from sqlalchemy import text


def _column_exists(conn, table: str, column: str) -> bool:
    result = conn.execute(text(f"PRAGMA table_info('{table}')"))
    return any(row[1] == column for row in result)


def ensure_sync_queue_columns(conn) -> None:
    # databases created before retry backoff and claims were introduced
    columns = {
        "next_try_at": "DATETIME",
        "claimed_by": "TEXT",
        "claimed_at": "DATETIME",
    }
    for name, ddl_type in columns.items():
        if not _column_exists(conn, "sync_queue", name):
            conn.execute(text(f"ALTER TABLE sync_queue ADD COLUMN {name} {ddl_type}"))

    conn.execute(
        text(
            """
            UPDATE sync_queue
            SET next_try_at = COALESCE(next_try_at, created_at)
            WHERE next_try_at IS NULL
            """
        )
    )


def ensure_sync_queue_indexes(conn) -> None:
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_sync_queue_order
            ON sync_queue (created_at, id)
            """
        )
    )
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_sync_queue_task_order
            ON sync_queue (task_id, created_at, id)
            """
        )
    )


def ensure_task_indexes(conn) -> None:
    conn.execute(
        text("CREATE INDEX IF NOT EXISTS ix_tasks_last_synced_at ON tasks (last_synced_at)")
    )


def run_all(engine) -> None:
    with engine.begin() as conn:
        ensure_sync_queue_columns(conn)
        ensure_sync_queue_indexes(conn)
        ensure_task_indexes(conn)


__all__ = ["run_all"]

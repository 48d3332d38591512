"""Relay of per-user row changes from Postgres LISTEN/NOTIFY.

Triggers on the subscription and usage tables publish on channels named
``user_<table>_<user id>`` with a JSON payload ``{operation, data, timestamp}``.
Application code can publish the same shape through ``notify_user_update``.
"""
import asyncio
import json
import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import asyncpg
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from app.core.config import settings

logger = logging.getLogger(__name__)

REALTIME_TABLES = ("subscription", "usage", "task")
TRIGGER_TABLES = ("subscription", "usage")
CHANNEL_PREFIX = "user_"

NOTIFY_FUNCTION_SQL = """
CREATE OR REPLACE FUNCTION notify_user_table_change() RETURNS trigger AS $$
DECLARE
    row_data RECORD;
BEGIN
    IF TG_OP = 'DELETE' THEN
        row_data := OLD;
    ELSE
        row_data := NEW;
    END IF;
    PERFORM pg_notify(
        'user_' || LOWER(TG_TABLE_NAME) || '_' || row_data.user_id::text,
        json_build_object(
            'operation', TG_OP,
            'data', row_to_json(row_data),
            'timestamp', (EXTRACT(EPOCH FROM NOW()) * 1000)::bigint
        )::text
    );
    RETURN row_data;
END;
$$ LANGUAGE plpgsql;
"""


def trigger_statements(table: str) -> list[str]:
    return [
        f'DROP TRIGGER IF EXISTS {table}_notify_user ON "{table}";',
        (
            f'CREATE TRIGGER {table}_notify_user AFTER INSERT OR UPDATE OR DELETE ON "{table}" '
            "FOR EACH ROW EXECUTE FUNCTION notify_user_table_change();"
        ),
    ]


class RealtimeEvent(BaseModel):
    table: str
    operation: str
    data: dict[str, Any]
    timestamp: int


def channel_name(table: str, user_id: uuid.UUID | str) -> str:
    return f"{CHANNEL_PREFIX}{table.lower()}_{user_id}"


def parse_notification(channel: str, payload: str) -> RealtimeEvent | None:
    if not channel.startswith(CHANNEL_PREFIX) or "_" not in channel[len(CHANNEL_PREFIX):]:
        logger.warning("Ignoring notification on unexpected channel %s", channel)
        return None
    table = channel[len(CHANNEL_PREFIX):].rsplit("_", 1)[0]
    try:
        body = json.loads(payload)
    except json.JSONDecodeError as exc:
        logger.warning("Dropping malformed notification on %s: %s", channel, exc)
        return None
    if not isinstance(body, dict):
        return None
    return RealtimeEvent(
        table=table,
        operation=str(body.get("operation", "UPDATE")),
        data=body.get("data") if isinstance(body.get("data"), dict) else {},
        timestamp=int(body.get("timestamp") or time.time() * 1000),
    )


def install_notify_triggers(session: Session) -> bool:
    if session.get_bind().dialect.name != "postgresql":
        logger.info("Skipping realtime triggers on non-Postgres database")
        return False
    connection = session.connection()
    connection.exec_driver_sql(NOTIFY_FUNCTION_SQL)
    for table in TRIGGER_TABLES:
        for statement in trigger_statements(table):
            connection.exec_driver_sql(statement)
    session.commit()
    logger.info("Installed realtime triggers on %s", ", ".join(TRIGGER_TABLES))
    return True


def notify_user_update(
    session: Session,
    user_id: uuid.UUID,
    table: str,
    operation: str,
    data: dict[str, Any],
) -> bool:
    """Publish a change for a user's realtime stream. A no-op outside Postgres."""
    if session.get_bind().dialect.name != "postgresql":
        logger.debug("Realtime notify skipped for %s on non-Postgres database", table)
        return False
    payload = json.dumps(
        {"operation": operation, "data": data, "timestamp": int(time.time() * 1000)},
        default=str,
    )
    try:
        session.execute(
            text("SELECT pg_notify(:channel, :payload)"),
            {"channel": channel_name(table, user_id), "payload": payload},
        )
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("Failed to notify user %s about %s change: %s", user_id, table, exc)
        return False
    return True


Connector = Callable[[str], Awaitable[Any]]


class UserChangeListener:
    """One dedicated LISTEN connection for a single user's channels.

    Usage::

        async with UserChangeListener(user.id) as listener:
            async for event in listener.events(heartbeat=30):
                ...  # None means the heartbeat interval passed quietly
    """

    def __init__(
        self,
        user_id: uuid.UUID,
        dsn: str | None = None,
        tables: tuple[str, ...] = REALTIME_TABLES,
        connect: Connector | None = None,
    ):
        self.user_id = user_id
        self.dsn = dsn or settings.ASYNCPG_DSN
        self.channels = [channel_name(table, user_id) for table in tables]
        self._connect = connect or asyncpg.connect
        self._connection: Any = None
        self._queue: asyncio.Queue[RealtimeEvent] = asyncio.Queue()

    def _on_notification(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        event = parse_notification(channel, payload)
        if event is not None:
            self._queue.put_nowait(event)

    async def __aenter__(self) -> "UserChangeListener":
        self._connection = await self._connect(self.dsn)
        for channel in self.channels:
            await self._connection.add_listener(channel, self._on_notification)
        logger.info("Listening on %s", ", ".join(self.channels))
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._connection is None:
            return
        try:
            for channel in self.channels:
                await self._connection.remove_listener(channel, self._on_notification)
            await self._connection.close()
        except (asyncpg.PostgresError, OSError) as close_error:
            logger.warning("Error closing realtime connection for %s: %s", self.user_id, close_error)
        finally:
            self._connection = None

    async def events(self, heartbeat: float | None = None) -> AsyncIterator[RealtimeEvent | None]:
        timeout = heartbeat or settings.REALTIME_HEARTBEAT_SECONDS
        while True:
            try:
                yield await asyncio.wait_for(self._queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                yield None

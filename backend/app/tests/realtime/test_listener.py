import json
import uuid
from unittest.mock import AsyncMock

import pytest

from app.realtime.listener import (
    UserChangeListener,
    channel_name,
    install_notify_triggers,
    notify_user_update,
    parse_notification,
    trigger_statements,
)


class FakeConnection:
    def __init__(self):
        self.listeners = {}
        self.add_listener = AsyncMock(side_effect=self._add)
        self.remove_listener = AsyncMock()
        self.close = AsyncMock()

    async def _add(self, channel, callback):
        self.listeners[channel] = callback

    def fire(self, channel, payload):
        self.listeners[channel](self, 1234, channel, payload)


def test_channel_name_lowercases_table():
    user_id = uuid.UUID("00000000-0000-0000-0000-000000000001")
    assert channel_name("Usage", user_id) == "user_usage_00000000-0000-0000-0000-000000000001"


def test_parse_notification_reads_table_and_payload():
    payload = json.dumps({"operation": "INSERT", "data": {"plan": "pro"}, "timestamp": 1700000000000})

    event = parse_notification("user_subscription_abc-123", payload)

    assert event.table == "subscription"
    assert event.operation == "INSERT"
    assert event.data == {"plan": "pro"}
    assert event.timestamp == 1700000000000


def test_parse_notification_rejects_bad_input():
    assert parse_notification("other_channel", "{}") is None
    assert parse_notification("user_usage_1", "not json") is None
    assert parse_notification("user_usage_1", "[1, 2]") is None


def test_parse_notification_defaults_missing_fields():
    event = parse_notification("user_task_1", json.dumps({"data": "oops"}))

    assert event.operation == "UPDATE"
    assert event.data == {}
    assert event.timestamp > 0


def test_trigger_statements_target_table():
    drop, create = trigger_statements("usage")
    assert drop.startswith('DROP TRIGGER IF EXISTS usage_notify_user ON "usage"')
    assert "EXECUTE FUNCTION notify_user_table_change()" in create


def test_notify_and_triggers_are_noops_outside_postgres(session, user):
    assert notify_user_update(session, user.id, "task", "UPDATE", {"id": "t1"}) is False
    assert install_notify_triggers(session) is False


@pytest.mark.asyncio
async def test_listener_relays_notifications_and_heartbeats():
    user_id = uuid.uuid4()
    connection = FakeConnection()
    connect = AsyncMock(return_value=connection)

    async with UserChangeListener(user_id, dsn="postgresql://test", connect=connect) as listener:
        connect.assert_awaited_once_with("postgresql://test")
        assert set(connection.listeners) == {
            channel_name(table, user_id) for table in ("subscription", "usage", "task")
        }

        connection.fire(
            channel_name("usage", user_id),
            json.dumps({"operation": "UPDATE", "data": {"basic_interactions": 3}, "timestamp": 1}),
        )
        connection.fire(channel_name("usage", user_id), "garbage")

        events = listener.events(heartbeat=0.01)
        first = await events.__anext__()
        second = await events.__anext__()
        await events.aclose()

    assert first.table == "usage"
    assert first.data == {"basic_interactions": 3}
    assert second is None
    assert connection.remove_listener.await_count == 3
    connection.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_listener_exit_tolerates_close_errors():
    connection = FakeConnection()
    connection.close = AsyncMock(side_effect=OSError("connection reset"))

    listener = UserChangeListener(uuid.uuid4(), dsn="postgresql://test", connect=AsyncMock(return_value=connection))
    async with listener:
        pass

    assert listener._connection is None


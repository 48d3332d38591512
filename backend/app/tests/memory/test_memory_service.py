from unittest.mock import AsyncMock, MagicMock

import pytest

from app.memory.client import MemoryAPIError
from app.memory.middleware import (
    EXTERNAL_ID_PREFIX,
    create_memory_enabled_system_prompt,
    enhance_prompt_with_memories,
    ensure_papr_user,
    search_user_memories,
)
from app.memory.service import (
    MEMORY_PROMPT_FOOTER,
    MEMORY_PROMPT_HEADER,
    Memory,
    MemoryService,
    format_memories_for_prompt,
    message_text,
)


def _service(**methods):
    client = MagicMock()
    for name, mock in methods.items():
        setattr(client, name, mock)
    return MemoryService(client=client), client


def test_message_text_prefers_content_then_text_parts():
    assert message_text({"content": "hello"}) == "hello"
    assert (
        message_text(
            {
                "content": "  ",
                "parts": [
                    {"type": "text", "text": "one"},
                    {"type": "image", "url": "x.png"},
                    {"text": "two"},
                ],
            }
        )
        == "one\ntwo"
    )


def test_format_memories_numbers_entries():
    prompt = format_memories_for_prompt(
        [Memory(id="1", content="Likes tea", created_at="2025-01-01"), Memory(id="2", content="Has a cat")]
    )

    assert prompt.startswith(MEMORY_PROMPT_HEADER)
    assert "Memory 1 [2025-01-01]: Likes tea" in prompt
    assert "Memory 2 [unknown date]: Has a cat" in prompt
    assert prompt.endswith(MEMORY_PROMPT_FOOTER)
    assert format_memories_for_prompt([]) == ""


@pytest.mark.asyncio
async def test_search_returns_empty_list_on_api_error():
    service, client = _service(search=AsyncMock(side_effect=MemoryAPIError("down")))

    assert await service.search_memories("papr_1", "tea") == []


@pytest.mark.asyncio
async def test_search_skips_blank_query():
    service, client = _service(search=AsyncMock())

    assert await service.search_memories("papr_1", "   ") == []
    client.search.assert_not_called()


@pytest.mark.asyncio
async def test_store_message_builds_chat_metadata():
    service, client = _service(add=AsyncMock(return_value="mem_1"))

    stored = await service.store_message(
        "papr_1", "chat-9", {"id": "msg-1", "role": "user", "content": "I love sci-fi"}
    )

    assert stored is True
    content, kind, metadata = client.add.call_args.args
    assert content == "I love sci-fi"
    assert kind == "text"
    assert metadata["conversationId"] == "chat-9"
    assert metadata["hierarchical_structures"] == "chat/chat-9"
    assert metadata["customMetadata"] == {"chat_id": "chat-9", "message_id": "msg-1", "role": "user"}


@pytest.mark.asyncio
async def test_store_message_skips_empty_and_reports_failure():
    service, client = _service(add=AsyncMock(side_effect=MemoryAPIError("down")))

    assert await service.store_message("papr_1", "c", {"role": "user", "content": ""}) is False
    client.add.assert_not_called()
    assert await service.store_message("papr_1", "c", {"role": "user", "content": "hi"}) is False


@pytest.mark.asyncio
async def test_store_content_merges_metadata_and_defaults_on_error():
    service, client = _service(add=AsyncMock(return_value="mem_2"))

    assert await service.store_content("papr_1", "note", "text", {"topics": ["a"]}) == "mem_2"
    metadata = client.add.call_args.args[2]
    assert metadata["user_id"] == "papr_1"
    assert metadata["topics"] == ["a"]

    client.add.side_effect = MemoryAPIError("down")
    assert await service.store_content("papr_1", "note") is None


@pytest.mark.asyncio
async def test_delete_and_update_default_to_false_on_error():
    service, _ = _service(
        delete=AsyncMock(side_effect=MemoryAPIError("down")),
        update=AsyncMock(side_effect=MemoryAPIError("down")),
    )

    assert await service.delete_memory("m1") is False
    assert await service.update_memory("m1", content="new") is False


@pytest.mark.asyncio
async def test_ensure_papr_user_registers_once(session, user):
    client = MagicMock()
    client.configured = True
    client.create_user = AsyncMock(return_value="papr_new")

    first = await ensure_papr_user(session, user, client)
    second = await ensure_papr_user(session, user, client)

    assert first == second == "papr_new"
    client.create_user.assert_awaited_once()
    assert client.create_user.call_args.kwargs["external_id"] == f"{EXTERNAL_ID_PREFIX}{user.id}"
    session.refresh(user)
    assert user.papr_user_id == "papr_new"


@pytest.mark.asyncio
async def test_ensure_papr_user_returns_none_on_failure(session, user):
    client = MagicMock()
    client.configured = True
    client.create_user = AsyncMock(side_effect=MemoryAPIError("down"))

    assert await ensure_papr_user(session, user, client) is None
    assert user.papr_user_id is None


@pytest.mark.asyncio
async def test_ensure_papr_user_needs_configured_client(session, user):
    client = MagicMock()
    client.configured = False

    assert await ensure_papr_user(session, user, client) is None


@pytest.mark.asyncio
async def test_enhance_prompt_searches_latest_user_message():
    service = MagicMock()
    service.search_memories = AsyncMock(return_value=[Memory(id="1", content="Likes tea")])
    messages = [
        {"role": "user", "content": "earlier"},
        {"role": "assistant", "content": "reply"},
        {"role": "user", "parts": [{"type": "text", "text": "what drink do I like?"}]},
    ]

    prompt = await enhance_prompt_with_memories(messages, "papr_1", service, max_memories=10)

    service.search_memories.assert_awaited_once_with("papr_1", "what drink do I like?", 10)
    assert "Likes tea" in prompt
    assert await enhance_prompt_with_memories(messages, None, service) == ""


@pytest.mark.asyncio
async def test_search_user_memories_asks_for_at_least_25():
    service = MagicMock()
    service.search_memories = AsyncMock(return_value=[])

    await search_user_memories("papr_1", "tea", service, max_results=3)

    service.search_memories.assert_awaited_once_with("papr_1", "tea", 25)


def test_memory_enabled_system_prompt():
    assert create_memory_enabled_system_prompt("base", "") == "base"
    assert create_memory_enabled_system_prompt("base", "mem") == "base\n\nmem"

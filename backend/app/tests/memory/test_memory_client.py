import json

import httpx
import pytest

from app.memory.client import MemoryAPIError, MemoryClient, normalize_memory_item


def _client(handler):
    return MemoryClient(
        api_key="test-key",
        base_url="https://memory.test/",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_add_posts_payload_and_returns_memory_id():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers["X-API-Key"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": [{"memoryId": "mem_1"}]})

    memory_id = await _client(handler).add("Likes tea", "text", {"topics": ["drinks"]})

    assert memory_id == "mem_1"
    assert seen["url"] == "https://memory.test/v1/memory"
    assert seen["key"] == "test-key"
    assert seen["body"] == {"content": "Likes tea", "type": "text", "metadata": {"topics": ["drinks"]}}


@pytest.mark.asyncio
async def test_search_normalizes_hits():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["max_memories"] == "25"
        assert json.loads(request.content) == {"query": "tea", "user_id": "papr_1"}
        return httpx.Response(
            200,
            json={
                "data": {
                    "memories": [
                        {
                            "memory_id": "m1",
                            "content": "Likes tea",
                            "metadata": '{"createdAt": "2025-01-01"}',
                            "customMetadata": {"category": "preferences"},
                        },
                        "not a dict",
                    ]
                }
            },
        )

    hits = await _client(handler).search("tea", "papr_1")

    assert hits == [
        {
            "id": "m1",
            "content": "Likes tea",
            "created_at": "2025-01-01",
            "metadata": {"createdAt": "2025-01-01", "customMetadata": {"category": "preferences"}},
        }
    ]


@pytest.mark.asyncio
async def test_search_treats_no_results_as_empty():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="No relevant items found for query")

    assert await _client(handler).search("tea", "papr_1") == []


@pytest.mark.asyncio
async def test_error_status_raises_memory_api_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    with pytest.raises(MemoryAPIError) as exc_info:
        await _client(handler).add("x")
    assert exc_info.value.status_code == 500


@pytest.mark.asyncio
async def test_transport_failure_raises_memory_api_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(MemoryAPIError, match="Failed to contact"):
        await _client(handler).delete("m1")


@pytest.mark.asyncio
async def test_delete_missing_memory_returns_false():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "DELETE"
        return httpx.Response(404)

    assert await _client(handler).delete("m1") is False


@pytest.mark.asyncio
async def test_create_user_reads_nested_id():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["external_id"] == "chatapp-user-1"
        assert body["email"] == "a@example.com"
        return httpx.Response(200, json={"data": {"user_id": "papr_9"}})

    user_id = await _client(handler).create_user("chatapp-user-1", email="a@example.com")

    assert user_id == "papr_9"


@pytest.mark.asyncio
async def test_unconfigured_client_raises_without_request():
    client = MemoryClient(api_key="", base_url="https://memory.test")
    client.api_key = None

    assert client.configured is False
    with pytest.raises(MemoryAPIError, match="not configured"):
        await client.search("tea", "papr_1")


def test_normalize_ignores_non_dict_metadata():
    item = normalize_memory_item({"id": 7, "content": "x", "metadata": ["a"]})
    assert item == {"id": "7", "content": "x", "created_at": None, "metadata": {}}

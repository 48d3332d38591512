import json
import logging
from typing import Any

import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)

NO_RESULTS_MARKER = "No relevant items found"


class MemoryAPIError(Exception):
    """Raised when the memory service rejects a request or cannot be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def _first_memory_id(body: Any) -> str | None:
    data = body.get("data") if isinstance(body, dict) else None
    items = data if isinstance(data, list) else [data] if isinstance(data, dict) else []
    for item in items:
        for key in ("memoryId", "memory_id", "id"):
            value = item.get(key)
            if value:
                return str(value)
    return None


def normalize_memory_item(item: dict[str, Any]) -> dict[str, Any]:
    """Flatten one search hit into {id, content, created_at, metadata}."""
    metadata = item.get("metadata") or {}
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except json.JSONDecodeError:
            metadata = {}
    if not isinstance(metadata, dict):
        metadata = {}
    custom = item.get("customMetadata") or item.get("custom_metadata")
    if isinstance(custom, dict):
        metadata = {**metadata, "customMetadata": {**metadata.get("customMetadata", {}), **custom}}

    return {
        "id": str(item.get("id") or item.get("memoryId") or item.get("memory_id") or ""),
        "content": item.get("content") or "",
        "created_at": item.get("created_at") or item.get("createdAt") or metadata.get("createdAt"),
        "metadata": metadata,
    }


class MemoryClient:
    """Async client for the hosted memory API."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 20.0,
    ):
        self.api_key = api_key or settings.PAPR_MEMORY_API_KEY
        self.base_url = (base_url or settings.PAPR_MEMORY_BASE_URL).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        if not self.api_key:
            raise MemoryAPIError("Memory API key is not configured")
        headers = {"X-API-Key": self.api_key, "Accept": "application/json"}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                return await client.request(method, path, json=json_body, params=params)
        except httpx.HTTPError as exc:
            raise MemoryAPIError(f"Failed to contact the memory service: {exc}") from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        raise MemoryAPIError(
            f"Memory service returned {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )

    async def add(
        self, content: str, type: str = "text", metadata: dict[str, Any] | None = None
    ) -> str | None:
        response = await self._request(
            "POST",
            "/v1/memory",
            json_body={"content": content, "type": type, "metadata": metadata or {}},
        )
        self._raise_for_status(response)
        return _first_memory_id(response.json())

    async def search(self, query: str, user_id: str, max_memories: int = 25) -> list[dict[str, Any]]:
        response = await self._request(
            "POST",
            "/v1/memory/search",
            json_body={"query": query, "user_id": user_id},
            params={"max_memories": max_memories},
        )
        if response.status_code == 404 or NO_RESULTS_MARKER in response.text:
            return []
        self._raise_for_status(response)
        body = response.json()
        data = body.get("data") or {}
        memories = data.get("memories") if isinstance(data, dict) else None
        return [normalize_memory_item(m) for m in memories or [] if isinstance(m, dict)]

    async def update(
        self,
        memory_id: str,
        *,
        content: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        payload: dict[str, Any] = {}
        if content is not None:
            payload["content"] = content
        if metadata is not None:
            payload["metadata"] = metadata
        response = await self._request("PUT", f"/v1/memory/{memory_id}", json_body=payload)
        self._raise_for_status(response)
        body = response.json()
        return body.get("status") == "success" or bool(body.get("memory_items"))

    async def delete(self, memory_id: str) -> bool:
        response = await self._request("DELETE", f"/v1/memory/{memory_id}")
        if response.status_code == 404:
            return False
        self._raise_for_status(response)
        return True

    async def create_user(
        self, external_id: str, email: str | None = None, metadata: dict[str, Any] | None = None
    ) -> str | None:
        payload: dict[str, Any] = {"external_id": external_id, "metadata": metadata or {}}
        if email:
            payload["email"] = email
        response = await self._request("POST", "/v1/user", json_body=payload)
        self._raise_for_status(response)
        body = response.json()
        user_id = body.get("user_id") or body.get("id")
        if not user_id and isinstance(body.get("data"), dict):
            user_id = body["data"].get("user_id") or body["data"].get("id")
        return str(user_id) if user_id else None

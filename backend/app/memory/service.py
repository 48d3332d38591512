import logging
import re
from typing import Any

from pydantic import BaseModel, Field

from app.memory.client import MemoryAPIError, MemoryClient
from app.models import get_datetime_utc

logger = logging.getLogger(__name__)

_APP_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)

MEMORY_PROMPT_HEADER = (
    "The user has the following relevant memories you should consider when responding:"
)
MEMORY_PROMPT_FOOTER = "Consider these memories when responding to the user's current request."


class Memory(BaseModel):
    id: str = ""
    content: str = ""
    created_at: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


def message_text(message: dict[str, Any]) -> str:
    """Plain text of a chat message, from `content` or its text parts."""
    content = message.get("content")
    if isinstance(content, str) and content.strip():
        return content
    parts = message.get("parts") or []
    texts = [
        str(part.get("text", ""))
        for part in parts
        if isinstance(part, dict) and part.get("type", "text") == "text"
    ]
    return "\n".join(t for t in texts if t)


def format_memories_for_prompt(memories: list[Memory]) -> str:
    if not memories:
        return ""
    blocks = [
        f"Memory {index} [{memory.created_at or 'unknown date'}]: {memory.content}"
        for index, memory in enumerate(memories, start=1)
    ]
    return f"{MEMORY_PROMPT_HEADER}\n\n" + "\n\n".join(blocks) + f"\n\n{MEMORY_PROMPT_FOOTER}"


class MemoryService:
    """Wraps MemoryClient calls, logging failures and returning empty defaults."""

    def __init__(self, client: MemoryClient | None = None):
        self.client = client or MemoryClient()

    @staticmethod
    def _check_user_id(papr_user_id: str) -> None:
        if _APP_UUID_RE.match(papr_user_id or ""):
            logger.warning(
                "Memory user id %s looks like an application user id, not a memory service id",
                papr_user_id,
            )

    async def store_message(
        self, papr_user_id: str, chat_id: str, message: dict[str, Any]
    ) -> bool:
        content = message_text(message)
        if not content.strip():
            logger.info("Skipping memory storage for empty message in chat %s", chat_id)
            return False
        self._check_user_id(papr_user_id)

        metadata = {
            "sourceType": "PaprChat",
            "user_id": papr_user_id,
            "createdAt": get_datetime_utc().isoformat(),
            "topics": ["chat", "conversation"],
            "hierarchical_structures": f"chat/{chat_id}",
            "sourceUrl": f"/chat/{chat_id}",
            "conversationId": chat_id,
            "customMetadata": {
                "chat_id": chat_id,
                "message_id": str(message.get("id", "")),
                "role": message.get("role", "user"),
            },
        }
        try:
            memory_id = await self.client.add(content, "text", metadata)
            logger.info("Stored chat message as memory %s", memory_id)
            return True
        except MemoryAPIError as exc:
            logger.error("Failed to store message for chat %s: %s", chat_id, exc)
            return False

    async def store_content(
        self,
        papr_user_id: str,
        content: str,
        type: str = "text",
        metadata: dict[str, Any] | None = None,
    ) -> str | None:
        if not content.strip():
            return None
        self._check_user_id(papr_user_id)
        merged = {"user_id": papr_user_id, "createdAt": get_datetime_utc().isoformat()}
        merged.update(metadata or {})
        try:
            return await self.client.add(content, type, merged) or ""
        except MemoryAPIError as exc:
            logger.error("Failed to store memory content: %s", exc)
            return None

    async def search_memories(
        self, papr_user_id: str, query: str, max_memories: int = 25
    ) -> list[Memory]:
        if not papr_user_id or not query.strip():
            return []
        self._check_user_id(papr_user_id)
        try:
            items = await self.client.search(query, papr_user_id, max_memories)
        except MemoryAPIError as exc:
            logger.error("Memory search failed: %s", exc)
            return []
        logger.info("Memory search returned %s results", len(items))
        return [Memory.model_validate(item) for item in items]

    async def update_memory(
        self,
        memory_id: str,
        *,
        content: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        try:
            return await self.client.update(memory_id, content=content, metadata=metadata)
        except MemoryAPIError as exc:
            logger.error("Failed to update memory %s: %s", memory_id, exc)
            return False

    async def delete_memory(self, memory_id: str) -> bool:
        try:
            return await self.client.delete(memory_id)
        except MemoryAPIError as exc:
            logger.error("Failed to delete memory %s: %s", memory_id, exc)
            return False

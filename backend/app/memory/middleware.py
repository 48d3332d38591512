import logging
from typing import Any

from sqlmodel import Session

from app.memory.client import MemoryAPIError, MemoryClient
from app.memory.service import Memory, MemoryService, format_memories_for_prompt, message_text
from app.models import User

logger = logging.getLogger(__name__)

EXTERNAL_ID_PREFIX = "chatapp-user-"


async def ensure_papr_user(
    session: Session, user: User, client: MemoryClient | None = None
) -> str | None:
    """Return the user's memory-service id, registering the user there on first use."""
    if user.papr_user_id:
        return user.papr_user_id

    client = client or MemoryClient()
    if not client.configured:
        logger.warning("Memory service not configured; cannot register user %s", user.id)
        return None

    try:
        papr_user_id = await client.create_user(
            external_id=f"{EXTERNAL_ID_PREFIX}{user.id}",
            email=user.email,
            metadata={"source": "chat-app", "app_user_id": str(user.id)},
        )
    except MemoryAPIError as exc:
        logger.error("Failed to create memory user for %s: %s", user.id, exc)
        return None
    if not papr_user_id:
        logger.error("Memory service returned no user id for %s", user.id)
        return None

    user.papr_user_id = papr_user_id
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info("Registered memory user %s for app user %s", papr_user_id, user.id)
    return papr_user_id


def latest_user_message_text(messages: list[dict[str, Any]]) -> str:
    for message in reversed(messages):
        if message.get("role") == "user":
            return message_text(message)
    return ""


async def enhance_prompt_with_memories(
    messages: list[dict[str, Any]],
    papr_user_id: str | None,
    service: MemoryService,
    max_memories: int = 25,
) -> str:
    if not papr_user_id:
        return ""
    query = latest_user_message_text(messages)
    if not query.strip():
        return ""
    memories = await service.search_memories(papr_user_id, query, max_memories)
    return format_memories_for_prompt(memories)


def create_memory_enabled_system_prompt(base_prompt: str, memory_prompt: str) -> str:
    if not memory_prompt:
        return base_prompt
    return f"{base_prompt}\n\n{memory_prompt}"


async def search_user_memories(
    papr_user_id: str, query: str, service: MemoryService, max_results: int = 5
) -> list[Memory]:
    # Never ask for fewer than 25 hits.
    return await service.search_memories(papr_user_id, query, max(max_results, 25))

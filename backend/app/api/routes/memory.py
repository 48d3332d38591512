from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from app.api.deps import CurrentUser, SessionDep, usage_limit_response
from app.billing.usage import check_memory_add_limit, check_memory_search_limit, increment_usage
from app.core.config import settings
from app.memory.middleware import ensure_papr_user, search_user_memories
from app.memory.service import Memory, MemoryService
from app.models import Message

router = APIRouter(prefix="/memory", tags=["memory"])


class MemorySearch(BaseModel):
    query: str = Field(min_length=1)
    max_results: int = Field(default=10, ge=1, le=50)


class MemoryCreate(BaseModel):
    content: str = Field(min_length=1)
    type: str = "text"
    metadata: dict[str, Any] = Field(default_factory=dict)


class MemoryCreated(BaseModel):
    id: str


async def _papr_user_id(session: SessionDep, current_user: CurrentUser) -> str:
    if not settings.memory_enabled:
        raise HTTPException(status_code=503, detail="Memory service not configured")
    papr_user_id = await ensure_papr_user(session, current_user)
    if not papr_user_id:
        raise HTTPException(status_code=503, detail="Memory service unavailable")
    return papr_user_id


@router.post("/search", response_model=list[Memory])
async def search(body: MemorySearch, session: SessionDep, current_user: CurrentUser) -> Any:
    check = check_memory_search_limit(session, current_user.id)
    if not check.allowed:
        return usage_limit_response(check)
    papr_user_id = await _papr_user_id(session, current_user)
    memories = await search_user_memories(papr_user_id, body.query, MemoryService(), body.max_results)
    increment_usage(session, current_user.id, "memories_searched")
    return memories[: body.max_results]


@router.post("/", response_model=MemoryCreated)
async def add(body: MemoryCreate, session: SessionDep, current_user: CurrentUser) -> Any:
    check = check_memory_add_limit(session, current_user.id)
    if not check.allowed:
        return usage_limit_response(check)
    papr_user_id = await _papr_user_id(session, current_user)
    memory_id = await MemoryService().store_content(
        papr_user_id, body.content, body.type, {"sourceType": "PaprChat", **body.metadata}
    )
    if memory_id is None:
        raise HTTPException(status_code=502, detail="Failed to add memory")
    increment_usage(session, current_user.id, "memories_added")
    return MemoryCreated(id=memory_id)


@router.delete("/{memory_id}", response_model=Message)
async def delete(memory_id: str, session: SessionDep, current_user: CurrentUser) -> Any:
    await _papr_user_id(session, current_user)
    if not await MemoryService().delete_memory(memory_id):
        raise HTTPException(status_code=404, detail="Memory not found")
    return Message(message="Memory deleted successfully")

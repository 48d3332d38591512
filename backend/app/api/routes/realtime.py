import json
import logging
import time
from typing import Any

import asyncpg
from fastapi import APIRouter, HTTPException, Request
from sse_starlette.sse import EventSourceResponse

from app.api.deps import CurrentUser
from app.core.config import settings
from app.core.db import engine
from app.realtime.listener import UserChangeListener

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/realtime", tags=["realtime"])


def _frame(frame_type: str, **payload: Any) -> str:
    return json.dumps(
        {"type": frame_type, "timestamp": int(time.time() * 1000), **payload}, default=str
    )


async def user_change_stream(request: Request, listener: UserChangeListener):
    """Relay a user's row changes as they arrive. Nothing is replayed after a reconnect."""
    yield _frame("connected", userId=str(listener.user_id))
    try:
        async with listener:
            async for event in listener.events(settings.REALTIME_HEARTBEAT_SECONDS):
                if await request.is_disconnected():
                    break
                if event is None:
                    yield _frame("heartbeat")
                else:
                    yield json.dumps({"type": "update", **event.model_dump()}, default=str)
    except (asyncpg.PostgresError, OSError) as exc:
        logger.error("Realtime stream for %s failed: %s", listener.user_id, exc)
        yield _frame("error", message="Realtime connection lost")
    logger.info("Realtime stream for %s closed", listener.user_id)


@router.get("/stream")
async def stream_user_changes(request: Request, current_user: CurrentUser):
    if engine.dialect.name != "postgresql":
        raise HTTPException(status_code=503, detail="Realtime updates require PostgreSQL")
    listener = UserChangeListener(current_user.id)
    return EventSourceResponse(user_change_stream(request, listener))

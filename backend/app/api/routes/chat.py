import json
import logging
import uuid
from typing import Any, Literal

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError
from sqlmodel import Session
from sse_starlette.sse import EventSourceResponse

from app import crud
from app.agent.chat_agent import ChatAgent, ChatResult, ChatTurn
from app.agent.insights_agent import refresh_chat_insights, should_analyze_conversation
from app.agent.models_catalog import DEFAULT_CHAT_MODEL, is_premium_model, resolve_model_name
from app.agent.prompts.chat import build_chat_system_prompt
from app.agent.title_agent import generate_chat_title
from app.agent.tools import ToolContext
from app.api.deps import CurrentUser, SessionDep, usage_limit_response
from app.billing.usage import (
    check_basic_interaction_limit,
    check_model_access,
    check_premium_interaction_limit,
    increment_usage,
)
from app.core.config import settings
from app.core.db import engine
from app.memory.middleware import enhance_prompt_with_memories, ensure_papr_user
from app.memory.service import MemoryService, message_text
from app.models import Chat, ChatMessage, Message, User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


class ChatRequest(BaseModel):
    id: uuid.UUID
    messages: list[dict[str, Any]] = Field(min_length=1)
    selected_chat_model: str = DEFAULT_CHAT_MODEL
    selected_visibility_type: Literal["public", "private"] = "private"
    contexts: list[dict[str, Any]] | None = None


def _ui_event(event: str, **payload: Any) -> str:
    return json.dumps({"type": event, **payload}, default=str)


def _latest_user_message(messages: list[dict[str, Any]]) -> dict[str, Any] | None:
    for message in reversed(messages):
        if message.get("role") == "user" and message_text(message).strip():
            return message
    return None


def _message_uuid(message: dict[str, Any]) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(message.get("id")))
    except ValueError:
        return None


def _stored_history(session: Session, chat_id: uuid.UUID) -> list[dict[str, Any]]:
    return [
        {"id": str(m.id), "role": m.role, "parts": m.parts}
        for m in crud.get_messages_by_chat(session=session, chat_id=chat_id)
    ]


async def chat_event_stream(
    *,
    user_id: uuid.UUID,
    chat_id: uuid.UUID,
    model_id: str,
    turn: ChatTurn,
    user_message: dict[str, Any],
    papr_user_id: str | None,
    is_new_chat: bool,
):
    """
    Stream the assistant reply as SSE frames, then persist it.
    Runs on its own session since the request session is closed once streaming starts.
    """
    with Session(engine) as session:
        user = session.get(User, user_id)
        memory = MemoryService()
        context = ToolContext(
            session=session,
            user=user,
            chat_id=chat_id,
            memory=memory,
            papr_user_id=papr_user_id,
        )
        agent = ChatAgent(context, model_name=resolve_model_name(model_id))

        result: ChatResult | None = None
        try:
            async for event in agent.stream(turn):
                event_type = event.pop("type")
                if event_type == "finish":
                    result = event["result"]
                    continue
                yield _ui_event(event_type, **event)
        except Exception as exc:
            logger.exception("Chat stream failed for chat %s", chat_id)
            yield _ui_event("error", message=f"Failed to generate a response: {exc}")
            return

        premium = is_premium_model(model_id)
        increment_usage(
            session, user_id, "premium_interactions" if premium else "basic_interactions"
        )
        assistant = crud.save_message(
            session=session,
            chat_id=chat_id,
            role="assistant",
            parts=[{"type": "text", "text": result.text}],
            tool_calls=result.tool_calls or None,
            memories=result.memories or None,
            model_id=model_id,
        )
        yield _ui_event(
            "finish",
            chatId=str(chat_id),
            messageId=str(assistant.id),
            memories=result.memories,
            steps=result.steps,
        )

        if papr_user_id:
            await memory.store_message(papr_user_id, str(chat_id), user_message)

        history = _stored_history(session, chat_id)
        if should_analyze_conversation(history, is_new_chat):
            chat = session.get(Chat, chat_id)
            await refresh_chat_insights(
                session, chat, history, memory=memory, papr_user_id=papr_user_id
            )


@router.post("")
async def chat(body: ChatRequest, session: SessionDep, current_user: CurrentUser) -> Any:
    """Stream an assistant reply to the latest user message over SSE."""
    model_id = body.selected_chat_model
    try:
        access = check_model_access(session, current_user.id, model_id)
        if not access.allowed:
            raise HTTPException(status_code=403, detail=access.reason)

        if is_premium_model(model_id):
            usage_check = check_premium_interaction_limit(session, current_user.id)
        else:
            usage_check = check_basic_interaction_limit(session, current_user.id)
        if not usage_check.allowed:
            return usage_limit_response(usage_check)

        user_message = _latest_user_message(body.messages)
        if user_message is None:
            raise HTTPException(status_code=400, detail="No user message found")

        chat = session.get(Chat, body.id)
        is_new_chat = chat is None
        if chat is None:
            title = await generate_chat_title(message_text(user_message))
            chat = crud.create_chat(
                session=session,
                user_id=current_user.id,
                title=title,
                chat_id=body.id,
                visibility=body.selected_visibility_type,
            )
        elif chat.user_id != current_user.id:
            raise HTTPException(status_code=403, detail="Not enough permissions")

        message_id = _message_uuid(user_message)
        if message_id is None or session.get(ChatMessage, message_id) is None:
            crud.save_message(
                session=session,
                chat_id=chat.id,
                role="user",
                parts=user_message.get("parts") or [{"type": "text", "text": message_text(user_message)}],
                message_id=message_id,
                attachments=user_message.get("attachments"),
            )

        papr_user_id = None
        memory_prompt = ""
        if settings.memory_enabled:
            papr_user_id = await ensure_papr_user(session, current_user)
            memory_prompt = await enhance_prompt_with_memories(
                body.messages,
                papr_user_id,
                MemoryService(),
                settings.MEMORY_SEARCH_MAX_RESULTS,
            )
    except OperationalError as exc:
        logger.error("DB unavailable while starting chat: %s", exc)
        raise HTTPException(
            status_code=503,
            detail="Database connection unavailable. Please retry in a moment.",
        ) from exc

    system_prompt = build_chat_system_prompt(
        user_name=current_user.full_name,
        use_case=current_user.use_case,
        contexts=body.contexts,
        memory_prompt=memory_prompt,
        memory_tools=bool(papr_user_id),
    )
    turn = ChatTurn(
        system_prompt=system_prompt,
        messages=body.messages,
        memory_enabled=bool(papr_user_id),
    )
    return EventSourceResponse(
        chat_event_stream(
            user_id=current_user.id,
            chat_id=chat.id,
            model_id=model_id,
            turn=turn,
            user_message=user_message,
            papr_user_id=papr_user_id,
            is_new_chat=is_new_chat,
        )
    )


@router.delete("/{id}", response_model=Message)
def delete_chat(id: uuid.UUID, session: SessionDep, current_user: CurrentUser) -> Any:
    chat = session.get(Chat, id)
    if not chat:
        raise HTTPException(status_code=404, detail="Chat not found")
    if chat.user_id != current_user.id:
        raise HTTPException(status_code=403, detail="Not enough permissions")
    session.delete(chat)
    session.commit()
    return Message(message="Chat deleted successfully")

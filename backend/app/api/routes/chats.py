import uuid
from typing import Any

from fastapi import APIRouter, HTTPException

from app import crud
from app.api.deps import CurrentUser, SessionDep
from app.models import (
    Chat,
    ChatMessage,
    ChatMessagePublic,
    ChatPublic,
    ChatsPublic,
    ChatVisibilityUpdate,
    Message,
    User,
    Vote,
    VoteCreate,
)

router = APIRouter(prefix="/chats", tags=["chats"])


def get_owned_chat(session: SessionDep, chat_id: uuid.UUID, user: User) -> Chat:
    chat = session.get(Chat, chat_id)
    if not chat:
        raise HTTPException(status_code=404, detail="Chat not found")
    if chat.user_id != user.id:
        raise HTTPException(status_code=403, detail="Not enough permissions")
    return chat


def get_readable_chat(session: SessionDep, chat_id: uuid.UUID, user: User) -> Chat:
    chat = session.get(Chat, chat_id)
    if not chat:
        raise HTTPException(status_code=404, detail="Chat not found")
    if chat.visibility != "public" and chat.user_id != user.id:
        raise HTTPException(status_code=403, detail="Not enough permissions")
    return chat


@router.get("/", response_model=ChatsPublic)
def read_chats(
    session: SessionDep, current_user: CurrentUser, skip: int = 0, limit: int = 100
) -> Any:
    chats, count = crud.get_chats_by_user(
        session=session, user_id=current_user.id, skip=skip, limit=limit
    )
    return ChatsPublic(data=chats, count=count)


@router.get("/saved", response_model=list[ChatMessagePublic])
def read_saved_messages(
    session: SessionDep, current_user: CurrentUser, skip: int = 0, limit: int = 100
) -> Any:
    return crud.get_saved_messages_by_user(
        session=session, user_id=current_user.id, skip=skip, limit=limit
    )


@router.get("/{id}", response_model=ChatPublic)
def read_chat(id: uuid.UUID, session: SessionDep, current_user: CurrentUser) -> Any:
    return get_readable_chat(session, id, current_user)


@router.get("/{id}/messages", response_model=list[ChatMessagePublic])
def read_chat_messages(id: uuid.UUID, session: SessionDep, current_user: CurrentUser) -> Any:
    get_readable_chat(session, id, current_user)
    return crud.get_messages_by_chat(session=session, chat_id=id)


@router.patch("/{id}/visibility", response_model=ChatPublic)
def update_visibility(
    id: uuid.UUID,
    body: ChatVisibilityUpdate,
    session: SessionDep,
    current_user: CurrentUser,
) -> Any:
    chat = get_owned_chat(session, id, current_user)
    return crud.update_chat_visibility(session=session, db_chat=chat, visibility=body.visibility)


@router.get("/{id}/votes", response_model=list[Vote])
def read_votes(id: uuid.UUID, session: SessionDep, current_user: CurrentUser) -> Any:
    get_owned_chat(session, id, current_user)
    return crud.get_votes_by_chat(session=session, chat_id=id)


@router.patch("/{id}/votes", response_model=Vote)
def vote(
    id: uuid.UUID, body: VoteCreate, session: SessionDep, current_user: CurrentUser
) -> Any:
    """Upvote, downvote or bookmark a message; fields left out keep their value."""
    get_owned_chat(session, id, current_user)
    if body.is_upvoted is None and body.is_saved is None:
        raise HTTPException(status_code=400, detail="Nothing to update")
    message = session.get(ChatMessage, body.message_id)
    if not message or message.chat_id != id:
        raise HTTPException(status_code=404, detail="Message not found")
    return crud.vote_message(
        session=session,
        chat_id=id,
        message_id=body.message_id,
        is_upvoted=body.is_upvoted,
        is_saved=body.is_saved,
    )


@router.delete("/{id}/messages/{message_id}/trailing", response_model=Message)
def delete_trailing_messages(
    id: uuid.UUID, message_id: uuid.UUID, session: SessionDep, current_user: CurrentUser
) -> Any:
    """Delete a message and everything sent after it, e.g. before regenerating a reply."""
    get_owned_chat(session, id, current_user)
    message = session.get(ChatMessage, message_id)
    if not message or message.chat_id != id:
        raise HTTPException(status_code=404, detail="Message not found")
    deleted = crud.delete_messages_after(
        session=session, chat_id=id, timestamp=message.created_at
    )
    return Message(message=f"Deleted {deleted} messages")

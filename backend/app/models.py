import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import EmailStr
from sqlalchemy import DateTime, JSON, UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel


def get_datetime_utc() -> datetime:
    return datetime.now(timezone.utc)


# Shared properties
class UserBase(SQLModel):
    email: EmailStr = Field(unique=True, index=True, max_length=255)
    is_active: bool = True
    is_superuser: bool = False
    full_name: str | None = Field(default=None, max_length=255)
    use_case: str | None = Field(default=None, max_length=255)
    onboarding_completed: bool = False


# Properties to receive via API on creation
class UserCreate(UserBase):
    password: str = Field(min_length=8, max_length=128)


class UserRegister(SQLModel):
    email: EmailStr = Field(max_length=255)
    password: str = Field(min_length=8, max_length=128)
    full_name: str | None = Field(default=None, max_length=255)
    referred_by: str | None = Field(default=None, max_length=255)


# Properties to receive via API on update, all are optional
class UserUpdate(UserBase):
    email: EmailStr | None = Field(default=None, max_length=255)  # type: ignore
    password: str | None = Field(default=None, min_length=8, max_length=128)


class UserUpdateMe(SQLModel):
    full_name: str | None = Field(default=None, max_length=255)
    email: EmailStr | None = Field(default=None, max_length=255)
    use_case: str | None = Field(default=None, max_length=255)
    onboarding_completed: bool | None = None


class UpdatePassword(SQLModel):
    current_password: str = Field(min_length=8, max_length=128)
    new_password: str = Field(min_length=8, max_length=128)


# Database model, database table inferred from class name
class User(UserBase, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    hashed_password: str
    papr_user_id: str | None = Field(default=None, max_length=255)
    stripe_customer_id: str | None = Field(default=None, max_length=255, index=True)
    referred_by: str | None = Field(default=None, max_length=255)
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    chats: list["Chat"] = Relationship(back_populates="user", cascade_delete=True)


# Properties to return via API, id is always required
class UserPublic(UserBase):
    id: uuid.UUID
    created_at: datetime | None = None


# Generic message
class Message(SQLModel):
    message: str


# JSON payload containing access token
class Token(SQLModel):
    access_token: str
    token_type: str = "bearer"


# Contents of JWT token
class TokenPayload(SQLModel):
    sub: str | None = None


# Chats

class ChatBase(SQLModel):
    title: str = Field(max_length=255)
    visibility: str = Field(default="private", max_length=16)  # public, private


class Chat(ChatBase, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    user_id: uuid.UUID = Field(
        foreign_key="user.id", nullable=False, ondelete="CASCADE", index=True
    )
    one_sentence_summary: str | None = None
    full_summary: str | None = None
    insights: dict[str, Any] | None = Field(default=None, sa_type=JSON)
    user_context: str | None = None
    user: User | None = Relationship(back_populates="chats")
    messages: list["ChatMessage"] = Relationship(back_populates="chat", cascade_delete=True)


class ChatPublic(ChatBase):
    id: uuid.UUID
    user_id: uuid.UUID
    created_at: datetime | None = None
    one_sentence_summary: str | None = None
    full_summary: str | None = None
    insights: dict[str, Any] | None = None


class ChatsPublic(SQLModel):
    data: list[ChatPublic]
    count: int


class ChatVisibilityUpdate(SQLModel):
    visibility: Literal["public", "private"]


class ChatMessageBase(SQLModel):
    role: str = Field(max_length=32)  # user, assistant, system, tool
    parts: list[dict[str, Any]] = Field(default_factory=list, sa_type=JSON)
    attachments: list[dict[str, Any]] = Field(default_factory=list, sa_type=JSON)


class ChatMessageCreate(ChatMessageBase):
    id: uuid.UUID | None = None


class ChatMessage(ChatMessageBase, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    chat_id: uuid.UUID = Field(
        foreign_key="chat.id", nullable=False, ondelete="CASCADE", index=True
    )
    tool_calls: list[dict[str, Any]] | None = Field(default=None, sa_type=JSON)
    memories: list[dict[str, Any]] | None = Field(default=None, sa_type=JSON)
    sources: list[dict[str, Any]] | None = Field(default=None, sa_type=JSON)
    model_id: str | None = Field(default=None, max_length=64)
    memory_decision: dict[str, Any] | None = Field(default=None, sa_type=JSON)
    chat: Chat | None = Relationship(back_populates="messages")


class ChatMessagePublic(ChatMessageBase):
    id: uuid.UUID
    chat_id: uuid.UUID
    created_at: datetime | None = None
    tool_calls: list[dict[str, Any]] | None = None
    memories: list[dict[str, Any]] | None = None
    model_id: str | None = None


class Vote(SQLModel, table=True):
    chat_id: uuid.UUID = Field(foreign_key="chat.id", primary_key=True, ondelete="CASCADE")
    message_id: uuid.UUID = Field(
        foreign_key="chatmessage.id", primary_key=True, ondelete="CASCADE"
    )
    is_upvoted: bool | None = None
    is_saved: bool = False


class VoteCreate(SQLModel):
    message_id: uuid.UUID
    is_upvoted: bool | None = None
    is_saved: bool | None = None


# Documents, versioned by (id, created_at)

class DocumentBase(SQLModel):
    title: str = Field(max_length=255)
    content: str | None = None
    kind: str = Field(default="text", max_length=32)  # text, code, image, sheet, memory, github-code
    chapter_number: int | None = None
    book_title: str | None = Field(default=None, max_length=255)


class DocumentCreate(DocumentBase):
    pass


class Document(DocumentBase, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime = Field(
        default_factory=get_datetime_utc,
        primary_key=True,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    user_id: uuid.UUID = Field(
        foreign_key="user.id", nullable=False, ondelete="CASCADE", index=True
    )
    is_latest: bool = True
    version: int = 1


class DocumentPublic(DocumentBase):
    id: uuid.UUID
    created_at: datetime
    user_id: uuid.UUID
    is_latest: bool
    version: int


# Books

class BookChapterBase(SQLModel):
    book_title: str = Field(max_length=255)
    chapter_number: int = Field(ge=0)
    chapter_title: str = Field(max_length=255)
    content: str = ""


class BookChapterCreate(BookChapterBase):
    pass


class BookChapter(BookChapterBase, table=True):
    __table_args__ = (UniqueConstraint("book_id", "chapter_number", "user_id"),)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    book_id: uuid.UUID = Field(index=True)
    user_id: uuid.UUID = Field(
        foreign_key="user.id", nullable=False, ondelete="CASCADE", index=True
    )
    version: int = 1
    is_latest: bool = True
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    updated_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )


class BookChapterPublic(BookChapterBase):
    id: uuid.UUID
    book_id: uuid.UUID
    version: int
    updated_at: datetime | None = None


class BookSummary(SQLModel):
    book_id: uuid.UUID
    book_title: str
    chapter_count: int
    total_word_count: int
    last_updated: datetime | None = None


class BookPropBase(SQLModel):
    book_title: str = Field(max_length=255)
    prop_type: str = Field(max_length=32)  # character, environment, object, illustration
    name: str = Field(max_length=255)
    description: str | None = None
    prop_metadata: dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    memory_id: str | None = Field(default=None, max_length=255)
    image_url: str | None = None


class BookPropCreate(BookPropBase):
    book_id: uuid.UUID


class BookPropUpdate(SQLModel):
    name: str | None = Field(default=None, max_length=255)
    description: str | None = None
    prop_metadata: dict[str, Any] | None = None
    memory_id: str | None = None
    image_url: str | None = None


class BookProp(BookPropBase, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    book_id: uuid.UUID = Field(index=True)
    user_id: uuid.UUID = Field(
        foreign_key="user.id", nullable=False, ondelete="CASCADE", index=True
    )
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    updated_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )


class BookPropPublic(BookPropBase):
    id: uuid.UUID
    book_id: uuid.UUID
    created_at: datetime | None = None


class BookDetails(SQLModel):
    book_id: uuid.UUID
    book_title: str | None = None
    chapters: list[BookChapterPublic]
    characters: list[BookPropPublic]
    environments: list[BookPropPublic]
    objects: list[BookPropPublic]
    illustrations: list[BookPropPublic]
    chapter_count: int
    prop_count: int


# Unified tasks (general checklist items and book workflow steps)

class TaskBase(SQLModel):
    title: str = Field(max_length=255)
    description: str | None = None
    task_type: str = Field(default="general", max_length=16)  # workflow, general
    status: str = Field(default="pending", max_length=16)
    dependencies: list[str] = Field(default_factory=list, sa_type=JSON)
    estimated_duration: str | None = Field(default=None, max_length=64)


class Task(TaskBase, table=True):
    __table_args__ = (UniqueConstraint("session_id", "title"),)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(
        foreign_key="user.id", nullable=False, ondelete="CASCADE", index=True
    )
    session_id: str | None = Field(default=None, max_length=255, index=True)
    book_id: uuid.UUID | None = Field(default=None, index=True)
    book_title: str | None = Field(default=None, max_length=255)
    step_number: int | None = None
    step_name: str | None = Field(default=None, max_length=64)
    tool_used: str | None = Field(default=None, max_length=64)
    is_picture_book: bool = False
    parent_task_id: uuid.UUID | None = Field(
        default=None, foreign_key="task.id", ondelete="SET NULL"
    )
    actual_duration: str | None = Field(default=None, max_length=64)
    task_metadata: dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    notes: str | None = None
    completed_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))  # type: ignore
    approved_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))  # type: ignore
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    updated_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )


class TaskPublic(TaskBase):
    id: uuid.UUID
    session_id: str | None = None
    book_id: uuid.UUID | None = None
    step_number: int | None = None
    step_name: str | None = None
    tool_used: str | None = None
    notes: str | None = None
    completed_at: datetime | None = None
    approved_at: datetime | None = None


class TaskItem(SQLModel):
    """A task as proposed by a caller before it has an id."""

    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    dependencies: list[str] = Field(default_factory=list)
    estimated_duration: str | None = None


class TaskStatusUpdate(SQLModel):
    status: Literal[
        "pending", "in_progress", "completed", "blocked", "cancelled", "approved", "skipped"
    ]
    notes: str | None = None
    task_metadata: dict[str, Any] | None = Field(default=None, alias="metadata")


class TaskProgress(SQLModel):
    total: int
    completed: int
    in_progress: int
    pending: int
    percentage: int


class BookProgress(SQLModel):
    total_steps: int
    completed_steps: int
    approved_steps: int
    current_step: int | None = None
    progress_percentage: int
    stage: str | None = None
    tasks: list[TaskPublic]


# Billing

class Usage(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("user_id", "month"),)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(
        foreign_key="user.id", nullable=False, ondelete="CASCADE", index=True
    )
    month: str = Field(max_length=7)  # YYYY-MM
    basic_interactions: int = 0
    premium_interactions: int = 0
    memories_added: int = 0
    memories_searched: int = 0
    voice_chats: int = 0
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    updated_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )


class SubscriptionBase(SQLModel):
    status: str = Field(default="free", max_length=16)  # free, active, canceled, past_due, unpaid, trialing
    plan: str = Field(default="free", max_length=16)  # free, basic, pro, enterprise
    stripe_subscription_id: str | None = Field(default=None, max_length=255)
    stripe_price_id: str | None = Field(default=None, max_length=255)
    current_period_start: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))  # type: ignore
    current_period_end: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))  # type: ignore
    cancel_at_period_end: bool = False
    trial_start: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))  # type: ignore
    trial_end: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))  # type: ignore


class Subscription(SubscriptionBase, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(
        foreign_key="user.id", nullable=False, ondelete="CASCADE", unique=True
    )
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    updated_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )


class SubscriptionPublic(SubscriptionBase):
    user_id: uuid.UUID


class CheckoutRequest(SQLModel):
    price_id: str


class RedirectURL(SQLModel):
    url: str

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlmodel import Session, col, func, select

from app.core.security import get_password_hash, verify_password
from app.models import (
    BookChapter,
    BookChapterCreate,
    BookChapterPublic,
    BookDetails,
    BookProp,
    BookPropCreate,
    BookPropPublic,
    BookPropUpdate,
    BookSummary,
    Chat,
    ChatMessage,
    Document,
    DocumentCreate,
    User,
    UserCreate,
    UserUpdate,
    Vote,
    get_datetime_utc,
)


def create_user(*, session: Session, user_create: UserCreate, **extra: Any) -> User:
    db_obj = User.model_validate(
        user_create,
        update={"hashed_password": get_password_hash(user_create.password), **extra},
    )
    session.add(db_obj)
    session.commit()
    session.refresh(db_obj)
    return db_obj


def update_user(*, session: Session, db_user: User, user_in: UserUpdate) -> Any:
    user_data = user_in.model_dump(exclude_unset=True)
    extra_data = {}
    if "password" in user_data:
        password = user_data["password"]
        hashed_password = get_password_hash(password)
        extra_data["hashed_password"] = hashed_password
    db_user.sqlmodel_update(user_data, update=extra_data)
    session.add(db_user)
    session.commit()
    session.refresh(db_user)
    return db_user


def get_user_by_email(*, session: Session, email: str) -> User | None:
    statement = select(User).where(User.email == email)
    session_user = session.exec(statement).first()
    return session_user


# Dummy hash to use for timing attack prevention when user is not found
# This is an Argon2 hash of a random password, used to ensure constant-time comparison
DUMMY_HASH = "$argon2id$v=19$m=65536,t=3,p=4$MjQyZWE1MzBjYjJlZTI0Yw$YTU4NGM5ZTZmYjE2NzZlZjY0ZWY3ZGRkY2U2OWFjNjk"


def authenticate(*, session: Session, email: str, password: str) -> User | None:
    db_user = get_user_by_email(session=session, email=email)
    if not db_user:
        # Prevent timing attacks by running password verification even when user doesn't exist
        verify_password(password, DUMMY_HASH)
        return None
    verified, updated_password_hash = verify_password(password, db_user.hashed_password)
    if not verified:
        return None
    if updated_password_hash:
        db_user.hashed_password = updated_password_hash
        session.add(db_user)
        session.commit()
        session.refresh(db_user)
    return db_user


# Chats and messages

def create_chat(
    *,
    session: Session,
    user_id: uuid.UUID,
    title: str,
    chat_id: uuid.UUID | None = None,
    visibility: str = "private",
) -> Chat:
    db_chat = Chat(title=title, user_id=user_id, visibility=visibility)
    if chat_id:
        db_chat.id = chat_id
    session.add(db_chat)
    session.commit()
    session.refresh(db_chat)
    return db_chat


def get_chats_by_user(
    *, session: Session, user_id: uuid.UUID, skip: int = 0, limit: int = 100
) -> tuple[list[Chat], int]:
    count = session.exec(
        select(func.count()).select_from(Chat).where(Chat.user_id == user_id)
    ).one()
    statement = (
        select(Chat)
        .where(Chat.user_id == user_id)
        .order_by(col(Chat.created_at).desc())
        .offset(skip)
        .limit(limit)
    )
    return list(session.exec(statement).all()), count


def update_chat_visibility(*, session: Session, db_chat: Chat, visibility: str) -> Chat:
    db_chat.visibility = visibility
    session.add(db_chat)
    session.commit()
    session.refresh(db_chat)
    return db_chat


def update_chat_insights(*, session: Session, db_chat: Chat, insights: dict[str, Any]) -> Chat:
    db_chat.one_sentence_summary = insights.get("one_sentence_summary")
    db_chat.full_summary = insights.get("full_summary")
    db_chat.user_context = insights.get("user_context")
    db_chat.insights = insights
    session.add(db_chat)
    session.commit()
    session.refresh(db_chat)
    return db_chat


def save_message(
    *,
    session: Session,
    chat_id: uuid.UUID,
    role: str,
    parts: list[dict[str, Any]],
    message_id: uuid.UUID | None = None,
    attachments: list[dict[str, Any]] | None = None,
    tool_calls: list[dict[str, Any]] | None = None,
    memories: list[dict[str, Any]] | None = None,
    model_id: str | None = None,
) -> ChatMessage:
    db_message = ChatMessage(
        chat_id=chat_id,
        role=role,
        parts=parts,
        attachments=attachments or [],
        tool_calls=tool_calls,
        memories=memories,
        model_id=model_id,
    )
    if message_id:
        db_message.id = message_id
    session.add(db_message)
    session.commit()
    session.refresh(db_message)
    return db_message


def get_messages_by_chat(*, session: Session, chat_id: uuid.UUID) -> list[ChatMessage]:
    statement = (
        select(ChatMessage)
        .where(ChatMessage.chat_id == chat_id)
        .order_by(col(ChatMessage.created_at).asc())
    )
    return list(session.exec(statement).all())


def delete_messages_after(*, session: Session, chat_id: uuid.UUID, timestamp: datetime) -> int:
    messages = session.exec(
        select(ChatMessage).where(
            ChatMessage.chat_id == chat_id, col(ChatMessage.created_at) >= timestamp
        )
    ).all()
    message_ids = [m.id for m in messages]
    if not message_ids:
        return 0
    votes = session.exec(select(Vote).where(col(Vote.message_id).in_(message_ids))).all()
    for vote in votes:
        session.delete(vote)
    for message in messages:
        session.delete(message)
    session.commit()
    return len(message_ids)


def vote_message(
    *,
    session: Session,
    chat_id: uuid.UUID,
    message_id: uuid.UUID,
    is_upvoted: bool | None = None,
    is_saved: bool | None = None,
) -> Vote:
    db_vote = session.get(Vote, (chat_id, message_id))
    if not db_vote:
        db_vote = Vote(chat_id=chat_id, message_id=message_id)
    if is_upvoted is not None:
        db_vote.is_upvoted = is_upvoted
    if is_saved is not None:
        db_vote.is_saved = is_saved
    session.add(db_vote)
    session.commit()
    session.refresh(db_vote)
    return db_vote


def get_votes_by_chat(*, session: Session, chat_id: uuid.UUID) -> list[Vote]:
    return list(session.exec(select(Vote).where(Vote.chat_id == chat_id)).all())


def get_saved_messages_by_user(
    *, session: Session, user_id: uuid.UUID, skip: int = 0, limit: int = 100
) -> list[ChatMessage]:
    """Messages the user bookmarked across all of their chats, newest first."""
    statement = (
        select(ChatMessage)
        .join(Vote, col(Vote.message_id) == col(ChatMessage.id))
        .join(Chat, col(Chat.id) == col(ChatMessage.chat_id))
        .where(Chat.user_id == user_id, col(Vote.is_saved).is_(True))
        .order_by(col(ChatMessage.created_at).desc())
        .offset(skip)
        .limit(limit)
    )
    return list(session.exec(statement).all())


# Documents

def _naive_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes, Postgres aware ones.
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.replace(tzinfo=None)


def get_document_versions(*, session: Session, document_id: uuid.UUID) -> list[Document]:
    statement = (
        select(Document)
        .where(Document.id == document_id)
        .order_by(col(Document.created_at).asc())
    )
    return list(session.exec(statement).all())


def get_latest_document(*, session: Session, document_id: uuid.UUID) -> Document | None:
    versions = get_document_versions(session=session, document_id=document_id)
    if not versions:
        return None
    flagged = [doc for doc in versions if doc.is_latest]
    return flagged[-1] if flagged else versions[-1]


def save_document(
    *,
    session: Session,
    document_in: DocumentCreate,
    user_id: uuid.UUID,
    document_id: uuid.UUID | None = None,
) -> Document:
    """Store a new version of a document; earlier versions lose their is_latest flag."""
    previous = (
        get_document_versions(session=session, document_id=document_id) if document_id else []
    )
    for doc in previous:
        if doc.is_latest:
            doc.is_latest = False
            session.add(doc)

    update: dict[str, Any] = {
        "user_id": user_id,
        "is_latest": True,
        "version": max((doc.version for doc in previous), default=0) + 1,
    }
    if document_id:
        update["id"] = document_id
    db_document = Document.model_validate(document_in, update=update)
    session.add(db_document)
    session.commit()
    session.refresh(db_document)
    return db_document


def delete_documents_after(
    *, session: Session, document_id: uuid.UUID, timestamp: datetime
) -> int:
    """Drop versions newer than timestamp and re-flag the newest survivor as latest."""
    versions = get_document_versions(session=session, document_id=document_id)
    cutoff = _naive_utc(timestamp)
    removed = [doc for doc in versions if _naive_utc(doc.created_at) > cutoff]
    remaining = [doc for doc in versions if doc not in removed]
    for doc in removed:
        session.delete(doc)
    if removed and remaining:
        for doc in remaining:
            doc.is_latest = False
            session.add(doc)
        remaining[-1].is_latest = True
    session.commit()
    return len(removed)


# Books

def _word_count(text: str | None) -> int:
    return len((text or "").split())


def get_books_by_user(*, session: Session, user_id: uuid.UUID) -> list[BookSummary]:
    chapters = session.exec(
        select(BookChapter).where(
            BookChapter.user_id == user_id, col(BookChapter.is_latest).is_(True)
        )
    ).all()

    books: dict[uuid.UUID, BookSummary] = {}
    for chapter in chapters:
        summary = books.get(chapter.book_id)
        if summary is None:
            summary = BookSummary(
                book_id=chapter.book_id,
                book_title=chapter.book_title,
                chapter_count=0,
                total_word_count=0,
                last_updated=chapter.updated_at,
            )
            books[chapter.book_id] = summary
        summary.chapter_count += 1
        summary.total_word_count += _word_count(chapter.content)
        if chapter.updated_at and (
            summary.last_updated is None or chapter.updated_at > summary.last_updated
        ):
            summary.last_updated = chapter.updated_at

    return sorted(
        books.values(),
        key=lambda b: b.last_updated.timestamp() if b.last_updated else 0,
        reverse=True,
    )


def get_book_chapters(
    *, session: Session, book_id: uuid.UUID, user_id: uuid.UUID
) -> list[BookChapter]:
    statement = (
        select(BookChapter)
        .where(
            BookChapter.book_id == book_id,
            BookChapter.user_id == user_id,
            col(BookChapter.is_latest).is_(True),
        )
        .order_by(col(BookChapter.chapter_number).asc())
    )
    return list(session.exec(statement).all())


def get_book_chapter(
    *, session: Session, book_id: uuid.UUID, chapter_number: int, user_id: uuid.UUID
) -> BookChapter | None:
    statement = select(BookChapter).where(
        BookChapter.book_id == book_id,
        BookChapter.chapter_number == chapter_number,
        BookChapter.user_id == user_id,
    )
    return session.exec(statement).first()


def save_book_chapter(
    *,
    session: Session,
    book_id: uuid.UUID,
    user_id: uuid.UUID,
    chapter_in: BookChapterCreate,
) -> BookChapter:
    """Insert a chapter or overwrite the existing one in place, bumping its version."""
    db_chapter = get_book_chapter(
        session=session,
        book_id=book_id,
        chapter_number=chapter_in.chapter_number,
        user_id=user_id,
    )
    if db_chapter:
        db_chapter.sqlmodel_update(
            chapter_in.model_dump(),
            update={
                "version": db_chapter.version + 1,
                "is_latest": True,
                "updated_at": get_datetime_utc(),
            },
        )
    else:
        db_chapter = BookChapter.model_validate(
            chapter_in, update={"book_id": book_id, "user_id": user_id}
        )
    session.add(db_chapter)
    session.commit()
    session.refresh(db_chapter)
    return db_chapter


def delete_book_chapter(
    *, session: Session, book_id: uuid.UUID, chapter_number: int, user_id: uuid.UUID
) -> bool:
    db_chapter = get_book_chapter(
        session=session, book_id=book_id, chapter_number=chapter_number, user_id=user_id
    )
    if not db_chapter:
        return False
    session.delete(db_chapter)
    session.commit()
    return True


def delete_book(*, session: Session, book_id: uuid.UUID, user_id: uuid.UUID) -> int:
    chapters = session.exec(
        select(BookChapter).where(BookChapter.book_id == book_id, BookChapter.user_id == user_id)
    ).all()
    props = get_book_props(session=session, user_id=user_id, book_id=book_id)
    for row in [*chapters, *props]:
        session.delete(row)
    session.commit()
    return len(chapters)


# Book props

def create_book_prop(*, session: Session, prop_in: BookPropCreate, user_id: uuid.UUID) -> BookProp:
    db_prop = BookProp.model_validate(prop_in, update={"user_id": user_id})
    session.add(db_prop)
    session.commit()
    session.refresh(db_prop)
    return db_prop


def update_book_prop(*, session: Session, db_prop: BookProp, prop_in: BookPropUpdate) -> BookProp:
    prop_data = prop_in.model_dump(exclude_unset=True)
    db_prop.sqlmodel_update(prop_data, update={"updated_at": get_datetime_utc()})
    session.add(db_prop)
    session.commit()
    session.refresh(db_prop)
    return db_prop


def get_book_props(
    *,
    session: Session,
    user_id: uuid.UUID,
    book_id: uuid.UUID | None = None,
    prop_type: str | None = None,
) -> list[BookProp]:
    statement = select(BookProp).where(BookProp.user_id == user_id)
    if book_id is not None:
        statement = statement.where(BookProp.book_id == book_id)
    if prop_type is not None:
        statement = statement.where(BookProp.prop_type == prop_type)
    statement = statement.order_by(col(BookProp.created_at).asc())
    return list(session.exec(statement).all())


def get_book_with_details(
    *, session: Session, book_id: uuid.UUID, user_id: uuid.UUID
) -> BookDetails | None:
    chapters = get_book_chapters(session=session, book_id=book_id, user_id=user_id)
    props = get_book_props(session=session, user_id=user_id, book_id=book_id)
    if not chapters and not props:
        return None

    by_type: dict[str, list[BookPropPublic]] = {
        "character": [],
        "environment": [],
        "object": [],
        "illustration": [],
    }
    for prop in props:
        by_type.setdefault(prop.prop_type, []).append(BookPropPublic.model_validate(prop))

    book_title = chapters[0].book_title if chapters else props[0].book_title
    return BookDetails(
        book_id=book_id,
        book_title=book_title,
        chapters=[BookChapterPublic.model_validate(c) for c in chapters],
        characters=by_type["character"],
        environments=by_type["environment"],
        objects=by_type["object"],
        illustrations=by_type["illustration"],
        chapter_count=len(chapters),
        prop_count=len(props),
    )

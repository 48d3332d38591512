import uuid
from datetime import timedelta
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from app import crud
from app.api.deps import get_current_user, get_db
from app.billing.usage import increment_usage
from app.core.security import create_access_token, get_password_hash
from app.main import app
from app.models import BookPropCreate, DocumentCreate
from app.tasks.workflow import BookWorkflow, WorkflowStage

API = "/api/v1"


@pytest.fixture
def client(session, user):
    app.dependency_overrides[get_db] = lambda: session
    app.dependency_overrides[get_current_user] = lambda: user
    with patch("app.api.routes.memory.settings.PAPR_MEMORY_API_KEY", None):
        yield TestClient(app)
    app.dependency_overrides.clear()


def _user_message(text="Help me outline a dragon novel"):
    return {"id": str(uuid.uuid4()), "role": "user", "parts": [{"type": "text", "text": text}]}


# Health and auth

def test_health_check(client):
    assert client.get(f"{API}/utils/health-check/").json() is True


def test_status_reports_configuration(client):
    body = client.get(f"{API}/utils/status").json()
    assert body["database"] is True
    assert body["memory"] is False


def test_signup_rejects_duplicate_email(client, user):
    response = client.post(
        f"{API}/users/signup", json={"email": user.email, "password": "long-enough-pw"}
    )
    assert response.status_code == 400


def test_signup_and_login(client):
    response = client.post(
        f"{API}/users/signup",
        json={"email": "new@example.com", "password": "long-enough-pw", "referred_by": "ada"},
    )
    assert response.status_code == 200

    token = client.post(
        f"{API}/login/access-token",
        data={"username": "new@example.com", "password": "long-enough-pw"},
    )
    assert token.status_code == 200
    assert token.json()["token_type"] == "bearer"

    bad = client.post(
        f"{API}/login/access-token", data={"username": "new@example.com", "password": "nope-nope"}
    )
    assert bad.status_code == 400


@pytest.fixture
def token_client(session):
    app.dependency_overrides[get_db] = lambda: session
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_bearer_token_resolves_current_user(token_client):
    token_client.post(
        f"{API}/users/signup", json={"email": "reader@example.com", "password": "long-enough-pw"}
    )
    token = token_client.post(
        f"{API}/login/access-token",
        data={"username": "reader@example.com", "password": "long-enough-pw"},
    ).json()["access_token"]

    me = token_client.get(f"{API}/users/me", headers={"Authorization": f"Bearer {token}"})

    assert me.status_code == 200
    assert me.json()["email"] == "reader@example.com"


def test_bearer_token_with_bad_subject_is_rejected(token_client):
    token = create_access_token("not-a-user-id", timedelta(minutes=5))

    me = token_client.get(f"{API}/users/me", headers={"Authorization": f"Bearer {token}"})

    assert me.status_code == 401
    assert token_client.get(f"{API}/users/me").status_code == 401


def test_change_password_requires_current(client, session, user):
    user.hashed_password = get_password_hash("old-password")
    session.add(user)
    session.commit()
    response = client.patch(
        f"{API}/users/me/password",
        json={"current_password": "wrong-password", "new_password": "new-password"},
    )
    assert response.status_code == 400


# Chat

def test_chat_rejects_premium_model_on_free_plan(client):
    response = client.post(
        f"{API}/chat",
        json={"id": str(uuid.uuid4()), "messages": [_user_message()], "selected_chat_model": "o4-mini"},
    )
    assert response.status_code == 403
    assert response.json()["detail"] == "Premium subscription required for reasoning models"


def test_chat_returns_429_when_basic_limit_reached(client, session, user):
    increment_usage(session, user.id, "basic_interactions", amount=50)

    response = client.post(
        f"{API}/chat", json={"id": str(uuid.uuid4()), "messages": [_user_message()]}
    )

    assert response.status_code == 429
    body = response.json()
    assert body["code"] == "USAGE_LIMIT_EXCEEDED"
    assert body["shouldShowUpgrade"] is True
    assert body["usage"]["current"] == 50


def test_chat_requires_a_user_message(client):
    response = client.post(
        f"{API}/chat",
        json={"id": str(uuid.uuid4()), "messages": [{"role": "assistant", "content": "Hi!"}]},
    )
    assert response.status_code == 400


def test_chat_rejects_someone_elses_chat(client, session, other_user):
    chat = crud.create_chat(session=session, user_id=other_user.id, title="Private")

    response = client.post(f"{API}/chat", json={"id": str(chat.id), "messages": [_user_message()]})

    assert response.status_code == 403


def test_delete_chat(client, session, user, other_user):
    mine = crud.create_chat(session=session, user_id=user.id, title="Mine")
    theirs = crud.create_chat(session=session, user_id=other_user.id, title="Theirs")

    assert client.delete(f"{API}/chat/{theirs.id}").status_code == 403
    assert client.delete(f"{API}/chat/{mine.id}").status_code == 200
    assert client.delete(f"{API}/chat/{mine.id}").status_code == 404


# Chats

def test_chat_visibility_controls_reads(client, session, other_user):
    private = crud.create_chat(session=session, user_id=other_user.id, title="Private")
    public = crud.create_chat(
        session=session, user_id=other_user.id, title="Public", visibility="public"
    )

    assert client.get(f"{API}/chats/{private.id}").status_code == 403
    assert client.get(f"{API}/chats/{public.id}").json()["title"] == "Public"
    assert client.get(f"{API}/chats/{public.id}/messages").json() == []
    assert client.patch(
        f"{API}/chats/{public.id}/visibility", json={"visibility": "private"}
    ).status_code == 403
    assert client.get(f"{API}/chats/{uuid.uuid4()}").status_code == 404


def test_list_chats_and_vote(client, session, user):
    chat = crud.create_chat(session=session, user_id=user.id, title="Mine")
    message = crud.save_message(session=session, chat_id=chat.id, role="assistant", parts=[])

    listing = client.get(f"{API}/chats/").json()
    assert listing["count"] == 1

    vote = client.patch(
        f"{API}/chats/{chat.id}/votes", json={"message_id": str(message.id), "is_upvoted": True}
    )
    assert vote.status_code == 200
    assert client.get(f"{API}/chats/{chat.id}/votes").json()[0]["is_upvoted"] is True

    missing = client.patch(
        f"{API}/chats/{chat.id}/votes", json={"message_id": str(uuid.uuid4()), "is_upvoted": True}
    )
    assert missing.status_code == 404


def test_saved_messages_listing(client, session, user):
    chat = crud.create_chat(session=session, user_id=user.id, title="Mine")
    kept = crud.save_message(
        session=session, chat_id=chat.id, role="assistant", parts=[{"type": "text", "text": "Ember"}]
    )
    crud.save_message(session=session, chat_id=chat.id, role="assistant", parts=[])

    saved = client.patch(
        f"{API}/chats/{chat.id}/votes", json={"message_id": str(kept.id), "is_saved": True}
    )
    assert saved.json()["is_saved"] is True
    assert saved.json()["is_upvoted"] is None

    assert [m["id"] for m in client.get(f"{API}/chats/saved").json()] == [str(kept.id)]

    client.patch(f"{API}/chats/{chat.id}/votes", json={"message_id": str(kept.id), "is_saved": False})
    assert client.get(f"{API}/chats/saved").json() == []
    assert client.patch(
        f"{API}/chats/{chat.id}/votes", json={"message_id": str(kept.id)}
    ).status_code == 400


def test_delete_trailing_messages(client, session, user):
    chat = crud.create_chat(session=session, user_id=user.id, title="Mine")
    crud.save_message(session=session, chat_id=chat.id, role="user", parts=[])
    reply = crud.save_message(session=session, chat_id=chat.id, role="assistant", parts=[])

    response = client.delete(f"{API}/chats/{chat.id}/messages/{reply.id}/trailing")

    assert response.json() == {"message": "Deleted 1 messages"}


# Documents

def test_document_versions(client, session, other_user):
    created = client.post(f"{API}/documents/", json={"title": "Draft", "content": "v1"}).json()
    doc_id = created["id"]
    second = client.post(f"{API}/documents/{doc_id}", json={"title": "Draft", "content": "v2"})
    assert second.json()["version"] == 2

    assert client.get(f"{API}/documents/{doc_id}").json()["content"] == "v2"
    assert len(client.get(f"{API}/documents/{doc_id}/versions").json()) == 2

    deleted = client.delete(f"{API}/documents/{doc_id}", params={"timestamp": created["created_at"]})
    assert deleted.json() == {"message": "Deleted 1 versions"}
    assert client.get(f"{API}/documents/{doc_id}").json()["content"] == "v1"


def test_document_owned_by_someone_else(client, session, other_user):
    doc = crud.save_document(
        session=session, document_in=DocumentCreate(title="Theirs"), user_id=other_user.id
    )

    assert client.get(f"{API}/documents/{doc.id}").status_code == 403
    assert client.post(f"{API}/documents/{doc.id}", json={"title": "Mine now"}).status_code == 403
    assert client.get(f"{API}/documents/{uuid.uuid4()}").status_code == 404


# Books and workflow

def test_book_chapters_and_workflow(client):
    book_id = uuid.uuid4()
    books = f"{API}/books/{book_id}"

    assert client.get(f"{books}/workflow").status_code == 404

    init = client.post(f"{books}/workflow", json={"book_title": "Ember"})
    assert init.json()["total_steps"] == 3
    assert init.json()["stage"] == "new"

    skipped = client.post(f"{books}/workflow/advance", json={"stage": "drafted"})
    assert skipped.status_code == 409

    planned = client.post(f"{books}/workflow/advance", json={"stage": "planned"})
    assert planned.json()["stage"] == "planned"

    state = client.get(f"{books}/workflow").json()
    assert state["next_stage"] == "drafted"
    assert state["can_advance"] is False
    assert len(state["problems"]) == 2

    chapter = client.put(
        f"{books}/chapters",
        json={"book_title": "Ember", "chapter_number": 1, "chapter_title": "Spark", "content": "It began."},
    )
    assert chapter.json()["version"] == 1
    assert client.post(f"{books}/workflow/approve").status_code == 200
    drafted = client.post(f"{books}/workflow/advance", json={"stage": "drafted"})
    assert drafted.json()["stage"] == "drafted"

    assert client.get(f"{books}/chapters/1").json()["chapter_title"] == "Spark"
    assert client.get(f"{books}/chapters/2").status_code == 404
    assert client.get(f"{API}/books/").json()[0]["chapter_count"] == 1
    assert client.get(books).json()["book_title"] == "Ember"


def test_approve_before_planning_conflicts(client):
    book_id = uuid.uuid4()
    client.post(f"{API}/books/{book_id}/workflow", json={"book_title": "Ember"})

    assert client.post(f"{API}/books/{book_id}/workflow/approve").status_code == 409


def test_missing_book_returns_404(client):
    assert client.get(f"{API}/books/{uuid.uuid4()}").status_code == 404
    assert client.delete(f"{API}/books/{uuid.uuid4()}").status_code == 404


def test_book_props_ownership(client, session, other_user):
    book_id = uuid.uuid4()
    created = client.post(
        f"{API}/book-props/",
        json={"book_id": str(book_id), "book_title": "Ember", "prop_type": "character", "name": "Ash"},
    )
    prop_id = created.json()["id"]

    updated = client.patch(f"{API}/book-props/{prop_id}", json={"description": "A young dragon"})
    assert updated.json()["description"] == "A young dragon"
    assert len(client.get(f"{API}/book-props/", params={"prop_type": "character"}).json()) == 1
    assert client.get(f"{API}/book-props/", params={"prop_type": "weapon"}).status_code == 422

    theirs = crud.create_book_prop(
        session=session,
        user_id=other_user.id,
        prop_in=BookPropCreate(book_id=book_id, book_title="Ember", prop_type="object", name="Lamp"),
    )
    assert client.get(f"{API}/book-props/{theirs.id}").status_code == 403
    assert client.delete(f"{API}/book-props/{uuid.uuid4()}").status_code == 404
    assert client.delete(f"{API}/book-props/{prop_id}").status_code == 200


# Tasks

def test_task_plan_endpoints(client):
    plan = client.post(
        f"{API}/tasks/",
        json={
            "session_id": "chat-1",
            "tasks": [{"title": "Outline"}, {"title": "Draft", "dependencies": ["Outline"]}],
        },
    ).json()
    outline_id = plan[0]["id"]

    nxt = client.get(f"{API}/tasks/next", params={"session_id": "chat-1"}).json()
    assert nxt["task"]["title"] == "Outline"
    assert nxt["all_completed"] is False

    done = client.patch(
        f"{API}/tasks/{outline_id}/status",
        json={"status": "completed", "metadata": {"source": "sidebar"}},
    )
    assert done.json()["completed_at"] is not None
    assert done.json()["task_metadata"] == {"source": "sidebar"}

    progress = client.get(f"{API}/tasks/progress", params={"session_id": "chat-1"}).json()
    assert progress["percentage"] == 50

    assert client.patch(
        f"{API}/tasks/{uuid.uuid4()}/status", json={"status": "completed"}
    ).status_code == 404
    assert client.delete(f"{API}/tasks/session/chat-1").json() == {"message": "Deleted 2 tasks"}


def test_task_status_route_refuses_workflow_steps(client, session, user):
    book_id = uuid.uuid4()
    client.post(f"{API}/books/{book_id}/workflow", json={"book_title": "Ember"})
    steps = client.get(f"{API}/tasks/", params={"task_type": "workflow"}).json()
    assert len(steps) == 3

    for step in steps[:2]:
        response = client.patch(f"{API}/tasks/{step['id']}/status", json={"status": "completed"})
        assert response.status_code == 409
        assert f"/books/{book_id}/workflow" in response.json()["detail"]

    assert client.get(f"{API}/books/{book_id}/workflow").json()["stage"] == "new"
    assert BookWorkflow(session, book_id, user.id).stage == WorkflowStage.NEW
    assert client.post(f"{API}/tasks/cleanup").json() == {"message": "Cleaned dependencies on 0 tasks"}


# Memory

def test_memory_search_blocked_by_usage_limit(client, session, user):
    increment_usage(session, user.id, "memories_searched", amount=20)

    response = client.post(f"{API}/memory/search", json={"query": "dragons"})

    assert response.status_code == 429
    assert response.json()["code"] == "USAGE_LIMIT_EXCEEDED"


def test_memory_requires_configuration(client):
    assert client.post(f"{API}/memory/search", json={"query": "dragons"}).status_code == 503
    assert client.post(f"{API}/memory/", json={"content": "note"}).status_code == 503


# Subscription

def test_subscription_defaults_and_plans(client):
    assert client.get(f"{API}/subscription/").json()["plan"] == "free"

    plans = {p["id"]: p for p in client.get(f"{API}/subscription/plans").json()}
    assert plans["free"]["limits"]["basic_interactions"] == 50
    assert plans["free"]["can_access_premium_models"] is False


def test_subscription_error_paths(client):
    assert client.post(f"{API}/subscription/checkout", json={"price_id": "price_x"}).status_code == 400
    assert client.post(f"{API}/subscription/portal").status_code == 400
    assert client.post(f"{API}/subscription/sync").status_code == 400
    assert client.post(f"{API}/subscription/cancel").status_code == 400


def test_usage_endpoints(client, session, user):
    increment_usage(session, user.id, "basic_interactions", amount=45)

    overview = client.get(f"{API}/subscription/usage").json()
    assert overview["usage"]["basic_interactions"]["remaining"] == 5
    assert overview["show_upgrade_prompt"] is True

    warnings = client.get(f"{API}/subscription/usage/warnings").json()
    assert warnings["warnings"][0]["type"] == "basic_interactions"


def test_webhook_rejects_unsigned_payload(client):
    response = client.post(f"{API}/subscription/webhook", content=b"{}")

    assert response.status_code == 400
    assert response.json()["detail"] == "Missing Stripe signature"


# Realtime

def test_realtime_requires_postgres(client, engine):
    with patch("app.api.routes.realtime.engine", engine):
        response = client.get(f"{API}/realtime/stream")
    assert response.status_code == 503

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from app import crud
from app.agent.tools import ToolContext, execute_tool, tool_definitions
from app.billing.usage import get_user_usage, increment_usage
from app.models import BookChapterCreate
from app.tasks.service import TaskService


@pytest.fixture
def memory():
    service = MagicMock()
    service.search_memories = AsyncMock(return_value=[])
    service.store_content = AsyncMock(return_value="mem_42")
    return service


@pytest.fixture
def ctx(session, user, memory):
    return ToolContext(
        session=session,
        user=user,
        chat_id=uuid.uuid4(),
        memory=memory,
        papr_user_id="papr_abc",
    )


def test_tool_definitions_follow_function_format():
    names = [t["function"]["name"] for t in tool_definitions()]

    assert names[:2] == ["search_memories", "add_memory"]
    assert "approve_workflow_step" in names
    assert all(t["type"] == "function" for t in tool_definitions())


@pytest.mark.asyncio
async def test_search_memories_blocked_at_monthly_limit(ctx, session, user, memory):
    increment_usage(session, user.id, "memories_searched", amount=20)

    result = await execute_tool(ctx, "search_memories", {"query": "dragons"})

    assert result["memories"] == []
    assert "limit of 20 memory searches" in result["error"]
    assert result["shouldShowUpgrade"] is True
    memory.search_memories.assert_not_called()


@pytest.mark.asyncio
async def test_search_memories_counts_usage(ctx, session, user):
    result = await execute_tool(ctx, "search_memories", {"query": "dragons", "max_results": 50})

    assert result == {"memories": [], "error": None}
    assert get_user_usage(session, user.id).memories_searched == 1


@pytest.mark.asyncio
async def test_search_memories_without_memory_user(ctx, memory):
    ctx.papr_user_id = None

    result = await execute_tool(ctx, "search_memories", {"query": "dragons"})

    assert result["error"] == "Memory service not configured"
    memory.search_memories.assert_not_called()


@pytest.mark.asyncio
async def test_add_memory_stores_with_category_defaults(ctx, session, user, memory):
    result = await execute_tool(
        ctx, "add_memory", {"content": "Prefers British spelling", "category": "preferences"}
    )

    assert result["success"] is True
    assert result["memoryId"] == "mem_42"
    assert result["topics"] == ["preferences"]
    papr_user_id, content, kind, metadata = memory.store_content.call_args.args
    assert (papr_user_id, content, kind) == ("papr_abc", "Prefers British spelling", "text")
    assert metadata["customMetadata"]["category"] == "preferences"
    assert metadata["sourceUrl"] == f"/chat/{ctx.chat_id}"
    assert get_user_usage(session, user.id).memories_added == 1


@pytest.mark.asyncio
async def test_add_memory_failure_does_not_count(ctx, session, user, memory):
    memory.store_content.return_value = None

    result = await execute_tool(ctx, "add_memory", {"content": "x", "category": "goals"})

    assert result["success"] is False
    assert result["error"] == "Failed to add memory"
    assert get_user_usage(session, user.id) is None


@pytest.mark.asyncio
async def test_add_memory_rejects_unknown_category(ctx, memory):
    result = await execute_tool(ctx, "add_memory", {"content": "x", "category": "secrets"})

    assert result == {"success": False, "error": "Unknown memory category: secrets"}
    memory.store_content.assert_not_called()


@pytest.mark.asyncio
async def test_task_plan_lifecycle(ctx):
    plan = {
        "tasks": [
            {"title": "Outline"},
            {"title": "Draft chapter 1", "dependencies": ["Outline"]},
        ]
    }

    created = await execute_tool(ctx, "create_task_plan", plan)
    assert created["type"] == "task-plan-created"
    assert created["nextTask"]["title"] == "Outline"
    outline_id = created["tasks"][0]["id"]
    assert created["tasks"][1]["dependencies"] == [outline_id]

    again = await execute_tool(ctx, "create_task_plan", {"tasks": [{"title": "Other"}]})
    assert again["type"] == "task-plan-exists"
    assert len(again["tasks"]) == 2

    started = await execute_tool(ctx, "update_task", {"task_id": "outline", "status": "in_progress"})
    assert started["type"] == "task-updated"
    assert started["task"]["status"] == "in_progress"

    done = await execute_tool(ctx, "complete_task", {"task_id": outline_id, "notes": "done"})
    assert done["type"] == "task-completed"
    assert done["progress"]["percentage"] == 50
    assert done["nextTask"]["title"] == "Draft chapter 1"
    assert done["allCompleted"] is False

    status = await execute_tool(ctx, "get_task_status", {})
    assert status["message"] == "Task Status: 1/2 completed (50%)"


@pytest.mark.asyncio
async def test_add_task_extends_plan(ctx):
    await execute_tool(ctx, "create_task_plan", {"tasks": [{"title": "Outline"}]})

    result = await execute_tool(ctx, "add_task", {"tasks": [{"title": "Edit"}, {"bogus": 1}]})

    assert result["message"] == "Added 1 new tasks"
    assert [t["title"] for t in result["tasks"]] == ["Outline", "Edit"]


@pytest.mark.asyncio
async def test_task_tools_report_missing_tasks(ctx):
    assert (await execute_tool(ctx, "get_task_status", {}))["success"] is False

    result = await execute_tool(ctx, "complete_task", {"task_id": "Nope"})
    assert result == {"success": False, "error": "Task not found: Nope"}


@pytest.mark.asyncio
async def test_update_task_rejects_unknown_status(ctx):
    await execute_tool(ctx, "create_task_plan", {"tasks": [{"title": "Outline"}]})

    result = await execute_tool(ctx, "update_task", {"task_id": "Outline", "status": "done-ish"})

    assert result == {"success": False, "error": "Unknown task status: done-ish"}


@pytest.mark.asyncio
async def test_book_workflow_tools_enforce_approval(ctx, session, user):
    book_id = uuid.uuid4()
    TaskService(session).initialize_workflow_tasks(book_id, "Ember", user.id)
    args = {"book_id": str(book_id)}

    planned = await execute_tool(ctx, "advance_workflow", {**args, "stage": "planned"})
    assert planned["stage"] == "planned"
    assert planned["nextStage"] == "drafted"

    blocked = await execute_tool(ctx, "advance_workflow", {**args, "stage": "drafted"})
    assert blocked["success"] is False
    assert "Awaiting user approval for: Story Planning" in blocked["error"]
    assert "At least one chapter" in blocked["error"]

    approved = await execute_tool(ctx, "approve_workflow_step", args)
    assert approved["type"] == "workflow-approved"
    crud.save_book_chapter(
        session=session,
        book_id=book_id,
        user_id=user.id,
        chapter_in=BookChapterCreate(book_title="Ember", chapter_number=1, chapter_title="Spark"),
    )

    drafted = await execute_tool(ctx, "advance_workflow", {**args, "stage": "drafted"})
    assert drafted["stage"] == "drafted"

    progress = await execute_tool(ctx, "get_book_progress", args)
    assert progress["progress"]["completed_steps"] == 2
    assert progress["progress"]["stage"] == "drafted"


@pytest.mark.asyncio
async def test_book_workflow_tools_validate_input(ctx):
    bad = await execute_tool(ctx, "advance_workflow", {"book_id": "not-a-uuid", "stage": "planned"})
    assert bad == {"success": False, "error": "A valid book_id is required"}

    missing = await execute_tool(ctx, "get_book_progress", {"book_id": str(uuid.uuid4())})
    assert missing["error"] == "Workflow has not been initialized for this book"

    unknown_stage = await execute_tool(
        ctx, "advance_workflow", {"book_id": str(uuid.uuid4()), "stage": "printed"}
    )
    assert unknown_stage["success"] is False

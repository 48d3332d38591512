"""Function tools exposed to the chat model, with their executors.

Each executor receives a ToolContext and the parsed arguments and returns a
JSON-serialisable dict. Failures are reported in the result
(``{"success": False, "error": ...}``) rather than raised, so the model can
explain them to the user.
"""
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError
from sqlmodel import Session

from app.billing.usage import check_memory_add_limit, check_memory_search_limit, increment_usage
from app.memory.middleware import search_user_memories
from app.memory.service import MemoryService
from app.models import Task, TaskItem, TaskPublic, User
from app.realtime.listener import notify_user_update
from app.tasks.service import (
    TASK_STATUSES,
    TaskService,
    are_all_tasks_completed,
    get_next_available_task,
    get_task_progress,
)
from app.tasks.workflow import STAGE_STEPS, BookWorkflow, WorkflowStage, WorkflowTransitionError

logger = logging.getLogger(__name__)

MEMORY_CATEGORIES = ("preferences", "goals", "tasks", "knowledge")
MAX_SEARCH_RESULTS = 10

_DEFAULT_EMOJI_TAGS = {
    "preferences": ["👤", "⚙️"],
    "goals": ["🎯", "📈"],
    "tasks": ["✅", "📝"],
    "knowledge": ["💡", "📚"],
}


@dataclass
class ToolContext:
    session: Session
    user: User
    chat_id: uuid.UUID
    memory: MemoryService
    papr_user_id: str | None = None
    # search_memories hits gathered during the turn, saved onto the assistant message
    memories: list[dict[str, Any]] = field(default_factory=list)


def _function(name: str, description: str, properties: dict[str, Any], required: list[str]) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        },
    }


_TASK_ITEM_SCHEMA = {
    "type": "object",
    "properties": {
        "title": {"type": "string"},
        "description": {"type": "string"},
        "dependencies": {"type": "array", "items": {"type": "string"}},
        "estimated_duration": {"type": "string"},
    },
    "required": ["title"],
}

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    _function(
        "search_memories",
        "Search the user's memories from past conversations.",
        {
            "query": {"type": "string", "description": "What to look for"},
            "max_results": {"type": "integer", "minimum": 1, "maximum": MAX_SEARCH_RESULTS},
        },
        ["query"],
    ),
    _function(
        "add_memory",
        "Store an important piece of information about the user for future conversations.",
        {
            "content": {"type": "string"},
            "category": {"type": "string", "enum": list(MEMORY_CATEGORIES)},
            "type": {"type": "string", "enum": ["text", "code_snippet", "document"]},
            "emoji_tags": {"type": "array", "items": {"type": "string"}},
            "topics": {"type": "array", "items": {"type": "string"}},
            "hierarchical_structure": {"type": "string"},
        },
        ["content", "category"],
    ),
    _function(
        "create_task_plan",
        "Create an ordered task plan for a multi-step request in this chat.",
        {"tasks": {"type": "array", "items": _TASK_ITEM_SCHEMA, "minItems": 1}},
        ["tasks"],
    ),
    _function(
        "update_task",
        "Update the status of a task in the plan.",
        {
            "task_id": {"type": "string", "description": "Task id or exact title"},
            "status": {"type": "string", "enum": list(TASK_STATUSES)},
            "notes": {"type": "string"},
        },
        ["task_id", "status"],
    ),
    _function(
        "complete_task",
        "Mark a task as completed.",
        {
            "task_id": {"type": "string", "description": "Task id or exact title"},
            "notes": {"type": "string"},
        },
        ["task_id"],
    ),
    _function("get_task_status", "Show the current task plan and progress.", {}, []),
    _function(
        "add_task",
        "Add tasks to the existing plan.",
        {"tasks": {"type": "array", "items": _TASK_ITEM_SCHEMA, "minItems": 1}},
        ["tasks"],
    ),
    _function(
        "get_book_progress",
        "Show the workflow stage and step progress of a book.",
        {"book_id": {"type": "string"}},
        ["book_id"],
    ),
    _function(
        "advance_workflow",
        "Move a book to its next workflow stage once the current stage is approved.",
        {
            "book_id": {"type": "string"},
            "stage": {"type": "string", "enum": [s.value for s in WorkflowStage]},
        },
        ["book_id", "stage"],
    ),
    _function(
        "approve_workflow_step",
        "Record that the user approved the current stage of a book. Only call after explicit approval.",
        {"book_id": {"type": "string"}},
        ["book_id"],
    ),
]


def _failure(error: str, **extra: Any) -> dict[str, Any]:
    return {"success": False, "error": error, **extra}


def _task_json(task: Task | None) -> dict[str, Any] | None:
    if task is None:
        return None
    return TaskPublic.model_validate(task).model_dump(mode="json")


def _plan_result(tasks: list[Task], result_type: str, message: str, **extra: Any) -> dict[str, Any]:
    return {
        "success": True,
        "type": result_type,
        "tasks": [_task_json(t) for t in tasks],
        "nextTask": _task_json(get_next_available_task(tasks)),
        "progress": get_task_progress(tasks).model_dump(),
        "allCompleted": are_all_tasks_completed(tasks),
        "message": message,
        **extra,
    }


def _parse_items(raw: Any) -> list[TaskItem]:
    if not isinstance(raw, list):
        return []
    items = []
    for entry in raw:
        try:
            items.append(TaskItem.model_validate(entry))
        except ValidationError as exc:
            logger.warning("Skipping invalid task item %r: %s", entry, exc)
    return items


def _parse_uuid(value: Any) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _find_session_task(ctx: ToolContext, ref: Any) -> Task | None:
    tasks = TaskService(ctx.session).get_general_tasks(str(ctx.chat_id), ctx.user.id)
    ref = str(ref or "").strip()
    for task in tasks:
        if str(task.id) == ref or task.title.lower() == ref.lower():
            return task
    return None


# Memory

async def search_memories(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    query = str(args.get("query") or "").strip()
    if not query:
        return {"memories": [], "error": "A search query is required"}
    if not ctx.papr_user_id:
        return {"memories": [], "error": "Memory service not configured"}

    check = check_memory_search_limit(ctx.session, ctx.user.id)
    if not check.allowed:
        return {"memories": [], "error": check.reason, "shouldShowUpgrade": True}

    try:
        max_results = int(args.get("max_results") or MAX_SEARCH_RESULTS)
    except (TypeError, ValueError):
        max_results = MAX_SEARCH_RESULTS
    max_results = min(max(max_results, 1), MAX_SEARCH_RESULTS)

    found = await search_user_memories(ctx.papr_user_id, query, ctx.memory, max_results)
    increment_usage(ctx.session, ctx.user.id, "memories_searched")

    memories = [
        {"content": m.content, "id": m.id, "timestamp": m.created_at or ""}
        for m in found[:max_results]
    ]
    known = {m["id"] for m in ctx.memories}
    ctx.memories.extend(m for m in memories if m["id"] not in known)
    return {"memories": memories, "error": None}


async def add_memory(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    content = str(args.get("content") or "").strip()
    category = args.get("category")
    if not content:
        return _failure("Memory content is required")
    if category not in MEMORY_CATEGORIES:
        return _failure(f"Unknown memory category: {category}")
    if not ctx.papr_user_id:
        return _failure("Failed to get Papr user ID")

    check = check_memory_add_limit(ctx.session, ctx.user.id)
    if not check.allowed:
        return _failure(check.reason or "Memory limit reached", shouldShowUpgrade=True)

    emoji_tags = args.get("emoji_tags") or _DEFAULT_EMOJI_TAGS[category]
    topics = args.get("topics") or [category]
    hierarchy = args.get("hierarchical_structure") or category
    metadata = {
        "sourceType": "PaprChat",
        "sourceUrl": f"/chat/{ctx.chat_id}",
        "external_user_id": str(ctx.user.id),
        "emoji tags": emoji_tags,
        "topics": topics,
        "hierarchical_structures": hierarchy,
        "customMetadata": {
            "category": category,
            "app_user_id": str(ctx.user.id),
            "tool": "add_memory",
        },
    }
    memory_id = await ctx.memory.store_content(
        ctx.papr_user_id, content, args.get("type") or "text", metadata
    )
    if memory_id is None:
        return _failure("Failed to add memory", fallbackMessage="Unable to add memory. Please try again later.")

    increment_usage(ctx.session, ctx.user.id, "memories_added")
    return {
        "success": True,
        "message": f"Added {category} memory successfully",
        "memoryId": memory_id,
        "category": category,
        "emoji_tags": emoji_tags,
        "topics": topics,
        "hierarchical_structure": hierarchy,
    }


# Tasks

async def create_task_plan(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    items = _parse_items(args.get("tasks"))
    if not items:
        return _failure("No tasks provided for plan creation")

    service = TaskService(ctx.session)
    existing = service.get_general_tasks(str(ctx.chat_id), ctx.user.id)
    if existing:
        return _plan_result(
            existing, "task-plan-exists", f"Found existing task plan with {len(existing)} tasks"
        )
    tasks = service.create_general_tasks(str(ctx.chat_id), ctx.user.id, items)
    return _plan_result(tasks, "task-plan-created", f"Created task plan with {len(tasks)} tasks")


def _set_status(ctx: ToolContext, args: dict[str, Any], status: str) -> Task | dict[str, Any]:
    task = _find_session_task(ctx, args.get("task_id"))
    if task is None:
        return _failure(f"Task not found: {args.get('task_id')}")
    try:
        updated = TaskService(ctx.session).update_task_status(
            task.id, ctx.user.id, status, notes=args.get("notes")
        )
    except ValueError as exc:
        return _failure(str(exc))
    if updated is None:
        return _failure(f"Task not found: {args.get('task_id')}")
    notify_user_update(ctx.session, ctx.user.id, "task", "UPDATE", _task_json(updated) or {})
    return updated


async def update_task(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    outcome = _set_status(ctx, args, str(args.get("status") or ""))
    if isinstance(outcome, dict):
        return outcome
    tasks = TaskService(ctx.session).get_general_tasks(str(ctx.chat_id), ctx.user.id)
    return _plan_result(
        tasks, "task-updated", f"Task updated: {outcome.title}", task=_task_json(outcome)
    )


async def complete_task(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    outcome = _set_status(ctx, args, "completed")
    if isinstance(outcome, dict):
        return outcome
    tasks = TaskService(ctx.session).get_general_tasks(str(ctx.chat_id), ctx.user.id)
    return _plan_result(
        tasks, "task-completed", f"Completed task: {outcome.title}", task=_task_json(outcome)
    )


async def get_task_status(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    tasks = TaskService(ctx.session).get_general_tasks(str(ctx.chat_id), ctx.user.id)
    if not tasks:
        return _failure("No task plan exists for this chat")
    progress = get_task_progress(tasks)
    return _plan_result(
        tasks,
        "task-status",
        f"Task Status: {progress.completed}/{progress.total} completed ({progress.percentage}%)",
    )


async def add_task(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    items = _parse_items(args.get("tasks"))
    if not items:
        return _failure("No tasks provided")
    tasks = TaskService(ctx.session).create_general_tasks(str(ctx.chat_id), ctx.user.id, items)
    return _plan_result(tasks, "task-updated", f"Added {len(items)} new tasks")


# Book workflow

def _workflow(ctx: ToolContext, args: dict[str, Any]) -> BookWorkflow | None:
    book_id = _parse_uuid(args.get("book_id"))
    if book_id is None:
        return None
    return BookWorkflow(ctx.session, book_id, ctx.user.id)


def _workflow_result(workflow: BookWorkflow, result_type: str, message: str) -> dict[str, Any]:
    progress = workflow.tasks.get_book_progress(workflow.book_id, workflow.user_id)
    progress.stage = workflow.stage.value
    next_stage = workflow.next_stage
    return {
        "success": True,
        "type": result_type,
        "stage": workflow.stage.value,
        "nextStage": next_stage.value if next_stage else None,
        "progress": progress.model_dump(mode="json", exclude={"tasks"}),
        "tasks": [t.model_dump(mode="json") for t in progress.tasks],
        "message": message,
    }


async def get_book_progress(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    workflow = _workflow(ctx, args)
    if workflow is None:
        return _failure("A valid book_id is required")
    if not workflow.initialized:
        return _failure("Workflow has not been initialized for this book")
    return _workflow_result(workflow, "book-progress", f"Book is at stage {workflow.stage.value}")


async def advance_workflow(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    workflow = _workflow(ctx, args)
    if workflow is None:
        return _failure("A valid book_id is required")
    try:
        target = WorkflowStage(args.get("stage"))
        stage = workflow.advance(target)
    except ValueError as exc:
        # WorkflowTransitionError is a ValueError, as is an unknown stage name
        return _failure(str(exc))
    for task in workflow.tasks.get_workflow_tasks(workflow.book_id, ctx.user.id):
        if task.step_number in STAGE_STEPS.get(stage, ()):
            notify_user_update(ctx.session, ctx.user.id, "task", "UPDATE", _task_json(task) or {})
    return _workflow_result(workflow, "workflow-advanced", f"Book advanced to {stage.value}")


async def approve_workflow_step(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    workflow = _workflow(ctx, args)
    if workflow is None:
        return _failure("A valid book_id is required")
    try:
        approved = workflow.approve()
    except WorkflowTransitionError as exc:
        return _failure(str(exc))
    for task in approved:
        notify_user_update(ctx.session, ctx.user.id, "task", "UPDATE", _task_json(task) or {})
    return _workflow_result(
        workflow, "workflow-approved", f"Approved {len(approved)} step(s) of {workflow.stage.value}"
    )


ToolExecutor = Callable[[ToolContext, dict[str, Any]], Awaitable[dict[str, Any]]]

TOOL_EXECUTORS: dict[str, ToolExecutor] = {
    "search_memories": search_memories,
    "add_memory": add_memory,
    "create_task_plan": create_task_plan,
    "update_task": update_task,
    "complete_task": complete_task,
    "get_task_status": get_task_status,
    "add_task": add_task,
    "get_book_progress": get_book_progress,
    "advance_workflow": advance_workflow,
    "approve_workflow_step": approve_workflow_step,
}


def tool_definitions(*, memory_enabled: bool = True) -> list[dict[str, Any]]:
    if memory_enabled:
        return list(TOOL_DEFINITIONS)
    return [
        t for t in TOOL_DEFINITIONS
        if t["function"]["name"] not in ("search_memories", "add_memory")
    ]


async def execute_tool(ctx: ToolContext, name: str, args: dict[str, Any]) -> dict[str, Any]:
    executor = TOOL_EXECUTORS.get(name)
    if executor is None:
        logger.warning("Model requested unknown tool %s", name)
        return _failure(f"Unknown tool: {name}")
    logger.info("Executing tool %s for chat %s", name, ctx.chat_id)
    return await executor(ctx, args)

import uuid
from typing import Any, Literal

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from app.api.deps import CurrentUser, SessionDep
from app.core.config import settings
from app.models import Message, TaskItem, TaskProgress, TaskPublic, TaskStatusUpdate
from app.realtime.listener import notify_user_update
from app.tasks.service import (
    TaskService,
    are_all_tasks_completed,
    get_next_available_task,
    get_task_progress,
)

router = APIRouter(prefix="/tasks", tags=["tasks"])


class TaskPlanCreate(BaseModel):
    session_id: str
    tasks: list[TaskItem] = Field(min_length=1)
    book_id: uuid.UUID | None = None
    book_title: str | None = None


class NextTask(BaseModel):
    task: TaskPublic | None = None
    all_completed: bool


@router.get("/", response_model=list[TaskPublic])
def read_tasks(
    session: SessionDep,
    current_user: CurrentUser,
    session_id: str | None = None,
    task_type: Literal["workflow", "general"] | None = None,
) -> Any:
    return TaskService(session).get_all_tasks(
        current_user.id, task_type=task_type, session_id=session_id
    )


@router.post("/", response_model=list[TaskPublic])
def create_tasks(body: TaskPlanCreate, session: SessionDep, current_user: CurrentUser) -> Any:
    return TaskService(session).create_general_tasks(
        body.session_id,
        current_user.id,
        body.tasks,
        book_id=body.book_id,
        book_title=body.book_title,
    )


@router.get("/progress", response_model=TaskProgress)
def read_progress(session_id: str, session: SessionDep, current_user: CurrentUser) -> Any:
    return get_task_progress(TaskService(session).get_general_tasks(session_id, current_user.id))


@router.get("/next", response_model=NextTask)
def read_next_task(session_id: str, session: SessionDep, current_user: CurrentUser) -> Any:
    tasks = TaskService(session).get_general_tasks(session_id, current_user.id)
    task = get_next_available_task(tasks)
    return NextTask(
        task=TaskPublic.model_validate(task) if task else None,
        all_completed=are_all_tasks_completed(tasks),
    )


@router.patch("/{id}/status", response_model=TaskPublic)
def update_status(
    id: uuid.UUID, body: TaskStatusUpdate, session: SessionDep, current_user: CurrentUser
) -> Any:
    service = TaskService(session)
    task = service.get_task(id, current_user.id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    if task.task_type == "workflow":
        raise HTTPException(
            status_code=409,
            detail=(
                "Workflow steps change through "
                f"{settings.API_V1_STR}/books/{task.book_id}/workflow/approve or /advance"
            ),
        )
    task = service.update_task_status(
        id, current_user.id, body.status, metadata=body.task_metadata, notes=body.notes
    )
    notify_user_update(
        session,
        current_user.id,
        "task",
        "UPDATE",
        TaskPublic.model_validate(task).model_dump(mode="json"),
    )
    return task


@router.delete("/session/{session_id}", response_model=Message)
def delete_session_tasks(session_id: str, session: SessionDep, current_user: CurrentUser) -> Any:
    deleted = TaskService(session).delete_session_tasks(session_id, current_user.id)
    return Message(message=f"Deleted {deleted} tasks")


@router.post("/cleanup", response_model=Message)
def cleanup_dependencies(session: SessionDep, current_user: CurrentUser) -> Any:
    """Repair dependency lists; superusers repair every user's tasks."""
    user_id = None if current_user.is_superuser else current_user.id
    fixed = TaskService(session).cleanup_malformed_dependencies(user_id)
    return Message(message=f"Cleaned dependencies on {fixed} tasks")

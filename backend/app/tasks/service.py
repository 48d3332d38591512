import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Iterable

from sqlmodel import Session, col, select

from app.models import (
    BookProgress,
    Task,
    TaskItem,
    TaskProgress,
    TaskPublic,
    get_datetime_utc,
)

logger = logging.getLogger(__name__)

TASK_STATUSES = (
    "pending",
    "in_progress",
    "completed",
    "blocked",
    "cancelled",
    "approved",
    "skipped",
)
DONE_STATUSES = frozenset({"completed", "approved"})
NO_DEPENDENCY_MARKERS = frozenset({"", "na", "n/a", "none"})


@dataclass(frozen=True)
class WorkflowStep:
    number: int
    name: str
    tool: str
    picture_only: bool = False


WORKFLOW_STEPS: tuple[WorkflowStep, ...] = (
    WorkflowStep(1, "Story Planning", "create_book_plan"),
    WorkflowStep(2, "Chapter Drafting", "draft_chapter"),
    WorkflowStep(3, "Scene Segmentation", "segment_chapter_into_scenes", picture_only=True),
    WorkflowStep(4, "Character Creation", "create_character_portraits", picture_only=True),
    WorkflowStep(5, "Environment Creation", "create_environments", picture_only=True),
    WorkflowStep(6, "Scene Creation", "create_scene_manifest", picture_only=True),
    WorkflowStep(7, "Book Completion", "complete_book"),
)


def applicable_steps(is_picture_book: bool) -> list[WorkflowStep]:
    return [step for step in WORKFLOW_STEPS if is_picture_book or not step.picture_only]


def parse_task_dependencies(value: Any) -> list[str]:
    """Normalize stored dependencies to a list of id strings.

    Accepts a list or a JSON-encoded list. Anything else (legacy free text,
    objects, numbers) is treated as having no dependencies.
    """
    if value is None:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return []
    if not isinstance(value, list):
        return []
    deps = [str(item).strip() for item in value if item is not None]
    return [d for d in deps if d.lower() not in NO_DEPENDENCY_MARKERS]


def percent(part: int, total: int) -> int:
    """Whole-number percentage, rounding halves up."""
    if not total:
        return 0
    return int(part * 100 / total + 0.5)


def get_task_progress(tasks: Iterable[Task]) -> TaskProgress:
    tasks = list(tasks)
    total = len(tasks)
    completed = sum(1 for t in tasks if t.status in DONE_STATUSES)
    in_progress = sum(1 for t in tasks if t.status == "in_progress")
    pending = sum(1 for t in tasks if t.status == "pending")
    percentage = percent(completed, total)
    return TaskProgress(
        total=total,
        completed=completed,
        in_progress=in_progress,
        pending=pending,
        percentage=percentage,
    )


def get_next_available_task(tasks: Iterable[Task]) -> Task | None:
    """First pending task whose dependencies all exist and are completed or approved."""
    tasks = list(tasks)
    by_id = {str(t.id): t for t in tasks}
    for task in tasks:
        if task.status != "pending":
            continue
        deps = parse_task_dependencies(task.dependencies)
        if all(dep in by_id and by_id[dep].status in DONE_STATUSES for dep in deps):
            return task
    return None


def are_all_tasks_completed(tasks: Iterable[Task]) -> bool:
    tasks = list(tasks)
    if not tasks:
        return False
    return all(t.status in DONE_STATUSES for t in tasks)


class TaskService:
    """Queries and mutations over the unified task table."""

    def __init__(self, session: Session):
        self.session = session

    # Book workflow tasks

    def get_workflow_tasks(self, book_id: uuid.UUID, user_id: uuid.UUID) -> list[Task]:
        statement = (
            select(Task)
            .where(
                Task.book_id == book_id,
                Task.user_id == user_id,
                Task.task_type == "workflow",
            )
            .order_by(col(Task.step_number).asc())
        )
        return list(self.session.exec(statement).all())

    def initialize_workflow_tasks(
        self,
        book_id: uuid.UUID,
        book_title: str,
        user_id: uuid.UUID,
        is_picture_book: bool = False,
    ) -> list[Task]:
        """Create the workflow checklist for a book. Steps that already exist are kept as is."""
        existing = {t.step_number: t for t in self.get_workflow_tasks(book_id, user_id)}
        previous: Task | None = None
        created = 0
        for step in applicable_steps(is_picture_book):
            task = existing.get(step.number)
            if task is None:
                task = Task(
                    title=step.name,
                    task_type="workflow",
                    book_id=book_id,
                    book_title=book_title,
                    step_number=step.number,
                    step_name=step.name,
                    tool_used=step.tool,
                    is_picture_book=is_picture_book,
                    user_id=user_id,
                    status="pending",
                    dependencies=[str(previous.id)] if previous else [],
                )
                self.session.add(task)
                created += 1
            previous = task
        if created:
            self.session.commit()
            logger.info("Initialized %s workflow steps for book %s", created, book_id)
        return self.get_workflow_tasks(book_id, user_id)

    # General (chat session) tasks

    def get_general_tasks(self, session_id: str, user_id: uuid.UUID) -> list[Task]:
        statement = (
            select(Task)
            .where(
                Task.session_id == session_id,
                Task.user_id == user_id,
                Task.task_type == "general",
            )
            .order_by(col(Task.created_at).asc())
        )
        return list(self.session.exec(statement).all())

    def create_general_tasks(
        self,
        session_id: str,
        user_id: uuid.UUID,
        items: list[TaskItem],
        *,
        book_id: uuid.UUID | None = None,
        book_title: str | None = None,
    ) -> list[Task]:
        """Upsert tasks on (session_id, title) and return the session's full task list.

        Dependencies may name another task by id or by title; references that
        resolve to neither are dropped.
        """
        current = self.get_general_tasks(session_id, user_id)
        by_title = {t.title.lower(): t for t in current}

        touched: list[tuple[Task, TaskItem]] = []
        for item in items:
            task = by_title.get(item.title.lower())
            if task is None:
                task = Task(
                    title=item.title,
                    task_type="general",
                    session_id=session_id,
                    user_id=user_id,
                    book_id=book_id,
                    book_title=book_title,
                    status="pending",
                )
                by_title[item.title.lower()] = task
            else:
                task.updated_at = get_datetime_utc()
            task.description = item.description or task.description
            task.estimated_duration = item.estimated_duration or task.estimated_duration
            touched.append((task, item))

        by_id = {str(t.id): t for t in by_title.values()}
        for task, item in touched:
            resolved: list[str] = []
            for dep in parse_task_dependencies(item.dependencies):
                target = by_id.get(dep) or by_title.get(dep.lower())
                if target is None or target is task:
                    logger.warning("Dropping unknown dependency %r on task %r", dep, task.title)
                    continue
                resolved.append(str(target.id))
            task.dependencies = resolved
            self.session.add(task)

        self.session.commit()
        return self.get_general_tasks(session_id, user_id)

    def delete_session_tasks(self, session_id: str, user_id: uuid.UUID) -> int:
        tasks = self.get_general_tasks(session_id, user_id)
        for task in tasks:
            self.session.delete(task)
        self.session.commit()
        return len(tasks)

    # Shared

    def get_task(self, task_id: uuid.UUID, user_id: uuid.UUID) -> Task | None:
        task = self.session.get(Task, task_id)
        if not task or task.user_id != user_id:
            return None
        return task

    def get_all_tasks(
        self,
        user_id: uuid.UUID,
        task_type: str | None = None,
        session_id: str | None = None,
    ) -> list[Task]:
        statement = select(Task).where(Task.user_id == user_id)
        if task_type:
            statement = statement.where(Task.task_type == task_type)
        if session_id:
            statement = statement.where(Task.session_id == session_id)
        statement = statement.order_by(col(Task.created_at).asc())
        return list(self.session.exec(statement).all())

    def update_task_status(
        self,
        task_id: uuid.UUID,
        user_id: uuid.UUID,
        status: str,
        *,
        metadata: dict[str, Any] | None = None,
        notes: str | None = None,
    ) -> Task | None:
        if status not in TASK_STATUSES:
            raise ValueError(f"Unknown task status: {status}")
        task = self.get_task(task_id, user_id)
        if not task:
            return None

        now = get_datetime_utc()
        task.status = status
        task.updated_at = now
        if status == "completed":
            task.completed_at = now
        elif status == "approved":
            task.approved_at = now
            task.completed_at = task.completed_at or now
        if metadata:
            task.task_metadata = {**(task.task_metadata or {}), **metadata}
        if notes is not None:
            task.notes = notes
        self.session.add(task)
        self.session.commit()
        self.session.refresh(task)
        logger.info("Task %s moved to %s", task_id, status)
        return task

    def cleanup_malformed_dependencies(self, user_id: uuid.UUID | None = None) -> int:
        """Rewrite dependencies that are not a list of known task ids. Returns rows fixed."""
        statement = select(Task)
        if user_id:
            statement = statement.where(Task.user_id == user_id)
        tasks = list(self.session.exec(statement).all())
        known = {str(t.id) for t in tasks}

        fixed = 0
        for task in tasks:
            raw = task.dependencies
            cleaned = [d for d in parse_task_dependencies(raw) if d in known]
            if raw != cleaned:
                task.dependencies = cleaned
                self.session.add(task)
                fixed += 1
        if fixed:
            self.session.commit()
            logger.info("Cleaned malformed dependencies on %s tasks", fixed)
        return fixed

    def get_book_progress(self, book_id: uuid.UUID, user_id: uuid.UUID) -> BookProgress:
        tasks = self.get_workflow_tasks(book_id, user_id)
        if not tasks:
            tasks = [
                t for t in self.get_all_tasks(user_id, task_type="general") if t.book_id == book_id
            ]

        total = len(tasks)
        done = sum(1 for t in tasks if t.status in DONE_STATUSES)
        approved = sum(1 for t in tasks if t.status == "approved")
        current = next((t for t in tasks if t.status in ("pending", "in_progress")), None)
        return BookProgress(
            total_steps=total,
            completed_steps=done,
            approved_steps=approved,
            current_step=(current.step_number or 1) if current else None,
            progress_percentage=percent(done, total),
            tasks=[TaskPublic.model_validate(t) for t in tasks],
        )

"""Book creation workflow as an explicit state machine.

The stage of a book is derived from its workflow task rows. A picture book moves
through every stage; a text book goes planned -> drafted -> completed. Moving to
the next stage requires the user to have approved the current stage's steps,
plus the artifacts the new stage builds on (chapters for drafting, character and
environment props for illustration).
"""
import logging
import uuid
from enum import Enum

from sqlmodel import Session

from app import crud
from app.models import Task
from app.tasks.service import DONE_STATUSES, TaskService

logger = logging.getLogger(__name__)


class WorkflowStage(str, Enum):
    NEW = "new"
    PLANNED = "planned"
    DRAFTED = "drafted"
    SEGMENTED = "segmented"
    ILLUSTRATED = "illustrated"
    COMPOSED = "composed"
    COMPLETED = "completed"


PICTURE_BOOK_STAGES = (
    WorkflowStage.NEW,
    WorkflowStage.PLANNED,
    WorkflowStage.DRAFTED,
    WorkflowStage.SEGMENTED,
    WorkflowStage.ILLUSTRATED,
    WorkflowStage.COMPOSED,
    WorkflowStage.COMPLETED,
)
TEXT_BOOK_STAGES = (
    WorkflowStage.NEW,
    WorkflowStage.PLANNED,
    WorkflowStage.DRAFTED,
    WorkflowStage.COMPLETED,
)

# Workflow step numbers whose completion reaches each stage.
STAGE_STEPS: dict[WorkflowStage, tuple[int, ...]] = {
    WorkflowStage.PLANNED: (1,),
    WorkflowStage.DRAFTED: (2,),
    WorkflowStage.SEGMENTED: (3,),
    WorkflowStage.ILLUSTRATED: (4, 5),
    WorkflowStage.COMPOSED: (6,),
    WorkflowStage.COMPLETED: (7,),
}


class WorkflowTransitionError(ValueError):
    pass


def stages_for(is_picture_book: bool) -> tuple[WorkflowStage, ...]:
    return PICTURE_BOOK_STAGES if is_picture_book else TEXT_BOOK_STAGES


def current_stage(tasks: list[Task]) -> WorkflowStage:
    """Furthest stage whose steps, and every earlier stage's steps, are done."""
    by_step = {t.step_number: t for t in tasks}
    is_picture_book = any(t.is_picture_book for t in tasks)
    reached = WorkflowStage.NEW
    for stage in stages_for(is_picture_book)[1:]:
        steps = [by_step.get(n) for n in STAGE_STEPS[stage]]
        if not all(s is not None and s.status in DONE_STATUSES for s in steps):
            break
        reached = stage
    return reached


class BookWorkflow:
    def __init__(self, session: Session, book_id: uuid.UUID, user_id: uuid.UUID):
        self.session = session
        self.book_id = book_id
        self.user_id = user_id
        self.tasks = TaskService(session)
        self._rows = self.tasks.get_workflow_tasks(book_id, user_id)

    @property
    def initialized(self) -> bool:
        return bool(self._rows)

    @property
    def is_picture_book(self) -> bool:
        return any(t.is_picture_book for t in self._rows)

    @property
    def stages(self) -> tuple[WorkflowStage, ...]:
        return stages_for(self.is_picture_book)

    @property
    def stage(self) -> WorkflowStage:
        return current_stage(self._rows)

    @property
    def next_stage(self) -> WorkflowStage | None:
        stages = self.stages
        index = stages.index(self.stage)
        return stages[index + 1] if index + 1 < len(stages) else None

    def _steps(self, stage: WorkflowStage) -> list[Task]:
        wanted = STAGE_STEPS.get(stage, ())
        return [t for t in self._rows if t.step_number in wanted]

    def transition_problems(self, target: WorkflowStage) -> list[str]:
        if not self.initialized:
            return ["Workflow has not been initialized for this book"]
        if self.next_stage is None:
            return ["Workflow is already completed"]
        if target != self.next_stage:
            return [
                f"Cannot move from {self.stage.value} to {target.value}; "
                f"next stage is {self.next_stage.value}"
            ]

        problems: list[str] = []
        unapproved = [t.title for t in self._steps(self.stage) if t.status != "approved"]
        if unapproved:
            problems.append("Awaiting user approval for: " + ", ".join(unapproved))

        if target == WorkflowStage.DRAFTED:
            if not crud.get_book_chapters(
                session=self.session, book_id=self.book_id, user_id=self.user_id
            ):
                problems.append("At least one chapter must be saved before drafting is complete")
        elif target == WorkflowStage.ILLUSTRATED:
            for prop_type in ("character", "environment"):
                if not crud.get_book_props(
                    session=self.session,
                    user_id=self.user_id,
                    book_id=self.book_id,
                    prop_type=prop_type,
                ):
                    problems.append(f"At least one {prop_type} must be created before illustration")
        return problems

    def can_advance(self, target: WorkflowStage) -> bool:
        return not self.transition_problems(target)

    def advance(self, target: WorkflowStage) -> WorkflowStage:
        problems = self.transition_problems(target)
        if problems:
            raise WorkflowTransitionError("; ".join(problems))
        for task in self._steps(target):
            if task.status not in DONE_STATUSES:
                self.tasks.update_task_status(task.id, self.user_id, "completed")
        self._rows = self.tasks.get_workflow_tasks(self.book_id, self.user_id)
        logger.info("Book %s advanced to %s", self.book_id, self.stage.value)
        return self.stage

    def approve(self) -> list[Task]:
        """Record user approval of the steps behind the current stage."""
        if self.stage == WorkflowStage.NEW:
            raise WorkflowTransitionError("Nothing to approve before the story is planned")
        approved = [
            self.tasks.update_task_status(t.id, self.user_id, "approved")
            for t in self._steps(self.stage)
            if t.status != "approved"
        ]
        self._rows = self.tasks.get_workflow_tasks(self.book_id, self.user_id)
        return [t for t in approved if t is not None]

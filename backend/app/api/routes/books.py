import uuid
from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from app import crud
from app.api.deps import CurrentUser, SessionDep
from app.models import (
    BookChapterCreate,
    BookChapterPublic,
    BookDetails,
    BookProgress,
    BookSummary,
    Message,
)
from app.tasks.service import TaskService
from app.tasks.workflow import BookWorkflow, WorkflowStage, WorkflowTransitionError

router = APIRouter(prefix="/books", tags=["books"])


class WorkflowInit(BaseModel):
    book_title: str
    is_picture_book: bool = False


class WorkflowAdvance(BaseModel):
    stage: WorkflowStage


class WorkflowState(BaseModel):
    stage: WorkflowStage
    next_stage: WorkflowStage | None = None
    stages: list[WorkflowStage]
    can_advance: bool
    problems: list[str]


def _progress(workflow: BookWorkflow) -> BookProgress:
    progress = TaskService(workflow.session).get_book_progress(workflow.book_id, workflow.user_id)
    progress.stage = workflow.stage.value if workflow.initialized else None
    return progress


@router.get("/", response_model=list[BookSummary])
def read_books(session: SessionDep, current_user: CurrentUser) -> Any:
    return crud.get_books_by_user(session=session, user_id=current_user.id)


@router.get("/{book_id}", response_model=BookDetails)
def read_book(book_id: uuid.UUID, session: SessionDep, current_user: CurrentUser) -> Any:
    details = crud.get_book_with_details(session=session, book_id=book_id, user_id=current_user.id)
    if not details:
        raise HTTPException(status_code=404, detail="Book not found")
    return details


@router.delete("/{book_id}", response_model=Message)
def delete_book(book_id: uuid.UUID, session: SessionDep, current_user: CurrentUser) -> Any:
    deleted = crud.delete_book(session=session, book_id=book_id, user_id=current_user.id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Book not found")
    return Message(message=f"Deleted book with {deleted} chapters")


# Chapters

@router.get("/{book_id}/chapters", response_model=list[BookChapterPublic])
def read_chapters(book_id: uuid.UUID, session: SessionDep, current_user: CurrentUser) -> Any:
    return crud.get_book_chapters(session=session, book_id=book_id, user_id=current_user.id)


@router.put("/{book_id}/chapters", response_model=BookChapterPublic)
def save_chapter(
    book_id: uuid.UUID,
    chapter_in: BookChapterCreate,
    session: SessionDep,
    current_user: CurrentUser,
) -> Any:
    return crud.save_book_chapter(
        session=session, book_id=book_id, user_id=current_user.id, chapter_in=chapter_in
    )


@router.get("/{book_id}/chapters/{chapter_number}", response_model=BookChapterPublic)
def read_chapter(
    book_id: uuid.UUID, chapter_number: int, session: SessionDep, current_user: CurrentUser
) -> Any:
    chapter = crud.get_book_chapter(
        session=session, book_id=book_id, chapter_number=chapter_number, user_id=current_user.id
    )
    if not chapter:
        raise HTTPException(status_code=404, detail="Chapter not found")
    return chapter


@router.delete("/{book_id}/chapters/{chapter_number}", response_model=Message)
def delete_chapter(
    book_id: uuid.UUID, chapter_number: int, session: SessionDep, current_user: CurrentUser
) -> Any:
    if not crud.delete_book_chapter(
        session=session, book_id=book_id, chapter_number=chapter_number, user_id=current_user.id
    ):
        raise HTTPException(status_code=404, detail="Chapter not found")
    return Message(message="Chapter deleted successfully")


# Workflow

@router.get("/{book_id}/progress", response_model=BookProgress)
def read_progress(book_id: uuid.UUID, session: SessionDep, current_user: CurrentUser) -> Any:
    return _progress(BookWorkflow(session, book_id, current_user.id))


@router.get("/{book_id}/workflow", response_model=WorkflowState)
def read_workflow(book_id: uuid.UUID, session: SessionDep, current_user: CurrentUser) -> Any:
    workflow = BookWorkflow(session, book_id, current_user.id)
    if not workflow.initialized:
        raise HTTPException(status_code=404, detail="Workflow not initialized")
    next_stage = workflow.next_stage
    problems = workflow.transition_problems(next_stage) if next_stage else []
    return WorkflowState(
        stage=workflow.stage,
        next_stage=next_stage,
        stages=list(workflow.stages),
        can_advance=next_stage is not None and not problems,
        problems=problems,
    )


@router.post("/{book_id}/workflow", response_model=BookProgress)
def init_workflow(
    book_id: uuid.UUID, body: WorkflowInit, session: SessionDep, current_user: CurrentUser
) -> Any:
    TaskService(session).initialize_workflow_tasks(
        book_id, body.book_title, current_user.id, is_picture_book=body.is_picture_book
    )
    return _progress(BookWorkflow(session, book_id, current_user.id))


@router.post("/{book_id}/workflow/advance", response_model=BookProgress)
def advance_workflow(
    book_id: uuid.UUID, body: WorkflowAdvance, session: SessionDep, current_user: CurrentUser
) -> Any:
    workflow = BookWorkflow(session, book_id, current_user.id)
    try:
        workflow.advance(body.stage)
    except WorkflowTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _progress(workflow)


@router.post("/{book_id}/workflow/approve", response_model=BookProgress)
def approve_workflow(book_id: uuid.UUID, session: SessionDep, current_user: CurrentUser) -> Any:
    workflow = BookWorkflow(session, book_id, current_user.id)
    try:
        workflow.approve()
    except WorkflowTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _progress(workflow)

import uuid
from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException

from app import crud
from app.api.deps import CurrentUser, SessionDep
from app.models import Document, DocumentCreate, DocumentPublic, Message, User

router = APIRouter(prefix="/documents", tags=["documents"])


def _owned_versions(session: SessionDep, id: uuid.UUID, user: User) -> list[Document]:
    versions = crud.get_document_versions(session=session, document_id=id)
    if not versions:
        raise HTTPException(status_code=404, detail="Document not found")
    if versions[0].user_id != user.id:
        raise HTTPException(status_code=403, detail="Not enough permissions")
    return versions


@router.post("/", response_model=DocumentPublic)
def create_document(
    *, session: SessionDep, current_user: CurrentUser, document_in: DocumentCreate
) -> Any:
    return crud.save_document(session=session, document_in=document_in, user_id=current_user.id)


@router.post("/{id}", response_model=DocumentPublic)
def save_document_version(
    *,
    id: uuid.UUID,
    session: SessionDep,
    current_user: CurrentUser,
    document_in: DocumentCreate,
) -> Any:
    """Store a new version under an existing document id, or start one with this id."""
    versions = crud.get_document_versions(session=session, document_id=id)
    if versions and versions[0].user_id != current_user.id:
        raise HTTPException(status_code=403, detail="Not enough permissions")
    return crud.save_document(
        session=session, document_in=document_in, user_id=current_user.id, document_id=id
    )


@router.get("/{id}", response_model=DocumentPublic)
def read_latest_document(id: uuid.UUID, session: SessionDep, current_user: CurrentUser) -> Any:
    _owned_versions(session, id, current_user)
    return crud.get_latest_document(session=session, document_id=id)


@router.get("/{id}/versions", response_model=list[DocumentPublic])
def read_document_versions(id: uuid.UUID, session: SessionDep, current_user: CurrentUser) -> Any:
    return _owned_versions(session, id, current_user)


@router.delete("/{id}", response_model=Message)
def delete_document_versions_after(
    id: uuid.UUID, timestamp: datetime, session: SessionDep, current_user: CurrentUser
) -> Any:
    """Drop every version created after `timestamp`."""
    _owned_versions(session, id, current_user)
    removed = crud.delete_documents_after(session=session, document_id=id, timestamp=timestamp)
    return Message(message=f"Deleted {removed} versions")

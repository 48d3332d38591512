import uuid
from typing import Any, Literal

from fastapi import APIRouter, HTTPException

from app import crud
from app.api.deps import CurrentUser, SessionDep
from app.models import BookProp, BookPropCreate, BookPropPublic, BookPropUpdate, Message

router = APIRouter(prefix="/book-props", tags=["book-props"])

PropType = Literal["character", "environment", "object", "illustration"]


def _owned_prop(session: SessionDep, id: uuid.UUID, user_id: uuid.UUID) -> BookProp:
    prop = session.get(BookProp, id)
    if not prop:
        raise HTTPException(status_code=404, detail="Book prop not found")
    if prop.user_id != user_id:
        raise HTTPException(status_code=403, detail="Not enough permissions")
    return prop


@router.get("/", response_model=list[BookPropPublic])
def read_props(
    session: SessionDep,
    current_user: CurrentUser,
    book_id: uuid.UUID | None = None,
    prop_type: PropType | None = None,
) -> Any:
    return crud.get_book_props(
        session=session, user_id=current_user.id, book_id=book_id, prop_type=prop_type
    )


@router.post("/", response_model=BookPropPublic)
def create_prop(prop_in: BookPropCreate, session: SessionDep, current_user: CurrentUser) -> Any:
    return crud.create_book_prop(session=session, prop_in=prop_in, user_id=current_user.id)


@router.get("/{id}", response_model=BookPropPublic)
def read_prop(id: uuid.UUID, session: SessionDep, current_user: CurrentUser) -> Any:
    return _owned_prop(session, id, current_user.id)


@router.patch("/{id}", response_model=BookPropPublic)
def update_prop(
    id: uuid.UUID, prop_in: BookPropUpdate, session: SessionDep, current_user: CurrentUser
) -> Any:
    prop = _owned_prop(session, id, current_user.id)
    return crud.update_book_prop(session=session, db_prop=prop, prop_in=prop_in)


@router.delete("/{id}", response_model=Message)
def delete_prop(id: uuid.UUID, session: SessionDep, current_user: CurrentUser) -> Any:
    prop = _owned_prop(session, id, current_user.id)
    session.delete(prop)
    session.commit()
    return Message(message="Book prop deleted successfully")

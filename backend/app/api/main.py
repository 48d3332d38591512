from fastapi import APIRouter

from app.api.routes import (
    book_props,
    books,
    chat,
    chats,
    documents,
    login,
    memory,
    realtime,
    subscription,
    tasks,
    users,
    utils,
)

api_router = APIRouter()
api_router.include_router(login.router)
api_router.include_router(users.router)
api_router.include_router(utils.router)
api_router.include_router(chat.router)
api_router.include_router(chats.router)
api_router.include_router(documents.router)
api_router.include_router(books.router)
api_router.include_router(book_props.router)
api_router.include_router(tasks.router)
api_router.include_router(memory.router)
api_router.include_router(subscription.router)
api_router.include_router(realtime.router)

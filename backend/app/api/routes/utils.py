from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from app.api.deps import SessionDep
from app.core.config import settings

router = APIRouter(prefix="/utils", tags=["utils"])


@router.get("/health-check/")
async def health_check() -> bool:
    return True


@router.get("/status")
def service_status(session: SessionDep) -> dict[str, bool]:
    """Which backing services are reachable or configured."""
    try:
        session.exec(text("SELECT 1"))  # type: ignore[call-overload]
        database = True
    except OperationalError:
        database = False
    return {
        "database": database,
        "memory": settings.memory_enabled,
        "billing": bool(settings.STRIPE_SECRET_KEY),
        "llm": bool(settings.LLM_API_KEY),
    }

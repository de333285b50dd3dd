from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import text

from db.database import get_session

router = APIRouter(tags=["health"])


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/health/db")
async def health_db(session: AsyncSession = Depends(get_session)):
    """Lightweight DB health check: runs SELECT 1."""
    try:
        await session.execute(text("SELECT 1"))
        return {"status": "ok", "db": True}
    except Exception:
        # Do not leak driver internals
        return JSONResponse(status_code=503, content={"status": "fail", "db": False})

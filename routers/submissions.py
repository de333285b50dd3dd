"""
Public endpoints: form rendering data and response submission (no auth)
"""
import json

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_session
from services.forms_service import AsyncFormsService
from services.submissions_service import SubmissionsService
from utils.limiter import RateLimitStore, forwarded_for_ip, get_rate_limit_store

router = APIRouter(tags=["public"])


@router.get("/api/public/forms/{slug}")
async def get_public_form(slug: str, session: AsyncSession = Depends(get_session)):
    """Published form definition for the public page (no secrets)"""
    return await AsyncFormsService.get_public_form(session, slug)


@router.post("/api/forms/{form_id}/responses", status_code=status.HTTP_201_CREATED)
async def submit_response(
    form_id: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
    store: RateLimitStore = Depends(get_rate_limit_store),
):
    """Record one anonymous submission; returns only the new response id"""
    raw = await request.body()
    try:
        body = json.loads(raw) if raw else None
    except ValueError:
        # Rejected as invalid values, after rate limiting and form checks
        body = None
    return await SubmissionsService.submit(session, store, form_id, forwarded_for_ip(request), body)

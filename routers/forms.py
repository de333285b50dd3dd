"""
Forms API router (owner endpoints): forms, fields, settings, responses
"""
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_session
from models.base import FieldCreate, FieldReorder, FormCreate, FormUpdate, SettingsUpdate
from services.forms_service import AsyncFormsService
from utils.auth import get_current_user
from utils.limiter import limiter

router = APIRouter(prefix="/api/forms", tags=["forms"])


async def get_owner(
    user: Dict[str, Any] = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    """Authenticated caller, with their users row created on first use."""
    await AsyncFormsService.ensure_user(session, user)
    await session.commit()
    return user


@router.get("")
async def list_forms(user=Depends(get_owner), session: AsyncSession = Depends(get_session)):
    """Get all forms for the current user"""
    return {"forms": await AsyncFormsService.list_forms(session, user["uid"])}


@router.post("", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def create_form(
    request: Request,
    payload: FormCreate,
    user=Depends(get_owner),
    session: AsyncSession = Depends(get_session),
):
    return await AsyncFormsService.create_form(session, user["uid"], payload)


@router.get("/{form_id}")
async def get_form(form_id: str, user=Depends(get_owner), session: AsyncSession = Depends(get_session)):
    return await AsyncFormsService.get_form(session, form_id, user["uid"])


@router.patch("/{form_id}")
async def update_form(
    form_id: str,
    payload: FormUpdate,
    user=Depends(get_owner),
    session: AsyncSession = Depends(get_session),
):
    return await AsyncFormsService.update_form(session, form_id, user["uid"], payload)


@router.delete("/{form_id}")
async def delete_form(form_id: str, user=Depends(get_owner), session: AsyncSession = Depends(get_session)):
    await AsyncFormsService.delete_form(session, form_id, user["uid"])
    return {"success": True}


@router.post("/{form_id}/fields", status_code=status.HTTP_201_CREATED)
async def create_field(
    form_id: str,
    payload: FieldCreate,
    user=Depends(get_owner),
    session: AsyncSession = Depends(get_session),
):
    """Add a field at the end of the form (403 once the field ceiling is reached)"""
    return await AsyncFormsService.create_field(session, form_id, user["uid"], payload)


@router.put("/{form_id}/fields")
async def reorder_fields(
    form_id: str,
    payload: FieldReorder,
    user=Depends(get_owner),
    session: AsyncSession = Depends(get_session),
):
    """Reorder fields atomically; returns the fields in their new order"""
    return await AsyncFormsService.reorder_fields(session, form_id, user["uid"], payload)


@router.delete("/{form_id}/fields/{field_id}")
async def delete_field(
    form_id: str,
    field_id: str,
    user=Depends(get_owner),
    session: AsyncSession = Depends(get_session),
):
    await AsyncFormsService.delete_field(session, form_id, user["uid"], field_id)
    return {"success": True}


@router.put("/{form_id}/settings")
async def update_settings(
    form_id: str,
    payload: SettingsUpdate,
    user=Depends(get_owner),
    session: AsyncSession = Depends(get_session),
):
    return await AsyncFormsService.update_settings(session, form_id, user["uid"], payload)


@router.get("/{form_id}/responses")
async def list_responses(form_id: str, user=Depends(get_owner), session: AsyncSession = Depends(get_session)):
    """Responses newest first, with field labels"""
    return await AsyncFormsService.list_responses(session, form_id, user["uid"])

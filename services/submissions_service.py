"""
Public submission intake.

Order of checks for ``POST /api/forms/{form_id}/responses``:
rate limit, published form, response ceiling, CAPTCHA, payload shape,
sanitization, per-field validation (field order, first failure wins).
Only then is the response persisted and the owner notified.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import ts_param
from models.base import sanitize_text
from services.captcha_service import verify_captcha_token
from services.forms_service import FORM_NOT_FOUND, AsyncFormsService, iso, utcnow
from services.notifications_service import collect_recipients, notify_recipients, send_webhook
from utils.data_normalization import normalize_db_row
from utils.encryption import decrypt_secret
from utils.errors import CaptchaFailed, CapacityExceeded, NotFound, RateLimited, ValidationFailed
from utils.limiter import SUBMIT_RATE_LIMIT, SUBMIT_RATE_WINDOW_MS, RateLimitStore

logger = logging.getLogger("backend.submissions")

MAX_RESPONSES_PER_FORM = 1000
MAX_FIELD_VALUE_LENGTH = 10000


def is_valid_email(value: str) -> bool:
    try:
        validate_email(value, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def sanitize_values(raw: Dict[str, str]) -> Dict[str, str]:
    return {key: sanitize_text(value) for key, value in raw.items()}


def validate_values(fields: List[Dict[str, Any]], values: Dict[str, str]) -> None:
    """Check values against the form's fields in order; the first failure wins."""
    for field in fields:
        value = values.get(field["id"]) or ""
        label = field.get("label")
        if field.get("required") and not value:
            raise ValidationFailed(f'Campo "{label}" é obrigatório')
        if len(value) > MAX_FIELD_VALUE_LENGTH:
            raise ValidationFailed(f'Campo "{label}" excede o tamanho máximo')
        if field.get("type") == "email" and value and not is_valid_email(value):
            raise ValidationFailed(f'Email inválido no campo "{label}"')


class SubmissionsService:
    """Service for recording public form responses"""

    @staticmethod
    def check_rate_limit(store: RateLimitStore, form_id: str, client_ip: str) -> None:
        admission = store.admit(f"submit:{form_id}:{client_ip}", SUBMIT_RATE_LIMIT, SUBMIT_RATE_WINDOW_MS)
        if not admission.allowed:
            logger.info("Submission rate limited form=%s ip=%s", form_id, client_ip)
            raise RateLimited(admission.retry_after)

    @staticmethod
    async def load_published_form(session: AsyncSession, form_id: str) -> Dict[str, Any]:
        """Published form with response count; missing and unpublished look the same."""
        result = await session.execute(
            text(
                """
                SELECT f.*, (SELECT COUNT(*) FROM responses r WHERE r.form_id = f.id) AS response_count
                FROM forms f
                WHERE f.id = :form_id
                """
            ),
            {"form_id": form_id},
        )
        row = result.mappings().first()
        form = normalize_db_row(dict(row), bool_fields=("published",)) if row else None
        if not form or not form.get("published"):
            raise NotFound(FORM_NOT_FOUND)
        return form

    @staticmethod
    async def verify_captcha(settings: Optional[Dict[str, Any]], token: Any) -> None:
        if not settings:
            return
        secret = settings.get("captcha_secret_key")
        provider = settings.get("captcha_provider")
        if not (settings.get("captcha_enabled") and secret and provider):
            return
        if not token or not isinstance(token, str):
            logger.info("CAPTCHA enabled but no token provided")
            raise CaptchaFailed("Verificação anti-spam necessária. Por favor, complete o CAPTCHA.")
        outcome = await verify_captcha_token(token, decrypt_secret(secret), provider)
        if not outcome.success:
            logger.warning("CAPTCHA verification failed provider=%s codes=%s", provider, outcome.error_codes)
            raise CaptchaFailed()

    @staticmethod
    async def persist_response(
        session: AsyncSession, form_id: str, fields: List[Dict[str, Any]], values: Dict[str, str]
    ) -> Dict[str, Any]:
        """Insert the response and its values in one transaction.

        Keys that are not fields of this form, and empty values, are dropped.
        """
        field_ids = {f["id"] for f in fields}
        response_id = str(uuid.uuid4())
        submitted_at = utcnow()
        try:
            await session.execute(
                text(
                    "INSERT INTO responses (id, form_id, submitted_at) VALUES (:id, :form_id, :submitted_at)"
                ).bindparams(ts_param("submitted_at")),
                {"id": response_id, "form_id": form_id, "submitted_at": submitted_at},
            )
            for field_id, value in values.items():
                if not value or field_id not in field_ids:
                    continue
                await session.execute(
                    text(
                        """
                        INSERT INTO field_values (id, response_id, field_id, value)
                        VALUES (:id, :response_id, :field_id, :value)
                        """
                    ),
                    {"id": str(uuid.uuid4()), "response_id": response_id, "field_id": field_id, "value": value},
                )
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        return {"id": response_id, "submitted_at": submitted_at}

    @staticmethod
    async def submit(
        session: AsyncSession,
        store: RateLimitStore,
        form_id: str,
        client_ip: str,
        body: Any,
    ) -> Dict[str, Any]:
        """
        Validate and record one public submission.

        Args:
            session: SQLAlchemy async session
            store: rate limit store (injected)
            form_id: target form id
            client_ip: resolved client address (first X-Forwarded-For entry)
            body: decoded JSON body ``{values: {fieldId: str}, captchaToken?: str}``

        Returns:
            {"success": True, "id": response_id}

        Raises:
            RateLimited, NotFound, CapacityExceeded, CaptchaFailed, ValidationFailed
        """
        SubmissionsService.check_rate_limit(store, form_id, client_ip)

        form = await SubmissionsService.load_published_form(session, form_id)
        response_count = int(form.get("response_count") or 0)
        if response_count >= MAX_RESPONSES_PER_FORM:
            raise CapacityExceeded("Este formulário atingiu o limite máximo de respostas.")

        body = body if isinstance(body, dict) else {}
        settings = await AsyncFormsService.get_settings(session, form_id)
        await SubmissionsService.verify_captcha(settings, body.get("captchaToken"))

        raw_values = body.get("values")
        if not isinstance(raw_values, dict) or not all(isinstance(v, str) for v in raw_values.values()):
            raise ValidationFailed()
        values = sanitize_values(raw_values)

        fields = [
            normalize_db_row(f, bool_fields=("required",))
            for f in await AsyncFormsService.list_field_rows(session, form_id)
        ]
        validate_values(fields, values)

        response = await SubmissionsService.persist_response(session, form_id, fields, values)
        logger.info("Response recorded form=%s response=%s", form_id, response["id"])

        await notify_recipients(collect_recipients(settings), form, response_count + 1)

        webhook_url = (settings or {}).get("webhook_url")
        if webhook_url:
            await send_webhook(
                webhook_url,
                {
                    "formId": form["id"],
                    "formName": form.get("name"),
                    "responseId": response["id"],
                    "submittedAt": iso(response["submitted_at"]),
                    "values": values,
                },
            )

        return {"success": True, "id": response["id"]}

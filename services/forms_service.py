"""
Async forms service: forms, fields, settings and response listing.

All queries are raw SQL through the async session; they run unchanged on
PostgreSQL and SQLite. Ownership is checked on every owner-facing call and a
form that is not the caller's is reported exactly like a missing one.
"""

import logging
import re
import secrets
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import ts_param
from models.base import FieldCreate, FieldReorder, FormCreate, FormUpdate, SettingsUpdate
from utils.data_normalization import dump_json_field, normalize_db_row
from utils.encryption import encrypt_secret
from utils.errors import CapacityExceeded, FeatureNotAvailable, NotFound, ValidationFailed
from utils.plans import FREE, has_feature, normalize_plan
from utils.theme import generate_theme_styles

logger = logging.getLogger("backend.forms")

MAX_FIELDS_PER_FORM = 50

FORM_NOT_FOUND = "Formulário não encontrado"

FIELD_JSON = {"options": None}
FIELD_BOOLS = ("required",)
SETTINGS_JSON = {"notify_emails": [], "theme": None}
SETTINGS_BOOLS = ("captcha_enabled", "hide_branding")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(value: Any) -> Optional[str]:
    """Timestamps come back as datetimes (asyncpg) or strings (SQLite)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def slugify_name(name: str) -> str:
    """Convert a form name to a URL-friendly slug"""
    slug = re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")
    return slug[:60].strip("-") or "formulario"


def serialize_form(row: Dict[str, Any]) -> Dict[str, Any]:
    data = normalize_db_row(row, bool_fields=("published",))
    out = {
        "id": data.get("id"),
        "name": data.get("name"),
        "description": data.get("description"),
        "slug": data.get("slug"),
        "published": data.get("published", False),
        "createdAt": iso(data.get("created_at")),
        "updatedAt": iso(data.get("updated_at")),
    }
    if "field_count" in data:
        out["fieldCount"] = int(data.get("field_count") or 0)
    if "response_count" in data:
        out["responseCount"] = int(data.get("response_count") or 0)
    return out


def serialize_field(row: Dict[str, Any]) -> Dict[str, Any]:
    data = normalize_db_row(row, json_fields=FIELD_JSON, bool_fields=FIELD_BOOLS)
    return {
        "id": data.get("id"),
        "formId": data.get("form_id"),
        "type": data.get("type"),
        "label": data.get("label"),
        "placeholder": data.get("placeholder"),
        "required": data.get("required", False),
        "order": data.get("field_order"),
        "options": data.get("options"),
        "createdAt": iso(data.get("created_at")),
    }


def normalize_settings(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    return normalize_db_row(row, json_fields=SETTINGS_JSON, bool_fields=SETTINGS_BOOLS)


def serialize_settings(settings: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Owner view of the settings; the CAPTCHA secret is never echoed back."""
    s = settings or {}
    return {
        "notifyEmail": s.get("notify_email"),
        "notifyEmails": s.get("notify_emails") or [],
        "webhookUrl": s.get("webhook_url"),
        "captchaEnabled": bool(s.get("captcha_enabled")),
        "captchaProvider": s.get("captcha_provider"),
        "captchaSiteKey": s.get("captcha_site_key"),
        "captchaSecretKeySet": bool(s.get("captcha_secret_key")),
        "theme": s.get("theme"),
        "hideBranding": bool(s.get("hide_branding")),
    }


class AsyncFormsService:
    """Async service for handling form operations"""

    @staticmethod
    async def ensure_user(session: AsyncSession, user: Dict[str, Any]) -> None:
        """Create the users row on first authenticated request (free plan)."""
        now = utcnow()
        await session.execute(
            text(
                """
                INSERT INTO users (uid, email, name, plan, created_at, updated_at)
                VALUES (:uid, :email, :name, :plan, :now, :now)
                ON CONFLICT (uid) DO NOTHING
                """
            ).bindparams(ts_param("now")),
            {"uid": user["uid"], "email": user.get("email"), "name": user.get("name"), "plan": FREE, "now": now},
        )

    @staticmethod
    async def get_user(session: AsyncSession, uid: str) -> Optional[Dict[str, Any]]:
        result = await session.execute(text("SELECT * FROM users WHERE uid = :uid"), {"uid": uid})
        row = result.mappings().first()
        return dict(row) if row else None

    @staticmethod
    async def get_user_plan(session: AsyncSession, uid: str) -> str:
        user = await AsyncFormsService.get_user(session, uid)
        return normalize_plan(user.get("plan") if user else None)

    @staticmethod
    async def get_owned_form(session: AsyncSession, form_id: str, user_id: str) -> Dict[str, Any]:
        """Form row owned by user_id, else NotFound."""
        result = await session.execute(
            text("SELECT * FROM forms WHERE id = :form_id AND user_id = :user_id"),
            {"form_id": form_id, "user_id": user_id},
        )
        row = result.mappings().first()
        if not row:
            raise NotFound(FORM_NOT_FOUND)
        return dict(row)

    @staticmethod
    async def list_forms(session: AsyncSession, user_id: str) -> List[Dict[str, Any]]:
        """Forms of a user, newest first, with field and response counts"""
        result = await session.execute(
            text(
                """
                SELECT
                    f.*,
                    (SELECT COUNT(*) FROM fields fl WHERE fl.form_id = f.id) AS field_count,
                    (SELECT COUNT(*) FROM responses r WHERE r.form_id = f.id) AS response_count
                FROM forms f
                WHERE f.user_id = :user_id
                ORDER BY f.created_at DESC
                """
            ),
            {"user_id": user_id},
        )
        return [serialize_form(dict(row)) for row in result.mappings().all()]

    @staticmethod
    async def _slug_taken(session: AsyncSession, slug: str) -> bool:
        result = await session.execute(text("SELECT 1 FROM forms WHERE slug = :slug"), {"slug": slug})
        return result.first() is not None

    @staticmethod
    async def create_form(session: AsyncSession, user_id: str, data: FormCreate) -> Dict[str, Any]:
        """Create a form (unpublished) together with its empty settings row."""
        base = slugify_name(data.name)
        slug = f"{base}-{secrets.token_hex(3)}"
        while await AsyncFormsService._slug_taken(session, slug):
            slug = f"{base}-{secrets.token_hex(3)}"

        form_id = str(uuid.uuid4())
        now = utcnow()
        await session.execute(
            text(
                """
                INSERT INTO forms (id, user_id, name, description, slug, published, created_at, updated_at)
                VALUES (:id, :user_id, :name, :description, :slug, :published, :now, :now)
                """
            ).bindparams(ts_param("now")),
            {
                "id": form_id,
                "user_id": user_id,
                "name": data.name,
                "description": data.description,
                "slug": slug,
                "published": False,
                "now": now,
            },
        )
        await session.execute(
            text(
                """
                INSERT INTO form_settings (form_id, notify_emails, captcha_enabled, hide_branding, updated_at)
                VALUES (:form_id, :notify_emails, :captcha_enabled, :hide_branding, :now)
                """
            ).bindparams(ts_param("now")),
            {
                "form_id": form_id,
                "notify_emails": dump_json_field([]),
                "captcha_enabled": False,
                "hide_branding": False,
                "now": now,
            },
        )
        await session.commit()
        logger.info("Form created id=%s user=%s slug=%s", form_id, user_id, slug)
        return serialize_form(await AsyncFormsService.get_owned_form(session, form_id, user_id))

    @staticmethod
    async def get_form(session: AsyncSession, form_id: str, user_id: str) -> Dict[str, Any]:
        """Form with ordered fields and owner-facing settings"""
        form = await AsyncFormsService.get_owned_form(session, form_id, user_id)
        out = serialize_form(form)
        out["fields"] = [serialize_field(f) for f in await AsyncFormsService.list_field_rows(session, form_id)]
        out["settings"] = serialize_settings(await AsyncFormsService.get_settings(session, form_id))
        return out

    @staticmethod
    async def update_form(session: AsyncSession, form_id: str, user_id: str, data: FormUpdate) -> Dict[str, Any]:
        await AsyncFormsService.get_owned_form(session, form_id, user_id)
        updates = data.model_dump(exclude_unset=True)
        updates = {k: v for k, v in updates.items() if not (k in ("name", "published") and v is None)}
        if updates:
            set_clause = ", ".join(f"{key} = :{key}" for key in updates)
            await session.execute(
                text(
                    f"UPDATE forms SET {set_clause}, updated_at = :now WHERE id = :form_id AND user_id = :user_id"
                ).bindparams(ts_param("now")),
                {**updates, "now": utcnow(), "form_id": form_id, "user_id": user_id},
            )
            await session.commit()
        return serialize_form(await AsyncFormsService.get_owned_form(session, form_id, user_id))

    @staticmethod
    async def delete_form(session: AsyncSession, form_id: str, user_id: str) -> None:
        """Delete a form and everything hanging off it in one transaction."""
        await AsyncFormsService.get_owned_form(session, form_id, user_id)
        params = {"form_id": form_id}
        await session.execute(
            text("DELETE FROM field_values WHERE response_id IN (SELECT id FROM responses WHERE form_id = :form_id)"),
            params,
        )
        await session.execute(text("DELETE FROM responses WHERE form_id = :form_id"), params)
        await session.execute(text("DELETE FROM fields WHERE form_id = :form_id"), params)
        await session.execute(text("DELETE FROM form_settings WHERE form_id = :form_id"), params)
        await session.execute(
            text("DELETE FROM forms WHERE id = :form_id AND user_id = :user_id"),
            {"form_id": form_id, "user_id": user_id},
        )
        await session.commit()
        logger.info("Form deleted id=%s user=%s", form_id, user_id)

    # ---------------------------------------------------------------- fields

    @staticmethod
    async def list_field_rows(session: AsyncSession, form_id: str) -> List[Dict[str, Any]]:
        result = await session.execute(
            text("SELECT * FROM fields WHERE form_id = :form_id ORDER BY field_order ASC, created_at ASC"),
            {"form_id": form_id},
        )
        return [dict(row) for row in result.mappings().all()]

    @staticmethod
    async def create_field(session: AsyncSession, form_id: str, user_id: str, data: FieldCreate) -> Dict[str, Any]:
        """Append a field at the end of the form (order = max order + 1)."""
        await AsyncFormsService.get_owned_form(session, form_id, user_id)
        result = await session.execute(
            text(
                """
                SELECT COUNT(*) AS field_count, MAX(field_order) AS max_order
                FROM fields WHERE form_id = :form_id
                """
            ),
            {"form_id": form_id},
        )
        stats = result.mappings().first()
        if int(stats["field_count"] or 0) >= MAX_FIELDS_PER_FORM:
            raise CapacityExceeded(
                f"Limite de campos atingido. Máximo de {MAX_FIELDS_PER_FORM} campos por formulário."
            )
        max_order = stats["max_order"]
        order = (int(max_order) if max_order is not None else -1) + 1

        options = None
        if data.type == "select":
            if not data.options:
                raise ValidationFailed(
                    details=[{"path": ["options"], "message": "Campos de seleção precisam de ao menos uma opção"}]
                )
            options = data.options

        field_id = str(uuid.uuid4())
        await session.execute(
            text(
                """
                INSERT INTO fields (id, form_id, type, label, placeholder, required, field_order, options, created_at)
                VALUES (:id, :form_id, :type, :label, :placeholder, :required, :field_order, :options, :now)
                """
            ).bindparams(ts_param("now")),
            {
                "id": field_id,
                "form_id": form_id,
                "type": data.type,
                "label": data.label,
                "placeholder": data.placeholder or None,
                "required": data.required,
                "field_order": order,
                "options": dump_json_field(options),
                "now": utcnow(),
            },
        )
        await session.commit()
        result = await session.execute(text("SELECT * FROM fields WHERE id = :id"), {"id": field_id})
        return serialize_field(dict(result.mappings().first()))

    @staticmethod
    async def reorder_fields(session: AsyncSession, form_id: str, user_id: str, data: FieldReorder) -> List[Dict[str, Any]]:
        """
        Apply new field orders all-or-nothing.

        Every id must belong to this form; otherwise nothing is written. The
        updates share one transaction, so a failure mid-way rolls them all back.
        """
        await AsyncFormsService.get_owned_form(session, form_id, user_id)
        known = {row["id"] for row in await AsyncFormsService.list_field_rows(session, form_id)}
        unknown = [item.id for item in data.fields if item.id not in known]
        if unknown:
            raise ValidationFailed("Campo não pertence ao formulário", details=unknown)

        try:
            for item in data.fields:
                await session.execute(
                    text("UPDATE fields SET field_order = :field_order WHERE id = :id AND form_id = :form_id"),
                    {"field_order": item.order, "id": item.id, "form_id": form_id},
                )
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        return [serialize_field(f) for f in await AsyncFormsService.list_field_rows(session, form_id)]

    @staticmethod
    async def delete_field(session: AsyncSession, form_id: str, user_id: str, field_id: str) -> None:
        await AsyncFormsService.get_owned_form(session, form_id, user_id)
        result = await session.execute(
            text("SELECT id FROM fields WHERE id = :id AND form_id = :form_id"),
            {"id": field_id, "form_id": form_id},
        )
        if result.first() is None:
            raise NotFound("Campo não encontrado")
        await session.execute(text("DELETE FROM field_values WHERE field_id = :id"), {"id": field_id})
        await session.execute(text("DELETE FROM fields WHERE id = :id"), {"id": field_id})
        await session.commit()

    # -------------------------------------------------------------- settings

    @staticmethod
    async def get_settings(session: AsyncSession, form_id: str) -> Optional[Dict[str, Any]]:
        """Settings row with JSON columns decoded; the secret stays encrypted."""
        result = await session.execute(
            text("SELECT * FROM form_settings WHERE form_id = :form_id"), {"form_id": form_id}
        )
        row = result.mappings().first()
        return normalize_settings(dict(row)) if row else None

    @staticmethod
    async def update_settings(
        session: AsyncSession, form_id: str, user_id: str, data: SettingsUpdate
    ) -> Dict[str, Any]:
        """
        Partially update form settings.

        Raises:
            FeatureNotAvailable: a free user asked for theme, branding removal or CAPTCHA
            ValidationFailed: CAPTCHA enabled without provider and keys
        """
        await AsyncFormsService.get_owned_form(session, form_id, user_id)
        plan = await AsyncFormsService.get_user_plan(session, user_id)
        changes = data.model_dump(exclude_unset=True)

        if changes.get("theme") is not None and not has_feature(plan, "customTheme"):
            raise FeatureNotAvailable("Temas personalizados estão disponíveis apenas no plano Pro")
        if changes.get("hide_branding") and not has_feature(plan, "hideBranding"):
            raise FeatureNotAvailable("Remover a marca está disponível apenas no plano Pro")
        if changes.get("captcha_enabled") and not has_feature(plan, "captcha"):
            raise FeatureNotAvailable("CAPTCHA está disponível apenas no plano Pro")

        current = await AsyncFormsService.get_settings(session, form_id) or {}
        merged = {
            "notify_email": current.get("notify_email"),
            "notify_emails": current.get("notify_emails") or [],
            "webhook_url": current.get("webhook_url"),
            "captcha_enabled": bool(current.get("captcha_enabled")),
            "captcha_provider": current.get("captcha_provider"),
            "captcha_site_key": current.get("captcha_site_key"),
            "captcha_secret_key": current.get("captcha_secret_key"),
            "theme": current.get("theme"),
            "hide_branding": bool(current.get("hide_branding")),
        }
        for key, value in changes.items():
            if key == "webhook_url" and value is not None:
                value = str(value)
            elif key == "notify_emails":
                value = [str(e) for e in (value or [])]
            elif key == "notify_email" and value is not None:
                value = str(value)
            elif key == "captcha_secret_key" and value:
                value = encrypt_secret(value)
            elif key in ("captcha_enabled", "hide_branding"):
                value = bool(value)
            elif key == "theme" and value is not None:
                value = {k: v for k, v in value.items() if v is not None}
            merged[key] = value

        if merged["captcha_enabled"] and not (
            merged["captcha_provider"] and merged["captcha_site_key"] and merged["captcha_secret_key"]
        ):
            raise ValidationFailed("Configure o provedor e as chaves do CAPTCHA para ativá-lo")

        params = dict(merged)
        params["notify_emails"] = dump_json_field(merged["notify_emails"])
        params["theme"] = dump_json_field(merged["theme"])
        params["form_id"] = form_id
        params["now"] = utcnow()
        columns = [k for k in merged]
        if current:
            set_clause = ", ".join(f"{c} = :{c}" for c in columns)
            stmt = f"UPDATE form_settings SET {set_clause}, updated_at = :now WHERE form_id = :form_id"
        else:
            stmt = (
                f"INSERT INTO form_settings (form_id, {', '.join(columns)}, updated_at) "
                f"VALUES (:form_id, {', '.join(':' + c for c in columns)}, :now)"
            )
        await session.execute(text(stmt).bindparams(ts_param("now")), params)
        await session.commit()
        logger.info("Settings updated form=%s keys=%s", form_id, sorted(changes))
        return serialize_settings(await AsyncFormsService.get_settings(session, form_id))

    # ------------------------------------------------------------- responses

    @staticmethod
    async def list_responses(session: AsyncSession, form_id: str, user_id: str) -> List[Dict[str, Any]]:
        """Responses newest first, each with its values and the field they answer"""
        await AsyncFormsService.get_owned_form(session, form_id, user_id)
        result = await session.execute(
            text("SELECT * FROM responses WHERE form_id = :form_id ORDER BY submitted_at DESC"),
            {"form_id": form_id},
        )
        responses = [dict(row) for row in result.mappings().all()]

        values_result = await session.execute(
            text(
                """
                SELECT fv.id, fv.response_id, fv.field_id, fv.value,
                       fl.label AS field_label, fl.type AS field_type
                FROM field_values fv
                JOIN responses r ON r.id = fv.response_id
                JOIN fields fl ON fl.id = fv.field_id
                WHERE r.form_id = :form_id
                ORDER BY fl.field_order ASC
                """
            ),
            {"form_id": form_id},
        )
        by_response: Dict[str, List[Dict[str, Any]]] = {}
        for row in values_result.mappings().all():
            by_response.setdefault(row["response_id"], []).append(
                {
                    "id": row["id"],
                    "fieldId": row["field_id"],
                    "value": row["value"],
                    "field": {"id": row["field_id"], "label": row["field_label"], "type": row["field_type"]},
                }
            )
        return [
            {
                "id": r["id"],
                "formId": r["form_id"],
                "submittedAt": iso(r["submitted_at"]),
                "fieldValues": by_response.get(r["id"], []),
            }
            for r in responses
        ]

    # ---------------------------------------------------------------- public

    @staticmethod
    async def get_public_form(session: AsyncSession, slug: str) -> Dict[str, Any]:
        """
        Data the public page needs to render a published form.

        Unknown and unpublished slugs both raise the same NotFound. Theme and
        branding removal are only applied when the owner is on the Pro plan.
        """
        result = await session.execute(
            text(
                """
                SELECT f.*, u.plan AS owner_plan
                FROM forms f
                LEFT JOIN users u ON u.uid = f.user_id
                WHERE f.slug = :slug
                """
            ),
            {"slug": slug},
        )
        row = result.mappings().first()
        form = normalize_db_row(dict(row), bool_fields=("published",)) if row else None
        if not form or not form.get("published"):
            raise NotFound(FORM_NOT_FOUND)

        plan = normalize_plan(form.get("owner_plan"))
        settings = await AsyncFormsService.get_settings(session, form["id"]) or {}
        fields = await AsyncFormsService.list_field_rows(session, form["id"])

        theme_styles: Dict[str, str] = {}
        if settings.get("theme") and has_feature(plan, "customTheme"):
            theme_styles = generate_theme_styles(settings["theme"])

        captcha_on = bool(
            settings.get("captcha_enabled") and settings.get("captcha_provider") and settings.get("captcha_secret_key")
        )
        return {
            "id": form["id"],
            "name": form.get("name"),
            "description": form.get("description"),
            "slug": form.get("slug"),
            "fields": [serialize_field(f) for f in fields],
            "themeStyles": theme_styles,
            "hideBranding": bool(settings.get("hide_branding")) and has_feature(plan, "hideBranding"),
            "captcha": {
                "enabled": captcha_on,
                "provider": settings.get("captcha_provider") if captcha_on else None,
                "siteKey": settings.get("captcha_site_key") if captcha_on else None,
            },
        }

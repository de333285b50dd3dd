"""
Pydantic request models for validation and sanitization
"""
from typing import ClassVar, FrozenSet, List, Literal, Optional

import bleach
from pydantic import AnyHttpUrl, BaseModel, ConfigDict, EmailStr, Field, field_validator

from utils.theme import RADIUS_MAP, is_valid_hex_color

FIELD_TYPES = ("text", "email", "textarea", "number", "select", "checkbox", "date", "phone", "url")
FieldType = Literal["text", "email", "textarea", "number", "select", "checkbox", "date", "phone", "url"]
CaptchaProvider = Literal["turnstile", "hcaptcha"]


def sanitize_text(value: str) -> str:
    """Trim and strip any HTML markup from user-supplied text."""
    return bleach.clean(value.strip(), tags=[], attributes={}, strip=True)


class BaseDBModel(BaseModel):
    """Base model with common validation and sanitization methods"""

    model_config = ConfigDict(populate_by_name=True)

    # Fields holding URLs or secrets, where HTML escaping would corrupt the value
    raw_fields: ClassVar[FrozenSet[str]] = frozenset()

    @field_validator('*', mode='before')
    @classmethod
    def sanitize_strings(cls, v, info):
        """Sanitize string inputs to prevent XSS attacks"""
        if isinstance(v, str) and info.field_name:
            if info.field_name in cls.raw_fields:
                return v.strip()
            return sanitize_text(v)
        return v


class FormCreate(BaseDBModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)


class FormUpdate(BaseDBModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    published: Optional[bool] = None


class FieldCreate(BaseDBModel):
    type: FieldType
    label: str = Field(min_length=1, max_length=500)
    placeholder: Optional[str] = Field(default=None, max_length=500)
    required: bool = False
    options: Optional[List[str]] = None

    @field_validator('options')
    @classmethod
    def clean_options(cls, v):
        """Drop blank options; option text is sanitized like any other string."""
        if v is None:
            return v
        return [sanitize_text(opt) for opt in v if isinstance(opt, str) and opt.strip()]


class FieldOrder(BaseModel):
    id: str
    order: int


class FieldReorder(BaseModel):
    fields: List[FieldOrder]


class ThemeSettings(BaseDBModel):
    primaryColor: Optional[str] = None
    backgroundColor: Optional[str] = None
    cardBackground: Optional[str] = None
    textColor: Optional[str] = None
    accentColor: Optional[str] = None
    borderRadius: Optional[str] = None

    @field_validator('primaryColor', 'backgroundColor', 'cardBackground', 'textColor', 'accentColor')
    @classmethod
    def validate_hex(cls, v):
        if v is not None and not is_valid_hex_color(v):
            raise ValueError('Cor inválida, use o formato #RRGGBB')
        return v

    @field_validator('borderRadius')
    @classmethod
    def validate_radius(cls, v):
        if v is not None and v not in RADIUS_MAP:
            raise ValueError(f'borderRadius deve ser um de: {", ".join(RADIUS_MAP)}')
        return v


class SettingsUpdate(BaseDBModel):
    """Partial update of form settings (unset keys keep their stored value)."""

    raw_fields: ClassVar[FrozenSet[str]] = frozenset({"webhook_url", "captcha_site_key", "captcha_secret_key"})

    notify_email: Optional[EmailStr] = Field(default=None, alias="notifyEmail")
    notify_emails: Optional[List[EmailStr]] = Field(default=None, alias="notifyEmails")
    webhook_url: Optional[AnyHttpUrl] = Field(default=None, alias="webhookUrl")
    captcha_enabled: Optional[bool] = Field(default=None, alias="captchaEnabled")
    captcha_provider: Optional[CaptchaProvider] = Field(default=None, alias="captchaProvider")
    captcha_site_key: Optional[str] = Field(default=None, alias="captchaSiteKey")
    captcha_secret_key: Optional[str] = Field(default=None, alias="captchaSecretKey")
    theme: Optional[ThemeSettings] = None
    hide_branding: Optional[bool] = Field(default=None, alias="hideBranding")

    @field_validator('notify_email', 'webhook_url', 'captcha_site_key', 'captcha_secret_key', mode='before')
    @classmethod
    def blank_to_none(cls, v):
        # Clearing a setting from the dashboard sends an empty string
        if isinstance(v, str) and not v.strip():
            return None
        return v


class CheckoutRequest(BaseModel):
    priceId: Optional[str] = None

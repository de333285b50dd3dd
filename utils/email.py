import os
import logging
import smtplib
import ssl
from datetime import datetime, timezone
from email.message import EmailMessage
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape, TemplateNotFound

# Resend over SMTP
EMAIL_FROM = os.getenv("EMAIL_FROM", "Submitin <no-reply@submitin.com>")
SMTP_HOST = os.getenv("SMTP_HOST", "smtp.resend.com")
SMTP_USER = os.getenv("SMTP_USER", "resend")
SMTP_TIMEOUT = 15

EMAIL_DEBUG = os.getenv("EMAIL_DEBUG", "false").lower() in ("1", "true", "yes", "on")

logger = logging.getLogger("backend.email")


class EmailNotConfigured(RuntimeError):
    pass


class EmailDeliveryError(RuntimeError):
    pass


def _elog(msg: str, *args):
    if EMAIL_DEBUG:
        logger.debug(msg, *args)


template_search_paths = [str(Path(__file__).resolve().parents[1] / "templates" / "email")]
_env_dir = os.getenv("EMAIL_TEMPLATE_DIR")
if _env_dir:
    template_search_paths.insert(0, _env_dir)

_templates_env = Environment(
    loader=FileSystemLoader(template_search_paths),
    autoescape=select_autoescape(["html", "xml"]),
)

def sanitize_url(url: Optional[str]) -> str:
    u = str(url or "").strip()
    if u.lower().startswith(("http://", "https://")):
        return u
    return ""


def render_email(template_name: str, context: dict) -> str:
    try:
        template = _templates_env.get_template(template_name)
    except TemplateNotFound:
        logger.error("Email template '%s' not found. Paths searched: %s", template_name, template_search_paths)
        raise
    safe_ctx = {"year": datetime.now(timezone.utc).year}
    safe_ctx.update(context or {})
    if "cta_url" in safe_ctx:
        safe_ctx["cta_url"] = sanitize_url(safe_ctx.get("cta_url"))
    return template.render(**safe_ctx)


def send_email_html(to_email: str, subject: str, html_body: str, from_addr: Optional[str] = None) -> None:
    """
    Send an HTML email through Resend's SMTP relay (STARTTLS, or implicit TLS on 465).

    Environment variables:
      - SMTP_HOST: SMTP server host (default: smtp.resend.com)
      - SMTP_PORT: SMTP server port (default: 587)
      - SMTP_USER: SMTP username (Resend expects 'resend')
      - RESEND_API_KEY or SMTP_PASSWORD: SMTP password
      - EMAIL_FROM: From address, "Name <addr@domain>" or bare address

    Blocking; callers on the event loop should run it in a worker thread.
    """
    try:
        port = int(os.getenv("SMTP_PORT", "587") or "587")
    except ValueError:
        port = 587
    password = os.getenv("RESEND_API_KEY") or os.getenv("SMTP_PASSWORD", "")
    from_addr_effective = (from_addr or "").strip() or EMAIL_FROM

    if not password:
        logger.error("SMTP password / RESEND_API_KEY missing; cannot send email")
        raise EmailNotConfigured("Email is not configured. Provide RESEND_API_KEY or SMTP_PASSWORD.")

    msg = EmailMessage()
    msg["From"] = from_addr_effective
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content("Este email contém conteúdo HTML. Abra-o em um cliente compatível com HTML.")
    msg.add_alternative(html_body, subtype="html")

    context = ssl.create_default_context()
    try:
        if port == 465:
            with smtplib.SMTP_SSL(SMTP_HOST, port, context=context, timeout=SMTP_TIMEOUT) as server:
                server.login(SMTP_USER, password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(SMTP_HOST, port, timeout=SMTP_TIMEOUT) as server:
                server.ehlo()
                server.starttls(context=context)
                server.ehlo()
                server.login(SMTP_USER, password)
                server.send_message(msg)
        _elog("SMTP send ok via %s:%s from=%s to=%s", SMTP_HOST, port, from_addr_effective, to_email)
    except smtplib.SMTPResponseException as e:
        err = e.smtp_error.decode("utf-8", "ignore") if isinstance(e.smtp_error, (bytes, bytearray)) else str(e.smtp_error)
        logger.warning("SMTP error %s: %s", e.smtp_code, err)
        raise EmailDeliveryError(f"SMTP error {e.smtp_code}") from e
    except (smtplib.SMTPException, OSError) as e:
        logger.warning("SMTP send failed to=%s: %s", to_email, e)
        raise EmailDeliveryError("Failed to send email via SMTP") from e

"""
Notification fan-out for new form responses.

Email notifications go to every configured recipient in parallel; each send
records its own outcome and never affects the others or the submission.
The optional outbound webhook is a single best-effort POST.
"""
import asyncio
import os
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import httpx

from utils.email import render_email, send_email_html

logger = logging.getLogger("backend.notifications")

APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")
WEBHOOK_TIMEOUT = float(os.getenv("WEBHOOK_TIMEOUT", "10"))


@dataclass
class DeliveryResult:
    email: str
    success: bool
    error: Optional[str] = None


def collect_recipients(settings: Optional[Dict[str, Any]]) -> List[str]:
    """Legacy single address first, then the list; duplicates and blanks dropped."""
    if not settings:
        return []
    recipients: List[str] = []
    candidates: List[Any] = [settings.get("notify_email")]
    candidates.extend(settings.get("notify_emails") or [])
    for email in candidates:
        if isinstance(email, str) and email.strip() and email.strip() not in recipients:
            recipients.append(email.strip())
    return recipients


def responses_url(form_id: str) -> str:
    return f"{APP_URL}/dashboard/forms/{form_id}/responses"


async def _deliver(email: str, subject: str, html: str) -> DeliveryResult:
    try:
        # smtplib blocks; a worker thread per recipient lets the sends overlap
        await asyncio.to_thread(send_email_html, email, subject, html)
        logger.info("Notification email sent to=%s", email)
        return DeliveryResult(email=email, success=True)
    except Exception as e:
        logger.warning("Notification email failed to=%s: %s", email, e)
        return DeliveryResult(email=email, success=False, error=str(e))


async def notify_recipients(
    recipients: Iterable[str],
    form: Dict[str, Any],
    response_count: int,
) -> List[DeliveryResult]:
    """Send the new-response email to every recipient; never raises."""
    recipients = list(recipients)
    if not recipients:
        logger.debug("No notification recipients for form=%s", form.get("id"))
        return []

    subject = f"Nova resposta em {form.get('name')}"
    try:
        html = render_email(
            "new_response.html",
            {
                "subject": subject,
                "form_name": form.get("name"),
                "response_count": response_count,
                "submitted_at": datetime.now(timezone.utc).strftime("%d/%m/%Y %H:%M UTC"),
                "cta_url": responses_url(form.get("id")),
            },
        )
    except Exception:
        logger.exception("Failed to render notification email for form=%s", form.get("id"))
        return [DeliveryResult(email=r, success=False, error="render failed") for r in recipients]

    results = await asyncio.gather(*(_deliver(r, subject, html) for r in recipients))
    sent = sum(1 for r in results if r.success)
    logger.info("Notification emails sent: %d/%d form=%s", sent, len(results), form.get("id"))
    return list(results)


async def send_webhook(
    url: str,
    payload: Dict[str, Any],
    client: Optional[httpx.AsyncClient] = None,
) -> bool:
    """POST the response payload to the owner's webhook; failures are only logged."""
    try:
        if client is not None:
            resp = await client.post(url, json=payload, timeout=WEBHOOK_TIMEOUT)
        else:
            async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT) as c:
                resp = await c.post(url, json=payload)
    except httpx.HTTPError as e:
        logger.warning("Webhook delivery failed url=%s: %s", url, e)
        return False
    if resp.status_code >= 400:
        logger.warning("Webhook delivery rejected url=%s status=%s", url, resp.status_code)
        return False
    logger.info("Webhook delivered url=%s status=%s", url, resp.status_code)
    return True

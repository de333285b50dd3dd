"""
CAPTCHA verification service (Cloudflare Turnstile and hCaptcha).

Both providers take a form-encoded POST of ``{secret, response}`` and answer
``{"success": bool, "error-codes": [...]}``. Verification fails closed: any
transport or decoding error counts as a failed verification.
"""
import os
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

logger = logging.getLogger("backend.captcha")

TURNSTILE_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"
HCAPTCHA_VERIFY_URL = "https://hcaptcha.com/siteverify"

VERIFY_URLS = {
    "turnstile": TURNSTILE_VERIFY_URL,
    "hcaptcha": HCAPTCHA_VERIFY_URL,
}

CAPTCHA_TIMEOUT = float(os.getenv("CAPTCHA_TIMEOUT", "10"))


@dataclass
class CaptchaVerifyResult:
    success: bool
    error_codes: List[str] = field(default_factory=list)


async def verify_captcha_token(
    token: str,
    secret_key: str,
    provider: str,
    client: Optional[httpx.AsyncClient] = None,
) -> CaptchaVerifyResult:
    """
    Verify a CAPTCHA token against the provider's siteverify endpoint.

    Args:
        token: Token produced by the widget on the public form
        secret_key: The form owner's (decrypted) provider secret
        provider: "turnstile" or "hcaptcha"
        client: Optional shared AsyncClient (tests inject a mock transport)

    Returns:
        CaptchaVerifyResult; unknown providers fail with "invalid-provider"
    """
    url = VERIFY_URLS.get(provider)
    if url is None:
        return CaptchaVerifyResult(success=False, error_codes=["invalid-provider"])

    form = {"secret": secret_key, "response": token}
    try:
        if client is not None:
            resp = await client.post(url, data=form, timeout=CAPTCHA_TIMEOUT)
        else:
            async with httpx.AsyncClient(timeout=CAPTCHA_TIMEOUT) as c:
                resp = await c.post(url, data=form)
        data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("CAPTCHA verification request failed provider=%s: %s", provider, e)
        return CaptchaVerifyResult(success=False, error_codes=["verification-failed"])

    if not isinstance(data, dict):
        return CaptchaVerifyResult(success=False, error_codes=["verification-failed"])
    codes = data.get("error-codes") or []
    return CaptchaVerifyResult(success=data.get("success") is True, error_codes=list(codes))

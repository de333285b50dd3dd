import json

import httpx
import pytest

from services.notifications_service import collect_recipients, notify_recipients, responses_url, send_webhook

FORM = {"id": "form-1", "name": "Contato"}


def test_collect_recipients_dedupes_and_keeps_order():
    settings = {
        "notify_email": "dono@example.com",
        "notify_emails": ["equipe@example.com", " dono@example.com ", "", None],
    }
    assert collect_recipients(settings) == ["dono@example.com", "equipe@example.com"]


def test_collect_recipients_without_settings():
    assert collect_recipients(None) == []
    assert collect_recipients({"notify_email": None, "notify_emails": []}) == []


def test_responses_url_points_at_dashboard():
    assert responses_url("form-1").endswith("/dashboard/forms/form-1/responses")


@pytest.mark.anyio
async def test_notify_recipients_isolates_failures(sent_emails, monkeypatch):
    delivered = []

    def _send(to_email, subject, html_body, from_addr=None):
        if to_email.startswith("broken"):
            raise OSError("connection refused")
        delivered.append((to_email, subject, html_body))

    monkeypatch.setattr("services.notifications_service.send_email_html", _send)
    results = await notify_recipients(["ok@example.com", "broken@example.com", "also@example.com"], FORM, 3)

    outcome = {r.email: r.success for r in results}
    assert outcome == {"ok@example.com": True, "broken@example.com": False, "also@example.com": True}
    assert next(r for r in results if not r.success).error == "connection refused"
    assert sorted(d[0] for d in delivered) == ["also@example.com", "ok@example.com"]
    assert delivered[0][1] == "Nova resposta em Contato"
    assert "Contato" in delivered[0][2]


@pytest.mark.anyio
async def test_notify_recipients_with_nobody(sent_emails):
    assert await notify_recipients([], FORM, 1) == []
    assert sent_emails == []


@pytest.mark.anyio
async def test_webhook_posts_json():
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["body"] = json.loads(request.content)
        return httpx.Response(200)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        ok = await send_webhook("https://hooks.example.com/in", {"formId": "form-1"}, client=client)

    assert ok is True
    assert seen == {"method": "POST", "body": {"formId": "form-1"}}


@pytest.mark.anyio
async def test_webhook_error_status_is_reported():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))) as client:
        assert await send_webhook("https://hooks.example.com/in", {}, client=client) is False


@pytest.mark.anyio
async def test_webhook_network_error_is_swallowed():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        assert await send_webhook("https://hooks.example.com/in", {}, client=client) is False

import pytest

import services.submissions_service as submissions_service
from services.captcha_service import CaptchaVerifyResult
from conftest import OWNER

pytestmark = pytest.mark.anyio

CONTACT_FIELDS = [
    {"type": "text", "label": "Nome", "required": True},
    {"type": "email", "label": "Email", "required": True},
    {"type": "textarea", "label": "Mensagem", "required": False},
]


def _values(fields, name="Ana", email="ana@example.com", message=""):
    return {fields[0]["id"]: name, fields[1]["id"]: email, fields[2]["id"]: message}


async def test_successful_submission_returns_only_id(client, make_form, db_fetch):
    form, fields = await make_form(CONTACT_FIELDS)
    resp = await client.post(f"/api/forms/{form['id']}/responses", json={"values": _values(fields, message="Oi")})
    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    assert set(body) == {"success", "id"}

    rows = await db_fetch("SELECT field_id, value FROM field_values WHERE response_id = :rid", rid=body["id"])
    assert {r["field_id"]: r["value"] for r in rows} == {
        fields[0]["id"]: "Ana",
        fields[1]["id"]: "ana@example.com",
        fields[2]["id"]: "Oi",
    }


async def test_unknown_and_unpublished_forms_look_the_same(client, make_form):
    draft, _ = await make_form(CONTACT_FIELDS, published=False)
    missing = await client.post("/api/forms/does-not-exist/responses", json={"values": {}})
    unpublished = await client.post(f"/api/forms/{draft['id']}/responses", json={"values": {}})
    assert missing.status_code == unpublished.status_code == 404
    assert missing.json() == unpublished.json() == {"error": "Formulário não encontrado"}


async def test_response_ceiling_rejects_even_valid_submissions(client, make_form, monkeypatch):
    monkeypatch.setattr(submissions_service, "MAX_RESPONSES_PER_FORM", 1)
    form, fields = await make_form(CONTACT_FIELDS)
    first = await client.post(f"/api/forms/{form['id']}/responses", json={"values": _values(fields)})
    assert first.status_code == 201
    second = await client.post(f"/api/forms/{form['id']}/responses", json={"values": _values(fields)})
    assert second.status_code == 403
    assert "limite" in second.json()["error"]


async def test_eleventh_submission_in_a_minute_is_rate_limited(client, make_form):
    form, fields = await make_form(CONTACT_FIELDS)
    headers = {"X-Forwarded-For": "198.51.100.4"}
    for _ in range(10):
        ok = await client.post(f"/api/forms/{form['id']}/responses", json={"values": _values(fields)}, headers=headers)
        assert ok.status_code == 201
    limited = await client.post(f"/api/forms/{form['id']}/responses", json={"values": _values(fields)}, headers=headers)
    assert limited.status_code == 429
    assert limited.json() == {"error": "Muitas requisições. Aguarde um momento."}
    assert 1 <= int(limited.headers["Retry-After"]) <= 60

    # Another client is unaffected
    other = await client.post(
        f"/api/forms/{form['id']}/responses",
        json={"values": _values(fields)},
        headers={"X-Forwarded-For": "198.51.100.5"},
    )
    assert other.status_code == 201


async def test_rate_limit_applies_before_form_lookup(client):
    headers = {"X-Forwarded-For": "198.51.100.9"}
    for _ in range(10):
        r = await client.post("/api/forms/ghost/responses", json={"values": {}}, headers=headers)
        assert r.status_code == 404
    r = await client.post("/api/forms/ghost/responses", json={"values": {}}, headers=headers)
    assert r.status_code == 429


async def test_required_field_empty_is_rejected_by_label(client, make_form):
    form, fields = await make_form(CONTACT_FIELDS)
    resp = await client.post(f"/api/forms/{form['id']}/responses", json={"values": _values(fields, name="  ")})
    assert resp.status_code == 400
    assert resp.json()["error"] == 'Campo "Nome" é obrigatório'


async def test_optional_field_empty_is_accepted(client, make_form):
    form, fields = await make_form(CONTACT_FIELDS)
    resp = await client.post(f"/api/forms/{form['id']}/responses", json={"values": _values(fields, message="")})
    assert resp.status_code == 201


async def test_first_failing_field_in_order_wins(client, make_form):
    form, fields = await make_form(CONTACT_FIELDS)
    resp = await client.post(
        f"/api/forms/{form['id']}/responses", json={"values": _values(fields, name="", email="not-an-email")}
    )
    assert resp.json()["error"] == 'Campo "Nome" é obrigatório'


async def test_email_field_syntax(client, make_form):
    form, fields = await make_form(CONTACT_FIELDS)
    bad = await client.post(f"/api/forms/{form['id']}/responses", json={"values": _values(fields, email="not-an-email")})
    assert bad.status_code == 400
    assert bad.json()["error"] == 'Email inválido no campo "Email"'
    good = await client.post(f"/api/forms/{form['id']}/responses", json={"values": _values(fields, email="a@b.com")})
    assert good.status_code == 201


async def test_value_over_max_length_is_rejected(client, make_form):
    form, fields = await make_form(CONTACT_FIELDS)
    long_text = "x" * (submissions_service.MAX_FIELD_VALUE_LENGTH + 1)
    resp = await client.post(f"/api/forms/{form['id']}/responses", json={"values": _values(fields, message=long_text)})
    assert resp.status_code == 400
    assert resp.json()["error"] == 'Campo "Mensagem" excede o tamanho máximo'


async def test_foreign_field_ids_are_dropped(client, make_form, db_fetch):
    form, fields = await make_form(CONTACT_FIELDS)
    _, other_fields = await make_form([{"type": "text", "label": "Outro"}], name="Outro")
    values = _values(fields)
    values["not-a-field"] = "sneaky"
    values[other_fields[0]["id"]] = "cross-form"
    resp = await client.post(f"/api/forms/{form['id']}/responses", json={"values": values})
    assert resp.status_code == 201

    rows = await db_fetch("SELECT field_id FROM field_values WHERE response_id = :rid", rid=resp.json()["id"])
    assert {r["field_id"] for r in rows} == {fields[0]["id"], fields[1]["id"]}


async def test_values_are_sanitized_before_storage(client, make_form, db_fetch):
    form, fields = await make_form(CONTACT_FIELDS)
    resp = await client.post(
        f"/api/forms/{form['id']}/responses",
        json={"values": _values(fields, name="  <script>x</script><b>Ana</b> ")},
    )
    assert resp.status_code == 201
    rows = await db_fetch("SELECT value FROM field_values WHERE field_id = :fid", fid=fields[0]["id"])
    assert "<" not in rows[0]["value"]
    assert rows[0]["value"].endswith("Ana")


async def test_links_and_formatting_tags_are_removed(client, make_form, db_fetch, monkeypatch):
    form, fields = await make_form(CONTACT_FIELDS)
    await client.put(f"/api/forms/{form['id']}/settings", json={"webhookUrl": "https://hooks.example.com/in"}, headers=OWNER)
    forwarded = []

    async def _fake_webhook(url, payload):
        forwarded.append(payload)
        return True

    monkeypatch.setattr(submissions_service, "send_webhook", _fake_webhook)
    resp = await client.post(
        f"/api/forms/{form['id']}/responses",
        json={"values": _values(fields, name=' <a href="https://spam.example">win</a><b>Ana</b> ', message="<i>Oi</i>")},
    )
    assert resp.status_code == 201

    rows = await db_fetch("SELECT field_id, value FROM field_values WHERE response_id = :rid", rid=resp.json()["id"])
    stored = {r["field_id"]: r["value"] for r in rows}
    assert stored[fields[0]["id"]] == "winAna"
    assert stored[fields[2]["id"]] == "Oi"
    assert forwarded[0]["values"][fields[0]["id"]] == "winAna"
    assert "spam.example" not in str(forwarded[0])


async def test_sanitize_values_strips_all_markup():
    assert submissions_service.sanitize_values({"f": ' <a href="https://x.example">win</a><b>Ana</b> '}) == {"f": "winAna"}


@pytest.mark.parametrize("body", [{}, {"values": "nope"}, {"values": {"a": 1}}, {"values": ["x"]}])
async def test_malformed_values_are_rejected(client, make_form, body):
    form, _ = await make_form(CONTACT_FIELDS)
    resp = await client.post(f"/api/forms/{form['id']}/responses", json=body)
    assert resp.status_code == 400
    assert resp.json() == {"error": "Dados inválidos"}


async def test_invalid_json_body_is_rejected(client, make_form):
    form, _ = await make_form(CONTACT_FIELDS)
    resp = await client.post(
        f"/api/forms/{form['id']}/responses", content=b"{not json", headers={"Content-Type": "application/json"}
    )
    assert resp.status_code == 400


async def test_notifications_go_to_unique_recipients(client, make_form, sent_emails):
    form, fields = await make_form(CONTACT_FIELDS)
    r = await client.put(
        f"/api/forms/{form['id']}/settings",
        json={"notifyEmail": "dono@example.com", "notifyEmails": ["equipe@example.com", "dono@example.com"]},
        headers=OWNER,
    )
    assert r.status_code == 200, r.text

    resp = await client.post(f"/api/forms/{form['id']}/responses", json={"values": _values(fields)})
    assert resp.status_code == 201
    assert sorted(m["to"] for m in sent_emails) == ["dono@example.com", "equipe@example.com"]
    assert all(m["subject"] == "Nova resposta em Contato" for m in sent_emails)
    assert f"/dashboard/forms/{form['id']}/responses" in sent_emails[0]["html"]


async def test_email_failures_do_not_fail_the_submission(client, make_form, monkeypatch):
    form, fields = await make_form(CONTACT_FIELDS)
    await client.put(
        f"/api/forms/{form['id']}/settings",
        json={"notifyEmails": ["a@example.com", "b@example.com"]},
        headers=OWNER,
    )
    delivered = []

    def _flaky_send(to_email, subject, html_body, from_addr=None):
        if to_email == "a@example.com":
            raise RuntimeError("smtp down")
        delivered.append(to_email)

    monkeypatch.setattr("services.notifications_service.send_email_html", _flaky_send)
    resp = await client.post(f"/api/forms/{form['id']}/responses", json={"values": _values(fields)})
    assert resp.status_code == 201
    assert delivered == ["b@example.com"]


async def test_webhook_receives_payload(client, make_form, monkeypatch):
    form, fields = await make_form(CONTACT_FIELDS)
    await client.put(f"/api/forms/{form['id']}/settings", json={"webhookUrl": "https://hooks.example.com/in"}, headers=OWNER)
    calls = []

    async def _fake_webhook(url, payload):
        calls.append((url, payload))
        return False

    monkeypatch.setattr(submissions_service, "send_webhook", _fake_webhook)
    resp = await client.post(f"/api/forms/{form['id']}/responses", json={"values": _values(fields)})
    assert resp.status_code == 201

    url, payload = calls[0]
    assert url == "https://hooks.example.com/in"
    assert payload["formId"] == form["id"]
    assert payload["formName"] == "Contato"
    assert payload["responseId"] == resp.json()["id"]
    assert payload["submittedAt"]
    assert payload["values"][fields[0]["id"]] == "Ana"


async def _enable_captcha(client, set_plan, form):
    await set_plan("owner-1", "pro")
    r = await client.put(
        f"/api/forms/{form['id']}/settings",
        json={
            "captchaEnabled": True,
            "captchaProvider": "turnstile",
            "captchaSiteKey": "site-key",
            "captchaSecretKey": "s3cret",
        },
        headers=OWNER,
    )
    assert r.status_code == 200, r.text


async def test_captcha_token_required_when_enabled(client, make_form, set_plan):
    form, fields = await make_form(CONTACT_FIELDS)
    await _enable_captcha(client, set_plan, form)
    resp = await client.post(f"/api/forms/{form['id']}/responses", json={"values": _values(fields)})
    assert resp.status_code == 400
    assert "CAPTCHA" in resp.json()["error"]


async def test_captcha_verification(client, make_form, set_plan, monkeypatch):
    form, fields = await make_form(CONTACT_FIELDS)
    await _enable_captcha(client, set_plan, form)
    seen = []

    async def _fake_verify(token, secret, provider):
        seen.append((token, secret, provider))
        return CaptchaVerifyResult(success=token == "good", error_codes=[] if token == "good" else ["invalid-input-response"])

    monkeypatch.setattr(submissions_service, "verify_captcha_token", _fake_verify)

    bad = await client.post(
        f"/api/forms/{form['id']}/responses", json={"values": _values(fields), "captchaToken": "bad"}
    )
    assert bad.status_code == 400
    assert bad.json()["error"] == "Verificação anti-spam falhou. Por favor, tente novamente."

    good = await client.post(
        f"/api/forms/{form['id']}/responses", json={"values": _values(fields), "captchaToken": "good"}
    )
    assert good.status_code == 201
    # Secret is decrypted before it is sent to the provider
    assert seen[-1] == ("good", "s3cret", "turnstile")


async def test_captcha_checked_before_values(client, make_form, set_plan):
    form, _ = await make_form(CONTACT_FIELDS)
    await _enable_captcha(client, set_plan, form)
    resp = await client.post(f"/api/forms/{form['id']}/responses", json={"values": "garbage"})
    assert resp.status_code == 400
    assert "CAPTCHA" in resp.json()["error"]

import pytest

from conftest import OWNER

pytestmark = pytest.mark.anyio

THEME = {"primaryColor": "#10b981", "textColor": "#ffffff", "borderRadius": "lg"}


async def test_free_plan_cannot_set_theme(client, make_form):
    form, _ = await make_form()
    resp = await client.put(f"/api/forms/{form['id']}/settings", json={"theme": THEME}, headers=OWNER)
    assert resp.status_code == 403
    assert "Pro" in resp.json()["error"]


@pytest.mark.parametrize(
    "body",
    [
        {"hideBranding": True},
        {"captchaEnabled": True, "captchaProvider": "turnstile", "captchaSiteKey": "k", "captchaSecretKey": "s"},
    ],
)
async def test_free_plan_pro_features_are_gated(client, make_form, body):
    form, _ = await make_form()
    resp = await client.put(f"/api/forms/{form['id']}/settings", json=body, headers=OWNER)
    assert resp.status_code == 403


async def test_free_plan_can_set_notifications_and_webhook(client, make_form):
    form, _ = await make_form()
    resp = await client.put(
        f"/api/forms/{form['id']}/settings",
        json={"notifyEmails": ["a@example.com"], "webhookUrl": "https://hooks.example.com/x"},
        headers=OWNER,
    )
    assert resp.status_code == 200
    assert resp.json()["notifyEmails"] == ["a@example.com"]
    assert resp.json()["webhookUrl"] == "https://hooks.example.com/x"


async def test_settings_merge_partially(client, make_form):
    form, _ = await make_form()
    await client.put(f"/api/forms/{form['id']}/settings", json={"notifyEmail": "a@example.com"}, headers=OWNER)
    resp = await client.put(
        f"/api/forms/{form['id']}/settings", json={"webhookUrl": "https://hooks.example.com/x"}, headers=OWNER
    )
    assert resp.json()["notifyEmail"] == "a@example.com"


async def test_blank_string_clears_a_setting(client, make_form):
    form, _ = await make_form()
    await client.put(f"/api/forms/{form['id']}/settings", json={"notifyEmail": "a@example.com"}, headers=OWNER)
    resp = await client.put(f"/api/forms/{form['id']}/settings", json={"notifyEmail": ""}, headers=OWNER)
    assert resp.json()["notifyEmail"] is None


@pytest.mark.parametrize(
    "body",
    [
        {"notifyEmails": ["not-an-email"]},
        {"webhookUrl": "ftp://example.com"},
        {"captchaProvider": "recaptcha"},
        {"theme": {"primaryColor": "green"}},
        {"theme": {"borderRadius": "huge"}},
    ],
)
async def test_invalid_settings_are_rejected(client, make_form, set_plan, body):
    await set_plan("owner-1", "pro")
    form, _ = await make_form()
    resp = await client.put(f"/api/forms/{form['id']}/settings", json=body, headers=OWNER)
    assert resp.status_code == 400
    assert resp.json()["details"]


async def test_pro_plan_theme_reaches_public_form(client, make_form, set_plan):
    await set_plan("owner-1", "pro")
    form, fields = await make_form([{"type": "text", "label": "Nome"}])
    resp = await client.put(
        f"/api/forms/{form['id']}/settings", json={"theme": THEME, "hideBranding": True}, headers=OWNER
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["theme"] == THEME

    public = (await client.get(f"/api/public/forms/{form['slug']}")).json()
    assert public["themeStyles"]["--primary"] == "160 84% 39%"
    assert public["themeStyles"]["--radius"] == "0.75rem"
    assert public["hideBranding"] is True
    assert [f["label"] for f in public["fields"]] == ["Nome"]


async def test_downgraded_owner_loses_theme_on_public_form(client, make_form, set_plan):
    await set_plan("owner-1", "pro")
    form, _ = await make_form()
    await client.put(f"/api/forms/{form['id']}/settings", json={"theme": THEME, "hideBranding": True}, headers=OWNER)
    await set_plan("owner-1", "free")

    public = (await client.get(f"/api/public/forms/{form['slug']}")).json()
    assert public["themeStyles"] == {}
    assert public["hideBranding"] is False


async def test_captcha_requires_provider_and_keys(client, make_form, set_plan):
    await set_plan("owner-1", "pro")
    form, _ = await make_form()
    resp = await client.put(
        f"/api/forms/{form['id']}/settings", json={"captchaEnabled": True, "captchaProvider": "hcaptcha"}, headers=OWNER
    )
    assert resp.status_code == 400


async def test_captcha_secret_is_encrypted_and_never_returned(client, make_form, set_plan, db_fetch):
    await set_plan("owner-1", "pro")
    form, _ = await make_form()
    resp = await client.put(
        f"/api/forms/{form['id']}/settings",
        json={
            "captchaEnabled": True,
            "captchaProvider": "hcaptcha",
            "captchaSiteKey": "site-123",
            "captchaSecretKey": "very-secret",
        },
        headers=OWNER,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["captchaSecretKeySet"] is True
    assert "very-secret" not in resp.text

    rows = await db_fetch("SELECT captcha_secret_key FROM form_settings WHERE form_id = :fid", fid=form["id"])
    stored = rows[0]["captcha_secret_key"]
    assert stored and stored != "very-secret"

    public = await client.get(f"/api/public/forms/{form['slug']}")
    assert public.json()["captcha"] == {"enabled": True, "provider": "hcaptcha", "siteKey": "site-123"}
    assert "very-secret" not in public.text
    assert stored not in public.text


async def test_public_form_hidden_until_published(client, make_form):
    form, _ = await make_form(published=False)
    resp = await client.get(f"/api/public/forms/{form['slug']}")
    assert resp.status_code == 404
    missing = await client.get("/api/public/forms/no-such-slug")
    assert missing.json() == resp.json() == {"error": "Formulário não encontrado"}


async def test_public_form_without_captcha(client, make_form):
    form, _ = await make_form()
    public = (await client.get(f"/api/public/forms/{form['slug']}")).json()
    assert public["captcha"] == {"enabled": False, "provider": None, "siteKey": None}
    assert public["themeStyles"] == {}

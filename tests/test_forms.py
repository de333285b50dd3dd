import pytest

from conftest import OTHER, OWNER

pytestmark = pytest.mark.anyio


async def test_create_form_starts_unpublished_with_slug(client):
    resp = await client.post("/api/forms", json={"name": "Pesquisa de Satisfação!"}, headers=OWNER)
    assert resp.status_code == 201
    form = resp.json()
    assert form["published"] is False
    assert form["slug"].startswith("pesquisa-de-satisfa")
    assert form["createdAt"]


async def test_create_form_requires_name(client):
    resp = await client.post("/api/forms", json={"name": ""}, headers=OWNER)
    assert resp.status_code == 400
    assert resp.json()["details"][0]["path"] == ["name"]


async def test_form_name_is_sanitized(client):
    resp = await client.post("/api/forms", json={"name": "<script>x</script>Contato"}, headers=OWNER)
    assert "<" not in resp.json()["name"]


async def test_same_name_gets_distinct_slugs(client):
    a = (await client.post("/api/forms", json={"name": "Contato"}, headers=OWNER)).json()
    b = (await client.post("/api/forms", json={"name": "Contato"}, headers=OWNER)).json()
    assert a["slug"] != b["slug"]


async def test_list_forms_is_scoped_to_owner(client, make_form):
    await make_form([{"type": "text", "label": "A"}], published=False)
    await make_form(published=False, headers=OTHER, name="Alheio")

    resp = await client.get("/api/forms", headers=OWNER)
    forms = resp.json()["forms"]
    assert [f["name"] for f in forms] == ["Contato"]
    assert forms[0]["fieldCount"] == 1
    assert forms[0]["responseCount"] == 0


async def test_update_and_publish(client, make_form):
    form, _ = await make_form(published=False)
    resp = await client.patch(
        f"/api/forms/{form['id']}", json={"name": "Novo nome", "published": True}, headers=OWNER
    )
    assert resp.status_code == 200
    assert resp.json()["name"] == "Novo nome"
    assert resp.json()["published"] is True


async def test_get_form_includes_settings_without_secret(client, make_form):
    form, _ = await make_form(published=False)
    resp = await client.get(f"/api/forms/{form['id']}", headers=OWNER)
    settings = resp.json()["settings"]
    assert settings["captchaEnabled"] is False
    assert settings["captchaSecretKeySet"] is False
    assert "captchaSecretKey" not in settings


async def test_delete_form_removes_everything(client, make_form, db_fetch):
    form, fields = await make_form([{"type": "text", "label": "Nome"}])
    sub = await client.post(f"/api/forms/{form['id']}/responses", json={"values": {fields[0]["id"]: "Ana"}})
    assert sub.status_code == 201

    resp = await client.delete(f"/api/forms/{form['id']}", headers=OWNER)
    assert resp.status_code == 200
    for table, column in (("forms", "id"), ("fields", "form_id"), ("responses", "form_id"), ("form_settings", "form_id")):
        assert await db_fetch(f"SELECT 1 FROM {table} WHERE {column} = :fid", fid=form["id"]) == []
    assert await db_fetch("SELECT 1 FROM field_values WHERE response_id = :rid", rid=sub.json()["id"]) == []


async def test_other_owner_cannot_touch_form(client, make_form):
    form, _ = await make_form(published=False)
    for method, path in (("GET", ""), ("DELETE", ""), ("GET", "/responses")):
        resp = await client.request(method, f"/api/forms/{form['id']}{path}", headers=OTHER)
        assert resp.status_code == 404


async def test_list_responses_newest_first_with_labels(client, make_form):
    form, fields = await make_form([{"type": "text", "label": "Nome"}])
    for name in ("Ana", "Bia"):
        r = await client.post(f"/api/forms/{form['id']}/responses", json={"values": {fields[0]["id"]: name}})
        assert r.status_code == 201

    resp = await client.get(f"/api/forms/{form['id']}/responses", headers=OWNER)
    assert resp.status_code == 200
    responses = resp.json()
    assert len(responses) == 2
    assert responses[0]["submittedAt"] >= responses[1]["submittedAt"]
    value = responses[0]["fieldValues"][0]
    assert value["field"] == {"id": fields[0]["id"], "label": "Nome", "type": "text"}
    assert {r["fieldValues"][0]["value"] for r in responses} == {"Ana", "Bia"}


async def test_unknown_route_uses_error_envelope(client):
    resp = await client.get("/api/nothing-here")
    assert resp.status_code == 404
    assert "error" in resp.json()

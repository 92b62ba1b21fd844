import uuid
from models import FormResponse

def _slug(prefix="form"):
    return f"{prefix}-{uuid.uuid4().hex[:8]}"

def _create(client, hdr, **extra):
    body = {"name": "Lifecycle Form", "form_type": "general", "form_url": _slug()}
    body.update(extra)
    r = client.post("/api/forms", json=body, headers=hdr)
    assert r.status_code == 201, r.text
    return r.json()

def _content(*texts):
    return {
        "sections": [{"id": "s1", "title": "Section 1", "order": 0}],
        "questions": [
            {"question_id": f"q{i}", "question_no": i, "type": "text", "question": t, "section_id": "s1"}
            for i, t in enumerate(texts, start=1)
        ],
    }

def _public(client, slug):
    return client.get(f"/api/public/forms/{slug}")

def test_create_form_starts_as_draft_with_empty_content(client, owner_hdr):
    f = _create(client, owner_hdr)
    assert f["status"] == "draft"
    assert f["content"] == {"questions": [], "sections": []}
    assert f["has_preview"] is False and f["has_published"] is False

def test_create_form_requires_name_and_kind(client, owner_hdr):
    r = client.post("/api/forms", json={"form_type": "general"}, headers=owner_hdr)
    assert r.status_code == 400 and "name" in r.json()["detail"].lower()
    r = client.post("/api/forms", json={"name": "No kind"}, headers=owner_hdr)
    assert r.status_code == 400 and "type" in r.json()["detail"].lower()
    r = client.post("/api/forms", json={"name": "Bad kind", "form_type": "quiz"}, headers=owner_hdr)
    assert r.status_code == 400

def test_create_requires_authentication(client):
    assert client.post("/api/forms", json={"name": "x", "form_type": "general"}).status_code == 401
    assert client.get("/api/forms", headers={"X-User-Id": "nobody"}).status_code == 401

def test_parents_survey_starts_with_identity_section(client, owner_hdr):
    f = _create(client, owner_hdr, form_type="parents_survey")
    sections = f["content"]["sections"]
    assert len(sections) == 1 and sections[0]["marker"] == "identity" and sections[0]["order"] == -1
    q = f["content"]["questions"][0]
    assert q["type"] == "bcInput" and q["required"] is True and q["question_no"] == 1

def test_switching_kind_adds_identity_section_once(client, owner_hdr):
    f = _create(client, owner_hdr)
    client.put(f"/api/forms/{f['id']}/content", json=_content("Q1"), headers=owner_hdr)
    r = client.put(f"/api/forms/{f['id']}", json={"form_type": "parents_survey"}, headers=owner_hdr)
    assert r.status_code == 200, r.text
    content = r.json()["content"]
    assert [s["marker"] for s in content["sections"]].count("identity") == 1
    numbers = {q["question_id"]: q["question_no"] for q in content["questions"]}
    assert numbers["q1"] == 2
    # switching again does not add a second one
    client.put(f"/api/forms/{f['id']}", json={"form_type": "general"}, headers=owner_hdr)
    r = client.put(f"/api/forms/{f['id']}", json={"form_type": "parents_survey"}, headers=owner_hdr)
    assert [s["marker"] for s in r.json()["content"]["sections"]].count("identity") == 1

def test_slug_rules(client, owner_hdr):
    taken = _create(client, owner_hdr)["form_url"]
    for slug, ok in [("api", False), ("Login", False), ("has space", False), (taken, False), (_slug(), True)]:
        j = client.get(f"/api/forms/check-url/{slug}", headers=owner_hdr).json()
        assert j["available"] is ok, slug
    r = client.post("/api/forms", json={"name": "dup", "form_type": "general", "form_url": taken}, headers=owner_hdr)
    assert r.status_code == 400 and "taken" in r.json()["detail"]
    r = client.post("/api/forms", json={"name": "res", "form_type": "general", "form_url": "preview"}, headers=owner_hdr)
    assert r.status_code == 400 and "reserved" in r.json()["detail"]

def test_save_is_owner_only_and_stores_numbers_as_given(client, owner_hdr, other_hdr):
    f = _create(client, owner_hdr)
    body = _content("A", "B")
    body["questions"][0]["question_no"] = 5
    r = client.put(f"/api/forms/{f['id']}/content", json=body, headers=other_hdr)
    assert r.status_code == 403
    r = client.put(f"/api/forms/{f['id']}/content", json=body, headers=owner_hdr)
    assert r.status_code == 200
    assert r.json()["last_saved_at"] is not None

def test_save_rejects_invalid_content(client, owner_hdr):
    f = _create(client, owner_hdr)
    body = _content("Rate us")
    body["questions"][0].update({"type": "rating", "scale": 4})
    r = client.put(f"/api/forms/{f['id']}/content", json=body, headers=owner_hdr)
    assert r.status_code == 400 and "rating scale" in r.json()["detail"]

def test_publish_without_preview_copies_working(client, owner_hdr):
    f = _create(client, owner_hdr)
    client.put(f"/api/forms/{f['id']}/content", json=_content("Working Q"), headers=owner_hdr)
    r = client.post(f"/api/forms/{f['id']}/publish", headers=owner_hdr)
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "active" and r.json()["last_published_at"]
    pub = _public(client, f["form_url"]).json()
    assert [q["question"] for q in pub["questions"]] == ["Working Q"]

def test_publish_after_preview_copies_preview_not_working(client, owner_hdr):
    f = _create(client, owner_hdr)
    client.put(f"/api/forms/{f['id']}/content", json=_content("Reviewed"), headers=owner_hdr)
    r = client.post(f"/api/forms/{f['id']}/prepare-preview", headers=owner_hdr)
    assert r.status_code == 200 and r.json()["ok"] is True
    # preview does not change status
    assert client.get(f"/api/forms/{f['id']}", headers=owner_hdr).json()["status"] == "draft"
    client.put(f"/api/forms/{f['id']}/content", json=_content("Diverged"), headers=owner_hdr)
    client.post(f"/api/forms/{f['id']}/publish", headers=owner_hdr)
    pub = _public(client, f["form_url"]).json()
    assert [q["question"] for q in pub["questions"]] == ["Reviewed"]
    # working copy is untouched by publishing
    working = client.get(f"/api/forms/{f['id']}", headers=owner_hdr).json()["content"]
    assert working["questions"][0]["question"] == "Diverged"

def test_publish_applies_basics_and_is_owner_only(client, owner_hdr, other_hdr):
    f = _create(client, owner_hdr)
    assert client.post(f"/api/forms/{f['id']}/publish", headers=other_hdr).status_code == 403
    new_slug = _slug("renamed")
    r = client.post(f"/api/forms/{f['id']}/publish", json={"name": "Renamed", "form_url": new_slug}, headers=owner_hdr)
    assert r.json()["name"] == "Renamed"
    assert _public(client, new_slug).status_code == 200

def test_settings_are_merged(client, owner_hdr):
    f = _create(client, owner_hdr, settings={"welcome_message": "Hi"})
    r = client.put(f"/api/forms/{f['id']}", json={"settings": {"live_status": "closed"}}, headers=owner_hdr)
    s = r.json()["settings"]
    assert s["welcome_message"] == "Hi" and s["live_status"] == "closed"

def test_icon_reference_stored_in_settings(client, owner_hdr):
    f = _create(client, owner_hdr)
    r = client.put(f"/api/forms/{f['id']}/icon", json={"icon_url": "/objects/uploads/abc?X-Sig=1"}, headers=owner_hdr)
    assert r.json()["icon_url"] == "/objects/uploads/abc"
    got = client.get(f"/api/forms/{f['id']}", headers=owner_hdr).json()
    assert got["settings"]["icon_url"] == "/objects/uploads/abc"

def test_list_forms_only_returns_own(client, owner_hdr, other_hdr):
    mine = _create(client, owner_hdr)
    theirs = _create(client, other_hdr)
    ids = {f["id"] for f in client.get("/api/forms", headers=owner_hdr).json()}
    assert mine["id"] in ids and theirs["id"] not in ids
    assert client.get(f"/api/forms/{theirs['id']}", headers=owner_hdr).status_code == 403

def test_delete_form_keeps_responses(client, owner_hdr, other_hdr, storage):
    f = _create(client, owner_hdr)
    client.put(f"/api/forms/{f['id']}/content", json=_content("Q"), headers=owner_hdr)
    client.post(f"/api/forms/{f['id']}/publish", headers=owner_hdr)
    resp = client.post(f"/api/forms/{f['id']}/responses", json={"responses": {"q1": "yes"}}).json()

    assert client.delete(f"/api/forms/{f['id']}", headers=other_hdr).status_code == 403
    assert client.delete(f"/api/forms/{f['id']}", headers=owner_hdr).status_code == 200
    assert client.get(f"/api/forms/{f['id']}", headers=owner_hdr).status_code == 404
    assert storage.get_snapshot(f["id"], "working") is None
    kept = storage.db.get(FormResponse, resp["id"])
    assert kept is not None and kept.form_id is None

def test_editor_routes_renumber(client, owner_hdr):
    f = _create(client, owner_hdr)
    fid = f["id"]
    r = client.post(f"/api/forms/{fid}/sections", json={"title": "Intro"}, headers=owner_hdr)
    s1 = r.json()["content"]["sections"][0]["id"]
    r = client.post(f"/api/forms/{fid}/sections", json={}, headers=owner_hdr)
    s2 = r.json()["content"]["sections"][1]["id"]
    client.post(f"/api/forms/{fid}/questions", json={"type": "text", "section_id": s2, "question": "late"}, headers=owner_hdr)
    r = client.post(f"/api/forms/{fid}/questions", json={"type": "radio", "section_id": s1, "question": "early"}, headers=owner_hdr)
    qs = {q["question"]: q for q in r.json()["content"]["questions"]}
    assert qs["early"]["question_no"] == 1 and qs["late"]["question_no"] == 2
    assert qs["early"]["options"] == ["Option 1", "Option 2"]

    r = client.post(f"/api/forms/{fid}/questions/{qs['early']['question_id']}/copy", headers=owner_hdr)
    numbers = {q["question"]: q["question_no"] for q in r.json()["content"]["questions"]}
    assert numbers == {"early": 1, "early (Copy)": 2, "late": 3}

    r = client.put(f"/api/forms/{fid}/sections/order", json={"section_ids": [s2, s1]}, headers=owner_hdr)
    numbers = {q["question"]: q["question_no"] for q in r.json()["content"]["questions"]}
    assert numbers["late"] == 1

    r = client.post(f"/api/forms/{fid}/questions/{qs['late']['question_id']}/move",
                    json={"section_id": s1, "index": 0}, headers=owner_hdr)
    numbers = {q["question"]: q["question_no"] for q in r.json()["content"]["questions"]}
    assert numbers == {"late": 1, "early": 2, "early (Copy)": 3}

    r = client.patch(f"/api/forms/{fid}/questions/{qs['late']['question_id']}",
                     json={"question": "later", "required": True}, headers=owner_hdr)
    later = next(q for q in r.json()["content"]["questions"] if q["question"] == "later")
    assert later["required"] is True

    r = client.delete(f"/api/forms/{fid}/sections/{s2}", headers=owner_hdr)
    assert r.status_code == 200
    assert client.delete(f"/api/forms/{fid}/sections/{s1}", headers=owner_hdr).status_code == 400

    r = client.delete(f"/api/forms/{fid}/questions/{qs['early']['question_id']}", headers=owner_hdr)
    numbers = sorted(q["question_no"] for q in r.json()["content"]["questions"])
    assert numbers == [1, 2]

    assert client.delete(f"/api/forms/{fid}/questions/missing", headers=owner_hdr).status_code == 404

def test_patch_with_null_fields_is_not_a_server_error(client, owner_hdr):
    f = _create(client, owner_hdr)
    client.post(f"/api/forms/{f['id']}/sections", json={"title": "S"}, headers=owner_hdr)
    r = client.post(f"/api/forms/{f['id']}/questions", json={"type": "text", "question": "Keep me"}, headers=owner_hdr)
    qid = r.json()["content"]["questions"][0]["question_id"]
    r = client.patch(f"/api/forms/{f['id']}/questions/{qid}", json={"question": None, "required": None},
                     headers=owner_hdr)
    assert r.status_code == 200, r.text
    assert r.json()["content"]["questions"][0]["question"] == "Keep me"

def test_new_question_on_parents_survey_leaves_identity_section_alone(client, owner_hdr):
    f = _create(client, owner_hdr, form_type="parents_survey")
    r = client.post(f"/api/forms/{f['id']}/questions", json={"type": "text"}, headers=owner_hdr)
    content = r.json()["content"]
    identity = next(s for s in content["sections"] if s["marker"] == "identity")
    members = [q["type"] for q in content["questions"] if q["section_id"] == identity["id"]]
    assert members == ["bcInput"]
    assert [s["title"] for s in content["sections"] if s["marker"] is None] == ["Section 1"]

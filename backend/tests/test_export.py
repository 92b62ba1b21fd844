import io, csv, uuid

def _form_with_responses(client, hdr):
    f = client.post("/api/forms", json={"name": "Export Form", "form_type": "general",
                                        "form_url": f"export-{uuid.uuid4().hex[:8]}"}, headers=hdr).json()
    content = {
        "sections": [{"id": "s", "title": "S", "order": 0}],
        "questions": [
            {"question_id": "q1", "question_no": 1, "type": "text", "question": "Name", "section_id": "s"},
            {"question_id": "q2", "question_no": 2, "type": "checkbox", "question": "Days",
             "options": ["Mon", "Tue"], "section_id": "s"},
            {"question_id": "q3", "question_no": 3, "type": "bcInput", "question": "Child", "section_id": "s"},
        ],
    }
    client.put(f"/api/forms/{f['id']}/content", json=content, headers=hdr)
    client.post(f"/api/forms/{f['id']}/publish", headers=hdr)
    client.post(f"/api/forms/{f['id']}/responses", json={
        "respondent_id": "r-1",
        "responses": {"q1": "Ann", "q2": ["Mon", "Tue"], "q3": [{"student_bc": "BC1"}, {"student_bc": "BC2"}]},
    })
    client.post(f"/api/forms/{f['id']}/responses", json={"responses": {"q1": "Ben"}})
    return f

def test_list_responses_owner_only(client, owner_hdr, other_hdr):
    f = _form_with_responses(client, owner_hdr)
    assert client.get(f"/api/forms/{f['id']}/responses", headers=other_hdr).status_code == 403
    rows = client.get(f"/api/forms/{f['id']}/responses", headers=owner_hdr).json()
    assert len(rows) == 2
    assert {r["responses"]["q1"] for r in rows} == {"Ann", "Ben"}

def test_export_csv_after_submit(client, owner_hdr, other_hdr):
    f = _form_with_responses(client, owner_hdr)
    assert client.get(f"/api/forms/{f['id']}/responses/export.csv", headers=other_hdr).status_code == 403

    r = client.get(f"/api/forms/{f['id']}/responses/export.csv", headers=owner_hdr)
    assert r.status_code == 200
    assert "text/csv" in r.headers.get("content-type", "")
    assert f["form_url"] in r.headers.get("content-disposition", "")

    reader = csv.reader(io.StringIO(r.content.decode("utf-8")))
    header = next(reader)
    # check columns
    assert header == ["response_id", "respondent_id", "submitted_at", "Q1. Name", "Q2. Days", "Q3. Child"]
    rows = {row[3]: row for row in reader}
    assert rows["Ann"][1] == "r-1"
    assert rows["Ann"][4] == "Mon; Tue"
    assert rows["Ann"][5] == "BC1; BC2"
    assert rows["Ben"][4] == "" and rows["Ben"][5] == ""

from models import EventAttendee

EVENT = {
    "title": "Sports Day",
    "event_type": "sports",
    "location": "Field",
    "capacity": 200,
    "start_date_time": "2026-05-01T08:00:00+00:00",
    "end_date_time": "2026-05-01T12:00:00+00:00",
}

def _event(client, hdr, **extra):
    r = client.post("/api/events", json=dict(EVENT, **extra), headers=hdr)
    assert r.status_code == 201, r.text
    return r.json()

def test_event_crud_is_owner_only(client, owner_hdr, other_hdr):
    e = _event(client, owner_hdr)
    assert e["status"] == "upcoming"
    assert e["id"] in {x["id"] for x in client.get("/api/events", headers=owner_hdr).json()}
    assert e["id"] not in {x["id"] for x in client.get("/api/events", headers=other_hdr).json()}

    assert client.get(f"/api/events/{e['id']}", headers=other_hdr).status_code == 403
    assert client.put(f"/api/events/{e['id']}", json={"title": "Mine now"}, headers=other_hdr).status_code == 403

    r = client.put(f"/api/events/{e['id']}", json={"status": "ongoing", "capacity": 150}, headers=owner_hdr)
    assert r.json()["status"] == "ongoing" and r.json()["capacity"] == 150

    assert client.delete(f"/api/events/{e['id']}", headers=other_hdr).status_code == 403
    assert client.delete(f"/api/events/{e['id']}", headers=owner_hdr).status_code == 200
    assert client.get(f"/api/events/{e['id']}", headers=owner_hdr).status_code == 404

def test_end_must_follow_start(client, owner_hdr):
    r = client.post("/api/events", json=dict(EVENT, end_date_time="2026-05-01T07:00:00+00:00"), headers=owner_hdr)
    assert r.status_code == 400
    e = _event(client, owner_hdr)
    r = client.put(f"/api/events/{e['id']}", json={"end_date_time": "2026-04-30T00:00:00+00:00"}, headers=owner_hdr)
    assert r.status_code == 400
    assert client.post("/api/events", json=dict(EVENT, status="postponed"), headers=owner_hdr).status_code == 422
    assert client.post("/api/events", json=dict(EVENT, capacity=-1), headers=owner_hdr).status_code == 422

def test_attendance_timestamp_follows_status(client, owner_hdr, users):
    e = _event(client, owner_hdr)
    base = f"/api/events/{e['id']}/attendees"
    r = client.post(base, json={"attendee_id": users["other"]}, headers=owner_hdr)
    assert r.status_code == 201 and r.json()["attended_at"] is None
    assert client.post(base, json={"attendee_id": users["other"]}, headers=owner_hdr).status_code == 400
    assert client.post(base, json={"attendee_id": "ghost"}, headers=owner_hdr).status_code == 404

    r = client.put(f"{base}/{users['other']}", json={"registration_status": "confirmed"}, headers=owner_hdr)
    assert r.json()["attended_at"] is None
    r = client.put(f"{base}/{users['other']}", json={"registration_status": "attended"}, headers=owner_hdr)
    stamped = r.json()["attended_at"]
    assert stamped is not None
    # staying attended keeps the first stamp
    r = client.put(f"{base}/{users['other']}", json={"registration_status": "attended"}, headers=owner_hdr)
    assert r.json()["attended_at"] == stamped
    r = client.put(f"{base}/{users['other']}", json={"registration_status": "absent"}, headers=owner_hdr)
    assert r.json()["attended_at"] is None

    assert len(client.get(base, headers=owner_hdr).json()) == 1
    assert client.delete(f"{base}/{users['other']}", headers=owner_hdr).status_code == 200
    assert client.get(base, headers=owner_hdr).json() == []

def test_deleting_event_removes_attendees(client, owner_hdr, users, storage):
    e = _event(client, owner_hdr)
    client.post(f"/api/events/{e['id']}/attendees", json={"attendee_id": users["owner"]}, headers=owner_hdr)
    client.delete(f"/api/events/{e['id']}", headers=owner_hdr)
    left = storage.db.query(EventAttendee).filter(EventAttendee.event_id == e["id"]).count()
    assert left == 0

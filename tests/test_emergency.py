import json

import httpx
from fastapi import status
from sqlalchemy import select

from main import app
from safepath import crud, models
from safepath.assistant import FirstAidAssistant, get_assistant
from safepath.auth import get_password_hash
from safepath.core import get_settings
from safepath.schemas import ContactCreate, UserCreate


def create_user(db_session, email="sos@example.com"):
    hashed = get_password_hash("secret123")
    user_in = UserCreate(
        name="Taylor Reed", email=email, password="secret123", phone="+15550006666"
    )
    return crud.create_user(db_session, user_in, hashed)


def login(client, email):
    resp = client.post(
        "/api/auth/login",
        data={"username": email, "password": "secret123"},
        headers={"content-type": "application/x-www-form-urlencoded"},
    )
    assert resp.status_code == status.HTTP_200_OK
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


def add_contact(db_session, user, name, phone, **extra):
    contact_in = ContactCreate(name=name, phone=phone, relationship="Friend", **extra)
    return crud.create_contact(db_session, contact_in, user)


def trigger(client, headers, latitude=40.0, longitude=-74.0, **extra):
    body = {"location": {"latitude": latitude, "longitude": longitude}, **extra}
    return client.post("/api/emergency/trigger", json=body, headers=headers)


def test_trigger_notifies_every_active_contact(client, db_session, notifier, bus):
    user = create_user(db_session)
    first = add_contact(db_session, user, "Ann Alpha", "+15557770001")
    second = add_contact(db_session, user, "Ben Beta", "+15557770002")
    removed = add_contact(db_session, user, "Cat Gamma", "+15557770003")
    crud.deactivate_contact(db_session, removed)
    notifier.sms.raising.add("+15557770002")
    headers = login(client, user.email)

    resp = trigger(client, headers, type="Medical", description="Chest pain")
    assert resp.status_code == status.HTTP_201_CREATED
    data = resp.json()
    assert data["success"] is True
    assert data["duplicate"] is False
    emergency = data["emergency"]
    assert emergency["contactsNotified"] == 2
    assert emergency["status"] == "Active"
    assert emergency["location"]["address"] == "40.0, -74.0"

    deliveries = {item["contactId"]: item for item in data["deliveries"]}
    assert deliveries[first.id]["status"] == "Sent"
    assert deliveries[second.id]["status"] == "Failed"
    assert deliveries[second.id]["method"] == "SMS"
    assert removed.id not in deliveries

    stored = db_session.get(models.Emergency, emergency["id"])
    assert stored.priority == "Critical"
    assert len(stored.contacts_notified) == 2

    db_session.refresh(user)
    assert user.last_location["latitude"] == 40.0

    event, payload, room = bus.events[0]
    assert event == "emergency-alert"
    assert room is None
    assert payload["userName"] == "Taylor Reed"
    assert sorted(payload["emergencyContacts"]) == sorted([first.id, second.id])


def test_trigger_and_history(client, db_session):
    user = create_user(db_session, email="history@example.com")
    add_contact(db_session, user, "Ann Alpha", "+15557770011")
    add_contact(db_session, user, "Ben Beta", "+15557770012")
    headers = login(client, user.email)

    resp = trigger(client, headers)
    assert resp.json()["emergency"]["contactsNotified"] == 2

    history = client.get("/api/emergency/history?limit=1", headers=headers)
    assert history.status_code == status.HTTP_200_OK
    data = history.json()
    assert data["pagination"] == {"current": 1, "pages": 1, "total": 1}
    item = data["emergencies"][0]
    assert item["status"] == "Active"
    assert item["priority"] == "High"
    notified = item["contactsNotified"]
    assert len(notified) == 2
    assert {entry["contact"]["name"] for entry in notified} == {"Ann Alpha", "Ben Beta"}


def test_contact_without_channels_is_recorded_failed(client, db_session):
    user = create_user(db_session, email="nochannel@example.com")
    add_contact(
        db_session,
        user,
        "Quiet Person",
        "+15557770021",
        notification_preferences={"sms": False},
    )
    headers = login(client, user.email)

    data = trigger(client, headers).json()
    assert data["emergency"]["contactsNotified"] == 1
    assert data["deliveries"][0]["status"] == "Failed"
    assert data["deliveries"][0]["channels"] == []


def test_trigger_validation_error(client, db_session):
    user = create_user(db_session, email="badloc@example.com")
    headers = login(client, user.email)
    resp = trigger(client, headers, latitude=100.0, type="Alien")
    assert resp.status_code == status.HTTP_400_BAD_REQUEST
    fields = {error["field"] for error in resp.json()["errors"]}
    assert "location.latitude" in fields
    assert "type" in fields


def test_trigger_dedup_window(client, db_session, notifier, monkeypatch):
    monkeypatch.setattr(get_settings(), "TRIGGER_DEDUP_SECONDS", 60)
    user = create_user(db_session, email="dedup@example.com")
    add_contact(db_session, user, "Ann Alpha", "+15557770031")
    headers = login(client, user.email)

    first = trigger(client, headers)
    second = trigger(client, headers)
    assert first.status_code == status.HTTP_201_CREATED
    assert second.status_code == status.HTTP_200_OK
    assert second.json()["duplicate"] is True
    assert second.json()["emergency"]["id"] == first.json()["emergency"]["id"]
    assert len(notifier.sms.sent) == 1

    other_type = trigger(client, headers, type="Fire")
    assert other_type.status_code == status.HTTP_201_CREATED


def test_status_resolved_sets_resolution(client, db_session, notifier, bus):
    user = create_user(db_session, email="resolve@example.com")
    add_contact(db_session, user, "Ann Alpha", "+15557770041")
    headers = login(client, user.email)
    emergency_id = trigger(client, headers).json()["emergency"]["id"]

    resp = client.put(
        f"/api/emergency/{emergency_id}/status",
        json={"status": "Resolved"},
        headers=headers,
    )
    assert resp.status_code == status.HTTP_200_OK
    assert resp.json()["emergency"]["resolvedAt"] is not None

    detail = client.get(f"/api/emergency/{emergency_id}", headers=headers).json()
    assert detail["emergency"]["resolvedAt"] is not None
    assert detail["emergency"]["resolvedBy"] == user.id

    assert any("has been resolved" in body for _, body in notifier.sms.sent)
    assert bus.events[-1][0] == "emergency-status-update"
    assert bus.events[-1][1]["status"] == "Resolved"


def test_active_and_false_alarm_leave_resolution_empty(client, db_session):
    user = create_user(db_session, email="falsealarm@example.com")
    headers = login(client, user.email)
    emergency_id = trigger(client, headers).json()["emergency"]["id"]

    for new_status in ("False Alarm", "Active"):
        resp = client.put(
            f"/api/emergency/{emergency_id}/status",
            json={"status": new_status},
            headers=headers,
        )
        assert resp.status_code == status.HTTP_200_OK
        assert resp.json()["emergency"]["resolvedAt"] is None

    detail = client.get(f"/api/emergency/{emergency_id}", headers=headers).json()
    assert detail["emergency"]["resolvedBy"] is None


def test_status_update_rejects_unknown_status(client, db_session):
    user = create_user(db_session, email="badstatus@example.com")
    headers = login(client, user.email)
    emergency_id = trigger(client, headers).json()["emergency"]["id"]
    resp = client.put(
        f"/api/emergency/{emergency_id}/status", json={"status": "Done"}, headers=headers
    )
    assert resp.status_code == status.HTTP_400_BAD_REQUEST


def test_other_users_emergency_is_not_found(client, db_session):
    owner = create_user(db_session, email="owner-e@example.com")
    owner_headers = login(client, owner.email)
    emergency_id = trigger(client, owner_headers).json()["emergency"]["id"]

    intruder = create_user(db_session, email="intruder-e@example.com")
    headers = login(client, intruder.email)
    assert client.get(f"/api/emergency/{emergency_id}", headers=headers).status_code == 404
    resp = client.put(
        f"/api/emergency/{emergency_id}/status",
        json={"status": "Cancelled"},
        headers=headers,
    )
    assert resp.status_code == 404


def test_location_update_is_room_scoped(client, db_session, bus):
    user = create_user(db_session, email="moving@example.com")
    headers = login(client, user.email)
    emergency_id = trigger(client, headers).json()["emergency"]["id"]

    resp = client.post(
        f"/api/emergency/{emergency_id}/location",
        json={"latitude": 40.001, "longitude": -74.002, "accuracy": 5},
        headers=headers,
    )
    assert resp.status_code == status.HTTP_200_OK
    assert resp.json()["location"]["latitude"] == 40.001

    event, payload, room = bus.events[-1]
    assert event == "location-updated"
    assert room == f"emergency-{emergency_id}"
    assert payload["location"] == {"latitude": 40.001, "longitude": -74.002, "accuracy": 5}

    detail = client.get(f"/api/emergency/{emergency_id}", headers=headers).json()
    assert detail["emergency"]["location"]["latitude"] == 40.001
    assert len(detail["emergency"]["locationHistory"]) == 1


def test_location_update_on_closed_emergency(client, db_session):
    user = create_user(db_session, email="closed@example.com")
    headers = login(client, user.email)
    emergency_id = trigger(client, headers).json()["emergency"]["id"]
    client.put(
        f"/api/emergency/{emergency_id}/status", json={"status": "Cancelled"}, headers=headers
    )

    resp = client.post(
        f"/api/emergency/{emergency_id}/location",
        json={"latitude": 1.0, "longitude": 1.0},
        headers=headers,
    )
    assert resp.status_code == status.HTTP_404_NOT_FOUND
    assert resp.json() == {"success": False, "message": "Active emergency not found"}


async def failing_emit(*args, **kwargs):
    raise RuntimeError("socket layer down")


def owned_emergencies(db_session, user):
    db_session.expire_all()
    return db_session.scalars(
        select(models.Emergency).where(models.Emergency.user_id == user.id)
    ).all()


def test_trigger_failure_keeps_emergency(client, db_session, bus, monkeypatch):
    user = create_user(db_session, email="busdown@example.com")
    add_contact(db_session, user, "Ann Alpha", "+15557770051")
    headers = login(client, user.email)
    monkeypatch.setattr(bus, "emit", failing_emit)

    resp = trigger(client, headers)
    assert resp.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert resp.json() == {"success": False, "message": "Failed to trigger emergency alert"}

    stored = owned_emergencies(db_session, user)
    assert len(stored) == 1
    assert stored[0].status == "Active"
    assert len(stored[0].contacts_notified) == 1


def test_trigger_failure_while_recording_deliveries(client, db_session, monkeypatch):
    user = create_user(db_session, email="recordfail@example.com")
    add_contact(db_session, user, "Ann Alpha", "+15557770052")
    headers = login(client, user.email)

    def broken_record(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(crud, "record_notifications", broken_record)

    resp = trigger(client, headers)
    assert resp.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert resp.json()["message"] == "Failed to trigger emergency alert"

    stored = owned_emergencies(db_session, user)
    assert len(stored) == 1
    assert stored[0].contacts_notified == []


def test_status_update_failure(client, db_session, bus, monkeypatch):
    user = create_user(db_session, email="statusfail@example.com")
    headers = login(client, user.email)
    emergency_id = trigger(client, headers).json()["emergency"]["id"]
    monkeypatch.setattr(bus, "emit", failing_emit)

    resp = client.put(
        f"/api/emergency/{emergency_id}/status",
        json={"status": "Resolved"},
        headers=headers,
    )
    assert resp.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert resp.json()["message"] == "Failed to update emergency status"
    # The status change was committed before the broadcast failed
    assert owned_emergencies(db_session, user)[0].status == "Resolved"


def test_location_update_failure(client, db_session, bus, monkeypatch):
    user = create_user(db_session, email="locfail@example.com")
    headers = login(client, user.email)
    emergency_id = trigger(client, headers).json()["emergency"]["id"]
    monkeypatch.setattr(bus, "emit", failing_emit)

    resp = client.post(
        f"/api/emergency/{emergency_id}/location",
        json={"latitude": 40.5, "longitude": -74.5},
        headers=headers,
    )
    assert resp.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert resp.json()["message"] == "Failed to update location"
    assert len(owned_emergencies(db_session, user)[0].location_history) == 1


def test_emergency_belongs_to(client, db_session):
    owner = create_user(db_session, email="belongs@example.com")
    other = create_user(db_session, email="notmine@example.com")
    emergency_id = trigger(client, login(client, owner.email)).json()["emergency"]["id"]

    assert crud.emergency_belongs_to(db_session, emergency_id, owner.id)
    assert crud.emergency_belongs_to(db_session, str(emergency_id), owner.id)
    assert not crud.emergency_belongs_to(db_session, emergency_id, other.id)
    assert not crud.emergency_belongs_to(db_session, "abc", owner.id)
    assert not crud.emergency_belongs_to(db_session, None, owner.id)


def test_notes_and_media(client, db_session):
    user = create_user(db_session, email="notes@example.com")
    headers = login(client, user.email)
    emergency_id = trigger(client, headers).json()["emergency"]["id"]

    note = client.post(
        f"/api/emergency/{emergency_id}/notes",
        json={"content": "Paramedics on the way"},
        headers=headers,
    )
    assert note.status_code == status.HTTP_201_CREATED
    assert note.json()["createdBy"] == user.id

    media = client.post(
        f"/api/emergency/{emergency_id}/media",
        data={"type": "image"},
        files={"file": ("scene.jpg", b"jpeg-bytes", "image/jpeg")},
        headers=headers,
    )
    assert media.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR

    detail = client.get(f"/api/emergency/{emergency_id}", headers=headers).json()
    assert [n["content"] for n in detail["emergency"]["notes"]] == ["Paramedics on the way"]
    assert detail["emergency"]["media"] == []


def gemini_transport(text, status_code=200):
    def handler(request):
        assert request.url.params["key"] == "test-key"
        payload = {"candidates": [{"content": {"parts": [{"text": text}]}}]}
        return httpx.Response(status_code, json=payload)

    return httpx.MockTransport(handler)


def test_ai_assist_parses_fenced_json(client, db_session):
    guidance = {
        "firstAidSteps": ["Apply pressure"],
        "safetyTips": ["Stay calm"],
        "beforeHelpArrives": ["Unlock the door"],
    }
    app.dependency_overrides[get_assistant] = lambda: FirstAidAssistant(
        "test-key", transport=gemini_transport(f"```json\n{json.dumps(guidance)}\n```")
    )
    user = create_user(db_session, email="ai@example.com")
    headers = login(client, user.email)

    resp = client.post(
        "/api/emergency/ai-assist", json={"description": "Deep cut on arm"}, headers=headers
    )
    assert resp.status_code == status.HTTP_200_OK
    assert resp.json() == {"success": True, **guidance}


def test_ai_assist_requires_description(client, db_session):
    user = create_user(db_session, email="ai-empty@example.com")
    headers = login(client, user.email)
    resp = client.post("/api/emergency/ai-assist", json={"description": "  "}, headers=headers)
    assert resp.status_code == status.HTTP_400_BAD_REQUEST
    assert resp.json() == {"success": False, "error": "Emergency description is required"}


def test_ai_assist_provider_failure(client, db_session):
    app.dependency_overrides[get_assistant] = lambda: FirstAidAssistant(
        "test-key", transport=gemini_transport("not json at all")
    )
    user = create_user(db_session, email="ai-fail@example.com")
    headers = login(client, user.email)

    resp = client.post("/api/emergency/ai-assist", json={"description": "Fire"}, headers=headers)
    assert resp.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    data = resp.json()
    assert data["success"] is False
    assert data["error"] == "Failed to get AI assistance"
    assert data["details"]

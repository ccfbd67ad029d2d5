import pytest
from fastapi import HTTPException, status

from safepath import crud
from safepath.auth import get_password_hash
from safepath.core import get_settings
from safepath.schemas import ContactCreate, UserCreate


def create_user(db_session, email="owner@example.com", password="secret123"):
    hashed = get_password_hash(password)
    user_in = UserCreate(
        name="Casey Owner", email=email, password=password, phone="+15550005555"
    )
    return crud.create_user(db_session, user_in, hashed)


def login(client, email, password="secret123"):
    response = client.post(
        "/api/auth/login",
        data={"username": email, "password": password},
        headers={"content-type": "application/x-www-form-urlencoded"},
    )
    assert response.status_code == status.HTTP_200_OK
    return response.json()["access_token"]


def new_contact(name="John Doe", phone="+15551230001", **extra):
    return {"name": name, "phone": phone, "relationship": "Friend", **extra}


def test_create_and_list_contacts(client, db_session):
    user = create_user(db_session, email="contacts@example.com")
    token = login(client, user.email)
    headers = {"Authorization": f"Bearer {token}"}

    create_resp = client.post(
        "/api/contacts",
        json=new_contact(email="John@Example.com"),
        headers=headers,
    )
    assert create_resp.status_code == status.HTTP_201_CREATED
    contact = create_resp.json()["contact"]
    assert contact["email"] == "john@example.com"
    assert contact["notificationPreferences"] == {"sms": True, "email": True, "call": False}

    list_resp = client.get("/api/contacts", headers=headers)
    assert list_resp.status_code == status.HTTP_200_OK
    assert len(list_resp.json()["contacts"]) == 1


def test_preference_defaults_follow_email_presence(client, db_session):
    user = create_user(db_session, email="prefs@example.com")
    token = login(client, user.email)
    resp = client.post(
        "/api/contacts",
        json=new_contact(notificationPreferences={"call": True}),
        headers={"Authorization": f"Bearer {token}"},
    )
    assert resp.status_code == status.HTTP_201_CREATED
    assert resp.json()["contact"]["notificationPreferences"] == {
        "sms": True,
        "email": False,
        "call": True,
    }


def test_update_merges_preferences(client, db_session):
    user = create_user(db_session, email="merge@example.com")
    token = login(client, user.email)
    headers = {"Authorization": f"Bearer {token}"}
    contact_id = client.post(
        "/api/contacts", json=new_contact(email="jo@example.com"), headers=headers
    ).json()["contact"]["id"]

    resp = client.put(
        f"/api/contacts/{contact_id}",
        json={"relationship": "Sibling", "notificationPreferences": {"sms": False}},
        headers=headers,
    )
    assert resp.status_code == status.HTTP_200_OK
    contact = resp.json()["contact"]
    assert contact["relationship"] == "Sibling"
    assert contact["notificationPreferences"] == {"sms": False, "email": True, "call": False}


def test_single_primary_contact(client, db_session):
    user = create_user(db_session, email="primary@example.com")
    token = login(client, user.email)
    headers = {"Authorization": f"Bearer {token}"}

    first = client.post(
        "/api/contacts", json=new_contact(isPrimary=True), headers=headers
    ).json()["contact"]
    second = client.post(
        "/api/contacts",
        json=new_contact(name="Jane Roe", phone="+15551230002", isPrimary=True),
        headers=headers,
    ).json()["contact"]

    contacts = client.get("/api/contacts", headers=headers).json()["contacts"]
    primaries = [c["id"] for c in contacts if c["isPrimary"]]
    assert primaries == [second["id"]]
    assert contacts[0]["id"] == second["id"]

    client.put(f"/api/contacts/{first['id']}", json={"isPrimary": True}, headers=headers)
    contacts = client.get("/api/contacts", headers=headers).json()["contacts"]
    assert [c["id"] for c in contacts if c["isPrimary"]] == [first["id"]]
    assert contacts[0]["id"] == first["id"]


def test_primary_flag_is_per_user(db_session):
    alice = create_user(db_session, email="alice@example.com")
    bob = create_user(db_session, email="bob@example.com")
    contact_in = ContactCreate(
        name="Shared Person", phone="+15551239999", relationship="Friend", is_primary=True
    )
    alice_contact = crud.create_contact(db_session, contact_in, alice)
    bob_contact = crud.create_contact(db_session, contact_in, bob)

    db_session.refresh(alice_contact)
    assert alice_contact.is_primary is True
    assert bob_contact.is_primary is True


def test_soft_delete_hides_contact(client, db_session):
    user = create_user(db_session, email="delete@example.com")
    token = login(client, user.email)
    headers = {"Authorization": f"Bearer {token}"}
    contact_id = client.post(
        "/api/contacts", json=new_contact(), headers=headers
    ).json()["contact"]["id"]

    resp = client.delete(f"/api/contacts/{contact_id}", headers=headers)
    assert resp.status_code == status.HTTP_200_OK

    assert client.get("/api/contacts", headers=headers).json()["contacts"] == []
    assert client.get(f"/api/contacts/{contact_id}", headers=headers).status_code == 404
    assert client.delete(f"/api/contacts/{contact_id}", headers=headers).status_code == 404
    assert client.post(f"/api/contacts/{contact_id}/test", headers=headers).status_code == 404

    # The row is kept and its phone number can be reused
    assert crud.get_contact(db_session, contact_id, user) is None
    again = client.post("/api/contacts", json=new_contact(), headers=headers)
    assert again.status_code == status.HTTP_201_CREATED


def test_duplicate_phone_rejected(client, db_session):
    user = create_user(db_session, email="dupphone@example.com")
    token = login(client, user.email)
    headers = {"Authorization": f"Bearer {token}"}
    client.post("/api/contacts", json=new_contact(), headers=headers)
    other_id = client.post(
        "/api/contacts", json=new_contact(name="Other One", phone="+15551230003"),
        headers=headers,
    ).json()["contact"]["id"]

    dup = client.post("/api/contacts", json=new_contact(name="Again Doe"), headers=headers)
    assert dup.status_code == status.HTTP_400_BAD_REQUEST

    dup_update = client.put(
        f"/api/contacts/{other_id}", json={"phone": "+15551230001"}, headers=headers
    )
    assert dup_update.status_code == status.HTTP_400_BAD_REQUEST


def test_contact_limit(client, db_session, monkeypatch):
    monkeypatch.setattr(get_settings(), "MAX_CONTACTS", 2)
    user = create_user(db_session, email="limit@example.com")
    token = login(client, user.email)
    headers = {"Authorization": f"Bearer {token}"}
    for index in range(2):
        resp = client.post(
            "/api/contacts",
            json=new_contact(name=f"Person {index}", phone=f"+1555123100{index}"),
            headers=headers,
        )
        assert resp.status_code == status.HTTP_201_CREATED

    over = client.post(
        "/api/contacts", json=new_contact(phone="+15551231009"), headers=headers
    )
    assert over.status_code == status.HTTP_400_BAD_REQUEST


def test_crud_limit_raises(db_session):
    user = create_user(db_session, email="crudlimit@example.com")
    crud.create_contact(
        db_session,
        ContactCreate(name="Only One", phone="+15551232000", relationship="Parent"),
        user,
        max_contacts=1,
    )
    with pytest.raises(HTTPException) as excinfo:
        crud.create_contact(
            db_session,
            ContactCreate(name="Second One", phone="+15551232001", relationship="Parent"),
            user,
            max_contacts=1,
        )
    assert excinfo.value.status_code == 400


def test_other_users_contact_is_not_found(client, db_session):
    owner = create_user(db_session, email="real-owner@example.com")
    contact = crud.create_contact(
        db_session,
        ContactCreate(name="Private Person", phone="+15551233000", relationship="Doctor"),
        owner,
    )
    intruder = create_user(db_session, email="intruder@example.com")
    token = login(client, intruder.email)
    headers = {"Authorization": f"Bearer {token}"}

    assert client.get(f"/api/contacts/{contact.id}", headers=headers).status_code == 404
    assert (
        client.put(
            f"/api/contacts/{contact.id}", json={"name": "Hijacked"}, headers=headers
        ).status_code
        == 404
    )


def test_invalid_contact_payload(client, db_session):
    user = create_user(db_session, email="invalid@example.com")
    token = login(client, user.email)
    resp = client.post(
        "/api/contacts",
        json={"name": "X", "phone": "12ab", "relationship": "Enemy"},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert resp.status_code == status.HTTP_400_BAD_REQUEST
    fields = {error["field"] for error in resp.json()["errors"]}
    assert {"name", "phone", "relationship"} <= fields


def test_test_notification_success(client, db_session, notifier):
    user = create_user(db_session, email="tester@example.com")
    token = login(client, user.email)
    headers = {"Authorization": f"Bearer {token}"}
    contact_id = client.post(
        "/api/contacts", json=new_contact(email="jd@example.com"), headers=headers
    ).json()["contact"]["id"]

    resp = client.post(f"/api/contacts/{contact_id}/test", headers=headers)
    assert resp.status_code == status.HTTP_200_OK
    data = resp.json()
    assert data["success"] is True
    assert [channel["method"] for channel in data["channels"]] == ["SMS", "Email"]
    assert "Casey Owner" in notifier.sms.sent[0][1]
    assert notifier.email.sent[0][0] == "jd@example.com"


def test_test_notification_failure_is_500(client, db_session, notifier):
    user = create_user(db_session, email="failing@example.com")
    token = login(client, user.email)
    headers = {"Authorization": f"Bearer {token}"}
    contact_id = client.post(
        "/api/contacts", json=new_contact(), headers=headers
    ).json()["contact"]["id"]
    notifier.sms.failing.add("+15551230001")

    resp = client.post(f"/api/contacts/{contact_id}/test", headers=headers)
    assert resp.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    data = resp.json()
    assert data["success"] is False
    assert data["channels"] == [
        {"method": "SMS", "success": False, "messageId": None, "error": "Invalid number"}
    ]

from datetime import datetime, timedelta

import pytest

from rangleela.accounts import register_failed_login


def register(client, email="new@rangleela.test", password="s3cret-pass", name="Meera"):
    return client.post(
        "/api/auth/register",
        json={"email": email, "password": password, "name": name},
    )


def sent_code(notifier):
    template_name, _, data = notifier.sent[-1]
    assert template_name == "verification-code"
    return data["code"]


def test_register_then_verify_creates_user(client, notifier, db):
    response = register(client, email="New@RangLeela.test")
    assert response.status_code == 201
    body = response.get_json()
    assert body["email"] == "new@rangleela.test"
    assert body["requires_verification"] is True
    assert db.users.count_documents({}) == 0

    code = sent_code(notifier)
    response = client.post(
        "/api/auth/verify", json={"email": "new@rangleela.test", "code": code}
    )
    assert response.status_code == 201
    body = response.get_json()
    assert body["access_token"]
    assert body["user"]["email"] == "new@rangleela.test"
    assert body["user"]["isVerified"] is True
    assert notifier.templates() == ["verification-code", "welcome"]
    assert db.email_verifications.count_documents({}) == 0
    assert any(
        cookie.startswith("authToken=") for cookie in response.headers.getlist("Set-Cookie")
    )


def test_register_rejects_existing_email(client, buyer):
    response = register(client, email=buyer["email"])
    assert response.status_code == 400
    assert response.get_json()["message"] == "User already exists with this email"


def test_register_validates_fields(client):
    response = register(client, email="not-an-email", password="short", name="M")
    assert response.status_code == 400
    fields = {error["field"] for error in response.get_json()["errors"]}
    assert fields == {"email", "password", "name"}


def test_register_reports_email_failure(client, notifier, db):
    notifier.fail = True
    response = register(client)
    assert response.status_code == 502
    assert db.email_verifications.count_documents({}) == 0


def test_verify_rejects_wrong_and_expired_codes(client, notifier, db):
    register(client)
    code = sent_code(notifier)
    wrong = "000000" if code != "000000" else "111111"

    response = client.post(
        "/api/auth/verify", json={"email": "new@rangleela.test", "code": wrong}
    )
    assert response.status_code == 400
    assert response.get_json()["message"] == "Invalid verification code"

    db.email_verifications.update_one(
        {"email": "new@rangleela.test"},
        {"$set": {"expires_at": datetime.utcnow() - timedelta(minutes=1)}},
    )
    response = client.post(
        "/api/auth/verify", json={"email": "new@rangleela.test", "code": code}
    )
    assert response.status_code == 400
    assert response.get_json()["message"] == "Verification code has expired"


def test_resend_verification_issues_new_code(client, notifier, db):
    register(client)
    response = client.post(
        "/api/auth/resend-verification", json={"email": "new@rangleela.test"}
    )
    assert response.status_code == 200
    assert notifier.templates() == ["verification-code", "verification-code"]

    pending = db.email_verifications.find_one({"email": "new@rangleela.test"})
    assert pending["password_hash"]
    assert pending["name"] == "Meera"

    response = client.post(
        "/api/auth/resend-verification", json={"email": "nobody@rangleela.test"}
    )
    assert response.status_code == 404


def test_login_success(client, buyer, db):
    response = client.post(
        "/api/auth/login", json={"email": buyer["email"], "password": "correct-horse"}
    )
    assert response.status_code == 200
    body = response.get_json()
    assert body["user"]["id"] == str(buyer["_id"])
    assert body["user"]["isAdmin"] is False
    assert db.users.find_one({"_id": buyer["_id"]})["last_login_at"] is not None


def test_login_locks_after_repeated_failures(client, buyer, db):
    for _ in range(5):
        response = client.post(
            "/api/auth/login", json={"email": buyer["email"], "password": "wrong-password"}
        )
        assert response.status_code == 401

    response = client.post(
        "/api/auth/login", json={"email": buyer["email"], "password": "correct-horse"}
    )
    assert response.status_code == 423
    assert db.users.find_one({"_id": buyer["_id"]})["lock_until"] > datetime.utcnow()


def test_login_requires_verified_email(client, make_user):
    user = make_user(email="pending@rangleela.test", is_verified=False)
    response = client.post(
        "/api/auth/login", json={"email": user["email"], "password": "correct-horse"}
    )
    assert response.status_code == 401
    assert response.get_json()["needs_verification"] is True


def test_profile_requires_token(client):
    response = client.get("/api/auth/profile")
    assert response.status_code == 401
    assert response.get_json() == {"message": "Access token required"}


def test_profile_read_and_update(client, buyer, auth_headers):
    headers = auth_headers(buyer)
    response = client.get("/api/auth/profile", headers=headers)
    assert response.status_code == 200
    assert response.get_json()["user"]["email"] == buyer["email"]

    response = client.put(
        "/api/auth/profile",
        headers=headers,
        json={"name": "Asha Rao", "avatar": "https://img.example.com/a.png"},
    )
    assert response.status_code == 200
    assert response.get_json()["user"]["name"] == "Asha Rao"
    assert response.get_json()["user"]["avatar"] == "https://img.example.com/a.png"

    response = client.put(
        "/api/auth/profile", headers=headers, json={"name": "Asha", "avatar": "ftp://x"}
    )
    assert response.status_code == 400


@pytest.mark.parametrize(
    "current, status, message",
    [
        ("wrong-password", 400, "Current password is incorrect"),
        ("correct-horse", 200, "Password changed successfully"),
    ],
)
def test_change_password(client, buyer, auth_headers, current, status, message):
    response = client.put(
        "/api/auth/change-password",
        headers=auth_headers(buyer),
        json={"currentPassword": current, "newPassword": "brand-new-pass"},
    )
    assert response.status_code == status
    assert response.get_json()["message"] == message


def test_admin_flag_comes_from_allow_list(client, admin, auth_headers):
    response = client.get("/api/auth/profile", headers=auth_headers(admin))
    assert response.get_json()["user"]["isAdmin"] is True


def test_logout_clears_cookie(client):
    response = client.post("/api/auth/logout")
    assert response.status_code == 200
    assert any(
        cookie.startswith("authToken=;") for cookie in response.headers.getlist("Set-Cookie")
    )


def test_parallel_failed_logins_are_all_counted(db, buyer):
    stale = db.users.find_one({"_id": buyer["_id"]})

    register_failed_login(db, stale)
    register_failed_login(db, stale)
    assert db.users.find_one({"_id": buyer["_id"]})["login_attempts"] == 2

    for _ in range(3):
        register_failed_login(db, stale)
    locked = db.users.find_one({"_id": buyer["_id"]})
    assert locked["login_attempts"] == 5
    assert locked["lock_until"] > datetime.utcnow()


def test_failed_login_after_expired_lock_starts_over(db, make_user):
    user = make_user(
        email="expired@rangleela.test",
        login_attempts=5,
        lock_until=datetime.utcnow() - timedelta(minutes=1),
    )

    register_failed_login(db, user)

    refreshed = db.users.find_one({"_id": user["_id"]})
    assert refreshed["login_attempts"] == 1
    assert "lock_until" not in refreshed

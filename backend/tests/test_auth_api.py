import pytest

from telecare.models import Doctor, Patient, User
from telecare.schemas import NotificationPreferencesIn, UpdateProfileIn
from telecare.services import notification_service, profile_service
from conftest import API, PASSWORD


async def test_register_verify_login(api, client, outbox):
    resp = await api.register("ada@x.io", firstName="Ada", lastName="L")
    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    assert body["statusCode"] == 201
    assert body["data"]["user"]["email"] == "ada@x.io"
    assert body["data"]["user"]["emailVerified"] is False
    assert "accessToken" not in body["data"]
    assert "accessToken" not in resp.cookies
    assert len(outbox.to("ada@x.io", "Verify your email address")) == 1

    resp = await api.verify("ada@x.io")
    assert resp.status_code == 200
    assert resp.json()["data"]["user"]["emailVerified"] is True

    resp = await client.post(f"{API}/users/login", json={"email": "ada@x.io", "password": PASSWORD})
    assert resp.status_code == 200
    assert resp.cookies.get("accessToken")
    assert resp.cookies.get("refreshToken")
    user = resp.json()["data"]["user"]
    assert user["role"] == "patient"
    assert user["id"]
    assert user["loginCount"] == 1


async def test_set_cookie_attributes(api, client):
    await api.signup("cookie@x.io")
    resp = await client.post(f"{API}/users/login", json={"email": "cookie@x.io", "password": PASSWORD})
    headers = [h.lower() for h in resp.headers.get_list("set-cookie")]
    assert len(headers) == 2
    for header in headers:
        assert "httponly" in header
        assert "samesite=strict" in header
        assert "max-age=604800" in header


async def test_verify_email_twice_is_a_no_op(api):
    await api.register("twice@x.io")
    assert (await api.verify("twice@x.io")).status_code == 200
    resp = await api.verify("twice@x.io")
    assert resp.status_code == 200
    assert resp.json()["success"] is True


async def test_register_creates_patient_record(api):
    resp = await api.register("pat@x.io")
    user = await User.find_one(User.email == "pat@x.io")
    patient = await Patient.get(user.patient_id)
    assert patient.user_id == user.id
    assert patient.medical_record_number.startswith("MRN-")
    assert resp.json()["data"]["nextStep"] == "verify_email"


async def test_register_doctor_with_duplicate_license(api):
    resp = await api.register("doc1@x.io", role="doctor", medicalLicense="LIC-1", specialization="cardiology")
    assert resp.status_code == 201
    doctor = await Doctor.find_one(Doctor.medical_license_number == "LIC-1")
    assert doctor.specializations == ["cardiology"]

    resp = await api.register("doc2@x.io", role="doctor", medicalLicense="LIC-1")
    assert resp.status_code == 409
    assert await User.find_one(User.email == "doc2@x.io") is None


async def test_register_rejects_missing_fields(api, client):
    resp = await client.post(f"{API}/users/register", json={"email": "x@x.io"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    fields = {e["field"] for e in body["errors"]}
    assert fields == {"firstName", "lastName", "password"}


async def test_password_length_boundary(api):
    assert (await api.register("seven@x.io", password="Abcde1!")).status_code == 400
    assert (await api.register("eight@x.io", password="Abcdef1!")).status_code == 201


@pytest.mark.parametrize("role", ["admin", "staff", "wizard"])
async def test_register_rejects_non_public_roles(api, role):
    resp = await api.register("role@x.io", role=role)
    assert resp.status_code == 400
    assert "Invalid role" in resp.json()["message"]


async def test_register_duplicate_email_is_case_insensitive(api):
    assert (await api.register("dup@x.io")).status_code == 201
    resp = await api.register("DUP@x.io")
    assert resp.status_code == 409
    assert resp.json()["success"] is False


async def test_lockout_after_five_bad_passwords(api, frozen_clock):
    await api.signup("bob@x.io")
    for _ in range(5):
        resp = await api.login("bob@x.io", "Wrong1!pass")
        assert resp.status_code == 401
        assert resp.json()["message"] == "Invalid credentials"

    resp = await api.login("bob@x.io")
    assert resp.status_code == 423
    assert "15 minutes" in resp.json()["message"]

    frozen_clock.advance(minutes=10)
    resp = await api.login("bob@x.io")
    assert resp.status_code == 423
    assert "5 minutes" in resp.json()["message"]

    frozen_clock.advance(minutes=5, seconds=1)
    resp = await api.login("bob@x.io")
    assert resp.status_code == 200
    user = await User.find_one(User.email == "bob@x.io")
    assert user.failed_login_attempts == 0
    assert user.lock_until is None


async def test_successful_login_resets_failure_count(api):
    await api.signup("reset@x.io")
    for _ in range(4):
        await api.login("reset@x.io", "Wrong1!pass")
    assert (await api.login("reset@x.io")).status_code == 200
    for _ in range(4):
        await api.login("reset@x.io", "Wrong1!pass")
    assert (await api.login("reset@x.io")).status_code == 200


async def test_unknown_user_looks_like_bad_password(api, client, settings, monkeypatch):
    resp = await api.login("ghost@x.io")
    assert resp.status_code == 401
    assert resp.json()["message"] == "Invalid credentials"

    monkeypatch.setattr(settings, "STRICT_LOGIN_ERRORS", False)
    resp = await api.login("ghost@x.io")
    assert resp.status_code == 404


async def test_login_by_phone_number(api, client):
    await api.signup("phone@x.io", phoneNumber="+15550001111")
    resp = await client.post(f"{API}/users/login", json={"phoneNumber": "+15550001111", "password": PASSWORD})
    assert resp.status_code == 200


async def test_email_verification_gate_enabled(api, settings, monkeypatch):
    monkeypatch.setattr(settings, "REQUIRE_EMAIL_VERIFICATION", True)
    await api.register("gate@x.io")
    resp = await api.login("gate@x.io")
    assert resp.status_code == 403
    assert resp.json()["message"] == "Please verify your email before logging in"

    await api.verify("gate@x.io")
    assert (await api.login("gate@x.io")).status_code == 200


async def test_email_verification_gate_disabled(api, settings, monkeypatch):
    monkeypatch.setattr(settings, "REQUIRE_EMAIL_VERIFICATION", False)
    await api.register("nogate@x.io")
    assert (await api.login("nogate@x.io")).status_code == 200


async def test_refresh_replay_kills_the_session(api, client):
    session = await api.signup("eve@x.io")

    resp = await client.post(f"{API}/users/refresh-token", json={"refreshToken": session.refresh_token})
    assert resp.status_code == 200
    r2 = resp.json()["data"]["refreshToken"]
    assert r2 != session.refresh_token
    client.cookies.clear()

    resp = await client.post(f"{API}/users/refresh-token", json={"refreshToken": session.refresh_token})
    assert resp.status_code == 401
    assert "reuse" in resp.json()["message"].lower()

    resp = await client.post(f"{API}/users/refresh-token", json={"refreshToken": r2})
    assert resp.status_code == 401

    assert (await api.login("eve@x.io")).status_code == 200


async def test_refresh_reads_the_cookie(api, client):
    await api.signup("jar@x.io")
    resp = await client.post(f"{API}/users/login", json={"email": "jar@x.io", "password": PASSWORD})
    assert resp.status_code == 200
    resp = await client.post(f"{API}/users/refresh-token")
    assert resp.status_code == 200
    assert resp.cookies.get("refreshToken") == resp.json()["data"]["refreshToken"]


async def test_refresh_rejects_access_token_and_expired_token(api, client, frozen_clock):
    session = await api.signup("kind@x.io")
    resp = await client.post(f"{API}/users/refresh-token", json={"refreshToken": session.access_token})
    assert resp.status_code == 401

    frozen_clock.advance(days=7, seconds=1)
    resp = await client.post(f"{API}/users/refresh-token", json={"refreshToken": session.refresh_token})
    assert resp.status_code == 401
    assert "expired" in resp.json()["message"].lower()


async def test_logout_revokes_refresh_and_is_idempotent(api, client):
    session = await api.signup("out@x.io")
    resp = await client.post(f"{API}/users/logout", headers=session.headers)
    assert resp.status_code == 200
    assert resp.json()["success"] is True

    resp = await client.post(f"{API}/users/refresh-token", json={"refreshToken": session.refresh_token})
    assert resp.status_code == 401

    resp = await client.post(f"{API}/users/logout", headers=session.headers)
    assert resp.status_code == 200


async def test_stale_user_copy_cannot_revive_revoked_session(api, client):
    session = await api.signup("stale@x.io")
    stale = await User.find_one(User.email == "stale@x.io")
    assert stale.refresh_token is not None

    resp = await client.post(f"{API}/users/logout", headers=session.headers)
    assert resp.status_code == 200

    await notification_service.update_preferences(stale, NotificationPreferencesIn(frequency="daily"))
    await profile_service.update_profile(stale, UpdateProfileIn(firstName="Late"))

    stored = await User.find_one(User.email == "stale@x.io")
    assert stored.refresh_token is None
    assert stored.first_name == "Late"
    assert stored.notification_preferences.frequency == "daily"
    resp = await client.post(f"{API}/users/refresh-token", json={"refreshToken": session.refresh_token})
    assert resp.status_code == 401


async def test_forgot_password_cooldown_and_uniform_answer(api, client, outbox, frozen_clock):
    await api.signup("cam@x.io")
    existing = await client.post(f"{API}/users/forgot-password", json={"email": "cam@x.io"})
    assert existing.status_code == 200
    assert existing.json()["message"].startswith("If the email exists")
    assert len(outbox.to("cam@x.io", "Reset your password")) == 1

    again = await client.post(f"{API}/users/forgot-password", json={"email": "cam@x.io"})
    assert again.status_code == 429

    unknown = await client.post(f"{API}/users/forgot-password", json={"email": "nobody@x.io"})
    assert unknown.status_code == 200
    assert unknown.content == existing.content

    frozen_clock.advance(seconds=61)
    assert (await client.post(f"{API}/users/forgot-password", json={"email": "cam@x.io"})).status_code == 200


async def test_reset_password_is_single_use(api, client, outbox):
    session = await api.signup("dan@x.io")
    await client.post(f"{API}/users/forgot-password", json={"email": "dan@x.io"})
    token = outbox.token_for("dan@x.io", "Reset your password")

    body = {"token": token, "password": "Newpass1!", "confirmPassword": "Newpass1!"}
    resp = await client.post(f"{API}/users/reset-password", json=body)
    assert resp.status_code == 200

    assert (await api.login("dan@x.io")).status_code == 401
    assert (await api.login("dan@x.io", "Newpass1!")).status_code == 200

    body["password"] = body["confirmPassword"] = "Another1!"
    resp = await client.post(f"{API}/users/reset-password", json=body)
    assert resp.status_code == 401

    resp = await client.post(f"{API}/users/refresh-token", json={"refreshToken": session.refresh_token})
    assert resp.status_code == 401


async def test_reset_password_link_expires(api, client, outbox, frozen_clock):
    await api.signup("late@x.io")
    await client.post(f"{API}/users/forgot-password", json={"email": "late@x.io"})
    token = outbox.token_for("late@x.io", "Reset your password")
    frozen_clock.advance(minutes=31)
    body = {"token": token, "password": "Newpass1!", "confirmPassword": "Newpass1!"}
    resp = await client.post(f"{API}/users/reset-password", json=body)
    assert resp.status_code == 401
    assert "expired" in resp.json()["message"]


async def test_change_password(api, client):
    session = await api.signup("chg@x.io")
    url = f"{API}/users/change-password"

    resp = await client.post(
        url,
        json={"currentPassword": "Wrong1!x", "newPassword": "Newpass1!", "confirmPassword": "Newpass1!"},
        headers=session.headers,
    )
    assert resp.status_code == 401

    resp = await client.post(
        url,
        json={"currentPassword": PASSWORD, "newPassword": "Newpass1!", "confirmPassword": "Newpass2!"},
        headers=session.headers,
    )
    assert resp.status_code == 400

    resp = await client.post(
        url,
        json={"currentPassword": PASSWORD, "newPassword": "weak", "confirmPassword": "weak"},
        headers=session.headers,
    )
    assert resp.status_code == 400

    resp = await client.post(
        url,
        json={"currentPassword": PASSWORD, "newPassword": "Newpass1!", "confirmPassword": "Newpass1!"},
        headers=session.headers,
    )
    assert resp.status_code == 200

    resp = await client.post(f"{API}/users/refresh-token", json={"refreshToken": session.refresh_token})
    assert resp.status_code == 401
    assert (await api.login("chg@x.io", "Newpass1!")).status_code == 200


async def test_resend_verification_cooldown(api, client, outbox, frozen_clock):
    await api.register("slow@x.io")
    session = await api.session("slow@x.io")
    url = f"{API}/users/resend-verification"

    resp = await client.post(url, headers=session.headers)
    assert resp.status_code == 429

    frozen_clock.advance(seconds=61)
    resp = await client.post(url, headers=session.headers)
    assert resp.status_code == 200
    assert len(outbox.to("slow@x.io", "Verify your email address")) == 2

    await api.verify("slow@x.io")
    frozen_clock.advance(seconds=61)
    resp = await client.post(url, headers=session.headers)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Email is already verified"


async def test_auth_middleware_rejections(api, client, frozen_clock):
    url = f"{API}/users/current"
    assert (await client.get(url)).status_code == 401
    assert (await client.get(url, headers={"Authorization": "Bearer nonsense"})).status_code == 401

    session = await api.signup("mw@x.io")
    assert (await client.get(url, headers=session.headers)).status_code == 200
    resp = await client.get(url, headers={"Authorization": f"Bearer {session.refresh_token}"})
    assert resp.status_code == 401

    frozen_clock.advance(minutes=16)
    resp = await client.get(url, headers=session.headers)
    assert resp.status_code == 401
    assert resp.json()["message"] == "Access token has expired"


async def test_access_cookie_authenticates(api, client):
    await api.signup("cookieauth@x.io")
    await client.post(f"{API}/users/login", json={"email": "cookieauth@x.io", "password": PASSWORD})
    resp = await client.get(f"{API}/users/current")
    assert resp.status_code == 200
    assert resp.json()["data"]["user"]["email"] == "cookieauth@x.io"


async def test_deactivated_user_is_refused(api, client):
    session = await api.signup("gone@x.io")
    admin = await api.admin()
    resp = await client.patch(
        f"{API}/users/{session.id}/deactivate",
        json={"reason": "left the clinic"},
        headers=admin.headers,
    )
    assert resp.status_code == 200

    resp = await client.get(f"{API}/users/current", headers=session.headers)
    assert resp.status_code == 403
    assert (await api.login("gone@x.io")).status_code == 403


async def test_password_hash_never_leaves_the_api(api, client, outbox):
    bodies = []
    bodies.append((await api.register("leak@x.io")).text)
    bodies.append((await api.verify("leak@x.io")).text)
    login = await api.login("leak@x.io")
    bodies.append(login.text)
    session = await api.session("leak@x.io")
    for path in ("/users/current", "/users/profile", f"/users/profile/{session.id}"):
        bodies.append((await client.get(f"{API}{path}", headers=session.headers)).text)

    user = await User.find_one(User.email == "leak@x.io")
    for text in bodies:
        assert user.password_hash not in text
        assert "passwordHash" not in text
        assert "password_hash" not in text
        assert "$2b$" not in text


async def test_responses_carry_request_id(client):
    resp = await client.get("/healthz")
    assert resp.status_code == 200
    assert resp.headers["X-Request-ID"].startswith("REQ-")
    assert resp.headers["X-Response-Time"].endswith("ms")

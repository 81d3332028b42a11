import jwt
from sqlmodel import Session, select

from conftest import auth_headers, make_png_bytes, unique_email
from ethioace import models
from ethioace.config import settings
from ethioace.database import engine
from ethioace.main import auth_rate_limiter


def _signup_payload(**overrides):
    payload = {
        "name": "Hana Girma",
        "email": unique_email("signup"),
        "password": "goodpass1",
        "confirmPassword": "goodpass1",
        "phoneNumber": "+251912345678",
        "stream": "Social",
        "yourGoal": 80,
    }
    payload.update(overrides)
    return payload


def test_signup_creates_exactly_one_student(client):
    payload = _signup_payload(email=unique_email("upper").upper())
    r = client.post("/api/v1/signup", json=payload)
    assert r.status_code == 201
    body = r.json()
    assert body["success"] is True
    with Session(engine) as session:
        rows = session.exec(select(models.Student).where(models.Student.email == payload["email"].lower())).all()
    assert len(rows) == 1
    assert rows[0].id == body["userId"]
    assert rows[0].password_hash != payload["password"]


def test_signup_rejects_duplicate_email_across_roles(client, teacher):
    r = client.post("/api/v1/signup", json=_signup_payload(email=teacher["email"]))
    assert r.status_code == 409
    assert r.json()["success"] is False
    assert "already" in r.json()["message"]


def test_signup_validation_errors_use_envelope(client):
    bad = [
        _signup_payload(phoneNumber="0912345678"),
        _signup_payload(password="short", confirmPassword="short"),
        _signup_payload(confirmPassword="different1"),
        _signup_payload(stream="Science"),
        _signup_payload(yourGoal=0),
        _signup_payload(email="not-an-email"),
    ]
    for payload in bad:
        r = client.post("/api/v1/signup", json=payload)
        assert r.status_code == 422, payload
        assert r.json()["success"] is False
        assert r.json()["message"]
    r = client.post("/api/v1/signup", json=_signup_payload(confirmPassword="different1"))
    assert r.json()["message"] == "Passwords do not match"


def test_signup_requires_stream_and_keeps_profile_picture(client):
    payload = _signup_payload()
    del payload["stream"]
    r = client.post("/api/v1/signup", json=payload)
    assert r.status_code == 422
    assert r.json()["message"].startswith("stream")

    payload = _signup_payload(profilePicture="https://cdn.example.com/hana.png")
    r = client.post("/api/v1/signup", json=payload)
    assert r.status_code == 201
    with Session(engine) as session:
        student = session.get(models.Student, r.json()["userId"])
    assert student.profile_picture == "https://cdn.example.com/hana.png"


def test_teacher_signup_requires_known_subject(client):
    r = client.post("/api/v1/teachers/signup", json={
        "name": "T", "email": unique_email("t"), "password": "teachpass1", "subject": "Astrology",
    })
    assert r.status_code == 422


def test_login_returns_token_and_redirect(client, student, teacher):
    r = client.post("/api/v1/login/", json={"email": student["email"].upper(), "password": student["password"]})
    assert r.status_code == 200
    body = r.json()
    assert body["role"] == "student"
    assert body["redirect"] == f"/student/{student['id']}"
    assert body["stream"] == "Natural"
    payload = jwt.decode(body["token"], settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    assert payload["user_id"] == student["id"]
    assert payload["role"] == "student"

    r = client.post("/api/v1/login", json={"email": teacher["email"], "password": teacher["password"]})
    assert r.json()["role"] == "teacher"
    assert r.json()["subject"] == "Physics"
    assert r.json()["redirect"] == f"/teacher/{teacher['id']}"


def test_login_rejects_bad_credentials(client, student):
    r = client.post("/api/v1/login/", json={"email": student["email"], "password": "wrongpass1"})
    assert r.status_code == 401
    assert r.json()["message"] == "Invalid email or password"
    r = client.post("/api/v1/login/", json={"email": unique_email("nobody"), "password": "whatever1"})
    assert r.status_code == 401


def test_login_is_rate_limited(client, student, monkeypatch):
    auth_rate_limiter.reset()
    monkeypatch.setattr(settings, "LOGIN_RATE_LIMIT_PER_MIN", 2)
    for _ in range(2):
        assert client.post("/api/v1/login/", json={"email": student["email"], "password": "wrongpass1"}).status_code == 401
    r = client.post("/api/v1/login/", json={"email": student["email"], "password": student["password"]})
    assert r.status_code == 429
    assert int(r.headers["Retry-After"]) >= 1


def test_protected_routes_need_a_valid_token(client, student):
    assert client.get(f"/api/v1/students/{student['id']}").status_code == 401
    r = client.get(f"/api/v1/students/{student['id']}", headers=auth_headers("not-a-jwt"))
    assert r.status_code == 401
    assert r.json()["message"] == "invalid token"


def test_student_profile_access_rules(client, make_student, teacher):
    me = make_student()
    other = make_student()
    r = client.get(f"/api/v1/students/{me['id']}", headers=me["headers"])
    assert r.status_code == 200
    profile = r.json()
    assert profile["email"] == me["email"]
    assert profile["stats"] == {"examsTaken": 0, "averageScore": 0, "bestScore": 0, "goalReached": False}
    assert "password_hash" not in profile and "passwordHash" not in profile

    assert client.get(f"/api/v1/students/{other['id']}", headers=me["headers"]).status_code == 403
    assert client.get(f"/api/v1/students/{other['id']}", headers=teacher["headers"]).status_code == 200
    assert client.get("/api/v1/students/999999", headers=teacher["headers"]).status_code == 404


def test_student_update_and_stats(client, make_student):
    me = make_student(goal=60)
    other = make_student()
    r = client.put(f"/api/v1/students/{me['id']}", json={"name": "New Name", "stream": "social"}, headers=me["headers"])
    assert r.status_code == 200
    assert r.json()["name"] == "New Name"
    assert r.json()["stream"] == "Social"
    assert client.put(f"/api/v1/students/{me['id']}", json={"phoneNumber": "12"}, headers=me["headers"]).status_code == 422
    assert client.put(f"/api/v1/students/{other['id']}", json={"name": "x"}, headers=me["headers"]).status_code == 403

    for score in (5, 8):
        client.post("/api/v1/score", json={"subject": "English", "year": 2015, "score": score, "totalQuestions": 10},
                    headers=me["headers"])
    stats = client.get(f"/api/v1/students/{me['id']}", headers=me["headers"]).json()["stats"]
    assert stats == {"examsTaken": 2, "averageScore": 65.0, "bestScore": 80.0, "goalReached": True}


def test_profile_picture_upload(client, student):
    files = {"image": ("me.png", make_png_bytes(), "image/png")}
    r = client.post(f"/api/v1/students/{student['id']}/profile-picture", files=files, headers=student["headers"])
    assert r.status_code == 200
    url = r.json()["profilePicture"]
    assert url.startswith("/uploads/profile-pictures/") and url.endswith(".png")
    assert client.get(url).status_code == 200

    files = {"image": ("me.png", b"definitely not an image", "image/png")}
    r = client.post(f"/api/v1/students/{student['id']}/profile-picture", files=files, headers=student["headers"])
    assert r.status_code == 415


def test_teacher_profile_and_activity_feed(client, teacher, student):
    r = client.get(f"/api/v1/teachers/{teacher['id']}", headers=student["headers"])
    assert r.status_code == 200
    assert r.json()["subject"] == "Physics"
    assert client.get("/api/v1/teachers/999999", headers=student["headers"]).status_code == 404

    client.post("/api/v1/chat/rooms", json={"name": "Physics help"}, headers=teacher["headers"])
    r = client.get("/api/v1/teachers/me/activity", headers=teacher["headers"])
    assert r.status_code == 200
    assert r.json()["data"][0]["activityType"] == "chatroom_created"
    assert client.get("/api/v1/teachers/me/activity", headers=student["headers"]).status_code == 403


def test_password_reset_flow(client, student, monkeypatch):
    sent = []
    monkeypatch.setattr("ethioace.main._deliver_reset_link", lambda email, link: sent.append((email, link)))

    r = client.post("/api/v1/password/request", json={"email": unique_email("ghost")})
    assert r.status_code == 200 and r.json()["success"] is True
    assert sent == []

    client.post("/api/v1/password/request", json={"email": student["email"]})
    client.post("/api/v1/password/request", json={"email": student["email"]})
    assert len(sent) == 2
    first_token = sent[0][1].rsplit("/", 1)[-1]
    token = sent[1][1].rsplit("/", 1)[-1]
    assert sent[1][1].startswith(settings.RESET_LINK_BASE)

    # a newer request invalidates the older token
    assert client.get(f"/api/v1/password/verify/{first_token}").status_code == 400
    assert client.get(f"/api/v1/password/verify/{token}").json() == {"success": True, "message": "Token is valid"}

    assert client.post(f"/api/v1/password/reset/{token}", json={"password": "short"}).status_code == 422
    r = client.post(f"/api/v1/password/reset/{token}", json={"password": "brandnew1"})
    assert r.status_code == 200

    assert client.post(f"/api/v1/password/reset/{token}", json={"password": "another1"}).status_code == 400
    assert client.get(f"/api/v1/password/verify/{token}").json()["success"] is False
    assert client.post("/api/v1/login/", json={"email": student["email"], "password": student["password"]}).status_code == 401
    assert client.post("/api/v1/login/", json={"email": student["email"], "password": "brandnew1"}).status_code == 200


def test_expired_reset_token_is_rejected(client, student, monkeypatch):
    sent = []
    monkeypatch.setattr("ethioace.main._deliver_reset_link", lambda email, link: sent.append(link))
    client.post("/api/v1/password/request", json={"email": student["email"]})
    token = sent[0].rsplit("/", 1)[-1]
    with Session(engine) as session:
        rows = session.exec(select(models.PasswordResetToken).where(
            models.PasswordResetToken.user_id == student["id"],
            models.PasswordResetToken.user_role == "student",
        )).all()
        for row in rows:
            row.expires_at = models.utcnow().replace(year=2000)
            session.add(row)
        session.commit()
    assert client.get(f"/api/v1/password/verify/{token}").status_code == 400
    assert client.post(f"/api/v1/password/reset/{token}", json={"password": "brandnew1"}).status_code == 400


def test_service_endpoints(client):
    assert client.get("/health").json() == {"status": "ok"}
    r = client.get("/")
    assert r.status_code == 200
    assert "EthioAce" in r.text
    r = client.get("/api/v1/notes", headers={"X-Request-ID": "abc123"})
    assert r.headers["X-Request-ID"] == "abc123"

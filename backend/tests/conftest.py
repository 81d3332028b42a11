import io
import os
import tempfile
import uuid
from pathlib import Path

# Point the app at a throwaway database/upload/exams tree before it is imported.
_TMP = Path(tempfile.mkdtemp(prefix="ethioace-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP / 'test.db'}"
os.environ["UPLOAD_DIR"] = str(_TMP / "uploads")
os.environ["EXAMS_DIR"] = str(_TMP / "Exams")

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from ethioace.main import app, auth_rate_limiter


@pytest.fixture(scope="session")
def client():
    """One client for the whole run so HTTP calls and sockets share an event loop."""
    with TestClient(app) as c:
        yield c


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    auth_rate_limiter.reset()
    yield


@pytest.fixture
def exams_dir():
    return Path(os.environ["EXAMS_DIR"])


def unique_email(prefix="user"):
    return f"{prefix}-{uuid.uuid4().hex[:10]}@example.com"


def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_student(client):
    def _make(stream="Natural", goal=70, password="secret123", name="Abebe Kebede"):
        email = unique_email("student")
        r = client.post("/api/v1/signup", json={
            "name": name,
            "email": email,
            "password": password,
            "confirmPassword": password,
            "phoneNumber": "+251911223344",
            "stream": stream,
            "yourGoal": goal,
        })
        assert r.status_code == 201, r.text
        login = client.post("/api/v1/login/", json={"email": email, "password": password})
        assert login.status_code == 200, login.text
        token = login.json()["token"]
        return {"id": r.json()["userId"], "email": email, "password": password,
                "token": token, "headers": auth_headers(token)}
    return _make


@pytest.fixture
def make_teacher(client):
    def _make(subject="Physics", password="teachpass1", name="Tigist Alemu"):
        email = unique_email("teacher")
        r = client.post("/api/v1/teachers/signup", json={
            "name": name, "email": email, "password": password, "subject": subject,
        })
        assert r.status_code == 201, r.text
        login = client.post("/api/v1/login", json={"email": email, "password": password})
        assert login.status_code == 200, login.text
        token = login.json()["token"]
        return {"id": r.json()["userId"], "email": email, "password": password,
                "token": token, "headers": auth_headers(token), "subject": subject}
    return _make


@pytest.fixture
def student(make_student):
    return make_student()


@pytest.fixture
def teacher(make_teacher):
    return make_teacher()


def make_png_bytes(size=(4, 4)):
    bio = io.BytesIO()
    Image.new("RGB", size, (200, 30, 30)).save(bio, "PNG")
    return bio.getvalue()


def make_pdf_bytes(page_count=1):
    """Build a minimal, well-formed PDF with `page_count` blank pages."""
    kids = " ".join(f"{3 + i} 0 R" for i in range(page_count))
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        f"<< /Type /Pages /Kids [{kids}] /Count {page_count} >>".encode(),
    ]
    objects += [b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >>"] * page_count
    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for i, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += f"{i} 0 obj\n".encode() + body + b"\nendobj\n"
    xref = len(out)
    out += f"xref\n0 {len(objects) + 1}\n".encode()
    out += b"0000000000 65535 f \n"
    for off in offsets:
        out += f"{off:010d} 00000 n \n".encode()
    out += f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\nstartxref\n{xref}\n%%EOF\n".encode()
    return bytes(out)

import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("JWT_SECRET", "test-secret")

import mongomock  # noqa: E402
import pytest  # noqa: E402
from bson import ObjectId  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import uploads  # noqa: E402
from main import app, get_db, get_notifier  # noqa: E402
from orders import OrderWorkflow  # noqa: E402


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, phone, message):
        if not phone:
            return False
        self.sent.append((phone, message))
        return True

    def to(self, phone):
        return [m for p, m in self.sent if p == phone]


@pytest.fixture(autouse=True)
def upload_dir(tmp_path, monkeypatch):
    path = tmp_path / "uploads"
    monkeypatch.setattr(uploads, "UPLOAD_DIR", str(path))
    return path


@pytest.fixture
def db():
    return mongomock.MongoClient().plantify_test


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def workflow(db, notifier):
    return OrderWorkflow(db, notifier)


@pytest.fixture
def make_user(db):
    def _make(name="Asha", role="buyer", phone=None):
        doc = {"name": name, "email": f"{name.lower()}-{ObjectId()}@example.com", "passwordHash": "x",
               "role": role, "phone": phone}
        doc["_id"] = db["user"].insert_one(doc).inserted_id
        return doc
    return _make


@pytest.fixture
def make_product(db):
    def _make(seller, name="Neem Cake", stock=10, price=120.0, category="fertilizer"):
        doc = {"sellerId": seller["_id"], "name": name, "description": "Organic neem cake fertilizer",
               "category": category, "price": price, "stock": stock, "images": [], "ratings": []}
        doc["_id"] = db["product"].insert_one(doc).inserted_id
        return doc
    return _make


@pytest.fixture
def client(db, notifier):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def signup(client):
    """Register and log in a user through the API, returning (user, auth headers)."""
    def _signup(name="Ravi", role="buyer", email=None, password="secret123"):
        email = email or f"{name.lower()}@example.com"
        res = client.post("/api/v1/users/register",
                          json={"name": name, "email": email, "password": password, "role": role})
        assert res.status_code == 201, res.text
        res = client.post("/api/v1/users/login", json={"email": email, "password": password})
        assert res.status_code == 200, res.text
        client.cookies.clear()
        body = res.json()
        return body["user"], {"Authorization": f"Bearer {body['token']}"}
    return _signup

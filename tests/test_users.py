from datetime import timedelta

import jwt

import main
from database import now
from uploads import RelayFailure, UploadedImage, UploadFailed


def test_register_and_login(client):
    res = client.post("/api/v1/users/register",
                      json={"name": "Lata", "email": "Lata@Example.com", "password": "secret123", "role": "seller"})
    assert res.status_code == 201
    body = res.json()
    assert body["success"] is True
    assert body["user"]["email"] == "lata@example.com"
    assert body["user"]["role"] == "seller"
    assert "passwordHash" not in body["user"]

    res = client.post("/api/v1/users/login", json={"email": "lata@example.com", "password": "secret123"})
    assert res.status_code == 200
    assert res.json()["token"]
    assert "token" in res.cookies


def test_register_duplicate_email(client, signup):
    signup("Lata")
    res = client.post("/api/v1/users/register",
                      json={"name": "Lata", "email": "LATA@example.com", "password": "secret123"})
    assert res.status_code == 400
    assert res.json() == {"success": False, "message": "An account with this email already exists. Please login."}


def test_register_validation_is_400(client):
    res = client.post("/api/v1/users/register", json={"name": "L", "email": "nope", "password": "1"})
    assert res.status_code == 400
    assert res.json()["success"] is False


def test_cannot_self_register_as_admin(client):
    res = client.post("/api/v1/users/register",
                      json={"name": "Eve", "email": "eve@example.com", "password": "secret123", "role": "admin"})
    assert res.status_code == 403


def test_login_failures(client, signup):
    signup("Lata")
    assert client.post("/api/v1/users/login", json={"email": "who@example.com", "password": "x"}).status_code == 400
    assert client.post("/api/v1/users/login", json={"email": "lata@example.com", "password": "bad"}).status_code == 400


def test_profile_requires_auth(client):
    res = client.get("/api/v1/users/profile")
    assert res.status_code == 401
    assert res.json()["message"] == "Not authorized, token missing."

    res = client.get("/api/v1/users/profile", headers={"Authorization": "Bearer garbage"})
    assert res.status_code == 401


def test_expired_token_is_rejected(client, signup):
    user, _ = signup("Lata")
    token = jwt.encode({"sub": user["id"], "exp": now() - timedelta(minutes=1)}, main.JWT_SECRET, algorithm="HS256")
    res = client.get("/api/v1/users/profile", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 401
    assert res.json()["message"] == "Token expired"


def test_profile_defaults_and_cookie_auth(client):
    client.post("/api/v1/users/register", json={"name": "Lata", "email": "lata@example.com", "password": "secret123"})
    token = client.post("/api/v1/users/login", json={"email": "lata@example.com", "password": "secret123"}).json()["token"]
    client.cookies.clear()
    client.cookies.set("token", token)

    res = client.get("/api/v1/users/profile")

    assert res.status_code == 200
    profile = res.json()["user"]
    assert profile["phone"] == "N/A"
    assert profile["profileImage"].startswith("https://")


def test_logout_clears_cookie(client):
    res = client.post("/api/v1/users/logout")
    assert res.status_code == 200
    assert 'token=""' in res.headers["set-cookie"] or "token=;" in res.headers["set-cookie"]


def test_profile_completeness_for_buyer_and_seller(client, signup):
    _, buyer = signup("Lata")
    res = client.put("/api/v1/users/profile", headers=buyer, json={
        "phone": "9876543210", "address": "Plot 4", "city": "Nashik", "state": "MH", "postalCode": "422001",
    })
    assert res.status_code == 200
    assert res.json()["user"]["isProfileComplete"] is True

    _, seller = signup("Kiran", role="seller")
    res = client.put("/api/v1/users/profile", headers=seller, json={
        "phone": "9876543210", "address": "Plot 4", "city": "Nashik", "state": "MH", "postalCode": "422001",
    })
    assert res.json()["user"]["isProfileComplete"] is False

    res = client.put("/api/v1/users/profile", headers=seller, json={"shopName": "Green Roots", "gstNumber": "27AAPFU0939F1ZV"})
    assert res.json()["user"]["isProfileComplete"] is True
    assert res.json()["user"]["shopName"] == "Green Roots"


def test_profile_field_validation(client, signup):
    _, headers = signup("Lata")
    res = client.put("/api/v1/users/profile", headers=headers, json={"phone": "12345"})
    assert res.status_code == 400
    assert "phone" in res.json()["message"]


def test_password_reset_flow(client, signup):
    signup("Lata", password="oldpass1")
    res = client.post("/api/v1/users/forgot-password", json={"email": "lata@example.com"})
    assert res.status_code == 200
    token = res.json()["resetUrl"].rsplit("/", 1)[1]

    mismatch = client.put(f"/api/v1/users/reset-password/{token}",
                          json={"password": "newpass1", "confirmPassword": "other"})
    assert mismatch.status_code == 400

    res = client.put(f"/api/v1/users/reset-password/{token}",
                     json={"password": "newpass1", "confirmPassword": "newpass1"})
    assert res.status_code == 200
    assert client.post("/api/v1/users/login", json={"email": "lata@example.com", "password": "newpass1"}).status_code == 200

    reused = client.put(f"/api/v1/users/reset-password/{token}",
                        json={"password": "another1", "confirmPassword": "another1"})
    assert reused.status_code == 400


def test_expired_reset_token(client, db, signup):
    signup("Lata")
    token = client.post("/api/v1/users/forgot-password", json={"email": "lata@example.com"}).json()["resetUrl"].rsplit("/", 1)[1]
    db["user"].update_one({"email": "lata@example.com"}, {"$set": {"resetPasswordExpire": now() - timedelta(minutes=1)}})

    res = client.put(f"/api/v1/users/reset-password/{token}", json={"password": "newpass1", "confirmPassword": "newpass1"})
    assert res.status_code == 400


def test_forgot_password_unknown_email(client):
    assert client.post("/api/v1/users/forgot-password", json={"email": "ghost@example.com"}).status_code == 404


def test_admin_user_management(client, db, signup):
    admin, admin_headers = signup("Root")
    db["user"].update_one({"email": "root@example.com"}, {"$set": {"role": "admin"}})
    target, target_headers = signup("Lata")

    assert client.get("/api/v1/users/all", headers=target_headers).status_code == 403

    users = client.get("/api/v1/users/all", headers=admin_headers).json()["users"]
    assert {u["email"] for u in users} == {"root@example.com", "lata@example.com"}
    assert all("passwordHash" not in u for u in users)

    res = client.put(f"/api/v1/users/role/{target['id']}", headers=admin_headers, json={"role": "seller"})
    assert res.json()["user"]["role"] == "seller"

    assert client.delete(f"/api/v1/users/{target['id']}", headers=admin_headers).status_code == 200
    assert client.delete(f"/api/v1/users/{target['id']}", headers=admin_headers).status_code == 404


def test_health(client):
    assert client.get("/").json()["status"] == "ok"


def test_profile_image_upload(client, signup, monkeypatch):
    _, headers = signup("Lata")
    monkeypatch.setattr(main, "upload_image",
                        lambda path, folder: UploadedImage(url="https://res.cloudinary.com/demo/me.jpg", public_id=folder))

    res = client.put("/api/v1/users/profile/upload", headers=headers,
                     files={"profileImage": ("me.png", b"png-bytes", "image/png")})

    assert res.status_code == 200
    assert res.json()["user"]["profileImage"] == "https://res.cloudinary.com/demo/me.jpg"
    assert res.json()["user"]["profileImageId"] == "profileImages"

    def unreachable(path, folder):
        raise UploadFailed(RelayFailure(kind="unreachable", status_code=503, message="Image upload failed"))

    monkeypatch.setattr(main, "upload_image", unreachable)
    res = client.put("/api/v1/users/profile/upload", headers=headers,
                     files={"profileImage": ("me.png", b"png-bytes", "image/png")})
    assert res.status_code == 503
    assert client.put("/api/v1/users/profile/upload", headers=headers).status_code == 400

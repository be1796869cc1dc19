import pytest

import main
from uploads import PredictionResult, RelayFailure


@pytest.fixture
def market(client, db, signup):
    """A seller with one listed product and a buyer, both reachable on WhatsApp."""
    seller, seller_headers = signup("Kiran", role="seller")
    buyer, buyer_headers = signup("Meena")
    db["user"].update_one({"email": "kiran@example.com"}, {"$set": {"phone": "9876500001"}})
    db["user"].update_one({"email": "meena@example.com"}, {"$set": {"phone": "9876500002"}})
    res = client.post("/api/v1/products", headers=seller_headers, data={
        "name": "Tomato Seeds", "description": "Hybrid tomato seeds, 50g pack",
        "category": "seed", "price": "80", "stock": "5",
    })
    return {
        "seller": (seller, seller_headers),
        "buyer": (buyer, buyer_headers),
        "product": res.json()["product"],
    }


def place(client, headers, product_id, quantity=2, **extra):
    body = {"items": [{"productId": product_id, "quantity": quantity}], "shippingAddress": "Plot 4, Nashik"}
    body.update(extra)
    return client.post("/api/v1/orders", headers=headers, json=body)


def test_place_order_over_http(client, db, notifier, market):
    _, headers = market["buyer"]
    product = market["product"]

    res = place(client, headers, product["id"])

    assert res.status_code == 201
    order = res.json()["order"]
    assert order["orderStatus"] == "processing"
    assert order["totalAmount"] == 160
    assert order["paymentStatus"] == "pending"
    assert order["items"][0]["priceAtTime"] == 80
    assert order["items"][0]["id"]
    assert db["product"].find_one({"name": "Tomato Seeds"})["stock"] == 3

    assert notifier.to("9876500001")[0].startswith("New Order Received!")
    assert notifier.to("9876500002")[0].startswith("Order Placed Successfully!")


def test_place_order_errors_use_envelope(client, market):
    _, headers = market["buyer"]
    product = market["product"]

    res = place(client, headers, product["id"], quantity=9)
    assert res.status_code == 400
    assert res.json() == {"success": False, "message": "Insufficient stock for Tomato Seeds"}

    assert place(client, headers, product["id"]).status_code == 201
    res = place(client, headers, product["id"], quantity=1)
    assert res.status_code == 409
    assert res.json()["success"] is False

    res = client.post("/api/v1/orders", headers=headers, json={"items": [], "shippingAddress": "x"})
    assert res.status_code == 400
    assert res.json()["message"] == "No items provided."


def test_place_order_requires_login(client, market):
    res = client.post("/api/v1/orders", json={"items": [], "shippingAddress": "x"})
    assert res.status_code == 401


def test_order_listings(client, db, market, signup):
    _, buyer_headers = market["buyer"]
    _, seller_headers = market["seller"]
    place(client, buyer_headers, market["product"]["id"])

    mine = client.get("/api/v1/orders/my-orders", headers=buyer_headers).json()
    assert mine["count"] == 1
    assert mine["orders"][0]["items"][0]["product"]["name"] == "Tomato Seeds"

    selling = client.get("/api/v1/orders/seller-orders", headers=seller_headers).json()
    assert selling["count"] == 1
    assert selling["orders"][0]["buyer"] == {
        "id": market["buyer"][0]["id"], "name": "Meena", "email": "meena@example.com",
    }

    _, admin = signup("Root")
    db["user"].update_one({"email": "root@example.com"}, {"$set": {"role": "admin"}})
    assert client.get("/api/v1/orders/admin/all", headers=buyer_headers).status_code == 403
    everything = client.get("/api/v1/orders/admin/all", headers=admin).json()
    assert everything["count"] == 1
    assert everything["orders"][0]["items"][0]["seller"]["name"] == "Kiran"


def test_get_order_visibility(client, market, signup):
    _, buyer_headers = market["buyer"]
    _, seller_headers = market["seller"]
    order = place(client, buyer_headers, market["product"]["id"]).json()["order"]
    _, stranger = signup("Ravi")

    assert client.get(f"/api/v1/orders/{order['id']}", headers=buyer_headers).status_code == 200
    assert client.get(f"/api/v1/orders/{order['id']}", headers=seller_headers).status_code == 200
    assert client.get(f"/api/v1/orders/{order['id']}", headers=stranger).status_code == 403
    assert client.get("/api/v1/orders/64b7f0c2a1b2c3d4e5f60718", headers=buyer_headers).status_code == 404


def test_item_status_lifecycle_over_http(client, db, notifier, market):
    _, buyer_headers = market["buyer"]
    _, seller_headers = market["seller"]
    order = place(client, buyer_headers, market["product"]["id"]).json()["order"]
    url = f"/api/v1/orders/{order['id']}/item/{order['items'][0]['id']}/status"

    res = client.put(url, headers=seller_headers, json={"status": "shipped"})
    assert res.status_code == 200
    assert res.json()["order"]["items"][0]["itemStatus"] == "shipped"
    assert res.json()["order"]["version"] == 1

    res = client.put(url, headers=seller_headers, json={"status": "pending"})
    assert res.status_code == 400

    res = client.put(url, headers=seller_headers, json={"status": "delivered"})
    assert res.json()["order"]["orderStatus"] == "completed"
    assert notifier.to("9876500002")[-1].endswith("Status: DELIVERED")

    res = client.put(url, headers=seller_headers, json={"status": "returned"})
    assert res.status_code == 400

    res = client.delete(f"/api/v1/orders/remove/{order['id']}", headers=buyer_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Cannot delete completed or shipped orders."
    assert db["product"].find_one({"name": "Tomato Seeds"})["stock"] == 3


def test_cancel_then_reorder(client, db, market):
    _, buyer_headers = market["buyer"]
    product_id = market["product"]["id"]
    order = place(client, buyer_headers, product_id).json()["order"]
    url = f"/api/v1/orders/{order['id']}/item/{order['items'][0]['id']}/status"

    res = client.put(url, headers=buyer_headers, json={"status": "cancelled"})

    item = res.json()["order"]["items"][0]
    assert item["canReorder"] is True
    assert res.json()["order"]["orderStatus"] == "cancelled"
    assert db["product"].find_one({"name": "Tomato Seeds"})["stock"] == 5
    assert place(client, buyer_headers, product_id).status_code == 201


def test_status_update_by_stranger_is_forbidden(client, market, signup):
    _, buyer_headers = market["buyer"]
    order = place(client, buyer_headers, market["product"]["id"]).json()["order"]
    _, stranger = signup("Ravi", role="seller")

    res = client.put(f"/api/v1/orders/{order['id']}/item/{order['items'][0]['id']}/status",
                     headers=stranger, json={"status": "shipped"})
    assert res.status_code == 403


def test_delete_order_over_http(client, db, notifier, market):
    _, buyer_headers = market["buyer"]
    _, seller_headers = market["seller"]
    order = place(client, buyer_headers, market["product"]["id"]).json()["order"]

    assert client.delete(f"/api/v1/orders/remove/{order['id']}", headers=seller_headers).status_code == 403

    res = client.delete(f"/api/v1/orders/remove/{order['id']}", headers=buyer_headers)
    assert res.status_code == 200
    assert db["order"].count_documents({}) == 0
    assert db["product"].find_one({"name": "Tomato Seeds"})["stock"] == 5
    assert "Buyer Meena canceled" in notifier.to("9876500001")[-1]

    assert client.delete(f"/api/v1/orders/remove/{order['id']}", headers=buyer_headers).status_code == 404


def test_detect_disease_relays_prediction(client, signup, monkeypatch):
    _, headers = signup("Meena")
    calls = []

    def fake_prediction(path, filename=None):
        calls.append(filename)
        return PredictionResult(payload={"predicted_class": "Tomato___Late_blight", "confidence_percent": 97.1})

    monkeypatch.setattr(main, "run_prediction", fake_prediction)

    res = client.post("/api/v1/ml/detect-disease", headers=headers,
                      files={"plantImage": ("leaf.jpg", b"\xff\xd8\xff", "image/jpeg")})

    assert res.status_code == 200
    assert res.json()["success"] is True
    assert res.json()["predicted_class"] == "Tomato___Late_blight"
    assert calls == ["leaf.jpg"]


def test_detect_disease_failure_status(client, signup, monkeypatch):
    _, headers = signup("Meena")
    failure = RelayFailure(kind="unreachable", status_code=503, message="Could not connect to the ML service.")
    monkeypatch.setattr(main, "run_prediction", lambda path, filename=None: PredictionResult(failure=failure))

    res = client.post("/api/v1/ml/detect-disease", headers=headers,
                      files={"plantImage": ("leaf.jpg", b"\xff\xd8\xff", "image/jpeg")})

    assert res.status_code == 503
    assert res.json() == {"success": False, "message": "Could not connect to the ML service."}


def test_detect_disease_requires_image(client, signup):
    _, headers = signup("Meena")
    res = client.post("/api/v1/ml/detect-disease", headers=headers)
    assert res.status_code == 400
    assert res.json()["message"] == "No image file provided in the request body."

import re
from datetime import datetime, timedelta

import pytest
from bson import ObjectId

import notifications
import tracking
from conftest import ADDRESS, CUSTOMER


@pytest.fixture
def place_order(client, auth_headers, make_product):
    client.post("/api/addresses", json=ADDRESS, headers=auth_headers)

    def _place(quantity=1, **overrides):
        product = overrides.pop("product", None) or make_product(price=120.0)
        payload = {"items": [{"productId": str(product["_id"]), "quantity": quantity}], "shippingCost": 7, **overrides}
        r = client.post("/api/customer-orders", json=payload, headers=auth_headers)
        assert r.status_code == 201, r.text
        return r.json()
    return _place


def test_identifiers():
    assert re.fullmatch(r"ORD-\d{13}-0042", tracking.generate_order_number(41))
    assert re.fullmatch(r"TRK-\d{13}-[A-Z0-9]{6}", tracking.generate_tracking_code())


def test_estimated_delivery():
    start = datetime(2025, 6, 1, 10, 0)
    assert tracking.estimated_delivery(False, start) == start + timedelta(days=4)
    assert tracking.estimated_delivery(True, start) == start + timedelta(days=2)


def test_is_delayed():
    past = datetime.utcnow() - timedelta(days=1)
    assert tracking.is_delayed({"estimatedDelivery": past, "status": "shipped"})
    assert not tracking.is_delayed({"estimatedDelivery": past, "status": "delivered"})
    assert not tracking.is_delayed({"status": "pending"})


def test_order_requires_address(client, auth_headers, make_product):
    payload = {"items": [{"productId": str(make_product()["_id"]), "quantity": 1}]}
    r = client.post("/api/customer-orders", json=payload, headers=auth_headers)
    assert r.status_code == 400


def test_create_order(place_order, db):
    order = place_order(quantity=3)
    assert order["status"] == "pending"
    assert order["orderNumber"].startswith("ORD-")
    assert order["trackingCode"].startswith("TRK-")
    assert order["totalAmount"] == 367.0
    assert order["customer"]["email"] == CUSTOMER["email"]
    assert order["customer"]["address"]["city"] == "Sousse"
    assert [h["status"] for h in order["statusHistory"]] == ["pending"]

    product = db["product"].find_one({"_id": tracking_product_id(order)})
    assert product["stockQuantity"] == 7


def tracking_product_id(order):
    return ObjectId(order["items"][0]["productId"])


def test_order_depletes_stock(place_order, make_product, db):
    product = make_product(stockQuantity=2)
    place_order(quantity=2, product=product)
    stored = db["product"].find_one({"_id": product["_id"]})
    assert stored["stockQuantity"] == 0
    assert stored["inStock"] is False


def test_order_rejects_insufficient_stock(client, auth_headers, place_order, make_product):
    product = make_product(stockQuantity=1)
    payload = {"items": [{"productId": str(product["_id"]), "quantity": 5}]}
    r = client.post("/api/customer-orders", json=payload, headers=auth_headers)
    assert r.status_code == 400
    assert "Insufficient stock" in r.json()["detail"]


def test_customer_orders(client, auth_headers, place_order):
    first = place_order()
    second = place_order()
    orders = client.get("/api/customer-orders", headers=auth_headers).json()["orders"]
    assert [o["id"] for o in orders] == [second["id"], first["id"]]

    summaries = client.get("/api/tracking/customer/orders", headers=auth_headers).json()
    assert summaries["total"] == 2
    assert summaries["orders"][0]["statusLabel"] == "Commande reçue"


def test_track_by_code_and_number(client, place_order):
    order = place_order()
    by_code = client.get(f"/api/tracking/{order['trackingCode']}")
    assert by_code.status_code == 200
    view = by_code.json()
    assert view["order"]["orderNumber"] == order["orderNumber"]
    assert view["order"]["progressPercentage"] == 20
    assert view["order"]["customer"] == {"name": "Amira Ben Salah", "city": "Sousse"}
    assert [step["completed"] for step in view["timeline"]] == [True, False, False, False, False]
    assert view["tracking"]["totalEvents"] == 1

    by_number = client.get(f"/api/tracking/{order['orderNumber']}")
    assert by_number.json()["order"]["trackingCode"] == order["trackingCode"]


def test_track_unknown(client):
    r = client.get("/api/tracking/TRK-0-NOPE00")
    assert r.status_code == 404
    assert r.json()["detail"].startswith("Commande non trouvée")


def test_status_update(client, place_order, admin_headers, auth_headers):
    order = place_order()
    url = f"/api/orders/{order['id']}/status"
    assert client.put(url, json={"status": "shipped"}, headers=auth_headers).status_code == 403
    assert client.put(url, json={"status": "lost"}, headers=admin_headers).status_code == 400

    r = client.put(url, json={"status": "shipped", "location": "Sfax"}, headers=admin_headers)
    assert r.status_code == 200
    updated = r.json()
    assert updated["status"] == "shipped"
    assert updated["statusHistory"][-1]["location"] == "Sfax"
    assert updated["statusHistory"][-1]["adminName"] == "Admin"

    view = client.get(f"/api/tracking/{order['trackingCode']}").json()
    assert view["order"]["progressPercentage"] == 40
    assert view["tracking"]["lastUpdate"]["status"] == "shipped"

    delivered = client.put(url, json={"status": "delivered"}, headers=admin_headers).json()
    assert delivered["actualDelivery"]


def test_status_update_unknown_order(client, admin_headers):
    r = client.put("/api/orders/64b000000000000000000000/status", json={"status": "shipped"}, headers=admin_headers)
    assert r.status_code == 404


def test_search_by_email(client, place_order):
    order = place_order()
    r = client.post("/api/tracking/search", json={"email": CUSTOMER["email"].upper()})
    assert r.status_code == 200
    assert [o["orderNumber"] for o in r.json()["orders"]] == [order["orderNumber"]]

    narrowed = client.post("/api/tracking/search", json={"email": CUSTOMER["email"], "orderNumber": "ORD-0-0000"})
    assert narrowed.status_code == 404
    assert client.post("/api/tracking/search", json={"email": "ghost@example.com"}).status_code == 404


def test_duplicate_lines_cannot_oversell(client, auth_headers, place_order, make_product, db):
    product = make_product(stockQuantity=1)
    line = {"productId": str(product["_id"]), "quantity": 1}
    r = client.post("/api/customer-orders", json={"items": [line, line]}, headers=auth_headers)
    assert r.status_code == 400
    stored = db["product"].find_one({"_id": product["_id"]})
    assert stored["stockQuantity"] == 1
    assert stored["inStock"] is True
    assert db["order"].count_documents({}) == 0


def test_reserve_and_release_stock(make_product, db):
    product = make_product(stockQuantity=3)
    pid = str(product["_id"])
    assert tracking.reserve_stock(pid, 3)
    assert not tracking.reserve_stock(pid, 1)
    assert db["product"].find_one({"_id": product["_id"]})["inStock"] is False

    tracking.release_stock(pid, 2)
    stored = db["product"].find_one({"_id": product["_id"]})
    assert stored["stockQuantity"] == 2
    assert stored["inStock"] is True


# Status notifications

def test_status_change_notifies_customer(client, place_order, admin_headers, db):
    order = place_order()
    r = client.put(f"/api/orders/{order['id']}/status", json={"status": "confirmed"}, headers=admin_headers)
    assert r.status_code == 200

    logs = list(db["notificationlog"].find({"orderId": order["id"]}))
    assert {log["type"] for log in logs} == {"email", "sms", "push"}
    assert all(log["category"] == "order_update" for log in logs)
    email = next(log for log in logs if log["type"] == "email")
    assert email["status"] == "sent"
    assert email["priority"] == "normal"
    assert order["orderNumber"] in email["title"]


def test_status_notification_can_be_skipped(client, place_order, admin_headers, db):
    order = place_order()
    url = f"/api/orders/{order['id']}/status"
    client.put(url, json={"status": "confirmed", "sendNotification": False}, headers=admin_headers)
    assert db["notificationlog"].count_documents({}) == 0

    client.put(url, json={"status": "confirmed"}, headers=admin_headers)
    assert db["notificationlog"].count_documents({}) == 0


def test_delivery_notification_is_high_priority(client, place_order, admin_headers, db):
    order = place_order()
    client.put(f"/api/orders/{order['id']}/status", json={"status": "delivered"}, headers=admin_headers)
    email = db["notificationlog"].find_one({"orderId": order["id"], "type": "email"})
    assert email["priority"] == "high"
    assert email["message"].endswith("delivered")


def test_notification_failure_keeps_status_update(client, place_order, admin_headers, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("mail relay down")

    monkeypatch.setattr(notifications, "send_order_status_update", broken)
    order = place_order()
    r = client.put(f"/api/orders/{order['id']}/status", json={"status": "shipped"}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["status"] == "shipped"


# Customer order detail, cancellation and stats

def test_order_detail_is_scoped_to_owner(client, place_order, auth_headers, register_customer):
    order = place_order()
    r = client.get(f"/api/customer-orders/{order['id']}", headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["order"]["orderNumber"] == order["orderNumber"]

    other = register_customer(email="sami@example.com")
    other_headers = {"Authorization": f"Bearer {other['token']}"}
    assert client.get(f"/api/customer-orders/{order['id']}", headers=other_headers).status_code == 404
    assert client.get("/api/customer-orders/not-an-id", headers=auth_headers).status_code == 404


def test_cancel_pending_order(client, place_order, auth_headers, make_product, db):
    product = make_product(stockQuantity=4)
    order = place_order(quantity=4, product=product)
    assert db["product"].find_one({"_id": product["_id"]})["inStock"] is False

    r = client.post(f"/api/customer-orders/{order['id']}/cancel", json={"reason": "Erreur de modèle"},
                    headers=auth_headers)
    assert r.status_code == 200
    data = r.json()
    assert data["message"] == "Order cancelled successfully"
    assert data["order"]["status"] == "cancelled"
    assert data["order"]["notes"] == "Cancellation reason: Erreur de modèle"
    last = data["order"]["statusHistory"][-1]
    assert last["status"] == "cancelled"
    assert last["updatedBy"] == "customer"

    stored = db["product"].find_one({"_id": product["_id"]})
    assert stored["stockQuantity"] == 4
    assert stored["inStock"] is True

    again = client.post(f"/api/customer-orders/{order['id']}/cancel", headers=auth_headers)
    assert again.status_code == 400
    assert db["product"].find_one({"_id": product["_id"]})["stockQuantity"] == 4


def test_cancel_without_body(client, place_order, auth_headers):
    order = place_order()
    r = client.post(f"/api/customer-orders/{order['id']}/cancel", headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["order"]["notes"] is None


def test_shipped_order_cannot_be_cancelled(client, place_order, auth_headers, admin_headers, db):
    order = place_order(quantity=2)
    client.put(f"/api/orders/{order['id']}/status", json={"status": "shipped"}, headers=admin_headers)
    r = client.post(f"/api/customer-orders/{order['id']}/cancel", headers=auth_headers)
    assert r.status_code == 400
    assert r.json()["detail"] == "Order cannot be cancelled at this stage"
    assert db["order"].find_one({"_id": ObjectId(order["id"])})["status"] == "shipped"
    assert db["product"].find_one({"_id": tracking_product_id(order)})["stockQuantity"] == 8


def test_customer_order_stats(client, place_order, auth_headers):
    first = place_order()
    place_order()
    client.post(f"/api/customer-orders/{first['id']}/cancel", headers=auth_headers)

    data = client.get("/api/customer-orders/stats", headers=auth_headers).json()
    assert data["stats"]["totalOrders"] == 2
    assert data["stats"]["totalSpent"] == 254.0
    assert data["stats"]["averageOrderValue"] == 127.0
    assert data["stats"]["statusBreakdown"] == {"pending": 1, "cancelled": 1}
    assert len(data["recentOrders"]) == 2


def test_empty_order_stats(client, auth_headers):
    stats = client.get("/api/customer-orders/stats", headers=auth_headers).json()["stats"]
    assert stats == {"totalOrders": 0, "totalSpent": 0, "averageOrderValue": 0, "statusBreakdown": {}}


def test_tracking_customer_stats(client, place_order, auth_headers, admin_headers):
    delivered = place_order()
    place_order()
    client.put(f"/api/orders/{delivered['id']}/status", json={"status": "delivered"}, headers=admin_headers)

    data = client.get("/api/tracking/customer/stats", headers=auth_headers).json()
    assert data["totalOrders"] == 2
    assert data["activeOrders"] == 1
    assert data["statusBreakdown"]["delivered"] == {"count": 1, "totalAmount": 127.0}
    assert data["deliveryPerformance"] == {"totalDelivered": 1, "onTimeDeliveries": 1, "onTimePercentage": 100}

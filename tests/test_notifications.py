from datetime import datetime

import pytest

import notifications

SUBSCRIPTION = {
    "endpoint": "https://push.example.com/send/abc123",
    "expirationTime": None,
    "keys": {"p256dh": "BNcRdreALRFXTkOOUHK1EtK2wtaz5Ry4YfYCA", "auth": "tBHItJI5svbpez7KI4CCXg"},
}


@pytest.fixture
def vapid(monkeypatch):
    monkeypatch.setattr(notifications, "VAPID_PUBLIC_KEY", "BPublicKey")
    monkeypatch.setattr(notifications, "VAPID_PRIVATE_KEY", "private")


def test_vapid_key_unconfigured(client):
    r = client.get("/api/notifications/vapid-public-key")
    assert r.status_code == 503


def test_vapid_key(client, vapid):
    r = client.get("/api/notifications/vapid-public-key")
    assert r.json() == {"publicKey": "BPublicKey"}


def test_default_preferences(client, auth_headers):
    prefs = client.get("/api/notifications/preferences", headers=auth_headers).json()
    assert prefs["email"]["enabled"] is True
    assert prefs["sms"]["urgentOnly"] is True
    assert prefs["push"]["enabled"] is False
    assert prefs["timezone"] == "Africa/Tunis"
    assert prefs["pushSubscriptions"] == []


def test_partial_preference_update(client, auth_headers):
    r = client.put("/api/notifications/preferences",
                   json={"email": {"promotions": False}, "quietHours": {"enabled": True, "start": "23:00"}},
                   headers=auth_headers)
    assert r.status_code == 200
    prefs = r.json()
    assert prefs["email"]["promotions"] is False
    assert prefs["email"]["orderUpdates"] is True
    assert prefs["quietHours"] == {"enabled": True, "start": "23:00", "end": "08:00"}


def test_preference_time_validation(client, auth_headers):
    r = client.put("/api/notifications/preferences", json={"quietHours": {"start": "25:00"}}, headers=auth_headers)
    assert r.status_code == 400
    assert r.json()["errors"][0]["field"] == "quietHours.start"


def test_subscribe_and_unsubscribe(client, auth_headers):
    r = client.post("/api/notifications/push/subscribe", json={"subscription": SUBSCRIPTION}, headers=auth_headers)
    assert r.status_code == 200
    client.post("/api/notifications/push/subscribe", json={"subscription": SUBSCRIPTION}, headers=auth_headers)

    prefs = client.get("/api/notifications/preferences", headers=auth_headers).json()
    assert prefs["push"]["enabled"] is True
    assert [s["endpoint"] for s in prefs["pushSubscriptions"]] == [SUBSCRIPTION["endpoint"]]

    r = client.post("/api/notifications/push/unsubscribe", json={"endpoint": SUBSCRIPTION["endpoint"]},
                    headers=auth_headers)
    assert r.status_code == 200
    prefs = client.get("/api/notifications/preferences", headers=auth_headers).json()
    assert prefs["pushSubscriptions"] == []
    assert prefs["push"]["enabled"] is False


def test_subscribe_rejects_insecure_endpoint(client, auth_headers):
    bad = {**SUBSCRIPTION, "endpoint": "http://push.example.com/x"}
    r = client.post("/api/notifications/push/subscribe", json={"subscription": bad}, headers=auth_headers)
    assert r.status_code == 400


def test_unsubscribe_without_preferences(client, auth_headers):
    r = client.post("/api/notifications/push/unsubscribe", json={"endpoint": SUBSCRIPTION["endpoint"]},
                    headers=auth_headers)
    assert r.status_code == 400
    assert r.json()["detail"] == "No preferences found"


def test_test_channels_without_push(client, auth_headers):
    results = client.post("/api/notifications/test", headers=auth_headers).json()["results"]
    assert results["email"] == {"success": True, "error": None}
    assert results["sms"]["success"] is False
    assert results["push"] == {"success": False, "error": "Push notifications not configured"}


def test_test_channels_with_push(client, auth_headers, vapid):
    client.post("/api/notifications/push/subscribe", json={"subscription": SUBSCRIPTION}, headers=auth_headers)
    results = client.post("/api/notifications/test", headers=auth_headers).json()["results"]
    assert results["push"]["success"] is True


def test_history_and_stats(client, auth_headers):
    client.post("/api/notifications/test", headers=auth_headers)
    client.post("/api/notifications/test", headers=auth_headers)

    history = client.get("/api/notifications/history", headers=auth_headers).json()
    assert history["pagination"]["total"] == 6
    emails = client.get("/api/notifications/history", params={"type": "email", "limit": 1}, headers=auth_headers).json()
    assert emails["pagination"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}
    assert emails["notifications"][0]["status"] == "sent"

    stats = client.get("/api/notifications/stats", headers=auth_headers).json()
    assert stats == [
        {"type": "email", "total": 2, "sent": 2, "failed": 0},
        {"type": "push", "total": 2, "sent": 0, "failed": 2},
        {"type": "sms", "total": 2, "sent": 0, "failed": 2},
    ]


def test_history_rejects_unknown_type(client, auth_headers):
    r = client.get("/api/notifications/history", params={"type": "pigeon"}, headers=auth_headers)
    assert r.status_code == 400


@pytest.mark.parametrize("hour,minute,expected", [
    (23, 30, True),
    (2, 0, True),
    (7, 59, True),
    (8, 0, False),
    (12, 0, False),
])
def test_quiet_hours_wrapping_midnight(hour, minute, expected):
    prefs = {"quietHours": {"enabled": True, "start": "22:00", "end": "08:00"}}
    assert notifications.in_quiet_hours(prefs, datetime(2025, 6, 1, hour, minute)) is expected


def test_quiet_hours_same_day_and_disabled():
    window = {"enabled": True, "start": "12:00", "end": "14:00"}
    assert notifications.in_quiet_hours({"quietHours": window}, datetime(2025, 6, 1, 13, 0))
    assert not notifications.in_quiet_hours({"quietHours": window}, datetime(2025, 6, 1, 15, 0))
    assert not notifications.in_quiet_hours({"quietHours": {**window, "enabled": False}}, datetime(2025, 6, 1, 13, 0))


def test_sms_urgent_only():
    prefs = {"sms": {"enabled": True, "orderUpdates": True, "urgentOnly": True}}
    assert not notifications.can_receive(prefs, "sms", "order_update", "normal")
    assert notifications.can_receive(prefs, "sms", "order_update", "urgent")


def test_quiet_hours_block_delivery(auth_headers, client, monkeypatch):
    monkeypatch.setattr(notifications, "in_quiet_hours", lambda prefs, now=None: True)
    results = client.post("/api/notifications/test", headers=auth_headers).json()["results"]
    assert {r["error"] for r in results.values()} == {"Quiet hours"}

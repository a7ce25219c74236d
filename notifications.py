"""
Notification preferences, push-subscription storage and the notification log
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from database import get_db, serialize_doc
from schemas import NotificationLog, NotificationPreferences
from settings import VAPID_PRIVATE_KEY, VAPID_PUBLIC_KEY

logger = logging.getLogger(__name__)

CHANNELS = ("email", "sms", "push")
CATEGORY_FLAGS = {
    "order_update": "orderUpdates",
    "delivery": "deliveryUpdates",
    "promotion": "promotions",
    "newsletter": "newsletter",
}


def get_vapid_public_key() -> Optional[str]:
    if VAPID_PUBLIC_KEY and VAPID_PRIVATE_KEY:
        return VAPID_PUBLIC_KEY
    return None


def get_or_create_preferences(customer_id: str) -> dict:
    collection = get_db()["notificationpreferences"]
    prefs = collection.find_one({"customer": customer_id})
    if prefs is None:
        doc = NotificationPreferences(customer=customer_id).model_dump()
        now = datetime.utcnow()
        doc.update({"createdAt": now, "updatedAt": now})
        collection.insert_one(doc)
        prefs = collection.find_one({"customer": customer_id})
    return prefs


def update_preferences(customer_id: str, updates: Dict[str, dict]) -> dict:
    """Apply a nested partial update; unknown keys are ignored."""
    prefs = get_or_create_preferences(customer_id)
    changes = {}
    for section, values in updates.items():
        current = prefs.get(section)
        if isinstance(values, dict) and isinstance(current, dict):
            for key, value in values.items():
                if key in current:
                    changes[f"{section}.{key}"] = value
        elif section == "timezone" and isinstance(values, str):
            changes["timezone"] = values
    if changes:
        changes["updatedAt"] = datetime.utcnow()
        get_db()["notificationpreferences"].update_one({"_id": prefs["_id"]}, {"$set": changes})
    return get_db()["notificationpreferences"].find_one({"_id": prefs["_id"]})


def subscribe_push(customer_id: str, subscription: dict) -> dict:
    prefs = get_or_create_preferences(customer_id)
    entry = {**subscription, "isActive": True, "lastUsed": datetime.utcnow()}
    subscriptions = [s for s in prefs.get("pushSubscriptions", []) if s.get("endpoint") != subscription["endpoint"]]
    subscriptions.append(entry)
    get_db()["notificationpreferences"].update_one(
        {"_id": prefs["_id"]},
        {"$set": {"pushSubscriptions": subscriptions, "push.enabled": True, "updatedAt": datetime.utcnow()}},
    )
    logger.info("Customer %s subscribed to push (%d devices)", customer_id, len(subscriptions))
    return {"message": "Successfully subscribed to push notifications"}


def unsubscribe_push(customer_id: str, endpoint: str) -> Optional[dict]:
    prefs = get_db()["notificationpreferences"].find_one({"customer": customer_id})
    if prefs is None:
        return None
    subscriptions = [s for s in prefs.get("pushSubscriptions", []) if s.get("endpoint") != endpoint]
    changes = {"pushSubscriptions": subscriptions, "updatedAt": datetime.utcnow()}
    if not subscriptions:
        changes["push.enabled"] = False
    get_db()["notificationpreferences"].update_one({"_id": prefs["_id"]}, {"$set": changes})
    return {"message": "Successfully unsubscribed from push notifications"}


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def in_quiet_hours(prefs: dict, now: Optional[datetime] = None) -> bool:
    quiet = prefs.get("quietHours") or {}
    if not quiet.get("enabled"):
        return False
    now = now or datetime.utcnow()
    current = now.hour * 60 + now.minute
    start, end = _minutes(quiet["start"]), _minutes(quiet["end"])
    if start <= end:
        return start <= current < end
    # window wraps midnight
    return current >= start or current < end


def can_receive(prefs: dict, channel: str, category: str, priority: str = "normal") -> bool:
    settings = prefs.get(channel) or {}
    if not settings.get("enabled"):
        return False
    if channel == "sms" and settings.get("urgentOnly") and priority not in ("high", "urgent"):
        return False
    if channel == "push" and not prefs.get("pushSubscriptions"):
        return False
    flag = CATEGORY_FLAGS.get(category)
    if flag is not None and flag in settings:
        return bool(settings[flag])
    return True


def log_notification(customer_id: str, channel: str, notification: dict, status: str, reason: Optional[str] = None) -> dict:
    doc = NotificationLog(
        customer=customer_id,
        type=channel,
        category=notification["category"],
        title=notification["title"][:100],
        message=notification["message"][:500],
        status=status,
        failureReason=reason,
        priority=notification.get("priority", "normal"),
        orderId=notification.get("orderId"),
        sentAt=datetime.utcnow() if status == "sent" else None,
    ).model_dump()
    doc["createdAt"] = datetime.utcnow()
    result = get_db()["notificationlog"].insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


def send_notification(customer_id: str, notification: dict, channels: Iterable[str]) -> dict:
    """Record one delivery attempt per channel.

    Delivery providers live outside this service; a channel is marked sent
    when preferences allow it and failed with a reason otherwise.
    """
    prefs = get_or_create_preferences(customer_id)
    quiet = in_quiet_hours(prefs) and notification.get("priority") != "urgent"
    results = {}
    for channel in channels:
        if quiet:
            entry = log_notification(customer_id, channel, notification, "failed", "Quiet hours")
        elif channel == "push" and get_vapid_public_key() is None:
            entry = log_notification(customer_id, channel, notification, "failed", "Push notifications not configured")
        elif not can_receive(prefs, channel, notification["category"], notification.get("priority", "normal")):
            entry = log_notification(customer_id, channel, notification, "failed", "Disabled by customer preferences")
        else:
            entry = log_notification(customer_id, channel, notification, "sent")
        results[channel] = {"success": entry["status"] == "sent", "error": entry["failureReason"]}
    return {"results": results}


def send_order_status_update(order: dict, previous_status: str, channels: Iterable[str] = CHANNELS) -> Optional[dict]:
    if not order.get("customerId"):
        logger.info("Order %s has no customer, skipping notifications", order["orderNumber"])
        return None
    notification = {
        "orderId": str(order["_id"]),
        "category": "order_update",
        "title": f"Mise à jour commande {order['orderNumber']}",
        "message": f"Votre commande a été mise à jour: {order['status']}",
        "previousStatus": previous_status,
        "priority": "high" if order["status"] == "delivered" else "normal",
    }
    return send_notification(order["customerId"], notification, channels)


def test_all_channels(customer_id: str) -> dict:
    notification = {
        "category": "test",
        "title": "Test de notification STES",
        "message": "Ceci est un test de notification depuis STES Piscines",
        "priority": "low",
    }
    return send_notification(customer_id, notification, CHANNELS)


def notification_history(customer_id: str, page: int = 1, limit: int = 20, type: Optional[str] = None,
                         category: Optional[str] = None, status: Optional[str] = None) -> dict:
    query = {"customer": customer_id}
    if type:
        query["type"] = type
    if category:
        query["category"] = category
    if status:
        query["status"] = status
    logs = get_db()["notificationlog"]
    cursor = logs.find(query).sort([("createdAt", -1), ("_id", -1)]).skip((page - 1) * limit).limit(limit)
    total = logs.count_documents(query)
    return {
        "notifications": [serialize_doc(n) for n in cursor],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
    }


def notification_stats(customer_id: str, days: int = 30) -> List[dict]:
    since = datetime.utcnow() - timedelta(days=days)
    stats: Dict[str, dict] = {}
    for log in get_db()["notificationlog"].find({"customer": customer_id, "createdAt": {"$gte": since}}):
        entry = stats.setdefault(log["type"], {"type": log["type"], "total": 0, "sent": 0, "failed": 0})
        entry["total"] += 1
        if log["status"] in ("sent", "failed"):
            entry[log["status"]] += 1
    return sorted(stats.values(), key=lambda s: s["type"])

"""
Order numbers, tracking codes, the delivery timeline, stock reservation
and per-customer order statistics
"""
import logging
import random
import string
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from database import get_db, to_object_id

logger = logging.getLogger(__name__)

TIMELINE_STATUSES = ["pending", "confirmed", "processing", "shipped", "delivered"]
CLOSED_STATUSES = ("delivered", "cancelled")

STATUS_LABELS = {
    "pending": "Commande reçue",
    "confirmed": "Confirmée",
    "processing": "En préparation",
    "shipped": "Expédiée",
    "delivered": "Livrée",
    "cancelled": "Annulée",
}

STATUS_NOTES = {
    "pending": "Commande en attente de confirmation",
    "confirmed": "Commande confirmée et en cours de préparation",
    "processing": "Commande en cours de préparation",
    "shipped": "Commande expédiée et en route",
    "delivered": "Commande livrée avec succès",
    "cancelled": "Commande annulée",
}

STATUS_LOCATIONS = {
    "pending": "STES - Centre de traitement",
    "confirmed": "STES - Entrepôt",
    "processing": "STES - Entrepôt",
    "shipped": "En transit",
    "delivered": "Adresse de livraison",
    "cancelled": "STES - Centre de traitement",
}


def _millis() -> int:
    return int(time.time() * 1000)


def generate_order_number(existing_count: int) -> str:
    return f"ORD-{_millis()}-{existing_count + 1:04d}"


def generate_tracking_code() -> str:
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"TRK-{_millis()}-{suffix}"


def status_label(status: str) -> str:
    return STATUS_LABELS.get(status, status)


def status_event(status: str, note: Optional[str] = None, location: Optional[str] = None, updated_by: str = "admin") -> dict:
    return {
        "status": status,
        "timestamp": datetime.utcnow(),
        "note": note or STATUS_NOTES.get(status, "Statut mis à jour"),
        "location": location or STATUS_LOCATIONS.get(status, STATUS_LOCATIONS["pending"]),
        "updatedBy": updated_by,
    }


def estimated_delivery(is_urgent: bool, start: Optional[datetime] = None) -> datetime:
    return (start or datetime.utcnow()) + timedelta(days=2 if is_urgent else 4)


def timeline(order: dict) -> List[dict]:
    history = order.get("statusHistory", [])
    steps = []
    for status in TIMELINE_STATUSES:
        entry = next((h for h in history if h["status"] == status), None)
        steps.append({
            "status": status,
            "label": status_label(status),
            "completed": entry is not None,
            "current": order.get("status") == status,
            "timestamp": entry["timestamp"] if entry else None,
            "note": entry.get("note") if entry else None,
            "location": entry.get("location") if entry else None,
        })
    return steps


def is_delayed(order: dict, now: Optional[datetime] = None) -> bool:
    eta = order.get("estimatedDelivery")
    return bool(eta and (now or datetime.utcnow()) > eta and order.get("status") not in CLOSED_STATUSES)


def find_order(identifier: str) -> Optional[dict]:
    orders = get_db()["order"]
    if identifier.startswith("TRK-"):
        return orders.find_one({"trackingCode": identifier})
    if identifier.startswith("ORD-"):
        return orders.find_one({"orderNumber": identifier})
    return orders.find_one({"trackingCode": identifier}) or orders.find_one({"orderNumber": identifier})


def tracking_view(order: dict) -> dict:
    """Public tracking payload; the full delivery address is withheld."""
    steps = timeline(order)
    completed = sum(1 for s in steps if s["completed"])
    history = sorted(order.get("statusHistory", []), key=lambda h: h["timestamp"], reverse=True)
    customer = order.get("customer", {})
    return {
        "order": {
            "orderNumber": order["orderNumber"],
            "trackingCode": order["trackingCode"],
            "status": order["status"],
            "statusLabel": status_label(order["status"]),
            "createdAt": order.get("createdAt"),
            "estimatedDelivery": order.get("estimatedDelivery"),
            "actualDelivery": order.get("actualDelivery"),
            "isUrgent": order.get("isUrgent", False),
            "isDelayed": is_delayed(order),
            "progressPercentage": round(completed / len(steps) * 100),
            "totalAmount": order.get("totalAmount"),
            "totalItems": sum(item["quantity"] for item in order.get("items", [])),
            "customer": {
                "name": customer.get("name"),
                "city": (customer.get("address") or {}).get("city"),
            },
            "items": [
                {"name": i["name"], "quantity": i["quantity"], "price": i["price"], "image": i.get("image")}
                for i in order.get("items", [])
            ],
        },
        "timeline": steps,
        "tracking": {
            "lastUpdate": history[0] if history else None,
            "totalEvents": len(history),
            "history": history,
        },
    }


def order_summary(order: dict) -> dict:
    return {
        "id": str(order["_id"]),
        "orderNumber": order["orderNumber"],
        "trackingCode": order["trackingCode"],
        "status": order["status"],
        "statusLabel": status_label(order["status"]),
        "createdAt": order.get("createdAt"),
        "estimatedDelivery": order.get("estimatedDelivery"),
        "totalAmount": order.get("totalAmount"),
        "isDelayed": is_delayed(order),
    }


# Stock and cancellation

CANCELLABLE_STATUSES = ("pending", "confirmed")
ACTIVE_STATUSES = ("pending", "confirmed", "processing", "shipped")


class OrderNotCancellable(Exception):
    pass


def reserve_stock(product_id: str, quantity: int) -> bool:
    """Take `quantity` units in one conditional update; False when not enough remain."""
    products = get_db()["product"]
    oid = to_object_id(product_id)
    result = products.update_one(
        {"_id": oid, "inStock": True, "stockQuantity": {"$gte": quantity}},
        {"$inc": {"stockQuantity": -quantity}},
    )
    if result.modified_count == 0:
        return False
    products.update_one({"_id": oid, "stockQuantity": {"$lte": 0}}, {"$set": {"inStock": False}})
    return True


def release_stock(product_id: str, quantity: int) -> None:
    products = get_db()["product"]
    oid = to_object_id(product_id)
    products.update_one({"_id": oid}, {"$inc": {"stockQuantity": quantity}})
    products.update_one({"_id": oid, "stockQuantity": {"$gt": 0}}, {"$set": {"inStock": True}})


def cancel_order(order: dict, reason: Optional[str] = None) -> dict:
    if order["status"] not in CANCELLABLE_STATUSES:
        raise OrderNotCancellable("Order cannot be cancelled at this stage")
    note = f"Annulée par le client: {reason}" if reason else "Annulée par le client"
    update = {"status": "cancelled", "updatedAt": datetime.utcnow()}
    if reason:
        previous = order.get("notes")
        line = f"Cancellation reason: {reason}"
        update["notes"] = f"{previous}\n{line}" if previous else line

    orders = get_db()["order"]
    # the status condition keeps two concurrent cancels from releasing stock twice
    result = orders.update_one(
        {"_id": order["_id"], "status": {"$in": list(CANCELLABLE_STATUSES)}},
        {"$set": update, "$push": {"statusHistory": status_event("cancelled", note, updated_by="customer")}},
    )
    if result.modified_count == 0:
        raise OrderNotCancellable("Order cannot be cancelled at this stage")
    for item in order.get("items", []):
        release_stock(item["productId"], item["quantity"])
    logger.info("Order %s cancelled by customer %s", order["orderNumber"], order.get("customerId"))
    return orders.find_one({"_id": order["_id"]})


# Customer statistics

def _customer_orders(customer_id: str) -> List[dict]:
    return list(get_db()["order"].find({"customerId": customer_id}).sort([("createdAt", -1), ("_id", -1)]))


def order_stats(customer_id: str) -> dict:
    orders = _customer_orders(customer_id)
    total_spent = sum(o.get("totalAmount", 0) for o in orders)
    breakdown: Dict[str, int] = {}
    for o in orders:
        breakdown[o["status"]] = breakdown.get(o["status"], 0) + 1
    return {
        "stats": {
            "totalOrders": len(orders),
            "totalSpent": round(total_spent, 2),
            "averageOrderValue": round(total_spent / len(orders), 2) if orders else 0,
            "statusBreakdown": breakdown,
        },
        "recentOrders": [order_summary(o) for o in orders[:5]],
    }


def tracking_stats(customer_id: str) -> dict:
    orders = _customer_orders(customer_id)
    breakdown: Dict[str, dict] = {}
    for o in orders:
        entry = breakdown.setdefault(o["status"], {"count": 0, "totalAmount": 0})
        entry["count"] += 1
        entry["totalAmount"] += o.get("totalAmount", 0)

    delivered = [
        o for o in orders
        if o["status"] == "delivered" and o.get("actualDelivery") and o.get("estimatedDelivery")
    ]
    on_time = sum(1 for o in delivered if o["actualDelivery"] <= o["estimatedDelivery"])
    return {
        "statusBreakdown": breakdown,
        "deliveryPerformance": {
            "totalDelivered": len(delivered),
            "onTimeDeliveries": on_time,
            "onTimePercentage": round(on_time / len(delivered) * 100) if delivered else 0,
        },
        "activeOrders": sum(1 for o in orders if o["status"] in ACTIVE_STATUSES),
        "totalOrders": len(orders),
    }

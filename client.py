"""
Python client for the storefront API

CustomerSession keeps the authenticated customer and the bearer token,
WishlistManager mirrors the server-side wishlist and NotificationBridge
drives the push-subscription lifecycle. All three share one ApiClient,
whose response hook logs the customer out on any 401 from a
customer-scoped endpoint.
"""
import base64
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional
from urllib.parse import urlparse

import requests

logger = logging.getLogger(__name__)

CUSTOMER_SCOPED_PATHS = (
    "/api/customers",
    "/api/addresses",
    "/api/wishlist",
    "/api/notifications",
    "/api/customer-orders",
    "/api/tracking/customer",
)
# a failed login is a 401 too, but there is no session to end
CREDENTIAL_PATHS = ("/api/customers/login", "/api/customers/register")


class ClientError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ApiError(ClientError):
    def __init__(self, message: str, status_code: Optional[int] = None, payload=None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class AuthenticationRequired(ClientError):
    pass


class PushNotificationError(ClientError):
    pass


def error_message(response: requests.Response, fallback: str) -> str:
    """Best-effort `message` (or FastAPI `detail`) from an error body."""
    try:
        body = response.json()
    except ValueError:
        return fallback
    if isinstance(body, dict):
        for key in ("message", "detail"):
            if isinstance(body.get(key), str):
                return body[key]
    return fallback


# Token persistence

class TokenStore:
    """In-memory token storage."""

    def __init__(self):
        self._token = None

    def get(self) -> Optional[str]:
        return self._token

    def set(self, token: str) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None


class FileTokenStore(TokenStore):
    """Keeps the token in a small JSON file so it survives restarts."""

    def __init__(self, path: str):
        super().__init__()
        self.path = path

    def get(self) -> Optional[str]:
        try:
            with open(self.path) as f:
                return json.load(f).get("customerToken")
        except (OSError, ValueError):
            return None

    def set(self, token: str) -> None:
        with open(self.path, "w") as f:
            json.dump({"customerToken": token}, f)

    def clear(self) -> None:
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass


# HTTP

class ApiClient:
    def __init__(self, base_url: str, session: Optional[requests.Session] = None, timeout: float = 10):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.hooks["response"].append(self._check_unauthorized)
        self._unauthorized_handlers: List[Callable[[requests.Response], None]] = []

    def set_token(self, token: str) -> None:
        self.session.headers["Authorization"] = f"Bearer {token}"

    def clear_token(self) -> None:
        self.session.headers.pop("Authorization", None)

    @property
    def token(self) -> Optional[str]:
        header = self.session.headers.get("Authorization")
        return header[len("Bearer "):] if header else None

    def on_unauthorized(self, handler: Callable[[requests.Response], None]) -> None:
        self._unauthorized_handlers.append(handler)

    def _check_unauthorized(self, response, *args, **kwargs):
        if response.status_code != 401:
            return
        path = urlparse(response.url).path
        if path.startswith(CREDENTIAL_PATHS) or not path.startswith(CUSTOMER_SCOPED_PATHS):
            return
        for handler in self._unauthorized_handlers:
            handler(response)

    def request(self, method: str, path: str, **kwargs):
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self.session.request(method, f"{self.base_url}{path}", **kwargs)
        except requests.RequestException as e:
            logger.error("%s %s failed: %s", method, path, e)
            raise ApiError(f"Network error: {e}") from e
        if not response.ok:
            message = error_message(response, f"Request failed with status {response.status_code}")
            logger.debug("%s %s -> %s %s", method, path, response.status_code, message)
            try:
                payload = response.json()
            except ValueError:
                payload = None
            raise ApiError(message, response.status_code, payload)
        return response.json() if response.content else None

    def get(self, path: str, **kwargs):
        return self.request("GET", path, **kwargs)

    def post(self, path: str, json=None, **kwargs):
        return self.request("POST", path, json=json, **kwargs)

    def put(self, path: str, json=None, **kwargs):
        return self.request("PUT", path, json=json, **kwargs)

    def delete(self, path: str, **kwargs):
        return self.request("DELETE", path, **kwargs)


# Customer session

class CustomerSession:
    """Authenticated-customer state.

    Listeners receive "login" and "logout" events. Logout is idempotent and
    only announced when a session actually ended.
    """

    def __init__(self, api: ApiClient, token_store: Optional[TokenStore] = None):
        self.api = api
        self.token_store = token_store or TokenStore()
        self.customer: Optional[dict] = None
        self.loading = True
        self._listeners: List[Callable[[str], None]] = []
        api.on_unauthorized(self._handle_unauthorized)

        token = self.token_store.get()
        if token:
            api.set_token(token)

    @property
    def is_authenticated(self) -> bool:
        return self.customer is not None and self.token_store.get() is not None

    def add_listener(self, listener: Callable[[str], None]) -> None:
        self._listeners.append(listener)

    def _emit(self, event: str) -> None:
        for listener in self._listeners:
            listener(event)

    def _start(self, token: str, customer: dict) -> None:
        self.token_store.set(token)
        self.api.set_token(token)
        self.customer = customer
        self._emit("login")

    def _handle_unauthorized(self, response) -> None:
        logger.warning("Customer token rejected by %s, logging out", response.url)
        self.logout()

    def check_auth_status(self) -> bool:
        """Re-validate a persisted token; any failure ends the session."""
        try:
            token = self.token_store.get()
            if not token:
                return False
            self.api.set_token(token)
            data = self.api.get("/api/customers/me")
            self.customer = data["customer"]
            self._emit("login")
            return True
        except ClientError as e:
            logger.error("Auth check error: %s", e.message)
            self.logout()
            return False
        finally:
            self.loading = False

    def register(self, user_data: dict) -> dict:
        data = self.api.post("/api/customers/register", json=user_data)
        self._start(data["token"], data["customer"])
        return {"success": True, "customer": data["customer"], "message": data.get("message")}

    def login(self, credentials: dict) -> dict:
        data = self.api.post("/api/customers/login", json=credentials)
        self._start(data["token"], data["customer"])
        return {"success": True, "customer": data["customer"]}

    def logout(self) -> None:
        was_active = self.customer is not None or self.token_store.get() is not None or self.api.token is not None
        self.token_store.clear()
        self.api.clear_token()
        self.customer = None
        if was_active:
            self._emit("logout")

    def update_profile(self, profile_data: dict) -> dict:
        data = self.api.put("/api/customers/profile", json=profile_data)
        self.customer = data["customer"]
        return {"success": True, "customer": self.customer}

    def change_password(self, current_password: str, new_password: str) -> dict:
        data = self.api.put(
            "/api/customers/change-password",
            json={"currentPassword": current_password, "newPassword": new_password},
        )
        return {"success": True, "message": data["message"]}

    # Addresses

    def _set_addresses(self, addresses: List[dict]) -> List[dict]:
        if self.customer is not None:
            self.customer = {**self.customer, "addresses": addresses}
        return addresses

    def get_addresses(self) -> List[dict]:
        return self.api.get("/api/addresses")["addresses"]

    def add_address(self, address: dict) -> List[dict]:
        return self._set_addresses(self.api.post("/api/addresses", json=address)["addresses"])

    def update_address(self, address_id: str, address: dict) -> List[dict]:
        return self._set_addresses(self.api.put(f"/api/addresses/{address_id}", json=address)["addresses"])

    def delete_address(self, address_id: str) -> List[dict]:
        return self._set_addresses(self.api.delete(f"/api/addresses/{address_id}")["addresses"])

    def set_default_address(self, address_id: str) -> List[dict]:
        return self._set_addresses(self.api.put(f"/api/addresses/{address_id}/default")["addresses"])


# Wishlist

class WishlistManager:
    """Local mirror of the customer's wishlist.

    Every mutation replaces the mirror with the server's response. Calls are
    numbered; a response older than the last applied one is dropped, so
    overlapping calls cannot roll the mirror back.
    """

    def __init__(self, session: CustomerSession):
        self.session = session
        self.api = session.api
        self.wishlist: Optional[dict] = None
        self.loading = False
        self._lock = threading.Lock()
        self._issued = 0
        self._applied = 0
        session.add_listener(self._on_session_event)

    def _on_session_event(self, event: str) -> None:
        if event == "login":
            self.load_wishlist()
        elif event == "logout":
            with self._lock:
                # responses still in flight belong to the ended session
                self._issued += 1
                self._applied = self._issued
                self.wishlist = None

    def _ticket(self) -> int:
        with self._lock:
            self._issued += 1
            return self._issued

    def _apply(self, ticket: int, wishlist: Optional[dict]) -> bool:
        with self._lock:
            if ticket < self._applied:
                logger.debug("Dropping stale wishlist response %d (applied %d)", ticket, self._applied)
                return False
            self._applied = ticket
            self.wishlist = wishlist
            return True

    def _require_auth(self, message: str) -> None:
        if not self.session.is_authenticated:
            raise AuthenticationRequired(message)

    def load_wishlist(self) -> Optional[dict]:
        if not self.session.is_authenticated:
            self.wishlist = None
            return None
        ticket = self._ticket()
        self.loading = True
        try:
            self._apply(ticket, self.api.get("/api/wishlist")["wishlist"])
        except ApiError as e:
            logger.error("Error loading wishlist: %s", e.message)
            self._apply(ticket, {"items": [], "itemsCount": 0})
        finally:
            self.loading = False
        return self.wishlist

    def add_to_wishlist(self, product_id: str) -> dict:
        self._require_auth("Please login to add items to wishlist")
        ticket = self._ticket()
        data = self.api.post("/api/wishlist/items", json={"productId": product_id})
        self._apply(ticket, data["wishlist"])
        return {"success": True, "message": "Product added to wishlist"}

    def remove_from_wishlist(self, product_id: str) -> dict:
        self._require_auth("Please login to manage wishlist")
        ticket = self._ticket()
        data = self.api.delete(f"/api/wishlist/items/{product_id}")
        self._apply(ticket, data["wishlist"])
        return {"success": True, "message": "Product removed from wishlist"}

    def toggle_wishlist(self, product_id: str) -> dict:
        if self.is_in_wishlist(product_id):
            return self.remove_from_wishlist(product_id)
        return self.add_to_wishlist(product_id)

    def is_in_wishlist(self, product_id: str) -> bool:
        return any(item.get("productId") == product_id for item in self.items)

    def clear_wishlist(self) -> dict:
        self._require_auth("Please login to manage wishlist")
        ticket = self._ticket()
        data = self.api.delete("/api/wishlist")
        self._apply(ticket, data["wishlist"])
        return {"success": True, "message": "Wishlist cleared successfully"}

    def update_settings(self, settings: dict) -> dict:
        self._require_auth("Please login to manage wishlist")
        data = self.api.put("/api/wishlist/settings", json=settings)
        with self._lock:
            self.wishlist = {**(self.wishlist or {}), **data["wishlist"]}
        return {"success": True, "message": "Wishlist settings updated"}

    def check_product(self, product_id: str) -> bool:
        if not self.session.is_authenticated:
            return False
        try:
            return self.api.post("/api/wishlist/check", json={"productId": product_id})["isInWishlist"]
        except ApiError as e:
            logger.error("Error checking wishlist: %s", e.message)
            return False

    def get_public_wishlist(self, customer_id: str) -> dict:
        return self.api.get(f"/api/wishlist/public/{customer_id}")["wishlist"]

    @property
    def items(self) -> List[dict]:
        return (self.wishlist or {}).get("items") or []

    @property
    def items_count(self) -> int:
        return (self.wishlist or {}).get("itemsCount", 0)


# Push notifications

class BrowserPush(ABC):
    """The browser side of web push: service worker, PushManager and the
    Notification permission prompt."""

    @abstractmethod
    def is_supported(self) -> bool:
        ...

    @abstractmethod
    def register_service_worker(self, script_url: str) -> None:
        ...

    @abstractmethod
    def permission(self) -> str:
        """One of "default", "granted", "denied"."""

    @abstractmethod
    def request_permission(self) -> str:
        ...

    @abstractmethod
    def get_subscription(self) -> Optional[dict]:
        ...

    @abstractmethod
    def subscribe(self, application_server_key: bytes) -> dict:
        """Return the subscription JSON: {"endpoint", "keys": {"p256dh", "auth"}}."""

    @abstractmethod
    def unsubscribe(self, subscription: dict) -> bool:
        ...


def url_base64_to_bytes(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


class NotificationBridge:
    UNSUPPORTED = "unsupported"
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBED = "subscribed"

    def __init__(self, api: ApiClient, browser: BrowserPush, service_worker_url: str = "/sw.js"):
        self.api = api
        self.browser = browser
        self.service_worker_url = service_worker_url
        self.vapid_public_key: Optional[str] = None
        self.registered = False
        self.subscription: Optional[dict] = None
        self._denied = False

    @property
    def is_supported(self) -> bool:
        return self.browser.is_supported()

    @property
    def state(self) -> str:
        if not self.is_supported:
            return self.UNSUPPORTED
        return self.SUBSCRIBED if self.subscription else self.UNSUBSCRIBED

    def init(self) -> None:
        if not self.is_supported:
            logger.warning("Push notifications are not supported in this browser")
            return
        try:
            self.browser.register_service_worker(self.service_worker_url)
            self.registered = True
            self.get_vapid_public_key()
        except Exception as e:
            logger.error("Error initializing notification service: %s", e)

    def get_vapid_public_key(self) -> str:
        self.vapid_public_key = self.api.get("/api/notifications/vapid-public-key")["publicKey"]
        return self.vapid_public_key

    def request_permission(self) -> bool:
        if not self.is_supported:
            raise PushNotificationError("Push notifications are not supported")
        permission = "denied" if self._denied else self.browser.permission()
        if permission == "granted":
            return True
        if permission == "denied":
            self._denied = True
            raise PushNotificationError(
                "Push notifications are blocked. Please enable them in your browser settings."
            )
        answer = self.browser.request_permission()
        if answer == "granted":
            return True
        # a dismissed prompt ("default") may be shown again later
        if answer == "denied":
            self._denied = True
        raise PushNotificationError("Push notification permission denied")

    def subscribe(self) -> dict:
        if not self.is_supported or not self.registered:
            raise PushNotificationError("Push notifications are not supported or service worker not registered")
        self.request_permission()
        if not self.vapid_public_key:
            self.get_vapid_public_key()

        subscription = self.browser.get_subscription()
        if subscription is None:
            subscription = self.browser.subscribe(url_base64_to_bytes(self.vapid_public_key))
        try:
            self.api.post("/api/notifications/push/subscribe", json={"subscription": subscription})
        except ApiError as e:
            logger.error("Error subscribing to push notifications: %s", e.message)
            raise
        self.subscription = subscription
        logger.info("Subscribed to push notifications")
        return subscription

    def unsubscribe(self) -> bool:
        if not self.subscription:
            return True
        self.browser.unsubscribe(self.subscription)
        self.api.post("/api/notifications/push/unsubscribe", json={"endpoint": self.subscription["endpoint"]})
        self.subscription = None
        logger.info("Unsubscribed from push notifications")
        return True

    def subscription_status(self) -> dict:
        if not self.is_supported or not self.registered:
            return {"supported": False, "subscribed": False}
        self.subscription = self.browser.get_subscription()
        return {
            "supported": True,
            "subscribed": self.subscription is not None,
            "permission": self.browser.permission(),
        }

    # Preferences and history

    def get_preferences(self) -> dict:
        return self.api.get("/api/notifications/preferences")

    def update_preferences(self, preferences: dict) -> dict:
        return self.api.put("/api/notifications/preferences", json=preferences)

    def get_history(self, **options) -> dict:
        params: Dict[str, object] = {k: v for k, v in options.items() if v not in (None, "")}
        return self.api.get("/api/notifications/history", params=params)

    def get_stats(self, days: int = 30) -> list:
        return self.api.get("/api/notifications/stats", params={"days": days})

    def test_notifications(self) -> dict:
        return self.api.post("/api/notifications/test")


# Catalog

def strip_empty(params: dict) -> dict:
    return {k: v for k, v in params.items() if v is not None and v != ""}


def fetch_products(api: ApiClient, **filters) -> dict:
    return api.get("/api/products", params=strip_empty(filters))

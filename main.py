import logging
from datetime import datetime
from typing import List, Literal, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field

import catalog
import database
import notifications
import tracking
from database import create_document, get_db, serialize_doc, to_object_id
from schemas import (
    PHONE_PATTERN,
    TIME_PATTERN,
    Address,
    AddressType,
    Category,
    Customer as CustomerSchema,
    NotificationCategory,
    NotificationStatus,
    NotificationType,
    Order as OrderSchema,
    OrderStatus,
    Product as ProductSchema,
    PushSubscription,
    Wishlist as WishlistSchema,
)
from security import (
    AccountLocked,
    InvalidCredentials,
    authenticate_customer,
    create_admin_token,
    create_customer_token,
    get_current_admin,
    get_current_customer,
    get_password_hash,
    verify_password,
)
from settings import ALLOWED_ORIGINS, PORT

logger = logging.getLogger(__name__)

app = FastAPI(title="STES Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handlers
@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(part) for part in err["loc"][1:]) or str(err["loc"][0]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"message": "Validation failed", "errors": errors})


@app.exception_handler(catalog.CatalogQueryError)
async def catalog_query_error_handler(request: Request, exc: catalog.CatalogQueryError):
    return JSONResponse(
        status_code=400,
        content={"message": "Validation failed", "errors": [{"field": exc.field, "message": exc.message}]},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


# Helpers

def public_customer(customer: dict) -> dict:
    data = serialize_doc(customer)
    for key in ("loginAttempts", "lockUntil"):
        data.pop(key, None)
    return data


def find_product_or_404(pid: str) -> dict:
    oid = to_object_id(pid)
    if oid is None:
        raise HTTPException(status_code=400, detail="Invalid product ID")
    p = get_db()["product"].find_one({"_id": oid})
    if not p:
        raise HTTPException(status_code=404, detail="Product not found")
    return p


@app.get("/")
def root():
    return {"message": "STES Storefront API running"}


@app.get("/api/health")
def health_check():
    response = {
        "backend": "running",
        "database": "not configured",
        "collections": [],
    }
    if database.db is not None:
        try:
            response["collections"] = database.db.list_collection_names()[:10]
            response["database"] = "connected"
        except Exception as e:
            logger.warning("Database health check failed: %s", e)
            response["database"] = f"error: {str(e)[:50]}"
    return response


# Admin auth
class AdminLoginPayload(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


@app.post("/api/auth/login")
def admin_login(payload: AdminLoginPayload):
    admin = get_db()["admin"].find_one({"email": payload.email.lower()})
    if not admin or not verify_password(payload.password, admin.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"token": create_admin_token(str(admin["_id"])), "admin": serialize_doc(admin)}


# Customer auth
class RegisterPayload(BaseModel):
    firstName: str = Field(..., min_length=1, max_length=50)
    lastName: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)


class LoginPayload(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ProfilePayload(BaseModel):
    firstName: Optional[str] = Field(None, min_length=1, max_length=50)
    lastName: Optional[str] = Field(None, min_length=1, max_length=50)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    email: Optional[EmailStr] = None


class ChangePasswordPayload(BaseModel):
    currentPassword: str = Field(..., min_length=1)
    newPassword: str = Field(..., min_length=6)


@app.post("/api/customers/register", status_code=201)
def register(payload: RegisterPayload):
    email = payload.email.lower()
    if get_db()["customer"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Customer already exists with this email")
    doc = CustomerSchema(
        firstName=payload.firstName.strip(),
        lastName=payload.lastName.strip(),
        email=email,
        password_hash=get_password_hash(payload.password),
        phone=payload.phone,
    )
    customer_id = create_document("customer", doc)
    customer = get_db()["customer"].find_one({"_id": ObjectId(customer_id)})
    logger.info("Registered customer %s", customer_id)
    return {
        "token": create_customer_token(customer_id),
        "customer": public_customer(customer),
        "message": "Registration successful",
    }


@app.post("/api/customers/login")
def login(payload: LoginPayload):
    try:
        customer = authenticate_customer(payload.email, payload.password)
    except (InvalidCredentials, AccountLocked) as e:
        raise HTTPException(status_code=401, detail=str(e))
    return {
        "token": create_customer_token(str(customer["_id"])),
        "customer": public_customer(customer),
        "message": "Login successful",
    }


@app.get("/api/customers/me")
def get_me(current_user=Depends(get_current_customer)):
    return {"customer": public_customer(current_user)}


@app.put("/api/customers/profile")
def update_profile(payload: ProfilePayload, current_user=Depends(get_current_customer)):
    update = {k: v for k, v in payload.model_dump().items() if v is not None}
    if "email" in update:
        update["email"] = update["email"].lower()
        if update["email"] != current_user["email"]:
            other = get_db()["customer"].find_one({"email": update["email"]})
            if other and other["_id"] != current_user["_id"]:
                raise HTTPException(status_code=400, detail="Email already in use by another account")
    customer = database.update_document("customer", current_user["_id"], update)
    return {"message": "Profile updated successfully", "customer": public_customer(customer)}


@app.put("/api/customers/change-password")
def change_password(payload: ChangePasswordPayload, current_user=Depends(get_current_customer)):
    if not verify_password(payload.currentPassword, current_user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    database.update_document("customer", current_user["_id"], {"password_hash": get_password_hash(payload.newPassword)})
    return {"message": "Password changed successfully"}


# Addresses
class AddressUpdatePayload(BaseModel):
    type: Optional[AddressType] = None
    firstName: Optional[str] = Field(None, min_length=1, max_length=50)
    lastName: Optional[str] = Field(None, min_length=1, max_length=50)
    company: Optional[str] = None
    address1: Optional[str] = Field(None, min_length=1)
    address2: Optional[str] = None
    city: Optional[str] = Field(None, min_length=1)
    state: Optional[str] = Field(None, min_length=1)
    postalCode: Optional[str] = Field(None, min_length=1)
    country: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    isDefault: Optional[bool] = None


def ensure_single_default(addresses: List[dict], preferred_id: Optional[str] = None) -> List[dict]:
    """Exactly one default address whenever the list is non-empty."""
    if not addresses:
        return addresses
    if preferred_id is None:
        preferred_id = next((a["id"] for a in addresses if a.get("isDefault")), addresses[0]["id"])
    for a in addresses:
        a["isDefault"] = a["id"] == preferred_id
    return addresses


def save_addresses(customer: dict, addresses: List[dict]) -> List[dict]:
    database.update_document("customer", customer["_id"], {"addresses": addresses})
    return addresses


def find_address_index(addresses: List[dict], address_id: str) -> int:
    for i, a in enumerate(addresses):
        if a.get("id") == address_id:
            return i
    raise HTTPException(status_code=404, detail="Address not found")


@app.get("/api/addresses")
def list_addresses(current_user=Depends(get_current_customer)):
    return {"addresses": current_user.get("addresses", [])}


@app.post("/api/addresses", status_code=201)
def add_address(payload: Address, current_user=Depends(get_current_customer)):
    addresses = list(current_user.get("addresses", []))
    address = payload.model_dump()
    address["id"] = str(ObjectId())
    addresses.append(address)
    preferred = address["id"] if address["isDefault"] or len(addresses) == 1 else None
    addresses = save_addresses(current_user, ensure_single_default(addresses, preferred))
    return {"message": "Address added successfully", "addresses": addresses}


@app.put("/api/addresses/{address_id}")
def update_address(address_id: str, payload: AddressUpdatePayload, current_user=Depends(get_current_customer)):
    addresses = list(current_user.get("addresses", []))
    i = find_address_index(addresses, address_id)
    changes = {k: v for k, v in payload.model_dump().items() if v is not None}
    addresses[i] = {**addresses[i], **changes}
    preferred = address_id if changes.get("isDefault") else None
    addresses = save_addresses(current_user, ensure_single_default(addresses, preferred))
    return {"message": "Address updated successfully", "addresses": addresses}


@app.delete("/api/addresses/{address_id}")
def delete_address(address_id: str, current_user=Depends(get_current_customer)):
    addresses = list(current_user.get("addresses", []))
    addresses.pop(find_address_index(addresses, address_id))
    addresses = save_addresses(current_user, ensure_single_default(addresses))
    return {"message": "Address deleted successfully", "addresses": addresses}


@app.put("/api/addresses/{address_id}/default")
def set_default_address(address_id: str, current_user=Depends(get_current_customer)):
    addresses = list(current_user.get("addresses", []))
    find_address_index(addresses, address_id)
    addresses = save_addresses(current_user, ensure_single_default(addresses, address_id))
    return {"message": "Default address updated successfully", "addresses": addresses}


# Products
@app.get("/api/products")
def list_products(
    category: Optional[str] = None,
    subcategory: Optional[str] = None,
    minPrice: Optional[str] = None,
    maxPrice: Optional[str] = None,
    search: Optional[str] = None,
    brand: Optional[str] = None,
    minRating: Optional[str] = None,
    featured: Optional[str] = None,
    inStock: Optional[str] = None,
    sortBy: Optional[str] = None,
    sortOrder: Optional[str] = None,
    page: Optional[str] = None,
    limit: Optional[str] = None,
):
    params = dict(locals())
    return catalog.list_products(params)


@app.get("/api/products/featured")
def featured_products():
    return catalog.featured_products()


@app.get("/api/products/categories")
def product_categories():
    return {"categories": catalog.PRODUCT_CATEGORIES, "filters": catalog.SEARCH_FILTERS}


@app.get("/api/products/search/suggestions")
def search_suggestions(q: str = Query(..., min_length=1, max_length=50)):
    return {"suggestions": catalog.search_suggestions(q)}


@app.get("/api/products/{pid}")
def product_detail(pid: str):
    return serialize_doc(find_product_or_404(pid))


class ProductUpdatePayload(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, min_length=1, max_length=1000)
    price: Optional[float] = Field(None, ge=0)
    category: Optional[Category] = None
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    image: Optional[str] = None
    images: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    inStock: Optional[bool] = None
    stockQuantity: Optional[int] = Field(None, ge=0)
    featured: Optional[bool] = None
    sku: Optional[str] = None


@app.post("/api/products", status_code=201)
def create_product(p: ProductSchema, admin=Depends(get_current_admin)):
    data = catalog.normalize_stock(p.model_dump())
    inserted_id = create_document("product", data)
    logger.info("Admin %s created product %s", admin["email"], inserted_id)
    return serialize_doc(get_db()["product"].find_one({"_id": ObjectId(inserted_id)}))


@app.put("/api/products/{pid}")
def update_product(pid: str, payload: ProductUpdatePayload, admin=Depends(get_current_admin)):
    product = find_product_or_404(pid)
    update = catalog.normalize_stock({k: v for k, v in payload.model_dump().items() if v is not None})
    return serialize_doc(database.update_document("product", product["_id"], update))


@app.delete("/api/products/{pid}")
def delete_product(pid: str, admin=Depends(get_current_admin)):
    product = find_product_or_404(pid)
    get_db()["product"].delete_one({"_id": product["_id"]})
    logger.info("Admin %s deleted product %s", admin["email"], pid)
    return {"message": "Product deleted successfully"}


class ReviewPayload(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    title: str = Field(..., min_length=1, max_length=100)
    comment: str = Field(..., min_length=1, max_length=1000)


@app.post("/api/products/{pid}/reviews", status_code=201)
def add_review(pid: str, payload: ReviewPayload, current_user=Depends(get_current_customer)):
    product = find_product_or_404(pid)
    try:
        review, stats = catalog.add_review(
            product, str(current_user["_id"]), payload.rating, payload.title.strip(), payload.comment.strip()
        )
    except catalog.DuplicateReview as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"message": "Review added successfully", "review": serialize_doc(review), "ratingStats": stats}


@app.get("/api/products/{pid}/reviews")
def list_reviews(
    pid: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    sortBy: Literal["rating", "createdAt"] = "createdAt",
    sortOrder: Literal["asc", "desc"] = "desc",
):
    product = find_product_or_404(pid)
    return catalog.paginate_reviews(product, page, limit, sortBy, sortOrder)


# Wishlist
class WishlistProductPayload(BaseModel):
    productId: str


class WishlistSettingsPayload(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    isPublic: Optional[bool] = None


def valid_product_id(product_id: str) -> ObjectId:
    oid = to_object_id(product_id)
    if oid is None:
        raise HTTPException(status_code=400, detail="Valid product ID is required")
    return oid


def find_or_create_wishlist(customer_id: str) -> dict:
    wishlists = get_db()["wishlist"]
    wishlist = wishlists.find_one({"customer": customer_id})
    if wishlist is None:
        create_document("wishlist", WishlistSchema(customer=customer_id))
        wishlist = wishlists.find_one({"customer": customer_id})
    return wishlist


def wishlist_payload(wishlist: dict) -> dict:
    """Items always carry `productId`; `product` is the live product or None."""
    items = wishlist.get("items", [])
    ids = [to_object_id(i["productId"]) for i in items]
    products = {
        str(p["_id"]): serialize_doc(p)
        for p in get_db()["product"].find(
            {"_id": {"$in": [i for i in ids if i is not None]}},
            {"name": 1, "price": 1, "images": 1, "image": 1, "category": 1, "inStock": 1},
        )
    }
    return {
        "id": str(wishlist["_id"]) if "_id" in wishlist else None,
        "items": [{**serialize_doc(i), "product": products.get(i["productId"])} for i in items],
        "itemsCount": len(items),
        "name": wishlist.get("name", "Ma liste de souhaits"),
        "description": wishlist.get("description", ""),
        "isPublic": wishlist.get("isPublic", False),
        "createdAt": wishlist.get("createdAt"),
        "updatedAt": wishlist.get("updatedAt"),
    }


@app.get("/api/wishlist")
def get_wishlist(current_user=Depends(get_current_customer)):
    wishlist = get_db()["wishlist"].find_one({"customer": str(current_user["_id"])})
    if wishlist is None:
        wishlist = WishlistSchema(customer=str(current_user["_id"])).model_dump()
    return {"wishlist": wishlist_payload(wishlist)}


@app.post("/api/wishlist/items", status_code=201)
def add_to_wishlist(payload: WishlistProductPayload, current_user=Depends(get_current_customer)):
    oid = valid_product_id(payload.productId)
    pid = str(oid)
    product = get_db()["product"].find_one({"_id": oid})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    customer_id = str(current_user["_id"])
    item = {
        "productId": pid,
        "productSnapshot": {
            "name": product.get("name"),
            "price": product.get("price"),
            "image": (product.get("images") or [product.get("image", "")])[0],
            "category": product.get("category"),
        },
        "addedAt": datetime.utcnow(),
    }
    find_or_create_wishlist(customer_id)
    # the productId guard in the filter keeps the reference unique per wishlist
    result = get_db()["wishlist"].update_one(
        {"customer": customer_id, "items.productId": {"$ne": pid}},
        {"$push": {"items": item}, "$set": {"updatedAt": datetime.utcnow()}},
    )
    if result.modified_count == 0:
        raise HTTPException(status_code=400, detail="Product already in wishlist")
    wishlist = get_db()["wishlist"].find_one({"customer": customer_id})
    return {"message": "Product added to wishlist", "wishlist": wishlist_payload(wishlist)}


@app.delete("/api/wishlist/items/{product_id}")
def remove_from_wishlist(product_id: str, current_user=Depends(get_current_customer)):
    pid = str(valid_product_id(product_id))
    customer_id = str(current_user["_id"])
    wishlists = get_db()["wishlist"]
    if not wishlists.find_one({"customer": customer_id}):
        raise HTTPException(status_code=404, detail="Wishlist not found")
    wishlists.update_one(
        {"customer": customer_id},
        {"$pull": {"items": {"productId": pid}}, "$set": {"updatedAt": datetime.utcnow()}},
    )
    wishlist = wishlists.find_one({"customer": customer_id})
    return {"message": "Product removed from wishlist", "wishlist": wishlist_payload(wishlist)}


@app.post("/api/wishlist/check")
def check_wishlist(payload: WishlistProductPayload, current_user=Depends(get_current_customer)):
    pid = str(valid_product_id(payload.productId))
    found = get_db()["wishlist"].find_one({"customer": str(current_user["_id"]), "items.productId": pid})
    return {"isInWishlist": found is not None, "productId": pid}


@app.delete("/api/wishlist")
def clear_wishlist(current_user=Depends(get_current_customer)):
    customer_id = str(current_user["_id"])
    wishlists = get_db()["wishlist"]
    if not wishlists.find_one({"customer": customer_id}):
        raise HTTPException(status_code=404, detail="Wishlist not found")
    wishlists.update_one({"customer": customer_id}, {"$set": {"items": [], "updatedAt": datetime.utcnow()}})
    wishlist = wishlists.find_one({"customer": customer_id})
    return {"message": "Wishlist cleared successfully", "wishlist": wishlist_payload(wishlist)}


@app.put("/api/wishlist/settings")
def update_wishlist_settings(payload: WishlistSettingsPayload, current_user=Depends(get_current_customer)):
    wishlist = find_or_create_wishlist(str(current_user["_id"]))
    update = {k: v for k, v in payload.model_dump().items() if v is not None}
    wishlist = database.update_document("wishlist", wishlist["_id"], update)
    return {
        "message": "Wishlist settings updated successfully",
        "wishlist": {
            "id": str(wishlist["_id"]),
            "name": wishlist["name"],
            "description": wishlist["description"],
            "isPublic": wishlist["isPublic"],
        },
    }


@app.get("/api/wishlist/public/{customer_id}")
def public_wishlist(customer_id: str):
    wishlist = get_db()["wishlist"].find_one({"customer": customer_id, "isPublic": True})
    if not wishlist:
        raise HTTPException(status_code=404, detail="Public wishlist not found")
    owner = get_db()["customer"].find_one({"_id": to_object_id(customer_id)}, {"firstName": 1, "lastName": 1})
    payload = wishlist_payload(wishlist)
    payload["owner"] = serialize_doc(owner) if owner else None
    return {"wishlist": payload}


# Notifications
class PushSubscribePayload(BaseModel):
    subscription: PushSubscription


class PushUnsubscribePayload(BaseModel):
    endpoint: str = Field(..., min_length=1)


class EmailPrefsUpdate(BaseModel):
    enabled: Optional[bool] = None
    orderUpdates: Optional[bool] = None
    deliveryUpdates: Optional[bool] = None
    promotions: Optional[bool] = None
    newsletter: Optional[bool] = None


class SmsPrefsUpdate(BaseModel):
    enabled: Optional[bool] = None
    orderUpdates: Optional[bool] = None
    deliveryUpdates: Optional[bool] = None
    urgentOnly: Optional[bool] = None


class PushPrefsUpdate(BaseModel):
    enabled: Optional[bool] = None
    orderUpdates: Optional[bool] = None
    deliveryUpdates: Optional[bool] = None
    promotions: Optional[bool] = None
    inApp: Optional[bool] = None


class QuietHoursUpdate(BaseModel):
    enabled: Optional[bool] = None
    start: Optional[str] = Field(None, pattern=TIME_PATTERN)
    end: Optional[str] = Field(None, pattern=TIME_PATTERN)


class PreferencesPayload(BaseModel):
    email: Optional[EmailPrefsUpdate] = None
    sms: Optional[SmsPrefsUpdate] = None
    push: Optional[PushPrefsUpdate] = None
    quietHours: Optional[QuietHoursUpdate] = None
    timezone: Optional[str] = None


@app.get("/api/notifications/vapid-public-key")
def vapid_public_key():
    key = notifications.get_vapid_public_key()
    if not key:
        raise HTTPException(status_code=503, detail="Push notifications not configured")
    return {"publicKey": key}


@app.get("/api/notifications/preferences")
def get_preferences(current_user=Depends(get_current_customer)):
    return serialize_doc(notifications.get_or_create_preferences(str(current_user["_id"])))


@app.put("/api/notifications/preferences")
def update_preferences(payload: PreferencesPayload, current_user=Depends(get_current_customer)):
    updates = payload.model_dump(exclude_none=True)
    return serialize_doc(notifications.update_preferences(str(current_user["_id"]), updates))


@app.post("/api/notifications/push/subscribe")
def push_subscribe(payload: PushSubscribePayload, current_user=Depends(get_current_customer)):
    if not payload.subscription.endpoint.startswith("https://"):
        raise HTTPException(status_code=400, detail="Valid endpoint URL is required")
    subscription = payload.subscription.model_dump(include={"endpoint", "keys"})
    return notifications.subscribe_push(str(current_user["_id"]), subscription)


@app.post("/api/notifications/push/unsubscribe")
def push_unsubscribe(payload: PushUnsubscribePayload, current_user=Depends(get_current_customer)):
    result = notifications.unsubscribe_push(str(current_user["_id"]), payload.endpoint)
    if result is None:
        raise HTTPException(status_code=400, detail="No preferences found")
    return result


@app.get("/api/notifications/history")
def notification_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    type: Optional[NotificationType] = None,
    category: Optional[NotificationCategory] = None,
    status: Optional[NotificationStatus] = None,
    current_user=Depends(get_current_customer),
):
    return notifications.notification_history(str(current_user["_id"]), page, limit, type, category, status)


@app.get("/api/notifications/stats")
def notification_stats(days: int = Query(30, ge=1, le=365), current_user=Depends(get_current_customer)):
    return notifications.notification_stats(str(current_user["_id"]), days)


@app.post("/api/notifications/test")
def test_notifications(current_user=Depends(get_current_customer)):
    return notifications.test_all_channels(str(current_user["_id"]))


# Orders
class OrderItemInput(BaseModel):
    productId: str
    quantity: int = Field(1, ge=1, le=100)


class OrderInput(BaseModel):
    items: List[OrderItemInput] = Field(..., min_length=1)
    shippingAddressId: Optional[str] = None
    shippingCost: float = Field(0, ge=0)
    isUrgent: bool = False
    deliveryInstructions: Optional[str] = Field(None, max_length=300)


class StatusUpdatePayload(BaseModel):
    status: OrderStatus
    note: Optional[str] = Field(None, max_length=200)
    location: Optional[str] = Field(None, max_length=100)
    sendNotification: bool = True


class CancelPayload(BaseModel):
    reason: Optional[str] = Field(None, max_length=300)


@app.post("/api/customer-orders", status_code=201)
def create_order(payload: OrderInput, current_user=Depends(get_current_customer)):
    addresses = current_user.get("addresses", [])
    if payload.shippingAddressId:
        address = addresses[find_address_index(addresses, payload.shippingAddressId)]
    else:
        address = next((a for a in addresses if a.get("isDefault")), None)
    if address is None:
        raise HTTPException(status_code=400, detail="A shipping address is required")

    products = get_db()["product"]
    items = []
    for line in payload.items:
        p = products.find_one({"_id": valid_product_id(line.productId)})
        if not p:
            raise HTTPException(status_code=404, detail=f"Product not found: {line.productId}")
        if not p.get("inStock") or p.get("stockQuantity", 0) < line.quantity:
            raise HTTPException(status_code=400, detail=f"Insufficient stock for {p['name']}")
        items.append({
            "productId": str(p["_id"]),
            "name": p["name"],
            "price": float(p["price"]),
            "quantity": line.quantity,
            "image": p.get("image"),
        })

    reserved = []
    for item in items:
        if not tracking.reserve_stock(item["productId"], item["quantity"]):
            for done in reserved:
                tracking.release_stock(done["productId"], done["quantity"])
            raise HTTPException(status_code=400, detail=f"Insufficient stock for {item['name']}")
        reserved.append(item)

    total = sum(i["price"] * i["quantity"] for i in items) + payload.shippingCost
    order = OrderSchema(
        orderNumber=tracking.generate_order_number(get_db()["order"].count_documents({})),
        trackingCode=tracking.generate_tracking_code(),
        customerId=str(current_user["_id"]),
        customer={
            "name": f"{current_user['firstName']} {current_user['lastName']}",
            "email": current_user["email"],
            "phone": address.get("phone") or current_user.get("phone"),
            "address": {k: address.get(k) for k in ("address1", "address2", "city", "state", "postalCode", "country")},
        },
        items=items,
        shippingCost=payload.shippingCost,
        totalAmount=round(total, 2),
        statusHistory=[tracking.status_event("pending", note="Commande créée", updated_by="system")],
        estimatedDelivery=tracking.estimated_delivery(payload.isUrgent),
        isUrgent=payload.isUrgent,
        deliveryInstructions=payload.deliveryInstructions,
    )
    order_id = create_document("order", order)
    logger.info("Order %s created for customer %s", order.orderNumber, current_user["_id"])
    return serialize_doc(get_db()["order"].find_one({"_id": ObjectId(order_id)}))


@app.get("/api/customer-orders")
def list_customer_orders(current_user=Depends(get_current_customer)):
    cursor = get_db()["order"].find({"customerId": str(current_user["_id"])}).sort([("createdAt", -1), ("_id", -1)])
    return {"orders": [serialize_doc(o) for o in cursor]}


@app.get("/api/customer-orders/stats")
def customer_order_stats(current_user=Depends(get_current_customer)):
    return tracking.order_stats(str(current_user["_id"]))


def find_customer_order(order_id: str, customer: dict) -> dict:
    oid = to_object_id(order_id)
    order = get_db()["order"].find_one({"_id": oid, "customerId": str(customer["_id"])}) if oid else None
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@app.get("/api/customer-orders/{order_id}")
def get_customer_order(order_id: str, current_user=Depends(get_current_customer)):
    return {"order": serialize_doc(find_customer_order(order_id, current_user))}


@app.post("/api/customer-orders/{order_id}/cancel")
def cancel_customer_order(
    order_id: str,
    payload: Optional[CancelPayload] = None,
    current_user=Depends(get_current_customer),
):
    order = find_customer_order(order_id, current_user)
    try:
        cancelled = tracking.cancel_order(order, payload.reason if payload else None)
    except tracking.OrderNotCancellable as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"message": "Order cancelled successfully", "order": serialize_doc(cancelled)}


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, payload: StatusUpdatePayload, admin=Depends(get_current_admin)):
    oid = to_object_id(order_id)
    order = get_db()["order"].find_one({"_id": oid}) if oid else None
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    event = tracking.status_event(payload.status, payload.note, payload.location)
    event["adminName"] = admin.get("name") or admin["email"]
    update = {"status": payload.status, "updatedAt": datetime.utcnow()}
    if payload.status == "delivered" and not order.get("actualDelivery"):
        update["actualDelivery"] = datetime.utcnow()
    get_db()["order"].update_one({"_id": oid}, {"$set": update, "$push": {"statusHistory": event}})
    updated = get_db()["order"].find_one({"_id": oid})
    previous_status = order["status"]
    if payload.sendNotification and previous_status != payload.status:
        try:
            notifications.send_order_status_update(updated, previous_status)
        except Exception:
            logger.exception("Status notification failed for order %s", updated["orderNumber"])
    return serialize_doc(updated)


# Tracking
class TrackingSearchPayload(BaseModel):
    email: EmailStr
    orderNumber: Optional[str] = Field(None, min_length=1)


@app.get("/api/tracking/customer/orders")
def customer_tracking(current_user=Depends(get_current_customer)):
    cursor = get_db()["order"].find({"customerId": str(current_user["_id"])}).sort([("createdAt", -1), ("_id", -1)])
    orders = [tracking.order_summary(o) for o in cursor]
    return {"orders": orders, "total": len(orders)}


@app.get("/api/tracking/customer/stats")
def customer_tracking_stats(current_user=Depends(get_current_customer)):
    return tracking.tracking_stats(str(current_user["_id"]))


@app.get("/api/tracking/{identifier}")
def track_order(identifier: str):
    order = tracking.find_order(identifier.strip())
    if not order:
        raise HTTPException(
            status_code=404,
            detail="Commande non trouvée. Vérifiez votre numéro de commande ou code de suivi.",
        )
    return tracking.tracking_view(order)


@app.post("/api/tracking/search")
def search_orders(payload: TrackingSearchPayload):
    query = {"customer.email": payload.email.lower()}
    if payload.orderNumber:
        query["orderNumber"] = payload.orderNumber
    cursor = get_db()["order"].find(query).sort([("createdAt", -1), ("_id", -1)]).limit(10)
    orders = [tracking.order_summary(o) for o in cursor]
    if not orders:
        raise HTTPException(status_code=404, detail="Aucune commande trouvée pour cette adresse email.")
    return {"orders": orders, "total": len(orders)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)

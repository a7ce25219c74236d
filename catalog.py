"""
Catalog queries: filter/sort/pagination over the product collection,
search suggestions and product reviews.

Query parameters arrive as raw strings. Empty strings count as unset and
malformed numbers are ignored, so a noisy query string never errors out.
"""
import logging
import math
import re
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from database import get_db, serialize_doc

logger = logging.getLogger(__name__)

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 12
MAX_LIMIT = 100
MAX_PAGE = 10 ** 6

SORT_KEYS = ("createdAt", "price", "rating", "name", "popularity")
SORT_ORDERS = ("asc", "desc")

FILTER_KEYS = (
    "category", "subcategory", "minPrice", "maxPrice", "search", "brand",
    "minRating", "featured", "inStock", "sortBy", "sortOrder", "page", "limit",
)

PRODUCT_CATEGORIES = {
    "pools": {
        "name": "Piscines",
        "nameEn": "Pools",
        "subcategories": {
            "above-ground": "Piscines hors-sol",
            "in-ground": "Piscines enterrées",
            "inflatable": "Piscines gonflables",
            "wooden": "Piscines en bois",
        },
    },
    "pumps-motors": {
        "name": "Pompes et Moteurs",
        "nameEn": "Pumps & Motors",
        "subcategories": {
            "circulation-pumps": "Pompes de circulation",
            "filtration-pumps": "Pompes de filtration",
            "variable-speed": "Pompes à vitesse variable",
        },
    },
    "filters": {
        "name": "Filtration",
        "nameEn": "Filters",
        "subcategories": {
            "sand-filters": "Filtres à sable",
            "cartridge-filters": "Filtres à cartouche",
            "uv-systems": "Systèmes UV",
            "saltwater-systems": "Systèmes au sel",
        },
    },
    "chemicals": {
        "name": "Produits Chimiques",
        "nameEn": "Chemicals",
        "subcategories": {
            "chlorine": "Chlore",
            "ph-adjusters": "Régulateurs de pH",
            "algaecides": "Anti-algues",
            "test-kits": "Kits de test",
        },
    },
    "cleaning": {
        "name": "Nettoyage",
        "nameEn": "Cleaning",
        "subcategories": {
            "robotic-cleaners": "Robots nettoyeurs",
            "manual-tools": "Outils manuels",
            "brushes": "Brosses",
            "nets": "Épuisettes",
        },
    },
    "heating": {
        "name": "Chauffage",
        "nameEn": "Heating",
        "subcategories": {
            "heat-pumps": "Pompes à chaleur",
            "solar-heaters": "Chauffages solaires",
            "thermostats": "Thermostats",
        },
    },
    "lighting": {
        "name": "Éclairage",
        "nameEn": "Lighting",
        "subcategories": {
            "led-lights": "Éclairage LED",
            "underwater-lights": "Éclairage sous-marin",
            "floating-lights": "Éclairage flottant",
        },
    },
    "accessories": {
        "name": "Accessoires",
        "nameEn": "Accessories",
        "subcategories": {
            "ladders": "Échelles",
            "pool-covers": "Bâches de piscine",
            "safety-equipment": "Équipements de sécurité",
        },
    },
    "maintenance": {
        "name": "Maintenance",
        "nameEn": "Maintenance",
        "subcategories": {
            "spare-parts": "Pièces détachées",
            "valves": "Vannes",
            "skimmers": "Skimmers",
            "timers": "Programmateurs",
        },
    },
}

SEARCH_FILTERS = {
    "priceRanges": [
        {"label": "Moins de 50 TND", "min": 0, "max": 50},
        {"label": "50 - 100 TND", "min": 50, "max": 100},
        {"label": "100 - 250 TND", "min": 100, "max": 250},
        {"label": "250 - 500 TND", "min": 250, "max": 500},
        {"label": "500 - 1000 TND", "min": 500, "max": 1000},
        {"label": "Plus de 1000 TND", "min": 1000, "max": None},
    ],
    "ratings": [{"label": f"{n} étoiles et plus", "min": n} for n in (4, 3, 2, 1)],
    "sortBy": list(SORT_KEYS),
    "sortOrder": list(SORT_ORDERS),
}


class CatalogQueryError(ValueError):
    """A query parameter that cannot be ignored (e.g. an unknown category)."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message


def clean_params(params: Mapping[str, Any]) -> Dict[str, str]:
    """Drop unset values: None, empty and whitespace-only strings."""
    cleaned = {}
    for key, value in params.items():
        if value is None:
            continue
        value = str(value).strip()
        if value:
            cleaned[key] = value
    return cleaned


def parse_int(value: Optional[str], default: Optional[int] = None) -> Optional[int]:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def parse_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except ValueError:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def parse_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    lowered = value.lower()
    if lowered in ("true", "1", "yes"):
        return True
    if lowered in ("false", "0", "no"):
        return False
    return None


def icontains(term: str) -> dict:
    return {"$regex": re.escape(term), "$options": "i"}


def build_filter(params: Mapping[str, str]) -> dict:
    query: Dict[str, Any] = {}

    in_stock = parse_bool(params.get("inStock"))
    query["inStock"] = True if in_stock is None else in_stock

    category = params.get("category")
    if category:
        if category not in PRODUCT_CATEGORIES:
            raise CatalogQueryError("category", f"Invalid category: {category}")
        query["category"] = category
    if params.get("subcategory"):
        query["subcategory"] = params["subcategory"]

    featured = parse_bool(params.get("featured"))
    if featured is not None:
        query["featured"] = featured
    if params.get("brand"):
        query["brand"] = icontains(params["brand"])

    price = {}
    min_price = parse_float(params.get("minPrice"))
    max_price = parse_float(params.get("maxPrice"))
    if min_price is not None and min_price >= 0:
        price["$gte"] = min_price
    if max_price is not None and max_price >= 0:
        price["$lte"] = max_price
    if price:
        query["price"] = price

    min_rating = parse_float(params.get("minRating"))
    if min_rating is not None and 0 <= min_rating <= 5:
        query["ratingStats.averageRating"] = {"$gte": min_rating}

    search = params.get("search")
    if search:
        query["$or"] = [
            {"name": icontains(search)},
            {"description": icontains(search)},
            {"brand": icontains(search)},
            {"tags": icontains(search)},
        ]
    return query


def build_sort(sort_by: Optional[str], sort_order: Optional[str]) -> List[Tuple[str, int]]:
    direction = 1 if sort_order == "asc" else -1
    if sort_by == "price":
        return [("price", direction), ("_id", 1)]
    if sort_by == "rating":
        return [("ratingStats.averageRating", direction), ("ratingStats.totalReviews", -1), ("_id", 1)]
    if sort_by == "name":
        return [("name", direction), ("_id", 1)]
    if sort_by == "popularity":
        return [("ratingStats.totalReviews", -1), ("ratingStats.averageRating", -1), ("_id", 1)]
    return [("createdAt", direction), ("_id", direction)]


def parse_pagination(params: Mapping[str, str]) -> Tuple[int, int]:
    page = min(max(parse_int(params.get("page"), DEFAULT_PAGE), 1), MAX_PAGE)
    limit = parse_int(params.get("limit"), DEFAULT_LIMIT)
    limit = min(max(limit, 1), MAX_LIMIT)
    return page, limit


def pagination_meta(page: int, limit: int, total: int) -> dict:
    total_pages = math.ceil(total / limit) if total else 0
    return {
        "currentPage": page,
        "totalPages": total_pages,
        "totalProducts": total,
        "hasNext": page < total_pages,
        "hasPrev": page > 1,
    }


def list_products(raw_params: Mapping[str, Any]) -> dict:
    params = clean_params(raw_params)
    query = build_filter(params)
    sort = build_sort(params.get("sortBy"), params.get("sortOrder"))
    page, limit = parse_pagination(params)

    products = get_db()["product"]
    cursor = products.find(query, {"reviews": 0}).sort(sort).skip((page - 1) * limit).limit(limit)
    items = [serialize_doc(p) for p in cursor]
    total = products.count_documents(query)
    logger.debug("Catalog query %s matched %d products", query, total)
    return {"products": items, "pagination": pagination_meta(page, limit, total)}


def featured_products(limit: int = 6) -> List[dict]:
    cursor = get_db()["product"].find({"featured": True, "inStock": True}, {"reviews": 0}).limit(limit)
    return [serialize_doc(p) for p in cursor]


def search_suggestions(q: str) -> List[dict]:
    products = get_db()["product"]
    match = icontains(q)
    found = products.find(
        {"$or": [{"name": match}, {"brand": match}, {"tags": match}], "inStock": True},
        {"name": 1, "brand": 1, "category": 1},
    ).limit(10)
    suggestions = [
        {"type": "product", "value": p["name"], "label": p["name"], "category": p.get("category"), "brand": p.get("brand")}
        for p in found
    ]

    needle = q.lower()
    for key, category in PRODUCT_CATEGORIES.items():
        if needle in category["name"].lower() or needle in category["nameEn"].lower():
            suggestions.append({"type": "category", "value": key, "label": category["name"]})

    brands = products.distinct("brand", {"brand": match, "inStock": True})
    for brand in sorted(b for b in brands if b)[:5]:
        suggestions.append({"type": "brand", "value": brand, "label": brand})
    return suggestions[:10]


def normalize_stock(data: dict) -> dict:
    """An empty stock always means out of stock."""
    if "stockQuantity" in data and data["stockQuantity"] <= 0:
        data["inStock"] = False
    return data


# Reviews

class DuplicateReview(Exception):
    pass


def compute_rating_stats(reviews: List[dict]) -> dict:
    distribution = {str(i): 0 for i in range(1, 6)}
    if not reviews:
        return {"averageRating": 0, "totalReviews": 0, "ratingDistribution": distribution}
    for review in reviews:
        distribution[str(review["rating"])] += 1
    average = sum(r["rating"] for r in reviews) / len(reviews)
    return {
        "averageRating": round(average, 1),
        "totalReviews": len(reviews),
        "ratingDistribution": distribution,
    }


def add_review(product: dict, customer_id: str, rating: int, title: str, comment: str) -> Tuple[dict, dict]:
    reviews = list(product.get("reviews", []))
    if any(r.get("customer") == customer_id for r in reviews):
        raise DuplicateReview("You have already reviewed this product")
    review = {
        "customer": customer_id,
        "rating": rating,
        "title": title,
        "comment": comment,
        "verified": False,
        "createdAt": datetime.utcnow(),
    }
    reviews.append(review)
    stats = compute_rating_stats(reviews)
    get_db()["product"].update_one(
        {"_id": product["_id"]},
        {"$set": {"reviews": reviews, "ratingStats": stats, "updatedAt": datetime.utcnow()}},
    )
    return review, stats


def paginate_reviews(product: dict, page: int, limit: int, sort_by: str, sort_order: str) -> dict:
    reviews = list(product.get("reviews", []))
    key = "rating" if sort_by == "rating" else "createdAt"
    reviews.sort(key=lambda r: r.get(key) or 0, reverse=sort_order != "asc")
    skip = (page - 1) * limit
    page_items = reviews[skip:skip + limit]
    return {
        "reviews": serialize_doc(page_items),
        "pagination": {
            "currentPage": page,
            "totalPages": math.ceil(len(reviews) / limit) if reviews else 0,
            "totalReviews": len(reviews),
            "hasNext": skip + limit < len(reviews),
            "hasPrev": page > 1,
        },
        "ratingStats": product.get("ratingStats") or compute_rating_stats([]),
    }

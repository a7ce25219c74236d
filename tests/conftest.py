import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.pop("DATABASE_URL", None)

from datetime import datetime, timedelta

import mongomock
import pytest
import requests
from fastapi.testclient import TestClient
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict

import database
from main import app
from security import get_password_hash

BASE_URL = "http://testserver"
HOP_HEADERS = {"content-length", "connection", "accept-encoding", "host"}


@pytest.fixture(autouse=True)
def db():
    mock_db = mongomock.MongoClient()["stes-test"]
    database.use_database(mock_db)
    yield mock_db
    database.use_database(None)


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


class AppAdapter(BaseAdapter):
    """Routes `requests` traffic into the FastAPI TestClient."""

    def __init__(self, test_client):
        super().__init__()
        self.test_client = test_client
        self.calls = []

    def send(self, request, **kwargs):
        self.calls.append((request.method, request.path_url))
        headers = {k: v for k, v in request.headers.items() if k.lower() not in HOP_HEADERS}
        body = request.body.encode() if isinstance(request.body, str) else request.body
        r = self.test_client.request(request.method, request.url, headers=headers, content=body)
        response = requests.Response()
        response.status_code = r.status_code
        response._content = r.content
        response.headers = CaseInsensitiveDict(r.headers)
        response.url = request.url
        response.request = request
        response.encoding = "utf-8"
        return response

    def close(self):
        pass


@pytest.fixture
def adapter(client):
    return AppAdapter(client)


@pytest.fixture
def http_session(adapter):
    session = requests.Session()
    session.mount(BASE_URL, adapter)
    return session


_product_counter = {"n": 0}


@pytest.fixture
def make_product(db):
    def _make(**overrides):
        _product_counter["n"] += 1
        n = _product_counter["n"]
        doc = {
            "name": f"Produit {n}",
            "description": "Équipement de piscine",
            "price": 100.0,
            "category": "filters",
            "subcategory": None,
            "brand": "Hayward",
            "image": "/api/placeholder/300/200",
            "images": [],
            "tags": [],
            "inStock": True,
            "stockQuantity": 10,
            "featured": False,
            "reviews": [],
            "ratingStats": {"averageRating": 0, "totalReviews": 0, "ratingDistribution": {}},
            "createdAt": datetime(2024, 1, 1) + timedelta(minutes=n),
        }
        doc.update(overrides)
        doc["_id"] = db["product"].insert_one(doc).inserted_id
        return doc
    return _make


CUSTOMER = {
    "firstName": "Amira",
    "lastName": "Ben Salah",
    "email": "amira@example.com",
    "password": "secret123",
    "phone": "+21622123456",
}


@pytest.fixture
def register_customer(client):
    def _register(**overrides):
        payload = {**CUSTOMER, **overrides}
        r = client.post("/api/customers/register", json=payload)
        assert r.status_code == 201, r.text
        return r.json()
    return _register


@pytest.fixture
def auth_headers(register_customer):
    data = register_customer()
    return {"Authorization": f"Bearer {data['token']}"}


@pytest.fixture
def admin_headers(client, db):
    db["admin"].insert_one({"email": "admin@stes.tn", "password_hash": get_password_hash("adminpass"), "name": "Admin"})
    r = client.post("/api/auth/login", json={"email": "admin@stes.tn", "password": "adminpass"})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['token']}"}


ADDRESS = {
    "firstName": "Amira",
    "lastName": "Ben Salah",
    "address1": "12 rue de la Plage",
    "city": "Sousse",
    "state": "Sousse",
    "postalCode": "4000",
    "phone": "22123456",
}

"""
Pytest configuration and shared fixtures.

Firestore is replaced by an in-memory store patched over ``leila.storage``;
Gemini, Stripe and geocoding are switched off unless a test opts in.
"""
import copy
from datetime import timedelta
from unittest.mock import Mock
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from leila import auth, config, genai_client, geocode, storage
from leila.models import utcnow


# ============================================================
# IN-MEMORY FIRESTORE
# ============================================================

_MISSING = object()


def _get_path(data, path):
    node = data
    for key in path.split("."):
        if not isinstance(node, dict) or key not in node:
            return _MISSING
        node = node[key]
    return node


def _set_path(data, path, value):
    *parents, leaf = path.split(".")
    node = data
    for key in parents:
        if not isinstance(node.get(key), dict):
            node[key] = {}
        node = node[key]
    node[leaf] = value


def _deep_merge(target, updates):
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


def _matches(doc, field, op, value):
    actual = _get_path(doc, field)
    if actual is _MISSING:
        return False
    if op == "==":
        return actual == value
    if op == "!=":
        return actual != value
    if op == "in":
        return actual in value
    if op == "array_contains":
        return isinstance(actual, list) and value in actual
    if actual is None:
        return False
    if op == ">=":
        return actual >= value
    if op == "<=":
        return actual <= value
    if op == ">":
        return actual > value
    if op == "<":
        return actual < value
    raise ValueError(f"Unsupported operator {op}")


class FakeStorage:
    """Dict backed replacement for the ``leila.storage`` helpers."""

    def __init__(self):
        self.collections = {}

    def _coll(self, name):
        return self.collections.setdefault(name, {})

    def _out(self, doc_id, data):
        result = copy.deepcopy(data)
        result["id"] = doc_id
        return result

    def get_document(self, collection, doc_id):
        data = self._coll(collection).get(doc_id)
        return self._out(doc_id, data) if data is not None else None

    def set_document(self, collection, doc_id, data, merge=False):
        docs = self._coll(collection)
        if merge and doc_id in docs:
            _deep_merge(docs[doc_id], data)
        else:
            docs[doc_id] = copy.deepcopy(data)

    def add_document(self, collection, data):
        doc_id = uuid4().hex[:20]
        self._coll(collection)[doc_id] = copy.deepcopy(data)
        return doc_id

    def update_document(self, collection, doc_id, data):
        docs = self._coll(collection)
        if doc_id not in docs:
            raise KeyError(f"No document to update: {collection}/{doc_id}")
        for path, value in data.items():
            _set_path(docs[doc_id], path, copy.deepcopy(value))

    def increment_fields(self, collection, doc_id, deltas):
        doc = self._coll(collection).setdefault(doc_id, {})
        for path, amount in deltas.items():
            current = _get_path(doc, path)
            _set_path(doc, path, (0 if current is _MISSING or current is None else current) + amount)

    def delete_document(self, collection, doc_id):
        self._coll(collection).pop(doc_id, None)

    def query_documents(self, collection, filters=(), order_by=None, descending=False, limit=None):
        results = [
            self._out(doc_id, data)
            for doc_id, data in self._coll(collection).items()
            if all(_matches(data, f, op, v) for f, op, v in filters)
        ]
        if order_by:
            results = [r for r in results if _get_path(r, order_by) is not _MISSING]
            results.sort(key=lambda r: _get_path(r, order_by), reverse=descending)
        if limit:
            results = results[:limit]
        return results

    def batch_write(self, operations):
        for kind, collection, doc_id, data in operations:
            if kind == "set":
                self.set_document(collection, doc_id, data)
            elif kind == "update":
                self.update_document(collection, doc_id, data)
            else:
                raise ValueError(f"Unknown batch operation: {kind}")

    def new_document_id(self, collection):
        return uuid4().hex[:20]

    def all(self, collection):
        return [self._out(doc_id, data) for doc_id, data in self._coll(collection).items()]


@pytest.fixture(autouse=True)
def fake_db(monkeypatch):
    """Every test runs against a fresh in-memory database."""
    db = FakeStorage()
    for name in (
        "get_document", "set_document", "add_document", "update_document", "increment_fields",
        "delete_document", "query_documents", "batch_write", "new_document_id",
    ):
        monkeypatch.setattr(storage, name, getattr(db, name))
    return db


# ============================================================
# EXTERNAL SERVICES OFF BY DEFAULT
# ============================================================

@pytest.fixture(autouse=True)
def offline(monkeypatch):
    monkeypatch.setattr(config, "GEMINI_API_KEY", "")
    monkeypatch.setattr(config, "PROJECT_ID", "")
    monkeypatch.setattr(config, "STRIPE_SECRET_KEY", "")
    monkeypatch.setattr(config, "STRIPE_WEBHOOK_SECRET", "")
    monkeypatch.setattr(config, "JWT_SECRET", "test-jwt-secret")
    monkeypatch.setattr(config, "ENVIRONMENT", "test")
    monkeypatch.setattr(
        genai_client, "generate_text", Mock(side_effect=genai_client.AIUnavailableError("disabled in tests"))
    )
    monkeypatch.setattr(
        genai_client, "generate_image", Mock(side_effect=genai_client.AIUnavailableError("disabled in tests"))
    )
    monkeypatch.setattr(geocode, "geocode_address", Mock(return_value=None))


@pytest.fixture
def ai(monkeypatch):
    """Turn Gemini on and hand back the ``generate_text`` mock."""
    monkeypatch.setattr(config, "GEMINI_API_KEY", "test-key")
    generate = Mock(return_value="")
    monkeypatch.setattr(genai_client, "generate_text", generate)
    return generate


# ============================================================
# API CLIENT AND IDENTITIES
# ============================================================

@pytest.fixture
def client():
    from leila.main import app

    return TestClient(app)


@pytest.fixture
def auth_headers():
    """Build an Authorization header for a uid and role."""
    def _headers(uid="customer-1", role="customer", email=None):
        token = auth.generate_token(uid, email or f"{uid}@example.com", role)
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def customer_headers(auth_headers):
    return auth_headers("customer-1", "customer")


@pytest.fixture
def admin_headers(auth_headers):
    return auth_headers("admin-1", "admin")


@pytest.fixture
def contractor_headers(auth_headers):
    return auth_headers("pro-1", "contractor")


# ============================================================
# SAMPLE DATA
# ============================================================

@pytest.fixture
def future_date():
    return (utcnow() + timedelta(days=3)).date()


@pytest.fixture
def booking_payload(future_date):
    return {
        "customerId": "customer-1",
        "category": "plumbing",
        "serviceId": "plumbing-repair",
        "description": "Kitchen sink is leaking under the cabinet",
        "urgency": "normal",
        "requestedDate": future_date.isoformat(),
        "requestedTimeSlot": "10:00",
        "estimatedDuration": 90,
        "location": {
            "street": "123 Main St",
            "city": "Austin",
            "state": "TX",
            "zipCode": "78701",
            "coordinates": {"lat": 30.2672, "lng": -97.7431},
        },
    }


@pytest.fixture
def contractor_doc():
    """Build a contractor user document as stored in Firestore."""
    def _create(uid="pro-1", services=("plumbing",), lat=30.27, lng=-97.74, **profile):
        data = {
            "role": "contractor",
            "status": "active",
            "displayName": f"Pro {uid}",
            "contractorProfile": {
                "name": f"Pro {uid}",
                "services": list(services),
                "location": {"lat": lat, "lng": lng},
                "rating": 4.6,
                "completedJobs": 40,
                "hourlyRate": 80,
                "responseTime": 15,
                "tier": "growing",
                **profile,
            },
        }
        return data
    return _create

"""
Pytest configuration and shared test helpers for backend tests.
"""
import copy
import os
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import pytest
from pymongo.errors import DuplicateKeyError

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app


# ============================================================================
# In-memory MongoDB stand-in
# ============================================================================
# Covers the subset of the Motor API the billing services use: find_one/find
# with projections, sort/limit/to_list and async iteration, insert_one,
# update_one with $set/$inc/$setOnInsert/upsert, count_documents and a
# $match + $group/$sum aggregate.

_MISSING = object()

UNIQUE_KEYS = {
    "workspaces": [("workspace_id",)],
    "plan_configs": [("key",)],
    "billing_events": [("provider", "event_id")],
    "usage_events": [("event_id",)],
}


def _get_path(doc, path):
    value = doc
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _equals(value, expected):
    if expected is None:
        return value is _MISSING or value is None
    return value is not _MISSING and value == expected


def _compare(value, expected, op):
    if value is _MISSING or value is None:
        return False
    if op == "$lt":
        return value < expected
    if op == "$lte":
        return value <= expected
    if op == "$gt":
        return value > expected
    return value >= expected


def _match_condition(value, condition):
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, expected in condition.items():
            if op == "$ne":
                if _equals(value, expected):
                    return False
            elif op == "$in":
                if not any(_equals(value, e) for e in expected):
                    return False
            elif op == "$nin":
                if any(_equals(value, e) for e in expected):
                    return False
            elif op in ("$lt", "$lte", "$gt", "$gte"):
                if not _compare(value, expected, op):
                    return False
            else:
                raise NotImplementedError(op)
        return True
    return _equals(value, condition)


def matches(doc, query):
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
        elif key == "$and":
            if not all(matches(doc, sub) for sub in condition):
                return False
        elif not _match_condition(_get_path(doc, key), condition):
            return False
    return True


def _project(doc, projection):
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        result = {k: doc[k] for k in included if k in doc}
        if projection.get("_id", 1) and "_id" in doc:
            result["_id"] = doc["_id"]
        return result
    for key, value in projection.items():
        if not value:
            doc.pop(key, None)
    return doc


class FakeUpdateResult:
    def __init__(self, matched_count=0, modified_count=0, upserted_id=None):
        self.matched_count = matched_count
        self.modified_count = modified_count
        self.upserted_id = upserted_id


class FakeInsertResult:
    def __init__(self, inserted_id):
        self.inserted_id = inserted_id


class FakeCursor:
    def __init__(self, docs):
        self._docs = list(docs)

    def sort(self, key, direction=1):
        keys = key if isinstance(key, list) else [(key, direction)]
        for field, order in reversed(keys):
            present = [d for d in self._docs if _get_path(d, field) not in (_MISSING, None)]
            absent = [d for d in self._docs if _get_path(d, field) in (_MISSING, None)]
            present.sort(key=lambda d: _get_path(d, field), reverse=order < 0)
            # Mongo orders null/missing first ascending, last descending
            self._docs = absent + present if order >= 0 else present + absent
        return self

    def limit(self, n):
        if n:
            self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        return list(self._docs if length is None else self._docs[:length])

    def __aiter__(self):
        self._iter = iter(self._docs)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []
        self._unique = UNIQUE_KEYS.get(name, [])

    # Sync helpers for arranging test data
    def seed(self, doc):
        stored = copy.deepcopy(doc)
        stored.setdefault("_id", str(uuid.uuid4()))
        self.docs.append(stored)
        return doc

    def all(self):
        return [_project(d, {"_id": 0}) for d in self.docs]

    def _check_unique(self, candidate, ignore=None):
        for fields in self._unique:
            if any(_get_path(candidate, f) is _MISSING for f in fields):
                continue
            for existing in self.docs:
                if existing is ignore:
                    continue
                if all(_get_path(existing, f) == _get_path(candidate, f) for f in fields):
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} {fields}")

    async def create_index(self, *args, **kwargs):
        return "index"

    async def find_one(self, query=None, projection=None, **kwargs):
        for doc in self.docs:
            if matches(doc, query):
                return _project(doc, projection)
        return None

    def find(self, query=None, projection=None, **kwargs):
        return FakeCursor(_project(d, projection) for d in self.docs if matches(d, query))

    async def count_documents(self, query=None, **kwargs):
        return sum(1 for d in self.docs if matches(d, query))

    async def insert_one(self, doc, **kwargs):
        stored = copy.deepcopy(doc)
        stored.setdefault("_id", str(uuid.uuid4()))
        self._check_unique(stored)
        self.docs.append(stored)
        doc.setdefault("_id", stored["_id"])
        return FakeInsertResult(stored["_id"])

    @staticmethod
    def _apply(doc, update, inserting):
        for key, value in (update.get("$set") or {}).items():
            doc[key] = copy.deepcopy(value)
        if inserting:
            for key, value in (update.get("$setOnInsert") or {}).items():
                doc[key] = copy.deepcopy(value)
        for key, value in (update.get("$inc") or {}).items():
            doc[key] = doc.get(key, 0) + value
        for key in (update.get("$unset") or {}):
            doc.pop(key, None)

    async def update_one(self, query, update, upsert=False, **kwargs):
        for doc in self.docs:
            if matches(doc, query):
                before = copy.deepcopy(doc)
                candidate = copy.deepcopy(doc)
                self._apply(candidate, update, inserting=False)
                self._check_unique(candidate, ignore=doc)
                doc.clear()
                doc.update(candidate)
                return FakeUpdateResult(1, 0 if before == doc else 1)

        if not upsert:
            return FakeUpdateResult(0, 0)

        new_doc = {
            k: copy.deepcopy(v)
            for k, v in query.items()
            if not k.startswith("$") and not (isinstance(v, dict) and any(str(op).startswith("$") for op in v))
        }
        self._apply(new_doc, update, inserting=True)
        new_doc["_id"] = str(uuid.uuid4())
        self._check_unique(new_doc)
        self.docs.append(new_doc)
        return FakeUpdateResult(0, 0, upserted_id=new_doc["_id"])

    def aggregate(self, pipeline, **kwargs):
        rows = [copy.deepcopy(d) for d in self.docs]
        for stage in pipeline:
            if "$match" in stage:
                rows = [r for r in rows if matches(r, stage["$match"])]
            elif "$group" in stage:
                rows = self._group(rows, stage["$group"])
            else:
                raise NotImplementedError(stage)
        return FakeCursor(rows)

    @staticmethod
    def _resolve(doc, expr):
        if isinstance(expr, str) and expr.startswith("$"):
            value = _get_path(doc, expr[1:])
            return None if value is _MISSING else value
        if isinstance(expr, dict):
            return {k: FakeCollection._resolve(doc, v) for k, v in expr.items()}
        return expr

    def _group(self, rows, group_spec):
        groups = {}
        for row in rows:
            group_id = self._resolve(row, group_spec["_id"])
            key = repr(sorted(group_id.items())) if isinstance(group_id, dict) else repr(group_id)
            out = groups.setdefault(key, {"_id": group_id})
            for field, accumulator in group_spec.items():
                if field == "_id":
                    continue
                value = self._resolve(row, accumulator["$sum"])
                increment = value if isinstance(value, (int, float)) and not isinstance(value, bool) else 0
                out[field] = out.get(field, 0) + increment
        return list(groups.values())


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getitem__(self, name):
        return getattr(self, name)

    async def command(self, *args, **kwargs):
        return {"ok": 1}


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def fake_db(monkeypatch):
    """Point the global database at a fresh in-memory store; reset the plan cache."""
    from database import database
    from services.plan_catalog import plan_catalog

    db = FakeDatabase()
    monkeypatch.setattr(database, "db", db)
    plan_catalog.invalidate()
    yield db
    plan_catalog.invalidate()


def workspace_doc(workspace_id, **fields):
    """A stored workspace billing row with free-tier defaults."""
    now = datetime.now(timezone.utc)
    doc = {
        "workspace_id": workspace_id,
        "plan": "FREE",
        "billing_provider": None,
        "external_subscription_id": None,
        "external_customer_id": None,
        "subscription_status": "none",
        "billing_cycle": "monthly",
        "current_period_end": None,
        "leads_used": 0,
        "leads_limit": 5,
        "grace_period_end": None,
        "pending_plan_id": None,
        "pending_plan_effective_at": None,
        "created_at": now,
        "updated_at": now,
    }
    doc.update(fields)
    return doc


@pytest.fixture
def seed_workspace(fake_db):
    """Insert a workspace row: seed_workspace("ws-1", plan="PRO", ...)."""
    def _seed(workspace_id, **fields):
        return fake_db.workspaces.seed(workspace_doc(workspace_id, **fields))
    return _seed


@pytest.fixture
def auth_headers():
    """Authorization header for a workspace member (or admin with role=ROLE_ADMIN)."""
    from auth import create_access_token

    def _headers(workspace_id="ws-1", role="ROLE_MEMBER", user_id="user-1"):
        claims = {"user_id": user_id, "role": role}
        if workspace_id:
            claims["workspace_id"] = workspace_id
        return {"Authorization": f"Bearer {create_access_token(claims)}"}
    return _headers


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)

"""
Shared fixtures: an in-memory stand-in for the motor client/database.

Covers the subset of the driver the billing services use: find/find_one,
insert, update with $set/$inc/$setOnInsert/$push/$unset/$max, upsert,
find_one_and_update, count_documents, unique indexes and sessions whose
transactions roll back on exception.
"""
import asyncio
import copy
from datetime import datetime
from decimal import Decimal

import pytest
from bson import ObjectId, Decimal128
from pymongo.errors import DuplicateKeyError

from auth import RequestContext


def _comparable(value):
    if isinstance(value, Decimal128):
        return value.to_decimal()
    return value


def _get_path(doc, path):
    """Values at a dotted path; list elements are expanded like MongoDB does."""
    values = [doc]
    for part in path.split("."):
        next_values = []
        for value in values:
            if isinstance(value, list):
                for element in value:
                    if isinstance(element, dict) and part in element:
                        next_values.append(element[part])
            elif isinstance(value, dict) and part in value:
                next_values.append(value[part])
        values = next_values
    return values


def _value_matches(actual_values, condition):
    if isinstance(condition, dict) and any(k.startswith("$") for k in condition):
        for op, operand in condition.items():
            if op == "$exists":
                if bool(actual_values) != bool(operand):
                    return False
            elif op == "$ne":
                if _value_matches(actual_values, operand):
                    return False
            elif op == "$in":
                if not any(_value_matches(actual_values, o) for o in operand):
                    return False
            elif op == "$nin":
                if any(_value_matches(actual_values, o) for o in operand):
                    return False
            elif op == "$type":
                if operand != "string" or not any(isinstance(v, str) for v in actual_values):
                    return False
            elif op in ("$gt", "$gte", "$lt", "$lte"):
                target = _comparable(operand)
                checks = {
                    "$gt": lambda v: v > target,
                    "$gte": lambda v: v >= target,
                    "$lt": lambda v: v < target,
                    "$lte": lambda v: v <= target,
                }[op]
                if not any(v is not None and checks(_comparable(v)) for v in actual_values):
                    return False
            else:
                raise NotImplementedError(f"Operator {op} not supported by the test double")
        return True

    for value in actual_values:
        if _comparable(value) == _comparable(condition):
            return True
        if isinstance(value, list) and any(_comparable(v) == _comparable(condition) for v in value):
            return True
    return False


def matches(doc, query):
    for key, condition in (query or {}).items():
        if not _value_matches(_get_path(doc, key), condition):
            return False
    return True


def _sort_key(value):
    value = _comparable(value)
    if value is None:
        return (0, "")
    if isinstance(value, ObjectId):
        return (1, str(value))
    return (1, value)


class UpdateResult:
    def __init__(self, matched_count=0, modified_count=0, upserted_id=None):
        self.matched_count = matched_count
        self.modified_count = modified_count
        self.upserted_id = upserted_id


class InsertOneResult:
    def __init__(self, inserted_id):
        self.inserted_id = inserted_id


class InsertManyResult:
    def __init__(self, inserted_ids):
        self.inserted_ids = inserted_ids


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs
        self._limit = None

    def sort(self, key_or_list, direction=None):
        keys = key_or_list if isinstance(key_or_list, list) else [(key_or_list, direction or 1)]
        for field_name, order in reversed(keys):
            self._docs.sort(
                key=lambda d: _sort_key(d.get(field_name)),
                reverse=order == -1
            )
        return self

    def limit(self, n):
        self._limit = n
        return self

    async def to_list(self, length=None):
        docs = self._docs
        if self._limit:
            docs = docs[:self._limit]
        if length:
            docs = docs[:length]
        return [copy.deepcopy(d) for d in docs]

    def __aiter__(self):
        self._iter = iter(list(self._docs))
        return self

    async def __anext__(self):
        try:
            return copy.deepcopy(next(self._iter))
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []
        self.unique_indexes = []

    # -- indexes -------------------------------------------------------------

    async def create_index(self, keys, unique=False, partialFilterExpression=None, name=None, **kwargs):
        if unique:
            self.unique_indexes.append(([k for k, _ in keys], partialFilterExpression))
        return name

    def _check_unique(self, candidate, ignore=None):
        for fields, partial in self.unique_indexes:
            if partial and not matches(candidate, partial):
                continue
            key = tuple(_comparable(candidate.get(f)) for f in fields)
            for doc in self.docs:
                if doc is ignore:
                    continue
                if partial and not matches(doc, partial):
                    continue
                if tuple(_comparable(doc.get(f)) for f in fields) == key:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: {self.name} index: {fields}",
                        11000
                    )

    # -- reads ---------------------------------------------------------------

    async def find_one(self, query=None, projection=None, session=None):
        for doc in self.docs:
            if matches(doc, query):
                return copy.deepcopy(doc)
        return None

    def find(self, query=None, projection=None, session=None):
        return FakeCursor([d for d in self.docs if matches(d, query)])

    async def count_documents(self, query, session=None):
        return sum(1 for d in self.docs if matches(d, query))

    # -- writes --------------------------------------------------------------

    async def insert_one(self, doc, session=None):
        if "_id" not in doc:
            doc["_id"] = ObjectId()
        stored = copy.deepcopy(doc)
        self._check_unique(stored)
        self.docs.append(stored)
        return InsertOneResult(doc["_id"])

    async def insert_many(self, docs, session=None):
        ids = []
        for doc in docs:
            ids.append((await self.insert_one(doc, session=session)).inserted_id)
        return InsertManyResult(ids)

    def _apply_update(self, doc, update, inserting=False):
        updated = copy.deepcopy(doc)
        for op, fields in update.items():
            for key, value in fields.items():
                if op == "$set":
                    updated[key] = copy.deepcopy(value)
                elif op == "$setOnInsert":
                    if inserting:
                        updated[key] = copy.deepcopy(value)
                elif op == "$inc":
                    updated[key] = updated.get(key, 0) + value
                elif op == "$max":
                    current = updated.get(key)
                    if current is None or value > current:
                        updated[key] = value
                elif op == "$push":
                    updated.setdefault(key, []).append(copy.deepcopy(value))
                elif op == "$unset":
                    updated.pop(key, None)
                else:
                    raise NotImplementedError(f"Update operator {op} not supported by the test double")
        return updated

    def _upsert_seed(self, query):
        return {k: v for k, v in (query or {}).items() if not isinstance(v, dict) and "." not in k}

    async def update_one(self, query, update, upsert=False, session=None):
        for i, doc in enumerate(self.docs):
            if matches(doc, query):
                updated = self._apply_update(doc, update)
                self._check_unique(updated, ignore=doc)
                self.docs[i] = updated
                return UpdateResult(1, int(updated != doc))
        if upsert:
            new_doc = self._apply_update(self._upsert_seed(query), update, inserting=True)
            new_doc.setdefault("_id", ObjectId())
            self._check_unique(new_doc)
            self.docs.append(new_doc)
            return UpdateResult(0, 0, new_doc["_id"])
        return UpdateResult(0, 0)

    async def update_many(self, query, update, upsert=False, session=None):
        matched = modified = 0
        for i, doc in enumerate(self.docs):
            if matches(doc, query):
                updated = self._apply_update(doc, update)
                matched += 1
                modified += int(updated != doc)
                self.docs[i] = updated
        return UpdateResult(matched, modified)

    async def find_one_and_update(self, query, update, upsert=False, return_document=False, session=None):
        for i, doc in enumerate(self.docs):
            if matches(doc, query):
                updated = self._apply_update(doc, update)
                self.docs[i] = updated
                return copy.deepcopy(updated if return_document else doc)
        if upsert:
            new_doc = self._apply_update(self._upsert_seed(query), update, inserting=True)
            new_doc.setdefault("_id", ObjectId())
            self.docs.append(new_doc)
            return copy.deepcopy(new_doc) if return_document else None
        return None


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def snapshot(self):
        return {name: copy.deepcopy(c.docs) for name, c in self._collections.items()}

    def restore(self, state):
        for name, collection in self._collections.items():
            collection.docs = state.get(name, [])


class FakeTransaction:
    def __init__(self, db):
        self.db = db

    async def __aenter__(self):
        self._state = self.db.snapshot()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.db.restore(self._state)
        return False


class FakeSession:
    def __init__(self, db):
        self.db = db

    def start_transaction(self):
        return FakeTransaction(self.db)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeClient:
    def __init__(self, db):
        self.db = db

    async def start_session(self):
        return FakeSession(self.db)

    def close(self):
        pass


# ============================================
# FIXTURES
# ============================================

COMPANY_ID = "company-1"


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def client(db):
    return FakeClient(db)


@pytest.fixture
def ctx():
    return RequestContext(user_id="user-1", role="Operator", company_ids=[COMPANY_ID])


@pytest.fixture
def run():
    """Run a coroutine to completion; the services are async, the tests are not."""
    return asyncio.run


@pytest.fixture
def make_invoice():
    """Factory for stored invoice documents as InvoiceService writes them."""
    def _make(number, invoice_date, value, paid=0, status="Generated", company_id=COMPANY_ID, **extra):
        value = Decimal(str(value))
        paid = Decimal(str(paid))
        doc = {
            "_id": ObjectId(),
            "company_id": company_id,
            "hcf_id": "hcf-1",
            "invoice_number": number,
            "invoice_date": datetime(invoice_date.year, invoice_date.month, invoice_date.day),
            "invoice_value": Decimal128(value),
            "total_paid_amount": Decimal128(paid),
            "balance_amount": Decimal128(value - paid),
            "status": status,
            "cancelled": False,
            "version": 0,
        }
        doc.update(extra)
        return doc
    return _make

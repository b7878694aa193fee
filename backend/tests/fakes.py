"""
In-memory stand-ins for MongoDB (Motor) and the Stripe gateway used by billing tests.

_InMemoryStore.get_db() returns a MagicMock whose collection methods are AsyncMocks
backed by plain dicts, so tests can both inspect stored documents and assert calls.
Only the query/update operators the billing code uses are supported.
"""
import copy
import itertools
import json
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import stripe
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError


def _field_matches(value, condition, present: bool) -> bool:
    if isinstance(condition, dict) and any(k.startswith("$") for k in condition):
        for op, operand in condition.items():
            if op == "$lt":
                if not present or value is None or not value < operand:
                    return False
            elif op == "$lte":
                if not present or value is None or not value <= operand:
                    return False
            elif op == "$gt":
                if not present or value is None or not value > operand:
                    return False
            elif op == "$in":
                if value not in operand:
                    return False
            elif op == "$ne":
                if value == operand:
                    return False
            elif op == "$exists":
                if present != bool(operand):
                    return False
            else:
                raise NotImplementedError(f"Unsupported query operator {op}")
        return True
    if condition is None:
        # Mongo: {"field": None} matches null or missing
        return value is None
    return present and value == condition


def matches(doc: dict, query: dict) -> bool:
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
            continue
        if key == "$and":
            if not all(matches(doc, sub) for sub in condition):
                return False
            continue
        if not _field_matches(doc.get(key), condition, key in doc):
            return False
    return True


def _project(doc: dict, projection: dict = None) -> dict:
    if doc is None:
        return None
    result = copy.deepcopy(doc)
    if not projection:
        return result
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        return {k: result[k] for k in included if k in result}
    result.pop("_id", None)
    return result


def _apply_update(doc: dict, update: dict) -> bool:
    """Apply $set / $inc / $unset in place. Returns True if anything changed."""
    before = copy.deepcopy(doc)
    for key, value in (update.get("$set") or {}).items():
        doc[key] = copy.deepcopy(value)
    for key, value in (update.get("$inc") or {}).items():
        doc[key] = (doc.get(key) or 0) + value
    for key in (update.get("$unset") or {}):
        doc.pop(key, None)
    return doc != before


class _Collection:
    def __init__(self, name: str):
        self.name = name
        self.docs = []
        self.unique_keys = set()
        self.indexes = []

    def _check_unique(self, candidate: dict, ignore: dict = None):
        for key in self.unique_keys:
            if key not in candidate or candidate[key] is None:
                continue
            for other in self.docs:
                if other is ignore:
                    continue
                if other.get(key) == candidate[key]:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: {self.name} index: {key}_1"
                    )

    def _first(self, query):
        for doc in self.docs:
            if matches(doc, query):
                return doc
        return None

    async def create_index(self, keys, unique=False, sparse=False, partialFilterExpression=None, **kwargs):
        if isinstance(keys, str):
            fields = [keys]
        else:
            fields = [k for k, _ in keys]
        self.indexes.append({
            "keys": fields,
            "unique": unique,
            "sparse": sparse,
            "partial": partialFilterExpression,
        })
        if unique and len(fields) == 1:
            self.unique_keys.add(fields[0])
        return "_".join(f"{f}_1" for f in fields)

    async def insert_one(self, document, **kwargs):
        doc = copy.deepcopy(document)
        doc.setdefault("_id", uuid.uuid4().hex)
        self._check_unique(doc)
        self.docs.append(doc)
        return SimpleNamespace(inserted_id=doc["_id"], acknowledged=True)

    async def find_one(self, query=None, projection=None, **kwargs):
        return _project(self._first(query), projection)

    async def update_one(self, query, update, upsert=False, **kwargs):
        doc = self._first(query)
        if doc is None:
            if upsert:
                new_doc = {k: v for k, v in query.items() if not k.startswith("$") and not isinstance(v, dict)}
                _apply_update(new_doc, update)
                await self.insert_one(new_doc)
                return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=new_doc.get("_id"))
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

        candidate = copy.deepcopy(doc)
        changed = _apply_update(candidate, update)
        self._check_unique(candidate, ignore=doc)
        doc.clear()
        doc.update(candidate)
        return SimpleNamespace(matched_count=1, modified_count=1 if changed else 0, upserted_id=None)

    async def find_one_and_update(self, query, update, projection=None, return_document=ReturnDocument.BEFORE, **kwargs):
        doc = self._first(query)
        if doc is None:
            return None
        before = copy.deepcopy(doc)
        _apply_update(doc, update)
        if return_document == ReturnDocument.AFTER:
            return _project(doc, projection)
        return _project(before, projection)


class _InMemoryStore:
    """Minimal in-memory database for users, stripe_events and audit_logs."""

    def __init__(self, unique=None):
        self.collections = {}
        unique = unique if unique is not None else {"users": ["id"], "stripe_events": ["event_id"]}
        for name, keys in unique.items():
            self.collection(name).unique_keys.update(keys)
        self._db = None

    def collection(self, name: str) -> _Collection:
        if name not in self.collections:
            self.collections[name] = _Collection(name)
        return self.collections[name]

    def docs(self, name: str):
        return self.collection(name).docs

    def seed_user(self, **fields):
        doc = {
            "tier": "free",
            "stripe_customer_id": None,
            "stripe_subscription_id": None,
            "pro_expires_at": None,
            "messages_sent_count": 0,
            **fields,
        }
        self.collection("users").docs.append(copy.deepcopy(doc))
        return doc

    def user(self, user_id: str):
        for doc in self.docs("users"):
            if doc.get("id") == user_id:
                return doc
        return None

    def get_db(self):
        if self._db is not None:
            return self._db
        db = MagicMock()
        for name in ("users", "stripe_events", "audit_logs"):
            setattr(db, name, self._wrap(self.collection(name)))
        self._db = db
        return db

    @staticmethod
    def _wrap(collection: _Collection):
        mock = MagicMock()
        mock.create_index = AsyncMock(side_effect=collection.create_index)
        mock.insert_one = AsyncMock(side_effect=collection.insert_one)
        mock.find_one = AsyncMock(side_effect=collection.find_one)
        mock.update_one = AsyncMock(side_effect=collection.update_one)
        mock.find_one_and_update = AsyncMock(side_effect=collection.find_one_and_update)
        return mock


# ============================================================================
# Stripe
# ============================================================================

def period_end_ts(days: float = 30, now: datetime = None) -> int:
    now = now or datetime.now(timezone.utc)
    return int((now + timedelta(days=days)).timestamp())


def make_subscription(sub_id, customer_id, status="active", period_ends=None, user_id=None, current_period_end=None):
    """Stripe subscription dict; period ends are per line item (unix seconds).

    Passing `current_period_end` builds the older API shape instead: the period
    end sits on the subscription and the items carry none.
    """
    if current_period_end is not None:
        items = [{"id": f"si_{sub_id}_0"}]
    else:
        if period_ends is None:
            period_ends = [period_end_ts(30)]
        items = [
            {"id": f"si_{sub_id}_{i}", "current_period_end": end}
            for i, end in enumerate(period_ends)
        ]
    subscription = {
        "id": sub_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "metadata": {"user_id": user_id} if user_id else {},
        "items": {"data": items},
    }
    if current_period_end is not None:
        subscription["current_period_end"] = current_period_end
    return subscription


def make_event(event_id, event_type, obj, livemode=False):
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "livemode": livemode,
        "data": {"object": obj},
    }


class FakeStripeGateway:
    """Records every call; subscriptions live in `self.subscriptions` keyed by id."""

    BAD_SIGNATURE = "t=0,v1=bad"

    def __init__(self):
        self.calls = []
        self.subscriptions = {}
        self.checkout_sessions = {}
        self.customers_by_key = {}
        self.fail_cancel = set()
        self.list_error = None
        self.retrieve_error = None
        self.checkout_error = None
        self.price_id = "price_pro_test"
        self._ids = itertools.count(1)

    def _record(self, name, **kwargs):
        self.calls.append((name, kwargs))

    def calls_to(self, name):
        return [kwargs for call_name, kwargs in self.calls if call_name == name]

    def add_subscription(self, subscription):
        self.subscriptions[subscription["id"]] = subscription
        return subscription

    def construct_event(self, payload, signature, secret):
        self._record("construct_event", signature=signature, secret=secret)
        if signature == self.BAD_SIGNATURE:
            raise stripe.error.SignatureVerificationError("No signatures found matching the expected signature", signature)
        return json.loads(payload)

    async def retrieve_subscription(self, subscription_id):
        self._record("retrieve_subscription", subscription_id=subscription_id)
        if self.retrieve_error:
            raise self.retrieve_error
        if subscription_id not in self.subscriptions:
            raise stripe.error.InvalidRequestError(
                f"No such subscription: '{subscription_id}'", "id", code="resource_missing"
            )
        return copy.deepcopy(self.subscriptions[subscription_id])

    async def list_subscriptions(self, customer_id, status="all"):
        self._record("list_subscriptions", customer_id=customer_id, status=status)
        if self.list_error:
            raise self.list_error
        return [
            copy.deepcopy(sub) for sub in self.subscriptions.values()
            if sub.get("customer") == customer_id
        ]

    async def cancel_subscription(self, subscription_id):
        self._record("cancel_subscription", subscription_id=subscription_id)
        if subscription_id in self.fail_cancel:
            raise stripe.error.APIConnectionError("Network error canceling subscription")
        sub = self.subscriptions[subscription_id]
        sub["status"] = "canceled"
        return copy.deepcopy(sub)

    async def create_customer(self, user_id, email, idempotency_key):
        self._record("create_customer", user_id=user_id, email=email, idempotency_key=idempotency_key)
        if idempotency_key not in self.customers_by_key:
            self.customers_by_key[idempotency_key] = {
                "id": f"cus_fake_{next(self._ids)}",
                "email": email,
                "metadata": {"user_id": user_id},
            }
        return copy.deepcopy(self.customers_by_key[idempotency_key])

    async def resolve_price_id(self, lookup_key, price_id):
        self._record("resolve_price_id", lookup_key=lookup_key, price_id=price_id)
        return price_id or self.price_id

    async def create_checkout_session(self, params, idempotency_key):
        self._record("create_checkout_session", params=params, idempotency_key=idempotency_key)
        if self.checkout_error:
            raise self.checkout_error
        session_id = f"cs_fake_{next(self._ids)}"
        session = {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}", **params}
        self.checkout_sessions[session_id] = session
        return copy.deepcopy(session)

    async def retrieve_checkout_session(self, session_id):
        self._record("retrieve_checkout_session", session_id=session_id)
        if session_id not in self.checkout_sessions:
            raise stripe.error.InvalidRequestError(
                f"No such checkout.session: '{session_id}'", "id", code="resource_missing"
            )
        session = copy.deepcopy(self.checkout_sessions[session_id])
        sub_ref = session.get("subscription")
        if isinstance(sub_ref, str) and sub_ref in self.subscriptions:
            session["subscription"] = copy.deepcopy(self.subscriptions[sub_ref])
        return session

    async def create_portal_session(self, customer_id, return_url, idempotency_key):
        self._record(
            "create_portal_session",
            customer_id=customer_id,
            return_url=return_url,
            idempotency_key=idempotency_key,
        )
        return {"id": f"bps_fake_{next(self._ids)}", "url": f"https://billing.stripe.test/p/{customer_id}"}

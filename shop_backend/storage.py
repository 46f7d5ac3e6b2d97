import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

logger = logging.getLogger(__name__)


def to_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value or "").strip())
    except (InvalidId, TypeError):
        return None


def ensure_indexes(db) -> None:
    try:
        db.orders.create_index("stripe_session_id", unique=True)
        db.orders.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    except PyMongoError as exc:
        logger.warning("Unable to ensure indexes for orders: %s", exc)

    try:
        db.coupons.create_index([("code", ASCENDING), ("user_id", ASCENDING)])
        db.coupons.create_index("user_id", unique=True)
    except PyMongoError as exc:
        logger.warning("Unable to ensure indexes for coupons: %s", exc)


class UserStore:
    def __init__(self, db):
        self.collection = db.users

    def find_by_id(self, user_id) -> Optional[Dict]:
        object_id = to_object_id(user_id)
        if object_id is None:
            return None
        return self.collection.find_one({"_id": object_id}, {"password": 0})


class ProductStore:
    def __init__(self, db):
        self.collection = db.products

    def find_many(self, product_ids: Iterable) -> List[Dict]:
        object_ids = []
        for product_id in product_ids:
            object_id = to_object_id(product_id)
            if object_id is not None:
                object_ids.append(object_id)
        if not object_ids:
            return []
        return list(self.collection.find({"_id": {"$in": object_ids}}))


class CouponStore:
    def __init__(self, db):
        self.collection = db.coupons

    def find_active(self, code: str, user_id: str) -> Optional[Dict]:
        return self.collection.find_one(
            {"code": code, "user_id": str(user_id), "is_active": True}
        )

    def find_active_for_user(self, user_id: str) -> Optional[Dict]:
        return self.collection.find_one({"user_id": str(user_id), "is_active": True})

    def deactivate(self, code: str, user_id: str) -> bool:
        result = self.collection.update_one(
            {"code": code, "user_id": str(user_id), "is_active": True},
            {"$set": {"is_active": False, "deactivated_at": datetime.utcnow()}},
        )
        return result.modified_count > 0

    def replace_for_user(self, user_id: str, document: Dict) -> Dict:
        """Store ``document`` as the only coupon of ``user_id``.

        A single upsert swaps out the previous coupon; the unique index on
        ``user_id`` turns a concurrent first upsert into ``DuplicateKeyError``,
        after which the coupon now present is replaced instead.
        """
        owner = str(user_id)
        try:
            self.collection.replace_one({"user_id": owner}, document, upsert=True)
        except DuplicateKeyError:
            self.collection.replace_one({"user_id": owner}, document, upsert=True)
        return document


class OrderStore:
    def __init__(self, db):
        self.collection = db.orders

    def find_by_session(self, session_id: str) -> Optional[Dict]:
        return self.collection.find_one({"stripe_session_id": session_id})

    def insert_if_absent(self, document: Dict) -> Tuple[Dict, bool]:
        """Insert an order keyed by its Stripe session id.

        Returns ``(order, created)``. When another request already stored an
        order for the same session, the unique index rejects the insert and
        the stored order is returned with ``created`` set to ``False``.
        """
        try:
            insert_result = self.collection.insert_one(document)
        except DuplicateKeyError:
            existing = self.find_by_session(document["stripe_session_id"])
            if existing is None:
                raise
            return existing, False
        document["_id"] = insert_result.inserted_id
        return document, True

    def list_for_user(self, user_id: str) -> List[Dict]:
        cursor = self.collection.find({"user_id": str(user_id)}).sort(
            [("created_at", -1), ("_id", -1)]
        )
        return list(cursor)

    def list_all(self) -> List[Dict]:
        return list(self.collection.find({}).sort([("created_at", -1), ("_id", -1)]))

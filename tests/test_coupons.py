import re
from datetime import datetime, timedelta

import pytest
from pymongo.errors import DuplicateKeyError

from shop_backend.coupons import CouponManager
from shop_backend.storage import CouponStore, ensure_indexes

FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture
def manager(db):
    return CouponManager(CouponStore(db), now=lambda: FIXED_NOW)


def seed_coupon(db, code="SAVE15", user_id="user-1", percentage=15, active=True, expires=None):
    db.coupons.insert_one(
        {
            "code": code,
            "discount_percentage": percentage,
            "is_active": active,
            "user_id": user_id,
            "expiration_date": expires or FIXED_NOW + timedelta(days=10),
        }
    )


def test_find_active_coupon_requires_code_owner_and_active_flag(db, manager):
    seed_coupon(db)

    assert manager.find_active_coupon("SAVE15", "user-1")["discount_percentage"] == 15
    assert manager.find_active_coupon("SAVE15", "user-2") is None
    assert manager.find_active_coupon("OTHER", "user-1") is None
    assert manager.find_active_coupon("", "user-1") is None
    assert manager.find_active_coupon(None, "user-1") is None


def test_deactivated_coupon_is_never_found_again(db, manager):
    seed_coupon(db)

    assert manager.deactivate("SAVE15", "user-1") is True
    assert manager.find_active_coupon("SAVE15", "user-1") is None
    assert db.coupons.find_one({"code": "SAVE15"})["is_active"] is False


def test_deactivate_is_idempotent(db, manager):
    seed_coupon(db)

    manager.deactivate("SAVE15", "user-1")
    assert manager.deactivate("SAVE15", "user-1") is False
    assert manager.deactivate("MISSING", "user-1") is False
    assert manager.deactivate("", "user-1") is False
    assert db.coupons.count_documents({}) == 1


def test_issue_reward_replaces_previous_coupon(db, manager):
    seed_coupon(db, code="OLDCODE")
    seed_coupon(db, code="SOMEONEELSE", user_id="user-2")

    coupon = manager.issue_reward("user-1")

    owned = list(db.coupons.find({"user_id": "user-1"}))
    assert len(owned) == 1
    assert owned[0]["code"] == coupon["code"]
    assert owned[0]["discount_percentage"] == 10
    assert owned[0]["is_active"] is True
    assert owned[0]["expiration_date"] == FIXED_NOW + timedelta(days=30)
    assert re.fullmatch(r"GIFT[A-Z0-9]{6}", coupon["code"])
    assert db.coupons.count_documents({"user_id": "user-2"}) == 1


def test_issue_reward_replaces_an_inactive_coupon_too(db, manager):
    seed_coupon(db, code="USED", active=False)

    manager.issue_reward("user-1")

    assert db.coupons.count_documents({"user_id": "user-1"}) == 1
    assert db.coupons.find_one({"code": "USED"}) is None


def test_validate_deactivates_expired_coupon(db, manager):
    seed_coupon(db, expires=FIXED_NOW - timedelta(days=1))

    coupon = manager.validate("SAVE15", "user-1")

    assert coupon["is_active"] is False
    assert manager.find_active_coupon("SAVE15", "user-1") is None


def test_validate_returns_usable_coupon(db, manager):
    seed_coupon(db)

    coupon = manager.validate("SAVE15", "user-1")

    assert coupon["is_active"] is True
    assert manager.validate("SAVE15", "user-2") is None


def test_apply_discount_matches_money_rounding(manager):
    assert manager.apply_discount(5997, 10) == 5397


class RacingCoupons:
    """Coupon collection where another request stores a coupon first."""

    def __init__(self, collection, competitor):
        self.collection = collection
        self.competitor = competitor
        self.replace_calls = 0

    def __getattr__(self, name):
        return getattr(self.collection, name)

    def replace_one(self, filter, replacement, upsert=False):
        self.replace_calls += 1
        if self.replace_calls == 1:
            self.collection.insert_one(dict(self.competitor))
            raise DuplicateKeyError("E11000 duplicate key error collection: shop.coupons")
        return self.collection.replace_one(filter, replacement, upsert=upsert)


def test_user_can_hold_only_one_coupon(db):
    ensure_indexes(db)
    seed_coupon(db, code="FIRST")

    with pytest.raises(DuplicateKeyError):
        seed_coupon(db, code="SECOND")

    assert db.coupons.count_documents({"user_id": "user-1"}) == 1


def test_repeated_rewards_keep_a_single_coupon(db, manager):
    ensure_indexes(db)

    manager.issue_reward("user-1")
    second = manager.issue_reward("user-1")

    owned = list(db.coupons.find({"user_id": "user-1"}))
    assert len(owned) == 1
    assert owned[0]["code"] == second["code"]


def test_issue_reward_survives_a_concurrent_coupon_insert(db):
    ensure_indexes(db)
    store = CouponStore(db)
    store.collection = RacingCoupons(
        db.coupons, {"code": "RACER", "user_id": "user-1", "is_active": True}
    )
    manager = CouponManager(store, now=lambda: FIXED_NOW)

    coupon = manager.issue_reward("user-1")

    owned = list(db.coupons.find({"user_id": "user-1"}))
    assert len(owned) == 1
    assert owned[0]["code"] == coupon["code"]
    assert store.collection.replace_calls == 2

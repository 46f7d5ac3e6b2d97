import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import Dict, Optional

from .money import apply_discount as _apply_discount
from .storage import CouponStore

logger = logging.getLogger(__name__)

REWARD_CODE_PREFIX = "GIFT"
REWARD_CODE_LENGTH = 6
REWARD_DISCOUNT_PERCENTAGE = 10
REWARD_VALIDITY_DAYS = 30
REWARD_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_reward_code() -> str:
    suffix = "".join(
        secrets.choice(REWARD_CODE_ALPHABET) for _ in range(REWARD_CODE_LENGTH)
    )
    return f"{REWARD_CODE_PREFIX}{suffix}"


def normalize_code(value) -> str:
    return str(value or "").strip()


def serialize_coupon(coupon: Optional[Dict]) -> Optional[Dict]:
    if not coupon:
        return None
    expiration = coupon.get("expiration_date")
    return {
        "code": coupon.get("code", ""),
        "discountPercentage": coupon.get("discount_percentage", 0),
        "isActive": bool(coupon.get("is_active")),
        "expirationDate": expiration.isoformat() + "Z"
        if isinstance(expiration, datetime)
        else None,
    }


class CouponManager:
    """Single-use percentage coupons scoped to one owner.

    Codes are only ever looked up together with the owner id, so two users
    may hold the same code; reward codes are not checked for global
    uniqueness. A user keeps at most one coupon: issuing a reward replaces
    whatever coupon the user had before in a single upsert.
    """

    def __init__(self, store: CouponStore, now=datetime.utcnow):
        self.store = store
        self._now = now

    def find_active_coupon(self, code, user_id) -> Optional[Dict]:
        normalized = normalize_code(code)
        if not normalized or not user_id:
            return None
        return self.store.find_active(normalized, str(user_id))

    @staticmethod
    def apply_discount(amount: int, percentage) -> int:
        return _apply_discount(amount, percentage)

    def deactivate(self, code, user_id) -> bool:
        normalized = normalize_code(code)
        if not normalized or not user_id:
            return False
        changed = self.store.deactivate(normalized, str(user_id))
        if changed:
            logger.info("Coupon %s deactivated for user %s", normalized, user_id)
        return changed

    def issue_reward(self, user_id) -> Dict:
        owner = str(user_id)
        issued_at = self._now()
        coupon = {
            "code": generate_reward_code(),
            "discount_percentage": REWARD_DISCOUNT_PERCENTAGE,
            "expiration_date": issued_at + timedelta(days=REWARD_VALIDITY_DAYS),
            "is_active": True,
            "user_id": owner,
            "created_at": issued_at,
        }
        self.store.replace_for_user(owner, coupon)
        logger.info("Issued reward coupon %s to user %s", coupon["code"], owner)
        return coupon

    def active_coupon_for(self, user_id) -> Optional[Dict]:
        return self.store.find_active_for_user(str(user_id))

    def validate(self, code, user_id) -> Optional[Dict]:
        """Look up a coupon for redemption; expired ones come back deactivated.

        Returns ``None`` when the user holds no active coupon with that code.
        """
        coupon = self.find_active_coupon(code, user_id)
        if not coupon:
            return None
        expiration = coupon.get("expiration_date")
        if isinstance(expiration, datetime) and expiration < self._now():
            self.deactivate(coupon.get("code"), user_id)
            coupon["is_active"] = False
        return coupon

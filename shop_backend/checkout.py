import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from .coupons import CouponManager, normalize_code
from .errors import InvalidInput, PaymentIncomplete
from .money import from_minor_units, safe_float, safe_positive_int, to_minor_units
from .payments import StripeGateway
from .storage import OrderStore, ProductStore

logger = logging.getLogger(__name__)

REWARD_THRESHOLD_CENTS = 20000
SESSION_ID_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"


@dataclass
class CheckoutQuote:
    session_id: str
    total_amount: float
    total_cents: int
    coupon_code: str = ""


@dataclass
class ReconciliationResult:
    order_id: str
    already_processed: bool
    reward_coupon: Optional[Dict] = None


def product_identifier(entry: Dict) -> str:
    identifier = entry.get("_id") or entry.get("id") or entry.get("product_id")
    return str(identifier or "").strip()


def parse_product_quantities(raw: Optional[str]) -> List[Dict]:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Unreadable productQuantities metadata: %r", raw)
        return []
    if not isinstance(parsed, list):
        return []
    snapshot = []
    for entry in parsed:
        if not isinstance(entry, dict):
            continue
        product_id = str(entry.get("id") or "").strip()
        if not product_id:
            continue
        snapshot.append(
            {"id": product_id, "quantity": safe_positive_int(entry.get("quantity"), 1) or 1}
        )
    return snapshot


class CheckoutSessionBuilder:
    def __init__(
        self,
        gateway: StripeGateway,
        coupons: CouponManager,
        client_url: str,
        currency: str = "usd",
    ):
        self.gateway = gateway
        self.coupons = coupons
        self.client_url = (client_url or "").rstrip("/")
        self.currency = (currency or "usd").lower()

    @property
    def success_url(self) -> str:
        return f"{self.client_url}/purchase-success?session_id={SESSION_ID_PLACEHOLDER}"

    @property
    def cancel_url(self) -> str:
        return f"{self.client_url}/purchase-cancel"

    def build_line_items(self, products: List[Dict]):
        total_cents = 0
        line_items = []
        for product in products:
            if not isinstance(product, dict):
                raise InvalidInput("Invalid or empty products array")
            if not product_identifier(product):
                raise InvalidInput("Every product needs an id")
            price = safe_float(product.get("price"), None)
            if price is None or price < 0:
                raise InvalidInput("Invalid product price")
            unit_amount = to_minor_units(price)
            quantity = safe_positive_int(product.get("quantity"), 1) or 1
            total_cents += unit_amount * quantity
            image = str(product.get("image") or "").strip()
            line_items.append(
                {
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {
                            "name": str(product.get("name") or "").strip() or "Item",
                            "images": [image] if image else [],
                        },
                        "unit_amount": unit_amount,
                    },
                    "quantity": quantity,
                }
            )
        return line_items, total_cents

    def build(self, products, coupon_code, user_id) -> CheckoutQuote:
        if not isinstance(products, list) or not products:
            raise InvalidInput("Invalid or empty products array")

        line_items, total_cents = self.build_line_items(products)

        code = normalize_code(coupon_code)
        discounts = []
        coupon = self.coupons.find_active_coupon(code, user_id) if code else None
        if coupon:
            percentage = coupon.get("discount_percentage", 0)
            total_cents = self.coupons.apply_discount(total_cents, percentage)
            discounts.append({"coupon": self.gateway.create_percent_coupon(percentage)})

        product_quantities = [
            {
                "id": product_identifier(product),
                "quantity": safe_positive_int(product.get("quantity"), 1) or 1,
            }
            for product in products
        ]
        session = self.gateway.create_checkout_session(
            line_items=line_items,
            success_url=self.success_url,
            cancel_url=self.cancel_url,
            discounts=discounts,
            metadata={
                "userId": str(user_id),
                "couponCode": code,
                "productQuantities": json.dumps(product_quantities),
            },
        )
        logger.info(
            "Created checkout session %s for user %s (total=%s cents, coupon=%s)",
            session.id,
            user_id,
            total_cents,
            code if coupon else "-",
        )
        return CheckoutQuote(
            session_id=session.id,
            total_amount=from_minor_units(total_cents),
            total_cents=total_cents,
            coupon_code=code if coupon else "",
        )


class PaymentReconciler:
    """Turns a paid Stripe checkout session into exactly one order.

    The session id comes from the client, so amounts, buyer, coupon and
    line items are all read back from Stripe and the product catalog.
    """

    def __init__(
        self,
        gateway: StripeGateway,
        coupons: CouponManager,
        products: ProductStore,
        orders: OrderStore,
        reward_threshold_cents: int = REWARD_THRESHOLD_CENTS,
    ):
        self.gateway = gateway
        self.coupons = coupons
        self.products = products
        self.orders = orders
        self.reward_threshold_cents = reward_threshold_cents

    def build_order_items(self, snapshot: List[Dict]) -> List[Dict]:
        quantities = {entry["id"]: entry["quantity"] for entry in snapshot}
        items = []
        for product in self.products.find_many(quantities.keys()):
            product_id = str(product["_id"])
            items.append(
                {
                    "product_id": product_id,
                    "name": product.get("name", ""),
                    "quantity": quantities[product_id],
                    "price": product.get("price", 0),
                }
            )
        missing = set(quantities) - {item["product_id"] for item in items}
        if missing:
            logger.warning("Products no longer in catalog: %s", sorted(missing))
        return items

    def reconcile(self, session_id) -> ReconciliationResult:
        session_id = str(session_id or "").strip()
        if not session_id:
            raise InvalidInput("A checkout session id is required.")

        session = self.gateway.retrieve_checkout_session(session_id)
        if not session.is_paid:
            raise PaymentIncomplete()

        existing = self.orders.find_by_session(session_id)
        if existing:
            order_id = str(existing["_id"])
            logger.info("Session %s already reconciled as order %s", session_id, order_id)
            return ReconciliationResult(order_id=order_id, already_processed=True)

        metadata = session.metadata
        user_id = metadata.get("userId", "")
        coupon_code = metadata.get("couponCode", "")
        if coupon_code:
            self.coupons.deactivate(coupon_code, user_id)

        snapshot = parse_product_quantities(metadata.get("productQuantities"))
        items = self.build_order_items(snapshot)
        order, created = self.orders.insert_if_absent(
            {
                "user_id": user_id,
                "items": items,
                "total_amount": from_minor_units(session.amount_total),
                "stripe_session_id": session_id,
                "created_at": datetime.utcnow(),
            }
        )
        order_id = str(order["_id"])
        if not created:
            logger.warning(
                "Lost order insert race for session %s; using order %s",
                session_id,
                order_id,
            )
            return ReconciliationResult(order_id=order_id, already_processed=True)

        logger.info("Order %s created for session %s", order_id, session_id)

        reward = None
        if session.amount_total >= self.reward_threshold_cents and user_id:
            reward = self.coupons.issue_reward(user_id)

        return ReconciliationResult(
            order_id=order_id, already_processed=False, reward_coupon=reward
        )

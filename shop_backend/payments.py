import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import stripe

from .errors import PaymentProviderError

logger = logging.getLogger(__name__)


@dataclass
class ProviderSession:
    id: str
    payment_status: str = ""
    amount_total: int = 0
    metadata: Dict[str, str] = field(default_factory=dict)
    url: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"


def _as_dict(value) -> Dict:
    if value is None:
        return {}
    if isinstance(value, dict):
        return dict(value)
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(value)


def _session_from_stripe(session) -> ProviderSession:
    metadata = _as_dict(getattr(session, "metadata", None))
    return ProviderSession(
        id=getattr(session, "id", None) or "",
        payment_status=getattr(session, "payment_status", None) or "",
        amount_total=int(getattr(session, "amount_total", None) or 0),
        metadata={str(key): str(value) for key, value in metadata.items()},
        url=getattr(session, "url", None),
    )


class StripeGateway:
    """Thin wrapper over the Stripe checkout and coupon APIs.

    All calls pass the API key explicitly so several gateways (or a test
    double with the same methods) can coexist in one process.
    """

    def __init__(self, api_key: str, currency: str = "usd", client=stripe):
        self.api_key = api_key
        self.currency = (currency or "usd").strip().lower()
        self._stripe = client

    def create_percent_coupon(self, percent_off) -> str:
        try:
            coupon = self._stripe.Coupon.create(
                percent_off=percent_off,
                duration="once",
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            logger.error("Stripe coupon creation failed: %s", exc)
            raise PaymentProviderError(str(exc)) from exc
        return coupon.id

    def create_checkout_session(
        self,
        *,
        line_items: List[Dict],
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        discounts: Optional[List[Dict]] = None,
    ) -> ProviderSession:
        try:
            session = self._stripe.checkout.Session.create(
                payment_method_types=["card"],
                line_items=line_items,
                mode="payment",
                success_url=success_url,
                cancel_url=cancel_url,
                discounts=discounts or [],
                metadata=metadata,
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            logger.error("Stripe checkout session creation failed: %s", exc)
            raise PaymentProviderError(str(exc)) from exc
        return _session_from_stripe(session)

    def retrieve_checkout_session(self, session_id: str) -> ProviderSession:
        try:
            session = self._stripe.checkout.Session.retrieve(
                session_id, api_key=self.api_key
            )
        except stripe.StripeError as exc:
            logger.error("Stripe session lookup failed for %s: %s", session_id, exc)
            raise PaymentProviderError(str(exc)) from exc
        return _session_from_stripe(session)

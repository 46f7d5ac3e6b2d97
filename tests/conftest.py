"""Pytest fixtures: mongomock database, fake Stripe gateway, Flask client."""

import json
from typing import Dict, List, Optional

import mongomock
import pytest
from bson import ObjectId
from flask_jwt_extended import create_access_token

from shop_backend import create_app
from shop_backend.errors import PaymentProviderError
from shop_backend.payments import ProviderSession

TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256"


class FakeGateway:
    """Records the calls the services make to Stripe."""

    def __init__(self):
        self.sessions: Dict[str, ProviderSession] = {}
        self.created_sessions: List[Dict] = []
        self.created_coupons: List = []
        self.retrieved: List[str] = []
        self.fail_with: Optional[str] = None

    def create_percent_coupon(self, percent_off) -> str:
        if self.fail_with:
            raise PaymentProviderError(self.fail_with)
        self.created_coupons.append(percent_off)
        return f"coupon_{len(self.created_coupons)}"

    def create_checkout_session(self, **kwargs) -> ProviderSession:
        if self.fail_with:
            raise PaymentProviderError(self.fail_with)
        self.created_sessions.append(kwargs)
        session = ProviderSession(
            id=f"cs_test_{len(self.created_sessions)}",
            payment_status="unpaid",
            metadata=dict(kwargs["metadata"]),
        )
        self.sessions[session.id] = session
        return session

    def retrieve_checkout_session(self, session_id: str) -> ProviderSession:
        self.retrieved.append(session_id)
        if self.fail_with:
            raise PaymentProviderError(self.fail_with)
        if session_id not in self.sessions:
            raise PaymentProviderError(f"No such checkout.session: '{session_id}'")
        return self.sessions[session_id]


@pytest.fixture
def db():
    return mongomock.MongoClient().shop


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def app(db, gateway):
    return create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": TEST_SECRET,
            "CLIENT_URL": "http://shop.test",
        },
        db=db,
        payment_gateway=gateway,
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def customer_id(db) -> str:
    result = db.users.insert_one(
        {
            "name": "Casey Buyer",
            "email": "casey@example.com",
            "password": "hashed",
            "role": "customer",
        }
    )
    return str(result.inserted_id)


@pytest.fixture
def admin_id(db) -> str:
    result = db.users.insert_one(
        {
            "name": "Avery Admin",
            "email": "avery@example.com",
            "password": "hashed",
            "role": "admin",
        }
    )
    return str(result.inserted_id)


@pytest.fixture
def products(db) -> Dict[str, Dict]:
    documents = {
        "mug": {"name": "Mug", "price": 10.00, "image": "https://img.test/mug.png"},
        "lamp": {"name": "Lamp", "price": 125.00, "image": "https://img.test/lamp.png"},
        "poster": {"name": "Poster", "price": 19.99, "image": "https://img.test/poster.png"},
    }
    for document in documents.values():
        document["_id"] = db.products.insert_one(dict(document)).inserted_id
    return documents


@pytest.fixture
def make_token(app):
    def _make_token(user_id, **kwargs) -> str:
        with app.app_context():
            return create_access_token(identity=str(user_id), **kwargs)

    return _make_token


@pytest.fixture
def login(client, make_token):
    def _login(user_id, **kwargs) -> str:
        token = make_token(user_id, **kwargs)
        client.set_cookie("accessToken", token)
        return token

    return _login


@pytest.fixture
def paid_session(gateway):
    def _paid_session(
        user_id,
        amount_total: int,
        quantities: List[Dict],
        coupon_code: str = "",
        session_id: str = "cs_paid_1",
        payment_status: str = "paid",
    ) -> ProviderSession:
        session = ProviderSession(
            id=session_id,
            payment_status=payment_status,
            amount_total=amount_total,
            metadata={
                "userId": str(user_id),
                "couponCode": coupon_code,
                "productQuantities": json.dumps(
                    [
                        {
                            "id": str(entry["id"])
                            if isinstance(entry["id"], ObjectId)
                            else entry["id"],
                            "quantity": entry["quantity"],
                        }
                        for entry in quantities
                    ]
                ),
            },
        )
        gateway.sessions[session_id] = session
        return session

    return _paid_session

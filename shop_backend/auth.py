from contextlib import contextmanager
from dataclasses import dataclass
from functools import wraps
from typing import Dict, Optional

from flask import current_app, g, request
from flask_jwt_extended import get_jwt, get_jwt_identity, verify_jwt_in_request
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt import ExpiredSignatureError, InvalidTokenError

from .errors import Forbidden, TokenExpired, Unauthenticated
from .storage import UserStore

ALLOWED_USER_ROLES = {"customer", "admin"}
DEFAULT_ROLE = "customer"


def normalize_role(value: Optional[str]) -> str:
    normalized = str(value or "").strip().lower()
    return normalized if normalized in ALLOWED_USER_ROLES else DEFAULT_ROLE


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: str = DEFAULT_ROLE
    name: str = ""
    email: str = ""

    @classmethod
    def from_document(cls, document: Dict) -> "CurrentUser":
        return cls(
            id=str(document.get("_id")),
            role=normalize_role(document.get("role")),
            name=str(document.get("name") or ""),
            email=str(document.get("email") or "").strip().lower(),
        )


def is_admin(user: Optional[CurrentUser]) -> bool:
    return bool(user) and user.role == "admin"


def require_role(user: Optional[CurrentUser], *roles: str) -> CurrentUser:
    allowed = {normalize_role(role) for role in roles if role}
    if not user:
        raise Forbidden()
    if is_admin(user) or not allowed or user.role in allowed:
        return user
    raise Forbidden()


@contextmanager
def translate_jwt_errors():
    try:
        yield
    except ExpiredSignatureError as exc:
        raise TokenExpired() from exc
    except (InvalidTokenError, JWTExtendedException) as exc:
        raise Unauthenticated() from exc


class TokenVerifier:
    """Maps the access token of the current request to a stored user.

    The token is read from the ``accessToken`` cookie or an
    ``Authorization: Bearer`` header by flask_jwt_extended. Expired tokens
    raise ``TokenExpired`` so clients can refresh silently; every other
    failure, including a token for a user that no longer exists, raises
    ``Unauthenticated``.
    """

    def __init__(self, users: UserStore):
        self.users = users

    def verify_request(self) -> Dict:
        with translate_jwt_errors():
            verify_jwt_in_request()
            return get_jwt()

    def load_user(self, user_id) -> CurrentUser:
        user_document = self.users.find_by_id(user_id)
        if not user_document:
            raise Unauthenticated("User not found", reason="user_not_found")
        return CurrentUser.from_document(user_document)

    def resolve_request(self) -> CurrentUser:
        self.verify_request()
        return self.load_user(get_jwt_identity())


def get_current_user() -> Optional[CurrentUser]:
    return g.get("current_user")


def protect_route(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        verifier: TokenVerifier = current_app.extensions["shop_backend"]["verifier"]
        try:
            g.current_user = verifier.resolve_request()
        except Unauthenticated as exc:
            current_app.logger.info(
                "Rejected request to %s: %s", request.path, exc.reason
            )
            raise
        return view(*args, **kwargs)

    return wrapper


def admin_route(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        require_role(get_current_user(), "admin")
        return view(*args, **kwargs)

    return wrapper

from typing import Dict, Optional

from flask import jsonify
from pymongo.errors import PyMongoError


class APIError(Exception):
    status_code = 500
    reason = "internal_error"
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, *, reason: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        if reason:
            self.reason = reason

    def to_dict(self) -> Dict[str, str]:
        return {"message": self.message, "reason": self.reason}


class InvalidInput(APIError):
    status_code = 400
    reason = "invalid_input"
    default_message = "Invalid request payload."


class Unauthenticated(APIError):
    status_code = 401
    reason = "not_authorized"
    default_message = "Not authorized"


class TokenExpired(Unauthenticated):
    reason = "token_expired"
    default_message = "Token expired"


class Forbidden(APIError):
    status_code = 403
    reason = "forbidden"
    default_message = "Access denied - Admin only"


class NotFound(APIError):
    status_code = 404
    reason = "not_found"
    default_message = "Not found."


class PaymentIncomplete(APIError):
    status_code = 400
    reason = "payment_incomplete"
    default_message = "Payment not completed successfully."


class PaymentProviderError(APIError):
    status_code = 500
    reason = "payment_provider_error"
    default_message = "Payment provider request failed."


def register_error_handlers(app):
    @app.errorhandler(APIError)
    def handle_api_error(error: APIError):
        if error.status_code >= 500:
            app.logger.error("%s: %s", type(error).__name__, error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(PyMongoError)
    def handle_database_error(error: PyMongoError):
        app.logger.error("Database error: %s", error)
        return (
            jsonify(
                {
                    "message": "Database error",
                    "reason": "database_error",
                    "error": str(error),
                }
            ),
            500,
        )

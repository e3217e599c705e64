"""Exceptions raised by the store services.

Each exception carries the HTTP status the app factory renders it with, so
services stay free of Flask imports.
"""

from typing import Dict, List, Optional


class StoreError(Exception):
    status_code = 500
    default_message = "Something went wrong. Please try again."

    def __init__(
        self,
        message: Optional[str] = None,
        errors: Optional[List[Dict[str, str]]] = None,
    ):
        self.message = message or self.default_message
        self.errors = errors or []
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"message": self.message}
        if self.errors:
            payload["errors"] = self.errors
        return payload


class ValidationError(StoreError):
    status_code = 400
    default_message = "Validation failed"


class AuthenticationError(StoreError):
    status_code = 401
    default_message = "Authentication required"


class PermissionDenied(StoreError):
    status_code = 403
    default_message = "You need additional permissions to perform this action."


class NotFound(StoreError):
    status_code = 404
    default_message = "Not found"


class ProductNotFound(NotFound):
    default_message = "Product not found"


class OrderNotFound(NotFound):
    default_message = "Order not found"


class UserNotFound(NotFound):
    default_message = "User not found"


class Conflict(StoreError):
    status_code = 409
    default_message = "The request conflicts with the current state."


class OutOfStock(Conflict):
    default_message = "Product out of stock"


class AlreadyRated(Conflict):
    default_message = "You have already rated this item"


class InvalidTransition(Conflict):
    default_message = "This order status change is not allowed."


class AccountLocked(Conflict):
    status_code = 423
    default_message = (
        "Account temporarily locked due to too many failed login attempts"
    )


class SecurityError(StoreError):
    status_code = 400
    default_message = "Request could not be verified."

    def to_dict(self) -> Dict[str, object]:
        return {"message": self.default_message}


class InvalidSignature(SecurityError):
    default_message = "Invalid payment signature"


class UpstreamError(StoreError):
    status_code = 502
    default_message = "An upstream service did not respond. Please try again."


class PersistenceError(StoreError):
    status_code = 500
    default_message = "We could not save your request. Please try again."


def field_error(field: str, message: str) -> Dict[str, str]:
    return {"field": field, "message": message}

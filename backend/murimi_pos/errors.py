# Overview: Error taxonomy shared by services and routes, plus the JSON envelope helpers.

"""
Application errors.

Every error a service raises on purpose is an AppError carrying the HTTP
status the route should answer with. Routes turn them into the uniform
envelope {"success": false, "error": "..."}; anything else is logged and
reported as a generic internal error.
"""

from __future__ import annotations

from flask import jsonify


class AppError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(AppError):
    """Malformed or missing input."""
    status_code = 400
    code = "VALIDATION_ERROR"


class AuthenticationError(AppError):
    status_code = 401
    code = "AUTHENTICATION_ERROR"

    def __init__(self, message: str = "Authentication required", details: dict | None = None):
        super().__init__(message, details)


class AuthorizationError(AppError):
    status_code = 403
    code = "AUTHORIZATION_ERROR"

    def __init__(self, message: str = "Insufficient permissions", details: dict | None = None):
        super().__init__(message, details)


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(AppError):
    """Uniqueness conflicts (duplicate SKU, barcode, username)."""
    status_code = 409
    code = "CONFLICT"


class BusinessRuleViolation(AppError):
    status_code = 400
    code = "BUSINESS_RULE_VIOLATION"


class InsufficientStockError(BusinessRuleViolation):
    code = "INSUFFICIENT_STOCK"


class InvalidRefundError(BusinessRuleViolation):
    code = "INVALID_REFUND"


class VoidWindowExpiredError(BusinessRuleViolation):
    code = "VOID_WINDOW_EXPIRED"


class SaleStateError(BusinessRuleViolation):
    """Operation not allowed in the sale's current status."""
    code = "INVALID_SALE_STATE"


class PaymentRejectedError(BusinessRuleViolation):
    """The payment gateway answered but declined the request."""
    code = "PAYMENT_REJECTED"


class DependencyError(AppError):
    """A dependent service (gateway, database) is unavailable."""
    status_code = 503
    code = "DEPENDENCY_UNAVAILABLE"


class MpesaError(DependencyError):
    code = "MPESA_ERROR"


class InternalError(AppError):
    status_code = 500
    code = "INTERNAL_ERROR"


INTERNAL_ERROR_MESSAGE = "Internal server error"


def success_response(data, status: int = 200, **extra):
    body = {"success": True, "data": data}
    body.update(extra)
    return jsonify(body), status


def error_response(exc: AppError):
    # 5xx messages never leave the server
    if exc.status_code >= 500 and not isinstance(exc, DependencyError):
        message = INTERNAL_ERROR_MESSAGE
    else:
        message = exc.message
    body = {"success": False, "error": message}
    if exc.details and exc.status_code < 500:
        body["details"] = exc.details
    return jsonify(body), exc.status_code


def internal_error_response():
    return jsonify({"success": False, "error": INTERNAL_ERROR_MESSAGE}), 500

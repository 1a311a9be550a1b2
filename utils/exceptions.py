"""
Engine Exceptions
=================

Typed error taxonomy shared by the ledger, scheduler, rate aggregator and
notification delivery. Every error carries a numeric business code so that
front ends (bot, HTTP API) can report it without parsing messages.

Propagation policy:
- SourceUnavailableError / RateUnavailableError are contained by the component
  that calls the external service and never end a poll cycle.
- InvalidStateError and InvalidInputError are surfaced to the caller.
- DeliveryFailedError is recorded on the notification and retried.
"""

from typing import Any, Dict, Optional


# Generic codes
ERR_INVALID_PARAMS = 400
ERR_NOT_FOUND = 404
ERR_INTERNAL = 500

# Business codes 1000+
ERR_ORDER_NOT_FOUND = 1001
ERR_ORDER_EXPIRED = 1002
ERR_ORDER_NOT_PENDING = 1003
ERR_INVALID_AMOUNT = 1004
ERR_INVALID_ADDRESS = 1011
ERR_SITE_NOT_FOUND = 1012
ERR_TRANSFER_NOT_FOUND = 1013

# External API codes 2000+
ERR_SOURCE_UNAVAILABLE = 2002
ERR_RATE_UNAVAILABLE = 2005
ERR_DELIVERY_FAILED = 2006


class HashPayError(Exception):
    """Base class for all engine errors"""

    code = ERR_INTERNAL
    default_message = "Internal error"

    def __init__(self, message: Optional[str] = None, details: Any = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def __str__(self):
        return f"[{self.code}] {self.message}"


# ----------------------------------------------------------------------------
# Not found
# ----------------------------------------------------------------------------

class NotFoundError(HashPayError):
    code = ERR_NOT_FOUND
    default_message = "Not found"


class OrderNotFoundError(NotFoundError):
    code = ERR_ORDER_NOT_FOUND
    default_message = "Order not found"


class TransferNotFoundError(NotFoundError):
    code = ERR_TRANSFER_NOT_FOUND
    default_message = "Transfer not found"


class SiteNotFoundError(NotFoundError):
    code = ERR_SITE_NOT_FOUND
    default_message = "Site not found"


# ----------------------------------------------------------------------------
# Invalid state (terminal order, double method selection)
# ----------------------------------------------------------------------------

class InvalidStateError(HashPayError):
    code = ERR_ORDER_NOT_PENDING
    default_message = "Invalid state transition"


class OrderNotPendingError(InvalidStateError):
    code = ERR_ORDER_NOT_PENDING
    default_message = "Order is not pending"


class OrderExpiredError(InvalidStateError):
    code = ERR_ORDER_EXPIRED
    default_message = "Order expired"


# ----------------------------------------------------------------------------
# Invalid input
# ----------------------------------------------------------------------------

class InvalidInputError(HashPayError):
    code = ERR_INVALID_PARAMS
    default_message = "Invalid parameters"


class InvalidAmountError(InvalidInputError):
    code = ERR_INVALID_AMOUNT
    default_message = "Invalid amount"


class InvalidAddressError(InvalidInputError):
    code = ERR_INVALID_ADDRESS
    default_message = "Invalid address"


# ----------------------------------------------------------------------------
# External I/O
# ----------------------------------------------------------------------------

class SourceUnavailableError(HashPayError):
    """Transfer source transport/parse failure; always recoverable"""
    code = ERR_SOURCE_UNAVAILABLE
    default_message = "Transfer source unavailable"


class RateUnavailableError(HashPayError):
    """A rate source could not produce a price"""
    code = ERR_RATE_UNAVAILABLE
    default_message = "Exchange rate unavailable"


class DeliveryFailedError(HashPayError):
    """A notification attempt failed; retried with backoff"""
    code = ERR_DELIVERY_FAILED
    default_message = "Notification delivery failed"


def to_error_response(exc: Exception) -> Dict[str, Any]:
    """Convert an exception into the {code, message} body used by front ends"""
    if isinstance(exc, HashPayError):
        response = {"code": exc.code, "message": exc.message}
        if exc.details is not None:
            response["details"] = exc.details
        return response
    return {"code": ERR_INTERNAL, "message": "Internal server error"}

"""
Marketplace error taxonomy.

Every failure raised by the listing and order managers is a
MarketplaceError; main.py maps it to an HTTP status and a {"detail": ...}
body, the same shape FastAPI uses for HTTPException.
"""
from typing import Optional


class MarketplaceError(Exception):
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(MarketplaceError):
    default_message = "Invalid input"


class AuthorizationError(MarketplaceError):
    status_code = 403
    default_message = "Not authorized"


class NotFoundError(MarketplaceError):
    status_code = 404
    default_message = "Not found"


class InvalidStateError(MarketplaceError):
    default_message = "Operation not allowed in the current state"


class InsufficientStockError(MarketplaceError):
    def __init__(self, remaining: int, message: Optional[str] = None):
        self.remaining = remaining
        super().__init__(message or f"Only {remaining} items remaining")


class ExpiredError(MarketplaceError):
    default_message = "This listing has expired"


class InvalidCodeError(MarketplaceError):
    default_message = "Invalid pickup code"


class DuplicateError(MarketplaceError):
    default_message = "Already exists"

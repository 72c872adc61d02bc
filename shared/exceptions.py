"""
shared/exceptions.py
Domain errors raised by the service layer.
main.py renders every MarketplaceError as {"detail", "code"} with its status.
"""

from typing import Optional


class MarketplaceError(Exception):
    status_code: int = 400
    code: str = "BAD_REQUEST"

    def __init__(self, detail: str, *, field: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.field = field

    def to_dict(self) -> dict:
        body = {"detail": self.detail, "code": self.code}
        if self.field:
            body["field"] = self.field
        return body


# ── Validation ────────────────────────────────────────────────

class ListingValidationError(MarketplaceError):
    status_code = 422
    code = "VALIDATION_ERROR"


class InvalidCategoryError(ListingValidationError):
    code = "INVALID_CATEGORY"


# ── Credits ───────────────────────────────────────────────────

class InsufficientCreditsError(MarketplaceError):
    status_code = 402
    code = "INSUFFICIENT_CREDITS"

    def __init__(self, category: str):
        super().__init__(f"No {category} credits left. Buy a package to post.")
        self.category = category


# ── Lookup / ownership ────────────────────────────────────────

class NotFoundError(MarketplaceError):
    status_code = 404
    code = "NOT_FOUND"


class ListingNotFoundError(NotFoundError):
    def __init__(self, listing_id=None):
        super().__init__("Listing not found")
        self.listing_id = listing_id


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id=None):
        super().__init__("User not found")
        self.user_id = user_id


class TransactionNotFoundError(NotFoundError):
    def __init__(self, cart_id=None):
        super().__init__("Transaction not found")
        self.cart_id = cart_id


class PackageNotFoundError(NotFoundError):
    def __init__(self, package_id=None):
        super().__init__("Credit package not found")
        self.package_id = package_id


class NotOwnerError(MarketplaceError):
    status_code = 403
    code = "NOT_OWNER"

    def __init__(self, detail: str = "Not your listing"):
        super().__init__(detail)


# ── State machine ─────────────────────────────────────────────

class InvalidTransitionError(MarketplaceError):
    status_code = 409
    code = "INVALID_STATE"

    def __init__(self, action: str, status: str):
        super().__init__(f"Cannot {action} a listing that is {status}")
        self.action = action
        self.status = status


class RenewalWindowError(MarketplaceError):
    status_code = 409
    code = "RENEWAL_WINDOW_CLOSED"


# ── Payments ──────────────────────────────────────────────────

class PaymentGatewayError(MarketplaceError):
    status_code = 502
    code = "GATEWAY_ERROR"


class PaymentGatewayTimeout(PaymentGatewayError):
    status_code = 504
    code = "GATEWAY_TIMEOUT"

    def __init__(self, detail: str = "Payment gateway did not respond in time"):
        super().__init__(detail)

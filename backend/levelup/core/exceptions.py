class LevelupError(Exception):
    """Base exception for the Levelup backend."""

    pass


class BusinessRuleViolation(LevelupError):
    """A payment event that can never succeed, however often it is retried.

    The webhook processor records these as terminal: the event is marked
    processed with the error stored, and Stripe receives ``status_code``.
    """

    status_code: int = 400

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class WebhookRejected(BusinessRuleViolation):
    """Raised for malformed or unpaid webhook payloads."""

    pass


class ProductNotFound(BusinessRuleViolation):
    """Raised when a purchase references an unknown product."""

    def __init__(self, product_id: object):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class LicenseNotFound(BusinessRuleViolation):
    """Raised when no catalog license can be resolved."""

    pass


class LicenseIncompatible(BusinessRuleViolation):
    """Raised when the resolved license cannot be used for the product."""

    def __init__(self, license_name: str, reason: str = "does not allow exclusive purchase"):
        self.license_name = license_name
        super().__init__(f"License {license_name} {reason}")


class ExclusiveAlreadySold(BusinessRuleViolation):
    """Raised when an exclusive product was already sold to another buyer."""

    def __init__(self, product_id: object):
        self.product_id = product_id
        super().__init__("This exclusive product has already been sold")


class ExclusiveLockMissing(BusinessRuleViolation):
    """Raised when an exclusive purchase has no reservation for its checkout session."""

    def __init__(self, product_id: object, checkout_session_id: str):
        self.product_id = product_id
        self.checkout_session_id = checkout_session_id
        super().__init__("No valid lock found for this exclusive purchase")


class AmountMismatch(BusinessRuleViolation):
    """Raised when the paid amount differs from the license price."""

    def __init__(self, license_name: str, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Amount mismatch for license {license_name}. Expected {expected}, got {actual}")


class LicenseSalesExhausted(BusinessRuleViolation):
    """Raised when a license reached its max_sales for a product."""

    def __init__(self, license_name: str):
        super().__init__(f"License {license_name} reached max sales limit for this product")


class ExclusiveLockConflict(LevelupError):
    """Raised when another checkout already holds the product's reservation."""

    def __init__(self, product_id: object):
        self.product_id = product_id
        super().__init__(f"Exclusive product {product_id} is currently reserved")


class CheckoutNotPermitted(LevelupError):
    """Raised when the buyer's account may not start this checkout."""

    pass


class CompletionRoutineUnavailable(LevelupError):
    """Raised when the unified purchase routine cannot be used for a request."""

    pass


class AccountNotResolved(LevelupError):
    """Raised when a billing identity matches no account. Retryable."""

    def __init__(self, customer_id: str, subscription_id: str):
        self.customer_id = customer_id
        self.subscription_id = subscription_id
        super().__init__(
            f"Unable to resolve user for Stripe customer {customer_id} (subscription {subscription_id})"
        )


class EmailDeliveryError(LevelupError):
    """Raised when the e-mail provider rejects or fails a send."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500

"""
QuickBooks error taxonomy.

Callers branch on the exception type: reconnect (NotConnected and its
FatalCredentialError subclass), fix input (LedgerValidationError), retry later
(TransientNetworkError), or report a partner rejection (LedgerApiError).
"""

import json
from typing import Optional

import httpx


class QuickBooksError(Exception):
    """Base class for every error raised by the QuickBooks integration."""


class NotConnected(QuickBooksError):
    needs_reconnect = True

    def __init__(self, message: str = "QuickBooks not connected"):
        super().__init__(message)


class FatalCredentialError(NotConnected):
    """The refresh token is dead; the user has to authorize again."""

    def __init__(self, message: str = "QuickBooks authorization expired. Please reconnect to QuickBooks.", detail: Optional[str] = None):
        super().__init__(message)
        self.detail = detail


class TransientNetworkError(QuickBooksError):
    """A retry-worthy failure: rate limiting, 5xx, timeouts, resets."""

    def __init__(self, message: str, attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts


class LedgerApiError(QuickBooksError):
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        fault_code: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.fault_code = fault_code
        self.detail = detail


class LedgerAuthError(LedgerApiError):
    """The data API rejected the bearer token (HTTP 401 / fault 3200)."""


class LedgerValidationError(QuickBooksError):
    pass


class MissingRequiredField(LedgerValidationError):
    def __init__(self, fields):
        self.fields = list(fields)
        super().__init__(
            f"Missing required receipt data: {', '.join(self.fields)}"
        )


class MissingExpenseCategory(LedgerValidationError):
    def __init__(self):
        super().__init__("Expense account (category) is required")


class MissingPaymentAccount(LedgerValidationError):
    def __init__(self):
        super().__init__("Payment account is required")


class PaymentCreationFailed(QuickBooksError):
    def __init__(self, bill_id: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__("Failed to create payment for the bill. Please try again.")
        self.bill_id = bill_id
        self.cause = cause


class AttachmentFailed(QuickBooksError):
    pass


class TokenEndpointError(QuickBooksError):
    """Non-2xx answer from the Intuit OAuth token endpoint."""

    def __init__(self, status_code: int, body="") -> None:
        if isinstance(body, bytes):
            body = body.decode("utf-8", errors="replace")
        self.status_code = status_code
        self.body = body or ""
        self.error_code = _oauth_error_code(self.body)
        super().__init__(f"Token endpoint returned {status_code}: {self.body[:300]}")


def _oauth_error_code(body: str) -> Optional[str]:
    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        return None
    if isinstance(data, dict):
        return data.get("error")
    return None


FATAL = "fatal"
TRANSIENT = "transient"

_FATAL_MARKERS = (
    "invalid_grant",
    "token expired",
    "token is invalid",
    "reconnect",
    "re-authorize",
    "reauthorize",
)


def classify_refresh_failure(exc: BaseException) -> str:
    """Return FATAL when the refresh token can never work again, else TRANSIENT."""
    if isinstance(exc, FatalCredentialError):
        return FATAL
    if isinstance(exc, TokenEndpointError):
        if exc.status_code == 401 or exc.error_code == "invalid_grant":
            return FATAL
        if exc.status_code == 429 or exc.status_code >= 500:
            return TRANSIENT
        text = exc.body.lower()
        if any(marker in text for marker in _FATAL_MARKERS):
            return FATAL
        return TRANSIENT
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return TRANSIENT
    text = str(exc).lower()
    if "invalid_grant" in text:
        return FATAL
    return TRANSIENT

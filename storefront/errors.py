from typing import List, Optional
from fastapi import status

from shared.utils import AppException


class InvalidInput(AppException):
    """Missing or malformed identifier or quantity; rejected before any I/O."""

    def __init__(self, detail: str = "Invalid input"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class ValidationError(AppException):
    """Shipping address incomplete."""

    def __init__(self, fields: Optional[List[str]] = None, detail: Optional[str] = None):
        self.fields = list(fields or [])
        if detail is None:
            detail = "Missing required fields: " + ", ".join(self.fields)
        super().__init__(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)


class PreconditionFailed(AppException):
    """Checkout attempted without identity or with an empty cart."""

    def __init__(self, detail: str, redirect: str):
        self.redirect = redirect
        super().__init__(
            status_code=status.HTTP_412_PRECONDITION_FAILED,
            detail=detail,
            headers={"Location": redirect},
        )


class PaymentSetupError(AppException):
    def __init__(self, detail: str = "Unable to process payment. Please try again."):
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)


class SyncWarning(AppException):
    """
    Recorded (never raised) when the order write fails after a successful
    payment. The order counts as placed.
    """

    def __init__(self, order_id: str, detail: Optional[str] = None):
        self.order_id = order_id
        if detail is None:
            detail = (
                "Payment successful, but we encountered an issue saving your order details. "
                "Please check your order history or contact support."
            )
        super().__init__(status_code=status.HTTP_202_ACCEPTED, detail=detail)


class SourceUnavailable(AppException):
    def __init__(self, source: str, detail: Optional[str] = None):
        self.source = source
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail or f"Order source {source} unavailable",
        )

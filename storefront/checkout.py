import logging
import time
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel

from shared.utils import settings
from storefront.errors import InvalidInput, PaymentSetupError, PreconditionFailed, SyncWarning, ValidationError
from storefront.models import (
    CartLine, OrderDraft, OrderItem, OrderStatus, PaymentStatus, PlacedOrder,
    REQUIRED_ADDRESS_FIELDS, ShippingAddress, to_money,
)
from storefront.notices import Notice, Notifier, log_notice
from storefront.schemas import OrderCreate

logger = logging.getLogger(__name__)


class CheckoutStep(str, Enum):
    SHIPPING = "shipping"
    PAYMENT = "payment"
    CONFIRMATION = "confirmation"


# --- Pricing ---
def shipping_fee_for(subtotal: Decimal) -> Decimal:
    if subtotal > settings.FREE_SHIPPING_THRESHOLD:
        return Decimal("0.00")
    return to_money(settings.SHIPPING_FEE)


def build_order_draft(lines: List[CartLine], address: ShippingAddress) -> OrderDraft:
    items = tuple(OrderItem.from_line(line) for line in lines)
    subtotal = to_money(sum((item.line_subtotal for item in items), Decimal(0)))
    fee = shipping_fee_for(subtotal)
    return OrderDraft(
        items=items,
        shipping_address=address,
        subtotal=subtotal,
        shipping_fee=fee,
        total_amount=to_money(subtotal + fee),
    )


def draft_document(draft: OrderDraft) -> dict:
    return {
        "items": [item.to_document() for item in draft.items],
        "shippingAddress": draft.shipping_address.to_document(),
        "totalAmount": float(draft.total_amount),
    }


# --- Order Write ---
class OrderWriter:
    """
    Records a paid order with the primary API. A failed write never fails
    checkout: the order is returned unsynced together with a SyncWarning.
    """

    def __init__(self, api, payment_method: str = settings.PAYMENT_METHOD):
        self.api = api
        self.payment_method = payment_method

    async def place(self, subject_id: str, draft: OrderDraft) -> Tuple[PlacedOrder, Optional[SyncWarning]]:
        order_date = datetime.utcnow()
        provisional_id = f"ORD{int(time.time() * 1000)}"
        document = draft_document(draft)
        payload = OrderCreate(
            subject_id=subject_id,
            items=document["items"],
            shipping_address=document["shippingAddress"],
            payment_method=self.payment_method,
            total_amount=document["totalAmount"],
            status=OrderStatus.PROCESSING.value,
            payment_status=PaymentStatus.PAID.value,
            order_date=order_date,
        ).to_payload()

        order = PlacedOrder(
            id=provisional_id,
            subject_id=subject_id,
            items=list(draft.items),
            shipping_address=draft.shipping_address,
            total_amount=draft.total_amount,
            payment_method=self.payment_method,
            order_date=order_date,
            synced=False,
        )

        try:
            created = await self.api.create_order(payload)
        except Exception:
            # Payment already went through; never surface this as a failure
            logger.error(
                "Failed to save order after payment",
                extra={"user_id": subject_id, "order_id": provisional_id},
                exc_info=True,
            )
            return order, SyncWarning(order_id=provisional_id)

        order.id = str(created.get("id") or provisional_id)
        order.synced = True
        logger.info("Order saved", extra={"user_id": subject_id, "order_id": order.id})
        return order, None


class CheckoutResult(BaseModel):
    order: PlacedOrder
    sync_warning: Optional[SyncWarning] = None

    class Config:
        arbitrary_types_allowed = True


# --- Checkout ---
class CheckoutFlow:
    """shipping -> payment -> confirmation. Nothing changes once confirmed."""

    def __init__(self, cart, charge, writer: OrderWriter, identity, notify: Notifier = log_notice):
        self.cart = cart
        self.charge = charge
        self.writer = writer
        self.identity = identity
        self.notify = notify

        self.step = CheckoutStep.SHIPPING
        self.address: Optional[ShippingAddress] = None
        self.draft: Optional[OrderDraft] = None
        self.authorization = None
        self.result: Optional[CheckoutResult] = None
        self._subject_id: Optional[str] = None

    def submit_shipping(self, data: Any) -> ShippingAddress:
        if self.step == CheckoutStep.CONFIRMATION:
            return self.address

        address = data if isinstance(data, ShippingAddress) else ShippingAddress(**(data or {}))
        missing = address.missing_fields()
        if missing:
            raise ValidationError(missing)

        self.address = address
        # A new address invalidates any authorization taken for the old draft
        self.draft = None
        self.authorization = None
        self.step = CheckoutStep.PAYMENT
        return address

    async def begin_payment(self):
        if self.step == CheckoutStep.CONFIRMATION:
            return self.authorization

        subject_id = self.identity.current_subject_id()
        if not subject_id:
            raise PreconditionFailed("Please sign in to complete your purchase.", redirect="/login")
        lines = self.cart.lines()
        if not lines:
            raise PreconditionFailed("Your cart is empty. Please add items before checkout.", redirect="/shop")
        if self.address is None:
            raise ValidationError(list(REQUIRED_ADDRESS_FIELDS), detail="Shipping address is required")

        try:
            draft = build_order_draft(lines, self.address)
        except ArithmeticError:
            raise InvalidInput("Cart total is too large to charge")
        logger.info("Creating payment authorization for %s", draft.total_amount, extra={"user_id": subject_id})
        try:
            authorization = await self.charge.create_authorization(draft.total_amount, draft_document(draft))
        except PaymentSetupError as e:
            logger.warning("Payment setup failed: %s", e.detail, extra={"user_id": subject_id})
            self.notify(Notice.error("Payment Error", e.detail))
            raise

        self.draft = draft
        self.authorization = authorization
        self._subject_id = subject_id
        self.notify(Notice.info("Payment Ready", "Please complete your payment information."))
        return authorization

    async def confirm_payment(self, payment_details: Optional[dict] = None) -> CheckoutResult:
        if self.step == CheckoutStep.CONFIRMATION:
            return self.result
        if self.authorization is None:
            raise PreconditionFailed("Payment has not been set up.", redirect="/checkout")

        try:
            await self.charge.confirm_payment(self.authorization.client_secret, payment_details or {})
        except PaymentSetupError as e:
            self.notify(Notice.error("Payment Error", e.detail))
            raise
        return await self.settle()

    async def settle(self) -> CheckoutResult:
        """Record the order once the charge is confirmed and finish checkout."""
        if self.step == CheckoutStep.CONFIRMATION:
            return self.result
        if self.draft is None or self._subject_id is None:
            raise PreconditionFailed("Payment has not been set up.", redirect="/checkout")

        order, warning = await self.writer.place(self._subject_id, self.draft)

        # Payment is irreversible, so the cart goes whether or not the write landed
        self.cart.clear()
        self.step = CheckoutStep.CONFIRMATION
        self.result = CheckoutResult(order=order, sync_warning=warning)

        if warning is None:
            self.notify(Notice.info("Payment Successful", "Your order has been placed successfully!"))
        else:
            self.notify(Notice.error("Order Saved", warning.detail))
        return self.result

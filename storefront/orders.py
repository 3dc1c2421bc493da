"""
Order history, reconciled across every store an order may have landed in.

Each source is an object with a ``tag`` (``OrderSource``) and an
``async fetch(subject_id) -> List[dict]``. Sources are queried together; a
source that fails only makes the result less complete.
"""
import asyncio
import logging
from collections import Counter, OrderedDict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from shared.utils import settings
from storefront.errors import SourceUnavailable
from storefront.models import (
    Order, OrderHistory, OrderItem, OrderSource, OrderStatus, OrderSummary,
    PaymentStatus, ProductSales, PLACEHOLDER_NAME, parse_decimal, to_money,
)

logger = logging.getLogger(__name__)

CREATION_TIME_FIELDS = ("created_at", "createdAt")
ORDER_DATE_FIELDS = ("order_date", "orderDate")
ATTENTION_STATUSES = ("pending", OrderStatus.PROCESSING.value)
STATUS_FILTERS = ("all", "pending") + tuple(status.value for status in OrderStatus)


# --- Timestamps ---
def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Read a stored timestamp as a naive UTC datetime.
    Accepts datetimes, ISO-8601 strings, epoch seconds or milliseconds and
    serialized document-store timestamps ({"_seconds": ..., "_nanoseconds": ...}).
    Returns None for anything else.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _naive_utc(value)
    if isinstance(value, dict):
        seconds = value.get("_seconds", value.get("seconds"))
        nanos = value.get("_nanoseconds", value.get("nanoseconds"))
        if not _is_number(seconds):
            return None
        if _is_number(nanos):
            seconds = seconds + nanos / 1e9
        return parse_timestamp(seconds)
    if isinstance(value, (int, float)):
        try:
            seconds = value / 1000 if abs(value) > 1e11 else value
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return _naive_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def _first_timestamp(record: dict, fields: Sequence[str]) -> Optional[datetime]:
    for field in fields:
        timestamp = parse_timestamp(record.get(field))
        if timestamp is not None:
            return timestamp
    return None


def resolve_timestamp(record: dict, now: Optional[datetime] = None) -> datetime:
    """Creation time, else order date, else ``now``. Never fails."""
    timestamp = _first_timestamp(record, CREATION_TIME_FIELDS)
    if timestamp is None:
        timestamp = _first_timestamp(record, ORDER_DATE_FIELDS)
    if timestamp is None:
        timestamp = now or datetime.utcnow()
    return timestamp


# --- Normalization ---
def _pick(record: dict, *names: str) -> Any:
    for name in names:
        value = record.get(name)
        if value is not None:
            return value
    return None


def _text(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _normalize_item(raw: Any) -> Optional[OrderItem]:
    if not isinstance(raw, dict):
        return None
    try:
        quantity = int(_pick(raw, "quantity") or 1)
    except (TypeError, ValueError, OverflowError):
        quantity = 1
    unit_price = parse_decimal(_pick(raw, "unit_price", "unitPrice", "price"))

    subtotal = _pick(raw, "line_subtotal", "lineSubtotal", "subtotal")
    if subtotal is not None:
        line_subtotal = parse_decimal(subtotal)
    else:
        try:
            line_subtotal = to_money(unit_price * quantity)
        except ArithmeticError:
            line_subtotal = Decimal(0)

    image = _pick(raw, "image_ref", "imageRef", "image")
    return OrderItem(
        product_id=str(_pick(raw, "product_id", "productId") or ""),
        name=str(_pick(raw, "name") or PLACEHOLDER_NAME),
        unit_price=unit_price,
        quantity=quantity,
        image_ref=image if isinstance(image, str) else None,
        line_subtotal=line_subtotal,
    )


def normalize_order(record: Any, source: OrderSource, now: Optional[datetime] = None) -> Optional[Order]:
    """Turn a raw record from any source into an ``Order``; None when it has no id."""
    if not isinstance(record, dict):
        return None
    order_id = _pick(record, "id", "_id")
    if order_id is None or str(order_id) == "":
        return None

    raw_items = record.get("items")
    items = []
    if isinstance(raw_items, list):
        items = [item for item in map(_normalize_item, raw_items) if item is not None]

    address = _pick(record, "shipping_address", "shippingAddress")
    return Order(
        id=str(order_id),
        subject_id=_text(_pick(record, "user_id", "userId", "subject_id", "subjectId")),
        items=items,
        shipping_address=address if isinstance(address, dict) else None,
        total_amount=parse_decimal(_pick(record, "total_amount", "totalAmount")),
        status=str(_pick(record, "status") or "pending"),
        payment_status=str(_pick(record, "payment_status", "paymentStatus") or PaymentStatus.PENDING.value),
        payment_method=_text(_pick(record, "payment_method", "paymentMethod")),
        source=source,
        created_at=_first_timestamp(record, CREATION_TIME_FIELDS),
        order_date=_first_timestamp(record, ORDER_DATE_FIELDS),
        placed_at=resolve_timestamp(record, now),
    )


# --- Aggregation ---
class OrderAggregator:
    def __init__(self, sources: Sequence[Any]):
        self.sources = list(sources)

    async def fetch(self, subject_id: Optional[str]) -> OrderHistory:
        if not subject_id:
            return OrderHistory()

        results = await asyncio.gather(
            *(source.fetch(subject_id) for source in self.sources),
            return_exceptions=True,
        )

        now = datetime.utcnow()
        seen = set()
        orders = []
        unavailable = []
        for source, result in zip(self.sources, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                error = SourceUnavailable(source.tag.value, detail=str(result) or None)
                logger.warning(
                    error.detail, extra={"source": source.tag.value, "user_id": subject_id},
                    exc_info=(type(result), result, result.__traceback__),
                )
                unavailable.append(source.tag)
                continue

            for record in result or []:
                try:
                    order = normalize_order(record, source.tag, now)
                except Exception:
                    logger.warning(
                        "Skipping unreadable order record", extra={"source": source.tag.value},
                        exc_info=True,
                    )
                    continue
                if order is None:
                    logger.warning("Skipping order record without id", extra={"source": source.tag.value})
                    continue
                if order.id in seen:
                    continue
                seen.add(order.id)
                orders.append(order)

        orders.sort(key=lambda order: (order.placed_at, order.id), reverse=True)
        return OrderHistory(orders=orders, unavailable=unavailable)


def filter_by_status(orders: List[Order], status: str = "all") -> List[Order]:
    if not status or status == "all":
        return list(orders)
    return [order for order in orders if order.status == status]


def summarize_orders(orders: List[Order], limit: int = settings.RECENT_ORDERS_LIMIT) -> OrderSummary:
    counts: Dict[str, int] = OrderedDict((status, 0) for status in STATUS_FILTERS)
    counts["all"] = len(orders)
    for order in orders:
        counts[order.status] = counts.get(order.status, 0) + 1

    revenue = sum(
        (order.total_amount for order in orders if order.payment_status == PaymentStatus.PAID.value),
        Decimal(0),
    )

    sold = Counter()
    names = {}
    for order in orders:
        for item in order.items:
            sold[item.product_id] += item.quantity
            names.setdefault(item.product_id, item.name)

    recent = sorted(orders, key=lambda order: (order.placed_at, order.id), reverse=True)[:limit]
    return OrderSummary(
        counts=dict(counts),
        revenue=to_money(revenue),
        needing_attention=sum(1 for order in orders if order.status in ATTENTION_STATUSES),
        recent=recent,
        top_products=[
            ProductSales(product_id=product_id, name=names[product_id], quantity=quantity)
            for product_id, quantity in sold.most_common(limit)
        ],
    )

import asyncio
import json
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from storefront.errors import InvalidInput
from storefront.models import CartLine, PLACEHOLDER_NAME, parse_decimal, parse_money
from storefront.notices import Notice, Notifier, log_notice

logger = logging.getLogger(__name__)

CART_KEY = "cart"


def _field(obj: Any, *names: str) -> Any:
    for name in names:
        if isinstance(obj, dict):
            value = obj.get(name)
        else:
            value = getattr(obj, name, None)
        if value is not None:
            return value
    return None


def _require_product_id(product_id: Any) -> str:
    if product_id is None or str(product_id).strip() == "":
        raise InvalidInput("Product id is required")
    return str(product_id)


def _require_quantity(quantity: Any) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise InvalidInput("Quantity must be a whole number")
    return quantity


def _require_price(value: Any, label: str = "Price") -> Optional[Decimal]:
    if value is None:
        return None
    price = parse_money(value)
    if price is None or price < 0:
        raise InvalidInput(f"{label} must be a non-negative amount")
    return price


def coerce_line(product_id: str, raw: Any) -> Optional[CartLine]:
    """
    Build a line from a stored cart entry, filling what older writers left out:
    - quantity -> 1
    - discounted price -> None
    - unit price -> 0
    - name -> placeholder
    Entries that are not objects or hold a non-positive quantity are dropped.
    """
    if not isinstance(raw, dict):
        return None

    quantity = raw.get("quantity")
    if quantity is None:
        quantity = 1
    try:
        quantity = int(quantity)
    except (TypeError, ValueError):
        quantity = 1
    if quantity <= 0:
        return None

    discounted = _field(raw, "discountedUnitPrice", "discounted_unit_price", "discountPrice")
    return CartLine(
        product_id=str(product_id),
        quantity=quantity,
        name=_field(raw, "name") or PLACEHOLDER_NAME,
        unit_price=parse_decimal(_field(raw, "unitPrice", "unit_price", "price")),
        discounted_unit_price=parse_decimal(discounted) if discounted is not None else None,
        image_ref=_field(raw, "imageRef", "image_ref", "image"),
    )


def validate_lines(items: Optional[Dict[str, Any]]) -> Dict[str, CartLine]:
    lines = {}
    for product_id, raw in (items or {}).items():
        line = coerce_line(product_id, raw)
        if line is not None:
            lines[line.product_id] = line
    return lines


def choose_cart_source(
    authenticated: bool,
    remote_lines: Optional[Dict[str, CartLine]],
    local_lines: Dict[str, CartLine],
) -> Tuple[Dict[str, CartLine], str]:
    """
    Pick the working cart after an identity change.

    A signed-in subject with a non-empty remote cart gets the remote cart;
    whatever was in the local cart is not merged into it. Everyone else keeps
    the local cart.
    """
    if authenticated and remote_lines:
        return dict(remote_lines), "remote"
    return dict(local_lines), "local"


class CartEngine:
    """
    Owns the working cart for one session.

    Mutations commit locally (memory and local cache) before returning, then
    mirror the whole cart to the remote store in the background when a subject
    is signed in. A failed mirror is reported through ``notify`` and never
    undoes the local change. Signed-in mutations must run inside an event loop.
    """

    def __init__(self, local_cache, remote_store, identity: Optional[str] = None, notify: Notifier = log_notice):
        self.local_cache = local_cache
        self.remote_store = remote_store
        self.identity = identity
        self.notify = notify
        self.cart: Dict[str, CartLine] = {}
        self.loading = False
        self._pending = set()
        self._mirror_lock = asyncio.Lock()

    # --- Initialization ---
    async def load(self) -> str:
        self.loading = True
        try:
            local_lines = self._read_local()
            remote_lines = None
            if self.identity:
                remote_lines = await self._read_remote(self.identity)
            self.cart, origin = choose_cart_source(bool(self.identity), remote_lines, local_lines)
        finally:
            self.loading = False

        self._write_local()
        logger.info(
            "Cart loaded from %s with %d lines", origin, len(self.cart),
            extra={"user_id": self.identity},
        )
        return origin

    async def switch_identity(self, subject_id: Optional[str]) -> str:
        await self.flush()
        self.identity = subject_id or None
        return await self.load()

    def _read_local(self) -> Dict[str, CartLine]:
        saved = self.local_cache.get(CART_KEY)
        if not saved:
            return {}
        try:
            items = json.loads(saved)
        except ValueError:
            logger.warning("Discarding unreadable cart from local cache")
            self.local_cache.remove(CART_KEY)
            return {}
        if not isinstance(items, dict):
            logger.warning("Discarding unreadable cart from local cache")
            self.local_cache.remove(CART_KEY)
            return {}
        return validate_lines(items)

    async def _read_remote(self, subject_id: str) -> Optional[Dict[str, CartLine]]:
        try:
            items = await self.remote_store.get_cart(subject_id)
        except Exception:
            logger.warning("Error loading remote cart, using local cart", extra={"user_id": subject_id}, exc_info=True)
            return None
        if not isinstance(items, dict):
            return None
        return validate_lines(items)

    # --- Mutations ---
    def add_item(self, product: Any, quantity: int = 1) -> CartLine:
        if product is None:
            raise InvalidInput("Product is required")
        product_id = _require_product_id(_field(product, "id", "product_id", "productId"))
        quantity = _require_quantity(quantity)
        if quantity <= 0:
            raise InvalidInput("Quantity must be at least 1")

        line = self.cart.get(product_id)
        if line:
            line.quantity += quantity
        else:
            price = _require_price(_field(product, "price", "unit_price", "unitPrice"))
            discounted = _require_price(
                _field(product, "discount_price", "discountPrice", "discounted_unit_price"), "Discount price"
            )
            images = _field(product, "images")
            image = _field(product, "image", "image_ref", "imageRef")
            if image is None and isinstance(images, list) and images:
                image = images[0]
            line = CartLine(
                product_id=product_id,
                quantity=quantity,
                name=_field(product, "name") or PLACEHOLDER_NAME,
                unit_price=price if price is not None else Decimal(0),
                discounted_unit_price=discounted,
                image_ref=image,
            )
            self.cart[product_id] = line

        self._commit()
        self.notify(Notice.info("Added to Cart", f"{line.name} added to your shopping cart."))
        return line

    def remove_item(self, product_id: Any) -> None:
        product_id = _require_product_id(product_id)
        self.cart.pop(product_id, None)
        self._commit()
        self.notify(Notice.info("Removed from Cart", "Item removed from your shopping cart."))

    def set_quantity(self, product_id: Any, quantity: int) -> None:
        product_id = _require_product_id(product_id)
        quantity = _require_quantity(quantity)
        if quantity <= 0:
            self.remove_item(product_id)
            return

        line = self.cart.get(product_id)
        if line is None:
            return
        line.quantity = quantity
        self._commit()

    def clear(self) -> None:
        self.cart = {}
        self._commit()
        self.notify(Notice.info("Cart Cleared", "All items have been removed from your cart."))

    # --- Queries ---
    def total(self) -> Decimal:
        return sum((line.effective_unit_price * line.quantity for line in self.cart.values()), Decimal(0))

    def count(self) -> int:
        return sum(line.quantity for line in self.cart.values())

    def lines(self) -> List[CartLine]:
        return [line.copy() for line in self.cart.values()]

    # --- Persistence ---
    def _documents(self) -> Dict[str, dict]:
        return {product_id: line.to_document() for product_id, line in self.cart.items()}

    def _write_local(self) -> Dict[str, dict]:
        documents = self._documents()
        self.local_cache.set(CART_KEY, json.dumps(documents))
        return documents

    def _commit(self) -> None:
        documents = self._write_local()
        if not self.identity:
            return
        task = asyncio.get_running_loop().create_task(self._mirror(self.identity, documents))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _mirror(self, subject_id: str, documents: Dict[str, dict]) -> None:
        # One write at a time so the remote copy ends in mutation order
        async with self._mirror_lock:
            try:
                await self.remote_store.save_cart(subject_id, documents)
            except Exception:
                logger.warning("Remote cart write failed", extra={"user_id": subject_id}, exc_info=True)
                self.notify(Notice.error("Error", "Failed to sync your cart. Your changes are kept on this device."))

    async def flush(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending))

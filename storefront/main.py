from fastapi import FastAPI, Depends, HTTPException, status, Query, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from datetime import datetime, timedelta
from typing import Optional

from shared.utils import (
    get_db_client, settings, SuccessResponse, ErrorResponse,
    HealthResponse, AppException, bearer_subject
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter

from storefront.clients import PrimaryApiClient
from storefront.errors import InvalidInput, ValidationError, PreconditionFailed
from storefront.models import OrderSummary
from storefront.orders import STATUS_FILTERS, summarize_orders
from storefront.schemas import (
    CartItemAdd, CartItemUpdate, CartResponse, CheckoutStateResponse,
    PaymentSetupResponse, PaymentConfirm, CheckoutResultResponse, OrderListResponse
)
from storefront.session import SessionRegistry, StorefrontSession, build_session
from storefront.stores import SqliteCache

# Setup Logging
logger = setup_logging("storefront-service")

app = FastAPI(title="Storefront Service")

# Security Setup
setup_rate_limiting(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name="storefront-service")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Live sessions keyed by X-Session-ID
app.state.sessions = SessionRegistry()
app.state.session_factory = None

@app.on_event("startup")
async def startup_db_client():
    app.mongodb_client = get_db_client()
    app.mongodb = app.mongodb_client[settings.MONGO_DB]
    # Indexes
    await app.mongodb.carts.create_index("user_id", unique=True)
    await app.mongodb.orders.create_index("user_id")
    # Drop device caches nobody has touched within the retention window
    cutoff = datetime.utcnow() - timedelta(days=settings.LOCAL_CACHE_RETENTION_DAYS)
    pruned = SqliteCache(settings.LOCAL_CACHE_PATH).prune(cutoff)
    logger.info("Pruned %d stale local cache entries", pruned)
    if app.state.session_factory is None:
        app.state.session_factory = lambda session_id, authorization=None: build_session(
            session_id, app.mongodb, authorization=authorization
        )

@app.on_event("shutdown")
async def shutdown_db_client():
    await app.state.sessions.close_all()
    app.mongodb_client.close()

# --- Error Handling ---
@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    details = None
    if isinstance(exc, ValidationError):
        details = {"fields": exc.fields}
    elif isinstance(exc, PreconditionFailed):
        details = {"redirect": exc.redirect}
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.detail, details=details).dict(),
        headers=exc.headers,
    )

# --- Dependencies ---
async def get_session(
    request: Request,
    x_session_id: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
) -> StorefrontSession:
    if not x_session_id:
        raise InvalidInput("X-Session-ID header is required")
    subject_id = bearer_subject(authorization)
    request.state.subject_id = subject_id

    session = await request.app.state.sessions.get_or_create(
        x_session_id,
        lambda: request.app.state.session_factory(x_session_id, authorization=authorization),
    )

    session.api.authorization = authorization
    session.api.request_id = getattr(request.state, "request_id", None)
    await session.attach(subject_id)
    return session

def cart_response(session: StorefrontSession) -> CartResponse:
    cart = session.cart
    return CartResponse(user_id=cart.identity, items=cart.lines(), total=cart.total(), count=cart.count())

def checkout_state(session: StorefrontSession) -> CheckoutStateResponse:
    checkout = session.checkout
    draft = checkout.draft
    return CheckoutStateResponse(
        step=checkout.step.value,
        subtotal=draft.subtotal if draft else None,
        shipping_fee=draft.shipping_fee if draft else None,
        total_amount=draft.total_amount if draft else None,
    )

# --- Endpoints ---

# Cart
@app.get("/cart", response_model=SuccessResponse[CartResponse])
@limiter.limit("60/minute")
async def get_cart(request: Request, session: StorefrontSession = Depends(get_session)):
    return SuccessResponse(data=cart_response(session))

@app.post("/cart/items", response_model=SuccessResponse[CartResponse])
async def add_to_cart(item: CartItemAdd, session: StorefrontSession = Depends(get_session)):
    line = session.cart.add_item(item.product, item.quantity)
    return SuccessResponse(data=cart_response(session), message=f"{line.name} added to your shopping cart.")

@app.put("/cart/items/{product_id}", response_model=SuccessResponse[CartResponse])
async def update_cart_item(product_id: str, update: CartItemUpdate, session: StorefrontSession = Depends(get_session)):
    session.cart.set_quantity(product_id, update.quantity)
    return SuccessResponse(data=cart_response(session))

@app.delete("/cart/items/{product_id}", response_model=SuccessResponse[CartResponse])
async def remove_cart_item(product_id: str, session: StorefrontSession = Depends(get_session)):
    session.cart.remove_item(product_id)
    return SuccessResponse(data=cart_response(session))

@app.delete("/cart", response_model=SuccessResponse[CartResponse])
async def clear_cart(session: StorefrontSession = Depends(get_session)):
    session.cart.clear()
    return SuccessResponse(data=cart_response(session), message="Cart cleared")

# Checkout
@app.get("/checkout", response_model=SuccessResponse[CheckoutStateResponse])
async def get_checkout(session: StorefrontSession = Depends(get_session)):
    return SuccessResponse(data=checkout_state(session))

@app.post("/checkout/shipping", response_model=SuccessResponse[CheckoutStateResponse])
async def submit_shipping(address: dict, session: StorefrontSession = Depends(get_session)):
    session.checkout.submit_shipping(address)
    return SuccessResponse(data=checkout_state(session))

@app.post("/checkout/payment", response_model=SuccessResponse[PaymentSetupResponse])
@limiter.limit("10/minute")
async def begin_payment(request: Request, session: StorefrontSession = Depends(get_session)):
    authorization = await session.checkout.begin_payment()
    return SuccessResponse(
        data=PaymentSetupResponse(client_secret=authorization.client_secret, total_amount=session.checkout.draft.total_amount),
        message="Payment Ready",
    )

@app.post("/checkout/confirm", response_model=SuccessResponse[CheckoutResultResponse])
@limiter.limit("10/minute")
async def confirm_payment(request: Request, body: PaymentConfirm, session: StorefrontSession = Depends(get_session)):
    if body.payment_details is not None:
        result = await session.checkout.confirm_payment(body.payment_details)
    else:
        result = await session.checkout.settle()
    warning = result.sync_warning.detail if result.sync_warning else None
    return SuccessResponse(
        data=CheckoutResultResponse(order=result.order, warning=warning),
        message=warning or "Your order has been placed successfully!",
    )

@app.delete("/checkout", response_model=SuccessResponse[CheckoutStateResponse])
async def reset_checkout(session: StorefrontSession = Depends(get_session)):
    session.new_checkout()
    return SuccessResponse(data=checkout_state(session))

# Orders
@app.get("/orders", response_model=SuccessResponse[OrderListResponse])
async def list_orders(
    session: StorefrontSession = Depends(get_session),
    status_filter: str = Query("all", alias="status"),
):
    if status_filter not in STATUS_FILTERS:
        raise InvalidInput(f"Unknown status filter {status_filter}")
    history = await session.order_history(status_filter)
    return SuccessResponse(data=OrderListResponse(orders=history.orders, unavailable=history.unavailable))

@app.get("/orders/summary", response_model=SuccessResponse[OrderSummary])
async def order_summary(session: StorefrontSession = Depends(get_session)):
    history = await session.order_history()
    return SuccessResponse(data=summarize_orders(history.orders))

@app.get("/health", response_model=HealthResponse)
async def health_check():
    db_status = "unhealthy"
    api_status = "unknown"

    # Check DB
    try:
        await app.mongodb_client.admin.command('ping')
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    # Check Primary API
    try:
        api_status = "healthy" if await PrimaryApiClient().ping() else "unhealthy"
    except Exception:
        api_status = "unreachable"

    overall_status = "healthy" if db_status == "connected" and api_status == "healthy" else "unhealthy"

    if overall_status == "unhealthy":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service Unhealthy"
        )

    return HealthResponse(
        service="storefront-service",
        status=overall_status,
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status,
        dependencies={"primary-api": api_status}
    )

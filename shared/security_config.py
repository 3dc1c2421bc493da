from fastapi import Request, FastAPI
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
import html

# Paths whose responses belong to a single shopper session
PRIVATE_PATH_PREFIXES = ("/cart", "/checkout", "/orders")

# --- Rate Limiting ---
def session_or_remote_address(request: Request) -> str:
    """Limit per shopper session; requests without one share their client address."""
    session_id = request.headers.get("x-session-id")
    if session_id:
        return f"session:{session_id}"
    return get_remote_address(request)

limiter = Limiter(key_func=session_or_remote_address)

def setup_rate_limiting(app: FastAPI):
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# --- Security Headers Middleware ---
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        # Carts, checkouts and order histories must never be served from a shared cache
        if request.url.path.startswith(PRIVATE_PATH_PREFIXES):
            response.headers["Cache-Control"] = "no-store"

        return response

# --- Input Sanitization ---
def sanitize_input(text: str) -> str:
    """
    Sanitize shopper-entered text (shipping address fields):
    - Strip whitespace
    - HTML escape, since the values are echoed back into order records
    """
    if not isinstance(text, str):
        return text
    return html.escape(text.strip())

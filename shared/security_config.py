from typing import List, Optional
from fastapi import Request, FastAPI
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
import re
import html

from shared.utils import settings

# --- Rate Limiting ---
limiter = Limiter(key_func=get_remote_address)

def setup_rate_limiting(app: FastAPI, enabled: bool = True):
    limiter.enabled = enabled
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

def login_rate_limit() -> str:
    return settings.LOGIN_RATE_LIMIT

# --- Security Headers Middleware ---
# Token-bearing responses must never be cached by intermediaries
NO_STORE_PREFIXES = ("/api/login", "/api/register", "/api/refresh", "/api/me")

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        # JSON API only: nothing here should ever be rendered as a document
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        if request.url.path.startswith(NO_STORE_PREFIXES):
            response.headers["Cache-Control"] = "no-store"
            response.headers["Pragma"] = "no-cache"

        return response

# --- Input Sanitization ---
def sanitize_input(text: Optional[str]) -> Optional[str]:
    """
    Strip surrounding whitespace and HTML-escape free text before it is stored.
    Non-strings pass through untouched.
    """
    if not isinstance(text, str):
        return text
    return html.escape(text.strip())

def password_problems(password: str) -> List[str]:
    """Return the unmet password rules, empty when the password is acceptable."""
    problems = []
    if len(password) < 8:
        problems.append("at least 8 characters")
    if not re.search(r"[A-Z]", password):
        problems.append("an uppercase letter")
    if not re.search(r"[a-z]", password):
        problems.append("a lowercase letter")
    if not re.search(r"\d", password):
        problems.append("a digit")
    return problems

"""Correlation ID middleware for request tracing.

Provides:
- ASGI middleware to inject correlation IDs into every request
- Validator that only adopts caller-supplied IDs matching a safe pattern
- Helper function to access correlation ID from request context
"""

import re
import uuid

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id
from fastapi import FastAPI

CORRELATION_HEADER = "X-Request-ID"

# Inbound IDs are adopted only if they match this allow-list
_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9._\-:@]{6,128}$")


def is_safe_correlation_id(value: str) -> bool:
    """Return True if a caller-supplied correlation ID may be adopted as-is."""
    return bool(value) and _SAFE_ID_RE.fullmatch(value) is not None


def setup_correlation_middleware(app: FastAPI) -> None:
    """Add correlation ID middleware to FastAPI app.

    Adds X-Request-ID header to every response. If the client sends a safe
    X-Request-ID it is echoed back; otherwise a new UUID is generated.

    Args:
        app: FastAPI application instance
    """
    app.add_middleware(
        CorrelationIdMiddleware,
        header_name=CORRELATION_HEADER,
        generator=lambda: uuid.uuid4().hex,
        validator=is_safe_correlation_id,
        transformer=lambda a: a,  # No transformation
    )


def get_correlation_id() -> str | None:
    """Get the current request's correlation ID.

    Returns:
        Correlation ID string if called within request context, None otherwise.
    """
    try:
        return correlation_id.get()
    except LookupError:
        # Not in request context
        return None


__all__ = ["CORRELATION_HEADER", "get_correlation_id", "is_safe_correlation_id", "setup_correlation_middleware"]

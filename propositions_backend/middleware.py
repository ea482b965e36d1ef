"""
Request guards for the remote storage surface.

- Bearer auth: when ``AUTH_TOKEN`` is set every route except ``/health``
  needs ``Authorization: Bearer <token>``; unset means open (dev mode).
- Body limits: writes to the state and audio routes carry base64 audio and get
  ``MAX_UPLOAD_BYTES``; other JSON bodies get ``MAX_JSON_BYTES``; anything
  else ``MAX_BODY_BYTES``.
"""

import hmac
import logging
import os
from typing import Callable, Dict, Optional, Tuple

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("propositions_backend")

MB = 1024 * 1024

AUTH_TOKEN: Optional[str] = os.getenv("AUTH_TOKEN") or None

MAX_JSON_BYTES: int = int(os.getenv("MAX_JSON_BYTES", str(1 * MB)))
MAX_BODY_BYTES: int = int(os.getenv("MAX_BODY_BYTES", str(50 * MB)))
MAX_UPLOAD_BYTES: int = int(os.getenv("MAX_UPLOAD_BYTES", str(200 * MB)))

PUBLIC_PATHS = frozenset({"/health"})

# route -> (limit, label used in logs)
UPLOAD_ROUTE_LIMITS: Dict[str, Tuple[int, str]] = {
    "/api/storage/app-state": (MAX_UPLOAD_BYTES, "state upload"),
    "/api/storage/audios": (MAX_UPLOAD_BYTES, "audio upload"),
}


def _route(path: str) -> str:
    return path.rstrip("/") or "/"


def _is_preflight(request: Request) -> bool:
    return request.method == "OPTIONS" and "access-control-request-method" in request.headers


def bearer_token_matches(auth_header: Optional[str], expected: Optional[str] = None) -> bool:
    expected = AUTH_TOKEN if expected is None else expected
    if not expected:
        return True
    scheme, _, token = (auth_header or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        return False
    return hmac.compare_digest(token.strip(), expected)


def body_limit_for(path: str, content_type: str) -> Tuple[int, str]:
    """Pick the byte limit for a request body."""
    route_limit = UPLOAD_ROUTE_LIMITS.get(_route(path))
    if route_limit is not None:
        return route_limit
    if "application/json" in content_type:
        return MAX_JSON_BYTES, "json"
    return MAX_BODY_BYTES, "body"


def _error(status_code: int, message: str, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message}, headers=headers)


class AuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        route = _route(request.url.path)
        if _is_preflight(request) or route in PUBLIC_PATHS:
            return await call_next(request)

        if not bearer_token_matches(request.headers.get("authorization")):
            logger.warning("[AUTH] Rejected %s %s: invalid or missing token", request.method, route)
            return _error(
                status.HTTP_401_UNAUTHORIZED,
                "Invalid or missing authorization token.",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return await call_next(request)


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        raw_length = request.headers.get("content-length")
        if raw_length is None:
            return await call_next(request)

        try:
            length = int(raw_length)
        except ValueError:
            return _error(status.HTTP_400_BAD_REQUEST, "Invalid Content-Length header.")

        limit, kind = body_limit_for(request.url.path, request.headers.get("content-type", ""))
        if length > limit:
            logger.warning(
                "[SECURITY] Rejected %s to %s: %d bytes over the %d byte limit",
                kind,
                request.url.path,
                length,
                limit,
            )
            return _error(
                status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                f"Request body too large. Limit: {limit / MB:.1f} MB.",
            )
        return await call_next(request)


def configure_security(app):
    """Add the guards; auth is registered last so it runs outermost."""
    app.add_middleware(BodySizeLimitMiddleware)
    app.add_middleware(AuthMiddleware)

    logger.info(
        "[SECURITY] Auth %s; body limits json=%d upload=%d other=%d bytes",
        "enforced" if AUTH_TOKEN else "disabled (AUTH_TOKEN not set)",
        MAX_JSON_BYTES,
        MAX_UPLOAD_BYTES,
        MAX_BODY_BYTES,
    )

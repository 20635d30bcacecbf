"""Security dependencies for operator routes"""
import logging
import secrets
from typing import Optional

from fastapi import Header, HTTPException, Request

from renewal_engine.core.config import settings

security_logger = logging.getLogger("security")


def require_admin(request: Request, authorization: Optional[str] = Header(None)) -> str:
    """Dependency: require the operator bearer token

    Operator routes are disabled outright when ADMIN_API_TOKEN is unset.
    """
    expected = settings.ADMIN_API_TOKEN
    if not expected:
        raise HTTPException(503, "Operator API is disabled (ADMIN_API_TOKEN not set)")

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token or not secrets.compare_digest(token, expected):
        security_logger.warning(
            f"Rejected operator request - "
            f"IP: {request.client.host if request.client else 'unknown'}, "
            f"Path: {request.url.path}"
        )
        raise HTTPException(401, "Invalid or missing operator token")
    return "admin"

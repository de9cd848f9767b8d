# funnel_backend/auth.py

"""
Admin authentication for the funnel backend.

Uses a simple header-based admin secret:
- Set ADMIN_DASHBOARD_SECRET in your environment.
- Include `X-Admin-Secret: <that_value>` on admin requests (lead merge,
  lead status changes, bridge purge).

If ADMIN_DASHBOARD_SECRET is not set, authenticated_admin()
will allow all requests (useful for local dev).
"""

import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request, status

from funnel_backend.config import settings

logger = logging.getLogger("funnel.auth")


def _get_admin_secret() -> Optional[str]:
    """Return the configured admin secret, or None if not set."""
    secret = settings.admin_dashboard_secret
    if not secret:
        logger.warning(
            "ADMIN_DASHBOARD_SECRET is not set; admin endpoints are effectively unprotected. "
            "Set this env var in production."
        )
    return secret


def authenticated_admin(request: Request) -> Dict[str, Any]:
    """
    Dependency used on admin routes.

    - If ADMIN_DASHBOARD_SECRET is set:
        Require header `X-Admin-Secret` to match that value.
    - If not set:
        Allow all requests (dev mode).
    """
    admin_secret = _get_admin_secret()
    if not admin_secret:
        return {"admin": True, "mode": "unprotected"}

    provided = request.headers.get("X-Admin-Secret")
    if provided != admin_secret:
        logger.warning(
            "Unauthorized admin access attempt from %s",
            request.client.host if request.client else "unknown",
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized admin access",
        )

    return {"admin": True, "mode": "header-secret"}

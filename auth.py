import hmac
import logging
from typing import List, Optional

from fastapi import Request, Response

from errors import Unauthorized

logger = logging.getLogger(__name__)

ADMIN_HEADER = "x-admin-token"
ADMIN_COOKIE_NAME = "coursespeak_admin_session"
SESSION_MAX_AGE = 60 * 60 * 12  # 12 hours


def _bearer(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    scheme, _, token = value.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def extract_credentials(request: Request) -> List[str]:
    """Every credential the request carries: header, cookie, bearer token."""
    found = []
    header = (request.headers.get(ADMIN_HEADER) or "").strip()
    if header:
        found.append(header)
    cookie = (request.cookies.get(ADMIN_COOKIE_NAME) or "").strip()
    if cookie:
        found.append(cookie)
    bearer = _bearer(request.headers.get("authorization"))
    if bearer:
        found.append(bearer)
    return found


class AdminGate:
    """Shared-secret check for the admin API; stateless, runs on every request."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("AdminGate needs a non-empty secret")
        self._secret = secret.encode("utf-8")

    def verify(self, token: Optional[str]) -> bool:
        if not token:
            return False
        return hmac.compare_digest(token.strip().encode("utf-8"), self._secret)

    def authorize(self, request: Request) -> None:
        credentials = extract_credentials(request)
        if any(self.verify(c) for c in credentials):
            return
        logger.warning(
            "Admin authorization failed for %s %s (%d credential(s) presented)",
            request.method,
            request.url.path,
            len(credentials),
        )
        raise Unauthorized()


async def require_admin(request: Request) -> None:
    """FastAPI dependency guarding the admin routes."""
    request.app.state.gate.authorize(request)


def issue_session(response: Response, token: str, secure: bool = False) -> None:
    response.set_cookie(
        ADMIN_COOKIE_NAME,
        token,
        max_age=SESSION_MAX_AGE,
        httponly=True,
        samesite="lax",
        secure=secure,
        path="/",
    )


def clear_session(response: Response) -> None:
    response.delete_cookie(ADMIN_COOKIE_NAME, path="/")

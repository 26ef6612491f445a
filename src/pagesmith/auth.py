from __future__ import annotations

import hmac
import os
from dataclasses import dataclass
from typing import Any

from .errors import UnauthorizedError

ADMIN_COOKIE_NAME = "ps_admin_token"
ADMIN_HEADER = "X-Admin-Token"
ADMIN_USER_HEADER = "X-Admin-User"
RUNNER_SECRET_HEADER = "X-Job-Runner-Secret"

SERVICE = "service"
USER = "user"


@dataclass(frozen=True)
class Principal:
    kind: str
    subject: str


def require_admin(request: Any) -> str:
    """Return the admin user id for the request or raise UnauthorizedError."""
    token = os.environ.get("PS_ADMIN_TOKEN")
    if token and not _admin_token_matches(request, token):
        raise UnauthorizedError("unauthorized")
    return request.headers.get(ADMIN_USER_HEADER) or "admin"


def resolve_principal(request: Any, allow_service: bool = False) -> Principal:
    """Single authorization gate for every mutating operation.

    A valid runner secret yields a service principal, but only where the
    operation accepts one; everything else must come from an admin.
    """
    presented = request.headers.get(RUNNER_SECRET_HEADER)
    if presented:
        secret = os.environ.get("PS_JOB_RUNNER_SECRET")
        if not allow_service or not secret or not _constant_time_equals(presented, secret):
            raise UnauthorizedError("unauthorized")
        return Principal(kind=SERVICE, subject="job-runner")
    return Principal(kind=USER, subject=require_admin(request))


def _admin_token_matches(request: Any, token: str) -> bool:
    header = request.headers.get(ADMIN_HEADER)
    if header and _constant_time_equals(header, token):
        return True
    cookie = request.cookies.get(ADMIN_COOKIE_NAME)
    return bool(cookie) and _constant_time_equals(cookie, token)


def _constant_time_equals(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))

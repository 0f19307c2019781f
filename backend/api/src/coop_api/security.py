"""Caller identity taken from the API Gateway authorizer.

API Gateway validates the JWT and forwards the subject and groups as
headers (HTTP API claim mapping). For REST API deployments behind Mangum
the same claims are read from ``requestContext.authorizer.claims``.
"""

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import Request

from coop_booking.models.errors import AccessError, BookingError, ErrorCode

logger = logging.getLogger(__name__)

ADMIN_GROUP = "admin"


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    groups: frozenset[str] = frozenset()

    @property
    def is_admin(self) -> bool:
        return ADMIN_GROUP in self.groups


def _authorizer_claims(request: Request) -> dict[str, Any]:
    event = request.scope.get("aws.event") or {}
    return event.get("requestContext", {}).get("authorizer", {}).get("claims", {})


def _parse_groups(raw: str | None) -> frozenset[str]:
    if not raw:
        return frozenset()
    # Cognito renders the groups claim as "[a b]" or "a,b"
    cleaned = raw.strip("[]").replace(",", " ")
    return frozenset(g for g in cleaned.split() if g)


def get_current_user(request: Request) -> CurrentUser:
    """Resolve the authenticated caller.

    Raises:
        BookingError: AUTH_REQUIRED if no subject is present
    """
    user_id = request.headers.get("x-user-sub")
    groups = request.headers.get("x-user-groups")
    if not user_id:
        claims = _authorizer_claims(request)
        user_id = claims.get("sub")
        groups = claims.get("cognito:groups")

    if not user_id:
        logger.warning("Missing caller identity for %s", request.url.path)
        raise BookingError(ErrorCode.AUTH_REQUIRED)
    return CurrentUser(user_id=user_id.strip(), groups=_parse_groups(groups))


def require_admin(request: Request) -> CurrentUser:
    user = get_current_user(request)
    if not user.is_admin:
        raise AccessError(details={"required_group": ADMIN_GROUP})
    return user

from __future__ import annotations

from enum import Enum
from typing import Any

from opsgate.core.errors import Unauthorized
from opsgate.services.identity import DEVELOPER, SUPER_ADMIN, Principal


class Tier(str, Enum):
    STAFF = "staff"
    SUPER_ADMIN = "super_admin"


_TIER_ROLES: dict[Tier, frozenset[str]] = {
    Tier.STAFF: frozenset({SUPER_ADMIN, DEVELOPER}),
    Tier.SUPER_ADMIN: frozenset({SUPER_ADMIN}),
}

_TIER_MESSAGES: dict[Tier, str] = {
    Tier.STAFF: "Access denied. Super Admin or Developer role required.",
    Tier.SUPER_ADMIN: "Access denied. Super Admin role required.",
}

CREDIT_REDACTION_REASON = "Credit data restricted to super admins"
REVENUE_REDACTION_REASON = "Revenue data restricted to super admins"


def allows(principal: Principal, tier: Tier) -> bool:
    return bool(principal.roles & _TIER_ROLES[tier])


def authorize(principal: Principal, tier: Tier) -> None:
    # Reject before the handler runs; the required tier travels in the error body.
    if not allows(principal, tier):
        raise Unauthorized(_TIER_MESSAGES[tier], required_tier=tier.value)


def redacted(reason: str) -> dict[str, Any]:
    return {"redacted": True, "reason": reason}


def redact_financials(principal: Principal, payload: Any, *, reason: str = CREDIT_REDACTION_REASON) -> Any:
    """Return ``payload`` for super admins and a redaction marker for everyone else.

    The marker is never zero or absent so callers can tell hidden from empty.
    """
    if allows(principal, Tier.SUPER_ADMIN):
        return payload
    return redacted(reason)

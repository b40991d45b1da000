"""Declarative route table for the admin gateway.

Every route is declared exactly once as ``(method, path, tier, endpoint)``.
``build_router`` attaches the tier gate as a route dependency, so identity
resolution and authorization run before the endpoint touches the store.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from fastapi import APIRouter, Depends

from opsgate.apps.api.deps import require_tier
from opsgate.apps.api.routes import (
    alerts,
    analytics,
    audit,
    catalog,
    credits,
    gdpr,
    health,
    impersonation,
    organizations,
    support,
    users,
)
from opsgate.services.authz import Tier


STAFF = Tier.STAFF
SUPER_ADMIN = Tier.SUPER_ADMIN


@dataclass(frozen=True)
class RouteSpec:
    method: str
    path: str
    # None marks a public route.
    tier: Tier | None
    endpoint: Callable[..., Any]
    tag: str


ROUTES: tuple[RouteSpec, ...] = (
    RouteSpec("GET", "/health", None, health.health, "health"),
    RouteSpec("GET", "/analytics/overview", STAFF, analytics.analytics_overview, "analytics"),
    RouteSpec("GET", "/analytics/signups", STAFF, analytics.analytics_signups, "analytics"),
    RouteSpec("GET", "/analytics/features", STAFF, analytics.analytics_features, "analytics"),
    RouteSpec("GET", "/analytics/discounts", STAFF, analytics.analytics_discounts, "analytics"),
    # Organizations.
    RouteSpec("GET", "/organizations", STAFF, organizations.list_organizations, "organizations"),
    RouteSpec("POST", "/organizations/delete", SUPER_ADMIN, organizations.delete_organizations, "organizations"),
    RouteSpec(
        "GET", "/organizations/{organization_id}/detail", STAFF, organizations.organization_detail, "organizations"
    ),
    RouteSpec(
        "GET", "/organizations/{organization_id}/billing", STAFF, organizations.organization_billing, "organizations"
    ),
    RouteSpec(
        "GET", "/organizations/{organization_id}/credits", STAFF, organizations.organization_credits, "organizations"
    ),
    RouteSpec("PATCH", "/organizations/{organization_id}/plan", SUPER_ADMIN, organizations.change_plan, "organizations"),
    # Credits.
    RouteSpec("POST", "/credits/grant", SUPER_ADMIN, credits.grant_credits, "credits"),
    # Impersonation.
    RouteSpec("POST", "/impersonation/start", SUPER_ADMIN, impersonation.start_impersonation, "impersonation"),
    RouteSpec("POST", "/impersonation/end", SUPER_ADMIN, impersonation.end_impersonation, "impersonation"),
    RouteSpec("GET", "/impersonation/current", SUPER_ADMIN, impersonation.current_impersonation, "impersonation"),
    # GDPR.
    RouteSpec("GET", "/gdpr/requests", SUPER_ADMIN, gdpr.list_gdpr_requests, "gdpr"),
    RouteSpec("POST", "/gdpr/requests", SUPER_ADMIN, gdpr.create_gdpr_request, "gdpr"),
    RouteSpec("PATCH", "/gdpr/requests/{request_id}", SUPER_ADMIN, gdpr.process_gdpr_request, "gdpr"),
    RouteSpec("POST", "/gdpr/requests/{request_id}/export", SUPER_ADMIN, gdpr.export_gdpr_request, "gdpr"),
    # Alerts.
    RouteSpec("GET", "/alerts", STAFF, alerts.list_alert_rules, "alerts"),
    RouteSpec("GET", "/alerts/history", STAFF, alerts.alert_history, "alerts"),
    RouteSpec("POST", "/alerts", SUPER_ADMIN, alerts.create_alert_rule, "alerts"),
    RouteSpec("POST", "/alerts/evaluate", SUPER_ADMIN, alerts.evaluate_alert_rules, "alerts"),
    RouteSpec("PATCH", "/alerts/{rule_id}", SUPER_ADMIN, alerts.update_alert_rule, "alerts"),
    RouteSpec("DELETE", "/alerts/{rule_id}", SUPER_ADMIN, alerts.delete_alert_rule, "alerts"),
    RouteSpec("POST", "/alerts/{rule_id}/test", SUPER_ADMIN, alerts.trigger_test_alert, "alerts"),
    # Audit log.
    RouteSpec("GET", "/audit-log", STAFF, audit.list_audit_log, "audit"),
    # Users.
    RouteSpec("GET", "/users", STAFF, users.list_users, "users"),
    RouteSpec("POST", "/users/bulk-action", SUPER_ADMIN, users.bulk_user_action, "users"),
    RouteSpec("POST", "/users/delete", SUPER_ADMIN, users.delete_users, "users"),
    RouteSpec("POST", "/users/change-role", SUPER_ADMIN, users.change_user_role, "users"),
    # Support tooling.
    RouteSpec("GET", "/support/notes", STAFF, support.list_notes, "support"),
    RouteSpec("POST", "/support/notes", SUPER_ADMIN, support.create_note, "support"),
    RouteSpec("DELETE", "/support/notes/{note_id}", SUPER_ADMIN, support.delete_note, "support"),
    RouteSpec("GET", "/support/email-queue", STAFF, support.email_queue, "support"),
    RouteSpec("POST", "/support/resend-verification", SUPER_ADMIN, support.resend_verification, "support"),
    RouteSpec("POST", "/support/password-reset", SUPER_ADMIN, support.password_reset, "support"),
    RouteSpec("POST", "/support/set-password", SUPER_ADMIN, support.set_password, "support"),
    # Discount codes.
    RouteSpec("GET", "/discounts", STAFF, catalog.list_discounts, "catalog"),
    RouteSpec("POST", "/discounts", SUPER_ADMIN, catalog.create_discount, "catalog"),
    RouteSpec("PATCH", "/discounts/{discount_id}", SUPER_ADMIN, catalog.update_discount, "catalog"),
    RouteSpec("DELETE", "/discounts/{discount_id}", SUPER_ADMIN, catalog.delete_discount, "catalog"),
    # Feature flags.
    RouteSpec("GET", "/flags", STAFF, catalog.list_flags, "catalog"),
    RouteSpec("POST", "/flags", SUPER_ADMIN, catalog.create_flag, "catalog"),
    RouteSpec("PATCH", "/flags/{flag_id}", SUPER_ADMIN, catalog.update_flag, "catalog"),
    RouteSpec("POST", "/flags/{flag_id}/toggle", SUPER_ADMIN, catalog.toggle_flag, "catalog"),
    RouteSpec("DELETE", "/flags/{flag_id}", SUPER_ADMIN, catalog.delete_flag, "catalog"),
    RouteSpec("GET", "/flags/{flag_id}/overrides", STAFF, catalog.list_flag_overrides, "catalog"),
    RouteSpec("POST", "/flags/{flag_id}/overrides", SUPER_ADMIN, catalog.set_flag_override, "catalog"),
    RouteSpec(
        "DELETE", "/flags/{flag_id}/overrides/{override_id}", SUPER_ADMIN, catalog.delete_flag_override, "catalog"
    ),
    # Usage rates.
    RouteSpec("GET", "/usage-rates", STAFF, catalog.list_usage_rates, "catalog"),
    RouteSpec("POST", "/usage-rates", SUPER_ADMIN, catalog.create_usage_rate, "catalog"),
    RouteSpec("PATCH", "/usage-rates/{feature_type}", SUPER_ADMIN, catalog.update_usage_rate, "catalog"),
    RouteSpec("DELETE", "/usage-rates/{feature_type}", SUPER_ADMIN, catalog.delete_usage_rate, "catalog"),
    # AI instruction sets.
    RouteSpec("GET", "/ai-instructions", STAFF, catalog.list_instructions, "catalog"),
    RouteSpec("POST", "/ai-instructions", SUPER_ADMIN, catalog.create_instruction, "catalog"),
    RouteSpec("GET", "/ai-instructions/{instruction_id}", STAFF, catalog.instruction_detail, "catalog"),
    RouteSpec("PATCH", "/ai-instructions/{instruction_id}", SUPER_ADMIN, catalog.update_instruction, "catalog"),
    RouteSpec("DELETE", "/ai-instructions/{instruction_id}", SUPER_ADMIN, catalog.delete_instruction, "catalog"),
    RouteSpec("GET", "/ai-instructions/{instruction_id}/history", STAFF, catalog.instruction_history, "catalog"),
    RouteSpec(
        "POST", "/ai-instructions/{instruction_id}/duplicate", SUPER_ADMIN, catalog.duplicate_instruction, "catalog"
    ),
)


def public_paths(routes: tuple[RouteSpec, ...] = ROUTES) -> set[str]:
    return {route.path for route in routes if route.tier is None}


def build_router(routes: tuple[RouteSpec, ...] = ROUTES) -> APIRouter:
    router = APIRouter()
    for route in routes:
        dependencies = [Depends(require_tier(route.tier))] if route.tier is not None else []
        router.add_api_route(
            route.path,
            route.endpoint,
            methods=[route.method],
            dependencies=dependencies,
            tags=[route.tag],
            name=route.endpoint.__name__,
        )
    return router

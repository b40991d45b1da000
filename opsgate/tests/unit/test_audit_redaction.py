from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from opsgate.domain.models import FeatureFlag
from opsgate.services.audit import sanitize_metadata, to_jsonable


def test_audit_redacts_tokens_and_secrets() -> None:
    # Redact token and secret fields in audit metadata.
    payload = {
        "access_token": "secret-access",
        "client_secret": "super-secret",
        "Password": "hunter2",
        "nested": {"authorization": "Bearer abc"},
        "items": [{"api_key": "k"}, {"safe": 1}],
        "safe": "value",
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["access_token"] == "[REDACTED]"
    assert sanitized["client_secret"] == "[REDACTED]"
    assert sanitized["Password"] == "[REDACTED]"
    assert sanitized["nested"]["authorization"] == "[REDACTED]"
    assert sanitized["items"] == [{"api_key": "[REDACTED]"}, {"safe": 1}]
    assert sanitized["safe"] == "value"


def test_audit_states_are_json_safe() -> None:
    # Decimals, datetimes and ORM rows are flattened before they are stored.
    moment = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
    flag = FeatureFlag(id="f-1", name="beta", is_enabled=True, applies_to="all", organization_ids=[])
    value = to_jsonable({"amount": Decimal("12.50"), "at": moment, "flag": flag, "ids": ("a", "b")})
    assert value["amount"] == 12.5
    assert value["at"] == moment.isoformat()
    assert value["flag"]["name"] == "beta"
    assert value["ids"] == ["a", "b"]

from __future__ import annotations

import pytest

from opsgate.apps.api.response import error_body
from opsgate.core.errors import Unauthenticated
from opsgate.services.identity import generate_access_token, hash_token, parse_bearer_token


def test_parse_bearer_token_accepts_case_insensitive_scheme() -> None:
    assert parse_bearer_token("Bearer abc") == "abc"
    assert parse_bearer_token("bearer abc") == "abc"


@pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer", "Bearer a b"])
def test_parse_bearer_token_rejects_malformed_headers(header) -> None:
    # Malformed credentials fail before any provider lookup.
    with pytest.raises(Unauthenticated):
        parse_bearer_token(header)


def test_generated_tokens_store_only_a_hash() -> None:
    token_id, raw_token, prefix, token_hash = generate_access_token()
    assert raw_token.startswith(f"ogt_{token_id}_")
    assert raw_token.startswith(prefix)
    assert token_hash == hash_token(raw_token)
    assert raw_token not in token_hash


def test_error_body_keeps_message_and_code_authoritative() -> None:
    # Details never overwrite the top-level error or code keys.
    body = error_body(message="Nope", code="CONFLICT", details={"code": "OTHER", "session_id": "s-1"})
    assert body == {"error": "Nope", "code": "CONFLICT", "session_id": "s-1"}

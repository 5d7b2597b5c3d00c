"""Tests for token response parsing helpers."""

from __future__ import annotations

import pytest

from credman.exceptions import ProtocolError
from credman.providers.token_response import (
    credential_from_token_response,
    parse_expires_in,
    parse_scopes,
)


class TestParseExpiresIn:
    @pytest.mark.parametrize(
        "value, expected", [(None, None), (3600, 3600), ("3600", 3600), (" 60 ", 60), (0, 0)]
    )
    def test_valid(self, value, expected) -> None:
        assert parse_expires_in(value) == expected

    @pytest.mark.parametrize("value", ["soon", "", 12.5, True, [3600], {"s": 1}])
    def test_invalid(self, value) -> None:
        with pytest.raises(ProtocolError):
            parse_expires_in(value)


class TestParseScopes:
    def test_space_separated(self) -> None:
        assert parse_scopes("chat:read  chat:edit") == ["chat:read", "chat:edit"]

    def test_list(self) -> None:
        assert parse_scopes(["a", "b", 3]) == ["a", "b"]

    @pytest.mark.parametrize("value", [None, "", 42, {"a": 1}])
    def test_missing_or_odd(self, value) -> None:
        assert parse_scopes(value) == []


class TestCredentialFromTokenResponse:
    def test_full_response(self) -> None:
        cred = credential_from_token_response(
            "twitch",
            {
                "access_token": "at",
                "refresh_token": "rt",
                "expires_in": 3600,
                "scope": "a b",
                "token_type": "bearer",
            },
            client_id="cid",
        )
        assert cred.identity_provider == "twitch"
        assert cred.access_token == "at"
        assert cred.refresh_token == "rt"
        assert cred.expires_in == 3600
        assert cred.scopes == ["a", "b"]
        assert cred.context == {"client_id": "cid"}
        assert cred.issued_at is not None
        assert cred.user_id is None

    def test_minimal_response(self) -> None:
        cred = credential_from_token_response("p", {"access_token": "at"})
        assert cred.refresh_token is None
        assert cred.expires_in is None
        assert cred.scopes == []
        assert cred.context == {}

    def test_non_string_refresh_token_dropped(self) -> None:
        cred = credential_from_token_response("p", {"access_token": "at", "refresh_token": 7})
        assert cred.refresh_token is None

    @pytest.mark.parametrize("body", [{}, {"access_token": ""}, {"access_token": 12}])
    def test_missing_access_token(self, body) -> None:
        with pytest.raises(ProtocolError, match="access_token"):
            credential_from_token_response("p", body)

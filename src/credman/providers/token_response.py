"""Helpers for parsing OAuth2 token endpoint responses.

Authorization servers are inconsistent about the types they put in a
token response. ``expires_in`` is sometimes a numeric string and ``scope``
is sometimes a JSON array instead of the space-separated string
:rfc:`6749` asks for. These helpers normalise both before the values reach
:class:`~credman.models.OAuth2Credential`.
"""

from __future__ import annotations

from typing import Any, Optional

from credman.exceptions import ProtocolError
from credman.models import OAuth2Credential


def parse_expires_in(value: Any) -> Optional[int]:
    """Parse the ``expires_in`` attribute of a token response.

    Args:
        value: The raw JSON value.

    Returns:
        The lifetime in seconds, or ``None`` if the attribute is absent.

    Raises:
        ProtocolError: If the value is neither an integer nor a numeric
            string.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ProtocolError(f"Unsupported expires_in type: {type(value).__name__}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            raise ProtocolError(f"Invalid expires_in string value: {value!r}") from None
    raise ProtocolError(f"Unsupported expires_in type: {type(value).__name__}")


def parse_scopes(value: Any) -> list[str]:
    """Parse the ``scope`` attribute as a space-separated string or a list of strings."""
    if isinstance(value, str):
        return [scope for scope in value.split(" ") if scope]
    if isinstance(value, list):
        return [scope for scope in value if isinstance(scope, str)]
    return []


def credential_from_token_response(
    provider_name: str,
    data: dict[str, Any],
    client_id: Optional[str] = None,
) -> OAuth2Credential:
    """Build an :class:`~credman.models.OAuth2Credential` from a token response body.

    Args:
        provider_name: Name of the issuing identity provider.
        data: Decoded JSON body of a successful token response.
        client_id: If given, recorded as ``context["client_id"]`` so that
            later refreshes know which client the token belongs to.

    Raises:
        ProtocolError: If ``access_token`` is missing or ``expires_in`` is
            malformed.
    """
    access_token = data.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise ProtocolError("Token response missing 'access_token' field")
    refresh_token = data.get("refresh_token")
    credential = OAuth2Credential(
        identity_provider=provider_name,
        access_token=access_token,
        refresh_token=refresh_token if isinstance(refresh_token, str) else None,
        expires_in=parse_expires_in(data.get("expires_in")),
        scopes=parse_scopes(data.get("scope")),
    )
    if client_id:
        credential.context["client_id"] = client_id
    return credential

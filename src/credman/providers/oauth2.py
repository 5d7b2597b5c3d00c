"""Generic OAuth2 identity provider speaking HTTP through httpx.

:class:`DefaultOAuth2IdentityProvider` implements every operation of
:class:`~credman.providers.base.OAuth2IdentityProvider` against the
standard endpoints of :rfc:`6749` and :rfc:`8628`:

* ``device_url`` -- device authorization requests;
* ``token_url`` -- device token polling, refresh, client credentials,
  authorization code and resource owner password grants;
* ``auth_url`` -- the browser authorization URL.

Some servers expect token endpoint parameters in the query string rather
than a form body; ``token_endpoint_post_type`` selects ``"QUERY"``
(default) or ``"BODY"``. Device flow requests always use a form body as the
RFC requires.

Provider-specific subclasses override
:meth:`~DefaultOAuth2IdentityProvider.get_additional_credential_information`
to look up the user behind a token.
"""

from __future__ import annotations

import base64
import logging
import uuid
from typing import Any, Optional
from urllib.parse import quote, urlencode

import httpx
from pydantic import ValidationError

from credman.config import resolve_credential
from credman.exceptions import ConfigError, ProtocolError, TransportError
from credman.models import (
    DeviceAuthorization,
    DeviceFlowError,
    DeviceTokenResponse,
    IdentityProviderConfig,
    OAuth2Credential,
)
from credman.providers.base import OAuth2IdentityProvider
from credman.providers.token_response import credential_from_token_response

logger = logging.getLogger(__name__)

DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"

_TOKEN_ENDPOINT_POST_TYPES = ("QUERY", "BODY")
_TIMEOUT = 30.0


class DefaultOAuth2IdentityProvider(OAuth2IdentityProvider):
    """OAuth2 identity provider backed by plain HTTP endpoints.

    Args:
        name: Provider name (case-insensitive).
        client_id: OAuth2 client id.
        client_secret: OAuth2 client secret. Not needed for public clients
            using the device flow.
        auth_url: Authorization endpoint.
        token_url: Token endpoint.
        device_url: Device authorization endpoint.
        redirect_url: Default redirect URI for the authorization code flow.
        token_endpoint_post_type: ``"QUERY"`` or ``"BODY"``.
        provider_type: Type tag, ``"oauth2"`` unless overridden.
        configuration: Free-form extra settings.

    Raises:
        ConfigError: If ``token_endpoint_post_type`` is not recognised.
    """

    scope_separator = " "
    response_type = "code"

    def __init__(
        self,
        name: str,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        auth_url: Optional[str] = None,
        token_url: Optional[str] = None,
        device_url: Optional[str] = None,
        redirect_url: Optional[str] = None,
        token_endpoint_post_type: str = "QUERY",
        provider_type: str = "oauth2",
        configuration: Optional[dict[str, str]] = None,
    ) -> None:
        super().__init__(name, provider_type, configuration)
        post_type = (token_endpoint_post_type or "QUERY").upper()
        if post_type not in _TOKEN_ENDPOINT_POST_TYPES:
            raise ConfigError(
                f"Unknown token_endpoint_post_type '{token_endpoint_post_type}' "
                f"for provider '{name}': must be QUERY or BODY"
            )
        self.client_id = client_id or ""
        self.client_secret = client_secret or ""
        self.auth_url = auth_url
        self.token_url = token_url
        self.device_url = device_url
        self.redirect_url = redirect_url
        self.token_endpoint_post_type = post_type

    @classmethod
    def from_config(cls, config: IdentityProviderConfig) -> DefaultOAuth2IdentityProvider:
        """Build a provider from its config entry, resolving secret sources.

        Raises:
            ConfigError: If a secret source cannot be resolved.
        """
        client_id = (
            resolve_credential(config.client_id_source) if config.client_id_source else None
        )
        client_secret = (
            resolve_credential(config.client_secret_source)
            if config.client_secret_source
            else None
        )
        extra = {key: str(value) for key, value in (config.model_extra or {}).items()}
        return cls(
            name=config.name,
            client_id=client_id,
            client_secret=client_secret,
            auth_url=config.auth_url,
            token_url=config.token_url,
            device_url=config.device_url,
            redirect_url=config.redirect_url,
            token_endpoint_post_type=config.token_endpoint_post_type,
            provider_type=config.type,
            configuration=extra,
        )

    # -- Authorization code flow --

    def get_authentication_url(
        self,
        redirect_url: Optional[str] = None,
        scopes: Optional[list[str]] = None,
        state: Optional[str] = None,
    ) -> str:
        """Build the URL the user opens to start the authorization code flow.

        Args:
            redirect_url: Overrides the configured redirect URI.
            scopes: Requested scopes.
            state: CSRF token. Defaults to ``"<provider name>|<uuid4>"`` so
                that callbacks can be routed back to this provider.

        Raises:
            ConfigError: If no ``auth_url`` is configured.
        """
        if not self.auth_url:
            raise ConfigError(f"Identity provider '{self.name}' has no auth_url configured")
        if state is None:
            state = f"{self.name}|{uuid.uuid4()}"
        params = {
            "response_type": self.response_type,
            "client_id": self.client_id,
            "redirect_uri": redirect_url or self.redirect_url or "",
            "scope": self.scope_separator.join(scopes or []),
            "state": state,
        }
        return f"{self.auth_url}?{urlencode(params, quote_via=quote)}"

    def get_credential_by_code(self, code: str) -> OAuth2Credential:
        """Exchange an authorization code for a credential."""
        response = self._token_request(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_url or "",
            }
        )
        return self._credential_from(response, "Authorization code exchange")

    def get_credential_by_username_and_password(
        self, username: str, password: str, scope: Optional[str] = None
    ) -> OAuth2Credential:
        """Obtain a credential through the resource owner password grant."""
        parameters = {"grant_type": "password", "username": username, "password": password}
        if scope and scope.strip():
            parameters["scope"] = scope
        basic = base64.b64encode(f"{self.client_id}:{self.client_secret}".encode()).decode()
        response = self._token_request(parameters, headers={"Authorization": f"Basic {basic}"})
        return self._credential_from(response, "Password grant")

    # -- Device authorization grant --

    def create_device_flow_request(self, scopes: list[str]) -> DeviceAuthorization:
        """POST to the device authorization endpoint.

        Raises:
            ConfigError: If no ``device_url`` is configured.
            TransportError: On network failures.
            ProtocolError: On an error status or a malformed response.
        """
        if not self.device_url:
            raise ConfigError(f"Identity provider '{self.name}' has no device_url configured")
        data = {"client_id": self.client_id}
        if scopes:
            data["scope"] = " ".join(scopes)
        response = self._post(self.device_url, data=data)
        if not response.is_success:
            raise ProtocolError(
                f"Device authorization request failed with status "
                f"{response.status_code}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        body = self._json(response)
        try:
            return DeviceAuthorization.model_validate(body)
        except ValidationError as exc:
            raise ProtocolError(
                f"Malformed device authorization response: {exc}",
                status_code=response.status_code,
                body=response.text,
            ) from exc

    def get_device_access_token(self, device_code: str) -> DeviceTokenResponse:
        """Poll the token endpoint once for a device code.

        Error codes are read from the standard ``error`` attribute or, for
        servers such as Twitch, from ``message``.

        Raises:
            TransportError: On network failures.
            ProtocolError: If an error response carries no readable error code.
        """
        response = self._post(
            self._require_token_url(),
            data={
                "grant_type": DEVICE_CODE_GRANT_TYPE,
                "device_code": device_code,
                "client_id": self.client_id,
            },
        )
        body = self._json(response)
        if response.is_success:
            credential = credential_from_token_response(
                self.name, body, client_id=self.client_id
            )
            return DeviceTokenResponse(credential=credential)

        code = body.get("error") if "error" in body else body.get("message")
        if not isinstance(code, str):
            raise ProtocolError(
                f"Device token request failed with status {response.status_code} "
                f"and no error code: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        return DeviceTokenResponse(error=DeviceFlowError.from_code(code))

    # -- Token maintenance --

    def refresh_credential(self, credential: OAuth2Credential) -> Optional[OAuth2Credential]:
        """Use the refresh token grant to renew *credential*.

        Returns:
            The new credential, or ``None`` if the credential has no refresh
            token or the server rejected the request.

        Raises:
            TransportError: On network failures.
        """
        if not credential.refresh_token:
            logger.debug("Credential for %s has no refresh token", self.name)
            return None
        parameters = {
            "client_id": self.client_id,
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
        }
        if self.client_secret:
            parameters["client_secret"] = self.client_secret
        response = self._token_request(parameters)
        if not response.is_success:
            logger.warning(
                "Refresh request to %s failed with status %s",
                self.name,
                response.status_code,
            )
            return None
        return credential_from_token_response(self.name, self._json(response))

    def get_app_access_token(self, scope: Optional[str] = None) -> OAuth2Credential:
        """Fetch an application token via the client credentials grant."""
        parameters = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "client_credentials",
        }
        if scope and scope.strip():
            parameters["scope"] = scope
        response = self._token_request(parameters)
        return self._credential_from(response, "Client credentials request")

    def get_additional_credential_information(
        self, credential: OAuth2Credential
    ) -> Optional[OAuth2Credential]:
        return None

    # -- HTTP helpers --

    def _require_token_url(self) -> str:
        if not self.token_url:
            raise ConfigError(f"Identity provider '{self.name}' has no token_url configured")
        return self.token_url

    def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        headers = {"Accept": "application/json", **kwargs.pop("headers", {})}
        logger.debug("POST %s (provider %s)", url, self.name)
        try:
            return httpx.post(url, headers=headers, timeout=_TIMEOUT, **kwargs)
        except httpx.TransportError as exc:
            raise TransportError(f"Request to {url} failed: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ProtocolError(f"Request to {url} failed: {exc}") from exc

    def _token_request(
        self, parameters: dict[str, str], headers: Optional[dict[str, str]] = None
    ) -> httpx.Response:
        url = self._require_token_url()
        if self.token_endpoint_post_type == "QUERY":
            return self._post(url, params=parameters, headers=headers or {})
        return self._post(url, data=parameters, headers=headers or {})

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise ProtocolError(
                f"Expected a JSON response, got status {response.status_code}: "
                f"{response.text}",
                status_code=response.status_code,
                body=response.text,
            ) from exc
        if not isinstance(body, dict):
            raise ProtocolError(
                "Expected a JSON object in the response",
                status_code=response.status_code,
                body=response.text,
            )
        return body

    def _credential_from(self, response: httpx.Response, action: str) -> OAuth2Credential:
        if not response.is_success:
            raise ProtocolError(
                f"{action} failed with status {response.status_code}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        return credential_from_token_response(self.name, self._json(response))

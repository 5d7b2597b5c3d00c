"""Canonical Pydantic models shared across all credman modules.

This is the single source of truth for data shapes in the project. The
models fall into two groups:

**Configuration models** -- serialised as JSON in the user's config directory:
    :class:`IdentityProviderConfig`, :class:`StorageConfig`,
    :class:`DeviceFlowConfig`, :class:`RefreshConfig`,
    :class:`SchedulerConfig`, and :class:`ManagerConfig`.

**Domain models** -- credentials and the RFC 8628 device flow:
    :class:`Credential`, :class:`OAuth2Credential`,
    :class:`DeviceAuthorization`, :class:`DeviceFlowError`,
    :class:`DeviceTokenResponse`, and :class:`DeviceFlowState`.

All models use Pydantic v2. Wire shapes are snake_case JSON; unknown keys
are ignored on credentials and preserved on device authorizations.
"""

from __future__ import annotations

import enum
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import parse_qs, urlencode, urlsplit, urlunsplit

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    field_validator,
    model_validator,
)


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


EXPIRED_INSTANT = datetime.min.replace(tzinfo=timezone.utc)
"""Expiry reported for credentials without an ``issued_at`` timestamp."""

NEVER_EXPIRES_INSTANT = datetime.max.replace(tzinfo=timezone.utc)
"""Expiry reported for credentials without an ``expires_in`` lifetime."""


# --- Configuration ---


class IdentityProviderConfig(BaseModel):
    """Declarative description of an OAuth2 identity provider.

    Secrets are never stored inline: ``client_id_source`` and
    ``client_secret_source`` use the same ``env:``/``file:``/``prompt``
    descriptors understood by :func:`~credman.config.resolve_credential`.

    Example::

        IdentityProviderConfig(
            name="twitch",
            client_id_source="env:TWITCH_CLIENT_ID",
            token_url="https://id.twitch.tv/oauth2/token",
            device_url="https://id.twitch.tv/oauth2/device",
        )
    """

    model_config = ConfigDict(extra="allow")

    name: str = Field(description="Unique, case-insensitive provider name")
    type: str = Field(default="oauth2", description="Provider type tag")
    client_id_source: Optional[str] = None
    client_secret_source: Optional[str] = None
    auth_url: Optional[str] = Field(
        default=None, description="Authorization endpoint (authorization code flow)"
    )
    token_url: Optional[str] = Field(default=None, description="Token endpoint")
    device_url: Optional[str] = Field(
        default=None, description="Device authorization endpoint (RFC 8628)"
    )
    redirect_url: Optional[str] = None
    token_endpoint_post_type: str = Field(
        default="QUERY",
        description="How token endpoint parameters are sent: QUERY or BODY",
    )
    scopes: list[str] = Field(
        default_factory=list, description="Default scopes requested at login"
    )


class StorageConfig(BaseModel):
    """Where credentials are persisted."""

    backend: str = Field(default="file", description="Storage backend: file or memory")
    path: Optional[str] = Field(
        default=None,
        description="Credentials file (defaults to <data_dir>/credentials.json)",
    )


class DeviceFlowConfig(BaseModel):
    """Device authorization grant settings."""

    enabled: bool = True
    max_expires_in: int = Field(
        default=0,
        description="Upper bound in seconds for a device flow; ignored unless positive",
    )


class RefreshConfig(BaseModel):
    """Background token refresh settings."""

    enabled: bool = True
    minimum_refresh_interval: int = Field(
        default=3600, description="Lower bound in seconds between refresh cycles"
    )
    save_after_refresh: bool = Field(
        default=True, description="Persist the credential store after each refresh"
    )


class SchedulerConfig(BaseModel):
    """Background task scheduler settings."""

    max_workers: int = Field(default=4, ge=1)


class ManagerConfig(BaseModel):
    """Top-level configuration persisted at ``~/.config/credman/config.json``.

    Loaded by :func:`~credman.config.load_manager_config` and consumed by
    :func:`~credman.auth.manager.create_credential_manager`.
    """

    providers: list[IdentityProviderConfig] = Field(default_factory=list)
    default_provider: Optional[str] = None
    storage: StorageConfig = Field(default_factory=StorageConfig)
    device_flow: DeviceFlowConfig = Field(default_factory=DeviceFlowConfig)
    refresh: RefreshConfig = Field(default_factory=RefreshConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)


# --- Credentials ---


class Credential(BaseModel):
    """A credential bound to a named identity provider.

    Attributes:
        identity_provider: Name of the provider that issued the credential.
        user_id: Owning user, or ``None`` for application-level credentials.
    """

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    identity_provider: str
    user_id: Optional[str] = None

    @property
    def supports_oauth2(self) -> bool:
        """Whether this credential carries OAuth2 token data."""
        return False


class OAuth2Credential(Credential):
    """An OAuth2 access token with its optional refresh token and metadata.

    Expiry rules:

    * ``issued_at`` is ``None`` -- the token is always considered expired.
    * ``expires_in`` is ``None`` -- the token never expires.
    * otherwise it expires at ``issued_at + expires_in`` seconds.

    When constructed without an ``issued_at`` value the credential is
    stamped with the current time; pass ``issued_at=None`` explicitly to
    leave it unset. The only supported way to mutate a stored credential is
    :meth:`update_credential`, which merges field by field.
    """

    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    user_name: Optional[str] = None
    issued_at: Optional[datetime] = Field(default_factory=utcnow)
    expires_in: Optional[int] = None
    scopes: list[str] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)

    _lock: Any = PrivateAttr(default_factory=threading.RLock)

    @field_validator("access_token")
    @classmethod
    def _strip_legacy_prefix(cls, value: str) -> str:
        # IRC-style tokens were historically handed out as "oauth:<token>"
        if value.startswith("oauth:"):
            return value[len("oauth:"):]
        return value

    @field_validator("issued_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @field_validator("scopes", "context", mode="before")
    @classmethod
    def _null_collection(cls, value: Any, info: Any) -> Any:
        if value is None:
            return [] if info.field_name == "scopes" else {}
        return value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, OAuth2Credential):
            return NotImplemented
        return type(self) is type(other) and self.__dict__ == other.__dict__

    __hash__ = None  # type: ignore[assignment]

    @property
    def supports_oauth2(self) -> bool:
        return True

    @property
    def expires_at(self) -> datetime:
        """The approximate instant at which this token stops being valid."""
        if self.issued_at is None:
            return EXPIRED_INSTANT
        if self.expires_in is None:
            return NEVER_EXPIRES_INSTANT
        return self.issued_at + timedelta(seconds=self.expires_in)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Return ``True`` if *now* (default: current time) is past :attr:`expires_at`."""
        return (now or utcnow()) > self.expires_at

    def update_credential(self, new_credential: OAuth2Credential) -> None:
        """Merge *new_credential* into this one, last-non-empty-wins.

        Scalar fields are overwritten only when the new value is not
        ``None``. ``scopes`` and ``context`` are overwritten only when the
        new collection is non-empty, so a partial refresh response never
        clears them.

        Args:
            new_credential: Credential carrying fresh values, typically the
                result of a refresh or enrichment call.
        """
        with self._lock:
            if new_credential.access_token is not None:
                self.access_token = new_credential.access_token
            if new_credential.refresh_token is not None:
                self.refresh_token = new_credential.refresh_token
            if new_credential.expires_in is not None:
                self.expires_in = new_credential.expires_in
            if new_credential.user_id is not None:
                self.user_id = new_credential.user_id
            if new_credential.user_name is not None:
                self.user_name = new_credential.user_name
            if new_credential.scopes:
                self.scopes = list(new_credential.scopes)
            if new_credential.context:
                self.context = dict(new_credential.context)
            if new_credential.issued_at is not None:
                self.issued_at = new_credential.issued_at


# --- Device Authorization Grant (RFC 8628) ---


class DeviceAuthorization(BaseModel):
    """Response of the device authorization endpoint (:rfc:`8628` section 3.2).

    Non-standard keys sent by the authorization server are kept verbatim
    and exposed through :attr:`custom_properties`. ``issued_at`` is stamped
    when the object is created and is not part of the wire shape.
    """

    model_config = ConfigDict(extra="allow")

    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: Optional[str] = None
    expires_in: int = 0
    interval: int = 5
    issued_at: datetime = Field(default_factory=utcnow, exclude=True)

    @model_validator(mode="before")
    @classmethod
    def _normalise_wire_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        # Google's endpoint predates the RFC and says "verification_url"
        if "verification_uri" not in data and "verification_url" in data:
            data["verification_uri"] = data.pop("verification_url")
        # RFC: "If no value is provided, clients MUST use 5 as the default."
        if data.get("interval") is None:
            data.pop("interval", None)
        return data

    @property
    def custom_properties(self) -> dict[str, Any]:
        """Non-standard properties from the device authorization response."""
        return dict(self.model_extra or {})

    @property
    def expires_at(self) -> datetime:
        """When the device and user codes expire."""
        return self.issued_at + timedelta(seconds=self.expires_in)

    @property
    def complete_uri(self) -> str:
        """The verification URI with the ``user_code`` query parameter populated."""
        if self.verification_uri_complete:
            return self.verification_uri_complete
        parts = urlsplit(self.verification_uri)
        # Some servers already embed the code even though the RFC advises against it
        if self.user_code in parse_qs(parts.query).get("user_code", []):
            return self.verification_uri
        extra = urlencode({"user_code": self.user_code})
        query = f"{parts.query}&{extra}" if parts.query else extra
        return urlunsplit(parts._replace(query=query))


class DeviceFlowError(str, enum.Enum):
    """Standardised error codes of the device access token endpoint (:rfc:`8628` section 3.5)."""

    AUTHORIZATION_PENDING = "authorization_pending"
    SLOW_DOWN = "slow_down"
    ACCESS_DENIED = "access_denied"
    EXPIRED_TOKEN = "expired_token"
    INVALID_REQUEST = "invalid_request"
    INVALID_CLIENT = "invalid_client"
    INVALID_GRANT = "invalid_grant"
    UNAUTHORIZED_CLIENT = "unauthorized_client"
    UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
    UNKNOWN = "unknown"

    @property
    def should_retry(self) -> bool:
        """Whether polling should continue after this error."""
        return self in (DeviceFlowError.AUTHORIZATION_PENDING, DeviceFlowError.SLOW_DOWN)

    @classmethod
    def from_code(cls, code: Optional[str]) -> DeviceFlowError:
        """Map a lowercase RFC error code to a member, defaulting to ``UNKNOWN``."""
        try:
            return cls(code)
        except ValueError:
            return cls.UNKNOWN


class DeviceTokenResponse(BaseModel):
    """Outcome of one device access token request.

    Exactly one of :attr:`credential` (the user approved the grant) and
    :attr:`error` is set.
    """

    credential: Optional[OAuth2Credential] = None
    error: Optional[DeviceFlowError] = None

    @model_validator(mode="after")
    def _exactly_one_outcome(self) -> DeviceTokenResponse:
        if (self.credential is None) == (self.error is None):
            raise ValueError("exactly one of 'credential' and 'error' must be set")
        return self


class DeviceFlowState(str, enum.Enum):
    """Lifecycle of a single device authorization flow."""

    REQUESTED = "requested"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    EXPIRED = "expired"
    TERMINAL_ERROR = "terminal_error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (DeviceFlowState.REQUESTED, DeviceFlowState.POLLING)

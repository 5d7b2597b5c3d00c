"""Exception hierarchy for credman.

All exceptions inherit from :class:`CredmanError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`credman.exit_codes`.
The top-level error handler in :func:`credman.app.main` catches
``CredmanError`` and exits with the appropriate code, while unexpected
exceptions produce a crash log and exit with :data:`EXIT_GENERIC_FAILURE`.

Subclass hierarchy::

    CredmanError (exit 1)
    +-- ConfigError                     (exit 1)
    +-- InvalidUsageError               (exit 2)
    +-- AuthorizationError              (exit 3)
    +-- IdentityProviderNotFoundError   (exit 4)
    +-- CredentialNotFoundError         (exit 4)
    +-- ProtocolError                   (exit 5)
    +-- TransportError                  (exit 6)
    +-- RegistrationConflictError       (exit 9)
    +-- UnsupportedOperationError       (exit 10)
        +-- ControllerClosedError       (exit 10)

Device-flow polling treats :class:`TransportError` as retryable (with
backoff); everywhere else it is surfaced to the caller like any other
error.
"""

from credman.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_CONFLICT,
    EXIT_CONNECTION_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_NOT_FOUND,
    EXIT_PROTOCOL_ERROR,
    EXIT_UNSUPPORTED,
)


class CredmanError(Exception):
    """Base exception for all credman errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`credman.exit_codes`.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ConfigError(CredmanError):
    """Raised for configuration problems (invalid JSON, bad secret sources)."""

    exit_code = EXIT_GENERIC_FAILURE


class InvalidUsageError(CredmanError):
    """Raised for invalid CLI arguments or missing required parameters."""

    exit_code = EXIT_INVALID_USAGE


class AuthorizationError(CredmanError):
    """Raised when a device authorization ends in a terminal error (denied, expired)."""

    exit_code = EXIT_AUTH_FAILURE


class IdentityProviderNotFoundError(CredmanError):
    """Raised when no suitable identity provider is registered under a name."""

    exit_code = EXIT_NOT_FOUND


class CredentialNotFoundError(CredmanError):
    """Raised when no stored credential matches a lookup."""

    exit_code = EXIT_NOT_FOUND


class ProtocolError(CredmanError):
    """Raised when the authorization server's response does not have the expected shape.

    Args:
        message: Human-readable error description.
        status_code: HTTP status of the offending response, if any.
        body: Raw response body, kept for diagnostics.
    """

    exit_code = EXIT_PROTOCOL_ERROR

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class TransportError(CredmanError):
    """Raised on network-level failures (timeout, DNS resolution, connection refused)."""

    exit_code = EXIT_CONNECTION_ERROR


class RegistrationConflictError(CredmanError):
    """Raised when an identity provider name is already taken by an unrelated provider."""

    exit_code = EXIT_CONFLICT


class UnsupportedOperationError(CredmanError):
    """Raised when a controller is asked to run a flow it does not implement."""

    exit_code = EXIT_UNSUPPORTED


class ControllerClosedError(UnsupportedOperationError):
    """Raised when a flow is started on a controller that has been closed."""

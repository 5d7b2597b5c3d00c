"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~credman.exceptions.CredmanError` subclass.
Shell wrappers can inspect the exit code to tell a denied device login
from an unreachable authorization server without parsing stderr.

Example::

    $ credman login twitch
    $ echo $?
    3   # EXIT_AUTH_FAILURE -- the user denied the device authorization
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments or missing required parameters."""

EXIT_AUTH_FAILURE = 3
"""Authorization failed or the device code expired."""

EXIT_NOT_FOUND = 4
"""The requested credential or identity provider does not exist."""

EXIT_PROTOCOL_ERROR = 5
"""The authorization server answered with a malformed or unexpected response."""

EXIT_CONNECTION_ERROR = 6
"""A network-level error occurred (timeout, DNS failure, connection refused)."""

EXIT_CONFLICT = 9
"""An identity provider name collided with an incompatible registration."""

EXIT_UNSUPPORTED = 10
"""The configured controller does not implement the requested flow."""

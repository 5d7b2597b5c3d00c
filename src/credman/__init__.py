"""credman -- OAuth2 credential lifecycle management.

This package stores delegated-authorization credentials, binds them to
pluggable identity providers, and automates the two protocol chores that
come with them: polling the OAuth2 Device Authorization Grant
(:rfc:`8628`) and refreshing access tokens before they expire.

Typical workflow::

    credman login twitch --scope chat:read   # run a device login
    credman credentials list                 # inspect stored credentials

Modules:
    app: Typer application and CLI entry point.
    models: Pydantic models shared across the entire package.
    config: XDG-aware configuration and secret resolution.
    scheduler: Background task scheduling used by the controllers.
    auth: Credential manager, controller base class and storage backends.
    controllers: Device-flow, refreshing and no-op controllers.
    providers: Identity provider contracts and the httpx implementation.
    exceptions: Exception hierarchy with exit-code mapping.
    exit_codes: Numeric exit codes following clig.dev conventions.
    output: stdout/stderr formatting system with Rich support.
"""

__version__ = "0.1.0"

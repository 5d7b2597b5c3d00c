"""Proactive refresh of OAuth2 credentials.

:class:`RefreshingOAuth2Controller` wraps another controller and, for
every OAuth2 credential registered with the manager, schedules a
fixed-rate refresh cycle:

* the first refresh runs after three quarters of the remaining lifetime;
* later refreshes repeat every ``max(minimum_refresh_interval, lifetime)``
  seconds.

Credentials registered without an ``expires_in`` are first enriched via
the provider's
:meth:`~credman.providers.base.OAuth2IdentityProvider.get_additional_credential_information`
(or refreshed once) on a background worker; they are scheduled only if
that yields a lifetime.

A refresh uses the refresh token when there is one. Application tokens
(no ``user_id``) are renewed through the client credentials grant. Refresh
failures are logged and never escape the scheduler.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Optional

from credman.auth.base import AuthenticationController, DeviceFlowCallback
from credman.controllers.noop import NoopAuthController
from credman.exceptions import CredmanError
from credman.models import Credential, DeviceAuthorization, OAuth2Credential, utcnow
from credman.scheduler import ScheduledTask, Scheduler, ThreadPoolScheduler

if TYPE_CHECKING:
    from credman.auth.manager import CredentialManager
    from credman.providers.base import OAuth2IdentityProvider

logger = logging.getLogger(__name__)

DEFAULT_MINIMUM_REFRESH_INTERVAL = 3600


def refresh_schedule(
    credential: OAuth2Credential,
    now: datetime,
    minimum_refresh_interval: int = DEFAULT_MINIMUM_REFRESH_INTERVAL,
) -> Optional[tuple[int, int]]:
    """Compute ``(initial_delay, period)`` in seconds for a credential's refresh cycle.

    Returns:
        ``None`` if the credential has no positive ``expires_in``.
    """
    if credential.expires_in is None or credential.expires_in <= 0:
        return None
    remaining = max(0, int((credential.expires_at - now).total_seconds()))
    return remaining * 3 // 4, max(minimum_refresh_interval, remaining)


class RefreshingOAuth2Controller(AuthenticationController):
    """Keeps registered OAuth2 credentials fresh in the background.

    Flow-starting calls and the manager back-reference are forwarded to
    the wrapped controller.

    Args:
        delegate: Inner controller. Defaults to a
            :class:`~credman.controllers.noop.NoopAuthController`.
        scheduler: Scheduler for refresh cycles. When omitted, a
            single-worker :class:`~credman.scheduler.ThreadPoolScheduler` is
            created and shut down by :meth:`close`.
        minimum_refresh_interval: Lower bound in seconds between refreshes.
        clock: Source of the current time, for tests.
        save_after_refresh: Persist the manager's store after each
            successful refresh.
        owns_scheduler: Whether :meth:`close` shuts the scheduler down.
            Defaults to ``True`` only for a scheduler created here.
    """

    def __init__(
        self,
        delegate: Optional[AuthenticationController] = None,
        scheduler: Optional[Scheduler] = None,
        minimum_refresh_interval: int = DEFAULT_MINIMUM_REFRESH_INTERVAL,
        clock: Callable[[], datetime] = utcnow,
        save_after_refresh: bool = False,
        owns_scheduler: Optional[bool] = None,
    ) -> None:
        super().__init__()
        if owns_scheduler is None:
            owns_scheduler = scheduler is None
        self._delegate = delegate or NoopAuthController()
        self._scheduler = scheduler or ThreadPoolScheduler(max_workers=1)
        self._owns_scheduler = owns_scheduler
        self._minimum_refresh_interval = minimum_refresh_interval
        self._clock = clock
        self._save_after_refresh = save_after_refresh
        self._cycles: dict[int, ScheduledTask] = {}
        self._lock = threading.Lock()
        self._closed = False

    @property
    def delegate(self) -> AuthenticationController:
        return self._delegate

    @property
    def credential_manager(self) -> Optional[CredentialManager]:
        return self._delegate.credential_manager

    def bind_credential_manager(self, manager: CredentialManager) -> None:
        self._delegate.bind_credential_manager(manager)

    def start_authorization_code_flow(
        self,
        provider: OAuth2IdentityProvider,
        redirect_url: Optional[str] = None,
        scopes: Optional[list[str]] = None,
    ) -> str:
        return self._delegate.start_authorization_code_flow(provider, redirect_url, scopes)

    def start_device_flow(
        self,
        provider: OAuth2IdentityProvider,
        scopes: list[str],
        callback: DeviceFlowCallback,
    ) -> DeviceAuthorization:
        return self._delegate.start_device_flow(provider, scopes, callback)

    def on_credential_registered(self, credential: Credential) -> None:
        self._delegate.on_credential_registered(credential)
        if not isinstance(credential, OAuth2Credential) or self._closed:
            return
        if credential.expires_in is not None:
            self._schedule_refresh(credential)
            return
        try:
            self._scheduler.execute(lambda: self._initialize(credential))
        except RuntimeError:
            logger.debug("Scheduler is shut down; not refreshing %r", credential)

    def on_credential_removed(self, credential: Credential) -> None:
        self._delegate.on_credential_removed(credential)
        self.cancel_refresh(credential)

    def is_refresh_scheduled(self, credential: Credential) -> bool:
        with self._lock:
            return id(credential) in self._cycles

    def cancel_refresh(self, credential: Credential) -> bool:
        """Stop the refresh cycle of *credential*; return ``True`` if one existed."""
        with self._lock:
            task = self._cycles.pop(id(credential), None)
        if task is None:
            return False
        task.cancel()
        return True

    def try_refresh(
        self, provider: OAuth2IdentityProvider, credential: OAuth2Credential
    ) -> bool:
        """Refresh *credential* in place.

        Returns:
            ``True`` if the credential was updated.
        """
        if credential.refresh_token:
            try:
                refreshed = provider.refresh_credential(credential)
            except CredmanError as exc:
                logger.warning("Could not refresh credential %r: %s", credential, exc)
                return False
            if refreshed is None:
                logger.warning("Could not refresh credential; it may be revoked! %r", credential)
                return False
            credential.update_credential(refreshed)
            return True

        if not credential.user_id:
            try:
                app_token = provider.get_app_access_token(" ".join(credential.scopes))
            except CredmanError as exc:
                logger.warning("Could not renew app access token %r: %s", credential, exc)
                return False
            credential.update_credential(app_token)
            return True

        logger.debug(
            "Credential for user id %s does not have enough information to be refreshed",
            credential.user_id,
        )
        return False

    def close(self) -> None:
        """Cancel every refresh cycle and close the wrapped controller."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            cycles = list(self._cycles.values())
            self._cycles.clear()
        for task in cycles:
            task.cancel()
        self._delegate.close()
        if self._owns_scheduler:
            self._scheduler.shutdown(wait=True)

    # -- internals --

    def _identity_provider(
        self, credential: OAuth2Credential
    ) -> Optional[OAuth2IdentityProvider]:
        manager = self.credential_manager
        if manager is None:
            return None
        provider = manager.get_oauth2_identity_provider_by_name(credential.identity_provider)
        if provider is None:
            logger.warning(
                "No OAuth2 identity provider named '%s' for credential %r",
                credential.identity_provider,
                credential,
            )
        return provider

    def _initialize(self, credential: OAuth2Credential) -> None:
        provider = self._identity_provider(credential)
        if provider is None:
            return
        try:
            enriched = provider.get_additional_credential_information(credential)
        except CredmanError as exc:
            logger.warning("Could not look up credential details for %r: %s", credential, exc)
            enriched = None
        if enriched is not None:
            credential.update_credential(enriched)
            valid = True
        else:
            valid = self.try_refresh(provider, credential)
        if valid:
            self._schedule_refresh(credential)

    def _schedule_refresh(self, credential: OAuth2Credential) -> None:
        schedule = refresh_schedule(
            credential, self._clock(), self._minimum_refresh_interval
        )
        if schedule is None:
            return
        initial_delay, period = schedule
        with self._lock:
            if self._closed:
                return
            previous = self._cycles.pop(id(credential), None)
            if previous is not None:
                previous.cancel()
            self._cycles[id(credential)] = self._scheduler.schedule_at_fixed_rate(
                initial_delay, period, lambda: self._refresh(credential)
            )
        logger.debug(
            "Scheduled refresh of %r in %ss, then every %ss",
            credential,
            initial_delay,
            period,
        )

    def _refresh(self, credential: OAuth2Credential) -> None:
        provider = self._identity_provider(credential)
        if provider is None:
            return
        if self.try_refresh(provider, credential) and self._save_after_refresh:
            manager = self.credential_manager
            if manager is not None:
                manager.save()

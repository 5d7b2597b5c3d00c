"""Background polling for the OAuth2 Device Authorization Grant (:rfc:`8628`).

:class:`DeviceFlowController` requests device and user codes from an
identity provider, returns them to the caller immediately, and then polls
the token endpoint on a :class:`~credman.scheduler.Scheduler` until one
of the following happens:

* the user approves -- the credential is added to the owning manager and
  the callback receives it;
* the server reports a terminal error (``access_denied``,
  ``expired_token``, ...) -- the callback receives the error;
* the codes expire locally -- the callback receives ``EXPIRED_TOKEN``;
* the controller is closed -- the callback receives ``None``.

The callback fires at most once per flow. Polling intervals follow
section 3.5 of the RFC: ``slow_down`` adds five seconds, and a connection
failure doubles the interval (or adds ten seconds once it exceeds thirty).
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

from credman.auth.base import AuthenticationController, DeviceFlowCallback
from credman.exceptions import (
    ControllerClosedError,
    CredmanError,
    TransportError,
    UnsupportedOperationError,
)
from credman.models import (
    DeviceAuthorization,
    DeviceFlowError,
    DeviceFlowState,
    DeviceTokenResponse,
    utcnow,
)
from credman.scheduler import ScheduledTask, Scheduler, ThreadPoolScheduler

if TYPE_CHECKING:
    from credman.providers.base import OAuth2IdentityProvider

logger = logging.getLogger(__name__)

SLOW_DOWN_INCREMENT = 5
FINISHED_FLOW_RETENTION = 32


def next_backoff_interval(interval: int) -> int:
    """Polling interval after a connection failure: double up to 30s, then add 10s."""
    return interval * 2 if interval <= 30 else interval + 10


class _DeviceFlow:
    """Polling state of one device authorization."""

    def __init__(
        self,
        provider: OAuth2IdentityProvider,
        authorization: DeviceAuthorization,
        expiry: datetime,
        callback: DeviceFlowCallback,
    ) -> None:
        self.provider: Optional[OAuth2IdentityProvider] = provider
        self.device_code = authorization.device_code
        self.user_code = authorization.user_code
        self.expiry = expiry
        self.interval = authorization.interval
        self.callback: Optional[DeviceFlowCallback] = callback
        self.state = DeviceFlowState.REQUESTED
        self.task: Optional[ScheduledTask] = None
        self._lock = threading.Lock()
        self._delivered = False

    def finish(self, response: Optional[DeviceTokenResponse], state: DeviceFlowState) -> None:
        with self._lock:
            if self._delivered:
                return
            self._delivered = True
            self.state = state
            callback = self.callback
            # Only the state outlives delivery
            self.callback = None
            self.provider = None
            self.task = None
        try:
            callback(response)
        except Exception:
            logger.exception("Device flow callback for user code %s raised", self.user_code)


class DeviceFlowController(AuthenticationController):
    """Runs device authorization flows in the background.

    Args:
        scheduler: Scheduler used for polling. When omitted, a
            single-worker :class:`~credman.scheduler.ThreadPoolScheduler`
            is created and shut down by :meth:`close`.
        max_expires_in: If positive, caps every flow's lifetime at this many
            seconds after the device authorization was issued.
        clock: Source of the current time, for tests.
        owns_scheduler: Whether :meth:`close` shuts the scheduler down.
            Defaults to ``True`` only for a scheduler created here.
    """

    def __init__(
        self,
        scheduler: Optional[Scheduler] = None,
        max_expires_in: int = 0,
        clock: Callable[[], datetime] = utcnow,
        owns_scheduler: Optional[bool] = None,
    ) -> None:
        super().__init__()
        if owns_scheduler is None:
            owns_scheduler = scheduler is None
        self._scheduler = scheduler or ThreadPoolScheduler(max_workers=1)
        self._owns_scheduler = owns_scheduler
        self._max_expires_in = max_expires_in
        self._clock = clock
        self._flows: dict[str, _DeviceFlow] = {}
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start_device_flow(
        self,
        provider: OAuth2IdentityProvider,
        scopes: list[str],
        callback: DeviceFlowCallback,
    ) -> DeviceAuthorization:
        """Request device codes and start polling in the background.

        Returns:
            The :class:`~credman.models.DeviceAuthorization` to display.

        Raises:
            ControllerClosedError: If the controller is closed.
            CredmanError: If the device authorization request itself fails.
        """
        if self._closed:
            raise ControllerClosedError("Device flow controller is closed")
        authorization = provider.create_device_flow_request(scopes)
        expiry = authorization.expires_at
        if self._max_expires_in > 0:
            expiry = min(
                authorization.issued_at + timedelta(seconds=self._max_expires_in), expiry
            )
        flow = _DeviceFlow(provider, authorization, expiry, callback)
        with self._lock:
            self._prune_finished_locked()
            self._flows[flow.device_code] = flow
            scheduled = self._schedule_locked(flow)
        if not scheduled:
            flow.finish(None, DeviceFlowState.CANCELLED)
        logger.debug(
            "Started device flow for user code %s (interval %ss, expires %s)",
            flow.user_code,
            flow.interval,
            expiry.isoformat(),
        )
        return authorization

    def start_authorization_code_flow(
        self,
        provider: OAuth2IdentityProvider,
        redirect_url: Optional[str] = None,
        scopes: Optional[list[str]] = None,
    ) -> str:
        raise UnsupportedOperationError(
            "This controller only facilitates the device authorization grant flow"
        )

    def get_flow_state(self, device_code: str) -> Optional[DeviceFlowState]:
        """Return the state of the flow for *device_code*, or ``None`` if unknown.

        Finished flows are remembered until more than
        ``FINISHED_FLOW_RETENTION`` of them have accumulated.
        """
        with self._lock:
            flow = self._flows.get(device_code)
            return flow.state if flow is not None else None

    def close(self) -> None:
        """Cancel all active flows and stop polling.

        Flows waiting for their next poll are cancelled and their callbacks
        receive ``None`` right away. A poll already in progress delivers
        ``None`` once it returns.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            active = [f for f in self._flows.values() if not f.state.is_terminal]
        for flow in active:
            task = flow.task
            # A running poll delivers the cancellation itself
            if task is not None and (task.cancel() or task.done):
                logger.info(
                    "Cancelling device code flow for user code %s since the controller was closed",
                    flow.user_code,
                )
                flow.finish(None, DeviceFlowState.CANCELLED)
        if self._owns_scheduler:
            self._scheduler.shutdown(wait=True)

    # -- polling --

    def _schedule_locked(self, flow: _DeviceFlow) -> bool:
        if self._closed:
            return False
        try:
            flow.task = self._scheduler.schedule(flow.interval, lambda: self._poll(flow))
        except RuntimeError:
            logger.warning(
                "Scheduler is shut down; abandoning device flow for user code %s",
                flow.user_code,
            )
            return False
        flow.state = DeviceFlowState.POLLING
        return True

    def _prune_finished_locked(self) -> None:
        finished = [code for code, f in self._flows.items() if f.state.is_terminal]
        for code in finished[: max(0, len(finished) - FINISHED_FLOW_RETENTION)]:
            del self._flows[code]

    def _poll(self, flow: _DeviceFlow) -> None:
        provider = flow.provider
        if provider is None:
            return

        if self._closed:
            logger.info(
                "Cancelling device code flow for user code %s since the controller was closed",
                flow.user_code,
            )
            flow.finish(None, DeviceFlowState.CANCELLED)
            return

        if self._clock() > flow.expiry:
            flow.finish(
                DeviceTokenResponse(error=DeviceFlowError.EXPIRED_TOKEN),
                DeviceFlowState.EXPIRED,
            )
            return

        response: Optional[DeviceTokenResponse] = None
        try:
            response = provider.get_device_access_token(flow.device_code)
        except (TransportError, OSError) as exc:
            # RFC 8628 section 3.5: back off on connection timeouts
            flow.interval = next_backoff_interval(flow.interval)
            logger.warning(
                "Could not reach the device token endpoint for user code %s; "
                "retrying in %ss: %s",
                flow.user_code,
                flow.interval,
                exc,
            )
        except CredmanError as exc:
            logger.warning(
                "Unexpected response from the device token endpoint for user code %s; "
                "will retry: %s",
                flow.user_code,
                exc,
            )
        except Exception:
            logger.exception(
                "Polling the device token endpoint for user code %s failed; will retry",
                flow.user_code,
            )

        if response is not None:
            if response.credential is not None or not response.error.should_retry:
                self._complete(flow, provider.name, response)
                return
            logger.debug(
                "Received %s from the device token endpoint for user code %s; will retry",
                response.error.value,
                flow.user_code,
            )
            if response.error is DeviceFlowError.SLOW_DOWN:
                flow.interval += SLOW_DOWN_INCREMENT

        with self._lock:
            scheduled = self._schedule_locked(flow)
        if not scheduled:
            flow.finish(None, DeviceFlowState.CANCELLED)

    def _complete(
        self, flow: _DeviceFlow, provider_name: str, response: DeviceTokenResponse
    ) -> None:
        if response.credential is not None:
            state = DeviceFlowState.SUCCEEDED
        elif response.error is DeviceFlowError.EXPIRED_TOKEN:
            state = DeviceFlowState.EXPIRED
        else:
            state = DeviceFlowState.TERMINAL_ERROR
        try:
            manager = self.credential_manager
            if response.credential is not None and manager is not None:
                try:
                    stored = manager.add_credential(provider_name, response.credential)
                except CredmanError as exc:
                    logger.warning(
                        "Could not store the credential for user code %s: %s",
                        flow.user_code,
                        exc,
                    )
                else:
                    # The manager may keep an enriched copy; report that one
                    response = response.model_copy(update={"credential": stored})
        finally:
            flow.finish(response, state)

"""Shared test fixtures for credman.

Provides a virtual-clock scheduler for deterministic controller tests, a
scriptable OAuth2 identity provider, isolated config environments and a
CLI runner. These fixtures are discovered by pytest and available to all
test modules without explicit imports.
"""

from __future__ import annotations

import heapq
import itertools
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from credman.models import (
    DeviceAuthorization,
    DeviceFlowError,
    DeviceTokenResponse,
    OAuth2Credential,
)
from credman.output import reset_output
from credman.providers.base import OAuth2IdentityProvider
from credman.scheduler import ScheduledTask, Scheduler

T0 = datetime(2025, 4, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Auto-reset global state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager and the ``credman`` logger after every test.

    The OutputManager caches sys.stdout/sys.stderr at creation time, which
    go stale once Typer's CliRunner restores the real streams. The CLI
    callback also attaches a RichHandler bound to those streams.
    """
    yield
    reset_output()
    logger = logging.getLogger("credman")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


# ---------------------------------------------------------------------------
# Virtual-clock scheduler
# ---------------------------------------------------------------------------


class FakeScheduler(Scheduler):
    """A :class:`Scheduler` driven by an explicit virtual clock.

    Nothing runs until :meth:`advance` moves the clock past a task's due
    time. :meth:`execute` runs its callable inline.
    """

    def __init__(self, start: datetime = T0) -> None:
        self._now = start
        self._queue: list[tuple[datetime, int, ScheduledTask]] = []
        self._sequence = itertools.count()
        self.delays: list[float] = []
        self.fixed_rate: list[tuple[float, float]] = []
        self.executed = 0
        self.is_shutdown = False

    def now(self) -> datetime:
        return self._now

    def schedule(self, delay: float, fn: Callable[[], object]) -> ScheduledTask:
        if self.is_shutdown:
            raise RuntimeError("cannot schedule new tasks after shutdown")
        task = ScheduledTask(fn)
        self.delays.append(delay)
        self._push(self._now + timedelta(seconds=delay), task)
        return task

    def schedule_at_fixed_rate(
        self, initial_delay: float, period: float, fn: Callable[[], object]
    ) -> ScheduledTask:
        task = ScheduledTask(fn, period=period)
        self.fixed_rate.append((initial_delay, period))
        self._push(self._now + timedelta(seconds=initial_delay), task)
        return task

    def execute(self, fn: Callable[[], object]) -> None:
        self.executed += 1
        ScheduledTask(fn).run()

    def shutdown(self, wait: bool = True) -> None:
        self.is_shutdown = True
        for _, _, task in self._queue:
            task.cancel()
        self._queue.clear()

    def advance(self, seconds: float) -> None:
        """Move the clock forward, running every task that comes due on the way."""
        target = self._now + timedelta(seconds=seconds)
        while self._queue and self._queue[0][0] <= target:
            due, _, task = heapq.heappop(self._queue)
            if task.cancelled:
                continue
            self._now = due
            if task.period is not None:
                self._push(due + timedelta(seconds=task.period), task)
            task.run()
        self._now = target

    def due_times(self) -> list[datetime]:
        """Due times of pending (non-cancelled) tasks, earliest first."""
        return sorted(due for due, _, task in self._queue if not task.cancelled)

    def _push(self, due: datetime, task: ScheduledTask) -> None:
        heapq.heappush(self._queue, (due, next(self._sequence), task))


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


# ---------------------------------------------------------------------------
# Scriptable identity provider
# ---------------------------------------------------------------------------

PENDING = DeviceTokenResponse(error=DeviceFlowError.AUTHORIZATION_PENDING)


class StubProvider(OAuth2IdentityProvider):
    """OAuth2 provider whose responses are scripted by the test.

    ``poll_results`` items are returned (or raised, for exceptions) by
    successive :meth:`get_device_access_token` calls; once exhausted, the
    provider keeps answering ``authorization_pending``.
    """

    def __init__(
        self,
        name: str = "p",
        clock: Optional[Callable[[], datetime]] = None,
        interval: int = 5,
        expires_in: int = 1800,
        poll_results: Optional[list[Any]] = None,
        enrichment: Optional[OAuth2Credential] = None,
        refresh_result: Any = None,
        app_token: Any = None,
        provider_type: str = "oauth2",
        device_code: str = "device-code",
    ) -> None:
        super().__init__(name, provider_type)
        self._clock = clock or (lambda: T0)
        self.device_code = device_code
        self.interval = interval
        self.expires_in = expires_in
        self.poll_results = list(poll_results or [])
        self.enrichment = enrichment
        self.refresh_result = refresh_result
        self.app_token = app_token
        self.device_requests: list[list[str]] = []
        self.polls = 0
        self.enrich_calls: list[OAuth2Credential] = []
        self.refresh_calls: list[OAuth2Credential] = []
        self.app_token_scopes: list[Optional[str]] = []

    def create_device_flow_request(self, scopes: list[str]) -> DeviceAuthorization:
        self.device_requests.append(list(scopes))
        return DeviceAuthorization(
            device_code=self.device_code,
            user_code="ABCD-EFGH",
            verification_uri="https://example.com/activate",
            expires_in=self.expires_in,
            interval=self.interval,
            issued_at=self._clock(),
        )

    def get_device_access_token(self, device_code: str) -> DeviceTokenResponse:
        self.polls += 1
        result = self.poll_results.pop(0) if self.poll_results else PENDING
        if isinstance(result, Exception):
            raise result
        return result

    def refresh_credential(self, credential: OAuth2Credential) -> Optional[OAuth2Credential]:
        self.refresh_calls.append(credential)
        if isinstance(self.refresh_result, Exception):
            raise self.refresh_result
        return self.refresh_result

    def get_additional_credential_information(
        self, credential: OAuth2Credential
    ) -> Optional[OAuth2Credential]:
        self.enrich_calls.append(credential)
        return self.enrichment

    def get_app_access_token(self, scope: Optional[str] = None) -> OAuth2Credential:
        self.app_token_scopes.append(scope)
        if isinstance(self.app_token, Exception):
            raise self.app_token
        return self.app_token


class OtherProvider(OAuth2IdentityProvider):
    """An OAuth2 provider unrelated to :class:`StubProvider`."""

    def create_device_flow_request(self, scopes):  # pragma: no cover
        raise NotImplementedError

    def get_device_access_token(self, device_code):  # pragma: no cover
        raise NotImplementedError

    def refresh_credential(self, credential):  # pragma: no cover
        return None

    def get_additional_credential_information(self, credential):
        return None

    def get_app_access_token(self, scope=None):  # pragma: no cover
        raise NotImplementedError


class SpecialStubProvider(StubProvider):
    """A more specific variant of :class:`StubProvider`."""


@pytest.fixture
def make_provider(scheduler: FakeScheduler) -> Callable[..., StubProvider]:
    """Factory for :class:`StubProvider` instances on the virtual clock."""

    def _make(**kwargs: Any) -> StubProvider:
        kwargs.setdefault("clock", scheduler.now)
        return StubProvider(**kwargs)

    return _make


@pytest.fixture
def provider_classes() -> dict[str, type]:
    return {
        "stub": StubProvider,
        "special": SpecialStubProvider,
        "other": OtherProvider,
    }


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration to a temporary directory.

    Points XDG_CONFIG_HOME and XDG_DATA_HOME into tmp_path, forces the XDG
    layout, clears the CREDMAN_* overrides and changes the working
    directory to tmp_path.
    """
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.setattr("credman.config._is_xdg_platform", lambda: True)
    for var in ["CREDMAN_CONFIG", "CREDMAN_CREDENTIALS_FILE"]:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()

"""Tests for the credential manager and its config-driven factory."""

from __future__ import annotations

import gc
from pathlib import Path

import pytest

from credman.auth.base import AuthenticationController
from credman.auth.credential_store import FileStorageBackend, TemporaryStorageBackend
from credman.auth.manager import (
    CredentialManager,
    create_controller,
    create_credential_manager,
    create_storage_backend,
)
from credman.controllers import (
    DeviceFlowController,
    NoopAuthController,
    RefreshingOAuth2Controller,
)
from credman.exceptions import (
    ConfigError,
    IdentityProviderNotFoundError,
    ProtocolError,
    RegistrationConflictError,
    UnsupportedOperationError,
)
from credman.models import Credential, ManagerConfig, OAuth2Credential
from credman.providers.base import IdentityProvider
from credman.providers.oauth2 import DefaultOAuth2IdentityProvider


class RecordingController(AuthenticationController):
    def __init__(self) -> None:
        super().__init__()
        self.registered: list[Credential] = []
        self.removed: list[Credential] = []
        self.closed = 0

    def on_credential_registered(self, credential: Credential) -> None:
        self.registered.append(credential)

    def on_credential_removed(self, credential: Credential) -> None:
        self.removed.append(credential)

    def close(self) -> None:
        self.closed += 1


def _oauth(provider: str = "p", **kwargs: object) -> OAuth2Credential:
    return OAuth2Credential(identity_provider=provider, access_token="tok", **kwargs)


def _raise(exc: Exception):
    def _fn(*args: object, **kwargs: object):
        raise exc

    return _fn


@pytest.fixture()
def controller() -> RecordingController:
    return RecordingController()


@pytest.fixture()
def manager(controller: RecordingController) -> CredentialManager:
    return CredentialManager(controller=controller)


# ---------------------------------------------------------------------------
# Identity provider registry
# ---------------------------------------------------------------------------


class TestProviderRegistry:
    def test_lookup_is_case_insensitive(self, manager, make_provider) -> None:
        provider = make_provider(name="Twitch")
        manager.register_identity_provider(provider)
        assert manager.get_identity_provider_by_name("twitch") is provider
        assert manager.get_identity_provider_by_name("TWITCH") is provider
        assert manager.get_identity_provider_by_name("other") is None

    def test_registration_binds_manager(self, manager, make_provider) -> None:
        provider = make_provider()
        manager.register_identity_provider(provider)
        assert provider.credential_manager is manager

    def test_same_class_is_idempotent(self, manager, make_provider) -> None:
        first = make_provider()
        manager.register_identity_provider(first)
        manager.register_identity_provider(make_provider())
        assert manager.get_identity_provider_by_name("p") is first
        assert len(manager.get_identity_providers()) == 1

    def test_more_specific_class_replaces(self, manager, make_provider, provider_classes) -> None:
        manager.register_identity_provider(make_provider())
        special = provider_classes["special"]("p")
        manager.register_identity_provider(special)
        assert manager.get_identity_provider_by_name("p") is special

    def test_base_class_keeps_specific(self, manager, make_provider, provider_classes) -> None:
        special = provider_classes["special"]("p")
        manager.register_identity_provider(special)
        manager.register_identity_provider(make_provider())
        assert manager.get_identity_provider_by_name("p") is special

    def test_unrelated_class_conflicts(self, manager, make_provider, provider_classes) -> None:
        first = make_provider()
        manager.register_identity_provider(first)
        with pytest.raises(RegistrationConflictError):
            manager.register_identity_provider(provider_classes["other"]("P"))
        assert manager.get_identity_providers() == [first]

    def test_oauth2_lookup_skips_plain_providers(self, manager) -> None:
        manager.register_identity_provider(IdentityProvider("plain", "static"))
        assert manager.get_identity_provider_by_name("plain") is not None
        assert manager.get_oauth2_identity_provider_by_name("plain") is None

    def test_back_reference_does_not_keep_manager_alive(self, make_provider) -> None:
        provider = make_provider()
        manager = CredentialManager()
        manager.register_identity_provider(provider)
        del manager
        gc.collect()
        assert provider.credential_manager is None


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class TestAddCredential:
    def test_adds_and_notifies(self, manager, controller, make_provider) -> None:
        manager.register_identity_provider(make_provider())
        cred = _oauth()
        stored = manager.add_credential("p", cred)
        assert stored is cred
        assert manager.get_credentials() == [cred]
        assert controller.registered == [cred]

    def test_enriched_copy_is_stored(self, manager, controller, make_provider) -> None:
        enriched = _oauth(user_id="42", user_name="alice", expires_in=3600)
        provider = make_provider(enrichment=enriched)
        manager.register_identity_provider(provider)
        original = _oauth()

        stored = manager.add_credential("p", original)

        assert stored is enriched
        assert provider.enrich_calls == [original]
        assert manager.get_credentials() == [enriched]
        assert controller.registered == [enriched]

    def test_enrichment_failure_keeps_original(self, manager, make_provider, caplog) -> None:
        provider = make_provider()
        provider.get_additional_credential_information = _raise(ProtocolError("bad body"))
        manager.register_identity_provider(provider)
        cred = _oauth()
        assert manager.add_credential("p", cred) is cred
        assert "Could not look up credential details" in caplog.text

    def test_unknown_provider_raises(self, manager, controller) -> None:
        with pytest.raises(IdentityProviderNotFoundError):
            manager.add_credential("nope", _oauth("nope"))
        assert manager.get_credentials() == []
        assert controller.registered == []

    def test_provider_type_must_be_oauth2(self, manager, make_provider) -> None:
        manager.register_identity_provider(make_provider(provider_type="custom"))
        with pytest.raises(IdentityProviderNotFoundError):
            manager.add_credential("p", _oauth())

    def test_provider_type_ignores_case(self, manager, make_provider) -> None:
        manager.register_identity_provider(make_provider(provider_type="OAuth2"))
        cred = manager.add_credential("p", _oauth())
        assert manager.get_credentials() == [cred]

    def test_plain_credential_needs_no_provider(self, manager, controller) -> None:
        cred = Credential(identity_provider="static", user_id="1")
        assert manager.add_credential("static", cred) is cred
        assert controller.registered == [cred]


class TestCredentialQueries:
    def test_snapshot_is_insertion_ordered_copy(self, manager, make_provider) -> None:
        manager.register_identity_provider(make_provider())
        first = manager.add_credential("p", _oauth(user_id="1"))
        second = manager.add_credential("p", _oauth(user_id="2"))
        snapshot = manager.get_credentials()
        assert snapshot == [first, second]
        snapshot.clear()
        assert len(manager.get_credentials()) == 2

    def test_get_by_user_id(self, manager, make_provider) -> None:
        manager.register_identity_provider(make_provider())
        cred = manager.add_credential("p", _oauth(user_id="Alice"))
        assert manager.get_credential_by_user_id("alice") is cred
        assert manager.get_credential_by_user_id("bob") is None

    def test_remove(self, manager, controller, make_provider) -> None:
        manager.register_identity_provider(make_provider())
        cred = manager.add_credential("p", _oauth(user_id="1"))
        assert manager.remove_credential(cred) is True
        assert manager.get_credentials() == []
        assert controller.removed == [cred]
        assert manager.remove_credential(cred) is False

    def test_remove_matches_identity_not_value(self, manager, make_provider) -> None:
        manager.register_identity_provider(make_provider())
        cred = manager.add_credential("p", _oauth(user_id="1"))
        twin = cred.model_copy()
        assert manager.remove_credential(twin) is False
        assert manager.get_credentials() == [cred]


class TestPersistence:
    def test_loads_on_construction(self) -> None:
        storage = TemporaryStorageBackend()
        cred = _oauth()
        storage.save_credentials([cred])
        assert CredentialManager(storage=storage).get_credentials() == [cred]

    def test_save_writes_through(self, make_provider) -> None:
        storage = TemporaryStorageBackend()
        manager = CredentialManager(storage=storage)
        manager.register_identity_provider(make_provider())
        cred = manager.add_credential("p", _oauth())
        assert storage.load_credentials() == []
        manager.save()
        assert storage.load_credentials() == [cred]

    def test_close_closes_controller(self, controller) -> None:
        with CredentialManager(controller=controller):
            pass
        assert controller.closed == 1

    def test_default_controller_is_noop(self) -> None:
        manager = CredentialManager()
        assert isinstance(manager.controller, NoopAuthController)
        assert manager.controller.credential_manager is manager


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


class TestFactories:
    def test_storage_backends(self, isolated_config: Path) -> None:
        assert isinstance(
            create_storage_backend(ManagerConfig.model_validate({"storage": {"backend": "memory"}})),
            TemporaryStorageBackend,
        )
        file_backend = create_storage_backend(
            ManagerConfig.model_validate({"storage": {"path": str(isolated_config / "c.json")}})
        )
        assert isinstance(file_backend, FileStorageBackend)
        assert file_backend.path == isolated_config / "c.json"

    def test_unknown_storage_backend(self) -> None:
        with pytest.raises(ConfigError, match="Unknown storage backend"):
            create_storage_backend(ManagerConfig.model_validate({"storage": {"backend": "s3"}}))

    def test_controller_stack_defaults(self) -> None:
        controller = create_controller(ManagerConfig())
        try:
            assert isinstance(controller, RefreshingOAuth2Controller)
            assert isinstance(controller.delegate, DeviceFlowController)
        finally:
            controller.close()

    def test_controller_stack_device_flow_only(self) -> None:
        config = ManagerConfig.model_validate({"refresh": {"enabled": False}})
        controller = create_controller(config)
        try:
            assert isinstance(controller, DeviceFlowController)
        finally:
            controller.close()

    def test_controller_stack_refresh_only(self) -> None:
        config = ManagerConfig.model_validate({"device_flow": {"enabled": False}})
        controller = create_controller(config)
        try:
            assert isinstance(controller, RefreshingOAuth2Controller)
            assert isinstance(controller.delegate, NoopAuthController)
        finally:
            controller.close()

    def test_controller_stack_disabled(self) -> None:
        config = ManagerConfig.model_validate(
            {"device_flow": {"enabled": False}, "refresh": {"enabled": False}}
        )
        assert isinstance(create_controller(config), NoopAuthController)

    def test_create_credential_manager_registers_providers(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("TWITCH_CLIENT_ID", "cid")
        config = ManagerConfig.model_validate(
            {
                "storage": {"backend": "memory"},
                "providers": [
                    {
                        "name": "twitch",
                        "client_id_source": "env:TWITCH_CLIENT_ID",
                        "token_url": "https://id.twitch.tv/oauth2/token",
                        "device_url": "https://id.twitch.tv/oauth2/device",
                    },
                    {"name": "static", "type": "api_key", "header": "X-Key"},
                ],
            }
        )
        with create_credential_manager(config) as manager:
            twitch = manager.get_oauth2_identity_provider_by_name("twitch")
            assert isinstance(twitch, DefaultOAuth2IdentityProvider)
            assert twitch.client_id == "cid"
            static = manager.get_identity_provider_by_name("static")
            assert static.provider_type == "api_key"
            assert static.configuration == {"header": "X-Key"}
            assert not static.supports_oauth2

    def test_mixed_case_oauth2_type_accepts_credentials(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("TWITCH_CLIENT_ID", "cid")
        config = ManagerConfig.model_validate(
            {
                "storage": {"backend": "memory"},
                "providers": [
                    {
                        "name": "twitch",
                        "type": "OAuth2",
                        "client_id_source": "env:TWITCH_CLIENT_ID",
                        "token_url": "https://id.twitch.tv/oauth2/token",
                    }
                ],
            }
        )
        with create_credential_manager(config) as manager:
            cred = manager.add_credential(
                "twitch", _oauth("twitch", expires_in=3600, refresh_token="r")
            )
            assert manager.get_credentials() == [cred]

    def test_create_credential_manager_unresolvable_secret(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("NOPE_CLIENT_ID", raising=False)
        config = ManagerConfig.model_validate(
            {
                "storage": {"backend": "memory"},
                "providers": [{"name": "x", "client_id_source": "env:NOPE_CLIENT_ID"}],
            }
        )
        with pytest.raises(ConfigError):
            create_credential_manager(config)

    def test_noop_authorization_code_flow(self) -> None:
        controller = NoopAuthController()
        provider = DefaultOAuth2IdentityProvider(
            "p", client_id="cid", auth_url="https://example.com/authorize"
        )
        url = controller.start_authorization_code_flow(
            provider, "http://localhost/cb", ["a", "b"]
        )
        assert url.startswith("https://example.com/authorize?response_type=code")
        assert "scope=a%20b" in url
        with pytest.raises(UnsupportedOperationError):
            controller.start_device_flow(provider, [], lambda response: None)

import pytest

from dreamquill_core.domain.exceptions import ValidationError
from dreamquill_core.domain.models import VendorKind, VendorProfile
from dreamquill_core.infrastructure.secrets import (
    EnvSecretStore,
    MemorySecretStore,
    provider_secret_alias,
    resolve_credential,
)


def _profile(credential, alias):
    return VendorProfile(
        id=7,
        display_name="p",
        kind=VendorKind.OPENAI_COMPATIBLE,
        base_address="b",
        credential=credential,
        model="m",
        secret_alias=alias,
    )


def test_alias_format():
    assert provider_secret_alias(7) == "provider:7"


def test_env_secret_store(monkeypatch):
    store = EnvSecretStore(prefix="DQ_TEST_")
    assert store.env_name("provider:7") == "DQ_TEST_PROVIDER_7"
    monkeypatch.setenv("DQ_TEST_PROVIDER_7", "sk-env")
    assert store.get_secret("provider:7") == "sk-env"
    store.delete_secret("provider:7")
    assert store.get_secret("provider:7") is None


def test_resolve_credential():
    secrets = MemorySecretStore({"provider:7": "sk-mem"})
    assert resolve_credential(_profile("inline", "provider:7"), secrets).credential == "inline"
    assert resolve_credential(_profile("", "provider:7"), secrets).credential == "sk-mem"
    assert resolve_credential(_profile("", None), secrets).credential == ""
    with pytest.raises(ValidationError):
        resolve_credential(_profile("", "provider:8"), secrets)

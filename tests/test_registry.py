import pytest

from modelgate.config import GatewayConfig
from modelgate.contracts import Operation
from modelgate.credential_store import EncryptedCredentialStore
from modelgate.crypto import new_fernet_key
from modelgate.errors import ConfigurationError, ErrorKind, RoutingError
from modelgate.registry import (
    CredentialResolver,
    ProviderDescriptor,
    ProviderRegistry,
    build_catalog,
)


def _cfg(**overrides) -> GatewayConfig:
    base = dict(signing_key="k", enable_metrics=False, cf_account_id="", meta_base_url="")
    base.update(overrides)
    return GatewayConfig(**base)


def test_catalog_follows_provider_order_and_skips_unconfigured():
    catalog = build_catalog(_cfg(provider_order=["mistral", "openai", "meta", "cf", "bogus", "openai"]))
    assert [d.code for d in catalog] == ["mistral", "openai"]


def test_catalog_includes_cloudflare_with_account_id():
    catalog = build_catalog(_cfg(provider_order=["cloudflare"], cf_account_id="acc123"))
    assert [d.code for d in catalog] == ["cf"]
    assert catalog[0].endpoint_for("/@cf/meta/llama") == (
        "https://api.cloudflare.com/client/v4/accounts/acc123/ai/run/@cf/meta/llama"
    )


def test_anthropic_descriptor_carries_version_header():
    (anthropic,) = build_catalog(_cfg(provider_order=["anthropic"]))
    assert anthropic.headers == {"anthropic-version": "2023-06-01"}
    assert anthropic.schema_adapter == "anthropic_messages"


def _registry(credentials: dict[str, str]) -> ProviderRegistry:
    cfg = _cfg(provider_order=["openai", "anthropic", "mistral", "groq"])
    return ProviderRegistry.from_config(cfg, CredentialResolver(environ=credentials))


def test_unknown_hint_is_unsupported_provider():
    with pytest.raises(RoutingError) as exc:
        _registry({"OPENAI_API_KEY": "sk-1"}).resolve_provider("doesnotexist", Operation.CHAT)
    assert exc.value.kind is ErrorKind.UNSUPPORTED_PROVIDER
    assert exc.value.provider == "doesnotexist"


def test_hint_without_credential_is_unsupported_provider():
    with pytest.raises(RoutingError):
        _registry({"OPENAI_API_KEY": "sk-1"}).resolve_provider("groq", Operation.CHAT)


def test_hint_without_operation_support_is_unsupported_provider():
    registry = _registry({"ANTHROPIC_API_KEY": "ak-1"})
    with pytest.raises(RoutingError):
        registry.resolve_provider("anthropic", Operation.FIM)


def test_hint_is_case_insensitive():
    registry = _registry({"GROQ_API_KEY": "gk-1"})
    assert registry.resolve_provider(" GROQ ", Operation.CHAT).code == "groq"


def test_default_selection_is_first_credentialed_in_order():
    registry = _registry({"ANTHROPIC_API_KEY": "ak-1", "GROQ_API_KEY": "gk-1"})
    assert registry.resolve_provider(None, Operation.CHAT).code == "anthropic"


def test_default_fim_selection_needs_fim_support():
    registry = _registry({"OPENAI_API_KEY": "sk-1", "MISTRAL_API_KEY": "mk-1"})
    assert registry.resolve_provider(None, Operation.FIM).code == "mistral"

    with pytest.raises(RoutingError):
        _registry({"OPENAI_API_KEY": "sk-1"}).resolve_provider(None, Operation.FIM)


def test_secrets_lists_resolved_credentials_only():
    registry = _registry({"OPENAI_API_KEY": "sk-1", "UNRELATED": "x"})
    assert registry.secrets() == ["sk-1"]
    assert registry.has_credential("openai")
    assert not registry.has_credential("mistral")


def test_duplicate_codes_are_rejected():
    d = ProviderDescriptor(
        code="openai",
        base_endpoint="https://x",
        credential_ref="env:X",
        supported_operations=frozenset({Operation.CHAT}),
        schema_adapter="openai_chat",
    )
    with pytest.raises(ConfigurationError):
        ProviderRegistry([d, d], {})


def test_adapter_must_support_declared_operations():
    d = ProviderDescriptor(
        code="openai",
        base_endpoint="https://x",
        credential_ref="env:X",
        supported_operations=frozenset({Operation.CHAT, Operation.FIM}),
        schema_adapter="openai_chat",
    )
    with pytest.raises(ConfigurationError):
        ProviderRegistry([d], {})


def test_credential_resolver_reads_encrypted_store(tmp_path):
    key = new_fernet_key()
    store = EncryptedCredentialStore(tmp_path / "creds.enc", key)
    store.put("openai", "sk-from-store")

    resolver = CredentialResolver(environ={}, store=EncryptedCredentialStore(tmp_path / "creds.enc", key))
    assert resolver.resolve("store:openai") == "sk-from-store"
    assert resolver.resolve("store:missing") is None
    assert resolver.resolve("env:MISSING") is None


@pytest.mark.parametrize("ref", ["OPENAI_API_KEY", "vault:openai", "env:"])
def test_credential_resolver_rejects_bad_refs(ref):
    with pytest.raises(ConfigurationError):
        CredentialResolver(environ={}).resolve(ref)


def test_store_ref_without_store_is_configuration_error():
    with pytest.raises(ConfigurationError):
        CredentialResolver(environ={}).resolve("store:openai")

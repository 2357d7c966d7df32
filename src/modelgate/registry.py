from __future__ import annotations

import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

import structlog

from .adapters import get_adapter
from .config import GatewayConfig
from .contracts import Operation
from .credential_store import EncryptedCredentialStore
from .errors import ConfigurationError, RoutingError

log = structlog.get_logger()

PROVIDER_ALIASES = {"cloudflare": "cf"}


def canonical_code(code: str) -> str:
    code = code.strip().lower()
    return PROVIDER_ALIASES.get(code, code)


@dataclass(frozen=True)
class ProviderDescriptor:
    code: str
    base_endpoint: str
    credential_ref: str
    supported_operations: frozenset[Operation]
    schema_adapter: str
    default_models: Mapping[Operation, str] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)

    def supports(self, operation: Operation) -> bool:
        return operation in self.supported_operations

    def default_model(self, operation: Operation) -> str | None:
        return self.default_models.get(operation)

    def endpoint_for(self, path: str) -> str:
        return self.base_endpoint.rstrip("/") + path


class CredentialResolver:
    """Resolves `env:NAME` and `store:NAME` credential refs to secrets."""

    def __init__(
        self,
        *,
        environ: Mapping[str, str] | None = None,
        store: EncryptedCredentialStore | None = None,
    ):
        self._environ = environ if environ is not None else os.environ
        self._store = store

    def resolve(self, ref: str) -> str | None:
        if not ref:
            return None
        scheme, sep, name = ref.partition(":")
        if not sep or not name:
            raise ConfigurationError(f"Credential ref must look like 'env:NAME' or 'store:NAME', got {ref!r}.")
        if scheme == "env":
            return self._environ.get(name) or None
        if scheme == "store":
            if self._store is None:
                raise ConfigurationError(f"Credential ref {ref!r} needs CREDENTIALS_FERNET_KEY to be configured.")
            return self._store.get(name) or None
        raise ConfigurationError(f"Unknown credential ref scheme {scheme!r}.")


def build_catalog(cfg: GatewayConfig) -> list[ProviderDescriptor]:
    """Descriptors for every provider named in `cfg.provider_order`, in that order."""
    chat = frozenset({Operation.CHAT})
    known: dict[str, ProviderDescriptor] = {
        "openai": ProviderDescriptor(
            code="openai",
            base_endpoint=cfg.openai_base_url,
            credential_ref=cfg.openai_api_key_ref,
            supported_operations=chat,
            schema_adapter="openai_chat",
            default_models={Operation.CHAT: cfg.openai_chat_model},
        ),
        "anthropic": ProviderDescriptor(
            code="anthropic",
            base_endpoint=cfg.anthropic_base_url,
            credential_ref=cfg.anthropic_api_key_ref,
            supported_operations=chat,
            schema_adapter="anthropic_messages",
            default_models={Operation.CHAT: cfg.anthropic_chat_model},
            headers={"anthropic-version": cfg.anthropic_version},
        ),
        "mistral": ProviderDescriptor(
            code="mistral",
            base_endpoint=cfg.mistral_base_url,
            credential_ref=cfg.mistral_api_key_ref,
            supported_operations=frozenset({Operation.CHAT, Operation.FIM}),
            schema_adapter="mistral",
            default_models={Operation.CHAT: cfg.mistral_chat_model, Operation.FIM: cfg.mistral_fim_model},
        ),
        "groq": ProviderDescriptor(
            code="groq",
            base_endpoint=cfg.groq_base_url,
            credential_ref=cfg.groq_api_key_ref,
            supported_operations=chat,
            schema_adapter="openai_chat",
            default_models={Operation.CHAT: cfg.groq_chat_model},
        ),
        "xai": ProviderDescriptor(
            code="xai",
            base_endpoint=cfg.xai_base_url,
            credential_ref=cfg.xai_api_key_ref,
            supported_operations=chat,
            schema_adapter="openai_chat",
            default_models={Operation.CHAT: cfg.xai_chat_model},
        ),
        "openrouter": ProviderDescriptor(
            code="openrouter",
            base_endpoint=cfg.openrouter_base_url,
            credential_ref=cfg.openrouter_api_key_ref,
            supported_operations=chat,
            schema_adapter="openai_chat",
            default_models={Operation.CHAT: cfg.openrouter_chat_model},
        ),
        "meta": ProviderDescriptor(
            code="meta",
            base_endpoint=cfg.meta_base_url,
            credential_ref=cfg.meta_api_key_ref,
            supported_operations=chat,
            schema_adapter="openai_chat",
            default_models={Operation.CHAT: cfg.meta_chat_model},
        ),
    }
    if cfg.cf_account_id:
        known["cf"] = ProviderDescriptor(
            code="cf",
            base_endpoint=f"{cfg.cf_base_url.rstrip('/')}/accounts/{cfg.cf_account_id}/ai/run",
            credential_ref=cfg.cf_api_token_ref,
            supported_operations=chat,
            schema_adapter="cloudflare_workers_ai",
            default_models={Operation.CHAT: cfg.cf_chat_model},
        )

    catalog: list[ProviderDescriptor] = []
    for raw_code in cfg.provider_order:
        code = canonical_code(raw_code)
        descriptor = known.get(code)
        if descriptor is None or not descriptor.base_endpoint:
            log.warning("provider_not_configured", provider=code)
            continue
        if any(d.code == code for d in catalog):
            continue
        catalog.append(descriptor)
    return catalog


class ProviderRegistry:
    """Immutable provider catalog; safe to share between concurrent requests."""

    def __init__(self, descriptors: Iterable[ProviderDescriptor], credentials: Mapping[str, str | None]):
        ordered: list[ProviderDescriptor] = []
        for descriptor in descriptors:
            if any(d.code == descriptor.code for d in ordered):
                raise ConfigurationError(f"Duplicate provider code {descriptor.code!r}.")
            adapter = get_adapter(descriptor.schema_adapter)
            unsupported = [op.value for op in descriptor.supported_operations if not adapter.supports(op)]
            if unsupported:
                raise ConfigurationError(
                    f"Adapter {descriptor.schema_adapter!r} cannot serve {unsupported} for {descriptor.code!r}."
                )
            ordered.append(descriptor)
        self._descriptors: tuple[ProviderDescriptor, ...] = tuple(ordered)
        self._by_code = {d.code: d for d in ordered}
        self._credentials = {code: secret for code, secret in credentials.items() if secret and code in self._by_code}

    @classmethod
    def from_config(cls, cfg: GatewayConfig, resolver: CredentialResolver | None = None) -> "ProviderRegistry":
        if resolver is None:
            store = EncryptedCredentialStore(cfg.credentials_path, cfg.fernet_key) if cfg.fernet_key else None
            resolver = CredentialResolver(store=store)
        catalog = build_catalog(cfg)
        credentials = {d.code: resolver.resolve(d.credential_ref) for d in catalog}
        registry = cls(catalog, credentials)
        log.info(
            "provider_registry_loaded",
            providers=[d.code for d in catalog],
            with_credentials=sorted(registry._credentials),
        )
        return registry

    @property
    def descriptors(self) -> tuple[ProviderDescriptor, ...]:
        return self._descriptors

    def get(self, code: str) -> ProviderDescriptor | None:
        return self._by_code.get(canonical_code(code))

    def credential_for(self, code: str) -> str | None:
        return self._credentials.get(code)

    def has_credential(self, code: str) -> bool:
        return code in self._credentials

    def secrets(self) -> list[str]:
        return list(self._credentials.values())

    def resolve_provider(self, hint: str | None, operation: Operation) -> ProviderDescriptor:
        if hint:
            descriptor = self.get(hint)
            if descriptor is None:
                raise RoutingError(f"Unknown provider {hint!r}.", provider=hint)
            if not descriptor.supports(operation):
                raise RoutingError(
                    f"Provider {descriptor.code!r} does not support {operation.value!r}.", provider=descriptor.code
                )
            if not self.has_credential(descriptor.code):
                raise RoutingError(
                    f"Provider {descriptor.code!r} has no configured credential.", provider=descriptor.code
                )
            return descriptor

        for descriptor in self._descriptors:
            if descriptor.supports(operation) and self.has_credential(descriptor.code):
                return descriptor
        raise RoutingError(f"No configured provider supports {operation.value!r}.")

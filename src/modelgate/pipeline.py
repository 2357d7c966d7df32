from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog

from .accounts import AccountService, InMemoryUserStore
from .adapters import ChatPayload
from .analytics import AnalyticsRecorder
from .attachments import AttachmentError, AttachmentResolver, HttpAttachmentResolver
from .audit import AuditEmitter, AuditEvent, FanoutAuditSink, HttpAuditSink, LoggingAuditSink
from .config import GatewayConfig
from .contracts import InvocationFailure, InvocationRequest, InvocationSuccess, Operation, ResolvedAttachment
from .dispatcher import Dispatcher, ProviderTransport
from .errors import DispatchError, ErrorKind, GatewayError, QuotaError, ValidationError
from .identity import IdentityResolver, JwtTokenSigner, Principal
from .metrics import invocations_total
from .normalizer import PreparedRequest, RequestNormalizer
from .quota import Denied, InMemoryCounterStore, InMemoryRegisteredQuotaStore, QuotaEnforcer
from .registry import CredentialResolver, ProviderDescriptor, ProviderRegistry
from .search import SearchEnricher, WebSearchEnricher

log = structlog.get_logger()


@dataclass(frozen=True)
class AnonymousSession:
    token: str
    principal: Principal


def _search_query(prepared: PreparedRequest) -> str | None:
    if not isinstance(prepared.payload, ChatPayload):
        return None
    for message in reversed(prepared.payload.messages):
        if message.role == "user":
            return message.content
    return None


class InvocationPipeline:
    """
    Identity -> quota -> registry -> normalizer -> dispatcher -> audit.

    Auth and quota failures stop the request before anything else runs.
    Everything that can be rejected without contacting a provider is checked
    before the outbound call. Every finished or failed invocation emits one
    audit event.
    """

    def __init__(
        self,
        *,
        identity: IdentityResolver,
        quota: QuotaEnforcer,
        registry: ProviderRegistry,
        normalizer: RequestNormalizer,
        dispatcher: Dispatcher,
        audit: AuditEmitter,
        attachments: AttachmentResolver | None = None,
        search: SearchEnricher | None = None,
        accounts: AccountService | None = None,
        analytics: AnalyticsRecorder | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.identity = identity
        self.quota = quota
        self.registry = registry
        self.normalizer = normalizer
        self.dispatcher = dispatcher
        self.audit = audit
        self.attachments = attachments
        self.search = search
        self.accounts = accounts
        self.analytics = analytics
        self._clock: Callable[[], datetime] = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_config(
        cls,
        cfg: GatewayConfig,
        *,
        registry: ProviderRegistry | None = None,
        transport: ProviderTransport | None = None,
        credentials: CredentialResolver | None = None,
    ) -> "InvocationPipeline":
        signer = JwtTokenSigner(cfg.require_signing_key())
        registry = registry or ProviderRegistry.from_config(cfg, credentials)
        analytics = AnalyticsRecorder(max_events=cfg.analytics_max_events)
        audit = AuditEmitter(
            FanoutAuditSink(
                HttpAuditSink(cfg.audit_sink_url, timeout_seconds=cfg.audit_timeout_seconds)
                if cfg.audit_sink_url
                else LoggingAuditSink(),
                analytics,
            )
        )
        identity = IdentityResolver(
            signer,
            anonymous_ttl_seconds=cfg.anonymous_token_ttl_seconds,
            registered_ttl_seconds=cfg.registered_token_ttl_seconds,
        )
        registered_store = InMemoryRegisteredQuotaStore(
            cfg.registered_tier_limits, default_tier=cfg.registered_default_tier
        )
        search: SearchEnricher | None = None
        if cfg.search_enabled:
            search = WebSearchEnricher(
                tavily_api_key=cfg.tavily_api_key,
                tavily_base_url=cfg.tavily_base_url,
                brave_api_key=cfg.brave_api_key,
                brave_base_url=cfg.brave_base_url,
                searxng_enabled=cfg.searxng_enabled,
                searxng_base_url=cfg.searxng_base_url,
                cache_seconds=cfg.search_cache_seconds,
                timeout_seconds=cfg.search_timeout_seconds,
            )
        return cls(
            identity=identity,
            quota=QuotaEnforcer(
                anonymous_store=InMemoryCounterStore(),
                registered_store=registered_store,
                anonymous_limit=cfg.anonymous_daily_limit,
                store_failure_retry_seconds=cfg.quota_store_failure_retry_seconds,
            ),
            registry=registry,
            normalizer=RequestNormalizer(
                audit=audit, system_prompt=cfg.system_prompt, fim_inject_system=cfg.fim_inject_system
            ),
            dispatcher=Dispatcher(
                registry.credential_for,
                transport=transport,
                timeout_seconds=cfg.dispatch_timeout_seconds,
                max_attempts=cfg.dispatch_max_attempts,
                backoff_initial_seconds=cfg.dispatch_backoff_initial_seconds,
                backoff_max_seconds=cfg.dispatch_backoff_max_seconds,
            ),
            audit=audit,
            attachments=HttpAttachmentResolver(
                timeout_seconds=cfg.attachment_timeout_seconds,
                max_bytes=cfg.attachment_max_bytes,
                preview_chars=cfg.attachment_preview_chars,
            ),
            search=search,
            accounts=AccountService(
                InMemoryUserStore(),
                identity,
                tiers=registered_store.tiers,
                default_tier=registered_store.default_tier,
                min_password_length=cfg.min_password_length,
                assign_tier=registered_store.set_tier,
            ),
            analytics=analytics,
        )

    def issue_anonymous(self) -> AnonymousSession:
        token, principal = self.identity.issue_anonymous()
        return AnonymousSession(token=token, principal=principal)

    async def aclose(self) -> None:
        await self.audit.aclose()
        await self.dispatcher.close()
        for collaborator in (self.attachments, self.search):
            close = getattr(collaborator, "close", None)
            if callable(close):
                await close()

    async def _resolve_attachments(self, request: InvocationRequest) -> list[ResolvedAttachment]:
        if not request.attachments:
            return []
        if self.attachments is None:
            raise ValidationError(
                ErrorKind.ATTACHMENT_UNRESOLVABLE, "Attachments are not supported here.", field="attachments"
            )
        resolved: list[ResolvedAttachment] = []
        for ref in request.attachments:
            try:
                text = await self.attachments.resolve_to_text(ref)
            except AttachmentError as e:
                raise ValidationError(ErrorKind.ATTACHMENT_UNRESOLVABLE, str(e), field="attachments") from e
            resolved.append(ResolvedAttachment(name=ref.name, content_type=ref.content_type, text=text))
        return resolved

    async def _search_context(self, request: InvocationRequest, prepared: PreparedRequest) -> str | None:
        if not request.search_enabled or self.search is None:
            return None
        query = _search_query(prepared)
        if not query:
            return None
        try:
            return await self.search.enrich(query)
        except Exception as e:
            log.warning("search_enrichment_failed", error=str(e))
            return None

    def _record(
        self,
        *,
        principal: Principal | None,
        operation: Operation,
        provider: str | None,
        outcome_kind: str,
        started: float,
        request_id: str | None,
        tokens_used: int = 0,
    ) -> None:
        invocations_total.labels(
            provider=provider or "none", operation=operation.value, outcome=outcome_kind
        ).inc()
        self.audit.emit(
            AuditEvent(
                timestamp=self._clock(),
                principal_id=principal.id if principal else None,
                provider_used=provider,
                operation=operation.value,
                outcome_kind=outcome_kind,
                latency_ms=int((time.monotonic() - started) * 1000),
                request_id=request_id,
                tokens_used=tokens_used,
            )
        )

    async def invoke(
        self, credential: str | None, request: InvocationRequest, *, request_id: str | None = None
    ) -> InvocationSuccess:
        started = time.monotonic()
        principal: Principal | None = None
        provider: ProviderDescriptor | None = None
        try:
            principal = self.identity.resolve(credential)
            decision = await self.quota.admit(principal)
            if isinstance(decision, Denied):
                raise QuotaError(decision.retry_after_seconds)

            provider = self.registry.resolve_provider(request.provider_hint, request.operation)
            prepared = self.normalizer.prepare(request)
            attachments = await self._resolve_attachments(request)
            search_context = await self._search_context(request, prepared)
            wire = self.normalizer.normalize(
                prepared,
                provider,
                model=request.model_hint,
                attachments=attachments,
                search_context=search_context,
            )

            outcome = await self.dispatcher.dispatch(wire, provider)
            if isinstance(outcome, InvocationFailure):
                raise DispatchError(
                    outcome.kind,
                    outcome.message,
                    provider=outcome.provider_attempted,
                    provider_status=outcome.provider_status,
                )
        except GatewayError as e:
            self._record(
                principal=principal,
                operation=request.operation,
                provider=provider.code if provider else None,
                outcome_kind=e.kind.value,
                started=started,
                request_id=request_id,
            )
            log.info(
                "invocation_failed",
                principal_id=principal.id if principal else None,
                provider=provider.code if provider else None,
                kind=e.kind.value,
            )
            raise

        self._record(
            principal=principal,
            operation=request.operation,
            provider=outcome.provider_used,
            outcome_kind=outcome.outcome_kind,
            started=started,
            request_id=request_id,
            tokens_used=outcome.tokens_used,
        )
        log.info(
            "invocation_succeeded",
            principal_id=principal.id,
            provider=outcome.provider_used,
            model=outcome.model_used,
            latency_ms=outcome.latency_ms,
        )
        return outcome

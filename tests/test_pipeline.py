import json

import pytest

from modelgate.attachments import AttachmentError
from modelgate.audit import AuditEmitter
from modelgate.config import GatewayConfig
from modelgate.contracts import AttachmentRef, InvocationRequest, Operation
from modelgate.dispatcher import Dispatcher, TransportError, TransportResponse
from modelgate.errors import AuthError, DispatchError, ErrorKind, QuotaError, RoutingError, ValidationError
from modelgate.identity import IdentityResolver, JwtTokenSigner
from modelgate.normalizer import RequestNormalizer
from modelgate.pipeline import InvocationPipeline
from modelgate.quota import InMemoryCounterStore, InMemoryRegisteredQuotaStore, QuotaEnforcer
from modelgate.registry import CredentialResolver, ProviderRegistry


def _ok(content: str = "hello") -> TransportResponse:
    body = {"model": "gpt-4o-mini", "choices": [{"message": {"content": content}}], "usage": {"total_tokens": 3}}
    return TransportResponse(200, json.dumps(body).encode())


class FakeTransport:
    def __init__(self, respond=None):
        self.calls = []
        self._respond = respond or (lambda wire: _ok())

    async def send(self, endpoint, credential, wire, timeout):
        self.calls.append((endpoint, wire))
        result = self._respond(wire)
        if isinstance(result, Exception):
            raise result
        return result


class ListSink:
    def __init__(self):
        self.events = []

    async def record(self, event):
        self.events.append(event)


class FakeAttachments:
    async def resolve_to_text(self, ref):
        if ref.url.startswith("https://broken"):
            raise AttachmentError("unreachable")
        return f"contents of {ref.name}"


class FakeSearch:
    def __init__(self):
        self.queries = []

    async def enrich(self, query):
        self.queries.append(query)
        return "Web search results: sunny"


async def _no_sleep(_seconds):
    return None


def _pipeline(transport=None, *, search=None, attachments=None, limit=5):
    cfg = GatewayConfig(signing_key="k", provider_order=["openai", "mistral"], enable_metrics=False)
    registry = ProviderRegistry.from_config(cfg, CredentialResolver(environ={"OPENAI_API_KEY": "sk-test"}))
    sink = ListSink()
    audit = AuditEmitter(sink)
    pipeline = InvocationPipeline(
        identity=IdentityResolver(JwtTokenSigner("k")),
        quota=QuotaEnforcer(
            anonymous_store=InMemoryCounterStore(),
            registered_store=InMemoryRegisteredQuotaStore({"free": 50}),
            anonymous_limit=limit,
        ),
        registry=registry,
        normalizer=RequestNormalizer(audit=audit),
        dispatcher=Dispatcher(registry.credential_for, transport=transport or FakeTransport(), sleeper=_no_sleep),
        audit=audit,
        attachments=attachments,
        search=search,
    )
    return pipeline, sink


def _chat(**kw) -> InvocationRequest:
    kw.setdefault("options", {"temperature": 0.7})
    return InvocationRequest(
        operation=Operation.CHAT,
        payload={"messages": [{"role": "user", "content": "Hi there"}]},
        **kw,
    )


@pytest.mark.asyncio
async def test_anonymous_quota_of_five_then_denied():
    transport = FakeTransport()
    pipeline, sink = _pipeline(transport)
    session = pipeline.issue_anonymous()

    for _ in range(5):
        outcome = await pipeline.invoke(session.token, _chat(provider_hint="openai"))
        assert outcome.provider_used == "openai"
        assert outcome.content == "hello"

    with pytest.raises(QuotaError) as exc:
        await pipeline.invoke(session.token, _chat(provider_hint="openai"))
    assert exc.value.kind is ErrorKind.QUOTA_DENIED
    assert exc.value.retry_after_seconds > 0
    assert len(transport.calls) == 5

    await pipeline.audit.drain()
    assert [e.outcome_kind for e in sink.events] == ["success"] * 5 + ["quota_denied"]
    assert all(e.principal_id == session.principal.id for e in sink.events)


@pytest.mark.asyncio
async def test_unknown_provider_is_unsupported_regardless_of_principal():
    pipeline, _ = _pipeline()
    session = pipeline.issue_anonymous()
    with pytest.raises(RoutingError) as exc:
        await pipeline.invoke(session.token, _chat(provider_hint="doesnotexist"))
    assert exc.value.kind is ErrorKind.UNSUPPORTED_PROVIDER


@pytest.mark.asyncio
async def test_out_of_range_makes_no_outbound_call():
    transport = FakeTransport()
    pipeline, sink = _pipeline(transport)
    session = pipeline.issue_anonymous()

    with pytest.raises(ValidationError) as exc:
        await pipeline.invoke(session.token, _chat(options={"temperature": 2.5}))
    assert exc.value.kind is ErrorKind.OUT_OF_RANGE
    assert transport.calls == []

    await pipeline.audit.drain()
    assert sink.events[-1].outcome_kind == "out_of_range"
    assert sink.events[-1].provider_used == "openai"


@pytest.mark.asyncio
async def test_auth_failure_stops_pipeline_and_audits_without_principal():
    transport = FakeTransport()
    pipeline, sink = _pipeline(transport)

    with pytest.raises(AuthError) as exc:
        await pipeline.invoke(None, _chat())
    assert exc.value.kind is ErrorKind.AUTH_MISSING
    assert transport.calls == []

    await pipeline.audit.drain()
    assert sink.events[0].principal_id is None
    assert sink.events[0].outcome_kind == "auth_missing"


@pytest.mark.asyncio
async def test_dispatch_failure_is_raised_with_provider_details():
    transport = FakeTransport(lambda wire: TransportResponse(429, b'{"error": {"message": "slow down"}}'))
    pipeline, sink = _pipeline(transport)
    session = pipeline.issue_anonymous()

    with pytest.raises(DispatchError) as exc:
        await pipeline.invoke(session.token, _chat())
    assert exc.value.kind is ErrorKind.PROVIDER_REJECTED
    assert exc.value.provider == "openai"
    assert exc.value.provider_status == 429

    await pipeline.audit.drain()
    assert sink.events[-1].outcome_kind == "provider_rejected"


@pytest.mark.asyncio
async def test_unreachable_provider_is_reported():
    transport = FakeTransport(lambda wire: TransportError("connection refused"))
    pipeline, _ = _pipeline(transport)
    session = pipeline.issue_anonymous()

    with pytest.raises(DispatchError) as exc:
        await pipeline.invoke(session.token, _chat())
    assert exc.value.kind is ErrorKind.UNREACHABLE
    assert len(transport.calls) == 2


@pytest.mark.asyncio
async def test_attachments_are_resolved_into_last_user_message():
    transport = FakeTransport()
    pipeline, _ = _pipeline(transport, attachments=FakeAttachments())
    session = pipeline.issue_anonymous()

    refs = (AttachmentRef(name="notes.txt", url="https://files.test/notes.txt", content_type="text/plain"),)
    await pipeline.invoke(session.token, _chat(attachments=refs))

    _, wire = transport.calls[0]
    content = wire.body["messages"][-1]["content"]
    assert "[File: notes.txt (text/plain)]\ncontents of notes.txt" in content


@pytest.mark.asyncio
async def test_unresolvable_attachment_fails_before_dispatch():
    transport = FakeTransport()
    pipeline, _ = _pipeline(transport, attachments=FakeAttachments())
    session = pipeline.issue_anonymous()

    refs = (AttachmentRef(name="x.txt", url="https://broken.test/x.txt", content_type="text/plain"),)
    with pytest.raises(ValidationError) as exc:
        await pipeline.invoke(session.token, _chat(attachments=refs))
    assert exc.value.kind is ErrorKind.ATTACHMENT_UNRESOLVABLE
    assert transport.calls == []


@pytest.mark.asyncio
async def test_search_context_only_when_requested():
    transport = FakeTransport()
    search = FakeSearch()
    pipeline, _ = _pipeline(transport, search=search)
    session = pipeline.issue_anonymous()

    await pipeline.invoke(session.token, _chat())
    await pipeline.invoke(session.token, _chat(search_enabled=True))

    assert search.queries == ["Hi there"]
    plain, enriched = (wire for _, wire in transport.calls)
    assert [m["role"] for m in plain.body["messages"]] == ["user"]
    assert enriched.body["messages"][0] == {"role": "system", "content": "Web search results: sunny"}


@pytest.mark.asyncio
async def test_fim_without_credentialed_fim_provider_is_unsupported():
    pipeline, _ = _pipeline()
    session = pipeline.issue_anonymous()
    with pytest.raises(RoutingError):
        await pipeline.invoke(
            session.token, InvocationRequest(operation=Operation.FIM, payload={"prompt": "def f("}, options={})
        )


@pytest.mark.asyncio
async def test_failing_search_enricher_degrades_to_no_context():
    class BrokenSearch:
        async def enrich(self, query):
            raise RuntimeError("search backend exploded")

    transport = FakeTransport()
    pipeline, sink = _pipeline(transport, search=BrokenSearch())
    session = pipeline.issue_anonymous()

    outcome = await pipeline.invoke(session.token, _chat(search_enabled=True))

    assert outcome.content == "hello"
    _, wire = transport.calls[0]
    assert [m["role"] for m in wire.body["messages"]] == ["user"]
    await pipeline.audit.drain()
    assert sink.events[-1].outcome_kind == "success"


@pytest.mark.asyncio
async def test_exhausted_quota_is_reported_before_unknown_provider():
    pipeline, sink = _pipeline(limit=1)
    session = pipeline.issue_anonymous()
    await pipeline.invoke(session.token, _chat())

    with pytest.raises(QuotaError):
        await pipeline.invoke(session.token, _chat(provider_hint="doesnotexist"))

    await pipeline.audit.drain()
    assert sink.events[-1].outcome_kind == "quota_denied"
    assert sink.events[-1].provider_used is None


def test_package_root_reexports_the_public_surface():
    import modelgate
    from modelgate import pipeline as pipeline_module

    assert modelgate.InvocationPipeline is pipeline_module.InvocationPipeline
    assert all(hasattr(modelgate, name) for name in modelgate.__all__)

from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server

server_requests_total = Counter(
    "modelgate_server_requests_total",
    "Total HTTP requests handled by server",
    labelnames=["path", "status"],
)

server_request_latency_seconds = Histogram(
    "modelgate_server_request_latency_seconds",
    "Server request latency in seconds",
    buckets=[0.05, 0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60],
    labelnames=["path"],
)

server_errors_total = Counter(
    "modelgate_server_errors_total",
    "Total errors returned by server, by error kind",
    labelnames=["kind"],
)

invocations_total = Counter(
    "modelgate_invocations_total",
    "Completed invocations by provider and outcome kind",
    labelnames=["provider", "operation", "outcome"],
)

dispatch_attempts_total = Counter(
    "modelgate_dispatch_attempts_total",
    "Outbound provider attempts",
    labelnames=["provider", "result"],
)

dispatch_latency_seconds = Histogram(
    "modelgate_dispatch_latency_seconds",
    "Provider round-trip latency including retries",
    buckets=[0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60, 120],
    labelnames=["provider"],
)

quota_decisions_total = Counter(
    "modelgate_quota_decisions_total",
    "Quota admission decisions",
    labelnames=["principal_kind", "decision"],
)

normalizer_dropped_fields_total = Counter(
    "modelgate_normalizer_dropped_fields_total",
    "Unified fields dropped because the target schema has no slot for them",
    labelnames=["provider", "field"],
)

audit_events_total = Counter(
    "modelgate_audit_events_total",
    "Audit events by delivery result",
    labelnames=["result"],
)

enrichment_total = Counter(
    "modelgate_search_enrichment_total",
    "Search enrichment attempts by result",
    labelnames=["result"],
)


account_events_total = Counter(
    "modelgate_account_events_total",
    "Registration and login attempts by result",
    labelnames=["action", "result"],
)

def maybe_start_metrics(*, enable: bool, bind: str, port: int) -> None:
    if not enable:
        return
    start_http_server(port, addr=bind)

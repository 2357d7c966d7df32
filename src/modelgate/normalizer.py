from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace

import pydantic
import structlog

from .adapters import (
    ChatMessage,
    ChatPayload,
    FimPayload,
    GenerationOptions,
    UnifiedPayload,
    WirePayload,
    get_adapter,
)
from .audit import AuditEmitter
from .contracts import InvocationRequest, Operation, ResolvedAttachment
from .errors import ErrorKind, ValidationError
from .registry import ProviderDescriptor

log = structlog.get_logger()

ATTACHMENTS_HEADER = "--- Attached Files ---"
ATTACHMENTS_FOOTER = "--- End of Files ---"


def render_attachment_context(attachments: Sequence[ResolvedAttachment]) -> str:
    """Render resolved attachments as one delimited context block."""
    if not attachments:
        return ""
    blocks = [f"[File: {a.name} ({a.content_type})]\n{a.text}" for a in attachments]
    return f"{ATTACHMENTS_HEADER}\n" + "\n\n".join(blocks) + f"\n{ATTACHMENTS_FOOTER}"


def append_attachment_context(text: str, context: str) -> str:
    return f"{text}\n\n{context}" if context else text


def prepend_attachment_context(text: str, context: str) -> str:
    return f"{context}\n\n{text}" if context else text


def split_attachment_context(text: str) -> tuple[str, str | None]:
    """Inverse of `append_attachment_context`/`prepend_attachment_context`."""
    start = text.find(ATTACHMENTS_HEADER)
    end = text.find(ATTACHMENTS_FOOTER, start)
    if start < 0 or end < 0:
        return text, None
    end += len(ATTACHMENTS_FOOTER)
    context = text[start:end]
    before, after = text[:start], text[end:]
    if after.startswith("\n\n") and not before:
        return after[2:], context
    if before.endswith("\n\n") and not after:
        return before[:-2], context
    return before + after, context


@dataclass(frozen=True)
class PreparedRequest:
    operation: Operation
    payload: UnifiedPayload
    options: GenerationOptions


def _check_range(
    name: str, value: float | int | None, *, low: float, high: float, low_inclusive: bool = True
) -> None:
    if value is None:
        return
    too_low = value < low if low_inclusive else value <= low
    if too_low or value > high:
        bracket = "[" if low_inclusive else "("
        raise ValidationError.out_of_range(name, f"{name} must be in {bracket}{low}, {high}], got {value}.")


def validate_options(options: GenerationOptions) -> None:
    _check_range("temperature", options.temperature, low=0.0, high=2.0)
    if options.max_tokens is not None and options.max_tokens <= 0:
        raise ValidationError.out_of_range("max_tokens", f"max_tokens must be > 0, got {options.max_tokens}.")
    _check_range("top_p", options.top_p, low=0.0, high=1.0, low_inclusive=False)
    _check_range("presence_penalty", options.presence_penalty, low=-2.0, high=2.0)
    _check_range("frequency_penalty", options.frequency_penalty, low=-2.0, high=2.0)
    stop = options.stop
    if stop is not None:
        stops = [stop] if isinstance(stop, str) else stop
        if not stops or any(not s for s in stops):
            raise ValidationError(ErrorKind.INVALID_PAYLOAD, "stop sequences must be non-empty strings.", field="stop")


def _first_error(exc: pydantic.ValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))


class RequestNormalizer:
    def __init__(
        self,
        *,
        audit: AuditEmitter | None = None,
        system_prompt: str | None = None,
        fim_inject_system: bool = False,
    ):
        self._audit = audit
        self._system_prompt = system_prompt
        self._fim_inject_system = fim_inject_system

    def prepare(self, request: InvocationRequest) -> PreparedRequest:
        """Parse and range-check the unified request; no provider involved yet."""
        if not request.payload:
            raise ValidationError(ErrorKind.INVALID_PAYLOAD, "payload must not be empty.", field="payload")
        try:
            options = GenerationOptions(**(request.options or {}))
        except pydantic.ValidationError as e:
            raise ValidationError(ErrorKind.INVALID_PAYLOAD, f"Invalid options: {_first_error(e)}") from e
        validate_options(options)

        model_cls: type[ChatPayload] | type[FimPayload]
        model_cls = ChatPayload if request.operation is Operation.CHAT else FimPayload
        try:
            payload = model_cls(**request.payload)
        except pydantic.ValidationError as e:
            raise ValidationError(ErrorKind.INVALID_PAYLOAD, f"Invalid payload: {_first_error(e)}") from e
        if (
            request.attachments
            and isinstance(payload, ChatPayload)
            and not any(m.role == "user" for m in payload.messages)
        ):
            raise ValidationError(ErrorKind.INVALID_PAYLOAD, "Attachments need a user message.", field="payload")
        return PreparedRequest(operation=request.operation, payload=payload, options=options)

    def _shape_chat(self, payload: ChatPayload, context: str, search_context: str | None) -> ChatPayload:
        messages = list(payload.messages)
        if context:
            user_indexes = [i for i, m in enumerate(messages) if m.role == "user"]
            if not user_indexes:
                raise ValidationError(
                    ErrorKind.INVALID_PAYLOAD, "Attachments need at least one user message.", field="payload"
                )
            idx = user_indexes[-1]
            messages[idx] = ChatMessage(role="user", content=append_attachment_context(messages[idx].content, context))
        if search_context:
            insert_at = next((i for i, m in enumerate(messages) if m.role != "system"), len(messages))
            messages.insert(insert_at, ChatMessage(role="system", content=search_context))
        if self._system_prompt and not any(m.role == "system" for m in payload.messages):
            messages.insert(0, ChatMessage(role="system", content=self._system_prompt))
        return ChatPayload(messages=messages, **payload.extras)

    def _shape_fim(self, payload: FimPayload, context: str, search_context: str | None) -> FimPayload:
        prompt = prepend_attachment_context(payload.prompt, context)
        if search_context:
            log.debug("search_context_skipped_for_fim")
        if self._fim_inject_system and self._system_prompt:
            prompt = f"{self._system_prompt}\n\n{prompt}"
        return FimPayload(prompt=prompt, suffix=payload.suffix, **payload.extras)

    def normalize(
        self,
        request: InvocationRequest | PreparedRequest,
        provider: ProviderDescriptor,
        *,
        model: str | None = None,
        attachments: Sequence[ResolvedAttachment] = (),
        search_context: str | None = None,
    ) -> WirePayload:
        prepared = request if isinstance(request, PreparedRequest) else self.prepare(request)
        hint = request.model_hint if isinstance(request, InvocationRequest) else None
        resolved_model = model or hint or provider.default_model(prepared.operation)
        if not resolved_model:
            raise ValidationError(
                ErrorKind.INVALID_PAYLOAD,
                f"No model given and {provider.code!r} has no default for {prepared.operation.value!r}.",
                field="model_hint",
            )

        context = render_attachment_context(attachments)
        payload: UnifiedPayload
        if isinstance(prepared.payload, ChatPayload):
            payload = self._shape_chat(prepared.payload, context, search_context)
        else:
            payload = self._shape_fim(prepared.payload, context, search_context)

        adapter = get_adapter(provider.schema_adapter)
        wire = adapter.encode(prepared.operation, resolved_model, payload, prepared.options)
        if wire.dropped_fields and self._audit is not None:
            self._audit.note_dropped_fields(provider.code, wire.dropped_fields)
        return replace(wire, headers={**provider.headers, **wire.headers})

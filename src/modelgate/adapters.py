"""Schema adapters between the unified payload and each provider's wire format.

Every adapter is stateless. `encode` builds the outbound body, `decode_request`
is its inverse (used to check that nothing the target supports gets lost) and
`parse_response` maps a provider's success body back to a `ParsedCompletion`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field

from .contracts import Operation
from .errors import ConfigurationError


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    messages: list[ChatMessage] = Field(min_length=1)

    @property
    def extras(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class FimPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    prompt: str
    suffix: str | None = None

    @property
    def extras(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


UnifiedPayload = ChatPayload | FimPayload


class GenerationOptions(BaseModel):
    model_config = ConfigDict(extra="allow")

    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    stop: str | list[str] | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None

    KNOWN: ClassVar[tuple[str, ...]] = (
        "temperature",
        "max_tokens",
        "top_p",
        "stop",
        "presence_penalty",
        "frequency_penalty",
    )

    def known_values(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in self.KNOWN if getattr(self, name) is not None}

    @property
    def extras(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


@dataclass(frozen=True)
class WirePayload:
    operation: Operation
    schema_adapter: str
    model: str
    path: str
    body: dict[str, Any]
    auth_scheme: str = "bearer"
    headers: dict[str, str] = field(default_factory=dict)
    dropped_fields: tuple[str, ...] = ()
    # options the adapter filled in itself, skipped by decode_request
    defaulted_fields: tuple[str, ...] = ()


@dataclass(frozen=True)
class ParsedCompletion:
    content: str
    model: str
    tokens_used: int


class MalformedResponse(Exception):
    """Provider returned a success status with a body we cannot map."""


def _as_dict(body: Any) -> dict[str, Any]:
    if not isinstance(body, dict):
        raise MalformedResponse("Response body is not a JSON object.")
    return body


def _int_or_zero(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


class SchemaAdapter:
    name: ClassVar[str]
    operations: ClassVar[frozenset[Operation]] = frozenset({Operation.CHAT})
    auth_scheme: ClassVar[str] = "bearer"
    # unified option name -> wire key
    option_slots: ClassVar[dict[str, str]] = {}
    fim_option_slots: ClassVar[dict[str, str]] = {}
    # wire keys owned by the adapter itself, never treated as pass-through
    reserved_keys: ClassVar[frozenset[str]] = frozenset({"model", "messages"})

    def supports(self, operation: Operation) -> bool:
        return operation in self.operations

    def _slots(self, operation: Operation) -> dict[str, str]:
        return self.fim_option_slots if operation is Operation.FIM else self.option_slots

    def _map_options(
        self, operation: Operation, options: GenerationOptions
    ) -> tuple[dict[str, Any], tuple[str, ...]]:
        slots = self._slots(operation)
        mapped: dict[str, Any] = {}
        dropped: list[str] = []
        for name, value in options.known_values().items():
            wire_key = slots.get(name)
            if wire_key is None:
                dropped.append(name)
                continue
            mapped[wire_key] = self._encode_option(name, value)
        return mapped, tuple(dropped)

    def _encode_option(self, name: str, value: Any) -> Any:
        return value

    def _unmap_options(
        self, operation: Operation, body: dict[str, Any], defaulted_fields: tuple[str, ...] = ()
    ) -> dict[str, Any]:
        inverse = {wire: name for name, wire in self._slots(operation).items()}
        return {inverse[k]: v for k, v in body.items() if k in inverse and inverse[k] not in defaulted_fields}

    def _extras_from(self, operation: Operation, body: dict[str, Any]) -> dict[str, Any]:
        owned = set(self.reserved_keys) | set(self._slots(operation).values())
        return {k: v for k, v in body.items() if k not in owned}

    @staticmethod
    def _merge(core: dict[str, Any], *extras: dict[str, Any]) -> dict[str, Any]:
        body: dict[str, Any] = {}
        for bag in extras:
            body.update(bag)
        body.update(core)
        return body

    def encode(
        self,
        operation: Operation,
        model: str,
        payload: UnifiedPayload,
        options: GenerationOptions,
    ) -> WirePayload:
        raise NotImplementedError

    def decode_request(
        self, operation: Operation, body: dict[str, Any], *, defaulted_fields: tuple[str, ...] = ()
    ) -> tuple[UnifiedPayload, GenerationOptions]:
        raise NotImplementedError

    def decode_wire(self, wire: WirePayload) -> tuple[UnifiedPayload, GenerationOptions]:
        return self.decode_request(wire.operation, wire.body, defaulted_fields=wire.defaulted_fields)

    def parse_response(self, operation: Operation, body: Any, *, requested_model: str) -> ParsedCompletion:
        raise NotImplementedError


class OpenAIChatAdapter(SchemaAdapter):
    """OpenAI Chat Completions, also spoken by Groq, xAI, OpenRouter and Meta."""

    name = "openai_chat"
    option_slots = {
        "temperature": "temperature",
        "max_tokens": "max_tokens",
        "top_p": "top_p",
        "stop": "stop",
        "presence_penalty": "presence_penalty",
        "frequency_penalty": "frequency_penalty",
    }

    def _encode_chat(self, model: str, payload: ChatPayload, options: GenerationOptions) -> WirePayload:
        mapped, dropped = self._map_options(Operation.CHAT, options)
        core = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in payload.messages],
            **mapped,
        }
        return WirePayload(
            operation=Operation.CHAT,
            schema_adapter=self.name,
            model=model,
            path="/chat/completions",
            body=self._merge(core, payload.extras, options.extras),
            auth_scheme=self.auth_scheme,
            dropped_fields=dropped,
        )

    def encode(self, operation, model, payload, options):
        if operation is not Operation.CHAT or not isinstance(payload, ChatPayload):
            raise ConfigurationError(f"{self.name} cannot encode {operation.value} requests.")
        return self._encode_chat(model, payload, options)

    def decode_request(self, operation, body, *, defaulted_fields=()):
        payload = ChatPayload(messages=body.get("messages", []), **self._extras_from(operation, body))
        return payload, GenerationOptions(**self._unmap_options(operation, body, defaulted_fields))

    def parse_response(self, operation, body, *, requested_model):
        data = _as_dict(body)
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise MalformedResponse("Missing choices in provider response.")
        content = self._choice_text(choices[0])
        usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        tokens = _int_or_zero(usage.get("total_tokens")) or (
            _int_or_zero(usage.get("prompt_tokens")) + _int_or_zero(usage.get("completion_tokens"))
        )
        model = data.get("model") if isinstance(data.get("model"), str) else requested_model
        return ParsedCompletion(content=content, model=model, tokens_used=tokens)

    @staticmethod
    def _choice_text(choice: dict[str, Any]) -> str:
        message = choice.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return message["content"]
        if isinstance(choice.get("text"), str):
            return choice["text"]
        raise MalformedResponse("Missing message content in provider response.")


class MistralAdapter(OpenAIChatAdapter):
    """Mistral chat (OpenAI shaped) plus Codestral fill-in-the-middle."""

    name = "mistral"
    operations = frozenset({Operation.CHAT, Operation.FIM})
    fim_option_slots = {
        "temperature": "temperature",
        "max_tokens": "max_tokens",
        "top_p": "top_p",
        "stop": "stop",
    }
    reserved_keys = frozenset({"model", "messages", "prompt", "suffix"})

    def encode(self, operation, model, payload, options):
        if operation is Operation.CHAT and isinstance(payload, ChatPayload):
            return self._encode_chat(model, payload, options)
        if operation is not Operation.FIM or not isinstance(payload, FimPayload):
            raise ConfigurationError(f"{self.name} cannot encode {operation.value} requests.")
        mapped, dropped = self._map_options(Operation.FIM, options)
        core: dict[str, Any] = {"model": model, "prompt": payload.prompt, **mapped}
        if payload.suffix is not None:
            core["suffix"] = payload.suffix
        return WirePayload(
            operation=Operation.FIM,
            schema_adapter=self.name,
            model=model,
            path="/fim/completions",
            body=self._merge(core, payload.extras, options.extras),
            auth_scheme=self.auth_scheme,
            dropped_fields=dropped,
        )

    def decode_request(self, operation, body, *, defaulted_fields=()):
        if operation is Operation.CHAT:
            return super().decode_request(operation, body, defaulted_fields=defaulted_fields)
        payload = FimPayload(
            prompt=body.get("prompt", ""),
            suffix=body.get("suffix"),
            **self._extras_from(operation, body),
        )
        return payload, GenerationOptions(**self._unmap_options(operation, body, defaulted_fields))


class AnthropicMessagesAdapter(SchemaAdapter):
    name = "anthropic_messages"
    auth_scheme = "x-api-key"
    default_max_tokens = 1024
    # reported when system messages are merged into the top-level `system` field
    SYSTEM_POSITION = "system_position"
    option_slots = {
        "temperature": "temperature",
        "max_tokens": "max_tokens",
        "top_p": "top_p",
        "stop": "stop_sequences",
    }
    reserved_keys = frozenset({"model", "messages", "system"})

    def _encode_option(self, name, value):
        if name == "stop" and isinstance(value, str):
            return [value]
        return value

    def encode(self, operation, model, payload, options):
        if operation is not Operation.CHAT or not isinstance(payload, ChatPayload):
            raise ConfigurationError(f"{self.name} cannot encode {operation.value} requests.")
        mapped, dropped = self._map_options(operation, options)
        system_at = [i for i, m in enumerate(payload.messages) if m.role == "system"]
        system_parts = [payload.messages[i].content for i in system_at if payload.messages[i].content]
        # only a single non-empty leading system message survives decode unchanged
        if system_at and (system_at != [0] or len(system_parts) != 1):
            dropped += (self.SYSTEM_POSITION,)
        defaulted: tuple[str, ...] = ()
        if "max_tokens" not in mapped:
            mapped["max_tokens"] = self.default_max_tokens
            defaulted = ("max_tokens",)
        core: dict[str, Any] = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in payload.messages if m.role != "system"],
            **mapped,
        }
        if system_parts:
            core["system"] = "\n\n".join(system_parts)
        return WirePayload(
            operation=operation,
            schema_adapter=self.name,
            model=model,
            path="/messages",
            body=self._merge(core, payload.extras, options.extras),
            auth_scheme=self.auth_scheme,
            dropped_fields=dropped,
            defaulted_fields=defaulted,
        )

    def decode_request(self, operation, body, *, defaulted_fields=()):
        messages: list[dict[str, Any]] = []
        if isinstance(body.get("system"), str) and body["system"]:
            messages.append({"role": "system", "content": body["system"]})
        messages.extend(body.get("messages", []))
        payload = ChatPayload(messages=messages, **self._extras_from(operation, body))
        return payload, GenerationOptions(**self._unmap_options(operation, body, defaulted_fields))

    def parse_response(self, operation, body, *, requested_model):
        data = _as_dict(body)
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise MalformedResponse("Missing content blocks in provider response.")
        texts = [
            b["text"]
            for b in blocks
            if isinstance(b, dict) and b.get("type") == "text" and isinstance(b.get("text"), str)
        ]
        if not texts:
            raise MalformedResponse("No text content block in provider response.")
        usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        tokens = _int_or_zero(usage.get("input_tokens")) + _int_or_zero(usage.get("output_tokens"))
        model = data.get("model") if isinstance(data.get("model"), str) else requested_model
        return ParsedCompletion(content="".join(texts), model=model, tokens_used=tokens)


class CloudflareWorkersAdapter(SchemaAdapter):
    """Workers AI `ai/run/<model>`: the model lives in the path, not the body."""

    name = "cloudflare_workers_ai"
    option_slots = {
        "temperature": "temperature",
        "max_tokens": "max_tokens",
        "top_p": "top_p",
        "presence_penalty": "presence_penalty",
        "frequency_penalty": "frequency_penalty",
    }
    reserved_keys = frozenset({"messages"})

    def encode(self, operation, model, payload, options):
        if operation is not Operation.CHAT or not isinstance(payload, ChatPayload):
            raise ConfigurationError(f"{self.name} cannot encode {operation.value} requests.")
        mapped, dropped = self._map_options(operation, options)
        core = {"messages": [{"role": m.role, "content": m.content} for m in payload.messages], **mapped}
        return WirePayload(
            operation=operation,
            schema_adapter=self.name,
            model=model,
            path=f"/{model.lstrip('/')}",
            body=self._merge(core, payload.extras, options.extras),
            auth_scheme=self.auth_scheme,
            dropped_fields=dropped,
        )

    def decode_request(self, operation, body, *, defaulted_fields=()):
        payload = ChatPayload(messages=body.get("messages", []), **self._extras_from(operation, body))
        return payload, GenerationOptions(**self._unmap_options(operation, body, defaulted_fields))

    def parse_response(self, operation, body, *, requested_model):
        data = _as_dict(body)
        if data.get("success") is False:
            raise MalformedResponse("Provider reported success=false with a 2xx status.")
        result = data.get("result")
        if not isinstance(result, dict) or not isinstance(result.get("response"), str):
            raise MalformedResponse("Missing result.response in provider response.")
        usage = result.get("usage") if isinstance(result.get("usage"), dict) else {}
        return ParsedCompletion(
            content=result["response"],
            model=requested_model,
            tokens_used=_int_or_zero(usage.get("total_tokens")),
        )


ADAPTERS: dict[str, SchemaAdapter] = {
    adapter.name: adapter
    for adapter in (OpenAIChatAdapter(), MistralAdapter(), AnthropicMessagesAdapter(), CloudflareWorkersAdapter())
}


def get_adapter(name: str) -> SchemaAdapter:
    try:
        return ADAPTERS[name]
    except KeyError as e:
        raise ConfigurationError(f"Unknown schema adapter: {name!r}") from e

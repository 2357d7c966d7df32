import pytest

from modelgate.adapters import (
    ChatPayload,
    FimPayload,
    GenerationOptions,
    MalformedResponse,
    get_adapter,
)
from modelgate.contracts import Operation
from modelgate.errors import ConfigurationError


def _chat(**extras) -> ChatPayload:
    return ChatPayload(
        messages=[
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello"},
            {"role": "user", "content": "How are you?"},
        ],
        **extras,
    )


def test_openai_encode_maps_every_option_and_keeps_extras():
    options = GenerationOptions(
        temperature=0.2, max_tokens=10, top_p=0.9, stop=["\n\n"], presence_penalty=1.0, frequency_penalty=-0.25
    )
    wire = get_adapter("openai_chat").encode(Operation.CHAT, "gpt-4o-mini", _chat(user="u-1"), options)

    assert wire.path == "/chat/completions"
    assert wire.auth_scheme == "bearer"
    assert wire.dropped_fields == ()
    assert wire.body["model"] == "gpt-4o-mini"
    assert wire.body["messages"][0] == {"role": "system", "content": "Be brief."}
    assert wire.body["temperature"] == 0.2
    assert wire.body["frequency_penalty"] == -0.25
    assert wire.body["user"] == "u-1"


def test_extras_cannot_override_core_keys():
    wire = get_adapter("openai_chat").encode(
        Operation.CHAT, "gpt-4o-mini", _chat(model="sneaky"), GenerationOptions(seed=7)
    )
    assert wire.body["model"] == "gpt-4o-mini"
    assert wire.body["seed"] == 7


@pytest.mark.parametrize("adapter_name", ["openai_chat", "mistral", "anthropic_messages", "cloudflare_workers_ai"])
def test_chat_decode_inverts_encode_on_supported_fields(adapter_name):
    adapter = get_adapter(adapter_name)
    payload = _chat(safe_prompt=True)
    options = GenerationOptions(temperature=0.7, max_tokens=64, top_p=0.5)

    wire = adapter.encode(Operation.CHAT, "m-1", payload, options)
    decoded_payload, decoded_options = adapter.decode_request(Operation.CHAT, wire.body)

    assert decoded_payload == payload
    assert decoded_options.known_values() == options.known_values()


def test_mistral_fim_roundtrip_and_dropped_penalties():
    adapter = get_adapter("mistral")
    payload = FimPayload(prompt="def add(a, b):", suffix="\n\nprint(add(1, 2))")
    options = GenerationOptions(temperature=0.1, max_tokens=32, stop="\n\n", presence_penalty=0.5)

    wire = adapter.encode(Operation.FIM, "codestral-latest", payload, options)
    assert wire.path == "/fim/completions"
    assert wire.body["suffix"] == "\n\nprint(add(1, 2))"
    assert "presence_penalty" not in wire.body
    assert wire.dropped_fields == ("presence_penalty",)

    decoded_payload, decoded_options = adapter.decode_request(Operation.FIM, wire.body)
    assert decoded_payload == payload
    assert decoded_options.known_values() == {"temperature": 0.1, "max_tokens": 32, "stop": "\n\n"}


def test_anthropic_moves_system_and_renames_stop():
    wire = get_adapter("anthropic_messages").encode(
        Operation.CHAT,
        "claude-3-5-sonnet-20241022",
        _chat(),
        GenerationOptions(stop="END", frequency_penalty=0.3),
    )
    assert wire.auth_scheme == "x-api-key"
    assert wire.body["system"] == "Be brief."
    assert all(m["role"] != "system" for m in wire.body["messages"])
    assert wire.body["stop_sequences"] == ["END"]
    assert wire.body["max_tokens"] == 1024
    assert wire.dropped_fields == ("frequency_penalty",)


def test_cloudflare_puts_model_in_path():
    wire = get_adapter("cloudflare_workers_ai").encode(
        Operation.CHAT, "@cf/meta/llama-3.1-8b-instruct", _chat(), GenerationOptions(stop=["x"])
    )
    assert wire.path == "/@cf/meta/llama-3.1-8b-instruct"
    assert "model" not in wire.body
    assert wire.dropped_fields == ("stop",)


def test_chat_only_adapter_refuses_fim():
    with pytest.raises(ConfigurationError):
        get_adapter("openai_chat").encode(Operation.FIM, "m", FimPayload(prompt="x"), GenerationOptions())


def test_unknown_adapter_is_configuration_error():
    with pytest.raises(ConfigurationError):
        get_adapter("cohere_generate")


def test_openai_parse_response():
    parsed = get_adapter("openai_chat").parse_response(
        Operation.CHAT,
        {
            "model": "gpt-4o-mini-2024",
            "choices": [{"message": {"role": "assistant", "content": "hi there"}}],
            "usage": {"prompt_tokens": 5, "completion_tokens": 3},
        },
        requested_model="gpt-4o-mini",
    )
    assert parsed.content == "hi there"
    assert parsed.model == "gpt-4o-mini-2024"
    assert parsed.tokens_used == 8


def test_mistral_fim_parse_response_uses_choice_text():
    parsed = get_adapter("mistral").parse_response(
        Operation.FIM, {"choices": [{"text": "return a + b"}]}, requested_model="codestral-latest"
    )
    assert parsed.content == "return a + b"
    assert parsed.model == "codestral-latest"
    assert parsed.tokens_used == 0


def test_anthropic_parse_response_joins_text_blocks():
    parsed = get_adapter("anthropic_messages").parse_response(
        Operation.CHAT,
        {
            "content": [{"type": "text", "text": "a"}, {"type": "tool_use", "id": "t"}, {"type": "text", "text": "b"}],
            "usage": {"input_tokens": 4, "output_tokens": 6},
        },
        requested_model="claude",
    )
    assert parsed.content == "ab"
    assert parsed.tokens_used == 10


def test_cloudflare_parse_response():
    parsed = get_adapter("cloudflare_workers_ai").parse_response(
        Operation.CHAT, {"success": True, "result": {"response": "ok"}}, requested_model="@cf/x"
    )
    assert parsed.content == "ok"
    assert parsed.model == "@cf/x"


@pytest.mark.parametrize(
    "adapter_name,body",
    [
        ("openai_chat", {"choices": []}),
        ("openai_chat", {"choices": [{"message": {"content": None}}]}),
        ("openai_chat", ["not", "an", "object"]),
        ("anthropic_messages", {"content": [{"type": "tool_use"}]}),
        ("cloudflare_workers_ai", {"success": False, "errors": [{"message": "boom"}]}),
    ],
)
def test_unmappable_bodies_raise_malformed_response(adapter_name, body):
    with pytest.raises(MalformedResponse):
        get_adapter(adapter_name).parse_response(Operation.CHAT, body, requested_model="m")


@pytest.mark.parametrize("adapter_name", ["openai_chat", "mistral", "anthropic_messages", "cloudflare_workers_ai"])
@pytest.mark.parametrize(
    "options",
    [GenerationOptions(temperature=0.5), GenerationOptions(), GenerationOptions(top_p=0.3, max_tokens=16)],
)
def test_decode_wire_inverts_encode_without_injected_defaults(adapter_name, options):
    adapter = get_adapter(adapter_name)
    payload = _chat()

    wire = adapter.encode(Operation.CHAT, "m-1", payload, options)
    decoded_payload, decoded_options = adapter.decode_wire(wire)

    assert decoded_payload == payload
    assert decoded_options.known_values() == options.known_values()


def test_anthropic_records_injected_max_tokens():
    adapter = get_adapter("anthropic_messages")
    wire = adapter.encode(Operation.CHAT, "claude", _chat(), GenerationOptions(temperature=0.5))

    assert wire.body["max_tokens"] == 1024
    assert wire.defaulted_fields == ("max_tokens",)
    assert adapter.decode_wire(wire)[1].known_values() == {"temperature": 0.5}

    explicit = adapter.encode(Operation.CHAT, "claude", _chat(), GenerationOptions(max_tokens=1024))
    assert explicit.defaulted_fields == ()
    assert adapter.decode_wire(explicit)[1].known_values() == {"max_tokens": 1024}


@pytest.mark.parametrize(
    "roles",
    [
        ["user", "system", "user"],
        ["system", "system", "user"],
        ["system", "user", "assistant", "system", "user"],
    ],
)
def test_anthropic_reports_repositioned_system_messages(roles):
    payload = ChatPayload(messages=[{"role": r, "content": f"m{i}"} for i, r in enumerate(roles)])
    wire = get_adapter("anthropic_messages").encode(Operation.CHAT, "claude", payload, GenerationOptions())

    assert "system_position" in wire.dropped_fields
    assert all(m["role"] != "system" for m in wire.body["messages"])


def test_anthropic_single_leading_system_is_not_reported():
    wire = get_adapter("anthropic_messages").encode(Operation.CHAT, "claude", _chat(), GenerationOptions())
    assert wire.dropped_fields == ()

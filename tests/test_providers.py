import json

import pytest

from amadeus.ai.claude_client import ClaudeClient
from amadeus.ai.errors import ErrorKind, ProviderError
from amadeus.ai.gemini_client import GeminiClient, VertexClient
from amadeus.ai.openai_client import GroqClient, OpenAIClient
from amadeus.ai.provider_base import Message, ProviderKind, ProviderSelection, Role
from amadeus.ai.providers import create_provider_client
from amadeus.core.config import AIConfig

from conftest import chat_delta, sse

HISTORY = [
    Message(Role.SYSTEM, "You are Kurisu."),
    Message(Role.USER, "Hello"),
    Message(Role.ASSISTANT, "[SMILE] Hi."),
    Message(Role.USER, "How are you?"),
]


def selection(kind, model="", **kwargs):
    return ProviderSelection(provider=kind, credential="secret", model=model, **kwargs)


def test_openai_request_shape():
    request = OpenAIClient(max_tokens=256).build_request(HISTORY, selection(ProviderKind.OPENAI))
    assert request.url == "https://api.openai.com/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer secret"
    assert request.body["model"] == "gpt-4o"
    assert request.body["max_tokens"] == 256
    assert request.body["messages"][0] == {"role": "system", "content": "You are Kurisu."}
    assert "stream" not in request.body


def test_openai_ignores_other_vendors_models():
    client = OpenAIClient()
    assert client.resolve_model("gemini-2.0-flash") == "gpt-4o"
    assert client.resolve_model("gpt-4o-mini") == "gpt-4o-mini"


def test_openai_batch_decode():
    body = json.dumps({"choices": [{"message": {"role": "assistant", "content": "[SMILE] Yes."}}]})
    assert OpenAIClient().decode_batch(body) == "[SMILE] Yes."


def test_batch_without_text_is_decode_failure():
    with pytest.raises(ProviderError) as info:
        OpenAIClient().decode_batch('{"choices":[]}')
    assert info.value.kind == ErrorKind.DECODE_FAILURE


def test_groq_options():
    client = GroqClient(max_tokens=100, temperature=0.85, top_p=0.9)
    request = client.build_request(HISTORY, selection(ProviderKind.GROQ, "qwen/qwen3-32b"), stream=True)
    assert request.body["stream"] is True
    assert request.body["top_p"] == 0.9
    assert request.body["reasoning_format"] == "hidden"
    assert request.url.startswith("https://api.groq.com/")


def test_groq_web_search_uses_compound_model():
    client = GroqClient()
    request = client.build_request(HISTORY, selection(ProviderKind.GROQ, "llama-3.3-70b", web_search=True))
    assert request.body["model"] == "groq/compound"
    assert "top_p" not in request.body


def test_groq_unknown_model_falls_back():
    assert GroqClient().resolve_model("gpt-4o") == "qwen/qwen3-32b"


def test_claude_moves_system_prompt():
    request = ClaudeClient().build_request(HISTORY, selection(ProviderKind.CLAUDE))
    assert request.body["system"] == "You are Kurisu."
    assert [m["role"] for m in request.body["messages"]] == ["user", "assistant", "user"]
    assert request.headers["x-api-key"] == "secret"
    assert request.headers["anthropic-version"] == "2023-06-01"


def test_claude_stream_reads_only_text_deltas():
    client = ClaudeClient()
    data = sse(
        {"type": "message_start", "message": {"content": []}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}},
        {"type": "ping"},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "!"}},
    )
    text, rest = client.decode_stream_chunk(b"", data)
    assert text == "Hi!"
    assert rest == b""


def test_claude_overloaded_event_raises():
    client = ClaudeClient()
    data = sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
    with pytest.raises(ProviderError) as info:
        client.decode_stream_chunk(b"", data)
    assert info.value.status == 529
    assert info.value.kind == ErrorKind.SERVER_FAULT


def test_gemini_body_and_endpoint():
    client = GeminiClient(max_tokens=512)
    request = client.build_request(HISTORY, selection(ProviderKind.GEMINI, web_search=True))
    body = request.body
    assert body["system_instruction"] == {"parts": [{"text": "You are Kurisu."}]}
    assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
    assert body["generationConfig"]["maxOutputTokens"] == 512
    assert body["tools"] == [{"googleSearch": {}}]
    assert request.url.endswith("/gemini-2.0-flash:generateContent")
    assert request.headers["x-goog-api-key"] == "secret"


def test_gemini_joins_parts_and_skips_grounding():
    body = json.dumps({
        "candidates": [{
            "content": {"parts": [{"text": "Part one. "}, {"text": "Part two."}]},
            "groundingMetadata": {"groundingSupports": [{"segment": {"text": "Part one."}}]},
        }]
    })
    assert GeminiClient().decode_batch(body) == "Part one. Part two."


def test_vertex_endpoint_per_region():
    client = VertexClient(regions=["us-central1", "global"], project_id="proj")
    sel = selection(ProviderKind.VERTEX, "gemini-2.0-flash", endpoint_region="us-central1",
                    project_id="proj")

    streamed = client.build_request(HISTORY, sel, stream=True, region="us-west1")
    assert streamed.url == ("https://us-west1-aiplatform.googleapis.com/v1/projects/proj/locations/"
                            "us-west1/publishers/google/models/gemini-2.0-flash:"
                            "streamGenerateContent?alt=sse")
    assert streamed.headers["Authorization"] == "Bearer secret"

    global_request = client.build_request(HISTORY, sel, region="global")
    assert global_request.url.startswith("https://aiplatform.googleapis.com/v1/projects/proj/locations/global/")
    assert client.multi_region


def test_vertex_requires_gemini_model():
    assert VertexClient().resolve_model("claude-3") == "gemini-2.0-flash"


def test_stream_chunk_keeps_partial_line():
    client = GroqClient()
    data = sse(chat_delta("Hello"), chat_delta(" world"))
    cut = len(data) - 10

    first, buffer = client.decode_stream_chunk(b"", data[:cut])
    assert first == "Hello"
    second, buffer = client.decode_stream_chunk(buffer, data[cut:])
    assert second == " world"
    assert buffer == b""


def test_multibyte_character_split_between_chunks():
    client = GroqClient()
    data = sse(chat_delta("こんにちは"))
    # Cut inside the three-byte encoding of the first character
    index = data.index("こ".encode("utf-8")) + 1

    first, buffer = client.decode_stream_chunk(b"", data[:index])
    second, buffer = client.decode_stream_chunk(buffer, data[index:])
    assert first == ""
    assert second == "こんにちは"


def test_done_sentinel_and_comments_are_ignored():
    client = OpenAIClient()
    data = b": keep-alive\n\nevent: message\n" + sse(chat_delta("ok"), "[DONE]")
    text, _ = client.decode_stream_chunk(b"", data)
    assert text == "ok"


def test_role_only_frame_has_no_text():
    client = OpenAIClient()
    text, _ = client.decode_stream_chunk(b"", sse({"choices": [{"delta": {"role": "assistant"}}]}))
    assert text == ""


def test_flush_stream_decodes_last_line_without_newline():
    client = GroqClient()
    tail = b'data: {"choices":[{"delta":{"content":"end"}}]}'
    assert client.flush_stream(tail) == "end"
    assert client.flush_stream(b"  ") == ""


def test_registry_builds_every_provider():
    config = AIConfig(vertex_project="proj")
    for kind in ProviderKind:
        client = create_provider_client(kind, config)
        assert client.kind == kind


def test_unregistered_provider():
    with pytest.raises(ProviderError) as info:
        create_provider_client(ProviderKind.CLAUDE, AIConfig(), registry={})
    assert info.value.kind == ErrorKind.UNKNOWN_PROVIDER


def test_provider_index_out_of_range_defaults_to_first():
    assert ProviderKind.from_index(9) == ProviderKind.OPENAI
    assert ProviderKind.from_index(3) == ProviderKind.GROQ

"""Unit tests for provider adapters using httpx mock transports."""

import asyncio
import json

import httpx
import pytest

from cellforge.core.cancellation import CancellationToken
from cellforge.core.exceptions import (
    AuthenticationFailedError,
    GenerationCancelledError,
    InvalidModelError,
    InvalidResponseError,
    ProviderTimeoutError,
    ProviderTransportError,
    RateLimitedError,
)
from cellforge.services.generation.types import ModelConfig
from cellforge.services.inference.base import classify_provider_error, classify_status
from cellforge.services.inference.ollama import OllamaAdapter, is_ollama_endpoint, normalize_ollama_url
from cellforge.services.inference.openai_compatible import OpenAICompatibleAdapter, parse_sse_delta
from cellforge.services.inference.registry import ProviderRegistry, get_provider_adapter, uses_ollama
from cellforge.services.websearch import SerperSearchClient

pytestmark = pytest.mark.unit

MODEL = ModelConfig(model_name="meta-llama/Llama-3.1-8B-Instruct", model_provider="novita")


def _sse(*chunks: str) -> bytes:
    lines = [f"data: {json.dumps({'choices': [{'delta': {'content': c}}]})}" for c in chunks]
    lines.append("data: [DONE]")
    return ("\n\n".join(lines) + "\n\n").encode()


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestClassification:
    @pytest.mark.parametrize(
        "status,expected",
        [
            (408, ProviderTimeoutError),
            (504, ProviderTimeoutError),
            (429, RateLimitedError),
            (401, AuthenticationFailedError),
            (403, AuthenticationFailedError),
            (404, InvalidModelError),
            (422, InvalidModelError),
            (500, ProviderTransportError),
            (503, ProviderTransportError),
            (302, InvalidResponseError),
        ],
    )
    def test_status_codes(self, status, expected):
        response = httpx.Response(status, json={"error": {"message": "nope"}})
        assert isinstance(classify_status(response), expected)

    def test_provider_message_is_kept(self):
        error = classify_status(httpx.Response(401, json={"error": "Invalid credentials in Authorization header"}))
        assert "Invalid credentials" in error.detail

    def test_transport_and_timeout_exceptions(self):
        request = httpx.Request("POST", "http://x")
        assert isinstance(classify_provider_error(httpx.ReadTimeout("slow", request=request), 5), ProviderTimeoutError)
        assert isinstance(classify_provider_error(httpx.ConnectError("down", request=request)), ProviderTransportError)
        assert isinstance(classify_provider_error(KeyError("choices")), InvalidResponseError)
        assert isinstance(classify_provider_error(AttributeError("get")), InvalidResponseError)

    def test_transient_errors_are_retryable(self):
        assert RateLimitedError().retryable
        assert not AuthenticationFailedError().retryable


class TestOpenAICompatible:
    @pytest.mark.asyncio
    async def test_complete_sends_router_model_id_and_token(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"choices": [{"message": {"content": "Hello"}}]})

        adapter = OpenAICompatibleAdapter(base_url="https://router.example/v1", client=_client(handler), default_token="hf_x")
        model = ModelConfig(model_name=MODEL.model_name, model_provider="novita", access_token="user-token")

        assert await adapter.complete("Hi", model, timeout=5) == "Hello"
        assert seen["url"] == "https://router.example/v1/chat/completions"
        assert seen["auth"] == "Bearer user-token"
        assert seen["body"]["model"] == f"{MODEL.model_name}:novita"
        assert seen["body"]["stream"] is False

    @pytest.mark.asyncio
    async def test_custom_endpoint_uses_plain_model_name(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            seen["bill_to"] = request.headers.get("x-hf-bill-to")
            return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

        adapter = OpenAICompatibleAdapter(client=_client(handler), default_token="", bill_to="org")
        model = ModelConfig(model_name="local", endpoint_url="http://localhost:8000")

        await adapter.complete("Hi", model, timeout=5)
        assert seen["url"] == "http://localhost:8000/v1/chat/completions"
        assert seen["body"]["model"] == "local"
        assert seen["bill_to"] is None

    @pytest.mark.asyncio
    async def test_stream_yields_deltas(self):
        adapter = OpenAICompatibleAdapter(
            base_url="https://router.example/v1",
            client=_client(lambda r: httpx.Response(200, content=_sse("Hel", "lo", " world"))),
        )
        deltas = [d async for d in adapter.complete_stream("Hi", MODEL, timeout=5)]
        assert deltas == ["Hel", "lo", " world"]

    @pytest.mark.asyncio
    async def test_error_status_is_classified(self):
        adapter = OpenAICompatibleAdapter(
            client=_client(lambda r: httpx.Response(429, json={"error": "slow down"}))
        )
        with pytest.raises(RateLimitedError):
            await adapter.complete("Hi", MODEL, timeout=5)

    @pytest.mark.asyncio
    async def test_stream_error_status_is_classified(self):
        adapter = OpenAICompatibleAdapter(
            client=_client(lambda r: httpx.Response(401, json={"error": "bad token"}))
        )
        with pytest.raises(AuthenticationFailedError):
            [d async for d in adapter.complete_stream("Hi", MODEL, timeout=5)]

    @pytest.mark.asyncio
    async def test_malformed_body_is_invalid_response(self):
        adapter = OpenAICompatibleAdapter(client=_client(lambda r: httpx.Response(200, json={"choices": []})))
        with pytest.raises(InvalidResponseError):
            await adapter.complete("Hi", MODEL, timeout=5)

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        adapter = OpenAICompatibleAdapter(client=_client(handler))
        with pytest.raises(ProviderTransportError):
            await adapter.complete("Hi", MODEL, timeout=5)

    @pytest.mark.asyncio
    async def test_text_to_image_returns_bytes(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            return httpx.Response(200, content=b"\x89PNG...", headers={"content-type": "image/png"})

        adapter = OpenAICompatibleAdapter(client=_client(handler), image_base_url="https://images.example/models")
        image = await adapter.text_to_image("a cat", ModelConfig(model_name="org/sdxl"), timeout=5)

        assert image == b"\x89PNG..."
        assert seen["url"] == "https://images.example/models/org/sdxl"

    @pytest.mark.asyncio
    async def test_text_to_image_rejects_json(self):
        adapter = OpenAICompatibleAdapter(
            client=_client(lambda r: httpx.Response(200, json={"estimated_time": 20}))
        )
        with pytest.raises(InvalidResponseError):
            await adapter.text_to_image("a cat", ModelConfig(model_name="org/sdxl"), timeout=5)

    @pytest.mark.asyncio
    async def test_cancelled_token_aborts_call(self):
        async def handler(request):
            await asyncio.sleep(5)
            return httpx.Response(200, json={"choices": [{"message": {"content": "late"}}]})

        adapter = OpenAICompatibleAdapter(client=_client(handler))
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.05, token.cancel)

        with pytest.raises(GenerationCancelledError):
            await adapter.complete("Hi", MODEL, timeout=30, cancel_token=token)


class TestParseSSE:
    def test_delta_line(self):
        assert parse_sse_delta('data: {"choices": [{"delta": {"content": "x"}}]}') == "x"

    def test_non_data_and_empty_lines(self):
        assert parse_sse_delta("") is None
        assert parse_sse_delta(": keep-alive") is None
        assert parse_sse_delta('data: {"choices": [{"delta": {}}]}') is None

    def test_error_chunk_raises(self):
        with pytest.raises(InvalidResponseError):
            parse_sse_delta('data: {"error": "model overloaded"}')

    @pytest.mark.parametrize(
        "line",
        [
            'data: {"choices": ["oops"]}',
            'data: {"choices": {"delta": "x"}}',
            'data: {"choices": [{"delta": "text"}]}',
            "data: [1, 2]",
            'data: "just a string"',
        ],
    )
    def test_wrong_shape_chunk_is_invalid_response(self, line):
        with pytest.raises(InvalidResponseError):
            parse_sse_delta(line)

    @pytest.mark.asyncio
    async def test_wrong_shape_stream_is_invalid_response(self):
        body = b'data: {"choices": ["oops"]}\n\ndata: [DONE]\n\n'
        adapter = OpenAICompatibleAdapter(client=_client(lambda r: httpx.Response(200, content=body)))
        with pytest.raises(InvalidResponseError):
            [d async for d in adapter.complete_stream("Hi", MODEL, timeout=5)]

    @pytest.mark.asyncio
    async def test_wrong_shape_completion_is_invalid_response(self):
        adapter = OpenAICompatibleAdapter(
            client=_client(lambda r: httpx.Response(200, json={"choices": ["oops"]}))
        )
        with pytest.raises(InvalidResponseError):
            await adapter.complete("Hi", MODEL, timeout=5)


class TestOllama:
    def test_endpoint_detection_and_normalization(self):
        assert is_ollama_endpoint("http://localhost:11434")
        assert not is_ollama_endpoint("https://api.example.com")
        assert normalize_ollama_url("http://localhost:11434/api/generate") == "http://localhost:11434"
        assert uses_ollama(ModelConfig(model_name="llama3.2", model_provider="ollama"))

    @pytest.mark.asyncio
    async def test_complete(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            return httpx.Response(200, json={"message": {"content": "hi there"}, "done": True})

        adapter = OllamaAdapter(base_url="http://localhost:11434/api/chat", client=_client(handler))
        model = ModelConfig(model_name="llama3.2", model_provider="ollama")

        assert await adapter.complete("Hi", model, timeout=5) == "hi there"
        assert seen["url"] == "http://localhost:11434/api/chat"

    @pytest.mark.asyncio
    async def test_stream_ndjson_skips_invalid_lines(self):
        body = "\n".join(
            [
                json.dumps({"message": {"content": "Hel"}, "done": False}),
                "not json",
                json.dumps({"message": {"content": "lo"}, "done": False}),
                json.dumps({"message": {"content": ""}, "done": True}),
            ]
        )
        adapter = OllamaAdapter(base_url="http://localhost:11434", client=_client(lambda r: httpx.Response(200, text=body)))
        model = ModelConfig(model_name="llama3.2", model_provider="ollama")

        assert [d async for d in adapter.complete_stream("Hi", model, timeout=5)] == ["Hel", "lo"]

    @pytest.mark.asyncio
    async def test_string_message_is_invalid_response(self):
        adapter = OllamaAdapter(
            base_url="http://localhost:11434",
            client=_client(lambda r: httpx.Response(200, json={"message": "hello", "done": True})),
        )
        with pytest.raises(InvalidResponseError):
            await adapter.complete("Hi", ModelConfig(model_name="llama3.2"), timeout=5)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("line", ["[1]", '"text"', json.dumps({"message": "hello"})])
    async def test_non_object_stream_line_is_invalid_response(self, line):
        adapter = OllamaAdapter(base_url="http://localhost:11434", client=_client(lambda r: httpx.Response(200, text=line)))
        with pytest.raises(InvalidResponseError):
            [d async for d in adapter.complete_stream("Hi", ModelConfig(model_name="llama3.2"), timeout=5)]

    @pytest.mark.asyncio
    async def test_list_models_wrong_shape_is_invalid_response(self):
        adapter = OllamaAdapter(
            base_url="http://localhost:11434",
            client=_client(lambda r: httpx.Response(200, json=["llama3.2"])),
        )
        with pytest.raises(InvalidResponseError):
            await adapter.list_models()

    @pytest.mark.asyncio
    async def test_list_models(self):
        adapter = OllamaAdapter(
            base_url="http://localhost:11434",
            client=_client(lambda r: httpx.Response(200, json={"models": [{"name": "llama3.2"}]})),
        )
        assert await adapter.list_models() == ["llama3.2"]
        assert await adapter.health_check()

    @pytest.mark.asyncio
    async def test_unsupported_text_to_image(self):
        adapter = OllamaAdapter(base_url="http://localhost:11434", client=_client(lambda r: httpx.Response(500)))
        with pytest.raises(InvalidModelError):
            await adapter.text_to_image("a cat", ModelConfig(model_name="llama3.2"), timeout=5)


class TestRegistry:
    @pytest.mark.asyncio
    async def test_adapters_are_shared_per_kind_and_url(self):
        registry = ProviderRegistry()
        hosted = registry(ModelConfig(model_name="a", model_provider="novita"))
        same = registry(ModelConfig(model_name="b", model_provider="together"))
        local = registry(ModelConfig(model_name="llama3.2", model_provider="ollama"))

        assert hosted is same
        assert isinstance(hosted, OpenAICompatibleAdapter)
        assert isinstance(local, OllamaAdapter)
        assert len(registry) == 2

        await registry.aclose()
        assert hosted.is_closed and local.is_closed
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_factory_selects_adapter_by_provider_and_endpoint(self):
        by_provider = get_provider_adapter(ModelConfig(model_name="llama3.2", model_provider="ollama"))
        by_endpoint = get_provider_adapter(
            ModelConfig(model_name="llama3.2", endpoint_url="http://gpu-box:11434/api/chat")
        )
        hosted = get_provider_adapter(ModelConfig(model_name="a", model_provider="novita"))

        assert isinstance(by_provider, OllamaAdapter)
        assert isinstance(by_endpoint, OllamaAdapter)
        assert by_endpoint.base_url == "http://gpu-box:11434"
        assert isinstance(hosted, OpenAICompatibleAdapter)
        for adapter in (by_provider, by_endpoint, hosted):
            await adapter.aclose()


class TestSerperSearch:
    @pytest.mark.asyncio
    async def test_search_parses_organic_results(self):
        seen = {}

        def handler(request):
            seen["key"] = request.headers.get("x-api-key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "organic": [
                        {"link": "https://a.example", "snippet": "A", "title": "First"},
                        {"link": "https://b.example"},
                        {"link": "https://c.example", "snippet": "C"},
                    ]
                },
            )

        client = SerperSearchClient(api_key="k", url="https://search.example", client=_client(handler))
        results = await client.search("who founded acme", max_results=3)

        assert [r.url for r in results] == ["https://a.example", "https://c.example"]
        assert seen["key"] == "k"
        assert seen["body"] == {"q": "who founded acme", "num": 3}

import json

import httpx
import pytest

from chatstream.events import StreamEventType, ToolCallPhase
from chatstream.exceptions import ProviderStreamError
from chatstream.llm import OllamaStreamProvider, StreamRequest, create_provider


def _ndjson(*chunks: dict) -> str:
    return "\n".join(json.dumps(chunk) for chunk in chunks) + "\n"


class ScriptedOllama:
    """MockTransport handler answering /api/chat with one scripted body per call."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.bodies: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/chat"
        self.bodies.append(json.loads(request.content))
        return self.responses.pop(0)


def _request(tools=None) -> StreamRequest:
    return StreamRequest(
        message_id="m1",
        conversation_id="c1",
        messages=[{"role": "user", "content": "hello"}],
        provider_id="ollama",
        model_id="llama3.2",
        tools=tools or [],
    )


async def _collect(provider: OllamaStreamProvider, request: StreamRequest) -> list:
    try:
        return [event async for event in provider.start_stream_completion(request)]
    finally:
        await provider.close()


@pytest.mark.asyncio
async def test_stream_yields_reasoning_content_usage_and_end():
    handler = ScriptedOllama(
        httpx.Response(
            200,
            text=_ndjson(
                {"message": {"role": "assistant", "thinking": "hmm"}},
                {"message": {"role": "assistant", "content": "Hi"}},
                {"message": {"role": "assistant", "content": "!"}},
                {"done": True, "prompt_eval_count": 5, "eval_count": 2},
            ),
        )
    )
    provider = OllamaStreamProvider(base_url="http://ollama.test", num_ctx=4096, transport=httpx.MockTransport(handler))

    events = await _collect(provider, _request())

    assert [event.type for event in events] == [StreamEventType.RESPONSE] * 4 + [StreamEventType.END]
    assert events[0].data.reasoning_content == "hmm"
    assert [events[1].data.content, events[2].data.content] == ["Hi", "!"]
    assert events[3].data.total_usage == {
        "prompt_tokens": 5,
        "completion_tokens": 2,
        "total_tokens": 7,
        "context_length": 4096,
    }
    body = handler.bodies[0]
    assert body["model"] == "llama3.2"
    assert body["stream"] is True
    assert body["options"]["num_ctx"] == 4096
    assert body["messages"] == [{"role": "user", "content": "hello"}]


@pytest.mark.asyncio
async def test_http_error_becomes_error_event_then_end():
    handler = ScriptedOllama(httpx.Response(500, text="model exploded"))
    provider = OllamaStreamProvider(base_url="http://ollama.test", transport=httpx.MockTransport(handler))

    events = await _collect(provider, _request())

    assert [event.type for event in events] == [StreamEventType.ERROR, StreamEventType.END]
    assert "500" in events[0].error
    assert "model exploded" in events[0].error


@pytest.mark.asyncio
async def test_tool_loop_runs_tool_and_sends_result_back(tools):
    handler = ScriptedOllama(
        httpx.Response(
            200,
            text=_ndjson(
                {
                    "message": {
                        "role": "assistant",
                        "content": "",
                        "tool_calls": [{"function": {"name": "read_file", "arguments": {"path": "a.txt"}}}],
                    }
                },
                {"done": True},
            ),
        ),
        httpx.Response(200, text=_ndjson({"message": {"content": "It says hi."}}, {"done": True})),
    )
    provider = OllamaStreamProvider(
        base_url="http://ollama.test", tools=tools, transport=httpx.MockTransport(handler)
    )

    events = await _collect(provider, _request(await tools.get_all_tool_definitions()))

    phases = [event.data.tool_call for event in events if event.data is not None and event.data.tool_call]
    assert phases == [ToolCallPhase.START, ToolCallPhase.RUNNING, ToolCallPhase.END]
    end = next(event.data for event in events if event.data is not None and event.data.tool_call == ToolCallPhase.END)
    assert end.tool_call_response == "contents of a.txt"
    assert end.tool_call_server_name == "files"
    assert json.loads(end.tool_call_params) == {"path": "a.txt"}
    assert any(event.data is not None and event.data.content == "It says hi." for event in events)
    assert events[-1].type == StreamEventType.END

    assert len(handler.bodies) == 2
    assert handler.bodies[0]["tools"][0]["function"]["name"] == "read_file"
    second = handler.bodies[1]["messages"]
    assert second[1]["role"] == "assistant"
    assert second[1]["tool_calls"][0]["function"] == {"name": "read_file", "arguments": {"path": "a.txt"}}
    assert second[2] == {"role": "tool", "content": "contents of a.txt", "tool_name": "read_file"}


@pytest.mark.asyncio
async def test_tool_needing_permission_ends_the_stream(tools, write_tool):
    handler = ScriptedOllama(
        httpx.Response(
            200,
            text=_ndjson(
                {
                    "message": {
                        "role": "assistant",
                        "tool_calls": [{"function": {"name": "write_file", "arguments": {"path": "a.txt"}}}],
                    }
                },
                {"done": True},
            ),
        )
    )
    provider = OllamaStreamProvider(
        base_url="http://ollama.test", tools=tools, transport=httpx.MockTransport(handler)
    )

    events = await _collect(provider, _request())

    required = events[-2].data
    assert required.tool_call == ToolCallPhase.PERMISSION_REQUIRED
    assert required.permission_request.permission_type == "write"
    assert required.permission_request.server_name == "files"
    assert events[-1].type == StreamEventType.END
    assert len(handler.bodies) == 1
    assert write_tool.writes == []


@pytest.mark.asyncio
async def test_tool_call_limit_pauses_with_marker(tools):
    handler = ScriptedOllama(
        httpx.Response(
            200,
            text=_ndjson(
                {"message": {"tool_calls": [{"function": {"name": "read_file", "arguments": {"path": "a.txt"}}}]}},
                {"done": True},
            ),
        )
    )
    provider = OllamaStreamProvider(
        base_url="http://ollama.test", tools=tools, max_tool_calls=0, transport=httpx.MockTransport(handler)
    )

    events = await _collect(provider, _request())

    marker = events[-2].data
    assert marker.maximum_tool_calls_reached is True
    assert marker.tool_call_name == "read_file"
    assert events[-1].type == StreamEventType.END


@pytest.mark.asyncio
async def test_generate_completion_returns_message_text():
    handler = ScriptedOllama(httpx.Response(200, json={"message": {"role": "assistant", "content": "short answer"}}))
    provider = OllamaStreamProvider(base_url="http://ollama.test", transport=httpx.MockTransport(handler))
    try:
        text = await provider.generate_completion([{"role": "user", "content": "q"}], "ollama", "llama3.2", 0.1)
    finally:
        await provider.close()

    assert text == "short answer"
    assert handler.bodies[0]["stream"] is False
    assert handler.bodies[0]["options"]["temperature"] == 0.1


@pytest.mark.asyncio
async def test_generate_completion_raises_on_http_error():
    handler = ScriptedOllama(httpx.Response(503, text="busy"))
    provider = OllamaStreamProvider(base_url="http://ollama.test", transport=httpx.MockTransport(handler))
    try:
        with pytest.raises(ProviderStreamError) as excinfo:
            await provider.generate_completion([{"role": "user", "content": "q"}], "ollama", "llama3.2")
    finally:
        await provider.close()

    assert excinfo.value.status_code == 503


def test_create_provider_supports_ollama():
    provider = create_provider(provider="ollama", base_url="http://localhost:11434/", num_ctx=2048)

    assert isinstance(provider, OllamaStreamProvider)
    assert provider.base_url == "http://localhost:11434"
    assert provider.num_ctx == 2048


def test_create_provider_rejects_unknown_provider():
    with pytest.raises(ValueError, match="not supported"):
        create_provider(provider="openai")

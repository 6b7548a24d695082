import json

import httpx
import pytest

from chatstream.blocks import BlockSequence, BlockStatus, BlockType, MessageBlock
from chatstream.config import SearchConfig
from chatstream.exceptions import ChatStreamError, GenerationCancelledError
from chatstream.models import Message, MessageRole, SearchResult, UserMessageContent
from chatstream.orchestrator import StreamGenerationOrchestrator
from chatstream.search import BraveSearchEngine, SearchEngine, SearchHandler, serialize_context_messages
from chatstream.state import GeneratingMessageState, GenerationStateStore


class FakeEngine(SearchEngine):
    def __init__(self, results=None, error: Exception | None = None, on_search=None):
        self.results = results if results is not None else []
        self.error = error
        self.on_search = on_search
        self.queries: list[str] = []
        self.stopped: list[str] = []

    @property
    def active_engine_name(self) -> str:
        return "Fake"

    async def search(self, conversation_id: str, query: str) -> list[SearchResult]:
        self.queries.append(query)
        if self.on_search is not None:
            self.on_search()
        if self.error is not None:
            raise self.error
        return list(self.results)

    async def stop_search(self, conversation_id: str) -> None:
        self.stopped.append(conversation_id)


def _results(count: int) -> list[SearchResult]:
    return [
        SearchResult(
            title=f"Result {i}",
            url=f"https://r.example/{i}",
            content=f"snippet {i}",
            favicon=f"https://r.example/{i}.ico",
            rank=i,
        )
        for i in range(1, count + 1)
    ]


async def _generation(store, seed, text: str = "weather in Zagreb?"):
    conversation, user = await seed(text, search=True)
    assistant = await store.send_message(conversation.id, BlockSequence(), MessageRole.ASSISTANT, parent_id=user.id)
    states = GenerationStateStore()
    state = GeneratingMessageState(message=assistant, conversation_id=conversation.id)
    states.set(assistant.id, state)
    return states, state


@pytest.mark.asyncio
async def test_search_attaches_results_and_finishes_block(store, provider, seed, config):
    states, state = await _generation(store, seed)
    engine = FakeEngine(_results(8))
    handler = SearchHandler(states, store, provider, engine, config.search, config.context)

    results = await handler.start_stream_search(state, "weather in Zagreb?")

    assert len(results) == 8
    assert engine.queries == ["weather today"]
    assert "weather in Zagreb?" in provider.completions[0][0]["content"]

    stored = await store.get_message(state.message_id)
    block = stored.blocks[0]
    assert block.type == BlockType.SEARCH
    assert block.status == BlockStatus.SUCCESS
    assert block.extra["total"] == 8
    assert block.extra["engine"] == "Fake"
    assert len(block.extra["pages"]) == config.search.max_pages
    assert block.extra["pages"][0] == {"url": "https://r.example/1", "icon": "https://r.example/1.ico"}

    attachments = [json.loads(item) for item in await store.get_message_attachments(state.message_id, "search_result")]
    assert [item["rank"] for item in attachments] == list(range(1, 9))
    assert {item["searchId"] for item in attachments} == {block.extra["searchId"]}
    assert state.is_searching is False
    assert states.is_searching(state.message_id) is False


@pytest.mark.asyncio
async def test_rewrite_can_skip_search(store, provider, seed, config):
    states, state = await _generation(store, seed, "thanks!")
    provider.completion = "NO_SEARCH"
    engine = FakeEngine(_results(3))
    handler = SearchHandler(states, store, provider, engine, config.search, config.context)

    results = await handler.start_stream_search(state, "thanks!")

    assert results == []
    assert engine.queries == []
    stored = await store.get_message(state.message_id)
    assert stored.blocks[0].status == BlockStatus.SUCCESS


@pytest.mark.asyncio
async def test_query_is_used_as_is_without_rewrite(store, provider, seed, config):
    states, state = await _generation(store, seed)
    engine = FakeEngine(_results(1))
    handler = SearchHandler(
        states, store, provider, engine, SearchConfig(rewrite_query=False), config.context
    )

    await handler.start_stream_search(state, "weather in Zagreb?")

    assert engine.queries == ["weather in Zagreb?"]
    assert provider.completions == []


@pytest.mark.asyncio
async def test_engine_failure_degrades_to_no_results(store, provider, seed, config):
    states, state = await _generation(store, seed)
    engine = FakeEngine(error=ChatStreamError("Web search failed: HTTP 429"))
    handler = SearchHandler(states, store, provider, engine, config.search, config.context)

    results = await handler.start_stream_search(state, "weather in Zagreb?")

    assert results == []
    block = (await store.get_message(state.message_id)).blocks[0]
    assert block.status == BlockStatus.ERROR
    assert block.content == "Web search failed: HTTP 429"
    assert engine.stopped == []
    assert state.is_searching is False


@pytest.mark.asyncio
async def test_cancellation_during_search_propagates(store, provider, seed, config):
    states, state = await _generation(store, seed)
    engine = FakeEngine(_results(2), on_search=lambda: state.cancel_token.cancel())
    handler = SearchHandler(states, store, provider, engine, config.search, config.context)

    with pytest.raises(GenerationCancelledError):
        await handler.start_stream_search(state, "weather in Zagreb?")

    assert engine.stopped == [state.conversation_id]
    assert state.blocks[0].status == BlockStatus.ERROR
    assert await store.get_message_attachments(state.message_id, "search_result") == []


@pytest.mark.asyncio
async def test_search_on_missing_generation_is_cancelled(store, provider, seed, config):
    states, state = await _generation(store, seed)
    states.delete(state.message_id)
    handler = SearchHandler(states, store, provider, FakeEngine(), config.search, config.context)

    with pytest.raises(GenerationCancelledError):
        await handler.start_stream_search(state, "anything")

    assert len(state.blocks) == 0


@pytest.mark.asyncio
async def test_orchestrator_puts_search_results_in_prompt(store, provider, tools, config, seed):
    engine = FakeEngine(_results(2))
    orchestrator = StreamGenerationOrchestrator(store, provider, tools, search_engine=engine, config=config)
    conversation, user = await seed("weather in Zagreb?", search=True)
    provider.scripts = [[{"content": "Sunny [1]."}, {"type": "end"}]]

    assistant = await orchestrator.generate_ai_response(conversation.id, user.id)
    await orchestrator.start_stream_completion(conversation.id, user.id)

    stored = await store.get_message(assistant.id)
    assert [block.type for block in stored.blocks] == [BlockType.SEARCH, BlockType.CONTENT]
    assert all(block.status == BlockStatus.SUCCESS for block in stored.blocks)
    final_prompt = provider.requests[0].messages[-1]["content"]
    assert "[1] Result 1" in final_prompt
    assert "Question: weather in Zagreb?" in final_prompt


def test_serialize_context_messages():
    user = Message(id="u1", conversation_id="c1", role=MessageRole.USER, content=UserMessageContent(text="hi"))
    assistant = Message(
        id="a1",
        conversation_id="c1",
        role=MessageRole.ASSISTANT,
        content=BlockSequence([MessageBlock(type=BlockType.CONTENT, content="hello")]),
        parent_id="u1",
    )

    assert serialize_context_messages([user, assistant]) == "user: hi\nassistant: hello\n"


@pytest.mark.asyncio
async def test_brave_engine_parses_results():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "web": {
                    "results": [
                        {
                            "title": "  Zagreb   weather ",
                            "url": "https://weather.example/zagreb",
                            "description": "Sunny",
                            "extra_snippets": ["High 24C", "Low 12C"],
                            "profile": {"img": "https://weather.example/icon.png"},
                        },
                        "garbage",
                        {"url": "https://other.example", "meta_url": {"favicon": "https://other.example/f.ico"}},
                    ]
                }
            },
        )

    engine = BraveSearchEngine(
        SearchConfig(api_key="brave-key", max_results=50, safesearch="weird"),
        transport=httpx.MockTransport(handler),
    )
    try:
        results = await engine.search("c1", " zagreb weather ")
        empty = await engine.search("c1", "   ")
    finally:
        await engine.close()

    assert empty == []
    assert len(seen) == 1
    request = seen[0]
    assert request.headers["X-Subscription-Token"] == "brave-key"
    assert request.url.params["q"] == "zagreb weather"
    assert request.url.params["count"] == "20"
    assert request.url.params["safesearch"] == "moderate"

    assert [r.rank for r in results] == [1, 3]
    assert results[0].title == "Zagreb weather"
    assert results[0].content == "High 24C Low 12C"
    assert results[0].icon == "https://weather.example/icon.png"
    assert results[1].title == "Untitled"
    assert results[1].favicon == "https://other.example/f.ico"


@pytest.mark.asyncio
async def test_brave_engine_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, text="rate limited")

    keyless = BraveSearchEngine(SearchConfig(api_key=""), transport=httpx.MockTransport(handler))
    limited = BraveSearchEngine(SearchConfig(api_key="k"), transport=httpx.MockTransport(handler))
    try:
        with pytest.raises(ChatStreamError, match="Missing Brave API key"):
            await keyless.search("c1", "q")
        with pytest.raises(ChatStreamError, match="HTTP 429: rate limited"):
            await limited.search("c1", "q")
    finally:
        await keyless.close()
        await limited.close()

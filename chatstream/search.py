"""Search augmentation for user turns."""

import json
import re
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import httpx

from chatstream.blocks import BlockStatus, BlockType, MessageBlock
from chatstream.cancellation import is_cancellation_error, throw_if_cancelled
from chatstream.config import ContextConfig, SearchConfig, get_config
from chatstream.exceptions import ChatStreamError
from chatstream.logging import get_logger
from chatstream.message_content import build_user_message_context, format_user_message_content
from chatstream.models import Message, MessageRole, SearchResult
from chatstream.prompt_builder import context_message_limit
from chatstream.state import GeneratingMessageState, GenerationStateStore
from chatstream.storage import MessageStore

if TYPE_CHECKING:
    from chatstream.llm import LLMStreamProvider

log = get_logger(__name__)

SEARCH_LABEL = "web_search"
NO_SEARCH_MARKERS = ("NO_SEARCH", "无须搜索")

REWRITE_PROMPT = """You are good at using search engines to find up-to-date information.
Understand the user's question, then extract and optimize the search query.

Current time: {now}
Search engine in use: {engine}

Rules:
1. Rewrite the keywords that should be searched, based on the question and the context.
2. If time matters, turn relative dates into concrete dates using the current time.
3. Pick the language that fits the question best; some questions search better in English.
4. Keep the query short: usually no more than 3 keywords, never more than 5.

Return only the optimized query, with no explanation.
If the question does not need a search, return exactly "NO_SEARCH".

Earlier conversation:
<context_messages>
{context}
</context_messages>
User question:
<user_question>
{query}
</user_question>
"""


class SearchEngine(ABC):
    """Web search collaborator."""

    @property
    @abstractmethod
    def active_engine_name(self) -> str:
        pass

    @abstractmethod
    async def search(self, conversation_id: str, query: str) -> list[SearchResult]:
        pass

    async def stop_search(self, conversation_id: str) -> None:
        """Abort an in-flight search for a conversation (no-op by default)."""


class BraveSearchEngine(SearchEngine):
    """Search the web using the Brave Search API."""

    def __init__(
        self,
        config: SearchConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or get_config().search
        self.client = httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": "chatstream/0.1.0 (Web Search)"},
            transport=transport,
        )

    @property
    def active_engine_name(self) -> str:
        return "Brave"

    @staticmethod
    def _clean_text(value: str, max_chars: int = 500) -> str:
        cleaned = re.sub(r"\s+", " ", (value or "")).strip()
        if len(cleaned) <= max_chars:
            return cleaned
        return cleaned[:max_chars].rstrip() + "... [truncated]"

    async def search(self, conversation_id: str, query: str) -> list[SearchResult]:
        q = (query or "").strip()
        if not q:
            return []
        if not self.config.api_key:
            raise ChatStreamError("Missing Brave API key. Set search.api_key in config.")

        safe_value = (self.config.safesearch or "moderate").strip().lower()
        if safe_value not in {"off", "moderate", "strict"}:
            safe_value = "moderate"
        params: dict[str, Any] = {
            "q": q,
            "count": min(max(self.config.max_results, 1), 20),
            "safesearch": safe_value,
        }
        headers = {"Accept": "application/json", "X-Subscription-Token": self.config.api_key}

        try:
            response = await self.client.get(
                self.config.base_url, params=params, headers=headers, timeout=self.config.timeout
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            detail = f"HTTP {e.response.status_code}"
            body = (e.response.text or "").strip()
            if body:
                detail = f"{detail}: {self._clean_text(body, max_chars=300)}"
            log.error("Brave web search failed", query=q, error=detail)
            raise ChatStreamError(f"Web search failed: {detail}") from e
        except httpx.HTTPError as e:
            log.error("Web search failed", query=q, error=str(e))
            raise ChatStreamError(f"Web search failed: {e}") from e

        web_block = payload.get("web", {}) if isinstance(payload, dict) else {}
        items = web_block.get("results", []) if isinstance(web_block, dict) else []
        results: list[SearchResult] = []
        for rank, item in enumerate(items if isinstance(items, list) else [], start=1):
            if not isinstance(item, dict):
                continue
            profile = item.get("profile") if isinstance(item.get("profile"), dict) else {}
            meta = item.get("meta_url") if isinstance(item.get("meta_url"), dict) else {}
            icon = str(profile.get("img") or meta.get("favicon") or "")
            results.append(
                SearchResult(
                    title=self._clean_text(str(item.get("title") or "Untitled"), max_chars=180),
                    url=str(item.get("url") or "").strip(),
                    description=self._clean_text(str(item.get("description") or "")),
                    content=self._clean_text(" ".join(item.get("extra_snippets") or []), max_chars=2000),
                    icon=icon,
                    favicon=icon,
                    rank=rank,
                )
            )
        log.info("Web search finished", conversation_id=conversation_id, query=q, results=len(results))
        return results

    async def close(self) -> None:
        """Close HTTP client."""
        await self.client.aclose()


def serialize_context_messages(messages: list[Message]) -> str:
    """Plain-text transcript used as query rewrite context."""
    lines: list[str] = []
    for message in messages:
        if message.role == MessageRole.USER:
            content = message.user_content
            text = build_user_message_context(format_user_message_content(content), content.files)
            lines.append(f"user: {text}")
            continue
        if message.role != MessageRole.ASSISTANT:
            lines.append(json.dumps(message.content_to_dict()))
            continue
        rendered = "assistant: "
        for block in message.blocks:
            if block.type == BlockType.CONTENT:
                rendered += block.content + "\n"
            elif block.type == BlockType.SEARCH:
                rendered += f"search-result: {json.dumps(block.extra)}"
            elif block.type == BlockType.TOOL_CALL and block.tool_call is not None:
                rendered += f"tool_call: {json.dumps(block.tool_call.to_dict())}"
            elif block.type == BlockType.IMAGE and block.image_data is not None:
                rendered += f"image: {block.image_data.data}"
        lines.append(rendered)
    return "\n".join(lines)


class SearchHandler:
    """Runs a search for a generation and keeps its ``search`` block current."""

    def __init__(
        self,
        store: GenerationStateStore,
        messages: MessageStore,
        provider: "LLMStreamProvider",
        engine: SearchEngine,
        config: SearchConfig | None = None,
        context_config: ContextConfig | None = None,
    ):
        self._store = store
        self._messages = messages
        self._provider = provider
        self._engine = engine
        self.config = config or get_config().search
        self.context_config = context_config or get_config().context

    async def _save(self, state: GeneratingMessageState) -> None:
        await self._messages.edit_message(state.message_id, state.blocks)

    def _finish(self, state: GeneratingMessageState) -> None:
        state.is_searching = False
        self._store.clear_searching(state.message_id)

    async def start_stream_search(self, state: GeneratingMessageState, query: str) -> list[SearchResult]:
        """Search for ``query`` and attach results to the message.

        Search failures degrade to no results with the block marked ``error``;
        cancellation propagates.
        """
        message_id = state.message_id
        throw_if_cancelled(self._store, message_id)

        engine_name = self._engine.active_engine_name or self.config.engine_label
        search_id = str(uuid.uuid4())
        block = state.blocks.append(
            MessageBlock(
                type=BlockType.SEARCH,
                id=search_id,
                status=BlockStatus.LOADING,
                extra={
                    "total": 0,
                    "searchId": search_id,
                    "pages": [],
                    "label": SEARCH_LABEL,
                    "name": SEARCH_LABEL,
                    "engine": engine_name,
                    "provider": engine_name,
                },
            )
        )
        await self._save(state)
        state.is_searching = True
        self._store.mark_searching(message_id)

        try:
            throw_if_cancelled(self._store, message_id)
            optimized = query
            if self.config.rewrite_query:
                block.status = BlockStatus.OPTIMIZING
                await self._save(state)
                optimized = await self.rewrite_user_search_query(state.conversation_id, query, engine_name)
                if any(marker in optimized for marker in NO_SEARCH_MARKERS):
                    block.status = BlockStatus.SUCCESS
                    block.content = ""
                    await self._save(state)
                    self._finish(state)
                    log.info("Search skipped by query rewrite", message_id=message_id)
                    return []
            throw_if_cancelled(self._store, message_id)

            block.status = BlockStatus.READING
            await self._save(state)
            results = await self._engine.search(state.conversation_id, optimized)
            throw_if_cancelled(self._store, message_id)

            block.status = BlockStatus.LOADING
            block.extra["total"] = len(results)
            block.extra["pages"] = [
                {"url": result.url, "icon": result.icon or result.favicon}
                for result in results
                if result.icon or result.favicon
            ][: self.config.max_pages]
            await self._save(state)

            for result in results:
                payload = result.to_dict()
                payload["icon"] = result.icon or result.favicon
                payload["searchId"] = search_id
                await self._messages.add_message_attachment(message_id, "search_result", json.dumps(payload))
            throw_if_cancelled(self._store, message_id)

            block.status = BlockStatus.SUCCESS
            await self._save(state)
            self._finish(state)
            return results
        except Exception as e:
            self._finish(state)
            block.status = BlockStatus.ERROR
            block.content = str(e)
            if is_cancellation_error(e):
                await self._engine.stop_search(state.conversation_id)
                raise
            await self._save(state)
            log.warning("Search failed", message_id=message_id, error=str(e))
            return []

    async def rewrite_user_search_query(self, conversation_id: str, query: str, engine_name: str) -> str:
        """Ask the model for a tighter search query; falls back to ``query``."""
        try:
            conversation = await self._messages.get_conversation(conversation_id)
            limit = context_message_limit(
                conversation.settings.context_length,
                self.context_config.chars_per_message,
                self.context_config.min_messages,
            )
            context = await self._messages.get_context_messages(conversation_id, limit)
            prompt = REWRITE_PROMPT.format(
                now=datetime.now(timezone.utc).isoformat(),
                engine=engine_name,
                context=serialize_context_messages(context),
                query=query,
            )
            rewritten = await self._provider.generate_completion(
                [{"role": "user", "content": prompt}],
                conversation.settings.provider_id,
                conversation.settings.model_id,
            )
        except ChatStreamError as e:
            log.warning("Search query rewrite failed", conversation_id=conversation_id, error=str(e))
            return query
        return rewritten.strip() or query

    async def stop_search(self, conversation_id: str) -> None:
        await self._engine.stop_search(conversation_id)

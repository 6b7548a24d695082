"""Provider stream interface and the Ollama streaming provider."""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from chatstream.events import StreamEvent, ToolCallPhase
from chatstream.exceptions import LLMError, ProviderStreamError
from chatstream.logging import get_logger
from chatstream.tools.registry import ToolCallRequest, ToolDefinition, ToolExecutor

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"
DEFAULT_MAX_TOOL_CALLS = 25


@dataclass
class StreamRequest:
    """Everything a provider needs to open one completion stream."""

    message_id: str
    conversation_id: str
    messages: list[dict[str, Any]]
    provider_id: str
    model_id: str
    temperature: float = 0.7
    max_tokens: int = 4096
    tools: list[ToolDefinition] = field(default_factory=list)
    enabled_mcp_tools: list[str] | None = None
    thinking_budget: int | None = None
    reasoning_effort: str | None = None
    verbosity: str | None = None


class LLMStreamProvider(ABC):
    """Abstract base class for streaming providers."""

    @abstractmethod
    def start_stream_completion(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        """Open a stream of ``response``/``error``/``end`` events for ``request.message_id``."""

    @abstractmethod
    async def stop_stream(self, message_id: str) -> None:
        pass

    @abstractmethod
    async def generate_completion(
        self,
        messages: list[dict[str, Any]],
        provider_id: str,
        model_id: str,
        temperature: float | None = None,
    ) -> str:
        """One-shot, non-streaming completion."""

    async def resolve_agent_permission(self, request_id: str, granted: bool) -> None:
        """Relay a permission decision to an agent-style provider."""
        raise LLMError(f"Provider does not handle agent permissions (request {request_id})")


class OllamaStreamProvider(LLMStreamProvider):
    """Streams from the Ollama native chat API and runs the tool loop.

    Tool calls requested by the model are executed through an optional
    ``ToolExecutor``; a call that needs permission ends the stream with a
    ``permission-required`` event.
    """

    def __init__(
        self,
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        api_key: str | None = None,
        tools: ToolExecutor | None = None,
        max_tool_calls: int = DEFAULT_MAX_TOOL_CALLS,
        num_ctx: int = 65536,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the provider.

        Args:
            base_url: Ollama API base URL
            api_key: Optional bearer token
            tools: Tool executor for model-requested tool calls
            max_tool_calls: Tool calls allowed per stream before pausing
            num_ctx: Context window passed to Ollama
            timeout: HTTP timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.tools = tools
        self.max_tool_calls = max_tool_calls
        self.num_ctx = num_ctx
        self._aborts: dict[str, asyncio.Event] = {}
        self.client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _convert_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Convert OpenAI-style messages to Ollama format."""
        result = []
        for msg in messages:
            role = msg.get("role")
            content = msg.get("content")
            images: list[str] = []
            if isinstance(content, list):
                texts = []
                for part in content:
                    if part.get("type") == "text":
                        texts.append(str(part.get("text") or ""))
                    elif part.get("type") == "image_url":
                        url = str((part.get("image_url") or {}).get("url") or "")
                        images.append(url.split(",", 1)[1] if url.startswith("data:") and "," in url else url)
                content = "\n".join(texts)
            entry: dict[str, Any] = {"role": role, "content": content or ""}
            if images:
                entry["images"] = images
            if role == "assistant" and msg.get("tool_calls"):
                entry["tool_calls"] = [
                    {
                        "function": {
                            "name": call["function"]["name"],
                            "arguments": _loads_arguments(call["function"].get("arguments")),
                        }
                    }
                    for call in msg["tool_calls"]
                ]
            if role == "tool" and msg.get("name"):
                entry["tool_name"] = msg["name"]
            result.append(entry)
        return result

    def _build_body(self, request: StreamRequest, messages: list[dict[str, Any]], stream: bool) -> dict[str, Any]:
        options: dict[str, Any] = {
            "num_ctx": self.num_ctx,
            "temperature": request.temperature,
        }
        if request.max_tokens:
            options["num_predict"] = request.max_tokens
        body: dict[str, Any] = {
            "model": request.model_id,
            "messages": self._convert_messages(messages),
            "stream": stream,
            "options": options,
        }
        if request.tools:
            body["tools"] = [tool.to_function() for tool in request.tools]
        if request.reasoning_effort or request.thinking_budget:
            body["think"] = True
        return body

    async def stop_stream(self, message_id: str) -> None:
        abort = self._aborts.get(message_id)
        if abort is not None:
            abort.set()
            log.info("Stream stop requested", message_id=message_id)

    async def start_stream_completion(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        event_id = request.message_id
        abort = asyncio.Event()
        self._aborts[event_id] = abort
        messages = list(request.messages)
        tool_call_count = 0
        try:
            while True:
                tool_calls: list[dict[str, Any]] = []
                content_parts: list[str] = []
                async for event, calls in self._stream_once(request, messages, abort):
                    if event is not None:
                        if event.data is not None and event.data.content:
                            content_parts.append(event.data.content)
                        yield event
                    tool_calls.extend(calls)
                if abort.is_set():
                    yield StreamEvent.end(event_id, user_stop=True)
                    return
                if not tool_calls or self.tools is None:
                    break

                messages.append({
                    "role": "assistant",
                    "content": "".join(content_parts),
                    "tool_calls": [
                        {"id": call["id"], "type": "function", "function": {"name": call["name"], "arguments": call["arguments"]}}
                        for call in tool_calls
                    ],
                })
                for call in tool_calls:
                    if tool_call_count >= self.max_tool_calls:
                        yield StreamEvent.response(
                            event_id,
                            maximum_tool_calls_reached=True,
                            tool_call_id=call["id"],
                            tool_call_name=call["name"],
                            tool_call_params=call["arguments"],
                        )
                        yield StreamEvent.end(event_id)
                        return
                    tool_call_count += 1
                    stop_after = False
                    async for event in self._run_tool_call(event_id, call, messages):
                        if event.data is not None and event.data.tool_call == ToolCallPhase.PERMISSION_REQUIRED:
                            stop_after = True
                        yield event
                    if stop_after:
                        yield StreamEvent.end(event_id)
                        return
                    if abort.is_set():
                        yield StreamEvent.end(event_id, user_stop=True)
                        return
            yield StreamEvent.end(event_id)
        except ProviderStreamError as e:
            log.error("Provider stream failed", message_id=event_id, error=str(e))
            yield StreamEvent.failure(event_id, str(e))
            yield StreamEvent.end(event_id)
        finally:
            self._aborts.pop(event_id, None)

    async def _stream_once(
        self,
        request: StreamRequest,
        messages: list[dict[str, Any]],
        abort: asyncio.Event,
    ) -> AsyncIterator[tuple[StreamEvent | None, list[dict[str, Any]]]]:
        """One HTTP round trip; yields (event, tool_calls) pairs."""
        event_id = request.message_id
        url = f"{self.base_url}/api/chat"
        body = self._build_body(request, messages, stream=True)
        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise ProviderStreamError(
                        f"Ollama API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    if abort.is_set():
                        return
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        log.debug("Skipping malformed stream line", line=line[:200])
                        continue
                    if chunk.get("error"):
                        raise ProviderStreamError(f"Ollama stream error: {chunk['error']}")
                    message = chunk.get("message") or {}
                    if message.get("thinking"):
                        yield StreamEvent.response(event_id, reasoning_content=message["thinking"]), []
                    if message.get("content"):
                        yield StreamEvent.response(event_id, content=message["content"]), []
                    calls = [
                        {
                            "id": f"ollama_call_{uuid.uuid4().hex[:12]}",
                            "name": (tc.get("function") or {}).get("name", ""),
                            "arguments": json.dumps((tc.get("function") or {}).get("arguments") or {}),
                        }
                        for tc in message.get("tool_calls") or []
                    ]
                    if calls:
                        yield None, calls
                    if chunk.get("done"):
                        prompt_tokens = int(chunk.get("prompt_eval_count") or 0)
                        completion_tokens = int(chunk.get("eval_count") or 0)
                        yield StreamEvent.response(
                            event_id,
                            total_usage={
                                "prompt_tokens": prompt_tokens,
                                "completion_tokens": completion_tokens,
                                "total_tokens": prompt_tokens + completion_tokens,
                                "context_length": self.num_ctx,
                            },
                        ), []
                        return
        except httpx.HTTPError as e:
            raise ProviderStreamError(f"Ollama streaming error: {e}") from e

    async def _run_tool_call(
        self,
        event_id: str,
        call: dict[str, Any],
        messages: list[dict[str, Any]],
    ) -> AsyncIterator[StreamEvent]:
        definition = next(
            (tool for tool in (await self.tools.get_all_tool_definitions()) if tool.name == call["name"]),
            None,
        )
        server = definition.server if definition else None
        common = {
            "tool_call_id": call["id"],
            "tool_call_name": call["name"],
            "tool_call_params": call["arguments"],
            "tool_call_server_name": server.name if server else None,
            "tool_call_server_icons": server.icons if server else None,
            "tool_call_server_description": server.description if server else None,
        }
        yield StreamEvent.response(event_id, tool_call=ToolCallPhase.START, **common)
        yield StreamEvent.response(event_id, tool_call=ToolCallPhase.RUNNING, **common)
        try:
            result = await self.tools.call_tool(
                ToolCallRequest(
                    id=call["id"],
                    name=call["name"],
                    arguments=call["arguments"],
                    server_name=server.name if server else None,
                    server_icons=server.icons if server else None,
                    server_description=server.description if server else None,
                )
            )
        except Exception as e:
            log.warning("Tool call failed", tool=call["name"], error=str(e))
            yield StreamEvent.response(
                event_id, tool_call=ToolCallPhase.ERROR, tool_call_response=str(e), **common
            )
            messages.append({"role": "tool", "tool_call_id": call["id"], "name": call["name"], "content": str(e)})
            return

        if result.raw_data.requires_permission:
            yield StreamEvent.response(
                event_id,
                tool_call=ToolCallPhase.PERMISSION_REQUIRED,
                tool_call_response=result.content,
                permission_request=result.raw_data.permission_request,
                **common,
            )
            return

        yield StreamEvent.response(
            event_id,
            tool_call=ToolCallPhase.END,
            tool_call_response=result.content,
            tool_call_response_raw=result.raw_data.to_dict(),
            **common,
        )
        messages.append({"role": "tool", "tool_call_id": call["id"], "name": call["name"], "content": result.content})

    async def generate_completion(
        self,
        messages: list[dict[str, Any]],
        provider_id: str,
        model_id: str,
        temperature: float | None = None,
    ) -> str:
        """Generate a non-streaming completion."""
        request = StreamRequest(
            message_id="",
            conversation_id="",
            messages=messages,
            provider_id=provider_id,
            model_id=model_id,
            temperature=temperature if temperature is not None else 0.7,
            max_tokens=0,
        )
        body = self._build_body(request, messages, stream=False)
        url = f"{self.base_url}/api/chat"
        try:
            log.debug("Calling Ollama", model=model_id, url=url, msg_count=len(messages))
            response = await self.client.post(url, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            raise ProviderStreamError(f"Ollama HTTP error: {e}") from e
        if not response.is_success:
            raise ProviderStreamError(
                f"Ollama API error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise LLMError(f"Ollama response decode error: {e}") from e
        return str((data.get("message") or {}).get("content") or "")

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def _loads_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw or "{}")
    except (TypeError, json.JSONDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def create_provider(
    provider: str = "ollama",
    base_url: str | None = None,
    api_key: str | None = None,
    tools: ToolExecutor | None = None,
    timeout: float = 120.0,
    num_ctx: int = 65536,
) -> LLMStreamProvider:
    """Create a streaming provider.

    Args:
        provider: Provider name (only ``ollama`` is built in)
        base_url: Optional base URL
        api_key: Optional API key
        tools: Tool executor for model-requested tool calls
        timeout: HTTP timeout in seconds
        num_ctx: Context window size

    Returns:
        Configured LLMStreamProvider instance
    """
    if provider == "ollama":
        return OllamaStreamProvider(
            base_url=base_url or OLLAMA_NATIVE_BASE_URL,
            api_key=api_key,
            tools=tools,
            timeout=timeout,
            num_ctx=num_ctx,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'ollama' or pass a provider instance.")


# Global provider instance
_provider: LLMStreamProvider | None = None


def get_provider() -> LLMStreamProvider:
    """Get the global streaming provider instance."""
    global _provider
    if _provider is None:
        from chatstream.config import get_config
        cfg = get_config()
        _provider = create_provider(
            provider=cfg.provider.name,
            base_url=cfg.provider.base_url,
            api_key=cfg.provider.api_key or None,
            timeout=cfg.provider.timeout,
            num_ctx=cfg.provider.num_ctx,
        )
    return _provider


def set_provider(provider: LLMStreamProvider) -> None:
    """Set the global streaming provider instance."""
    global _provider
    _provider = provider

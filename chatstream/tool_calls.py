"""Tool call block lifecycle: start, update, running, end, error."""

import json
import uuid
from typing import Any

from chatstream.blocks import BlockStatus, BlockType, MessageBlock, ToolCallRef
from chatstream.cancellation import throw_if_cancelled
from chatstream.config import SearchConfig, get_config
from chatstream.emitter import OutboundEvent, StreamEventEmitter
from chatstream.events import ResponseData
from chatstream.logging import get_logger
from chatstream.models import SearchResult
from chatstream.state import GeneratingMessageState, GenerationStateStore, permission_resolved
from chatstream.storage import MessageStore
from chatstream.tools.registry import WEBPAGE_MIME_TYPE

log = get_logger(__name__)


def parse_webpage_resources(raw: dict[str, Any] | None) -> list[SearchResult]:
    """Search results embedded as webpage resources in a raw tool response."""
    if not raw:
        return []
    results: list[SearchResult] = []
    for item in raw.get("content") or []:
        if not isinstance(item, dict) or item.get("type") != "resource":
            continue
        resource = item.get("resource") or {}
        if resource.get("mimeType") != WEBPAGE_MIME_TYPE:
            continue
        try:
            payload = json.loads(resource.get("text") or "{}")
        except json.JSONDecodeError:
            log.warning("Skipping malformed webpage resource", uri=resource.get("uri"))
            continue
        if not isinstance(payload, dict):
            continue
        results.append(
            SearchResult(
                title=str(payload.get("title") or ""),
                url=str(payload.get("url") or resource.get("uri") or ""),
                content=str(payload.get("content") or ""),
                description=str(payload.get("description") or ""),
                icon=str(payload.get("icon") or payload.get("favicon") or ""),
                favicon=str(payload.get("favicon") or payload.get("icon") or ""),
                rank=int(payload.get("rank") or len(results) + 1),
            )
        )
    return results


class ToolCallLifecycleManager:
    """Applies tool call lifecycle events to ``tool_call`` blocks."""

    def __init__(
        self,
        store: GenerationStateStore,
        messages: MessageStore,
        emitter: StreamEventEmitter,
        config: SearchConfig | None = None,
    ):
        self._store = store
        self._messages = messages
        self._emitter = emitter
        self.config = config or get_config().search

    @staticmethod
    def _open_tool_block(state: GeneratingMessageState, tool_call_id: str | None) -> MessageBlock | None:
        return state.blocks.find_last(lambda b: b.is_tool_call(tool_call_id) and b.is_open)

    async def on_start(self, state: GeneratingMessageState, event: ResponseData) -> None:
        state.blocks.append(
            MessageBlock(
                type=BlockType.TOOL_CALL,
                status=BlockStatus.LOADING,
                tool_call=ToolCallRef(
                    id=event.tool_call_id or "",
                    name=event.tool_call_name or "",
                    params=event.tool_call_params or "",
                    server_name=event.tool_call_server_name,
                    server_icons=event.tool_call_server_icons,
                    server_description=event.tool_call_server_description,
                ),
            )
        )
        log.debug("Tool call started", message_id=state.message_id, tool=event.tool_call_name)

    async def on_update(self, state: GeneratingMessageState, event: ResponseData) -> None:
        block = self._open_tool_block(state, event.tool_call_id)
        if block is None or block.tool_call is None:
            return
        if event.tool_call_params is not None:
            block.tool_call.params = event.tool_call_params
        if event.tool_call_name:
            block.tool_call.name = event.tool_call_name

    async def on_running(self, state: GeneratingMessageState, event: ResponseData) -> None:
        block = self._open_tool_block(state, event.tool_call_id)
        if block is None:
            # Re-open a finalized call that has not produced a response yet
            # (a call resumed after a permission round trip).
            block = state.blocks.find_last(
                lambda b: b.is_tool_call(event.tool_call_id) and b.tool_call is not None and not b.tool_call.response
            )
            if block is None or block.status == BlockStatus.ERROR:
                return
            block.status = BlockStatus.LOADING
        ref = block.tool_call
        if ref is None:
            return
        if event.tool_call_params is not None:
            ref.params = event.tool_call_params
        if event.tool_call_server_name:
            ref.server_name = event.tool_call_server_name
        if event.tool_call_server_icons:
            ref.server_icons = event.tool_call_server_icons
        if event.tool_call_server_description:
            ref.server_description = event.tool_call_server_description

    async def on_end(self, state: GeneratingMessageState, event: ResponseData) -> None:
        block = self._open_tool_block(state, event.tool_call_id)
        if block is None:
            block = state.blocks.find_last(lambda b: b.is_tool_call(event.tool_call_id))
        if block is not None:
            block.status = BlockStatus.SUCCESS
            if block.tool_call is not None:
                block.tool_call.response = event.tool_call_response or ""
                if event.tool_call_params is not None:
                    block.tool_call.params = event.tool_call_params
        else:
            log.warning("Tool call end without a block", message_id=state.message_id, tool_call_id=event.tool_call_id)

        last = state.blocks.last
        if last is not None and last.is_permission_action and permission_resolved(last.status):
            last.status = BlockStatus.SUCCESS
        else:
            permission = state.blocks.find_last(
                lambda b: b.is_permission_action
                and b.tool_call is not None
                and b.tool_call.id == event.tool_call_id
                and permission_resolved(b.status)
            )
            if permission is not None:
                permission.status = BlockStatus.SUCCESS

        state.is_searching = False
        self._store.clear_searching(state.message_id)
        state.pending_tool_call = None

        await self.extract_search_results(state, event)

    async def on_error(self, state: GeneratingMessageState, event: ResponseData) -> None:
        block = self._open_tool_block(state, event.tool_call_id)
        if block is None:
            block = state.blocks.find_last(lambda b: b.is_tool_call(event.tool_call_id))
        if block is None:
            return
        block.status = BlockStatus.ERROR
        if block.tool_call is not None:
            block.tool_call.response = event.tool_call_response or "Tool execution failed"
        state.pending_tool_call = None

    async def extract_search_results(self, state: GeneratingMessageState, event: ResponseData) -> int:
        """Turn webpage resources of a tool response into a ``search`` block.

        Returns:
            Number of results attached to the message
        """
        results = parse_webpage_resources(event.tool_call_response_raw)
        if not results:
            return 0

        search_id = str(uuid.uuid4())
        pages = [
            {"url": result.url, "icon": result.icon}
            for result in results
            if result.icon
        ][: self.config.max_pages]
        engine = event.tool_call_server_name or self.config.engine_label
        state.blocks.append(
            MessageBlock(
                type=BlockType.SEARCH,
                id=search_id,
                status=BlockStatus.SUCCESS,
                extra={
                    "total": len(results),
                    "searchId": search_id,
                    "pages": pages,
                    "label": event.tool_call_name or "web_search",
                    "name": event.tool_call_name or "web_search",
                    "engine": engine,
                    "provider": engine,
                },
            )
        )
        for result in results:
            payload = result.to_dict()
            payload["searchId"] = search_id
            await self._messages.add_message_attachment(state.message_id, "search_result", json.dumps(payload))
        throw_if_cancelled(self._store, state.message_id)
        await self._messages.edit_message(state.message_id, state.blocks)
        self._emitter.emit(
            OutboundEvent.RESPONSE,
            {"eventId": state.message_id, "search": {"searchId": search_id, "total": len(results)}},
        )
        log.info("Attached tool search results", message_id=state.message_id, total=len(results))
        return len(results)

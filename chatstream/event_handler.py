"""Applies provider stream events to the in-flight assistant message."""

from typing import Any, Awaitable, Callable

from chatstream.blocks import (
    IN_PROGRESS_STATUSES,
    ActionType,
    BlockStatus,
    BlockType,
    ImageData,
    MessageBlock,
    ReasoningTime,
    ToolCallRef,
    now_ms,
)
from chatstream.content_buffer import ContentBufferHandler
from chatstream.emitter import OutboundEvent, StreamEventEmitter
from chatstream.events import ResponseData, StreamEvent, StreamEventType, ToolCallPhase
from chatstream.logging import get_logger
from chatstream.models import MessageStatus
from chatstream.permissions import PermissionFlowManager
from chatstream.prompt_builder import approximate_token_size
from chatstream.state import GeneratingMessageState, GenerationStateStore, TotalUsage, permission_resolved
from chatstream.storage import MessageStore
from chatstream.tool_calls import ToolCallLifecycleManager

log = get_logger(__name__)

MAXIMUM_TOOL_CALLS_MESSAGE = "common.error.maximumToolCallsReached"
NO_MODEL_RESPONSE_MESSAGE = "common.error.noModelResponse"
IMAGE_URL_MIME_TYPE = "deepchat/image-url"

ToolPhaseHandler = Callable[[GeneratingMessageState, ResponseData], Awaitable[None]]


def normalize_image_data(image: ImageData) -> ImageData:
    """Split data URIs into mime type and payload; tag URL references."""
    data = image.data or ""
    if data.startswith(("imgcache://", "http://", "https://")):
        return ImageData(data=data, mime_type=IMAGE_URL_MIME_TYPE)
    if data.startswith("data:") and "," in data:
        header, payload = data.split(",", 1)
        mime_type = header[5:].split(";", 1)[0]
        return ImageData(data=payload, mime_type=mime_type or image.mime_type or "image/png")
    return ImageData(data=data, mime_type=image.mime_type or "image/png")


class LLMEventHandler:
    """Dispatcher for ``response``, ``error`` and ``end`` provider events."""

    def __init__(
        self,
        store: GenerationStateStore,
        messages: MessageStore,
        content_buffer: ContentBufferHandler,
        tool_calls: ToolCallLifecycleManager,
        permissions: PermissionFlowManager,
        emitter: StreamEventEmitter,
    ):
        self._store = store
        self._messages = messages
        self._content_buffer = content_buffer
        self._tool_calls = tool_calls
        self._permissions = permissions
        self._emitter = emitter
        self._tool_handlers: dict[ToolCallPhase, ToolPhaseHandler] = {
            ToolCallPhase.START: tool_calls.on_start,
            ToolCallPhase.UPDATE: tool_calls.on_update,
            ToolCallPhase.RUNNING: tool_calls.on_running,
            ToolCallPhase.END: tool_calls.on_end,
            ToolCallPhase.ERROR: tool_calls.on_error,
            ToolCallPhase.PERMISSION_REQUIRED: permissions.on_permission_required,
            ToolCallPhase.PERMISSION_GRANTED: permissions.on_permission_granted,
            ToolCallPhase.PERMISSION_DENIED: permissions.on_permission_denied,
            ToolCallPhase.CONTINUE: permissions.on_permission_continue,
        }

    def _live(self, state: GeneratingMessageState) -> bool:
        return not state.is_cancelled and self._store.get(state.message_id) is state

    async def handle_event(self, event: StreamEvent) -> None:
        if event.type == StreamEventType.RESPONSE and event.data is not None:
            await self.handle_response(event.data)
        elif event.type == StreamEventType.ERROR:
            await self.handle_error(event.event_id, event.error or "Unknown error")
        elif event.type == StreamEventType.END:
            await self.handle_end(event.event_id, user_stop=event.user_stop)

    async def handle_response(self, data: ResponseData) -> None:
        """Apply one response event.

        Fields are applied in a fixed order: usage, tool call limit, reasoning,
        tool call phase, image, content. Buffered text is flushed before any
        non-content payload so blocks keep their arrival order.
        """
        state = self._store.get(data.event_id)
        if state is None or state.is_cancelled:
            return
        message_id = state.message_id

        if state.first_token_time is None and (data.content or data.reasoning_content):
            state.first_token_time = now_ms()
            await self._messages.update_message_metadata(
                message_id, {"firstTokenTime": state.first_token_time - state.start_time}
            )
            if not self._live(state):
                return

        if data.total_usage:
            state.total_usage = TotalUsage.from_dict(data.total_usage)

        if data.has_non_content_payload and state.adaptive_buffer is not None:
            await self._content_buffer.flush(message_id)
            if not self._live(state):
                return

        if data.maximum_tool_calls_reached:
            state.blocks.append(
                MessageBlock(
                    type=BlockType.ACTION,
                    action_type=ActionType.MAXIMUM_TOOL_CALLS_REACHED,
                    content=MAXIMUM_TOOL_CALLS_MESSAGE,
                    status=BlockStatus.SUCCESS,
                    tool_call=ToolCallRef(
                        id=data.tool_call_id or "",
                        name=data.tool_call_name or "",
                        params=data.tool_call_params or "",
                        server_name=data.tool_call_server_name,
                        server_icons=data.tool_call_server_icons,
                        server_description=data.tool_call_server_description,
                    ),
                    extra={"needContinue": True},
                )
            )

        if data.reasoning_content:
            now = now_ms()
            if state.reasoning_start_time is None:
                state.reasoning_start_time = now
            state.reasoning_end_time = now
            state.blocks.append_or_merge(
                MessageBlock(
                    type=BlockType.REASONING,
                    content=data.reasoning_content,
                    reasoning_time=ReasoningTime(start=now, end=now),
                )
            )

        if data.tool_call is not None:
            handler = self._tool_handlers.get(data.tool_call)
            if handler is None:
                log.warning("Unknown tool call phase", message_id=message_id, phase=data.tool_call)
            else:
                await handler(state, data)
                if data.tool_call == ToolCallPhase.PERMISSION_REQUIRED:
                    # Persisted and emitted by the permission manager.
                    return
                if not self._live(state):
                    return

        if data.image_data is not None:
            state.blocks.append(
                MessageBlock(
                    type=BlockType.IMAGE,
                    status=BlockStatus.SUCCESS,
                    image_data=normalize_image_data(data.image_data),
                )
            )

        buffered = False
        if data.content:
            if self._content_buffer.should_buffer(state, data.content):
                await self._content_buffer.enqueue(state, message_id, data.content)
                buffered = True
            else:
                state.blocks.append_or_merge(MessageBlock(type=BlockType.CONTENT, content=data.content))

        payload = data.to_dict()
        if buffered:
            payload.pop("content", None)
            if len(payload) == 1:
                return
        if not self._live(state):
            return
        await self._messages.edit_message(message_id, state.blocks)
        self._emitter.emit(OutboundEvent.RESPONSE, payload)

    async def handle_error(self, message_id: str, error: str) -> None:
        state = self._store.get(message_id)
        if state is None:
            log.debug("Error event for unknown generation", message_id=message_id, error=error)
            return
        log.error("Generation failed", message_id=message_id, error=error)
        if state.adaptive_buffer is not None:
            await self._content_buffer.flush(message_id, force=True)
        self._content_buffer.cleanup(state)
        await self._messages.handle_message_error(state.message, error)
        self._store.delete(message_id)
        self._emitter.emit(OutboundEvent.ERROR, {"eventId": message_id, "error": error})

    async def handle_end(self, message_id: str, user_stop: bool = False) -> None:
        state = self._store.get(message_id)
        if state is None:
            return
        if state.adaptive_buffer is not None:
            await self._content_buffer.flush(message_id)
        if self._store.get(message_id) is not state:
            return

        if state.blocks.pending_permission() is not None:
            # Parked: keep the state for the permission answer.
            state.blocks.set_status((BlockStatus.LOADING,), BlockStatus.SUCCESS)
            await self._messages.edit_message(message_id, state.blocks)
            log.info("Generation paused for permission", message_id=message_id)
            return

        await self.finalize_message(state, user_stop=user_stop)

    @staticmethod
    def _has_output(state: GeneratingMessageState) -> bool:
        for block in state.blocks:
            if block.type in (BlockType.CONTENT, BlockType.REASONING) and block.content.strip():
                return True
            if block.type in (BlockType.TOOL_CALL, BlockType.IMAGE):
                return True
        return False

    def _generation_metadata(self, state: GeneratingMessageState) -> dict[str, Any]:
        end_time = now_ms()
        usage = state.total_usage
        generated_text = state.blocks.text_of(BlockType.CONTENT) + state.blocks.text_of(BlockType.REASONING)

        input_tokens = usage.prompt_tokens if usage and usage.prompt_tokens else state.prompt_tokens
        if usage and usage.completion_tokens:
            output_tokens = usage.completion_tokens
        else:
            output_tokens = approximate_token_size(generated_text)
        total_tokens = input_tokens + output_tokens

        generation_time = end_time - state.start_time
        first_token = state.first_token_time - state.start_time if state.first_token_time else 0
        tokens_per_second = output_tokens / (generation_time / 1000) if generation_time > 0 else 0

        context_length = (usage.context_length if usage else 0) or int(state.message.metadata.get("contextLength") or 0)
        context_usage = min(total_tokens / context_length * 100, 100) if context_length else 0

        metadata: dict[str, Any] = {
            "totalTokens": total_tokens,
            "inputTokens": input_tokens,
            "outputTokens": output_tokens,
            "generationTime": generation_time,
            "firstTokenTime": first_token,
            "tokensPerSecond": round(tokens_per_second, 2),
            "contextUsage": round(context_usage, 2),
        }
        if state.reasoning_start_time is not None:
            metadata["reasoningStartTime"] = state.reasoning_start_time - state.start_time
            metadata["reasoningEndTime"] = (state.reasoning_end_time or end_time) - state.start_time
        return metadata

    async def finalize_message(self, state: GeneratingMessageState, user_stop: bool = False) -> None:
        """Close every open block, record usage metadata and mark the message sent."""
        message_id = state.message_id
        self._content_buffer.cleanup(state)

        blocks = state.blocks
        blocks.set_status(IN_PROGRESS_STATUSES, BlockStatus.SUCCESS)
        for block in blocks:
            if block.is_permission_action and permission_resolved(block.status):
                block.status = BlockStatus.SUCCESS

        if not user_stop and not self._has_output(state):
            blocks.append(
                MessageBlock(type=BlockType.ERROR, content=NO_MODEL_RESPONSE_MESSAGE, status=BlockStatus.ERROR)
            )

        metadata = self._generation_metadata(state)
        state.message.metadata.update(metadata)
        state.message.status = MessageStatus.SENT

        await self._messages.update_message_metadata(message_id, metadata)
        await self._messages.update_message_status(message_id, MessageStatus.SENT)
        await self._messages.edit_message(message_id, blocks)
        self._store.delete(message_id)

        log.info(
            "Generation finished",
            message_id=message_id,
            conversation_id=state.conversation_id,
            total_tokens=metadata["totalTokens"],
            generation_time=metadata["generationTime"],
        )
        self._emitter.emit(OutboundEvent.END, {"eventId": message_id, "userStop": user_stop})
        self._emitter.emit(
            OutboundEvent.MESSAGE_GENERATED,
            {"conversationId": state.conversation_id, "messageId": message_id},
        )

"""Tool permission suspension and resumption."""

import asyncio
import json
from typing import TYPE_CHECKING

from chatstream.blocks import ActionType, BlockStatus, BlockType, MessageBlock, ToolCallRef
from chatstream.cancellation import is_cancellation_error, throw_if_cancelled
from chatstream.config import PermissionConfig, get_config
from chatstream.emitter import OutboundEvent, StreamEventEmitter
from chatstream.events import PERMISSION_TYPES, PermissionRequest, ResponseData, ToolCallPhase
from chatstream.exceptions import (
    GenerationCancelledError,
    PermissionBlockNotFoundError,
    PermissionGrantError,
    ToolNotFoundError,
)
from chatstream.logging import get_logger
from chatstream.models import Message, MessageStatus
from chatstream.retry import poll_until
from chatstream.state import (
    GeneratingMessageState,
    GenerationStateStore,
    PendingToolCall,
)
from chatstream.storage import MessageStore
from chatstream.tool_calls import ToolCallLifecycleManager
from chatstream.tools.registry import ToolCallRequest, ToolDefinition, ToolExecutor

if TYPE_CHECKING:
    from chatstream.llm import LLMStreamProvider
    from chatstream.orchestrator import StreamGenerationOrchestrator

log = get_logger(__name__)

AGENT_PROVIDER_ID = "acp"


def normalize_permission_type(value: str | None) -> str:
    """Clamp a requested permission type to read/write/all, defaulting to read."""
    cleaned = str(value or "").strip().lower()
    if cleaned in PERMISSION_TYPES:
        return cleaned
    log.warning("Invalid permission type, defaulting to read", permission_type=value)
    return "read"


def canonical_server_name(
    request: PermissionRequest | None,
    event: ResponseData | None,
    ref: ToolCallRef | None,
) -> str | None:
    """Server name for a permission: request, then event, then recorded tool call."""
    if request is not None and request.server_name:
        return request.server_name
    if event is not None and event.tool_call_server_name:
        return event.tool_call_server_name
    if ref is not None and ref.server_name:
        return ref.server_name
    return None


def is_stopped_message(message: Message) -> bool:
    """Whether a persisted message already ended in an error or a user stop."""
    if message.status == MessageStatus.ERROR:
        return True
    last = message.blocks.last
    return last is not None and last.type == BlockType.ERROR and last.status == BlockStatus.CANCEL


class PermissionFlowManager:
    """Parks a generation on a permission request and resumes it on the user's answer.

    On grant the approved call runs directly (no model round trip) and its
    result is folded into a new provider stream. On deny the model is told the
    tool failed because permission was refused.
    """

    def __init__(
        self,
        store: GenerationStateStore,
        messages: MessageStore,
        tools: ToolExecutor,
        provider: "LLMStreamProvider",
        tool_calls: ToolCallLifecycleManager,
        emitter: StreamEventEmitter,
        resumer: "StreamGenerationOrchestrator",
        config: PermissionConfig | None = None,
    ):
        self._store = store
        self._messages = messages
        self._tools = tools
        self._provider = provider
        self._tool_calls = tool_calls
        self._emitter = emitter
        self._resumer = resumer
        self.config = config or get_config().permission

    # Provider-driven transitions

    async def on_permission_required(self, state: GeneratingMessageState, event: ResponseData) -> None:
        """Push a pending permission block and record the call to resume later."""
        request = event.permission_request or PermissionRequest()
        permission_type = normalize_permission_type(request.permission_type)

        existing = state.blocks.pending_permission()
        if existing is not None:
            log.warning(
                "Permission already pending, ignoring request",
                message_id=state.message_id,
                pending_tool_call_id=existing.tool_call.id if existing.tool_call else None,
                tool_call_id=event.tool_call_id,
            )
            return

        tool_block = state.blocks.find_last(lambda b: b.is_tool_call(event.tool_call_id))
        if tool_block is not None and tool_block.is_open:
            tool_block.status = BlockStatus.SUCCESS
        recorded = tool_block.tool_call if tool_block is not None else None

        server_name = canonical_server_name(request, event, recorded)
        ref = ToolCallRef(
            id=event.tool_call_id or (recorded.id if recorded else ""),
            name=event.tool_call_name or (recorded.name if recorded else "") or request.tool_name,
            params=event.tool_call_params or (recorded.params if recorded else ""),
            server_name=server_name,
            server_icons=event.tool_call_server_icons or (recorded.server_icons if recorded else None),
            server_description=event.tool_call_server_description
            or (recorded.server_description if recorded else None),
        )
        request.permission_type = permission_type
        if server_name and not request.server_name:
            request.server_name = server_name

        state.blocks.append(
            MessageBlock(
                type=BlockType.ACTION,
                action_type=ActionType.TOOL_CALL_PERMISSION,
                content=request.description or event.tool_call_response or "",
                status=BlockStatus.PENDING,
                tool_call=ref,
                extra={
                    "needsUserAction": True,
                    "permissionType": permission_type,
                    "permissionRequest": json.dumps(request.to_dict()),
                    "toolName": ref.name,
                    "serverName": server_name,
                    "providerId": request.provider_id,
                    "permissionRequestId": request.request_id,
                    "rememberable": request.rememberable,
                    "agentId": request.agent_id,
                    "agentName": request.agent_name,
                    "sessionId": request.session_id,
                },
            )
        )
        state.is_searching = True
        state.pending_tool_call = PendingToolCall.from_tool_call(ref, server_name)

        await self._messages.edit_message(state.message_id, state.blocks)
        self._emitter.emit(OutboundEvent.RESPONSE, event.to_dict())
        log.info(
            "Permission required",
            message_id=state.message_id,
            tool=ref.name,
            server=server_name,
            permission_type=permission_type,
        )

    def _find_permission_block(
        self,
        state: GeneratingMessageState,
        tool_call_id: str | None,
        statuses: tuple[BlockStatus, ...],
    ) -> MessageBlock | None:
        return state.blocks.find_last(
            lambda b: b.is_permission_action
            and b.tool_call is not None
            and b.tool_call.id == tool_call_id
            and b.status in statuses
        )

    async def _resolve_from_event(self, state: GeneratingMessageState, event: ResponseData, status: BlockStatus) -> None:
        block = self._find_permission_block(state, event.tool_call_id, (BlockStatus.PENDING,))
        if block is None:
            return
        block.status = status
        block.extra["needsUserAction"] = False
        state.is_searching = False
        await self._messages.edit_message(state.message_id, state.blocks)

    async def on_permission_granted(self, state: GeneratingMessageState, event: ResponseData) -> None:
        await self._resolve_from_event(state, event, BlockStatus.GRANTED)

    async def on_permission_denied(self, state: GeneratingMessageState, event: ResponseData) -> None:
        await self._resolve_from_event(state, event, BlockStatus.DENIED)

    async def on_permission_continue(self, state: GeneratingMessageState, event: ResponseData) -> None:
        block = self._find_permission_block(state, event.tool_call_id, (BlockStatus.GRANTED, BlockStatus.DENIED))
        if block is None:
            return
        block.status = BlockStatus.SUCCESS
        await self._messages.edit_message(state.message_id, state.blocks)

    # User-driven resolution

    async def handle_permission_response(
        self,
        message_id: str,
        tool_call_id: str,
        granted: bool,
        permission_type: str,
        remember: bool | None = None,
    ) -> None:
        """Apply the user's answer to a pending permission and resume generation.

        Raises:
            PermissionBlockNotFoundError if no pending permission matches
            GenerationCancelledError if the message was already stopped
            PermissionGrantError if granting or resuming fails
        """
        remember = self.config.remember_by_default if remember is None else remember
        permission_type = normalize_permission_type(permission_type)

        state = self._store.get(message_id)
        message = state.message if state is not None else await self._messages.get_message(message_id)
        if (state is not None and state.is_cancelled) or is_stopped_message(message):
            log.warning("Permission answer for a stopped message", message_id=message_id, tool_call_id=tool_call_id)
            raise GenerationCancelledError(message_id)
        block = message.blocks.find_last(
            lambda b: b.is_permission_action
            and b.tool_call is not None
            and b.tool_call.id == tool_call_id
            and b.status == BlockStatus.PENDING
        )
        if block is None:
            raise PermissionBlockNotFoundError(message_id, tool_call_id)

        block.status = BlockStatus.GRANTED if granted else BlockStatus.DENIED
        block.extra["needsUserAction"] = False
        if granted:
            block.extra["grantedPermissions"] = permission_type
        await self._messages.edit_message(message_id, message.blocks)
        log.info(
            "Permission answered",
            message_id=message_id,
            tool_call_id=tool_call_id,
            granted=granted,
            permission_type=permission_type,
        )

        try:
            if block.extra.get("providerId") == AGENT_PROVIDER_ID:
                await self._resolve_agent_permission(state, block, granted)
                return

            if granted:
                server_name = block.extra.get("serverName") or (block.tool_call.server_name if block.tool_call else None)
                if not server_name:
                    raise PermissionGrantError("Cannot grant permission without a server name")
                try:
                    await self._tools.grant_permission(server_name, permission_type, remember)
                except Exception as e:
                    raise PermissionGrantError(f"Failed to grant permission: {e}", server_name) from e
                await self.wait_for_server_ready(server_name)

            if state is None:
                state = await self._resumer.rebuild_generation_state(message)

            if granted:
                await self.restart_after_permission(state, block)
            else:
                await self.continue_after_permission_denied(state, block)
        except Exception as e:
            if is_cancellation_error(e):
                log.info("Generation cancelled during permission resume", message_id=message_id)
                return
            log.error("Permission resume failed", message_id=message_id, error=str(e))
            await self._fail(message, block, e)
            raise

    async def _resolve_agent_permission(
        self,
        state: GeneratingMessageState | None,
        block: MessageBlock,
        granted: bool,
    ) -> None:
        request_id = block.extra.get("permissionRequestId")
        if not request_id:
            raise PermissionGrantError("Agent permission has no request id")
        await self._provider.resolve_agent_permission(request_id, granted)
        if state is not None:
            state.is_searching = False

    async def _fail(self, message: Message, block: MessageBlock, error: BaseException) -> None:
        block.status = BlockStatus.ERROR
        state = self._store.get(message.id)
        if state is not None:
            state.cancel_timers()
            state.adaptive_buffer = None
        await self._messages.handle_message_error(message, str(error))
        self._store.delete(message.id)
        self._emitter.emit(OutboundEvent.ERROR, {"eventId": message.id, "error": str(error)})

    async def wait_for_server_ready(self, server_name: str) -> bool:
        """Poll until the tool server reports running, within the configured bound."""
        ready = await poll_until(
            lambda: self._tools.is_server_running(server_name),
            timeout=self.config.ready_timeout,
            interval=self.config.ready_poll_interval,
        )
        if ready:
            await asyncio.sleep(self.config.ready_settle_delay)
        else:
            log.warning("Tool server not ready after grant", server=server_name, timeout=self.config.ready_timeout)
        return ready

    @staticmethod
    def find_pending_tool_call(state: GeneratingMessageState, block: MessageBlock) -> PendingToolCall | None:
        """Rebuild the resumption descriptor from a granted permission block.

        Returns None when the call already has a response.
        """
        ref = block.tool_call
        if ref is None or not ref.id or not ref.name:
            return None
        answered = state.blocks.find_last(
            lambda b: b.is_tool_call(ref.id) and b.tool_call is not None and bool(b.tool_call.response)
        )
        if answered is not None:
            return None
        return PendingToolCall.from_tool_call(ref, block.extra.get("serverName"))

    async def restart_after_permission(self, state: GeneratingMessageState, block: MessageBlock) -> None:
        if state.pending_tool_call is None:
            state.pending_tool_call = self.find_pending_tool_call(state, block)
        state.is_searching = False

        if state.pending_tool_call is not None:
            await self.resume_with_pending_tool_call(state, block)
        else:
            await self.resume_stream_completion(state, block)

    async def resume_stream_completion(self, state: GeneratingMessageState, block: MessageBlock) -> None:
        """Restart the provider stream telling the model the permission was granted."""
        throw_if_cancelled(self._store, state.message_id)
        await self._resumer.resume_after_grant(state, block)

    def _match_definition(
        self,
        definitions: list[ToolDefinition],
        pending: PendingToolCall,
    ) -> ToolDefinition | None:
        fallback = None
        for definition in definitions:
            if definition.name != pending.name:
                continue
            if not pending.server_name or definition.server.name == pending.server_name:
                return definition
            fallback = fallback or definition
        return fallback

    async def resume_with_pending_tool_call(self, state: GeneratingMessageState, block: MessageBlock) -> None:
        """Execute the approved call directly, then let the model continue."""
        pending = state.pending_tool_call
        if pending is None:
            raise PermissionGrantError("No pending tool call to resume")
        message_id = state.message_id

        throw_if_cancelled(self._store, message_id)
        conversation = await self._messages.get_conversation(state.conversation_id)
        throw_if_cancelled(self._store, message_id)
        definitions = await self._tools.get_all_tool_definitions(conversation.settings.enabled_mcp_tools)
        throw_if_cancelled(self._store, message_id)

        definition = self._match_definition(definitions, pending)
        if definition is None:
            raise ToolNotFoundError(pending.name)
        server = definition.server
        base = {
            "event_id": message_id,
            "tool_call_id": pending.id,
            "tool_call_name": pending.name,
            "tool_call_params": pending.params,
            "tool_call_server_name": server.name,
            "tool_call_server_icons": server.icons,
            "tool_call_server_description": server.description,
        }

        running = ResponseData(tool_call=ToolCallPhase.RUNNING, **base)
        await self._tool_calls.on_running(state, running)
        self._emitter.emit(OutboundEvent.RESPONSE, running.to_dict())

        try:
            response = await self._tools.call_tool(
                ToolCallRequest(
                    id=pending.id,
                    name=pending.name,
                    arguments=pending.params,
                    server_name=server.name,
                    server_icons=server.icons,
                    server_description=server.description,
                )
            )
        except Exception as e:
            failure = ResponseData(tool_call=ToolCallPhase.ERROR, tool_call_response=str(e), **base)
            await self._tool_calls.on_error(state, failure)
            await self._messages.edit_message(message_id, state.blocks)
            self._emitter.emit(OutboundEvent.RESPONSE, failure.to_dict())
            raise
        throw_if_cancelled(self._store, message_id)

        if response.raw_data.requires_permission:
            block.status = BlockStatus.SUCCESS
            state.pending_tool_call = None
            await self.on_permission_required(
                state,
                ResponseData(
                    tool_call=ToolCallPhase.PERMISSION_REQUIRED,
                    tool_call_response=response.content,
                    permission_request=response.raw_data.permission_request,
                    **base,
                ),
            )
            return

        end = ResponseData(
            tool_call=ToolCallPhase.END,
            tool_call_response=response.content,
            tool_call_response_raw=response.raw_data.to_dict(),
            **base,
        )
        await self._tool_calls.on_end(state, end)
        await self._messages.edit_message(message_id, state.blocks)
        self._emitter.emit(OutboundEvent.RESPONSE, end.to_dict())
        throw_if_cancelled(self._store, message_id)

        await self._resumer.continue_with_tool_result(state, pending, response.content)

    async def continue_after_permission_denied(self, state: GeneratingMessageState, block: MessageBlock) -> None:
        """Tell the model the tool failed because the user refused permission."""
        ref = block.tool_call or ToolCallRef()
        pending = state.pending_tool_call or PendingToolCall.from_tool_call(ref, block.extra.get("serverName"))
        error_text = f"Tool execution failed: Permission denied by user for {pending.name or 'this tool'}"

        denied = ResponseData(
            event_id=state.message_id,
            tool_call=ToolCallPhase.ERROR,
            tool_call_id=pending.id,
            tool_call_name=pending.name,
            tool_call_params=pending.params,
            tool_call_response=error_text,
        )
        await self._tool_calls.on_error(state, denied)
        state.pending_tool_call = None
        state.is_searching = False
        await self._messages.edit_message(state.message_id, state.blocks)
        self._emitter.emit(OutboundEvent.RESPONSE, denied.to_dict())
        throw_if_cancelled(self._store, state.message_id)

        await self._resumer.continue_with_tool_result(state, pending, error_text)

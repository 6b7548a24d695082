"""Streaming generation orchestrator.

Turns a user message into a provider stream, feeds every stream event to the
event handler and exposes the resume points used after permission answers,
tool-call limits and user cancellation.
"""

import asyncio
from dataclasses import replace
from typing import Any, AsyncIterator

from chatstream.blocks import ActionType, BlockSequence, BlockType, MessageBlock, ToolCallRef, now_ms
from chatstream.cancellation import CancellationController, is_cancellation_error, throw_if_cancelled
from chatstream.config import Config, ModelCapabilityConfig, get_config
from chatstream.content_buffer import ContentBufferHandler
from chatstream.emitter import StreamEventEmitter
from chatstream.event_handler import LLMEventHandler
from chatstream.events import ResponseData, ToolCallPhase
from chatstream.exceptions import ChatStreamError
from chatstream.llm import LLMStreamProvider, StreamRequest
from chatstream.logging import generation_context, get_logger
from chatstream.message_content import (
    ContentEnricher,
    EnrichedLink,
    extract_urls,
    format_user_message_content,
)
from chatstream.models import (
    Conversation,
    Message,
    MessageFile,
    MessageRole,
    MessageStatus,
    has_usable_assistant_content,
)
from chatstream.permissions import PermissionFlowManager
from chatstream.prompt_builder import (
    ChatMessage,
    approximate_token_size,
    build_continue_tool_call_context,
    build_post_tool_execution_context,
    context_message_limit,
    messages_tokens,
    prepare_prompt_content,
    select_context_messages,
)
from chatstream.search import SearchEngine, SearchHandler
from chatstream.state import GeneratingMessageState, GenerationStateStore, PendingToolCall
from chatstream.storage import MessageStore
from chatstream.tool_calls import ToolCallLifecycleManager
from chatstream.tools.registry import ToolCallRequest, ToolCallResponse, ToolDefinition, ToolExecutor

log = get_logger(__name__)

CONTINUE_PROMPT = "continue"

ConversationContext = tuple[Conversation, Message, list[Message]]


def apply_variant_to_assistant(message: Message, variant_id: str | None = None) -> Message:
    """Swap an assistant message's content for one of its variants.

    Without ``variant_id`` the newest variant with usable content is chosen,
    falling back to the newest variant.
    """
    if message.role != MessageRole.ASSISTANT or not message.variants:
        return message
    variants = message.variants
    selected = next((v for v in variants if variant_id and v.id == variant_id), None)
    if selected is None:
        selected = next((v for v in reversed(variants) if has_usable_assistant_content(v)), variants[-1])
    return replace(message, content=selected.content, metadata=dict(selected.metadata))


class StreamGenerationOrchestrator:
    """Entry point of the generation core.

    Owns the per-component managers and shares one ``GenerationStateStore``
    between them.
    """

    def __init__(
        self,
        messages: MessageStore,
        provider: LLMStreamProvider,
        tools: ToolExecutor,
        *,
        search_engine: SearchEngine | None = None,
        enricher: ContentEnricher | None = None,
        store: GenerationStateStore | None = None,
        emitter: StreamEventEmitter | None = None,
        config: Config | None = None,
    ):
        self.config = config or get_config()
        self.store = store or GenerationStateStore()
        self.emitter = emitter or StreamEventEmitter()
        self._messages = messages
        self._provider = provider
        self._tools = tools
        self._enricher = enricher
        self._tasks: set[asyncio.Task[Any]] = set()

        self.content_buffer = ContentBufferHandler(self.store, messages, self.emitter, self.config.buffer)
        self.tool_calls = ToolCallLifecycleManager(self.store, messages, self.emitter, self.config.search)
        self.permissions = PermissionFlowManager(
            self.store,
            messages,
            tools,
            provider,
            self.tool_calls,
            self.emitter,
            resumer=self,
            config=self.config.permission,
        )
        self.events = LLMEventHandler(
            self.store, messages, self.content_buffer, self.tool_calls, self.permissions, self.emitter
        )
        self.search = (
            SearchHandler(self.store, messages, provider, search_engine, self.config.search, self.config.context)
            if search_engine is not None
            else None
        )
        self.cancellation = CancellationController(
            self.store, messages, provider, self.content_buffer, self.emitter, self.search
        )

    # Entry points

    async def generate_ai_response(self, conversation_id: str, user_message_id: str) -> Message:
        """Create the assistant message answering ``user_message_id`` and register its state."""
        try:
            await self._messages.get_message(user_message_id)
            await self._messages.update_message_status(user_message_id, MessageStatus.SENT)
            assistant = await self._create_assistant_message(conversation_id, user_message_id)
        except Exception as e:
            log.error("Failed to create assistant message", conversation_id=conversation_id, error=str(e))
            await self._messages.update_message_status(user_message_id, MessageStatus.ERROR)
            raise
        self.store.set(assistant.id, GeneratingMessageState(message=assistant, conversation_id=conversation_id))
        return assistant

    async def regenerate_from_user_message(
        self,
        conversation_id: str,
        user_message_id: str,
        variant_map: dict[str, str] | None = None,
    ) -> Message:
        """Start a fresh answer to an existing user message in the background."""
        user_message = await self._messages.get_message(user_message_id)
        if user_message.role != MessageRole.USER:
            raise ChatStreamError("Can only regenerate from a user message")

        assistant = await self._create_assistant_message(conversation_id, user_message_id)
        self.store.set(assistant.id, GeneratingMessageState(message=assistant, conversation_id=conversation_id))
        self._spawn(self.start_stream_completion(conversation_id, user_message_id, variant_map))
        return assistant

    async def start_stream_completion(
        self,
        conversation_id: str,
        query_message_id: str | None = None,
        variant_map: dict[str, str] | None = None,
    ) -> None:
        """Generate the registered assistant message of a conversation."""
        state = self.find_generating_state(conversation_id)
        if state is None:
            log.warning("No generation state for conversation", conversation_id=conversation_id)
            return
        message_id = state.message_id

        try:
            conversation, user_message, context = await self.prepare_conversation_context(
                conversation_id, query_message_id, variant_map
            )
            capability = self._capability(conversation)
            throw_if_cancelled(self.store, message_id)

            user_content, links, _ = await self.process_user_message_content(user_message)
            throw_if_cancelled(self.store, message_id)

            search_results = None
            if user_message.user_content.search and self.search is not None:
                search_results = await self.search.start_stream_search(state, user_content)
                throw_if_cancelled(self.store, message_id)

            tool_definitions = await self._tool_definitions(conversation, capability)
            throw_if_cancelled(self.store, message_id)

            prompt = prepare_prompt_content(
                conversation,
                user_message,
                user_content,
                context,
                tool_definitions=tool_definitions,
                links=links,
                search_results=search_results,
                vision=capability.vision,
                supports_function_call=capability.function_call,
            )
            throw_if_cancelled(self.store, message_id)

            await self.update_generation_state(state, prompt.prompt_tokens, conversation.settings.context_length)
            throw_if_cancelled(self.store, message_id)

            await self._stream(state, prompt.messages)
        except Exception as e:
            if is_cancellation_error(e):
                log.info("Generation cancelled by user", message_id=message_id)
                return
            log.error("Streaming generation failed", message_id=message_id, error=str(e))
            await self._fail_generation(state, e)
            raise

    async def continue_stream_completion(
        self,
        conversation_id: str,
        query_message_id: str,
        variant_map: dict[str, str] | None = None,
    ) -> None:
        """Carry on after a message stopped at the tool call limit.

        The stalled tool call is executed first when it is complete, and its
        result is folded into the prompt of the new stream.
        """
        state = self.find_generating_state(conversation_id)
        if state is None:
            log.warning("No generation state for conversation", conversation_id=conversation_id)
            return
        message_id = state.message_id

        try:
            query_message = await self._messages.get_message(query_message_id)
            action = query_message.blocks.find_last(lambda b: b.type == BlockType.ACTION)
            if action is None:
                raise ChatStreamError("Last action block not found")

            tool = action.tool_call
            tool_content: str | None = None
            tool_raw: dict[str, Any] | None = None
            if action.action_type == ActionType.MAXIMUM_TOOL_CALLS_REACHED and tool is not None:
                action.extra["needContinue"] = False
                await self._messages.edit_message(query_message_id, query_message.blocks)
                if not (tool.id and tool.name and tool.params):
                    log.warning("Stalled tool call is incomplete", message_id=query_message_id, tool=tool.name)
                else:
                    response = await self._tools.call_tool(
                        ToolCallRequest(
                            id=tool.id,
                            name=tool.name,
                            arguments=tool.params,
                            server_name=tool.server_name,
                            server_icons=tool.server_icons,
                            server_description=tool.server_description,
                        )
                    )
                    throw_if_cancelled(self.store, message_id)
                    if response.raw_data.requires_permission:
                        await self._park_on_permission(state, tool, response)
                        return
                    tool_content = response.content
                    tool_raw = response.raw_data.to_dict()
            throw_if_cancelled(self.store, message_id)

            conversation, user_message, context = await self.prepare_conversation_context(
                conversation_id, message_id, variant_map
            )
            capability = self._capability(conversation)
            throw_if_cancelled(self.store, message_id)

            if tool is not None and tool_content is not None:
                common = {
                    "event_id": message_id,
                    "tool_call_id": tool.id,
                    "tool_call_name": tool.name,
                    "tool_call_params": tool.params,
                    "tool_call_server_name": tool.server_name,
                    "tool_call_server_icons": tool.server_icons,
                    "tool_call_server_description": tool.server_description,
                }
                await self.events.handle_response(ResponseData(tool_call=ToolCallPhase.START, **common))
                await self.events.handle_response(ResponseData(tool_call=ToolCallPhase.RUNNING, **common))
                await self.events.handle_response(
                    ResponseData(
                        tool_call=ToolCallPhase.END,
                        tool_call_response=tool_content,
                        tool_call_response_raw=tool_raw,
                        **common,
                    )
                )
                throw_if_cancelled(self.store, message_id)
                messages = build_post_tool_execution_context(
                    conversation,
                    self._select_history(conversation, user_message, context, capability),
                    user_message,
                    state.message,
                    PendingToolCall.from_tool_call(tool),
                    tool_content,
                    capability.function_call,
                )
                prompt_tokens = messages_tokens(messages)
            else:
                prompt = prepare_prompt_content(
                    conversation,
                    user_message,
                    CONTINUE_PROMPT,
                    context,
                    vision=False,
                    supports_function_call=capability.function_call,
                )
                messages, prompt_tokens = prompt.messages, prompt.prompt_tokens

            await self.update_generation_state(state, prompt_tokens, conversation.settings.context_length)
            throw_if_cancelled(self.store, message_id)
            await self._stream(state, messages)
        except Exception as e:
            if is_cancellation_error(e):
                log.info("Continue generation cancelled by user", message_id=message_id)
                return
            log.error("Continue generation failed", message_id=message_id, error=str(e))
            await self._fail_generation(state, e)
            raise

    async def _park_on_permission(
        self,
        state: GeneratingMessageState,
        tool: ToolCallRef,
        response: ToolCallResponse,
    ) -> None:
        """Record a stalled call that still needs permission and wait for the user."""
        common = {
            "event_id": state.message_id,
            "tool_call_id": tool.id,
            "tool_call_name": tool.name,
            "tool_call_params": tool.params,
            "tool_call_server_name": tool.server_name,
            "tool_call_server_icons": tool.server_icons,
            "tool_call_server_description": tool.server_description,
        }
        await self.events.handle_response(ResponseData(tool_call=ToolCallPhase.START, **common))
        await self.events.handle_response(
            ResponseData(
                tool_call=ToolCallPhase.PERMISSION_REQUIRED,
                tool_call_response=response.content,
                permission_request=response.raw_data.permission_request,
                **common,
            )
        )
        log.info("Stalled tool call needs permission", message_id=state.message_id, tool=tool.name)

    async def handle_permission_response(
        self,
        message_id: str,
        tool_call_id: str,
        granted: bool,
        permission_type: str,
        remember: bool | None = None,
    ) -> None:
        await self.permissions.handle_permission_response(
            message_id, tool_call_id, granted, permission_type, remember
        )

    async def stop_message_generation(self, message_id: str) -> bool:
        return await self.cancellation.stop_message_generation(message_id)

    async def stop_conversation_generation(self, conversation_id: str) -> int:
        return await self.cancellation.stop_conversation_generation(conversation_id)

    # Resume points used by the permission flow

    async def continue_with_tool_result(
        self,
        state: GeneratingMessageState,
        tool_call: PendingToolCall,
        response: str,
    ) -> None:
        """Open a new stream with a finished (or refused) tool call folded in."""
        message_id = state.message_id
        throw_if_cancelled(self.store, message_id)
        conversation, user_message, context = await self.prepare_conversation_context(
            state.conversation_id, message_id
        )
        capability = self._capability(conversation)
        throw_if_cancelled(self.store, message_id)

        messages = build_post_tool_execution_context(
            conversation,
            self._select_history(conversation, user_message, context, capability),
            user_message,
            state.message,
            tool_call,
            response,
            capability.function_call,
        )
        await self.update_generation_state(state, messages_tokens(messages), conversation.settings.context_length)
        throw_if_cancelled(self.store, message_id)
        await self._stream(state, messages)

    async def resume_after_grant(self, state: GeneratingMessageState, block: MessageBlock) -> None:
        """Restart generation after a grant when no pending call can run directly."""
        message_id = state.message_id
        conversation, user_message, context = await self.prepare_conversation_context(
            state.conversation_id, message_id
        )
        capability = self._capability(conversation)
        throw_if_cancelled(self.store, message_id)

        tool = block.tool_call
        if tool is not None and tool.id and tool.name:
            messages = build_continue_tool_call_context(
                conversation,
                self._select_history(conversation, user_message, context, capability),
                user_message,
                PendingToolCall.from_tool_call(tool, block.extra.get("serverName")),
                capability.function_call,
            )
            prompt_tokens = messages_tokens(messages)
        else:
            prompt = prepare_prompt_content(
                conversation,
                user_message,
                CONTINUE_PROMPT,
                context,
                supports_function_call=capability.function_call,
            )
            messages, prompt_tokens = prompt.messages, prompt.prompt_tokens

        await self.update_generation_state(state, prompt_tokens, conversation.settings.context_length)
        throw_if_cancelled(self.store, message_id)
        await self._stream(state, messages)

    async def rebuild_generation_state(self, message: Message) -> GeneratingMessageState:
        """Register a state for a persisted message whose state was dropped."""
        existing = self.store.get(message.id)
        if existing is not None:
            return existing
        state = GeneratingMessageState(message=message, conversation_id=message.conversation_id)
        self.store.set(message.id, state)
        log.info("Rebuilt generation state", message_id=message.id, conversation_id=message.conversation_id)
        return state

    # Context

    def find_generating_state(self, conversation_id: str) -> GeneratingMessageState | None:
        return self.store.find_by_conversation(conversation_id)

    async def prepare_conversation_context(
        self,
        conversation_id: str,
        query_message_id: str | None = None,
        variant_map: dict[str, str] | None = None,
    ) -> ConversationContext:
        """Resolve the conversation, the user message being answered and its history."""
        conversation = await self._messages.get_conversation(conversation_id)
        limit = context_message_limit(
            conversation.settings.context_length,
            self.config.context.chars_per_message,
            self.config.context.min_messages,
        )

        if query_message_id:
            query_message = await self._messages.get_message(query_message_id)
            if query_message.role == MessageRole.USER:
                user_message = query_message
            elif query_message.role == MessageRole.ASSISTANT:
                if not query_message.parent_id:
                    raise ChatStreamError(f"Assistant message {query_message_id} has no parent")
                user_message = await self._messages.get_message(query_message.parent_id)
            else:
                raise ChatStreamError(f"Unsupported message role: {query_message.role.value}")
            context = await self._messages.get_message_history(user_message.id, limit)
        else:
            last_user = await self._messages.get_last_user_message(conversation_id)
            if last_user is None:
                raise ChatStreamError("User message not found")
            user_message = last_user
            context = await self._messages.get_context_messages(conversation_id, limit)

        if variant_map:
            context = [
                apply_variant_to_assistant(m, variant_map[m.id])
                if m.role == MessageRole.ASSISTANT and m.id in variant_map and m.variants
                else m
                for m in context
            ]
        context = [
            apply_variant_to_assistant(m)
            if m.role == MessageRole.ASSISTANT and not has_usable_assistant_content(m)
            else m
            for m in context
        ]

        content = user_message.user_content
        if content.content and not content.text:
            content.text = format_user_message_content(content)
        return conversation, user_message, context

    async def process_user_message_content(
        self, user_message: Message
    ) -> tuple[str, list[EnrichedLink], list[MessageFile]]:
        """Flattened user text, enriched links and image attachments."""
        content = user_message.user_content
        text = format_user_message_content(content)

        links: list[EnrichedLink] = []
        if self._enricher is not None:
            urls = extract_urls(text)
            urls.extend(url for url in content.links if url not in urls)
            links = await self._enricher.enrich_urls(urls)

        image_files = [item for item in content.files if item.is_image]
        return text, links, image_files

    async def update_generation_state(
        self,
        state: GeneratingMessageState,
        prompt_tokens: int,
        context_length: int | None = None,
    ) -> None:
        """Reset timing for a new stream and record the prompt size."""
        state.start_time = now_ms()
        state.first_token_time = None
        state.prompt_tokens = prompt_tokens
        metadata: dict[str, Any] = {
            "totalTokens": prompt_tokens,
            "generationTime": 0,
            "firstTokenTime": 0,
            "tokensPerSecond": 0,
        }
        if context_length:
            metadata["contextLength"] = context_length
        state.message.metadata.update(metadata)
        await self._messages.update_message_metadata(state.message_id, metadata)

    # Streaming

    async def consume_stream(self, state: GeneratingMessageState, stream: AsyncIterator[Any]) -> None:
        """Apply stream events in order until the message finishes or parks."""
        message_id = state.message_id
        try:
            async for event in stream:
                throw_if_cancelled(self.store, message_id)
                await self.events.handle_event(event)
                if self.store.get(message_id) is not state:
                    break
                if state.awaiting_permission:
                    log.info("Stream parked on permission request", message_id=message_id)
                    break
            else:
                if self.store.get(message_id) is state and not state.awaiting_permission:
                    await self.events.handle_end(message_id)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _stream(self, state: GeneratingMessageState, messages: list[ChatMessage]) -> None:
        # Settings may have changed while the prompt was being prepared.
        conversation = await self._messages.get_conversation(state.conversation_id)
        throw_if_cancelled(self.store, state.message_id)
        settings = conversation.settings
        capability = self._capability(conversation)
        tool_definitions = await self._tool_definitions(conversation, capability)
        throw_if_cancelled(self.store, state.message_id)

        request = StreamRequest(
            message_id=state.message_id,
            conversation_id=state.conversation_id,
            messages=messages,
            provider_id=settings.provider_id,
            model_id=settings.model_id,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            tools=tool_definitions,
            enabled_mcp_tools=settings.enabled_mcp_tools,
            thinking_budget=settings.thinking_budget,
            reasoning_effort=settings.reasoning_effort,
            verbosity=settings.verbosity,
        )
        with generation_context(state.message_id, state.conversation_id, model=settings.model_id):
            log.info("Opening provider stream", provider=settings.provider_id, messages=len(messages))
            await self.consume_stream(state, self._provider.start_stream_completion(request))

    # Helpers

    def _capability(self, conversation: Conversation) -> ModelCapabilityConfig:
        settings = conversation.settings
        return self.config.models.find(settings.provider_id, settings.model_id)

    async def _tool_definitions(
        self,
        conversation: Conversation,
        capability: ModelCapabilityConfig,
    ) -> list[ToolDefinition]:
        if not capability.function_call:
            return []
        return await self._tools.get_all_tool_definitions(conversation.settings.enabled_mcp_tools)

    def _select_history(
        self,
        conversation: Conversation,
        user_message: Message,
        context: list[Message],
        capability: ModelCapabilityConfig,
    ) -> list[Message]:
        settings = conversation.settings
        reserved = approximate_token_size(settings.system_prompt)
        reserved += approximate_token_size(format_user_message_content(user_message.user_content))
        return select_context_messages(
            context,
            user_message,
            settings.context_length - reserved,
            capability.function_call,
            capability.vision,
        )

    async def _create_assistant_message(self, conversation_id: str, user_message_id: str) -> Message:
        conversation = await self._messages.get_conversation(conversation_id)
        settings = conversation.settings
        return await self._messages.send_message(
            conversation_id,
            BlockSequence(),
            MessageRole.ASSISTANT,
            parent_id=user_message_id,
            metadata={
                "contextUsage": 0,
                "totalTokens": 0,
                "generationTime": 0,
                "firstTokenTime": 0,
                "tokensPerSecond": 0,
                "inputTokens": 0,
                "outputTokens": 0,
                "model": settings.model_id,
                "provider": settings.provider_id,
            },
        )

    async def _fail_generation(self, state: GeneratingMessageState, error: BaseException) -> None:
        if self.store.get(state.message_id) is state:
            await self.events.handle_error(state.message_id, str(error))
        else:
            await self._messages.handle_message_error(state.message, str(error))

    def _spawn(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)

        def _done(finished: asyncio.Task[Any]) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                log.error("Background generation failed", error=str(error))

        task.add_done_callback(_done)
        return task

    async def wait_for_background_tasks(self) -> None:
        """Wait for generations started in the background (regenerate)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

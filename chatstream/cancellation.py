"""Cooperative cancellation of in-flight generations."""

from typing import TYPE_CHECKING

from chatstream.blocks import IN_PROGRESS_STATUSES, BlockStatus, BlockType, MessageBlock
from chatstream.emitter import OutboundEvent, StreamEventEmitter
from chatstream.exceptions import USER_CANCELLED_MESSAGE, GenerationCancelledError
from chatstream.logging import get_logger
from chatstream.models import MessageStatus

if TYPE_CHECKING:
    from chatstream.content_buffer import ContentBufferHandler
    from chatstream.llm import LLMStreamProvider
    from chatstream.search import SearchHandler
    from chatstream.state import GenerationStateStore
    from chatstream.storage import MessageStore

log = get_logger(__name__)


class CancellationToken:
    """Sticky cancellation flag; once cancelled it stays cancelled."""

    __slots__ = ("_cancelled", "reason")

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str | None = None) -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason

    def raise_if_cancelled(self, message_id: str | None = None) -> None:
        if self._cancelled:
            raise GenerationCancelledError(message_id)


def throw_if_cancelled(store: "GenerationStateStore", message_id: str) -> None:
    """Checkpoint: raise the cancellation sentinel if the generation is gone.

    A missing state counts as cancelled: once a generation has been torn down
    nothing may mutate it any more.
    """
    state = store.get(message_id)
    if state is None or state.is_cancelled:
        raise GenerationCancelledError(message_id)


def is_cancellation_error(error: BaseException) -> bool:
    if isinstance(error, GenerationCancelledError):
        return True
    return str(error) == USER_CANCELLED_MESSAGE


class CancellationController:
    """Stops generations on user request."""

    def __init__(
        self,
        store: "GenerationStateStore",
        messages: "MessageStore",
        provider: "LLMStreamProvider",
        content_buffer: "ContentBufferHandler",
        emitter: StreamEventEmitter,
        search: "SearchHandler | None" = None,
    ):
        self._store = store
        self._messages = messages
        self._provider = provider
        self._content_buffer = content_buffer
        self._emitter = emitter
        self._search = search

    async def stop_message_generation(self, message_id: str) -> bool:
        """Cancel one generation.

        Returns:
            False when no generation is in flight for ``message_id``
        """
        state = self._store.get(message_id)
        if state is None:
            log.debug("No generation to stop", message_id=message_id)
            return False

        state.cancel_token.cancel("user")
        log.info("Stopping generation", message_id=message_id, conversation_id=state.conversation_id)

        try:
            if state.adaptive_buffer is not None:
                await self._content_buffer.flush(message_id, force=True)
            self._content_buffer.cleanup(state)

            if self._store.is_searching(message_id) or state.is_searching:
                self._store.clear_searching(message_id)
                state.is_searching = False
                if self._search is not None:
                    await self._search.stop_search(state.conversation_id)

            # A stopped message can no longer be resumed by a permission answer.
            for block in state.blocks.filter(lambda b: b.is_permission_action and b.status == BlockStatus.PENDING):
                block.status = BlockStatus.ERROR
                block.extra["needsUserAction"] = False
            state.pending_tool_call = None
            state.blocks.set_status(IN_PROGRESS_STATUSES, BlockStatus.SUCCESS)
            state.blocks.append(
                MessageBlock(
                    type=BlockType.ERROR,
                    content=USER_CANCELLED_MESSAGE,
                    status=BlockStatus.CANCEL,
                )
            )
            state.message.status = MessageStatus.ERROR
            await self._messages.update_message_status(message_id, MessageStatus.ERROR)
            await self._messages.edit_message(message_id, state.blocks)
            await self._provider.stop_stream(message_id)
        finally:
            self._store.delete(message_id)

        self._emitter.emit(OutboundEvent.END, {"eventId": message_id, "userStop": True})
        return True

    async def stop_conversation_generation(self, conversation_id: str) -> int:
        """Cancel every generation of a conversation; returns how many stopped."""
        stopped = 0
        for state in self._store.states_for_conversation(conversation_id):
            if await self.stop_message_generation(state.message_id):
                stopped += 1
        return stopped

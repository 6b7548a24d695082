"""Adaptive buffering and chunking of streamed assistant text."""

import asyncio

from chatstream.blocks import BlockStatus, BlockType, MessageBlock
from chatstream.config import BufferConfig, get_config
from chatstream.emitter import OutboundEvent, StreamEventEmitter
from chatstream.logging import get_logger
from chatstream.state import AdaptiveBufferState, GeneratingMessageState, GenerationStateStore
from chatstream.storage import MessageStore

log = get_logger(__name__)

IMAGE_DATA_MARKER = "data:image/"


class ContentBufferHandler:
    """Paces large or bursty content before it reaches the block model.

    Large payloads (for example inline base64 images) are split into bounded
    chunks and applied in small batches, yielding to the event loop between
    batches so cancellation checks stay responsive.
    """

    def __init__(
        self,
        store: GenerationStateStore,
        messages: MessageStore,
        emitter: StreamEventEmitter,
        config: BufferConfig | None = None,
    ):
        self._store = store
        self._messages = messages
        self._emitter = emitter
        self.config = config or get_config().buffer

    def is_large_content(self, content: str) -> bool:
        return len(content) >= self.config.large_content_threshold or IMAGE_DATA_MARKER in content

    def should_buffer(self, state: GeneratingMessageState, content: str) -> bool:
        """Whether ``content`` goes through the buffer instead of a direct merge."""
        if state.adaptive_buffer is not None:
            return True
        if self.config.flush_interval_ms > 0:
            return True
        return self.is_large_content(content)

    def split_large_content(self, content: str) -> list[str]:
        """Split ``content`` into bounded chunks whose concatenation is ``content``."""
        chunk_size = self.config.chunk_size
        if IMAGE_DATA_MARKER in content:
            chunk_size = self.config.image_chunk_size
        if len(content) > self.config.huge_content_threshold:
            chunk_size = min(chunk_size, self.config.huge_chunk_size)
        chunk_size = max(1, chunk_size)
        return [content[i:i + chunk_size] for i in range(0, len(content), chunk_size)]

    async def enqueue(self, state: GeneratingMessageState, event_id: str, content: str) -> None:
        """Add streamed text to the buffer, flushing now or on the timer."""
        buffer = state.adaptive_buffer
        if buffer is None:
            buffer = AdaptiveBufferState()
            state.adaptive_buffer = buffer
        buffer.content += content
        if self.is_large_content(content):
            buffer.is_large_content = True

        if buffer.is_large_content or self.config.flush_interval_ms <= 0:
            await self.flush(event_id)
            return
        self._schedule_flush(state, event_id)

    def _schedule_flush(self, state: GeneratingMessageState, event_id: str) -> None:
        if state.flush_timer is not None:
            return
        loop = asyncio.get_running_loop()

        def _fire() -> None:
            state.flush_timer = None
            state.flush_task = loop.create_task(self.flush(event_id))

        state.flush_timer = loop.call_later(self.config.flush_interval_ms / 1000.0, _fire)

    async def flush(self, event_id: str, force: bool = False) -> None:
        """Drain unsent buffered content once; a no-op when nothing is unsent.

        Args:
            event_id: Message id the buffer belongs to
            force: Apply everything even if the generation was cancelled
        """
        state = self._store.get(event_id)
        if state is None or state.adaptive_buffer is None:
            return
        if state.flush_timer is not None:
            state.flush_timer.cancel()
            state.flush_timer = None

        buffer = state.adaptive_buffer
        if buffer.is_processing:
            return

        buffer.is_processing = True
        try:
            while buffer.sent_position < len(buffer.content):
                unsent = buffer.unsent
                buffer.sent_position = len(buffer.content)
                if buffer.is_large_content:
                    await self._process_large_content(state, event_id, unsent, force)
                else:
                    await self._process_normal_content(state, event_id, unsent)
                if state.is_cancelled and not force:
                    break
        finally:
            buffer.is_processing = False

        if state.adaptive_buffer is buffer:
            state.adaptive_buffer = None

    def _open_content_block(self, state: GeneratingMessageState) -> MessageBlock:
        last = state.blocks.last
        if last is not None and last.type == BlockType.CONTENT and last.is_open:
            return last
        return state.blocks.append(MessageBlock(type=BlockType.CONTENT, status=BlockStatus.LOADING))

    async def _process_large_content(
        self,
        state: GeneratingMessageState,
        event_id: str,
        content: str,
        force: bool = False,
    ) -> None:
        chunks = self.split_large_content(content)
        total = len(chunks)
        batch_size = max(1, self.config.batch_size)
        block = self._open_content_block(state)
        log.debug("Processing large content", message_id=event_id, length=len(content), chunks=total)

        for start in range(0, total, batch_size):
            batch = chunks[start:start + batch_size]
            text = "".join(batch)
            block.content += text
            await self._messages.edit_message(state.message_id, state.blocks)
            self._emitter.emit(
                OutboundEvent.RESPONSE,
                {
                    "eventId": event_id,
                    "content": text,
                    "chunkInfo": {
                        "current": start + len(batch),
                        "total": total,
                        "isLargeContent": True,
                        "batchSize": len(batch),
                    },
                },
            )
            if start + batch_size < total:
                await asyncio.sleep(0)
                if state.is_cancelled and not force:
                    log.debug("Large content processing stopped", message_id=event_id)
                    return

    async def _process_normal_content(self, state: GeneratingMessageState, event_id: str, content: str) -> None:
        state.blocks.append_or_merge(MessageBlock(type=BlockType.CONTENT, content=content))
        await self._messages.edit_message(state.message_id, state.blocks)
        self._emitter.emit(OutboundEvent.RESPONSE, {"eventId": event_id, "content": content})

    def cleanup(self, state: GeneratingMessageState) -> None:
        """Cancel pending flushes and drop the buffer."""
        state.cancel_timers()
        state.adaptive_buffer = None

"""Message persistence interface."""

from abc import ABC, abstractmethod
from typing import Any

from chatstream.blocks import BlockSequence, BlockStatus, BlockType, MessageBlock
from chatstream.logging import get_logger
from chatstream.models import (
    Conversation,
    Message,
    MessageRole,
    MessageStatus,
    UserMessageContent,
)

log = get_logger(__name__)


class MessageStore(ABC):
    """Persistence collaborator used by the generation core."""

    @abstractmethod
    async def get_message(self, message_id: str) -> Message:
        """Load a message; raises MessageNotFoundError when missing."""

    @abstractmethod
    async def edit_message(self, message_id: str, blocks: BlockSequence) -> None:
        """Persist the current block sequence of an assistant message."""

    @abstractmethod
    async def update_message_status(self, message_id: str, status: MessageStatus) -> None:
        pass

    @abstractmethod
    async def update_message_metadata(self, message_id: str, metadata: dict[str, Any]) -> None:
        """Merge ``metadata`` into the stored metadata."""

    @abstractmethod
    async def add_message_attachment(self, message_id: str, attachment_type: str, data: str) -> None:
        pass

    @abstractmethod
    async def get_message_attachments(self, message_id: str, attachment_type: str) -> list[str]:
        pass

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Conversation:
        """Load a conversation; raises ConversationNotFoundError when missing."""

    @abstractmethod
    async def send_message(
        self,
        conversation_id: str,
        content: UserMessageContent | BlockSequence,
        role: MessageRole,
        parent_id: str | None = None,
        is_variant: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        """Create and persist a new message."""

    @abstractmethod
    async def get_last_user_message(self, conversation_id: str) -> Message | None:
        pass

    @abstractmethod
    async def get_message_history(self, message_id: str, limit: int) -> list[Message]:
        """Up to ``limit`` main-line messages ending with ``message_id``, oldest first."""

    @abstractmethod
    async def get_context_messages(self, conversation_id: str, limit: int) -> list[Message]:
        """The latest ``limit`` main-line messages of a conversation, oldest first."""

    async def handle_message_error(self, message: Message, error: str) -> None:
        """Record a failed generation on an assistant message.

        In-progress blocks become errors, one error block is appended (unless
        an identical one already ends the sequence) and the message status
        becomes ``error``.
        """
        blocks = message.blocks
        blocks.set_status((BlockStatus.LOADING,), BlockStatus.ERROR)
        last = blocks.last
        if not (
            last is not None
            and last.type == BlockType.ERROR
            and last.status == BlockStatus.ERROR
            and last.content == error
        ):
            blocks.append(MessageBlock(type=BlockType.ERROR, content=error, status=BlockStatus.ERROR))
        message.status = MessageStatus.ERROR
        await self.edit_message(message.id, blocks)
        await self.update_message_status(message.id, MessageStatus.ERROR)
        log.warning("Message marked as failed", message_id=message.id, error=error)

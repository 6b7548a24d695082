"""In-flight generation state and its registry."""

import asyncio
from dataclasses import dataclass, field
from typing import Any

from chatstream.blocks import BlockSequence, BlockStatus, ToolCallRef, now_ms
from chatstream.cancellation import CancellationToken
from chatstream.exceptions import GenerationStateError
from chatstream.models import Message


@dataclass
class PendingToolCall:
    """Resumption descriptor for an approved but not yet executed tool call."""

    id: str
    name: str
    params: str
    server_name: str | None = None
    server_icons: str | None = None
    server_description: str | None = None

    @classmethod
    def from_tool_call(cls, ref: ToolCallRef, server_name: str | None = None) -> "PendingToolCall":
        return cls(
            id=ref.id,
            name=ref.name,
            params=ref.params,
            server_name=server_name or ref.server_name,
            server_icons=ref.server_icons,
            server_description=ref.server_description,
        )

    @property
    def is_complete(self) -> bool:
        return bool(self.id and self.name and self.params)


@dataclass
class AdaptiveBufferState:
    content: str = ""
    sent_position: int = 0
    is_large_content: bool = False
    is_processing: bool = False

    @property
    def unsent(self) -> str:
        return self.content[self.sent_position:]


@dataclass
class TotalUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    context_length: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TotalUsage":
        return cls(
            prompt_tokens=int(data.get("prompt_tokens") or 0),
            completion_tokens=int(data.get("completion_tokens") or 0),
            total_tokens=int(data.get("total_tokens") or 0),
            context_length=int(data.get("context_length") or 0),
        )


@dataclass
class GeneratingMessageState:
    """Mutable record of one in-flight assistant message."""

    message: Message
    conversation_id: str
    start_time: int = field(default_factory=now_ms)
    first_token_time: int | None = None
    reasoning_start_time: int | None = None
    reasoning_end_time: int | None = None
    prompt_tokens: int = 0
    total_usage: TotalUsage | None = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    is_searching: bool = False
    pending_tool_call: PendingToolCall | None = None
    adaptive_buffer: AdaptiveBufferState | None = None
    flush_timer: asyncio.TimerHandle | None = None
    flush_task: asyncio.Task[None] | None = None

    @property
    def message_id(self) -> str:
        return self.message.id

    @property
    def blocks(self) -> BlockSequence:
        return self.message.blocks

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_token.is_cancelled

    @property
    def awaiting_permission(self) -> bool:
        """Whether the message is parked on a permission the user must resolve.

        Agent-provider permissions do not park the stream; the agent itself
        blocks until the decision is relayed.
        """
        block = self.blocks.pending_permission()
        return block is not None and block.extra.get("providerId") != "acp"

    def cancel_timers(self) -> None:
        if self.flush_timer is not None:
            self.flush_timer.cancel()
            self.flush_timer = None
        task = self.flush_task
        self.flush_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()


class GenerationStateStore:
    """Registry of in-flight generations keyed by assistant message id.

    Removing an entry is the only way a generation stops consuming events.
    The store does not enforce one generation per conversation; callers use
    ``find_by_conversation`` to avoid starting a duplicate.
    """

    def __init__(self) -> None:
        self._states: dict[str, GeneratingMessageState] = {}
        self._searching: set[str] = set()

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    def set(self, message_id: str, state: GeneratingMessageState) -> None:
        self._states[message_id] = state

    def get(self, message_id: str) -> GeneratingMessageState | None:
        return self._states.get(message_id)

    def require(self, message_id: str) -> GeneratingMessageState:
        state = self._states.get(message_id)
        if state is None:
            raise GenerationStateError(message_id)
        return state

    def delete(self, message_id: str) -> GeneratingMessageState | None:
        state = self._states.pop(message_id, None)
        self._searching.discard(message_id)
        if state is not None:
            state.cancel_timers()
        return state

    def find_by_conversation(self, conversation_id: str) -> GeneratingMessageState | None:
        """Return the most recently registered state for a conversation."""
        for state in reversed(list(self._states.values())):
            if state.conversation_id == conversation_id:
                return state
        return None

    def states_for_conversation(self, conversation_id: str) -> list[GeneratingMessageState]:
        return [state for state in self._states.values() if state.conversation_id == conversation_id]

    def message_ids(self) -> list[str]:
        return list(self._states.keys())

    def mark_searching(self, message_id: str) -> None:
        self._searching.add(message_id)

    def clear_searching(self, message_id: str) -> None:
        self._searching.discard(message_id)

    def is_searching(self, message_id: str) -> bool:
        return message_id in self._searching


def permission_resolved(status: BlockStatus) -> bool:
    return status in (BlockStatus.GRANTED, BlockStatus.DENIED)

"""Typed content blocks that make up one assistant message."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Iterator


class BlockType(str, Enum):
    """Kinds of message block."""

    CONTENT = "content"
    REASONING = "reasoning_content"
    TOOL_CALL = "tool_call"
    ACTION = "action"
    SEARCH = "search"
    IMAGE = "image"
    ERROR = "error"


class BlockStatus(str, Enum):
    """Lifecycle status of a block."""

    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"
    CANCEL = "cancel"
    PENDING = "pending"
    GRANTED = "granted"
    DENIED = "denied"
    READING = "reading"
    OPTIMIZING = "optimizing"


class ActionType(str, Enum):
    """Kinds of ``action`` block."""

    TOOL_CALL_PERMISSION = "tool_call_permission"
    MAXIMUM_TOOL_CALLS_REACHED = "maximum_tool_calls_reached"


# Statuses that mean "still being worked on".
IN_PROGRESS_STATUSES = frozenset({BlockStatus.LOADING, BlockStatus.READING, BlockStatus.OPTIMIZING})

MERGEABLE_TYPES = frozenset({BlockType.CONTENT, BlockType.REASONING})


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass
class ToolCallRef:
    """Tool call recorded on a ``tool_call`` or ``action`` block."""

    id: str = ""
    name: str = ""
    params: str = ""
    server_name: str | None = None
    server_icons: str | None = None
    server_description: str | None = None
    response: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "name": self.name, "params": self.params}
        for key in ("server_name", "server_icons", "server_description", "response"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCallRef":
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            params=str(data.get("params") or ""),
            server_name=data.get("server_name"),
            server_icons=data.get("server_icons"),
            server_description=data.get("server_description"),
            response=data.get("response"),
        )


@dataclass
class ImageData:
    """Inline image payload (base64 data or a URL)."""

    data: str
    mime_type: str = "image/png"

    def to_dict(self) -> dict[str, Any]:
        return {"data": self.data, "mimeType": self.mime_type}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImageData":
        return cls(data=str(data.get("data") or ""), mime_type=str(data.get("mimeType") or "image/png"))


@dataclass
class ReasoningTime:
    """Start/end of a reasoning block in epoch milliseconds."""

    start: int
    end: int

    def to_dict(self) -> dict[str, Any]:
        return {"start": self.start, "end": self.end}


@dataclass
class MessageBlock:
    """One typed fragment of an assistant message."""

    type: BlockType
    content: str = ""
    status: BlockStatus = BlockStatus.LOADING
    timestamp: int = field(default_factory=now_ms)
    id: str | None = None
    action_type: ActionType | None = None
    tool_call: ToolCallRef | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    image_data: ImageData | None = None
    reasoning_time: ReasoningTime | None = None

    @property
    def is_open(self) -> bool:
        return self.status == BlockStatus.LOADING

    @property
    def is_permission_action(self) -> bool:
        return self.type == BlockType.ACTION and self.action_type == ActionType.TOOL_CALL_PERMISSION

    def is_tool_call(self, tool_call_id: str | None = None) -> bool:
        """Whether this is a ``tool_call`` block, optionally for a given id."""
        if self.type != BlockType.TOOL_CALL:
            return False
        if tool_call_id is None:
            return True
        return self.tool_call is not None and self.tool_call.id == tool_call_id

    def to_dict(self) -> dict[str, Any]:
        """Convert to the persisted JSON shape."""
        data: dict[str, Any] = {
            "type": self.type.value,
            "content": self.content,
            "status": self.status.value,
            "timestamp": self.timestamp,
        }
        if self.id is not None:
            data["id"] = self.id
        if self.action_type is not None:
            data["action_type"] = self.action_type.value
        if self.tool_call is not None:
            data["tool_call"] = self.tool_call.to_dict()
        if self.extra:
            data["extra"] = dict(self.extra)
        if self.image_data is not None:
            data["image_data"] = self.image_data.to_dict()
        if self.reasoning_time is not None:
            data["reasoning_time"] = self.reasoning_time.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MessageBlock":
        """Create from the persisted JSON shape."""
        tool_call = data.get("tool_call")
        image_data = data.get("image_data")
        reasoning_time = data.get("reasoning_time")
        action_type = data.get("action_type")
        return cls(
            type=BlockType(data["type"]),
            content=str(data.get("content") or ""),
            status=BlockStatus(data.get("status") or BlockStatus.SUCCESS.value),
            timestamp=int(data.get("timestamp") or now_ms()),
            id=data.get("id"),
            action_type=ActionType(action_type) if action_type else None,
            tool_call=ToolCallRef.from_dict(tool_call) if isinstance(tool_call, dict) else None,
            extra=dict(data.get("extra") or {}),
            image_data=ImageData.from_dict(image_data) if isinstance(image_data, dict) else None,
            reasoning_time=(
                ReasoningTime(start=int(reasoning_time["start"]), end=int(reasoning_time["end"]))
                if isinstance(reasoning_time, dict)
                else None
            ),
        )


BlockPredicate = Callable[[MessageBlock], bool]


class BlockSequence:
    """Append-only ordered block list of one assistant message.

    Only the trailing open block grows in place; every other correction is a
    field mutation on an existing block. Blocks are never removed.
    """

    def __init__(self, blocks: Iterable[MessageBlock] | None = None):
        self._blocks: list[MessageBlock] = list(blocks or [])

    def __iter__(self) -> Iterator[MessageBlock]:
        return iter(self._blocks)

    def __len__(self) -> int:
        return len(self._blocks)

    def __getitem__(self, index: int) -> MessageBlock:
        return self._blocks[index]

    def __repr__(self) -> str:
        return f"BlockSequence({self._blocks!r})"

    @property
    def last(self) -> MessageBlock | None:
        return self._blocks[-1] if self._blocks else None

    def finalize_open_block(self) -> None:
        """Mark every loading block as success.

        The permission action block is left alone; it only moves through
        explicit grant/deny/continue transitions.
        """
        for block in self._blocks:
            if block.is_open and not block.is_permission_action:
                block.status = BlockStatus.SUCCESS

    def append(self, block: MessageBlock) -> MessageBlock:
        """Finalize the open block and push ``block``."""
        self.finalize_open_block()
        self._blocks.append(block)
        return block

    def append_or_merge(self, block: MessageBlock) -> MessageBlock:
        """Merge text into the open block of the same type, or append.

        Returns the block that now holds the text.
        """
        last = self.last
        if (
            block.type in MERGEABLE_TYPES
            and last is not None
            and last.type == block.type
            and last.is_open
        ):
            last.content += block.content
            if block.reasoning_time is not None:
                if last.reasoning_time is None:
                    last.reasoning_time = ReasoningTime(
                        start=block.reasoning_time.start, end=block.reasoning_time.end
                    )
                else:
                    last.reasoning_time.end = block.reasoning_time.end
            return last
        return self.append(block)

    def find(self, predicate: BlockPredicate) -> MessageBlock | None:
        for block in self._blocks:
            if predicate(block):
                return block
        return None

    def find_last(self, predicate: BlockPredicate) -> MessageBlock | None:
        for block in reversed(self._blocks):
            if predicate(block):
                return block
        return None

    def filter(self, predicate: BlockPredicate) -> list[MessageBlock]:
        return [block for block in self._blocks if predicate(block)]

    def set_status(
        self,
        from_statuses: Iterable[BlockStatus],
        to_status: BlockStatus,
        include_permission: bool = False,
    ) -> int:
        """Move every block in ``from_statuses`` to ``to_status``.

        Returns the number of blocks changed.
        """
        sources = set(from_statuses)
        changed = 0
        for block in self._blocks:
            if block.status not in sources:
                continue
            if block.is_permission_action and not include_permission:
                continue
            block.status = to_status
            changed += 1
        return changed

    def pending_permission(self) -> MessageBlock | None:
        """Return the pending permission action block, if any."""
        return self.find_last(
            lambda b: b.is_permission_action and b.status == BlockStatus.PENDING
        )

    def text_of(self, block_type: BlockType) -> str:
        """Concatenated text of all blocks of one type."""
        return "".join(block.content for block in self._blocks if block.type == block_type)

    def copy(self) -> "BlockSequence":
        return BlockSequence.from_list(self.to_list())

    def to_list(self) -> list[dict[str, Any]]:
        return [block.to_dict() for block in self._blocks]

    @classmethod
    def from_list(cls, data: Iterable[dict[str, Any]]) -> "BlockSequence":
        return cls(MessageBlock.from_dict(item) for item in data)

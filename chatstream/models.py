"""Conversation and message records."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from chatstream.blocks import BlockSequence, BlockType, now_ms


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    ERROR = "error"


@dataclass
class MessageFile:
    """File attached to a user message."""

    name: str
    content: str = ""
    mime_type: str = "text/plain"
    path: str = ""
    token: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "content": self.content,
            "mimeType": self.mime_type,
            "path": self.path,
            "token": self.token,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MessageFile":
        return cls(
            name=str(data.get("name") or ""),
            content=str(data.get("content") or ""),
            mime_type=str(data.get("mimeType") or "text/plain"),
            path=str(data.get("path") or ""),
            token=int(data.get("token") or 0),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class ContentSegment:
    """Rich user input segment: ``text``, ``code`` or ``mention``."""

    type: str
    content: str
    category: str | None = None
    language: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "content": self.content}
        if self.category is not None:
            data["category"] = self.category
        if self.language is not None:
            data["language"] = self.language
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContentSegment":
        return cls(
            type=str(data.get("type") or "text"),
            content=str(data.get("content") or ""),
            category=data.get("category"),
            language=data.get("language"),
        )


@dataclass
class UserMessageContent:
    """Content of a user message."""

    text: str = ""
    content: list[ContentSegment] = field(default_factory=list)
    files: list[MessageFile] = field(default_factory=list)
    links: list[str] = field(default_factory=list)
    search: bool = False
    think: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "content": [segment.to_dict() for segment in self.content],
            "files": [item.to_dict() for item in self.files],
            "links": list(self.links),
            "search": self.search,
            "think": self.think,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UserMessageContent":
        return cls(
            text=str(data.get("text") or ""),
            content=[ContentSegment.from_dict(item) for item in data.get("content") or []],
            files=[MessageFile.from_dict(item) for item in data.get("files") or []],
            links=[str(item) for item in data.get("links") or []],
            search=bool(data.get("search", False)),
            think=bool(data.get("think", False)),
        )


@dataclass
class Message:
    """A stored conversation message.

    User messages carry ``UserMessageContent``; assistant messages carry a
    ``BlockSequence``.
    """

    id: str
    conversation_id: str
    role: MessageRole
    content: UserMessageContent | BlockSequence
    status: MessageStatus = MessageStatus.PENDING
    parent_id: str | None = None
    is_variant: bool = False
    variants: list["Message"] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    @property
    def blocks(self) -> BlockSequence:
        if not isinstance(self.content, BlockSequence):
            raise TypeError(f"Message {self.id} has no blocks (role={self.role.value})")
        return self.content

    @property
    def user_content(self) -> UserMessageContent:
        if not isinstance(self.content, UserMessageContent):
            raise TypeError(f"Message {self.id} is not a user message")
        return self.content

    def content_to_dict(self) -> Any:
        if isinstance(self.content, BlockSequence):
            return self.content.to_list()
        return self.content.to_dict()

    @staticmethod
    def content_from_dict(role: MessageRole, data: Any) -> UserMessageContent | BlockSequence:
        if role == MessageRole.ASSISTANT:
            return BlockSequence.from_list(data or [])
        if isinstance(data, dict):
            return UserMessageContent.from_dict(data)
        return UserMessageContent(text=str(data or ""))


def has_usable_assistant_content(message: Message) -> bool:
    """Whether an assistant message has any text or tool call worth sending."""
    if not isinstance(message.content, BlockSequence):
        return False
    for block in message.content:
        if block.type == BlockType.CONTENT and block.content.strip():
            return True
        if block.type == BlockType.TOOL_CALL and block.tool_call is not None:
            return True
    return False


@dataclass
class ConversationSettings:
    """Per-conversation generation settings."""

    system_prompt: str = ""
    provider_id: str = "ollama"
    model_id: str = "llama3.2"
    temperature: float = 0.7
    max_tokens: int = 4096
    context_length: int = 8192
    enabled_mcp_tools: list[str] | None = None
    thinking_budget: int | None = None
    reasoning_effort: str | None = None
    verbosity: str | None = None
    enable_search: bool = False
    forced_search: bool = False
    search_strategy: str = "turbo"

    def to_dict(self) -> dict[str, Any]:
        return {
            "system_prompt": self.system_prompt,
            "provider_id": self.provider_id,
            "model_id": self.model_id,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "context_length": self.context_length,
            "enabled_mcp_tools": self.enabled_mcp_tools,
            "thinking_budget": self.thinking_budget,
            "reasoning_effort": self.reasoning_effort,
            "verbosity": self.verbosity,
            "enable_search": self.enable_search,
            "forced_search": self.forced_search,
            "search_strategy": self.search_strategy,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationSettings":
        known = cls.__dataclass_fields__.keys()
        return cls(**{key: value for key, value in data.items() if key in known})


@dataclass
class Conversation:
    id: str
    title: str = ""
    settings: ConversationSettings = field(default_factory=ConversationSettings)
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)


@dataclass
class SearchResult:
    """One web page surfaced by search or by a tool."""

    title: str
    url: str
    content: str = ""
    description: str = ""
    icon: str = ""
    favicon: str = ""
    rank: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "url": self.url,
            "content": self.content,
            "description": self.description,
            "icon": self.icon,
            "favicon": self.favicon,
            "rank": self.rank,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SearchResult":
        return cls(
            title=str(data.get("title") or ""),
            url=str(data.get("url") or ""),
            content=str(data.get("content") or ""),
            description=str(data.get("description") or ""),
            icon=str(data.get("icon") or ""),
            favicon=str(data.get("favicon") or ""),
            rank=int(data.get("rank") or 0),
        )

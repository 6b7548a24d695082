import asyncio
import copy
import json
import uuid
from typing import Any

import pytest

import chatstream.config as config_module
from chatstream.blocks import BlockSequence
from chatstream.config import Config, PermissionConfig
from chatstream.events import StreamEvent
from chatstream.exceptions import ConversationNotFoundError, MessageNotFoundError
from chatstream.llm import LLMStreamProvider, StreamRequest
from chatstream.models import (
    Conversation,
    ConversationSettings,
    Message,
    MessageRole,
    MessageStatus,
    UserMessageContent,
)
from chatstream.orchestrator import StreamGenerationOrchestrator
from chatstream.storage import MessageStore
from chatstream.tools.registry import WEBPAGE_MIME_TYPE, LocalToolRuntime, Tool, ToolResult


class InMemoryMessageStore(MessageStore):
    """Message store keeping deep copies, so reads only see persisted state."""

    def __init__(self):
        self.conversations: dict[str, Conversation] = {}
        self.messages: dict[str, Message] = {}
        self.attachments: dict[tuple[str, str], list[str]] = {}
        self.edit_count = 0

    async def create_conversation(self, title: str = "", settings: ConversationSettings | None = None):
        conversation = Conversation(id=str(uuid.uuid4()), title=title, settings=settings or ConversationSettings())
        self.conversations[conversation.id] = conversation
        return copy.deepcopy(conversation)

    async def update_conversation_settings(self, conversation_id: str, **changes: Any) -> Conversation:
        conversation = self.conversations[conversation_id]
        for key, value in changes.items():
            setattr(conversation.settings, key, value)
        return copy.deepcopy(conversation)

    async def get_conversation(self, conversation_id: str) -> Conversation:
        if conversation_id not in self.conversations:
            raise ConversationNotFoundError(conversation_id)
        return copy.deepcopy(self.conversations[conversation_id])

    async def send_message(
        self,
        conversation_id,
        content,
        role,
        parent_id=None,
        is_variant=False,
        metadata=None,
    ) -> Message:
        message = Message(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=copy.deepcopy(content),
            parent_id=parent_id,
            is_variant=is_variant,
            metadata=dict(metadata or {}),
        )
        self.messages[message.id] = message
        return copy.deepcopy(message)

    def _stored(self, message_id: str) -> Message:
        if message_id not in self.messages:
            raise MessageNotFoundError(message_id)
        return self.messages[message_id]

    def _with_variants(self, message: Message) -> Message:
        result = copy.deepcopy(message)
        if message.role == MessageRole.ASSISTANT and not message.is_variant and message.parent_id:
            result.variants = [
                copy.deepcopy(m)
                for m in self.messages.values()
                if m.is_variant and m.parent_id == message.parent_id and m.id != message.id
            ]
        return result

    async def get_message(self, message_id: str) -> Message:
        return self._with_variants(self._stored(message_id))

    async def edit_message(self, message_id: str, blocks: BlockSequence) -> None:
        self._stored(message_id).content = blocks.copy()
        self.edit_count += 1

    async def update_message_status(self, message_id: str, status: MessageStatus) -> None:
        self._stored(message_id).status = MessageStatus(status)

    async def update_message_metadata(self, message_id: str, metadata: dict[str, Any]) -> None:
        self._stored(message_id).metadata.update(metadata)

    async def add_message_attachment(self, message_id: str, attachment_type: str, data: str) -> None:
        self.attachments.setdefault((message_id, attachment_type), []).append(data)

    async def get_message_attachments(self, message_id: str, attachment_type: str) -> list[str]:
        return list(self.attachments.get((message_id, attachment_type), []))

    def _main_line(self, conversation_id: str) -> list[Message]:
        return [m for m in self.messages.values() if m.conversation_id == conversation_id and not m.is_variant]

    async def get_last_user_message(self, conversation_id: str) -> Message | None:
        users = [m for m in self._main_line(conversation_id) if m.role == MessageRole.USER]
        return copy.deepcopy(users[-1]) if users else None

    async def get_message_history(self, message_id: str, limit: int) -> list[Message]:
        anchor = self._stored(message_id)
        line = self._main_line(anchor.conversation_id)
        upto = line[: line.index(anchor) + 1]
        return [self._with_variants(m) for m in upto[-limit:]]

    async def get_context_messages(self, conversation_id: str, limit: int) -> list[Message]:
        return [self._with_variants(m) for m in self._main_line(conversation_id)[-limit:]]


class ScriptedProvider(LLMStreamProvider):
    """Provider replaying one scripted event list per stream.

    Script items are dicts of ``ResponseData`` fields, ``{"type": "end"}``,
    ``{"type": "error", "error": ...}`` or an ``asyncio.Event`` to wait on.
    """

    def __init__(self, scripts: list[list[Any]] | None = None, completion: str = "weather today"):
        self.scripts = list(scripts or [])
        self.completion = completion
        self.requests: list[StreamRequest] = []
        self.stopped: list[str] = []
        self.completions: list[list[dict[str, Any]]] = []
        self.agent_permissions: list[tuple[str, bool]] = []

    async def start_stream_completion(self, request: StreamRequest):
        self.requests.append(request)
        script = self.scripts.pop(0) if self.scripts else [{"type": "end"}]
        for item in script:
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            kind = item.get("type", "response")
            if kind == "end":
                yield StreamEvent.end(request.message_id, user_stop=item.get("user_stop", False))
            elif kind == "error":
                yield StreamEvent.failure(request.message_id, item["error"])
            else:
                fields = {key: value for key, value in item.items() if key != "type"}
                yield StreamEvent.response(request.message_id, **fields)

    async def stop_stream(self, message_id: str) -> None:
        self.stopped.append(message_id)

    async def generate_completion(self, messages, provider_id, model_id, temperature=None) -> str:
        self.completions.append(messages)
        return self.completion

    async def resolve_agent_permission(self, request_id: str, granted: bool) -> None:
        self.agent_permissions.append((request_id, granted))


class ReadFileTool(Tool):
    name = "read_file"
    description = "Read a file"
    parameters = {
        "type": "object",
        "properties": {"path": {"type": "string"}},
        "required": ["path"],
    }

    async def execute(self, **kwargs):
        return ToolResult(success=True, content=f"contents of {kwargs['path']}")


class WriteFileTool(Tool):
    name = "write_file"
    description = "Write a file"
    parameters = {
        "type": "object",
        "properties": {"path": {"type": "string"}, "content": {"type": "string"}},
        "required": ["path"],
    }
    required_permission = "write"

    def __init__(self):
        self.writes: list[str] = []

    async def execute(self, **kwargs):
        self.writes.append(kwargs["path"])
        return ToolResult(success=True, content=f"wrote {kwargs['path']}")


class WebLookupTool(Tool):
    name = "web_lookup"
    description = "Look up pages"
    parameters = {
        "type": "object",
        "properties": {"query": {"type": "string"}},
        "required": ["query"],
    }

    async def execute(self, **kwargs):
        pages = [
            {"title": f"Page {i}", "url": f"https://example.com/{i}", "content": f"body {i}", "icon": f"https://example.com/{i}.ico"}
            for i in range(1, 9)
        ]
        return ToolResult(
            success=True,
            content=f"{len(pages)} pages",
            resources=[
                {"uri": page["url"], "mimeType": WEBPAGE_MIME_TYPE, "text": json.dumps(page)}
                for page in pages
            ],
        )


@pytest.fixture
def config(monkeypatch):
    cfg = Config(
        permission=PermissionConfig(ready_timeout=0.2, ready_poll_interval=0.01, ready_settle_delay=0.0),
    )
    monkeypatch.setattr(config_module, "_config", cfg)
    return cfg


@pytest.fixture
def store():
    return InMemoryMessageStore()


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def write_tool():
    return WriteFileTool()


@pytest.fixture
def tools(write_tool):
    runtime = LocalToolRuntime()
    runtime.register_server("files", icons="F", description="File tools", auto_approve=["read"])
    runtime.register(ReadFileTool(), "files")
    runtime.register(write_tool, "files")
    runtime.register_server("web", icons="W", description="Web tools", auto_approve=["read"])
    runtime.register(WebLookupTool(), "web")
    return runtime


@pytest.fixture
def orchestrator(store, provider, tools, config):
    return StreamGenerationOrchestrator(store, provider, tools, config=config)


@pytest.fixture
def events(orchestrator):
    """Every emitted stream event as ``(name, payload)``."""
    captured: list[tuple[str, dict[str, Any]]] = []
    for name in ("response", "error", "end", "message_generated"):
        orchestrator.emitter.on(name, lambda payload, name=name: captured.append((name, payload)))
    return captured


@pytest.fixture
def seed(store):
    """Create a conversation with one user message."""

    async def _seed(text: str = "Hello there", settings: ConversationSettings | None = None, **content: Any):
        conversation = await store.create_conversation("Test", settings)
        user = await store.send_message(
            conversation.id, UserMessageContent(text=text, **content), MessageRole.USER
        )
        return conversation, user

    return _seed

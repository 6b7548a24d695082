"""Provider stream events consumed by the generation core."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from chatstream.blocks import ImageData


class StreamEventType(str, Enum):
    RESPONSE = "response"
    ERROR = "error"
    END = "end"


class ToolCallPhase(str, Enum):
    """Tool call lifecycle signal carried on a response event."""

    START = "start"
    UPDATE = "update"
    RUNNING = "running"
    END = "end"
    ERROR = "error"
    PERMISSION_REQUIRED = "permission-required"
    PERMISSION_GRANTED = "permission-granted"
    PERMISSION_DENIED = "permission-denied"
    CONTINUE = "continue"


PERMISSION_TYPES = ("read", "write", "all")


@dataclass
class PermissionRequest:
    """Permission request raised by the tool runtime or an agent provider."""

    permission_type: str = "read"
    server_name: str = ""
    tool_name: str = ""
    request_id: str = ""
    description: str = ""
    rememberable: bool = True
    provider_id: str | None = None
    agent_id: str | None = None
    agent_name: str | None = None
    session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "permissionType": self.permission_type,
            "serverName": self.server_name,
            "toolName": self.tool_name,
            "requestId": self.request_id,
            "description": self.description,
            "rememberable": self.rememberable,
        }
        for key, attr in (
            ("providerId", "provider_id"),
            ("agentId", "agent_id"),
            ("agentName", "agent_name"),
            ("sessionId", "session_id"),
        ):
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PermissionRequest":
        return cls(
            permission_type=str(data.get("permissionType") or ""),
            server_name=str(data.get("serverName") or ""),
            tool_name=str(data.get("toolName") or ""),
            request_id=str(data.get("requestId") or ""),
            description=str(data.get("description") or ""),
            rememberable=bool(data.get("rememberable", True)),
            provider_id=data.get("providerId"),
            agent_id=data.get("agentId"),
            agent_name=data.get("agentName"),
            session_id=data.get("sessionId"),
        )


@dataclass
class ResponseData:
    """Payload of a ``response`` event.

    Several fields may be set on one event; they are applied in a fixed order
    (limits, reasoning, tool call, image, content).
    """

    event_id: str
    content: str | None = None
    reasoning_content: str | None = None
    tool_call: ToolCallPhase | None = None
    tool_call_id: str | None = None
    tool_call_name: str | None = None
    tool_call_params: str | None = None
    tool_call_response: str | None = None
    tool_call_response_raw: dict[str, Any] | None = None
    tool_call_server_name: str | None = None
    tool_call_server_icons: str | None = None
    tool_call_server_description: str | None = None
    permission_request: PermissionRequest | None = None
    maximum_tool_calls_reached: bool = False
    image_data: ImageData | None = None
    total_usage: dict[str, Any] | None = None

    @property
    def has_non_content_payload(self) -> bool:
        return bool(
            self.reasoning_content
            or self.tool_call
            or self.image_data
            or self.maximum_tool_calls_reached
        )

    def to_dict(self) -> dict[str, Any]:
        """Renderer-facing shape (camel-cased event id, raw fields dropped)."""
        data: dict[str, Any] = {"eventId": self.event_id}
        for key in (
            "content",
            "reasoning_content",
            "tool_call_id",
            "tool_call_name",
            "tool_call_params",
            "tool_call_response",
            "tool_call_server_name",
            "tool_call_server_icons",
            "tool_call_server_description",
            "total_usage",
        ):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.tool_call is not None:
            data["tool_call"] = self.tool_call.value
        if self.permission_request is not None:
            data["permission_request"] = self.permission_request.to_dict()
        if self.maximum_tool_calls_reached:
            data["maximum_tool_calls_reached"] = True
        if self.image_data is not None:
            data["image_data"] = self.image_data.to_dict()
        return data


@dataclass
class StreamEvent:
    """One event of a provider stream."""

    type: StreamEventType
    event_id: str
    data: ResponseData | None = None
    error: str | None = None
    user_stop: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def response(cls, event_id: str, **fields: Any) -> "StreamEvent":
        return cls(
            type=StreamEventType.RESPONSE,
            event_id=event_id,
            data=ResponseData(event_id=event_id, **fields),
        )

    @classmethod
    def failure(cls, event_id: str, error: str) -> "StreamEvent":
        return cls(type=StreamEventType.ERROR, event_id=event_id, error=error)

    @classmethod
    def end(cls, event_id: str, user_stop: bool = False) -> "StreamEvent":
        return cls(type=StreamEventType.END, event_id=event_id, user_stop=user_stop)

"""Tool execution for chatstream."""

from chatstream.tools.registry import (
    WEBPAGE_MIME_TYPE,
    LocalToolRuntime,
    Tool,
    ToolCallRawData,
    ToolCallRequest,
    ToolCallResponse,
    ToolDefinition,
    ToolExecutor,
    ToolResult,
    ToolServerInfo,
)

__all__ = [
    "WEBPAGE_MIME_TYPE",
    "LocalToolRuntime",
    "Tool",
    "ToolCallRawData",
    "ToolCallRequest",
    "ToolCallResponse",
    "ToolDefinition",
    "ToolExecutor",
    "ToolResult",
    "ToolServerInfo",
]

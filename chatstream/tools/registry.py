"""Tool execution interface and in-process tool runtime."""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from chatstream.events import PERMISSION_TYPES, PermissionRequest
from chatstream.exceptions import ToolExecutionError, ToolNotFoundError
from chatstream.logging import get_logger

log = get_logger(__name__)

WEBPAGE_MIME_TYPE = "application/deepchat-webpage"

PermissionLevel = Literal["read", "write", "all"]

# Which granted levels satisfy a required level.
_SATISFIED_BY: dict[str, set[str]] = {
    "read": {"read", "write", "all"},
    "write": {"write", "all"},
    "all": {"all"},
}


@dataclass
class ToolServerInfo:
    """Server (tool provider) a tool belongs to."""

    name: str
    icons: str = ""
    description: str = ""


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema
    server: ToolServerInfo

    def to_function(self) -> dict[str, Any]:
        """OpenAI function-style definition."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class ToolCallRequest:
    """Request to execute one tool call."""

    id: str
    name: str
    arguments: str = "{}"
    server_name: str | None = None
    server_icons: str | None = None
    server_description: str | None = None

    def parsed_arguments(self) -> dict[str, Any]:
        if not self.arguments.strip():
            return {}
        try:
            parsed = json.loads(self.arguments)
        except json.JSONDecodeError as e:
            raise ToolExecutionError(self.name, f"Invalid JSON arguments: {e}") from e
        if not isinstance(parsed, dict):
            raise ToolExecutionError(self.name, "Arguments must be a JSON object")
        return parsed


@dataclass
class ToolCallRawData:
    """Structured tool response: content items plus permission signals."""

    content: list[dict[str, Any]] = field(default_factory=list)
    is_error: bool = False
    requires_permission: bool = False
    permission_request: PermissionRequest | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"content": self.content, "isError": self.is_error}
        if self.requires_permission:
            data["requiresPermission"] = True
        if self.permission_request is not None:
            data["permissionRequest"] = self.permission_request.to_dict()
        return data


@dataclass
class ToolCallResponse:
    tool_call_id: str
    content: str
    raw_data: ToolCallRawData = field(default_factory=ToolCallRawData)


class ToolExecutor(ABC):
    """Tool execution collaborator used by the generation core."""

    @abstractmethod
    async def call_tool(self, request: ToolCallRequest) -> ToolCallResponse:
        pass

    @abstractmethod
    async def grant_permission(self, server_name: str, permission_type: str, remember: bool = True) -> None:
        pass

    @abstractmethod
    async def is_server_running(self, server_name: str) -> bool:
        pass

    @abstractmethod
    async def get_all_tool_definitions(self, enabled_ids: list[str] | None = None) -> list[ToolDefinition]:
        pass


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None
    resources: list[dict[str, Any]] = Field(default_factory=list)

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self


class Tool(ABC):
    """Base class for in-process tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float = 30.0
    required_permission: PermissionLevel = "read"

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            ToolResult with success status and content
        """
        pass

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Check required arguments are present.

        Raises:
            ToolExecutionError if a required argument is missing
        """
        required = self.parameters.get("required", [])
        for name in required:
            if name not in arguments:
                raise ToolExecutionError(
                    self.name,
                    f"Missing required argument: {name}",
                )


@dataclass
class _Server:
    info: ToolServerInfo
    tools: dict[str, Tool] = field(default_factory=dict)
    running: bool = True
    remembered: set[str] = field(default_factory=set)
    one_shot: set[str] = field(default_factory=set)


class LocalToolRuntime(ToolExecutor):
    """Runs registered tools grouped by server, enforcing permission levels.

    A tool whose server lacks the required level does not run; the response
    instead carries ``requires_permission`` and a permission request. Grants
    are either remembered for the server or consumed by the next call.
    """

    def __init__(self) -> None:
        self._servers: dict[str, _Server] = {}

    def register_server(
        self,
        name: str,
        icons: str = "",
        description: str = "",
        auto_approve: list[str] | None = None,
        running: bool = True,
    ) -> None:
        self._servers[name] = _Server(
            info=ToolServerInfo(name=name, icons=icons, description=description),
            running=running,
            remembered=set(auto_approve or []),
        )

    def register(self, tool: Tool, server_name: str) -> None:
        """Register a tool on a server (created on demand)."""
        if not tool.name:
            raise ValueError("Tool must have a name")
        if server_name not in self._servers:
            self.register_server(server_name)
        log.debug("Registering tool", tool=tool.name, server=server_name)
        self._servers[server_name].tools[tool.name] = tool

    def set_server_running(self, server_name: str, running: bool) -> None:
        self._servers[server_name].running = running

    def has_permission(self, server_name: str, level: str) -> bool:
        server = self._servers.get(server_name)
        if server is None:
            return False
        granted = server.remembered | server.one_shot
        return bool(granted & _SATISFIED_BY.get(level, {level}))

    def _find(self, name: str, server_name: str | None) -> tuple[_Server, Tool]:
        if server_name:
            server = self._servers.get(server_name)
            if server is not None and name in server.tools:
                return server, server.tools[name]
        for server in self._servers.values():
            if name in server.tools:
                return server, server.tools[name]
        raise ToolNotFoundError(name)

    async def get_all_tool_definitions(self, enabled_ids: list[str] | None = None) -> list[ToolDefinition]:
        """Definitions of every tool, optionally limited to servers or tools in ``enabled_ids``."""
        enabled = set(enabled_ids) if enabled_ids is not None else None
        definitions: list[ToolDefinition] = []
        for server in self._servers.values():
            for tool in server.tools.values():
                if enabled is not None and server.info.name not in enabled and tool.name not in enabled:
                    continue
                definitions.append(
                    ToolDefinition(
                        name=tool.name,
                        description=tool.description,
                        parameters=dict(tool.parameters),
                        server=server.info,
                    )
                )
        return definitions

    async def grant_permission(self, server_name: str, permission_type: str, remember: bool = True) -> None:
        if permission_type not in PERMISSION_TYPES:
            raise ValueError(f"Unknown permission type: {permission_type}")
        server = self._servers.get(server_name)
        if server is None:
            raise ToolNotFoundError(server_name)
        if remember:
            server.remembered.add(permission_type)
        else:
            server.one_shot.add(permission_type)
        log.info("Permission granted", server=server_name, permission=permission_type, remember=remember)

    async def is_server_running(self, server_name: str) -> bool:
        server = self._servers.get(server_name)
        return bool(server and server.running)

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled task raised", error=str(e))

    async def call_tool(
        self,
        request: ToolCallRequest,
        abort_event: asyncio.Event | None = None,
    ) -> ToolCallResponse:
        """Execute a tool call.

        Raises:
            ToolNotFoundError if the tool is not registered
            ToolExecutionError if execution fails, times out or is aborted
        """
        server, tool = self._find(request.name, request.server_name)

        if not self.has_permission(server.info.name, tool.required_permission):
            permission = PermissionRequest(
                permission_type=tool.required_permission,
                server_name=server.info.name,
                tool_name=tool.name,
                request_id=str(uuid.uuid4()),
                description=f"{tool.name} needs {tool.required_permission} access to {server.info.name}",
            )
            log.info("Tool requires permission", tool=tool.name, server=server.info.name)
            return ToolCallResponse(
                tool_call_id=request.id,
                content=f"Permission required: {permission.description}",
                raw_data=ToolCallRawData(
                    content=[{"type": "text", "text": permission.description}],
                    requires_permission=True,
                    permission_request=permission,
                ),
            )
        # One-shot grants cover exactly one call.
        server.one_shot.clear()

        arguments = request.parsed_arguments()
        tool.validate_arguments(arguments)
        result = await self._execute(tool, arguments, abort_event)

        items: list[dict[str, Any]] = [{"type": "text", "text": result.content if result.success else result.error}]
        for resource in result.resources:
            items.append({"type": "resource", "resource": resource})
        return ToolCallResponse(
            tool_call_id=request.id,
            content=result.content if result.success else f"Error: {result.error}",
            raw_data=ToolCallRawData(content=items, is_error=not result.success),
        )

    async def _execute(
        self,
        tool: Tool,
        arguments: dict[str, Any],
        abort_event: asyncio.Event | None,
    ) -> ToolResult:
        execute_task: asyncio.Task[ToolResult] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        name = tool.name
        try:
            log.info("Executing tool", tool=name, args=arguments)
            timeout_seconds = max(0.01, float(tool.timeout_seconds or 30.0))
            execute_task = asyncio.create_task(tool.execute(**arguments))
            waiters: set[asyncio.Task[Any]] = {execute_task}
            if abort_event is not None:
                abort_wait_task = asyncio.create_task(abort_event.wait())
                waiters.add(abort_wait_task)
            done, _ = await asyncio.wait(
                waiters,
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = await execute_task
                if not isinstance(result, ToolResult):
                    raise ToolExecutionError(name, "Tool returned invalid result payload")
                log.info("Tool executed", tool=name, success=result.success)
                return result

            await self._cancel_task(execute_task)
            if abort_wait_task is not None and abort_wait_task in done:
                raise ToolExecutionError(name, "Execution aborted")
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            await self._cancel_task(execute_task)
            raise
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e)) from e
        finally:
            await self._cancel_task(abort_wait_task)

import asyncio

import pytest

from chatstream.exceptions import ToolExecutionError, ToolNotFoundError
from chatstream.tools.registry import LocalToolRuntime, Tool, ToolCallRequest, ToolResult


class SlowTool(Tool):
    name = "slow"
    description = "Slow"
    parameters = {
        "type": "object",
        "properties": {},
        "required": [],
    }
    timeout_seconds = 0.05

    async def execute(self, **kwargs):
        await asyncio.sleep(2.0)
        return ToolResult(success=True, content="done")


class CancellableTool(Tool):
    name = "cancellable"
    description = "Cancellable"
    parameters = {
        "type": "object",
        "properties": {},
        "required": [],
    }
    timeout_seconds = 20.0

    def __init__(self):
        self.cancelled = False

    async def execute(self, **kwargs):
        try:
            await asyncio.sleep(10.0)
            return ToolResult(success=True, content="done")
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class FailingTool(Tool):
    name = "failing"
    description = "Always fails"
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, **kwargs):
        return ToolResult(success=False, content="exit code 1")


def _local_runtime(tool: Tool) -> LocalToolRuntime:
    runtime = LocalToolRuntime()
    runtime.register_server("local", auto_approve=["read"])
    runtime.register(tool, "local")
    return runtime


def _request(name: str, arguments: str = "{}") -> ToolCallRequest:
    return ToolCallRequest(id=f"call_{name}", name=name, arguments=arguments)


@pytest.mark.asyncio
async def test_read_tool_runs_on_auto_approved_server(tools):
    response = await tools.call_tool(_request("read_file", '{"path": "a.txt"}'))

    assert response.tool_call_id == "call_read_file"
    assert response.content == "contents of a.txt"
    assert response.raw_data.is_error is False
    assert response.raw_data.requires_permission is False


@pytest.mark.asyncio
async def test_write_tool_requires_permission(tools, write_tool):
    response = await tools.call_tool(_request("write_file", '{"path": "a.txt"}'))

    assert response.raw_data.requires_permission is True
    permission = response.raw_data.permission_request
    assert permission.permission_type == "write"
    assert permission.server_name == "files"
    assert permission.tool_name == "write_file"
    assert permission.request_id
    assert write_tool.writes == []


@pytest.mark.asyncio
async def test_one_shot_grant_covers_a_single_call(tools, write_tool):
    await tools.grant_permission("files", "write", remember=False)

    first = await tools.call_tool(_request("write_file", '{"path": "a.txt"}'))
    second = await tools.call_tool(_request("write_file", '{"path": "b.txt"}'))

    assert first.content == "wrote a.txt"
    assert second.raw_data.requires_permission is True
    assert write_tool.writes == ["a.txt"]


@pytest.mark.asyncio
async def test_remembered_grant_and_all_level(tools, write_tool):
    await tools.grant_permission("files", "write", remember=True)
    await tools.call_tool(_request("write_file", '{"path": "a.txt"}'))
    await tools.call_tool(_request("write_file", '{"path": "b.txt"}'))
    assert write_tool.writes == ["a.txt", "b.txt"]

    assert tools.has_permission("web", "write") is False
    await tools.grant_permission("web", "all")
    assert tools.has_permission("web", "write") is True


@pytest.mark.asyncio
async def test_grant_rejects_bad_input(tools):
    with pytest.raises(ValueError):
        await tools.grant_permission("files", "admin")
    with pytest.raises(ToolNotFoundError):
        await tools.grant_permission("ghost", "read")


@pytest.mark.asyncio
async def test_unknown_tool_raises(tools):
    with pytest.raises(ToolNotFoundError):
        await tools.call_tool(_request("nope"))


@pytest.mark.asyncio
async def test_argument_validation(tools):
    with pytest.raises(ToolExecutionError, match="Missing required argument: path"):
        await tools.call_tool(_request("read_file", "{}"))
    with pytest.raises(ToolExecutionError, match="Invalid JSON"):
        await tools.call_tool(_request("read_file", "{path"))


@pytest.mark.asyncio
async def test_tool_timeout_raises_execution_error():
    runtime = _local_runtime(SlowTool())

    with pytest.raises(ToolExecutionError, match="timed out"):
        await runtime.call_tool(_request("slow"))


@pytest.mark.asyncio
async def test_abort_event_cancels_running_tool():
    tool = CancellableTool()
    runtime = _local_runtime(tool)
    abort_event = asyncio.Event()

    async def _abort_soon():
        await asyncio.sleep(0.05)
        abort_event.set()

    aborter = asyncio.create_task(_abort_soon())
    with pytest.raises(ToolExecutionError, match="aborted"):
        await runtime.call_tool(_request("cancellable"), abort_event=abort_event)
    await aborter

    assert tool.cancelled is True


@pytest.mark.asyncio
async def test_failed_result_is_reported_as_error():
    runtime = _local_runtime(FailingTool())

    response = await runtime.call_tool(_request("failing"))

    assert response.content == "Error: exit code 1"
    assert response.raw_data.is_error is True


@pytest.mark.asyncio
async def test_resources_are_passed_through(tools):
    response = await tools.call_tool(_request("web_lookup", '{"query": "cats"}'))

    items = response.raw_data.to_dict()["content"]
    assert items[0] == {"type": "text", "text": "8 pages"}
    assert [item["type"] for item in items[1:]] == ["resource"] * 8


@pytest.mark.asyncio
async def test_definitions_filtered_by_server_or_tool(tools):
    everything = await tools.get_all_tool_definitions()
    web_only = await tools.get_all_tool_definitions(["web"])
    by_tool = await tools.get_all_tool_definitions(["read_file"])

    assert [d.name for d in everything] == ["read_file", "write_file", "web_lookup"]
    assert [d.name for d in web_only] == ["web_lookup"]
    assert [d.name for d in by_tool] == ["read_file"]
    assert web_only[0].server.icons == "W"
    assert web_only[0].to_function()["function"]["name"] == "web_lookup"


@pytest.mark.asyncio
async def test_server_running_state(tools):
    assert await tools.is_server_running("files") is True
    tools.set_server_running("files", False)
    assert await tools.is_server_running("files") is False
    assert await tools.is_server_running("ghost") is False


def test_tool_result_populates_error_from_content_on_failure() -> None:
    result = ToolResult(success=False, content="command failed with exit code 1")

    assert result.error == "command failed with exit code 1"


def test_tool_result_keeps_explicit_error_on_failure() -> None:
    result = ToolResult(success=False, content="stderr output", error="explicit error")

    assert result.error == "explicit error"

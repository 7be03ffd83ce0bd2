# tests/test_system_tools.py

import asyncio

import pytest

from services.system_tools import (
    BashTool, PlanningTool, StrReplaceEditorTool, TerminateTool, ToolOutput, build_system_tools,
    system_tool_capabilities,
)


def test_tool_output_renders_mcp_content():
    assert ToolOutput(output="hi").to_content() == {"content": [{"type": "text", "text": "hi"}], "is_error": False}
    failed = ToolOutput(error="bad").to_content()
    assert failed["is_error"] is True
    assert failed["content"][0]["text"] == "Error: bad"
    assert ToolOutput().to_content()["content"][0]["text"] == "Operation completed"


def test_built_in_capabilities_do_not_claim_file_operations():
    capabilities = system_tool_capabilities(build_system_tools())
    assert "command_execution" in capabilities
    assert "planning" in capabilities
    assert "file_operations" not in capabilities
    assert len(capabilities) == len(set(capabilities))


@pytest.mark.asyncio
async def test_bash_runs_commands():
    tool = BashTool()

    ok = await tool.execute(command="echo hello")
    assert ok.output == "hello"
    assert ok.error is None

    failed = await tool.execute(command="exit 3")
    assert "status 3" in failed.error

    missing = await tool.execute()
    assert missing.error == "Parameter `command` is required"


@pytest.mark.asyncio
async def test_bash_times_out():
    result = await BashTool().execute(command="sleep 5", timeout=0.1)
    assert "timed out" in result.error


@pytest.mark.asyncio
async def test_bash_kills_command_when_cancelled(tmp_path):
    marker = tmp_path / "marker"

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(BashTool().execute(command=f"sleep 1; touch {marker}"), 0.2)
    await asyncio.sleep(1.5)

    assert not marker.exists()


@pytest.mark.asyncio
async def test_planning_lifecycle():
    tool = PlanningTool()

    created = await tool.execute(command="create", plan_id="p1", title="Ship it", steps=["build", "test"])
    assert "Plan: Ship it (ID: p1)" in created.output
    assert tool.active_plan_id == "p1"

    marked = await tool.execute(command="mark_step", step_index=1, step_status="completed", step_notes="green")
    assert "1. [completed] test - green" in marked.output

    listing = await tool.execute(command="list")
    assert "p1 (active): Ship it - 1/2 steps completed" in listing.output

    updated = await tool.execute(command="update", plan_id="p1", steps=["build", "test", "deploy"])
    assert "1. [completed] test" in updated.output
    assert "2. [not_started] deploy" in updated.output

    deleted = await tool.execute(command="delete", plan_id="p1")
    assert deleted.error is None
    assert tool.active_plan_id is None


@pytest.mark.asyncio
async def test_planning_rejects_bad_input():
    tool = PlanningTool()

    assert "Unrecognized command" in (await tool.execute(command="explode")).error
    assert "`title` is required" in (await tool.execute(command="create", plan_id="p1", steps=["a"])).error
    await tool.execute(command="create", plan_id="p1", title="t", steps=["a"])
    assert "already exists" in (await tool.execute(command="create", plan_id="p1", title="t", steps=["a"])).error
    assert "Invalid step_index" in (await tool.execute(command="mark_step", step_index=4)).error


@pytest.mark.asyncio
async def test_editor_create_view_replace_insert(tmp_path):
    tool = StrReplaceEditorTool()
    path = tmp_path / "sub" / "notes.txt"

    created = await tool.execute(command="create", path=str(path), file_text="alpha\nbeta")
    assert created.error is None
    assert path.read_text() == "alpha\nbeta"

    viewed = await tool.execute(command="view", path=str(path))
    assert "     1\talpha" in viewed.output

    await tool.execute(command="str_replace", path=str(path), old_str="beta", new_str="gamma")
    assert path.read_text() == "alpha\ngamma"

    await tool.execute(command="insert", path=str(path), insert_line=1, new_str="between")
    assert path.read_text() == "alpha\nbetween\ngamma"


@pytest.mark.asyncio
async def test_editor_errors(tmp_path):
    tool = StrReplaceEditorTool()
    path = tmp_path / "dup.txt"
    path.write_text("x x")

    assert "already exists" in (await tool.execute(command="create", path=str(path))).error
    assert "appears 2 times" in (await tool.execute(command="str_replace", path=str(path), old_str="x")).error
    assert "did not appear" in (await tool.execute(command="str_replace", path=str(path), old_str="y")).error
    assert "does not exist" in (await tool.execute(command="view", path=str(tmp_path / "nope"))).error
    assert "Invalid insert_line" in (await tool.execute(command="insert", path=str(path), insert_line=9)).error
    assert "Unrecognized command" in (await tool.execute(command="delete", path=str(path))).error


@pytest.mark.asyncio
async def test_terminate():
    result = await TerminateTool().execute(status="failure")
    assert result.output == "The interaction has been completed with status: failure"

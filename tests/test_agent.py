"""
Tests for agent module.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from ema_agent.agent.core import Agent, AgentState, MaxStepsExceededError
from ema_agent.events import AgentEvent
from ema_agent.llm.base import FunctionCall, LLMResponse, TokenUsage, ToolCall
from ema_agent.llm.openai import OpenAILLM
from ema_agent.retry import RetryConfig, RetryExhaustedError
from ema_agent.tools.base import Tool, ToolParameter, ToolResult


def tool_call(call_id, name, **arguments):
    return ToolCall(id=call_id, function=FunctionCall(name=name, arguments=arguments))


def make_agent(tmp_path, settings, llm, tools=(), **kwargs):
    return Agent(
        llm=llm,
        system_prompt="You are a test agent.",
        tools=tools,
        settings=settings,
        workspace_dir=str(tmp_path / "ws"),
        **kwargs,
    )


def make_echo_tool(name="echo", delay=0.0, log=None):
    async def handler(text: str = "") -> ToolResult:
        await asyncio.sleep(delay)
        if log is not None:
            log.append(name)
        return ToolResult(success=True, content=f"{name}:{text}")

    return Tool(
        name=name,
        description=f"Echo text back ({name})",
        parameters=[ToolParameter("text", "string", "Text to echo", required=False)],
        handler=handler,
    )


@pytest.mark.asyncio
async def test_simple_answer(tmp_path, settings, mock_llm):
    """Test a reply without tool calls finishes the run."""
    mock_llm.generate.return_value = LLMResponse(content="hello")
    agent = make_agent(tmp_path, settings, mock_llm)

    result = await agent.chat("hi")

    assert result.ok is True
    assert result.content == "hello"
    assert result.steps == 1
    assert agent.state == AgentState.DONE_SUCCESS

    history = agent.get_history()
    assert [m.role for m in history] == ["system", "user", "assistant"]
    assert history[1].content == "hi"
    assert history[2].content == "hello"


@pytest.mark.asyncio
async def test_llm_receives_history_and_tools(tmp_path, settings, mock_llm):
    """Test the request carries messages and tool definitions."""
    mock_llm.generate.return_value = LLMResponse(content="ok")
    agent = make_agent(tmp_path, settings, mock_llm, tools=[make_echo_tool()])

    await agent.chat("hi")

    messages, definitions = mock_llm.generate.await_args.args
    assert [m.role for m in messages] == ["system", "user"]
    assert [d.name for d in definitions] == ["echo"]
    assert definitions[0].parameters["properties"]["text"]["type"] == "string"


@pytest.mark.asyncio
async def test_no_tools_sends_none(tmp_path, settings, mock_llm):
    """Test that an agent without tools sends no tool list."""
    mock_llm.generate.return_value = LLMResponse(content="ok")
    agent = make_agent(tmp_path, settings, mock_llm)

    await agent.chat("hi")

    assert mock_llm.generate.await_args.args[1] is None


@pytest.mark.asyncio
async def test_tool_call_then_answer(tmp_path, settings, mock_llm):
    """Test a tool round followed by a final answer."""
    mock_llm.generate.side_effect = [
        LLMResponse(content="", tool_calls=[tool_call("call_1", "echo", text="ping")]),
        LLMResponse(content="done"),
    ]
    agent = make_agent(tmp_path, settings, mock_llm, tools=[make_echo_tool()])

    result = await agent.chat("echo ping")

    assert result.ok is True
    assert result.steps == 2
    history = agent.get_history()
    assert [m.role for m in history] == ["system", "user", "assistant", "tool", "assistant"]
    assert history[3].content == "echo:ping"
    assert history[3].tool_call_id == "call_1"
    assert history[3].name == "echo"


@pytest.mark.asyncio
async def test_unknown_tool_reported_to_llm(tmp_path, settings, mock_llm):
    """Test an unknown tool name becomes an error tool message."""
    mock_llm.generate.side_effect = [
        LLMResponse(content="", tool_calls=[tool_call("call_1", "foo")]),
        LLMResponse(content="sorry"),
    ]
    agent = make_agent(tmp_path, settings, mock_llm)

    result = await agent.chat("use foo")

    assert result.ok is True
    tool_message = agent.get_history()[3]
    assert tool_message.role == "tool"
    assert tool_message.content == "Error: Unknown tool: foo"


@pytest.mark.asyncio
async def test_tool_exception_becomes_error_message(tmp_path, settings, mock_llm):
    """Test a raising tool does not abort the run."""
    async def explode(**kwargs):
        raise ValueError("bad input")

    broken = Tool(name="broken", description="Always fails", parameters=[], handler=explode)
    mock_llm.generate.side_effect = [
        LLMResponse(content="", tool_calls=[tool_call("call_1", "broken")]),
        LLMResponse(content="recovered"),
    ]
    agent = make_agent(tmp_path, settings, mock_llm, tools=[broken])
    finished = []
    agent.events.on(AgentEvent.TOOL_CALL_FINISHED, finished.append)

    result = await agent.chat("go")

    assert result.ok is True
    content = agent.get_history()[3].content
    assert content.startswith("Error: Tool execution failed: ValueError: bad input")
    assert "Traceback" in content
    assert finished[0].ok is False


@pytest.mark.asyncio
async def test_tool_calls_run_sequentially_in_order(tmp_path, settings, mock_llm):
    """Test results are recorded in call order even when latencies differ."""
    log = []
    tools = [
        make_echo_tool("a", delay=0.05, log=log),
        make_echo_tool("b", delay=0.0, log=log),
        make_echo_tool("c", delay=0.02, log=log),
    ]
    mock_llm.generate.side_effect = [
        LLMResponse(content="", tool_calls=[
            tool_call("1", "a"), tool_call("2", "b"), tool_call("3", "c"),
        ]),
        LLMResponse(content="done"),
    ]
    agent = make_agent(tmp_path, settings, mock_llm, tools=tools)
    events = []
    agent.events.on(AgentEvent.TOOL_CALL_STARTED, lambda p: events.append(("start", p.function_name)))
    agent.events.on(AgentEvent.TOOL_CALL_FINISHED, lambda p: events.append(("end", p.function_name)))

    await agent.chat("run all")

    assert log == ["a", "b", "c"]
    tool_messages = [m for m in agent.get_history() if m.role == "tool"]
    assert [m.tool_call_id for m in tool_messages] == ["1", "2", "3"]
    assert events == [
        ("start", "a"), ("end", "a"),
        ("start", "b"), ("end", "b"),
        ("start", "c"), ("end", "c"),
    ]


@pytest.mark.asyncio
async def test_max_steps_exceeded(tmp_path, settings, mock_llm):
    """Test the run fails once the step budget is used up."""
    mock_llm.generate.return_value = LLMResponse(
        content="", tool_calls=[tool_call("call", "echo", text="again")]
    )
    agent = make_agent(tmp_path, settings, mock_llm, tools=[make_echo_tool()], max_steps=2)
    finished = []
    agent.events.on(AgentEvent.RUN_FINISHED, finished.append)

    result = await agent.chat("loop forever")

    assert result.ok is False
    assert result.content == "Task couldn't be completed after 2 steps."
    assert isinstance(result.error, MaxStepsExceededError)
    assert mock_llm.generate.await_count == 2
    assert agent.state == AgentState.DONE_FAILURE
    assert finished[0].ok is False


@pytest.mark.asyncio
async def test_step_events(tmp_path, settings, mock_llm):
    """Test step numbering is one-based."""
    mock_llm.generate.side_effect = [
        LLMResponse(content="", tool_calls=[tool_call("1", "echo")]),
        LLMResponse(content="done"),
    ]
    agent = make_agent(tmp_path, settings, mock_llm, tools=[make_echo_tool()], max_steps=7)
    steps = []
    agent.events.on(AgentEvent.STEP_STARTED, steps.append)

    await agent.chat("go")

    assert [(s.step_number, s.max_steps) for s in steps] == [(1, 7), (2, 7)]


@pytest.mark.asyncio
async def test_llm_failure_ends_run(tmp_path, settings, mock_llm):
    """Test a non-retry error is reported as a generic failure."""
    mock_llm.generate.side_effect = ValueError("broken request")
    agent = make_agent(tmp_path, settings, mock_llm)

    result = await agent.chat("hi")

    assert result.ok is False
    assert result.content == "LLM call failed."
    assert isinstance(result.error, ValueError)
    assert [m.role for m in agent.get_history()] == ["system", "user"]


@pytest.mark.asyncio
async def test_retries_exhausted(tmp_path, settings):
    """Test four failed attempts surface as a retry failure."""
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=RuntimeError("503"))
    llm = OpenAILLM(
        api_key="test-key",
        model="test-model",
        retry_config=RetryConfig(max_retries=3, initial_delay=0),
        client=client,
    )
    agent = make_agent(tmp_path, settings, llm)
    finished = []
    agent.events.on(AgentEvent.RUN_FINISHED, finished.append)

    result = await agent.chat("hi")

    assert client.chat.completions.create.await_count == 4
    assert result.ok is False
    assert isinstance(result.error, RetryExhaustedError)
    assert result.error.attempts == 4
    assert result.content == "LLM call failed after 4 retries."
    assert finished[0].msg == result.content


@pytest.mark.asyncio
async def test_thinking_preserved_across_steps(tmp_path, settings, mock_llm):
    """Test reasoning is sent back verbatim on the next call."""
    thinking = "I should echo first.\n  (indented detail)"
    mock_llm.generate.side_effect = [
        LLMResponse(content="", thinking=thinking, tool_calls=[tool_call("1", "echo")]),
        LLMResponse(content="done"),
    ]
    agent = make_agent(tmp_path, settings, mock_llm, tools=[make_echo_tool()])

    await agent.chat("go")

    second_call_messages = mock_llm.generate.await_args_list[1].args[0]
    assistant = [m for m in second_call_messages if m.role == "assistant"][0]
    assert assistant.thinking == thinking


@pytest.mark.asyncio
async def test_api_tokens_tracked(tmp_path, settings, mock_llm):
    """Test reported usage is recorded on the context."""
    mock_llm.generate.return_value = LLMResponse(content="ok", usage=TokenUsage(total_tokens=321))
    agent = make_agent(tmp_path, settings, mock_llm)

    await agent.chat("hi")

    assert agent.context_manager.api_total_tokens == 321


@pytest.mark.asyncio
async def test_summarizes_before_step(tmp_path, settings, mock_llm):
    """Test an over-budget history is compacted before the next LLM call."""
    mock_llm.generate.side_effect = [
        LLMResponse(content="", tool_calls=[tool_call("1", "echo", text="word " * 100)]),
        LLMResponse(content="round summary"),
        LLMResponse(content="final"),
    ]
    agent = make_agent(tmp_path, settings, mock_llm, tools=[make_echo_tool()], token_limit=60)
    summaries = []
    agent.events.on(AgentEvent.SUMMARIZE_MESSAGES_FINISHED, summaries.append)

    result = await agent.chat("go")

    assert result.ok is True
    assert summaries[0].ok is True
    history = agent.get_history()
    assert history[1].content == "go"
    assert history[2].content.endswith("round summary")
    assert history[3].content == "final"


@pytest.mark.asyncio
async def test_history_persists_between_chats(tmp_path, settings, mock_llm):
    """Test consecutive chats share one conversation."""
    mock_llm.generate.side_effect = [LLMResponse(content="one"), LLMResponse(content="two")]
    agent = make_agent(tmp_path, settings, mock_llm)

    await agent.chat("first")
    await agent.chat("second")

    contents = [m.content for m in agent.get_history()[1:]]
    assert contents == ["first", "one", "second", "two"]


def test_agent_uses_settings_defaults(tmp_path, settings, mock_llm):
    """Test limits fall back to settings."""
    agent = make_agent(tmp_path, settings, mock_llm)

    assert agent.max_steps == settings.agent.max_steps
    assert agent.context_manager.token_limit == settings.agent.token_limit
    assert agent.state == AgentState.STEPPING


def test_explicit_zero_limits_rejected(tmp_path, settings, mock_llm):
    """Test explicit zero limits are rejected instead of replaced by defaults."""
    with pytest.raises(ValueError, match="max_steps"):
        make_agent(tmp_path, settings, mock_llm, max_steps=0)

    with pytest.raises(ValueError, match="token_limit"):
        make_agent(tmp_path, settings, mock_llm, token_limit=0)

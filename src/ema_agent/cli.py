"""
Command-line interface for EMA Agent.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

import structlog

from .agent import Agent
from .agent.core import DEFAULT_SYSTEM_PROMPT
from .config import Settings, get_settings
from .events import (
    AgentEvent,
    CreateSummaryFinished,
    EventChannel,
    LLMResponseReceived,
    RunFinished,
    StepStarted,
    SummarizeMessagesFinished,
    SummarizeMessagesStarted,
    TokenEstimationFallbacked,
    ToolCallFinished,
    ToolCallStarted,
)
from .tools import BackgroundShellManager, create_file_tools, create_note_tools, create_shell_tools

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(colors=True),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

RESULT_PREVIEW_CHARS = 300


def main() -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="ema-agent",
        description="EMA Agent - a tool-using chat agent with bounded context",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    chat_parser = subparsers.add_parser("chat", help="Start an interactive session")
    chat_parser.add_argument("--workspace", default=None, help="Workspace directory for tools")
    chat_parser.add_argument("--max-steps", type=int, default=None, help="Max steps per run")
    chat_parser.add_argument("--token-limit", type=int, default=None, help="Token budget before summarization")
    chat_parser.add_argument("--system-prompt", default=None, help="Path to a system prompt file")
    chat_parser.add_argument("--no-tools", action="store_true", help="Start without any tools")

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("--check", action="store_true", help="Check configuration validity")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    if args.command == "chat":
        try:
            asyncio.run(run_chat(args))
        except KeyboardInterrupt:
            print("\nExiting...")
    elif args.command == "config":
        show_config(args.check)
    else:
        parser.print_help()


def _format_json(value: object) -> str:
    try:
        return json.dumps(value, indent=2, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def attach_event_logging(events: EventChannel) -> None:
    """Render agent events to the console."""

    def on_fallback(p: TokenEstimationFallbacked) -> None:
        logger.warning("Token estimation fell back", error=str(p.error))

    def on_summarize_started(p: SummarizeMessagesStarted) -> None:
        logger.info(
            "Summarizing messages",
            local=p.local_estimated_tokens,
            api=p.api_reported_tokens,
            limit=p.token_limit,
        )

    def on_summarize_finished(p: SummarizeMessagesFinished) -> None:
        if p.ok:
            logger.info(
                "Summary completed",
                old_tokens=p.old_tokens,
                new_tokens=p.new_tokens,
                users=p.user_message_count,
                summaries=p.summary_count,
            )
        else:
            logger.warning("Summary skipped", reason=p.msg)

    def on_round_summary(p: CreateSummaryFinished) -> None:
        if p.ok:
            logger.info("Round summary generated", round_num=p.round_num)
        else:
            logger.warning("Round summary failed", round_num=p.round_num, error=str(p.error))

    def on_step(p: StepStarted) -> None:
        print(f"\n--- Step {p.step_number}/{p.max_steps} ---")

    def on_response(p: LLMResponseReceived) -> None:
        if p.response.thinking:
            print(f"\n[Thinking]\n{p.response.thinking}")
        if p.response.content:
            print(f"\nEMA > {p.response.content}")

    def on_tool_started(p: ToolCallStarted) -> None:
        print(f"\n[Tool Call] {p.function_name}\n{_format_json(p.call_args)}")

    def on_tool_finished(p: ToolCallFinished) -> None:
        if p.ok:
            text = p.result.content
            if len(text) > RESULT_PREVIEW_CHARS:
                text = text[:RESULT_PREVIEW_CHARS] + "..."
            print(f"[Result] {text}")
        else:
            print(f"[Error] {p.result.error}")

    def on_run_finished(p: RunFinished) -> None:
        if p.ok:
            logger.info("Done")
        else:
            logger.error("Run failed", msg=p.msg, error=str(p.error))

    (
        events.on(AgentEvent.TOKEN_ESTIMATION_FALLBACKED, on_fallback)
        .on(AgentEvent.SUMMARIZE_MESSAGES_STARTED, on_summarize_started)
        .on(AgentEvent.SUMMARIZE_MESSAGES_FINISHED, on_summarize_finished)
        .on(AgentEvent.CREATE_SUMMARY_FINISHED, on_round_summary)
        .on(AgentEvent.STEP_STARTED, on_step)
        .on(AgentEvent.LLM_RESPONSE_RECEIVED, on_response)
        .on(AgentEvent.TOOL_CALL_STARTED, on_tool_started)
        .on(AgentEvent.TOOL_CALL_FINISHED, on_tool_finished)
        .on(AgentEvent.RUN_FINISHED, on_run_finished)
    )


def build_agent(
    settings: Settings,
    workspace_dir: str,
    system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    with_tools: bool = True,
    max_steps: int | None = None,
    token_limit: int | None = None,
    shell_manager: BackgroundShellManager | None = None,
) -> Agent:
    """Create an agent with the default tool set."""
    tools = []
    if with_tools:
        tools.extend(create_file_tools(workspace_dir))
        tools.extend(create_shell_tools(workspace_dir, shell_manager))
        tools.extend(create_note_tools(str(Path(workspace_dir) / ".agent_memory.json")))

    return Agent(
        system_prompt=system_prompt,
        tools=tools,
        settings=settings,
        workspace_dir=workspace_dir,
        max_steps=max_steps,
        token_limit=token_limit,
    )


async def run_chat(args: argparse.Namespace) -> None:
    """Interactive REPL."""
    settings = get_settings()
    workspace_dir = args.workspace or settings.agent.workspace_dir

    system_prompt = DEFAULT_SYSTEM_PROMPT
    if args.system_prompt:
        system_prompt = Path(args.system_prompt).read_text(encoding="utf-8")

    shell_manager = BackgroundShellManager()
    agent = build_agent(
        settings,
        workspace_dir,
        system_prompt=system_prompt,
        with_tools=not args.no_tools,
        max_steps=args.max_steps,
        token_limit=args.token_limit,
        shell_manager=shell_manager,
    )
    agent.llm.retry_callback = lambda error, attempt: logger.warning(
        "LLM call failed, retrying", attempt=attempt, error=str(error)
    )
    attach_event_logging(agent.events)

    print("Type your message, or /exit to quit. Commands: /history, /clear")

    try:
        while True:
            print("-" * 64)
            user_input = (await asyncio.to_thread(input, "YOU > ")).strip()
            if not user_input:
                continue
            if user_input in ("/exit", "/quit"):
                break
            if user_input == "/clear":
                print("\033[2J\033[H", end="")
                continue
            if user_input == "/history":
                for msg in agent.get_history():
                    print(f"{msg.role.upper()} {_format_json(msg.content)}")
                continue

            await agent.chat(user_input)
            logger.info("API usage", total_tokens=agent.context_manager.api_total_tokens)
    except EOFError:
        pass
    finally:
        await shell_manager.shutdown()


def show_config(check: bool) -> None:
    """Show current configuration."""
    settings = get_settings()
    llm_config = settings.get_llm_config()

    def mask(value: str) -> str:
        if not value:
            return "(not set)"
        return value[:4] + "..." + value[-4:] if len(value) > 10 else "****"

    print("\n=== EMA-Agent Configuration ===\n")

    print("LLM:")
    print(f"  Provider: {llm_config.provider}")
    print(f"  Model: {llm_config.model}")
    print(f"  Base URL: {llm_config.base_url or '(provider default)'}")
    print(f"  API Key: {mask(llm_config.api_key)}")

    print("\nRetry:")
    print(f"  Enabled: {settings.retry.enabled}")
    print(f"  Max Retries: {settings.retry.max_retries}")
    print(f"  Delay: {settings.retry.initial_delay}s x{settings.retry.exponential_base} (max {settings.retry.max_delay}s)")

    print("\nAgent:")
    print(f"  Workspace: {Path(settings.agent.workspace_dir).resolve()}")
    print(f"  Max Steps: {settings.agent.max_steps}")
    print(f"  Token Limit: {settings.agent.token_limit}")

    if check:
        print("\n=== Configuration Check ===\n")
        if not llm_config.api_key:
            print(f"Error: no API key set for provider '{llm_config.provider}'")
        else:
            print("Configuration looks good!")


if __name__ == "__main__":
    main()

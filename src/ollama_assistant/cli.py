"""Command line front-end for Ollama Assistant."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from pathlib import Path

import click
from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ollama_assistant import __version__
from ollama_assistant.config import AssistantConfig, load_config
from ollama_assistant.core.completion import CodeCompletionService, extract_new_code
from ollama_assistant.core.session import ChatSession
from ollama_assistant.errors import BackendError
from ollama_assistant.events.bus import ALL_EVENTS, EventBus
from ollama_assistant.llm.client import list_models
from ollama_assistant.prompts import (
    ContextMode,
    EditorContext,
    build_chat_prompt,
    build_error_prompt,
    build_quick_info_prompt,
)
from ollama_assistant.types import EventType, SessionEvent

console = Console()

_HELP = """\
  /reset   - Clear the conversation
  /tokens  - Show cumulative token usage
  /log     - Show the last log entry (usage of the last response)
  /quit    - Exit
  Ctrl-C while a response streams cancels it."""


class StreamingDisplay:
    """Renders session events to the console as they arrive."""

    def __init__(self, console: Console, verbose: bool = False) -> None:
        self.console = console
        self.verbose = verbose

    def handle(self, event: SessionEvent) -> None:
        if event.type == EventType.USER_MESSAGE:
            self.console.print("[bold cyan]Assistant:[/bold cyan] ", end="")
        elif event.type == EventType.RESPONSE_FRAGMENT:
            self.console.print(event.text, end="", markup=False, highlight=False)
        elif event.type == EventType.CANCELED:
            self.console.print(f"[yellow]{escape(event.text.strip())}[/yellow]")
        elif event.type == EventType.ERROR:
            self.console.print(f"[red]Error: {escape(event.text)}[/red]")
        elif event.type == EventType.LOG_ENTRY and self.verbose:
            self.console.print(f"\n[dim]{escape(event.text.rstrip())}[/dim]", highlight=False)


def _load(config_path: str | None, url: str | None, model: str | None) -> AssistantConfig:
    config, config_file = load_config(config_path)
    if config_file:
        console.print(f"[dim]Config: {escape(str(config_file))}[/dim]")
    if url:
        config.endpoint_url = url
    if model:
        config.model_name = model
    return config


def _install_cancel_handler(loop: asyncio.AbstractEventLoop, cancel) -> bool:
    try:
        loop.add_signal_handler(signal.SIGINT, cancel)
    except (NotImplementedError, RuntimeError):
        return False
    return True


def _remove_cancel_handler(loop: asyncio.AbstractEventLoop) -> None:
    try:
        loop.remove_signal_handler(signal.SIGINT)
    except (NotImplementedError, RuntimeError):
        pass


async def _stream_reply(
    session: ChatSession, user_text: str, prompt: str | None = None,
) -> None:
    loop = asyncio.get_running_loop()
    installed = _install_cancel_handler(loop, session.cancel)
    start = time.monotonic()
    try:
        async for _ in session.send(user_text, prompt or build_chat_prompt(user_text)):
            pass
    finally:
        if installed:
            _remove_cancel_handler(loop)
    console.print(f"\n[dim]({time.monotonic() - start:.1f}s)[/dim]\n")


async def _chat_loop(config: AssistantConfig, verbose: bool) -> None:
    bus = EventBus()
    display = StreamingDisplay(console, verbose=verbose)
    bus.subscribe(ALL_EVENTS, display.handle)
    session = ChatSession(config, event_bus=bus, escape_markup=False)

    history_path = Path(os.path.expanduser("~/.ollama_assistant/history"))
    history_path.parent.mkdir(parents=True, exist_ok=True)
    prompt = PromptSession(history=FileHistory(str(history_path)))

    try:
        while True:
            try:
                user_input = (await prompt.prompt_async("You: ")).strip()
            except (EOFError, KeyboardInterrupt):
                console.print("\n[dim]Goodbye![/dim]")
                break
            if not user_input:
                continue

            if user_input in ("/quit", "/exit"):
                console.print("[dim]Goodbye![/dim]")
                break
            if user_input == "/help":
                console.print(_HELP)
                continue
            if user_input == "/reset":
                session.reset()
                console.print("[dim]Conversation cleared.[/dim]")
                continue
            if user_input == "/log":
                entry = bus.latest(EventType.LOG_ENTRY)
                if entry is None:
                    console.print("[dim]No usage reported yet.[/dim]")
                else:
                    console.print(escape(entry.text.rstrip()), style="dim", highlight=False)
                continue
            if user_input == "/tokens":
                console.print(
                    f"[dim]Tokens so far: {session.cumulative_tokens:,} "
                    f"(next num_ctx {session.usage.compute_context_window():,})[/dim]"
                )
                continue

            await _stream_reply(session, user_input)
    finally:
        await session.aclose()


@click.group()
@click.version_option(__version__, prog_name="ollama-assistant")
@click.option("--config", "-c", "config_path", default=None,
              help="Path to ollama_assistant.yaml (auto-detected from CWD or ~/.ollama_assistant/)")
@click.option("--url", default=None, help="Ollama endpoint URL")
@click.option("--model", "-m", default=None, help="Model name")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, url: str | None,
         model: str | None, verbose: bool):
    """Ollama Assistant - chat and code completion with local Ollama models."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    ctx.obj = {"config": _load(config_path, url, model), "verbose": verbose}


@main.command()
@click.pass_context
def chat(ctx: click.Context):
    """Interactive chat session."""
    config: AssistantConfig = ctx.obj["config"]
    console.print(
        f"[bold bright_blue]Ollama Assistant[/bold bright_blue] "
        f"[dim]v{__version__} - {config.model_name} @ {config.endpoint_url}[/dim]"
    )
    console.print("[dim]Type /help for commands[/dim]\n")
    asyncio.run(_chat_loop(config, ctx.obj["verbose"]))


def _run_single(ctx: click.Context, user_text: str, prompt: str) -> None:
    config: AssistantConfig = ctx.obj["config"]

    async def _run() -> None:
        bus = EventBus()
        bus.subscribe(ALL_EVENTS, StreamingDisplay(console, ctx.obj["verbose"]).handle)
        session = ChatSession(config, event_bus=bus, escape_markup=False)
        try:
            await _stream_reply(session, user_text, prompt)
        finally:
            await session.aclose()

    asyncio.run(_run())


@main.command()
@click.argument("question")
@click.option("--file", "-f", "file_path", default=None,
              type=click.Path(exists=True, dir_okay=False),
              help="Send this file along as context")
@click.pass_context
def ask(ctx: click.Context, question: str, file_path: str | None):
    """Ask a single question and stream the answer."""
    if file_path:
        path = Path(file_path)
        context = EditorContext(
            active_document_name=path.name,
            active_document_text=path.read_text(errors="replace"),
        )
        prompt = build_chat_prompt(question, ContextMode.FILE, context)
    else:
        prompt = build_chat_prompt(question)
    _run_single(ctx, question, prompt)


@main.command()
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--line", type=int, required=True, help="1-based line of the error")
@click.option("--column", type=int, default=1, help="1-based column of the error")
@click.option("--description", "-d", required=True, help="Compiler message")
@click.option("--level", default="Error", help="Error, Warning or Message")
@click.option("--project", default="", help="Project the file belongs to")
@click.pass_context
def fix(ctx: click.Context, file_path: str, line: int, column: int,
        description: str, level: str, project: str):
    """Ask for a fix to a compiler error in FILE_PATH."""
    path = Path(file_path)
    prompt = build_error_prompt(
        level, description, path.name, project or path.parent.name,
        path.read_text(errors="replace"), line, column,
    )
    _run_single(ctx, f"Fix: {description}", prompt)


@main.command()
@click.argument("word")
@click.argument("line_text")
@click.pass_context
def explain(ctx: click.Context, word: str, line_text: str):
    """Explain WORD as used in LINE_TEXT."""
    _run_single(ctx, f"Explain {word}", build_quick_info_prompt(word, line_text))


@main.command()
@click.option("--before", "code_before", required=True, help="Code before the cursor")
@click.option("--after", "code_after", default="", help="Code after the cursor")
@click.option("--language", "-l", default=None, help="Programming language")
@click.option("--raw", is_flag=True, help="Print the completion without cleanup")
@click.pass_context
def complete(ctx: click.Context, code_before: str, code_after: str,
             language: str | None, raw: bool):
    """Suggest code to insert at the cursor."""
    config: AssistantConfig = ctx.obj["config"]

    async def _run() -> str:
        bus = EventBus()
        bus.subscribe(
            EventType.ERROR,
            lambda e: console.print(f"[red]Error: {escape(e.text)}[/red]"),
        )
        service = CodeCompletionService(config, event_bus=bus)
        try:
            return await service.complete(code_before, code_after, language)
        finally:
            await service.aclose()

    suggestion = asyncio.run(_run())
    if not raw:
        suggestion = extract_new_code(suggestion, code_before)
    if suggestion:
        click.echo(suggestion)


@main.command()
@click.pass_context
def models(ctx: click.Context):
    """List models available on the Ollama server."""
    config: AssistantConfig = ctx.obj["config"]
    try:
        names = asyncio.run(list_models(config.endpoint_url))
    except BackendError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise SystemExit(1)

    table = Table(title=f"Models @ {config.endpoint_url}")
    table.add_column("Name")
    table.add_column("Selected", justify="center")
    for name in names:
        table.add_row(name, "*" if name == config.model_name else "")
    console.print(table)


if __name__ == "__main__":
    main()

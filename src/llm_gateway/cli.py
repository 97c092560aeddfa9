"""Command-line entry point: connection test and one-shot chat."""

from __future__ import annotations

import asyncio
import logging
import sys

import click
from rich.console import Console
from rich.table import Table

from llm_gateway.config import GatewayConfig, load_config
from llm_gateway.core.engine import CompletionEngine
from llm_gateway.errors import GatewayError
from llm_gateway.events.bus import EventBus
from llm_gateway.types import AgentEvent, ChatMessage, EventType, TextPart

console = Console()
err_console = Console(stderr=True)


class StreamingDisplay:
    """Renders engine events to the terminal as they arrive."""

    def __init__(self, con: Console):
        self.con = con
        self._streaming = False

    def handle(self, event: AgentEvent):
        if event.type == EventType.LLM_STREAMING:
            self._streaming = True
            self.con.print(event.data["text"], end="", highlight=False)

        elif event.type == EventType.TOOL_CALL:
            self._flush()
            args = str(event.data.get("input", {}))
            if len(args) > 120:
                args = args[:120] + "..."
            self.con.print(f"[yellow]> {event.data['name']}[/yellow] [dim]{args}[/dim]")

        elif event.type == EventType.LLM_RESPONSE:
            self._flush()
            self.con.print(
                f"[dim]({event.data['latency_ms'] / 1000:.1f}s, "
                f"{event.data['tool_calls']} tool calls)[/dim]"
            )

        elif event.type == EventType.LLM_CANCELLED:
            self._flush()
            self.con.print("[yellow]Cancelled[/yellow]")

        elif event.type == EventType.LLM_ERROR:
            self._flush()
            self.con.print(f"[red]Error: {event.data['error']}[/red]")

    def _flush(self):
        if self._streaming:
            self.con.print()
            self._streaming = False


def _setup_logging(config: GatewayConfig, verbose: bool) -> None:
    level = logging.DEBUG if verbose else config.logging_level
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _list_models(config: GatewayConfig, refresh: bool) -> int:
    engine = CompletionEngine(config)
    try:
        models = await engine.provide_models(refresh=refresh)
    except GatewayError as e:
        err_console.print(f"[red]Connection failed: {e}[/red]")
        return 1
    finally:
        await engine.close()

    if not models:
        console.print(f"[yellow]No models found at {config.server_url}[/yellow]")
        return 0

    table = Table(title=f"Models @ {config.server_url}", border_style="dim")
    table.add_column("Model", style="bold")
    table.add_column("Max input", justify="right")
    table.add_column("Max output", justify="right")
    table.add_column("Tool calling")
    for m in models:
        table.add_row(
            m.id,
            str(m.max_input_tokens),
            str(m.max_output_tokens),
            "yes" if m.tool_calling else "no",
        )
    console.print(table)
    return 0


async def _chat(
    config: GatewayConfig,
    prompt: str,
    model: str | None,
    system: str | None,
) -> int:
    engine = CompletionEngine(config)
    bus = EventBus()
    bus.subscribe("*", StreamingDisplay(console).handle)
    try:
        if model is None:
            try:
                models = await engine.provide_models()
            except GatewayError as e:
                err_console.print(f"[red]Connection failed: {e}[/red]")
                return 1
            if not models:
                err_console.print("[red]No models available; pass --model[/red]")
                return 1
            model = models[0].id
            console.print(f"[dim]Model: {model}[/dim]")

        messages = []
        if system:
            messages.append(ChatMessage(role="system", parts=[TextPart(system)]))
        messages.append(ChatMessage(role="user", parts=[TextPart(prompt)]))
        await engine.dispatch(bus, model, messages)
    except GatewayError:
        return 1
    finally:
        await engine.close()
    return 0


@click.group()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to llm_gateway.yaml (auto-detected from CWD or ~/.config/llm-gateway/)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool):
    """LLM Gateway - bridge to OpenAI-compatible inference servers."""
    try:
        config = load_config(config_path)
    except GatewayError as e:
        raise click.ClickException(str(e)) from e
    _setup_logging(config, verbose)
    ctx.obj = config


@main.command()
@click.option("--refresh", is_flag=True, help="Bypass the model cache")
@click.pass_obj
def models(config: GatewayConfig, refresh: bool):
    """List models advertised by the server (connection test)."""
    sys.exit(asyncio.run(_list_models(config, refresh)))


@main.command()
@click.argument("prompt")
@click.option("--model", "-m", default=None, help="Model id (default: first listed)")
@click.option("--system", "-s", default=None, help="System prompt")
@click.pass_obj
def chat(config: GatewayConfig, prompt: str, model: str | None, system: str | None):
    """Send PROMPT and stream the reply."""
    sys.exit(asyncio.run(_chat(config, prompt, model, system)))


if __name__ == "__main__":
    main()

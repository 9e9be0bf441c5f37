from __future__ import annotations
import asyncio
import contextlib
import signal
from importlib.metadata import version as pkg_version, PackageNotFoundError
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from .bootstrap import AppContext, build_app, open_transcript
from .config_loader import ConfigError
from .core.cancellation import CancellationToken
from .core.chat_session import ChatSession
from .core.errors import RelayError
from .core.ports import ModelProvider
from .core.types import ChatCompletionRequest, ChatMessage
from .logging_setup import configure_logging
from .resilience.retry import RetryPolicy, complete_with_retry

app = typer.Typer(add_completion=False, help="Chat with local and remote LLM backends.")
provider_app = typer.Typer(help="Inspect configured providers.")
model_app = typer.Typer(help="Inspect models offered by providers.")
config_app = typer.Typer(help="Inspect the loaded configuration.")
app.add_typer(provider_app, name="provider")
app.add_typer(model_app, name="model")
app.add_typer(config_app, name="config")

console = Console()
err_console = Console(stderr=True)


@app.callback()
def main(
    ctx: typer.Context,
    config: Path = typer.Option(Path("config/default.yaml"), "--config", "-c", help="YAML config file."),
):
    ctx.obj = {"config": config}


# ----- helpers -----

def _fail(message: str) -> None:
    err_console.print(f"[red]error:[/red] {message}", markup=True, highlight=False)
    raise typer.Exit(code=1)


def _load(ctx: typer.Context) -> AppContext:
    try:
        app_ctx = build_app(ctx.obj["config"])
    except ConfigError as e:
        _fail(str(e))
    configure_logging(app_ctx.cfg["log_level"])
    for warning in app_ctx.warnings:
        err_console.print(f"[yellow]warning:[/yellow] {warning}", highlight=False)
    return app_ctx


async def _select(app_ctx: AppContext, provider: Optional[str], strategy: Optional[str]) -> ModelProvider:
    """Initialize the manager, then pick by name or by strategy. Raises RelayError on failure."""
    (await app_ctx.manager.initialize()).unwrap()
    if provider == "default":
        provider = app_ctx.default_provider
    if provider:
        return app_ctx.manager.get_provider(provider).unwrap()
    return (await app_ctx.manager.get_best_provider(strategy or app_ctx.strategy)).unwrap()


async def _pick_model(provider: ModelProvider, model: Optional[str]) -> str:
    if model:
        return model
    models = (await provider.get_models()).unwrap()
    if not models:
        raise RelayError(f"Provider '{provider.name}' reports no models; pass --model")
    return models[0].id


def _run(app_ctx: AppContext, coro):
    """Run one command coroutine, always disposing the manager afterwards."""
    async def _wrapped():
        try:
            return await coro
        finally:
            await app_ctx.manager.dispose()
    try:
        return asyncio.run(_wrapped())
    except RelayError as e:
        _fail(e.message)


# ----- chat -----

async def _stream_turn(session: ChatSession, text: str) -> None:
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    # Ctrl+C cancels the reply in flight instead of killing the process
    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    try:
        async for piece in session.run_turn_stream(text, token):
            typer.echo(piece, nl=False)
        typer.echo("")
    finally:
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.remove_signal_handler(signal.SIGINT)
    if token.is_cancelled:
        console.print("[dim][stream interrupted][/dim]")
    elif session.last_error is not None:
        err_console.print(f"[red]error:[/red] {session.last_error.message}", highlight=False)


@app.command()
def chat(
    ctx: typer.Context,
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Provider name, or 'default'."),
    model: Optional[str] = typer.Option(None, "--model", "-m"),
    stream: Optional[bool] = typer.Option(None, "--stream/--no-stream"),
    strategy: Optional[str] = typer.Option(None, "--strategy", "-s"),
):
    """Interactive chat loop."""
    app_ctx = _load(ctx)
    use_stream = app_ctx.stream if stream is None else stream

    loop = asyncio.new_event_loop()
    try:
        try:
            chosen = loop.run_until_complete(_select(app_ctx, provider, strategy))
            model_id = loop.run_until_complete(_pick_model(chosen, model))
        except RelayError as e:
            _fail(e.message)

        transcript = open_transcript(app_ctx, {"config_path": str(ctx.obj["config"]),
                                               "provider": chosen.name, "model": model_id})
        session = ChatSession(chosen, transcript, model_id)

        console.print(f"relay chat with [bold]{chosen.name}[/bold] / {model_id}. "
                      "Type /help for commands.", highlight=False)
        while True:
            try:
                user_input = input("relay> ").strip()
            except (EOFError, KeyboardInterrupt):
                typer.echo("\nBye.")
                return

            if user_input in ("/exit", "/quit"):
                typer.echo("Bye.")
                return
            if user_input == "/help":
                typer.echo("Commands: /help, /id, /exit, /quit")
                continue
            if user_input == "/id":
                typer.echo(transcript.session_id)
                continue
            if not user_input:
                continue

            if use_stream:
                loop.run_until_complete(_stream_turn(session, user_input))
            else:
                result = loop.run_until_complete(session.run_turn(user_input))
                if result.ok:
                    typer.echo(result.value.message.content)
                else:
                    err_console.print(f"[red]error:[/red] {result.error.message}", highlight=False)
    finally:
        loop.run_until_complete(app_ctx.manager.dispose())
        loop.close()


# ----- ask -----

@app.command()
def ask(
    ctx: typer.Context,
    question: List[str] = typer.Argument(..., help="Question text."),
    provider: Optional[str] = typer.Option(None, "--provider", "-p"),
    model: Optional[str] = typer.Option(None, "--model", "-m"),
    strategy: Optional[str] = typer.Option(None, "--strategy", "-s"),
    retries: int = typer.Option(0, "--retries", min=0, help="Retry retryable failures this many times."),
):
    """One-shot question, answer printed to stdout."""
    app_ctx = _load(ctx)

    async def _ask() -> str:
        chosen = await _select(app_ctx, provider, strategy)
        model_id = await _pick_model(chosen, model)
        request = ChatCompletionRequest(
            model=model_id,
            messages=[ChatMessage(role="system", content=app_ctx.system_prompt),
                      ChatMessage(role="user", content=" ".join(question))],
        )
        result = await complete_with_retry(chosen, request, RetryPolicy(max_retries=retries))
        return result.unwrap().message.content

    typer.echo(_run(app_ctx, _ask()))


# ----- provider -----

@provider_app.command("list")
def provider_list(ctx: typer.Context):
    """Configured providers (no network access)."""
    app_ctx = _load(ctx)
    table = Table("name", "type", "priority", "enabled", "endpoint")
    for cfg in app_ctx.provider_configs:
        table.add_row(cfg.name, cfg.type, str(cfg.priority), "yes" if cfg.enabled else "no", cfg.endpoint or "")
    console.print(table)


@provider_app.command("test")
def provider_test(ctx: typer.Context, name: Optional[str] = typer.Argument(None)):
    """Probe live providers and report health."""
    app_ctx = _load(ctx)

    async def _probe():
        (await app_ctx.manager.initialize()).unwrap()
        return await app_ctx.manager.health_check()

    report = [h for h in _run(app_ctx, _probe()) if name is None or h.provider == name]
    if name is not None and not report:
        _fail(f"Provider '{name}' is not live")

    table = Table("provider", "healthy", "latency (ms)", "error")
    for h in report:
        latency = f"{h.latency_ms:.0f}" if h.latency_ms is not None else "-"
        table.add_row(h.provider, "yes" if h.is_healthy else "no", latency, h.error or "")
    console.print(table)
    if not any(h.is_healthy for h in report):
        raise typer.Exit(code=1)


# ----- model -----

@model_app.command("list")
def model_list(ctx: typer.Context, provider: Optional[str] = typer.Option(None, "--provider", "-p")):
    """Models offered by every live provider (or just one)."""
    app_ctx = _load(ctx)

    async def _collect():
        (await app_ctx.manager.initialize()).unwrap()
        if provider:
            targets = [app_ctx.manager.get_provider(provider).unwrap()]
        else:
            targets = app_ctx.manager.get_available_providers()
        rows = []
        for p in targets:
            result = await p.get_models()
            if not result.ok:
                err_console.print(f"[yellow]warning:[/yellow] {p.name}: {result.error.message}", highlight=False)
                continue
            rows.extend(result.value)
        return rows

    table = Table("model", "provider", "context", "max tokens", "tools", "price / 1k (in/out)")
    for m in _run(app_ctx, _collect()):
        price = (f"{m.pricing.input_token_price:.4f} / {m.pricing.output_token_price:.4f}"
                 if m.pricing else "-")
        table.add_row(m.id, m.provider, str(m.capabilities.context_window), str(m.capabilities.max_tokens),
                      "yes" if m.capabilities.supports_tools else "no", price)
    console.print(table)


# ----- config / version -----

def _masked(cfg: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(cfg)
    providers = []
    for entry in cfg.get("providers") or []:
        if isinstance(entry, dict) and isinstance(entry.get("auth"), dict):
            auth = dict(entry["auth"])
            for secret in ("api_key", "token", "password"):
                if auth.get(secret):
                    auth[secret] = "***"
            entry = {**entry, "auth": auth}
        providers.append(entry)
    out["providers"] = providers
    return out


@config_app.command("show")
def config_show(ctx: typer.Context):
    """Print the effective configuration (after env overrides, secrets masked)."""
    app_ctx = _load(ctx)
    typer.echo(yaml.safe_dump(_masked(app_ctx.cfg), sort_keys=False).rstrip())


@app.command()
def version():
    try:
        typer.echo(pkg_version("relay-cli"))
    except PackageNotFoundError:
        typer.echo("unknown")

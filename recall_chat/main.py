"""Command-line entry point for Recall Chat."""

import asyncio
import sys

import typer

from recall_chat.config import Config, set_config
from recall_chat.exceptions import ConfigurationError, MemoryNotFoundError
from recall_chat.logging import configure_logging
from recall_chat.memories import MemoryStore
from recall_chat.store import User, get_store, new_id
from recall_chat.streaming import (
    EVENT_COMPLETE,
    EVENT_ERROR,
    EVENT_TEXT,
    EVENT_TOOL_START,
    Subscription,
    get_hub,
    turn_channel,
)

app = typer.Typer(help="Recall Chat - a conversational agent with durable user memories")


def _load_config(config: str, verbose: bool = False) -> Config:
    try:
        cfg = Config.from_yaml(config) if config else Config.load()
    except ConfigurationError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1)
    if verbose:
        cfg.logging.level = "DEBUG"
    set_config(cfg)
    configure_logging()
    return cfg


async def _print_reply(subscription: Subscription) -> None:
    """Print a streamed reply until it completes or fails."""
    async for event in subscription:
        if event.name == EVENT_TEXT:
            sys.stdout.write(event.data.get("text", ""))
            sys.stdout.flush()
        elif event.name == EVENT_TOOL_START:
            sys.stdout.write(f"\n  [running {event.data.get('toolName', '')}]\n")
        elif event.name == EVENT_COMPLETE:
            used = event.data.get("memoriesUsed") or []
            sys.stdout.write("\n")
            if used:
                sys.stdout.write(f"  (used {len(used)} memories)\n")
            return
        elif event.name == EVENT_ERROR:
            sys.stdout.write(f"\n  Error: {event.data.get('error', 'unknown error')}\n")
            return


async def _chat_loop(user_id: str, name: str, email: str) -> None:
    from recall_chat.chat import ChatService

    store = get_store()
    await store.upsert_user(User(id=user_id, display_name=name, email=email))
    service = ChatService(store=store)
    hub = get_hub()

    correlation_id = new_id()
    with hub.subscribe(turn_channel(correlation_id)) as subscription:
        ticket = await service.start_conversation(user_id, correlation_id=correlation_id)
        await _print_reply(subscription)
    conversation_id = ticket.conversation_id

    try:
        while True:
            text = await asyncio.to_thread(input, "\n> ")
            if text.strip() in {"/exit", "/quit"}:
                break
            if not text.strip():
                continue
            correlation_id = new_id()
            with hub.subscribe(turn_channel(correlation_id)) as subscription:
                await service.send_message(
                    user_id,
                    text,
                    conversation_id=conversation_id,
                    correlation_id=correlation_id,
                )
                await _print_reply(subscription)
    except (EOFError, KeyboardInterrupt):
        pass
    finally:
        await service.wait_idle()
        await store.close()


@app.command()
def serve(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    host: str = typer.Option("", "--host", help="Override bind host"),
    port: int = typer.Option(0, "--port", help="Override bind port"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run the HTTP/WebSocket server."""
    from recall_chat.web_server import run_web_server

    cfg = _load_config(config, verbose)
    if host:
        cfg.web.host = host
    if port:
        cfg.web.port = port
    run_web_server(cfg)


@app.command()
def chat(
    user: str = typer.Option("local", "-u", "--user", help="User id"),
    name: str = typer.Option("", "-n", "--name", help="Display name"),
    email: str = typer.Option("", "--email", help="Contact email"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Chat in the terminal. Type /exit to quit."""
    _load_config(config, verbose)
    asyncio.run(_chat_loop(user, name or user, email))


@app.command()
def memories(
    user: str = typer.Option("local", "-u", "--user", help="User id"),
    forget: str = typer.Option("", "--forget", help="Id of a memory to forget"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """List a user's active memories, or forget one of them."""
    _load_config(config)

    async def _forget() -> None:
        store = get_store()
        try:
            await MemoryStore(store).forget(user, forget)
        finally:
            await store.close()
        typer.echo(f"Forgot memory {forget}.")

    async def _list() -> None:
        store = get_store()
        try:
            found = await MemoryStore(store).find_active(user_id=user)
        finally:
            await store.close()
        if not found:
            typer.echo("No memories.")
            return
        for memory in found:
            typer.echo(f"{memory.id}  cited {memory.access_count}x  {memory.content}")

    if not forget:
        asyncio.run(_list())
        return
    try:
        asyncio.run(_forget())
    except MemoryNotFoundError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1)


@app.command()
def version() -> None:
    """Show version information."""
    from recall_chat import __version__

    typer.echo(f"Recall Chat v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()

"""memchat CLI."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable

import click

from memchat.app import App, build_app
from memchat.config import Config
from memchat.log import setup_logging


def _get_config(ctx: click.Context) -> Config:
    config = Config()
    data_dir = ctx.obj.get("data_dir")
    if data_dir:
        config.data_dir = Path(data_dir)
    return config


def _run(ctx: click.Context, fn: Callable[[App], Awaitable[Any]]) -> Any:
    async def runner() -> Any:
        app = await build_app(_get_config(ctx))
        try:
            return await fn(app)
        finally:
            await app.close()

    return asyncio.run(runner())


def _print_reply(reply) -> None:
    if reply.error:
        click.echo(f"error: {reply.error}", err=True)
        return
    tag = " (from memory)" if reply.cached else ""
    click.echo(f"assistant{tag}: {reply.answer.content}")
    for err in reply.memory_errors:
        click.echo(f"warning: {err}", err=True)


@click.group()
@click.option("--data-dir", envvar="MEMCHAT_DATA_DIR", default=None, help="Data directory")
@click.option("--user", "user_id", envvar="MEMCHAT_USER", default="local", help="User id")
@click.option("--log-level", envvar="MEMCHAT_LOG_LEVEL", default="WARNING", help="Log level")
@click.pass_context
def main(ctx: click.Context, data_dir: str | None, user_id: str, log_level: str) -> None:
    """Chatbot with semantic, episodic and long-term memory."""
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir
    ctx.obj["user_id"] = user_id
    setup_logging(log_level)


@main.command()
@click.option("--chat-id", "-c", default=None, help="Continue an existing chat")
@click.pass_context
def chat(ctx: click.Context, chat_id: str | None) -> None:
    """Interactive chat. Empty line or 'exit' quits."""
    user_id = ctx.obj["user_id"]

    async def go(app: App) -> None:
        current = chat_id or await app.controller.new_chat(user_id)
        click.echo(f"chat {current}")
        while True:
            try:
                text = click.prompt("you", default="", show_default=False)
            except (EOFError, click.Abort):
                break
            if not text.strip() or text.strip() == "exit":
                break
            reply = await app.controller.process_message(user_id, text, chat_id=current)
            _print_reply(reply)

    _run(ctx, go)


@main.command()
@click.argument("message")
@click.option("--chat-id", "-c", default=None, help="Chat to post to (new chat if omitted)")
@click.pass_context
def ask(ctx: click.Context, message: str, chat_id: str | None) -> None:
    """Send one message and print the answer."""
    user_id = ctx.obj["user_id"]

    async def go(app: App):
        return await app.controller.process_message(user_id, message, chat_id=chat_id)

    reply = _run(ctx, go)
    click.echo(f"chat {reply.chat_id}")
    _print_reply(reply)
    if reply.error:
        ctx.exit(1)


@main.command()
@click.pass_context
def chats(ctx: click.Context) -> None:
    """List chats with their latest message."""
    user_id = ctx.obj["user_id"]
    previews = _run(ctx, lambda app: app.controller.list_chats(user_id))
    if not previews:
        click.echo("No chats.")
    for p in previews:
        click.echo(f"{p.chat_id}  {p.preview[:80]}")


@main.command()
@click.argument("chat_id")
@click.pass_context
def history(ctx: click.Context, chat_id: str) -> None:
    """Print a chat's messages."""
    user_id = ctx.obj["user_id"]
    view = _run(ctx, lambda app: app.controller.switch_chat(user_id, chat_id))
    if not view.messages:
        click.echo("No messages.")
    for m in view.messages:
        click.echo(f"{m.role}: {m.content}")


@main.command()
@click.argument("query")
@click.option("--top-k", "-k", default=5, help="Number of results")
@click.pass_context
def search(ctx: click.Context, query: str, top_k: int) -> None:
    """Search all memory stores."""
    user_id = ctx.obj["user_id"]

    async def go(app: App):
        memory = await app.controller.working_memory(user_id)
        return await memory.search(query, top_k=top_k)

    hits = _run(ctx, go)
    if not hits:
        click.echo("No results found.")
    for i, hit in enumerate(hits, 1):
        click.echo(f"\n--- Result {i} ({hit.type}, distance: {hit.distance:.4f}) ---")
        click.echo(f"ID: {hit.id}")
        click.echo(hit.answer[:200].replace("\n", " "))


@main.command("clear-chat")
@click.argument("chat_id")
@click.pass_context
def clear_chat(ctx: click.Context, chat_id: str) -> None:
    """Empty one chat's messages."""
    user_id = ctx.obj["user_id"]
    _run(ctx, lambda app: app.controller.clear_chat(user_id, chat_id))
    click.echo(f"Cleared chat {chat_id}")


@main.command("clear-memory")
@click.confirmation_option(prompt="Delete all chats and memories?")
@click.pass_context
def clear_memory(ctx: click.Context) -> None:
    """Delete the user's chats and all stored memory."""
    user_id = ctx.obj["user_id"]
    _run(ctx, lambda app: app.controller.clear_all_memory(user_id))
    click.echo("Memory cleared.")


if __name__ == "__main__":
    main()

"""Command-line driver for FMChat: an interactive chat plus housekeeping commands."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from .applier import StreamApplier
from .chat import ChatController
from .config import ChatConfig
from .coordinator import SessionCoordinator
from .exceptions import AppleFMSetupError, ensure_model_available
from .models import Conversation, Message
from .protocols import create_model
from .schema import WebPageMetadata
from .store import ChatStore
from .tools import WebAnalyserTool

logger = logging.getLogger("fmchat")

_QUIT_COMMANDS = frozenset({"/quit", "/exit"})


def _configure_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _open_store(ctx: click.Context) -> ChatStore:
    config: ChatConfig = ctx.obj["config"]
    return ChatStore(config.db_path)


def _resolve(store: ChatStore, conversation_id: str) -> Conversation:
    conversation = store.load(conversation_id)
    if conversation is None:
        raise click.ClickException(f"No conversation with id {conversation_id}")
    return conversation


class _TerminalRenderer:
    """Prints only the new part of each cumulative content snapshot."""

    def __init__(self) -> None:
        self._printed = ""

    @property
    def printed(self) -> str:
        return self._printed

    def reset(self) -> None:
        self._printed = ""

    def __call__(self, message: Message) -> None:
        text = message.content
        if text.startswith(self._printed):
            click.echo(text[len(self._printed) :], nl=False)
        else:
            click.echo("\n" + text, nl=False)
        self._printed = text


def _render_attachment(message: Message) -> None:
    attachment = message.attachment
    if attachment is None or not attachment.title:
        return
    click.secho(f"  [{attachment.title}]", bold=True)
    if attachment.description:
        click.echo(f"  {attachment.description}")
    if attachment.thumbnail:
        click.echo(f"  {attachment.thumbnail}")


@click.group()
@click.option(
    "--db",
    "db_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="sqlite database holding conversations.",
)
@click.option("-v", "--verbose", count=True, help="Increase log verbosity (-v, -vv).")
@click.pass_context
def cli(ctx: click.Context, db_path: Path | None, verbose: int) -> None:
    """Chat with the on-device Apple Foundation Model."""
    _configure_logging(verbose)
    config = ChatConfig() if db_path is None else ChatConfig(db_path=db_path)
    ctx.obj = {"config": config}


@cli.command()
@click.option("--conversation", "conversation_id", default=None, help="Resume a conversation.")
@click.pass_context
def chat(ctx: click.Context, conversation_id: str | None) -> None:
    """Start (or resume) an interactive conversation. Type /quit to leave."""
    config: ChatConfig = ctx.obj["config"]
    store = _open_store(ctx)
    try:
        if conversation_id is None:
            conversation = store.create_conversation()
        else:
            conversation = _resolve(store, conversation_id)
        click.echo(f"Conversation {conversation.id}")
        for message in conversation.sorted_messages:
            click.echo(f"{message.role.value}> {message.content}")
        asyncio.run(_chat_loop(conversation, store, config))
    finally:
        store.close()


async def _chat_loop(conversation: Conversation, store: ChatStore, config: ChatConfig) -> None:
    renderer = _TerminalRenderer()
    coordinator = SessionCoordinator(conversation, config=config)
    controller = ChatController(
        conversation,
        coordinator,
        store,
        applier=StreamApplier(store, on_update=renderer),
    )
    controller.prewarm()
    try:
        while True:
            try:
                text = await asyncio.to_thread(click.prompt, "you", prompt_suffix="> ")
            except click.Abort:
                break
            if text.strip() in _QUIT_COMMANDS:
                break

            renderer.reset()
            click.echo("assistant> ", nl=False)
            reply = await controller.send(text)
            if reply is None:
                reason = coordinator.availability().reason or "empty message"
                click.echo(f"(no reply: {reason})")
                continue
            if not renderer.printed:
                click.echo(reply.content, nl=False)
            click.echo()
            _render_attachment(reply)
    finally:
        coordinator.close()


@cli.command(name="list")
@click.pass_context
def list_conversations(ctx: click.Context) -> None:
    """List stored conversations, most recent first."""
    store = _open_store(ctx)
    try:
        conversations = store.list_conversations()
    finally:
        store.close()
    if not conversations:
        click.echo("No conversations yet.")
        return
    for conversation in conversations:
        stamp = conversation.last_message_timestamp.astimezone().strftime("%Y-%m-%d %H:%M")
        summary = conversation.summary or "(no summary yet)"
        click.echo(f"{conversation.id}  {stamp}  {len(conversation.messages):>3} msgs  {summary}")


@cli.command()
@click.argument("conversation_id")
@click.pass_context
def delete(ctx: click.Context, conversation_id: str) -> None:
    """Delete a conversation and its messages."""
    store = _open_store(ctx)
    try:
        store.delete(_resolve(store, conversation_id))
    finally:
        store.close()
    click.echo(f"Deleted {conversation_id}")


@cli.command()
@click.argument("conversation_id")
@click.argument("target", required=False, type=click.Path(dir_okay=False, path_type=Path))
@click.option(
    "--format", "fmt", type=click.Choice(["jsonl", "md"]), default="jsonl", show_default=True
)
@click.pass_context
def export(ctx: click.Context, conversation_id: str, target: Path | None, fmt: str) -> None:
    """Export a conversation as JSONL or Markdown."""
    if target is None:
        target = Path.cwd() / f"conversation-{conversation_id[:8]}.{fmt}"
    elif target.suffix.lower() == ".md":
        fmt = "md"

    store = _open_store(ctx)
    try:
        conversation = _resolve(store, conversation_id)
        if fmt == "md":
            store.export_markdown(conversation, target.with_suffix(".md"))
        else:
            store.export_jsonl(conversation, target.with_suffix(".jsonl"))
    finally:
        store.close()
    click.echo(f"Export complete: {target.with_suffix('.' + fmt)}")


@cli.command()
@click.argument("url")
@click.pass_context
def analyse(ctx: click.Context, url: str) -> None:
    """Run the WebAnalyser tool on URL and print what it extracts."""
    config: ChatConfig = ctx.obj["config"]
    result = asyncio.run(WebAnalyserTool(config).extract(url))
    if not isinstance(result, WebPageMetadata):
        raise click.ClickException(result)
    click.echo(f"title:       {result.title}")
    click.echo(f"thumbnail:   {result.thumbnail or '-'}")
    click.echo(f"description: {result.description or '-'}")


@cli.command()
def doctor() -> None:
    """Check whether the on-device model can be used."""
    try:
        ensure_model_available(create_model(), context="fmchat doctor")
    except AppleFMSetupError as exc:
        click.echo(str(exc), err=True)
        raise SystemExit(1) from exc
    click.echo("Model available.")


def cli_entry() -> None:
    """Console-script entry point."""
    try:
        cli()
    except AppleFMSetupError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(2)

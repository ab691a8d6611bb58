# cerebr/main.py
"""
Cerebr CLI entrypoint.

Text in -> streamed reply out, with chats persisted between runs.

Commands inside the prompt:
- /new [title]   : start a new chat and switch to it
- /list          : list chats, most recent first (* marks the current one)
- /switch <id>   : switch to another chat
- /delete <id>   : delete a chat
- /regen         : regenerate the last reply
- exit / quit    : leave

Ctrl-C while a reply is streaming cancels that reply; Ctrl-C at the prompt
ends the session.
"""

from __future__ import annotations

import argparse
import asyncio
import functools
import signal
from typing import Any, Awaitable, Callable, Dict, Optional

from cerebr.config.settings import load_settings
from cerebr.core.chat import TurnResult
from cerebr.core.context import AppContext
from cerebr.core.errors import CerebrError, NotFoundError
from cerebr.memory.repository import DEFAULT_CHAT_TITLE
from cerebr.utils.logging import get_logger

logger = get_logger(__name__)


class ReplyPrinter:
    """View callback that prints only the part of each snapshot not shown yet."""

    def __init__(self) -> None:
        self.printed = ""
        self.thinking_shown = False

    def __call__(self, chat_id: str, snapshot: Dict[str, Any]) -> None:
        content = snapshot.get("content") or ""
        if not content and snapshot.get("reasoning_content") and not self.thinking_shown:
            print("(thinking...) ", end="", flush=True)
            self.thinking_shown = True
            return
        if content.startswith(self.printed):
            print(content[len(self.printed):], end="", flush=True)
        else:
            # Snapshot diverged (retry after a truncated reply): start over.
            print("\n" + content, end="", flush=True)
        self.printed = content

    def finish(self, result: TurnResult) -> None:
        if result.content.startswith(self.printed):
            print(result.content[len(self.printed):], end="")
        print()
        if result.aborted:
            print("[reply cancelled]")
        if result.title:
            print(f"[chat titled: {result.title}]")
        print()


def _stream_turn(
    ctx: AppContext,
    loop: asyncio.AbstractEventLoop,
    turn: Callable[..., Awaitable[TurnResult]],
) -> None:
    printer = ReplyPrinter()
    try:
        loop.add_signal_handler(signal.SIGINT, ctx.chat.cancel)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        handler_installed = False

    print("Cerebr: ", end="", flush=True)
    try:
        result = loop.run_until_complete(turn(on_update=printer))
    except (CerebrError, ValueError) as e:
        print(f"\nCerebr (error): {e}\n")
        return
    except Exception as e:
        # The turn is already rolled back; keep the session alive
        logger.error("[cli] turn failed: %r", e)
        print(f"\nCerebr (error): {e}\n")
        return
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
    printer.finish(result)


def _print_chats(ctx: AppContext) -> None:
    manager = ctx.manager
    for chat in manager.get_all_chats():
        marker = "*" if chat.id == manager.current_chat_id else " "
        print(f" {marker} {chat.id}  {chat.title}  ({len(chat.messages)} messages, updated {chat.updated_at})")


async def _new_chat(ctx: AppContext, title: str):
    chat = ctx.manager.create_new_chat(title)
    return await ctx.manager.switch_chat(chat.id)


def _run_command(ctx: AppContext, loop: asyncio.AbstractEventLoop, line: str) -> None:
    name, _, arg = line.partition(" ")
    arg = arg.strip()
    manager = ctx.manager
    try:
        if name == "/new":
            chat = loop.run_until_complete(_new_chat(ctx, arg or DEFAULT_CHAT_TITLE))
            print(f"[new chat {chat.id}]")
        elif name == "/list":
            _print_chats(ctx)
        elif name == "/switch" and arg:
            chat = loop.run_until_complete(manager.switch_chat(arg))
            print(f"[switched to {chat.id}: {chat.title}, {len(chat.messages)} messages]")
        elif name == "/delete" and arg:
            loop.run_until_complete(manager.delete_chat(arg))
            print(f"[deleted {arg}; current chat is {manager.current_chat_id}]")
        elif name == "/regen":
            _stream_turn(ctx, loop, ctx.chat.regenerate)
        else:
            print("Commands: /new [title], /list, /switch <id>, /delete <id>, /regen, exit")
    except NotFoundError as e:
        print(f"[{e}]")
    except CerebrError as e:
        print(f"[error: {e}]")


def repl(ctx: AppContext, loop: asyncio.AbstractEventLoop) -> None:
    current = ctx.manager.get_current_chat()
    print("Cerebr chat. Type /help for commands, 'exit' to quit.\n")
    if current is not None:
        print(f"[Current chat: {current.id} {current.title} ({len(current.messages)} messages)]\n")

    while True:
        try:
            user = input("You: ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\n[Session ended]")
            break

        if not user:
            continue
        if user.lower() in {"exit", "quit"}:
            print("Session ended. Goodbye.")
            break
        if user.startswith("/"):
            _run_command(ctx, loop, user)
            continue

        _stream_turn(ctx, loop, functools.partial(ctx.chat.send_message, user))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Cerebr streaming chat CLI with persistent chats.")
    p.add_argument("--session", default=None, help="Session id; each session remembers its own current chat.")
    p.add_argument("--db", default=None, help="SQLite database path (overrides CEREBR_DB_PATH).")
    p.add_argument("--model", default=None, help="Model name (overrides OPENAI_MODEL).")
    p.add_argument("--system-prompt", default=None, help="System prompt; {{userLanguage}} is substituted.")
    p.add_argument("--detect-misfiled-reasoning", action="store_true",
                   help="Restart replies whose content opens with a reasoning marker such as <think>.")
    p.add_argument("--no-title", action="store_true", help="Do not auto-generate chat titles.")
    return p


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    settings = load_settings()
    if args.session:
        settings.session_id = args.session
    if args.db:
        settings.db_path = args.db
    if args.model:
        settings.openai_model = args.model
    if args.system_prompt is not None:
        settings.system_prompt = args.system_prompt
    if args.detect_misfiled_reasoning:
        settings.detect_misfiled_reasoning = True
    if args.no_title:
        settings.auto_title = False

    ctx = AppContext(settings)
    loop = asyncio.new_event_loop()
    try:
        loop.run_until_complete(ctx.initialize())
        repl(ctx, loop)
    finally:
        loop.run_until_complete(ctx.dispose())
        loop.close()


if __name__ == "__main__":
    main()

"""Tests for the CLI helpers in cerebr.main."""

import asyncio
import functools

import httpx
import pytest

from cerebr.config.settings import Settings
from cerebr.core.chat import TurnResult
from cerebr.core.context import AppContext
from cerebr.main import ReplyPrinter, _run_command, _stream_turn, build_parser
from cerebr.memory.store import InMemoryKeyValueStore


class TestReplyPrinter:
    def test_prints_only_new_text(self, capsys):
        printer = ReplyPrinter()
        printer("1", {"content": "He"})
        printer("1", {"content": "Hello"})
        printer.finish(TurnResult(chat_id="1", content="Hello!", reasoning_content=""))
        assert capsys.readouterr().out == "Hello!\n\n"

    def test_reasoning_only_snapshot_shows_hint_once(self, capsys):
        printer = ReplyPrinter()
        printer("1", {"content": "", "reasoning_content": "a"})
        printer("1", {"content": "", "reasoning_content": "ab"})
        assert capsys.readouterr().out == "(thinking...) "

    def test_cancelled_and_titled_turns_are_announced(self, capsys):
        printer = ReplyPrinter()
        printer.finish(TurnResult(chat_id="1", content="", reasoning_content="", aborted=True, title="🐱 Cats"))
        out = capsys.readouterr().out
        assert "[reply cancelled]" in out
        assert "[chat titled: 🐱 Cats]" in out


def test_parser_flags():
    args = build_parser().parse_args(["--session", "s1", "--model", "m", "--no-title", "--detect-misfiled-reasoning"])
    assert (args.session, args.model, args.no_title, args.detect_misfiled_reasoning) == ("s1", "m", True, True)
    assert args.db is None


@pytest.fixture
def cli_context(tmp_path):
    settings = Settings(openai_api_key="sk-test", db_path=str(tmp_path / "cli.db"))
    ctx = AppContext(settings, store=InMemoryKeyValueStore())
    loop = asyncio.new_event_loop()
    loop.run_until_complete(ctx.initialize())
    try:
        yield ctx, loop
    finally:
        loop.run_until_complete(ctx.dispose())
        loop.close()


class TestCommands:
    def test_new_list_switch_delete(self, cli_context, capsys):
        ctx, loop = cli_context
        first = ctx.manager.current_chat_id

        _run_command(ctx, loop, "/new Work")
        work = ctx.manager.current_chat_id
        assert work != first
        assert ctx.manager.get_chat(work).title == "Work"

        _run_command(ctx, loop, "/list")
        assert f"* {work}  Work" in capsys.readouterr().out

        _run_command(ctx, loop, f"/switch {first}")
        assert ctx.manager.current_chat_id == first

        _run_command(ctx, loop, f"/delete {work}")
        assert ctx.manager.get_chat(work) is None

    def test_unknown_chat_and_help(self, cli_context, capsys):
        ctx, loop = cli_context
        _run_command(ctx, loop, "/switch nope")
        _run_command(ctx, loop, "/what")
        out = capsys.readouterr().out
        assert "does not exist" in out
        assert "Commands:" in out


def test_network_failure_keeps_session_alive(tmp_path, capsys):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    settings = Settings(openai_api_key="sk-test", db_path=str(tmp_path / "cli.db"), auto_title=False)
    client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
    ctx = AppContext(settings, store=InMemoryKeyValueStore(), http_client=client)
    loop = asyncio.new_event_loop()
    try:
        loop.run_until_complete(ctx.initialize())

        _stream_turn(ctx, loop, functools.partial(ctx.chat.send_message, "hi"))
        _stream_turn(ctx, loop, functools.partial(ctx.chat.send_message, "still here?"))

        out = capsys.readouterr().out
        assert out.count("Cerebr (error): connection refused") == 2
        assert ctx.manager.get_current_chat().messages == []
        assert not ctx.chat.busy
    finally:
        loop.run_until_complete(ctx.dispose())
        loop.close()

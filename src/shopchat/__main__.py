"""CLI entry point for shopchat."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys

from shopchat.ai.handler import ChatRequest
from shopchat.ai.tools.registry import ToolRegistry
from shopchat.app import ShopChatApp
from shopchat.config import AppConfig, load_config
from shopchat.log import setup_logging
from shopchat.storage.archive_repo import ArchiveRepository
from shopchat.storage.database import Database


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
    parser.add_argument("-e", "--env", default=".env", help="Path to .env file")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="shopchat",
        description="Shop assistant chat with tool-call mediation",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    chat_parser = subparsers.add_parser("chat", help="Interactive chat session")
    _add_config_args(chat_parser)
    chat_parser.add_argument("--session", default=None, help="Session id to use")
    chat_parser.add_argument("--customer", default=None, help="Customer id for the session")
    chat_parser.add_argument("--cart", default=None, help="Cart id for the session")

    check_parser = subparsers.add_parser("config-check", help="Validate configuration")
    _add_config_args(check_parser)

    tools_parser = subparsers.add_parser("tools", help="List registered tools and their schemas")
    _add_config_args(tools_parser)

    stats_parser = subparsers.add_parser("archive-stats", help="Show archive row counts and recent sessions")
    _add_config_args(stats_parser)
    stats_parser.add_argument("--limit", type=int, default=10, help="Number of sessions to list")
    stats_parser.add_argument("--search", default=None, help="Full-text search over archived messages")

    args = parser.parse_args()

    if args.command is None:
        args.command = "chat"
        args.config = "config.yaml"
        args.env = ".env"
        args.session = args.customer = args.cart = None

    if args.command == "config-check":
        _check_config(args.config, args.env)
    elif args.command == "tools":
        _list_tools(args.config, args.env)
    elif args.command == "archive-stats":
        _archive_stats(args.config, args.env, args.limit, args.search)
    elif args.command == "chat":
        _run_chat(args.config, args.env, args.session, args.customer, args.cart)


def _load(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Copy config.example.yaml to config.yaml first")
        sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    config = _load(config_path, env_path)
    print(f"Configuration valid: {config_path}")
    print(f"  Data directory: {config.data_dir}")
    print(f"  Model: {config.model.backend}: {config.model.model}")
    if config.model.backend == "anthropic" and not config.anthropic:
        print("  WARNING: no 'anthropic' section, chat will not start")
    print(f"  Tool service: {config.tool_service.endpoint} (timeout={config.tool_service.timeout}s)")
    print(
        f"  Retry: {config.retry.max_attempts} attempts, "
        f"base {config.retry.base_delay}s, max {config.retry.max_delay}s"
    )
    print(f"  Tool rounds per turn: {config.conversation.max_tool_rounds}")
    print(f"  Tools: {', '.join(config.conversation.tools) or '(all)'}")
    print(f"  Storage: {config.storage.db_path}")
    print(f"  Archiver: every {config.archiver.interval}s, queue {config.archiver.queue_size}")


def _list_tools(config_path: str, env_path: str) -> None:
    config = _load(config_path, env_path)
    registry = ToolRegistry()
    registry.discover_and_register()
    enabled = {t.name for t in registry.get_tools_by_names(config.conversation.tools)}

    print("Registered tools")
    print("=" * 50)
    for tool in registry.all_tools():
        marker = "*" if tool.name in enabled else " "
        print(f"\n {marker} {tool.name}")
        print(f"    {tool.description}")
        print(f"    schema: {json.dumps(tool.input_schema, ensure_ascii=False)}")
    print("\n(* = enabled for the model)")


def _archive_stats(config_path: str, env_path: str, limit: int, search: str | None) -> None:
    config = _load(config_path, env_path)

    async def _async_stats() -> None:
        db = Database(config.storage.db_path)
        await db.initialize()
        try:
            repo = ArchiveRepository(db)
            counts = await repo.count_rows()
            print("Archive")
            print("=" * 50)
            for table, count in counts.items():
                print(f"  {table:<12}: {count}")

            print("\nRecent sessions")
            for s in await repo.list_sessions(limit=limit):
                flag = " (degraded)" if s.degraded else ""
                print(
                    f"  {s.session_id}  {s.status:<8} messages={s.message_count:<4} "
                    f"last={s.last_activity.isoformat()}{flag}"
                )

            if search:
                print(f"\nSearch: {search}")
                for m in await repo.search(search, limit=limit):
                    print(f"  [{m.session_id}#{m.seq} {m.role}] {m.content[:200]}")
        finally:
            await db.close()

    asyncio.run(_async_stats())


def _run_chat(
    config_path: str,
    env_path: str,
    session_id: str | None,
    customer_id: str | None,
    cart_id: str | None,
) -> None:
    """Run an interactive chat against the configured model and tool service."""
    config = _load(config_path, env_path)
    setup_logging(config.log_level, config.log_format)

    async def _async_main() -> None:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()
        cancel_event: asyncio.Event | None = None

        def _signal_handler() -> None:
            # First Ctrl-C cancels the running turn, otherwise exits.
            if cancel_event is not None and not cancel_event.is_set():
                cancel_event.set()
            else:
                stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _signal_handler)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                signal.signal(sig, lambda s, f: _signal_handler())

        app = ShopChatApp(config)
        await app.start()
        session = app.session_manager.get_or_create(session_id, customer_id, cart_id)
        print(f"Session {session.session_id}. Type /quit to exit.")

        async def _print_delta(text: str) -> None:
            print(text, end="", flush=True)

        try:
            while not stop_event.is_set():
                read_task = asyncio.create_task(asyncio.to_thread(input, "\n> "))
                stop_task = asyncio.create_task(stop_event.wait())
                done, pending = await asyncio.wait(
                    {read_task, stop_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for t in pending:
                    t.cancel()
                if stop_task in done:
                    break
                try:
                    line = read_task.result().strip()
                except EOFError:
                    break
                if not line:
                    continue
                if line == "/quit":
                    break
                if line == "/transcript":
                    for message in app.conversations.get_transcript(session.session_id):
                        print(json.dumps(message.to_dict(), ensure_ascii=False))
                    continue

                cancel_event = asyncio.Event()
                delta = await app.conversations.handle(
                    ChatRequest(session_id=session.session_id, user_message=line),
                    cancel_event=cancel_event,
                    on_text=_print_delta,
                )
                cancel_event = None
                if delta.error:
                    print(delta.text, end="")
                elif delta.round_limit_reached:
                    print(f"\n[tool round limit reached] {delta.text}", end="")
                if delta.cancelled:
                    print("[cancelled]", end="")
                print()
        finally:
            await app.stop()

    asyncio.run(_async_main())


if __name__ == "__main__":
    main()

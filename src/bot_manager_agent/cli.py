"""
Command-line interface for Bot-Manager-Agent.

Inspects and maintains the on-disk conversation state: sessions, per-user
context and the session index.
"""

import argparse
import asyncio
import sys

import structlog

from .agent.compaction import CompactTrigger, compute_token_stats, working_history_tokens
from .app import build_compaction_config, build_context_store, build_core, build_session_store
from .config import Settings, get_settings
from .telegram.formatters import format_compaction_result, format_token_stats

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


def main() -> None:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    settings = get_settings()

    if args.command == "sessions":
        if args.sessions_command is None:
            parser.parse_args(["sessions", "--help"])
        sys.exit(asyncio.run(run_sessions_command(settings, args)))
    elif args.command == "compact":
        sys.exit(asyncio.run(compact_session(settings, args.session_id, args.instructions)))
    elif args.command == "context":
        if args.context_command is None:
            parser.parse_args(["context", "--help"])
        sys.exit(asyncio.run(run_context_command(settings, args)))
    elif args.command == "config":
        show_config(settings, args.check)
    else:
        parser.print_help()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bot-manager",
        description="Bot-Manager-Agent - conversation state for a Telegram bot manager",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    sessions_parser = subparsers.add_parser("sessions", help="Manage stored sessions")
    sessions_sub = sessions_parser.add_subparsers(dest="sessions_command")

    list_parser = sessions_sub.add_parser("list", help="List sessions")
    list_parser.add_argument("--user", help="Only sessions of this user")
    list_parser.add_argument("--sort", choices=["created_at", "last_message_at"], default="last_message_at")
    list_parser.add_argument("--asc", action="store_true", help="Oldest first")
    list_parser.add_argument("--offset", type=int, default=0)
    list_parser.add_argument("--limit", type=int, default=50)

    show_parser = sessions_sub.add_parser("show", help="Show a session")
    show_parser.add_argument("session_id")
    show_parser.add_argument("--messages", type=int, default=10, help="Number of recent messages to print")

    fork_parser = sessions_sub.add_parser("fork", help="Fork a session")
    fork_parser.add_argument("session_id")
    fork_parser.add_argument("--name")
    fork_parser.add_argument("--user")

    rename_parser = sessions_sub.add_parser("rename", help="Rename a session")
    rename_parser.add_argument("session_id")
    rename_parser.add_argument("name")

    clear_parser = sessions_sub.add_parser("clear", help="Clear a session's messages and summary")
    clear_parser.add_argument("session_id")

    delete_parser = sessions_sub.add_parser("delete", help="Delete a session")
    delete_parser.add_argument("session_id")

    sessions_sub.add_parser("rebuild-index", help="Rebuild the session index from session files")

    compact_parser = subparsers.add_parser("compact", help="Summarize a session with the LLM")
    compact_parser.add_argument("session_id")
    compact_parser.add_argument("--instructions", help="Custom summarization instructions")

    context_parser = subparsers.add_parser("context", help="Inspect per-user context")
    context_sub = context_parser.add_subparsers(dest="context_command")

    context_show = context_sub.add_parser("show", help="Show a user's recent context")
    context_show.add_argument("user_id")
    context_show.add_argument("--count", type=int, default=10)

    context_clear = context_sub.add_parser("clear", help="Clear a user's context and session pointer")
    context_clear.add_argument("user_id")

    context_sub.add_parser("users", help="List users with stored context")

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("--check", action="store_true", help="Check configuration validity")

    return parser


async def run_sessions_command(settings: Settings, args: argparse.Namespace) -> int:
    store = build_session_store(settings, detect_branch=False)
    command = args.sessions_command

    if command == "list":
        sessions = await store.list_sessions(
            user_id=args.user,
            sort_by=args.sort,
            sort_order="asc" if args.asc else "desc",
            offset=args.offset,
            limit=args.limit,
        )
        if not sessions:
            print("No sessions found.")
            return 0

        print(f"\n{'Session':<32} {'User':<14} {'Msgs':>5} {'Last activity':<20} Name")
        print("-" * 90)
        for meta in sessions:
            last = meta.last_message_at.strftime("%Y-%m-%d %H:%M:%S")
            print(f"{meta.session_id:<32} {meta.user_id or '-':<14} {meta.message_count:>5} {last:<20} {meta.name or ''}")
        return 0

    if command == "show":
        record = await store.get(args.session_id)
        if record is None:
            print(f"Session {args.session_id} not found.")
            return 1

        meta = record.metadata
        print(f"\n=== {meta.session_id} ===\n")
        print(f"  Name: {meta.name or '(unnamed)'}")
        print(f"  User: {meta.user_id or '-'}")
        print(f"  Created: {meta.created_at.isoformat()}")
        print(f"  Last activity: {meta.last_message_at.isoformat()}")
        print(f"  Messages: {meta.message_count}")
        print(f"  Branch: {meta.git_branch or '-'}")
        print(f"  Tokens: {meta.input_tokens} in / {meta.output_tokens} out")
        print(f"  Cost: ${meta.cost_usd:.4f}")
        if meta.is_forked:
            print(f"  Forked from: {meta.parent_session_id}")
        stats = compute_token_stats(working_history_tokens(record), build_compaction_config(settings))
        print(f"\n{format_token_stats(stats, len(record.uncompacted_messages))}")
        if record.summary:
            print(f"\nSummary:\n{record.summary}")
        if args.messages > 0 and record.messages:
            print("\nRecent messages:")
            for message in record.messages[-args.messages:]:
                print(f"  [{message.role.value}] {message.content[:200]}")
        return 0

    if command == "fork":
        forked = await store.fork(args.session_id, user_id=args.user, name=args.name)
        if forked is None:
            print(f"Session {args.session_id} not found.")
            return 1
        print(f"✅ Forked {args.session_id} -> {forked.session_id}")
        return 0

    if command == "rename":
        renamed = await store.rename(args.session_id, args.name)
        if renamed is None:
            print(f"Session {args.session_id} not found.")
            return 1
        print(f"✅ Renamed {args.session_id} to {args.name!r}")
        return 0

    if command == "clear":
        if not await store.clear(args.session_id):
            print(f"Session {args.session_id} not found.")
            return 1
        print(f"✅ Cleared {args.session_id}")
        return 0

    if command == "delete":
        if not await store.delete(args.session_id):
            print(f"Session {args.session_id} not found.")
            return 1
        print(f"✅ Deleted {args.session_id}")
        return 0

    if command == "rebuild-index":
        count = await store.rebuild_index()
        print(f"✅ Indexed {count} sessions")
        return 0

    return 2


async def compact_session(settings: Settings, session_id: str, instructions: str | None) -> int:
    core = build_core(settings, detect_branch=False)
    try:
        result = await core.compaction.compact(
            session_id,
            trigger=CompactTrigger.MANUAL,
            instructions=instructions,
        )
    finally:
        await core.aclose()

    print(format_compaction_result(result))
    if result.success and result.previous_tokens:
        print(f"\n{result.summary}")
    return 0 if result.success else 1


async def run_context_command(settings: Settings, args: argparse.Namespace) -> int:
    store = build_context_store(settings)
    command = args.context_command

    if command == "show":
        stats = await store.user_stats(args.user_id)
        session_id = await store.get_user_last_session_id(args.user_id)
        print(f"\n=== Context for {args.user_id} ===\n")
        print(f"  Messages: {stats.message_count}")
        print(f"  Last session: {session_id or '-'}")
        if stats.last_message:
            print(f"  Last message: {stats.last_message.isoformat()}")

        transcript = await store.get_recent_context(args.user_id, args.count)
        if transcript:
            print(f"\n{transcript}")
        return 0

    if command == "clear":
        await store.clear_all(args.user_id)
        print(f"✅ Cleared context for {args.user_id}")
        return 0

    if command == "users":
        users = await store.list_users()
        if not users:
            print("No stored context.")
        for user_id in users:
            print(user_id)
        return 0

    return 2


def show_config(settings: Settings, check: bool) -> None:
    """Show current configuration."""

    def mask(value: str) -> str:
        if not value:
            return "(not set)"
        return value[:4] + "..." + value[-4:] if len(value) > 10 else "****"

    print("\n=== Bot-Manager-Agent Configuration ===\n")

    print("General:")
    print(f"  Debug: {settings.debug}")
    print(f"  Log Level: {settings.log_level}")
    print(f"  Data Dir: {settings.data_dir}")

    print("\nTelegram:")
    print(f"  Bot Token: {mask(settings.telegram_bot_token)}")

    print("\nLLM Providers:")
    llm_config = settings.get_llm_config()
    print(f"  Compaction Provider: {settings.compaction_provider}")
    print(f"  Compaction Model: {llm_config.model}")
    print(f"  Anthropic Key: {mask(settings.anthropic_api_key)}")
    print(f"  OpenAI Key: {mask(settings.openai_api_key)}")
    print(f"  OpenRouter Key: {mask(settings.openrouter_api_key)}")

    print("\nCompaction:")
    print(f"  Threshold: {settings.compaction_threshold_tokens:,} tokens")
    print(f"  Context Window: {settings.context_window_tokens:,} tokens")
    print(f"  Auto-compact Ratio: {settings.auto_compact_ratio}")

    print("\nContext:")
    print(f"  Max Messages: {settings.context_max_messages}")
    print(f"  Token Budget: {settings.context_max_tokens:,}")
    print(f"  Cache TTL: {settings.context_cache_ttl_seconds}s")

    print("\nConfirmations:")
    print(f"  Enabled: {settings.enable_confirmations}")
    print(f"  Timeout: {settings.confirmation_timeout_seconds}s")

    if check:
        print("\n=== Configuration Check ===\n")
        errors = []
        warnings = []

        if not llm_config.api_key:
            errors.append(f"No API key set for compaction provider {settings.compaction_provider!r}")

        if not settings.telegram_bot_token:
            warnings.append("TELEGRAM_BOT_TOKEN is not set - confirmations will only be logged")

        if settings.compaction_threshold_tokens > settings.context_window_tokens * settings.auto_compact_ratio:
            warnings.append("Compaction threshold is above the auto-compact trigger")

        if errors:
            print("❌ Errors:")
            for e in errors:
                print(f"   - {e}")

        if warnings:
            print("⚠️  Warnings:")
            for w in warnings:
                print(f"   - {w}")

        if not errors and not warnings:
            print("✅ Configuration looks good!")
        elif not errors:
            print("\n✅ Configuration is valid (with warnings)")
        else:
            print("\n❌ Configuration has errors - fix them before starting")


if __name__ == "__main__":
    main()

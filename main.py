"""
ChatRecall - chat-history window retrieval

Command-line entry point: prints context windows as JSON.
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import List, Optional

from loguru import logger


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure logging."""
    logger.remove()

    # Console handler
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True,
    )

    # File handler
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
            level="DEBUG",
            rotation="10 MB",
            retention="7 days",
            compression="zip",
        )


def _print_messages(messages) -> None:
    print(json.dumps([m.to_dict() for m in messages], ensure_ascii=False, indent=2))


async def run(args: argparse.Namespace) -> int:
    from chatrecall.core.app import ChatRecallApp
    from chatrecall.core.errors import ChatRecallError

    try:
        async with ChatRecallApp(args.config) as app:
            if args.command == "recent":
                _print_messages(
                    await app.retriever.recent_window(args.conversation_id, args.limit, not args.no_system)
                )
            elif args.command == "keywords":
                _print_messages(
                    await app.retriever.keyword_window(
                        args.conversation_id, args.keywords, not args.no_system, args.limit, args.mode
                    )
                )
            elif args.command == "user":
                _print_messages(
                    await app.retriever.keyword_window_by_user(
                        args.user_id, args.keywords, args.include_system, args.limit, args.mode
                    )
                )
            elif args.command == "add":
                if await app.conversations.get_conversation(args.conversation_id) is None:
                    await app.conversations.create_conversation(
                        args.conversation_id, system_prompt=args.system_prompt, user_id=args.user_id
                    )
                message = await app.conversations.add_message(args.conversation_id, args.role, args.content)
                print(json.dumps(message.to_dict(), ensure_ascii=False, indent=2))
    except ChatRecallError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ChatRecall - chat-history context windows")
    parser.add_argument("--config", type=str, default="config.yaml", help="Path to configuration file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-file", type=str, default=None, help="Also log to a rotating file")
    parser.add_argument("--version", action="version", version="ChatRecall 0.1.0")

    sub = parser.add_subparsers(dest="command", required=True)

    recent = sub.add_parser("recent", help="Most recent messages of a conversation")
    recent.add_argument("conversation_id")
    recent.add_argument("--limit", type=int, default=None)
    recent.add_argument("--no-system", action="store_true", help="Do not prefix the system message")

    keywords = sub.add_parser("keywords", help="Keyword window within one conversation")
    keywords.add_argument("conversation_id")
    keywords.add_argument("keywords", nargs="*")
    keywords.add_argument("--limit", type=int, default=None)
    keywords.add_argument("--mode", choices=["any", "all"], default="any")
    keywords.add_argument("--no-system", action="store_true", help="Do not prefix the system message")

    user = sub.add_parser("user", help="Keyword window across a user's conversations")
    user.add_argument("user_id")
    user.add_argument("keywords", nargs="*")
    user.add_argument("--limit", type=int, default=None)
    user.add_argument("--mode", choices=["any", "all"], default="any")
    user.add_argument("--include-system", action="store_true", help="Prefix the system message")

    add = sub.add_parser("add", help="Append a message (creates the conversation if needed)")
    add.add_argument("conversation_id")
    add.add_argument("role", choices=["system", "user", "assistant"])
    add.add_argument("content")
    add.add_argument("--user-id", default=None)
    add.add_argument("--system-prompt", default=None)

    return parser


def cli(argv: Optional[List[str]] = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    level = "DEBUG" if args.debug else os.getenv("CHATRECALL_LOG_LEVEL", "INFO").upper()
    setup_logging(level, args.log_file)

    try:
        code = asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    cli()

"""CLI entry point for messaging-client."""

from __future__ import annotations

import argparse
import asyncio
import sys

from messaging_client.app import MessagingApp
from messaging_client.config import AppConfig, load_config
from messaging_client.log import setup_logging
from messaging_client.ui.terminal import dispatch_input


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="messaging-client",
        description="Terminal client for web messaging conversations",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # chat command
    chat_parser = subparsers.add_parser("chat", help="Start or resume a conversation")
    chat_parser.add_argument(
        "-c", "--config", default="config.yaml", help="Path to config file"
    )
    chat_parser.add_argument(
        "-e", "--env", default=".env", help="Path to .env file"
    )
    chat_parser.add_argument(
        "--new", action="store_true", help="Discard any stored conversation and start a new one"
    )

    # config-check command
    check_parser = subparsers.add_parser("config-check", help="Validate configuration")
    check_parser.add_argument(
        "-c", "--config", default="config.yaml", help="Path to config file"
    )
    check_parser.add_argument(
        "-e", "--env", default=".env", help="Path to .env file"
    )

    args = parser.parse_args()

    if args.command is None:
        # Default to chat
        args.command = "chat"
        args.config = "config.yaml"
        args.env = ".env"
        args.new = False

    if args.command == "config-check":
        _check_config(args.config, args.env)
    elif args.command == "chat":
        _run(args.config, args.env, args.new)


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    try:
        config = load_config(config_path, env_path)
        print(f"Configuration valid: {config_path}")
        print(f"  API base URL: {config.messaging.base_url}")
        print(f"  Org ID: {config.messaging.org_id}")
        print(f"  Deployment: {config.messaging.es_developer_name}")
        print(f"  Storage: {config.storage.db_path}")
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _run(config_path: str, env_path: str, force_new: bool) -> None:
    """Load config and run an interactive conversation."""
    try:
        config = load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Copy config.example.yaml to config.yaml and fill in your deployment")
        sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config.log_level, config.log_format)

    try:
        exit_code = asyncio.run(_chat(config, force_new))
    except KeyboardInterrupt:
        exit_code = 130
    sys.exit(exit_code)


async def _chat(config: AppConfig, force_new: bool) -> int:
    app = MessagingApp(config)
    keep_conversation = False
    try:
        if not await app.start(force_new=force_new):
            print("Could not start a conversation.", file=sys.stderr)
            return 1

        while not app.window_closed.is_set():
            read_task = asyncio.create_task(asyncio.to_thread(sys.stdin.readline))
            closed_task = asyncio.create_task(app.window_closed.wait())
            done, pending = await asyncio.wait(
                {read_task, closed_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            for t in pending:
                t.cancel()

            if read_task not in done:
                print("Press Enter to exit.")
                break

            line = read_task.result()
            if line == "":
                # EOF: leave the conversation open so the next run resumes it
                keep_conversation = True
                break
            await dispatch_input(app.session, app.view, line)
    finally:
        await app.stop(keep_conversation=keep_conversation)
    return 0


if __name__ == "__main__":
    main()

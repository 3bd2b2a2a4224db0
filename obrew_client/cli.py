"""CLI entry point for obrew-client.

Thin terminal front-end over ObrewClient for health checks, one-off chat
requests and following a model download.

Entry point:
    obrew-cli ping [--timeout SECONDS]
    obrew-cli chat "prompt" [--system TEXT] [--stream] [--temperature T] [--max-tokens N]
    obrew-cli watch-download <task-id>
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from obrew_client.client import ObrewClient
from obrew_client.config import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    ConnectionConfig,
    InferenceOptions,
    Message,
)
from obrew_client.errors import ObrewError, RequestCancelled
from obrew_client.progress import ProgressCallbacks, ProgressRecord, ProgressStatus

logger = logging.getLogger(__name__)

EXIT_CANCELLED = 130


# ─────────────────────────────────────────────────────────────────────
# ARGUMENT PARSING
# ─────────────────────────────────────────────────────────────────────


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="obrew-cli",
        description="Talk to an Obrew inference backend from the terminal.",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable debug logging"
    )
    parser.add_argument("--domain", default=None, help="Backend domain (default: $OBREW_DOMAIN)")
    parser.add_argument("--port", default=None, help="Backend port (default: $OBREW_PORT)")
    sub = parser.add_subparsers(dest="command")

    # ping
    ping_p = sub.add_parser("ping", help="Check that the backend answers")
    ping_p.add_argument("--timeout", type=float, default=None, help="Seconds to wait")

    # chat
    chat_p = sub.add_parser("chat", help="Send one chat message")
    chat_p.add_argument("prompt", help="User message")
    chat_p.add_argument("--system", default=None, help="System message")
    chat_p.add_argument("--stream", action="store_true", help="Request a streamed answer")
    chat_p.add_argument("--temperature", type=float, default=DEFAULT_TEMPERATURE)
    chat_p.add_argument("--max-tokens", type=int, default=DEFAULT_MAX_TOKENS)

    # watch-download
    watch_p = sub.add_parser("watch-download", help="Follow a model download")
    watch_p.add_argument("task_id", help="Download task id")

    return parser


def _build_config(domain: Optional[str], port: Optional[str]) -> ConnectionConfig:
    config = ConnectionConfig.from_env()
    updates = {}
    if domain:
        updates["domain"] = domain
    if port:
        updates["port"] = port
    return config.model_copy(update=updates)


# ─────────────────────────────────────────────────────────────────────
# COMMANDS
# ─────────────────────────────────────────────────────────────────────


async def _cmd_ping(client: ObrewClient, timeout: Optional[float]) -> int:
    result = await client.ping(timeout)
    if result.success:
        print(f"ok {client.config.origin} ({result.response_time_ms} ms)")
        return 0
    print(f"unreachable {client.config.origin}: {result.error}", file=sys.stderr)
    return 1


async def _cmd_chat(
    client: ObrewClient,
    prompt: str,
    system: Optional[str],
    stream: bool,
    temperature: float,
    max_tokens: int,
) -> int:
    if not await client.connect():
        print(f"Could not connect to {client.config.origin}", file=sys.stderr)
        return 1

    messages = []
    if system:
        messages.append(Message(role="system", content=system))
    messages.append(Message(role="user", content=prompt))
    options = InferenceOptions(temperature=temperature, max_tokens=max_tokens, stream=stream)

    def on_text(text: str) -> None:
        sys.stdout.write(text)
        sys.stdout.flush()

    text = await client.send_message(messages, options, on_text=on_text if stream else None)
    if stream:
        sys.stdout.write("\n")
    else:
        print(text)
    return 0


def _format_progress(record: ProgressRecord) -> str:
    primary = record.primary_progress
    line = (
        f"{record.primary_task_id} {record.status.value} "
        f"{primary.percent:.1f}% {primary.speed_mbps:.1f} MB/s"
    )
    if primary.eta_seconds is not None:
        line += f" eta {primary.eta_seconds:.0f}s"
    if record.secondary_progress is not None:
        line += f" | secondary {record.secondary_progress.percent:.1f}%"
    return line


async def _cmd_watch_download(client: ObrewClient, task_id: str) -> int:
    if not await client.connect():
        print(f"Could not connect to {client.config.origin}", file=sys.stderr)
        return 1

    callbacks = ProgressCallbacks(
        on_progress=lambda record: print(_format_progress(record), file=sys.stderr),
        on_complete=lambda file_path: print(file_path or "completed"),
        on_error=lambda message: print(f"Error: {message}", file=sys.stderr),
        on_cancel=lambda: print("Download cancelled", file=sys.stderr),
    )
    subscription = await client.subscribe_to_progress(task_id, callbacks)
    try:
        outcome = await subscription.wait()
    except asyncio.CancelledError:
        subscription.cancel()
        raise
    if outcome is ProgressStatus.COMPLETED:
        return 0
    if outcome is ProgressStatus.CANCELLED:
        return EXIT_CANCELLED
    return 1


async def _run(args: argparse.Namespace) -> int:
    config = _build_config(args.domain, args.port)
    async with ObrewClient(config) as client:
        try:
            if args.command == "ping":
                return await _cmd_ping(client, args.timeout)
            if args.command == "chat":
                return await _cmd_chat(
                    client,
                    prompt=args.prompt,
                    system=args.system,
                    stream=args.stream,
                    temperature=args.temperature,
                    max_tokens=args.max_tokens,
                )
            if args.command == "watch-download":
                return await _cmd_watch_download(client, args.task_id)
        except RequestCancelled as e:
            print(f"Cancelled: {e}", file=sys.stderr)
            return EXIT_CANCELLED
        except ObrewError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
    return 1


# ─────────────────────────────────────────────────────────────────────
# ENTRY POINT
# ─────────────────────────────────────────────────────────────────────


def main():
    parser = _build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Logging
    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(name)s %(message)s", stream=sys.stderr)

    # Load env
    from dotenv import load_dotenv
    load_dotenv()

    try:
        code = asyncio.run(_run(args))
    except KeyboardInterrupt:
        code = EXIT_CANCELLED

    sys.exit(code)


if __name__ == "__main__":
    main()

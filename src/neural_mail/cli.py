"""Command-line interface for Neural Mail.

This module provides the main entry point for the CLI application.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

import structlog

from neural_mail import __version__
from neural_mail.config import Settings, get_settings
from neural_mail.exceptions import ServiceError
from neural_mail.models import Account, HeaderView
from neural_mail.service import MailService
from neural_mail.sync import SyncScheduler

logger = structlog.get_logger()


def _add_account_arguments(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("account")
    group.add_argument("--account", help="Configured account id (see accounts_path)")
    group.add_argument("--email", help="Account email, used when no --account is given")
    group.add_argument("--host", help="IMAP host for --email")
    group.add_argument("--port", type=int, default=993, help="IMAP port for --email (default: 993)")
    parser.add_argument("--mailbox", default=None, help="Mailbox name (default: settings default_mailbox)")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="neural-mail", description="Neural Mail")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Synchronize a mailbox into the local cache")
    _add_account_arguments(sync_parser)

    headers_parser = subparsers.add_parser("headers", help="List cached headers (syncs an empty cache)")
    _add_account_arguments(headers_parser)
    headers_parser.add_argument("--limit", type=int, default=25, help="Max headers to show")

    search_parser = subparsers.add_parser("search", help="Search cached subjects and senders")
    search_parser.add_argument("query", help="Search terms")
    search_parser.add_argument("--account", help="Restrict to one configured account id")
    search_parser.add_argument("--limit", type=int, default=25, help="Max results")

    summarize_parser = subparsers.add_parser("summarize", help="Summarize one message with the local model")
    _add_account_arguments(summarize_parser)
    summarize_parser.add_argument("uid", type=int, help="Message UID")

    ask_parser = subparsers.add_parser("ask", help="Ask a question about the cached inbox")
    _add_account_arguments(ask_parser)
    ask_parser.add_argument("question", help="Question to ask")

    subparsers.add_parser("serve", help="Run the background sync loop for configured accounts")
    subparsers.add_parser("model-status", help="Check that the local model is installed")

    return parser


def _account(service: MailService, args: argparse.Namespace) -> Account:
    if args.account:
        account = service.accounts.get(args.account)
        if account is None:
            raise SystemExit(f"Unknown account: {args.account}")
        return account
    if args.email and args.host:
        return service.resolve_account(args.email, args.host, args.port)
    raise SystemExit("Pass --account, or --email with --host")


def _print_headers(views: list[HeaderView]) -> None:
    for view in views:
        date_part = view.date or "(no date)"
        from_part = view.from_ or "(unknown sender)"
        print(f"{view.id}\t{date_part}\t{from_part}\t{view.subject}")


async def _cmd_sync(service: MailService, args: argparse.Namespace) -> int:
    outcome = await service.sync(_account(service, args), args.mailbox)
    resync = " (full resync)" if outcome.full_resync else ""
    print(f"Added {outcome.added}, updated {outcome.updated}, removed {outcome.removed}{resync}")
    return 0


async def _cmd_headers(service: MailService, args: argparse.Namespace) -> int:
    views = await service.get_headers(_account(service, args), args.mailbox)
    _print_headers(views[: args.limit])
    return 0


async def _cmd_search(service: MailService, args: argparse.Namespace) -> int:
    account = None
    if args.account:
        account = service.accounts.get(args.account)
        if account is None:
            raise SystemExit(f"Unknown account: {args.account}")
    _print_headers(await service.search(args.query, account, limit=args.limit))
    return 0


async def _cmd_summarize(service: MailService, args: argparse.Namespace) -> int:
    account = _account(service, args)
    mailbox = args.mailbox or service.settings.default_mailbox
    result = await service.summarize_message(account, mailbox, args.uid)
    print(result.text)
    if result.truncated:
        print("\n(message was truncated before summarizing)", file=sys.stderr)
    return 0


async def _cmd_ask(service: MailService, args: argparse.Namespace) -> int:
    print(await service.ask(args.question, _account(service, args), args.mailbox))
    return 0


async def _cmd_model_status(service: MailService, args: argparse.Namespace) -> int:
    status = await service.model_status()
    if not status.reachable:
        print(f"Ollama is not reachable at {service.settings.ollama_host}")
        return 1
    if not status.installed:
        print(f"Model {status.model} is not installed (run: ollama pull {status.model})")
        return 1
    print(f"Model {status.model} is ready")
    return 0


async def _cmd_serve(service: MailService, args: argparse.Namespace) -> int:
    accounts = service.accounts.all()
    if not accounts:
        print(f"No accounts configured in {service.settings.accounts_path}", file=sys.stderr)
        return 1

    stop = asyncio.Event()
    _stop_on_signals(stop)
    scheduler = SyncScheduler(service.sync_engine, accounts, service.settings)
    await scheduler.run(stop)
    logger.info("neural_mail_serve_stopped", passes=scheduler.passes)
    return 0


def _stop_on_signals(stop: asyncio.Event) -> list[signal.Signals]:
    """Set ``stop`` on SIGINT or SIGTERM.

    Returns:
        The signals that got a handler. Windows event loops support none, and
        there Ctrl+C still ends the process through KeyboardInterrupt.
    """
    if sys.platform == "win32":
        return []
    loop = asyncio.get_running_loop()
    signals = [signal.SIGINT, signal.SIGTERM]
    for sig in signals:
        loop.add_signal_handler(sig, stop.set)
    return signals


_COMMANDS = {
    "sync": _cmd_sync,
    "headers": _cmd_headers,
    "search": _cmd_search,
    "summarize": _cmd_summarize,
    "ask": _cmd_ask,
    "serve": _cmd_serve,
    "model-status": _cmd_model_status,
}


async def _run(settings: Settings, args: argparse.Namespace) -> int:
    async with MailService(settings) as service:
        try:
            return await _COMMANDS[args.command](service, args)
        except ServiceError as exc:
            print(f"Error ({exc.to_dict()['kind']}): {exc.message}", file=sys.stderr)
            return 1


def configure_logging(settings: Settings) -> None:
    """Configure structlog from settings; log lines go to stderr."""

    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
    )


def main(args: list[str] | None = None) -> int:
    """Main entry point for the Neural Mail CLI.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    if args is None:
        args = sys.argv[1:]

    parser = _build_parser()
    parsed = parser.parse_args(args)

    settings = get_settings()
    configure_logging(settings)
    logger.info("neural_mail_started", version=__version__, command=parsed.command, debug=settings.debug)

    try:
        return asyncio.run(_run(settings, parsed))
    except KeyboardInterrupt:
        logger.info("neural_mail_interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())

from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import sys
from datetime import date
from pathlib import Path
from typing import List, Optional

from invoice_downloader.common.json_logger import JsonLogger, get_logger, new_run_id
from invoice_downloader.config import ConfigError, get_config

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from exc


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from exc
    if parsed < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return parsed


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str), flush=True)


def _build_orchestrator(logger: JsonLogger, *, headed: bool = False):
    from invoice_downloader.browser.manager import BrowserSessionManager
    from invoice_downloader.jobs.orchestrator import JobOrchestrator

    config = get_config()
    overrides = {}
    if headed:
        overrides["browser_manager"] = BrowserSessionManager.from_config(config, logger=logger, headless=False)
    return JobOrchestrator.from_config(config, logger=logger, **overrides)


async def run_vendor_job(
    vendor_id: str,
    *,
    limit: int | None = None,
    from_date: date | None = None,
    run_id: str | None = None,
    headed: bool = False,
):
    """Run one vendor job to completion and return its final JobRecord."""

    logger = get_logger(run_id=run_id or new_run_id())
    orchestrator = _build_orchestrator(logger, headed=headed)
    try:
        await orchestrator.prepare()
        return await orchestrator.run_job(vendor_id, limit=limit, from_date=from_date)
    finally:
        await orchestrator.shutdown()
        logger.close()


async def _cmd_run(args: argparse.Namespace) -> int:
    from invoice_downloader.jobs.tracker import JobConflictError, JobStatus
    from invoice_downloader.vendors import UnknownVendorError

    try:
        record = await run_vendor_job(
            args.vendor,
            limit=args.limit,
            from_date=args.from_date,
            run_id=args.run_id,
            headed=args.headed,
        )
    except (UnknownVendorError, JobConflictError) as exc:
        print(str(exc), file=sys.stderr, flush=True)
        return EXIT_USAGE
    _print_json(record.as_dict())
    return EXIT_OK if record.status is JobStatus.COMPLETED else EXIT_FAILED


async def _cmd_run_all(args: argparse.Namespace) -> int:
    from invoice_downloader.jobs.tracker import JobStatus

    logger = get_logger(run_id=args.run_id or new_run_id())
    orchestrator = _build_orchestrator(logger, headed=args.headed)
    try:
        await orchestrator.prepare()
        results = await orchestrator.run_all_jobs(limit=args.limit, from_date=args.from_date)
    finally:
        await orchestrator.shutdown()
        logger.close()
    _print_json({vendor_id: record.as_dict() for vendor_id, record in results.items()})
    if any(record.status is not JobStatus.COMPLETED for record in results.values()):
        return EXIT_FAILED
    return EXIT_OK


async def _cmd_invoices(args: argparse.Namespace) -> int:
    from invoice_downloader.storage.ledger import InvoiceLedger

    config = get_config()
    ledger = InvoiceLedger(config.database_url)
    try:
        await ledger.initialize()
        records = await (ledger.list_by_vendor(args.vendor) if args.vendor else ledger.list_all())
    finally:
        await ledger.close()
    _print_json([record.as_dict() for record in records])
    return EXIT_OK


def _cmd_file(args: argparse.Namespace) -> int:
    from invoice_downloader.storage.artifacts import ArtifactStore
    from invoice_downloader.storage.ledger import StorageError

    store = ArtifactStore(get_config().invoice_storage_path)
    try:
        content = store.read(args.path)
    except StorageError as exc:
        print(str(exc), file=sys.stderr, flush=True)
        return EXIT_FAILED
    if args.output:
        Path(args.output).write_bytes(content)
    else:
        sys.stdout.buffer.write(content)
        sys.stdout.buffer.flush()
    return EXIT_OK


def _credential_store(logger: JsonLogger):
    from invoice_downloader.storage.credentials import CredentialStore

    config = get_config()
    return CredentialStore(config.credentials_file, config.secret_key, logger=logger)


def _cmd_credentials(args: argparse.Namespace) -> int:
    from pydantic import ValidationError

    from invoice_downloader.storage.credentials import Credential
    from invoice_downloader.storage.ledger import StorageError
    from invoice_downloader.totp import SecretFormatError

    logger = get_logger()
    try:
        store = _credential_store(logger)
        if args.credentials_command == "list":
            _print_json(
                {
                    vendor_id: {
                        "username": credential.username,
                        "totp_enabled": credential.totp_enabled,
                        "last_updated": credential.last_updated,
                    }
                    for vendor_id, credential in store.get_all_credentials().items()
                }
            )
            return EXIT_OK

        if args.credentials_command == "remove":
            try:
                removed = store.remove_credential(args.vendor)
            except StorageError as exc:
                print(str(exc), file=sys.stderr, flush=True)
                return EXIT_FAILED
            return EXIT_OK if removed else EXIT_FAILED

        if args.password_stdin:
            password = sys.stdin.readline().rstrip("\n")
        else:
            password = getpass.getpass(f"Password for {args.vendor}: ")
        try:
            credential = Credential(
                username=args.username,
                password=password,
                totp_enabled=bool(args.totp_secret),
                totp_secret=args.totp_secret,
            )
            store.store_credential(args.vendor, credential)
        except (ValidationError, SecretFormatError) as exc:
            print(str(exc), file=sys.stderr, flush=True)
            return EXIT_USAGE
        except StorageError as exc:
            print(str(exc), file=sys.stderr, flush=True)
            return EXIT_FAILED
        return EXIT_OK
    finally:
        logger.close()


def _cmd_totp(args: argparse.Namespace) -> int:
    from invoice_downloader import totp

    if args.secret_stdin:
        secret = sys.stdin.readline().strip()
    elif args.secret:
        secret = args.secret
    else:
        secret = getpass.getpass("TOTP secret: ")
    try:
        codes = totp.generate_window(secret, window=args.window)
        current = totp.generate_totp(secret)
    except (totp.SecretFormatError, totp.CodeGenerationError) as exc:
        print(str(exc), file=sys.stderr, flush=True)
        return EXIT_USAGE
    _print_json(
        {
            "codes": codes,
            "current": current,
            "seconds_remaining": round(totp.seconds_remaining(), 1),
        }
    )
    return EXIT_OK


def _cmd_diagnostics(args: argparse.Namespace) -> int:
    from invoice_downloader.browser.manager import BrowserSessionManager

    logger = get_logger()
    try:
        manager = BrowserSessionManager.from_config(get_config(), logger=logger)
        report = manager.run_diagnostics()
    finally:
        logger.close()
    _print_json(report)
    return EXIT_OK


def _add_run_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--limit", type=_positive_int, default=None, help="Maximum invoices to collect")
    parser.add_argument("--from-date", dest="from_date", type=_parse_date, default=None, help="YYYY-MM-DD")
    parser.add_argument("--run-id", dest="run_id", type=str, default=None, help="Override generated run id")
    parser.add_argument("--headed", action="store_true", help="Show the browser so a human can finish logins")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="invoice_downloader", description="Vendor invoice downloader")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Download invoices for one vendor")
    run_parser.add_argument("vendor", help="Vendor id, e.g. amazon")
    _add_run_arguments(run_parser)

    run_all_parser = subparsers.add_parser("run-all", help="Download invoices for every vendor in turn")
    _add_run_arguments(run_all_parser)

    invoices_parser = subparsers.add_parser("invoices", help="List recorded invoices")
    invoices_parser.add_argument("--vendor", default=None)

    file_parser = subparsers.add_parser("file", help="Read a stored invoice file")
    file_parser.add_argument("path", help="Storage path as listed by `invoices`")
    file_parser.add_argument("--output", default=None, help="Write to this file instead of stdout")

    credentials_parser = subparsers.add_parser("credentials", help="Manage stored vendor credentials")
    credentials_sub = credentials_parser.add_subparsers(dest="credentials_command", required=True)
    set_parser = credentials_sub.add_parser("set", help="Store or replace a vendor credential")
    set_parser.add_argument("vendor")
    set_parser.add_argument("--username", required=True)
    set_parser.add_argument("--totp-secret", dest="totp_secret", default=None)
    set_parser.add_argument(
        "--password-stdin",
        dest="password_stdin",
        action="store_true",
        help="Read the password from the first line of stdin instead of prompting",
    )
    remove_parser = credentials_sub.add_parser("remove", help="Delete a vendor credential")
    remove_parser.add_argument("vendor")
    credentials_sub.add_parser("list", help="List vendors with stored credentials")

    totp_parser = subparsers.add_parser("totp", help="Print TOTP codes for a secret")
    totp_parser.add_argument(
        "secret", nargs="?", default=None, help="Secret on the command line; prefer --secret-stdin or the prompt"
    )
    totp_parser.add_argument(
        "--secret-stdin",
        dest="secret_stdin",
        action="store_true",
        help="Read the secret from the first line of stdin instead of prompting",
    )
    totp_parser.add_argument("--window", type=int, default=1)

    subparsers.add_parser("diagnostics", help="Report browser launch prerequisites")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "run":
            return asyncio.run(_cmd_run(args))
        if args.command == "run-all":
            return asyncio.run(_cmd_run_all(args))
        if args.command == "invoices":
            return asyncio.run(_cmd_invoices(args))
        if args.command == "file":
            return _cmd_file(args)
        if args.command == "credentials":
            return _cmd_credentials(args)
        if args.command == "totp":
            return _cmd_totp(args)
        if args.command == "diagnostics":
            return _cmd_diagnostics(args)
    except ConfigError as exc:
        print(f"configuration error: {exc}", file=sys.stderr, flush=True)
        return EXIT_USAGE

    parser.error("Unknown command")
    return EXIT_USAGE

from __future__ import annotations

import argparse
import json
import logging
import os
from datetime import date
from pathlib import Path
from typing import Sequence

from .clock import local_today
from .config import Settings, get_settings
from .db import Database
from .dispatcher import ReminderDispatcher
from .documents import create_document_store
from .errors import DispatchAlreadyRunningError, ReminderDispatchError
from .invoice_email import InvoiceEmailService
from .mailer import create_mail_sender
from .reminder_ledger import ReminderLedger

logger = logging.getLogger(__name__)

EXIT_LOCKED = 2


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _parse_date(raw: str) -> date:
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {raw!r}") from exc


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="billing-reminders",
        description="Send due payment reminders and inspect the reminder ledger.",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=Path(".env"),
        help="Optional dotenv file; variables already in the environment win.",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    run_parser = subcommands.add_parser("run", help="Send every due, unsent reminder.")
    run_parser.add_argument(
        "--date",
        dest="run_date",
        type=_parse_date,
        default=None,
        help="Treat this date as today (default: today in BILLING_TIMEZONE).",
    )
    subcommands.add_parser("sync", help="Plan reminders for invoices that have a policy but no ledger rows.")
    subcommands.add_parser("debug", help="Print every ledger row with days until its trigger date.")
    return parser.parse_args(argv)


def _dispatcher(settings: Settings, database: Database) -> ReminderDispatcher:
    email_service = InvoiceEmailService(
        mail_sender=create_mail_sender(settings),
        document_store=create_document_store(
            backend=settings.document_store_backend,
            root=settings.document_store_root,
        ),
    )
    return ReminderDispatcher(
        database=database,
        email_service=email_service,
        lock_ttl_seconds=settings.reminder_dispatch_lock_ttl_seconds,
        send_timeout_seconds=settings.mail_send_timeout_seconds,
    )


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


def main(argv: Sequence[str] | None = None, *, database: Database | None = None) -> int:
    args = parse_args(argv)
    _load_dotenv(args.env_file)
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    database = database or Database(settings.database_url)
    today = local_today(settings.billing_timezone)

    if args.command == "run":
        dispatcher = _dispatcher(settings, database)
        try:
            summary = dispatcher.process_due(args.run_date or today, triggered_by="cli")
        except DispatchAlreadyRunningError as exc:
            logger.warning("%s", exc)
            _print_json({"status": "locked", "detail": str(exc)})
            return EXIT_LOCKED
        except ReminderDispatchError as exc:
            logger.error("%s", exc)
            _print_json({"status": "failed", "detail": str(exc)})
            return 1
        finally:
            dispatcher.close()
        _print_json(summary.model_dump(mode="json"))
        return 0

    if args.command == "sync":
        with database.session() as session:
            with session.begin():
                result = ReminderLedger(session).sync_missing(today)
        _print_json({"invoice_ids": result.invoice_ids, "reminders_created": result.reminders_created})
        return 0

    with database.session() as session:
        inspection = ReminderLedger(session).inspect(today)
    _print_json(
        {
            "today": inspection.today.isoformat(),
            "total": len(inspection.items),
            "unsent": inspection.unsent,
            "items": [item.model_dump(mode="json") for item in inspection.items],
            "invoices_without_reminders": inspection.invoices_without_reminders,
        }
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

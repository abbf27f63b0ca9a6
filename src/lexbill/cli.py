"""Command line interface for lexbill.

All commands print JSON to stdout and exit 1 on error. Logs go to stderr.

    python -m lexbill number --date 2026-01-07 --location mumbai
    python -m lexbill validate-number 07012026-M-A
    python -m lexbill detect-currencies --matter 1 --matter 2
    python -m lexbill draft --matter 1 --matter 2 --currency USD --rate INR=0.012 \\
        --auto-number --description "Professional fees, January"
    python -m lexbill submit --edit 42 --description "Revised fees"
"""

import argparse
import json
import sys
from pathlib import Path

from .api_client import BillingApiClient
from .billing_file import BillingFileStore
from .config import Config, load_config
from .draft import InvoiceDraft
from .errors import ValidationError
from .logging_setup import setup_logging
from .models import parse_date
from .numbering import check_invoice_number
from .workflow import InvoiceWorkflow, WorkflowResult


def _open_source(config: Config, args):
    if getattr(args, "billing_file", None):
        return BillingFileStore(Path(args.billing_file))
    if config.use_api:
        return BillingApiClient.from_config(config)
    if config.billing_file_path is not None:
        return BillingFileStore(config.billing_file_path)
    raise ValueError("No billing source configured: set api.base_url or billing.billing_file")


def _close_source(source) -> None:
    close = getattr(source, "close", None)
    if close is not None:
        close()


def _parse_rate_arg(value: str) -> tuple[str, str]:
    currency, sep, rate = value.partition("=")
    if not sep or not currency or not rate:
        raise ValueError(f"Exchange rate must look like CUR=RATE, got {value!r}")
    return currency.strip().upper(), rate.strip()


def _status(result: WorkflowResult, **extra) -> dict:
    out = {"status": "ok" if result.success else "error"}
    out.update(extra)
    if result.errors:
        out["errors"] = [e.to_dict() for e in result.errors]
    if result.warnings:
        out["warnings"] = result.warnings
    return out


def _draft_summary(draft: InvoiceDraft) -> dict:
    conversion = draft.conversion
    state = draft.selection
    return {
        "mode": draft.mode,
        "matter_ids": state.matter_ids,
        "timesheet_ids": draft.billing_timesheet_ids(),
        "locked_timesheet_ids": [t.id for t in state.locked_timesheets],
        "invoice_currency": draft.effective_currency,
        "currencies": draft.reconciliation.to_dict(),
        "missing_rates": list(conversion.missing_rates),
        "total": str(conversion.total) if conversion.total is not None else None,
        "invoice_date": state.invoice_date.isoformat() if state.invoice_date else None,
        "due_date": state.due_date.isoformat() if state.due_date else None,
        "min_invoice_date": draft.min_invoice_date.isoformat() if draft.min_invoice_date else None,
        "invoice_number": draft.invoice_number or None,
    }


def _build_draft(args, config: Config, workflow: InvoiceWorkflow) -> WorkflowResult:
    """Assemble a draft from command line options.

    Collaborator problems are collected, not raised, so the caller can
    still show what was assembled.
    """
    errors = []
    warnings = []

    if args.edit is not None:
        loaded = workflow.load_for_edit(args.edit)
        if not loaded.success:
            return loaded
        draft = loaded.draft
        warnings.extend(loaded.warnings)
    else:
        draft = workflow.start(client_id=args.client, billing_location=args.location)
        if args.include_expenses:
            draft = draft.set_include_expenses(True).draft
        for matter_id in args.matter or []:
            result = workflow.add_matter(draft, matter_id)
            draft = result.draft
            errors.extend(result.errors)
            warnings.extend(result.warnings)

    if args.date_from or args.date_to:
        result = workflow.set_date_range(draft, parse_date(args.date_from), parse_date(args.date_to))
        draft = result.draft
        errors.extend(result.errors)
        warnings.extend(result.warnings)

    if args.timesheet:
        wanted = set(args.timesheet)
        for ts_id in sorted(draft.selection.selected_timesheet_ids ^ wanted):
            draft = draft.toggle_timesheet(ts_id).draft

    updates = []
    if args.edit is not None and args.location:
        updates.append(lambda d: d.set_billing_location(args.location))
    if args.client is not None and args.edit is not None:
        updates.append(lambda d: d.set_client(args.client))
    if args.currency:
        updates.append(lambda d: d.set_invoice_currency(args.currency))
    for currency, rate in (_parse_rate_arg(r) for r in args.rate or []):
        updates.append(lambda d, c=currency, r=rate: d.set_exchange_rate(c, r))
    if args.invoice_date:
        updates.append(lambda d: d.set_invoice_date(parse_date(args.invoice_date)))
    if args.due_date:
        updates.append(lambda d: d.set_due_date(parse_date(args.due_date)))
    if args.description is not None:
        updates.append(lambda d: d.set_description(args.description))
    if args.notes is not None:
        updates.append(lambda d: d.set_notes(args.notes))
    if args.number:
        updates.append(lambda d: d.set_invoice_number(args.number))

    for apply in updates:
        update = apply(draft)
        draft = update.draft
        errors.extend(update.diagnostics)

    if args.auto_number and not args.number:
        result = workflow.allocate_number(draft)
        draft = result.draft
        errors.extend(result.errors)

    check = workflow.check_currencies(draft)
    warnings.extend(check.warnings)

    return WorkflowResult(not errors, draft, errors=errors, warnings=warnings)


def cmd_number(args, config: Config, workflow: InvoiceWorkflow) -> dict:
    """Allocate the next invoice number for a date and office."""
    location = args.location or config.billing.default_location
    draft = workflow.start(billing_location=location).set_invoice_date(parse_date(args.date)).draft
    result = workflow.allocate_number(draft)
    return _status(result, invoice_number=result.draft.invoice_number or None)


def cmd_validate_number(args, config: Config, workflow: InvoiceWorkflow) -> dict:
    try:
        check_invoice_number(args.invoice_number)
    except ValidationError as e:
        return {"status": "error", "invoice_number": args.invoice_number, "errors": [e.to_dict()]}
    return {"status": "ok", "invoice_number": args.invoice_number}


def cmd_detect_currencies(args, config: Config, workflow: InvoiceWorkflow) -> dict:
    built = _build_draft(args, config, workflow)
    draft = built.draft
    if draft is None:
        return _status(built)
    return _status(built, **_draft_summary(draft))


def cmd_draft(args, config: Config, workflow: InvoiceWorkflow) -> dict:
    """Assemble and validate a draft without persisting it."""
    built = _build_draft(args, config, workflow)
    if built.draft is None:
        return _status(built)
    result = built.draft.finalize().result
    out = {"status": "ok" if result.success else "error", "draft": _draft_summary(built.draft)}
    if result.success:
        out["payload"] = result.data.to_payload()
    else:
        out["errors"] = [e.to_dict() for e in result.errors]
    if built.warnings:
        out["warnings"] = built.warnings
    return out


def cmd_submit(args, config: Config, workflow: InvoiceWorkflow) -> dict:
    """Assemble a draft and send it to the billing API."""
    if not isinstance(workflow.source, BillingApiClient):
        return {"status": "error", "error": "submit requires api.base_url; billing files are read-only"}
    built = _build_draft(args, config, workflow)
    if not built.success:
        return _status(built)
    result = workflow.submit(built.draft)
    result.warnings = built.warnings + result.warnings
    return _status(result, **(result.data or {}))


def _add_draft_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument("--matter", "-m", type=int, action="append", help="Matter id (repeat for several)")
    p.add_argument("--client", "-c", type=int, help="Client id (default: from the first matter)")
    p.add_argument("--edit", type=int, metavar="INVOICE_ID", help="Load an existing invoice for editing")
    p.add_argument("--location", help="Billing location (delhi, mumbai, bangalore, delhi (lt))")
    p.add_argument("--from", dest="date_from", help="Only timesheets on or after (YYYY-MM-DD)")
    p.add_argument("--to", dest="date_to", help="Only timesheets on or before (YYYY-MM-DD)")
    p.add_argument("--timesheet", "-t", type=int, action="append", help="Bill only these timesheet ids")
    p.add_argument("--include-expenses", action="store_true", help="Include one-time expenses (INR)")
    p.add_argument("--currency", help="Invoice currency (default: suggested)")
    p.add_argument("--rate", "-r", action="append", help="Exchange rate CUR=RATE into the invoice currency")
    p.add_argument("--invoice-date", help="Invoice date (default: latest timesheet date)")
    p.add_argument("--due-date", help="Due date (default: latest timesheet date + due_days)")
    p.add_argument("--number", "-n", help="Invoice number")
    p.add_argument("--auto-number", action="store_true", help="Allocate the next free invoice number")
    p.add_argument("--description", "-d", help="Invoice description")
    p.add_argument("--notes", help="Invoice notes")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="python -m lexbill",
        description="Multi-currency invoice drafting for legal matters",
    )
    parser.add_argument("--config", help="Path to config.toml")
    parser.add_argument("--billing-file", help="Read billing data from this markdown file instead of the API")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    # number
    p_num = sub.add_parser("number", help="Allocate the next invoice number")
    p_num.add_argument("--date", required=True, help="Invoice date (YYYY-MM-DD)")
    p_num.add_argument("--location", "-l", help="Billing location (default: from config)")

    # validate-number
    p_val = sub.add_parser("validate-number", help="Check an invoice number's format")
    p_val.add_argument("invoice_number", help="e.g. 07012026-M-A")

    # detect-currencies
    p_det = sub.add_parser("detect-currencies", help="Show the currency breakdown of a selection")
    _add_draft_arguments(p_det)

    # draft
    p_draft = sub.add_parser("draft", help="Assemble and validate an invoice without saving it")
    _add_draft_arguments(p_draft)

    # submit
    p_submit = sub.add_parser("submit", help="Assemble an invoice and save it via the API")
    _add_draft_arguments(p_submit)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    commands = {
        "number": cmd_number,
        "validate-number": cmd_validate_number,
        "detect-currencies": cmd_detect_currencies,
        "draft": cmd_draft,
        "submit": cmd_submit,
    }

    source = None
    try:
        config = load_config(Path(args.config) if args.config else None)
        setup_logging(config, verbose=args.verbose)
        if args.command == "validate-number":
            workflow = None
        else:
            source = _open_source(config, args)
            workflow = InvoiceWorkflow(
                source,
                due_days=config.billing.due_days,
                default_location=config.billing.default_location,
                default_currency=config.billing.default_currency,
            )
        result = commands[args.command](args, config, workflow)
        print(json.dumps(result, indent=2, ensure_ascii=False))
        if result.get("status") == "error":
            sys.exit(1)
    except Exception as e:
        print(json.dumps({"status": "error", "error": str(e)}))
        sys.exit(1)
    finally:
        if source is not None:
            _close_source(source)


if __name__ == "__main__":
    main()

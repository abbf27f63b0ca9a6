"""Draft validation and payload assembly.

``finalize(draft)`` runs every check, collecting all problems rather than
stopping at the first one, and returns either the persistable invoice or
the full list of ValidationErrors so the user can fix everything in one
pass. Nothing here touches the network.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING

from . import selection as sel
from .currency import (
    is_supported_currency,
    round_money,
    validate_exchange_rates,
)
from .errors import FinalizeResult, ValidationError
from .numbering import OFFICE_CODES, normalize_location, validate_invoice_number

if TYPE_CHECKING:
    from .draft import InvoiceDraft

logger = logging.getLogger("lexbill.assembler")


@dataclass(frozen=True)
class PersistableInvoice:
    client_id: int
    matter_ids: list[int]
    timesheet_ids: list[int]
    expense_ids: list[int] | None
    invoice_currency: str
    exchange_rates: dict[str, Decimal] | None
    total: Decimal
    invoice_number: str
    invoice_date: date
    due_date: date
    billing_location: str
    description: str
    notes: str = ""
    date_from: date | None = None
    date_to: date | None = None

    @property
    def include_expenses(self) -> bool:
        return bool(self.expense_ids)

    def to_payload(self) -> dict:
        """JSON body for the create/update invoice endpoints."""
        payload = {
            "clientId": self.client_id,
            "matterIds": self.matter_ids,
            "matterId": self.matter_ids[0] if len(self.matter_ids) == 1 else None,
            "invoiceNumber": self.invoice_number,
            "invoiceDate": self.invoice_date.isoformat(),
            "dueDate": self.due_date.isoformat(),
            "invoiceAmount": str(self.total),
            "description": self.description,
            "notes": self.notes or None,
            "timesheetIds": self.timesheet_ids,
            "includeExpenses": self.include_expenses,
            "dateFrom": self.date_from.isoformat() if self.date_from else None,
            "dateTo": self.date_to.isoformat() if self.date_to else None,
            "billingLocation": self.billing_location,
            "invoiceCurrency": self.invoice_currency,
        }
        if self.expense_ids:
            payload["expenseIds"] = self.expense_ids
        if self.exchange_rates:
            payload["exchangeRates"] = {c: str(r) for c, r in sorted(self.exchange_rates.items())}
        return payload


def invoice_date_error(minimum: date) -> ValidationError:
    return ValidationError(
        "invoice_date",
        f"Invoice date cannot be before {minimum.isoformat()} (latest timesheet date)",
    )


def due_date_error(state: sel.SelectionState) -> ValidationError | None:
    """Ordering problem with the due date, if any. A missing date is not checked."""
    if state.due_date is None:
        return None
    if state.invoice_date and state.due_date < state.invoice_date:
        return ValidationError("due_date", "Due date must be after invoice date")
    if state.min_due_date and state.due_date < state.min_due_date:
        return ValidationError(
            "due_date",
            f"Due date cannot be before {state.min_due_date.isoformat()} (latest timesheet date)",
        )
    return None


def location_error() -> ValidationError:
    return ValidationError(
        "billing_location",
        f"Invalid location. Must be one of: {', '.join(OFFICE_CODES)}",
    )


def validate_draft(draft: "InvoiceDraft") -> list[ValidationError]:
    """Run every draft check in display order."""
    state = draft.selection
    errors: list[ValidationError] = []

    # 1. client and matters
    if draft.client_id is None:
        errors.append(ValidationError("client_id", "Please select a client"))
    if not state.matters:
        errors.append(ValidationError("matter_ids", "Please select at least one matter"))

    # 2. billing location
    if not draft.billing_location:
        errors.append(ValidationError("billing_location", "Please select a billing location"))
    elif normalize_location(draft.billing_location) not in OFFICE_CODES:
        errors.append(location_error())

    # 3. invoice number
    number_error = validate_invoice_number(draft.invoice_number)
    if number_error:
        errors.append(number_error)

    # 4. invoice date
    minimum = draft.min_invoice_date
    if state.invoice_date is None:
        errors.append(ValidationError("invoice_date", "Invoice date is required"))
    elif minimum and state.invoice_date < minimum:
        errors.append(invoice_date_error(minimum))

    # 5. due date
    if state.due_date is None:
        errors.append(ValidationError("due_date", "Due date is required"))
    else:
        error = due_date_error(state)
        if error:
            errors.append(error)

    # 6. amount; an incomplete conversion is reported under exchange_rates instead
    currency = draft.effective_currency
    conversion = draft.conversion
    if conversion.total is not None and round_money(conversion.total) <= 0:
        errors.append(ValidationError("amount", "Amount must be greater than 0"))

    # 7. description
    if not draft.description.strip():
        errors.append(ValidationError("description", "Description is required"))

    # 8. exchange rates
    if not is_supported_currency(currency):
        errors.append(ValidationError("invoice_currency", f"Unsupported currency: {currency}"))
    check = validate_exchange_rates(draft.reconciliation.currencies, currency, draft.rates)
    if check.missing:
        errors.append(ValidationError(
            "exchange_rates",
            f"Exchange rates required for: {', '.join(check.missing)}",
        ))
    for message in check.messages(currency)[len(check.missing):]:
        errors.append(ValidationError("exchange_rates", message))

    locked = [t.id for t in state.timesheets if t.id in state.selected_timesheet_ids and state.is_locked(t)]
    if locked:
        errors.append(ValidationError(
            "timesheet_ids",
            f"Timesheets already invoiced: {', '.join(str(i) for i in locked)}",
        ))

    return errors


def finalize(draft: "InvoiceDraft") -> FinalizeResult:
    """Validate the draft and assemble the payload for persistence."""
    errors = validate_draft(draft)
    if errors:
        logger.info("Draft rejected with %d validation error(s): %s",
                    len(errors), ", ".join(e.field for e in errors))
        return FinalizeResult.failed(errors)

    state = draft.selection
    currency = draft.effective_currency
    reconciliation = draft.reconciliation
    needs_rates = [g.currency for g in reconciliation.breakdown if g.currency != currency]
    rates = draft.rates

    invoice = PersistableInvoice(
        client_id=draft.client_id,
        matter_ids=state.matter_ids,
        timesheet_ids=draft.billing_timesheet_ids(),
        expense_ids=sorted(state.selected_expense_ids) if state.include_expenses else None,
        invoice_currency=currency,
        exchange_rates={c: rates[c] for c in needs_rates} if needs_rates else None,
        total=round_money(draft.conversion.total),
        invoice_number=draft.invoice_number,
        invoice_date=state.invoice_date,
        due_date=state.due_date,
        billing_location=normalize_location(draft.billing_location),
        description=draft.description.strip(),
        notes=draft.notes,
        date_from=state.date_from,
        date_to=state.date_to,
    )
    logger.debug("Assembled invoice %s total %s %s", invoice.invoice_number, invoice.total, currency)
    return FinalizeResult.ok(invoice)

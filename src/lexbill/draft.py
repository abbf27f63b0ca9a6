"""The InvoiceDraft aggregate.

A draft is owned by a single caller and changed only through its named
operations. Each operation returns a ``DraftUpdate`` carrying the new
draft and any field-level diagnostics raised by that edit; the original
draft is never modified.

    draft = InvoiceDraft.new(client_id=7, billing_location="mumbai")
    draft = draft.select_matter(Matter(1, "USD")).draft
    draft = draft.load_timesheets(1, entries).draft
    update = draft.set_exchange_rate("EUR", "1.08")
    result = update.draft.finalize().result
"""

from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal

from . import selection as sel
from .assembler import due_date_error, finalize, invoice_date_error, location_error
from .currency import (
    MAX_RATE,
    Conversion,
    Reconciliation,
    convert,
    effective_rates,
    group_members,
    is_supported_currency,
    parse_rate,
    reconcile,
)
from .errors import DraftFinalizedError, FinalizeResult, ValidationError
from .models import DEFAULT_CURRENCY, ExpenseEntry, InvoiceRecord, Matter, TimesheetEntry
from .numbering import OFFICE_CODES, normalize_location, validate_invoice_number


@dataclass(frozen=True)
class DraftUpdate:
    draft: "InvoiceDraft"
    diagnostics: list[ValidationError] = field(default_factory=list)
    result: FinalizeResult | None = None

    @property
    def ok(self) -> bool:
        return not self.diagnostics


@dataclass(frozen=True)
class InvoiceDraft:
    selection: sel.SelectionState = field(default_factory=sel.SelectionState)
    client_id: int | None = None
    invoice_id: int | None = None
    billing_location: str = ""
    invoice_currency: str = ""  # empty = use the suggested currency
    default_currency: str = DEFAULT_CURRENCY  # suggestion when nothing is selected
    exchange_rates: dict[str, Decimal] = field(default_factory=dict)
    # edit mode: rates persisted with the invoice, the currency they convert
    # into, and which entries they covered
    stored_rates: dict[str, Decimal] = field(default_factory=dict)
    stored_currency: str = ""
    original_members: dict[str, frozenset[int]] = field(default_factory=dict)
    invoice_number: str = ""
    description: str = ""
    notes: str = ""
    finalized: bool = False

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    def new(
        cls,
        client_id: int | None = None,
        billing_location: str = "",
        due_days: int = sel.DEFAULT_DUE_DAYS,
        default_currency: str = DEFAULT_CURRENCY,
    ) -> "InvoiceDraft":
        return cls(
            selection=sel.SelectionState(mode=sel.CREATE, due_days=due_days),
            client_id=client_id,
            billing_location=billing_location,
            default_currency=default_currency,
        )

    @classmethod
    def from_record(
        cls,
        record: InvoiceRecord,
        matters: list[Matter],
        timesheets: list[TimesheetEntry] = (),
        expenses: list[ExpenseEntry] = (),
        due_days: int = sel.DEFAULT_DUE_DAYS,
        default_currency: str = DEFAULT_CURRENCY,
    ) -> "InvoiceDraft":
        """Rehydrate an edit-mode draft from a persisted invoice."""
        state = sel.SelectionState(
            mode=sel.EDIT,
            matters=tuple(m for m in matters if m.id in record.matter_ids),
            original_timesheet_ids=frozenset(record.timesheet_ids),
            original_expense_ids=frozenset(record.expense_ids),
            include_expenses=bool(record.expense_ids),
            date_from=record.date_from,
            date_to=record.date_to,
            invoice_date=record.invoice_date,
            due_date=record.due_date,
            due_days=due_days,
        )
        events = []
        for matter in state.matters:
            events.append(sel.TimesheetsLoaded(
                matter.id, tuple(t for t in timesheets if t.matter_id == matter.id),
            ))
            events.append(sel.ExpensesLoaded(
                matter.id, tuple(e for e in expenses if e.matter_id == matter.id),
            ))
        state = sel.reduce_all(sel.recompute(state), events)

        return cls(
            selection=state,
            client_id=record.client_id,
            invoice_id=record.id,
            billing_location=record.billing_location,
            invoice_currency=record.invoice_currency,
            default_currency=default_currency,
            stored_rates=dict(record.exchange_rates),
            stored_currency=record.invoice_currency,
            original_members=group_members(state.reconciliation.breakdown),
            invoice_number=record.invoice_number,
            description=record.description,
            notes=record.notes,
        )

    # -------------------------------------------------------------------------
    # Derived values
    # -------------------------------------------------------------------------

    @property
    def mode(self) -> str:
        return self.selection.mode

    @property
    def is_edit(self) -> bool:
        return self.selection.mode == sel.EDIT

    @property
    def uses_original_selection(self) -> bool:
        """Edit mode with everything deselected bills the original entries."""
        return self.is_edit and not self.selection.selected_timesheet_ids

    def billing_timesheets(self) -> list[TimesheetEntry]:
        if self.uses_original_selection:
            return self.selection.original_timesheets
        return self.selection.selected_timesheets

    def billing_timesheet_ids(self) -> list[int]:
        return sorted(t.id for t in self.billing_timesheets())

    @property
    def min_invoice_date(self) -> date | None:
        """Latest date among the entries actually billed."""
        if self.uses_original_selection:
            return max((t.date for t in self.billing_timesheets()), default=None)
        return self.selection.min_invoice_date

    @property
    def reconciliation(self) -> Reconciliation:
        return reconcile(
            self.billing_timesheets(),
            self.selection.selected_expenses,
            self.selection.include_expenses,
            invoice_currency=self.invoice_currency or None,
            matters=self.selection.matters,
            default_currency=self.default_currency,
        )

    @property
    def effective_currency(self) -> str:
        return self.invoice_currency or self.reconciliation.suggested_currency

    @property
    def rates(self) -> dict[str, Decimal]:
        # stored rates convert into the currency the invoice was saved in
        stored = self.stored_rates if self.effective_currency == self.stored_currency else {}
        return effective_rates(
            self.reconciliation.breakdown,
            self.exchange_rates,
            stored,
            self.original_members,
        )

    @property
    def conversion(self) -> Conversion:
        return convert(self.reconciliation.breakdown, self.effective_currency, self.rates)

    @property
    def total(self) -> Decimal | None:
        return self.conversion.total

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def _check_open(self) -> None:
        if self.finalized:
            raise DraftFinalizedError(f"Invoice draft {self.invoice_number or ''} is already submitted")

    def _apply(self, event) -> DraftUpdate:
        self._check_open()
        return DraftUpdate(replace(self, selection=sel.reduce(self.selection, event)))

    def select_matter(self, matter: Matter) -> DraftUpdate:
        return self._apply(sel.MatterAdded(matter))

    def deselect_matter(self, matter_id: int) -> DraftUpdate:
        return self._apply(sel.MatterRemoved(matter_id))

    def load_timesheets(self, matter_id: int, entries) -> DraftUpdate:
        return self._apply(sel.TimesheetsLoaded(matter_id, tuple(entries)))

    def load_expenses(self, matter_id: int, entries) -> DraftUpdate:
        return self._apply(sel.ExpensesLoaded(matter_id, tuple(entries)))

    def toggle_timesheet(self, timesheet_id: int) -> DraftUpdate:
        return self._apply(sel.TimesheetToggled(timesheet_id))

    def toggle_select_all(self, person_id: int | None = None) -> DraftUpdate:
        return self._apply(sel.SelectAllToggled(person_id))

    def filter_person(self, person_id: int | None) -> DraftUpdate:
        return self._apply(sel.PersonFilterChanged(person_id))

    def set_date_range(self, date_from: date | None, date_to: date | None) -> DraftUpdate:
        update = self._apply(sel.DateRangeChanged(date_from, date_to))
        if date_from and date_to and date_from > date_to:
            update.diagnostics.append(ValidationError("date_range", "Start date must not be after end date"))
        return update

    def set_include_expenses(self, include: bool | None = None) -> DraftUpdate:
        return self._apply(sel.ExpenseInclusionToggled(include))

    def toggle_expense(self, expense_id: int) -> DraftUpdate:
        return self._apply(sel.ExpenseToggled(expense_id))

    def set_invoice_date(self, value: date | None) -> DraftUpdate:
        update = self._apply(sel.InvoiceDateSet(value))
        minimum = update.draft.min_invoice_date
        if value and minimum and value < minimum:
            update.diagnostics.append(invoice_date_error(minimum))
        return update

    def set_due_date(self, value: date | None) -> DraftUpdate:
        update = self._apply(sel.DueDateSet(value))
        error = due_date_error(update.draft.selection)
        if value and error:
            update.diagnostics.append(error)
        return update

    def set_client(self, client_id: int | None) -> DraftUpdate:
        self._check_open()
        return DraftUpdate(replace(self, client_id=client_id))

    def set_billing_location(self, location: str) -> DraftUpdate:
        self._check_open()
        diagnostics = []
        if location and normalize_location(location) not in OFFICE_CODES:
            diagnostics.append(location_error())
        return DraftUpdate(replace(self, billing_location=location), diagnostics)

    def set_invoice_currency(self, currency: str) -> DraftUpdate:
        self._check_open()
        currency = (currency or "").upper()
        diagnostics = []
        if currency and not is_supported_currency(currency):
            diagnostics.append(ValidationError("invoice_currency", f"Unsupported currency: {currency}"))
        return DraftUpdate(replace(self, invoice_currency=currency), diagnostics)

    def set_exchange_rate(self, currency: str, value) -> DraftUpdate:
        """Record a user-entered rate; ``value=None`` clears it."""
        self._check_open()
        currency = currency.upper()
        rates = dict(self.exchange_rates)
        if value is None or value == "":
            rates.pop(currency, None)
            return DraftUpdate(replace(self, exchange_rates=rates))
        try:
            rate = parse_rate(value)
        except ValueError as e:
            return DraftUpdate(self, [ValidationError("exchange_rates", str(e))])

        diagnostics = []
        if rate <= 0 or rate > MAX_RATE:
            diagnostics.append(ValidationError(
                "exchange_rates",
                f"Invalid exchange rate for {currency}: rate must be > 0 and <= {MAX_RATE}",
            ))
        rates[currency] = rate
        return DraftUpdate(replace(self, exchange_rates=rates), diagnostics)

    def set_invoice_number(self, number: str) -> DraftUpdate:
        self._check_open()
        number = (number or "").strip()
        diagnostics = []
        if number:
            error = validate_invoice_number(number)
            if error:
                diagnostics.append(error)
        return DraftUpdate(replace(self, invoice_number=number), diagnostics)

    def set_description(self, description: str) -> DraftUpdate:
        self._check_open()
        return DraftUpdate(replace(self, description=description or ""))

    def set_notes(self, notes: str) -> DraftUpdate:
        self._check_open()
        return DraftUpdate(replace(self, notes=notes or ""))

    def finalize(self) -> DraftUpdate:
        """Validate the whole draft. The draft stays editable either way."""
        self._check_open()
        result = finalize(self)
        return DraftUpdate(self, list(result.errors), result)

    def mark_submitted(self, invoice_id: int | None = None) -> "InvoiceDraft":
        """Freeze the draft once persistence has accepted it."""
        self._check_open()
        return replace(self, finalized=True, invoice_id=invoice_id or self.invoice_id)


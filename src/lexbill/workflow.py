"""Drafting workflow: collaborator calls around the pure draft engine.

The engine in ``draft``/``selection`` never does I/O. This module fetches
candidate work for the draft, checks the local currency breakdown against
the server, asks for an invoice number and submits the finalized payload.
Every operation returns a ``WorkflowResult``; collaborator failures are
reported in it rather than raised.

Queries are tagged with tickets from a ``RequestSequencer``. A response
that arrives after a newer query for the same key was issued is dropped,
so a slow reply for an old date range cannot overwrite a fresh one.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import date
from typing import Hashable, Protocol

from .currency import breakdown_matches
from .draft import InvoiceDraft
from .errors import CollaboratorUnavailableError, ConflictError, ValidationError
from .models import DEFAULT_CURRENCY, ExpenseEntry, InvoiceRecord, Matter, TimesheetEntry
from .numbering import office_code
from .selection import DEFAULT_DUE_DAYS

logger = logging.getLogger("lexbill.workflow")


class BillingSource(Protocol):
    """What the workflow needs from a data source.

    Both ``BillingApiClient`` and ``BillingFileStore`` provide it; only
    the API client can persist invoices.
    """

    def get_matter(self, matter_id: int) -> Matter: ...

    def list_timesheets(
        self,
        matter_id: int,
        status: str = "approved",
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[TimesheetEntry]: ...

    def list_expenses(self, matter_id: int) -> list[ExpenseEntry]: ...

    def detect_currencies(
        self,
        matter_ids: list[int],
        timesheet_ids: list[int] | None = None,
        expense_ids: list[int] | None = None,
    ) -> dict: ...

    def generate_invoice_number(self, invoice_date: date, location: str) -> str: ...

    def fetch_invoice(self, invoice_id: int) -> InvoiceRecord: ...


class RequestSequencer:
    """Monotonic per-key tickets for discarding superseded responses."""

    def __init__(self):
        self._counter = 0
        self._latest: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def begin(self, key: Hashable) -> int:
        with self._lock:
            self._counter += 1
            self._latest[key] = self._counter
            return self._counter

    def is_current(self, key: Hashable, ticket: int) -> bool:
        with self._lock:
            return self._latest.get(key) == ticket

    def cancel(self, key: Hashable) -> None:
        """Invalidate any in-flight query for ``key``."""
        with self._lock:
            self._latest.pop(key, None)


@dataclass
class WorkflowResult:
    success: bool
    draft: InvoiceDraft | None = None
    data: object | None = None
    errors: list[ValidationError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        result = {"success": self.success}
        if self.data is not None:
            result["data"] = self.data
        if self.errors:
            result["errors"] = [e.to_dict() for e in self.errors]
        if self.warnings:
            result["warnings"] = self.warnings
        return result


class InvoiceWorkflow:
    def __init__(
        self,
        source: BillingSource,
        due_days: int = DEFAULT_DUE_DAYS,
        default_location: str = "",
        sequencer: RequestSequencer | None = None,
        default_currency: str = DEFAULT_CURRENCY,
    ):
        self.source = source
        self.due_days = due_days
        self.default_location = default_location
        self.default_currency = default_currency
        self.sequencer = sequencer or RequestSequencer()

    # -------------------------------------------------------------------------
    # Drafting
    # -------------------------------------------------------------------------

    def start(self, client_id: int | None = None, billing_location: str | None = None) -> InvoiceDraft:
        location = billing_location if billing_location is not None else self.default_location
        return InvoiceDraft.new(
            client_id=client_id,
            billing_location=location,
            due_days=self.due_days,
            default_currency=self.default_currency,
        )

    def add_matter(self, draft: InvoiceDraft, matter_id: int) -> WorkflowResult:
        """Select a matter and load its approved timesheets and expenses."""
        try:
            matter = self.source.get_matter(matter_id)
        except CollaboratorUnavailableError as e:
            return WorkflowResult(False, draft, errors=[ValidationError("matter_ids", str(e))])

        draft = draft.select_matter(matter).draft
        if draft.client_id is None and matter.client_id is not None:
            draft = draft.set_client(matter.client_id).draft
        return self.refresh_matter(draft, matter_id)

    def remove_matter(self, draft: InvoiceDraft, matter_id: int) -> WorkflowResult:
        self.sequencer.cancel(("timesheets", matter_id))
        self.sequencer.cancel(("expenses", matter_id))
        return WorkflowResult(True, draft.deselect_matter(matter_id).draft)

    def refresh_matter(self, draft: InvoiceDraft, matter_id: int) -> WorkflowResult:
        """(Re)load candidate work for one selected matter."""
        state = draft.selection
        errors = []
        warnings = []

        key = ("timesheets", matter_id)
        ticket = self.sequencer.begin(key)
        try:
            entries = self.source.list_timesheets(
                matter_id, date_from=state.date_from, date_to=state.date_to,
            )
        except CollaboratorUnavailableError as e:
            logger.warning("Could not load timesheets for matter %s: %s", matter_id, e)
            errors.append(ValidationError("timesheet_ids", f"Failed to load timesheets: {e}"))
        else:
            if self.sequencer.is_current(key, ticket):
                draft = draft.load_timesheets(matter_id, entries).draft
                logger.debug("Loaded %d timesheets for matter %s", len(entries), matter_id)
            else:
                logger.debug("Discarding stale timesheet response for matter %s", matter_id)

        key = ("expenses", matter_id)
        ticket = self.sequencer.begin(key)
        try:
            expenses = self.source.list_expenses(matter_id)
        except CollaboratorUnavailableError as e:
            # expenses are optional; the invoice can go out without them
            logger.warning("Could not load expenses for matter %s: %s", matter_id, e)
            warnings.append(f"Expenses for matter {matter_id} could not be loaded: {e}")
        else:
            if self.sequencer.is_current(key, ticket):
                draft = draft.load_expenses(matter_id, expenses).draft
            else:
                logger.debug("Discarding stale expense response for matter %s", matter_id)

        return WorkflowResult(not errors, draft, errors=errors, warnings=warnings)

    def set_date_range(
        self, draft: InvoiceDraft, date_from: date | None, date_to: date | None,
    ) -> WorkflowResult:
        """Narrow the billing period and refetch timesheets for it."""
        update = draft.set_date_range(date_from, date_to)
        if not update.ok:
            return WorkflowResult(False, update.draft, errors=update.diagnostics)

        draft = update.draft
        errors = []
        warnings = []
        for matter_id in draft.selection.matter_ids:
            result = self.refresh_matter(draft, matter_id)
            draft = result.draft
            errors.extend(result.errors)
            warnings.extend(result.warnings)
        return WorkflowResult(not errors, draft, errors=errors, warnings=warnings)

    def check_currencies(self, draft: InvoiceDraft) -> WorkflowResult:
        """Compare the local breakdown with the server's detection.

        Disagreement or an unreachable server is only a warning: the local
        reconciliation is what gets submitted.
        """
        state = draft.selection
        local = draft.reconciliation
        data = local.to_dict()
        if not state.matters:
            return WorkflowResult(True, draft, data=data)

        expense_ids = sorted(state.selected_expense_ids) if state.include_expenses else None
        try:
            remote = self.source.detect_currencies(
                state.matter_ids, draft.billing_timesheet_ids(), expense_ids,
            )
        except CollaboratorUnavailableError as e:
            logger.warning("Currency detection failed: %s", e)
            return WorkflowResult(True, draft, data=data, warnings=[f"Currency detection unavailable: {e}"])

        warnings = []
        if not breakdown_matches(local.breakdown, remote.get("breakdown", [])):
            warnings.append("Server currency breakdown differs from the local selection")
        return WorkflowResult(True, draft, data=data, warnings=warnings)

    def allocate_number(self, draft: InvoiceDraft) -> WorkflowResult:
        """Ask the source for the next invoice number and put it on the draft."""
        invoice_date = draft.selection.invoice_date
        if invoice_date is None:
            return WorkflowResult(False, draft, errors=[
                ValidationError("invoice_date", "Invoice date is required to generate a number"),
            ])
        try:
            office_code(draft.billing_location)
        except ValidationError as e:
            return WorkflowResult(False, draft, errors=[e])

        try:
            number = self.source.generate_invoice_number(invoice_date, draft.billing_location)
        except CollaboratorUnavailableError as e:
            logger.warning("Invoice number generation failed: %s", e)
            return WorkflowResult(False, draft, errors=[ValidationError("invoice_number", str(e))])

        update = draft.set_invoice_number(number)
        logger.info("Allocated invoice number %s", number)
        return WorkflowResult(update.ok, update.draft, data={"invoice_number": number}, errors=update.diagnostics)

    # -------------------------------------------------------------------------
    # Editing
    # -------------------------------------------------------------------------

    def load_for_edit(self, invoice_id: int) -> WorkflowResult:
        """Rehydrate a persisted invoice as an edit-mode draft."""
        try:
            record = self.source.fetch_invoice(invoice_id)
            matters = [self.source.get_matter(mid) for mid in record.matter_ids]
            timesheets = [t for mid in record.matter_ids for t in self.source.list_timesheets(mid)]
        except CollaboratorUnavailableError as e:
            logger.warning("Could not load invoice %s: %s", invoice_id, e)
            return WorkflowResult(False, errors=[ValidationError("invoice_id", str(e))])

        warnings = []
        expenses = []
        for matter_id in record.matter_ids:
            try:
                expenses.extend(self.source.list_expenses(matter_id))
            except CollaboratorUnavailableError as e:
                warnings.append(f"Expenses for matter {matter_id} could not be loaded: {e}")

        draft = InvoiceDraft.from_record(
            record, matters, timesheets, expenses,
            due_days=self.due_days, default_currency=self.default_currency,
        )
        return WorkflowResult(True, draft, warnings=warnings)

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def submit(self, draft: InvoiceDraft) -> WorkflowResult:
        """Finalize the draft and persist it.

        A 409 from the server means the number was taken after it was
        allocated; the draft stays editable so the user can regenerate.
        """
        result = draft.finalize().result
        if not result.success:
            return WorkflowResult(False, draft, errors=result.errors)

        payload = result.data.to_payload()
        try:
            if draft.invoice_id is not None:
                response = self.source.update_invoice(draft.invoice_id, payload)
            else:
                response = self.source.create_invoice(payload)
        except ConflictError as e:
            logger.info("Invoice number %s rejected as duplicate", draft.invoice_number)
            return WorkflowResult(False, draft, errors=[ValidationError(
                "invoice_number",
                f"Invoice number {draft.invoice_number} already exists. Generate a new number. ({e})",
            )])
        except CollaboratorUnavailableError as e:
            return WorkflowResult(False, draft, errors=[ValidationError("submission", str(e))])

        invoice_id = response.get("id", response.get("invoice_id")) if isinstance(response, dict) else None
        submitted = draft.mark_submitted(invoice_id)
        logger.info("Submitted invoice %s (id %s)", draft.invoice_number, submitted.invoice_id)
        return WorkflowResult(True, submitted, data={"invoice_id": submitted.invoice_id, "payload": payload})

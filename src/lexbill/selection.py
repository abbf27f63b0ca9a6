"""Selection and temporal-constraint engine for invoice drafts.

The selection is an immutable ``SelectionState``; every user action is an
event and ``reduce(state, event)`` returns the next state with all derived
values (currency breakdown, minimum invoice/due dates, auto-filled dates)
recomputed from scratch.

Date bounds use the LATEST date among selected, selectable timesheets:
an invoice may not predate the most recent work it bills for.

An entry is locked when it is already invoiced and is not part of the
original selection of the invoice being edited. Locked entries stay in
``timesheets`` so callers can show them, but they are never selected.
"""

import logging
from dataclasses import dataclass, replace
from datetime import date, timedelta

from .currency import Reconciliation, reconcile
from .models import ExpenseEntry, Matter, TimesheetEntry

logger = logging.getLogger("lexbill.selection")

CREATE = "create"
EDIT = "edit"

DEFAULT_DUE_DAYS = 60


# =============================================================================
# Events
# =============================================================================


@dataclass(frozen=True)
class MatterAdded:
    matter: Matter


@dataclass(frozen=True)
class MatterRemoved:
    matter_id: int


@dataclass(frozen=True)
class TimesheetsLoaded:
    """Candidate timesheets for one matter, as returned by the store."""
    matter_id: int
    entries: tuple[TimesheetEntry, ...]


@dataclass(frozen=True)
class ExpensesLoaded:
    matter_id: int
    entries: tuple[ExpenseEntry, ...]


@dataclass(frozen=True)
class TimesheetToggled:
    timesheet_id: int


@dataclass(frozen=True)
class SelectAllToggled:
    """Select or deselect every selectable entry, optionally for one person."""
    person_id: int | None = None


@dataclass(frozen=True)
class PersonFilterChanged:
    person_id: int | None = None


@dataclass(frozen=True)
class DateRangeChanged:
    date_from: date | None = None
    date_to: date | None = None


@dataclass(frozen=True)
class ExpenseInclusionToggled:
    """Set expense inclusion; ``include=None`` flips the current flag."""
    include: bool | None = None


@dataclass(frozen=True)
class ExpenseToggled:
    expense_id: int


@dataclass(frozen=True)
class InvoiceDateSet:
    value: date | None


@dataclass(frozen=True)
class DueDateSet:
    value: date | None


# =============================================================================
# State
# =============================================================================


_EMPTY_RECONCILIATION = Reconciliation(breakdown=(), requires_conversion=False, suggested_currency="INR")


@dataclass(frozen=True)
class SelectionState:
    mode: str = CREATE
    matters: tuple[Matter, ...] = ()
    timesheets: tuple[TimesheetEntry, ...] = ()
    expenses: tuple[ExpenseEntry, ...] = ()
    selected_timesheet_ids: frozenset[int] = frozenset()
    selected_expense_ids: frozenset[int] = frozenset()
    include_expenses: bool = False
    date_from: date | None = None
    date_to: date | None = None
    person_filter: int | None = None
    # edit mode: what the persisted invoice billed
    original_timesheet_ids: frozenset[int] = frozenset()
    original_expense_ids: frozenset[int] = frozenset()
    invoice_date: date | None = None
    due_date: date | None = None
    invoice_date_overridden: bool = False
    due_date_overridden: bool = False
    due_days: int = DEFAULT_DUE_DAYS
    # derived, maintained by reduce()
    min_invoice_date: date | None = None
    min_due_date: date | None = None
    reconciliation: Reconciliation = _EMPTY_RECONCILIATION

    @property
    def matter_ids(self) -> list[int]:
        return [m.id for m in self.matters]

    def is_original(self, entry: TimesheetEntry) -> bool:
        return entry.id in self.original_timesheet_ids

    def is_locked(self, entry: TimesheetEntry) -> bool:
        return entry.is_invoiced and entry.id not in self.original_timesheet_ids

    def in_range(self, entry: TimesheetEntry) -> bool:
        if self.date_from and entry.date < self.date_from:
            return False
        if self.date_to and entry.date > self.date_to:
            return False
        return True

    def is_selectable(self, entry: TimesheetEntry) -> bool:
        return not self.is_locked(entry) and self.in_range(entry)

    @property
    def visible_timesheets(self) -> list[TimesheetEntry]:
        """Entries shown to the user, locked ones included."""
        return [
            t for t in self.timesheets
            if self.in_range(t)
            and (self.person_filter is None or t.person_id == self.person_filter)
        ]

    @property
    def locked_timesheets(self) -> list[TimesheetEntry]:
        return [t for t in self.timesheets if self.is_locked(t)]

    @property
    def selected_timesheets(self) -> list[TimesheetEntry]:
        return [t for t in self.timesheets if t.id in self.selected_timesheet_ids]

    @property
    def original_timesheets(self) -> list[TimesheetEntry]:
        return [t for t in self.timesheets if t.id in self.original_timesheet_ids]

    @property
    def selected_expenses(self) -> list[ExpenseEntry]:
        return [e for e in self.expenses if e.id in self.selected_expense_ids]


# =============================================================================
# Reducer
# =============================================================================


def _matter_added(state: SelectionState, event: MatterAdded) -> SelectionState:
    if event.matter.id in state.matter_ids:
        return state
    return replace(state, matters=state.matters + (event.matter,))


def _matter_removed(state: SelectionState, event: MatterRemoved) -> SelectionState:
    if event.matter_id not in state.matter_ids:
        return state
    timesheets = tuple(t for t in state.timesheets if t.matter_id != event.matter_id)
    expenses = tuple(e for e in state.expenses if e.matter_id != event.matter_id)
    return replace(
        state,
        matters=tuple(m for m in state.matters if m.id != event.matter_id),
        timesheets=timesheets,
        expenses=expenses,
        selected_timesheet_ids=state.selected_timesheet_ids & {t.id for t in timesheets},
        selected_expense_ids=state.selected_expense_ids & {e.id for e in expenses},
    )


def _timesheets_loaded(state: SelectionState, event: TimesheetsLoaded) -> SelectionState:
    if event.matter_id not in state.matter_ids:
        # response for a matter that has since been deselected
        logger.debug("Ignoring timesheets for unselected matter %s", event.matter_id)
        return state

    incoming = tuple(
        t for t in event.entries
        if t.matter_id == event.matter_id and (state.in_range(t) or state.is_original(t))
    )
    incoming_ids = {t.id for t in incoming}
    # a narrower refetch may omit originals; the edit fallback still bills them
    kept = tuple(
        t for t in state.timesheets
        if t.matter_id != event.matter_id or (state.is_original(t) and t.id not in incoming_ids)
    )
    timesheets = kept + incoming
    present = {t.id for t in timesheets}
    selected = state.selected_timesheet_ids & present

    if state.mode == CREATE:
        selected |= {t.id for t in incoming if not state.is_locked(t)}
    else:
        selected |= state.original_timesheet_ids & {t.id for t in incoming}

    return replace(state, timesheets=timesheets, selected_timesheet_ids=frozenset(selected))


def _expenses_loaded(state: SelectionState, event: ExpensesLoaded) -> SelectionState:
    if event.matter_id not in state.matter_ids:
        return state

    incoming = tuple(
        e for e in event.entries if e.matter_id == event.matter_id and e.included
    )
    kept = tuple(e for e in state.expenses if e.matter_id != event.matter_id)
    expenses = kept + incoming
    selected = state.selected_expense_ids & {e.id for e in expenses}

    if state.mode == CREATE:
        selected |= {e.id for e in incoming}
    else:
        selected |= state.original_expense_ids & {e.id for e in incoming}

    return replace(state, expenses=expenses, selected_expense_ids=frozenset(selected))


def _timesheet_toggled(state: SelectionState, event: TimesheetToggled) -> SelectionState:
    entry = next((t for t in state.timesheets if t.id == event.timesheet_id), None)
    if entry is None or not state.is_selectable(entry):
        return state
    return replace(state, selected_timesheet_ids=state.selected_timesheet_ids ^ {entry.id})


def _select_all_toggled(state: SelectionState, event: SelectAllToggled) -> SelectionState:
    person = event.person_id if event.person_id is not None else state.person_filter
    scope = {
        t.id for t in state.timesheets
        if state.is_selectable(t) and (person is None or t.person_id == person)
    }
    if not scope:
        return state
    if scope <= state.selected_timesheet_ids:
        selected = state.selected_timesheet_ids - scope
    else:
        selected = state.selected_timesheet_ids | scope
    return replace(state, selected_timesheet_ids=frozenset(selected))


def _person_filter_changed(state: SelectionState, event: PersonFilterChanged) -> SelectionState:
    return replace(state, person_filter=event.person_id)


def _date_range_changed(state: SelectionState, event: DateRangeChanged) -> SelectionState:
    state = replace(state, date_from=event.date_from, date_to=event.date_to)
    timesheets = tuple(t for t in state.timesheets if state.in_range(t) or state.is_original(t))
    return replace(
        state,
        timesheets=timesheets,
        selected_timesheet_ids=state.selected_timesheet_ids & {t.id for t in timesheets},
    )


def _expense_inclusion_toggled(state: SelectionState, event: ExpenseInclusionToggled) -> SelectionState:
    include = (not state.include_expenses) if event.include is None else event.include
    return replace(state, include_expenses=include)


def _expense_toggled(state: SelectionState, event: ExpenseToggled) -> SelectionState:
    if event.expense_id not in {e.id for e in state.expenses}:
        return state
    return replace(state, selected_expense_ids=state.selected_expense_ids ^ {event.expense_id})


def _invoice_date_set(state: SelectionState, event: InvoiceDateSet) -> SelectionState:
    return replace(state, invoice_date=event.value, invoice_date_overridden=event.value is not None)


def _due_date_set(state: SelectionState, event: DueDateSet) -> SelectionState:
    return replace(state, due_date=event.value, due_date_overridden=event.value is not None)


_HANDLERS = {
    MatterAdded: _matter_added,
    MatterRemoved: _matter_removed,
    TimesheetsLoaded: _timesheets_loaded,
    ExpensesLoaded: _expenses_loaded,
    TimesheetToggled: _timesheet_toggled,
    SelectAllToggled: _select_all_toggled,
    PersonFilterChanged: _person_filter_changed,
    DateRangeChanged: _date_range_changed,
    ExpenseInclusionToggled: _expense_inclusion_toggled,
    ExpenseToggled: _expense_toggled,
    InvoiceDateSet: _invoice_date_set,
    DueDateSet: _due_date_set,
}


def recompute(state: SelectionState) -> SelectionState:
    """Re-derive selection-dependent values.

    Drops locked and out-of-range ids from the selection, rebuilds the
    currency breakdown, the date bounds and, in create mode, any date the
    user has not set by hand.
    """
    selected = [t for t in state.timesheets if t.id in state.selected_timesheet_ids and state.is_selectable(t)]
    selected_ids = frozenset(t.id for t in selected)

    latest = max((t.date for t in selected), default=None)

    reconciliation = reconcile(
        selected,
        state.selected_expenses,
        state.include_expenses,
        matters=state.matters,
    )

    invoice_date = state.invoice_date
    due_date = state.due_date
    if state.mode == CREATE and latest is not None:
        if not state.invoice_date_overridden:
            invoice_date = latest
        if not state.due_date_overridden:
            due_date = latest + timedelta(days=state.due_days)

    return replace(
        state,
        selected_timesheet_ids=selected_ids,
        min_invoice_date=latest,
        min_due_date=latest,
        reconciliation=reconciliation,
        invoice_date=invoice_date,
        due_date=due_date,
    )


def reduce(state: SelectionState, event) -> SelectionState:
    """Apply one event and return the recomputed state."""
    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"Unknown selection event: {type(event).__name__}")
    return recompute(handler(state, event))


def reduce_all(state: SelectionState, events) -> SelectionState:
    for event in events:
        state = reduce(state, event)
    return state

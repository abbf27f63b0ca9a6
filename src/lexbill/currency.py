"""Currency reconciliation and exchange-rate conversion.

Timesheets are billed in their matter's currency; one-time expenses are
always INR. An invoice spanning several matters therefore carries a
per-currency breakdown that must be converted into the invoice currency
with user-supplied rates before a total exists.

Rates map a source currency to the invoice currency: with invoice
currency USD, ``{"EUR": Decimal("1.08")}`` means 1 EUR = 1.08 USD.
"""

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable

from .models import (
    DEFAULT_CURRENCY,
    EXPENSE_CURRENCY,
    CurrencyGroup,
    ExpenseEntry,
    Matter,
    TimesheetEntry,
    to_decimal,
)

logger = logging.getLogger("lexbill.currency")

SUPPORTED_CURRENCIES = ("INR", "USD", "EUR", "GBP", "AED", "JPY")

MAX_RATE = Decimal("10000")
RATE_QUANTUM = Decimal("0.0001")
MONEY_QUANTUM = Decimal("0.01")


@dataclass(frozen=True)
class Reconciliation:
    breakdown: tuple[CurrencyGroup, ...]
    requires_conversion: bool
    suggested_currency: str

    @property
    def currencies(self) -> list[str]:
        return [g.currency for g in self.breakdown]

    def to_dict(self) -> dict:
        return {
            "breakdown": [g.to_dict() for g in self.breakdown],
            "requires_conversion": self.requires_conversion,
            "suggested_currency": self.suggested_currency,
        }


@dataclass(frozen=True)
class Conversion:
    running_total: Decimal
    per_group_converted: dict[str, Decimal] = field(default_factory=dict)
    missing_rates: tuple[str, ...] = ()

    @property
    def total(self) -> Decimal | None:
        """The invoice total, or None while any rate is missing."""
        if self.missing_rates:
            return None
        return self.running_total

    @property
    def is_complete(self) -> bool:
        return not self.missing_rates


@dataclass(frozen=True)
class RateCheck:
    missing: tuple[str, ...] = ()
    invalid: tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.missing and not self.invalid

    def messages(self, invoice_currency: str) -> list[str]:
        msgs = [f"Missing exchange rate for {c} to {invoice_currency}" for c in self.missing]
        msgs += [
            f"Invalid exchange rate for {c}: rate must be > 0 and <= {MAX_RATE}"
            for c in self.invalid
        ]
        return msgs


def round_money(amount: Decimal) -> Decimal:
    """Round a monetary amount to 2 places, half-up."""
    return amount.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def parse_rate(value) -> Decimal:
    """Parse a user-entered exchange rate, keeping at most 4 decimal places.

    Raises ValueError for anything that is not a finite number.
    """
    try:
        rate = to_decimal(value)
    except ValueError:
        raise ValueError(f"Exchange rate must be a number, got {value!r}")
    try:
        return rate.quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValueError(f"Exchange rate must be a finite number, got {value!r}")


def is_supported_currency(currency: str) -> bool:
    return currency in SUPPORTED_CURRENCIES


def timesheet_currency(entry: TimesheetEntry, matter_currencies: dict[int, str]) -> str:
    """Native currency of a timesheet: its own, else its matter's, else INR."""
    return entry.currency or matter_currencies.get(entry.matter_id) or DEFAULT_CURRENCY


def reconcile(
    timesheets: Iterable[TimesheetEntry],
    expenses: Iterable[ExpenseEntry],
    include_expenses: bool,
    invoice_currency: str | None = None,
    matters: Iterable[Matter] = (),
    default_currency: str = DEFAULT_CURRENCY,
) -> Reconciliation:
    """Group selected work by native currency.

    ``timesheets`` and ``expenses`` are the currently selected entries.
    ``matters`` is the ordered matter selection; it supplies fallback
    currencies and the tie-break for the suggested invoice currency.
    ``default_currency`` is suggested when nothing is selected.
    """
    matters = list(matters)
    matter_currencies = {m.id: m.currency for m in matters}

    amounts: dict[str, Decimal] = {}
    matter_ids: dict[str, set[int]] = {}
    ts_ids: dict[str, set[int]] = {}
    exp_ids: dict[str, set[int]] = {}

    def _bucket(currency: str) -> None:
        if currency not in amounts:
            amounts[currency] = Decimal("0")
            matter_ids[currency] = set()
            ts_ids[currency] = set()
            exp_ids[currency] = set()

    for entry in timesheets:
        currency = timesheet_currency(entry, matter_currencies)
        _bucket(currency)
        amounts[currency] += entry.billable_amount
        matter_ids[currency].add(entry.matter_id)
        ts_ids[currency].add(entry.id)

    if include_expenses:
        for expense in expenses:
            _bucket(EXPENSE_CURRENCY)
            amounts[EXPENSE_CURRENCY] += expense.amount
            if expense.matter_id is not None:
                matter_ids[EXPENSE_CURRENCY].add(expense.matter_id)
            exp_ids[EXPENSE_CURRENCY].add(expense.id)

    breakdown = tuple(
        CurrencyGroup(
            currency=currency,
            matter_ids=frozenset(matter_ids[currency]),
            amount=amounts[currency],
            timesheet_ids=frozenset(ts_ids[currency]),
            expense_ids=frozenset(exp_ids[currency]),
        )
        for currency in sorted(amounts)
    )

    if invoice_currency:
        suggested = invoice_currency
    else:
        suggested = _suggest_currency(breakdown, matters, default_currency)

    return Reconciliation(
        breakdown=breakdown,
        requires_conversion=len(breakdown) > 1,
        suggested_currency=suggested,
    )


def _suggest_currency(
    breakdown: tuple[CurrencyGroup, ...], matters: list[Matter], default_currency: str,
) -> str:
    first_matter_currency = matters[0].currency if matters else None
    if not breakdown:
        return first_matter_currency or default_currency

    largest = max(g.amount for g in breakdown)
    leaders = [g.currency for g in breakdown if g.amount == largest]
    if len(leaders) == 1:
        return leaders[0]
    if first_matter_currency in leaders:
        return first_matter_currency
    return leaders[0]


def convert(
    breakdown: Iterable[CurrencyGroup],
    invoice_currency: str,
    rates: dict[str, Decimal] | None,
) -> Conversion:
    """Convert every group into the invoice currency.

    Groups without a positive rate are reported in ``missing_rates`` and
    left out of the running total. Nothing is rounded here.
    """
    rates = rates or {}
    running = Decimal("0")
    converted: dict[str, Decimal] = {}
    missing: list[str] = []

    for group in breakdown:
        if group.currency == invoice_currency:
            converted[group.currency] = group.amount
            running += group.amount
            continue
        rate = rates.get(group.currency)
        if rate is None or rate <= 0:
            missing.append(group.currency)
            continue
        value = group.amount * rate
        converted[group.currency] = value
        running += value

    if missing:
        logger.debug("Conversion to %s missing rates for %s", invoice_currency, ", ".join(missing))

    return Conversion(
        running_total=running,
        per_group_converted=converted,
        missing_rates=tuple(missing),
    )


def validate_exchange_rates(
    currencies: Iterable[str],
    invoice_currency: str,
    rates: dict[str, Decimal] | None,
) -> RateCheck:
    """Check that every non-invoice currency has a usable rate."""
    rates = rates or {}
    missing = []
    invalid = []
    for currency in dict.fromkeys(currencies):
        if currency == invoice_currency:
            continue
        rate = rates.get(currency)
        if rate is None:
            missing.append(currency)
        elif rate <= 0 or rate > MAX_RATE:
            invalid.append(currency)
    return RateCheck(missing=tuple(missing), invalid=tuple(invalid))


def effective_rates(
    breakdown: Iterable[CurrencyGroup],
    rates: dict[str, Decimal],
    stored_rates: dict[str, Decimal],
    original_members: dict[str, frozenset[int]],
) -> dict[str, Decimal]:
    """Merge stored edit-mode rates with rates entered in this session.

    A stored rate is reused for a currency whose contributing entries are
    the same set as when the invoice was loaded. Explicit rates win.
    """
    merged: dict[str, Decimal] = {}
    for group in breakdown:
        stored = stored_rates.get(group.currency)
        if stored is None:
            continue
        if original_members.get(group.currency) == _members(group):
            merged[group.currency] = stored
    merged.update(rates)
    return merged


def group_members(breakdown: Iterable[CurrencyGroup]) -> dict[str, frozenset[int]]:
    """Snapshot of contributing entries per currency, for ``effective_rates``.

    Expense ids are negated so they cannot collide with timesheet ids.
    """
    return {g.currency: _members(g) for g in breakdown}


def _members(group: CurrencyGroup) -> frozenset[int]:
    return frozenset(group.timesheet_ids | {-e for e in group.expense_ids})


def breakdown_matches(local: Iterable[CurrencyGroup], remote: list[dict]) -> bool:
    """Compare the local breakdown with a ``detect_currencies`` response."""
    mine = {g.currency: round_money(g.amount) for g in local if g.amount != 0}
    theirs = {}
    for item in remote:
        amount = round_money(to_decimal(item.get("amount")))
        # the server lists matter currencies with zero amount
        if amount == 0:
            continue
        theirs[item.get("currency")] = amount
    if mine != theirs:
        logger.warning("Local currency breakdown %s differs from server %s", mine, theirs)
        return False
    return True

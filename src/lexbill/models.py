"""Billing data model shared by the engine, the stores and the CLI.

Amounts are Decimals throughout. Wire data (API JSON, TOML billing files)
is converted at the edges by the ``from_dict`` helpers below.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation

DEFAULT_CURRENCY = "INR"
EXPENSE_CURRENCY = "INR"


def to_decimal(value) -> Decimal:
    """Coerce an API/TOML number to Decimal. None and blanks become zero."""
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        # str() first so floats keep their printed value, not binary noise
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Not a number: {value!r}")


def parse_date(value) -> date | None:
    """Parse YYYY-MM-DD (optionally with a time part) into a date."""
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    text = str(value)[:10]
    parts = text.split("-")
    if len(parts) != 3:
        raise ValueError(f"Invalid date: {value!r}")
    return date(int(parts[0]), int(parts[1]), int(parts[2]))


@dataclass(frozen=True)
class Matter:
    id: int
    currency: str = DEFAULT_CURRENCY
    title: str = ""
    client_id: int | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "Matter":
        return cls(
            id=int(data.get("id", data.get("matter_id"))),
            currency=data.get("currency") or DEFAULT_CURRENCY,
            title=data.get("title", data.get("matter_title", "")) or "",
            client_id=data.get("client_id", data.get("clientId", (data.get("client") or {}).get("id"))),
        )


@dataclass(frozen=True)
class TimesheetEntry:
    id: int
    matter_id: int
    date: date
    amount: Decimal | None = None
    currency: str = ""  # empty = fall back to matter currency
    is_invoiced: bool = False
    invoice_ref: int | None = None
    invoice_number: str = ""
    person_id: int | None = None
    description: str = ""

    @property
    def billable_amount(self) -> Decimal:
        return self.amount if self.amount is not None else Decimal("0")

    @classmethod
    def from_dict(cls, data: dict, matter_id: int | None = None) -> "TimesheetEntry":
        user = data.get("user") or {}
        amount = data.get("amount", data.get("calculated_amount", data.get("calculatedAmount")))
        return cls(
            id=int(data.get("id", data.get("timesheet_id"))),
            matter_id=int(data.get("matter_id", data.get("matterId", matter_id))),
            date=parse_date(data.get("date")),
            amount=to_decimal(amount) if amount is not None else None,
            currency=(
                data.get("currency")
                or data.get("calculated_amount_currency")
                or data.get("calculatedAmountCurrency")
                or ""
            ),
            is_invoiced=bool(data.get("is_invoiced", data.get("isInvoiced", False))),
            invoice_ref=data.get("invoice_ref", data.get("invoiceId")),
            invoice_number=data.get("invoice_number", data.get("invoiceNumber")) or "",
            person_id=data.get("person_id", data.get("user_id", user.get("id"))),
            description=data.get("description") or "",
        )


@dataclass(frozen=True)
class ExpenseEntry:
    id: int
    matter_id: int | None
    amount: Decimal
    included: bool = True
    currency: str = EXPENSE_CURRENCY
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "ExpenseEntry":
        matter_id = data.get("matter_id", data.get("matterId"))
        included = data.get("included", data.get("expense_included", data.get("expenseIncluded")))
        return cls(
            id=int(data.get("id", data.get("expense_id"))),
            matter_id=int(matter_id) if matter_id is not None else None,
            amount=to_decimal(data.get("amount")),
            included=included is not False,
            currency=EXPENSE_CURRENCY,
            description=data.get("description") or "",
        )


@dataclass(frozen=True)
class CurrencyGroup:
    currency: str
    matter_ids: frozenset[int] = frozenset()
    amount: Decimal = Decimal("0")
    timesheet_ids: frozenset[int] = frozenset()
    expense_ids: frozenset[int] = frozenset()

    def to_dict(self) -> dict:
        return {
            "currency": self.currency,
            "matter_ids": sorted(self.matter_ids),
            "amount": str(self.amount),
        }


@dataclass
class InvoiceRecord:
    """A persisted invoice, as returned by ``fetch_invoice``."""
    id: int
    invoice_number: str
    matter_ids: list[int]
    client_id: int | None = None
    invoice_date: date | None = None
    due_date: date | None = None
    billing_location: str = ""
    invoice_currency: str = DEFAULT_CURRENCY
    exchange_rates: dict[str, Decimal] = field(default_factory=dict)
    timesheet_ids: list[int] = field(default_factory=list)
    expense_ids: list[int] = field(default_factory=list)
    amount: Decimal = Decimal("0")
    description: str = ""
    notes: str = ""
    date_from: date | None = None
    date_to: date | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "InvoiceRecord":
        matter_ids = data.get("matter_ids", data.get("matterIds"))
        if not matter_ids:
            single = data.get("matter_id", data.get("matterId"))
            matter_ids = [single] if single is not None else []
        timesheet_ids = data.get("timesheet_ids", data.get("timesheetIds"))
        if timesheet_ids is None:
            timesheet_ids = [
                ts.get("id", ts.get("timesheet_id")) for ts in data.get("timesheets", [])
            ]
        rates = data.get("exchange_rates", data.get("exchangeRates")) or {}
        return cls(
            id=int(data.get("id", data.get("invoice_id"))),
            invoice_number=data.get("invoice_number", data.get("invoiceNumber")) or "",
            matter_ids=[int(m) for m in matter_ids],
            client_id=data.get("client_id", data.get("clientId")),
            invoice_date=parse_date(data.get("invoice_date", data.get("invoiceDate"))),
            due_date=parse_date(data.get("due_date", data.get("dueDate"))),
            billing_location=data.get("billing_location", data.get("billingLocation")) or "",
            invoice_currency=(
                data.get("invoice_currency", data.get("invoiceCurrency")) or DEFAULT_CURRENCY
            ),
            exchange_rates={cur: to_decimal(rate) for cur, rate in rates.items()},
            timesheet_ids=[int(t) for t in timesheet_ids if t is not None],
            expense_ids=[int(e) for e in data.get("expense_ids", data.get("expenseIds")) or []],
            amount=to_decimal(data.get("amount", data.get("invoice_amount", data.get("invoiceAmount")))),
            description=data.get("description") or "",
            notes=data.get("notes") or "",
            date_from=parse_date(data.get("date_from", data.get("dateFrom"))),
            date_to=parse_date(data.get("date_to", data.get("dateTo"))),
        )

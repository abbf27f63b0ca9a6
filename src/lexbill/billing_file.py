"""Read-only billing data kept in a markdown file with embedded TOML.

Lets invoices be drafted offline from the same kind of file the firm keeps
next to its matter notes. The store answers the same read queries as
``BillingApiClient`` so the workflow can use either.
"""

import logging
import re
from datetime import date
from pathlib import Path

import tomli

from .currency import reconcile
from .errors import CollaboratorUnavailableError
from .models import ExpenseEntry, InvoiceRecord, Matter, TimesheetEntry
from .numbering import InvoiceNumberAllocator

logger = logging.getLogger("lexbill.billing_file")

BILLING_FILE_TEMPLATE = """\
# Billing

Matters, approved timesheets, one-time expenses and issued invoices.

```toml
# [[matters]]
# id = 1
# title = "Acme v. Widgets"
# currency = "USD"
# client_id = 7

# [[timesheets]]
# id = 101
# matter_id = 1
# date = 2026-01-05
# amount = "1500.00"
# person_id = 3
# status = "approved"       # only approved entries are billable
# is_invoiced = false
# invoice_number = ""       # set when billed

# [[expenses]]
# id = 201
# matter_id = 1
# amount = "2500.00"        # always INR
# included = true
# description = "Court fees"

# [[invoices]]
# id = 1
# invoice_number = "05012026-M"
# client_id = 7
# matter_ids = [1]
# invoice_date = 2026-01-05
# due_date = 2026-03-06
# billing_location = "mumbai"
# invoice_currency = "USD"
# timesheet_ids = [101]
# exchange_rates = { INR = "0.012" }
```
"""


def _extract_toml_from_markdown(text: str) -> str:
    """Extract TOML content from a markdown file with ```toml code blocks."""
    pattern = r"```toml\s*\n(.*?)```"
    matches = re.findall(pattern, text, re.DOTALL)
    if not matches:
        raise ValueError("No TOML code block found in markdown file")
    return "\n".join(matches)


def parse_billing_file(path: Path) -> dict:
    """Parse a billing markdown file into its raw TOML tables."""
    text = path.read_text()
    data = tomli.loads(_extract_toml_from_markdown(text))
    return {
        "matters": data.get("matters", []),
        "timesheets": data.get("timesheets", []),
        "expenses": data.get("expenses", []),
        "invoices": data.get("invoices", []),
    }


class BillingFileStore:
    """Billing data source backed by a local file.

    The file is read once, on first access. Call ``reload()`` to pick up
    edits made since.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._data: dict | None = None

    def _load(self) -> dict:
        if self._data is None:
            self._data = parse_billing_file(self.path)
            logger.debug(
                "Loaded %s: %d matters, %d timesheets, %d expenses, %d invoices",
                self.path,
                len(self._data["matters"]),
                len(self._data["timesheets"]),
                len(self._data["expenses"]),
                len(self._data["invoices"]),
            )
        return self._data

    def reload(self) -> None:
        self._data = None

    def list_matters(self) -> list[Matter]:
        return [Matter.from_dict(m) for m in self._load()["matters"]]

    def get_matter(self, matter_id: int) -> Matter:
        for matter in self.list_matters():
            if matter.id == matter_id:
                return matter
        raise CollaboratorUnavailableError(f"Matter {matter_id} not found", status_code=404)

    def list_timesheets(
        self,
        matter_id: int,
        status: str = "approved",
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[TimesheetEntry]:
        entries = []
        for raw in self._load()["timesheets"]:
            if raw.get("status", "approved") != status:
                continue
            entry = TimesheetEntry.from_dict(raw)
            if entry.matter_id != matter_id:
                continue
            if date_from and entry.date < date_from:
                continue
            if date_to and entry.date > date_to:
                continue
            entries.append(entry)
        return entries

    def list_expenses(self, matter_id: int) -> list[ExpenseEntry]:
        expenses = [ExpenseEntry.from_dict(e) for e in self._load()["expenses"]]
        return [e for e in expenses if e.matter_id == matter_id and e.included]

    def detect_currencies(
        self,
        matter_ids: list[int],
        timesheet_ids: list[int] | None = None,
        expense_ids: list[int] | None = None,
    ) -> dict:
        """Local equivalent of the server's currency detection."""
        matters = [m for m in self.list_matters() if m.id in matter_ids]
        timesheets = [t for m in matters for t in self.list_timesheets(m.id)]
        if timesheet_ids is not None:
            timesheets = [t for t in timesheets if t.id in timesheet_ids]
        else:
            timesheets = [t for t in timesheets if not t.is_invoiced]
        expenses = [e for m in matters for e in self.list_expenses(m.id)]
        if expense_ids:
            expenses = [e for e in expenses if e.id in expense_ids]

        result = reconcile(timesheets, expenses, bool(expense_ids), matters=matters)
        return {
            "breakdown": [g.to_dict() for g in result.breakdown],
            "requires_exchange_rates": result.requires_conversion,
            "suggested_invoice_currency": result.suggested_currency,
        }

    def list_invoice_numbers(self, prefix: str = "") -> list[str]:
        numbers = [inv.get("invoice_number", "") for inv in self._load()["invoices"]]
        return [n for n in numbers if n and n.startswith(prefix)]

    def generate_invoice_number(self, invoice_date: date, location: str) -> str:
        return InvoiceNumberAllocator(self.list_invoice_numbers).allocate(invoice_date, location)

    def fetch_invoice(self, invoice_id: int) -> InvoiceRecord:
        for raw in self._load()["invoices"]:
            if raw.get("id") == invoice_id:
                return InvoiceRecord.from_dict(raw)
        raise CollaboratorUnavailableError(f"Invoice {invoice_id} not found", status_code=404)

"""Shared test fixtures for lexbill tests."""

from datetime import date
from decimal import Decimal

import pytest

from lexbill.draft import InvoiceDraft
from lexbill.logging_setup import reset_logging
from lexbill.models import ExpenseEntry, Matter, TimesheetEntry


SAMPLE_BILLING = """\
# Billing

Acme matters.

```toml
[[matters]]
id = 1
title = "Acme v. Widgets"
currency = "USD"
client_id = 7

[[matters]]
id = 2
title = "Widgets GmbH arbitration"
currency = "EUR"
client_id = 7

[[matters]]
id = 3
title = "Other client"
client_id = 8
```

Timesheets exported from the practice system:

```toml
[[timesheets]]
id = 11
matter_id = 1
date = 2024-01-10
amount = "500.00"
person_id = 5

[[timesheets]]
id = 12
matter_id = 1
date = 2024-01-20
amount = 300
person_id = 6

[[timesheets]]
id = 13
matter_id = 1
date = 2024-01-22
amount = 50
status = "pending"

[[timesheets]]
id = 14
matter_id = 1
date = 2023-12-01
amount = 75
is_invoiced = true
invoice_ref = 1
invoice_number = "01122023-M"

[[timesheets]]
id = 21
matter_id = 2
date = 2024-01-15
amount = 200.5

[[expenses]]
id = 5
matter_id = 1
amount = "2500"
description = "Court fees"

[[expenses]]
id = 6
matter_id = 1
amount = 100
included = false

[[invoices]]
id = 1
invoice_number = "01122023-M"
client_id = 7
matter_ids = [1]
invoice_date = 2023-12-01
due_date = 2024-01-30
billing_location = "mumbai"
invoice_currency = "INR"
timesheet_ids = [14]
exchange_rates = { USD = "83.1" }

[[invoices]]
id = 2
invoice_number = "20012024-M"
matter_ids = [1]
```
"""


@pytest.fixture
def billing_path(tmp_path):
    """A BILLING.md with three matters, five timesheets and two invoices."""
    path = tmp_path / "BILLING.md"
    path.write_text(SAMPLE_BILLING)
    return path


@pytest.fixture(autouse=True)
def _clean_logging():
    yield
    reset_logging()


@pytest.fixture
def make_timesheet():
    """Factory fixture that creates TimesheetEntry instances with defaults."""
    def _make_timesheet(id, **overrides):
        defaults = {
            "id": id,
            "matter_id": 1,
            "date": date(2024, 1, 10),
            "amount": Decimal("100"),
        }
        defaults.update(overrides)
        if isinstance(defaults["amount"], (int, str)):
            defaults["amount"] = Decimal(str(defaults["amount"]))
        return TimesheetEntry(**defaults)
    return _make_timesheet


@pytest.fixture
def make_expense():
    def _make_expense(id, **overrides):
        defaults = {"id": id, "matter_id": 1, "amount": Decimal("1000")}
        defaults.update(overrides)
        if isinstance(defaults["amount"], (int, str)):
            defaults["amount"] = Decimal(str(defaults["amount"]))
        return ExpenseEntry(**defaults)
    return _make_expense


@pytest.fixture
def usd_matter():
    return Matter(id=1, currency="USD", title="Acme v. Widgets", client_id=7)


@pytest.fixture
def eur_matter():
    return Matter(id=2, currency="EUR", title="Widgets GmbH arbitration", client_id=7)


@pytest.fixture
def inr_matter():
    return Matter(id=3, currency="INR", title="Acme India advisory", client_id=7)


@pytest.fixture
def scenario_a(make_timesheet, usd_matter):
    """One USD matter with $500 on 2024-01-10 and $300 on 2024-01-20."""
    return [
        make_timesheet(11, matter_id=usd_matter.id, date=date(2024, 1, 10), amount=500),
        make_timesheet(12, matter_id=usd_matter.id, date=date(2024, 1, 20), amount=300),
    ]


@pytest.fixture
def build_draft():
    """Build a create-mode draft from (matter, timesheets[, expenses]) tuples.

    Everything except the selection is filled in so that a draft without
    currency problems finalizes cleanly.
    """
    def _build(*matters, **fields):
        draft = InvoiceDraft.new(client_id=7, billing_location="mumbai")
        for item in matters:
            matter, timesheets = item[0], item[1]
            expenses = item[2] if len(item) > 2 else []
            draft = draft.select_matter(matter).draft
            draft = draft.load_timesheets(matter.id, timesheets).draft
            draft = draft.load_expenses(matter.id, expenses).draft
        draft = draft.set_description(fields.pop("description", "Professional fees")).draft
        draft = draft.set_invoice_number(fields.pop("invoice_number", "20012024-M")).draft
        for currency, rate in fields.pop("rates", {}).items():
            draft = draft.set_exchange_rate(currency, rate).draft
        if "invoice_currency" in fields:
            draft = draft.set_invoice_currency(fields.pop("invoice_currency")).draft
        assert not fields, f"unexpected fields: {fields}"
        return draft
    return _build

"""Tests for the InvoiceDraft aggregate and finalize()."""

from datetime import date
from decimal import Decimal

import pytest

from lexbill.draft import InvoiceDraft
from lexbill.errors import DraftFinalizedError
from lexbill.models import InvoiceRecord


@pytest.fixture
def scenario_b(make_timesheet, usd_matter, eur_matter, scenario_a):
    """USD matter totalling $800 and EUR matter totalling EUR 200."""
    eur = [make_timesheet(21, matter_id=eur_matter.id, date=date(2024, 1, 15), amount=200)]
    return [(usd_matter, scenario_a), (eur_matter, eur)]


class TestScenarios:
    def test_scenario_a_total(self, build_draft, usd_matter, scenario_a):
        draft = build_draft((usd_matter, scenario_a))
        result = draft.finalize().result
        assert result.success
        invoice = result.data
        assert invoice.total == Decimal("800.00")
        assert invoice.invoice_currency == "USD"
        assert invoice.exchange_rates is None
        assert invoice.invoice_date == date(2024, 1, 20)
        assert invoice.due_date == date(2024, 3, 20)

    def test_scenario_b_missing_rate(self, build_draft, scenario_b):
        draft = build_draft(*scenario_b, invoice_currency="USD")
        assert draft.total is None
        update = draft.finalize()
        assert not update.result.success
        assert update.result.error_fields() == ["exchange_rates"]
        assert update.result.errors[0].message == "Exchange rates required for: EUR"
        assert update.result.data is None

    def test_scenario_c_total_with_rate(self, build_draft, scenario_b):
        draft = build_draft(*scenario_b, invoice_currency="USD", rates={"EUR": "1.08"})
        result = draft.finalize().result
        assert result.success
        assert result.data.total == Decimal("1016.00")
        assert result.data.exchange_rates == {"EUR": Decimal("1.0800")}

    def test_scenario_e_invoice_date_before_bound(self, build_draft, usd_matter, scenario_a):
        draft = build_draft((usd_matter, scenario_a))
        update = draft.set_invoice_date(date(2024, 1, 15))
        assert [d.field for d in update.diagnostics] == ["invoice_date"]
        result = update.draft.finalize().result
        assert not result.success
        assert result.error_fields() == ["invoice_date"]
        assert "2024-01-20" in result.errors[0].message


class TestValidationAccumulates:
    def test_empty_draft_reports_everything(self):
        result = InvoiceDraft.new().finalize().result
        assert result.error_fields() == [
            "client_id",
            "matter_ids",
            "billing_location",
            "invoice_number",
            "invoice_date",
            "due_date",
            "amount",
            "description",
        ]

    def test_zero_amount_rejected(self, build_draft, make_timesheet, usd_matter):
        draft = build_draft((usd_matter, [make_timesheet(1, amount=0, date=date(2024, 1, 20))]))
        assert draft.finalize().result.error_fields() == ["amount"]

    def test_due_before_invoice_date(self, build_draft, usd_matter, scenario_a):
        draft = build_draft((usd_matter, scenario_a))
        draft = draft.set_invoice_date(date(2024, 2, 1)).draft
        update = draft.set_due_date(date(2024, 1, 25))
        assert update.diagnostics[0].message == "Due date must be after invoice date"
        assert update.draft.finalize().result.error_fields() == ["due_date"]

    def test_blank_description(self, build_draft, usd_matter, scenario_a):
        draft = build_draft((usd_matter, scenario_a), description="   ")
        assert draft.finalize().result.error_fields() == ["description"]

    def test_invalid_rate_reported(self, build_draft, scenario_b):
        draft = build_draft(*scenario_b, invoice_currency="USD")
        update = draft.set_exchange_rate("EUR", "0")
        assert update.diagnostics
        result = update.draft.finalize().result
        assert result.error_fields() == ["exchange_rates"]
        assert result.errors[0].message.startswith("Invalid exchange rate for EUR")

    def test_single_foreign_currency_needs_rate(self, build_draft, usd_matter, scenario_a):
        draft = build_draft((usd_matter, scenario_a), invoice_currency="INR")
        result = draft.finalize().result
        assert result.error_fields() == ["exchange_rates"]
        assert "USD" in result.errors[0].message

    def test_unsupported_currency(self, build_draft, usd_matter, scenario_a):
        draft = build_draft((usd_matter, scenario_a))
        update = draft.set_invoice_currency("chf")
        assert update.draft.invoice_currency == "CHF"
        assert update.diagnostics[0].field == "invoice_currency"
        assert "invoice_currency" in update.draft.finalize().result.error_fields()


class TestDraftOperations:
    def test_operations_do_not_mutate(self, build_draft, usd_matter, scenario_a):
        draft = build_draft((usd_matter, scenario_a))
        toggled = draft.toggle_timesheet(11).draft
        assert draft.selection.selected_timesheet_ids == frozenset({11, 12})
        assert toggled.selection.selected_timesheet_ids == frozenset({12})

    def test_rate_quantized(self, build_draft, scenario_b):
        draft = build_draft(*scenario_b, invoice_currency="USD", rates={"EUR": "1.23456"})
        assert draft.exchange_rates == {"EUR": Decimal("1.2346")}

    def test_non_numeric_rate_not_stored(self, build_draft, scenario_b):
        draft = build_draft(*scenario_b, invoice_currency="USD")
        update = draft.set_exchange_rate("EUR", "abc")
        assert update.diagnostics[0].field == "exchange_rates"
        assert update.draft.exchange_rates == {}

    def test_rate_above_limit(self, build_draft, scenario_b):
        draft = build_draft(*scenario_b, invoice_currency="USD")
        update = draft.set_exchange_rate("eur", "10000.5")
        assert update.diagnostics
        assert "EUR" in update.draft.exchange_rates

    def test_clear_rate(self, build_draft, scenario_b):
        draft = build_draft(*scenario_b, invoice_currency="USD", rates={"EUR": "1.08"})
        assert draft.set_exchange_rate("EUR", None).draft.exchange_rates == {}

    def test_bad_invoice_number_diagnostic(self, build_draft, usd_matter, scenario_a):
        draft = build_draft((usd_matter, scenario_a))
        update = draft.set_invoice_number("INV-0001")
        assert update.diagnostics[0].field == "invoice_number"
        assert update.draft.invoice_number == "INV-0001"

    def test_bad_location_diagnostic(self):
        update = InvoiceDraft.new().set_billing_location("pune")
        assert update.diagnostics[0].field == "billing_location"
        assert InvoiceDraft.new().set_billing_location("delhi_litigation").ok

    def test_reversed_date_range(self):
        update = InvoiceDraft.new().set_date_range(date(2024, 2, 1), date(2024, 1, 1))
        assert update.diagnostics[0].field == "date_range"

    def test_suggested_currency_used_by_default(self, build_draft, scenario_b):
        draft = build_draft(*scenario_b)
        assert draft.invoice_currency == ""
        assert draft.effective_currency == "USD"

    def test_finalized_draft_is_frozen(self, build_draft, usd_matter, scenario_a):
        draft = build_draft((usd_matter, scenario_a)).mark_submitted(42)
        assert draft.finalized
        assert draft.invoice_id == 42
        with pytest.raises(DraftFinalizedError):
            draft.toggle_timesheet(11)
        with pytest.raises(DraftFinalizedError):
            draft.set_description("changed")


class TestPayload:
    def test_camel_case_payload(self, build_draft, scenario_b):
        draft = build_draft(*scenario_b, invoice_currency="USD", rates={"EUR": "1.08"})
        payload = draft.finalize().result.data.to_payload()
        assert payload["clientId"] == 7
        assert payload["matterIds"] == [1, 2]
        assert payload["matterId"] is None
        assert payload["timesheetIds"] == [11, 12, 21]
        assert payload["invoiceAmount"] == "1016.00"
        assert payload["exchangeRates"] == {"EUR": "1.0800"}
        assert payload["invoiceNumber"] == "20012024-M"
        assert payload["invoiceDate"] == "2024-01-20"
        assert payload["dueDate"] == "2024-03-20"
        assert payload["billingLocation"] == "mumbai"
        assert payload["includeExpenses"] is False
        assert "expenseIds" not in payload

    def test_expenses_only_when_included(self, build_draft, make_expense, usd_matter, scenario_a):
        draft = build_draft((usd_matter, scenario_a, [make_expense(5, amount=8300)]), invoice_currency="USD")
        assert "expenseIds" not in draft.finalize().result.data.to_payload()

        draft = draft.set_include_expenses(True).draft
        draft = draft.set_exchange_rate("INR", "0.012").draft
        payload = draft.finalize().result.data.to_payload()
        assert payload["expenseIds"] == [5]
        assert payload["includeExpenses"] is True
        assert payload["invoiceAmount"] == "899.60"
        assert payload["exchangeRates"] == {"INR": "0.0120"}

    def test_location_alias_normalized(self, build_draft, usd_matter, scenario_a):
        draft = build_draft((usd_matter, scenario_a)).set_billing_location("delhi_litigation").draft
        assert draft.finalize().result.data.billing_location == "delhi (lt)"


class TestEditMode:
    @pytest.fixture
    def record(self):
        return InvoiceRecord(
            id=42,
            invoice_number="20012024-M",
            matter_ids=[1, 3],
            client_id=7,
            invoice_date=date(2024, 1, 20),
            due_date=date(2024, 3, 20),
            billing_location="mumbai",
            invoice_currency="USD",
            exchange_rates={"INR": Decimal("0.012")},
            timesheet_ids=[11, 12, 31],
            description="January fees",
        )

    @pytest.fixture
    def edit_draft(self, record, make_timesheet, usd_matter, inr_matter):
        invoiced = dict(is_invoiced=True, invoice_ref=42, invoice_number="20012024-M")
        timesheets = [
            make_timesheet(11, matter_id=1, date=date(2024, 1, 10), amount=500, **invoiced),
            make_timesheet(12, matter_id=1, date=date(2024, 1, 20), amount=300, **invoiced),
            make_timesheet(31, matter_id=3, date=date(2024, 1, 12), amount=10000, **invoiced),
            make_timesheet(32, matter_id=3, date=date(2024, 1, 25), amount=5000),
            make_timesheet(13, matter_id=1, date=date(2024, 1, 5), amount=50,
                           is_invoiced=True, invoice_ref=40),
        ]
        return InvoiceDraft.from_record(record, [usd_matter, inr_matter], timesheets)

    def test_rehydrated(self, edit_draft):
        assert edit_draft.is_edit
        assert edit_draft.invoice_id == 42
        assert edit_draft.selection.selected_timesheet_ids == frozenset({11, 12, 31})
        assert [t.id for t in edit_draft.selection.locked_timesheets] == [13]
        assert edit_draft.selection.invoice_date == date(2024, 1, 20)

    def test_stored_rate_reused(self, edit_draft):
        result = edit_draft.finalize().result
        assert result.success
        assert result.data.total == Decimal("920.00")
        assert result.data.exchange_rates == {"INR": Decimal("0.012")}

    def test_stored_rate_dropped_when_group_changes(self, edit_draft):
        draft = edit_draft.toggle_timesheet(32).draft
        assert draft.conversion.missing_rates == ("INR",)
        assert draft.finalize().result.error_fields() == ["invoice_date", "exchange_rates"]

    def test_empty_selection_bills_original_entries(self, edit_draft):
        draft = edit_draft.toggle_select_all().draft
        assert draft.selection.selected_timesheet_ids == frozenset({11, 12, 31, 32})
        draft = draft.toggle_select_all().draft
        assert draft.selection.selected_timesheet_ids == frozenset()
        assert draft.uses_original_selection
        result = draft.finalize().result
        assert result.success
        assert result.data.timesheet_ids == [11, 12, 31]
        assert result.data.total == Decimal("920.00")

    def test_fallback_after_narrowing_bills_every_original(self, edit_draft):
        draft = edit_draft.set_date_range(date(2024, 1, 15), None).draft
        assert draft.selection.selected_timesheet_ids == frozenset({12})
        draft = draft.toggle_timesheet(12).draft
        assert draft.uses_original_selection
        result = draft.finalize().result
        assert result.success
        assert result.data.timesheet_ids == [11, 12, 31]
        assert result.data.total == Decimal("920.00")

    def test_fallback_checks_invoice_date_against_originals(self, edit_draft):
        draft = edit_draft.set_date_range(date(2024, 1, 15), None).draft
        draft = draft.toggle_timesheet(12).draft
        assert draft.min_invoice_date == date(2024, 1, 20)
        update = draft.set_invoice_date(date(2024, 1, 15))
        assert update.diagnostics[0].field == "invoice_date"
        assert update.draft.finalize().result.error_fields() == ["invoice_date"]

    def test_stored_rate_not_reused_for_other_currency(self, edit_draft):
        draft = edit_draft.set_invoice_currency("INR").draft
        assert draft.rates == {}
        assert draft.conversion.missing_rates == ("USD",)
        draft = draft.set_exchange_rate("USD", "83").draft
        assert draft.conversion.missing_rates == ()
        assert draft.total == Decimal("76400.0000")

    def test_stored_rate_needed_after_switch(self, edit_draft):
        draft = edit_draft.set_invoice_currency("EUR").draft
        draft = draft.set_exchange_rate("USD", "0.9").draft
        assert draft.conversion.missing_rates == ("INR",)
        assert draft.finalize().result.error_fields() == ["exchange_rates"]

    def test_update_keeps_invoice_id(self, edit_draft):
        draft = edit_draft.set_description("Revised").draft
        assert draft.invoice_id == 42
        assert draft.finalize().result.data.description == "Revised"

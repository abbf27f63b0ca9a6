"""REST client for the billing backend.

Every endpoint answers with an envelope ``{"success": bool, "data": ...,
"message": str}``. Transport failures, non-2xx statuses and
``success: false`` all raise CollaboratorUnavailableError; HTTP 409 on
invoice create/update raises ConflictError (invoice number taken).

Nothing is retried. Invoice creation and number generation are not
idempotent, so a retry could burn a suffix or double-submit.
"""

import logging
from datetime import date
from typing import Any

import httpx

from .config import Config
from .errors import CollaboratorUnavailableError, ConflictError
from .models import ExpenseEntry, InvoiceRecord, Matter, TimesheetEntry

logger = logging.getLogger("lexbill.api_client")


class BillingApiClient:
    """Synchronous client over ``httpx.Client``.

    Use as a context manager or call ``close()``. ``transport`` is passed
    to httpx and lets tests plug in ``httpx.MockTransport``.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: Config, transport: httpx.BaseTransport | None = None) -> "BillingApiClient":
        if not config.api.base_url:
            raise ValueError("api.base_url is not configured")
        return cls(config.api.base_url, config.api.token, config.api.timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "BillingApiClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # --- plumbing ---

    def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            resp = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("%s %s failed: %s", method, path, e)
            raise CollaboratorUnavailableError(f"{method} {path} failed: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {}
        message = ""
        if isinstance(body, dict):
            message = body.get("message") or body.get("error") or ""

        if resp.status_code == 409:
            raise ConflictError(message or "Invoice number already exists")
        if resp.status_code >= 400:
            logger.warning("%s %s returned %s: %s", method, path, resp.status_code, message)
            raise CollaboratorUnavailableError(
                message or f"{method} {path} returned {resp.status_code}",
                status_code=resp.status_code,
            )
        if not isinstance(body, dict) or not body.get("success", False):
            raise CollaboratorUnavailableError(
                message or f"{method} {path} returned an unsuccessful response",
                status_code=resp.status_code,
            )
        return body.get("data")

    # --- matters and billable items ---

    def get_matter(self, matter_id: int) -> Matter:
        data = self._request("GET", f"/api/matters/{matter_id}")
        if not data:
            raise CollaboratorUnavailableError(f"Matter {matter_id} not found", status_code=404)
        return Matter.from_dict(data)

    def list_timesheets(
        self,
        matter_id: int,
        status: str = "approved",
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[TimesheetEntry]:
        params = {"matterId": matter_id, "status": status}
        if date_from:
            params["dateFrom"] = date_from.isoformat()
        if date_to:
            params["dateTo"] = date_to.isoformat()
        data = self._request("GET", "/api/timesheets", params=params) or []
        return [TimesheetEntry.from_dict(item, matter_id=matter_id) for item in data]

    def list_expenses(self, matter_id: int) -> list[ExpenseEntry]:
        """One-time expenses for a matter that may be billed."""
        data = self._request("GET", "/api/expenses/onetime", params={"matter_id": matter_id}) or []
        expenses = []
        for item in data:
            expense = ExpenseEntry.from_dict(item)
            if expense.matter_id == matter_id and expense.included:
                expenses.append(expense)
        return expenses

    def detect_currencies(
        self,
        matter_ids: list[int],
        timesheet_ids: list[int] | None = None,
        expense_ids: list[int] | None = None,
    ) -> dict:
        body: dict[str, Any] = {"matterIds": matter_ids}
        if timesheet_ids:
            body["timesheetIds"] = timesheet_ids
        if expense_ids:
            body["expenseIds"] = expense_ids
        data = self._request("POST", "/api/invoices/detect-currencies", json=body) or {}
        return {
            "breakdown": data.get("breakdown", []),
            "requires_exchange_rates": bool(data.get("requiresExchangeRates", False)),
            "suggested_invoice_currency": data.get("suggestedInvoiceCurrency", ""),
        }

    # --- invoice numbers ---

    def generate_invoice_number(self, invoice_date: date, location: str) -> str:
        data = self._request(
            "GET",
            "/api/invoices/generate-number",
            params={"date": invoice_date.isoformat(), "location": location},
        ) or {}
        number = data.get("invoiceNumber", "")
        if not number:
            raise CollaboratorUnavailableError("generate-number returned no invoice number")
        return number

    # --- invoices ---

    def create_invoice(self, payload: dict) -> dict:
        logger.info("Creating invoice %s", payload.get("invoiceNumber"))
        return self._request("POST", "/api/invoices", json=payload) or {}

    def update_invoice(self, invoice_id: int, payload: dict) -> dict:
        logger.info("Updating invoice %s (%s)", invoice_id, payload.get("invoiceNumber"))
        return self._request("PUT", f"/api/invoices/{invoice_id}", json=payload) or {}

    def fetch_invoice(self, invoice_id: int) -> InvoiceRecord:
        data = self._request("GET", f"/api/invoices/{invoice_id}")
        if not data:
            raise CollaboratorUnavailableError(f"Invoice {invoice_id} not found", status_code=404)
        return InvoiceRecord.from_dict(data)

"""Error taxonomy and structured results.

Expected conditions never escape the engine as exceptions: validation
problems are collected as ``ValidationError`` values and returned inside a
``FinalizeResult``. Collaborator failures are exceptions inside the
client and are turned into structured results by the workflow layer.
"""

from dataclasses import dataclass, field


@dataclass
class ValidationError(Exception):
    """A field-level validation problem. Local and recoverable."""
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"

    def to_dict(self) -> dict:
        return {"field": self.field, "message": self.message}


class LexbillError(Exception):
    """Base class for collaborator-boundary errors."""


class ConflictError(LexbillError):
    """Invoice number already taken server-side. Regenerate, do not retry."""

    def __init__(self, message: str, invoice_number: str = ""):
        super().__init__(message)
        self.invoice_number = invoice_number


class CollaboratorUnavailableError(LexbillError):
    """A collaborator request failed or answered with a non-success status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DraftFinalizedError(LexbillError):
    """Raised when a finalized draft is edited."""


@dataclass
class FinalizeResult:
    success: bool
    data: object | None = None
    errors: list[ValidationError] = field(default_factory=list)

    @classmethod
    def ok(cls, data) -> "FinalizeResult":
        return cls(success=True, data=data)

    @classmethod
    def failed(cls, errors: list[ValidationError]) -> "FinalizeResult":
        return cls(success=False, errors=list(errors))

    def error_fields(self) -> list[str]:
        return [e.field for e in self.errors]

    def to_dict(self) -> dict:
        if self.success:
            data = self.data.to_payload() if hasattr(self.data, "to_payload") else self.data
            return {"success": True, "data": data}
        return {"success": False, "errors": [e.to_dict() for e in self.errors]}

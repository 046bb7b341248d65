from __future__ import annotations

from typing import Any

from pydantic import ValidationError as PydanticValidationError


class WorkPackageError(Exception):
    """Base error for work package operations; rendered by the API as an error envelope."""

    kind = "workpackage_error"
    status_code = 400

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(WorkPackageError):
    kind = "validation_error"
    status_code = 422

    def __init__(self, message: str, *, row_index: int | None = None, details: dict[str, Any] | None = None) -> None:
        merged = dict(details or {})
        if row_index is not None:
            merged["row_index"] = row_index
        super().__init__(message, details=merged)
        self.row_index = row_index


class NotFoundError(WorkPackageError):
    kind = "not_found"
    status_code = 404

    def __init__(self, resource: str, identifier: Any) -> None:
        super().__init__(f"{resource} not found", details={"resource": resource, "id": str(identifier)})
        self.resource = resource


class ConflictError(WorkPackageError):
    kind = "conflict"
    status_code = 409


class StateError(WorkPackageError):
    kind = "invalid_state"
    status_code = 409


def pydantic_error_details(exc: PydanticValidationError) -> list[dict[str, Any]]:
    return [
        {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
        for error in exc.errors(include_url=False)
    ]

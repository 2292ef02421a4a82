"""Structured outcomes returned by form-action handlers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class ActionResult:
    success: bool
    error: str | None = None
    message: str | None = None
    status_code: int = 200
    redirect_to: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": self.success}
        if self.error is not None:
            body["error"] = self.error
        if self.message is not None:
            body["message"] = self.message
        body.update(self.payload)
        return body


def ok(message: str | None = None, **payload: Any) -> ActionResult:
    return ActionResult(success=True, message=message, payload=payload)


def fail(error: str, status_code: int = 400, **payload: Any) -> ActionResult:
    return ActionResult(
        success=False, error=error, status_code=status_code, payload=payload
    )


def redirect(location: str) -> ActionResult:
    return ActionResult(success=True, status_code=303, redirect_to=location)


def unauthorized(error: str = "Authentication required") -> ActionResult:
    return fail(error, status_code=401)


def forbidden(error: str) -> ActionResult:
    return fail(error, status_code=403)


def not_found(error: str) -> ActionResult:
    return fail(error, status_code=404)

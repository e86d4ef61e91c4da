"""Structured outcomes returned by every engine operation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class OperationResult:
    success: bool
    data: Any = None
    code: str | None = None
    message: str | None = None
    details: Any = None

    @classmethod
    def ok(cls, data: Any = None, message: str | None = None) -> "OperationResult":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(
        cls,
        code: str,
        message: str,
        *,
        details: Any = None,
        data: Any = None,
    ) -> "OperationResult":
        return cls(success=False, data=data, code=code, message=message, details=details)

    @property
    def error(self) -> dict[str, Any] | None:
        if self.success:
            return None
        return {"code": self.code, "message": self.message, "details": self.details}

from __future__ import annotations

from typing import Optional


class TidyUserError(Exception):
    """An instructional error intended for end users.

    Use this for mistakes in a verb call (invalid params, missing columns, etc.).
    It carries a short error code and an optional hint to guide the user.
    """

    default_code = "E_TIDY"

    def __init__(self, code: Optional[str] = None, message: str = "", *, hint: Optional[str] = None):
        code = code or self.default_code
        super().__init__(message)
        self.code = code
        self.message = message
        self.hint = hint

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.hint:
            return base + f"\nHint: {self.hint}"
        return base


class InvalidColumnReference(TidyUserError):
    """A verb or expression referred to a column the table does not have."""

    default_code = "E_UNKNOWN_COL"


class DuplicateColumnName(TidyUserError):
    """A result would contain the same column name twice."""

    default_code = "E_DUPLICATE_COL"


class JoinKeyMismatch(TidyUserError):
    default_code = "E_JOIN_UNKNOWN_COL"


class DuplicateKeyError(TidyUserError):
    """spread found the same key twice within one group of id columns."""

    default_code = "E_SPREAD_DUPLICATE_KEY"


class InsufficientRows(TidyUserError):
    default_code = "E_SAMPLE_INSUFFICIENT"

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Union

if TYPE_CHECKING:
    from .models import VerificationError


class CredpoolError(Exception):
    """Base exception for Credpool internals."""


class ConfigError(CredpoolError):
    """Configuration parsing/validation error."""


class ImportParseError(CredpoolError, ValueError):
    """Import input could not be turned into candidate records.

    Parse-time errors abort the whole import before any network call.
    """

    default_code = "parse_error"

    def __init__(self, reason: str, *, fmt: Optional[str] = None) -> None:
        self.code = self.default_code
        self.reason = str(reason or self.code).strip() or self.code
        self.fmt = str(fmt).strip().lower() if fmt else None
        super().__init__(self.reason)

    @property
    def metadata(self) -> dict[str, Union[str, None]]:
        return {"code": self.code, "reason": self.reason, "format": self.fmt}


class EmptyInputError(ImportParseError):
    """Input is empty, header-only, or holds no usable record."""

    default_code = "empty_input"


class UnrecognizedFormatError(ImportParseError):
    """Input does not match the declared (or any supported) format."""

    default_code = "unrecognized_format"


class VerificationFailed(CredpoolError):
    """Raised by callers that prefer exceptions over verification results."""

    def __init__(self, error: "VerificationError") -> None:
        self.error = error
        super().__init__(f"{error.kind.value}:{error.message}")

    @property
    def retryable(self) -> bool:
        return self.error.retryable

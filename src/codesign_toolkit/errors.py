"""Exception types for codesign-toolkit.

Every error raised by the package derives from :class:`SigningError` and
carries a stable ``kind`` string.  The dispatcher copies the kind into the
audit record and the CLI prints it in the status line, so kinds must not
change once published.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from codesign_toolkit.models import BackendInvocation, VerificationResult


class SigningError(Exception):
    """Base exception; catch this for any package-raised error."""

    kind = "SigningError"


class InputNotFound(SigningError):
    kind = "InputNotFound"


class OutputNotWritable(SigningError):
    kind = "OutputNotWritable"


class UnsupportedType(SigningError):
    kind = "UnsupportedType"


class UnsupportedOperation(SigningError):
    kind = "UnsupportedOperation"


class UnsupportedPlatform(SigningError):
    """The host lacks the native tool a backend needs."""

    kind = "UnsupportedPlatform"


class InvalidContainer(SigningError):
    """The artifact is not a well-formed container of its declared type."""

    kind = "InvalidContainer"


class CryptoFailure(SigningError):
    kind = "CryptoFailure"


class CredentialError(CryptoFailure):
    """Key or certificate material is missing, unreadable, or mismatched."""


class SignatureInvalid(CryptoFailure):
    """Verification ran to completion and rejected the signature."""

    def __init__(self, message: str, result: VerificationResult) -> None:
        super().__init__(message)
        self.result = result


class BackendFailure(SigningError):
    """An external signing tool exited non-zero."""

    kind = "BackendFailure"

    def __init__(self, message: str, invocation: BackendInvocation) -> None:
        super().__init__(message)
        self.invocation = invocation

    def __str__(self) -> str:
        detail = self.invocation.output.strip()
        base = super().__str__()
        return f"{base}: {detail}" if detail else base


class TimestampUnavailable(SigningError):
    """No usable timestamp token could be obtained.  Never fatal."""

    kind = "TimestampUnavailable"


class AuditUnavailable(SigningError):
    """The audit tracker rejected or could not receive a request.  Never fatal."""

    kind = "AuditUnavailable"


__all__ = [
    "AuditUnavailable",
    "BackendFailure",
    "CredentialError",
    "CryptoFailure",
    "InputNotFound",
    "InvalidContainer",
    "OutputNotWritable",
    "SignatureInvalid",
    "SigningError",
    "TimestampUnavailable",
    "UnsupportedOperation",
    "UnsupportedPlatform",
    "UnsupportedType",
]

"""Pydantic models for codesign-toolkit."""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from pathlib import PurePath

from pydantic import BaseModel, ConfigDict, Field

from codesign_toolkit.errors import UnsupportedType


class ArtifactType(str, Enum):
    """Container formats the toolkit knows how to sign."""

    windows = "windows"
    java = "java"
    air = "air"
    apple = "apple"


class Operation(str, Enum):
    sign = "sign"
    verify = "verify"
    unsign = "unsign"
    timestamp = "timestamp"
    ticket_create = "ticket_create"
    ticket_update = "ticket_update"


class Outcome(str, Enum):
    success = "success"
    failure = "failure"


EXTENSION_TYPES: dict[str, ArtifactType] = {
    "exe": ArtifactType.windows,
    "dll": ArtifactType.windows,
    "msi": ArtifactType.windows,
    "cab": ArtifactType.windows,
    "cat": ArtifactType.windows,
    "appx": ArtifactType.windows,
    "jar": ArtifactType.java,
    "air": ArtifactType.air,
    "pkg": ArtifactType.apple,
    "ipa": ArtifactType.apple,
    "app": ArtifactType.apple,
}


def infer_artifact_type(path: str) -> ArtifactType:
    """Map *path*'s extension to an :class:`ArtifactType`.

    Raises:
        UnsupportedType: if the extension is not one the toolkit handles.
    """
    suffix = PurePath(path.rstrip("/")).suffix.lower().lstrip(".")
    try:
        return EXTENSION_TYPES[suffix]
    except KeyError:
        raise UnsupportedType(
            f"Unsupported file type: {suffix or '(none)'} "
            f"(supported: {', '.join(sorted(EXTENSION_TYPES))})"
        ) from None


def resolve_artifact_type(value: ArtifactType | str | None, path: str) -> ArtifactType:
    """Return the explicit type if given, otherwise infer it from *path*."""
    if value is None:
        return infer_artifact_type(path)
    try:
        return ArtifactType(value)
    except ValueError:
        supported = ", ".join(t.value for t in ArtifactType)
        raise UnsupportedType(
            f"Unsupported type: {value} (supported: {supported})"
        ) from None


# ---------------------------------------------------------------------------
# Credential bundles
# ---------------------------------------------------------------------------


class WindowsCredentials(BaseModel):
    """Material for ``osslsigncode``.

    ``certificate`` may be a PEM/DER certificate paired with ``private_key``,
    or a PKCS#12 container (``.p12``/``.pfx``) on its own.
    """

    certificate: str | None = None
    private_key: str | None = None
    password: str | None = Field(default=None, repr=False)
    app_name: str | None = None
    app_url: str | None = None


class JavaCredentials(BaseModel):
    """Keystore reference for ``jarsigner``."""

    keystore: str | None = None
    alias: str | None = None
    store_password: str | None = Field(default=None, repr=False)
    key_password: str | None = Field(default=None, repr=False)


class Pkcs12Credentials(BaseModel):
    """PKCS#12 (or combined PEM) bundle used for AIR and Apple signing."""

    path: str | None = None
    passphrase: str | None = Field(default=None, repr=False)
    identity: str = "Developer ID Application"


CredentialBundle = WindowsCredentials | JavaCredentials | Pkcs12Credentials


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


class FileEntry(BaseModel):
    """Size and SHA-256 digest of one container member."""

    path: str
    size_bytes: int = Field(ge=0)
    sha256_hash: str = Field(min_length=64, max_length=64)


class Manifest(BaseModel):
    """Ordered digest listing of a container, signature area excluded."""

    files: list[FileEntry] = Field(default_factory=list)

    @property
    def paths(self) -> list[str]:
        return [entry.path for entry in self.files]

    def canonical_bytes(self) -> bytes:
        """Deterministic JSON serialisation used as the signed payload."""
        data = self.model_dump(mode="json")
        return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------


class SignatureRecord(BaseModel):
    """Decoded form of a detached CMS signature stored in a container."""

    certificates: list[bytes] = Field(min_length=1)  # DER, signer first
    digest_algorithm: str = "sha256"
    signed_attributes: bytes  # DER SET OF Attribute, exactly as signed
    signature_algorithm: str
    signature: bytes
    timestamp_token: bytes | None = None  # DER ContentInfo

    @property
    def stamped(self) -> bool:
        return self.timestamp_token is not None


class TimestampInfo(BaseModel):
    """Advisory report on a signature's timestamp token."""

    present: bool = False
    gen_time: datetime | None = None
    policy: str | None = None
    error: str | None = None


class VerificationResult(BaseModel):
    """Outcome of verifying a signed container."""

    valid: bool
    signer: str | None = None
    timestamp: TimestampInfo = Field(default_factory=TimestampInfo)
    certificate_matches: bool | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Operations and audit
# ---------------------------------------------------------------------------


class BackendInvocation(BaseModel):
    """One external tool run.  ``argv`` has secrets redacted."""

    argv: list[str]
    exit_code: int
    output: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class OperationResult(BaseModel):
    """What :meth:`SigningDispatcher.execute` hands back on success."""

    operation: Operation
    artifact_type: ArtifactType
    input_path: str
    output_path: str | None = None
    message: str
    verification: VerificationResult | None = None
    timestamp: TimestampInfo | None = None
    invocation: BackendInvocation | None = None
    ticket_key: str | None = None


class AuditRecord(BaseModel):
    """Immutable record of one terminal operation outcome."""

    model_config = ConfigDict(frozen=True)

    operation: str
    artifact_type: str
    input_path: str
    output_path: str | None = None
    outcome: Outcome
    error_kind: str | None = None
    error_detail: str | None = None
    timestamp: datetime
    principal: str
    host: str


__all__ = [
    "EXTENSION_TYPES",
    "ArtifactType",
    "AuditRecord",
    "BackendInvocation",
    "CredentialBundle",
    "FileEntry",
    "JavaCredentials",
    "Manifest",
    "Operation",
    "OperationResult",
    "Outcome",
    "Pkcs12Credentials",
    "SignatureRecord",
    "TimestampInfo",
    "VerificationResult",
    "WindowsCredentials",
    "infer_artifact_type",
    "resolve_artifact_type",
]

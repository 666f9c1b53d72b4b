"""codesign-toolkit: sign and verify Windows, Java, Adobe AIR and Apple artifacts."""

from codesign_toolkit.air import AirPipeline, AirSignature
from codesign_toolkit.audit import AuditEmitter, JiraClient
from codesign_toolkit.backends import AppleAdapter, BackendRunner, JavaAdapter, WindowsAdapter
from codesign_toolkit.codec import SignatureCodec
from codesign_toolkit.config import Settings, load_settings
from codesign_toolkit.credentials import KeyManager, SigningIdentity
from codesign_toolkit.dispatcher import SigningDispatcher
from codesign_toolkit.errors import (
    AuditUnavailable,
    BackendFailure,
    CredentialError,
    CryptoFailure,
    InputNotFound,
    InvalidContainer,
    OutputNotWritable,
    SignatureInvalid,
    SigningError,
    TimestampUnavailable,
    UnsupportedOperation,
    UnsupportedPlatform,
    UnsupportedType,
)
from codesign_toolkit.manifest import ManifestBuilder
from codesign_toolkit.models import (
    ArtifactType,
    AuditRecord,
    FileEntry,
    JavaCredentials,
    Manifest,
    Operation,
    OperationResult,
    Outcome,
    Pkcs12Credentials,
    SignatureRecord,
    TimestampInfo,
    VerificationResult,
    WindowsCredentials,
)
from codesign_toolkit.timestamp import TimestampClient

__version__ = "0.1.0"

__all__ = [
    "AirPipeline",
    "AirSignature",
    "AppleAdapter",
    "ArtifactType",
    "AuditEmitter",
    "AuditRecord",
    "AuditUnavailable",
    "BackendFailure",
    "BackendRunner",
    "CredentialError",
    "CryptoFailure",
    "FileEntry",
    "InputNotFound",
    "InvalidContainer",
    "JavaAdapter",
    "JavaCredentials",
    "JiraClient",
    "KeyManager",
    "Manifest",
    "ManifestBuilder",
    "Operation",
    "OperationResult",
    "OutputNotWritable",
    "Outcome",
    "Pkcs12Credentials",
    "SignatureCodec",
    "SignatureInvalid",
    "SignatureRecord",
    "SigningDispatcher",
    "SigningError",
    "SigningIdentity",
    "Settings",
    "TimestampClient",
    "TimestampInfo",
    "TimestampUnavailable",
    "UnsupportedOperation",
    "UnsupportedPlatform",
    "UnsupportedType",
    "VerificationResult",
    "WindowsAdapter",
    "WindowsCredentials",
    "load_settings",
]

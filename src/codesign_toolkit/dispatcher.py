"""Operation dispatcher.

:class:`SigningDispatcher` validates a request, routes it through a table
keyed by ``(Operation, ArtifactType)`` and files exactly one audit record
per :meth:`~SigningDispatcher.execute` call, whatever the outcome.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from pathlib import Path

from codesign_toolkit.air import AirPipeline
from codesign_toolkit.audit import AuditEmitter, build_record
from codesign_toolkit.backends import (
    AppleAdapter,
    BackendAdapter,
    BackendRunner,
    JavaAdapter,
    WindowsAdapter,
)
from codesign_toolkit.config import Settings
from codesign_toolkit.credentials import KeyManager
from codesign_toolkit.errors import (
    CredentialError,
    InputNotFound,
    OutputNotWritable,
    SignatureInvalid,
    UnsupportedOperation,
)
from codesign_toolkit.models import (
    ArtifactType,
    CredentialBundle,
    Operation,
    OperationResult,
    Pkcs12Credentials,
    VerificationResult,
    resolve_artifact_type,
)
from codesign_toolkit.timestamp import TimestampClient

logger = logging.getLogger(__name__)

_PRODUCES_OUTPUT = frozenset({Operation.sign, Operation.unsign})


@dataclass(frozen=True)
class Request:
    """A validated operation, as handed to a dispatch-table handler."""

    operation: Operation
    artifact_type: ArtifactType
    credentials: CredentialBundle | None
    input_path: str
    output_path: str | None
    timestamp_url: str | None
    expected_certificate: str | None


Handler = Callable[[Request], OperationResult]


class SigningDispatcher:
    """Route sign, verify, unsign and timestamp-check requests to their handlers."""

    def __init__(
        self,
        runner: BackendRunner | None = None,
        air_pipeline: AirPipeline | None = None,
        audit: AuditEmitter | None = None,
        key_manager: KeyManager | None = None,
    ) -> None:
        runner = runner or BackendRunner()
        key_manager = key_manager or KeyManager()
        self._air = air_pipeline or AirPipeline(key_manager=key_manager)
        self._audit = audit or AuditEmitter.disabled()

        adapters: list[BackendAdapter] = [
            WindowsAdapter(runner),
            JavaAdapter(runner),
            AppleAdapter(runner, key_manager),
        ]
        self._table: dict[tuple[Operation, ArtifactType], Handler] = {}
        for adapter in adapters:
            kind = adapter.artifact_type
            self._table[(Operation.sign, kind)] = partial(self._backend_sign, adapter)
            self._table[(Operation.verify, kind)] = partial(self._backend_verify, adapter)
            self._table[(Operation.timestamp, kind)] = partial(
                self._backend_timestamp, adapter
            )
        self._table[(Operation.unsign, ArtifactType.windows)] = partial(
            self._backend_unsign, adapters[0]
        )
        self._table[(Operation.sign, ArtifactType.air)] = self._air_sign
        self._table[(Operation.verify, ArtifactType.air)] = self._air_verify
        self._table[(Operation.timestamp, ArtifactType.air)] = self._air_timestamp

        self._credential_models: dict[ArtifactType, type] = {
            adapter.artifact_type: adapter.credentials_model for adapter in adapters
        }
        self._credential_models[ArtifactType.air] = Pkcs12Credentials

    @classmethod
    def from_settings(
        cls, settings: Settings, runner: BackendRunner | None = None
    ) -> SigningDispatcher:
        key_manager = KeyManager()
        pipeline = AirPipeline(
            key_manager=key_manager,
            timestamp_client=TimestampClient(timeout=settings.timestamp.timeout_seconds),
        )
        return cls(
            runner=runner,
            air_pipeline=pipeline,
            audit=AuditEmitter.from_settings(settings.tracker),
            key_manager=key_manager,
        )

    def supports(self, operation: Operation, artifact_type: ArtifactType) -> bool:
        return (operation, artifact_type) in self._table

    # ------------------------------------------------------------------
    # Execute
    # ------------------------------------------------------------------

    def execute(
        self,
        operation: Operation | str,
        artifact_type: ArtifactType | str | None,
        credentials: CredentialBundle | None,
        input_path: str,
        output_path: str | None = None,
        timestamp_url: str | None = None,
        *,
        expected_certificate: str | None = None,
    ) -> OperationResult:
        """Run one operation and audit its outcome.

        Exactly one audit record is emitted per call.  Errors raised while
        validating or handling the request are audited as failures and then
        re-raised unchanged.

        Raises:
            UnsupportedType: the artifact type is unknown or cannot be inferred.
            UnsupportedOperation: no handler exists for the operation and type.
            InputNotFound: *input_path* does not exist or is unreadable.
            OutputNotWritable: *output_path* is missing or cannot be created.
            CryptoFailure: credentials are wrong, or a signature is invalid.
            BackendFailure: an external signing tool exited non-zero.
        """
        op_name = operation.value if isinstance(operation, Operation) else str(operation)
        type_name = (
            artifact_type.value
            if isinstance(artifact_type, ArtifactType)
            else str(artifact_type or "unknown")
        )
        audit_output = output_path if operation in _PRODUCES_OUTPUT else None

        try:
            operation = _parse_operation(operation)
            kind = resolve_artifact_type(artifact_type, input_path)
            type_name = kind.value
            request = self._validate(
                operation,
                kind,
                credentials,
                input_path,
                output_path,
                timestamp_url,
                expected_certificate,
            )
            result = self._table[(request.operation, request.artifact_type)](request)
        except Exception as exc:
            logger.error("%s %s failed: %s", op_name, input_path, exc)
            self._emit(op_name, type_name, input_path, audit_output, exc)
            raise

        result.ticket_key = self._emit(op_name, type_name, input_path, audit_output, None)
        return result

    def _emit(
        self,
        operation: str,
        artifact_type: str,
        input_path: str,
        output_path: str | None,
        error: Exception | None,
    ) -> str | None:
        record = build_record(operation, artifact_type, input_path, output_path, error)
        return self._audit.emit(record)

    def _validate(
        self,
        operation: Operation,
        kind: ArtifactType,
        credentials: CredentialBundle | None,
        input_path: str,
        output_path: str | None,
        timestamp_url: str | None,
        expected_certificate: str | None,
    ) -> Request:
        if not self.supports(operation, kind):
            raise UnsupportedOperation(
                f"Operation {operation.value} is not supported for {kind.value} files"
            )

        source = Path(input_path)
        if not source.exists() or not os.access(source, os.R_OK):
            raise InputNotFound(f"Input file does not exist: {input_path}")

        if operation in _PRODUCES_OUTPUT:
            if not output_path:
                raise OutputNotWritable(f"An output path is required to {operation.value}")
            parent = Path(output_path).resolve().parent
            if not parent.is_dir() or not os.access(parent, os.W_OK):
                raise OutputNotWritable(f"Output directory is not writable: {parent}")

        expected_model = self._credential_models[kind]
        if operation is Operation.sign and credentials is None:
            raise CredentialError(f"Signing {kind.value} files requires credentials")
        if credentials is not None and not isinstance(credentials, expected_model):
            raise CredentialError(
                f"{kind.value} operations take {expected_model.__name__}, "
                f"not {type(credentials).__name__}"
            )

        return Request(
            operation=operation,
            artifact_type=kind,
            credentials=credentials,
            input_path=input_path,
            output_path=output_path if operation in _PRODUCES_OUTPUT else None,
            timestamp_url=timestamp_url,
            expected_certificate=expected_certificate,
        )

    # ------------------------------------------------------------------
    # Pass-through handlers
    # ------------------------------------------------------------------

    @staticmethod
    def _backend_sign(adapter: BackendAdapter, request: Request) -> OperationResult:
        invocation = adapter.sign(
            request.credentials, request.input_path, request.output_path, request.timestamp_url
        )
        return OperationResult(
            operation=request.operation,
            artifact_type=request.artifact_type,
            input_path=request.input_path,
            output_path=request.output_path,
            message=f"Signed {request.artifact_type.value} file: {request.output_path}",
            invocation=invocation,
        )

    @staticmethod
    def _backend_verify(adapter: BackendAdapter, request: Request) -> OperationResult:
        invocation = adapter.verify(request.credentials, request.input_path)
        return OperationResult(
            operation=request.operation,
            artifact_type=request.artifact_type,
            input_path=request.input_path,
            message=f"Signature verified: {request.input_path}",
            verification=VerificationResult(valid=True),
            invocation=invocation,
        )

    @staticmethod
    def _backend_unsign(adapter: BackendAdapter, request: Request) -> OperationResult:
        invocation = adapter.unsign(request.input_path, request.output_path)
        return OperationResult(
            operation=request.operation,
            artifact_type=request.artifact_type,
            input_path=request.input_path,
            output_path=request.output_path,
            message=f"Signature removed: {request.output_path}",
            invocation=invocation,
        )

    @staticmethod
    def _backend_timestamp(adapter: BackendAdapter, request: Request) -> OperationResult:
        invocation, info = adapter.check_timestamp(request.input_path)
        return OperationResult(
            operation=request.operation,
            artifact_type=request.artifact_type,
            input_path=request.input_path,
            message=_timestamp_message(info.present, request.input_path),
            timestamp=info,
            invocation=invocation,
        )

    # ------------------------------------------------------------------
    # AIR handlers
    # ------------------------------------------------------------------

    def _air_sign(self, request: Request) -> OperationResult:
        signature = self._air.sign(
            request.input_path,
            request.output_path,
            request.credentials,
            timestamp_url=request.timestamp_url,
        )
        stamp = "timestamped" if signature.timestamp.present else "unstamped"
        return OperationResult(
            operation=request.operation,
            artifact_type=request.artifact_type,
            input_path=request.input_path,
            output_path=request.output_path,
            message=f"Signed air file ({stamp}): {request.output_path}",
            timestamp=signature.timestamp,
        )

    def _air_verify(self, request: Request) -> OperationResult:
        verification = self._air.verify(
            request.input_path, expected_certificate=request.expected_certificate
        )
        if not verification.valid:
            raise SignatureInvalid(
                f"AIR file signature verification failed: {verification.error}",
                verification,
            )
        return OperationResult(
            operation=request.operation,
            artifact_type=request.artifact_type,
            input_path=request.input_path,
            message=f"Signature verified: {request.input_path} (signer {verification.signer})",
            verification=verification,
            timestamp=verification.timestamp,
        )

    def _air_timestamp(self, request: Request) -> OperationResult:
        info = self._air.check_timestamp(request.input_path)
        return OperationResult(
            operation=request.operation,
            artifact_type=request.artifact_type,
            input_path=request.input_path,
            message=_timestamp_message(info.present, request.input_path),
            timestamp=info,
        )


def _parse_operation(value: Operation | str) -> Operation:
    try:
        return Operation(value)
    except ValueError:
        raise UnsupportedOperation(f"Unknown operation: {value}") from None


def _timestamp_message(present: bool, input_path: str) -> str:
    if present:
        return f"Timestamp found: {input_path}"
    return f"No timestamp found: {input_path}"


__all__ = ["Handler", "Request", "SigningDispatcher"]

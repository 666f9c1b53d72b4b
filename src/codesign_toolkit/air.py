"""Signing and verification pipeline for Adobe AIR packages.

An AIR package is a ZIP archive whose root holds
``META-INF/AIR/application.xml``.  Signing extracts the archive into a private
temporary directory, hashes every member into a manifest, signs the manifest
bytes with a detached CMS signature, optionally embeds an RFC 3161 timestamp,
stores the signature at ``META-INF/AIR/signatures/signature.p7s`` and writes a
new archive.  The output file only appears once the whole run has succeeded.
"""

from __future__ import annotations

import logging
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from pydantic import BaseModel

from codesign_toolkit.archive import extract_zip, tree_members, write_zip
from codesign_toolkit.codec import SignatureCodec
from codesign_toolkit.credentials import KeyManager
from codesign_toolkit.errors import (
    CryptoFailure,
    InvalidContainer,
    SigningError,
    TimestampUnavailable,
)
from codesign_toolkit.manifest import SIGNATURE_DIR, ManifestBuilder
from codesign_toolkit.models import (
    Pkcs12Credentials,
    SignatureRecord,
    TimestampInfo,
    VerificationResult,
)
from codesign_toolkit.timestamp import TimestampClient, inspect_token

logger = logging.getLogger(__name__)

DESCRIPTOR_PATH = "META-INF/AIR/application.xml"
SIGNATURE_PATH = SIGNATURE_DIR + "signature.p7s"


class PipelineState(str, Enum):
    extracted = "extracted"
    manifest_built = "manifest_built"
    signed = "signed"
    repackaged = "repackaged"
    done = "done"
    failed = "failed"


class AirSignature(BaseModel):
    """Summary of a completed AIR signing run."""

    output_path: str
    signer: str
    members: int
    timestamp: TimestampInfo


# ---------------------------------------------------------------------------
# AirPipeline
# ---------------------------------------------------------------------------

class AirPipeline:
    """Sign, verify and inspect AIR packages."""

    def __init__(
        self,
        key_manager: KeyManager | None = None,
        codec: SignatureCodec | None = None,
        timestamp_client: TimestampClient | None = None,
        manifest_builder: ManifestBuilder | None = None,
    ) -> None:
        self._key_manager = key_manager or KeyManager()
        self._codec = codec or SignatureCodec()
        self._timestamp_client = timestamp_client or TimestampClient()
        self._manifest_builder = manifest_builder or ManifestBuilder()

    @contextmanager
    def _extracted(self, input_path: str) -> Iterator[Path]:
        """Yield the root of a private extraction of *input_path*.

        The working directory is removed when the block exits, however it
        exits.
        """
        with tempfile.TemporaryDirectory(prefix="codesign-air-") as work:
            tree = Path(work) / "tree"
            tree.mkdir()
            extract_zip(input_path, tree)
            yield tree

    @staticmethod
    def _require_descriptor(tree: Path) -> None:
        if not (tree / DESCRIPTOR_PATH).is_file():
            raise InvalidContainer(f"Invalid AIR file: missing {DESCRIPTOR_PATH}")

    # ------------------------------------------------------------------
    # Sign
    # ------------------------------------------------------------------

    def sign(
        self,
        input_path: str,
        output_path: str,
        credentials: Pkcs12Credentials,
        timestamp_url: str | None = None,
    ) -> AirSignature:
        """Sign *input_path* and write the signed package to *output_path*.

        A timestamp is requested when *timestamp_url* is given; if none can be
        obtained the package is still signed, just without a token.

        Raises:
            InvalidContainer: the input is not a ZIP or lacks the descriptor.
            CryptoFailure: the credentials cannot be used for signing.
        """
        state: PipelineState | None = None
        try:
            with self._extracted(input_path) as tree:
                state = self._advance(input_path, PipelineState.extracted)
                self._require_descriptor(tree)

                manifest = self._manifest_builder.build(tree)
                state = self._advance(input_path, PipelineState.manifest_built)

                identity = self._key_manager.load_identity(
                    credentials.path, credentials.passphrase
                )
                record = self._codec.sign(manifest.canonical_bytes(), identity)
                timestamp = TimestampInfo()
                if timestamp_url:
                    record, timestamp = self._stamp(record, timestamp_url)
                signature_file = tree / SIGNATURE_PATH
                signature_file.parent.mkdir(parents=True, exist_ok=True)
                signature_file.write_bytes(self._codec.encode(record))
                state = self._advance(input_path, PipelineState.signed)

                members = manifest.paths + tree_members(tree, SIGNATURE_DIR)
                write_zip(tree, members, output_path)
                state = self._advance(input_path, PipelineState.repackaged)
        except SigningError as exc:
            logger.error(
                "AIR %s: %s(%s) after %s",
                input_path,
                PipelineState.failed.value,
                exc.kind,
                state.value if state else "start",
            )
            raise

        self._advance(input_path, PipelineState.done)
        logger.info("AIR file signed successfully: %s", output_path)
        return AirSignature(
            output_path=output_path,
            signer=identity.subject,
            members=len(manifest.files),
            timestamp=timestamp,
        )

    @staticmethod
    def _advance(input_path: str, state: PipelineState) -> PipelineState:
        logger.debug("AIR %s: %s", input_path, state.value)
        return state

    def _stamp(
        self, record: SignatureRecord, url: str
    ) -> tuple[SignatureRecord, TimestampInfo]:
        logger.info("Adding timestamp from: %s", url)
        try:
            token = self._timestamp_client.request_token(url, record.signature)
            info = inspect_token(token, record.signature)
        except TimestampUnavailable as exc:
            logger.warning("Continuing without timestamp: %s", exc)
            return record, TimestampInfo(present=False, error=str(exc))
        return self._codec.embed_timestamp(record, token), info

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def _read_signature(self, tree: Path) -> SignatureRecord:
        signature_file = tree / SIGNATURE_PATH
        if not signature_file.is_file():
            raise InvalidContainer(f"AIR file is not signed: missing {SIGNATURE_PATH}")
        return self._codec.decode(signature_file.read_bytes())

    def verify(
        self, input_path: str, expected_certificate: str | None = None
    ) -> VerificationResult:
        """Verify the signature of *input_path* against its current contents.

        The manifest is rebuilt from the extracted members, so any member
        changed after signing makes the result invalid.  When
        *expected_certificate* is given the embedded signer certificate is
        compared with it; a mismatch is reported, not treated as invalid.

        Raises:
            InvalidContainer: the input is not an AIR package or is unsigned.
        """
        with self._extracted(input_path) as tree:
            self._require_descriptor(tree)
            try:
                record = self._read_signature(tree)
                manifest = self._manifest_builder.build(tree)
                certificate = self._codec.verify(record, manifest.canonical_bytes())
            except CryptoFailure as exc:
                logger.error("AIR file signature verification failed: %s", exc)
                return VerificationResult(valid=False, error=str(exc))

        timestamp = self._timestamp_info(record)
        matches = None
        if expected_certificate:
            expected = self._key_manager.load_certificate(expected_certificate)
            matches = expected.public_bytes(serialization.Encoding.DER) == record.certificates[0]
            if not matches:
                logger.warning("AIR file certificate does not match provided certificate")

        logger.info("AIR file signature verified successfully: %s", input_path)
        return VerificationResult(
            valid=True,
            signer=certificate.subject.rfc4514_string(),
            timestamp=timestamp,
            certificate_matches=matches,
        )

    def check_timestamp(self, input_path: str) -> TimestampInfo:
        """Report whether *input_path*'s signature carries a timestamp."""
        with self._extracted(input_path) as tree:
            record = self._read_signature(tree)
        return self._timestamp_info(record)

    @staticmethod
    def _timestamp_info(record: SignatureRecord) -> TimestampInfo:
        if record.timestamp_token is None:
            return TimestampInfo(present=False)
        try:
            return inspect_token(record.timestamp_token, record.signature)
        except TimestampUnavailable as exc:
            logger.warning("Ignoring embedded timestamp: %s", exc)
            return TimestampInfo(present=False, error=str(exc))


__all__ = [
    "DESCRIPTOR_PATH",
    "SIGNATURE_PATH",
    "AirPipeline",
    "AirSignature",
    "PipelineState",
]

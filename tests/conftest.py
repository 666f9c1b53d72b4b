"""Shared test fixtures for codesign-toolkit."""

from __future__ import annotations

import logging
import zipfile
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import pytest
from asn1crypto import cms, tsp
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from codesign_toolkit.audit import AuditEmitter
from codesign_toolkit.backends import BackendRunner, redact
from codesign_toolkit.config import ENV_KEYS, reset_settings
from codesign_toolkit.credentials import SigningIdentity
from codesign_toolkit.models import AuditRecord, BackendInvocation, Pkcs12Credentials

PASSPHRASE = "secret"
TSA_URL = "http://tsa.test/tsr"
TSA_GEN_TIME = datetime(2026, 3, 14, 15, 9, 26, tzinfo=UTC)
TSA_POLICY = "1.2.3.4.1"

# ---------------------------------------------------------------------------
# Credential fixtures
# ---------------------------------------------------------------------------


def make_identity(common_name: str = "Test Signer", key=None) -> SigningIdentity:
    """A self-signed certificate and its private key."""
    key = key or rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(tz=UTC)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return SigningIdentity(private_key=key, certificate=certificate)


def write_p12(identity: SigningIdentity, path: Path, passphrase: str = PASSPHRASE) -> Path:
    path.write_bytes(
        pkcs12.serialize_key_and_certificates(
            b"signer",
            identity.private_key,
            identity.certificate,
            None,
            serialization.BestAvailableEncryption(passphrase.encode()),
        )
    )
    return path


def write_pem_bundle(identity: SigningIdentity, path: Path) -> Path:
    path.write_bytes(
        identity.private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
        + identity.certificate.public_bytes(serialization.Encoding.PEM)
    )
    return path


@pytest.fixture(scope="session")
def rsa_identity() -> SigningIdentity:
    """An RSA-2048 self-signed identity shared across the session."""
    return make_identity()


@pytest.fixture(scope="session")
def ec_identity() -> SigningIdentity:
    return make_identity("EC Signer", ec.generate_private_key(ec.SECP256R1()))


@pytest.fixture()
def p12_path(tmp_path: Path, rsa_identity: SigningIdentity) -> Path:
    """The session identity as a passphrase-protected PKCS#12 file."""
    return write_p12(rsa_identity, tmp_path / "signer.p12")


@pytest.fixture()
def p12_credentials(p12_path: Path) -> Pkcs12Credentials:
    return Pkcs12Credentials(path=str(p12_path), passphrase=PASSPHRASE)


@pytest.fixture()
def cert_pem_path(tmp_path: Path, rsa_identity: SigningIdentity) -> Path:
    path = tmp_path / "signer.crt"
    path.write_bytes(rsa_identity.certificate.public_bytes(serialization.Encoding.PEM))
    return path


# ---------------------------------------------------------------------------
# AIR package fixtures
# ---------------------------------------------------------------------------

APPLICATION_XML = b'<?xml version="1.0"?><application><id>com.example.demo</id></application>'


def write_zip(path: Path, members: Iterable[tuple[str, bytes]]) -> Path:
    with zipfile.ZipFile(path, "w") as archive:
        for name, data in members:
            archive.writestr(name, data)
    return path


def rewrite_member(source: Path, target: Path, name: str, data: bytes) -> Path:
    """Copy the ZIP at *source* to *target*, replacing member *name* with *data*."""
    with zipfile.ZipFile(source) as archive:
        members = [
            (info.filename, data if info.filename == name else archive.read(info))
            for info in archive.infolist()
        ]
    return write_zip(target, members)


@pytest.fixture()
def air_package(tmp_path: Path) -> Path:
    """A three-member AIR package: mimetype, descriptor and a SWF."""
    return write_zip(
        tmp_path / "demo.air",
        [
            ("mimetype", b"application/vnd.adobe.air-application-installer-package+zip"),
            ("META-INF/AIR/application.xml", APPLICATION_XML),
            ("main.swf", bytes(range(256)) * 4),
        ],
    )


@pytest.fixture()
def air_package_without_descriptor(tmp_path: Path) -> Path:
    return write_zip(
        tmp_path / "broken.air",
        [("mimetype", b"application/vnd.adobe.air-application-installer-package+zip"),
         ("main.swf", b"FWS")],
    )


# ---------------------------------------------------------------------------
# Timestamp authority
# ---------------------------------------------------------------------------


def tsa_response(request_der: bytes, nonce_offset: int = 0) -> bytes:
    """A granted ``TimeStampResp`` echoing the request's imprint and nonce."""
    request = tsp.TimeStampReq.load(request_der)
    imprint = request["message_imprint"]
    tst_info = tsp.TSTInfo(
        {
            "version": "v1",
            "policy": TSA_POLICY,
            "message_imprint": {
                "hash_algorithm": {"algorithm": imprint["hash_algorithm"]["algorithm"].native},
                "hashed_message": imprint["hashed_message"].native,
            },
            "serial_number": 42,
            "gen_time": TSA_GEN_TIME,
            "nonce": request["nonce"].native + nonce_offset,
        }
    )
    signed_data = cms.SignedData(
        {
            "version": "v3",
            "digest_algorithms": [],
            "encap_content_info": {"content_type": "tst_info", "content": tst_info},
            "signer_infos": [],
        }
    )
    return tsp.TimeStampResp(
        {
            "status": {"status": "granted"},
            "time_stamp_token": {"content_type": "signed_data", "content": signed_data},
        }
    ).dump()


class RecordingHandler:
    """``httpx.MockTransport`` handler that keeps every request it sees."""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]) -> None:
        self.requests: list[httpx.Request] = []
        self._respond = respond

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._respond(request)


@pytest.fixture()
def tsa_handler() -> RecordingHandler:
    return RecordingHandler(
        lambda request: httpx.Response(
            200,
            content=tsa_response(request.content),
            headers={"Content-Type": "application/timestamp-reply"},
        )
    )


@pytest.fixture()
def tsa_transport(tsa_handler: RecordingHandler) -> httpx.MockTransport:
    return httpx.MockTransport(tsa_handler)


@pytest.fixture()
def unreachable_transport() -> httpx.MockTransport:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    return httpx.MockTransport(refuse)


# ---------------------------------------------------------------------------
# Backend and audit doubles
# ---------------------------------------------------------------------------


class FakeRunner(BackendRunner):
    """Records argv instead of running tools.

    *hook* runs before each call and may create files a real tool would.
    """

    def __init__(
        self,
        exit_code: int = 0,
        output: str = "",
        tools: Iterable[str] = (),
        platform: str = "linux",
        hook: Callable[[list[str]], None] | None = None,
    ) -> None:
        self.calls: list[list[str]] = []
        self.exit_code = exit_code
        self.output = output
        self.tools = set(tools)
        self.platform = platform
        self.hook = hook

    def which(self, tool: str) -> str | None:
        return f"/usr/bin/{tool}" if tool in self.tools else None

    def run(self, argv: list[str], cwd: str | None = None) -> BackendInvocation:
        self.calls.append(list(argv))
        if self.hook is not None:
            self.hook(argv)
        return BackendInvocation(
            argv=redact(argv), exit_code=self.exit_code, output=self.output
        )


@pytest.fixture()
def fake_runner() -> FakeRunner:
    return FakeRunner()


class RecordingAudit(AuditEmitter):
    """Audit emitter that keeps records in memory."""

    def __init__(self, ticket_key: str | None = None) -> None:
        super().__init__(None, None)
        self.records: list[AuditRecord] = []
        self._ticket_key = ticket_key

    def emit(self, record: AuditRecord) -> str | None:
        self.records.append(record)
        return self._ticket_key


@pytest.fixture()
def recording_audit() -> RecordingAudit:
    return RecordingAudit()


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch: pytest.MonkeyPatch):
    """Unset toolkit environment variables and forget cached settings."""
    for key in ENV_KEYS.values():
        monkeypatch.delenv(key, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture()
def restore_logging():
    """Undo handlers and level installed by ``configure_logging``."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in root.handlers[:]:
        if type(handler) in (logging.StreamHandler, logging.FileHandler):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)

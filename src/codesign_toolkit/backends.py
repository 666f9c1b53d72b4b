"""Pass-through adapters for the external Windows, Java and Apple signing tools.

Each adapter turns a credential bundle into an argument vector and hands it to
:class:`BackendRunner`, which runs the tool without a shell.  Exit status zero
is success; anything else raises :class:`BackendFailure` with the tool's
output attached.  No adapter retries.
"""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path, PurePath

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.padding import PKCS1v15
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed

from codesign_toolkit.archive import (
    extract_zip,
    publish_file,
    staged_tree,
    tree_members,
    write_zip,
)
from codesign_toolkit.credentials import KeyManager
from codesign_toolkit.errors import (
    BackendFailure,
    CredentialError,
    InvalidContainer,
    UnsupportedOperation,
    UnsupportedPlatform,
    UnsupportedType,
)
from codesign_toolkit.models import (
    ArtifactType,
    BackendInvocation,
    JavaCredentials,
    Pkcs12Credentials,
    TimestampInfo,
    WindowsCredentials,
)

logger = logging.getLogger(__name__)

_SECRET_FLAGS = frozenset({"-pass", "-storepass", "-keypass"})
_REDACTED = "****"
_NEGATIONS = ("not ", "no ", "without", "missing", "unavailable")

BACKEND_TOOLS = ("osslsigncode", "jarsigner", "keytool", "codesign", "xar", "isign")


def redact(argv: list[str]) -> list[str]:
    """Return *argv* with the value following any password flag masked."""
    redacted: list[str] = []
    hide_next = False
    for arg in argv:
        redacted.append(_REDACTED if hide_next else arg)
        hide_next = arg in _SECRET_FLAGS
    return redacted


def mentions_timestamp(output: str) -> bool:
    """True if a tool's verbose output reports a timestamp on the signature."""
    for line in output.lower().splitlines():
        if "timestamp" in line and not any(word in line for word in _NEGATIONS):
            return True
    return False


class BackendRunner:
    """Run external tools as argument vectors and capture their output."""

    platform = sys.platform

    def which(self, tool: str) -> str | None:
        return shutil.which(tool)

    def run(self, argv: list[str], cwd: str | None = None) -> BackendInvocation:
        safe_argv = redact(argv)
        logger.info("Executing: %s", shlex.join(safe_argv))
        try:
            completed = subprocess.run(
                argv, capture_output=True, text=True, check=False, cwd=cwd
            )
        except FileNotFoundError as exc:
            return BackendInvocation(argv=safe_argv, exit_code=127, output=str(exc))
        return BackendInvocation(
            argv=safe_argv,
            exit_code=completed.returncode,
            output=completed.stdout + completed.stderr,
        )

    def checked(self, argv: list[str], message: str, cwd: str | None = None) -> BackendInvocation:
        """Run *argv*; raise :class:`BackendFailure` with *message* on non-zero exit."""
        invocation = self.run(argv, cwd=cwd)
        if not invocation.succeeded:
            raise BackendFailure(message, invocation)
        return invocation


def probe_tools(runner: BackendRunner) -> dict[str, bool]:
    """Which backend tools are on ``PATH``."""
    return {tool: runner.which(tool) is not None for tool in BACKEND_TOOLS}


# ---------------------------------------------------------------------------
# Adapter base
# ---------------------------------------------------------------------------


class BackendAdapter:
    """Common surface for the pass-through adapters."""

    artifact_type: ArtifactType
    credentials_model: type = object

    def __init__(self, runner: BackendRunner | None = None) -> None:
        self.runner = runner or BackendRunner()

    def sign(self, credentials, input_path: str, output_path: str,
             timestamp_url: str | None = None) -> BackendInvocation:
        raise NotImplementedError

    def verify(self, credentials, input_path: str) -> BackendInvocation:
        raise NotImplementedError

    def unsign(self, input_path: str, output_path: str) -> BackendInvocation:
        raise UnsupportedOperation(
            f"Unsigning {self.artifact_type.value} files is not supported"
        )

    def check_timestamp(self, input_path: str) -> tuple[BackendInvocation, TimestampInfo]:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Windows (osslsigncode)
# ---------------------------------------------------------------------------


class WindowsAdapter(BackendAdapter):
    artifact_type = ArtifactType.windows
    credentials_model = WindowsCredentials

    def sign(self, credentials: WindowsCredentials, input_path: str, output_path: str,
             timestamp_url: str | None = None) -> BackendInvocation:
        if not credentials.certificate:
            raise CredentialError("A certificate (-cert) is required for Windows signing")

        argv = ["osslsigncode", "sign"]
        suffix = PurePath(credentials.certificate).suffix.lower()
        if suffix in (".p12", ".pfx") and not credentials.private_key:
            argv += ["-pkcs12", credentials.certificate]
        else:
            argv += ["-certs", credentials.certificate]
            if credentials.private_key:
                argv += ["-key", credentials.private_key]
        if credentials.password:
            argv += ["-pass", credentials.password]
        if credentials.app_name:
            argv += ["-n", credentials.app_name]
        if credentials.app_url:
            argv += ["-i", credentials.app_url]
        if timestamp_url:
            argv += ["-t", timestamp_url]
        argv += ["-in", input_path, "-out", output_path]

        return self.runner.checked(argv, "Failed to sign Windows binary")

    def verify(self, credentials: WindowsCredentials | None, input_path: str) -> BackendInvocation:
        return self.runner.checked(
            ["osslsigncode", "verify", "-in", input_path],
            "Windows binary signature verification failed",
        )

    def unsign(self, input_path: str, output_path: str) -> BackendInvocation:
        return self.runner.checked(
            ["osslsigncode", "remove-signature", "-in", input_path, "-out", output_path],
            "Failed to remove signature",
        )

    def check_timestamp(self, input_path: str) -> tuple[BackendInvocation, TimestampInfo]:
        invocation = self.runner.checked(
            ["osslsigncode", "verify", "-in", input_path],
            "Windows binary signature verification failed",
        )
        return invocation, TimestampInfo(present=mentions_timestamp(invocation.output))


# ---------------------------------------------------------------------------
# Java (jarsigner)
# ---------------------------------------------------------------------------


class JavaAdapter(BackendAdapter):
    artifact_type = ArtifactType.java
    credentials_model = JavaCredentials

    def sign(self, credentials: JavaCredentials, input_path: str, output_path: str,
             timestamp_url: str | None = None) -> BackendInvocation:
        if not credentials.keystore or not credentials.alias:
            raise CredentialError("Java signing requires -keystore and -alias")

        argv = ["jarsigner"]
        if timestamp_url:
            argv += ["-tsa", timestamp_url]
        if credentials.store_password:
            argv += ["-storepass", credentials.store_password]
        if credentials.key_password:
            argv += ["-keypass", credentials.key_password]
        argv += [
            "-keystore", credentials.keystore,
            "-signedjar", output_path,
            input_path,
            credentials.alias,
        ]
        return self.runner.checked(argv, "Failed to sign Java JAR")

    def verify(self, credentials: JavaCredentials | None, input_path: str) -> BackendInvocation:
        argv = ["jarsigner", "-verify"]
        if credentials is not None and credentials.keystore:
            argv += ["-keystore", credentials.keystore]
        argv.append(input_path)
        return self.runner.checked(argv, "Java JAR signature verification failed")

    def check_timestamp(self, input_path: str) -> tuple[BackendInvocation, TimestampInfo]:
        invocation = self.runner.checked(
            ["jarsigner", "-verify", "-verbose", input_path],
            "Java JAR signature verification failed",
        )
        return invocation, TimestampInfo(present=mentions_timestamp(invocation.output))


# ---------------------------------------------------------------------------
# Apple (codesign / xar / isign)
# ---------------------------------------------------------------------------

# DER prefixes of PKCS#1 DigestInfo structures, as emitted by
# ``xar --digestinfo-to-sign``.
_DIGEST_INFO_PREFIXES: dict[bytes, hashes.HashAlgorithm] = {
    bytes.fromhex("3021300906052b0e03021a05000414"): hashes.SHA1(),
    bytes.fromhex("3031300d060960864801650304020105000420"): hashes.SHA256(),
}


def sign_digest_info(key: RSAPrivateKey, digest_info: bytes) -> bytes:
    """RSA PKCS#1 v1.5 signature over a pre-built DigestInfo."""
    for prefix, algorithm in _DIGEST_INFO_PREFIXES.items():
        if digest_info.startswith(prefix) and len(digest_info) == len(prefix) + algorithm.digest_size:
            return key.sign(digest_info[len(prefix):], PKCS1v15(), Prehashed(algorithm))
    raise CredentialError("Unrecognised digest info produced by xar")


class AppleAdapter(BackendAdapter):
    """Apple ``.pkg``, ``.ipa`` and ``.app`` signing.

    ``.app`` bundles need macOS with ``codesign``.  ``.ipa`` archives use
    ``codesign`` when available and fall back to ``isign`` elsewhere.
    ``.pkg`` installers need ``xar``.
    """

    artifact_type = ArtifactType.apple
    credentials_model = Pkcs12Credentials
    extensions = ("pkg", "ipa", "app")

    def __init__(self, runner: BackendRunner | None = None,
                 key_manager: KeyManager | None = None) -> None:
        super().__init__(runner)
        self._key_manager = key_manager or KeyManager()

    def _kind(self, path: str) -> str:
        extension = PurePath(path.rstrip("/")).suffix.lower().lstrip(".")
        if extension not in self.extensions:
            raise UnsupportedType(
                f"Unsupported Apple package type: {extension or '(none)'} "
                f"(supported: {', '.join(self.extensions)})"
            )
        return extension

    def _native(self) -> bool:
        return self.runner.platform == "darwin" and self.runner.which("codesign") is not None

    def _require_native(self, what: str) -> None:
        if not self._native():
            raise UnsupportedPlatform(
                f"{what} requires macOS with Xcode command line tools (codesign)"
            )

    def _require_tool(self, tool: str, what: str) -> None:
        if self.runner.which(tool) is None:
            raise UnsupportedPlatform(f"{tool} is required for {what} but not found")

    # ------------------------------------------------------------------
    # Sign
    # ------------------------------------------------------------------

    def sign(self, credentials: Pkcs12Credentials, input_path: str, output_path: str,
             timestamp_url: str | None = None) -> BackendInvocation:
        kind = self._kind(input_path)
        if kind == "app":
            return self._sign_app(credentials, input_path, output_path, timestamp_url)
        if kind == "ipa":
            if self._native():
                return self._sign_ipa_native(credentials, input_path, output_path, timestamp_url)
            return self._sign_ipa_isign(credentials, input_path, output_path, timestamp_url)
        return self._sign_pkg(credentials, input_path, output_path, timestamp_url)

    def _codesign_argv(self, credentials: Pkcs12Credentials, target: str,
                       timestamp_url: str | None, deep: bool = True) -> list[str]:
        argv = ["codesign", "--force"]
        if deep:
            argv.append("--deep")
        if timestamp_url:
            argv.append(f"--timestamp={timestamp_url}")
        argv += ["--sign", credentials.identity, target]
        return argv

    def _sign_app(self, credentials: Pkcs12Credentials, input_path: str, output_path: str,
                  timestamp_url: str | None) -> BackendInvocation:
        self._require_native("macOS application signing")
        with staged_tree(output_path) as staged:
            shutil.copytree(input_path, staged, symlinks=True)
            invocation = self.runner.checked(
                self._codesign_argv(credentials, str(staged), timestamp_url),
                "Failed to sign macOS application",
            )
        return invocation

    def _sign_ipa_native(self, credentials: Pkcs12Credentials, input_path: str,
                         output_path: str, timestamp_url: str | None) -> BackendInvocation:
        with tempfile.TemporaryDirectory(prefix="codesign-ipa-") as work:
            tree = Path(work)
            extract_zip(input_path, tree)
            app_dir = _find_app_bundle(tree)
            argv = self._codesign_argv(credentials, str(app_dir), timestamp_url, deep=False)
            entitlements = app_dir / "entitlements.plist"
            if entitlements.is_file():
                argv[-2:-2] = ["--entitlements", str(entitlements)]
            invocation = self.runner.checked(argv, "Failed to sign iOS application")
            write_zip(tree, tree_members(tree, "Payload"), output_path)
        return invocation

    def _sign_ipa_isign(self, credentials: Pkcs12Credentials, input_path: str,
                        output_path: str, timestamp_url: str | None) -> BackendInvocation:
        self._require_tool("isign", "iOS app signing on this platform")
        identity = self._key_manager.load_identity(credentials.path, credentials.passphrase)
        with tempfile.TemporaryDirectory(prefix="codesign-isign-") as work:
            cert_file, key_file = self._key_manager.export_pem(identity, work)
            argv = ["isign", "-c", str(cert_file), "-k", str(key_file), "-o", output_path]
            if timestamp_url:
                argv += ["--timestamp", timestamp_url]
            argv.append(input_path)
            return self.runner.checked(argv, "Failed to sign iOS application with isign")

    def _sign_pkg(self, credentials: Pkcs12Credentials, input_path: str, output_path: str,
                  timestamp_url: str | None) -> BackendInvocation:
        self._require_tool("xar", "macOS package signing")
        identity = self._key_manager.load_identity(credentials.path, credentials.passphrase)
        key = identity.private_key
        if not isinstance(key, RSAPrivateKey):
            raise CredentialError("macOS package signing requires an RSA key")
        if timestamp_url:
            logger.warning("xar signatures carry no timestamp; ignoring %s", timestamp_url)

        output = Path(output_path)
        with tempfile.TemporaryDirectory(prefix="codesign-pkg-") as work:
            work_dir = Path(work)
            staged = work_dir / output.name
            shutil.copyfile(input_path, staged)
            cert_file = work_dir / "cert.der"
            cert_file.write_bytes(identity.certificate.public_bytes(serialization.Encoding.DER))
            digest_file = work_dir / "digestinfo.dat"
            signature_file = work_dir / "signature.dat"

            self.runner.checked(
                [
                    "xar", "--sign", "-f", str(staged),
                    "--digestinfo-to-sign", str(digest_file),
                    "--sig-size", str(key.key_size // 8),
                    "--cert-loc", str(cert_file),
                ],
                "Failed to prepare package for signing",
            )
            signature_file.write_bytes(sign_digest_info(key, digest_file.read_bytes()))
            invocation = self.runner.checked(
                ["xar", "--inject-sig", str(signature_file), "-f", str(staged)],
                "Failed to inject signature into package",
            )
            publish_file(staged, output)
        return invocation

    # ------------------------------------------------------------------
    # Verify / timestamp
    # ------------------------------------------------------------------

    def verify(self, credentials: Pkcs12Credentials | None, input_path: str) -> BackendInvocation:
        kind = self._kind(input_path)
        if kind == "pkg":
            self._require_tool("xar", "macOS package verification")
            return self.runner.checked(
                ["xar", "--verify", "-f", input_path],
                "macOS package signature verification failed",
            )
        self._require_native("Apple signature verification")
        if kind == "app":
            return self.runner.checked(
                ["codesign", "--verify", "--deep", "--strict", input_path],
                "macOS application signature verification failed",
            )
        with tempfile.TemporaryDirectory(prefix="codesign-ipa-") as work:
            extract_zip(input_path, Path(work))
            app_dir = _find_app_bundle(Path(work))
            return self.runner.checked(
                ["codesign", "--verify", "--deep", "--strict", str(app_dir)],
                "iOS application signature verification failed",
            )

    def check_timestamp(self, input_path: str) -> tuple[BackendInvocation, TimestampInfo]:
        self._kind(input_path)
        self._require_native("Apple timestamp verification")
        invocation = self.runner.checked(
            ["codesign", "--verify", "--deep", "--strict", "--verbose=4", input_path],
            "Apple package signature verification failed",
        )
        return invocation, TimestampInfo(present=mentions_timestamp(invocation.output))


def _find_app_bundle(tree: Path) -> Path:
    for candidate in sorted((tree / "Payload").glob("*.app")):
        if candidate.is_dir():
            return candidate
    raise InvalidContainer("No .app directory found in IPA file")


__all__ = [
    "BACKEND_TOOLS",
    "AppleAdapter",
    "BackendAdapter",
    "BackendRunner",
    "JavaAdapter",
    "WindowsAdapter",
    "mentions_timestamp",
    "probe_tools",
    "redact",
    "sign_digest_info",
]

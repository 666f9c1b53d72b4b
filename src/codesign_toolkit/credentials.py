"""Loading signing identities from PKCS#12 and PEM credential bundles."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ec import EllipticCurvePrivateKey
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from cryptography.hazmat.primitives.serialization import pkcs12

from codesign_toolkit.errors import CredentialError

_PEM_BLOCK = re.compile(
    rb"-----BEGIN ([A-Z0-9 ]+)-----\r?\n.+?\r?\n-----END \1-----", re.DOTALL
)

SigningKey = RSAPrivateKey | EllipticCurvePrivateKey


@dataclass(frozen=True)
class SigningIdentity:
    """A private key with its certificate and any intermediates."""

    private_key: SigningKey
    certificate: x509.Certificate
    chain: tuple[x509.Certificate, ...] = field(default_factory=tuple)

    @property
    def certificates(self) -> list[x509.Certificate]:
        """Signer certificate first, then the chain."""
        return [self.certificate, *self.chain]

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()


def _public_der(key) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


class KeyManager:
    """Read credential files into :class:`SigningIdentity` objects."""

    def load_identity(self, path: str | None, passphrase: str | None = None) -> SigningIdentity:
        """Load a signing identity from a PKCS#12 container or a PEM bundle.

        A PEM bundle must hold the private key and at least one certificate;
        the first certificate whose public key matches the private key is the
        signer, the rest form the chain.

        Raises:
            CredentialError: if the file is missing, the passphrase is wrong,
                or the key and certificate do not belong together.
        """
        if not path:
            raise CredentialError("A certificate bundle (-cert) is required")
        try:
            data = Path(path).read_bytes()
        except OSError as exc:
            raise CredentialError(f"Cannot read credential file {path}: {exc}") from exc

        password = passphrase.encode("utf-8") if passphrase else None
        if b"-----BEGIN" in data:
            key, certs = self._load_pem_bundle(data, password, path)
        else:
            key, certs = self._load_pkcs12(data, password, path)

        if not isinstance(key, (RSAPrivateKey, EllipticCurvePrivateKey)):
            raise CredentialError(
                f"Unsupported key type in {path}: {type(key).__name__}. "
                "Only RSA and EC keys are supported."
            )

        key_der = _public_der(key.public_key())
        signer = next(
            (cert for cert in certs if _public_der(cert.public_key()) == key_der), None
        )
        if signer is None:
            raise CredentialError(
                f"No certificate in {path} matches its private key"
            )
        chain = tuple(cert for cert in certs if cert is not signer)
        return SigningIdentity(private_key=key, certificate=signer, chain=chain)

    def load_certificate(self, path: str) -> x509.Certificate:
        """Read a single PEM or DER certificate from *path*."""
        try:
            data = Path(path).read_bytes()
        except OSError as exc:
            raise CredentialError(f"Cannot read certificate {path}: {exc}") from exc
        try:
            if b"-----BEGIN CERTIFICATE-----" in data:
                return x509.load_pem_x509_certificate(data)
            return x509.load_der_x509_certificate(data)
        except ValueError as exc:
            raise CredentialError(f"Invalid certificate {path}: {exc}") from exc

    def export_pem(self, identity: SigningIdentity, directory: str | Path) -> tuple[Path, Path]:
        """Write ``cert.pem`` and ``key.pem`` into *directory* for external tools.

        The key file is written with mode 0o600.  Callers own *directory* and
        must remove it once the tool has run.
        """
        out_dir = Path(directory)
        out_dir.mkdir(parents=True, exist_ok=True)
        cert_file = out_dir / "cert.pem"
        key_file = out_dir / "key.pem"

        cert_file.write_bytes(
            b"".join(
                cert.public_bytes(serialization.Encoding.PEM)
                for cert in identity.certificates
            )
        )
        key_file.touch(mode=0o600)
        key_file.write_bytes(
            identity.private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
        )
        try:
            os.chmod(key_file, 0o600)
        except NotImplementedError:
            pass
        return cert_file, key_file

    # ------------------------------------------------------------------
    # Format readers
    # ------------------------------------------------------------------

    @staticmethod
    def _load_pem_bundle(data: bytes, password: bytes | None, path: str):
        key = None
        certs: list[x509.Certificate] = []
        for match in _PEM_BLOCK.finditer(data):
            label = match.group(1)
            block = match.group(0)
            try:
                if label == b"CERTIFICATE":
                    certs.append(x509.load_pem_x509_certificate(block))
                elif label.endswith(b"PRIVATE KEY") and key is None:
                    key = serialization.load_pem_private_key(block, password=password)
            except (ValueError, TypeError) as exc:
                raise CredentialError(f"Cannot load {path}: {exc}") from exc
        if key is None:
            raise CredentialError(f"No private key found in {path}")
        if not certs:
            raise CredentialError(f"No certificate found in {path}")
        return key, certs

    @staticmethod
    def _load_pkcs12(data: bytes, password: bytes | None, path: str):
        try:
            key, cert, additional = pkcs12.load_key_and_certificates(data, password)
        except (ValueError, TypeError) as exc:
            raise CredentialError(f"Cannot load PKCS#12 bundle {path}: {exc}") from exc
        if key is None or cert is None:
            raise CredentialError(f"PKCS#12 bundle {path} lacks a key or certificate")
        return key, [cert, *additional]


__all__ = ["KeyManager", "SigningIdentity", "SigningKey"]

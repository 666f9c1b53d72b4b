"""Detached CMS (PKCS#7) signatures over container manifests."""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime

from asn1crypto import algos, cms, core
from asn1crypto import x509 as asn1_x509
from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ec import (
    ECDSA,
    EllipticCurvePrivateKey,
    EllipticCurvePublicKey,
)
from cryptography.hazmat.primitives.asymmetric.padding import PKCS1v15
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey

from codesign_toolkit.credentials import SigningIdentity
from codesign_toolkit.errors import CryptoFailure
from codesign_toolkit.models import SignatureRecord

# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

_HASHES: dict[str, type[hashes.HashAlgorithm]] = {
    "sha1": hashes.SHA1,
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}

# The implicit [0] tag on SignerInfo.signedAttrs is replaced by the
# universal SET tag when computing or checking the signature.
_SET_TAG = b"\x31"


def _hash_for(name: str) -> hashes.HashAlgorithm:
    try:
        return _HASHES[name]()
    except KeyError:
        raise CryptoFailure(f"Unsupported digest algorithm: {name}") from None


def _attribute_value(attributes: cms.CMSAttributes, name: str):
    for attribute in attributes:
        if attribute["type"].native == name:
            return attribute["values"][0]
    return None


# ---------------------------------------------------------------------------
# SignatureCodec
# ---------------------------------------------------------------------------


class SignatureCodec:
    """Create, encode, decode and verify :class:`SignatureRecord` objects."""

    def __init__(self, digest_algorithm: str = "sha256") -> None:
        _hash_for(digest_algorithm)
        self._digest_algorithm = digest_algorithm

    def sign(
        self,
        payload: bytes,
        identity: SigningIdentity,
        signing_time: datetime | None = None,
    ) -> SignatureRecord:
        """Sign *payload* with *identity* and return an unstamped record.

        The signature covers a signed-attributes set holding the content type,
        the signing time and the digest of *payload*; *payload* itself is not
        embedded.
        """
        digest = hashlib.new(self._digest_algorithm, payload).digest()
        signed_attrs = cms.CMSAttributes(
            [
                cms.CMSAttribute({"type": "content_type", "values": ["data"]}),
                cms.CMSAttribute(
                    {
                        "type": "signing_time",
                        "values": [
                            cms.Time({"utc_time": signing_time or datetime.now(tz=UTC)})
                        ],
                    }
                ),
                cms.CMSAttribute({"type": "message_digest", "values": [digest]}),
            ]
        )
        attrs_der = signed_attrs.dump()
        hash_algorithm = _hash_for(self._digest_algorithm)

        key = identity.private_key
        try:
            if isinstance(key, RSAPrivateKey):
                signature_algorithm = "rsassa_pkcs1v15"
                signature = key.sign(attrs_der, PKCS1v15(), hash_algorithm)
            elif isinstance(key, EllipticCurvePrivateKey):
                signature_algorithm = f"{self._digest_algorithm}_ecdsa"
                signature = key.sign(attrs_der, ECDSA(hash_algorithm))
            else:
                raise CryptoFailure(f"Unsupported key type: {type(key).__name__}")
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise CryptoFailure(f"Signing failed: {exc}") from exc

        return SignatureRecord(
            certificates=[
                cert.public_bytes(serialization.Encoding.DER)
                for cert in identity.certificates
            ],
            digest_algorithm=self._digest_algorithm,
            signed_attributes=attrs_der,
            signature_algorithm=signature_algorithm,
            signature=signature,
        )

    @staticmethod
    def embed_timestamp(record: SignatureRecord, token: bytes) -> SignatureRecord:
        """Return a copy of *record* carrying *token* as an unsigned attribute."""
        return record.model_copy(update={"timestamp_token": token})

    # ------------------------------------------------------------------
    # Wire format
    # ------------------------------------------------------------------

    @staticmethod
    def encode(record: SignatureRecord) -> bytes:
        """Serialise *record* as a DER ``ContentInfo`` wrapping ``SignedData``."""
        certs = [asn1_x509.Certificate.load(der) for der in record.certificates]
        signer = certs[0]
        digest_algorithm = algos.DigestAlgorithm({"algorithm": record.digest_algorithm})

        signer_info = {
            "version": "v1",
            "sid": cms.SignerIdentifier(
                {
                    "issuer_and_serial_number": cms.IssuerAndSerialNumber(
                        {"issuer": signer.issuer, "serial_number": signer.serial_number}
                    )
                }
            ),
            "digest_algorithm": digest_algorithm,
            "signed_attrs": cms.CMSAttributes.load(record.signed_attributes),
            "signature_algorithm": algos.SignedDigestAlgorithm(
                {"algorithm": record.signature_algorithm}
            ),
            "signature": record.signature,
        }
        if record.timestamp_token is not None:
            signer_info["unsigned_attrs"] = cms.CMSAttributes(
                [
                    cms.CMSAttribute(
                        {
                            "type": "signature_time_stamp_token",
                            "values": [cms.ContentInfo.load(record.timestamp_token)],
                        }
                    )
                ]
            )

        signed_data = cms.SignedData(
            {
                "version": "v1",
                "digest_algorithms": [digest_algorithm],
                "encap_content_info": {"content_type": "data"},
                "certificates": certs,
                "signer_infos": [signer_info],
            }
        )
        return cms.ContentInfo({"content_type": "signed_data", "content": signed_data}).dump()

    @staticmethod
    def decode(data: bytes) -> SignatureRecord:
        """Parse a DER signature into a :class:`SignatureRecord`.

        An embedded timestamp token that cannot be extracted is dropped; the
        record is still returned so the signature itself can be checked.

        Raises:
            CryptoFailure: if the structure is not a usable SignedData.
        """
        try:
            content_info = cms.ContentInfo.load(data)
            if content_info["content_type"].native != "signed_data":
                raise CryptoFailure("signature is not a CMS SignedData structure")
            signed_data = content_info["content"]
            if len(signed_data["signer_infos"]) == 0:
                raise CryptoFailure("signature has no signer")
            signer_info = signed_data["signer_infos"][0]

            certs = [
                choice.chosen
                for choice in signed_data["certificates"]
                if choice.name == "certificate"
            ]
            sid = signer_info["sid"]
            if sid.name != "issuer_and_serial_number":
                raise CryptoFailure("signer identified by key id is not supported")
            issuer = sid.chosen["issuer"].dump()
            serial = sid.chosen["serial_number"].native
            signer = next(
                (
                    cert
                    for cert in certs
                    if cert.serial_number == serial and cert.issuer.dump() == issuer
                ),
                None,
            )
            if signer is None:
                raise CryptoFailure("signer certificate is not embedded in the signature")
            ordered = [signer, *(cert for cert in certs if cert is not signer)]

            signed_attrs = signer_info["signed_attrs"]
            if isinstance(signed_attrs, core.Void):
                raise CryptoFailure("signature has no signed attributes")

            record = SignatureRecord(
                certificates=[cert.dump() for cert in ordered],
                digest_algorithm=signer_info["digest_algorithm"]["algorithm"].native,
                signed_attributes=_SET_TAG + signed_attrs.dump()[1:],
                signature_algorithm=signer_info["signature_algorithm"]["algorithm"].native,
                signature=signer_info["signature"].native,
            )
        except (ValueError, TypeError, KeyError) as exc:
            raise CryptoFailure(f"unparsable signature: {exc}") from exc

        return record.model_copy(update={"timestamp_token": _extract_token(signer_info)})

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    @staticmethod
    def verify(record: SignatureRecord, payload: bytes) -> x509.Certificate:
        """Check that *record* is a valid signature over *payload*.

        Returns the signer certificate.

        Raises:
            CryptoFailure: if the digest or the signature value does not match.
        """
        try:
            attributes = cms.CMSAttributes.load(record.signed_attributes)
            signed_digest = _attribute_value(attributes, "message_digest")
            certificate = x509.load_der_x509_certificate(record.certificates[0])
        except (ValueError, TypeError, KeyError) as exc:
            raise CryptoFailure(f"unparsable signature: {exc}") from exc

        if signed_digest is None:
            raise CryptoFailure("signature lacks a message digest attribute")
        hash_algorithm = _hash_for(record.digest_algorithm)
        actual = hashlib.new(record.digest_algorithm, payload).digest()
        if signed_digest.native != actual:
            raise CryptoFailure("manifest digest mismatch: contents changed after signing")

        public_key = certificate.public_key()
        try:
            if isinstance(public_key, RSAPublicKey):
                public_key.verify(
                    record.signature, record.signed_attributes, PKCS1v15(), hash_algorithm
                )
            elif isinstance(public_key, EllipticCurvePublicKey):
                public_key.verify(
                    record.signature, record.signed_attributes, ECDSA(hash_algorithm)
                )
            else:
                raise CryptoFailure(
                    f"Unsupported signer key type: {type(public_key).__name__}"
                )
        except InvalidSignature:
            raise CryptoFailure("signature value does not verify") from None
        return certificate


def _extract_token(signer_info: cms.SignerInfo) -> bytes | None:
    try:
        unsigned = signer_info["unsigned_attrs"]
        if isinstance(unsigned, core.Void):
            return None
        token = _attribute_value(unsigned, "signature_time_stamp_token")
        return token.dump() if token is not None else None
    except (ValueError, TypeError, KeyError):
        return None


__all__ = ["SignatureCodec"]

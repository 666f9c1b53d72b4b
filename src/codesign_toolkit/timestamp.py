"""RFC 3161 timestamp client and token inspection."""

from __future__ import annotations

import hashlib
import logging
import os

import httpx
from asn1crypto import algos, cms, core, tsp

from codesign_toolkit.errors import TimestampUnavailable
from codesign_toolkit.models import TimestampInfo

logger = logging.getLogger(__name__)

TIMESTAMP_QUERY_CONTENT_TYPE = "application/timestamp-query"
_GRANTED = frozenset({"granted", "granted_with_mods"})
_PARSE_ERRORS = (ValueError, TypeError, KeyError, AttributeError)


class _TimeStampReply(core.Sequence):
    """``TimeStampResp`` with the token optional, as sent on rejection."""

    _fields = [
        ("status", tsp.PKIStatusInfo),
        ("time_stamp_token", cms.ContentInfo, {"optional": True}),
    ]


def build_request(data: bytes, nonce: int, hash_algorithm: str = "sha256") -> tsp.TimeStampReq:
    """Build a ``TimeStampReq`` whose imprint is the digest of *data*."""
    digest = hashlib.new(hash_algorithm, data).digest()
    return tsp.TimeStampReq(
        {
            "version": "v1",
            "message_imprint": tsp.MessageImprint(
                {
                    "hash_algorithm": algos.DigestAlgorithm({"algorithm": hash_algorithm}),
                    "hashed_message": digest,
                }
            ),
            "nonce": nonce,
            "cert_req": True,
        }
    )


def _tst_info(token: cms.ContentInfo) -> tsp.TSTInfo:
    if token["content_type"].native != "signed_data":
        raise TimestampUnavailable("timestamp token is not a SignedData structure")
    encap = token["content"]["encap_content_info"]
    if encap["content_type"].native != "tst_info":
        raise TimestampUnavailable("timestamp token does not carry TSTInfo")
    if isinstance(encap["content"], core.Void):
        raise TimestampUnavailable("timestamp token has no TSTInfo content")
    return encap["content"].parsed


def inspect_token(token_der: bytes, signature: bytes) -> TimestampInfo:
    """Check that *token_der* is a timestamp over *signature*.

    Returns a present :class:`TimestampInfo` on success.  The TSA's own
    signature on the token is not validated here.

    Raises:
        TimestampUnavailable: if the token cannot be parsed or its message
            imprint does not match *signature*.
    """
    try:
        tst_info = _tst_info(cms.ContentInfo.load(token_der))
        imprint = tst_info["message_imprint"]
        algorithm = imprint["hash_algorithm"]["algorithm"].native
        expected = hashlib.new(algorithm, signature).digest()
        if imprint["hashed_message"].native != expected:
            raise TimestampUnavailable("timestamp token does not cover this signature")
        return TimestampInfo(
            present=True,
            gen_time=tst_info["gen_time"].native,
            policy=tst_info["policy"].dotted,
        )
    except _PARSE_ERRORS as exc:
        raise TimestampUnavailable(f"unparsable timestamp token: {exc}") from exc


class TimestampClient:
    """Fetch timestamp tokens from a TSA over HTTP.

    Every failure mode (connection error, timeout, non-2xx status, refused
    or malformed reply) surfaces as :class:`TimestampUnavailable` so callers
    can carry on without a token.
    """

    def __init__(
        self,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport

    def request_token(self, url: str, data: bytes) -> bytes:
        """Return a DER ``ContentInfo`` timestamp token over *data*."""
        nonce = int.from_bytes(os.urandom(8), "big")
        request = build_request(data, nonce)

        logger.info("Requesting timestamp from %s", url)
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(
                    url,
                    content=request.dump(),
                    headers={"Content-Type": TIMESTAMP_QUERY_CONTENT_TYPE},
                )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise TimestampUnavailable(f"timestamp server unreachable: {exc}") from exc

        if not response.is_success:
            raise TimestampUnavailable(
                f"timestamp server returned HTTP {response.status_code}"
            )
        return self._extract_token(response.content, data, nonce)

    @staticmethod
    def _extract_token(body: bytes, data: bytes, nonce: int) -> bytes:
        try:
            reply = _TimeStampReply.load(body)
            status = reply["status"]["status"].native
            if status not in _GRANTED:
                raise TimestampUnavailable(f"timestamp request refused: {status}")
            token = reply["time_stamp_token"]
            if isinstance(token, core.Void):
                raise TimestampUnavailable("timestamp reply carries no token")
            if _tst_info(token)["nonce"].native != nonce:
                raise TimestampUnavailable("timestamp reply nonce mismatch")
            token_der = token.dump()
        except _PARSE_ERRORS as exc:
            raise TimestampUnavailable(f"malformed timestamp reply: {exc}") from exc

        inspect_token(token_der, data)
        return token_der


__all__ = [
    "TIMESTAMP_QUERY_CONTENT_TYPE",
    "TimestampClient",
    "build_request",
    "inspect_token",
]

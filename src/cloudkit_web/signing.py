"""Server-to-server request signing.

A signed request carries three headers:

    X-Apple-CloudKit-Request-KeyID         key identifier issued with the key
    X-Apple-CloudKit-Request-ISO8601Date   UTC timestamp, second precision
    X-Apple-CloudKit-Request-SignatureV1   base64 ECDSA signature

The signed message is the UTF-8 date string, followed by the request path,
followed by the raw body bytes (an empty body is allowed). Signatures use
ECDSA over P-256 with SHA-256 and RFC 6979 deterministic nonces, so the same
(date, path, body, key) always produces the same signature bytes.

Policy: signing fails closed. When a key is configured and signing fails,
`SigningError` is raised; the transport only falls back to an unsigned request
when the caller explicitly opted in (`ALLOW_UNSIGNED_ON_SIGNING_ERROR`). With
no key configured requests are sent unsigned (anonymous public access).
"""
from __future__ import annotations

import base64
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from .errors import SigningError

KEY_ID_HEADER = "X-Apple-CloudKit-Request-KeyID"
DATE_HEADER = "X-Apple-CloudKit-Request-ISO8601Date"
SIGNATURE_HEADER = "X-Apple-CloudKit-Request-SignatureV1"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_request_date(value: datetime) -> str:
    """ISO-8601 in UTC without fractional seconds, e.g. `2024-02-25T10:00:00Z`."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def canonical_message(date: str, path: str, body: bytes) -> bytes:
    return date.encode("utf-8") + path.encode("utf-8") + body


def load_private_key(pem: Union[str, bytes]) -> ec.EllipticCurvePrivateKey:
    """Load an EC private key from PEM text.

    Raises `SigningError` when the PEM is unreadable or is not an EC key.
    """
    data = pem.encode("utf-8") if isinstance(pem, str) else pem
    try:
        key = serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise SigningError(f"unable to load private key: {e}") from e
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise SigningError(f"expected an EC private key, got {type(key).__name__}")
    return key


def sign(date: str, path: str, body: bytes, private_key: ec.EllipticCurvePrivateKey) -> str:
    """Return the base64 signature of `date + path + body`."""
    try:
        signature = private_key.sign(
            canonical_message(date, path, body),
            ec.ECDSA(hashes.SHA256(), deterministic_signing=True),
        )
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise SigningError(f"signing failed for {path}: {e}") from e
    return base64.b64encode(signature).decode("ascii")


class RequestSigner:
    """Produces per-request authentication headers.

    Holds only read-only configuration (key id, key, clock); each call to
    `headers` is independent.
    """

    def __init__(
        self,
        key_id: str,
        private_key: Optional[ec.EllipticCurvePrivateKey] = None,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.key_id = key_id
        self.private_key = private_key
        self.clock = clock

    @property
    def has_key(self) -> bool:
        return self.private_key is not None

    def base_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            KEY_ID_HEADER: self.key_id,
            DATE_HEADER: format_request_date(self.clock()),
        }

    def headers(self, path: str, body: bytes) -> Dict[str, str]:
        """Headers for a signed request; raises `SigningError` on failure."""
        headers = self.base_headers()
        if self.private_key is not None:
            headers[SIGNATURE_HEADER] = sign(headers[DATE_HEADER], path, body, self.private_key)
        return headers


__all__ = [
    "DATE_HEADER",
    "KEY_ID_HEADER",
    "SIGNATURE_HEADER",
    "RequestSigner",
    "canonical_message",
    "format_request_date",
    "load_private_key",
    "sign",
    "utc_now",
]

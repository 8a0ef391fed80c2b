"""
JSON Web Signature helpers for ACME requests.

ES256 signing with an EC P-256 account key. The CA expects the raw
64-byte R||S signature form, while the signing primitive produces DER,
so every signature goes through der_to_raw before it is encoded.
"""

import base64
import hashlib
import json
from typing import Any

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature, encode_dss_signature

# P-256 coordinate and signature component size in bytes
P256_SIZE = 32


class JWSError(ValueError):
    """Malformed signature or key material."""

    pass


def b64url(data: bytes | str) -> str:
    """Base64url encode without padding."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    """Decode unpadded base64url."""
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def der_to_raw(der: bytes, size: int = P256_SIZE) -> bytes:
    """
    Convert a DER ECDSA signature to the fixed-width R||S form.

    Each component is left-padded to size bytes; the sign byte DER adds
    to keep an INTEGER positive does not survive the conversion.

    Raises:
        JWSError: If the input is not a valid signature for this size
    """
    try:
        r, s = decode_dss_signature(der)
        return r.to_bytes(size, "big") + s.to_bytes(size, "big")
    except (ValueError, OverflowError) as e:
        raise JWSError(f"Invalid DER signature: {e}")


def raw_to_der(raw: bytes, size: int = P256_SIZE) -> bytes:
    """Convert an R||S signature back to DER for verification."""
    if len(raw) != 2 * size:
        raise JWSError(f"Raw signature must be {2 * size} bytes, got {len(raw)}")
    r = int.from_bytes(raw[:size], "big")
    s = int.from_bytes(raw[size:], "big")
    return encode_dss_signature(r, s)


def public_jwk(key: ec.EllipticCurvePrivateKey) -> dict[str, str]:
    """JWK for the public half of an EC P-256 key, members in canonical order."""
    numbers = key.public_key().public_numbers()
    return {
        "crv": "P-256",
        "kty": "EC",
        "x": b64url(numbers.x.to_bytes(P256_SIZE, "big")),
        "y": b64url(numbers.y.to_bytes(P256_SIZE, "big")),
    }


def jwk_thumbprint(jwk: dict[str, str]) -> str:
    """RFC 7638 thumbprint: SHA-256 over the required members, sorted, no whitespace."""
    required = {k: jwk[k] for k in ("crv", "kty", "x", "y")}
    canonical = json.dumps(required, separators=(",", ":"), sort_keys=True)
    return b64url(hashlib.sha256(canonical.encode("utf-8")).digest())


def sign_es256(key: ec.EllipticCurvePrivateKey, signing_input: bytes) -> bytes:
    """Sign with ES256 and return the raw 64-byte signature."""
    der = key.sign(signing_input, ec.ECDSA(hashes.SHA256()))
    return der_to_raw(der)


def build_jws(
    key: ec.EllipticCurvePrivateKey,
    url: str,
    nonce: str,
    payload: Any | None,
    kid: str | None = None,
) -> dict[str, str]:
    """
    Build a flattened JWS for an ACME request.

    Args:
        key: Account private key
        url: Request URL, bound into the protected header
        nonce: Single-use anti-replay nonce
        payload: JSON payload, or None for POST-as-GET (empty payload)
        kid: Account URL; when absent the public JWK is embedded instead

    Returns:
        Dict with protected, payload and signature members
    """
    protected: dict[str, Any] = {"alg": "ES256", "nonce": nonce, "url": url}
    if kid:
        protected["kid"] = kid
    else:
        protected["jwk"] = public_jwk(key)

    protected_b64 = b64url(json.dumps(protected))
    payload_b64 = "" if payload is None else b64url(json.dumps(payload))

    signature = sign_es256(key, f"{protected_b64}.{payload_b64}".encode("ascii"))

    return {
        "protected": protected_b64,
        "payload": payload_b64,
        "signature": b64url(signature),
    }

# dope_auth/tokens.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# This module defines the *token layer* for the application session token.
#
# Responsibilities:
#   - Mint and verify the compact, HMAC-signed app token ("appJwt")
#   - Provide deterministic serialization of header/payload
#   - Decode (without verifying) third-party compact tokens so callers can
#     inspect claims before/after their own signature checks
#
# What this module is NOT:
#   - Not an identity verifier (identity-provider credentials are checked in
#     identity.py against the provider's key)
#   - Not a policy engine: callers decide what expiry/issuer means for them
#
# Token wire format (standard compact JWT, HS256):
#
#     <header_b64url>.<payload_b64url>.<signature_b64url>
#
# Where:
#   - header  = {"alg":"HS256","typ":"JWT"}
#   - payload = canonical JSON (sorted keys, no whitespace)
#   - signature = HMAC-SHA256(secret, header_b64url + "." + payload_b64url)
#
# Only HS256 is accepted on verify: the header's alg is checked, never trusted.
# -----------------------------------------------------------------------------


import base64
import hashlib
import json
import time
from typing import Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac


HEADER = {"alg": "HS256", "typ": "JWT"}


# -----------------------------------------------------------------------------
# Base64 helpers
# -----------------------------------------------------------------------------
def b64url_encode(b: bytes) -> str:
    """URL-safe Base64 encoding WITHOUT padding."""
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def b64url_decode(s: str) -> bytes:
    """
    Decode URL-safe Base64 with optional missing padding.

    Padding is restored automatically to allow lenient decoding.
    """
    s = str(s).strip()
    s += "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s.encode("ascii"))


def _canonical_json(obj: dict) -> bytes:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True).encode("utf-8")


def token_fingerprint(token: str) -> str:
    """Short SHA-256 digest of a token, the only form tokens may appear in logs."""
    return hashlib.sha256(str(token).encode("utf-8")).hexdigest()[:16]


# -----------------------------------------------------------------------------
# Wire format helpers
# -----------------------------------------------------------------------------
def split_token(token: str) -> Tuple[str, str, str]:
    """
    Split a compact token into its three base64url segments.

    This performs *format validation only*.
    """
    parts = str(token).strip().split(".")
    if len(parts) != 3 or not all(parts):
        raise ValueError("bad token format")
    return parts[0], parts[1], parts[2]


def decode_unverified(token: str) -> Tuple[dict, dict]:
    """
    Decode header and payload of a compact token WITHOUT checking the signature.

    Raises ValueError if the structure or JSON is malformed.
    """
    h64, p64, _ = split_token(token)
    try:
        header = json.loads(b64url_decode(h64).decode("utf-8"))
        payload = json.loads(b64url_decode(p64).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError, ValueError) as e:
        raise ValueError(f"bad token encoding: {e}") from e
    if not isinstance(header, dict) or not isinstance(payload, dict):
        raise ValueError("token header/payload must be objects")
    return header, payload


# -----------------------------------------------------------------------------
# Signing
# -----------------------------------------------------------------------------
def _mac(secret: str, signing_input: bytes) -> hmac.HMAC:
    h = hmac.HMAC(secret.encode("utf-8"), hashes.SHA256())
    h.update(signing_input)
    return h


def sign_token(secret: str, payload_obj: dict) -> str:
    """Sign a payload object into a compact HS256 token."""
    signing_input = b64url_encode(_canonical_json(HEADER)) + "." + b64url_encode(_canonical_json(payload_obj))
    sig = _mac(secret, signing_input.encode("ascii")).finalize()
    return signing_input + "." + b64url_encode(sig)


def mint_session_token(
    secret: str,
    claims: dict,
    *,
    issuer: str,
    ttl_seconds: int,
    now: Optional[int] = None,
) -> str:
    """
    Mint an app session token.

    Adds the registered claims (iat, exp, iss) to the caller's claims. The
    caller's own keys win only for non-registered claims.
    """
    iat = int(now if now is not None else time.time())
    payload = dict(claims)
    payload.update({"iat": iat, "exp": iat + int(ttl_seconds), "iss": issuer})
    return sign_token(secret, payload)


# -----------------------------------------------------------------------------
# Verification
# -----------------------------------------------------------------------------
def verify_token(
    secret: str,
    token: str,
    *,
    issuer: Optional[str] = None,
    now: Optional[int] = None,
) -> dict:
    """
    Verify an app session token and return its claims.

    Steps:
      1. Decode structure, require alg == HS256
      2. Verify HMAC over the raw signing input
      3. Enforce exp (and iss when given)

    Raises:
      - ValueError on malformed/expired/wrong-issuer tokens
      - cryptography.exceptions.InvalidSignature on a bad MAC
    """
    h64, p64, s64 = split_token(token)
    header, payload = decode_unverified(token)
    if header.get("alg") != "HS256":
        raise ValueError("unsupported alg")

    _mac(secret, f"{h64}.{p64}".encode("ascii")).verify(b64url_decode(s64))

    now = int(now if now is not None else time.time())
    try:
        exp = int(payload["exp"])
    except (KeyError, TypeError, ValueError):
        raise ValueError("missing exp")
    if now >= exp:
        raise ValueError("token expired")
    if issuer is not None and payload.get("iss") != issuer:
        raise ValueError("issuer mismatch")
    return payload


__all__ = [
    "InvalidSignature",
    "b64url_decode",
    "b64url_encode",
    "decode_unverified",
    "mint_session_token",
    "sign_token",
    "split_token",
    "token_fingerprint",
    "verify_token",
]

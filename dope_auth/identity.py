"""
dope_auth/identity.py

Identity-credential and wallet-signature verification.

Two inputs are verified here, one per exchange mode:

1) Identity-provider session credential (delegated-session mode)
   - compact JWT signed by the provider's notarizer with ECDSA P-256/SHA-256
   - signature segment is raw r||s (64 bytes); DER is accepted too
   - the notarizer public key is an uncompressed SEC1 point, configured as hex

2) EVM personal-message signature (message-signature mode)
   - EIP-191 "personal_sign" digest: keccak256("\\x19Ethereum Signed Message:\\n" + len + msg)
   - 65-byte r||s||v signature, v in {0, 1, 27, 28}
   - signer recovered over secp256k1 and compared against the EIP-55 address

This module answers "is the signature valid" only. Claim policy (expiry,
required fields) lives in exchange.py.
"""

import re
from functools import lru_cache
from typing import Optional

from coincurve import PublicKey
from Crypto.Hash import keccak
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

from .tokens import b64url_decode, split_token


_ADDRESS_RE = re.compile(r"^(0x)?[0-9a-fA-F]{40}$")
_PERSONAL_PREFIX = b"\x19Ethereum Signed Message:\n"


# -----------------------------------------------------------------------------
# Identity-provider credential (ES256)
# -----------------------------------------------------------------------------
@lru_cache(maxsize=4)
def _load_notarizer_key(public_key_hex: str) -> ec.EllipticCurvePublicKey:
    """
    Load the provider's notarizer key from its uncompressed SEC1 hex form.

    Cached so the point is decoded once per configured key.
    """
    raw = bytes.fromhex(public_key_hex)
    return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), raw)


def _to_der(sig: bytes) -> bytes:
    if len(sig) == 64:
        r = int.from_bytes(sig[:32], "big")
        s = int.from_bytes(sig[32:], "big")
        return encode_dss_signature(r, s)
    # anything else is assumed to be DER already; verify() rejects garbage
    return sig


def verify_session_credential_signature(credential: str, public_key_hex: str) -> bool:
    """
    Verify the notarizer signature of an identity-provider session credential.

    Returns:
      True  -> signature valid
      False -> structure or signature invalid

    Raises:
      RuntimeError if no notarizer key is configured (deployment error).
    """
    if not public_key_hex:
        raise RuntimeError("IDP_NOTARIZER_PUBLIC_KEY is not configured")

    try:
        h64, p64, s64 = split_token(credential)
        sig = b64url_decode(s64)
    except ValueError:
        return False

    key = _load_notarizer_key(public_key_hex)
    try:
        key.verify(_to_der(sig), f"{h64}.{p64}".encode("ascii"), ec.ECDSA(hashes.SHA256()))
    except (InvalidSignature, ValueError):
        return False
    return True


# -----------------------------------------------------------------------------
# EVM helpers
# -----------------------------------------------------------------------------
def keccak256(data: bytes) -> bytes:
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


def to_checksum_address(address: str) -> str:
    """
    Normalize an EVM address to its EIP-55 checksum form.

    Args:
        address: 40 hex chars, with or without 0x, any casing

    Returns:
        str: "0x"-prefixed mixed-case checksum address

    Raises:
        ValueError: if the input is not a 20-byte hex address
    """
    address = str(address or "").strip()
    if not _ADDRESS_RE.match(address):
        raise ValueError(f"invalid address: {address[:48]}")

    lower = address[2:].lower() if address[:2].lower() == "0x" else address.lower()
    digest = keccak256(lower.encode("ascii")).hex()
    out = "".join(c.upper() if c.isalpha() and int(digest[i], 16) >= 8 else c for i, c in enumerate(lower))
    return "0x" + out


def hash_personal_message(message: str) -> bytes:
    """EIP-191 version 0x45 digest of a UTF-8 message."""
    msg = message.encode("utf-8")
    return keccak256(_PERSONAL_PREFIX + str(len(msg)).encode("ascii") + msg)


def _parse_signature(signature: str) -> Optional[bytes]:
    """
    Parse a hex signature into the 65-byte r||s||recid form coincurve expects.

    Returns None if the input is not a 65-byte hex signature with a known v.
    """
    s = str(signature or "").strip()
    if s[:2].lower() == "0x":
        s = s[2:]
    try:
        raw = bytes.fromhex(s)
    except ValueError:
        return None
    if len(raw) != 65:
        return None

    v = raw[64]
    if v >= 27:
        v -= 27
    if v not in (0, 1):
        return None
    return raw[:64] + bytes([v])


def recover_address(message: str, signature: str) -> Optional[str]:
    """
    Recover the checksum address that signed a personal message.

    Returns None when the signature cannot be parsed or recovered.
    """
    sig = _parse_signature(signature)
    if sig is None:
        return None
    try:
        pk = PublicKey.from_signature_and_message(sig, hash_personal_message(message), hasher=None)
    except Exception:  # coincurve raises plain Exception on unrecoverable input
        return None
    uncompressed = pk.format(compressed=False)[1:]
    return to_checksum_address(keccak256(uncompressed)[-20:].hex())


def verify_personal_signature(address: str, message: str, signature: str) -> bool:
    """True if `signature` over `message` recovers to `address` (already checksummed)."""
    recovered = recover_address(message, signature)
    return recovered is not None and recovered == address

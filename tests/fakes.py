"""
In-memory stand-ins for the identity provider, the backend and failing
storage, plus key material for signing test credentials.
"""
import asyncio
import json
from typing import List, Optional, Sequence

from coincurve import PrivateKey
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from dope_auth.identity import hash_personal_message, keccak256, to_checksum_address
from dope_auth.models import UserProfile
from dope_auth.provider import IdentityProvider, Wallet
from dope_auth.tokens import b64url_encode


# -----------------------------------------------------------------------------
# Identity provider
# -----------------------------------------------------------------------------
class FakeProvider(IdentityProvider):
    def __init__(self, *, signed_in=True, wallet_ids=(), create_error=None, wallet_appears=True):
        self.signed_in = signed_in
        self._wallets = [Wallet(w) for w in wallet_ids]
        self.create_error = create_error
        self.wallet_appears = wallet_appears
        self.refresh_calls = 0
        self.created: List[tuple] = []
        self.logout_calls = 0

    @property
    def authenticated(self) -> bool:
        return self.signed_in

    @property
    def wallets(self) -> Sequence[Wallet]:
        return list(self._wallets)

    async def refresh_wallets(self) -> None:
        self.refresh_calls += 1

    async def create_wallet(self, name: str, accounts: Sequence[str]) -> Optional[str]:
        self.created.append((name, tuple(accounts)))
        if self.create_error is not None:
            raise self.create_error
        if not self.wallet_appears:
            return None
        self._wallets.append(Wallet("w-created", name, list(accounts)))
        return "w-created"

    async def logout(self) -> None:
        self.logout_calls += 1
        self.signed_in = False


# -----------------------------------------------------------------------------
# Backend
# -----------------------------------------------------------------------------
class FakeApi:
    """
    Scripted backend for the verification machine.

    `profiles` is consumed one per fetch_me call; the last entry repeats.
    """

    def __init__(self, profiles=(None,), *, gate: Optional[asyncio.Event] = None, error: Optional[Exception] = None):
        self.profiles = list(profiles)
        self.gate = gate
        self.error = error
        self.fetch_calls: List[str] = []
        self.register_calls: List[tuple] = []
        self.on_unauthorized = None

    async def fetch_me(self, token: str) -> Optional[UserProfile]:
        self.fetch_calls.append(token)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if len(self.profiles) > 1:
            return self.profiles.pop(0)
        return self.profiles[0]

    async def register_wallet(self, token: str, wallet_id: str) -> Optional[UserProfile]:
        self.register_calls.append((token, wallet_id))
        return None


class FailingBackend:
    """Storage backend that is always unavailable."""

    async def get(self, key):
        raise OSError("backend unavailable")

    async def set(self, key, value):
        raise OSError("backend unavailable")

    async def remove(self, key):
        raise OSError("backend unavailable")


# -----------------------------------------------------------------------------
# Key material
# -----------------------------------------------------------------------------
class Notarizer:
    """P-256 key standing in for the identity provider's credential signer."""

    def __init__(self):
        self.key = ec.generate_private_key(ec.SECP256R1())

    @property
    def public_hex(self) -> str:
        return self.key.public_key().public_bytes(Encoding.X962, PublicFormat.UncompressedPoint).hex()

    def issue(self, claims: dict, *, raw_signature: bool = True) -> str:
        header = b64url_encode(json.dumps({"alg": "ES256", "typ": "JWT"}).encode())
        payload = b64url_encode(json.dumps(claims).encode())
        signing_input = f"{header}.{payload}"
        der = self.key.sign(signing_input.encode("ascii"), ec.ECDSA(hashes.SHA256()))
        if raw_signature:
            r, s = decode_dss_signature(der)
            sig = r.to_bytes(32, "big") + s.to_bytes(32, "big")
        else:
            sig = der
        return f"{signing_input}.{b64url_encode(sig)}"


class EvmSigner:
    """secp256k1 wallet producing personal_sign style signatures."""

    def __init__(self):
        self.key = PrivateKey()

    @property
    def address(self) -> str:
        uncompressed = self.key.public_key.format(compressed=False)[1:]
        return to_checksum_address(keccak256(uncompressed)[-20:].hex())

    def sign(self, message: str) -> str:
        sig = self.key.sign_recoverable(hash_personal_message(message), hasher=None)
        return "0x" + (sig[:64] + bytes([sig[64] + 27])).hex()

# dope_auth/exchange.py
#
# Identity exchange: turns an identity-provider credential (or a wallet
# signature) into an app session token.
#
# This is pure domain logic. It does not persist anything and does not know
# about HTTP; main.py maps the errors raised here onto status codes.

import logging
import time
from typing import Callable, Optional

from cryptography.exceptions import InvalidSignature as BadMac

from .config import Settings, settings as default_settings
from .errors import Expired, InvalidCredential, InvalidSignature, MissingClaims, MissingInput
from .identity import to_checksum_address, verify_personal_signature, verify_session_credential_signature
from .models import ExchangeResponse, ExchangeUser, WalletSlot
from .tokens import decode_unverified, mint_session_token, token_fingerprint, verify_token

logger = logging.getLogger(__name__)

# Chains the provider is asked to provision; addresses are filled in by the
# backend once the wallet is registered.
PENDING_CHAINS = ("evm", "solana", "aptos")


class TokenExchange:
    def __init__(
        self,
        secret: str,
        issuer: str,
        ttl_seconds: int,
        notarizer_public_key: str,
        clock: Callable[[], float] = time.time,
    ):
        self.secret = secret
        self.issuer = issuer
        self.ttl_seconds = ttl_seconds
        self.notarizer_public_key = notarizer_public_key
        self._clock = clock

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None) -> "TokenExchange":
        s = s or default_settings
        if s.using_dev_secret:
            logger.warning("APP_JWT_SECRET is the development default; do not deploy like this")
        return cls(
            secret=s.APP_JWT_SECRET,
            issuer=s.APP_JWT_ISSUER,
            ttl_seconds=s.APP_JWT_TTL_SECONDS,
            notarizer_public_key=s.IDP_NOTARIZER_PUBLIC_KEY,
        )

    def _now(self) -> int:
        return int(self._clock())

    def _mint(self, claims: dict) -> str:
        return mint_session_token(
            self.secret,
            claims,
            issuer=self.issuer,
            ttl_seconds=self.ttl_seconds,
            now=self._now(),
        )

    # -------------------------------------------------------------------------
    # Delegated-session mode
    # -------------------------------------------------------------------------
    def exchange_session(self, credential: Optional[str]) -> ExchangeResponse:
        """
        Exchange an identity-provider session credential for an app token.

        Order of checks:
          1. structure decodes            -> InvalidCredential
          2. exp, when present, is future -> Expired
          3. notarizer signature          -> InvalidCredential
          4. user_id + organization_id    -> MissingClaims

        Expiry is judged before the signature so a stale credential always
        reports Expired, whatever else is wrong with it.
        """
        credential = (credential or "").strip()
        if not credential:
            raise MissingInput("Missing identity credential")

        try:
            _, claims = decode_unverified(credential)
        except ValueError as e:
            raise InvalidCredential("Invalid identity credential", reason=str(e)[:120])

        exp = claims.get("exp")
        if exp is not None:
            try:
                expired = int(exp) <= self._now()
            except (TypeError, ValueError):
                raise InvalidCredential("Invalid identity credential", reason="exp must be int")
            if expired:
                raise Expired("Expired identity credential")

        if not verify_session_credential_signature(credential, self.notarizer_public_key):
            raise InvalidCredential("Invalid identity credential")

        user_id = claims.get("user_id")
        org_id = claims.get("organization_id")
        if not user_id or not org_id:
            raise MissingClaims("Identity credential missing claims")

        user_id, org_id = str(user_id), str(org_id)
        app_jwt = self._mint({"sub": f"{org_id}:{user_id}", "tkUserId": user_id, "tkOrgId": org_id})
        logger.info("session exchange ok org=%s token=%s", org_id, token_fingerprint(app_jwt))

        return ExchangeResponse(
            app_jwt=app_jwt,
            user=ExchangeUser(tk_user_id=user_id, tk_org_id=org_id),
            wallets=[WalletSlot(chain=c) for c in PENDING_CHAINS],
        )

    # -------------------------------------------------------------------------
    # Message-signature mode
    # -------------------------------------------------------------------------
    def exchange_signature(
        self,
        address: Optional[str],
        message: Optional[str],
        signature: Optional[str],
    ) -> ExchangeResponse:
        """Exchange an EVM personal-message signature for an app token."""
        if not address or not message or not signature:
            raise MissingInput("Missing fields")

        try:
            checksummed = to_checksum_address(address)
        except ValueError:
            raise InvalidSignature("Invalid signature", reason="bad address")

        if not verify_personal_signature(checksummed, message, signature):
            raise InvalidSignature("Invalid signature")

        app_jwt = self._mint({"sub": checksummed, "kind": "evm"})
        logger.info("evm exchange ok address=%s token=%s", checksummed, token_fingerprint(app_jwt))
        return ExchangeResponse(app_jwt=app_jwt, user=ExchangeUser(evm_address=checksummed))

    # -------------------------------------------------------------------------
    # App token checks (protected endpoints)
    # -------------------------------------------------------------------------
    def verify_app_token(self, token: Optional[str]) -> dict:
        if not token:
            raise InvalidCredential("Missing app JWT")
        try:
            return verify_token(self.secret, token, issuer=self.issuer, now=self._now())
        except (ValueError, BadMac):
            raise InvalidCredential("Invalid app JWT")

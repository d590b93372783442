from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Wire(BaseModel):
    # backend speaks camelCase; accept both spellings, ignore unknown fields
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# -----------------------------------------------------------------------------
# Exchange service payloads
# -----------------------------------------------------------------------------
class ExchangeRequest(_Wire):
    turnkey_jwt: Optional[str] = Field(default=None, alias="turnkeyJwt")


class EvmExchangeRequest(_Wire):
    address: Optional[str] = None
    message: Optional[str] = None
    signature: Optional[str] = None


class WalletSlot(_Wire):
    chain: str
    address: str = ""
    status: str = "pending"


class ExchangeUser(_Wire):
    tk_user_id: Optional[str] = Field(default=None, alias="tkUserId")
    tk_org_id: Optional[str] = Field(default=None, alias="tkOrgId")
    evm_address: Optional[str] = Field(default=None, alias="evmAddress")


class ExchangeResponse(_Wire):
    app_jwt: str = Field(alias="appJwt")
    user: ExchangeUser = Field(default_factory=ExchangeUser)
    wallets: List[WalletSlot] = Field(default_factory=list)


# -----------------------------------------------------------------------------
# Reconciliation payloads
# -----------------------------------------------------------------------------
class ChainAddress(_Wire):
    chain: str
    address: str


class UserProfile(_Wire):
    evm_address: Optional[str] = Field(default=None, alias="evmAddress")
    solana_address: Optional[str] = Field(default=None, alias="solanaAddress")
    movement_address: Optional[str] = Field(default=None, alias="movementAddress")
    referral_link: Optional[str] = Field(default=None, alias="referralLink")
    referral_count: Optional[int] = Field(default=None, alias="referralCount")

    @property
    def has_any_address(self) -> bool:
        return bool(self.evm_address or self.solana_address or self.movement_address)

    def addresses(self) -> List[ChainAddress]:
        out = []
        for chain, addr in (
            ("evm", self.evm_address),
            ("solana", self.solana_address),
            ("movement", self.movement_address),
        ):
            if addr:
                out.append(ChainAddress(chain=chain, address=addr))
        return out


class MeResponse(_Wire):
    user: Optional[UserProfile] = None


class VerifyRequest(_Wire):
    wallet_id: str = Field(alias="walletId")


class MessageResponse(_Wire):
    message: Optional[str] = None


class DeletionResponse(_Wire):
    status: str
    message: Optional[str] = None

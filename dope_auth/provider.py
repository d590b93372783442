"""
Identity-provider contract.

The wallet kit (auth state, wallet list, wallet creation) is an external SDK;
the bridge only needs the narrow surface below. Adapters wrap the real SDK,
tests use an in-memory fake.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

# Address formats requested when a wallet has to be created: one account per
# supported chain family (evm, solana, movement/aptos-compatible).
DEFAULT_WALLET_NAME = "Primary"
DEFAULT_ACCOUNTS = (
    "ADDRESS_FORMAT_ETHEREUM",
    "ADDRESS_FORMAT_SOLANA",
    "ADDRESS_FORMAT_APTOS",
)


@dataclass
class Wallet:
    wallet_id: str
    name: str = ""
    accounts: List[str] = field(default_factory=list)


class WalletCreationError(Exception):
    """
    Provider-tagged wallet-creation failure.

    The state machine treats this as non-fatal: the session survives without a
    backend profile.
    """

    code = "CREATE_WALLET_ERROR"


class IdentityProvider(ABC):
    @property
    @abstractmethod
    def authenticated(self) -> bool:
        """True once the user completed provider login."""

    @property
    @abstractmethod
    def wallets(self) -> Sequence[Wallet]:
        """Live view of the wallets the provider currently knows about."""

    @abstractmethod
    async def refresh_wallets(self) -> None:
        """Ask the provider to reload its wallet list."""

    @abstractmethod
    async def create_wallet(self, name: str, accounts: Sequence[str]) -> Optional[str]:
        """Create a wallet; may raise WalletCreationError."""

    @abstractmethod
    async def logout(self) -> None:
        """End the provider session."""

    def first_wallet_id(self) -> Optional[str]:
        ws = self.wallets
        return ws[0].wallet_id if ws else None

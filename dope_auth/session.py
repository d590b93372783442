"""
Session module: the contract UI collaborators use.

    get token / is verified / on verified / on logout

AuthSession owns the broadcast bus and wires the other parts to it:

    provider login -> exchange -> TokenStore.save -> bus
    bus -> VerificationMachine.trigger -> reconcile -> TokenStore.save -> bus
    bus -> RouterGuard.refresh
    any 401 -> handle_unauthorized -> TokenStore.clear -> bus
"""

import logging
from typing import Callable, Optional

from .api import DopeApiClient
from .bus import SessionBus, Subscription
from .config import Settings, settings as default_settings
from .errors import Unauthorized
from .models import DeletionResponse, ExchangeResponse, MessageResponse, UserProfile
from .provider import IdentityProvider
from .router import RouterGuard
from .storage import TokenStore, default_store
from .verification import VerificationMachine

logger = logging.getLogger(__name__)


class AuthSession:
    def __init__(
        self,
        provider: IdentityProvider,
        *,
        store: Optional[TokenStore] = None,
        api: Optional[DopeApiClient] = None,
        bus: Optional[SessionBus] = None,
        s: Optional[Settings] = None,
        **machine_options,
    ):
        s = s or default_settings
        self.provider = provider
        self.bus = bus or SessionBus()

        self.store = store or default_store(self.bus, s)
        if self.store.bus is None:
            self.store.bus = self.bus

        self.api = api or DopeApiClient()
        self.api.on_unauthorized = self.handle_unauthorized

        self.machine = VerificationMachine(self.store, self.api, provider, s=s, **machine_options)
        self.guard = RouterGuard(self.store, provider)
        self._logout = SessionBus()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    async def start(self) -> None:
        """Attach listeners, then poll once: broadcasts are not replayed."""
        self.machine.attach(self.bus)
        await self.guard.mount(self.bus)
        await self.machine.trigger()

    async def stop(self) -> None:
        self.machine.detach()
        self.guard.unmount()
        await self.machine.wait_idle()
        await self.guard.settle()

    async def settle(self) -> None:
        await self.machine.wait_idle()
        await self.guard.settle()

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------
    async def get_token(self) -> Optional[str]:
        return await self.store.get()

    @property
    def is_verified(self) -> bool:
        return self.machine.is_verified

    async def cached_profile(self) -> Optional[UserProfile]:
        return await self.store.get_profile()

    def on_verified(self, callback: Callable[[], None]) -> Subscription:
        return self.machine.on_verified(callback)

    def on_logout(self, callback: Callable[[], None]) -> Subscription:
        return self._logout.subscribe(callback)

    # -------------------------------------------------------------------------
    # Login / logout
    # -------------------------------------------------------------------------
    async def login_with_credential(self, credential: str) -> ExchangeResponse:
        result = await self.api.exchange_session(credential)
        await self.store.save(result.app_jwt)
        return result

    async def login_with_signature(self, address: str, message: str, signature: str) -> ExchangeResponse:
        result = await self.api.exchange_signature(address, message, signature)
        await self.store.save(result.app_jwt)
        return result

    async def handle_unauthorized(self) -> None:
        """Backend said 401: the token is dead."""
        await self.store.clear()

    async def logout(self) -> None:
        try:
            await self.provider.logout()
        except Exception as e:
            # local state is cleared regardless of what the provider says
            logger.warning("provider logout failed: %s", e)
        self.machine.reset()
        await self.store.clear_all()
        self._logout.publish()

    async def delete_account(self) -> DeletionResponse:
        token = await self.get_token()
        if not token:
            raise Unauthorized("no session")
        result = await self.api.request_account_deletion(token)
        await self.logout()
        return result

    # -------------------------------------------------------------------------
    # Pass-throughs for card/referral flows
    # -------------------------------------------------------------------------
    async def redeem_referral(self, code: str) -> MessageResponse:
        return await self.api.redeem_referral(code, await self.get_token())

    async def claim(self, authorization: str) -> MessageResponse:
        token = await self.get_token()
        if not token:
            raise Unauthorized("no session")
        return await self.api.claim_authorization(token, authorization)

# dope_auth/verification.py
#
# -----------------------------------------------------------------------------
# Verification state machine
# -----------------------------------------------------------------------------
# Reconciles four sources of truth into one "is this user ready" answer:
#   - provider auth state       (IdentityProvider.authenticated)
#   - locally stored app token  (TokenStore)
#   - backend user record       (DopeApiClient.fetch_me / register_wallet)
#   - provider wallet existence (IdentityProvider.wallets)
#
# Phases:  IDLE -> VERIFYING -> VERIFIED ; IDLE again on logout or fatal error.
#
# Run for one token (each await is a suspension point):
#   1. token absent                    -> stay IDLE, silently
#   2. token == last verified token    -> VERIFIED, no network
#   3. fetch_me                        -> profile | None (no backend user yet)
#   4. resolve wallet id by polling the provider; create a wallet only if the
#      backend reported no address at all
#   5. no backend user: register wallet (no wallet id -> RegistrationBlocked)
#   6. re-fetch profile after registration
#   7. token changed meanwhile? discard. Otherwise persist + broadcast
#   8. VERIFIED, remember token + timestamp (grace window)
#
# Failure classes:
#   WalletCreationNonFatal -> VERIFIED without profile (still token-checked)
#   Unauthorized           -> IDLE (the 401 hook already cleared + broadcast)
#   NetworkError           -> IDLE; token cleared only if never verified before
#   anything else          -> fatal: clear token + snapshots, broadcast, IDLE
#
# At most one run per token is in flight; overlapping triggers join it.
# -----------------------------------------------------------------------------

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Set

from .api import DopeApiClient
from .bus import SessionBus, Subscription
from .config import Settings, settings as default_settings
from .errors import (
    DopeAuthError,
    NetworkError,
    RegistrationBlocked,
    Unauthorized,
    WalletCreationNonFatal,
)
from .models import UserProfile
from .polling import wait_for
from .provider import DEFAULT_ACCOUNTS, DEFAULT_WALLET_NAME, IdentityProvider, WalletCreationError
from .storage import TokenStore
from .tokens import token_fingerprint

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    VERIFYING = "verifying"
    VERIFIED = "verified"


@dataclass
class VerificationRecord:
    phase: Phase = Phase.IDLE
    token: Optional[str] = None
    last_verified_token: Optional[str] = None
    last_verified_at: float = 0.0
    profile: Optional[UserProfile] = None
    last_error: Optional[str] = None


class VerificationMachine:
    def __init__(
        self,
        store: TokenStore,
        api: DopeApiClient,
        provider: IdentityProvider,
        *,
        poll_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        recent_window: Optional[float] = None,
        loader_delay: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        s: Optional[Settings] = None,
    ):
        s = s or default_settings
        self.store = store
        self.api = api
        self.provider = provider
        self.poll_timeout = poll_timeout if poll_timeout is not None else s.WALLET_POLL_TIMEOUT_SECONDS
        self.poll_interval = poll_interval if poll_interval is not None else s.WALLET_POLL_INTERVAL_SECONDS
        self.recent_window = recent_window if recent_window is not None else s.RECENT_VERIFY_SECONDS
        self.loader_delay = loader_delay if loader_delay is not None else s.LOADER_DELAY_SECONDS
        self._clock = clock

        self.record = VerificationRecord()
        self.loader_visible = False
        self._inflight: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._loader_handle: Optional[asyncio.TimerHandle] = None
        self._verified = SessionBus()
        self._bus_sub: Optional[Subscription] = None

    # -------------------------------------------------------------------------
    # Wiring
    # -------------------------------------------------------------------------
    @property
    def phase(self) -> Phase:
        return self.record.phase

    @property
    def is_verified(self) -> bool:
        return self.record.phase == Phase.VERIFIED

    def on_verified(self, callback: Callable[[], None]) -> Subscription:
        return self._verified.subscribe(callback)

    def attach(self, bus: SessionBus) -> Subscription:
        """Re-evaluate on every token-updated broadcast."""
        self._bus_sub = bus.subscribe(self.on_token_updated)
        return self._bus_sub

    def detach(self) -> None:
        if self._bus_sub is not None:
            self._bus_sub.close()
            self._bus_sub = None

    def on_token_updated(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("token-updated outside an event loop; ignoring")
            return
        task = loop.create_task(self.trigger())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def reset(self, keep_error: bool = False) -> None:
        """Back to IDLE and forget the last verified token (logout)."""
        last_error = self.record.last_error if keep_error else None
        self.record = VerificationRecord(last_error=last_error)
        self._stop_loader()

    # -------------------------------------------------------------------------
    # Trigger
    # -------------------------------------------------------------------------
    async def trigger(self) -> Phase:
        """
        Start (or join) verification of the current token if it is due.

        Safe to call any number of times: a token that is being verified or
        was already verified never causes extra network calls.
        """
        if not self.provider.authenticated:
            return self.phase

        token = await self.store.get()
        if not token:
            if self.phase != Phase.IDLE:
                logger.info("token gone; back to idle")
                self.reset(keep_error=True)
            return self.phase

        running = self._inflight.get(token)
        if running is not None:
            return await asyncio.shield(running)

        if token == self.record.last_verified_token:
            self.record.phase = Phase.VERIFIED
            self.record.token = token
            return self.phase

        task = asyncio.ensure_future(self._run(token))
        self._inflight[token] = task
        task.add_done_callback(lambda _t, k=token: self._inflight.pop(k, None))
        return await asyncio.shield(task)

    async def wait_idle(self) -> None:
        """Wait until no run and no scheduled trigger is pending."""
        while self._inflight or self._background:
            await asyncio.gather(*self._inflight.values(), *self._background, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Loader signal
    # -------------------------------------------------------------------------
    def _show_loader(self) -> None:
        if self.phase == Phase.VERIFYING:
            self.loader_visible = True

    def _start_loader(self) -> None:
        loop = asyncio.get_running_loop()
        self._loader_handle = loop.call_later(self.loader_delay, self._show_loader)

    def _stop_loader(self) -> None:
        if self._loader_handle is not None:
            self._loader_handle.cancel()
            self._loader_handle = None
        self.loader_visible = False

    async def _within_grace_window(self) -> bool:
        last = self.record.last_verified_at
        mark = await self.store.last_verified()
        if mark is not None:
            last = max(last, mark.verified_at)
        return self._clock() - last < self.recent_window

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------
    async def _run(self, token: str) -> Phase:
        fp = token_fingerprint(token)
        quiet = await self._within_grace_window()

        self.record.phase = Phase.VERIFYING
        self.record.token = token
        self.record.last_error = None
        if not quiet:
            self._start_loader()

        try:
            profile = await self._reconcile(token)
        except Unauthorized:
            logger.info("backend rejected %s; session dropped", fp)
            self._fail(token, "unauthorized")
            return self.phase
        except NetworkError as e:
            self._fail(token, e.code)
            if await self.store.was_verified(token):
                logger.warning("network failure verifying %s; keeping previously verified token", fp)
            else:
                logger.warning("network failure verifying %s; clearing session", fp)
                await self._clear_if_current(token)
            return self.phase
        except DopeAuthError as e:
            logger.warning("verification of %s failed: %s", fp, e.code)
            self._fail(token, e.code)
            await self._clear_if_current(token)
            return self.phase
        except Exception:
            logger.exception("verification of %s crashed", fp)
            self._fail(token, "server_error")
            await self._clear_if_current(token)
            return self.phase
        finally:
            self._stop_loader()

        if profile is False:
            # token changed while we were away; result belongs to nobody
            logger.info("discarding verification of %s: token changed", fp)
            if self.record.token == token:
                self.record.phase = Phase.IDLE
            return self.phase

        self.record.phase = Phase.VERIFIED
        self._verified.publish()
        logger.info("verified %s", fp)
        return self.phase

    def _fail(self, token: str, code: str) -> None:
        if self.record.token == token:
            self.record.phase = Phase.IDLE
        self.record.last_error = code

    async def _clear_if_current(self, token: str) -> None:
        # never clear a token that replaced ours mid-flight
        if await self.store.get() == token:
            await self.store.clear_all()

    async def _reconcile(self, token: str):
        """
        Steps 3-7. Returns the profile (or None), or False when the result
        was discarded because the stored token changed or the machine was reset.
        """
        profile = await self.api.fetch_me(token)
        had_user = profile is not None
        has_address = had_user and profile.has_any_address

        try:
            wallet_id = await self._ensure_wallet_id(allow_create=not has_address)
        except WalletCreationNonFatal as e:
            logger.warning("wallet creation failed for %s; continuing without profile: %s", token_fingerprint(token), e)
            return await self._commit(token, None)

        if not had_user:
            if not wallet_id:
                raise RegistrationBlocked("Failed to obtain wallet after refresh")
            await self.api.register_wallet(token, wallet_id)
            profile = await self.api.fetch_me(token)

        return await self._commit(token, profile)

    def _still_current(self, token: str, stored: Optional[str]) -> bool:
        # a logout resets the record; a newer token replaces the stored one
        return stored == token and self.record.token == token

    async def _commit(self, token: str, profile: Optional[UserProfile]):
        """Persist a finished run, or return False if it went stale."""
        if not self._still_current(token, await self.store.get()):
            return False

        now = self._clock()
        if profile is not None:
            await self.store.save_profile(profile)
            await self.store.save_wallets(profile.addresses())
        await self.store.mark_verified(token, now)

        # the snapshot writes above yield; a logout may have landed meanwhile
        if not self._still_current(token, await self.store.get()):
            return False

        self.record.profile = profile
        self.record.last_verified_token = token
        self.record.last_verified_at = now

        await self.store.save(token)
        return profile

    # -------------------------------------------------------------------------
    # Wallet resolution
    # -------------------------------------------------------------------------
    async def _refresh_wallets(self) -> None:
        try:
            await self.provider.refresh_wallets()
        except Exception as e:
            # a failed refresh only means polling sees the old list
            logger.warning("wallet refresh failed: %s", e)

    async def _poll_wallet_id(self) -> Optional[str]:
        result = await wait_for(self.provider.first_wallet_id, self.poll_timeout, self.poll_interval)
        return result.value

    async def _ensure_wallet_id(self, allow_create: bool) -> Optional[str]:
        await self._refresh_wallets()
        wallet_id = await self._poll_wallet_id()
        if wallet_id or not allow_create:
            return wallet_id

        try:
            await self.provider.create_wallet(DEFAULT_WALLET_NAME, DEFAULT_ACCOUNTS)
        except WalletCreationError as e:
            raise WalletCreationNonFatal(str(e) or e.code) from e

        await self._refresh_wallets()
        return await self._poll_wallet_id()

"""
Router guard.

Route gating is a pure function of two booleans: does the identity provider
report the user as authenticated, and is an app token present locally. The
RouterGuard keeps the "token present" half current by re-reading the store on
every token-updated broadcast.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Set

from .bus import SessionBus, Subscription
from .provider import IdentityProvider
from .storage import TokenStore

logger = logging.getLogger(__name__)

LOGIN_PATH = "/login"
DASHBOARD_PATH = "/dashboard"
SETTINGS_PATH = "/settings"


class RouteClass(str, Enum):
    LANDING = "landing"          # unauthenticated landing
    PASSTHROUGH = "passthrough"  # provider-authenticated, verification running
    DASHBOARD = "dashboard"


@dataclass(frozen=True)
class RouteDecision:
    path: str
    redirect: Optional[str] = None

    @property
    def render(self) -> bool:
        return self.redirect is None


def classify(authenticated: bool, has_token: bool) -> RouteClass:
    if has_token:
        return RouteClass.DASHBOARD
    if authenticated:
        return RouteClass.PASSTHROUGH
    return RouteClass.LANDING


def resolve(path: str, authenticated: bool, has_token: bool) -> RouteDecision:
    """
    Map a requested path to "render it" or "redirect elsewhere".

    "/"          -> dashboard or login
    "/login"     -> dashboard once a token exists
    "/dashboard" -> login until a token exists
    "/settings"  -> always rendered
    anything else falls back like "/"
    """
    path = "/" + path.strip().strip("/") if path.strip("/") else "/"
    home = DASHBOARD_PATH if has_token else LOGIN_PATH

    if path == LOGIN_PATH:
        return RouteDecision(path, DASHBOARD_PATH if has_token else None)
    if path == DASHBOARD_PATH:
        return RouteDecision(path, None if has_token else LOGIN_PATH)
    if path == SETTINGS_PATH:
        return RouteDecision(path)
    return RouteDecision(path, home)


class RouterGuard:
    def __init__(self, store: TokenStore, provider: IdentityProvider):
        self.store = store
        self.provider = provider
        self.has_token = False
        self._sub: Optional[Subscription] = None
        self._pending: Set[asyncio.Task] = set()

    async def mount(self, bus: SessionBus) -> None:
        """
        Subscribe and take the initial reading.

        On a native cold start only the durable store may hold the token; if
        the provider says we are authenticated, hydrate the cache from it.
        """
        self._sub = bus.subscribe(self._on_token_updated)
        await self.refresh()
        if self.provider.authenticated and not self.has_token:
            if await self.store.hydrate():
                logger.info("hydrated app token from durable store")
                self.has_token = True

    def unmount(self) -> None:
        if self._sub is not None:
            self._sub.close()
            self._sub = None

    async def refresh(self) -> bool:
        self.has_token = await self.store.has_cached_token()
        return self.has_token

    def _on_token_updated(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.refresh())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def settle(self) -> None:
        """Wait for re-reads scheduled by broadcasts."""
        while self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    @property
    def route_class(self) -> RouteClass:
        return classify(self.provider.authenticated, self.has_token)

    def resolve(self, path: str) -> RouteDecision:
        return resolve(path, self.provider.authenticated, self.has_token)

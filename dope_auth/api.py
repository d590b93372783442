"""
API client for the dope backend.

Covers the exchange endpoints, the reconciliation endpoints the verification
state machine relies on (/auth/me, /auth/verify) and the auxiliary calls the
UI makes (referral redeem, claim, deletion request).

Unauthorized handling is unified: any authenticated call that comes back 401
invokes the `on_unauthorized` hook once (the session wires it to "clear token,
broadcast") before the error reaches the caller.
"""

import inspect
import logging
import re
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import httpx
from pydantic import ValidationError

from .config import Settings, settings as default_settings
from .errors import (
    ApiError,
    DopeAuthError,
    Expired,
    InvalidCredential,
    InvalidSignature,
    MissingClaims,
    MissingInput,
    NetworkError,
    RegistrationFailed,
    Unauthorized,
)
from .models import DeletionResponse, ExchangeResponse, MeResponse, MessageResponse, UserProfile, VerifyRequest

logger = logging.getLogger(__name__)

UnauthorizedHook = Callable[[], Union[None, Awaitable[None]]]

_LOCALHOST_RE = re.compile(r"^(http://)?(localhost|127\.0\.0\.1)(:|/|$)", re.IGNORECASE)

# error codes emitted by the exchange service (see errors.py)
_EXCHANGE_ERRORS = {
    cls.code: cls for cls in (MissingInput, InvalidCredential, MissingClaims, Expired, InvalidSignature)
}


def resolve_api_base(s: Optional[Settings] = None) -> str:
    """
    Pick the backend base URL for this platform.

    Native builds use API_BASE_MOBILE when set. Otherwise an Android emulator
    cannot reach the host's localhost, so it is rewritten to 10.0.2.2.
    """
    s = s or default_settings
    if s.PLATFORM in ("ios", "android"):
        if s.API_BASE_MOBILE:
            return s.API_BASE_MOBILE
        if s.PLATFORM == "android" and _LOCALHOST_RE.match(s.API_BASE):
            return re.sub(r"localhost|127\.0\.0\.1", "10.0.2.2", s.API_BASE, count=1, flags=re.IGNORECASE)
    return s.API_BASE


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class DopeApiClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        on_unauthorized: Optional[UnauthorizedHook] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or resolve_api_base()).rstrip("/")
        self.timeout = timeout if timeout is not None else default_settings.HTTP_TIMEOUT_SECONDS
        self.on_unauthorized = on_unauthorized
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        json_data: Optional[Dict[str, Any]] = None,
        react_to_401: bool = True,
    ) -> httpx.Response:
        """
        Make an HTTP request; transport failures become NetworkError.

        Status codes are left to the caller, except that a 401 on an
        authenticated call fires the unauthorized hook first.
        """
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.request(method, path, headers=headers, json=json_data)
            except httpx.RequestError as e:
                logger.warning("request error %s %s: %s", method, path, e)
                raise NetworkError(f"{method} {path} failed", reason=type(e).__name__)

        if response.status_code == 401 and token and react_to_401:
            logger.info("401 from %s; invalidating session", path)
            await self._fire_unauthorized()
        return response

    async def _fire_unauthorized(self) -> None:
        if self.on_unauthorized is None:
            return
        out = self.on_unauthorized()
        if inspect.isawaitable(out):
            await out

    # -------------------------------------------------------------------------
    # Exchange
    # -------------------------------------------------------------------------
    def _exchange_error(self, response: httpx.Response) -> DopeAuthError:
        body = _json_or_empty(response)
        detail = body.get("detail", body)
        if isinstance(detail, dict):
            cls = _EXCHANGE_ERRORS.get(detail.get("error", ""))
            if cls is not None:
                return cls(detail.get("message", ""))
        if response.status_code == 401:
            return InvalidCredential("exchange rejected")
        if response.status_code == 400:
            return MissingInput("exchange rejected")
        return NetworkError(f"exchange failed with {response.status_code}")

    async def _exchange(self, path: str, json_data: Dict[str, Any], token: Optional[str] = None) -> ExchangeResponse:
        response = await self._request("POST", path, token=token, json_data=json_data, react_to_401=False)
        if not response.is_success:
            raise self._exchange_error(response)
        try:
            return ExchangeResponse.model_validate(response.json())
        except (ValueError, ValidationError):
            raise NetworkError("malformed exchange response")

    async def exchange_session(self, credential: str) -> ExchangeResponse:
        """Delegated-session mode: provider credential -> app token."""
        return await self._exchange("/api/auth/exchange", {}, token=credential)

    async def exchange_signature(self, address: str, message: str, signature: str) -> ExchangeResponse:
        """Message-signature mode: EVM personal signature -> app token."""
        return await self._exchange(
            "/api/auth/evm-exchange",
            {"address": address, "message": message, "signature": signature},
        )

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------
    async def fetch_me(self, token: str) -> Optional[UserProfile]:
        """
        Backend view of the user.

        Returns None when the backend has no user yet (404, or a null user).
        Raises Unauthorized on 401 and NetworkError on anything else that is
        not a success, so a flaky backend is never mistaken for "new user".
        """
        response = await self._request("GET", "/auth/me", token=token)
        if response.status_code == 401:
            raise Unauthorized("authme_unauthorized")
        if response.status_code == 404:
            return None
        if not response.is_success:
            raise NetworkError("authme_failed", status=response.status_code)
        try:
            return MeResponse.model_validate(response.json()).user
        except (ValueError, ValidationError):
            raise NetworkError("authme_malformed")

    async def register_wallet(self, token: str, wallet_id: str) -> Optional[UserProfile]:
        body = VerifyRequest(wallet_id=wallet_id).model_dump(by_alias=True)
        response = await self._request("POST", "/auth/verify", token=token, json_data=body)
        if response.status_code == 401:
            raise Unauthorized("auth_verify_unauthorized")
        if not response.is_success:
            raise RegistrationFailed("auth_verify_failed", status=response.status_code)
        try:
            return MeResponse.model_validate(response.json()).user
        except (ValueError, ValidationError):
            # registration went through; the profile is re-fetched afterwards anyway
            return None

    # -------------------------------------------------------------------------
    # Auxiliary endpoints
    # -------------------------------------------------------------------------
    async def _call(self, path: str, default_error: str, token: Optional[str], json_data=None) -> Dict[str, Any]:
        response = await self._request("POST", path, token=token, json_data=json_data)
        body = _json_or_empty(response)
        if not response.is_success:
            message = body.get("message") or body.get("error") or default_error
            raise ApiError(str(message), status_code=response.status_code, body=body)
        return body

    async def redeem_referral(self, code: str, token: Optional[str] = None) -> MessageResponse:
        body = await self._call("/referral/redeem", "referral_redeem_failed", token, {"code": code})
        return MessageResponse.model_validate(body)

    async def claim_authorization(self, token: str, authorization: str) -> MessageResponse:
        body = await self._call("/claim", "claim_failed", token, {"authorization": authorization})
        return MessageResponse.model_validate(body)

    async def request_account_deletion(self, token: str) -> DeletionResponse:
        body = await self._call("/auth/delete-request", "delete_request_failed", token)
        try:
            return DeletionResponse.model_validate(body)
        except ValidationError:
            raise ApiError("delete_request_malformed", status_code=502, body=body)

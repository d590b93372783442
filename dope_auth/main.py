# dope_auth/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is thin orchestration glue for the token-exchange service:
#   - It wires HTTP endpoints to the exchange primitives in exchange.py.
#   - It MUST NOT implement crypto itself (identity.py + tokens.py do that).
#   - It keeps no state: every request is verified from scratch.
#
# Endpoints:
#   POST /api/auth/exchange      identity-provider credential -> app token
#   POST /api/auth/evm-exchange  EVM personal signature       -> app token
#   POST /api/wallets/export     protected stub (always 501 once authorized)
#   GET  /api/health
#
# Error mapping: DopeAuthError subclasses carry their own status code and are
# converted into HTTPException(detail={"error", "message"}). Anything else is a
# 500 with a generic message; the exception text is logged, not returned.
# -----------------------------------------------------------------------------

import logging
from typing import Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .audit import AuditLog
from .config import settings
from .errors import DopeAuthError
from .exchange import TokenExchange
from .models import EvmExchangeRequest, ExchangeRequest

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Dope Auth Exchange",
    version="0.1.0",
)

# The app is served from capacitor/web origins we do not enumerate.
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------
_exchange: Optional[TokenExchange] = None
_audit: Optional[AuditLog] = None


def get_exchange() -> TokenExchange:
    global _exchange
    if _exchange is None:
        _exchange = TokenExchange.from_settings(settings)
    return _exchange


def get_audit() -> AuditLog:
    global _audit
    if _audit is None:
        _audit = AuditLog(settings.AUDIT_DIR, enabled=settings.AUDIT_ENABLED)
    return _audit


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _bearer(request: Request) -> str:
    auth = request.headers.get("authorization", "")
    return auth[7:].strip() if auth.startswith("Bearer ") else ""


def _client_fields(request: Request) -> dict:
    return {
        "request_ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _fail(e: DopeAuthError):
    raise HTTPException(status_code=e.status_code, detail=e.as_detail())


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------
@app.get("/api/health")
def health():
    return {"ok": True}


@app.post("/api/auth/exchange")
def auth_exchange(
    request: Request,
    body: Optional[ExchangeRequest] = Body(default=None),
    exchange: TokenExchange = Depends(get_exchange),
    audit: AuditLog = Depends(get_audit),
):
    credential = _bearer(request) or (body.turnkey_jwt if body else None)
    try:
        result = exchange.exchange_session(credential)
    except DopeAuthError as e:
        audit.record(mode="session", result="denied", reason=e.code, credential=credential, **_client_fields(request))
        logger.info("session exchange rejected: %s", e.code)
        _fail(e)
    except Exception:
        logger.exception("exchange error")
        raise HTTPException(status_code=500, detail={"error": "server_error", "message": "Server error"})

    audit.record(
        mode="session",
        result="approved",
        reason="credential_valid",
        subject=f"{result.user.tk_org_id}:{result.user.tk_user_id}",
        credential=credential,
        issued_token=result.app_jwt,
        **_client_fields(request),
    )
    return result.model_dump(by_alias=True, exclude_none=True)


@app.post("/api/auth/evm-exchange")
def auth_evm_exchange(
    request: Request,
    body: Optional[EvmExchangeRequest] = Body(default=None),
    exchange: TokenExchange = Depends(get_exchange),
    audit: AuditLog = Depends(get_audit),
):
    body = body or EvmExchangeRequest()
    try:
        result = exchange.exchange_signature(body.address, body.message, body.signature)
    except DopeAuthError as e:
        audit.record(mode="evm", result="denied", reason=e.code, **_client_fields(request))
        logger.info("evm exchange rejected: %s", e.code)
        _fail(e)
    except Exception:
        logger.exception("evm-exchange error")
        raise HTTPException(status_code=500, detail={"error": "server_error", "message": "Server error"})

    audit.record(
        mode="evm",
        result="approved",
        reason="signature_valid",
        subject=result.user.evm_address,
        issued_token=result.app_jwt,
        **_client_fields(request),
    )
    return result.model_dump(by_alias=True, exclude_none=True, exclude={"wallets"})


@app.post("/api/wallets/export")
def wallets_export(request: Request, exchange: TokenExchange = Depends(get_exchange)):
    token = _bearer(request)
    if not token:
        raise HTTPException(status_code=401, detail={"error": "unauthorized", "message": "Missing app JWT"})
    try:
        exchange.verify_app_token(token)
    except DopeAuthError:
        raise HTTPException(status_code=401, detail={"error": "unauthorized", "message": "Invalid app JWT"})
    # Seeds/keys are never exported from this service.
    raise HTTPException(status_code=501, detail={"error": "not_implemented", "message": "Export not enabled"})

from pathlib import Path
from urllib.parse import urlparse, urlunparse

from pydantic import field_validator
from pydantic_settings import BaseSettings


DEV_JWT_SECRET = "dev-secret"


class Settings(BaseSettings):
    # app session token (exchange service)
    APP_JWT_SECRET: str = DEV_JWT_SECRET
    APP_JWT_ISSUER: str = "dope-backend"
    APP_JWT_TTL_SECONDS: int = 1800

    # identity provider notarizer key (uncompressed P-256 point, hex)
    IDP_NOTARIZER_PUBLIC_KEY: str = ""

    # backend the client talks to
    API_BASE: str = "https://api.dope.cards"
    API_BASE_MOBILE: str = ""
    PLATFORM: str = "web"
    HTTP_TIMEOUT_SECONDS: float = 15.0

    # verification state machine tuning
    WALLET_POLL_TIMEOUT_SECONDS: float = 2.0
    WALLET_POLL_INTERVAL_SECONDS: float = 0.2
    RECENT_VERIFY_SECONDS: float = 15.0
    LOADER_DELAY_SECONDS: float = 0.25

    # client-side persistence
    STORAGE_PATH: Path = Path.home() / ".dope" / "preferences.json"
    STORAGE_NAMESPACE: str = "dope"

    # exchange audit trail
    AUDIT_DIR: Path = Path(__file__).resolve().parent.parent / "audit"
    AUDIT_ENABLED: bool = True

    class Config:
        env_file = ".env"

    @field_validator("API_BASE", "API_BASE_MOBILE")
    @classmethod
    def normalize_base(cls, v: str) -> str:
        """
        API bases must be absolute http(s) URLs.

        Normalization:
          - strip whitespace
          - strip trailing slash
          - lowercase hostname, keep port and path

        An empty API_BASE_MOBILE means "no mobile override".
        """
        v = (v or "").strip().rstrip("/")
        if not v:
            return v

        p = urlparse(v)
        if p.scheme not in ("http", "https"):
            raise ValueError("API base must start with http:// or https://")
        if not p.hostname:
            raise ValueError("API base must include a hostname")

        netloc = p.hostname.lower()
        if p.port:
            netloc = f"{netloc}:{p.port}"
        return urlunparse((p.scheme, netloc, p.path.rstrip("/"), "", "", ""))

    @field_validator("PLATFORM")
    @classmethod
    def normalize_platform(cls, v: str) -> str:
        v = (v or "").strip().lower() or "web"
        if v not in ("web", "ios", "android"):
            raise ValueError("PLATFORM must be one of: web, ios, android")
        return v

    @field_validator("IDP_NOTARIZER_PUBLIC_KEY")
    @classmethod
    def normalize_notarizer_key(cls, v: str) -> str:
        # accept "0x" prefixes and mixed case from env
        v = (v or "").strip().lower()
        if v.startswith("0x"):
            v = v[2:]
        if v:
            try:
                bytes.fromhex(v)
            except ValueError:
                raise ValueError("IDP_NOTARIZER_PUBLIC_KEY must be hex")
        return v

    @field_validator("STORAGE_NAMESPACE")
    @classmethod
    def normalize_namespace(cls, v: str) -> str:
        return (v or "").strip().strip(".") or "dope"

    @property
    def using_dev_secret(self) -> bool:
        return self.APP_JWT_SECRET == DEV_JWT_SECRET


settings = Settings()

"""
core/config.py

Typed settings loader for the Lumen-PG middleware layer.
Pydantic v2 + pydantic-settings.
Ensures .env.local (or .env) is loaded automatically for local development.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# Load environment early (.env.local preferred). We try both the package
# folder and the repo root so it works no matter where uvicorn is started.
# ---------------------------------------------------------------------------
PACKAGE_DIR = Path(__file__).resolve().parents[2]          # .../apps/lumen_pg
ROOT_DIR = PACKAGE_DIR.parents[1]                           # repo root

_env_candidates = [
    PACKAGE_DIR / ".env.local",
    ROOT_DIR / ".env.local",
    PACKAGE_DIR / ".env",
    ROOT_DIR / ".env",
]

for _p in _env_candidates:
    if _p.exists():
        load_dotenv(_p, override=False)
        break


def _split_csv(raw: Optional[str]) -> List[str]:
    return [item.strip() for item in (raw or "").split(",") if item.strip()]


# ---------------------------------------------------------------------------
# Settings Model
# ---------------------------------------------------------------------------
class Settings(BaseSettings):
    # ----- Service -----
    APP_NAME: str = "lumen-pg"
    APP_STAGE: str = "dev"  # dev|staging|prod
    API_BASE_PATH: str = "/api"
    LOG_LEVEL: str = "INFO"

    # ----- Authentication -----
    LOGIN_PATH: str = "/login"
    # "status" answers 401, "redirect" answers 302 to LOGIN_PATH.
    AUTH_FAILURE_MODE: str = "status"

    # ----- CORS -----
    ALLOWED_ORIGINS: str = "http://localhost,http://localhost:3000,http://127.0.0.1,http://testserver"
    ALLOWED_ORIGIN_LIST: List[str] = Field(default_factory=list)
    CORS_MAX_AGE: int = 600
    CORS_ALLOWED_HEADERS: str = "Content-Type,Authorization,X-Request-ID,X-CSRF-Token,X-Requested-With"

    # ----- Cookies / CSRF -----
    CSRF_HEADER: str = "X-CSRF-Token"
    CSRF_COOKIE: str = "csrf_token"
    CSRF_CHECK_ORIGIN: bool = True
    COOKIE_SIGNING_KEY: SecretStr = SecretStr("dev-only-change-me")
    SAMESITE_POLICY: str = "Lax"
    HTTPS_STRICT: bool = True

    # ----- Rate limits -----
    RATE_LIMIT: str = "100/m"
    RATE_LIMIT_BY_USER: bool = False
    RATE_LIMIT_IDLE_SEC: int = 600
    REDIS_URL: Optional[str] = None  # optional

    # ----- Validation -----
    MAX_BODY_BYTES: int = 8 * 1024 * 1024  # 8 MiB
    MAX_QUERY_VALUE_LENGTH: int = 2048

    # ----- Response shaping -----
    COMPRESSION_MIN_SIZE: int = 1024
    DEFAULT_CONTENT_TYPE: str = "application/json; charset=utf-8"
    DEFAULT_CACHE_CONTROL: str = "no-store"
    CONTENT_SECURITY_POLICY: str = (
        "default-src 'self'; script-src 'self'; style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data:; frame-ancestors 'none'; base-uri 'self'; form-action 'self'"
    )
    FRAME_OPTIONS: str = "DENY"
    PRODUCIBLE_MEDIA_TYPES: str = "application/json,text/html,text/plain,text/csv"
    STRICT_CONTENT_NEGOTIATION: bool = True

    # ----- Collaborator caches -----
    PERMISSIONS_CACHE_TTL_SEC: int = 300
    METADATA_CACHE_TTL_SEC: int = 900

    # ----- Pydantic Settings Config -----
    model_config = SettingsConfigDict(
        env_file=None,  # already loaded manually above
        case_sensitive=False,
        extra="ignore",
    )

    # ----- Validators -----
    @model_validator(mode="after")
    def build_allowed_origin_list(self) -> "Settings":
        # Derived from ALLOWED_ORIGINS unless given explicitly
        if not self.ALLOWED_ORIGIN_LIST:
            self.ALLOWED_ORIGIN_LIST = [o.rstrip("/") for o in _split_csv(self.ALLOWED_ORIGINS)]
        return self

    @field_validator("AUTH_FAILURE_MODE")
    @classmethod
    def check_failure_mode(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in ("status", "redirect"):
            raise ValueError("AUTH_FAILURE_MODE must be 'status' or 'redirect'")
        return v

    @field_validator("SAMESITE_POLICY")
    @classmethod
    def check_samesite(cls, v: str) -> str:
        v = (v or "").strip().capitalize()
        if v not in ("Lax", "Strict"):
            raise ValueError("SAMESITE_POLICY must be 'Lax' or 'Strict'")
        return v

    @field_validator("FRAME_OPTIONS")
    @classmethod
    def check_frame_options(cls, v: str) -> str:
        v = (v or "").strip().upper()
        if v not in ("DENY", "SAMEORIGIN"):
            raise ValueError("FRAME_OPTIONS must be 'DENY' or 'SAMEORIGIN'")
        return v

    @property
    def cors_allowed_header_list(self) -> List[str]:
        return _split_csv(self.CORS_ALLOWED_HEADERS)

    @property
    def producible_media_type_list(self) -> List[str]:
        return [t.lower() for t in _split_csv(self.PRODUCIBLE_MEDIA_TYPES)]


# ---------------------------------------------------------------------------
# Cached accessor
# ---------------------------------------------------------------------------
@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached accessor so the app constructs Settings only once per process."""
    return Settings()

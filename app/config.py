"""Configuration management for the QR redirect service.

This module provides centralized configuration management using Pydantic BaseSettings
with environment variable support and caching for performance.

Flow Diagram — get_settings()
=============================
::
    ┌─────────────┐
    │  Call get_  │
    │  settings() │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Check cache  │
    │ (lru_cache)  │
    └──────┬──────┘
    HIT?  │
    ┌─────┴─────┐
    │ NO         │ YES
    ▼            ▼
┌─────────┐  ┌─────────┐
│ Create  │  │ Return  │
│ Settings│  │ cached  │
│ instance│  │ value   │
└─────────┘  └─────────┘

How to Use
===========
**Step 1 — Import**::
    from app.config import get_settings

**Step 2 — Get settings**::
    settings = get_settings()
    ttl = settings.REDIRECT_CACHE_TTL_SECONDS

**Step 3 — Disable the cache**::
    REDIS_URL= uvicorn app.main:app   # empty value → no cache, store-only path

Key Behaviours
===============
- Settings are cached after first access for performance.
- Environment variables override defaults automatically.
- An empty REDIS_URL turns the cache off; every component still works, only slower.
- An empty HOSTING_PROVIDER_TOKEN turns domain verification into a development
  auto-verify.

Classes:
    Settings:  Pydantic model for all configuration values.

"""

__all__ = ["Settings", "get_settings"]

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_NAME: str = "qrlink"
    APP_ENV: str = "development"
    BASE_URL: str = "http://localhost:8080"
    LOG_LEVEL: str = "INFO"

    # PostgreSQL base vars (used by compose and available in env files)
    POSTGRES_USER: str = "qrlink"
    POSTGRES_PASSWORD: str = "qrlink"
    POSTGRES_DB: str = "qrlink"

    # PostgreSQL
    DATABASE_URL: str = "postgresql+asyncpg://qrlink:qrlink@db:5432/qrlink"
    DATABASE_COMMAND_TIMEOUT_SECONDS: float = 5.0

    # Redis (optional; empty disables caching and rate limiting fails open)
    REDIS_URL: str = "redis://redis:6379/0"
    REDIS_SOCKET_TIMEOUT_SECONDS: float = 0.5

    # Cache TTLs
    REDIRECT_CACHE_TTL_SECONDS: int = 60 * 60 * 24
    DOMAIN_CACHE_TTL_SECONDS: int = 60 * 60 * 24 * 7
    RATE_LIMIT_WINDOW_SECONDS: int = 60 * 60 * 24

    # Short codes
    SHORT_CODE_MAX_ATTEMPTS: int = 5

    # Scan analytics
    IP_HASH_SALT: str = "default-salt"
    GEO_COUNTRY_HEADER: str = "x-vercel-ip-country"
    GEO_CITY_HEADER: str = "x-vercel-ip-city"
    ANALYTICS_DEFAULT_DAYS: int = 30

    # Detached work
    BACKGROUND_TASK_GRACE_SECONDS: float = 5.0

    # Hosting provider (custom domain DNS verification)
    HOSTING_PROVIDER_API_URL: str = "https://api.vercel.com"
    HOSTING_PROVIDER_TOKEN: str = ""
    HOSTING_PROVIDER_PROJECT_ID: str = ""
    HOSTING_PROVIDER_TIMEOUT_SECONDS: float = 5.0
    DEFAULT_CNAME_TARGET: str = "cname.vercel-dns.com"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()

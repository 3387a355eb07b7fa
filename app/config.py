"""
Application configuration using Pydantic Settings.

All configuration is loaded from environment variables, with an optional .env file
as a fallback. Secrets (JWT key, wallet encryption key, provider API keys and
webhook secrets) never live in source code — .env is gitignored and
.env.example provides a safe template.

Pydantic Settings automatically:
  1. Reads from environment variables (highest priority)
  2. Falls back to .env file values
  3. Uses defaults defined here (lowest priority)

Provider selection:
  LIGHTNING_PROVIDER is read once at process start to build the provider
  selector (see app/providers/selector.py). Changing it means a redeploy;
  there is no runtime switch.

Usage:
    from app.config import settings
    print(settings.LIGHTNING_PROVIDER)
"""

from pydantic_settings import BaseSettings, SettingsConfigDict

from app.providers.base import ProviderKind


class Settings(BaseSettings):
    """
    Central configuration for the Sats Jar API.

    Required fields (no defaults) MUST be set in .env or environment:
      - SECRET_KEY: Used to verify JWT bearer tokens
      - WALLET_ENCRYPTION_KEY: Fernet key for provider credentials at rest
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # --- Application ---
    APP_NAME: str = "Sats Jar API"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    # One JSON object per line; set to false for human-readable local output
    LOG_JSON: bool = True

    # --- Database ---
    # SQLite for development; use a postgresql+asyncpg:// URL in production
    DATABASE_URL: str = "sqlite+aiosqlite:///./satsjar.db"

    # --- Authentication ---
    # Tokens are issued by the identity service; this API only verifies them.
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # --- Wallet credential encryption ---
    # REQUIRED: Fernet key for encrypting per-account provider keys at rest
    # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    WALLET_ENCRYPTION_KEY: str

    # --- Lightning provider selection ---
    LIGHTNING_PROVIDER: ProviderKind = ProviderKind.LNBITS
    # Sends money to a different wallet than the customer intended. Off unless
    # both wallets are reconciled out of band.
    ENABLE_LIGHTNING_FALLBACK: bool = False
    PROVIDER_TIMEOUT_SECONDS: float = 30.0

    # --- LNbits (provider A) ---
    LNBITS_BASE_URL: str = "https://demo.lnbits.com/api/v1"
    # Platform wallet admin key, used only for the operator balance view
    LNBITS_ADMIN_KEY: str | None = None
    LNBITS_WEBHOOK_URL: str | None = None
    LNBITS_WEBHOOK_SECRET: str | None = None
    # LNbits reports webhook amounts in millisatoshis on some deployments
    LNBITS_WEBHOOK_AMOUNT_MSAT: bool = False

    # --- OpenNode (provider B) ---
    OPENNODE_BASE_URL: str = "https://api.opennode.com/v1"
    OPENNODE_API_KEY: str | None = None
    OPENNODE_CALLBACK_URL: str | None = None

    # --- Settlement ---
    SETTLEMENT_MAX_ATTEMPTS: int = 5
    SETTLEMENT_RETRY_BACKOFF_SECONDS: float = 0.05

    # --- CORS ---
    # Origins allowed to make cross-origin requests (frontend URLs)
    ALLOWED_ORIGINS: list[str] = ["http://localhost:3000"]


# Singleton: import this instance everywhere instead of creating new Settings()
settings = Settings()

import os
from dotenv import load_dotenv

load_dotenv()


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value not in (None, "") else default


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Base configuration class with common settings."""
    # Google OAuth
    GOOGLE_CLIENT_ID = os.environ.get("GOOGLE_CLIENT_ID")
    GOOGLE_CLIENT_SECRET = os.environ.get("GOOGLE_CLIENT_SECRET")
    GOOGLE_REDIRECT_URI = os.environ.get("GOOGLE_REDIRECT_URI", "http://localhost:8000/oauth/google/callback")
    GOOGLE_OAUTH_SCOPE = os.environ.get("GOOGLE_OAUTH_SCOPE", "https://www.googleapis.com/auth/calendar")
    GOOGLE_AUTHORIZATION_URI = os.environ.get("GOOGLE_AUTHORIZATION_URI", "https://accounts.google.com/o/oauth2/v2/auth")
    GOOGLE_TOKEN_URI = os.environ.get("GOOGLE_TOKEN_URI", "https://oauth2.googleapis.com/token")

    # Google Calendar
    GOOGLE_CALENDAR_BASE_URL = os.environ.get("GOOGLE_CALENDAR_BASE_URL", "https://www.googleapis.com/calendar/v3")
    GOOGLE_CALENDAR_ID = os.environ.get("GOOGLE_CALENDAR_ID", "primary")
    GOOGLE_CALENDAR_TIMEZONE = os.environ.get("GOOGLE_CALENDAR_TIMEZONE", "UTC")
    GOOGLE_TOKEN_REFRESH_HORIZON_MINUTES = _env_int("GOOGLE_TOKEN_REFRESH_HORIZON_MINUTES", 5)

    # 'google' talks to the real API, 'mock' keeps events in memory (local dev)
    CALENDAR_ADAPTER = os.environ.get("CALENDAR_ADAPTER", "google").lower()

    # Outbox worker
    OUTBOX_WORKER_ENABLED = _env_bool("OUTBOX_WORKER_ENABLED", True)
    OUTBOX_POLL_INTERVAL_SECONDS = _env_int("OUTBOX_POLL_INTERVAL_SECONDS", 15)
    OUTBOX_LEASE_TIMEOUT_MINUTES = _env_int("OUTBOX_LEASE_TIMEOUT_MINUTES", 5)
    OUTBOX_MAX_RETRY = _env_int("OUTBOX_MAX_RETRY", 6)
    OUTBOX_BATCH_SIZE = _env_int("OUTBOX_BATCH_SIZE", 50)

    # OAuth state parameters are single use and expire after this many seconds
    OAUTH_STATE_TTL_SECONDS = _env_int("OAUTH_STATE_TTL_SECONDS", 600)

    HTTP_TIMEOUT_SECONDS = _env_int("HTTP_TIMEOUT_SECONDS", 30)

    # CORS configuration
    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FILE = os.environ.get("LOG_FILE")


class LocalConfig(Config):
    """Configuration for local development."""
    ENV = "local"
    DEBUG = True


class SandboxConfig(Config):
    """Configuration for sandbox/staging environment."""
    ENV = "sandbox"
    DEBUG = False


class ProductionConfig(Config):
    """Configuration for production environment."""
    ENV = "production"
    DEBUG = False


def get_config():
    """Get the appropriate configuration class based on environment variable.

    Environment is determined by FLASK_ENV or ENVIRONMENT variable:
    - 'local' or 'development' -> LocalConfig
    - 'sandbox' or 'staging' -> SandboxConfig
    - 'production' or 'prod' -> ProductionConfig

    Defaults to LocalConfig if not set.
    """
    env = (os.environ.get("FLASK_ENV") or os.environ.get("ENVIRONMENT", "local")).lower()

    if env in ["local", "development", "dev"]:
        return LocalConfig
    elif env in ["sandbox", "staging", "stage"]:
        return SandboxConfig
    elif env in ["production", "prod"]:
        return ProductionConfig
    else:
        # Default to local for safety
        return LocalConfig

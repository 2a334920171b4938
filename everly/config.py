import os
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name, default="false"):
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_int(name, default):
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


class Config:
    """Base configuration class with common settings."""
    # Nudge pipeline
    NUDGES_ENABLED = _env_flag("NUDGES_ENABLED")
    NUDGE_WORKER_SECRET = os.environ.get("NUDGE_WORKER_SECRET") or os.environ.get("WORKER_SECRET")
    NUDGE_MAX_RETRIES = _env_int("NUDGE_MAX_RETRIES", 3)
    NUDGE_BATCH_SIZE = _env_int("NUDGE_BATCH_SIZE", 20)
    NUDGE_LEASE_TIMEOUT_SECONDS = _env_int("NUDGE_LEASE_TIMEOUT_SECONDS", 300)  # 5 min, well above one batch
    NUDGE_RETRY_BASE_SECONDS = _env_int("NUDGE_RETRY_BASE_SECONDS", 60)
    NUDGE_RATE_LIMIT_WINDOW_HOURS = _env_int("NUDGE_RATE_LIMIT_WINDOW_HOURS", 6)  # 0 disables
    NUDGE_DEDUPE_PERIOD = os.environ.get("NUDGE_DEDUPE_PERIOD", "week")
    NUDGE_WORKER_INTERVAL_SECONDS = _env_int("NUDGE_WORKER_INTERVAL_SECONDS", 0)  # 0 = external trigger only

    # Delivery provider
    NUDGE_PROVIDER = os.environ.get("NUDGE_PROVIDER", "stub")
    NUDGE_WEBHOOK_URL = os.environ.get("NUDGE_WEBHOOK_URL")
    NUDGE_PROVIDER_TIMEOUT_SECONDS = _env_int("NUDGE_PROVIDER_TIMEOUT_SECONDS", 10)

    # Whop webhook
    WHOP_WEBHOOK_SECRET = os.environ.get("WHOP_WEBHOOK_SECRET")
    DEMO_HUB_ID = os.environ.get("DEMO_HUB_ID")

    # Rate limiting for externally triggerable endpoints
    RATE_LIMIT_BACKEND = os.environ.get("RATE_LIMIT_BACKEND", "memory")
    DISPATCH_RATE_LIMIT_MAX = _env_int("DISPATCH_RATE_LIMIT_MAX", 30)
    DISPATCH_RATE_LIMIT_WINDOW_SECONDS = _env_int("DISPATCH_RATE_LIMIT_WINDOW_SECONDS", 60)

    # Background tasks (metrics, post-webhook side effects)
    BACKGROUND_MAX_WORKERS = _env_int("BACKGROUND_MAX_WORKERS", 4)
    BACKGROUND_MAX_PENDING = _env_int("BACKGROUND_MAX_PENDING", 100)
    BACKGROUND_TASKS_INLINE = False

    # Logging
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FILE = os.environ.get("LOG_FILE")

    # CORS configuration
    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")


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


class TestingConfig(Config):
    """Configuration used by the test suite."""
    ENV = "testing"
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    NUDGES_ENABLED = True
    NUDGE_WORKER_SECRET = "test-worker-secret"
    NUDGE_MAX_RETRIES = 3
    NUDGE_RATE_LIMIT_WINDOW_HOURS = 0
    NUDGE_DEDUPE_PERIOD = "week"
    NUDGE_PROVIDER = "stub"
    WHOP_WEBHOOK_SECRET = "test-webhook-secret"
    DEMO_HUB_ID = None
    RATE_LIMIT_BACKEND = "memory"
    BACKGROUND_TASKS_INLINE = True
    LOG_FILE = None


def get_config():
    """Get the appropriate configuration class based on environment variable.

    Environment is determined by FLASK_ENV or ENVIRONMENT variable:
    - 'local' or 'development' -> LocalConfig
    - 'sandbox' or 'staging' -> SandboxConfig
    - 'production' or 'prod' -> ProductionConfig
    - 'testing' or 'test' -> TestingConfig

    Defaults to LocalConfig if not set.
    """
    env = (os.environ.get("FLASK_ENV") or os.environ.get("ENVIRONMENT", "local")).lower()

    if env in ["local", "development", "dev"]:
        return LocalConfig
    elif env in ["sandbox", "staging", "stage"]:
        return SandboxConfig
    elif env in ["production", "prod"]:
        return ProductionConfig
    elif env in ["testing", "test"]:
        return TestingConfig
    else:
        # Default to local for safety
        return LocalConfig

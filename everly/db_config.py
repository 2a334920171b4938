"""
Database URI and engine options for the queue, log and mapping tables.

Each environment names the env vars holding its URL, first one set wins.
Only local falls back to a SQLite file; sandbox and production refuse to
start without a URL so a worker never drains a queue it cannot share.
"""
import os

DATABASE_URL_VARS = {
    "local": ("LOCAL_DATABASE_URL",),
    "sandbox": ("SANDBOX_DATABASE_URL",),
    "production": ("PRODUCTION_DATABASE_URL", "DATABASE_URL"),
}

ENVIRONMENT_ALIASES = {
    "staging": "sandbox",
    "stage": "sandbox",
    "prod": "production",
}

LOCAL_SQLITE_URI = "sqlite:///everly.sqlite"


def normalize_environment(environment=None):
    """Map ENV / FLASK_ENV style names onto local, sandbox or production."""
    if environment is None:
        environment = os.environ.get("FLASK_ENV") or os.environ.get("ENVIRONMENT", "local")
    environment = ENVIRONMENT_ALIASES.get(environment.lower(), environment.lower())
    return environment if environment in DATABASE_URL_VARS else "local"


def postgres_engine_options(require_ssl=True):
    """Pool settings for Postgres behind a connection pooler."""
    from sqlalchemy.pool import QueuePool

    connect_args = {
        "connect_timeout": 10,
        "application_name": "everly_nudges",
        "options": "-c statement_timeout=30000",  # 30s per statement, dequeue included
    }
    if require_ssl:
        connect_args["sslmode"] = "require"

    return {
        "pool_pre_ping": True,
        "pool_recycle": 280,  # under the pooler's ~5 min idle cutoff
        "pool_size": 5,
        "max_overflow": 10,   # worker and dispatch share the process
        "pool_timeout": 30,
        "pool_reset_on_return": "commit",
        "poolclass": QueuePool,
        "connect_args": connect_args,
    }


def get_database_config(environment=None):
    """
    Resolve the database for an environment.

    Returns:
        tuple: (database_uri, engine_options or None)

    Raises:
        ValueError: sandbox/production with none of their URL vars set
    """
    environment = normalize_environment(environment)
    env_vars = DATABASE_URL_VARS[environment]

    database_uri = next((os.environ[name] for name in env_vars if os.environ.get(name)), None)
    if not database_uri:
        if environment != "local":
            raise ValueError(f"{' or '.join(env_vars)} must be set for {environment} environment")
        database_uri = LOCAL_SQLITE_URI

    if database_uri.startswith(("postgres://", "postgresql")):
        return database_uri, postgres_engine_options(require_ssl=environment != "local")
    return database_uri, None


def configure_database(app):
    """Configure database settings for the Flask app.

    A SQLALCHEMY_DATABASE_URI already present on the config class (tests)
    wins over the environment lookup.
    """
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SQLALCHEMY_ECHO"] = False

    if app.config.get("SQLALCHEMY_DATABASE_URI"):
        return

    database_uri, engine_options = get_database_config(app.config.get("ENV"))
    app.config["SQLALCHEMY_DATABASE_URI"] = database_uri
    if engine_options:
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

import os
import atexit
from pathlib import Path

from flask import Flask, jsonify
from flask_cors import CORS

# scheduler imports
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.executors.pool import ThreadPoolExecutor

from everly.logging_config import configure_logging, get_logger
from everly.models import db

logger = get_logger(__name__)


def init_scheduler(app):
    """
    Optionally trigger the nudge worker on an interval from inside the app.

    Disabled unless NUDGE_WORKER_INTERVAL_SECONDS > 0; production normally
    calls POST /nudges/worker from an external cron instead.
    """
    interval = app.config.get("NUDGE_WORKER_INTERVAL_SECONDS") or 0
    if interval <= 0 or not app.config.get("NUDGES_ENABLED"):
        return None

    # --- Prevent scheduler duplication in multi-worker environments ---
    if os.environ.get("WERKZEUG_RUN_MAIN") != "true" and not os.environ.get("IS_NUDGE_SCHEDULER"):
        logger.info("Skipping scheduler startup on this worker")
        return None

    from everly.nudges import get_worker

    def run_worker():
        with app.app_context():
            result = get_worker().run_once(app.config.get("NUDGE_MAX_RETRIES", 3))
            logger.info("Scheduled nudge worker run", **result.to_dict())

    executors = {"default": ThreadPoolExecutor(1)}
    scheduler = BackgroundScheduler(executors=executors)
    scheduler.add_job(
        func=run_worker,
        trigger="interval",
        seconds=interval,
        id="nudge_worker",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))

    logger.info("Scheduler started", job="nudge_worker", interval_seconds=interval)
    return scheduler


def init_extensions(app):
    """Build the queue store, delivery provider, rate limiter and background runner."""
    from everly.nudges.providers import build_provider
    from everly.nudges.queue import NudgeQueueStore
    from everly.services.background import BackgroundTaskRunner
    from everly.services.rate_limiter import build_rate_limiter

    app.extensions["nudge_queue_store"] = NudgeQueueStore.from_config(app.config)
    app.extensions["nudge_provider"] = build_provider(app.config)
    app.extensions["rate_limiter"] = build_rate_limiter(app.config.get("RATE_LIMIT_BACKEND", "memory"))

    runner = BackgroundTaskRunner(
        app,
        max_workers=app.config.get("BACKGROUND_MAX_WORKERS", 4),
        max_pending=app.config.get("BACKGROUND_MAX_PENDING", 100),
        inline=app.config.get("BACKGROUND_TASKS_INLINE", False),
    )
    app.extensions["background_runner"] = runner
    atexit.register(runner.shutdown)


def create_app(config_class=None):
    # Import config after dotenv is loaded
    from everly.config import get_config
    from everly.db_config import configure_database

    config_class = config_class or get_config()

    app = Flask(__name__)
    app.config.from_object(config_class)

    log_file = app.config.get("LOG_FILE")
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    configure_logging(log_level=app.config.get("LOG_LEVEL", "INFO"), log_file=log_file)

    configure_database(app)

    logger.info(f"Starting application in {config_class.ENV} environment")
    logger.info(f"Database URI: {app.config.get('SQLALCHEMY_DATABASE_URI', 'Not set')[:50]}...")

    # Get allowed origins from environment variable
    allowed_origins = app.config.get("CORS_ORIGINS", "*")
    if allowed_origins != "*":
        allowed_origins = [origin.strip() for origin in allowed_origins.split(",")]

    CORS(app,
         resources={r"/*": {"origins": allowed_origins}},
         allow_headers=["Content-Type", "Authorization"],
         methods=["GET", "POST", "OPTIONS"])

    db.init_app(app)
    init_extensions(app)

    from everly.nudges import nudges_bp
    from everly.whop import whop_bp

    app.register_blueprint(whop_bp, url_prefix="/webhooks")
    app.register_blueprint(nudges_bp)

    @app.route("/healthz")
    def healthz():
        return jsonify({"ok": True}), 200

    init_scheduler(app)

    return app

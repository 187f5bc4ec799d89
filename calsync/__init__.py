import atexit

from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from calsync.logging_config import configure_logging, get_logger
from calsync.models import db

# scheduler imports
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.executors.pool import ThreadPoolExecutor

logger = get_logger(__name__)


def build_components(app):
    """Wire the calendar adapter, credential manager, state store and worker from app config."""
    from calsync.google.calendar_service import GoogleCalendarService, MockCalendarService
    from calsync.google.client import GoogleCalendarClient
    from calsync.google.oauth import GoogleOAuthService
    from calsync.google.state_store import OAuthStateStore
    from calsync.worker.outbox_worker import CalendarOutboxWorker

    config = app.config
    oauth_service = GoogleOAuthService.from_config(config)

    adapter_name = (config.get("CALENDAR_ADAPTER") or "google").lower()
    if adapter_name == "mock":
        adapter = MockCalendarService()
    elif adapter_name == "google":
        adapter = GoogleCalendarService(GoogleCalendarClient.from_config(config, oauth_service))
    else:
        raise ValueError(f"Unknown CALENDAR_ADAPTER: {adapter_name}")

    worker = CalendarOutboxWorker.from_config(config, adapter, oauth_service=oauth_service, app=app)

    return {
        "adapter": adapter,
        "oauth_service": oauth_service,
        "state_store": OAuthStateStore(ttl_seconds=config.get("OAUTH_STATE_TTL_SECONDS", 600)),
        "worker": worker,
        "scheduler": None,
    }


def init_scheduler(app):
    """Start the background scheduler that polls the calendar outbox."""
    worker = app.extensions["calsync"]["worker"]
    interval = app.config.get("OUTBOX_POLL_INTERVAL_SECONDS", 15)

    # --- Configure scheduler ---
    executors = {"default": ThreadPoolExecutor(3)}
    scheduler = BackgroundScheduler(executors=executors)

    # A slow cycle must never overlap the next one in this process
    scheduler.add_job(
        func=worker.run,
        trigger="interval",
        seconds=interval,
        id="calendar_outbox_worker",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))

    app.extensions["calsync"]["scheduler"] = scheduler
    logger.info("Scheduler started", job="calendar_outbox_worker", interval_seconds=interval)
    return scheduler


def create_app(test_config=None):
    # Import config after dotenv is loaded
    from calsync.config import get_config
    from calsync.db_config import configure_database

    # Get the appropriate config class based on environment
    config_class = get_config()

    app = Flask(__name__)
    app.config.from_object(config_class)
    if test_config:
        app.config.update(test_config)

    configure_logging(app.config.get("LOG_LEVEL", "INFO"), app.config.get("LOG_FILE"))

    # Configure database separately
    configure_database(app)

    logger.info("Starting application", environment=config_class.ENV)
    logger.info("Database configured", uri=app.config.get("SQLALCHEMY_DATABASE_URI", "Not set")[:50])

    # Get allowed origins from environment variable
    allowed_origins = app.config.get("CORS_ORIGINS", "*")
    if allowed_origins != "*":
        # Parse comma-separated list if provided
        allowed_origins = [origin.strip() for origin in allowed_origins.split(",")]

    CORS(app,
         resources={r"/*": {"origins": allowed_origins}},
         supports_credentials=True,
         allow_headers=["Content-Type", "Authorization"],
         methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"])

    db.init_app(app)

    # Tables are created by migrations/create_calendar_outbox_tables.py
    app.extensions["calsync"] = build_components(app)

    from calsync.api import api_bp
    from calsync.oauth import oauth_bp
    from calsync.outbox import outbox_bp

    app.register_blueprint(api_bp, url_prefix="/api")
    app.register_blueprint(outbox_bp, url_prefix="/api/admin/calendar-outbox")
    app.register_blueprint(oauth_bp, url_prefix="/oauth/google")

    @app.route("/health")
    def health():
        return jsonify({"status": "ok"}), 200

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Render every error as JSON. Lookup misses are 404, bad input is 400."""
        if isinstance(e, HTTPException):
            status_code = e.code
        elif isinstance(e, LookupError):
            status_code = 404
        elif isinstance(e, ValueError):
            status_code = 400
        else:
            status_code = 500

        if status_code >= 500:
            logger.error("Unhandled exception", error=str(e), exc_info=True)
        else:
            logger.warning("Request failed", error=str(e), status=status_code)

        response = jsonify({
            "error": str(e),
            "message": "An error occurred processing your request"
        })
        response.status_code = status_code
        return response

    # Initialize scheduler safely
    if app.config.get("OUTBOX_WORKER_ENABLED") and not app.config.get("TESTING"):
        try:
            init_scheduler(app)
        except Exception as e:
            logger.error("Failed to start scheduler", error=str(e))

    return app

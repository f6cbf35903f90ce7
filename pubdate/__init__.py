import logging
import os
from typing import Optional

from dotenv import load_dotenv
from flask import Flask
from flask_cors import CORS

from pubdate.config import ExtractorSettings
from pubdate.extensions import limiter
from pubdate.utils.logging_config import setup_logging


def init_extensions(app: Flask, config: ExtractorSettings) -> None:
    """Configure CORS and the rate limiter."""
    storage_uri = (os.getenv("RATELIMIT_STORAGE_URI") or config.RATELIMIT_STORAGE_URI).strip()
    app.config.setdefault("RATELIMIT_STORAGE_URI", storage_uri or "memory://")
    limiter.init_app(app)
    app.logger.info("Rate limiter storage: %s", app.config["RATELIMIT_STORAGE_URI"])

    allowed_origins = config.allowed_origins or "*"
    app.config["ALLOWED_ORIGINS"] = allowed_origins
    CORS(app, origins=allowed_origins)


def create_app(
    config: Optional[ExtractorSettings] = None,
    *,
    services=None,
    start_workers: Optional[bool] = None,
    test_config: Optional[dict] = None,
):
    """Create and configure an instance of the Flask application."""
    load_dotenv()

    # Set up logging as early as possible
    setup_logging()
    logger = logging.getLogger(__name__)

    config = config or ExtractorSettings()
    logger.info("Application starting with configuration:")
    logger.info(f"  ENV: {config.ENV}")
    logger.info(f"  QUEUE_BACKEND: {config.QUEUE_BACKEND}")
    logger.info(f"  WORKER_CONCURRENCY: {config.WORKER_CONCURRENCY}")
    logger.info(f"  RENDER_ENABLED: {config.RENDER_ENABLED}")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        ENV=config.ENV,
        JSON_SORT_KEYS=False,
        GET_DATE_RATE_LIMIT=config.GET_DATE_RATE_LIMIT,
    )
    if test_config:
        app.config.update(test_config)

    init_extensions(app, config)

    if services is None:
        from pubdate.services.runtime import build_services

        services = build_services(config)
    app.extensions["pubdate"] = services

    if start_workers is None:
        start_workers = config.WORKERS_ENABLED
    if start_workers:
        services.workers.start()

    # Register Blueprints
    from .routes import api, utility

    if "api" not in app.blueprints:
        app.register_blueprint(api.bp)
    if "utility" not in app.blueprints:
        app.register_blueprint(utility.bp)

    def internal_server_error(e):
        logger.error("An internal server error occurred: %s", e, exc_info=True)
        return {"error": "Internal server error", "errorType": "server"}, 500

    app.register_error_handler(500, internal_server_error)

    return app

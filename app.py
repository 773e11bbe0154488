"""
Flask application factory for the Ledger Reconciliation service.
"""
from flask import Flask, request
from flask_caching import Cache
from pathlib import Path
import logging
import os

from config import config
from recon_engine.scheduler import ChunkScheduler
from recon_engine.triggers import build_trigger
from recon_engine.work_queue import StorageChunkQueue
from storage.service import StorageService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# Silence per-request connection logging from the trigger's HTTP client
logging.getLogger("urllib3").setLevel(logging.WARNING)

# Initialize cache (will be configured in create_app)
cache = Cache()


def create_app(test_config=None):
    """
    Application factory pattern.

    Args:
        test_config: Optional dict of Flask config values applied last

    Returns:
        Configured Flask application instance
    """
    app = Flask(__name__)

    # App configuration
    app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    app.config['MAX_CONTENT_LENGTH'] = 50 * 1024 * 1024  # 50MB max file size
    app.config['RECON_STORAGE_DIR'] = config.storage.base_dir
    app.config['TRIGGER_SECRET'] = config.trigger.signing_secret

    # Cache configuration
    # Use SimpleCache for single-worker deployments (current setup)
    # For multi-worker: switch to Redis or FileSystemCache
    app.config['CACHE_TYPE'] = 'SimpleCache'  # In-memory cache
    app.config['CACHE_DEFAULT_TIMEOUT'] = 600  # 10 minutes default

    if test_config:
        app.config.update(test_config)

    # Initialize cache with app
    cache.init_app(app)

    app.logger.info(f"[CACHE] Initialized {app.config['CACHE_TYPE']} with {app.config['CACHE_DEFAULT_TIMEOUT']}s timeout")

    storage = StorageService(
        base_dir=Path(app.config['RECON_STORAGE_DIR']),
        inputs_dir=config.storage.inputs_dir,
        audit_file=config.storage.audit_file,
        queue_file=config.storage.queue_file,
        findings_file=config.storage.findings_file,
    )
    app.extensions['recon_scheduler'] = ChunkScheduler(
        storage,
        StorageChunkQueue(storage),
        trigger=build_trigger(config.trigger),
        limits=app.config.get('RECON_LIMITS', config.limits),
    )

    # Register blueprints
    from web.views import bp as api_bp
    app.register_blueprint(api_bp)

    @app.before_request
    def log_request_info():
        app.logger.debug(f"Request: {request.method} {request.path}")

    return app

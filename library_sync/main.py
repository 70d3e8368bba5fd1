"""
Main entry point for Library Sync Service.

Starts the Flask API, the scheduled sync and the library watcher.
"""

import atexit
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from flask import Flask

from library_sync.catalog.calibre import CalibreCatalog
from library_sync.config import SyncConfig, get_config_from_env
from library_sync.db.database import init_db, close_db
from library_sync.errors import ConfigurationError
from library_sync.sync.engine import LibrarySyncEngine
from library_sync.sync.models import SyncResult
from library_sync.sync.watcher import LibraryWatcher
from library_sync.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)

# Global scheduler
scheduler = BackgroundScheduler()

# Shared by the scheduler, the watcher and the HTTP API so they never sync concurrently
sync_engine: Optional[LibrarySyncEngine] = None

library_watcher: Optional[LibraryWatcher] = None


def get_sync_engine(config: SyncConfig) -> LibrarySyncEngine:
    """Get the process-wide sync engine, creating it on first use."""
    global sync_engine
    if sync_engine is None:
        sync_engine = LibrarySyncEngine(orphan_threshold=config.orphan_threshold)
    return sync_engine


def create_app(
    config: Optional[SyncConfig] = None,
    engine: Optional[LibrarySyncEngine] = None,
) -> Flask:
    """
    Create and configure the Flask application.

    Args:
        config: Service configuration (loaded from the environment if omitted)
        engine: Sync engine to expose (the process-wide engine if omitted)

    Returns:
        Configured Flask app
    """
    config = config or get_config_from_env()

    app = Flask(__name__)
    app.config['SYNC_CONFIG'] = config
    app.config['SYNC_ENGINE'] = engine or get_sync_engine(config)
    app.config['CATALOG_FACTORY'] = CalibreCatalog

    from library_sync.web.routes.api import api_bp

    app.register_blueprint(api_bp)

    @app.route('/health')
    def health():
        calibre_status = 'not_configured'
        if config.calibre_db_path:
            source = app.config['CATALOG_FACTORY'](config.calibre_db_path)
            try:
                calibre_status = source.health_check()
            finally:
                source.close()

        return {
            'status': 'ok',
            'calibre': calibre_status,
            'timestamp': datetime.utcnow().isoformat(),
        }

    return app


def run_sync(config: SyncConfig) -> Optional[SyncResult]:
    """Run a sync against the configured Calibre library."""
    try:
        calibre_path = config.require_calibre_path()
    except ConfigurationError as e:
        logger.warning("Skipping sync", reason=str(e))
        return None

    engine = get_sync_engine(config)
    source = CalibreCatalog(calibre_path)
    try:
        result = engine.sync(source, config.sync_options())
    finally:
        source.close()

    if result.success:
        logger.info(
            "Sync completed",
            created=result.synced_count,
            updated=result.updated_count,
            orphaned=result.removed_count,
            total=result.total_books,
        )
    else:
        logger.warning("Sync did not complete", error=result.error)
    return result


def start_watcher(config: SyncConfig) -> None:
    """Watch the Calibre database and sync once its changes settle."""
    global library_watcher

    watcher = LibraryWatcher(
        config.calibre_db_path,
        trigger=lambda: run_sync(config) or SyncResult.failure("Sync not configured"),
    )
    try:
        watcher.start()
    except OSError as e:
        logger.warning("Library watcher disabled", path=config.calibre_db_path, error=str(e))
        return

    library_watcher = watcher
    scheduler.add_job(
        watcher.check,
        trigger=IntervalTrigger(seconds=config.watch_interval_seconds),
        id='watch_job',
        name='Library Watcher',
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )


def stop_watcher():
    """Stop the library watcher's observer thread."""
    global library_watcher
    if library_watcher is not None:
        library_watcher.stop()
        library_watcher = None


def start_scheduler(config: SyncConfig) -> None:
    """
    Start the sync scheduler.

    Args:
        config: Service configuration
    """
    if config.sync_interval_minutes > 0:
        scheduler.add_job(
            run_sync,
            args=[config],
            trigger=IntervalTrigger(minutes=config.sync_interval_minutes),
            id='sync_job',
            name='Library Sync',
            replace_existing=True,
        )
        logger.info("Scheduled sync enabled", interval_minutes=config.sync_interval_minutes)

    if config.enable_watcher and config.calibre_db_path:
        start_watcher(config)

    scheduler.start()

    # Initial sync right after startup
    scheduler.add_job(
        run_sync,
        args=[config],
        trigger='date',
        id='initial_sync',
    )


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler shutdown")


def main():
    """Main entry point."""
    config = get_config_from_env()

    setup_logging(config.log_level)
    init_db(config.database_url)

    logger.info(
        "Starting Library Sync Service",
        version="0.1.0",
        calibre_db_path=config.calibre_db_path,
        sync_interval=config.sync_interval_minutes,
    )

    app = create_app(config)

    start_scheduler(config)

    atexit.register(shutdown_scheduler)
    atexit.register(stop_watcher)
    atexit.register(close_db)

    from waitress import serve
    serve(app, host="0.0.0.0", port=config.port)


if __name__ == "__main__":
    main()

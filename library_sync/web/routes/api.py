"""
API routes for Library Sync Service.
"""

from flask import Blueprint, current_app, jsonify

from library_sync.db.repositories import BookRepository
from library_sync.errors import ConfigurationError
from library_sync.sync.engine import SYNC_IN_PROGRESS_ERROR
from library_sync.utils.logging import get_logger

logger = get_logger(__name__)

api_bp = Blueprint('api', __name__, url_prefix='/api')


@api_bp.route('/sync/status')
def sync_status():
    """Get current sync status."""
    engine = current_app.config['SYNC_ENGINE']
    last_sync = engine.last_sync_time

    return jsonify({
        'inProgress': engine.is_sync_in_progress(),
        'lastSync': last_sync.isoformat() if last_sync else None,
    })


@api_bp.route('/sync', methods=['POST'])
def trigger_sync():
    """Manually trigger a sync against the configured Calibre library."""
    engine = current_app.config['SYNC_ENGINE']
    config = current_app.config['SYNC_CONFIG']
    catalog_factory = current_app.config['CATALOG_FACTORY']

    try:
        calibre_path = config.require_calibre_path()
    except ConfigurationError as e:
        return jsonify({'success': False, 'error': str(e)}), 400

    source = catalog_factory(calibre_path)
    try:
        result = engine.sync(source, config.sync_options())
    finally:
        source.close()

    if result.success:
        return jsonify(result.to_dict())

    if result.error == SYNC_IN_PROGRESS_ERROR:
        return jsonify(result.to_dict()), 409

    logger.warning("Manual sync failed", error=result.error)
    return jsonify(result.to_dict()), 500


@api_bp.route('/books/orphaned')
def orphaned_books():
    """List books that are no longer in the Calibre library."""
    books = BookRepository().find_orphaned()

    return jsonify([{
        'id': b.id,
        'calibreId': b.calibre_id,
        'title': b.title,
        'authors': b.authors,
        'orphanedAt': b.orphaned_at.isoformat() if b.orphaned_at else None,
    } for b in books])

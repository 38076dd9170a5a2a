"""
Storage routes - stored backup sets, store and retrieve triggers.
"""

import logging
from flask import Blueprint, current_app, jsonify, request

from discstore import db
from discstore.models import StorageEntry
from discstore.operations import DuplicateNameError, StorageNotFoundError
from discstore.pipeline import ConfigValidationError
from discstore.storage import LocalStorage, StorageError


bp = Blueprint('storage', __name__, url_prefix='/api/storage')
logger = logging.getLogger(__name__)


def _registry():
    return current_app.extensions['discstore_operations']


@bp.route('/', methods=['GET'])
def list_storage():
    """
    Get list of all stored backup sets.

    Returns:
        JSON array of storage entries
    """
    entries = StorageEntry.query.order_by(StorageEntry.created_at.desc()).all()
    return jsonify([entry.to_dict() for entry in entries])


@bp.route('/<name>', methods=['GET'])
def get_storage(name):
    """
    Get a single storage entry by name.

    Args:
        name: Storage name
    """
    entry = StorageEntry.query.filter_by(name=name).first()
    if entry is None:
        return jsonify({'error': f'Storage not found: {name}'}), 404
    return jsonify(entry.to_dict())


@bp.route('/', methods=['POST'])
def create_storage():
    """
    Start storing files under a new name.

    Request body:
        - name: Storage name (required, unique)
        - files: List of file/directory paths (required)

    Returns:
        202 with the operation id to poll
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({'error': 'JSON body is required'}), 400

    name = data.get('name')
    files = data.get('files')

    if not isinstance(name, str) or not name.strip():
        return jsonify({'error': 'Storage name is required'}), 400

    if not isinstance(files, list) or not all(isinstance(f, str) for f in files):
        return jsonify({'error': 'files must be a list of paths'}), 400

    try:
        operation = _registry().submit_store(name, files)
    except ConfigValidationError as e:
        return jsonify({'error': str(e)}), 400
    except DuplicateNameError as e:
        return jsonify({'error': str(e)}), 409
    except StorageError as e:
        return jsonify({'error': str(e)}), 500

    return jsonify({
        'message': f'Storing {len(files)} items as {name.strip()}',
        'operation_id': operation.id
    }), 202


@bp.route('/<name>/retrieve', methods=['POST'])
def retrieve_storage(name):
    """
    Start restoring a stored backup set.

    Request body (optional):
        - destination: Directory to restore into
        - on_conflict: 'rename' (default), 'overwrite' or 'skip'

    Returns:
        202 with the operation id to poll
    """
    data = request.get_json(silent=True) or {}

    try:
        operation = _registry().submit_retrieve(
            name,
            destination=data.get('destination'),
            on_conflict=data.get('on_conflict', 'rename')
        )
    except StorageNotFoundError as e:
        return jsonify({'error': str(e)}), 404
    except ConfigValidationError as e:
        return jsonify({'error': str(e)}), 400

    return jsonify({
        'message': f'Retrieving {name}',
        'operation_id': operation.id,
        'destination': operation.request.destination_dir
    }), 202


@bp.route('/<name>', methods=['DELETE'])
def delete_storage(name):
    """
    Delete a storage entry and its artifact.

    Args:
        name: Storage name
    """
    entry = StorageEntry.query.filter_by(name=name).first()
    if entry is None:
        return jsonify({'error': f'Storage not found: {name}'}), 404

    try:
        LocalStorage(current_app.config['STORAGE_DIR']).delete(entry.artifact_path)
    except StorageError as e:
        logger.error(f"Failed to delete artifact for {name}: {e}")
        return jsonify({'error': str(e)}), 500

    db.session.delete(entry)
    db.session.commit()

    return jsonify({'message': f'Storage {name} deleted'})

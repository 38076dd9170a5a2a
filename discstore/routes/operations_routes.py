"""
Operation routes - progress polling and cancellation of pipeline operations.
"""

from flask import Blueprint, current_app, jsonify

from discstore.pipeline import StorageRecord


bp = Blueprint('operations', __name__, url_prefix='/api/operations')


def _registry():
    return current_app.extensions['discstore_operations']


def _describe(operation, include_logs=False):
    if operation.done():
        status = 'completed' if operation.error is None else 'failed'
    else:
        status = 'cancelling' if operation.cancel_token.is_cancelled else 'running'

    result = operation.result
    if isinstance(result, StorageRecord):
        result = result.to_dict()

    data = {
        'id': operation.id,
        'direction': operation.direction,
        'status': status,
        'state': operation.state.value,
        'progress': operation.progress().to_dict(),
        'started_at': operation.started_at.isoformat() if operation.started_at else None,
        'completed_at': operation.completed_at.isoformat() if operation.completed_at else None,
        'error_message': str(operation.error) if operation.error else None,
        'error_reason': operation.error_reason,
        'result': result
    }
    if include_logs:
        data['logs'] = '\n'.join(operation.logs)
    return data


@bp.route('/', methods=['GET'])
def list_operations():
    """
    Get all tracked operations, newest first.
    """
    operations = reversed(_registry().list())
    return jsonify([_describe(op) for op in operations])


@bp.route('/<operation_id>', methods=['GET'])
def get_operation(operation_id):
    """
    Poll a single operation: status, latest progress sample, result or error, logs.
    """
    operation = _registry().get(operation_id)
    if operation is None:
        return jsonify({'error': f'Operation not found: {operation_id}'}), 404
    return jsonify(_describe(operation, include_logs=True))


@bp.route('/<operation_id>/cancel', methods=['POST'])
def cancel_operation(operation_id):
    """
    Request cancellation of a running operation.

    Returns:
        JSON with cancellation status message
    """
    operation = _registry().get(operation_id)
    if operation is None:
        return jsonify({'error': f'Operation not found: {operation_id}'}), 404

    if operation.done():
        return jsonify({
            'error': f'Cannot cancel operation with status: {_describe(operation)["status"]}'
        }), 400

    if operation.cancel_token.is_cancelled:
        return jsonify({
            'message': 'Cancellation already requested',
            'status': 'cancelling'
        })

    operation.cancel()

    return jsonify({
        'message': 'Cancellation requested. The operation will stop at the next safe checkpoint.',
        'status': 'cancelling'
    })

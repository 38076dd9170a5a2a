"""
Settings routes - compression configuration and bot token management.
"""

import logging
from flask import Blueprint, jsonify, request

from discstore import db
from discstore.models import Settings
from discstore.pipeline import CompressionKind, ConfigValidationError, validate_level


bp = Blueprint('settings', __name__, url_prefix='/api/settings')
logger = logging.getLogger(__name__)


def _token_hint(token):
    if not token:
        return None
    # Show first 3 and last 3 characters
    if len(token) > 6:
        return f"{token[:3]}***{token[-3:]}"
    return "***"


def _settings_payload(settings):
    return {
        'compression_type': settings.compression_type,
        'compression_level': settings.compression_level,
        'token_configured': bool(settings.token),
        'token_hint': _token_hint(settings.token),
        'updated_at': settings.updated_at.isoformat()
    }


@bp.route('/', methods=['GET'])
def get_settings():
    """
    Get pipeline settings (the token is only returned as a hint).

    Returns:
        JSON with compression type, level and token status
    """
    return jsonify(_settings_payload(Settings.current()))


@bp.route('/', methods=['PUT'])
def update_settings():
    """
    Update pipeline settings.

    Request body (all optional):
        - compression_type: 'lzma' or 'zstd'
        - compression_level: Integer 0-9
        - token: Bot token for the remote backend

    Returns:
        JSON with updated settings
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({'error': 'JSON body is required'}), 400

    settings = Settings.current()

    try:
        if 'compression_type' in data:
            settings.compression_type = CompressionKind.parse(data['compression_type']).value
        if 'compression_level' in data:
            settings.compression_level = validate_level(data['compression_level'])
    except ConfigValidationError as e:
        db.session.rollback()
        return jsonify({'error': str(e)}), 400

    if 'token' in data:
        if not isinstance(data['token'], str):
            db.session.rollback()
            return jsonify({'error': 'Token must be a string'}), 400
        settings.token = data['token'].strip()

    db.session.commit()
    logger.info(f"Settings updated: {settings.compression_type} level {settings.compression_level}")

    return jsonify(_settings_payload(settings))

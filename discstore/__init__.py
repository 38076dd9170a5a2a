import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
    """Configure application logging"""

    # Create logs directory if it doesn't exist
    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'discstore.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure Flask app logger ('discstore', so pipeline module loggers propagate to it)
    for handler in list(app.logger.handlers):
        app.logger.removeHandler(handler)
        handler.close()
    app.logger.setLevel(log_level)
    app.logger.addHandler(console_handler)
    app.logger.addHandler(file_handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None, **overrides):
    """
    Flask application factory.

    Args:
        config_name: Key in discstore.config.config (default: FLASK_ENV or 'production')
        **overrides: Config values applied before extensions are initialised
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from discstore.config import config
    app.config.from_object(config[config_name])
    app.config.update(overrides)

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    for key in ('TEMP_DIR', 'STORAGE_DIR', 'RESTORE_DIR'):
        os.makedirs(app.config[key], exist_ok=True)
    database_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if database_uri.startswith('sqlite:///') and ':memory:' not in database_uri:
        os.makedirs(os.path.dirname(os.path.abspath(database_uri.replace('sqlite:///', ''))), exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Register blueprints
    from discstore.routes import settings_routes, storage_routes, operations_routes
    app.register_blueprint(settings_routes.bp)
    app.register_blueprint(storage_routes.bp)
    app.register_blueprint(operations_routes.bp)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Initialize database schema and run migrations
    from discstore import models
    from discstore.migrations import init_database_schema

    init_database_schema(app)

    # Registry of in-flight pipeline operations for this process
    from discstore.operations import OperationRegistry
    app.extensions['discstore_operations'] = OperationRegistry(app)

    return app

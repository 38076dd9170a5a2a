import os
import sys


def get_data_dir():
    """Platform-specific data directory (overridable with DISCSTORE_DATA_DIR)"""
    override = os.environ.get('DISCSTORE_DATA_DIR')
    if override:
        return override

    if sys.platform == 'win32':
        base = os.environ.get('APPDATA') or os.path.join(os.path.expanduser('~'), 'AppData', 'Roaming')
    elif sys.platform == 'darwin':
        base = os.path.join(os.path.expanduser('~'), 'Library', 'Application Support')
    else:
        base = os.environ.get('XDG_CONFIG_HOME') or os.path.join(os.path.expanduser('~'), '.config')
    return os.path.join(base, 'discstore')


class Config:
    """Base configuration"""

    DATA_DIR = get_data_dir()

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'discstore-local'

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or f'sqlite:///{os.path.join(DATA_DIR, "discstore.db")}'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Files
    TEMP_DIR = os.environ.get('TEMP_DIR') or os.path.join(DATA_DIR, 'temp')
    STORAGE_DIR = os.environ.get('STORAGE_DIR') or os.path.join(DATA_DIR, 'storage')
    RESTORE_DIR = os.environ.get('RESTORE_DIR') or os.path.join(DATA_DIR, 'restored')
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(DATA_DIR, 'logs')

    # Pipeline defaults (seeded into Settings on first run)
    DEFAULT_COMPRESSION_TYPE = 'lzma'
    DEFAULT_COMPRESSION_LEVEL = 9
    PIPELINE_CHUNK_SIZE = int(os.environ.get('PIPELINE_CHUNK_SIZE', 1024 * 1024))


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "discstore.db")}'
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    STORAGE_DIR = os.path.join(DATA_DIR, 'storage')
    RESTORE_DIR = os.path.join(DATA_DIR, 'restored')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Testing configuration (paths are normally overridden per test)"""
    TESTING = True
    DEBUG = False
    PIPELINE_CHUNK_SIZE = 64 * 1024


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}

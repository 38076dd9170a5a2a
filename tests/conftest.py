"""
Shared pytest fixtures for DiscStore tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with a temporary SQLite file
- Storage entry fixtures
- Temporary file trees and payloads for the pipeline
"""

import json
import os
import random

import pytest

from discstore import create_app, db as _db
from discstore.models import StorageEntry


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Every directory and the SQLite database live under tmp_path.
    """
    data_dir = tmp_path / 'data'

    app = create_app(
        'testing',
        SQLALCHEMY_DATABASE_URI=f"sqlite:///{data_dir / 'discstore.db'}",
        TEMP_DIR=str(data_dir / 'temp'),
        STORAGE_DIR=str(data_dir / 'storage'),
        RESTORE_DIR=str(data_dir / 'restored'),
        LOG_DIR=str(data_dir / 'logs'),
        DEFAULT_COMPRESSION_LEVEL=1,
    )

    yield app

    # Let in-flight workers finish before tmp_path goes away
    for operation in app.extensions['discstore_operations'].list():
        operation.cancel()
        operation.wait(30)


@pytest.fixture(scope='function')
def db(app):
    """
    Database with all tables inside an app context.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def registry(app):
    """The app's operation registry."""
    return app.extensions['discstore_operations']


@pytest.fixture(scope='function')
def storage_entry(db, tmp_path):
    """
    Create a storage entry pointing at a dummy artifact.
    """
    artifact = tmp_path / 'dummy.tar.xz'
    artifact.write_bytes(b'\xfd7zXZ\x00dummy')

    entry = StorageEntry(
        name='documents',
        files=json.dumps(['/home/user/docs', '/home/user/notes.txt']),
        artifact_path=str(artifact),
        compression_type='lzma',
        size_bytes=1024000
    )
    db.session.add(entry)
    db.session.commit()
    return entry


@pytest.fixture
def temp_files(tmp_path):
    """
    Create a source tree to archive.

    Creates under tmp_path/source:
    - test_file1.txt
    - test_file2.log
    - nested/test_file3.txt
    - nested/deeper/test_file4.bin
    """
    source = tmp_path / 'source'
    source.mkdir()

    (source / 'test_file1.txt').write_text('Test content 1')
    (source / 'test_file2.log').write_text('Test log content')

    nested_dir = source / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    deeper_dir = nested_dir / 'deeper'
    deeper_dir.mkdir()
    (deeper_dir / 'test_file4.bin').write_bytes(os.urandom(4096))

    return source


@pytest.fixture
def output_dir(tmp_path):
    """Empty directory for artifacts, outside the source tree."""
    out = tmp_path / 'out'
    out.mkdir()
    return out


@pytest.fixture
def temp_root(tmp_path):
    """Empty directory used as the parent of per-operation temp dirs."""
    root = tmp_path / 'temp'
    root.mkdir()
    return root


def make_text(size, seed=0):
    """Compressible pseudo-text of exactly `size` bytes."""
    rng = random.Random(seed)
    words = [
        'archive', 'storage', 'compress', 'level', 'stream', 'chunk',
        'record', 'restore', 'progress', 'worker', 'python', 'data'
    ]
    parts = []
    length = 0
    while length < size:
        word = rng.choice(words) + (' ' if rng.random() > 0.1 else '\n')
        parts.append(word)
        length += len(word)
    return ''.join(parts).encode()[:size]


@pytest.fixture
def text_payload():
    """Factory for compressible payloads."""
    return make_text

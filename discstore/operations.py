"""
Owner side of the pipeline: starts operations, tracks them for polling and
persists the StorageRecord of each successful store.

Operations run on their own worker threads; the registry only reads their
latest progress and completion state.
"""

import logging
import os
import threading
from collections import OrderedDict
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from discstore import db
from discstore.models import Settings, StorageEntry
from discstore.pipeline import (
    ArchiveRequest,
    RetrieveRequest,
    PipelineOperation,
    CompressionKind,
    ConfigValidationError,
    validate_level
)
from discstore.storage import LocalStorage, StorageError, safe_name

logger = logging.getLogger(__name__)

MAX_FINISHED_OPERATIONS = 100


class DuplicateNameError(Exception):
    """Raised when a storage name is already taken."""

    reason = 'duplicate_name'

    def __init__(self, name):
        self.name = name
        super().__init__(f"Storage name already exists: {name}")


class StorageNotFoundError(Exception):
    """Raised when no storage entry has the requested name."""

    def __init__(self, name):
        self.name = name
        super().__init__(f"Storage not found: {name}")


class OperationRegistry:
    """
    In-process registry of pipeline operations keyed by operation id.
    """

    def __init__(self, app):
        """
        Args:
            app: Flask app, used to enter an app context from worker threads
        """
        self.app = app
        self._operations = OrderedDict()
        self._lock = threading.Lock()

    def submit_store(self, name: str, files: List[str]) -> PipelineOperation:
        """
        Start a store operation using the current settings.

        Args:
            name: Storage name for the resulting record
            files: Ordered file/directory paths to store

        Returns:
            Started PipelineOperation

        Raises:
            ConfigValidationError: If the request or settings are invalid
            DuplicateNameError: If the name is stored or being stored already
            StorageError: If the artifact location cannot be prepared
        """
        if not name or not name.strip():
            raise ConfigValidationError("Storage name is required")
        name = name.strip()
        if not files:
            raise ConfigValidationError("No source paths provided")

        settings = Settings.current()
        kind = CompressionKind.parse(settings.compression_type)
        level = validate_level(settings.compression_level)

        if StorageEntry.query.filter_by(name=name).first() or self._store_in_flight(name):
            raise DuplicateNameError(name)

        output_path = LocalStorage(self.app.config['STORAGE_DIR']).allocate(name, kind.value)
        request = ArchiveRequest(
            output_path=output_path,
            input_paths=list(files),
            level=level,
            kind=kind,
            name=name
        )
        operation = PipelineOperation(
            request,
            temp_root=self.app.config['TEMP_DIR'],
            chunk_size=self.app.config['PIPELINE_CHUNK_SIZE']
        )
        operation.add_done_callback(self._persist_record)
        try:
            return self._start(operation)
        except ConfigValidationError:
            self._discard_artifact(output_path)
            raise

    def submit_retrieve(self, name: str, destination: Optional[str] = None,
                        on_conflict: str = 'rename') -> PipelineOperation:
        """
        Start a retrieve operation for a stored entry.

        Args:
            name: Storage name
            destination: Directory to restore into (default: RESTORE_DIR/{name})
            on_conflict: 'rename', 'overwrite' or 'skip'

        Returns:
            Started PipelineOperation

        Raises:
            StorageNotFoundError: If no entry has that name
            ConfigValidationError: If the request is invalid
        """
        entry = StorageEntry.query.filter_by(name=name).first()
        if entry is None:
            raise StorageNotFoundError(name)

        if not destination:
            destination = os.path.join(self.app.config['RESTORE_DIR'], safe_name(name))

        request = RetrieveRequest(
            archive_path=entry.artifact_path,
            destination_dir=destination,
            kind=entry.compression_type,
            on_conflict=on_conflict
        )
        operation = PipelineOperation(
            request,
            temp_root=self.app.config['TEMP_DIR'],
            chunk_size=self.app.config['PIPELINE_CHUNK_SIZE']
        )
        return self._start(operation)

    def get(self, operation_id: str) -> Optional[PipelineOperation]:
        with self._lock:
            return self._operations.get(operation_id)

    def list(self) -> List[PipelineOperation]:
        with self._lock:
            return list(self._operations.values())

    def _start(self, operation: PipelineOperation) -> PipelineOperation:
        operation.start()
        with self._lock:
            self._operations[operation.id] = operation
            self._prune()
        logger.info(f"Started {operation.direction} operation {operation.id}")
        return operation

    def _store_in_flight(self, name: str) -> bool:
        with self._lock:
            return any(
                op.direction == PipelineOperation.STORE
                and not op.done()
                and op.request.name == name
                for op in self._operations.values()
            )

    def _prune(self):
        """Forget the oldest finished operations beyond the history limit."""
        finished = [op_id for op_id, op in self._operations.items() if op.done()]
        for op_id in finished[:max(0, len(finished) - MAX_FINISHED_OPERATIONS)]:
            del self._operations[op_id]

    def _persist_record(self, operation: PipelineOperation):
        """
        Done callback for store operations: save the StorageRecord.

        Runs on the worker thread inside the app context. A name taken while
        the operation ran fails the operation and deletes its artifact.
        """
        if operation.error is not None or operation.result is None:
            # The path was reserved for this operation alone
            self._discard_artifact(operation.request.output_path)
            return

        record = operation.result
        with self.app.app_context():
            try:
                db.session.add(StorageEntry.from_record(record))
                db.session.commit()
                logger.info(f"Saved storage entry: {record.name}")
            except IntegrityError:
                db.session.rollback()
                operation.result = None
                operation.error = DuplicateNameError(record.name)
                logger.error(f"Storage name taken while storing: {record.name}")
                self._discard_artifact(record.artifact_path)
            finally:
                db.session.remove()

    def _discard_artifact(self, artifact_path: str):
        try:
            LocalStorage(self.app.config['STORAGE_DIR']).delete(artifact_path)
        except StorageError as e:
            logger.warning(f"Failed to delete orphaned artifact: {e}")

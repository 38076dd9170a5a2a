"""
Pipeline executor - orchestrates store and retrieve operations.

Store workflow:
1. Validate request (no I/O)
2. Create a private temporary directory
3. Build the tar archive (BuildingArchive)
4. Compress it to the output path (Compressing)
5. Cleanup temporary files
6. Return a StorageRecord

Retrieve workflow:
1. Validate request (no I/O)
2. Create a private temporary directory
3. Decompress the artifact to a tar (Decompressing)
4. Extract the tar into the destination (ExtractingArchive)
5. Cleanup temporary files
"""

import logging
import os
import shutil
import tempfile
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Union

from .archive import CONFLICT_POLICIES, build_archive, extract_archive
from .compression import (
    DEFAULT_CHUNK_SIZE,
    CompressionKind,
    detect_kind,
    get_backend,
    validate_level,
)
from .errors import ArchiveError, CodecError, ConfigValidationError, PipelineError
from .progress import CancellationToken, ProgressChannel, ProgressObserver, ProgressTracker

logger = logging.getLogger(__name__)

INTERMEDIATE_NAME = 'archive.tar'


class OperationState(str, Enum):
    IDLE = 'idle'
    BUILDING_ARCHIVE = 'building_archive'
    COMPRESSING = 'compressing'
    DECOMPRESSING = 'decompressing'
    EXTRACTING_ARCHIVE = 'extracting_archive'
    COMPLETED = 'completed'
    FAILED = 'failed'


@dataclass
class ArchiveRequest:
    """Request to pack input_paths into a compressed artifact at output_path."""

    output_path: str
    input_paths: List[str]
    level: int
    kind: Union[CompressionKind, str] = CompressionKind.HIGH_RATIO
    name: Optional[str] = None

    def validate(self):
        """
        Check the request without touching the filesystem contents.

        Raises:
            ConfigValidationError: If any field is invalid
        """
        if not self.input_paths:
            raise ConfigValidationError("No source paths provided")
        self.kind = CompressionKind.parse(self.kind)
        validate_level(self.level)

        parent = Path(self.output_path).expanduser().parent
        if not parent.is_dir():
            raise ConfigValidationError(f"Output directory does not exist: {parent}")
        if not os.access(parent, os.W_OK):
            raise ConfigValidationError(f"Output directory is not writable: {parent}")

    @property
    def storage_name(self) -> str:
        if self.name:
            return self.name
        return Path(self.output_path).name.split('.')[0]


@dataclass
class RetrieveRequest:
    """Request to restore a compressed artifact into destination_dir."""

    archive_path: str
    destination_dir: str
    kind: Optional[Union[CompressionKind, str]] = None
    on_conflict: str = 'rename'

    def validate(self):
        """
        Raises:
            ConfigValidationError: If any field is invalid
        """
        if not self.archive_path:
            raise ConfigValidationError("No archive path provided")
        if not self.destination_dir:
            raise ConfigValidationError("No destination directory provided")
        if self.kind is not None:
            self.kind = CompressionKind.parse(self.kind)
        if self.on_conflict not in CONFLICT_POLICIES:
            raise ConfigValidationError(
                f"Invalid conflict policy: {self.on_conflict}. "
                f"Valid options: {list(CONFLICT_POLICIES)}"
            )


@dataclass
class StorageRecord:
    """Named backup set produced by a successful store operation."""

    name: str
    files: List[str]
    artifact_path: str
    kind: CompressionKind
    size_bytes: int
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'files': list(self.files),
            'artifact_path': self.artifact_path,
            'compression_type': self.kind.value,
            'size_bytes': self.size_bytes,
            'created_at': self.created_at.isoformat(),
        }


class PipelineExecutor:
    """
    Runs one store or retrieve operation synchronously.

    PipelineOperation wraps this in a worker thread; tests and scripts can
    call store()/retrieve() directly.
    """

    def __init__(
        self,
        observer: Optional[ProgressObserver] = None,
        cancel_token: Optional[CancellationToken] = None,
        temp_root: Optional[str] = None,
        operation_id: Optional[str] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE
    ):
        """
        Initialize pipeline executor.

        Args:
            observer: Receives a ProgressSample after each unit of work
            cancel_token: Checked between stages, entries and chunks
            temp_root: Parent directory for the private temporary directory
            operation_id: Identifier used to name temporary files
            chunk_size: Codec chunk size in bytes
        """
        self.observer = observer
        self.cancel_token = cancel_token or CancellationToken()
        self.temp_root = temp_root
        self.operation_id = operation_id or uuid.uuid4().hex
        self.chunk_size = chunk_size
        self.state = OperationState.IDLE
        self.temp_dir = None
        self.intermediate_path = None
        self.logs = []
        self._tracker = None
        self._created_outputs = []

    def store(self, request: ArchiveRequest) -> StorageRecord:
        """
        Build and compress an archive.

        Args:
            request: ArchiveRequest to execute

        Returns:
            StorageRecord for the created artifact

        Raises:
            ConfigValidationError: If the request is invalid (before any I/O)
            ArchiveError, CodecError, OperationCancelled: Stage failures, unchanged
        """
        self._require_idle()
        request.validate()
        self._tracker = ProgressTracker(total_stages=2, observer=self.observer)
        backend = get_backend(request.kind, self.chunk_size)
        output_path = str(Path(request.output_path).expanduser())

        self._log(f"Starting store operation: {request.storage_name} "
                  f"({backend.kind.value}, level {request.level}, {len(request.input_paths)} inputs)")
        try:
            self._create_temp_dir()

            self._enter(OperationState.BUILDING_ARCHIVE)
            file_count = build_archive(
                self.intermediate_path,
                request.input_paths,
                on_progress=self._tracker.update,
                cancel_check=self._check_cancelled
            )
            archive_size = os.path.getsize(self.intermediate_path)
            self._tracker.finish_stage()
            self._log(f"Archive built: {file_count} files ({archive_size / 1024 / 1024:.2f} MB)")

            self._enter(OperationState.COMPRESSING)
            self._run_codec(
                lambda src, dst: backend.compress(
                    src, dst, request.level,
                    on_progress=self._tracker.update,
                    cancel_check=self._check_cancelled,
                    total_bytes=archive_size
                ),
                self.intermediate_path,
                output_path
            )
            self._tracker.finish_stage()
            size_bytes = os.path.getsize(output_path)
            self._log(f"Artifact written: {os.path.basename(output_path)} ({size_bytes / 1024 / 1024:.2f} MB)")

            self._complete()
            return StorageRecord(
                name=request.storage_name,
                files=[str(p) for p in request.input_paths],
                artifact_path=output_path,
                kind=backend.kind,
                size_bytes=size_bytes
            )
        except BaseException as e:
            self._fail(e)
            if output_path in self._created_outputs:
                self._remove_partial(output_path)
            raise
        finally:
            self._cleanup()

    def retrieve(self, request: RetrieveRequest) -> str:
        """
        Decompress an artifact and extract it into the destination directory.

        Args:
            request: RetrieveRequest to execute

        Returns:
            Destination directory containing the restored files

        Raises:
            ConfigValidationError: If the request is invalid (before any I/O)
            ArchiveError, CodecError, OperationCancelled: Stage failures, unchanged
        """
        self._require_idle()
        request.validate()
        self._tracker = ProgressTracker(total_stages=2, observer=self.observer)
        destination = str(Path(request.destination_dir).expanduser())
        restored = []

        self._log(f"Starting retrieve operation: {request.archive_path} -> {destination}")
        try:
            kind = request.kind or detect_kind(request.archive_path)
            backend = get_backend(kind, self.chunk_size)
            self._create_temp_dir()

            self._enter(OperationState.DECOMPRESSING)
            self._run_codec(
                lambda src, dst: backend.decompress(
                    src, dst,
                    on_progress=self._tracker.update,
                    cancel_check=self._check_cancelled
                ),
                request.archive_path,
                self.intermediate_path
            )
            self._tracker.finish_stage()
            self._log(f"Decompressed {backend.kind.value} artifact "
                      f"({os.path.getsize(self.intermediate_path) / 1024 / 1024:.2f} MB)")

            self._enter(OperationState.EXTRACTING_ARCHIVE)
            extract_archive(
                self.intermediate_path,
                destination,
                on_conflict=request.on_conflict,
                on_progress=self._tracker.update,
                cancel_check=self._check_cancelled,
                on_restored=restored.append
            )
            self._tracker.finish_stage()
            self._log(f"Restored {len(restored)} files into {destination}")

            self._complete()
            return destination
        except BaseException as e:
            self._fail(e)
            if restored:
                self._log(f"Left {len(restored)} restored files in {destination}")
            raise
        finally:
            self._cleanup()

    def _require_idle(self):
        if self.state != OperationState.IDLE:
            raise RuntimeError(f"Executor already used (state: {self.state.value})")

    def _enter(self, state: OperationState):
        self._check_cancelled()
        self.state = state
        self._tracker.begin_stage()
        self._log(f"Stage: {state.value}")

    def _complete(self):
        self.state = OperationState.COMPLETED
        self._tracker.complete()
        self._log("Operation completed successfully")

    def _fail(self, error: BaseException):
        self.state = OperationState.FAILED
        reason = getattr(error, 'reason', type(error).__name__)
        self._log(f"Operation failed ({reason}): {error}")

    def _check_cancelled(self):
        self.cancel_token.raise_if_cancelled()

    def _run_codec(self, run: Callable, source_path: str, destination_path: str):
        """Open both ends of a codec stage, mapping open failures to CodecError."""
        try:
            src = open(source_path, 'rb')
        except OSError as e:
            raise CodecError(f"Failed to open {source_path}: {e}")
        try:
            try:
                dst = open(destination_path, 'wb')
            except OSError as e:
                raise CodecError(f"Failed to create {destination_path}: {e}")
            self._created_outputs.append(destination_path)
            with dst:
                run(src, dst)
        finally:
            src.close()

    def _create_temp_dir(self):
        """Create the private temporary directory for this operation."""
        try:
            if self.temp_root:
                os.makedirs(self.temp_root, exist_ok=True)
            self.temp_dir = tempfile.mkdtemp(
                prefix=f'discstore_{self.operation_id}_',
                dir=self.temp_root
            )
        except OSError as e:
            raise ArchiveError(f"Failed to create temporary directory: {e}")
        self.intermediate_path = os.path.join(self.temp_dir, INTERMEDIATE_NAME)
        self._log(f"Temporary directory: {self.temp_dir}")

    def _remove_partial(self, path: str):
        if os.path.exists(path):
            try:
                os.remove(path)
                self._log(f"Removed partial artifact: {os.path.basename(path)}")
            except OSError as e:
                self._log(f"Warning: Failed to remove partial artifact {path}: {e}")

    def _cleanup(self):
        """Remove temporary directory and the intermediate archive."""
        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
                self._log("Cleaned up temporary directory")
            except OSError as e:
                self._log(f"Warning: Failed to cleanup temp directory: {e}")

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(f"[{self.operation_id[:8]}] {message}")


class PipelineOperation:
    """
    One pipeline operation running on its own worker thread.

    The owner starts it, polls progress() and done(), may cancel(), and reads
    result or error once done.
    """

    STORE = 'store'
    RETRIEVE = 'retrieve'

    def __init__(
        self,
        request: Union[ArchiveRequest, RetrieveRequest],
        temp_root: Optional[str] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        operation_id: Optional[str] = None
    ):
        self.id = operation_id or uuid.uuid4().hex
        self.request = request
        self.direction = self.STORE if isinstance(request, ArchiveRequest) else self.RETRIEVE
        self.channel = ProgressChannel()
        self.cancel_token = CancellationToken()
        self.executor = PipelineExecutor(
            observer=self.channel,
            cancel_token=self.cancel_token,
            temp_root=temp_root,
            operation_id=self.id,
            chunk_size=chunk_size
        )
        self.result = None
        self.error = None
        self.started_at = None
        self.completed_at = None
        self._callbacks = []
        self._done = threading.Event()
        self._thread = None

    def start(self) -> 'PipelineOperation':
        """
        Validate the request and launch the worker thread.

        Raises:
            ConfigValidationError: If the request is invalid; no thread is started
            RuntimeError: If already started
        """
        if self._thread is not None:
            raise RuntimeError(f"Operation {self.id} already started")
        self.request.validate()

        self.started_at = datetime.utcnow()
        self._thread = threading.Thread(
            target=self._run,
            name=f"discstore-{self.direction}-{self.id[:8]}",
            daemon=True
        )
        self._thread.start()
        return self

    def _run(self):
        try:
            if self.direction == self.STORE:
                self.result = self.executor.store(self.request)
            else:
                self.result = self.executor.retrieve(self.request)
        except PipelineError as e:
            self.error = e
        except Exception as e:
            logger.exception(f"Unexpected failure in operation {self.id}")
            self.error = e
        finally:
            self.completed_at = datetime.utcnow()
            for callback in self._callbacks:
                try:
                    callback(self)
                except Exception:
                    logger.exception(f"Done callback failed for operation {self.id}")
            self._done.set()

    def add_done_callback(self, callback: Callable[['PipelineOperation'], None]):
        """Register a callback run on the worker once the result is set."""
        if self._thread is not None:
            raise RuntimeError("Callbacks must be registered before start()")
        self._callbacks.append(callback)

    def cancel(self):
        self.cancel_token.cancel()

    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def progress(self):
        return self.channel.latest()

    @property
    def state(self) -> OperationState:
        return self.executor.state

    @property
    def succeeded(self) -> bool:
        return self.done() and self.error is None

    @property
    def error_reason(self) -> Optional[str]:
        if self.error is None:
            return None
        return getattr(self.error, 'reason', 'error')

    @property
    def logs(self) -> List[str]:
        return list(self.executor.logs)

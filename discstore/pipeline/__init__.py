"""
Archive-and-compress pipeline for DiscStore.

This package handles:
- Building and extracting tar containers
- Compression backends (lzma, zstd)
- Progress reporting and cancellation
- Store/retrieve orchestration on worker threads
"""

from .archive import build_archive, extract_archive
from .compression import CompressionKind, get_backend, detect_kind, validate_level
from .errors import (
    PipelineError,
    ConfigValidationError,
    ArchiveError,
    CodecError,
    OperationCancelled
)
from .executor import (
    ArchiveRequest,
    RetrieveRequest,
    StorageRecord,
    OperationState,
    PipelineExecutor,
    PipelineOperation
)
from .progress import ProgressSample, ProgressChannel, CancellationToken

__all__ = [
    'build_archive',
    'extract_archive',
    'CompressionKind',
    'get_backend',
    'detect_kind',
    'validate_level',
    'PipelineError',
    'ConfigValidationError',
    'ArchiveError',
    'CodecError',
    'OperationCancelled',
    'ArchiveRequest',
    'RetrieveRequest',
    'StorageRecord',
    'OperationState',
    'PipelineExecutor',
    'PipelineOperation',
    'ProgressSample',
    'ProgressChannel',
    'CancellationToken'
]

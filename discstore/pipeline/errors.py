"""
Error taxonomy for the archive-and-compress pipeline.

Every pipeline failure is a PipelineError carrying a short machine-readable
``reason`` so owners can report it without parsing messages.
"""


class PipelineError(Exception):
    """Base exception for pipeline failures."""

    reason = 'error'


class ConfigValidationError(PipelineError):
    """Raised when a request is invalid. Always raised before any I/O."""

    reason = 'invalid_config'


class ArchiveError(PipelineError):
    """Raised when building or extracting the tar container fails."""

    reason = 'io'


class CodecError(PipelineError):
    """Raised when compression or decompression fails."""

    CORRUPT = 'corrupt'
    IO = 'io'

    def __init__(self, message: str, reason: str = IO):
        self.reason = reason
        super().__init__(message)


class OperationCancelled(PipelineError):
    """Raised inside the worker when cancellation has been requested."""

    reason = 'cancelled'

    def __init__(self, message: str = 'Operation cancelled'):
        super().__init__(message)

"""
Compression backends for stored archives.

Supports two variants selected by CompressionKind:
- lzma: high ratio, slower (xz container via the standard lzma module)
- zstd: fast, lower ratio (Zstandard via the zstandard library)

Both stream data chunk by chunk, report byte-level progress and check for
cancellation once per chunk.
"""

import io
import logging
import lzma
import os
from enum import Enum
from typing import BinaryIO, Callable, Optional, Protocol, Union

import zstandard

from .errors import CodecError, ConfigValidationError

logger = logging.getLogger(__name__)

MIN_LEVEL = 0
MAX_LEVEL = 9
DEFAULT_CHUNK_SIZE = 1024 * 1024  # 1MB

XZ_MAGIC = b'\xfd7zXZ\x00'
ZSTD_MAGIC = b'\x28\xb5\x2f\xfd'
ZSTD_MAX_HEADER_SIZE = 18

# Caller-facing 0-9 scale onto Zstandard's 1-22 scale
ZSTD_LEVELS = (1, 2, 3, 4, 6, 9, 12, 15, 17, 19)

ProgressCallback = Callable[[int, int], None]
CancelCheck = Callable[[], None]


class CompressionKind(str, Enum):
    """Backend variant tag."""

    HIGH_RATIO = 'lzma'
    FAST = 'zstd'

    @classmethod
    def parse(cls, value: Union[str, 'CompressionKind']) -> 'CompressionKind':
        """
        Parse a kind from its tag or enum value.

        Raises:
            ConfigValidationError: If value is not a known kind
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ConfigValidationError(
                f"Invalid compression type: {value}. "
                f"Valid options: {[kind.value for kind in cls]}"
            )


def validate_level(level) -> int:
    """
    Check a compression level against the caller-facing range.

    Args:
        level: Requested level

    Returns:
        The level as int

    Raises:
        ConfigValidationError: If level is not an integer in [0, 9]
    """
    if isinstance(level, bool) or not isinstance(level, int):
        raise ConfigValidationError(f"Compression level must be an integer, got {level!r}")
    if not MIN_LEVEL <= level <= MAX_LEVEL:
        raise ConfigValidationError(
            f"Compression level {level} out of range ({MIN_LEVEL}-{MAX_LEVEL})"
        )
    return level


class CompressionBackend(Protocol):
    """Capability set every backend provides."""

    kind: CompressionKind
    extension: str

    def compress(self, source: BinaryIO, destination: BinaryIO, level: int,
                 on_progress: Optional[ProgressCallback] = None,
                 cancel_check: Optional[CancelCheck] = None,
                 total_bytes: Optional[int] = None) -> int:
        ...

    def decompress(self, source: BinaryIO, destination: BinaryIO,
                   on_progress: Optional[ProgressCallback] = None,
                   cancel_check: Optional[CancelCheck] = None) -> int:
        ...


def _stream_size(stream: BinaryIO) -> Optional[int]:
    """Bytes left in a stream from its current position, None if unknown."""
    try:
        return os.fstat(stream.fileno()).st_size - stream.tell()
    except (AttributeError, OSError, io.UnsupportedOperation):
        pass
    try:
        position = stream.tell()
        end = stream.seek(0, io.SEEK_END)
        stream.seek(position)
        return end - position
    except (AttributeError, OSError, io.UnsupportedOperation):
        return None


def _remaining_size(stream: BinaryIO) -> int:
    size = _stream_size(stream)
    return size if size is not None else 0


def _read(source: BinaryIO, size: int) -> bytes:
    try:
        return source.read(size)
    except OSError as e:
        raise CodecError(f"Failed to read input stream: {e}")


def _write(destination: BinaryIO, data: bytes):
    if not data:
        return
    try:
        destination.write(data)
    except OSError as e:
        raise CodecError(f"Failed to write output stream: {e}")


class _CountingReader:
    """Source wrapper that counts consumed bytes and keeps the frame header."""

    def __init__(self, source: BinaryIO):
        self.source = source
        self.consumed = 0
        self.head = b''

    def read(self, size: int = -1) -> bytes:
        data = _read(self.source, size)
        if len(self.head) < ZSTD_MAX_HEADER_SIZE:
            self.head += data[:ZSTD_MAX_HEADER_SIZE - len(self.head)]
        self.consumed += len(data)
        return data


class LzmaBackend:
    """
    High-ratio backend producing .xz streams.

    The level is used directly as the xz preset. Decompression needs no level
    because the container is self-describing.
    """

    kind = CompressionKind.HIGH_RATIO
    extension = '.tar.xz'

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size <= 0:
            raise ValueError("Chunk size must be positive")
        self.chunk_size = chunk_size

    def compress(self, source, destination, level, on_progress=None,
                 cancel_check=None, total_bytes=None) -> int:
        """
        Compress source into destination.

        Args:
            source: Readable binary stream
            destination: Writable binary stream
            level: Compression level (0-9)
            on_progress: Called as on_progress(bytes_processed, total_bytes)
            cancel_check: Called once per chunk; raises to abort
            total_bytes: Input size, measured from the stream when omitted

        Returns:
            Number of input bytes processed

        Raises:
            ConfigValidationError: If level is out of range
            CodecError: If reading or writing fails
        """
        preset = validate_level(level)
        total = total_bytes if total_bytes is not None else _remaining_size(source)
        compressor = lzma.LZMACompressor(format=lzma.FORMAT_XZ, preset=preset)
        processed = 0

        while True:
            if cancel_check:
                cancel_check()
            chunk = _read(source, self.chunk_size)
            if not chunk:
                break
            _write(destination, compressor.compress(chunk))
            processed += len(chunk)
            if on_progress:
                on_progress(processed, max(total, processed))

        _write(destination, compressor.flush())
        if on_progress:
            on_progress(processed, max(total, processed))
        return processed

    def decompress(self, source, destination, on_progress=None, cancel_check=None) -> int:
        """
        Decompress an xz stream from source into destination.

        Returns:
            Number of bytes written

        Raises:
            CodecError: corrupt if the stream is invalid or truncated, io on read/write failure
        """
        total = _remaining_size(source)
        decompressor = lzma.LZMADecompressor(format=lzma.FORMAT_XZ)
        consumed = 0
        written = 0

        while not decompressor.eof:
            if cancel_check:
                cancel_check()
            chunk = _read(source, self.chunk_size)
            if not chunk:
                break
            consumed += len(chunk)
            data = chunk
            # Bound memory per call; drain buffered output before reading more
            while True:
                try:
                    out = decompressor.decompress(data, max_length=self.chunk_size)
                except lzma.LZMAError as e:
                    raise CodecError(f"Corrupt xz stream: {e}", CodecError.CORRUPT)
                _write(destination, out)
                written += len(out)
                data = b''
                if decompressor.eof or decompressor.needs_input:
                    break
            if on_progress:
                on_progress(consumed, max(total, consumed))

        if not decompressor.eof:
            raise CodecError("Truncated xz stream", CodecError.CORRUPT)
        if decompressor.unused_data:
            logger.warning(f"Ignoring {len(decompressor.unused_data)} trailing bytes after xz stream")
        return written


class ZstdBackend:
    """
    Fast backend producing Zstandard frames.

    The caller-facing 0-9 level is mapped through ZSTD_LEVELS.
    """

    kind = CompressionKind.FAST
    extension = '.tar.zst'

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size <= 0:
            raise ValueError("Chunk size must be positive")
        self.chunk_size = chunk_size

    @staticmethod
    def native_level(level: int) -> int:
        return ZSTD_LEVELS[validate_level(level)]

    def compress(self, source, destination, level, on_progress=None,
                 cancel_check=None, total_bytes=None) -> int:
        """
        Compress source into a single Zstandard frame.

        The frame records its content size whenever the input size is known,
        plus a checksum.

        Returns:
            Number of input bytes processed

        Raises:
            ConfigValidationError: If level is out of range
            CodecError: If reading, writing or the encoder fails
        """
        native = self.native_level(level)
        size = total_bytes if total_bytes is not None else _stream_size(source)
        total = size or 0
        compressor = zstandard.ZstdCompressor(level=native, write_checksum=True)
        cobj = compressor.compressobj(size=size if size is not None else -1)
        processed = 0

        try:
            while True:
                if cancel_check:
                    cancel_check()
                chunk = _read(source, self.chunk_size)
                if not chunk:
                    break
                _write(destination, cobj.compress(chunk))
                processed += len(chunk)
                if on_progress:
                    on_progress(processed, max(total, processed))
            _write(destination, cobj.flush())
        except zstandard.ZstdError as e:
            raise CodecError(f"zstd compression failed: {e}")

        if on_progress:
            on_progress(processed, max(total, processed))
        return processed

    def decompress(self, source, destination, on_progress=None, cancel_check=None) -> int:
        """
        Decompress one Zstandard frame from source into destination.

        At most chunk_size bytes are decoded per step. A truncated frame is
        detected by comparing the output with the content size in the frame
        header; frames without a recorded size end where the input ends.

        Returns:
            Number of bytes written

        Raises:
            CodecError: corrupt if the frame is invalid or truncated, io on read/write failure
        """
        total = _remaining_size(source)
        counter = _CountingReader(source)
        dctx = zstandard.ZstdDecompressor()
        written = 0

        with dctx.stream_reader(counter, read_size=self.chunk_size, closefd=False) as reader:
            while True:
                if cancel_check:
                    cancel_check()
                try:
                    out = reader.read(self.chunk_size)
                except zstandard.ZstdError as e:
                    raise CodecError(f"Corrupt zstd stream: {e}", CodecError.CORRUPT)
                if not out:
                    break
                _write(destination, out)
                written += len(out)
                if on_progress:
                    on_progress(counter.consumed, max(total, counter.consumed))

        if counter.consumed == 0:
            raise CodecError("Truncated zstd stream", CodecError.CORRUPT)
        try:
            expected = zstandard.frame_content_size(counter.head)
        except zstandard.ZstdError as e:
            raise CodecError(f"Corrupt zstd frame header: {e}", CodecError.CORRUPT)
        if expected >= 0 and written != expected:
            raise CodecError(
                f"Truncated zstd stream: {written} of {expected} bytes", CodecError.CORRUPT
            )

        if on_progress:
            on_progress(counter.consumed, max(total, counter.consumed))
        return written


BACKENDS = {
    CompressionKind.HIGH_RATIO: LzmaBackend,
    CompressionKind.FAST: ZstdBackend,
}


def get_backend(kind, chunk_size: int = DEFAULT_CHUNK_SIZE) -> CompressionBackend:
    """
    Return a fresh backend for a compression kind.

    Args:
        kind: CompressionKind or its tag ('lzma', 'zstd')
        chunk_size: Bytes per read/progress/cancellation step

    Raises:
        ConfigValidationError: If kind is unknown
    """
    return BACKENDS[CompressionKind.parse(kind)](chunk_size=chunk_size)


def detect_kind(path: str) -> CompressionKind:
    """
    Identify the backend that produced an artifact from its magic bytes.

    Raises:
        CodecError: If the file cannot be read or is neither xz nor zstd
    """
    try:
        with open(path, 'rb') as f:
            header = f.read(len(XZ_MAGIC))
    except OSError as e:
        raise CodecError(f"Failed to read artifact header: {e}")

    if header.startswith(XZ_MAGIC):
        return CompressionKind.HIGH_RATIO
    if header.startswith(ZSTD_MAGIC):
        return CompressionKind.FAST
    raise CodecError(f"Unrecognised artifact format: {path}", CodecError.CORRUPT)

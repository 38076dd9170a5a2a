"""
Local placement of stored artifacts.

Artifacts live under the storage directory with the structure:
{base_path}/{name}/{YYYY}/{MM}/{name}-{YYYYMMDD_HHMMSS}.tar.{xz|zst}
"""

from pathlib import Path
from datetime import datetime

from discstore.pipeline.compression import get_backend


class StorageError(Exception):
    """Raised when an artifact cannot be placed or removed."""
    pass


def safe_name(name: str) -> str:
    """Replace spaces and special characters with underscores."""
    return "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in name
    )


def generate_archive_filename(name: str, compression_type: str, index: int = 0) -> str:
    """
    Generate a standardized artifact filename.

    Format: {name}-{YYYYMMDD_HHMMSS}.{ext}, or {name}-{YYYYMMDD_HHMMSS}-{index}.{ext}

    Args:
        name: Storage name
        compression_type: 'lzma' or 'zstd'
        index: Disambiguating counter, omitted when 0

    Returns:
        Filename (without path)
    """
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    extension = get_backend(compression_type).extension
    suffix = f"-{index}" if index else ""
    return f"{safe_name(name)}-{timestamp}{suffix}{extension}"


class LocalStorage:
    """
    Handler for artifact locations in the local storage directory.
    """

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Base directory for stored artifacts
        """
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def allocate(self, name: str, compression_type: str) -> str:
        """
        Reserve the output path for a new artifact.

        The file is created empty and exclusively; a counter suffix is added
        while the generated name is taken.

        Args:
            name: Storage name
            compression_type: 'lzma' or 'zstd'

        Returns:
            Full path of the reserved (empty) artifact file

        Raises:
            StorageError: If the directory or file cannot be created
        """
        now = datetime.now()
        dest_dir = self.base_path / safe_name(name) / str(now.year) / f"{now.month:02d}"

        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            raise StorageError(f"Permission denied creating {dest_dir}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to prepare storage directory: {e}")

        index = 0
        while True:
            dest_path = dest_dir / generate_archive_filename(name, compression_type, index)
            try:
                with open(dest_path, 'x'):
                    pass
                return str(dest_path)
            except FileExistsError:
                index += 1
            except OSError as e:
                raise StorageError(f"Failed to reserve {dest_path}: {e}")

    def delete(self, artifact_path: str):
        """
        Delete an artifact and prune empty parent directories.

        Args:
            artifact_path: Full or base-relative artifact path

        Raises:
            StorageError: If deletion fails
        """
        full_path = Path(self.get_full_path(artifact_path))

        try:
            if full_path.exists():
                full_path.unlink()
            self._prune(full_path.parent)
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete artifact: {e}")

    def get_full_path(self, path: str) -> str:
        """
        Get full filesystem path from a full or base-relative path.
        """
        return str(self.base_path / path)

    def _prune(self, directory: Path):
        """Remove empty directories up to (not including) base_path."""
        base = self.base_path.resolve()
        current = directory.resolve()
        while current != base and base in current.parents:
            if current.is_dir():
                if any(current.iterdir()):
                    break
                current.rmdir()
            current = current.parent

"""
Tar container handling for the pipeline.

build_archive packs an ordered list of files/directories into one
uncompressed tar; extract_archive restores such a tar into a directory.
"""

import logging
import os
import shutil
import tarfile
from pathlib import Path, PurePosixPath
from typing import Callable, List, Optional, Tuple

from .errors import ArchiveError, ConfigValidationError

logger = logging.getLogger(__name__)

CONFLICT_POLICIES = ('rename', 'overwrite', 'skip')

ProgressCallback = Callable[[int, int], None]
CancelCheck = Callable[[], None]


def _walk(directory: Path, arcname: str, ancestors: frozenset) -> List[Tuple[Path, str]]:
    """
    Depth-first listing of a directory, children sorted by name.

    Symlinks are followed. A link back into one of its own ancestors and a
    link with no target are left out with a warning.
    """
    entries = []
    try:
        children = sorted(directory.iterdir(), key=lambda p: p.name)
    except PermissionError as e:
        raise ArchiveError(f"Permission denied reading {directory}: {e}")
    except OSError as e:
        raise ArchiveError(f"Failed to read directory {directory}: {e}")

    for child in children:
        child_arcname = f"{arcname}/{child.name}"
        if child.is_dir():
            real = child.resolve()
            if real in ancestors:
                logger.warning(f"Skipping directory loop: {child} -> {real}")
                continue
            entries.append((child, child_arcname))
            entries.extend(_walk(child, child_arcname, ancestors | {real}))
        elif child.is_file():
            entries.append((child, child_arcname))
        elif child.is_symlink() and not child.exists():
            logger.warning(f"Skipping broken symlink: {child}")
        else:
            logger.warning(f"Skipping unsupported file type: {child}")
    return entries


def collect_entries(inputs: List[str]) -> List[Tuple[Path, str]]:
    """
    Resolve inputs into (path, arcname) pairs in archive order.

    Files keep only their base name; directories keep their internal layout
    under their own base name. A symlinked input is named after the link,
    not its target.

    Args:
        inputs: Ordered file/directory paths

    Returns:
        List of (path, arcname) tuples

    Raises:
        ArchiveError: If an input does not exist or is not a file/directory
    """
    entries = []
    for source_path in inputs:
        source = Path(source_path).expanduser()

        if not source.exists():
            raise ArchiveError(f"Path does not exist: {source_path}")

        arcname = Path(os.path.abspath(source)).name
        if source.is_file():
            entries.append((source, arcname))
        elif source.is_dir():
            entries.append((source, arcname))
            entries.extend(_walk(source, arcname, frozenset({source.resolve()})))
        else:
            raise ArchiveError(f"Invalid path type: {source_path}")
    return entries


def build_archive(
    destination: str,
    inputs: List[str],
    on_progress: Optional[ProgressCallback] = None,
    cancel_check: Optional[CancelCheck] = None
) -> int:
    """
    Create an uncompressed tar archive from source paths.

    Symlinks are stored as the files and directories they point to.

    Args:
        destination: Path of the tar file to create
        inputs: Ordered list of file/directory paths to include
        on_progress: Called as on_progress(entries_done, entries_total)
        cancel_check: Called between entries; raises to abort

    Returns:
        Number of regular files written

    Raises:
        ArchiveError: If an input is missing/unreadable or destination cannot be written
    """
    entries = collect_entries(inputs)
    total = len(entries)
    file_count = 0

    try:
        with tarfile.open(destination, 'w', format=tarfile.PAX_FORMAT, dereference=True) as tar:
            for done, (path, arcname) in enumerate(entries, start=1):
                if cancel_check:
                    cancel_check()
                tar.add(str(path), arcname=arcname, recursive=False)
                if path.is_file():
                    file_count += 1
                if on_progress:
                    on_progress(done, total)
    except PermissionError as e:
        raise ArchiveError(f"Permission denied: {e}")
    except (OSError, tarfile.TarError) as e:
        raise ArchiveError(f"Failed to create archive: {e}")

    logger.debug(f"Archived {file_count} files ({total} entries) into {destination}")
    return file_count


def _safe_member_path(name: str) -> PurePosixPath:
    """Validate a member name and return it as a relative path."""
    member_path = PurePosixPath(name)
    if member_path.is_absolute() or '..' in member_path.parts or name.startswith('\\'):
        raise ArchiveError(f"Unsafe path in archive: {name}")
    return member_path


def _free_name(target: Path) -> Path:
    """Return the first 'name (n).ext' sibling that does not exist yet."""
    suffix = target.suffix
    if len(target.suffixes) > 1 and target.suffixes[-2] == '.tar':
        suffix = ''.join(target.suffixes[-2:])
    stem = target.name[:len(target.name) - len(suffix)] if suffix else target.name
    counter = 1
    while True:
        candidate = target.with_name(f"{stem} ({counter}){suffix}")
        if not candidate.exists():
            return candidate
        counter += 1


def extract_archive(
    archive_path: str,
    destination_dir: str,
    on_conflict: str = 'rename',
    on_progress: Optional[ProgressCallback] = None,
    cancel_check: Optional[CancelCheck] = None,
    on_restored: Optional[Callable[[str], None]] = None
) -> List[str]:
    """
    Restore a tar archive into a directory.

    Args:
        archive_path: Path of the tar file
        destination_dir: Directory to restore into (created if missing)
        on_conflict: What to do when a file already exists: 'rename', 'overwrite' or 'skip'
        on_progress: Called as on_progress(members_done, members_total)
        cancel_check: Called between members; raises to abort
        on_restored: Called with each file path as soon as it is written

    Returns:
        List of restored file paths

    Raises:
        ConfigValidationError: If on_conflict is not a known policy
        ArchiveError: If the archive is unreadable, unsafe, or files cannot be written
    """
    if on_conflict not in CONFLICT_POLICIES:
        raise ConfigValidationError(
            f"Invalid conflict policy: {on_conflict}. Valid options: {list(CONFLICT_POLICIES)}"
        )

    root = Path(destination_dir)
    restored = []

    try:
        root.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive_path, 'r:') as tar:
            members = tar.getmembers()
            total = len(members)

            for done, member in enumerate(members, start=1):
                if cancel_check:
                    cancel_check()

                target = root.joinpath(*_safe_member_path(member.name).parts)

                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                elif member.isfile():
                    if target.exists():
                        if on_conflict == 'skip':
                            logger.info(f"Skipping existing file: {target}")
                            target = None
                        elif on_conflict == 'rename':
                            target = _free_name(target)
                    if target is not None:
                        target.parent.mkdir(parents=True, exist_ok=True)
                        with tar.extractfile(member) as src, open(target, 'wb') as dst:
                            shutil.copyfileobj(src, dst)
                        os.chmod(target, member.mode & 0o777 or 0o644)
                        restored.append(str(target))
                        if on_restored:
                            on_restored(str(target))
                else:
                    logger.warning(f"Skipping unsupported archive member: {member.name}")

                if on_progress:
                    on_progress(done, total)
    except PermissionError as e:
        raise ArchiveError(f"Permission denied: {e}")
    except (OSError, tarfile.TarError) as e:
        raise ArchiveError(f"Failed to extract archive: {e}")

    return restored

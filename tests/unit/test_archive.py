"""
Unit tests for the tar container (discstore/pipeline/archive.py).
"""

import io
import tarfile
from pathlib import Path

import pytest

from discstore.pipeline.archive import build_archive, collect_entries, extract_archive
from discstore.pipeline.errors import ArchiveError, ConfigValidationError, OperationCancelled


def member_names(archive_path):
    with tarfile.open(archive_path, 'r:') as tar:
        return [m.name for m in tar.getmembers()]


def relative_files(root):
    root = Path(root)
    return {
        str(p.relative_to(root)): p.read_bytes()
        for p in root.rglob('*') if p.is_file()
    }


class TestBuildArchive:
    """Test build_archive with files and directories."""

    def test_single_file_uses_base_name(self, temp_files, output_dir):
        """Test a file input becomes one entry named after its base name."""
        archive = output_dir / 'single.tar'

        count = build_archive(str(archive), [str(temp_files / 'nested' / 'test_file3.txt')])

        assert count == 1
        assert member_names(archive) == ['test_file3.txt']

    def test_directory_is_recursive_and_ordered(self, temp_files, output_dir):
        """Test directory inputs include all descendants depth-first, sorted by name."""
        archive = output_dir / 'dir.tar'

        count = build_archive(str(archive), [str(temp_files)])

        assert count == 4
        assert member_names(archive) == [
            'source',
            'source/nested',
            'source/nested/deeper',
            'source/nested/deeper/test_file4.bin',
            'source/nested/test_file3.txt',
            'source/test_file1.txt',
            'source/test_file2.log',
        ]

    def test_input_order_is_preserved(self, temp_files, output_dir):
        """Test entries follow the order of the inputs."""
        archive = output_dir / 'mixed.tar'

        build_archive(str(archive), [
            str(temp_files / 'test_file2.log'),
            str(temp_files / 'nested'),
            str(temp_files / 'test_file1.txt'),
        ])

        names = member_names(archive)
        assert names[0] == 'test_file2.log'
        assert names[1] == 'nested'
        assert names[-1] == 'test_file1.txt'

    def test_build_is_deterministic(self, temp_files, output_dir):
        """Test two builds of the same tree list identical entries."""
        first = output_dir / 'first.tar'
        second = output_dir / 'second.tar'

        build_archive(str(first), [str(temp_files)])
        build_archive(str(second), [str(temp_files)])

        assert member_names(first) == member_names(second)

    def test_progress_per_entry(self, temp_files, output_dir):
        """Test progress is reported once per entry and ends complete."""
        calls = []

        build_archive(str(output_dir / 'p.tar'), [str(temp_files)],
                      on_progress=lambda done, total: calls.append((done, total)))

        assert len(calls) == 7
        assert calls[0] == (1, 7)
        assert calls[-1] == (7, 7)

    def test_missing_input_creates_nothing(self, temp_files, output_dir):
        """Test a missing input fails before the destination is created."""
        archive = output_dir / 'missing.tar'

        with pytest.raises(ArchiveError, match="does not exist"):
            build_archive(str(archive), [str(temp_files / 'test_file1.txt'), str(temp_files / 'nope.txt')])

        assert not archive.exists()

    def test_unwritable_destination(self, temp_files, tmp_path):
        """Test a destination in a missing directory raises ArchiveError."""
        with pytest.raises(ArchiveError):
            build_archive(str(tmp_path / 'no_such_dir' / 'a.tar'), [str(temp_files)])

    def test_cancel_between_entries(self, temp_files, output_dir):
        """Test cancellation checks run between entries."""
        checks = []

        def cancel_check():
            checks.append(1)
            if len(checks) == 2:
                raise OperationCancelled()

        with pytest.raises(OperationCancelled):
            build_archive(str(output_dir / 'c.tar'), [str(temp_files)], cancel_check=cancel_check)

        assert len(checks) == 2

    def test_inputs_are_not_modified(self, temp_files, output_dir):
        """Test building an archive leaves the inputs untouched."""
        before = relative_files(temp_files)

        build_archive(str(output_dir / 'x.tar'), [str(temp_files)])

        assert relative_files(temp_files) == before

    def test_collect_entries_trailing_slash(self, temp_files):
        """Test a directory given with a trailing slash keeps its name."""
        entries = collect_entries([str(temp_files) + '/'])

        assert entries[0][1] == 'source'

    def test_symlinked_file_input(self, temp_files, output_dir, tmp_path):
        """Test a linked file is stored under the link name with the target content."""
        link = tmp_path / 'latest.txt'
        link.symlink_to(temp_files / 'test_file1.txt')
        archive = output_dir / 'link.tar'
        restore = tmp_path / 'restore'

        count = build_archive(str(archive), [str(link)])
        restored = extract_archive(str(archive), str(restore))

        assert count == 1
        assert member_names(archive) == ['latest.txt']
        assert restored == [str(restore / 'latest.txt')]
        assert (restore / 'latest.txt').read_text() == 'Test content 1'

    def test_symlinks_inside_directory_are_followed(self, temp_files, output_dir, tmp_path):
        """Test links within a directory input are stored as their targets."""
        outside = tmp_path / 'outside'
        outside.mkdir()
        (outside / 'shared.txt').write_text('Shared content')
        (temp_files / 'shared_link.txt').symlink_to(outside / 'shared.txt')
        (temp_files / 'linked_dir').symlink_to(outside, target_is_directory=True)
        archive = output_dir / 'links.tar'
        restore = tmp_path / 'restore'

        count = build_archive(str(archive), [str(temp_files)])
        extract_archive(str(archive), str(restore))

        assert count == 6
        assert (restore / 'source' / 'shared_link.txt').read_text() == 'Shared content'
        assert (restore / 'source' / 'linked_dir' / 'shared.txt').read_text() == 'Shared content'
        assert not (restore / 'source' / 'shared_link.txt').is_symlink()
        with tarfile.open(archive, 'r:') as tar:
            assert all(m.isfile() or m.isdir() for m in tar.getmembers())

    def test_directory_loop_is_not_followed(self, temp_files, output_dir):
        """Test a link back to an ancestor directory is left out."""
        (temp_files / 'nested' / 'back').symlink_to(temp_files, target_is_directory=True)
        archive = output_dir / 'loop.tar'

        count = build_archive(str(archive), [str(temp_files)])

        assert count == 4
        assert 'source/nested/back' not in member_names(archive)

    def test_broken_symlink_inside_directory_is_skipped(self, temp_files, output_dir, tmp_path):
        (temp_files / 'dangling.txt').symlink_to(tmp_path / 'gone.txt')
        archive = output_dir / 'broken.tar'

        count = build_archive(str(archive), [str(temp_files)])

        assert count == 4
        assert 'source/dangling.txt' not in member_names(archive)


class TestArchiveFidelity:
    """Build then extract reproduces the tree byte for byte."""

    def test_round_trip_tree(self, temp_files, output_dir, tmp_path):
        """Test extracted files match the originals at the same relative paths."""
        archive = output_dir / 'tree.tar'
        restore = tmp_path / 'restore'
        extra = tmp_path / 'extra.txt'
        extra.write_bytes(b'\x00\x01binary\xff')

        count = build_archive(str(archive), [str(temp_files), str(extra)])
        restored = extract_archive(str(archive), str(restore))

        assert count == len(restored) == 5
        assert relative_files(restore / 'source') == relative_files(temp_files)
        assert (restore / 'extra.txt').read_bytes() == extra.read_bytes()

    def test_empty_directory_is_restored(self, tmp_path, output_dir):
        """Test empty directories survive the round trip."""
        empty = tmp_path / 'empty'
        empty.mkdir()
        archive = output_dir / 'empty.tar'

        count = build_archive(str(archive), [str(empty)])
        extract_archive(str(archive), str(tmp_path / 'restore'))

        assert count == 0
        assert (tmp_path / 'restore' / 'empty').is_dir()


class TestExtractArchive:
    """Test extraction conflict policies and safety checks."""

    @pytest.fixture
    def archive(self, temp_files, output_dir):
        path = output_dir / 'file.tar'
        build_archive(str(path), [str(temp_files / 'test_file1.txt')])
        return path

    def test_rename_on_conflict(self, archive, tmp_path):
        """Test the default policy keeps the existing file and renames the new one."""
        restore = tmp_path / 'restore'
        restore.mkdir()
        (restore / 'test_file1.txt').write_text('existing')

        restored = extract_archive(str(archive), str(restore))

        assert (restore / 'test_file1.txt').read_text() == 'existing'
        assert (restore / 'test_file1 (1).txt').read_text() == 'Test content 1'
        assert restored == [str(restore / 'test_file1 (1).txt')]

    def test_rename_picks_next_free_name(self, archive, tmp_path):
        """Test renaming skips names that are already taken."""
        restore = tmp_path / 'restore'
        restore.mkdir()
        (restore / 'test_file1.txt').write_text('existing')
        (restore / 'test_file1 (1).txt').write_text('existing too')

        extract_archive(str(archive), str(restore), on_conflict='rename')

        assert (restore / 'test_file1 (2).txt').read_text() == 'Test content 1'

    @pytest.mark.parametrize("existing, renamed", [
        ('report.v2.final.txt', 'report.v2.final (1).txt'),
        ('backup.tar.xz', 'backup (1).tar.xz'),
        ('README', 'README (1)'),
    ])
    def test_rename_keeps_dotted_stem(self, tmp_path, existing, renamed):
        """Test only the last extension, or a .tar.* pair, follows the counter."""
        source = tmp_path / 'source'
        source.mkdir()
        (source / existing).write_text('new')
        archive = tmp_path / 'named.tar'
        build_archive(str(archive), [str(source / existing)])
        restore = tmp_path / 'restore'
        restore.mkdir()
        (restore / existing).write_text('existing')

        restored = extract_archive(str(archive), str(restore))

        assert restored == [str(restore / renamed)]
        assert (restore / renamed).read_text() == 'new'

    def test_overwrite_on_conflict(self, archive, tmp_path):
        """Test overwrite replaces the existing file."""
        restore = tmp_path / 'restore'
        restore.mkdir()
        (restore / 'test_file1.txt').write_text('existing')

        extract_archive(str(archive), str(restore), on_conflict='overwrite')

        assert (restore / 'test_file1.txt').read_text() == 'Test content 1'

    def test_skip_on_conflict(self, archive, tmp_path):
        """Test skip leaves the existing file and restores nothing."""
        restore = tmp_path / 'restore'
        restore.mkdir()
        (restore / 'test_file1.txt').write_text('existing')

        restored = extract_archive(str(archive), str(restore), on_conflict='skip')

        assert restored == []
        assert (restore / 'test_file1.txt').read_text() == 'existing'

    def test_invalid_conflict_policy(self, archive, tmp_path):
        """Test unknown policies are rejected before extraction."""
        with pytest.raises(ConfigValidationError, match="Invalid conflict policy"):
            extract_archive(str(archive), str(tmp_path / 'restore'), on_conflict='merge')

        assert not (tmp_path / 'restore').exists()

    @pytest.mark.parametrize("member_name", ["../evil.txt", "/etc/evil.txt", "a/../../evil.txt"])
    def test_path_traversal_rejected(self, tmp_path, member_name):
        """Test members escaping the destination are rejected."""
        archive = tmp_path / 'evil.tar'
        payload = b'evil'
        with tarfile.open(archive, 'w') as tar:
            info = tarfile.TarInfo(member_name)
            info.size = len(payload)
            tar.addfile(info, io.BytesIO(payload))

        with pytest.raises(ArchiveError, match="Unsafe path"):
            extract_archive(str(archive), str(tmp_path / 'restore'))

        assert not (tmp_path / 'evil.txt').exists()

    def test_not_a_tar(self, tmp_path):
        """Test a non-tar file raises ArchiveError."""
        bogus = tmp_path / 'bogus.tar'
        bogus.write_bytes(b'definitely not a tar file' * 40)

        with pytest.raises(ArchiveError):
            extract_archive(str(bogus), str(tmp_path / 'restore'))

    def test_extract_progress(self, temp_files, output_dir, tmp_path):
        """Test extraction reports progress per member."""
        archive = output_dir / 'tree.tar'
        build_archive(str(archive), [str(temp_files)])
        calls = []

        extract_archive(str(archive), str(tmp_path / 'restore'),
                        on_progress=lambda done, total: calls.append((done, total)))

        assert calls[-1] == (7, 7)

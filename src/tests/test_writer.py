"""Unit tests for the output writer and build lock."""

import os

import pytest

from clog.core.exceptions import BuildInProgressError, WriteError
from clog.core.models import Artifact
from clog.core.writer import BuildLock, OutputWriter, commit


def art(destination, data):
    return Artifact(destination=destination, data=data, source=destination)


@pytest.fixture
def output(tmp_path):
    return tmp_path / "public"


def leftovers(output):
    return sorted(p.name for p in output.parent.iterdir() if p.name.startswith("."))


# ============================================================
# Commit
# ============================================================


class TestCommit:
    def test_creates_output(self, output):
        report = commit([art("index.html", b"home"), art("posts/a.html", b"a")], output)
        assert (output / "index.html").read_bytes() == b"home"
        assert (output / "posts" / "a.html").read_bytes() == b"a"
        assert report.written == ["index.html", "posts/a.html"]
        assert leftovers(output) == []

    def test_unchanged_files_keep_inode(self, output):
        commit([art("a.html", b"same"), art("b.html", b"old")], output)
        inode = (output / "a.html").stat().st_ino
        report = commit([art("a.html", b"same"), art("b.html", b"new")], output)
        assert report.unchanged == ["a.html"]
        assert report.written == ["b.html"]
        assert (output / "a.html").stat().st_ino == inode
        assert (output / "b.html").read_bytes() == b"new"

    def test_additive_keeps_orphans(self, output):
        commit([art("a.html", b"a"), art("old.html", b"old")], output)
        report = commit([art("a.html", b"a")], output, clean=False)
        assert report.orphaned == ["old.html"]
        assert (output / "old.html").read_bytes() == b"old"

    def test_clean_removes_orphans(self, output):
        commit([art("a.html", b"a"), art("old/x.html", b"old")], output)
        report = commit([art("a.html", b"a")], output, clean=True)
        assert report.removed == ["old/x.html"]
        assert not (output / "old").exists()

    def test_foreign_files_are_orphans(self, output):
        output.mkdir()
        (output / "CNAME").write_text("example.com")
        report = commit([art("index.html", b"x")], output)
        assert report.orphaned == ["CNAME"]
        assert (output / "CNAME").read_text() == "example.com"

    def test_rejects_escaping_destination(self, output):
        with pytest.raises(WriteError):
            commit([art("../evil.html", b"x")], output)
        assert not output.exists()

    def test_rejects_shared_destination(self, output):
        with pytest.raises(WriteError):
            commit([art("a.html", b"1"), art("a.html", b"2")], output)

    def test_failed_stage_leaves_output(self, output, monkeypatch):
        commit([art("a.html", b"v1")], output)

        def broken(self, artifact, staging, existing):
            raise OSError("disk full")

        monkeypatch.setattr(OutputWriter, "_stage", broken)
        with pytest.raises(WriteError):
            commit([art("a.html", b"v2")], output)
        assert (output / "a.html").read_bytes() == b"v1"
        assert leftovers(output) == []

    def test_interrupt_between_renames_keeps_output(self, output, monkeypatch):
        commit([art("a.html", b"v1")], output)
        real_rename = os.rename
        calls = []

        def interrupted_rename(source, destination):
            calls.append(source)
            if len(calls) == 2:
                raise KeyboardInterrupt
            real_rename(source, destination)

        monkeypatch.setattr(os, "rename", interrupted_rename)
        with pytest.raises(KeyboardInterrupt):
            commit([art("a.html", b"v2")], output)
        monkeypatch.undo()
        assert (output / "a.html").read_bytes() == b"v1"
        assert leftovers(output) == []

    def test_orphan_file_where_directory_now_is(self, output):
        commit([art("notes", b"old file")], output)
        report = commit([art("notes/index.html", b"new")], output, clean=False)
        assert report.removed == ["notes"]
        assert report.orphaned == []
        assert (output / "notes" / "index.html").read_bytes() == b"new"

    def test_orphan_directory_where_file_now_is(self, output):
        commit([art("notes/a.html", b"old"), art("keep.html", b"k")], output)
        report = commit([art("notes", b"now a file")], output, clean=False)
        assert report.removed == ["notes/a.html"]
        assert report.orphaned == ["keep.html"]
        assert (output / "notes").read_bytes() == b"now a file"

    def test_output_is_file(self, output):
        output.write_text("not a dir")
        with pytest.raises(WriteError):
            commit([art("a.html", b"x")], output)
        assert output.read_text() == "not a dir"

    def test_keeps_directory_mode(self, output):
        output.mkdir(mode=0o750)
        os.chmod(output, 0o750)
        commit([art("a.html", b"x")], output)
        assert output.stat().st_mode & 0o777 == 0o750


# ============================================================
# Leftovers of interrupted builds
# ============================================================


class TestDiscardStale:
    def test_removes_staging_and_backup(self, output):
        output.mkdir(parents=True)
        staging = output.parent / ".public.clog-staging-abc"
        backup = output.parent / ".public.clog-old-abc"
        staging.mkdir()
        backup.mkdir()
        (staging / "half.html").write_text("x")
        removed = OutputWriter(output).discard_stale()
        assert removed == [staging, backup]
        assert not staging.exists()
        assert not backup.exists()

    def test_ignores_other_outputs(self, output):
        other = output.parent / ".site.clog-staging-abc"
        other.mkdir(parents=True)
        assert OutputWriter(output).discard_stale() == []
        assert other.exists()

    def test_restores_backup_when_output_missing(self, output):
        backup = output.parent / ".public.clog-old-abc"
        backup.mkdir(parents=True)
        (backup / "index.html").write_text("previous")
        staging = output.parent / ".public.clog-staging-abc"
        staging.mkdir()
        assert OutputWriter(output).discard_stale() == [staging]
        assert (output / "index.html").read_text() == "previous"
        assert leftovers(output) == []

    def test_commit_restores_before_staging(self, output):
        backup = output.parent / ".public.clog-old-abc"
        backup.mkdir(parents=True)
        (backup / "old.html").write_text("kept")
        report = commit([art("a.html", b"a")], output)
        assert report.orphaned == ["old.html"]
        assert (output / "old.html").read_text() == "kept"
        assert leftovers(output) == []


# ============================================================
# Locking
# ============================================================


class TestBuildLock:
    def test_acquire_release(self, output):
        lock = BuildLock(output)
        lock.acquire()
        assert lock.path.exists()
        assert lock.path.read_text() == str(os.getpid())
        lock.release()
        assert not lock.path.exists()

    def test_second_lock_fails(self, output):
        with BuildLock(output):
            with pytest.raises(BuildInProgressError) as exc_info:
                BuildLock(output).acquire()
        assert "build in progress" in exc_info.value.reason
        assert exc_info.value.kind == "write"

    def test_stale_lock_removed(self, output, monkeypatch):
        lock = BuildLock(output)
        lock.path.parent.mkdir(parents=True, exist_ok=True)
        lock.path.write_text("999999")

        def no_such_process(pid, signal):
            raise ProcessLookupError

        monkeypatch.setattr(os, "kill", no_such_process)
        lock.acquire()
        assert lock.path.read_text() == str(os.getpid())
        lock.release()

    def test_commit_under_held_lock_fails(self, output):
        with BuildLock(output):
            with pytest.raises(BuildInProgressError):
                commit([art("a.html", b"x")], output)

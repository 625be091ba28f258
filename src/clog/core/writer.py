"""Output writer: stages a build and swaps it into place.

The output directory is never written directly. Every artifact goes into a
sibling staging directory first and the staging directory then replaces the
output directory by rename, so readers see either the old site or the new
one. The old output is moved aside before the new one moves in; if a build
dies in between, the old output is put back, either right away or by the
next build. A lock file next to the output directory keeps two builds from
committing to it at the same time.
"""

import logging
import os
import shutil
import tempfile
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path, PurePosixPath

from clog.core.exceptions import BuildInProgressError, WriteError
from clog.core.models import Artifact, WriteReport

logger = logging.getLogger(__name__)

STAGING_MARK = "clog-staging-"
BACKUP_MARK = "clog-old-"


def _sibling(output_root: Path, mark: str) -> str:
    return f".{output_root.name}.{mark}"


def _blocked(staging: Path, rel: str) -> bool:
    """True if staged output already occupies ``rel`` or one of its parents."""
    target = staging / rel
    if target.exists() or target.is_symlink():
        return True
    return any((staging / parent).is_file() for parent in PurePosixPath(rel).parents)


def link_or_copy(source: Path, destination: Path) -> None:
    """Hard link ``source`` to ``destination``, copying if linking fails."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    if source.is_symlink():
        os.symlink(os.readlink(source), destination)
        return
    try:
        os.link(source, destination)
    except OSError:
        shutil.copy2(source, destination)


class BuildLock:
    """Exclusive lock file guarding an output directory."""

    def __init__(self, output_root: Path):
        self.path = output_root.parent / f".{output_root.name}.clog.lock"
        self.held = False

    def _stale(self) -> bool:
        """True if the lock was left by a process that no longer runs."""
        try:
            pid = int(self.path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return False
        if pid == os.getpid():
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            BuildInProgressError: If another live build holds it.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.exists() and self._stale():
            logger.warning("Removing stale lock %s", self.path)
            self.path.unlink(missing_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise BuildInProgressError(
                f"build in progress (lock file {self.path} exists)", path=str(self.path)
            ) from None
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(str(os.getpid()))
        self.held = True

    def release(self) -> None:
        if self.held:
            self.path.unlink(missing_ok=True)
            self.held = False

    def __enter__(self) -> "BuildLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


class OutputWriter:
    """Commits a set of artifacts to an output directory."""

    def __init__(self, output_root: Path, concurrency: int = 4, io_timeout: float = 30.0):
        self.output_root = output_root
        self.concurrency = concurrency
        self.io_timeout = io_timeout

    def _leftovers(self, mark: str) -> list[Path]:
        parent = self.output_root.parent
        if not parent.is_dir():
            return []
        return sorted(parent.glob(_sibling(self.output_root, mark) + "*"))

    def restore_backup(self) -> Path | None:
        """Put back the previous output if a build died mid-swap.

        The swap renames the output aside before moving staging into place,
        so a missing output next to a backup means the backup is the last
        committed site.
        """
        if self.output_root.exists():
            return None
        backups = self._leftovers(BACKUP_MARK)
        if not backups:
            return None
        latest = max(backups, key=lambda p: p.stat().st_mtime)
        logger.warning("Restoring %s from interrupted build backup %s", self.output_root, latest)
        os.rename(latest, self.output_root)
        return latest

    def discard_stale(self) -> list[Path]:
        """Remove staging and backup directories left by interrupted builds.

        A backup that is the only copy of the previous output is restored
        first, never deleted.
        """
        self.restore_backup()
        removed = []
        for mark in (STAGING_MARK, BACKUP_MARK):
            for path in self._leftovers(mark):
                logger.info("Discarding leftover %s", path)
                shutil.rmtree(path, ignore_errors=True)
                removed.append(path)
        return removed

    def existing_files(self) -> set[str]:
        """Relative paths of all files currently in the output directory."""
        if not self.output_root.is_dir():
            return set()
        found = set()
        for dirpath, _, filenames in os.walk(self.output_root):
            for filename in filenames:
                full = Path(dirpath) / filename
                found.add(full.relative_to(self.output_root).as_posix())
        return found

    @staticmethod
    def _check_destination(destination: str) -> str:
        path = PurePosixPath(destination)
        if not destination or path.is_absolute() or ".." in path.parts:
            raise WriteError("destination escapes the output directory", path=destination)
        return path.as_posix()

    def _stage(self, artifact: Artifact, staging: Path, existing: set[str]) -> bool:
        """Write one artifact into staging. Returns True if it was unchanged."""
        rel = self._check_destination(artifact.destination)
        target = staging / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        current = self.output_root / rel
        if rel in existing and current.is_file() and not current.is_symlink():
            if current.read_bytes() == artifact.data:
                link_or_copy(current, target)
                return True
        target.write_bytes(artifact.data)
        return False

    def _stage_all(self, artifacts: Sequence[Artifact], staging: Path, existing: set[str], report: WriteReport) -> None:
        executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="clog-write")
        try:
            futures = [(a, executor.submit(self._stage, a, staging, existing)) for a in artifacts]
            for artifact, future in futures:
                try:
                    unchanged = future.result(timeout=self.io_timeout)
                except FutureTimeoutError:
                    raise WriteError(
                        f"staging timed out after {self.io_timeout:g}s", path=artifact.destination
                    ) from None
                (report.unchanged if unchanged else report.written).append(artifact.destination)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _swap(self, staging: Path) -> None:
        """Replace the output directory with the staging directory."""
        backup = None
        if self.output_root.exists():
            if not self.output_root.is_dir():
                raise WriteError("output path exists and is not a directory", path=str(self.output_root))
            os.chmod(staging, self.output_root.stat().st_mode & 0o7777)
            backup = self.output_root.parent / (
                _sibling(self.output_root, BACKUP_MARK) + staging.name.rsplit("-", 1)[-1]
            )
            os.rename(self.output_root, backup)
        else:
            os.chmod(staging, 0o755)
        try:
            os.rename(staging, self.output_root)
        except BaseException:
            if backup is not None and not self.output_root.exists():
                os.rename(backup, self.output_root)
            raise
        if backup is not None:
            shutil.rmtree(backup, ignore_errors=True)

    def commit(self, artifacts: Sequence[Artifact], clean: bool = False) -> WriteReport:
        """Stage all artifacts, then swap them into the output directory.

        With ``clean`` the new output holds exactly this build's artifacts and
        files from earlier builds are reported as removed. Otherwise those
        files are carried over and reported as orphaned, except where the new
        build turned a file path into a directory or the reverse; those are
        dropped and reported as removed.

        Raises:
            WriteError: If staging or the swap fails. The output directory is
                left as it was.
        """
        destinations = [self._check_destination(a.destination) for a in artifacts]
        if len(set(destinations)) != len(destinations):
            raise WriteError("artifacts share a destination")

        report = WriteReport()
        self.output_root.parent.mkdir(parents=True, exist_ok=True)
        self.discard_stale()
        existing = self.existing_files()
        staging = Path(
            tempfile.mkdtemp(prefix=_sibling(self.output_root, STAGING_MARK), dir=self.output_root.parent)
        )
        try:
            self._stage_all(artifacts, staging, existing, report)
            orphans = sorted(existing - set(destinations))
            if clean:
                report.removed = orphans
            else:
                for rel in orphans:
                    if _blocked(staging, rel):
                        logger.warning("Dropping %s: the new build uses that path differently", rel)
                        report.removed.append(rel)
                        continue
                    link_or_copy(self.output_root / rel, staging / rel)
                    report.orphaned.append(rel)
            self._swap(staging)
        except OSError as e:
            raise WriteError(f"cannot write output: {e}", path=str(self.output_root)) from e
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        report.written.sort()
        report.unchanged.sort()
        logger.info(
            "Wrote %s: %d written, %d unchanged, %d removed, %d orphaned",
            self.output_root,
            len(report.written),
            len(report.unchanged),
            len(report.removed),
            len(report.orphaned),
        )
        return report


def commit(artifacts: Sequence[Artifact], output_root: Path, clean: bool = False) -> WriteReport:
    """Commit artifacts to ``output_root`` under its build lock."""
    with BuildLock(output_root):
        return OutputWriter(output_root).commit(artifacts, clean=clean)

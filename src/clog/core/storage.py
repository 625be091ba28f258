"""Document store: loads source files from the input tree."""

import fnmatch
import logging
import os
import unicodedata
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path, PurePosixPath

from pydantic import BaseModel, Field

from clog.config import SITE_CONFIG_FILENAME
from clog.core.exceptions import StorageError
from clog.core.models import BuildIssue, Document, DocumentKind

logger = logging.getLogger(__name__)

MARKDOWN_SUFFIXES = frozenset({".md", ".markdown"})
CONTENT_DIR = "content"
STATIC_DIR = "static"
TEMPLATES_DIR = "templates"


def normalize_path(path: PurePosixPath | str) -> str:
    """Normalize a relative path: POSIX separators, NFC, no dot segments."""
    parts = []
    for part in PurePosixPath(str(path).replace("\\", "/")).parts:
        if part in ("", "."):
            continue
        if part == "..":
            raise StorageError("path escapes the input root", path=str(path))
        parts.append(unicodedata.normalize("NFC", part))
    return "/".join(parts)


class LoadResult(BaseModel):
    """Documents read from the input tree plus per-file read failures."""

    documents: list[Document] = Field(default_factory=list)
    issues: list[BuildIssue] = Field(default_factory=list)


class DocumentStore:
    """Reads an input tree into immutable Document records.

    Layout::

        <input>/content/    markdown documents and passthrough files
        <input>/static/     copied verbatim to <output>/static/

    When ``content/`` is missing the input root itself is the content root.
    Hidden entries, paths matching ``ignore`` and an output directory that
    lies inside the tree are skipped.
    """

    def __init__(
        self,
        input_root: Path,
        ignore: tuple[str, ...] = (),
        concurrency: int = 4,
        io_timeout: float = 30.0,
        output_root: Path | None = None,
    ):
        self.input_root = input_root
        self.ignore = ignore
        self.output_root = output_root
        self.concurrency = concurrency
        self.io_timeout = io_timeout

    @property
    def content_root(self) -> Path:
        content = self.input_root / CONTENT_DIR
        return content if content.is_dir() else self.input_root

    @property
    def static_root(self) -> Path:
        return self.input_root / STATIC_DIR

    def _is_ignored(self, rel_path: str) -> bool:
        """Check a content-relative path against the ignore list."""
        for pattern in self.ignore:
            pattern = pattern.strip("/")
            if rel_path == pattern or rel_path.startswith(pattern + "/"):
                return True
            if fnmatch.fnmatchcase(rel_path, pattern):
                return True
        return False

    def _reserved(self, rel_path: str) -> bool:
        """Input-level entries that are never content when content/ is absent."""
        if self.content_root != self.input_root:
            return False
        top = rel_path.split("/", 1)[0]
        return top in (STATIC_DIR, TEMPLATES_DIR) or rel_path == SITE_CONFIG_FILENAME

    def _output_inside(self, root: Path) -> Path | None:
        """The output directory, if it lies strictly inside ``root``."""
        if self.output_root is None:
            return None
        output = self.output_root.resolve()
        root = root.resolve()
        if output != root and output.is_relative_to(root):
            return output
        return None

    def _walk(self, root: Path) -> list[Path]:
        """List visible files under root in sorted order."""
        output = self._output_inside(root)
        files = []
        for dirpath, dirnames, filenames in os.walk(root, onerror=self._raise_walk_error):
            dirnames[:] = sorted(
                d
                for d in dirnames
                if not d.startswith(".") and (output is None or (Path(dirpath) / d).resolve() != output)
            )
            for filename in sorted(filenames):
                if not filename.startswith("."):
                    files.append(Path(dirpath) / filename)
        return files

    @staticmethod
    def _raise_walk_error(error: OSError) -> None:
        raise StorageError(f"cannot read directory: {error.strerror}", path=error.filename)

    def discover(self) -> list[tuple[str, Path, bool]]:
        """Find candidate files as ``(relative path, full path, is_static)``.

        Raises:
            StorageError: If the content root cannot be listed.
        """
        if not self.content_root.is_dir():
            raise StorageError("input directory does not exist", path=str(self.content_root))

        found: list[tuple[str, Path, bool]] = []
        for full in self._walk(self.content_root):
            rel = normalize_path(full.relative_to(self.content_root).as_posix())
            if self._reserved(rel) or self._is_ignored(rel):
                logger.debug("Skipping %s", rel)
                continue
            found.append((rel, full, False))

        if self.static_root.is_dir():
            for full in self._walk(self.static_root):
                rel = normalize_path(full.relative_to(self.static_root).as_posix())
                found.append((f"{STATIC_DIR}/{rel}", full, True))

        return found

    @staticmethod
    def _read(rel_path: str, full: Path, is_static: bool) -> Document:
        """Read one file and classify it."""
        try:
            raw = full.read_bytes()
            mtime = full.stat().st_mtime
        except OSError as e:
            raise StorageError(f"cannot read file: {e.strerror or e}", path=rel_path) from e

        kind = DocumentKind.PASSTHROUGH
        if not is_static and full.suffix.lower() in MARKDOWN_SUFFIXES:
            try:
                raw.decode("utf-8")
                kind = DocumentKind.MARKDOWN
            except UnicodeDecodeError:
                logger.warning("%s is not valid UTF-8, copying it unchanged", rel_path)

        return Document(path=rel_path, source=full, raw=raw, mtime=mtime, kind=kind)

    def load(self) -> LoadResult:
        """Read every discovered file on a bounded worker pool.

        A file that fails to read or exceeds ``io_timeout`` is reported as an
        issue and left out; the remaining files still load.
        """
        candidates = self.discover()
        result = LoadResult()
        executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="clog-read")
        try:
            futures: list[tuple[str, Future]] = [
                (rel, executor.submit(self._read, rel, full, is_static))
                for rel, full, is_static in candidates
            ]
            for rel, future in futures:
                try:
                    result.documents.append(future.result(timeout=self.io_timeout))
                except FutureTimeoutError:
                    future.cancel()
                    error = StorageError(f"read timed out after {self.io_timeout:g}s", path=rel)
                    logger.warning("%s", error)
                    result.issues.append(BuildIssue.from_error(error))
                except StorageError as e:
                    logger.warning("%s", e)
                    result.issues.append(BuildIssue.from_error(e))
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        logger.info(
            "Loaded %d files from %s (%d unreadable)",
            len(result.documents),
            self.input_root,
            len(result.issues),
        )
        return result


def load(
    input_root: Path,
    ignore: tuple[str, ...] = (),
    concurrency: int = 4,
    io_timeout: float = 30.0,
    output_root: Path | None = None,
) -> LoadResult:
    """Load every document under ``input_root``."""
    return DocumentStore(input_root, ignore, concurrency, io_timeout, output_root).load()

"""Data models for clog."""

import datetime as dt
import re
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DATE_PREFIX_PATTERN = re.compile(r"^(\d{4}-\d{2}-\d{2})")


def _date_prefix(value: Any) -> Any:
    """Reduce datetimes and ``YYYY-MM-DD...`` strings to plain dates."""
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, str):
        match = DATE_PREFIX_PATTERN.match(value.strip())
        if match:
            return dt.date.fromisoformat(match.group(1))
    return value


def _one_or_many(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return value


class DocumentKind(str, Enum):
    """How a source file is treated by the build."""

    MARKDOWN = "markdown"
    PASSTHROUGH = "passthrough"


class Document(BaseModel):
    """A raw file loaded from the input tree."""

    model_config = ConfigDict(frozen=True)

    path: str
    source: Path
    raw: bytes
    mtime: float
    kind: DocumentKind = DocumentKind.MARKDOWN

    @property
    def name(self) -> str:
        """File stem, used to resolve wiki links."""
        return PurePosixPath(self.path).stem

    @property
    def text(self) -> str:
        return self.raw.decode("utf-8")

    @property
    def modified_date(self) -> dt.date:
        """Modification time as a UTC calendar date."""
        return dt.datetime.fromtimestamp(self.mtime, tz=dt.timezone.utc).date()


class Metadata(BaseModel):
    """Metadata extracted from document front matter.

    Unknown keys are kept as extra fields so templates can use them.
    """

    model_config = ConfigDict(extra="allow", frozen=True, coerce_numbers_to_str=True)

    type: str | None = None
    title: str | None = None
    date: dt.date | None = None
    created: dt.date | None = None
    modified: dt.date | None = None
    published: dt.date | None = None
    tags: list[str] = Field(default_factory=list)
    authors: list[str] = Field(default_factory=list)
    draft: bool = False
    link: str | None = None
    template: str | None = None
    slug: str | None = None

    @field_validator("date", "created", "modified", "published", mode="before")
    @classmethod
    def _coerce_date(cls, value: Any) -> Any:
        return _date_prefix(value)

    @field_validator("tags", "authors", mode="before")
    @classmethod
    def _coerce_list(cls, value: Any) -> Any:
        return _one_or_many(value)

    @field_validator("tags")
    @classmethod
    def _dedupe_tags(cls, value: list[str]) -> list[str]:
        return sorted({t.strip() for t in value if t.strip()})

    @property
    def extra(self) -> dict[str, Any]:
        """Front matter keys not declared by the schema."""
        return dict(self.model_extra or {})


class PostMetadata(Metadata):
    """Blog posts must carry a title and a date."""

    title: str
    date: dt.date


METADATA_SCHEMAS: dict[str, type[Metadata]] = {
    "page": Metadata,
    "post": PostMetadata,
}


class ParsedDocument(BaseModel):
    """A markdown document split into validated metadata and body."""

    model_config = ConfigDict(frozen=True)

    document: Document
    metadata: Metadata = Field(default_factory=Metadata)
    body: str
    doc_type: str
    title: str
    date: dt.date
    output_path: str
    url: str
    links: tuple[str, ...] = ()

    @property
    def path(self) -> str:
        return self.document.path

    @property
    def name(self) -> str:
        return self.document.name

    @property
    def folder(self) -> str:
        """Parent folder relative to the content root ("" for top level)."""
        parent = PurePosixPath(self.path).parent.as_posix()
        return "" if parent == "." else parent

    @property
    def template(self) -> str:
        return self.metadata.template or self.doc_type


class CollectionKind(str, Enum):
    """Ways documents are grouped into collections."""

    TAG = "tag"
    FOLDER = "folder"
    YEAR = "year"


class Collection(BaseModel):
    """A derived, ordered group of documents."""

    model_config = ConfigDict(frozen=True)

    kind: CollectionKind
    key: str
    members: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return f"{self.kind.value}:{self.key}"

    def __len__(self) -> int:
        return len(self.members)


class TargetKind(str, Enum):
    """What a render target produces its output from."""

    DOCUMENT = "document"
    COLLECTION = "collection"
    COPY = "copy"


class RenderTarget(BaseModel):
    """One source paired with one template, producing one output file."""

    model_config = ConfigDict(frozen=True)

    kind: TargetKind
    source: str
    destination: str
    template: str | None = None

    @property
    def label(self) -> str:
        if self.template:
            return f"{self.source} [{self.template}]"
        return self.source


class Artifact(BaseModel):
    """Rendered output of a target, ready to be written."""

    model_config = ConfigDict(frozen=True)

    destination: str
    data: bytes
    source: str
    warnings: tuple[str, ...] = ()


class BuildIssue(BaseModel):
    """A per-item problem recorded in the build report."""

    model_config = ConfigDict(frozen=True)

    kind: str
    path: str | None = None
    reason: str
    line: int | None = None

    @classmethod
    def from_error(cls, error: Exception, path: str | None = None) -> "BuildIssue":
        """Create an issue from a ClogError or any other exception."""
        return cls(
            kind=getattr(error, "kind", "error"),
            path=getattr(error, "path", None) or path,
            reason=getattr(error, "reason", None) or str(error),
            line=getattr(error, "line", None),
        )

    def __str__(self) -> str:
        location = self.path or "-"
        if self.line is not None:
            location = f"{location}:{self.line}"
        return f"[{self.kind}] {location}: {self.reason}"


class WriteReport(BaseModel):
    """Summary of what the output writer changed."""

    written: list[str] = Field(default_factory=list)
    unchanged: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    orphaned: list[str] = Field(default_factory=list)

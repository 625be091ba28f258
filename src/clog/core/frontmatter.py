"""Front matter parsing.

A document may start with a YAML block delimited by ``---`` lines::

    ---
    title: Hello
    tags: [python, blog]
    ---
    Body text.

The closing delimiter may also be ``...``. A document without the block has
empty metadata and its whole text as the body.
"""

import logging
import re
from collections.abc import Hashable
from typing import Any

import yaml
from pydantic import ValidationError
from yaml.constructor import ConstructorError

from clog.config import SiteConfig
from clog.core.exceptions import ParseError
from clog.core.models import METADATA_SCHEMAS, Document, Metadata, ParsedDocument
from clog.core.parser import extract_wiki_links
from clog.core.slug import output_path, url_for

logger = logging.getLogger(__name__)

OPEN_DELIMITER = "---"
CLOSE_DELIMITERS = ("---", "...")


class UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys."""

    def construct_mapping(self, node: yaml.MappingNode, deep: bool = False) -> dict:
        seen: set = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if not isinstance(key, Hashable):
                continue
            if key in seen:
                raise ConstructorError(
                    "while constructing a mapping",
                    node.start_mark,
                    f"found duplicate key {key!r}",
                    key_node.start_mark,
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


class FrontMatter:
    """Raw front matter split out of a document."""

    def __init__(self, data: dict[str, Any], body: str, lines: list[str], first_line: int):
        self.data = data
        self.body = body
        self.lines = lines
        self.first_line = first_line

    def line_of(self, key: str) -> int | None:
        """File line number (1-based) where ``key`` is declared."""
        pattern = re.compile(rf"^\s*['\"]?{re.escape(key)}['\"]?\s*:")
        for offset, line in enumerate(self.lines):
            if pattern.match(line):
                return self.first_line + offset
        return None


def split_front_matter(text: str, path: str | None = None) -> FrontMatter:
    """Split text into front matter data and body.

    Raises:
        ParseError: If the block is never closed, is not valid YAML, repeats a
            key, or is not a mapping of string keys.
    """
    text = text.removeprefix("\ufeff")
    lines = text.splitlines(keepends=True)
    if not lines or lines[0].rstrip() != OPEN_DELIMITER:
        return FrontMatter({}, text, [], 1)

    close_index = None
    for index in range(1, len(lines)):
        if lines[index].rstrip() in CLOSE_DELIMITERS:
            close_index = index
            break
    if close_index is None:
        raise ParseError("front matter opened but never closed", path=path, line=1)

    block_lines = lines[1:close_index]
    body = "".join(lines[close_index + 1 :])
    try:
        data = yaml.load("".join(block_lines), Loader=UniqueKeyLoader)
    except yaml.MarkedYAMLError as e:
        mark = e.problem_mark or e.context_mark
        line = mark.line + 2 if mark is not None else 1
        raise ParseError(f"invalid front matter: {e.problem or e}", path=path, line=line) from e
    except yaml.YAMLError as e:
        raise ParseError(f"invalid front matter: {e}", path=path, line=1) from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ParseError("front matter must be a mapping of keys to values", path=path, line=2)
    for key in data:
        if not isinstance(key, str):
            raise ParseError(f"front matter key {key!r} is not a string", path=path, line=2)

    return FrontMatter(data, body, [line.rstrip("\r\n") for line in block_lines], 2)


def validate_metadata(front_matter: FrontMatter, doc_type: str, path: str | None = None) -> Metadata:
    """Validate front matter data against the schema for ``doc_type``.

    Raises:
        ParseError: On the first value that does not fit its declared type.
    """
    schema = METADATA_SCHEMAS.get(doc_type, Metadata)
    try:
        return schema(**front_matter.data)
    except ValidationError as e:
        error = e.errors()[0]
        key = str(error["loc"][0]) if error["loc"] else None
        line = front_matter.line_of(key) if key else None
        field = ".".join(str(part) for part in error["loc"]) or "front matter"
        raise ParseError(
            f"{field}: {error['msg']} (schema '{doc_type}')",
            path=path,
            line=line or 1,
        ) from e


def parse(document: Document, site: SiteConfig) -> ParsedDocument:
    """Parse a markdown document into metadata and body.

    Missing titles fall back to the file name and missing dates to the
    file's modification date, so only ``post`` documents need them.

    Raises:
        ParseError: If the front matter is malformed or fails validation.
    """
    front_matter = split_front_matter(document.text, document.path)
    doc_type = front_matter.data.get("type") or site.default_type
    if not isinstance(doc_type, str):
        raise ParseError("type must be a string", path=document.path, line=front_matter.line_of("type"))

    metadata = validate_metadata(front_matter, doc_type, document.path)
    effective_date = metadata.modified or metadata.created or metadata.date or document.modified_date
    destination = output_path(
        document.path,
        extension=site.output_extension,
        slugify_paths=site.slugify_paths,
        slug=metadata.slug,
    )
    logger.debug("Parsed %s (%s)", document.path, doc_type)
    return ParsedDocument(
        document=document,
        metadata=metadata,
        body=front_matter.body,
        doc_type=doc_type,
        title=metadata.title or document.name,
        date=effective_date,
        output_path=destination,
        url=url_for(destination, site.base_url),
        links=tuple(extract_wiki_links(front_matter.body)),
    )

"""Slugs and output path mapping."""

import re
from pathlib import PurePosixPath
from unicodedata import normalize

from pymdownx.slugs import slugify as _md_slugify

_slugify_lower = _md_slugify(case="lower")
_REPEATED_SEPARATORS = re.compile(r"[-_\s]+")


def slugify(text: str) -> str:
    """Convert text into a URL-safe slug.

    Lowercases, transliterates to ASCII where possible, turns spaces and
    underscores into single hyphens and drops other punctuation. Text that
    transliterates to nothing is returned unchanged.

    >>> slugify("What's Up?")
    'whats-up'
    >>> slugify("foo__bar")
    'foo-bar'
    """
    ascii_text = normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    slug = _slugify_lower(ascii_text, "-")
    slug = _REPEATED_SEPARATORS.sub("-", slug).strip("-")
    return slug or text


def output_path(
    rel_path: str,
    extension: str = ".html",
    slugify_paths: bool = True,
    slug: str | None = None,
) -> str:
    """Map a content-relative source path to its output path.

    The relative layout is mirrored and the suffix swapped for ``extension``.
    A ``slug`` replaces the file stem.
    """
    path = PurePosixPath(rel_path)
    folders = list(path.parent.parts) if path.parent != PurePosixPath(".") else []
    stem = slug or path.stem
    if slugify_paths:
        folders = [slugify(part) for part in folders]
        stem = slugify(stem)
    return "/".join([*folders, stem + extension])


def url_for(path: str, base_url: str = "/") -> str:
    """Public URL of an output path; ``index`` pages map to their folder."""
    base = base_url.rstrip("/")
    name = PurePosixPath(path).name
    if name.startswith("index."):
        folder = path[: -len(name)]
        return f"{base}/{folder}"
    return f"{base}/{path}"

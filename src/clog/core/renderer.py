"""Template rendering.

Variables are looked up in an ordered list of sources and the first source
that defines a name wins:

1. loop variables of enclosing ``{% for %}`` blocks
2. the target's own metadata (document front matter, or collection fields)
3. collection context (the list folder a document belongs to)
4. site configuration

Sources 2 to 4 are chained with ``collections.ChainMap`` in that order and
Jinja2 adds its own loop scopes on top. Rendering only reads the content
graph, so targets can render in parallel, and the same inputs always
produce the same bytes.
"""

import datetime as dt
import logging
import re
import threading
import traceback
from collections import ChainMap
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from jinja2 import ChainableUndefined, StrictUndefined, TemplateError, TemplateNotFound, UndefinedError
from markupsafe import Markup

from clog.config import MissingVariablePolicy, SiteConfig
from clog.core.exceptions import RenderError
from clog.core.graph import ContentGraph
from clog.core.models import Artifact, Collection, CollectionKind, ParsedDocument, RenderTarget, TargetKind
from clog.core.parser import render_markdown
from clog.core.slug import slugify, url_for
from clog.core.templates import TemplateSet

logger = logging.getLogger(__name__)

UNDEFINED_NAME = re.compile(r"^'([^']+)' is undefined$|has no (?:attribute|element) '?([^']+?)'?$")

# Missing names seen by the render running in this thread
_thread_local = threading.local()


class FailFastUndefined(StrictUndefined):
    """Any use of a missing variable fails, except a truth test."""

    def __bool__(self) -> bool:
        return False


class WarnEmptyUndefined(ChainableUndefined):
    """Missing variables render empty and are recorded as warnings."""

    def _record(self) -> None:
        seen = getattr(_thread_local, "missing", None)
        if seen is not None:
            seen.append(self._undefined_name or self._undefined_message)

    def __str__(self) -> str:
        self._record()
        return ""

    def __iter__(self):
        self._record()
        return iter(())


UNDEFINED = {
    MissingVariablePolicy.FAIL_FAST: FailFastUndefined,
    MissingVariablePolicy.WARN_EMPTY: WarnEmptyUndefined,
}


def format_value(value: Any) -> Any:
    """Turn a value printed by ``{{ }}`` into text. Mappings are not printable."""
    if value is None:
        return ""
    if isinstance(value, Markup):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Mapping):
        raise TypeError(f"a {type(value).__name__} is not a printable value")
    if isinstance(value, (list, tuple)):
        return ", ".join(str(format_value(item)) for item in value)
    return value


def _plain(value: Any) -> Any:
    """Convert metadata values into template-friendly values."""
    if isinstance(value, dt.date):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value) if isinstance(value, (set, frozenset)) else value
        return [_plain(v) for v in items]
    return value


def document_summary(doc: ParsedDocument) -> dict[str, Any]:
    """Fields of a document that listings can show."""
    summary = _plain(doc.metadata.extra)
    summary.update(
        {
            "title": doc.title,
            "date": doc.date.isoformat(),
            "url": doc.url,
            "path": doc.path,
            "name": doc.name,
            "type": doc.doc_type,
            "tags": list(doc.metadata.tags),
            "authors": list(doc.metadata.authors),
            "draft": doc.metadata.draft,
            "link": doc.metadata.link,
        }
    )
    return summary


def collection_url(collection: Collection, site: SiteConfig) -> str:
    return url_for(collection_destination(collection, site), site.base_url)


def collection_destination(collection: Collection, site: SiteConfig) -> str:
    """Output path of a collection's listing page."""
    index = f"index{site.output_extension}"
    if collection.kind == CollectionKind.TAG:
        return f"{site.tag_prefix}/{slugify(collection.key)}/{index}"
    if collection.kind == CollectionKind.YEAR:
        return f"{site.year_prefix}/{collection.key}/{index}"
    folder = collection.key
    if site.slugify_paths and folder:
        folder = "/".join(slugify(part) for part in folder.split("/"))
    return f"{folder}/{index}" if folder else index


def collection_summary(collection: Collection, graph: ContentGraph) -> dict[str, Any]:
    return {
        "name": collection.name,
        "kind": collection.kind.value,
        "key": collection.key,
        "title": collection.key,
        "url": collection_url(collection, graph.site),
        "count": len(collection),
        "pages": [document_summary(d) for d in graph.members(collection)],
    }


def site_context(graph: ContentGraph) -> Mapping[str, Any]:
    """Global variables shared by every render of a build."""
    site = graph.site
    context: dict[str, Any] = dict(_plain(site.params))
    tags = [collection_summary(c, graph) for c in graph.collections(CollectionKind.TAG)]
    context.update(
        {
            "site": {"title": site.title, "base_url": site.base_url, "params": _plain(site.params)},
            "collections": {tag["key"]: tag["pages"] for tag in tags},
            "all_tags": tags,
            "all_years": [collection_summary(c, graph) for c in graph.collections(CollectionKind.YEAR)],
            "all_pages": [document_summary(d) for d in graph.documents()],
        }
    )
    return MappingProxyType(context)


def _template_position(error: BaseException, filenames: Mapping[str, str]) -> tuple[str | None, int | None]:
    """Innermost template frame of a render error, as (template, line)."""
    for frame in reversed(traceback.extract_tb(error.__traceback__)):
        if frame.filename in filenames:
            return filenames[frame.filename], frame.lineno
    return None, None


class Renderer:
    """Renders targets of one build against a shared, read-only graph."""

    def __init__(
        self,
        graph: ContentGraph,
        templates: TemplateSet,
        policy: MissingVariablePolicy = MissingVariablePolicy.FAIL_FAST,
    ):
        self.graph = graph
        self.templates = templates
        self.policy = policy
        self.site = site_context(graph)
        self.environment = templates.environment(UNDEFINED[policy], finalize=format_value)
        self._filenames = templates.filenames()

    def _link_url(self, name: str) -> str | None:
        doc = self.graph.resolve_link(name)
        return doc.url if doc is not None else None

    def document_context(self, doc: ParsedDocument) -> ChainMap:
        """Lookup sources for a document: page, collection, site."""
        local = _plain(doc.metadata.model_dump(exclude_none=True))
        local.update(document_summary(doc))
        local["content"] = Markup(render_markdown(doc.body, self._link_url))
        local["backlinks"] = [document_summary(self.graph.get(p)) for p in self.graph.backlinks(doc.path)]

        collection_context: dict[str, Any] = {}
        folder = self.graph.folder_collection(doc)
        if folder is not None:
            position = folder.members.index(doc.path)
            neighbours = self.graph.members(folder)
            collection_context = {
                "collection": collection_summary(folder, self.graph),
                "prev": document_summary(neighbours[position - 1]) if position > 0 else None,
                "next": document_summary(neighbours[position + 1]) if position + 1 < len(neighbours) else None,
            }
        return ChainMap(local, collection_context, self.site)

    def collection_context(self, collection: Collection) -> ChainMap:
        """Lookup sources for a collection listing: collection, site."""
        return ChainMap(collection_summary(collection, self.graph), {}, self.site)

    def _error(self, name: str, error: Exception) -> RenderError:
        """Translate a Jinja failure into a RenderError for ``name``."""
        template, line = _template_position(error, self._filenames)
        template = template or name
        where = f" on line {line}" if line else ""
        if isinstance(error, UndefinedError):
            match = UNDEFINED_NAME.search(error.message or "")
            missing = (match.group(1) or match.group(2)) if match else str(error)
            return RenderError(template, f"missing variable '{missing}'{where}", missing_variable=missing)
        if isinstance(error, TemplateNotFound):
            return RenderError(template, f"unknown partial '{error.name}'{where}")
        if isinstance(error, TypeError):
            return RenderError(template, f"type mismatch{where}: {error}", type_mismatch=str(error))
        return RenderError(template, f"{error}{where}")

    def render(self, target: RenderTarget) -> Artifact:
        """Render one target.

        Raises:
            RenderError: If the template is unknown, a partial is unknown, a
                variable is missing under fail-fast, or a value has the
                wrong type for where it is used.
        """
        if target.kind == TargetKind.COPY:
            source = self.graph.get_passthrough(target.source)
            return Artifact(destination=target.destination, data=source.raw, source=target.source)

        name = target.template or ""
        if name not in self.templates:
            raise RenderError(name, "template not found")

        if target.kind == TargetKind.DOCUMENT:
            context = self.document_context(self.graph.get(target.source))
        else:
            context = self.collection_context(self.graph.collection(target.source))

        missing: list[str] = []
        _thread_local.missing = missing
        try:
            text = self.environment.get_template(name).render(context)
        except (TemplateError, TypeError, ValueError) as e:
            raise self._error(name, e) from e
        finally:
            _thread_local.missing = None

        warnings = tuple(f"{name}: missing variable '{variable}'" for variable in missing)
        for warning in warnings:
            logger.warning("%s: %s", target.source, warning)
        logger.debug("Rendered %s", target.label)
        return Artifact(
            destination=target.destination,
            data=text.encode("utf-8"),
            source=target.source,
            warnings=warnings,
        )


def render(
    target: RenderTarget,
    graph: ContentGraph,
    templates: TemplateSet,
    policy: MissingVariablePolicy = MissingVariablePolicy.FAIL_FAST,
) -> Artifact:
    """Render a single target against ``graph``."""
    return Renderer(graph, templates, policy).render(target)

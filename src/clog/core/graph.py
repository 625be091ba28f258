"""Content graph: parsed documents plus derived collections and links.

The graph is built once, after every document has been parsed, and is
read-only afterwards so render workers can share it without locking.
"""

import logging
from collections import defaultdict
from collections.abc import Iterable, Iterator
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from clog.config import SiteConfig
from clog.core.exceptions import DanglingReferenceError, DuplicateDestinationError, GraphError
from clog.core.models import Collection, CollectionKind, Document, ParsedDocument

if TYPE_CHECKING:
    from clog.core.templates import TemplateSet

logger = logging.getLogger(__name__)

COLLECTION_KIND_ORDER = {CollectionKind.TAG: 0, CollectionKind.FOLDER: 1, CollectionKind.YEAR: 2}


def sort_documents(documents: Iterable[ParsedDocument], sort_key: str = "-date") -> list[ParsedDocument]:
    """Order documents by ``date``, ``title`` or ``path``.

    A leading ``-`` sorts descending. Ties are always broken by path,
    ascending, so the order is total.
    """
    field = sort_key.lstrip("-")
    descending = sort_key.startswith("-")
    by_path = sorted(documents, key=lambda d: d.path)
    if field == "path":
        return list(reversed(by_path)) if descending else by_path
    if field == "title":
        return sorted(by_path, key=lambda d: d.title.casefold(), reverse=descending)
    return sorted(by_path, key=lambda d: d.date, reverse=descending)


def _check_destinations(documents: list[ParsedDocument], passthrough: list[Document]) -> None:
    claimed: dict[str, list[str]] = defaultdict(list)
    for doc in documents:
        claimed[doc.output_path].append(doc.path)
    for item in passthrough:
        claimed[item.path].append(item.path)
    for destination in sorted(claimed):
        if len(claimed[destination]) > 1:
            raise DuplicateDestinationError(destination, sorted(claimed[destination]))


class ContentGraph:
    """Read-only view of the site's documents, collections and links."""

    def __init__(
        self,
        site: SiteConfig,
        documents: dict[str, ParsedDocument],
        passthrough: dict[str, Document],
        collections: dict[str, Collection],
        names: dict[str, list[str]],
        links: dict[str, tuple[str, ...]],
    ):
        self.site = site
        self._documents = documents
        self._passthrough = passthrough
        self._collections = collections
        self._names = names
        self._links = links

    @classmethod
    def build(
        cls,
        documents: Iterable[ParsedDocument],
        site: SiteConfig,
        passthrough: Iterable[Document] = (),
        templates: "TemplateSet | None" = None,
    ) -> "ContentGraph":
        """Build the graph.

        Raises:
            GraphError: On duplicate source paths, duplicate output paths,
                dangling or ambiguous wiki links, or template cycles.
        """
        docs = sorted(documents, key=lambda d: d.path)
        copies = sorted(passthrough, key=lambda d: d.path)

        seen: set[str] = set()
        for path in [d.path for d in docs] + [d.path for d in copies]:
            if path in seen:
                raise GraphError("duplicate source path", path=path)
            seen.add(path)

        _check_destinations(docs, copies)

        names: dict[str, list[str]] = defaultdict(list)
        for doc in docs:
            names[doc.name].append(doc.path)
        for name, paths in sorted(names.items()):
            if len(paths) > 1:
                logger.warning("`%s` has conflicts: %s", name, ", ".join(paths))

        by_path = {doc.path: doc for doc in docs}
        graph = cls(site, by_path, {d.path: d for d in copies}, {}, dict(names), {})
        graph._links = graph._resolve_links()
        graph._collections = graph._derive_collections()

        if templates is not None:
            templates.check_cycles()

        logger.info(
            "Content graph: %d documents, %d collections, %d links",
            len(graph._documents),
            len(graph._collections),
            sum(len(targets) for targets in graph._links.values()),
        )
        return graph

    def _candidates(self, name: str) -> list[str]:
        """Document paths a wiki link name may refer to."""
        if "/" in name:
            stem_path = name.strip("/")
            return [p for p in self._documents if PurePosixPath(p).with_suffix("").as_posix() == stem_path]
        return list(self._names.get(name, []))

    def _resolve_links(self) -> dict[str, tuple[str, ...]]:
        """Build the link edge table, failing on unresolvable references."""
        edges: dict[str, tuple[str, ...]] = {}
        for path, doc in self._documents.items():
            targets = []
            for name in doc.links:
                candidates = self._candidates(name)
                if not candidates:
                    raise DanglingReferenceError(
                        f"link to unknown document [[{name}]]", path=path, target=name
                    )
                if len(candidates) > 1:
                    raise DanglingReferenceError(
                        f"ambiguous link [[{name}]] matches {', '.join(candidates)}",
                        path=path,
                        target=name,
                    )
                targets.append(candidates[0])
            edges[path] = tuple(targets)
        return edges

    def _derive_collections(self) -> dict[str, Collection]:
        """Group documents by tag, list folder and year."""
        sort_key = self.site.collection_sort
        groups: dict[tuple[CollectionKind, str], list[ParsedDocument]] = defaultdict(list)
        list_folders = set(self.site.list_folders)
        for doc in self._documents.values():
            for tag in doc.metadata.tags:
                groups[(CollectionKind.TAG, tag)].append(doc)
            if doc.folder in list_folders:
                groups[(CollectionKind.FOLDER, doc.folder)].append(doc)
            groups[(CollectionKind.YEAR, str(doc.date.year))].append(doc)

        collections = [
            Collection(kind=kind, key=key, members=tuple(d.path for d in sort_documents(members, sort_key)))
            for (kind, key), members in groups.items()
        ]
        collections.sort(key=lambda c: (COLLECTION_KIND_ORDER[c.kind], c.key))
        return {c.name: c for c in collections}

    def documents(self) -> Iterator[ParsedDocument]:
        """Iterate over documents in path order."""
        return iter(self._documents.values())

    def passthrough(self) -> Iterator[Document]:
        """Iterate over files copied without parsing, in path order."""
        return iter(self._passthrough.values())

    def collections(self, kind: CollectionKind | None = None) -> Iterator[Collection]:
        """Iterate over collections ordered by kind, then key."""
        for collection in self._collections.values():
            if kind is None or collection.kind == kind:
                yield collection

    def get(self, path: str) -> ParsedDocument:
        """Get a document by source path. Raises KeyError if absent."""
        return self._documents[path]

    def get_passthrough(self, path: str) -> Document:
        """Get a copy-only file by source path. Raises KeyError if absent."""
        return self._passthrough[path]

    def collection(self, name: str) -> Collection:
        """Get a collection by name, e.g. ``tag:python``."""
        return self._collections[name]

    def members(self, collection: Collection) -> list[ParsedDocument]:
        """Documents of a collection, in collection order."""
        return [self._documents[p] for p in collection.members]

    def links(self, path: str) -> tuple[str, ...]:
        """Paths of documents linked from ``path``."""
        return self._links.get(path, ())

    def backlinks(self, path: str) -> list[str]:
        """Paths of documents linking to ``path``, in path order."""
        return [source for source, targets in self._links.items() if path in targets]

    def resolve_link(self, name: str) -> ParsedDocument | None:
        """Document a wiki link name refers to, if exactly one matches."""
        candidates = self._candidates(name.strip())
        if len(candidates) != 1:
            return None
        return self._documents[candidates[0]]

    def folder_collection(self, doc: ParsedDocument) -> Collection | None:
        """The list-folder collection containing ``doc``, if any."""
        return self._collections.get(f"{CollectionKind.FOLDER.value}:{doc.folder}")

    def __len__(self) -> int:
        return len(self._documents)

    def __contains__(self, path: str) -> bool:
        return path in self._documents

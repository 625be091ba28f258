"""Template loading on top of Jinja2.

A template's name is its path under the templates directory without the
suffix, e.g. ``partials/header``. Templates pull in others with
``{% include %}``, ``{% extends %}`` or ``{% import %}``; those references
must form an acyclic graph, which is checked when the set is loaded rather
than discovered by recursion at render time.
"""

import logging
import os
from collections import defaultdict, deque
from dataclasses import dataclass, field
from pathlib import Path

from jinja2 import Environment, FunctionLoader, Undefined, meta
from jinja2 import TemplateSyntaxError as JinjaSyntaxError

from clog.core.exceptions import GraphError, TemplateCycleError, TemplateSyntaxError

logger = logging.getLogger(__name__)

# Only used to parse templates at load time; rendering gets its own environment.
_PARSER = Environment(autoescape=True)


@dataclass(frozen=True)
class Template:
    """A template's text and the templates it references."""

    name: str
    text: str
    source: str | None = None
    partials: frozenset[str] = field(default=frozenset())

    @property
    def filename(self) -> str:
        """File name Jinja reports in tracebacks for this template."""
        return self.source or self.name


def parse_template(name: str, text: str, source: str | None = None) -> Template:
    """Parse template text and collect the names it references.

    Raises:
        TemplateSyntaxError: If Jinja cannot parse the text.
    """
    try:
        ast = _PARSER.parse(text, name, source)
    except JinjaSyntaxError as e:
        raise TemplateSyntaxError(e.message or "invalid template", path=name, line=e.lineno) from e

    partials = set()
    for reference in meta.find_referenced_templates(ast):
        if reference is None:
            logger.debug("Template '%s' references a computed template name", name)
        else:
            partials.add(reference)
    return Template(name=name, text=text, source=source, partials=frozenset(partials))


class TemplateSet:
    """All templates of a site, verified to be free of reference cycles."""

    def __init__(self, templates: dict[str, Template]):
        self._templates = dict(sorted(templates.items()))
        self.order = self.check_cycles()
        for template in self._templates.values():
            for partial in sorted(template.partials - self._templates.keys()):
                logger.warning("Template '%s' uses unknown partial '%s'", template.name, partial)

    @classmethod
    def load(cls, directory: Path) -> "TemplateSet":
        """Load every visible file under ``directory``.

        A missing directory yields an empty set.

        Raises:
            TemplateSyntaxError: If a template cannot be read or parsed.
            TemplateCycleError: If templates reference each other in a cycle.
        """
        templates: dict[str, Template] = {}
        if not directory.is_dir():
            logger.info("No templates directory at %s", directory)
            return cls(templates)

        for dirpath, dirnames, filenames in os.walk(directory):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            for filename in sorted(filenames):
                if filename.startswith("."):
                    continue
                path = Path(dirpath) / filename
                rel = path.relative_to(directory).with_suffix("").as_posix()
                if rel in templates:
                    raise GraphError(
                        f"template name '{rel}' is defined by more than one file",
                        path=str(path),
                    )
                try:
                    text = path.read_text(encoding="utf-8")
                except (OSError, UnicodeDecodeError) as e:
                    raise TemplateSyntaxError(f"cannot read template: {e}", path=rel) from e
                templates[rel] = parse_template(rel, text, source=str(path))

        logger.info("Loaded %d templates from %s", len(templates), directory)
        return cls(templates)

    @classmethod
    def from_strings(cls, sources: dict[str, str]) -> "TemplateSet":
        """Build a set from in-memory template texts."""
        return cls({name: parse_template(name, text) for name, text in sources.items()})

    def edges(self) -> dict[str, tuple[str, ...]]:
        """Reference edge table, restricted to templates in the set."""
        return {
            name: tuple(sorted(t.partials & self._templates.keys()))
            for name, t in self._templates.items()
        }

    def check_cycles(self) -> list[str]:
        """Topologically order templates, dependencies first.

        Raises:
            TemplateCycleError: If any template references form a cycle.
        """
        edges = self.edges()
        remaining = {name: len(targets) for name, targets in edges.items()}
        users: dict[str, list[str]] = defaultdict(list)
        for name, targets in edges.items():
            for target in targets:
                users[target].append(name)

        ready = deque(sorted(name for name, count in remaining.items() if count == 0))
        order: list[str] = []
        while ready:
            name = ready.popleft()
            order.append(name)
            for user in users[name]:
                remaining[user] -= 1
                if remaining[user] == 0:
                    ready.append(user)

        if len(order) < len(edges):
            stuck = {name for name, count in remaining.items() if count > 0}
            raise TemplateCycleError(self._find_cycle(edges, stuck))
        return order

    @staticmethod
    def _find_cycle(edges: dict[str, tuple[str, ...]], stuck: set[str]) -> list[str]:
        """Walk unresolved nodes until one repeats."""
        start = min(stuck)
        path = [start]
        seen = {start: 0}
        current = start
        while True:
            current = next(t for t in edges[current] if t in stuck)
            if current in seen:
                return path[seen[current] :] + [current]
            seen[current] = len(path)
            path.append(current)

    def _load_source(self, name: str) -> tuple[str, str, object] | None:
        template = self._templates.get(name)
        if template is None:
            return None
        return template.text, template.filename, lambda: True

    def environment(self, undefined: type[Undefined], finalize=None) -> Environment:
        """A Jinja environment that loads templates from this set."""
        return Environment(
            loader=FunctionLoader(self._load_source),
            undefined=undefined,
            finalize=finalize,
            autoescape=True,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
            auto_reload=False,
        )

    def filenames(self) -> dict[str, str]:
        """Map Jinja file names back to template names."""
        return {t.filename: name for name, t in self._templates.items()}

    def get(self, name: str) -> Template | None:
        return self._templates.get(name)

    def names(self) -> list[str]:
        return list(self._templates)

    def __contains__(self, name: str) -> bool:
        return name in self._templates

    def __len__(self) -> int:
        return len(self._templates)

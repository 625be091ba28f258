"""Error taxonomy for the build pipeline."""


class ClogError(Exception):
    """Base class for all build errors.

    ``kind`` groups errors in the build report. ``path`` is the source or
    destination path the error is about, when there is one.
    """

    kind = "error"

    def __init__(self, reason: str, path: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.path = path

    def __str__(self) -> str:
        if self.path:
            return f"{self.path}: {self.reason}"
        return self.reason


class ConfigError(ClogError):
    """Site configuration could not be loaded."""

    kind = "config"


class StorageError(ClogError):
    """Filesystem access failed or timed out."""

    kind = "io"


class ParseError(ClogError):
    """A document's front matter is malformed."""

    kind = "parse"

    def __init__(self, reason: str, path: str | None = None, line: int | None = None):
        super().__init__(reason, path)
        self.line = line

    def __str__(self) -> str:
        location = self.path or "<document>"
        if self.line is not None:
            location = f"{location}:{self.line}"
        return f"{location}: {self.reason}"


class GraphError(ClogError):
    """Structural conflict in the content graph. Always fatal."""

    kind = "graph"


class DuplicateDestinationError(GraphError):
    """Two render targets map to the same output path."""

    def __init__(self, destination: str, sources: list[str]):
        super().__init__(
            f"{len(sources)} targets write {destination}: {', '.join(sources)}",
            path=destination,
        )
        self.destination = destination
        self.sources = sources


class DanglingReferenceError(GraphError):
    """A document links to a name that resolves to no single document."""

    def __init__(self, reason: str, path: str, target: str):
        super().__init__(reason, path)
        self.target = target


class TemplateCycleError(GraphError):
    """Templates include each other in a cycle."""

    def __init__(self, cycle: list[str]):
        super().__init__(f"template cycle: {' -> '.join(cycle)}", path=cycle[0])
        self.cycle = cycle


class TemplateSyntaxError(GraphError):
    """A template could not be parsed."""

    def __init__(self, reason: str, path: str | None = None, line: int | None = None):
        super().__init__(reason, path)
        self.line = line

    def __str__(self) -> str:
        location = self.path or "<template>"
        if self.line is not None:
            location = f"{location}:{self.line}"
        return f"{location}: {self.reason}"


class RenderError(ClogError):
    """A single render target failed."""

    kind = "render"

    def __init__(
        self,
        template: str,
        reason: str,
        missing_variable: str | None = None,
        type_mismatch: str | None = None,
    ):
        super().__init__(f"template '{template}': {reason}")
        self.template = template
        self.missing_variable = missing_variable
        self.type_mismatch = type_mismatch


class WriteError(ClogError):
    """Staging or swapping output failed. Output is left untouched."""

    kind = "write"


class BuildInProgressError(WriteError):
    """Another build holds the lock for the same output directory."""

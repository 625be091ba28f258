"""Build orchestration.

A build moves through Loading, Parsing, Graphing, Rendering and Writing and
ends Done or Failed; it never moves backwards. Documents that fail to read
or parse, and targets that fail to render, are recorded in the report and
skipped. Graph, configuration and write errors fail the whole build, and a
failed build never touches the output directory.
"""

import logging
import threading
from collections import Counter
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field

from clog.config import BuildOptions, SiteConfig, load_site_config
from clog.core.exceptions import (
    ClogError,
    ConfigError,
    DuplicateDestinationError,
    GraphError,
    ParseError,
    RenderError,
    StorageError,
    WriteError,
)
from clog.core.frontmatter import parse
from clog.core.graph import ContentGraph
from clog.core.models import (
    Artifact,
    BuildIssue,
    CollectionKind,
    Document,
    DocumentKind,
    ParsedDocument,
    RenderTarget,
    TargetKind,
    WriteReport,
)
from clog.core.renderer import Renderer, collection_destination
from clog.core.storage import TEMPLATES_DIR, DocumentStore
from clog.core.templates import TemplateSet
from clog.core.writer import BuildLock, OutputWriter

logger = logging.getLogger(__name__)

COLLECTION_TEMPLATES = {
    CollectionKind.TAG: "tag",
    CollectionKind.FOLDER: "list",
    CollectionKind.YEAR: "archive",
}


class BuildStage(str, Enum):
    LOADING = "loading"
    PARSING = "parsing"
    GRAPHING = "graphing"
    RENDERING = "rendering"
    WRITING = "writing"
    DONE = "done"
    FAILED = "failed"


STAGE_ORDER = [
    BuildStage.LOADING,
    BuildStage.PARSING,
    BuildStage.GRAPHING,
    BuildStage.RENDERING,
    BuildStage.WRITING,
    BuildStage.DONE,
]


class TargetState(str, Enum):
    PENDING = "pending"
    RENDERING = "rendering"
    RENDERED = "rendered"
    FAILED = "failed"


TARGET_TRANSITIONS = {
    TargetState.PENDING: {TargetState.RENDERING},
    TargetState.RENDERING: {TargetState.RENDERED, TargetState.FAILED},
    TargetState.RENDERED: set(),
    TargetState.FAILED: set(),
}


class BuildReport(BaseModel):
    """Outcome of a build: final stage, per-item issues and writes."""

    stage: BuildStage = BuildStage.LOADING
    failed_stage: BuildStage | None = None
    error: BuildIssue | None = None
    issues: list[BuildIssue] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    targets: dict[str, TargetState] = Field(default_factory=dict)
    documents: int = 0
    write: WriteReport | None = None

    @property
    def succeeded(self) -> bool:
        return self.stage == BuildStage.DONE

    def advance(self, stage: BuildStage) -> None:
        """Move forward to ``stage``. Backward moves are a bug."""
        if self.stage == BuildStage.FAILED:
            raise RuntimeError("build already failed")
        if STAGE_ORDER.index(stage) < STAGE_ORDER.index(self.stage):
            raise RuntimeError(f"cannot move from {self.stage.value} back to {stage.value}")
        logger.info("Stage: %s", stage.value)
        self.stage = stage

    def fail(self, error: Exception | str) -> None:
        """Mark the build Failed, remembering where and why."""
        if isinstance(error, str):
            issue = BuildIssue(kind="build", reason=error)
        else:
            issue = BuildIssue.from_error(error)
        logger.error("Build failed while %s: %s", self.stage.value, issue)
        self.failed_stage = self.stage
        self.stage = BuildStage.FAILED
        self.error = issue

    def set_target(self, destination: str, state: TargetState) -> None:
        current = self.targets.get(destination)
        if current is not None and state not in TARGET_TRANSITIONS[current]:
            raise RuntimeError(f"{destination}: cannot move from {current.value} to {state.value}")
        self.targets[destination] = state

    def add_issue(self, error: Exception, path: str | None = None) -> BuildIssue:
        issue = BuildIssue.from_error(error, path)
        self.issues.append(issue)
        return issue

    def counts(self) -> Counter:
        """Issue counts per kind, including a fatal error."""
        counts = Counter(issue.kind for issue in self.issues)
        if self.error is not None:
            counts[self.error.kind] += 1
        return counts

    def targets_in(self, state: TargetState) -> list[str]:
        return sorted(d for d, s in self.targets.items() if s == state)


def plan_targets(graph: ContentGraph, templates: TemplateSet) -> list[RenderTarget]:
    """Compute every render target of a build, before any rendering.

    Collection listings are only planned when their template exists.

    Raises:
        DuplicateDestinationError: If two targets share an output path.
    """
    site = graph.site
    targets = [
        RenderTarget(kind=TargetKind.DOCUMENT, source=doc.path, destination=doc.output_path, template=doc.template)
        for doc in graph.documents()
    ]
    targets.extend(
        RenderTarget(kind=TargetKind.COPY, source=item.path, destination=item.path)
        for item in graph.passthrough()
    )

    enabled = {
        CollectionKind.TAG: site.tag_pages,
        CollectionKind.FOLDER: True,
        CollectionKind.YEAR: site.year_pages,
    }
    for kind, template in COLLECTION_TEMPLATES.items():
        collections = list(graph.collections(kind))
        if not collections or not enabled[kind]:
            continue
        if template not in templates:
            logger.info("No '%s' template, skipping %d %s pages", template, len(collections), kind.value)
            continue
        targets.extend(
            RenderTarget(
                kind=TargetKind.COLLECTION,
                source=collection.name,
                destination=collection_destination(collection, site),
                template=template,
            )
            for collection in collections
        )

    claimed: dict[str, list[str]] = {}
    for target in targets:
        claimed.setdefault(target.destination, []).append(target.source)
    for destination, sources in sorted(claimed.items()):
        if len(sources) > 1:
            raise DuplicateDestinationError(destination, sorted(sources))

    return sorted(targets, key=lambda t: t.destination)


class Builder:
    """Runs the pipeline from an input tree to an output directory."""

    def __init__(
        self,
        input_root: Path,
        output_root: Path,
        options: BuildOptions | None = None,
        site: SiteConfig | None = None,
    ):
        self.input_root = input_root
        self.output_root = output_root
        self.options = options or BuildOptions()
        self.site = site
        self.report = BuildReport()
        self._report_lock = threading.Lock()

    def _executor(self, name: str) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.options.concurrency, thread_name_prefix=f"clog-{name}")

    def load(self, site: SiteConfig) -> tuple[list[Document], list[Document]]:
        """Read the input tree, split into markdown and passthrough files."""
        store = DocumentStore(
            self.input_root,
            ignore=site.ignore,
            concurrency=self.options.concurrency,
            io_timeout=self.options.io_timeout,
            output_root=self.output_root,
        )
        loaded = store.load()
        self.report.issues.extend(loaded.issues)
        markdown = [d for d in loaded.documents if d.kind == DocumentKind.MARKDOWN]
        passthrough = [d for d in loaded.documents if d.kind == DocumentKind.PASSTHROUGH]
        return markdown, passthrough

    def parse(self, documents: Iterable[Document], site: SiteConfig) -> list[ParsedDocument]:
        """Parse documents on the worker pool; failures become issues."""
        parsed: list[ParsedDocument] = []
        executor = self._executor("parse")
        try:
            futures: list[tuple[Document, Future]] = [(d, executor.submit(parse, d, site)) for d in documents]
            for document, future in futures:
                try:
                    doc = future.result(timeout=self.options.io_timeout)
                except FutureTimeoutError:
                    error = StorageError(f"parse timed out after {self.options.io_timeout:g}s", path=document.path)
                    logger.warning("%s", error)
                    self.report.add_issue(error)
                    continue
                except ParseError as e:
                    logger.warning("Skipping %s", e)
                    self.report.add_issue(e, document.path)
                    continue
                if doc.metadata.draft and not self.options.include_drafts:
                    logger.debug("Skipping draft %s", doc.path)
                    continue
                parsed.append(doc)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return parsed

    def plan(self) -> tuple[ContentGraph, TemplateSet, list[RenderTarget]]:
        """Load, parse and graph the input, then plan all targets.

        Raises:
            ClogError: On any fatal error before rendering.
        """
        self.report.advance(BuildStage.LOADING)
        site = self.site or load_site_config(self.input_root)
        markdown, passthrough = self.load(site)

        self.report.advance(BuildStage.PARSING)
        parsed = self.parse(markdown, site)
        self.report.documents = len(parsed)

        self.report.advance(BuildStage.GRAPHING)
        templates = TemplateSet.load(self.input_root / TEMPLATES_DIR)
        graph = ContentGraph.build(parsed, site, passthrough, templates)
        targets = plan_targets(graph, templates)
        for target in targets:
            self.report.set_target(target.destination, TargetState.PENDING)
        return graph, templates, targets

    def _render_one(self, renderer: Renderer, target: RenderTarget) -> Artifact:
        with self._report_lock:
            self.report.set_target(target.destination, TargetState.RENDERING)
        return renderer.render(target)

    def _target_failed(self, target: RenderTarget, error: ClogError) -> None:
        with self._report_lock:
            if self.report.targets[target.destination] == TargetState.PENDING:
                self.report.set_target(target.destination, TargetState.RENDERING)
            self.report.set_target(target.destination, TargetState.FAILED)
        logger.warning("Failed %s: %s", target.label, error)
        self.report.add_issue(error, target.source)

    def render(self, graph: ContentGraph, templates: TemplateSet, targets: list[RenderTarget]) -> list[Artifact]:
        """Render targets on the worker pool.

        In strict mode the first failure cancels everything still queued.
        """
        renderer = Renderer(graph, templates, self.options.missing_variable_policy)
        artifacts: list[Artifact] = []
        executor = self._executor("render")
        try:
            futures = [(t, executor.submit(self._render_one, renderer, t)) for t in targets]
            for target, future in futures:
                try:
                    artifact = future.result(timeout=self.options.io_timeout)
                except FutureTimeoutError:
                    future.cancel()
                    self._target_failed(
                        target,
                        StorageError(f"render timed out after {self.options.io_timeout:g}s", path=target.source),
                    )
                except RenderError as e:
                    self._target_failed(target, e)
                else:
                    with self._report_lock:
                        self.report.set_target(target.destination, TargetState.RENDERED)
                    self.report.warnings.extend(f"{target.source}: {w}" for w in artifact.warnings)
                    artifacts.append(artifact)
                    continue

                if self.options.strict:
                    logger.error("Strict mode: cancelling remaining targets")
                    for _, pending in futures:
                        pending.cancel()
                    break
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return artifacts

    def _error_policy_violation(self) -> str | None:
        errors = len(self.report.issues)
        if self.options.strict and errors:
            return f"strict mode: {errors} error(s)"
        if self.options.max_errors is not None and errors > self.options.max_errors:
            return f"{errors} error(s) exceed the limit of {self.options.max_errors}"
        return None

    def check(self) -> BuildReport:
        """Run everything up to target planning, without rendering or writing."""
        try:
            self.plan()
            violation = self._error_policy_violation()
            if violation:
                self.report.fail(violation)
            else:
                self.report.advance(BuildStage.DONE)
        except (ConfigError, StorageError, GraphError) as e:
            self.report.fail(e)
        return self.report

    def run(self) -> BuildReport:
        """Run a full build and commit the output if the error policy allows."""
        lock = BuildLock(self.output_root)
        try:
            lock.acquire()
        except WriteError as e:
            self.report.fail(e)
            return self.report

        try:
            writer = OutputWriter(self.output_root, self.options.concurrency, self.options.io_timeout)
            writer.discard_stale()

            graph, templates, targets = self.plan()
            violation = self._error_policy_violation()
            if violation:
                self.report.fail(violation)
                return self.report

            self.report.advance(BuildStage.RENDERING)
            artifacts = self.render(graph, templates, targets)
            violation = self._error_policy_violation()
            if violation:
                self.report.fail(violation)
                return self.report

            self.report.advance(BuildStage.WRITING)
            self.report.write = writer.commit(artifacts, clean=self.options.clean)
            self.report.advance(BuildStage.DONE)
        except (ConfigError, StorageError, GraphError, WriteError) as e:
            self.report.fail(e)
        finally:
            lock.release()
        return self.report


def build(input_root: Path, output_root: Path, options: BuildOptions | None = None) -> BuildReport:
    """Build the site in ``input_root`` into ``output_root``."""
    return Builder(input_root, output_root, options).run()

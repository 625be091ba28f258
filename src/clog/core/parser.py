"""Markdown parser with wiki link support."""

import re
from typing import Callable
from xml.etree.ElementTree import Element

from markdown import Markdown
from markdown.extensions import Extension
from markdown.inlinepatterns import InlineProcessor, SimpleTagInlineProcessor


# Pattern for wiki links: [[PageName]] or [[PageName|Display Text]]
WIKI_LINK_PATTERN = r"\[\[([^\]|]+)(?:\|([^\]]+))?\]\]"

# Pattern for strikethrough: ~~text~~
# Group 2 must contain the text (SimpleTagInlineProcessor expectation)
STRIKETHROUGH_PATTERN = r"(~~)(.*?)~~"


LinkResolver = Callable[[str], str | None]


class StrikethroughExtension(Extension):
    """Markdown extension for ~~strikethrough~~ text."""

    def extendMarkdown(self, md: Markdown) -> None:
        """Add strikethrough pattern to markdown parser."""
        md.inlinePatterns.register(
            SimpleTagInlineProcessor(STRIKETHROUGH_PATTERN, "del"),
            "strikethrough",
            50,
        )


class WikiLinkInlineProcessor(InlineProcessor):
    """Inline processor for wiki links."""

    def __init__(self, pattern: str, md: Markdown, resolve: LinkResolver):
        super().__init__(pattern, md)
        self.resolve = resolve

    def handleMatch(self, m: re.Match, data: str) -> tuple[Element | None, int, int]:
        """Convert wiki link match to HTML anchor element."""
        name = m.group(1).strip()
        display_text = m.group(2)
        if display_text:
            display_text = display_text.strip()
        else:
            display_text = name

        el = Element("a")
        el.text = display_text

        url = self.resolve(name)
        if url is not None:
            el.set("href", url)
            el.set("class", "wiki-link")
        else:
            el.set("href", "#")
            el.set("class", "wiki-link wiki-link-missing")

        return el, m.start(0), m.end(0)


class WikiLinkExtension(Extension):
    """Markdown extension for wiki links."""

    def __init__(self, resolve: LinkResolver | None = None, **kwargs):
        self.resolve = resolve or (lambda name: None)
        super().__init__(**kwargs)

    def extendMarkdown(self, md: Markdown) -> None:
        """Add wiki link pattern to markdown parser."""
        wiki_link_processor = WikiLinkInlineProcessor(
            WIKI_LINK_PATTERN,
            md,
            self.resolve,
        )
        md.inlinePatterns.register(wiki_link_processor, "wiki_link", 75)


def create_parser(resolve: LinkResolver | None = None) -> Markdown:
    """Create a Markdown parser with wiki link support.

    Markdown instances keep state between conversions and are not thread
    safe, so every render gets its own.

    Args:
        resolve: Maps a linked document name to its URL, or None if the
                 name does not resolve.

    Returns:
        Configured Markdown parser instance.
    """
    return Markdown(
        extensions=[
            # Core formatting
            "extra",  # Includes: abbreviations, attr_list, def_list, fenced_code, footnotes, md_in_html, tables
            "sane_lists",  # Better list handling
            "smarty",  # Smart quotes and dashes
            "toc",  # Heading anchors
            # PyMdown extensions
            "pymdownx.tasklist",  # Task lists with checkboxes
            # Custom extensions
            StrikethroughExtension(),  # ~~strikethrough~~
            WikiLinkExtension(resolve=resolve),  # [[WikiLinks]]
        ]
    )


def render_markdown(content: str, resolve: LinkResolver | None = None) -> str:
    """Render a document body (Markdown + wiki links) to HTML.

    Args:
        content: Markdown content with wiki links.
        resolve: Maps a linked document name to its URL.

    Returns:
        HTML string.
    """
    parser = create_parser(resolve)
    return parser.convert(content)


def extract_wiki_links(content: str) -> list[str]:
    """Extract the wiki links that a render of ``content`` would produce.

    Links are collected from the markdown pass itself, so text that renders
    as code or raw HTML never yields a link.

    Args:
        content: Markdown content with wiki links.

    Returns:
        Referenced document names in the order the markdown pass meets
        them, without repeats.
    """
    names: list[str] = []

    def record(name: str) -> None:
        if name not in names:
            names.append(name)

    render_markdown(content, record)
    return names

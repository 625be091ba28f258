"""Unit tests for template rendering."""

from pathlib import Path

import pytest

from clog.config import MissingVariablePolicy, SiteConfig
from clog.core.exceptions import RenderError
from clog.core.frontmatter import parse
from clog.core.graph import ContentGraph
from clog.core.models import Collection, CollectionKind, Document, DocumentKind, RenderTarget, TargetKind
from clog.core.renderer import Renderer, collection_destination, format_value, render
from clog.core.templates import TemplateSet

MTIME = 1709640000.0


def make_doc(path, text, site):
    document = Document(path=path, source=Path("/src") / path, raw=text.encode("utf-8"), mtime=MTIME)
    return parse(document, site)


def make_graph(docs, site=None, passthrough=()):
    site = site or SiteConfig(
        title="My Blog",
        params={"author": "site-author", "color": "blue"},
        list_folders=("posts",),
    )
    parsed = [make_doc(path, text, site) for path, text in docs.items()]
    return ContentGraph.build(parsed, site, passthrough)


def doc_target(graph, path):
    doc = graph.get(path)
    return RenderTarget(kind=TargetKind.DOCUMENT, source=path, destination=doc.output_path, template=doc.template)


def render_page(template, text="---\ntitle: Hello\n---\nBody", policy=MissingVariablePolicy.FAIL_FAST, **extra):
    graph = make_graph({"posts/hello.md": text})
    templates = TemplateSet.from_strings({"page": template, **extra})
    artifact = render(doc_target(graph, "posts/hello.md"), graph, templates, policy)
    return artifact.data.decode("utf-8"), artifact


# ============================================================
# Lookup sources
# ============================================================


class TestDocumentContext:
    @pytest.fixture
    def renderer(self):
        site = SiteConfig(params={"author": "site", "color": "blue", "prev": "site-prev"}, list_folders=("posts",))
        graph = make_graph(
            {
                "posts/one.md": "---\nauthor: page\ndate: 2024-01-01\n---\n",
                "posts/two.md": "---\ndate: 2024-02-01\n---\n",
            },
            site,
        )
        return Renderer(graph, TemplateSet({}))

    def test_sources_in_order(self, renderer):
        context = renderer.document_context(renderer.graph.get("posts/one.md"))
        local, collection, site = context.maps
        assert local["author"] == "page"
        assert collection["collection"]["key"] == "posts"
        assert site["author"] == "site"

    def test_first_source_wins(self, renderer):
        context = renderer.document_context(renderer.graph.get("posts/one.md"))
        assert context["author"] == "page"
        assert context["color"] == "blue"
        assert context["prev"]["name"] == "two"

    def test_none_is_defined(self, renderer):
        context = renderer.document_context(renderer.graph.get("posts/two.md"))
        assert context["prev"] is None


class TestFormatValue:
    def test_scalars(self):
        assert format_value(None) == ""
        assert format_value(True) == "true"
        assert format_value(3) == 3

    def test_list_joined(self):
        assert format_value(["a", None, False]) == "a, , false"

    def test_mapping_rejected(self):
        with pytest.raises(TypeError):
            format_value({"a": 1})


# ============================================================
# Variables
# ============================================================


class TestVariables:
    def test_metadata_and_content(self):
        html, _ = render_page("<h1>{{ title }}</h1>{{ content }}")
        assert html.startswith("<h1>Hello</h1>")
        assert "<p>Body</p>" in html

    def test_escaped(self):
        html, _ = render_page("{{ title }}", "---\ntitle: <b>&</b>\n---\n")
        assert html == "&lt;b&gt;&amp;&lt;/b&gt;"

    def test_raw(self):
        html, _ = render_page("{{ title|safe }}", "---\ntitle: <b>x</b>\n---\n")
        assert html == "<b>x</b>"

    def test_markup_not_escaped(self):
        html, _ = render_page("{{ content }}", "**bold**")
        assert "<strong>bold</strong>" in html

    def test_literal_braces(self):
        html, _ = render_page("{% raw %}{{ title }}{% endraw %}")
        assert html == "{{ title }}"

    def test_local_beats_site(self):
        html, _ = render_page("{{ author }}/{{ color }}", "---\nauthor: page-author\n---\n")
        assert html == "page-author/blue"

    def test_site_values(self):
        html, _ = render_page("{{ site.title }} {{ site.params.author }}")
        assert html == "My Blog site-author"

    def test_list_joined(self):
        html, _ = render_page("{{ tags }}", "---\ntags: [b, a]\n---\n")
        assert html == "a, b"

    def test_bool(self):
        html, _ = render_page("{{ draft }}")
        assert html == "false"

    def test_date_iso(self):
        html, _ = render_page("{{ date }}", "---\ndate: 2024-01-02\n---\n")
        assert html == "2024-01-02"

    def test_mapping_is_type_mismatch(self):
        with pytest.raises(RenderError) as exc_info:
            render_page("{{ site }}")
        assert "dict" in exc_info.value.type_mismatch
        assert exc_info.value.kind == "render"

    def test_missing_fail_fast(self):
        with pytest.raises(RenderError) as exc_info:
            render_page("line\n{{ nope }}")
        assert exc_info.value.missing_variable == "nope"
        assert exc_info.value.template == "page"
        assert "line 2" in exc_info.value.reason

    def test_missing_attribute_fail_fast(self):
        with pytest.raises(RenderError) as exc_info:
            render_page("{{ site.nope }}")
        assert exc_info.value.missing_variable == "nope"

    def test_missing_warn_empty(self):
        html, artifact = render_page("[{{ nope }}]", policy=MissingVariablePolicy.WARN_EMPTY)
        assert html == "[]"
        assert len(artifact.warnings) == 1
        assert "nope" in artifact.warnings[0]

    def test_warn_empty_chained_attribute(self):
        html, artifact = render_page("[{{ nope.deeper }}]", policy=MissingVariablePolicy.WARN_EMPTY)
        assert html == "[]"
        assert "nope" in artifact.warnings[0]


# ============================================================
# Blocks and partials
# ============================================================


class TestBlocks:
    def test_if(self):
        html, _ = render_page("{% if draft %}D{% else %}P{% endif %}")
        assert html == "P"

    def test_if_missing_is_false(self):
        html, _ = render_page("{% if nope %}yes{% else %}no{% endif %}")
        assert html == "no"

    def test_for_over_mappings(self):
        html, _ = render_page("{% for page in all_pages %}{{ loop.index }}:{{ page.title }};{% endfor %}")
        assert html == "1:Hello;"

    def test_for_over_strings(self):
        html, _ = render_page("{% for tag in tags %}<{{ tag }}>{% endfor %}", "---\ntags: [x, y]\n---\n")
        assert html == "<x><y>"

    def test_for_empty_uses_else(self):
        html, _ = render_page("{% for tag in tags %}x{% else %}none{% endfor %}")
        assert html == "none"

    def test_for_requires_iterable(self):
        with pytest.raises(RenderError) as exc_info:
            render_page("{% for x in count %}x{% endfor %}", "---\ncount: 3\n---\n")
        assert exc_info.value.type_mismatch is not None

    def test_item_keys_do_not_hide_loop(self):
        html, _ = render_page(
            "{% for item in items %}{{ loop.index }}={{ item.loop }};{% endfor %}",
            "---\nitems:\n  - {loop: a, this: b}\n  - {loop: c}\n---\n",
        )
        assert html == "1=a;2=c;"

    def test_loop_variable_beats_local(self):
        html, _ = render_page(
            "{% for title in all_tags %}{{ title.key }}{% endfor %}|{{ title }}",
            "---\ntitle: Page\ntags: [t]\n---\n",
        )
        assert html == "t|Page"

    def test_partial(self):
        html, _ = render_page("{% include 'header' %}|{{ title }}", header="<{{ site.title }}>")
        assert html == "<My Blog>|Hello"

    def test_partial_sees_loop_variable(self):
        html, _ = render_page(
            "{% for page in all_pages %}{% include 'item' %}{% endfor %}",
            item="[{{ page.title }}]",
        )
        assert html == "[Hello]"

    def test_unknown_partial(self):
        with pytest.raises(RenderError) as exc_info:
            render_page("{% include 'nowhere' %}")
        assert "nowhere" in exc_info.value.reason

    def test_error_inside_partial_names_partial(self):
        with pytest.raises(RenderError) as exc_info:
            render_page("{% include 'header' %}", header="{{ nope }}")
        assert exc_info.value.template == "header"

    def test_unknown_template(self):
        graph = make_graph({"a.md": "---\ntemplate: wide\n---\n"})
        with pytest.raises(RenderError) as exc_info:
            render(doc_target(graph, "a.md"), graph, TemplateSet.from_strings({"page": ""}))
        assert "not found" in exc_info.value.reason


# ============================================================
# Documents in collections
# ============================================================


class TestCollectionContext:
    @pytest.fixture
    def graph(self):
        return make_graph(
            {
                "posts/one.md": "---\ntitle: One\ndate: 2024-01-01\ntags: [python]\n---\n",
                "posts/two.md": "---\ntitle: Two\ndate: 2024-02-01\ntags: [python]\n---\nSee [[one]].",
                "about.md": "---\ntitle: About\n---\n",
            }
        )

    def test_prev_next(self, graph):
        templates = TemplateSet.from_strings(
            {
                "page": "{{ collection.key }}:"
                "{% if prev %}{{ prev.title }}{% endif %}<{% if next %}{{ next.title }}{% endif %}"
            }
        )
        renderer = Renderer(graph, templates)
        assert renderer.render(doc_target(graph, "posts/two.md")).data == b"posts:<One"
        assert renderer.render(doc_target(graph, "posts/one.md")).data == b"posts:Two<"

    def test_collection_context_beats_site(self):
        site = SiteConfig(params={"prev": "site-prev", "collection": "site"}, list_folders=("posts",))
        graph = make_graph(
            {
                "posts/one.md": "---\ndate: 2024-01-01\n---\n",
                "posts/two.md": "---\ndate: 2024-02-01\n---\n",
                "about.md": "",
            },
            site,
        )
        templates = TemplateSet.from_strings({"page": "{{ prev.name }}"})
        assert render(doc_target(graph, "posts/one.md"), graph, templates).data == b"two"
        templates = TemplateSet.from_strings({"page": "{{ collection }}"})
        assert render(doc_target(graph, "about.md"), graph, templates).data == b"site"

    def test_site_collections_by_tag(self, graph):
        templates = TemplateSet.from_strings(
            {"page": "{% for page in collections.python %}{{ page.name }};{% endfor %}"}
        )
        assert render(doc_target(graph, "about.md"), graph, templates).data == b"two;one;"

    def test_document_outside_folder(self, graph):
        templates = TemplateSet.from_strings({"page": "{% if collection %}in{% else %}out{% endif %}"})
        assert render(doc_target(graph, "about.md"), graph, templates).data == b"out"

    def test_wiki_link_url(self, graph):
        templates = TemplateSet.from_strings({"page": "{{ content }}"})
        html = render(doc_target(graph, "posts/two.md"), graph, templates).data.decode()
        assert 'href="/posts/one.html"' in html

    def test_backlinks(self, graph):
        templates = TemplateSet.from_strings({"page": "{% for link in backlinks %}{{ link.title }}{% endfor %}"})
        assert render(doc_target(graph, "posts/one.md"), graph, templates).data == b"Two"

    def test_collection_page(self, graph):
        collection = graph.collection("tag:python")
        target = RenderTarget(
            kind=TargetKind.COLLECTION,
            source=collection.name,
            destination=collection_destination(collection, graph.site),
            template="tag",
        )
        templates = TemplateSet.from_strings(
            {"tag": "{{ key }}({{ count }}){% for page in pages %} {{ page.title }}{% endfor %}"}
        )
        assert render(target, graph, templates).data == b"python(2) Two One"
        assert target.destination == "tags/python/index.html"

    def test_copy_target(self):
        site = SiteConfig()
        logo = Document(path="static/logo.png", source=Path("/x"), raw=b"\x89PNG", mtime=MTIME, kind=DocumentKind.PASSTHROUGH)
        graph = make_graph({}, site, passthrough=[logo])
        target = RenderTarget(kind=TargetKind.COPY, source="static/logo.png", destination="static/logo.png")
        assert render(target, graph, TemplateSet({})).data == b"\x89PNG"

    def test_render_is_deterministic(self, graph):
        templates = TemplateSet.from_strings(
            {"page": "{{ title }}{{ content }}{% for page in all_pages %}{{ page.url }}{% endfor %}"}
        )
        first = render(doc_target(graph, "posts/two.md"), graph, templates)
        second = render(doc_target(graph, "posts/two.md"), graph, templates)
        assert first.data == second.data


class TestCollectionDestination:
    def test_kinds(self):
        site = SiteConfig()
        assert collection_destination(Collection(kind=CollectionKind.TAG, key="Web Dev"), site) == "tags/web-dev/index.html"
        assert collection_destination(Collection(kind=CollectionKind.YEAR, key="2024"), site) == "archive/2024/index.html"
        assert collection_destination(Collection(kind=CollectionKind.FOLDER, key="posts"), site) == "posts/index.html"

"""Unit tests for slugs and output paths."""

from clog.core.slug import output_path, slugify, url_for


class TestSlugify:
    def test_lowercases_and_hyphenates(self):
        assert slugify("Hello World") == "hello-world"

    def test_drops_punctuation(self):
        assert slugify("What's Up?") == "whats-up"

    def test_collapses_separators(self):
        assert slugify("foo__bar  baz") == "foo-bar-baz"

    def test_transliterates(self):
        assert slugify("Café") == "cafe"

    def test_untransliterable_kept(self):
        assert slugify("日本") == "日本"


class TestOutputPath:
    def test_mirrors_folders(self):
        assert output_path("posts/first.md") == "posts/first.html"

    def test_slugifies_parts(self):
        assert output_path("My Posts/Hello World.md") == "my-posts/hello-world.html"

    def test_keeps_names_without_slugify(self):
        assert output_path("My Posts/Hello World.md", slugify_paths=False) == "My Posts/Hello World.html"

    def test_slug_replaces_stem(self):
        assert output_path("posts/2024-01-01-x.md", slug="launch") == "posts/launch.html"

    def test_extension(self):
        assert output_path("about.md", extension=".htm") == "about.htm"


class TestUrlFor:
    def test_page(self):
        assert url_for("posts/first.html") == "/posts/first.html"

    def test_index_maps_to_folder(self):
        assert url_for("posts/index.html") == "/posts/"
        assert url_for("index.html") == "/"

    def test_base_url(self):
        assert url_for("a.html", "https://example.com/blog/") == "https://example.com/blog/a.html"

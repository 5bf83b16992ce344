import pytest

from conftest import SEED, FakeResponse, FakeSession, RecordingOutput, html_response
from offline_crawler import (
    ConfigurationError,
    Crawler,
    ExportError,
    OfflineWebsiteExporter,
    add_redirect_html_to_subfolders,
    redirect_html,
)

HOME = """<html><head><title>Home</title><base href="http://example.com/">
<link rel="stylesheet" href="/css/site.css" integrity="sha384-x" crossorigin="anonymous">
<style>body { background: url('/img/bg.png'); }</style></head>
<body>
<a href="/blog/">Blog</a>
<a href="https://other.org/x">Out</a>
<a href="/old">Old</a>
<a href="/missing">Missing</a>
<a href="#top">Top</a>
<img src="/img/logo.png" srcset="/img/logo.png 1x, /img/logo@2x.png 2x">
<div style="background-image: url(/img/hero.jpg)">hero</div>
</body></html>
"""

PNG = b"\x89PNG\r\n\x1a\nfake"


def site():
    return {
        SEED: html_response(HOME),
        "http://example.com/css/site.css": FakeResponse(
            200, "h1 { background: url(/img/bg.png) }", {"Content-Type": "text/css"}
        ),
        "http://example.com/img/logo.png": FakeResponse(200, PNG, {"Content-Type": "image/png"}),
        "http://example.com/blog/": html_response(
            '<a href="/">Home</a><a href="post.html">Post</a>'
        ),
        "http://example.com/blog/post.html": html_response('<a href="../">Up</a>'),
        "http://example.com/old": html_response("", status=301, Location="/blog/"),
    }


def crawl_and_export(settings, pages):
    output = RecordingOutput(settings)
    crawler = Crawler(settings, output=output, session=FakeSession(pages))
    crawler.run()
    out = OfflineWebsiteExporter(crawler, settings).export()
    return crawler, output, out


@pytest.fixture
def export_settings(make_settings, tmp_path):
    def _make(**kwargs):
        kwargs.setdefault("offline_export_dir", str(tmp_path / "out"))
        kwargs.setdefault("crawl_assets", ["styles", "images"])
        return make_settings(**kwargs)

    return _make


class TestExport:
    def test_files_written(self, export_settings, tmp_path):
        _, _, out = crawl_and_export(export_settings(), site())
        assert out == tmp_path / "out"
        assert (out / "index.html").is_file()
        assert (out / "css" / "site.css").is_file()
        assert (out / "img" / "logo.png").read_bytes() == PNG
        assert (out / "blog" / "index.html").is_file()
        assert (out / "blog" / "post.html").is_file()
        assert (out / "old.html").is_file()
        assert not (out / "missing.html").exists()

    def test_static_assets_fetched_with_get(self, export_settings):
        pages = site()
        session = FakeSession(pages)
        settings = export_settings()
        Crawler(settings, output=RecordingOutput(settings), session=session).run()
        assert ("GET", "http://example.com/img/logo.png") in session.requests
        assert not any(method == "HEAD" for method, _ in session.requests)

    def test_html_rewritten(self, export_settings):
        _, _, out = crawl_and_export(export_settings(), site())
        home = (out / "index.html").read_text(encoding="utf-8")
        assert 'href="css/site.css"' in home
        assert 'href="blog/index.html"' in home
        assert 'href="https://other.org/x"' in home
        assert 'href="old.html"' in home
        assert 'href="#top"' in home
        assert 'src="img/logo.png"' in home
        assert "img/logo.png 1x, img/logo@2x.png 2x" in home
        assert "url('img/bg.png')" in home
        assert "url(img/hero.jpg)" in home
        assert "<base" not in home
        assert "integrity" not in home
        assert "crossorigin" not in home

    def test_nested_pages_use_relative_depth(self, export_settings):
        _, _, out = crawl_and_export(export_settings(), site())
        blog = (out / "blog" / "index.html").read_text(encoding="utf-8")
        assert 'href="../index.html"' in blog
        assert 'href="post.html"' in blog
        post = (out / "blog" / "post.html").read_text(encoding="utf-8")
        assert 'href="../index.html"' in post

    def test_css_rewritten(self, export_settings):
        _, _, out = crawl_and_export(export_settings(), site())
        css = (out / "css" / "site.css").read_text(encoding="utf-8")
        assert css == "h1 { background: url(../img/bg.png) }"

    def test_redirect_pages(self, export_settings):
        _, _, out = crawl_and_export(export_settings(), site())
        old = (out / "old.html").read_text(encoding="utf-8")
        assert 'content="0; url=blog/index.html"' in old
        folder_redirect = (out / "blog.html").read_text(encoding="utf-8")
        assert "blog/index.html" in folder_redirect

    def test_replace_content(self, export_settings):
        _, _, out = crawl_and_export(export_settings(replace_content=["Home -> Start"]), site())
        assert "<title>Start</title>" in (out / "index.html").read_text(encoding="utf-8")

    def test_store_only_regex(self, export_settings):
        settings = export_settings(offline_export_store_only_url_regex=[r"\.css$"])
        _, _, out = crawl_and_export(settings, site())
        assert (out / "css" / "site.css").is_file()
        assert not (out / "index.html").exists()

    def test_http_does_not_overwrite_https(self, export_settings, tmp_path):
        pages = {
            "https://example.com/": html_response('<a href="http://example.com/page">p</a>'),
            "http://example.com/page": html_response("<p>plain</p>"),
        }
        (tmp_path / "out").mkdir()
        (tmp_path / "out" / "page.html").write_text("secure", encoding="utf-8")
        _, output, out = crawl_and_export(export_settings(url="https://example.com/"), pages)
        assert (out / "page.html").read_text(encoding="utf-8") == "secure"
        assert any("will not be overwritten" in n for n in output.notices)

    def test_store_error(self, export_settings, tmp_path):
        (tmp_path / "out" / "index.html").mkdir(parents=True)
        with pytest.raises(ExportError):
            crawl_and_export(export_settings(), site())

    def test_store_error_ignored(self, export_settings, tmp_path):
        (tmp_path / "out" / "index.html").mkdir(parents=True)
        _, output, out = crawl_and_export(export_settings(ignore_store_file_error=True), site())
        assert any("Cannot store file" in n for n in output.notices)
        assert (out / "css" / "site.css").is_file()

    def test_served_charset_preserved(self, export_settings):
        pages = {
            SEED: FakeResponse(
                200,
                '<html><head><title>Café</title><link rel="stylesheet" href="/site.css">'
                "</head><body><p>café</p></body></html>".encode("latin-1"),
                {"Content-Type": "text/html; charset=iso-8859-1"},
            ),
            "http://example.com/site.css": FakeResponse(
                200,
                "/* café */ h1 { background: url(/img/bg.png) }".encode("latin-1"),
                {"Content-Type": "text/css; charset=ISO-8859-1"},
            ),
        }
        crawler, _, out = crawl_and_export(export_settings(), pages)
        assert {r.url: r for r in crawler.visited_records()}[SEED].extras["Title"] == "Café"
        assert (out / "site.css").read_bytes() == b"/* caf\xe9 */ h1 { background: url(img/bg.png) }"
        home = (out / "index.html").read_bytes().decode("latin-1")
        assert "<p>caf&eacute;</p>" in home
        assert 'href="site.css"' in home

    def test_undeclared_charset_bytes_kept(self, export_settings):
        pages = {
            SEED: html_response('<link rel="stylesheet" href="/site.css"><p>x</p>'),
            "http://example.com/site.css": FakeResponse(
                200, b"/* caf\xe9 */ p { color: red }", {"Content-Type": "text/css"}
            ),
        }
        _, _, out = crawl_and_export(export_settings(), pages)
        assert (out / "site.css").read_bytes() == b"/* caf\xe9 */ p { color: red }"

    def test_requires_export_dir(self, make_settings):
        settings = make_settings()
        crawler = Crawler(settings, session=FakeSession({}))
        with pytest.raises(ConfigurationError):
            OfflineWebsiteExporter(crawler, settings)


def test_redirect_html_escapes_target():
    page = redirect_html('a"b.html')
    assert "a&quot;b.html" in page
    assert 'http-equiv="refresh"' in page


def test_subfolder_redirects(tmp_path):
    (tmp_path / "index.html").write_text("root", encoding="utf-8")
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "index.html").write_text("docs", encoding="utf-8")
    (tmp_path / "api").mkdir()
    (tmp_path / "api" / "index.html").write_text("api", encoding="utf-8")
    (tmp_path / "api.html").write_text("existing", encoding="utf-8")

    created = add_redirect_html_to_subfolders(tmp_path)
    assert created == [tmp_path / "docs.html"]
    assert (tmp_path / "api.html").read_text(encoding="utf-8") == "existing"

"""Unit tests for scrapers.utils: URL handling, HTML extraction and JSON IO."""

import orjson
import pytest

from scrapers.utils import (
    is_crawlable,
    load_records,
    normalize_url,
    parse_page,
    read_url_file,
    sanitize_filename,
    save_json,
)


class TestNormalizeUrl:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("HTTP://Example.COM/Docs/", "http://example.com/Docs"),
            ("https://example.com", "https://example.com/"),
            ("https://example.com/a#section", "https://example.com/a"),
            ("https://example.com/a?q=1", "https://example.com/a?q=1"),
            ("  https://example.com/a//  ", "https://example.com/a"),
        ],
    )
    def test_normalizes(self, raw, expected):
        assert normalize_url(raw) == expected

    @pytest.mark.parametrize(
        "raw",
        ["", "mailto:someone@example.com", "ftp://example.com/file", "/relative/only", "javascript:void(0)"],
    )
    def test_rejects_non_http(self, raw):
        assert normalize_url(raw) == ""

    def test_resolves_relative_against_base(self):
        assert normalize_url("../b/", "https://example.com/docs/a/") == "https://example.com/docs/b"

    @pytest.mark.parametrize(
        "raw",
        [
            "HTTP://Example.COM/Docs/",
            "https://example.com",
            "https://example.com/a/b/?x=1#frag",
            "https://EXAMPLE.com:8080/path",
        ],
    )
    def test_idempotent(self, raw):
        once = normalize_url(raw)
        assert normalize_url(once) == once


class TestIsCrawlable:
    def test_plain_page(self):
        assert is_crawlable("https://example.com/about")

    @pytest.mark.parametrize(
        "url",
        [
            "https://example.com/file.pdf",
            "https://example.com/img/logo.PNG",
            "https://example.com/wp-admin/options",
            "https://example.com/feed",
            "https://example.com/a#top",
            "mailto:hello@example.com",
            "ftp://example.com/x",
        ],
    )
    def test_rejects_assets_and_non_pages(self, url):
        assert not is_crawlable(url)

    def test_exclude_hosts_is_regex_and_case_insensitive(self):
        assert not is_crawlable("https://Ads.example.com/x", exclude_hosts=[r"^ads\."])
        assert is_crawlable("https://www.example.com/x", exclude_hosts=[r"^ads\."])

    def test_exclude_paths(self):
        assert not is_crawlable("https://example.com/Login/form", exclude_paths=[r"^/login"])
        assert is_crawlable("https://example.com/blog/login-tips", exclude_paths=[r"^/login"])


class TestParsePage:
    HTML = """
    <html><head><title>Refunds</title></head>
    <body>
      <nav><a href="/about">About us</a></nav>
      <main>
        <h2>Policy</h2>
        <p>Refunds are issued within thirty days.</p>
        <ul><li>Keep the receipt</li></ul>
        <a href="/contact#form">Contact</a>
        <a href="mailto:x@example.com">Mail</a>
      </main>
    </body></html>
    """

    def test_title_text_and_links(self):
        title, text, links = parse_page(self.HTML, "https://example.com/refunds")

        assert title == "Refunds"
        assert "Refunds are issued within thirty days." in text
        assert "- Keep the receipt" in text
        assert "About us" not in text
        # Navigation links still feed the frontier
        assert links == ["https://example.com/about", "https://example.com/contact"]

    def test_text_is_capped(self):
        _, text, _ = parse_page(self.HTML, "https://example.com/", max_chars=10)
        assert len(text) == 10

    def test_title_falls_back_to_h1(self):
        title, _, _ = parse_page("<html><body><h1>Heading</h1><p>Body</p></body></html>", "https://example.com/")
        assert title == "Heading"


class TestFilesAndJson:
    def test_sanitize_filename(self):
        assert sanitize_filename("https://example.com/a?b=1") == "https___example.com_a_b_1"

    def test_read_url_file_skips_blank_lines(self, tmp_path):
        path = tmp_path / "urls.txt"
        path.write_text("https://a.example.com\n\n  https://b.example.com  \n", encoding="utf-8")
        assert read_url_file(path) == ["https://a.example.com", "https://b.example.com"]

    def test_save_json_creates_parents_and_leaves_no_temp(self, tmp_path):
        path = tmp_path / "nested" / "out.json"
        save_json([{"a": 1}], path)

        assert orjson.loads(path.read_bytes()) == [{"a": 1}]
        assert not (tmp_path / "nested" / "out.json.tmp").exists()

    def test_load_records_missing_file(self, tmp_path):
        assert load_records(tmp_path / "missing.json") == []

    def test_load_records_wraps_single_object(self, tmp_path):
        path = tmp_path / "one.json"
        path.write_bytes(orjson.dumps({"a": 1}))
        assert load_records(path) == [{"a": 1}]

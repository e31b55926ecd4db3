import pytest

from linkcrawler.crawler.normalizer import (
    InvalidURLError, hostname_of, normalize_link, normalize_links, normalize_root_url
)


class TestNormalizeLink:
    def test_relative_links_resolve_against_page(self):
        assert normalize_link("index.html", "http://example.com/") == "http://example.com/index.html"
        assert normalize_link("../up", "http://example.com/a/b/c") == "http://example.com/a/up"
        assert normalize_link("/root", "https://example.com/a/b") == "https://example.com/root"

    def test_absolute_links_are_kept(self):
        assert normalize_link("https://support.com/", "http://example.com/") == "https://support.com/"

    def test_protocol_relative_link_takes_page_scheme(self):
        assert normalize_link("//cdn.example.com/x", "https://example.com/") == "https://cdn.example.com/x"

    def test_fragment_is_stripped(self):
        assert normalize_link("page#section", "http://example.com/") == "http://example.com/page"
        assert normalize_link("#top", "http://example.com/page") == "http://example.com/page"

    def test_query_is_kept(self):
        assert normalize_link("/search?q=a#r", "http://example.com/") == "http://example.com/search?q=a"

    @pytest.mark.parametrize("href", [
        "mailto:someone@example.com",
        "javascript:void(0)",
        "ftp://files.example.com/",
        "tel:+123",
    ])
    def test_non_http_schemes_are_dropped(self, href):
        assert normalize_link(href, "http://example.com/") is None

    def test_bad_port_is_dropped(self):
        assert normalize_link("http://example.com:notaport/", "http://example.com/") is None


def test_normalize_links_keeps_order_and_duplicates():
    links = normalize_links(["/a", "mailto:x@y", "/b", "/a"], "http://example.com/")
    assert links == ["http://example.com/a", "http://example.com/b", "http://example.com/a"]


class TestNormalizeRootUrl:
    def test_scheme_defaults_to_http(self):
        assert normalize_root_url("example.com") == "http://example.com"
        assert normalize_root_url("//example.com/path") == "http://example.com/path"

    def test_whitespace_and_fragment_removed(self):
        assert normalize_root_url("  https://example.com/a#frag ") == "https://example.com/a"

    @pytest.mark.parametrize("url", ["", "   ", "ftp://example.com", "http://", "http://host:bad/", 5, ["http://a.test/"]])
    def test_invalid_urls_rejected(self, url):
        with pytest.raises(InvalidURLError):
            normalize_root_url(url)

    def test_invalid_url_is_a_value_error(self):
        with pytest.raises(ValueError):
            normalize_root_url("javascript://example.com")


def test_hostname_of():
    assert hostname_of("http://Sub.Example.com:8080/x") == "sub.example.com"
    assert hostname_of("http://[::1") is None


def test_links_from_a_nested_page():
    base = "http://example.com/about"
    assert normalize_link("index.html", base) == "http://example.com/index.html"
    assert normalize_link("http://support.com/#hello", base) == "http://support.com/"

import pytest

from accessaudit.audit.urls import (
    base_domain,
    canonicalize,
    is_host_allowed,
    is_html_url,
    is_static_path,
    is_within_path_scope,
    matches_exclude_path,
    relative_path,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("HTTPS://Example.COM/Path/?utm_source=x&b=2#frag", "https://example.com/Path?b=2"),
        ("https://example.com", "https://example.com/"),
        ("https://example.com/", "https://example.com/"),
        ("http://example.com:8080/a/", "http://example.com:8080/a"),
        ("https://e.com/?a=&b=1", "https://e.com/?a=&b=1"),
        ("https://e.com/p?gclid=1&fbclid=2", "https://e.com/p"),
    ],
)
def test_canonicalize(raw, expected):
    assert canonicalize(raw) == expected


def test_canonicalize_leaves_garbage_alone():
    assert canonicalize("not a url") == "not a url"
    assert canonicalize("http://host:notaport/") == "http://host:notaport/"


def test_canonicalize_is_idempotent():
    for raw in (
        "https://Example.com/a/b/?ref=x&q=1",
        "https://ex.com/a//",
        "https://ex.com//",
        "https://ex.com:8080/x///?flag",
    ):
        once = canonicalize(raw)
        assert canonicalize(once) == once

    assert canonicalize("https://ex.com/a//") == "https://ex.com/a"
    assert canonicalize("https://ex.com//") == "https://ex.com/"


def test_relative_path():
    assert relative_path("https://e.com/a/b?x=1", "https://e.com") == "/a/b?x=1"
    assert relative_path("https://e.com", "https://e.com/start") == "/"
    assert relative_path("https://other.com/a", "https://e.com") == "https://other.com/a"


def test_html_and_static_detection():
    assert is_html_url("https://e.com/about")
    assert not is_html_url("https://e.com/sitemap_pages.html")
    assert not is_html_url("https://e.com/brochure.PDF")
    assert is_static_path("/img/logo.png")
    assert not is_static_path("/blog/post")


def test_path_scope_and_excludes():
    assert is_within_path_scope("https://e.com/docs/intro", "/docs/")
    assert is_within_path_scope("https://e.com/docs", "/docs/")
    assert not is_within_path_scope("https://e.com/blog", "/docs")

    assert matches_exclude_path("/admin/users", ["/admin/*"])
    assert matches_exclude_path("/login", ["/login"])
    assert not matches_exclude_path("/login/help", ["/login"])
    assert not matches_exclude_path("/public", ["", "/admin/*"])


def test_base_domain():
    assert base_domain("www.example.com") == "example.com"
    assert base_domain("API.example.com") == "example.com"
    assert base_domain("example.com") == "example.com"


@pytest.mark.parametrize(
    "host, policy, allowed, expected",
    [
        ("example.com", "main_only", [], True),
        ("www.example.com", "main_only", [], True),
        ("m.example.com", "main_only", [], True),
        ("blog.example.com", "main_only", [], False),
        ("blog.example.com", "all_subdomains", [], True),
        ("blog.example.com", "specific", ["blog"], True),
        ("shop.example.com", "specific", ["blog"], False),
        ("evil.com", "all_subdomains", [], False),
        ("notexample.com", "all_subdomains", [], False),
    ],
)
def test_is_host_allowed(host, policy, allowed, expected):
    assert is_host_allowed(host, "www.example.com", policy, allowed) is expected

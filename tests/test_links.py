from accessaudit.audit.links import extract_links
from accessaudit.schemas import SubdomainConfig, SubdomainPolicy

PAGE = """
<html><body>
  <a href="/about">About</a>
  <a href="contact?x=1#form">Contact</a>
  <a href="/about">About again</a>
  <a href="#top">Top</a>
  <a href="javascript:void(0)">JS</a>
  <a href="mailto:hi@example.com">Mail</a>
  <a href="tel:+123">Call</a>
  <a href="/files/report.pdf">Report</a>
  <a href="https://blog.example.com/post">Blog</a>
  <a href="https://www.example.com/team">Team</a>
  <a href="https://other.org/">Elsewhere</a>
  <a href="ftp://example.com/file">FTP</a>
  <a>No href</a>
</body></html>
"""


def test_extract_links_main_only():
    links = extract_links(PAGE, "https://example.com/en/", "https://example.com")
    assert links == [
        "https://example.com/about",
        "https://example.com/en/contact",
        "https://www.example.com/team",
    ]


def test_extract_links_with_subdomains():
    subdomain = SubdomainConfig(policy=SubdomainPolicy.ALL_SUBDOMAINS)
    links = extract_links(PAGE, "https://example.com/", "https://example.com", subdomain)
    assert "https://blog.example.com/post" in links
    assert "https://other.org/" not in links

    specific = SubdomainConfig(policy=SubdomainPolicy.SPECIFIC, allowed_subdomains=["shop"])
    assert "https://blog.example.com/post" not in extract_links(PAGE, "https://example.com/", "https://example.com", specific)


def test_extract_links_empty_html():
    assert extract_links("", "https://example.com/", "https://example.com") == []

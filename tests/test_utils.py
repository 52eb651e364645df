from datetime import datetime
from pathlib import Path, PurePosixPath

from loam.html_utils import absolutize_html_urls, inject_before_body_end, join_root_url
from loam.utils import (
    bytes_digest,
    extract_date_from_name,
    file_digest,
    first_heading,
    first_paragraph,
    is_document,
    is_hidden,
    slugify,
    titleize,
    unique,
)


def test_slugify_drops_date_prefix_and_punctuation():
    assert slugify("2024-01-15-My Post!") == "my-post"
    assert slugify("Hello, World") == "hello-world"
    assert slugify("---") == "index"


def test_titleize_uses_stem_without_date():
    assert titleize("2024-01-15-hello-world.md") == "Hello World"
    assert titleize("about_us.md") == "About Us"


def test_extract_date_from_name():
    assert extract_date_from_name("2019-03-02-hello") == datetime(2019, 3, 2)
    assert extract_date_from_name("2019-13-40-bad") is None
    assert extract_date_from_name("hello") is None


def test_first_heading_and_paragraph():
    body = "# Title\n\n![img](a.png)\n\nSome <b>bold</b>\ntext {{ x }} here.\n\nMore."
    assert first_heading(body) == "Title"
    assert first_paragraph(body) == "Some bold text here."
    assert first_paragraph("word " * 100, limit=10) == "word word "
    assert first_paragraph("# Only heading") == ""


def test_unique_keeps_first_order():
    assert unique(["b", "a", "b", "c", "a"]) == ("b", "a", "c")


def test_path_classification():
    assert is_hidden(PurePosixPath(".git/config"))
    assert is_hidden(PurePosixPath("posts/.draft.md"))
    assert not is_hidden(PurePosixPath("posts/hello.md"))
    assert is_document(PurePosixPath("a.md"))
    assert is_document(PurePosixPath("a.HTML"))
    assert not is_document(PurePosixPath("a.png"))


def test_digests_agree(tmp_path: Path):
    path = tmp_path / "f.bin"
    path.write_bytes(b"payload")
    assert file_digest(path) == bytes_digest(b"payload")


def test_join_root_url():
    assert join_root_url("", "about/") == "/about/"
    assert join_root_url("https://example.com/", "/about/") == "https://example.com/about/"


def test_absolutize_only_root_relative_urls():
    html = (
        '<a href="/about/">a</a><a href="https://x.org/">b</a>'
        '<a href="#top">c</a><img src="rel.png">'
    )
    result = absolutize_html_urls(html, "https://example.com")
    assert 'href="https://example.com/about/"' in result
    assert 'href="https://x.org/"' in result
    assert 'href="#top"' in result
    assert 'src="rel.png"' in result
    assert absolutize_html_urls(html, "") == html


def test_inject_before_body_end():
    assert inject_before_body_end("<body>x</body>", "<s>") == "<body>x<s></body>"
    assert inject_before_body_end("x", "<s>") == "x<s>"

import os
import threading

import pytest

from loam.errors import CollisionError, PublishError
from loam.output import (
    GENERATION_MARKER,
    HTML_CONTENT_TYPE,
    OutputFile,
    OutputTree,
    current_generation,
    guess_content_type,
    normalize_output_path,
    publish,
)

from .conftest import write


def make_tree(pages):
    tree = OutputTree()
    for path, html in pages.items():
        tree.add_page(path, html, f"content/{path}")
    return tree


def test_claim_twice_raises_collision():
    tree = OutputTree()
    tree.claim("about/index.html", "content/about.md")
    with pytest.raises(CollisionError) as excinfo:
        tree.claim("about/index.html", "content/about/index.md")
    assert excinfo.value.output_path == "about/index.html"
    assert excinfo.value.first == "content/about.md"
    assert excinfo.value.second == "content/about/index.md"


def test_asset_cannot_overwrite_page(tmp_path):
    tree = make_tree({"index.html": "<p>home</p>"})
    source = tmp_path / "index.html"
    source.write_text("static")
    with pytest.raises(CollisionError):
        tree.add_asset("index.html", source)


@pytest.mark.parametrize("path", ["/abs.html", "../up.html", "", "a/../../b"])
def test_invalid_output_paths(path):
    with pytest.raises(ValueError):
        normalize_output_path(path)


def test_content_types():
    assert guess_content_type("a/index.html") == HTML_CONTENT_TYPE
    assert guess_content_type("css/site.css") == "text/css"
    assert guess_content_type("blob.unknownext") == "application/octet-stream"


def test_publish_swaps_symlink(tmp_path):
    output = tmp_path / "public"
    publish(make_tree({"index.html": "one"}), output)
    first = current_generation(output)
    assert output.is_symlink()
    assert (output / "index.html").read_text() == "one"

    publish(make_tree({"index.html": "two", "new/index.html": "new"}), output)
    second = current_generation(output)
    assert second != first
    assert (output / "index.html").read_text() == "two"
    assert (output / "new" / "index.html").read_text() == "new"
    # The generation before the previous one is pruned.
    publish(make_tree({"index.html": "three"}), output)
    assert not first.exists()
    assert second.exists()


def test_publish_reuses_unchanged_files(tmp_path):
    output = tmp_path / "public"
    publish(make_tree({"same.html": "same", "diff.html": "a"}), output)
    old_inode = (output / "same.html").stat().st_ino

    stats = publish(make_tree({"same.html": "same", "diff.html": "b"}), output)

    assert stats.reused == 1
    assert stats.written == 1
    assert (output / "same.html").stat().st_ino == old_inode
    assert (output / "diff.html").read_text() == "b"


def test_publish_replaces_empty_plain_directory(tmp_path):
    output = tmp_path / "public"
    output.mkdir()

    publish(make_tree({"index.html": "fresh"}), output)

    assert output.is_symlink()
    assert (output / "index.html").read_text() == "fresh"
    assert (output / GENERATION_MARKER).is_file()


def test_publish_refuses_foreign_directory(tmp_path):
    output = tmp_path / "project"
    write(output / "content" / "hello.md", "keep me")

    with pytest.raises(PublishError, match="not published by loam"):
        publish(make_tree({"index.html": "fresh"}), output)

    assert not output.is_symlink()
    assert (output / "content" / "hello.md").read_text() == "keep me"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["project"]


def test_publish_refuses_file_destination(tmp_path):
    output = tmp_path / "public"
    output.write_text("not a directory")
    with pytest.raises(PublishError):
        publish(make_tree({"index.html": "x"}), output)
    assert output.read_text() == "not a directory"


def test_prune_leaves_unmarked_lookalikes(tmp_path):
    lookalike = tmp_path / ".public.backup"
    write(lookalike / "notes.txt", "mine")
    output = tmp_path / "public"
    for text in ("one", "two", "three"):
        publish(make_tree({"index.html": text}), output)
    assert (lookalike / "notes.txt").read_text() == "mine"


def test_output_file_needs_exactly_one_payload(tmp_path):
    with pytest.raises(ValueError):
        OutputFile(content_type="text/plain")
    with pytest.raises(ValueError):
        OutputFile(content_type="text/plain", content=b"x", source=tmp_path / "x")


def test_readers_never_see_mixed_generations(tmp_path):
    output = tmp_path / "public"
    generations = [
        {f"gen{i}-{k}.html": f"{i}-{k}" for k in range(5)} for i in range(20)
    ]
    expected = [set(files) for files in generations]
    publish(make_tree(generations[0]), output)

    listings = []
    errors = []
    stop = threading.Event()

    def reader():
        while not stop.is_set():
            try:
                names = set(os.listdir(output)) - {GENERATION_MARKER}
            except OSError as exc:
                errors.append(exc)
                continue
            listings.append(names)

    thread = threading.Thread(target=reader, daemon=True)
    thread.start()
    try:
        for files in generations[1:]:
            publish(make_tree(files), output)
    finally:
        stop.set()
        thread.join(timeout=5)

    assert errors == []
    assert listings
    for names in listings:
        assert names in expected
    assert set(os.listdir(output)) - {GENERATION_MARKER} == expected[-1]


def test_failed_publish_keeps_previous_tree(tmp_path, monkeypatch):
    output = tmp_path / "public"
    publish(make_tree({"index.html": "good"}), output)
    before = sorted(p.name for p in tmp_path.iterdir())

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", broken_replace)
    with pytest.raises(OSError, match="disk full"):
        publish(make_tree({"index.html": "bad"}), output)

    assert (output / "index.html").read_text() == "good"
    assert sorted(p.name for p in tmp_path.iterdir()) == before

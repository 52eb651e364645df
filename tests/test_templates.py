from datetime import datetime

import pytest

from loam.content import Page
from loam.errors import TemplateError
from loam.renderers import Heading
from loam.templates import (
    TemplateEngine,
    TemplateRegistry,
    parse_template,
    render_toc,
    template_name,
)

from .conftest import BASE_LAYOUT, SINGLE_LAYOUT


def make_registry(**sources):
    return TemplateRegistry(
        parse_template(name.replace("__", "/"), source) for name, source in sources.items()
    )


def make_page(**overrides):
    values = dict(
        title="Hello",
        url="/hello/",
        permalink="/hello/",
        date=datetime(2024, 1, 15),
        content="<p>Hello, Paste!</p>",
        summary="",
        section="",
        slug="hello",
        kind="page",
    )
    values.update(overrides)
    return Page(**values)


def test_template_name_strips_suffixes():
    assert template_name("posts/single.html.jinja") == "posts/single"
    assert template_name("base.jinja") == "base"
    assert template_name("/partials/nav.html") == "partials/nav"


def test_parse_template_finds_parent_and_blocks():
    template = parse_template("single", SINGLE_LAYOUT)
    assert template.parent == "base"
    assert template.blocks == {"title", "main"}


def test_parse_template_rejects_dynamic_extends():
    with pytest.raises(TemplateError, match="string literal"):
        parse_template("x", "{% extends parent_name %}")


def test_parse_template_reports_syntax_errors():
    with pytest.raises(TemplateError, match="syntax error") as excinfo:
        parse_template("broken", "{% block %}")
    assert excinfo.value.template == "broken"


def test_registry_rejects_missing_parent():
    with pytest.raises(TemplateError, match="unknown template 'nowhere'"):
        make_registry(child='{% extends "nowhere" %}')


def test_registry_rejects_cycles():
    with pytest.raises(TemplateError, match="cycle"):
        make_registry(
            a='{% extends "b" %}',
            b='{% extends "c" %}',
            c='{% extends "a" %}',
        )


def test_registry_rejects_self_extension():
    with pytest.raises(TemplateError, match="a -> a"):
        make_registry(a='{% extends "a" %}')


def test_registry_rejects_duplicates():
    with pytest.raises(TemplateError, match="defined twice"):
        TemplateRegistry([parse_template("a", "x"), parse_template("a", "y")])


def test_effective_blocks_prefer_descendants():
    registry = make_registry(base=BASE_LAYOUT, single=SINGLE_LAYOUT)
    assert [t.name for t in registry.chain("single")] == ["single", "base"]
    assert registry.effective_blocks("single") == {
        "title": "single",
        "main": "single",
        "footer": "base",
    }


def test_render_merges_child_blocks_into_parent():
    registry = make_registry(base=BASE_LAYOUT, single=SINGLE_LAYOUT)
    html = TemplateEngine(registry).render_page(make_page())
    assert "Base Nav" in html
    assert "Base Footer" in html
    assert "<title>Hello</title>" in html
    assert "<article><p>Hello, Paste!</p></article>" in html


def test_layout_resolution_order():
    engine = TemplateEngine(
        make_registry(single="s", posts__single="ps", _default__list="dl", index="i")
    )
    assert engine.resolve_layout("posts", "page", None) == "posts/single"
    assert engine.resolve_layout("notes", "page", None) == "single"
    assert engine.resolve_layout("notes", "list", None) == "_default/list"
    assert engine.resolve_layout("", "page", None, home=True) == "index"
    assert engine.resolve_layout("posts", "page", "single") == "posts/single"


def test_missing_explicit_layout_is_an_error():
    engine = TemplateEngine(make_registry(single="s"))
    with pytest.raises(TemplateError, match="layout not found"):
        engine.resolve_layout("", "page", "fancy")


def test_page_without_layout_renders_bare_content():
    engine = TemplateEngine(TemplateRegistry())
    assert engine.render_page(make_page()) == "<p>Hello, Paste!</p>"


def test_missing_include_is_template_error():
    engine = TemplateEngine(make_registry(single='{% include "partials/nav" %}'))
    with pytest.raises(TemplateError, match="partials/nav"):
        engine.render_page(make_page())


def test_url_for_and_globals():
    engine = TemplateEngine(
        make_registry(single="{{ url_for('/about/') }} {{ site }}"),
        globals={"site": "S"},
        base_url="https://example.com",
    )
    assert engine.render_page(make_page()) == "https://example.com/about/ S"
    assert engine.url_for("https://other.org/x") == "https://other.org/x"


def test_titles_are_escaped():
    engine = TemplateEngine(make_registry(single="{{ page.title }}"))
    assert engine.render_page(make_page(title="<b>")) == "&lt;b&gt;"


def test_render_toc_nests_levels():
    page = make_page(
        toc=(
            Heading("intro", "Intro", 2),
            Heading("detail", "Detail & more", 3),
            Heading("end", "End", 2),
        )
    )
    assert str(render_toc(page)) == (
        '<ul><li><a href="#intro">Intro</a>'
        '<ul><li><a href="#detail">Detail &amp; more</a></li></ul>'
        '</li><li><a href="#end">End</a></li></ul>'
    )

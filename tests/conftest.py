from pathlib import Path

import pytest

BASE_LAYOUT = (
    "<html><head><title>{% block title %}Site{% endblock %}</title></head>"
    "<body><nav>Base Nav</nav>{% block main %}{% endblock %}"
    "<footer>{% block footer %}Base Footer{% endblock %}</footer></body></html>"
)
SINGLE_LAYOUT = (
    '{% extends "base" %}'
    "{% block title %}{{ page.title }}{% endblock %}"
    "{% block main %}<article>{{ page_content }}</article>{% endblock %}"
)


def write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def create_project(root: Path) -> Path:
    write(root / "layouts" / "base.html.jinja", BASE_LAYOUT)
    write(root / "layouts" / "single.html.jinja", SINGLE_LAYOUT)
    write(
        root / "content" / "hello.md",
        "---\ntitle: Hello\ndate: 2024-01-15\ntags: [intro]\n---\nHello, Paste!\n",
    )
    write(
        root / "content" / "secret.md",
        "---\ntitle: Secret\ndate: 2024-01-16\ndraft: true\n---\nNot yet.\n",
    )
    write(root / "static" / "css" / "site.css", "body { color: black; }\n")
    return root


@pytest.fixture
def project(tmp_path: Path) -> Path:
    return create_project(tmp_path / "project")

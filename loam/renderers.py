"""Body renderers for Loam documents.

Each renderer turns one kind of document body into HTML. The builder asks
the registry for the renderer matching a source path.

Key classes:
- Heading: A heading collected for the table of contents.
- MarkdownRenderer: Markdown to HTML with anchors and Pygments highlighting.
- HTMLRenderer: Passes HTML bodies through unchanged.
- RendererRegistry: Picks the renderer for a path.
"""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass
from pathlib import PurePath

import mistune
from markupsafe import escape
from pygments import highlight
from pygments.formatters import HtmlFormatter
from pygments.lexers import get_lexer_by_name
from pygments.util import ClassNotFound

from .utils import is_html_document, is_markdown


@dataclass(frozen=True)
class Heading:
    """A heading extracted from a document for TOC generation.

    Attributes:
        id: Anchor ID for the heading.
        text: Heading text.
        level: Heading level (1-6).
    """

    id: str
    text: str
    level: int


def generate_heading_id(text: str) -> str:
    """Generate an anchor ID from heading text."""
    slug = re.sub(r"<[^>]+>", "", text).lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[-\s]+", "-", slug)
    return slug.strip("-") or "section"


def rewrite_resource_path(src: str, folder: str) -> str:
    """Resolve a relative resource reference against the document's folder.

    Page resources are published next to the document source, so a relative
    ``img.png`` in ``content/posts/hello.md`` becomes ``/posts/img.png``.
    Absolute, external and templated references are left alone.
    """
    if not src or src.startswith(("http://", "https://", "//", "/", "#", "data:")) or "{{" in src:
        return src
    return posixpath.normpath(posixpath.join("/", folder, src))


class _HighlightRenderer(mistune.HTMLRenderer):
    """mistune renderer adding heading anchors, highlighting and image rewriting."""

    def __init__(self, folder: str):
        super().__init__(escape=False)
        self.folder = folder
        self.headings: list[Heading] = []
        self._heading_id_counts: dict[str, int] = {}

    def heading(self, text: str, level: int, **attrs) -> str:
        base_id = generate_heading_id(text)
        if base_id in self._heading_id_counts:
            self._heading_id_counts[base_id] += 1
            heading_id = f"{base_id}-{self._heading_id_counts[base_id]}"
        else:
            self._heading_id_counts[base_id] = 0
            heading_id = base_id
        plain = re.sub(r"<[^>]+>", "", text)
        self.headings.append(Heading(id=heading_id, text=plain, level=level))
        return f'<h{level} id="{heading_id}">{text}</h{level}>\n'

    def image(self, text: str, url: str, title: str | None = None) -> str:
        return super().image(text, rewrite_resource_path(url, self.folder), title)

    def block_code(self, code: str, info: str | None = None) -> str:
        language = info.split()[0] if info and info.strip() else None
        if language:
            try:
                lexer = get_lexer_by_name(language, stripall=True)
            except ClassNotFound:
                lexer = None
            if lexer is not None:
                formatter = HtmlFormatter(nowrap=False, cssclass="highlight")
                return highlight(code, lexer, formatter)
        lang_class = f' class="language-{escape(language)}"' if language else ""
        return f"<pre><code{lang_class}>{escape(code)}</code></pre>\n"


class MarkdownRenderer:
    """Renders Markdown bodies to HTML and collects headings."""

    source_type = "markdown"
    plugins = ["strikethrough", "footnotes", "table", "url"]

    def can_render(self, path: PurePath) -> bool:
        return is_markdown(path)

    def render(self, content: str, folder: str) -> tuple[str, list[Heading]]:
        """Render Markdown content to HTML.

        Args:
            content: Markdown source.
            folder: Content folder of the document, for resource paths.

        Returns:
            Tuple of (rendered HTML, list of headings).
        """
        renderer = _HighlightRenderer(folder)
        markdown = mistune.create_markdown(renderer=renderer, plugins=self.plugins)
        return markdown(content), renderer.headings


class HTMLRenderer:
    """Passes HTML bodies through unchanged."""

    source_type = "html"

    def can_render(self, path: PurePath) -> bool:
        return is_html_document(path)

    def render(self, content: str, folder: str) -> tuple[str, list[Heading]]:
        return content, []


class RendererRegistry:
    """Ordered registry of body renderers."""

    def __init__(self):
        self._renderers: list = []
        self.register(MarkdownRenderer())
        self.register(HTMLRenderer())

    def register(self, renderer) -> None:
        self._renderers.append(renderer)

    def get_renderer(self, path: PurePath):
        """Return the first renderer that accepts ``path``, or None."""
        for renderer in self._renderers:
            if renderer.can_render(path):
                return renderer
        return None


default_renderer_registry = RendererRegistry()


def pygments_css(style: str = "default") -> str:
    """Return Pygments CSS rules for the ``.highlight`` class."""
    return HtmlFormatter(style=style).get_style_defs(".highlight")

"""Template registry and rendering engine for Loam.

Layouts live under ``layouts/`` and are Jinja2 templates. Each file becomes a
``Template`` named after its path without the suffix (``single``,
``posts/single``, ``partials/header``). Inheritance via ``{% extends %}`` is
recorded as an explicit parent graph in ``TemplateRegistry``, which is
validated once when the registry is built.

Key classes:
- Template: A parsed layout with its blocks and parent reference.
- TemplateRegistry: Indexed, validated parent graph of all templates.
- TemplateEngine: Jinja2 environment bound to a registry; resolves layouts
  for pages and renders them.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from jinja2 import (
    Environment,
    FunctionLoader,
    StrictUndefined,
    TemplateNotFound,
    TemplateSyntaxError,
    nodes,
)
from markupsafe import Markup, escape

from .errors import TemplateError
from .html_utils import join_root_url
from .renderers import Heading, pygments_css

if TYPE_CHECKING:
    from .content import Page

__all__ = [
    "LAYOUT_SUFFIXES",
    "Template",
    "TemplateEngine",
    "TemplateRegistry",
    "parse_template",
    "render_toc",
    "template_name",
]

LAYOUT_SUFFIXES = (".html.jinja", ".jinja", ".html")

_parse_env = Environment()


def template_name(reference: str) -> str:
    """Normalize a layout file path or ``extends`` target to a template name.

    Examples:
        >>> template_name("posts/single.html.jinja")
        'posts/single'
    """
    name = reference.replace("\\", "/").strip("/")
    for suffix in LAYOUT_SUFFIXES:
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name


@dataclass(frozen=True)
class Template:
    """A parsed layout.

    Attributes:
        name: Registry name (path under ``layouts/`` without suffix).
        source: Jinja2 source text.
        blocks: Names of the blocks this template defines or overrides.
        parent: Name of the template it extends, if any.
        path: File the template was loaded from.
    """

    name: str
    source: str
    blocks: frozenset[str]
    parent: str | None = None
    path: Path | None = None


def parse_template(name: str, source: str, path: Path | None = None) -> Template:
    """Parse a template's source to find its blocks and parent.

    Raises:
        TemplateError: Syntax error, more than one ``extends``, or an
            ``extends`` whose target is not a string literal.
    """
    try:
        tree = _parse_env.parse(source, name=name, filename=str(path) if path else None)
    except TemplateSyntaxError as exc:
        raise TemplateError(
            f"syntax error on line {exc.lineno}: {exc.message}", name
        ) from exc

    extends = list(tree.find_all(nodes.Extends))
    if len(extends) > 1:
        raise TemplateError("extends more than one template", name)
    parent = None
    if extends:
        target = extends[0].template
        if not isinstance(target, nodes.Const) or not isinstance(target.value, str):
            raise TemplateError("extends target must be a string literal", name)
        parent = template_name(target.value)

    blocks = frozenset(block.name for block in tree.find_all(nodes.Block))
    return Template(name=name, source=source, blocks=blocks, parent=parent, path=path)


class TemplateRegistry:
    """All templates of a build, with their parent graph validated.

    Templates are stored in a list; ``_parents[i]`` is the index of template
    ``i``'s parent or None. Validation runs once, at construction.

    Raises:
        TemplateError: Duplicate names, a missing parent, or a cycle.
    """

    def __init__(self, templates: Iterable[Template] = ()):
        self._templates: list[Template] = []
        self._index: dict[str, int] = {}
        for template in templates:
            if template.name in self._index:
                other = self._templates[self._index[template.name]]
                raise TemplateError(
                    f"defined twice ({other.path} and {template.path})", template.name
                )
            self._index[template.name] = len(self._templates)
            self._templates.append(template)

        self._parents: list[int | None] = []
        for template in self._templates:
            if template.parent is None:
                self._parents.append(None)
            elif template.parent not in self._index:
                raise TemplateError(
                    f"extends unknown template '{template.parent}'", template.name
                )
            else:
                self._parents.append(self._index[template.parent])
        self._check_acyclic()

    def _check_acyclic(self) -> None:
        # 0 = unvisited, 1 = on the current chain, 2 = known to terminate
        state = [0] * len(self._templates)
        for start in range(len(self._templates)):
            chain: list[int] = []
            node = start
            while node is not None and state[node] == 0:
                state[node] = 1
                chain.append(node)
                node = self._parents[node]
            if node is not None and state[node] == 1:
                cycle = chain[chain.index(node) :] + [node]
                names = " -> ".join(self._templates[i].name for i in cycle)
                raise TemplateError(f"extends cycle: {names}", self._templates[node].name)
            for visited in chain:
                state[visited] = 2

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and template_name(name) in self._index

    def __iter__(self) -> Iterator[Template]:
        return iter(self._templates)

    def __len__(self) -> int:
        return len(self._templates)

    def names(self) -> list[str]:
        return [template.name for template in self._templates]

    def get(self, name: str) -> Template | None:
        index = self._index.get(template_name(name))
        return None if index is None else self._templates[index]

    def chain(self, name: str) -> list[Template]:
        """Return the extension chain from ``name`` up to its root template."""
        index = self._index.get(template_name(name))
        if index is None:
            raise TemplateError("unknown template", name)
        result: list[Template] = []
        current: int | None = index
        while current is not None:
            result.append(self._templates[current])
            current = self._parents[current]
        return result

    def effective_blocks(self, name: str) -> dict[str, str]:
        """Map each block visible in ``name`` to the template that fills it.

        Blocks are resolved outermost-first: the root defines the regions and
        each descendant overrides the ones it redefines.
        """
        owners: dict[str, str] = {}
        for template in reversed(self.chain(name)):
            for block in template.blocks:
                owners[block] = template.name
        return owners


def render_toc(page: Page) -> Markup:
    """Render a page's headings as a nested ``<ul>`` table of contents."""
    return _render_toc_from_headings(page.toc)


def _render_toc_from_headings(headings: Iterable[Heading]) -> Markup:
    html_parts: list[str] = []
    level_stack: list[int] = []

    for heading in headings:
        level = heading.level
        while level_stack and level_stack[-1] > level:
            level_stack.pop()
            html_parts.append("</li></ul>")

        if level_stack and level_stack[-1] == level:
            html_parts.append("</li>")
        else:
            html_parts.append("<ul>")
            level_stack.append(level)

        html_parts.append(f'<li><a href="#{escape(heading.id)}">{escape(heading.text)}</a>')

    while level_stack:
        level_stack.pop()
        html_parts.append("</li></ul>")

    return Markup("".join(html_parts))


class TemplateEngine:
    """Jinja2 rendering bound to a validated ``TemplateRegistry``.

    The registry is the only template source: the Jinja loader looks names
    up in it, so ``{% extends "base" %}`` and ``{% include
    "partials/header.html" %}`` resolve through the same normalization as
    layout names.

    Attributes:
        registry: Templates available to this engine.
        globals: Values exposed to every template (``site``, ``data``, ...).
        base_url: Base URL used by ``url_for``.
        default_layout: Layout kind for regular pages.
    """

    def __init__(
        self,
        registry: TemplateRegistry,
        globals: dict[str, Any] | None = None,
        base_url: str = "",
        default_layout: str = "single",
    ):
        self.registry = registry
        self.base_url = base_url
        self.default_layout = default_layout
        self.env = Environment(
            loader=FunctionLoader(self._load),
            autoescape=True,
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )
        self.env.globals.update(globals or {})
        self.env.globals["url_for"] = self.url_for
        self.env.globals["render_toc"] = render_toc
        self.env.globals["pygments_css"] = pygments_css

    def _load(self, name: str):
        template = self.registry.get(name)
        if template is None:
            return None
        filename = str(template.path) if template.path else None
        return template.source, filename, lambda: True

    def url_for(self, path: str) -> str:
        """Return a site URL for ``path``, prefixed with the base URL if set."""
        if path.startswith(("http://", "https://", "//")):
            return path
        return join_root_url(self.base_url, path)

    def layout_candidates(
        self, section: str, kind: str, layout: str | None, home: bool = False
    ) -> list[str]:
        """List layout names to try, most specific first.

        The home page tries ``index`` before the conventional chain.
        """
        if layout:
            candidates = [layout]
            if section:
                candidates.insert(0, f"{section}/{layout}")
            return candidates

        kinds = [kind]
        if kind != self.default_layout:
            kinds.append(self.default_layout)
        candidates = ["index"] if home else []
        for name in kinds:
            if section:
                candidates.append(f"{section}/{name}")
            candidates.extend([name, f"_default/{name}"])
        candidates.append("default")
        return candidates

    def resolve_layout(
        self, section: str, kind: str, layout: str | None, home: bool = False
    ) -> str | None:
        """Pick the layout for a page.

        Returns:
            Template name, or None when no conventional layout exists.

        Raises:
            TemplateError: An explicitly requested layout does not exist.
        """
        for candidate in self.layout_candidates(section, kind, layout, home):
            if candidate in self.registry:
                return template_name(candidate)
        if layout:
            raise TemplateError("layout not found", layout)
        return None

    def render(self, name: str, context: dict[str, Any]) -> str:
        """Render the named template with ``context``.

        Raises:
            TemplateError: The template, or something it includes, is missing.
        """
        try:
            return self.env.get_template(name).render(**context)
        except TemplateNotFound as exc:
            raise TemplateError(f"template '{exc.name}' not found", name) from exc

    def render_page(self, page: Page, context: dict[str, Any] | None = None) -> str:
        """Render a page's content into its layout.

        Without a layout the page content is returned as is.
        """
        name = self.resolve_layout(page.section, page.kind, page.layout, page.url == "/")
        if name is None:
            return page.content
        values = dict(context or {})
        values.update(page=page, page_content=Markup(page.content))
        return self.render(name, values)

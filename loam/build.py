"""Site building for Loam.

This module turns documents and templates into an ``OutputTree`` and
publishes it.

Key functions:
- load_config: Loads site configuration from loam.yaml.
- load_data: Loads YAML data files exposed to templates.
- build: Renders documents with a template registry into an output tree.
- build_site: Runs the whole pipeline for a project directory.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from jinja2 import TemplateSyntaxError
from markupsafe import Markup

from .collections import PageCollection, Taxonomy
from .content import ContentStore, Document, Page
from .errors import BuildError, ParseError, PublishError, TemplateError
from .html_utils import absolutize_html_urls, join_root_url
from .output import OutputTree, WriteStats, publish
from .renderers import RendererRegistry, default_renderer_registry
from .templates import Template, TemplateEngine, TemplateRegistry

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "loam.yaml"

DEFAULT_CONFIG: dict[str, Any] = {
    "title": "",
    "base_url": "",
    "output_dir": "public",
    "default_layout": "single",
    "host": "0.0.0.0",
    "port": 1313,
    "workers": None,
    "params": {},
}

TAXONOMIES = ("tags", "categories")


@dataclass(frozen=True)
class BuildOptions:
    """Settings of one build.

    Attributes:
        output_dir: Destination root of the published tree.
        include_drafts: Whether draft documents are emitted.
        base_url: Base URL for absolute links; empty keeps links root-relative.
        default_layout: Layout kind used for regular pages.
        title: Site title exposed to templates.
        workers: Thread pool size for rendering (None: executor default).
        params: Free-form site parameters exposed as ``site.params``.
    """

    output_dir: Path
    include_drafts: bool = False
    base_url: str = ""
    default_layout: str = "single"
    title: str = ""
    workers: int | None = None
    params: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class BuildContext:
    """Explicit state shared by every render of a build."""

    registry: TemplateRegistry
    engine: TemplateEngine
    options: BuildOptions
    renderers: RendererRegistry


@dataclass
class BuildResult:
    """Result of a build.

    Attributes:
        pages: Rendered document pages, sorted by URL.
        tree: The output tree.
        output_dir: Where the tree is (or will be) published.
        skipped: Documents skipped because they failed to parse.
        stats: Write statistics once published.
    """

    pages: list[Page]
    tree: OutputTree
    output_dir: Path
    skipped: list[ParseError] = field(default_factory=list)
    stats: WriteStats | None = None


def load_config(project_root: Path) -> dict[str, Any]:
    """Load site configuration from loam.yaml with defaults applied."""
    config = dict(DEFAULT_CONFIG)
    config_path = project_root / CONFIG_FILENAME
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if isinstance(loaded, dict):
            config.update(loaded)
        else:
            logger.warning("Ignoring %s: expected a mapping", config_path)
    return config


def load_data(project_root: Path) -> dict[str, Any]:
    """Load YAML files from ``data/``.

    ``site.yaml`` is merged at the top level; every other file is stored
    under its stem.
    """
    data_dir = project_root / "data"
    data: dict[str, Any] = {}
    if not data_dir.exists():
        return data
    for path in sorted([*data_dir.glob("*.yaml"), *data_dir.glob("*.yml")]):
        with open(path, encoding="utf-8") as f:
            payload = yaml.safe_load(f)
        if path.stem == "site" and isinstance(payload, dict):
            data.update(payload)
        elif payload is not None:
            data[path.stem] = payload
    return data


def _format_error_message(exc: Exception) -> str:
    error_type = type(exc).__name__
    if error_type == "UndefinedError":
        return f"Undefined variable: {exc}"
    return f"{error_type}: {exc}"


def _make_page(document: Document, context: BuildContext) -> Page:
    renderer = context.renderers.get_renderer(document.source)
    if renderer is None:
        content, toc = document.body, []
    else:
        content, toc = renderer.render(document.body, document.folder)
    return Page(
        title=document.title,
        url=document.url,
        permalink=join_root_url(context.options.base_url, document.url),
        date=document.date,
        content=content,
        summary=document.description,
        section=document.section,
        slug=document.slug,
        kind=document.kind,
        layout=document.layout,
        draft=document.draft,
        tags=document.tags,
        categories=document.categories,
        params=document.params,
        toc=tuple(toc),
        document=document,
    )


def _finish(html: str, options: BuildOptions) -> str:
    if options.base_url:
        return absolutize_html_urls(html, options.base_url)
    return html


def _render_document(page: Page, context: BuildContext, globals_: dict[str, Any]) -> str:
    source = page.document.source if page.document else Path(page.url)
    try:
        html = context.engine.render_page(page, globals_)
    except TemplateError:
        raise
    except TemplateSyntaxError as exc:
        raise BuildError(
            source, f"Template syntax error on line {exc.lineno}: {exc.message}", exc
        ) from exc
    except Exception as exc:
        raise BuildError(source, _format_error_message(exc), exc) from exc
    return _finish(html, context.options)


def _generated_page(title: str, url: str, kind: str, options: BuildOptions) -> Page:
    return Page(
        title=title,
        url=url,
        permalink=join_root_url(options.base_url, url),
        date=None,
        content="",
        summary="",
        section=url.strip("/").split("/")[0],
        slug=url.strip("/"),
        kind=kind,
    )


def _render_generated(
    tree: OutputTree,
    context: BuildContext,
    name: str,
    page: Page,
    values: dict[str, Any],
) -> None:
    origin = f"<layout {name}: {page.title}>"
    path = f"{page.slug}/index.html" if page.slug else "index.html"
    tree.claim(path, origin)
    try:
        html = context.engine.render(
            name, {**values, "page": page, "page_content": Markup(page.content)}
        )
    except TemplateError:
        raise
    except Exception as exc:
        raise BuildError(Path(name), _format_error_message(exc), exc) from exc
    tree.add_page(path, _finish(html, context.options), origin)


def build(
    documents: Iterable[Document],
    templates: TemplateRegistry | Iterable[Template],
    options: BuildOptions,
    data: dict[str, Any] | None = None,
    assets: Iterable[tuple[str, Path]] = (),
    renderers: RendererRegistry | None = None,
) -> BuildResult:
    """Render documents into an output tree.

    Drafts are dropped unless ``options.include_drafts``. Every selected
    document claims its output path before anything is rendered, so a
    collision fails the build before any work is done.

    Raises:
        CollisionError: Two sources map to the same output path.
        TemplateError: The template graph or a requested layout is broken.
        BuildError: A layout failed to render for a document.
    """
    registry = templates if isinstance(templates, TemplateRegistry) else TemplateRegistry(templates)
    site = {
        "title": options.title,
        "base_url": options.base_url,
        "params": options.params,
    }
    engine = TemplateEngine(
        registry,
        globals={"site": site, "data": data or {}},
        base_url=options.base_url,
        default_layout=options.default_layout,
    )
    context = BuildContext(
        registry=registry,
        engine=engine,
        options=options,
        renderers=renderers or default_renderer_registry,
    )

    selected = [d for d in documents if options.include_drafts or not d.draft]
    tree = OutputTree()
    for document in selected:
        tree.claim(document.output_path, str(document.source))

    with ThreadPoolExecutor(max_workers=options.workers) as executor:
        made = list(executor.map(lambda d: _make_page(d, context), selected))
    pairs = sorted(zip(selected, made), key=lambda pair: pair[1].url)
    pages = [page for _, page in pairs]

    collection = PageCollection(pages)
    taxonomies = {name: Taxonomy.from_pages(name, pages) for name in TAXONOMIES}
    values = {"pages": collection, "taxonomies": taxonomies}

    with ThreadPoolExecutor(max_workers=options.workers) as executor:
        rendered = list(executor.map(lambda p: _render_document(p, context, values), pages))
    for (document, _), html in zip(pairs, rendered):
        tree.add_page(document.output_path, html, str(document.source))

    if "index.html" not in tree and "index" in registry:
        home = _generated_page(options.title or "Home", "/", "home", options)
        _render_generated(tree, context, "index", home, values)

    for name, taxonomy in taxonomies.items():
        if "terms" in registry and taxonomy:
            page = _generated_page(name.capitalize(), f"/{name}/", "taxonomy", options)
            _render_generated(
                tree, context, "terms", page, {**values, "taxonomy": taxonomy}
            )
        if "taxonomy" in registry:
            for term, term_pages in taxonomy.items():
                page = _generated_page(term, taxonomy.url_for_term(term), "term", options)
                _render_generated(
                    tree,
                    context,
                    "taxonomy",
                    page,
                    {**values, "taxonomy": taxonomy, "term": term, "term_pages": term_pages},
                )

    for path, source in assets:
        tree.add_asset(path, source)

    return BuildResult(pages=pages, tree=tree, output_dir=options.output_dir)


def _check_output_dir(project_root: Path, output_dir: Path) -> None:
    # The output path itself may be a symlink to a generation; do not follow it.
    absolute = Path(os.path.abspath(output_dir))
    destination = absolute.parent.resolve() / absolute.name
    project = project_root.resolve()
    if destination == project or destination in project.parents:
        raise PublishError(output_dir, f"would replace the project directory {project_root}")


def build_site(
    project_root: Path,
    include_drafts: bool = False,
    base_url: str | None = None,
    output_dir: Path | None = None,
) -> BuildResult:
    """Build a project and publish the result.

    Args:
        project_root: Directory with ``content/``, ``layouts/``, ``static/``.
        include_drafts: Whether to emit draft documents.
        base_url: Overrides ``base_url`` from loam.yaml.
        output_dir: Overrides ``output_dir`` from loam.yaml.

    Returns:
        BuildResult including documents skipped with parse errors.

    Raises:
        PublishError: The output directory is the project or one of its
            parents, or holds files loam did not publish.
    """
    config = load_config(project_root)
    if base_url is not None:
        config["base_url"] = base_url
    destination = output_dir or (project_root / str(config["output_dir"]))
    _check_output_dir(project_root, destination)

    store = ContentStore(project_root)
    if not store.content_dir.is_dir():
        raise FileNotFoundError(f"Expected content directory at {store.content_dir}")

    options = BuildOptions(
        output_dir=destination,
        include_drafts=include_drafts,
        base_url=str(config.get("base_url") or ""),
        default_layout=str(config.get("default_layout") or "single"),
        title=str(config.get("title") or ""),
        workers=config.get("workers"),
        params=dict(config.get("params") or {}),
    )
    skipped: list[ParseError] = []
    documents = list(store.list_documents(errors=skipped))
    registry = store.load_templates()
    result = build(
        documents,
        registry,
        options,
        data=load_data(project_root),
        assets=store.iter_assets(),
    )
    result.skipped = skipped
    result.stats = publish(result.tree, destination)
    logger.info(
        "Built %d pages (%d skipped) into %s", len(result.pages), len(skipped), destination
    )
    return result

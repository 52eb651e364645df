"""Content store for Loam.

This module discovers and parses the inputs of a build: documents under
``content/``, layouts under ``layouts/``, and static files under ``static/``.
Everything here is read-only; documents are never modified by the builder.

Key classes:
- Document: A parsed content file (front matter plus raw body).
- Page: The rendered view of a Document that layouts receive.
- ContentStore: Enumerates documents, templates and assets of a project.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any

from .errors import ParseError, TemplateError
from .frontmatter import FrontMatter, parse_document_text
from .renderers import Heading
from .templates import LAYOUT_SUFFIXES, Template, TemplateRegistry, parse_template, template_name
from .utils import (
    extract_date_from_name,
    first_heading,
    first_paragraph,
    is_document,
    is_hidden,
    slugify,
    titleize,
)

logger = logging.getLogger(__name__)

CONTENT_DIR = "content"
LAYOUTS_DIR = "layouts"
STATIC_DIR = "static"

SECTION_INDEX_STEMS = ("index", "_index")


@dataclass(frozen=True)
class Document:
    """A content document.

    Attributes:
        slug: Unique path-like slug, ``""`` for the site root.
        title: Human-readable title.
        date: Publication date.
        draft: Whether the document is a draft.
        tags: Unique tags in order of appearance.
        categories: Unique categories in order of appearance.
        body: Raw body markup (front matter removed).
        layout: Explicit layout name, if any.
        source: Path to the source file.
        rel_path: Source path relative to ``content/``, posix style.
        section: First directory under ``content/``, ``""`` at the root.
        kind: ``"section"`` for index documents, ``"page"`` otherwise.
        description: Explicit description from front matter, or ``""``.
        params: Complete front matter mapping.
    """

    slug: str
    title: str
    date: datetime
    draft: bool
    tags: tuple[str, ...]
    categories: tuple[str, ...]
    body: str
    layout: str | None
    source: Path
    rel_path: str
    section: str
    kind: str = "page"
    description: str = ""
    params: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def folder(self) -> str:
        """Directory of the source relative to ``content/``."""
        parent = PurePosixPath(self.rel_path).parent.as_posix()
        return "" if parent == "." else parent

    @property
    def output_path(self) -> str:
        """Output file path for this document, relative to the output root."""
        return f"{self.slug}/index.html" if self.slug else "index.html"

    @property
    def url(self) -> str:
        return f"/{self.slug}/" if self.slug else "/"


@dataclass(frozen=True)
class Page:
    """A rendered document as seen from layouts.

    Generated pages (home, taxonomy terms) have no ``document``.
    """

    title: str
    url: str
    permalink: str
    date: datetime | None
    content: str
    summary: str
    section: str
    slug: str
    kind: str
    layout: str | None = None
    draft: bool = False
    tags: tuple[str, ...] = ()
    categories: tuple[str, ...] = ()
    params: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    toc: tuple[Heading, ...] = ()
    document: Document | None = None


def derive_slug(rel_path: PurePosixPath, front: FrontMatter) -> tuple[str, str]:
    """Compute the slug and kind of a document from its location.

    Each directory segment and the file stem are slugified; ``index`` and
    ``_index`` stems stand for their directory. Front matter ``url``
    replaces the whole slug and ``slug`` replaces the last segment.

    Returns:
        Tuple of (slug, kind).
    """
    segments = [slugify(part) for part in rel_path.parent.parts]
    stem = rel_path.stem.lower()
    is_index = stem in SECTION_INDEX_STEMS
    # A root index.md is the home page; a root _index.md is the home section.
    kind = "section" if is_index and (segments or stem == "_index") else "page"

    if front.url is not None:
        return front.url.strip("/"), kind

    if front.slug is not None:
        leaf = slugify(front.slug)
        if is_index:
            segments = segments[:-1] if segments else []
        segments.append(leaf)
    elif not is_index:
        segments.append(slugify(rel_path.stem))
    return "/".join(segments), kind


def _check_slug(slug: str, source: Path) -> None:
    """Reject slugs that would leave the output root.

    Raises:
        ParseError: The slug has a scheme, a backslash, or a ``.``/``..``
            or empty segment.
    """
    if not slug:
        return
    if ":" in slug or "\\" in slug or any(
        part in ("", ".", "..") for part in slug.split("/")
    ):
        raise ParseError(source, f"invalid url {slug!r}: must be a plain site path")


class ContentStore:
    """Read-only view of a project's content, layouts and static files.

    Attributes:
        project_root: Root of the project.
        content_dir: Directory holding documents and page resources.
        layouts_dir: Directory holding layouts and partials.
        static_dir: Directory whose files are published at the output root.
    """

    def __init__(self, project_root: Path):
        self.project_root = project_root
        self.content_dir = project_root / CONTENT_DIR
        self.layouts_dir = project_root / LAYOUTS_DIR
        self.static_dir = project_root / STATIC_DIR

    @staticmethod
    def _walk(root: Path) -> Iterator[Path]:
        if not root.is_dir():
            return
        for path in sorted(root.rglob("*")):
            if path.is_dir() or is_hidden(path.relative_to(root)):
                continue
            yield path

    def iter_document_files(self) -> Iterator[Path]:
        """Yield document source files in sorted order."""
        for path in self._walk(self.content_dir):
            if is_document(path):
                yield path

    def load_document(self, path: Path) -> Document:
        """Parse a single document.

        Raises:
            ParseError: The front matter is malformed or the file unreadable.
        """
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ParseError(path, f"cannot read file: {exc}") from exc

        front, body = parse_document_text(text, path)
        rel = PurePosixPath(path.relative_to(self.content_dir).as_posix())
        slug, kind = derive_slug(rel, front)
        _check_slug(slug, path)

        title = front.title or first_heading(body) or titleize(rel.name)
        date = front.date or extract_date_from_name(rel.stem)
        if date is None:
            date = datetime.fromtimestamp(int(path.stat().st_mtime))
        section = rel.parts[0] if len(rel.parts) > 1 else ""

        return Document(
            slug=slug,
            title=title,
            date=date,
            draft=front.draft,
            tags=front.tags,
            categories=front.categories,
            body=body,
            layout=front.layout,
            source=path,
            rel_path=rel.as_posix(),
            section=section,
            kind=kind,
            description=front.description or first_paragraph(body),
            params=front.params,
        )

    def list_documents(self, errors: list[ParseError] | None = None) -> Iterator[Document]:
        """Lazily yield every parseable document.

        Documents that fail to parse are skipped; the error is logged as a
        warning and appended to ``errors`` when a list is given. Each call
        walks the content directory again.
        """
        for path in self.iter_document_files():
            try:
                document = self.load_document(path)
            except ParseError as exc:
                logger.warning("Skipping %s", exc)
                if errors is not None:
                    errors.append(exc)
                continue
            yield document

    def iter_template_files(self) -> Iterator[Path]:
        for path in self._walk(self.layouts_dir):
            if path.name.endswith(LAYOUT_SUFFIXES):
                yield path

    def load_templates(self) -> TemplateRegistry:
        """Load and validate every layout.

        Raises:
            TemplateError: A layout is invalid or the extends graph is broken.
            OSError: The layouts directory cannot be read.
        """
        templates: list[Template] = []
        for path in self.iter_template_files():
            rel = path.relative_to(self.layouts_dir).as_posix()
            name = template_name(rel)
            try:
                source = path.read_text(encoding="utf-8")
            except UnicodeDecodeError as exc:
                raise TemplateError(f"cannot decode {path}: {exc}", name) from exc
            templates.append(parse_template(name, source, path))
        registry = TemplateRegistry(templates)
        logger.debug("Loaded %d templates from %s", len(registry), self.layouts_dir)
        return registry

    def list_templates(self) -> Iterator[Template]:
        """Lazily yield templates once the whole registry has been validated.

        Raises:
            TemplateError: On the first iteration, if the graph is broken.
        """
        yield from self.load_templates()

    def iter_assets(self) -> Iterator[tuple[str, Path]]:
        """Yield ``(output_path, source)`` for every static file.

        Files under ``static/`` map to the output root. Non-document files
        under ``content/`` are page resources and keep their relative path.
        """
        for path in self._walk(self.static_dir):
            yield path.relative_to(self.static_dir).as_posix(), path
        for path in self._walk(self.content_dir):
            if not is_document(path):
                yield path.relative_to(self.content_dir).as_posix(), path

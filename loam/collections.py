from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from datetime import datetime

from .content import Page
from .utils import slugify


def _sort_key(page: Page) -> tuple[datetime, str]:
    return (page.date or datetime.min, page.url)


class PageCollection(Sequence[Page]):
    """Read-only list of pages with helpers for layouts."""

    def __init__(self, pages: Iterable[Page]):
        self._pages = list(pages)

    def __iter__(self) -> Iterator[Page]:
        return iter(self._pages)

    def __len__(self) -> int:
        return len(self._pages)

    def __getitem__(self, item):
        if isinstance(item, slice):
            return PageCollection(self._pages[item])
        return self._pages[item]

    def section(self, name: str) -> PageCollection:
        return PageCollection(p for p in self._pages if p.section == name)

    def regular(self) -> PageCollection:
        """Pages that are not section indexes."""
        return PageCollection(p for p in self._pages if p.kind == "page")

    def with_tag(self, tag: str) -> PageCollection:
        return PageCollection(p for p in self._pages if tag in p.tags)

    def in_category(self, category: str) -> PageCollection:
        return PageCollection(p for p in self._pages if category in p.categories)

    def drafts(self) -> PageCollection:
        return PageCollection(p for p in self._pages if p.draft)

    def published(self) -> PageCollection:
        return PageCollection(p for p in self._pages if not p.draft)

    def sorted(self, reverse: bool = True) -> PageCollection:
        """Sort by date (newest first by default), then by URL for stability."""
        if reverse:
            # Newest first, but URLs ascending within the same date.
            ordered = sorted(self._pages, key=lambda p: p.url)
            ordered.sort(key=lambda p: p.date or datetime.min, reverse=True)
        else:
            ordered = sorted(self._pages, key=_sort_key)
        return PageCollection(ordered)

    def latest(self, count: int = 5) -> PageCollection:
        return self.sorted()[:count]

    def __repr__(self) -> str:  # pragma: no cover - for debugging
        return f"PageCollection({len(self._pages)} pages)"


class Taxonomy(Mapping[str, PageCollection]):
    """Mapping of term to the pages carrying it, terms in sorted order.

    Terms that slugify alike (``Rust`` and ``rust``) are one term, shown with
    the first spelling seen. Lookups accept any spelling.
    """

    def __init__(self, name: str, mapping: Mapping[str, Iterable[Page]]):
        self.name = name
        grouped: dict[str, list[Page]] = {}
        self._names: dict[str, str] = {}
        for term, pages in mapping.items():
            key = slugify(term)
            self._names.setdefault(key, term)
            grouped.setdefault(key, []).extend(pages)
        self._mapping = {
            key: PageCollection(_unique_pages(grouped[key])).sorted()
            for key in sorted(grouped, key=lambda k: (self._names[k].lower(), k))
        }

    @classmethod
    def from_pages(cls, name: str, pages: Iterable[Page]) -> Taxonomy:
        """Index ``pages`` by the attribute ``name`` (``tags`` or ``categories``)."""
        terms: dict[str, list[Page]] = {}
        for page in pages:
            for term in getattr(page, name):
                terms.setdefault(term, []).append(page)
        return cls(name, terms)

    def __getitem__(self, key: str) -> PageCollection:
        return self._mapping[slugify(key)]

    def __iter__(self) -> Iterator[str]:
        return (self._names[key] for key in self._mapping)

    def __len__(self) -> int:
        return len(self._mapping)

    def url_for_term(self, term: str) -> str:
        return f"/{self.name}/{slugify(term)}/"

    def __repr__(self) -> str:  # pragma: no cover - for debugging
        return f"Taxonomy({self.name!r}, {len(self._mapping)} terms)"


def _unique_pages(pages: Iterable[Page]) -> list[Page]:
    # A page tagged both "Rust" and "rust" is listed once.
    seen: dict[str, Page] = {}
    for page in pages:
        seen.setdefault(page.url, page)
    return list(seen.values())

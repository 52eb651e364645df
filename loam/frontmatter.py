"""Front matter parsing for Loam documents.

A document may start with a metadata block delimited by ``---`` lines (YAML)
or ``+++`` lines (TOML). Everything after the closing delimiter is the body.
A document without an opening delimiter simply has no metadata.

Key pieces:
- split_frontmatter: Separate the metadata mapping from the body.
- FrontMatter: Typed view of the keys the pipeline understands.
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from .errors import ParseError
from .utils import unique

YAML_DELIMITER = "---"
TOML_DELIMITER = "+++"


def split_frontmatter(text: str, source: Path) -> tuple[dict[str, Any], str]:
    """Split raw document text into its metadata mapping and body.

    Args:
        text: Raw file content.
        source: Path of the document, used in error messages.

    Returns:
        Tuple of (metadata dict, body text).

    Raises:
        ParseError: The block is not closed, is not valid YAML/TOML, or does
            not contain a mapping.
    """
    text = text.removeprefix("\ufeff")
    lines = text.splitlines(keepends=True)
    if not lines:
        return {}, text
    delimiter = lines[0].strip()
    if delimiter not in (YAML_DELIMITER, TOML_DELIMITER):
        return {}, text

    for index, line in enumerate(lines[1:], start=1):
        if line.strip() == delimiter:
            raw = "".join(lines[1:index])
            body = "".join(lines[index + 1 :])
            break
    else:
        raise ParseError(source, f"front matter is missing its closing '{delimiter}'")

    if delimiter == YAML_DELIMITER:
        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise ParseError(source, f"invalid YAML front matter: {exc}") from exc
    else:
        try:
            data = tomllib.loads(raw)
        except tomllib.TOMLDecodeError as exc:
            raise ParseError(source, f"invalid TOML front matter: {exc}") from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ParseError(
            source, f"front matter must be a mapping, got {type(data).__name__}"
        )
    return data, body


def _as_datetime(value: Any, source: Path) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip())
        except ValueError as exc:
            raise ParseError(source, f"invalid date {value!r}") from exc
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    raise ParseError(source, f"'date' must be a date, got {type(value).__name__}")


def _as_terms(value: Any, key: str, source: Path) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)) or not all(
        isinstance(item, (str, int, float)) and not isinstance(item, bool)
        for item in value
    ):
        raise ParseError(source, f"'{key}' must be a string or a list of strings")
    return unique(str(item).strip() for item in value if str(item).strip())


def _as_optional_str(value: Any, key: str, source: Path) -> str | None:
    if value is None:
        return None
    if not isinstance(value, (str, int, float)) or isinstance(value, bool):
        raise ParseError(source, f"'{key}' must be a string")
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class FrontMatter:
    """Typed view of the front matter keys used by the pipeline.

    Attributes:
        title: Explicit title, if given.
        date: Publication date, normalized to a naive UTC datetime.
        draft: Whether the document is a draft.
        tags: Unique tags in order of appearance.
        categories: Unique categories in order of appearance.
        layout: Explicit layout name.
        slug: Replacement for the final slug segment.
        url: Replacement for the whole slug.
        description: Explicit summary text.
        params: The complete raw mapping.
    """

    title: str | None = None
    date: datetime | None = None
    draft: bool = False
    tags: tuple[str, ...] = ()
    categories: tuple[str, ...] = ()
    layout: str | None = None
    slug: str | None = None
    url: str | None = None
    description: str | None = None
    params: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_mapping(cls, data: dict[str, Any], source: Path) -> FrontMatter:
        """Validate a raw metadata mapping.

        Raises:
            ParseError: A known key has the wrong type.
        """
        draft = data.get("draft", False)
        if not isinstance(draft, bool):
            raise ParseError(source, f"'draft' must be true or false, got {draft!r}")
        return cls(
            title=_as_optional_str(data.get("title"), "title", source),
            date=_as_datetime(data.get("date"), source),
            draft=draft,
            tags=_as_terms(data.get("tags"), "tags", source),
            categories=_as_terms(data.get("categories"), "categories", source),
            layout=_as_optional_str(data.get("layout"), "layout", source),
            slug=_as_optional_str(data.get("slug"), "slug", source),
            url=_as_optional_str(data.get("url"), "url", source),
            description=_as_optional_str(data.get("description"), "description", source),
            params=dict(data),
        )


def parse_document_text(text: str, source: Path) -> tuple[FrontMatter, str]:
    """Parse a whole document into validated front matter and its body."""
    data, body = split_frontmatter(text, source)
    return FrontMatter.from_mapping(data, source), body

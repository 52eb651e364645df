"""Utility functions for Loam.

String and path helpers shared by the content store, the builder and the CLI.

Key functions:
    slugify: Convert a filename or title to a URL slug.
    titleize: Convert a filename to a human-readable title.
    extract_date_from_name: Extract a date from a filename prefix.
    first_paragraph: Plain-text summary of a Markdown body.
    is_markdown / is_html_document / is_hidden: Path classification.
    file_digest: SHA-256 of a file, used for change detection.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path, PurePath

_DIGEST_CHUNK = 1 << 16


def _strip_date_prefix(name: str) -> str:
    parts = name.split("-")
    if len(parts) >= 4 and all(p.isdigit() for p in parts[:3]):
        return "-".join(parts[3:])
    return name


def slugify(name: str) -> str:
    """Convert a filename stem or title to a slug, dropping any date prefix.

    Args:
        name: Filename stem or free text.

    Returns:
        Lowercase, hyphen-separated slug. Empty input yields ``"index"``.

    Examples:
        >>> slugify("2024-01-15-My Post")
        'my-post'
    """
    cleaned = _strip_date_prefix(name)
    cleaned = re.sub(r"[^a-zA-Z0-9]+", "-", cleaned)
    cleaned = cleaned.strip("-").lower()
    return cleaned or "index"


def titleize(filename: str) -> str:
    """Convert a filename to a human-readable title.

    Examples:
        >>> titleize("2024-01-15-hello-world.md")
        'Hello World'
    """
    base = _strip_date_prefix(PurePath(filename).stem)
    words = re.split(r"[\s\-_]+", base)
    return " ".join(word.capitalize() for word in words if word) or "Untitled"


def extract_date_from_name(name: str) -> datetime | None:
    """Extract a date from a filename stem with a ``YYYY-MM-DD`` prefix.

    Returns:
        datetime at midnight, or None when there is no valid prefix.
    """
    parts = name.split("-")
    if len(parts) >= 3 and all(p.isdigit() for p in parts[:3]):
        try:
            return datetime(int(parts[0]), int(parts[1]), int(parts[2]))
        except ValueError:
            return None
    return None


def first_heading(text: str) -> str | None:
    """Return the text of the first level-1 Markdown heading, if any."""
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("# "):
            return stripped[2:].strip()
    return None


def first_paragraph(text: str, limit: int = 160) -> str:
    """Extract and clean the first prose paragraph from Markdown text.

    Headings, images, fences and rules are skipped. HTML tags and Jinja
    syntax are stripped, whitespace collapsed, and the result truncated.

    Args:
        text: Markdown text.
        limit: Maximum character length of result.
    """
    for para in (p.strip() for p in text.split("\n\n")):
        if not para or para.startswith(("#", "![", "```", "---", "+++")):
            continue
        para = re.sub(r"<[^>]+>", "", para)
        para = re.sub(r"\{[%#{].*?[%#}]\}", "", para)
        collapsed = " ".join(para.split())
        if collapsed:
            return collapsed[:limit]
    return ""


def unique(values: Iterable[str]) -> tuple[str, ...]:
    """Deduplicate strings, keeping the order of first appearance."""
    seen: dict[str, None] = {}
    for value in values:
        seen.setdefault(value, None)
    return tuple(seen)


def is_hidden(path: PurePath) -> bool:
    """Check if any component of a relative path starts with a dot."""
    return any(part.startswith(".") for part in path.parts)


def is_markdown(path: PurePath) -> bool:
    """Check if a path is a Markdown document."""
    return path.suffix.lower() in (".md", ".markdown")


def is_html_document(path: PurePath) -> bool:
    """Check if a path is an HTML content document."""
    return path.suffix.lower() in (".html", ".htm")


def is_document(path: PurePath) -> bool:
    """Check if a content file is a Document rather than a page resource."""
    return is_markdown(path) or is_html_document(path)


def file_digest(path: Path) -> str:
    """Return the SHA-256 hex digest of a file's contents."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_DIGEST_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def bytes_digest(data: bytes) -> str:
    """Return the SHA-256 hex digest of an in-memory payload."""
    return hashlib.sha256(data).hexdigest()

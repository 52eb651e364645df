"""HTML URL helpers for Loam.

Functions:
    join_root_url: Join a base URL with a site path.
    absolutize_html_urls: Resolve root-relative links against the base URL.
    inject_before_body_end: Insert a snippet before ``</body>``.
"""

from __future__ import annotations

import re

_URL_ATTR_RE = re.compile(
    r'(?P<prefix>\b(?:href|src|action)=["\'])(?P<url>[^"\']+)(?P<suffix>["\'])'
)

# Only root-relative URLs are rewritten.
_URL_SKIP_PREFIXES = (
    "http://",
    "https://",
    "//",
    "mailto:",
    "tel:",
    "data:",
    "#",
    "javascript:",
)


def join_root_url(root_url: str, path: str) -> str:
    """Join a root URL and a path, avoiding double slashes.

    Examples:
        >>> join_root_url('https://example.com/blog/', '/about/')
        'https://example.com/blog/about/'
    """
    if not root_url:
        return path if path.startswith("/") else f"/{path}"
    base = root_url.rstrip("/")
    suffix = path if path.startswith("/") else f"/{path}"
    return f"{base}{suffix}"


def absolutize_html_urls(html: str, root_url: str) -> str:
    """Rewrite root-relative ``href``/``src``/``action`` URLs to absolute URLs.

    External URLs, fragments, and ``mailto:``/``tel:``/``data:`` links are left
    untouched, as are relative URLs without a leading slash.

    Examples:
        >>> absolutize_html_urls('<a href="/about/">About</a>', 'https://example.com')
        '<a href="https://example.com/about/">About</a>'
    """
    if not root_url:
        return html

    def repl(match: re.Match) -> str:
        url = match.group("url")
        if not url.startswith("/") or url.startswith(_URL_SKIP_PREFIXES):
            return match.group(0)
        absolute = join_root_url(root_url, url)
        return f"{match.group('prefix')}{absolute}{match.group('suffix')}"

    return _URL_ATTR_RE.sub(repl, html)


def inject_before_body_end(html: str, snippet: str) -> str:
    """Insert ``snippet`` right before the last ``</body>``, or append it."""
    index = html.lower().rfind("</body>")
    if index == -1:
        return html + snippet
    return html[:index] + snippet + html[index:]

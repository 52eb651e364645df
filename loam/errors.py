"""Error types raised by the Loam pipeline.

Per-document problems (``ParseError``) are recoverable: the document is
skipped and the build continues. Structural problems (``TemplateError``,
``CollisionError``) abort the build. ``PublishError`` refuses to replace a
destination Loam did not create. ``BindError`` is a server startup failure.
Filesystem failures surface as plain ``OSError``.
"""

from __future__ import annotations

from pathlib import Path


class LoamError(Exception):
    """Base class for all errors reported by Loam."""


class ParseError(LoamError):
    """Malformed front matter or unreadable content in a single document.

    Attributes:
        source: Path to the offending document.
        message: Human-readable description of the problem.
    """

    def __init__(self, source: Path, message: str):
        self.source = source
        self.message = message
        super().__init__(f"{source}: {message}")


class TemplateError(LoamError):
    """Broken template graph, unknown layout, or template syntax error.

    Attributes:
        message: Human-readable description of the problem.
        template: Name of the template involved, when known.
    """

    def __init__(self, message: str, template: str | None = None):
        self.message = message
        self.template = template
        prefix = f"template '{template}': " if template else ""
        super().__init__(f"{prefix}{message}")


class CollisionError(LoamError):
    """Two sources map to the same output path.

    Attributes:
        output_path: The contested output path.
        first: Source that claimed the path first.
        second: Source that tried to claim it again.
    """

    def __init__(self, output_path: str, first: Path | str, second: Path | str):
        self.output_path = output_path
        self.first = first
        self.second = second
        super().__init__(
            f"output path '{output_path}' is produced by both {first} and {second}"
        )


class BuildError(LoamError):
    """Error while rendering a document, with file context.

    Attributes:
        source_path: Path to the source file that caused the error.
        message: Human-readable error message.
        original_error: The original exception that was caught.
    """

    def __init__(
        self,
        source_path: Path,
        message: str,
        original_error: Exception | None = None,
    ):
        self.source_path = source_path
        self.message = message
        self.original_error = original_error
        super().__init__(f"{source_path}: {message}")


class BindError(LoamError):
    """The server could not listen on the requested address."""

    def __init__(self, host: str, port: int, original_error: OSError):
        self.host = host
        self.port = port
        self.original_error = original_error
        super().__init__(
            f"cannot listen on {host or '*'}:{port}: {original_error.strerror or original_error}"
        )


class PublishError(LoamError):
    """The output directory cannot be published to safely.

    Attributes:
        output_dir: The requested destination.
        message: Human-readable description of the problem.
    """

    def __init__(self, output_dir: Path, message: str):
        self.output_dir = output_dir
        self.message = message
        super().__init__(f"{output_dir}: {message}")

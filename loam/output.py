"""Build output tree and atomic publishing.

The builder collects everything it produces into an ``OutputTree``: rendered
pages as bytes, static assets as references to their source files. Nothing
touches the destination until ``publish`` writes the whole tree into a fresh
generation directory and swaps it into place.

Publishing layout, for ``output_dir = /var/www/site``::

    /var/www/.site.3f9c2a71d0be/   generation directories
    /var/www/site -> .site.3f9c2a71d0be   symlink, replaced atomically

Files whose content is unchanged since the previous generation are
hard-linked from it instead of being written again. Each generation holds a
``.loam-generation`` marker; directories without it are never replaced or
removed.
"""

from __future__ import annotations

import logging
import mimetypes
import os
import shutil
import uuid
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from .errors import CollisionError, PublishError
from .utils import bytes_digest, file_digest

logger = logging.getLogger(__name__)

HTML_CONTENT_TYPE = "text/html; charset=utf-8"

GENERATION_MARKER = ".loam-generation"


def guess_content_type(path: str) -> str:
    """Return the content type for an output path."""
    if path.endswith((".html", ".htm")):
        return HTML_CONTENT_TYPE
    content_type, _ = mimetypes.guess_type(path)
    return content_type or "application/octet-stream"


def normalize_output_path(path: str) -> str:
    """Validate and normalize a relative output path.

    Raises:
        ValueError: The path is absolute, empty or escapes the output root.
    """
    pure = PurePosixPath(path.replace("\\", "/"))
    if pure.is_absolute() or not pure.parts or ".." in pure.parts:
        raise ValueError(f"invalid output path: {path!r}")
    return pure.as_posix()


@dataclass(frozen=True)
class OutputFile:
    """One file of the output tree.

    Exactly one of ``content`` and ``source`` is set: rendered files carry
    their bytes, assets point at the file to copy.

    Raises:
        ValueError: Both or neither of ``content`` and ``source`` are set.
    """

    content_type: str
    content: bytes | None = None
    source: Path | None = None
    origin: str = ""

    def __post_init__(self):
        if (self.content is None) == (self.source is None):
            raise ValueError("an output file needs exactly one of content or source")

    def read(self) -> bytes:
        if self.source is not None:
            return self.source.read_bytes()
        return self.content

    def digest(self) -> str:
        if self.source is not None:
            return file_digest(self.source)
        return bytes_digest(self.content)

    @property
    def size(self) -> int:
        if self.source is not None:
            return self.source.stat().st_size
        return len(self.content)


@dataclass
class WriteStats:
    """Counts of files written and reused by ``OutputTree.write``."""

    written: int = 0
    reused: int = 0


class OutputTree(Mapping[str, OutputFile]):
    """Mapping of output path to ``OutputFile``.

    Paths can be claimed once only; a second claim raises ``CollisionError``
    naming both origins.
    """

    def __init__(self):
        self._files: dict[str, OutputFile] = {}
        self._claims: dict[str, str] = {}

    def __getitem__(self, path: str) -> OutputFile:
        return self._files[path]

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._files))

    def __len__(self) -> int:
        return len(self._files)

    def claim(self, path: str, origin: str) -> str:
        """Reserve ``path`` for ``origin`` before its content exists.

        Raises:
            CollisionError: The path is already claimed by another origin.
        """
        path = normalize_output_path(path)
        if path in self._claims:
            raise CollisionError(path, self._claims[path], origin)
        self._claims[path] = origin
        return path

    def put(self, path: str, file: OutputFile) -> None:
        """Store content for a path, claiming it first if necessary."""
        path = normalize_output_path(path)
        if path not in self._claims:
            self.claim(path, file.origin or path)
        elif file.origin and self._claims[path] != file.origin:
            raise CollisionError(path, self._claims[path], file.origin)
        self._files[path] = file

    def add_page(self, path: str, html: str, origin: str) -> None:
        self.put(
            path,
            OutputFile(
                content_type=guess_content_type(path),
                content=html.encode("utf-8"),
                origin=origin,
            ),
        )

    def add_asset(self, path: str, source: Path) -> None:
        self.put(
            path,
            OutputFile(
                content_type=guess_content_type(path), source=source, origin=str(source)
            ),
        )

    def write(self, root: Path, previous: Path | None = None) -> WriteStats:
        """Materialize the tree under ``root``.

        When ``previous`` holds an earlier generation, files with identical
        content are hard-linked from it rather than rewritten.
        """
        stats = WriteStats()
        for path in self:
            file = self._files[path]
            dest = root / path
            dest.parent.mkdir(parents=True, exist_ok=True)
            if previous is not None and _link_unchanged(previous / path, dest, file):
                stats.reused += 1
                continue
            if file.source is not None:
                shutil.copy2(file.source, dest)
            else:
                dest.write_bytes(file.read())
            stats.written += 1
        return stats


def _link_unchanged(old: Path, dest: Path, file: OutputFile) -> bool:
    try:
        if not old.is_file() or old.stat().st_size != file.size:
            return False
        if file_digest(old) != file.digest():
            return False
        os.link(old, dest)
    except OSError:
        return False
    return True


def is_generation(path: Path) -> bool:
    """Check whether ``path`` is a directory written by ``publish``."""
    return path.is_dir() and (path / GENERATION_MARKER).is_file()


def current_generation(output_dir: Path) -> Path | None:
    """Return the generation currently published at ``output_dir``, if any."""
    if output_dir.is_symlink():
        target = output_dir.resolve()
        return target if is_generation(target) else None
    if is_generation(output_dir):
        return output_dir
    return None


def _generation_prefix(output_dir: Path) -> str:
    return f".{output_dir.name}."


def publish(tree: OutputTree, output_dir: Path) -> WriteStats:
    """Write ``tree`` to a new generation and atomically swap it into place.

    On failure the partial generation is removed and the previously
    published tree is left untouched.

    Returns:
        Write statistics of the new generation.

    Raises:
        PublishError: ``output_dir`` is a file, or a directory holding
            files that Loam did not publish.
    """
    output_dir = output_dir.absolute()
    _check_destination(output_dir)
    parent = output_dir.parent
    parent.mkdir(parents=True, exist_ok=True)
    previous = current_generation(output_dir)

    generation = parent / f"{_generation_prefix(output_dir)}{uuid.uuid4().hex[:12]}"
    generation.mkdir()
    try:
        stats = tree.write(generation, previous=previous)
        (generation / GENERATION_MARKER).write_bytes(b"")
        _swap(output_dir, generation)
    except BaseException:
        shutil.rmtree(generation, ignore_errors=True)
        raise

    keep = {generation.resolve()}
    if previous is not None:
        keep.add(previous.resolve())
    _prune(output_dir, keep)
    logger.info(
        "Published %d files to %s (%d written, %d unchanged)",
        len(tree),
        output_dir,
        stats.written,
        stats.reused,
    )
    return stats


def _check_destination(output_dir: Path) -> None:
    if output_dir.is_symlink() or not output_dir.exists():
        return
    if not output_dir.is_dir():
        raise PublishError(output_dir, "exists and is not a directory")
    if not is_generation(output_dir) and any(output_dir.iterdir()):
        raise PublishError(
            output_dir, "is a non-empty directory that was not published by loam"
        )


def _swap(output_dir: Path, generation: Path) -> None:
    link = output_dir.parent / f"{_generation_prefix(output_dir)}link-{uuid.uuid4().hex[:8]}"
    os.symlink(generation.name, link, target_is_directory=True)
    try:
        if output_dir.is_dir() and not output_dir.is_symlink():
            # Only this transition from a plain directory is not atomic.
            if is_generation(output_dir):
                retired = output_dir.parent / (
                    f"{_generation_prefix(output_dir)}{uuid.uuid4().hex[:12]}"
                )
                os.rename(output_dir, retired)
            else:
                output_dir.rmdir()
        os.replace(link, output_dir)
    except BaseException:
        if link.is_symlink():
            link.unlink()
        raise


def _prune(output_dir: Path, keep: set[Path]) -> None:
    prefix = _generation_prefix(output_dir)
    for candidate in output_dir.parent.iterdir():
        if not candidate.name.startswith(prefix) or candidate.is_symlink():
            continue
        if candidate.resolve() in keep or not is_generation(candidate):
            continue
        logger.debug("Removing old generation %s", candidate)
        shutil.rmtree(candidate, ignore_errors=True)

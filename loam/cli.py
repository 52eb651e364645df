"""Command-line interface for Loam.

Commands:
- build: Build a project and publish the output tree.
- serve: Serve a published output tree.
- dev: Build, serve, watch for changes and live-reload.
- new: Create a content file with front matter.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

import click
import questionary
import yaml

from . import __version__
from .errors import BindError, BuildError, LoamError
from .utils import slugify, titleize


@click.group()
@click.version_option(version=__version__, prog_name="loam")
@click.option("-v", "--verbose", count=True, help="Increase log output (-vv for debug).")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors.")
def cli(verbose: int, quiet: bool):
    """Loam static site pipeline."""
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def _fail(title: str, exc: Exception, project_root: Path | None = None) -> None:
    click.echo(click.style(title, fg="red", bold=True), err=True)
    if isinstance(exc, BuildError):
        source = exc.source_path
        if project_root is not None:
            try:
                source = source.resolve().relative_to(project_root.resolve())
            except ValueError:
                pass
        click.echo(click.style(f"  File: {source}", fg="yellow"), err=True)
        click.echo(f"  Error: {exc.message}", err=True)
    else:
        click.echo(f"  {exc}", err=True)
    raise SystemExit(1)


@cli.command()
@click.argument(
    "source",
    default=".",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
)
@click.option(
    "-d",
    "--destination",
    type=click.Path(file_okay=False, path_type=Path),
    help="Output directory (overrides output_dir in loam.yaml).",
)
@click.option("--drafts", is_flag=True, help="Include draft content")
@click.option("--base-url", help="Base URL for absolute links (overrides loam.yaml).")
def build(source: Path, destination: Path | None, drafts: bool, base_url: str | None):
    """Build the site in SOURCE and publish it."""
    from .build import build_site

    try:
        result = build_site(
            source,
            include_drafts=drafts,
            base_url=base_url,
            output_dir=destination,
        )
    except (LoamError, OSError) as exc:
        _fail("Build failed:", exc, source)
        return
    if result.skipped:
        click.echo(
            click.style(f"Skipped {len(result.skipped)} documents with errors", fg="yellow"),
            err=True,
        )
    click.echo(f"Built {len(result.pages)} pages into {result.output_dir}")


@cli.command()
@click.argument(
    "root",
    default="public",
    type=click.Path(file_okay=False, path_type=Path),
)
@click.option("--host", default="0.0.0.0", show_default=True, help="Interface to bind.")
@click.option("--port", type=int, default=1313, show_default=True, help="Port to bind.")
def serve(root: Path, host: str, port: int):
    """Serve the published site in ROOT until terminated."""
    from .server import serve as serve_root

    try:
        serve_root(root, host=host, port=port)
    except (BindError, FileNotFoundError) as exc:
        raise click.ClickException(str(exc)) from None


@cli.command()
@click.argument(
    "project",
    default=".",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
)
@click.option("--drafts", is_flag=True, help="Include draft content")
@click.option("--port", type=int, required=False, help="HTTP port (overrides loam.yaml)")
@click.option(
    "--ws-port",
    type=int,
    required=False,
    help="Port for the live reload websocket server (overrides loam.yaml ws_port)",
)
def dev(project: Path, drafts: bool, port: int | None, ws_port: int | None):
    """Run the development server with rebuilds and live reload."""
    from .server import DevServer

    server = DevServer(project, http_port=port, ws_port=ws_port)
    try:
        server.start(include_drafts=drafts)
    except BindError as exc:
        raise click.ClickException(str(exc)) from None
    except (LoamError, OSError) as exc:
        _fail("Build failed:", exc, project)


@cli.command()
@click.argument("path", required=False)
@click.option(
    "--project",
    default=".",
    type=click.Path(file_okay=False, path_type=Path),
    help="Project root containing content/.",
)
def new(path: str | None, project: Path):
    """Create a draft document at content/PATH.

    Without PATH, the section and name are asked for interactively.
    """
    content_dir = project / "content"
    if path is None:
        rel = _prompt_for_path(content_dir)
    else:
        rel = Path(path)
        if rel.suffix.lower() != ".md":
            rel = rel.with_name(f"{rel.name}.md")

    target = content_dir / rel
    if target.exists():
        raise click.ClickException(f"File already exists: {target}")

    existing = _existing_slugs(target.parent)
    slug = slugify(target.stem)
    if slug in existing:
        raise click.ClickException(
            f"A document with slug '{slug}' already exists: {existing[slug].name}"
        )

    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(render_new_document(titleize(target.name)), encoding="utf-8")
    click.echo(f"Created {target}")


def render_new_document(title: str, now: datetime | None = None) -> str:
    """Return the initial text of a new draft document."""
    front = {
        "title": title,
        "date": (now or datetime.now()).replace(microsecond=0).isoformat(),
        "draft": True,
        "tags": [],
    }
    dumped = yaml.safe_dump(front, sort_keys=False, allow_unicode=True)
    return f"---\n{dumped}---\n\n"


def _existing_slugs(folder: Path) -> dict[str, Path]:
    slugs: dict[str, Path] = {}
    if folder.is_dir():
        for f in sorted(folder.iterdir()):
            if f.is_file() and f.suffix.lower() == ".md":
                slugs[slugify(f.stem)] = f
    return slugs


def _content_sections(content_dir: Path) -> list[str]:
    sections = [". (root)"]
    if content_dir.is_dir():
        sections.extend(
            sorted(
                p.relative_to(content_dir).as_posix()
                for p in content_dir.rglob("*")
                if p.is_dir()
                and not any(part.startswith(".") for part in p.relative_to(content_dir).parts)
            )
        )
    return sections


def _prompt_for_path(content_dir: Path) -> Path:
    section = questionary.select(
        "Section:", choices=_content_sections(content_dir), style=_questionary_style()
    ).ask()
    if section is None:
        raise click.Abort()

    name = questionary.text(
        "Filename (without .md extension):",
        validate=lambda x: len(x.strip()) > 0 or "Filename cannot be empty",
        style=_questionary_style(),
    ).ask()
    if name is None:
        raise click.Abort()

    add_date = questionary.confirm(
        "Prefix with today's date? (YYYY-MM-DD-)",
        default=False,
        style=_questionary_style(),
    ).ask()
    if add_date is None:
        raise click.Abort()

    filename = f"{name.strip()}.md"
    if add_date:
        filename = datetime.now().strftime("%Y-%m-%d-") + filename
    folder = Path() if section == ". (root)" else Path(section)
    return folder / filename


def _questionary_style():
    return questionary.Style(
        [
            ("qmark", "fg:cyan bold"),
            ("question", "bold"),
            ("answer", "fg:cyan"),
            ("pointer", "fg:cyan bold"),
            ("highlighted", "fg:cyan bold"),
            ("selected", "fg:cyan"),
        ]
    )


def main():
    """Entry point for the CLI application."""
    cli()

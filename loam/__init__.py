"""Loam static site pipeline.

Loam reads a Hugo-style project (``content/``, ``layouts/``, ``static/``), renders
Markdown documents through Jinja2 layouts into a static output tree, publishes
that tree atomically, and serves it over HTTP.

The main entry point is the CLI module, which provides commands for building,
serving, running a live-reloading development server, and creating content.
"""

__all__ = ["__version__"]
__version__ = "0.3.0"

"""Convert Markdown documents to self-contained HTML."""

from .version import __version__

__all__ = ["__version__"]

"""flexscrape — declarative, human-paced browser scraping."""

from __future__ import annotations

try:
    from importlib.metadata import version

    __version__ = version("flexscrape")
except Exception:
    __version__ = "0.0.0"

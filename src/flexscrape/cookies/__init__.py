"""Cookie persistence keyed by domain."""

from flexscrape.cookies.store import CookieRecord, CookieStore

__all__ = ["CookieRecord", "CookieStore"]

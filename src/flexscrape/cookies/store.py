"""Domain-keyed cookie store with last-write-wins merge.

The on-disk format is a JSON object keyed by cookie domain::

    {
      ".example.com": [
        {"name": "sid", "value": "abc", "domain": ".example.com", "path": "/", "secure": true}
      ]
    }

Each cookie dict uses the browser's cookie field names so the list returned
by ``get_all()`` can be handed straight to the browser context. A cookie's
identity is ``(domain, name, path)``; merging an incoming cookie with a
matching identity replaces the stored one, otherwise it is appended.

Persistence writes a sibling temp file and atomically replaces the target, so
a crash between ``merge()`` and ``persist()`` loses only the unpersisted
update and never leaves a half-written file behind.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

if TYPE_CHECKING:
    from flexscrape.browser.driver import PageDriver, ResponseInfo

logger = logging.getLogger(__name__)

# Fields promoted to CookieRecord attributes; everything else is kept verbatim.
_CORE_FIELDS = ("domain", "name", "value", "path")


@dataclass(frozen=True)
class CookieRecord:
    """A single cookie with its identity fields split out."""

    domain: str
    name: str
    value: str
    path: str = "/"
    attributes: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def key(self) -> tuple[str, str, str]:
        """Identity key used for merging."""
        return (self.domain, self.name, self.path)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CookieRecord":
        return cls(
            domain=str(data.get("domain", "")),
            name=str(data["name"]),
            value=str(data.get("value", "")),
            path=str(data.get("path") or "/"),
            attributes={k: v for k, v in data.items() if k not in _CORE_FIELDS},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "domain": self.domain,
            "path": self.path,
            **self.attributes,
        }


def _domain_matches(cookie_domain: str, host: str) -> bool:
    """Return True if a cookie scoped to *cookie_domain* applies to *host*."""
    cd = cookie_domain.lstrip(".").lower()
    h = host.lstrip(".").lower()
    return h == cd or h.endswith("." + cd)


class CookieStore:
    """Thread-safe, file-backed cookie jar keyed by domain.

    Args:
        file_path: JSON file to load from and persist to. ``None`` keeps the
            store in memory only.
    """

    def __init__(self, file_path: Path | str | None = None) -> None:
        self._path = Path(file_path) if file_path else None
        self._jar: dict[str, dict[tuple[str, str], CookieRecord]] = {}
        self._lock = threading.Lock()
        self._subscribed: set[int] = set()
        if self._path:
            self.load()

    @property
    def path(self) -> Path | None:
        return self._path

    def __len__(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._jar.values())

    # ------------------------------------------------------------------
    # Load / persist
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Load cookies from disk, replacing the in-memory jar.

        Accepts the domain-keyed object format and a legacy flat array of
        cookie dicts. A missing file leaves the store empty.
        """
        if not self._path or not self._path.is_file():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Failed to load cookies from %s: %s", self._path, e)
            return

        if isinstance(data, dict):
            cookies = [c for domain_cookies in data.values() for c in domain_cookies]
        elif isinstance(data, list):
            cookies = data
        else:
            logger.error("Unexpected cookie file layout in %s: %s", self._path, type(data).__name__)
            return

        with self._lock:
            self._jar.clear()
        self.merge(cookies)
        logger.info("Loaded %d cookies from %s", len(self), self._path)

    def persist(self) -> None:
        """Write the jar to disk (temp file + atomic replace)."""
        if not self._path:
            return
        with self._lock:
            snapshot = self._snapshot()
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._path.with_name(self._path.name + ".tmp")
            tmp.write_text(json.dumps(snapshot, indent=2), encoding="utf-8")
            os.replace(tmp, self._path)
        logger.debug("Cookies saved: %s", self._path)

    def _snapshot(self) -> dict[str, list[dict[str, Any]]]:
        return {
            domain: [c.to_dict() for c in cookies.values()]
            for domain, cookies in self._jar.items()
        }

    # ------------------------------------------------------------------
    # Queries / merge
    # ------------------------------------------------------------------

    def get_all(self) -> list[dict[str, Any]]:
        """Return every stored cookie as a browser-ready dict."""
        with self._lock:
            return [c.to_dict() for cookies in self._jar.values() for c in cookies.values()]

    def get_for_domain(self, domain: str) -> list[dict[str, Any]]:
        """Return cookies that apply to *domain* (parent-domain cookies included)."""
        with self._lock:
            return [
                c.to_dict()
                for cookie_domain, cookies in self._jar.items()
                if _domain_matches(cookie_domain, domain)
                for c in cookies.values()
            ]

    def merge(self, new_cookies: Iterable[dict[str, Any] | CookieRecord]) -> int:
        """Merge cookies by ``(domain, name, path)``; last write wins.

        Returns:
            Number of cookies that were added or changed.
        """
        changed = 0
        with self._lock:
            for raw in new_cookies:
                cookie = raw if isinstance(raw, CookieRecord) else CookieRecord.from_dict(raw)
                bucket = self._jar.setdefault(cookie.domain, {})
                existing = bucket.get((cookie.name, cookie.path))
                if existing is None or existing.to_dict() != cookie.to_dict():
                    changed += 1
                bucket[(cookie.name, cookie.path)] = cookie
        return changed

    # ------------------------------------------------------------------
    # Browser hand-off
    # ------------------------------------------------------------------

    def attach(self, driver: PageDriver) -> None:
        """Subscribe to *driver* responses so ``Set-Cookie`` batches flow into the jar.

        Registers at most once per driver. On each response that carries a
        ``set-cookie`` header the browser's full cookie list is read, merged
        and persisted from a worker thread.
        """
        if id(driver) in self._subscribed:
            return
        self._subscribed.add(id(driver))

        async def _on_response(response: ResponseInfo) -> None:
            if "set-cookie" not in {k.lower() for k in response.headers}:
                return
            try:
                cookies = await driver.cookies()
            except Exception as e:
                logger.warning("Error reading cookies after %s: %s", response.url, e)
                return
            if self.merge(cookies):
                logger.debug("Cookies updated from response %s", response.url)
                await asyncio.to_thread(self.persist)

        driver.on_response(_on_response)

"""Tests for the domain-keyed cookie store."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import patch

import pytest

from flexscrape.cookies import CookieStore


def _cookie(name: str, value: str, domain: str = ".example.com", path: str = "/", **extra) -> dict:
    return {"name": name, "value": value, "domain": domain, "path": path, **extra}


class TestMerge:
    """Last-write-wins merge on (domain, name, path)."""

    def test_merge_adds_and_replaces(self) -> None:
        store = CookieStore()
        assert store.merge([_cookie("sid", "1"), _cookie("theme", "dark")]) == 2
        assert store.merge([_cookie("sid", "2")]) == 1
        values = {c["name"]: c["value"] for c in store.get_all()}
        assert values == {"sid": "2", "theme": "dark"}
        assert len(store) == 2

    def test_unchanged_cookie_not_counted(self) -> None:
        store = CookieStore()
        store.merge([_cookie("sid", "1")])
        assert store.merge([_cookie("sid", "1")]) == 0

    def test_path_is_part_of_identity(self) -> None:
        store = CookieStore()
        store.merge([_cookie("sid", "1", path="/"), _cookie("sid", "2", path="/app")])
        assert len(store) == 2

    def test_domain_is_part_of_identity(self) -> None:
        store = CookieStore()
        store.merge([_cookie("sid", "1", domain="a.test"), _cookie("sid", "2", domain="b.test")])
        assert len(store) == 2

    def test_extra_attributes_preserved(self) -> None:
        store = CookieStore()
        store.merge([_cookie("sid", "1", secure=True, httpOnly=True, sameSite="Lax")])
        (cookie,) = store.get_all()
        assert cookie["secure"] is True
        assert cookie["sameSite"] == "Lax"

    def test_get_for_domain_includes_parent_domains(self) -> None:
        store = CookieStore()
        store.merge([_cookie("a", "1", domain=".example.com"), _cookie("b", "2", domain="other.test")])
        names = [c["name"] for c in store.get_for_domain("www.example.com")]
        assert names == ["a"]
        assert store.get_for_domain("notexample.com") == []


class TestPersistence:
    """Loading and atomic saving."""

    def test_round_trip_through_file(self, tmp_path: Path) -> None:
        path = tmp_path / "cookies.json"
        store = CookieStore(path)
        store.merge([_cookie("sid", "1"), _cookie("x", "y", domain="other.test")])
        store.persist()

        data = json.loads(path.read_text())
        assert set(data) == {".example.com", "other.test"}
        assert not (tmp_path / "cookies.json.tmp").exists()

        reloaded = CookieStore(path)
        assert sorted(c["name"] for c in reloaded.get_all()) == ["sid", "x"]

    def test_flat_list_accepted(self, tmp_path: Path) -> None:
        path = tmp_path / "cookies.json"
        path.write_text(json.dumps([_cookie("sid", "1")]))
        assert len(CookieStore(path)) == 1

    def test_missing_file_gives_empty_store(self, tmp_path: Path) -> None:
        assert len(CookieStore(tmp_path / "nope.json")) == 0

    def test_corrupt_file_gives_empty_store(self, tmp_path: Path) -> None:
        path = tmp_path / "cookies.json"
        path.write_text("{not json")
        assert len(CookieStore(path)) == 0

    def test_memory_only_store_does_not_write(self, tmp_path: Path) -> None:
        store = CookieStore()
        store.merge([_cookie("sid", "1")])
        store.persist()
        assert list(tmp_path.iterdir()) == []


class TestAttach:
    """Set-Cookie responses flow into the store."""

    @pytest.mark.anyio
    async def test_set_cookie_response_merges_and_persists(self, tmp_path: Path, fake_page) -> None:
        path = tmp_path / "cookies.json"
        store = CookieStore(path)
        store.attach(fake_page)
        store.attach(fake_page)
        assert len(fake_page.response_callbacks) == 1

        fake_page.cookie_jar = [_cookie("sid", "abc")]
        await fake_page.emit_response("https://example.com/login", headers={"Set-Cookie": "sid=abc"})

        assert store.get_all()[0]["value"] == "abc"
        assert json.loads(path.read_text())[".example.com"][0]["name"] == "sid"

    @pytest.mark.anyio
    async def test_persist_runs_off_the_event_loop(self, tmp_path: Path, fake_page) -> None:
        store = CookieStore(tmp_path / "cookies.json")
        store.attach(fake_page)
        fake_page.cookie_jar = [_cookie("sid", "abc")]

        with patch("flexscrape.cookies.store.asyncio.to_thread", wraps=asyncio.to_thread) as to_thread:
            await fake_page.emit_response("https://example.com/", headers={"set-cookie": "sid=abc"})

        to_thread.assert_called_once_with(store.persist)
        assert (tmp_path / "cookies.json").exists()

    @pytest.mark.anyio
    async def test_response_without_set_cookie_ignored(self, tmp_path: Path, fake_page) -> None:
        path = tmp_path / "cookies.json"
        store = CookieStore(path)
        store.attach(fake_page)
        fake_page.cookie_jar = [_cookie("sid", "abc")]
        await fake_page.emit_response("https://example.com/", headers={"content-type": "text/html"})
        assert len(store) == 0
        assert not path.exists()

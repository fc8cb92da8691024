"""Tests for browser profile construction and Playwright adapter helpers."""

from __future__ import annotations

import random

import pytest

from flexscrape.browser.playwright_driver import load_state, to_playwright_cookie
from flexscrape.browser.stealth import (
    STEALTH_SCRIPT,
    apply_stealth_scripts,
    build_browser_profile,
    random_user_agent,
)


class TestBrowserProfile:
    """Launch/context arguments."""

    def test_proxy_and_headless(self) -> None:
        profile = build_browser_profile(headless=False, proxy_url="http://p:8080", rng=random.Random(1))
        assert profile.launch_args["headless"] is False
        assert profile.launch_args["proxy"] == {"server": "http://p:8080"}
        assert profile.proxy_url == "http://p:8080"

    def test_fingerprint_randomized(self) -> None:
        profile = build_browser_profile(rng=random.Random(3))
        ctx = profile.context_args
        assert ctx["user_agent"].startswith("Mozilla/5.0")
        assert "Chrome/" in ctx["user_agent"]
        assert set(ctx["viewport"]) == {"width", "height"}
        assert ctx["locale"] and ctx["timezone_id"]

    def test_same_seed_same_fingerprint(self) -> None:
        a = build_browser_profile(rng=random.Random(9))
        b = build_browser_profile(rng=random.Random(9))
        assert a.context_args == b.context_args

    def test_fingerprint_disabled(self) -> None:
        profile = build_browser_profile(randomize_fingerprint=False)
        assert profile.context_args == {}
        assert "proxy" not in profile.launch_args

    def test_user_agent_pool(self) -> None:
        assert "Chrome/" in random_user_agent(random.Random(0))

    @pytest.mark.anyio
    async def test_stealth_scripts_registered(self, fake_page) -> None:
        await apply_stealth_scripts(fake_page)
        assert fake_page.init_scripts == [STEALTH_SCRIPT]


class TestPlaywrightHelpers:
    """Pure helpers of the Playwright adapter."""

    @pytest.mark.parametrize(
        ("given", "expected"),
        [
            ("networkidle0", "networkidle"),
            ("networkidle2", "networkidle"),
            ("domcontentloaded", "domcontentloaded"),
            ("LOAD", "load"),
            ("", "load"),
            ("whenever", "load"),
        ],
    )
    def test_load_state(self, given: str, expected: str) -> None:
        assert load_state(given) == expected

    def test_cookie_fields_filtered(self) -> None:
        cookie = {
            "name": "sid",
            "value": "1",
            "domain": ".example.com",
            "path": "/",
            "sameSite": "lax",
            "session": True,
            "size": 12,
            "expires": None,
        }
        assert to_playwright_cookie(cookie) == {
            "name": "sid",
            "value": "1",
            "domain": ".example.com",
            "path": "/",
            "sameSite": "Lax",
        }

    def test_unknown_same_site_dropped(self) -> None:
        cookie = to_playwright_cookie({"name": "a", "value": "b", "domain": "x", "sameSite": "unspecified"})
        assert "sameSite" not in cookie

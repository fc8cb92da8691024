"""Navigation, input and cursor step handler tests."""

from __future__ import annotations

import pytest

from flexscrape.browser.motion import BLUR_SCRIPT, FOCUS_SCRIPT, MOUSELEAVE_SCRIPT
from flexscrape.exceptions import NavigationTimeoutError
from flexscrape.steps.interpreter import StepInterpreter
from flexscrape.steps.models import (
    BlockResourcesStep,
    ClickStep,
    ConfigureStep,
    DebugMouseStep,
    DelayRange,
    DetectCaptchaStep,
    DisableRequestInterceptionStep,
    HumanLikeTextExtractionStep,
    InsertDataStep,
    PaginateStep,
    Position,
    PressEnterStep,
    RandomMouseMovementStep,
    RefreshPageStep,
    StepOutWindowStep,
)


class TestConfigure:
    """CONFIGURE and resource blocking."""

    @pytest.mark.anyio
    async def test_configure_updates_session(self, session, fake_page) -> None:
        await StepInterpreter().run(
            [ConfigureStep(concurrency=3, blocked_resources=["image"], output_file_name="x.jsonl")], session
        )
        assert session.config.concurrency == 3
        assert session.config.blocked_resources == ("image",)
        assert session.config.output_file_name == "x.jsonl"
        assert fake_page.blocked == ["image"]

    @pytest.mark.anyio
    async def test_missing_fields_fall_back_to_settings(self, session, settings) -> None:
        await StepInterpreter().run([ConfigureStep(concurrency=9), ConfigureStep()], session)
        assert session.config.concurrency == 9
        assert session.config.page_timeout_ms == settings.scrape.page_timeout_ms

    @pytest.mark.anyio
    async def test_block_and_unblock(self, session, fake_page) -> None:
        await StepInterpreter().run([BlockResourcesStep(resource_types=["font", "media"])], session)
        assert fake_page.blocked == ["font", "media"]
        await StepInterpreter().run([DisableRequestInterceptionStep()], session)
        assert fake_page.blocked is None


class TestClick:
    """CLICK retries and navigation handling."""

    @pytest.mark.anyio
    async def test_click_inside_element(self, session, fake_page) -> None:
        el = fake_page.add("button.go")
        await StepInterpreter().run([ClickStep(selector="button.go")], session)
        assert len(fake_page.clicks) == 1
        x, y = fake_page.clicks[0]
        assert el.box.x <= x <= el.box.right
        assert el.box.y <= y <= el.box.bottom

    @pytest.mark.anyio
    async def test_missing_element_stops_run(self, session, fake_page) -> None:
        results = await StepInterpreter().run([ClickStep(xpath="//button")], session)
        assert results == []
        assert fake_page.clicks == []

    @pytest.mark.anyio
    async def test_navigation_timeout_retried_then_continues(self, session, fake_page) -> None:
        fake_page.add("a.next")
        fake_page.navigation_error = NavigationTimeoutError(timeout_ms=10)
        await StepInterpreter().run([ClickStep(selector="a.next", wait_for_nav=True, max_retries=2)], session)
        assert len(fake_page.clicks) == 2
        assert fake_page.navigations == 2

    @pytest.mark.anyio
    async def test_waits_for_navigation(self, session, fake_page) -> None:
        fake_page.add("a.next")
        await StepInterpreter().run([ClickStep(selector="a.next", wait_for_nav=True)], session)
        assert fake_page.navigations == 1


class TestPaginate:
    """PAGINATE stops when the next button disappears."""

    @pytest.mark.anyio
    async def test_clicks_up_to_page_count(self, session, fake_page) -> None:
        fake_page.add("xpath=//a[@rel='next']")
        await StepInterpreter().run([PaginateStep(next_button_xpath="//a[@rel='next']", pages_to_scrape=3)], session)
        assert len(fake_page.clicks) == 3
        assert fake_page.navigations == 3

    @pytest.mark.anyio
    async def test_stops_without_button(self, session, fake_page) -> None:
        results = await StepInterpreter().run(
            [PaginateStep(next_button_xpath="//a[@rel='next']", pages_to_scrape=3)], session
        )
        assert fake_page.clicks == []
        assert results == []

    @pytest.mark.anyio
    async def test_stops_on_navigation_error(self, session, fake_page) -> None:
        fake_page.add("xpath=//a[@rel='next']")
        fake_page.navigation_error = NavigationTimeoutError(timeout_ms=10)
        results = await StepInterpreter().run(
            [PaginateStep(next_button_xpath="//a[@rel='next']", pages_to_scrape=3)], session
        )
        assert len(fake_page.clicks) == 1
        assert results == []


class TestKeyboardAndText:
    """PRESS_ENTER, INSERT_DATA and HUMAN_LIKE_TEXT_EXTRACTION."""

    @pytest.mark.anyio
    async def test_press_enter(self, session, fake_page, fake_sleep) -> None:
        step = PressEnterStep(delay=DelayRange(min=100, max=100), hold_duration=DelayRange(min=80, max=80))
        await StepInterpreter().run([step], session)
        assert fake_page.keys == [("down", "Enter"), ("up", "Enter")]
        assert fake_sleep.calls == [0.1, 0.08]

    @pytest.mark.anyio
    async def test_insert_data_types_each_character(self, session, fake_page) -> None:
        field = fake_page.add("xpath=//input[@name='q']")
        await StepInterpreter().run([InsertDataStep(xpath="//input[@name='q']", text="hello")], session)
        assert field.typed == list("hello")
        assert len(fake_page.clicks) == 1

    @pytest.mark.anyio
    async def test_human_like_text_extraction_returns_text(self, session, fake_page) -> None:
        fake_page.add("p.lead", text="  Some lead paragraph.  ")
        results = await StepInterpreter().run([HumanLikeTextExtractionStep(selector="p.lead")], session)
        assert results == ["Some lead paragraph."]
        assert fake_page.moves


class TestRefresh:
    """REFRESH_PAGE keeps cookies."""

    @pytest.mark.anyio
    async def test_cookies_restored_after_reload(self, session, fake_page) -> None:
        fake_page.cookie_jar = [{"name": "sid", "value": "1", "domain": "example.com", "path": "/"}]
        await StepInterpreter().run([RefreshPageStep()], session)
        assert fake_page.reloads == 1
        assert {"name": "sid", "value": "1", "domain": "example.com", "path": "/"} in fake_page.cookie_jar

    @pytest.mark.anyio
    async def test_reload_timeout_is_not_fatal(self, session, fake_page) -> None:
        fake_page.reload_error = NavigationTimeoutError(timeout_ms=10)
        results = await StepInterpreter().run([RefreshPageStep(), PressEnterStep()], session)
        assert results == []
        assert fake_page.keys == [("down", "Enter"), ("up", "Enter")]


class TestCursorSteps:
    """DEBUG_MOUSE, RANDOM_MOUSE_MOVEMENT and STEP_OUT_WINDOW."""

    @pytest.mark.anyio
    async def test_debug_mouse_places_cursor(self, session, fake_page) -> None:
        await StepInterpreter().run(
            [DebugMouseStep(start_position=Position(x=50, y=60), cursor_color="blue")], session
        )
        assert fake_page.moves[-1] == (50, 60)
        assert session.flags.debug_mouse is True
        assert session.motion.cursor_color == "blue"
        assert any(arg == "blue" for _script, arg in fake_page.evaluated)

    @pytest.mark.anyio
    async def test_random_mouse_movement_terminates(self, session, fake_page) -> None:
        await StepInterpreter().run([RandomMouseMovementStep(duration_ms=500)], session)
        assert fake_page.moves
        assert all(0 <= x <= 1280 and 0 <= y <= 800 for x, y in fake_page.moves)

    @pytest.mark.anyio
    async def test_step_out_dispatches_window_events(self, session, fake_page) -> None:
        await StepInterpreter().run(
            [StepOutWindowStep(duration=DelayRange(min=100, max=100), move_back_delay=DelayRange(min=10, max=10))],
            session,
        )
        scripts = [script for script, _arg in fake_page.evaluated]
        assert scripts.index(MOUSELEAVE_SCRIPT) < scripts.index(BLUR_SCRIPT) < scripts.index(FOCUS_SCRIPT)


class TestDetectCaptcha:
    """DETECT_CAPTCHA never fails the run."""

    @pytest.mark.anyio
    async def test_no_captcha(self, session, fake_page) -> None:
        results = await StepInterpreter().run([DetectCaptchaStep()], session)
        assert results == []

    @pytest.mark.anyio
    async def test_headless_without_solver_skips(self, session, fake_page) -> None:
        fake_page.add("[data-sitekey]", attrs={"data-sitekey": "abc"})
        results = await StepInterpreter().run([DetectCaptchaStep(), PressEnterStep()], session)
        assert results == []
        assert fake_page.keys

"""Retry/backoff record pipeline and JSONL sink tests."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from flexscrape.exceptions import ConfigurationError, FetchExhaustedError
from flexscrape.pipeline import JsonlSink, RecordPipeline, backoff_delay, read_jsonl
from flexscrape.steps.models import DelayRange, RetryPolicy


class TestBackoffDelay:
    """Exponential backoff schedule."""

    def test_schedule_is_capped(self) -> None:
        policy = RetryPolicy(initial_delay=1000, backoff_multiplier=2.0, max_delay=10_000)
        assert [backoff_delay(policy, k) for k in range(1, 7)] == [1000, 2000, 4000, 8000, 10_000, 10_000]

    def test_non_decreasing_and_bounded(self) -> None:
        policy = RetryPolicy(initial_delay=300, backoff_multiplier=1.7, max_delay=5000)
        delays = [backoff_delay(policy, k) for k in range(1, 15)]
        assert delays == sorted(delays)
        assert max(delays) <= 5000

    def test_retry_numbers_start_at_one(self) -> None:
        with pytest.raises(ValueError):
            backoff_delay(RetryPolicy(), 0)


class TestRecordPipeline:
    """Per-record retries and abort semantics."""

    @pytest.mark.anyio
    async def test_retries_then_exhausts(self, tmp_path: Path, rng, fake_sleep) -> None:
        attempts: list[str] = []
        errors: list[BaseException] = []

        async def fetch(record):
            attempts.append(record["link"])
            if record["link"] == "https://x/3":
                raise RuntimeError("down")
            return f"content {record['link']}"

        records = [{"link": f"https://x/{i}"} for i in range(1, 6)]
        policy = RetryPolicy(max_retries=3, initial_delay=1000, max_delay=10_000, jitter=0)
        with JsonlSink(tmp_path / "out.jsonl") as sink:
            pipeline = RecordPipeline(fetch, sink, rng=rng, sleep=fake_sleep, on_error=errors.append)
            with pytest.raises(FetchExhaustedError) as exc_info:
                await pipeline.process_all(records, policy)

        assert exc_info.value.attempts == 4
        assert attempts.count("https://x/3") == 4
        assert "https://x/4" not in attempts
        assert len(errors) == 4
        assert fake_sleep.calls == [1.0, 2.0, 4.0]
        assert [r["link"] for r in read_jsonl(tmp_path / "out.jsonl")] == ["https://x/1", "https://x/2"]

    @pytest.mark.anyio
    async def test_jitter_stays_within_bounds(self, tmp_path: Path, rng, fake_sleep) -> None:
        async def fetch(record):
            raise RuntimeError("down")

        policy = RetryPolicy(max_retries=5, initial_delay=1000, max_delay=1000, jitter=0.1)
        with JsonlSink(tmp_path / "out.jsonl") as sink:
            pipeline = RecordPipeline(fetch, sink, rng=rng, sleep=fake_sleep)
            with pytest.raises(FetchExhaustedError):
                await pipeline.process_one({"link": "https://x"}, policy)
        assert len(fake_sleep.calls) == 5
        assert all(0.9 <= s <= 1.1 for s in fake_sleep.calls)

    @pytest.mark.anyio
    async def test_record_without_link_gets_empty_content(self, tmp_path: Path, rng, fake_sleep) -> None:
        async def fetch(record):
            raise AssertionError("must not fetch")

        with JsonlSink(tmp_path / "out.jsonl") as sink:
            merged = await RecordPipeline(fetch, sink, rng=rng, sleep=fake_sleep).process_one(
                {"title": "t"}, RetryPolicy()
            )
        assert merged == {"title": "t", "content": ""}

    @pytest.mark.anyio
    async def test_request_delay_before_each_record(self, tmp_path: Path, rng, fake_sleep) -> None:
        async def fetch(record):
            return None

        with JsonlSink(tmp_path / "out.jsonl") as sink:
            written = await RecordPipeline(fetch, sink, rng=rng, sleep=fake_sleep).process_all(
                [{"link": "a"}, {"link": "b"}], RetryPolicy(), DelayRange(min=2000, max=2000)
            )
        assert written == 2
        assert fake_sleep.calls == [2.0, 2.0]
        assert [r["content"] for r in read_jsonl(tmp_path / "out.jsonl")] == ["", ""]


class TestJsonl:
    """Sink output and tolerant reading."""

    def test_sink_appends_and_counts(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "out.jsonl"
        sink = JsonlSink(path)
        assert not sink.is_open
        sink.write({"a": 1})
        sink.write({"b": "é"})
        sink.close()
        assert sink.written == 2
        assert path.read_text(encoding="utf-8").splitlines() == ['{"a": 1}', '{"b": "é"}']

    def test_sink_appends_to_existing_file(self, tmp_path: Path) -> None:
        path = tmp_path / "out.jsonl"
        path.write_text('{"a": 0}\n')
        with JsonlSink(path) as sink:
            sink.write({"a": 1})
        assert len(read_jsonl(path)) == 2

    def test_read_skips_truncated_last_line(self, tmp_path: Path) -> None:
        path = tmp_path / "in.jsonl"
        path.write_text('{"a": 1}\n\n{"a": 2}\n{"a": ')
        assert read_jsonl(path) == [{"a": 1}, {"a": 2}]

    def test_read_rejects_malformed_middle_line(self, tmp_path: Path) -> None:
        path = tmp_path / "in.jsonl"
        path.write_text('{"a": 1}\nnot json\n{"a": 2}\n')
        with pytest.raises(ConfigurationError):
            read_jsonl(path)

    def test_read_limit(self, tmp_path: Path) -> None:
        path = tmp_path / "in.jsonl"
        path.write_text("".join(json.dumps({"i": i}) + "\n" for i in range(10)))
        assert [r["i"] for r in read_jsonl(path, limit=3)] == [0, 1, 2]

    def test_read_missing(self, tmp_path: Path) -> None:
        assert read_jsonl(tmp_path / "missing.jsonl") == []

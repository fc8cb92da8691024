"""Record fetch pipeline and JSONL output."""

from flexscrape.pipeline.records import RecordPipeline, backoff_delay
from flexscrape.pipeline.sink import JsonlSink, read_jsonl

__all__ = ["JsonlSink", "RecordPipeline", "backoff_delay", "read_jsonl"]

"""Tests for core utilities."""

import asyncio
import time

import pytest

from rolloutctl.core.async_utils import backoff_delay, call_blocking, run_sync
from rolloutctl.core.utils import (
    append_json_line,
    atomic_write_json,
    chunks,
    merge_dicts,
    parse_key_value_pairs,
    read_json_lines,
    state_filename,
)


class TestUtils:
    """Tests for utils module."""

    def test_merge_dicts_deep(self):
        base = {"policy": {"batch_size": 5, "timeouts": {"install": 600}}, "keep": 1}
        override = {"policy": {"timeouts": {"probe": 5}}}

        merged = merge_dicts(base, override)

        assert merged == {
            "policy": {"batch_size": 5, "timeouts": {"install": 600, "probe": 5}},
            "keep": 1,
        }
        assert "probe" not in base["policy"]["timeouts"]

    def test_parse_key_value_pairs(self):
        assert parse_key_value_pairs(["client=acme", " site = north ", "bogus", "a=b=c"]) == {
            "client": "acme",
            "site": "north",
            "a": "b=c",
        }

    def test_state_filename(self):
        assert state_filename("site-a", ".json") == "site-a.json"
        assert state_filename("site a/b", ".json") == "site%20a%2Fb.json"
        assert state_filename("site a", ".json") != state_filename("site_a", ".json")

    def test_chunks(self):
        assert chunks([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
        assert chunks([], 3) == []

    def test_atomic_write_json_replaces(self, tmp_path):
        path = tmp_path / "nested" / "target.json"

        atomic_write_json(path, {"v": 1})
        atomic_write_json(path, {"v": 2})

        assert path.read_text().count('"v": 2') == 1
        assert [p.name for p in path.parent.iterdir()] == ["target.json"]

    def test_json_lines(self, tmp_path):
        path = tmp_path / "log.jsonl"
        assert read_json_lines(path) == []

        append_json_line(path, {"n": 1})
        append_json_line(path, {"n": 2})

        assert read_json_lines(path) == [{"n": 1}, {"n": 2}]

    def test_append_after_torn_line(self, tmp_path):
        path = tmp_path / "log.jsonl"
        append_json_line(path, {"n": 1})
        with open(path, "a") as f:
            f.write('{"n": ')

        append_json_line(path, {"n": 2})

        assert read_json_lines(path) == [{"n": 1}, {"n": 2}]
        assert path.read_text().endswith('{"n": 2}\n')


class TestAsyncUtils:
    """Tests for async helpers."""

    def test_backoff_delay(self):
        assert backoff_delay(0, 1.0, 30.0) == 1.0
        assert backoff_delay(3, 1.0, 30.0) == 8.0
        assert backoff_delay(10, 1.0, 30.0) == 30.0
        assert backoff_delay(5, 0.0, 30.0) == 0.0

    def test_call_blocking_returns_result(self):
        assert asyncio.run(call_blocking(lambda: 42, timeout=5)) == 42

    def test_call_blocking_timeout(self):
        with pytest.raises(asyncio.TimeoutError):
            asyncio.run(call_blocking(lambda: time.sleep(0.5), timeout=0.05))

    def test_call_blocking_settles_worker(self):
        finished = []

        def slow():
            time.sleep(0.3)
            finished.append(True)

        async def run():
            with pytest.raises(asyncio.TimeoutError):
                await call_blocking(slow, timeout=0.05, settle=True)
            return list(finished)

        assert asyncio.run(run()) == [True]

    def test_run_sync(self):
        async def answer():
            return "ok"

        assert run_sync(answer()) == "ok"

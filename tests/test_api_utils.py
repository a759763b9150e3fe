"""Tests for api_utils retry and deadline helpers."""

import time

import pytest

import api_utils
from api_utils import api_retry, get_anthropic_client, get_openai_client, is_transient_error, run_with_timeout
from errors import StageTimeout


class StatusError(Exception):
    def __init__(self, status_code):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class TestIsTransientError:
    def test_status_codes(self):
        assert is_transient_error(StatusError(429))
        assert is_transient_error(StatusError(503))
        assert not is_transient_error(StatusError(400))

    def test_message_markers(self):
        assert is_transient_error(RuntimeError("Connection reset by peer"))
        assert is_transient_error(RuntimeError("request timed out"))
        assert not is_transient_error(ValueError("bad voice"))


class TestApiRetry:
    @pytest.fixture(autouse=True)
    def no_sleep(self, monkeypatch):
        self.sleeps = []
        monkeypatch.setattr(api_utils.time, "sleep", self.sleeps.append)

    def test_retries_transient_then_succeeds(self):
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise StatusError(529)
            return "ok"

        assert api_retry(flaky, max_retries=3, base_delay=2) == "ok"
        assert self.sleeps == [2, 4]

    def test_non_transient_raises_immediately(self):
        def broken():
            raise StatusError(400)

        with pytest.raises(StatusError):
            api_retry(broken)
        assert self.sleeps == []

    def test_gives_up_after_max_retries(self):
        def always_down():
            raise StatusError(503)

        with pytest.raises(StatusError):
            api_retry(always_down, max_retries=2, base_delay=1)
        assert self.sleeps == [1, 2]


class TestRunWithTimeout:
    def test_returns_result(self):
        assert run_with_timeout(lambda: 42, 5, "quick") == 42

    def test_no_limit(self):
        assert run_with_timeout(lambda: "done", None, "unbounded") == "done"

    def test_times_out(self):
        with pytest.raises(StageTimeout) as exc_info:
            run_with_timeout(lambda: time.sleep(1), 0.05, "slow")
        assert exc_info.value.stage == "slow"
        assert exc_info.value.kind == "timeout"

    def test_exhausted_budget(self):
        with pytest.raises(StageTimeout):
            run_with_timeout(lambda: 1, -3, "late")

    def test_errors_propagate(self):
        def explode():
            raise KeyError("boom")

        with pytest.raises(KeyError):
            run_with_timeout(explode, 5, "explode")


class TestClients:
    def test_missing_keys_return_none(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        monkeypatch.delattr(get_anthropic_client, "_client", raising=False)
        monkeypatch.delattr(get_openai_client, "_client", raising=False)
        assert get_anthropic_client() is None
        assert get_openai_client() is None

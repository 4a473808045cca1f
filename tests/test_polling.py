"""Tests for the bounded poll loop and the log cursor."""

from harborline.polling import LogCursor, PollResult, PollStatus, minutes, poll


class TestPoll:
    async def test_success(self):
        async def check(attempt):
            return PollResult.success("pod") if attempt == 2 else None

        result = await poll(check, interval=0, max_attempts=5, timeout_message="never")
        assert result.ok
        assert result.value == "pod"
        assert result.attempts == 3

    async def test_timeout(self):
        waits = []

        async def check(attempt):
            return None

        result = await poll(
            check, interval=0, max_attempts=3, timeout_message="Pod creation timed out", on_wait=waits.append
        )
        assert result.status is PollStatus.TIMEOUT
        assert result.message == "Pod creation timed out"
        assert result.attempts == 3
        assert waits == [0, 1, 2]

    async def test_fatal(self):
        async def check(attempt):
            return PollResult.fatal("image pull failed")

        result = await poll(check, interval=0, max_attempts=3, timeout_message="t")
        assert result.status is PollStatus.FATAL
        assert result.message == "image pull failed"
        assert result.attempts == 1

    async def test_stop_when(self):
        calls = []

        async def check(attempt):
            calls.append(attempt)
            return None

        result = await poll(
            check, interval=0, max_attempts=10, timeout_message="t", stop_when=lambda: len(calls) >= 2
        )
        assert result.status is PollStatus.STOPPED
        assert calls == [0, 1]

    async def test_async_on_wait(self):
        seen = []

        async def on_wait(attempt):
            seen.append(attempt)

        async def check(attempt):
            return None

        await poll(check, interval=0, max_attempts=2, timeout_message="t", on_wait=on_wait)
        assert seen == [0, 1]


def test_minutes():
    assert minutes(5, 360) == 30
    assert minutes(0, 3) == 1


class TestLogCursor:
    def test_only_new_lines(self):
        cursor = LogCursor()
        assert cursor.advance("a\nb\n") == ["a", "b"]
        assert cursor.advance("a\nb\nc\n") == ["c"]
        assert cursor.advance("a\nb\nc\n") == []

    def test_partial_line_held_back(self):
        cursor = LogCursor()
        assert cursor.advance("a\nhal") == ["a"]
        assert cursor.advance("a\nhalf done\n") == ["half done"]

    def test_final_releases_partial_line(self):
        cursor = LogCursor()
        assert cursor.advance("a\ntail", final=True) == ["a", "tail"]

    def test_empty(self):
        assert LogCursor().advance(None) == []
        assert LogCursor().advance("") == []

    def test_truncated_log_restarts(self):
        cursor = LogCursor()
        cursor.advance("1\n2\n3\n")
        assert cursor.advance("x\n") == ["x"]

"""Bounded polling and incremental log diffing.

``poll`` is the single wait loop used by every orchestrator polling site:
fixed interval, hard attempt limit, typed outcome. ``LogCursor`` remembers
how many lines of a container's log were already forwarded, so a full
re-fetch of the log only yields what is new.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollStatus(str, enum.Enum):
    OK = "ok"
    TIMEOUT = "timeout"
    FATAL = "fatal"
    STOPPED = "stopped"  # the caller's stop_when fired, e.g. the run was swept


@dataclass(frozen=True)
class PollResult(Generic[T]):
    status: PollStatus
    value: T | None = None
    message: str | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status is PollStatus.OK

    @classmethod
    def success(cls, value: Any = None) -> "PollResult":
        return cls(PollStatus.OK, value=value)

    @classmethod
    def fatal(cls, message: str, value: Any = None) -> "PollResult":
        return cls(PollStatus.FATAL, value=value, message=message)


# A check returns None to keep waiting, or a PollResult to stop.
Check = Callable[[int], Awaitable["PollResult | None"]]


async def poll(
    check: Check,
    *,
    interval: float,
    max_attempts: int,
    timeout_message: str,
    on_wait: Callable[[int], Awaitable[None] | None] | None = None,
    stop_when: Callable[[], bool] | None = None,
) -> PollResult:
    """Call ``check(attempt)`` up to ``max_attempts`` times, ``interval`` apart.

    The check decides: return None to keep waiting, ``PollResult.success``
    or ``PollResult.fatal`` to stop. ``on_wait`` runs after every
    inconclusive attempt (used for periodic "still waiting" log lines).
    ``stop_when`` is checked before each attempt and short-circuits the loop
    with ``PollStatus.STOPPED``.
    """
    for attempt in range(max_attempts):
        if stop_when is not None and stop_when():
            return PollResult(PollStatus.STOPPED, attempts=attempt)
        result = await check(attempt)
        if result is not None:
            return PollResult(result.status, result.value, result.message, attempts=attempt + 1)
        if on_wait is not None:
            maybe = on_wait(attempt)
            if asyncio.iscoroutine(maybe):
                await maybe
        await asyncio.sleep(interval)
    logger.debug("Poll gave up after %d attempts: %s", max_attempts, timeout_message)
    return PollResult(PollStatus.TIMEOUT, message=timeout_message, attempts=max_attempts)


def minutes(interval: float, max_attempts: int) -> int:
    """Wall-clock bound of a poll loop, rounded to whole minutes (at least 1)."""
    return max(1, round(interval * max_attempts / 60))


class LogCursor:
    """Watermark over a log that is re-fetched in full on every poll.

    Only complete lines are released: a trailing fragment without a newline
    is held back until the next fetch completes it, unless ``final=True``.
    """

    def __init__(self) -> None:
        self.position = 0

    def advance(self, text: str | None, *, final: bool = False) -> list[str]:
        """Return the lines of ``text`` past the watermark and move it."""
        if not text:
            return []
        lines = text.split("\n")
        if text.endswith("\n"):
            lines.pop()
        elif not final:
            lines.pop()  # incomplete last line
        if len(lines) < self.position:
            # Log was truncated or rotated; start over from its new beginning.
            self.position = 0
        new = lines[self.position :]
        self.position = len(lines)
        return new

    def reset(self) -> None:
        self.position = 0

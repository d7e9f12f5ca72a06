"""Coalescing of incremental text before it is published.

Providers can emit a token every few milliseconds.  The
:class:`FlushScheduler` buffers content and reasoning increments and
hands them to an observer in batches, at most once per ``interval``.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable

DEFAULT_FLUSH_INTERVAL = 0.05

Publisher = Callable[[str, str], None]


class FlushScheduler:
    """Buffers two independent append-only channels for one round.

    ``publish(content_delta, reasoning_delta)`` is called with whatever
    accumulated since the previous flush, never with two empty strings.
    A push flushes right away when ``interval`` has passed since the last
    flush; otherwise a one-shot timer flushes once it has.  ``drain()``
    flushes unconditionally and is safe to call more than once.
    """

    def __init__(
        self,
        publish: Publisher,
        interval: float = DEFAULT_FLUSH_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._publish = publish
        self.interval = interval
        self._clock = clock
        self._content: list[str] = []
        self._reasoning: list[str] = []
        self._last_flush = clock()
        self._timer: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return bool(self._content or self._reasoning)

    def push_content(self, text: str) -> None:
        self._content.append(text)
        self._maybe_flush()

    def push_reasoning(self, text: str) -> None:
        self._reasoning.append(text)
        self._maybe_flush()

    def flush(self) -> None:
        self._cancel_timer()
        self._last_flush = self._clock()
        if not self.pending:
            return
        content = "".join(self._content)
        reasoning = "".join(self._reasoning)
        self._content.clear()
        self._reasoning.clear()
        self._publish(content, reasoning)

    def drain(self) -> None:
        """Publish everything still buffered.  Called once at round end."""
        self.flush()

    def _maybe_flush(self) -> None:
        elapsed = self._clock() - self._last_flush
        if elapsed >= self.interval:
            self.flush()
        elif self._timer is None:
            self._schedule(self.interval - elapsed)

    def _schedule(self, delay: float) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to time against; the next push or drain publishes.
            return
        self._timer = loop.call_later(delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self.flush()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

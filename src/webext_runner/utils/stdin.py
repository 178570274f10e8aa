"""Terminal helpers: raw keypress mode and an async keypress stream."""

from __future__ import annotations

import asyncio
import os
import sys
from collections.abc import AsyncIterator
from typing import Any, TextIO


KEY_CTRL_C = "\x03"
KEY_CTRL_Z = "\x1a"


def is_tty(stream: Any) -> bool:
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


class RawMode:
    """Toggle a terminal between raw keypress mode and its original settings.

    In raw mode Ctrl-C and Ctrl-Z arrive as characters instead of signals.
    """

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream or sys.stdin
        self._saved: list[Any] | None = None

    @property
    def enabled(self) -> bool:
        return self._saved is not None

    def enable(self) -> None:
        if self._saved is not None or not is_tty(self.stream):
            return
        import termios

        fd = self.stream.fileno()
        self._saved = termios.tcgetattr(fd)
        attrs = termios.tcgetattr(fd)
        attrs[3] &= ~(termios.ICANON | termios.ECHO | termios.ISIG)
        attrs[6][termios.VMIN] = 1
        attrs[6][termios.VTIME] = 0
        termios.tcsetattr(fd, termios.TCSADRAIN, attrs)

    def disable(self) -> None:
        if self._saved is None:
            return
        import termios

        termios.tcsetattr(self.stream.fileno(), termios.TCSADRAIN, self._saved)
        self._saved = None


class KeypressReader:
    """Deliver single characters typed on a terminal to asyncio consumers."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream or sys.stdin
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None

    def start(self) -> None:
        if self._loop is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(self.stream.fileno(), self._on_readable)

    def pause(self) -> None:
        """Stop reading from the stream."""
        if self._loop is None:
            return
        self._loop.remove_reader(self.stream.fileno())
        self._loop = None

    def _on_readable(self) -> None:
        data = os.read(self.stream.fileno(), 32)
        if not data:
            self.pause()
            self._queue.put_nowait("")
            return
        for char in data.decode(errors="ignore"):
            self._queue.put_nowait(char)

    async def read_key(self) -> str:
        """Next character, or "" once the stream is closed."""
        return await self._queue.get()

    async def __aiter__(self) -> AsyncIterator[str]:
        while True:
            key = await self.read_key()
            if not key:
                return
            yield key

"""Raw terminal line editing for interactive sessions.

SSH clients with a PTY send keystrokes one byte at a time and expect the
server to echo them back. ``TTYHandler`` keeps the line buffer and turns
each received byte into what should be echoed plus, once Enter is pressed,
the submitted command line.
"""

from __future__ import annotations

from typing import NamedTuple, Optional

CTRL_C = 0x03
CTRL_D = 0x04
BACKSPACE = 0x08
TAB = 0x09
LF = 0x0A
CR = 0x0D
ESC = 0x1B
DEL = 0x7F

ERASE = "\b \b"

# Escape-sequence parser states.
_NORMAL, _ESCAPE, _SEQUENCE = range(3)


class KeyResult(NamedTuple):
    """Outcome of feeding one byte.

    ``command`` is the trimmed submitted line (None if nothing was
    submitted), ``output`` the bytes to echo, ``needs_prompt`` whether a
    fresh prompt should follow and ``logout`` whether the user asked to end
    the session.
    """

    command: Optional[str] = None
    output: str = ""
    needs_prompt: bool = False
    logout: bool = False


_NOTHING = KeyResult()


class TTYHandler:
    """Per-connection byte decoder with an append-only line buffer."""

    def __init__(self) -> None:
        self._buffer: list = []
        self._state = _NORMAL
        self._last_was_cr = False

    @property
    def buffer(self) -> str:
        return "".join(self._buffer)

    def process_byte(self, byte: int) -> KeyResult:
        """Handle a single received byte."""
        after_cr = self._last_was_cr
        self._last_was_cr = byte == CR

        # ANSI escape sequences (arrow keys, function keys) are swallowed.
        if self._state == _ESCAPE:
            self._state = _SEQUENCE if byte in (ord("["), ord("O")) else _NORMAL
            return _NOTHING
        if self._state == _SEQUENCE:
            if 0x40 <= byte <= 0x7E:
                self._state = _NORMAL
            return _NOTHING
        if byte == ESC:
            self._state = _ESCAPE
            return _NOTHING

        if byte in (CR, LF):
            if byte == LF and after_cr:
                return _NOTHING
            line = self.buffer.strip()
            self._buffer.clear()
            if not line:
                return KeyResult(output="\r\n", needs_prompt=True)
            return KeyResult(command=line, output="\r\n")

        if byte in (BACKSPACE, DEL):
            if not self._buffer:
                return _NOTHING
            self._buffer.pop()
            return KeyResult(output=ERASE)

        if byte == CTRL_C:
            self._buffer.clear()
            return KeyResult(output="^C\r\n", needs_prompt=True)

        if byte == CTRL_D:
            self._buffer.clear()
            return KeyResult(output="logout\r\n", logout=True)

        if byte == TAB:
            # No completion. The spaces are echoed only, not buffered.
            return KeyResult(output="  ")

        if 0x20 <= byte <= 0x7E:
            char = chr(byte)
            self._buffer.append(char)
            return KeyResult(output=char)

        return _NOTHING

    def feed(self, data: bytes):
        """Yield a ``KeyResult`` for every byte of ``data`` that produced one."""
        for byte in data:
            result = self.process_byte(byte)
            if result != _NOTHING:
                yield result

    def reset(self) -> None:
        self._buffer.clear()
        self._state = _NORMAL
        self._last_was_cr = False

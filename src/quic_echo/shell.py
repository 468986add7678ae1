"""
Line-oriented console front end for the chat application.

The input loop runs on the calling thread. A render thread polls the message
log and prints whatever is new, so replies show up while the user types.
"""

from __future__ import annotations

import sys
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Final, TextIO

from .app import ChatApplication
from .bridge import Direction, MessageRecord
from .exceptions import ChannelClosed

QUIT_COMMANDS: Final = frozenset({"/quit", "/exit"})
"""Input lines that end the session."""

SENT_MARKER: Final = ">>"
RECEIVED_MARKER: Final = "<<"


def format_record(record: MessageRecord) -> str:
    """Render one log record as a console line."""
    marker = SENT_MARKER if record.direction is Direction.SENT else RECEIVED_MARKER
    return f"{marker} {record.text}"


@dataclass(slots=True)
class ConsoleShell:
    """Reads messages from a line source and prints the conversation."""

    app: ChatApplication
    read_line: Callable[[], str] = field(default=input)
    """Returns the next input line; raises EOFError at end of input."""

    output: TextIO = field(default_factory=lambda: sys.stdout)
    poll_interval: float = 0.1
    _cursor: int = 0
    _render_lock: threading.Lock = field(default_factory=threading.Lock)
    _done: threading.Event = field(default_factory=threading.Event)

    def render_pending(self) -> int:
        """Print records appended since the last call. Returns how many were printed."""
        with self._render_lock:
            records = self.app.log.since(self._cursor)
            for record in records:
                self.output.write(format_record(record) + "\n")
            if records:
                self.output.flush()
            self._cursor += len(records)
            return len(records)

    def run(self) -> None:
        """Read and submit lines until end of input, a quit command, or the client stops."""
        renderer = threading.Thread(target=self._render_loop, name="render", daemon=True)
        renderer.start()
        try:
            self._input_loop()
        finally:
            self._done.set()
            renderer.join()
            self.render_pending()

    def _input_loop(self) -> None:
        while True:
            try:
                line = self.read_line()
            except EOFError:
                return

            text = line.strip()
            if not text:
                continue
            if text in QUIT_COMMANDS:
                return

            try:
                self.app.submit(text)
            except ChannelClosed:
                self.output.write("Client is not running, exiting\n")
                return

    def _render_loop(self) -> None:
        while not self._done.wait(self.poll_interval):
            self.render_pending()

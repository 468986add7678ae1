"""
Message bridge between the UI thread and the network roles.

The UI, the server role and the client role each run on their own thread.
Two structures carry data between them, and nothing else is shared:

    OutboundChannel: UI -> client driver. FIFO of submitted texts. The UI
        thread sends; the client's event loop awaits recv().

    MessageLog: server, client and UI. Ordered, append-only record of the
        conversation guarded by a mutex. Appends are atomic; readers get
        immutable snapshots.
"""

from __future__ import annotations

import asyncio
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from .exceptions import ChannelClosed


class Direction(Enum):
    """Whether a record was typed locally or arrived over the network."""

    SENT = "sent"
    RECEIVED = "received"


@dataclass(frozen=True, slots=True)
class MessageRecord:
    """One entry of the conversation log. Never mutated once appended."""

    text: str
    direction: Direction
    sequence: int
    """Position in the log, starting at zero."""


@dataclass(slots=True)
class MessageLog:
    """
    Ordered, append-only conversation log shared across threads.

    Records are built under the lock, so a reader sees a log either before or
    after an append, never a partially constructed record.
    """

    _records: list[MessageRecord] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)
    """Thread safety lock."""

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def append(self, text: str, direction: Direction) -> MessageRecord:
        """Append a record and return it."""
        with self._lock:
            record = MessageRecord(text=text, direction=direction, sequence=len(self._records))
            self._records.append(record)
            return record

    def snapshot(self) -> tuple[MessageRecord, ...]:
        """Return every record appended so far."""
        with self._lock:
            return tuple(self._records)

    def since(self, index: int) -> tuple[MessageRecord, ...]:
        """
        Return records with a sequence number of at least `index`.

        Renderers keep a cursor and only draw what is new.
        """
        with self._lock:
            return tuple(self._records[index:])


class OutboundChannel:
    """
    Single-producer, single-consumer FIFO from a thread to an event loop.

    send() may be called from any thread. recv() must always be awaited from
    the same event loop, which becomes bound on the first call. Delivery
    preserves submission order.
    """

    __slots__ = ("_lock", "_pending", "_closed", "_loop", "_wakeup")

    def __init__(self) -> None:
        """Initialize an open, empty channel."""
        self._lock = threading.Lock()
        self._pending: deque[str] = deque()
        self._closed = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wakeup: asyncio.Event | None = None

    @property
    def closed(self) -> bool:
        """True once close() was called."""
        with self._lock:
            return self._closed

    def send(self, text: str, on_queued: Callable[[], None] | None = None) -> None:
        """
        Enqueue a text for the consumer.

        `on_queued` runs under the channel lock once the text is accepted, so
        it completes before the consumer can receive the text.

        Raises:
            ChannelClosed: If the channel is closed or its consumer loop is gone.
        """
        with self._lock:
            if self._closed:
                raise ChannelClosed("Outbound channel is closed")
            if not self._notify():
                self._closed = True
                raise ChannelClosed("Outbound channel consumer is gone")
            if on_queued is not None:
                on_queued()
            self._pending.append(text)

    def close(self) -> None:
        """Close the channel. Already queued texts are still delivered."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._notify()

    async def recv(self) -> str:
        """
        Wait for the next text.

        Raises:
            ChannelClosed: Once the channel is closed and drained.
        """
        wakeup = self._bind_consumer()

        while True:
            # Clear before checking: a send after the check sets it again.
            wakeup.clear()
            with self._lock:
                if self._pending:
                    return self._pending.popleft()
                if self._closed:
                    raise ChannelClosed("Outbound channel is closed")
            await wakeup.wait()

    def _bind_consumer(self) -> asyncio.Event:
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._wakeup is None:
                self._loop = loop
                self._wakeup = asyncio.Event()
            elif self._loop is not loop:
                raise RuntimeError("Outbound channel is bound to another event loop")
            return self._wakeup

    def _notify(self) -> bool:
        """Wake the consumer. Caller holds the lock. False if its loop is closed."""
        if self._loop is None or self._wakeup is None:
            return True
        try:
            self._loop.call_soon_threadsafe(self._wakeup.set)
        except RuntimeError:
            return False
        return True


@dataclass(slots=True)
class MessageBridge:
    """The log and the outbound channel, as handed to the UI."""

    log: MessageLog = field(default_factory=MessageLog)
    channel: OutboundChannel = field(default_factory=OutboundChannel)

    def submit(self, text: str) -> MessageRecord:
        """
        Record a locally typed message and queue it for the client.

        Raises:
            ChannelClosed: If the client side no longer accepts messages.
        """
        record: MessageRecord | None = None

        def record_sent() -> None:
            nonlocal record
            record = self.log.append(text, Direction.SENT)

        # Lock order is channel, then log. The SENT record exists only for a
        # queued text and always precedes the reply logged by the driver.
        self.channel.send(text, on_queued=record_sent)
        assert record is not None
        return record

    def close(self) -> None:
        """Stop accepting messages; the client driver exits once drained."""
        self.channel.close()

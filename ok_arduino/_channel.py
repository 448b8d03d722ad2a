import abc
import asyncio
import codecs
import logging
import threading
from collections.abc import Sequence

import pydantic

from ok_arduino import _events
from ok_arduino import _exceptions
from ok_arduino import _transport

log = logging.getLogger("ok_arduino.channel")


class AsyncChannel(abc.ABC):
    """Text-level async reads and writes over a borrowed SerialTransport.

    Every operation checks that the transport is open before any I/O
    and fails with ArduinoPortNotOpen (firing no event) if it isn't.
    Reads fire data_received with exactly the text returned; writes
    fire data_sent with the text BEFORE handing it to the transport.

    Application reads and the automatic read triggered by unsolicited
    input share one queue: while any application read is waiting, the
    automatic read leaves incoming data alone, and runs once the last
    waiting read finishes.
    """

    def __init__(
        self,
        events: _events.AdapterEvents,
        *,
        encoding: str = "utf-8",
        newline: str = "\n",
    ):
        self.events = events
        self._encoding = encoding
        self._newline = newline
        self._read_lock = threading.Lock()
        self._pending_reads = 0
        self._deferred_auto_read = False
        self._decoder = codecs.getincrementaldecoder(encoding)("replace")

    @abc.abstractmethod
    def _current_transport(self) -> _transport.SerialTransport | None: ...

    @abc.abstractmethod
    def _report_fault(self, error: _exceptions.ArduinoException) -> None: ...

    def _borrow(self, verb: str) -> _transport.SerialTransport:
        transport = self._current_transport()
        if transport is None or not transport.is_open():
            port = transport.config.port if transport else None
            message = f"Arduino port not open when attempting to {verb} data"
            raise _exceptions.ArduinoPortNotOpen(message, port)
        return transport

    #
    # Reading
    #

    async def read_line(self) -> str | None:
        """Waits for one line; None at end of stream with nothing left"""

        return await self._read(until=b"\n")

    async def read_to_end(self) -> str:
        """Waits for input, then returns everything available"""

        return await self._read(until=b"") or ""

    async def _read(self, *, until: bytes) -> str | None:
        transport = self._borrow("read")
        with self._read_lock:
            self._pending_reads += 1
        try:
            try:
                data = await transport.read_async(until=until)
            except _exceptions.ArduinoPortNotOpen as ex:
                message = "Arduino port closed while reading data"
                raise _exceptions.ArduinoPortNotOpen(message, ex.port) from ex

            # Still pending, so auto-read can't decode or report later input
            if until and not data:
                return None
            with self._read_lock:
                text = self._decoder.decode(data)
            if until:
                text = text.removesuffix("\n").removesuffix("\r")
            self.events.data_received.fire(self, text)
            return text
        finally:
            with self._read_lock:
                self._pending_reads -= 1
                resume = not self._pending_reads and self._deferred_auto_read
            if resume:
                asyncio.get_running_loop().call_soon(self._resume_auto_read)

    def _resume_auto_read(self) -> None:
        try:
            self._auto_read()
        except _exceptions.ArduinoAdapterClosed:
            pass
        except _exceptions.ArduinoException as exc:
            self._report_fault(exc)

    def _auto_read(self) -> None:
        """Consumes unsolicited input unless an application read waits"""

        with self._read_lock:
            if self._pending_reads:
                log.debug("Auto-read deferred to %d reads", self._pending_reads)
                self._deferred_auto_read = True
                return
            self._deferred_auto_read = False
            transport = self._current_transport()
            if transport is None or not transport.is_open():
                return
            data = transport.read_nowait()
            if not data:
                return
            text = self._decoder.decode(data)

        log.debug("Auto-read %d chars", len(text))
        self.events.data_received.fire(self, text)

    #
    # Writing
    #

    @pydantic.validate_call
    async def write_char(self, value: str) -> None:
        await self._write(_single_char(value))

    async def write_buffer(self, buffer: Sequence[str]) -> None:
        await self._write("".join(buffer))

    async def write_buffer_slice(
        self, buffer: Sequence[str], index: int, count: int
    ) -> None:
        await self._write("".join(_slice(buffer, index, count)))

    @pydantic.validate_call
    async def write_string(self, value: str) -> None:
        await self._write(value)

    @pydantic.validate_call
    async def write_line_char(self, value: str) -> None:
        await self._write(_single_char(value) + self._newline)

    async def write_line_buffer(self, buffer: Sequence[str]) -> None:
        await self._write("".join(buffer) + self._newline)

    async def write_line_buffer_slice(
        self, buffer: Sequence[str], index: int, count: int
    ) -> None:
        text = "".join(_slice(buffer, index, count))
        await self._write(text + self._newline)

    @pydantic.validate_call
    async def write_line_string(self, value: str) -> None:
        await self._write(value + self._newline)

    async def write_line(self) -> None:
        await self._write(self._newline)

    async def _write(self, text: str) -> None:
        transport = self._borrow("write")
        self.events.data_sent.fire(self, text)
        transport.write(text.encode(self._encoding))
        await transport.drain_async()


def _single_char(value: str) -> str:
    if len(value) != 1:
        raise ValueError(f"Expected a single character, got {value!r}")
    return value


def _slice(buffer: Sequence[str], index: int, count: int) -> Sequence[str]:
    if index < 0 or count < 0:
        raise ValueError(f"Negative slice index={index} count={count}")
    if index + count > len(buffer):
        raise ValueError(
            f"Slice index={index} count={count} exceeds length {len(buffer)}"
        )
    return buffer[index : index + count]

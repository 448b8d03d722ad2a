import abc
import asyncio
import contextlib
import enum
import errno
import logging
import msgspec
import serial
import threading
from collections.abc import Callable
from typing import Any

from ok_arduino import _exceptions

log = logging.getLogger("ok_arduino.transport")
data_log = logging.getLogger(log.name + ".data")

# pyserial (posix) raises this when the device vanishes mid-read
_NO_DATA_MESSAGE = "device reports readiness to read but returned no data"


class SerialSignal(enum.Enum):
    CHARS = "chars"
    EOF = "eof"


class TransportConfig(msgspec.Struct, frozen=True):
    port: str
    baud: int
    rts: bool = True
    dtr: bool = True


SignalHandler = Callable[[Any], None]
ErrorHandler = Callable[[_exceptions.ArduinoException], None]


class SerialTransport(abc.ABC):
    """Byte-level duplex serial line with an unsolicited signal channel.

    Signal and error handlers run on the transport's own threads.
    """

    def __init__(self, config: TransportConfig):
        self.config = config
        self.on_signal: SignalHandler | None = None
        self.on_error: ErrorHandler | None = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.config.port!r})"

    def set_handlers(
        self, on_signal: SignalHandler | None, on_error: ErrorHandler | None
    ) -> None:
        self.on_signal = on_signal
        self.on_error = on_error

    @abc.abstractmethod
    def open(self) -> None: ...

    @abc.abstractmethod
    def close(self) -> None: ...

    @abc.abstractmethod
    def is_open(self) -> bool: ...

    @abc.abstractmethod
    def read_nowait(self, max: int = 65536) -> bytes:
        """Removes and returns buffered input without waiting"""

    @abc.abstractmethod
    async def read_async(self, *, until: bytes = b"") -> bytes:
        """Waits for input through 'until' (or any input if empty).

        At end of stream, returns whatever remains (possibly b"").
        """

    @abc.abstractmethod
    def write(self, data: bytes) -> None:
        """Queues 'data' for output"""

    @abc.abstractmethod
    async def drain_async(self) -> None:
        """Waits for queued output to be written"""


class PySerialTransport(SerialTransport):
    def __init__(self, config: TransportConfig):
        super().__init__(config)
        self._cleanup: contextlib.ExitStack | None = None
        self._io: _IoThreads | None = None

    def open(self) -> None:
        if self._io:
            return

        port = self.config.port
        with contextlib.ExitStack() as cleanup:
            log.debug("Opening %s (%s)", port, self.config)
            pyserial = serial.Serial()
            pyserial.port = port
            pyserial.baudrate = self.config.baud
            pyserial.rts = self.config.rts
            pyserial.dtr = self.config.dtr
            pyserial.write_timeout = 0.1
            try:
                pyserial.open()
            except OSError as ex:
                if ex.errno == errno.EBUSY:
                    message = "Serial port busy (EBUSY)"
                else:
                    message = "Serial port open error"
                raise _exceptions.ArduinoOpenException(message, port) from ex

            cleanup.enter_context(pyserial)
            io = cleanup.enter_context(_IoThreads(pyserial, self))
            io.start()
            self._io = io
            self._cleanup = cleanup.pop_all()

    def close(self) -> None:
        if self._cleanup:
            log.debug("Closing %s", self.config.port)
            self._cleanup.close()

    def is_open(self) -> bool:
        io = self._io
        return bool(io and io.pyserial.is_open and not io.exception)

    def read_nowait(self, max: int = 65536) -> bytes:
        io = self._checked_io()
        with io.monitor:
            return io.take_locked(until=b"", max=max) or b""

    async def read_async(self, *, until: bytes = b"") -> bytes:
        io = self._checked_io()
        while True:
            future = io.create_future()  # BEFORE take_locked
            with io.monitor:
                out = io.take_locked(until=until)
            if out is not None:
                return out
            await future

    def write(self, data: bytes) -> None:
        io = self._checked_io()
        with io.monitor:
            if io.exception:
                raise io.exception
            elif data:
                io.outgoing.extend(data)
                io.monitor.notify_all()

    async def drain_async(self) -> None:
        io = self._checked_io()
        while True:
            future = io.create_future()  # BEFORE checking outgoing
            with io.monitor:
                if io.exception:
                    raise io.exception
                elif not io.outgoing:
                    return
            await future

    def _checked_io(self) -> "_IoThreads":
        if not self._io:
            message = "Serial port not open"
            raise _exceptions.ArduinoPortNotOpen(message, self.config.port)
        return self._io


class _IoThreads(contextlib.AbstractContextManager):
    def __init__(self, pyserial: serial.Serial, owner: SerialTransport):
        self.threads: list[threading.Thread] = []
        self.pyserial = pyserial
        self.owner = owner
        self.monitor = threading.Condition()
        self.incoming = bytearray()
        self.outgoing = bytearray()
        self.eof = False
        self.stopping = False
        self.exception: None | _exceptions.ArduinoIoException = None
        self.async_futures: list[asyncio.Future[None]] = []

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.stop()

    def start(self) -> None:
        for t, n in ((self._readloop, "reader"), (self._writeloop, "writer")):
            port = self.pyserial.port
            thread = threading.Thread(target=t, name=f"{port} {n}", daemon=True)
            thread.start()
            self.threads.append(thread)

    def stop(self) -> None:
        with self.monitor:
            self.stopping = True
            if not self.exception:
                message, port = "Serial port was closed", self.pyserial.port
                self.exception = _exceptions.ArduinoPortNotOpen(message, port)
            self._notify_all_locked()

        try:
            self.pyserial.cancel_read()
            self.pyserial.cancel_write()
            log.debug("Cancelled %s I/O", self.pyserial.port)
        except OSError:
            port = self.pyserial.port
            log.warning("Can't cancel %s I/O", port, exc_info=True)

        log.debug("Joining %s I/O threads", self.pyserial.port)
        for thr in self.threads:
            if thr is not threading.current_thread():
                thr.join()

    def take_locked(
        self, *, until: bytes, max: int = 1 << 30
    ) -> bytes | None:
        """Must be run with self.monitor lock held.

        Returns None if the request can't be satisfied yet.
        """

        if until:
            if (end := self.incoming.find(until)) >= 0:
                size = min(end + len(until), max)
                out = bytes(self.incoming[:size])
                del self.incoming[:size]
                return out
        elif self.incoming:
            out = bytes(self.incoming[:max])
            del self.incoming[:max]
            return out

        if self.eof:
            out = bytes(self.incoming[:max])
            del self.incoming[:max]
            return out
        elif self.exception:
            raise self.exception
        return None

    def _readloop(self) -> None:
        log.debug("Starting thread")
        while not self.exception and not self.eof:
            incoming, error, eof = b"", None, False
            try:
                # Block for at least one byte, then grab all available
                incoming = self.pyserial.read(size=1)
                if incoming:
                    waiting = self.pyserial.in_waiting
                    if waiting > 0:
                        incoming += self.pyserial.read(size=waiting)
                else:
                    eof = not self.stopping
            except OSError as ex:
                if not self.stopping and _NO_DATA_MESSAGE in str(ex):
                    data_log.debug("Device gone (%s)", ex)
                    eof = True
                elif not self.stopping:
                    message, port = "Serial read error", self.pyserial.port
                    error = _exceptions.ArduinoIoException(message, port)
                    error.__cause__ = ex
                    data_log.warning("%s", message, exc_info=True)

            with self.monitor:
                if incoming:
                    data_log.debug(
                        "Read %db buf=%db", len(incoming), len(self.incoming)
                    )
                if incoming or error or eof:
                    self.incoming.extend(incoming)
                    self.eof = self.eof or eof
                    self.exception = self.exception or error
                    self._notify_all_locked()

            if incoming:
                self._dispatch(self.owner.on_signal, SerialSignal.CHARS)
            if eof:
                self._dispatch(self.owner.on_signal, SerialSignal.EOF)
            if error:
                self._dispatch(self.owner.on_error, error)

    def _writeloop(self) -> None:
        log.debug("Starting thread")

        # Avoid blocking on writes to avoid pyserial bugs:
        # https://github.com/pyserial/pyserial/issues/280
        # https://github.com/pyserial/pyserial/issues/281
        chunk, error = b"", None
        while not self.exception:
            if chunk:
                try:
                    self.pyserial.write(chunk)
                    self.pyserial.flush()
                except OSError as ex:
                    chunk = b""
                    if not self.stopping:
                        message, port = "Serial write error", self.pyserial.port
                        error = _exceptions.ArduinoIoException(message, port)
                        error.__cause__ = ex
                        data_log.warning("%s", message, exc_info=True)

            with self.monitor:
                if chunk:
                    assert self.outgoing.startswith(chunk)
                    chunk_len, outgoing_len = len(chunk), len(self.outgoing)
                    data_log.debug("Wrote %d/%db", chunk_len, outgoing_len)
                    del self.outgoing[:chunk_len]
                if chunk or error:
                    self.exception = self.exception or error
                    self._notify_all_locked()
                while not self.exception and not self.outgoing:
                    self.monitor.wait()
                chunk = bytes(self.outgoing[:256])

            if error:
                self._dispatch(self.owner.on_error, error)
                error = None

    def _dispatch(self, handler: Callable[[Any], None] | None, arg) -> None:
        """Runs a signal or error handler outside the monitor lock"""

        if handler is None:
            return
        try:
            handler(arg)
        except Exception:
            log.error(
                "%s: Unhandled error in %r handler",
                self.pyserial.port,
                arg,
                exc_info=True,
            )

    def _notify_all_locked(self) -> None:
        """Must be run with self.monitor lock held."""

        self.monitor.notify_all()
        for future in self.async_futures:
            future.get_loop().call_soon_threadsafe(_wake_future, future)
        self.async_futures.clear()

    def create_future(self) -> asyncio.Future[None]:
        """Must be run from an asyncio event loop."""

        future = asyncio.get_running_loop().create_future()
        with self.monitor:
            self.async_futures.append(future)
            data_log.debug(
                "%s: Adding async future -> %d total",
                self.pyserial.port,
                len(self.async_futures),
            )
        return future


def _wake_future(future: asyncio.Future[None]) -> None:
    if not future.done():
        future.set_result(None)

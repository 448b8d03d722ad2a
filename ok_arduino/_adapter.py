import contextlib
import enum
import logging
import threading
from collections.abc import Callable
from typing import Any

import pydantic

from ok_arduino import _channel
from ok_arduino import _events
from ok_arduino import _exceptions
from ok_arduino import _resolver
from ok_arduino import _scanning
from ok_arduino import _transport
from ok_arduino import _vendor_filter
from ok_arduino import _watcher

log = logging.getLogger("ok_arduino.adapter")


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class AdapterOptions(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True)

    baud: pydantic.PositiveInt = 9600
    encoding: str = "utf-8"
    newline: str = "\n"
    auto_read: bool = True
    watch: bool = True
    scan_interval: pydantic.PositiveFloat = 0.5


ScanFunction = Callable[[], list[_scanning.DeviceRecord]]
TransportFactory = Callable[
    [_transport.TransportConfig], _transport.SerialTransport
]


class ArduinoDeviceAdapter(
    _channel.AsyncChannel, contextlib.AbstractContextManager
):
    """Finds the one attached Arduino-class device and talks to it.

    Discovery only retargets the adapter; connect() opens the port.
    State transitions (discovery, connect, disconnect, close) are
    serialized by one lock, including discovery triggered from the
    device watcher thread.
    """

    def __init__(
        self,
        vendors: list[str] | None = None,
        opts: AdapterOptions | int = AdapterOptions(),
        *,
        scan: ScanFunction = _scanning.scan_device_records,
        transport_factory: TransportFactory = _transport.PySerialTransport,
        watcher: _watcher.DeviceWatcher | None = None,
    ):
        self._lock = threading.RLock()
        self._closed = False
        if isinstance(opts, int):
            opts = AdapterOptions(baud=opts)

        super().__init__(
            _events.AdapterEvents(),
            encoding=opts.encoding,
            newline=opts.newline,
        )
        self._opts = opts
        self._vendors = _vendor_filter.merge_vendors(vendors)
        self._scan = scan
        self._transport_factory = transport_factory

        self._state = ConnectionState.DISCONNECTED
        self._endpoint: _resolver.Endpoint | None = None
        self._config: _transport.TransportConfig | None = None
        self._transport: _transport.SerialTransport | None = None

        with contextlib.ExitStack() as cleanup:
            cleanup.callback(self._release_transport)
            if watcher is None and opts.watch:
                watcher = _watcher.PollingDeviceWatcher(
                    scan=scan, interval=opts.scan_interval
                )
            if watcher is not None:
                watcher.start(self._on_device_change)
                cleanup.callback(watcher.stop)
            self._cleanup = cleanup.pop_all()

        log.debug("Adapter for vendors %s at %d baud", self._vendors, opts.baud)

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"ArduinoDeviceAdapter({list(self._vendors)!r}, "
            f"opts={self._opts!r})"
        )

    def __str__(self) -> str:
        with self._lock:
            if self._endpoint:
                return (
                    f"{self._endpoint.display_name} connected at "
                    f"{self._opts.baud} baud."
                )
            return "No Arduino device found."

    @property
    def baud(self) -> int:
        return self._opts.baud

    @property
    def vendors(self) -> tuple[str, ...]:
        return self._vendors

    @property
    def device_name(self) -> str:
        endpoint = self._endpoint
        return endpoint.display_name if endpoint else ""

    @property
    def endpoint(self) -> _resolver.Endpoint | None:
        return self._endpoint

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            transport = self._transport
            if self._state is ConnectionState.CONNECTED and not (
                transport and transport.is_open()
            ):
                log.debug("%s dropped", self._port())
                self._state = ConnectionState.DISCONNECTED
            return self._state

    def close(self) -> None:
        """Stops the device watcher and closes the port; idempotent"""

        with self._lock:
            if self._closed:
                return
            self._closed = True
            log.debug("Closing adapter")

        # The watcher may be waiting for the lock inside discovery
        if hasattr(self, "_cleanup"):
            self._cleanup.close()

    def discover_device(self) -> _resolver.Endpoint | None:
        """Scans for the whitelisted device and retargets the adapter.

        Never opens or closes the port. Raises AmbiguousDeviceError
        (changing nothing) when more than one device matches.
        """

        with self._lock:
            self._check_not_closed()
            records = self._scan()
            endpoint = _resolver.resolve(records, self._vendors)
            if endpoint is None:
                if self._endpoint:
                    log.debug("%s no longer found", self._endpoint)
                self._endpoint = None
                self._config = None
                return None

            if endpoint != self._endpoint:
                log.debug("Found %s", endpoint)
            self._endpoint = endpoint
            self._config = _transport.TransportConfig(
                port=endpoint.port_name,
                baud=self._opts.baud,
                rts=True,
                dtr=True,
            )
            return endpoint

    def connect(self) -> None:
        """Opens the discovered device's port; no-op if already open"""

        # A dropped transport is closed (joining its threads) unlocked
        self._release_transport(dropped_only=True)

        with self._lock:
            self._check_not_closed()
            if self._transport and self._transport.is_open():
                return

            config = self._config
            port = config.port if config else None
            message = (
                "Error occurred while attempting to open the connection"
                " to the Arduino device"
            )

            self._state = ConnectionState.CONNECTING
            try:
                if config is None:
                    raise _exceptions.ArduinoOpenException(
                        "No Arduino device discovered"
                    )
                transport = self._transport_factory(config)
                transport.set_handlers(
                    self._on_transport_signal, self._on_transport_error
                )
                # Input may be signalled as soon as open() returns
                self._transport = transport
                transport.open()
            except Exception as ex:
                self._transport = None
                self._state = ConnectionState.DISCONNECTED
                log.debug("Can't open %s (%s)", port, ex)
                raise _exceptions.ArduinoOpenException(message, port) from ex

            self._state = ConnectionState.CONNECTED
            log.debug("Connected to %s at %d baud", port, self._opts.baud)
            self.events.connected.fire(self)

    def disconnect(self) -> None:
        """Closes the port; no-op if not open (or after close()).

        The transport is detached under the lock but closed outside it,
        since closing joins the I/O threads that run event handlers.
        """

        with self._lock:
            transport = self._detach_transport()
        if transport is None:
            return
        if not transport.is_open():
            self._close_quietly(transport)
            return

        try:
            transport.close()
        except Exception as ex:
            if transport.is_open():
                self._reattach_transport(transport)
            message = (
                "Error occurred while attempting to close the connection"
                " to the Arduino device"
            )
            port = transport.config.port
            raise _exceptions.ArduinoCloseException(message, port) from ex

        log.debug("Disconnected from %s", transport.config.port)
        self.events.disconnected.fire(self)

    def _current_transport(self) -> _transport.SerialTransport | None:
        self._check_not_closed()
        return self._transport

    def _check_not_closed(self) -> None:
        if self._closed:
            raise _exceptions.ArduinoAdapterClosed("Adapter was closed")

    def _detach_transport(
        self, dropped_only: bool = False
    ) -> _transport.SerialTransport | None:
        """Must be run with self._lock held."""

        transport = self._transport
        if transport is None or (dropped_only and transport.is_open()):
            return None
        self._transport = None
        self._state = ConnectionState.DISCONNECTED
        return transport

    def _reattach_transport(self, transport: _transport.SerialTransport):
        with self._lock:
            if self._transport is None and not self._closed:
                self._transport = transport
                self._state = ConnectionState.CONNECTED
                return
        self._close_quietly(transport)

    def _release_transport(self, dropped_only: bool = False) -> None:
        """Drops the transport without events, closing it unlocked"""

        with self._lock:
            transport = self._detach_transport(dropped_only)
        if transport is not None:
            self._close_quietly(transport)

    def _close_quietly(self, transport: _transport.SerialTransport) -> None:
        try:
            transport.close()
        except Exception:
            log.warning("Can't close %r", transport, exc_info=True)

    #
    # Background callbacks (watcher and transport threads)
    #

    def _on_device_change(self) -> None:
        if self._closed:
            return
        try:
            self.discover_device()
        except _exceptions.ArduinoAdapterClosed:
            pass
        except _exceptions.ArduinoException as exc:
            self._report_fault(exc)

    def _on_transport_signal(self, signal: Any) -> None:
        try:
            if signal is _transport.SerialSignal.CHARS:
                if self._opts.auto_read and not self._closed:
                    self._auto_read()
            elif signal is _transport.SerialSignal.EOF:
                raise _exceptions.ArduinoDataInvalid(
                    "Invalid data sent from Arduino device", self._port()
                )
            else:
                raise _exceptions.ArduinoSignalInvalid(
                    f"Invalid data type sent from Arduino device: {signal!r}",
                    self._port(),
                )
        except _exceptions.ArduinoException as exc:
            self._report_fault(exc)

    def _on_transport_error(self, error: _exceptions.ArduinoException) -> None:
        self._report_fault(error)

    def _report_fault(self, error: _exceptions.ArduinoException) -> None:
        if self.events.error_received.handlers():
            log.debug("Background fault: %s", error)
            self.events.error_received.fire(self, error)
        else:
            log.error("Unhandled background fault: %s", error, exc_info=error)

    def _port(self) -> str | None:
        transport = self._transport
        return transport.config.port if transport else None

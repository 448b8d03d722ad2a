import asyncio
import contextlib
import functools
import io
import msgspec
import ok_logging_setup
import os
import pty
import pytest
import typing

import ok_arduino

ok_logging_setup.install(
    {
        "OK_LOGGING_LEVEL": "ok_arduino=DEBUG,WARNING",
        "OK_LOGGING_OUTPUT": "stdout",
    }
)

UNO = ok_arduino.DeviceRecord(vendor_id="2431", caption="Arduino Uno (COM5)")
MEGA = ok_arduino.DeviceRecord(vendor_id="2431", caption="Arduino Mega (COM7)")


class PseudoTtySerial(typing.NamedTuple):
    path: str
    control: io.FileIO
    simulated: io.FileIO


@pytest.fixture
def pty_serial():
    with contextlib.ExitStack() as cleanup:
        ctrl_fd, sim_fd = pty.openpty()
        path = os.ttyname(sim_fd)
        ctrl = cleanup.enter_context(os.fdopen(ctrl_fd, "r+b", buffering=0))
        sim = cleanup.enter_context(os.fdopen(sim_fd, "r+b", buffering=0))
        yield PseudoTtySerial(path=path, control=ctrl, simulated=sim)


@pytest.fixture
def set_scan_override(monkeypatch, tmp_path):
    path = tmp_path / "scan.json"
    path.write_text("[]")
    monkeypatch.setenv("OK_ARDUINO_SCAN_OVERRIDE", str(path))

    def set_records(records: list[ok_arduino.DeviceRecord]):
        path.write_bytes(msgspec.json.encode(records))

    return set_records


class FakeTransport(ok_arduino.SerialTransport):
    """In-memory transport driven from the test's own thread"""

    def __init__(self, config, open_error=None):
        super().__init__(config)
        self.open_error = open_error
        self.close_error = None
        self.open_calls = 0
        self.close_calls = 0
        self.opened = False
        self.eof = False
        self.incoming = bytearray()
        self.sent = bytearray()
        self._waiters: list[asyncio.Future] = []

    def open(self):
        self.open_calls += 1
        if self.open_error:
            raise self.open_error
        self.opened = True

    def close(self):
        self.close_calls += 1
        if self.close_error:
            raise self.close_error
        self.opened = False
        self._wake()

    def is_open(self):
        return self.opened

    def read_nowait(self, max=65536):
        out = bytes(self.incoming[:max])
        del self.incoming[:max]
        return out

    async def read_async(self, *, until=b""):
        while True:
            if not self.opened:
                message = "Serial port was closed"
                raise ok_arduino.ArduinoPortNotOpen(message, self.config.port)
            if until and (end := self.incoming.find(until)) >= 0:
                return self.read_nowait(end + len(until))
            if (not until and self.incoming) or self.eof:
                return self.read_nowait()
            future = asyncio.get_running_loop().create_future()
            self._waiters.append(future)
            await future

    def write(self, data):
        if not self.opened:
            raise ok_arduino.ArduinoPortNotOpen("closed", self.config.port)
        self.sent.extend(data)

    async def drain_async(self):
        if not self.opened:
            raise ok_arduino.ArduinoPortNotOpen("closed", self.config.port)

    def feed(self, data: bytes, signal: bool = False):
        self.incoming.extend(data)
        self._wake()
        if signal:
            self.on_signal(ok_arduino.SerialSignal.CHARS)

    def end_stream(self):
        self.eof = True
        self._wake()

    def _wake(self):
        for future in self._waiters:
            if not future.done():
                future.set_result(None)
        self._waiters.clear()


class FakeWatcher(ok_arduino.DeviceWatcher):
    def __init__(self):
        self.on_change = None
        self.start_calls = 0
        self.stop_calls = 0

    def start(self, on_change):
        self.on_change = on_change
        self.start_calls += 1

    def stop(self):
        self.stop_calls += 1

    def trigger(self):
        self.on_change()


class Rig:
    """Builds adapters over fake scanning, transports and watcher"""

    def __init__(self):
        self.records: list[ok_arduino.DeviceRecord] = []
        self.transports: list[FakeTransport] = []
        self.watcher = FakeWatcher()
        self.open_error: Exception | None = None
        self.events: list[tuple] = []
        self.adapters: list[ok_arduino.ArduinoDeviceAdapter] = []

    @property
    def transport(self) -> FakeTransport:
        return self.transports[-1]

    def scan(self):
        return list(self.records)

    def make_transport(self, config):
        transport = FakeTransport(config, open_error=self.open_error)
        self.transports.append(transport)
        return transport

    def make_adapter(self, vendors=None, **opts):
        adapter = ok_arduino.ArduinoDeviceAdapter(
            vendors,
            ok_arduino.AdapterOptions(**{"watch": False, **opts}),
            scan=self.scan,
            transport_factory=self.make_transport,
            watcher=self.watcher,
        )
        for name in (
            "connected",
            "disconnected",
            "data_received",
            "data_sent",
            "error_received",
        ):
            hook = getattr(adapter.events, name)
            hook.add(functools.partial(self._record, name))
        self.adapters.append(adapter)
        return adapter

    def connected_adapter(self, **opts):
        self.records = [UNO]
        adapter = self.make_adapter(**opts)
        adapter.discover_device()
        adapter.connect()
        self.events.clear()
        return adapter

    def names(self) -> list[str]:
        return [e[0] for e in self.events]

    def _record(self, name, adapter, *args):
        self.events.append((name, *args))


@pytest.fixture
def rig():
    rig = Rig()
    yield rig
    for adapter in rig.adapters:
        adapter.close()

"""
Arduino-class serial device adapter (PySerial wrapper) with vendor-based
discovery, a guarded connection lifecycle, async text I/O and events.
"""

from beartype.claw import beartype_this_package as _beartype_me

# ruff: noqa: E402
_beartype_me()

from ok_arduino._adapter import (
    AdapterOptions,
    ArduinoDeviceAdapter,
    ConnectionState,
)

from ok_arduino._events import AdapterEvents, EventHook

from ok_arduino._exceptions import (
    AmbiguousDeviceError,
    ArduinoAdapterClosed,
    ArduinoCloseException,
    ArduinoDataInvalid,
    ArduinoException,
    ArduinoIoException,
    ArduinoOpenException,
    ArduinoPortNotOpen,
    ArduinoScanException,
    ArduinoSignalInvalid,
)

from ok_arduino._resolver import (
    Endpoint,
    candidates,
    endpoint_from_record,
    resolve,
)
from ok_arduino._scanning import DeviceRecord, scan_device_records
from ok_arduino._transport import (
    PySerialTransport,
    SerialSignal,
    SerialTransport,
    TransportConfig,
)
from ok_arduino._vendor_filter import DEFAULT_VENDORS, matches, merge_vendors
from ok_arduino._watcher import DeviceWatcher, PollingDeviceWatcher

__all__ = [n for n in dir() if not n.startswith("_")]

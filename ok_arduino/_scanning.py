import logging
import msgspec
import natsort
import os
import pathlib
from collections.abc import Callable
from serial.tools import list_ports
from serial.tools import list_ports_common

from ok_arduino import _exceptions

log = logging.getLogger("ok_arduino.scanning")


class DeviceRecord(msgspec.Struct, frozen=True):
    """What the system reports about one attached plug-and-play device"""

    vendor_id: str
    caption: str
    error_code: int = 0

    def __str__(self):
        return self.caption


def scan_device_records(
    accept: Callable[[DeviceRecord], bool] | None = None,
) -> list[DeviceRecord]:
    """Returns device records found on the current system, optionally
    keeping only those 'accept' returns True for"""

    if ov := os.getenv("OK_ARDUINO_SCAN_OVERRIDE"):
        try:
            out = msgspec.json.decode(
                pathlib.Path(ov).read_bytes(), type=list[DeviceRecord]
            )
        except (OSError, msgspec.DecodeError) as ex:
            msg = f"Can't read $OK_ARDUINO_SCAN_OVERRIDE {ov}"
            raise _exceptions.ArduinoScanException(msg) from ex

        log.debug("$OK_ARDUINO_SCAN_OVERRIDE (%s): %d records", ov, len(out))
    else:
        try:
            ports = list_ports.comports()
        except OSError as ex:
            msg = "Can't scan serial devices"
            raise _exceptions.ArduinoScanException(msg) from ex

        out = [_convert_port(p) for p in ports]

    out.sort(key=natsort.natsort_keygen(key=lambda r: r.caption))
    if accept is not None:
        out = [r for r in out if accept(r)]
    log.debug("Found %d device records", len(out))
    return out


def _convert_port(p: list_ports_common.ListPortInfo) -> DeviceRecord:
    _NA = (None, "", "n/a")
    description = "" if p.description in _NA else p.description
    if f"({p.device})" in description:
        caption = description
    else:
        caption = f"{description or p.name} ({p.device})"
    vendor_id = f"{p.vid:04x}" if p.vid is not None else ""
    return DeviceRecord(vendor_id=vendor_id, caption=caption)

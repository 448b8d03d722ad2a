import logging
import msgspec
from collections.abc import Iterable

from ok_arduino import _exceptions
from ok_arduino import _scanning
from ok_arduino import _vendor_filter

log = logging.getLogger("ok_arduino.resolver")


class Endpoint(msgspec.Struct, frozen=True):
    """The one serial port an adapter is bound to"""

    port_name: str
    display_name: str

    def __str__(self):
        return self.display_name


def candidates(
    records: Iterable[_scanning.DeviceRecord],
    whitelist: tuple[str, ...] | list[str],
) -> list[_scanning.DeviceRecord]:
    return [r for r in records if _vendor_filter.matches(r, whitelist)]


def resolve(
    records: Iterable[_scanning.DeviceRecord],
    whitelist: tuple[str, ...] | list[str],
) -> Endpoint | None:
    """Picks the single matching device from 'records'.

    Returns None if nothing matches. Raises AmbiguousDeviceError if more
    than one record matches; guessing could bind to the wrong hardware.
    """

    found = candidates(records, whitelist)
    if not found:
        log.debug("No device matches %s", ", ".join(whitelist))
        return None

    if len(found) > 1:
        raise _exceptions.AmbiguousDeviceError(
            f"{len(found)} Arduino devices found, or corrupted drivers"
            " are causing a false positive:"
            + "".join(f"\n  {r.caption}" for r in found)
        )

    endpoint = endpoint_from_record(found[0])
    log.debug("Resolved %s -> %s", endpoint.display_name, endpoint.port_name)
    return endpoint


def endpoint_from_record(record: _scanning.DeviceRecord) -> Endpoint:
    caption = record.caption
    start = max(caption.rfind(d) for d in _vendor_filter.PORT_DESIGNATORS)
    if start < 0:
        msg = f"No port designator in device caption {caption!r}"
        raise _exceptions.ArduinoScanException(msg)
    port_name = caption[start:].rstrip(")] \t")
    return Endpoint(port_name=port_name, display_name=caption)

from ok_arduino import _scanning

DEFAULT_VENDORS = ("2431", "0403", "40d0")

# Substrings that introduce the port name inside a device caption
PORT_DESIGNATORS = ("COM", "/dev/")


def merge_vendors(vendors: list[str] | None) -> tuple[str, ...]:
    """The whitelist in order, deduplicated, with the defaults appended"""

    out: list[str] = []
    for v in [*(vendors or []), *DEFAULT_VENDORS]:
        if v.casefold() not in (o.casefold() for o in out):
            out.append(v)
    return tuple(out)


def matches(
    record: _scanning.DeviceRecord, whitelist: tuple[str, ...] | list[str]
) -> bool:
    """True if 'record' is a working, vendor-whitelisted serial device"""

    vendor = record.vendor_id.casefold()
    return (
        any(vendor == w.casefold() for w in whitelist)
        and record.error_code == 0
        and any(f"({d}" in record.caption for d in PORT_DESIGNATORS)
    )

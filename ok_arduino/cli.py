#!/usr/bin/env python3

"""CLI tool to find an Arduino-class device and/or talk to it"""

import argparse
import asyncio
import logging
import ok_logging_setup
import ok_arduino
import sys
import threading
import time

ok_logging_setup.skip_traceback_for(ok_arduino.AmbiguousDeviceError)
ok_logging_setup.skip_traceback_for(ok_arduino.ArduinoScanException)
ok_logging_setup.skip_traceback_for(ok_arduino.ArduinoOpenException)


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--vendor",
        "-V",
        action="append",
        default=[],
        help="extra vendor id to accept (repeatable)",
    )
    subparsers = parser.add_subparsers(title="actions", dest="command")
    list_parser = subparsers.add_parser("list", help="List candidate devices")
    list_parser.add_argument(
        "--all", "-a", action="store_true", help="include non-matching devices"
    )
    list_parser.add_argument(
        "--one",
        "-1",
        action="store_true",
        help="require exactly one matching device",
    )

    mon_parser = subparsers.add_parser("monitor", help="Serial monitor")
    mon_parser.add_argument("baud", type=int, help="baud rate")
    mon_parser.add_argument(
        "--wait", "-w", default=0.0, help="seconds to wait", type=float
    )

    args = parser.parse_args()
    if not args.command:
        args = parser.parse_args([*sys.argv[1:], "list"])

    ok_logging_setup.install({"OK_LOGGING_LEVEL": "info"})
    vendors = ok_arduino.merge_vendors(args.vendor)

    if args.command == "list":
        found = ok_arduino.scan_device_records()
        matched = ok_arduino.candidates(found, vendors)
        if not matched:
            ok_logging_setup.exit(
                "🚫 %d devices, none match vendors %s",
                len(found),
                ", ".join(vendors),
            )
        if args.one:
            ok_arduino.resolve(found, vendors)  # raises if ambiguous

        nm = len(matched)
        logging.info("🔌 %d device%s found", nm, "" if nm == 1 else "s")
        for record in found if args.all else matched:
            print(format_line(record, record in matched))

    if args.command == "monitor":
        opts = ok_arduino.AdapterOptions(baud=args.baud, watch=False)
        with ok_arduino.ArduinoDeviceAdapter(list(vendors), opts) as adapter:
            try:
                asyncio.run(run_monitor(adapter, args.wait))
            except KeyboardInterrupt:
                logging.info("👋 Bye")


def format_line(record: ok_arduino.DeviceRecord, hit: bool) -> str:
    try:
        port = ok_arduino.endpoint_from_record(record).port_name
    except ok_arduino.ArduinoScanException:
        port = "?"
    vendor = f"{record.vendor_id}{'✅' if hit else ''}" or "-"
    return f"{port} {vendor} {record.caption!r}"


async def run_monitor(adapter: ok_arduino.ArduinoDeviceAdapter, wait: float):
    deadline = time.monotonic() + wait
    while not adapter.discover_device():
        if time.monotonic() >= deadline:
            ok_logging_setup.exit("❌ No Arduino device found")
        await asyncio.sleep(0.5)

    logging.info("🔎 %s", adapter)
    adapter.events.data_received += lambda _a, text: print(
        text, end="", flush=True
    )
    adapter.connect()
    logging.info("✅ Connected, type lines to send (^D to exit)")

    loop = asyncio.get_running_loop()
    lines: asyncio.Queue[str] = asyncio.Queue()

    def read_stdin():
        for line in sys.stdin:
            loop.call_soon_threadsafe(lines.put_nowait, line)
        loop.call_soon_threadsafe(lines.put_nowait, "")

    threading.Thread(target=read_stdin, name="stdin", daemon=True).start()
    while line := await lines.get():
        await adapter.write_line_string(line.rstrip("\r\n"))

    adapter.disconnect()


if __name__ == "__main__":
    main()

import abc
import logging
import threading
from collections.abc import Callable

from ok_arduino import _exceptions
from ok_arduino import _scanning

log = logging.getLogger("ok_arduino.watcher")


class DeviceWatcher(abc.ABC):
    """Tells its subscriber whenever attached devices may have changed"""

    @abc.abstractmethod
    def start(self, on_change: Callable[[], None]) -> None: ...

    @abc.abstractmethod
    def stop(self) -> None: ...


class PollingDeviceWatcher(DeviceWatcher):
    """Rescans devices periodically and reports any difference"""

    def __init__(
        self,
        scan: Callable[[], list[_scanning.DeviceRecord]] = (
            _scanning.scan_device_records
        ),
        interval: float = 0.5,
    ):
        self._scan = scan
        self._interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def __repr__(self) -> str:
        return f"PollingDeviceWatcher(interval={self._interval!r})"

    def start(self, on_change: Callable[[], None]) -> None:
        if self._thread:
            raise RuntimeError("Watcher already started")

        snapshot = self._snapshot()
        self._thread = threading.Thread(
            target=self._pollloop,
            args=(on_change, snapshot),
            name="device watcher",
            daemon=True,
        )
        self._thread.start()
        log.debug("Watching devices every %.2fs", self._interval)

    def stop(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread and thread is not threading.current_thread():
            thread.join()
            log.debug("Stopped watching devices")

    def _snapshot(self) -> frozenset[_scanning.DeviceRecord] | None:
        try:
            return frozenset(self._scan())
        except _exceptions.ArduinoScanException as exc:
            log.warning("Device scan failed (%s)", exc)
            return None

    def _pollloop(
        self,
        on_change: Callable[[], None],
        last: frozenset[_scanning.DeviceRecord] | None,
    ) -> None:
        while not self._stop.wait(self._interval):
            current = self._snapshot()
            if current is None or current == last:
                continue

            if last is not None:
                added, removed = len(current - last), len(last - current)
                log.debug("Devices changed (+%d -%d)", added, removed)
            last = current
            try:
                on_change()
            except Exception:
                log.error("Unhandled error in device change", exc_info=True)

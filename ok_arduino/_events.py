import logging
import threading
from collections.abc import Callable
from typing import Any

log = logging.getLogger("ok_arduino.events")

Handler = Callable[..., Any]


class EventHook:
    """Ordered, synchronous fan-out of one kind of event"""

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._handlers: list[Handler] = []

    def __repr__(self) -> str:
        return f"EventHook({self.name!r}, {len(self._handlers)} handlers)"

    def __iadd__(self, handler: Handler) -> "EventHook":
        self.add(handler)
        return self

    def __isub__(self, handler: Handler) -> "EventHook":
        self.remove(handler)
        return self

    def add(self, handler: Handler) -> Handler:
        """Subscribes 'handler'; returns it, so this works as a decorator"""

        with self._lock:
            self._handlers.append(handler)
        return handler

    def remove(self, handler: Handler) -> None:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def handlers(self) -> tuple[Handler, ...]:
        with self._lock:
            return tuple(self._handlers)

    def fire(self, *args: Any) -> None:
        """Calls every current handler in order, on this thread.

        Handlers added or removed during delivery take effect on the next
        fire(). A handler exception propagates and skips later handlers.
        """

        handlers = self.handlers()
        if handlers:
            log.debug("Firing %s -> %d handlers", self.name, len(handlers))
        for handler in handlers:
            handler(*args)


class AdapterEvents:
    """The five event kinds an ArduinoDeviceAdapter publishes.

    connected(adapter), disconnected(adapter),
    data_received(adapter, text), data_sent(adapter, text),
    error_received(adapter, error)
    """

    def __init__(self) -> None:
        self.connected = EventHook("connected")
        self.disconnected = EventHook("disconnected")
        self.data_received = EventHook("data_received")
        self.data_sent = EventHook("data_sent")
        self.error_received = EventHook("error_received")

    def __repr__(self) -> str:
        hooks = (
            self.connected,
            self.disconnected,
            self.data_received,
            self.data_sent,
            self.error_received,
        )
        return f"AdapterEvents({', '.join(repr(h) for h in hooks)})"

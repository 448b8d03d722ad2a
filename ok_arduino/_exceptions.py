"""Exception hierarchy for ok_arduino"""


class ArduinoException(Exception):
    def __init__(
        self,
        message: str,
        port: str | None = None,
    ):
        super().__init__(f"{port}: {message}" if port else message)
        self.port = port


class ArduinoOpenException(ArduinoException):
    pass


class ArduinoCloseException(ArduinoException):
    pass


class ArduinoIoException(ArduinoException):
    pass


class ArduinoPortNotOpen(ArduinoIoException):
    pass


class ArduinoDataInvalid(ArduinoException):
    pass


class ArduinoSignalInvalid(ArduinoException, ValueError):
    pass


class AmbiguousDeviceError(ArduinoException):
    pass


class ArduinoScanException(ArduinoException):
    pass


class ArduinoAdapterClosed(ArduinoException):
    pass

"""Error taxonomy for the Aura controller."""


class AuraError(Exception):
    """Base class for all controller errors."""

    hint = "Power cycle the system and retry"


class DeviceConnectionError(AuraError, ConnectionError):
    """The device is absent or cannot be accessed."""

    hint = "Check that the controller is plugged in (lsusb | grep 0b05:19af)"

    def __init__(self, message: str, hint: str | None = None) -> None:
        super().__init__(message)
        if hint is not None:
            self.hint = hint


class DeviceNotFoundError(DeviceConnectionError):
    """No matching device node was found."""


class DevicePermissionError(DeviceConnectionError):
    """The device node exists but is not readable and writable."""

    hint = "Grant access with: sudo chmod 666 /dev/hidrawN (or install a udev rule)"


class TransportError(DeviceConnectionError):
    """A read or write on an open device failed."""

    hint = "Unplug and replug the controller, then run the command again"


class ProtocolError(AuraError):
    """The device sent a malformed or unexpected response."""


class StateError(AuraError):
    """An operation is not valid in the current session state."""

    hint = "Connect to the device before issuing commands"

    def __init__(self, state: object, operation: str) -> None:
        self.state = state
        self.operation = operation
        super().__init__(f"Cannot {operation} while session is {state}")

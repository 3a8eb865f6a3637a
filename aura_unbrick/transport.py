"""Raw HID transport for the Aura controller, built on hidapi."""

import logging
import os

import hid

from aura_unbrick.errors import (
    DeviceConnectionError,
    DeviceNotFoundError,
    DevicePermissionError,
    TransportError,
)
from aura_unbrick.protocol import Protocol, format_packet

log = logging.getLogger(__name__)


def _decode_path(path: bytes | str) -> str:
    return path.decode(errors="replace") if isinstance(path, bytes) else path


def _open_failure(path: bytes | str, error: OSError | None) -> DeviceConnectionError:
    """Classify a failed open as not-found, permission or generic."""
    node = _decode_path(path)
    if isinstance(error, PermissionError):
        return DevicePermissionError(
            f"Permission denied: {node}",
            hint=f"Grant access with: sudo chmod 666 {node} (or install a udev rule)",
        )
    if node.startswith("/dev/"):
        if not os.path.exists(node):
            return DeviceNotFoundError(f"Device not found: {node}")
        if not os.access(node, os.R_OK | os.W_OK):
            return DevicePermissionError(
                f"Permission denied: {node}",
                hint=f"Grant access with: sudo chmod 666 {node} (or install a udev rule)",
            )
    return DeviceConnectionError(f"Failed to open {node}: {error}")


class HidTransport:
    """Exclusive, blocking HID channel to one controller."""

    def __init__(self, protocol: Protocol) -> None:
        self._protocol = protocol
        self._device: hid.device | None = None
        self._device_path: bytes | None = None

    @property
    def connected(self) -> bool:
        return self._device is not None

    @property
    def device_path(self) -> str | None:
        return _decode_path(self._device_path) if self._device_path is not None else None

    def open(self, path: str | None = None) -> None:
        """Open the controller at `path`, or the first matching USB interface.

        Raises DeviceNotFoundError, DevicePermissionError or
        DeviceConnectionError.
        """
        if self._device is not None:
            return

        p = self._protocol
        if path is not None:
            candidates = [path.encode()]
        else:
            candidates = [info["path"] for info in hid.enumerate(p.vendor_id, p.product_id)]
            if not candidates:
                raise DeviceNotFoundError(
                    f"{p.name} not found ({p.vendor_id:04x}:{p.product_id:04x})"
                )

        last_error: OSError | None = None
        for candidate in candidates:
            dev = hid.device()
            try:
                dev.open_path(candidate)
            except OSError as e:
                log.warning("Failed to open device at %s: %s", _decode_path(candidate), e)
                last_error = e
                continue

            self._device = dev
            self._device_path = candidate
            log.info("Connected to %s at %s", p.name, _decode_path(candidate))
            return

        raise _open_failure(candidates[-1], last_error)

    def close(self) -> None:
        """Release the device handle. Safe to call when already closed."""
        if self._device is not None:
            try:
                self._device.close()
            except OSError:
                pass
            log.info("Closed %s", self.device_path)
            self._device = None
            self._device_path = None

    def write(self, packet: bytes) -> int:
        """Write one report. A short write raises TransportError."""
        if self._device is None:
            raise TransportError("Device not open")

        log.debug("-> %s", format_packet(packet))
        try:
            written = self._device.write(packet)
        except OSError as e:
            raise TransportError(f"Write failed: {e}") from e

        if written != len(packet):
            raise TransportError(f"Write failed: expected {len(packet)} bytes, wrote {written}")
        return written

    def read(self, timeout_ms: int) -> bytes | None:
        """Read one report, or None if nothing arrived within the timeout."""
        if self._device is None:
            raise TransportError("Device not open")

        try:
            data = self._device.read(self._protocol.packet_size, timeout_ms)
        except OSError as e:
            raise TransportError(f"Read failed: {e}") from e

        if not data:
            log.debug("<- no response within %d ms", timeout_ms)
            return None

        response = bytes(data)
        log.debug("<- %s", format_packet(response))
        return response

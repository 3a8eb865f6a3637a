"""Shared fixtures: a simulated Aura controller standing in for the HID transport."""

from typing import Callable, Sequence

import pytest

from aura_unbrick.controller import SessionController
from aura_unbrick.errors import TransportError
from aura_unbrick.protocol import Protocol, load_protocol

PROTO = load_protocol("asus-aura-usb")


def build_config_response(
    counts: Sequence[int], protocol: Protocol = PROTO, code: int | None = None,
) -> bytes:
    """A config-table response carrying `counts` at the protocol offsets."""
    raw = bytearray(protocol.packet_size)
    raw[0] = protocol.report_prefix
    raw[1] = protocol.config_response_code if code is None else code
    for offset, count in zip(protocol.channel_count_offsets, counts):
        raw[offset] = count
    return bytes(raw)


class FakeAuraDevice:
    """Transport double that mimics the firmware's runtime/committed tables.

    Set-topology updates the runtime table, commit copies it into the
    committed table (only once topology was sent), and read-config answers
    with the runtime table if present, else the committed one. `stale`, when
    set, is reported instead until the next commit (a bricked table).
    """

    def __init__(self, committed: Sequence[int] = (15, 15, 16)) -> None:
        self.committed = list(committed)
        self.runtime: list[int] | None = None
        self.stale: list[int] | None = None
        self.packets: list[bytes] = []
        self.connected = False
        self.opened_path: str | None = None
        self.open_calls = 0
        self.close_calls = 0
        self.open_error: Exception | None = None
        self.fail_after: int | None = None  # fail writes once this many packets were sent
        self.respond = True
        self._pending: bytes | None = None

    def open(self, path: str | None = None) -> None:
        self.open_calls += 1
        if self.open_error is not None:
            raise self.open_error
        self.connected = True
        self.opened_path = path

    def close(self) -> None:
        self.close_calls += 1
        self.connected = False

    def write(self, packet: bytes) -> int:
        if not self.connected:
            raise TransportError("Device not open")
        if self.fail_after is not None and len(self.packets) >= self.fail_after:
            raise TransportError("Write failed: device gone")
        assert len(packet) == PROTO.packet_size

        self.packets.append(bytes(packet))
        if packet[1:3] == b"\x52\x53":
            if self.runtime is None:
                self.runtime = list(self.committed)
            self.runtime[packet[3]] = packet[4]
        elif packet[1:3] == b"\x3f\x55":
            if self.runtime is not None:
                self.committed = list(self.runtime)
                self.stale = None
        elif packet[1] == 0xB0:
            if self.stale is not None:
                table = self.stale
            elif self.runtime is not None:
                table = self.runtime
            else:
                table = self.committed
            self._pending = build_config_response(table)
        return len(packet)

    def read(self, timeout_ms: int) -> bytes | None:
        response, self._pending = self._pending, None
        return response if self.respond else None

    def sent(self, command: bytes) -> list[bytes]:
        """Packets whose command bytes start with `command`."""
        return [p for p in self.packets if p[1:1 + len(command)] == command]


@pytest.fixture
def protocol() -> Protocol:
    return PROTO


@pytest.fixture
def device() -> FakeAuraDevice:
    return FakeAuraDevice()


@pytest.fixture
def controller(device: FakeAuraDevice) -> SessionController:
    return SessionController(PROTO, transport=device)  # type: ignore[arg-type]


@pytest.fixture
def connected(controller: SessionController, device: FakeAuraDevice) -> SessionController:
    controller.connect()
    device.packets.clear()
    return controller


@pytest.fixture
def config_response() -> Callable[..., bytes]:
    return build_config_response

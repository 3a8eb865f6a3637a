"""Aura USB controller protocol definitions and packet codec.

A Protocol instance encapsulates the USB identification, packet geometry and
config-table layout of a controller model, loaded from protocols.yaml. Its
build_* methods turn semantic commands into 65-byte HID reports and
decode_config() parses the config-table response. Nothing here performs I/O.

Command set reverse-engineered from the ASUS Aura USB firmware (0b05:19af).
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, NamedTuple, Sequence

import yaml

from aura_unbrick.errors import ProtocolError

_PROTOCOLS_FILE = Path(__file__).parent / "protocols.yaml"

DEFAULT_PROTOCOL_KEY = "asus-aura-usb"

# Command codes (byte 1 onward)
CMD_READ_CONFIG = (0xB0,)
CMD_SET_TOPOLOGY = (0x52, 0x53)
CMD_COMMIT = (0x3F, 0x55)
CMD_SET_EFFECT = (0x35,)
CMD_DIRECT_COLOR = (0x40,)


class Color(NamedTuple):
    """RGB triplet. Components are truncated to one byte when encoded."""

    r: int
    g: int
    b: int


BLACK = Color(0, 0, 0)


@dataclass(frozen=True)
class ConfigSnapshot:
    """Decoded view of one config-table read."""

    led_counts: tuple[int, ...]
    channel_active: tuple[bool, ...]
    raw: bytes

    def led_count(self, channel: int) -> int:
        return self.led_counts[channel]


@dataclass(frozen=True)
class Protocol:
    """USB HID protocol definition for an Aura controller model."""

    name: str
    vendor_id: int
    product_id: int

    # Packet geometry
    report_prefix: int
    packet_size: int
    read_timeout_ms: int

    # Config table layout
    config_response_code: int
    channel_count_offsets: tuple[int, ...]

    # Direct color writes
    direct_color_mode: int
    max_direct_colors: int
    max_leds_per_channel: int

    # Brick heuristics
    default_channel_leds: int
    reference_channel: int
    reference_min_leds: int

    default_topology: tuple[tuple[int, int], ...]

    @property
    def channel_count(self) -> int:
        return len(self.channel_count_offsets)

    def _packet(self, *body: int) -> bytes:
        """Zero-filled report with the prefix at byte 0 and body from byte 1."""
        packet = bytearray(self.packet_size)
        packet[0] = self.report_prefix
        for i, value in enumerate(body, start=1):
            packet[i] = value & 0xFF
        return bytes(packet)

    def build_read_config(self) -> bytes:
        """Build the config-table request."""
        return self._packet(*CMD_READ_CONFIG)

    def build_set_topology(self, channel: int, count: int) -> bytes:
        """Build the runtime LED-count command for a channel.

        Values are not range-checked. The firmware has been seen to commit a
        device maximum instead of the requested count for some values.
        """
        return self._packet(*CMD_SET_TOPOLOGY, channel, count)

    def build_commit(self) -> bytes:
        """Build the command persisting runtime state to EEPROM."""
        return self._packet(*CMD_COMMIT)

    def build_set_effect(
        self,
        channel: int,
        mode: int,
        color: Sequence[int] = BLACK,
        brightness: int = 0xFF,
    ) -> bytes:
        """Build a built-in effect selection command."""
        r, g, b = color
        return self._packet(*CMD_SET_EFFECT, channel, mode, r, g, b, brightness)

    def build_direct_colors(
        self, channel: int, offset: int, colors: Iterable[Sequence[int]],
    ) -> bytes:
        """Build a direct per-LED color write starting at LED `offset`.

        At most max_direct_colors triplets fit in one report; the rest are
        dropped and the count byte reports what was actually encoded.
        """
        encoded = list(colors)[: self.max_direct_colors]
        body = [*CMD_DIRECT_COLOR, self.direct_color_mode | channel, offset, len(encoded)]
        for r, g, b in encoded:
            body.extend((r, g, b))
        return self._packet(*body)

    def decode_config(self, response: bytes | Sequence[int] | None) -> ConfigSnapshot:
        """Parse a config-table response.

        Raises ProtocolError if the response is missing, has the wrong
        header or is too short to hold every channel's LED count.
        """
        if not response:
            raise ProtocolError("No config response from device")

        raw = bytes(response)
        if len(raw) < 2 or raw[0] != self.report_prefix or raw[1] != self.config_response_code:
            raise ProtocolError(f"Invalid config response header: {raw[:2].hex(' ').upper()}")

        needed = max(self.channel_count_offsets) + 1
        if len(raw) < needed:
            raise ProtocolError(f"Config response truncated: {len(raw)} bytes, need {needed}")

        counts = tuple(raw[offset] for offset in self.channel_count_offsets)
        return ConfigSnapshot(
            led_counts=counts,
            channel_active=tuple(count > 0 for count in counts),
            raw=raw,
        )

    def validate_topology(self, topology: Mapping[int, int]) -> dict[int, int]:
        """Check a channel → LED count mapping and return it sorted by channel.

        Raises ValueError for unknown channels or counts outside
        1..max_leds_per_channel.
        """
        if not topology:
            raise ValueError("Topology must declare at least one channel")

        validated: dict[int, int] = {}
        for channel, count in sorted(topology.items()):
            if not isinstance(channel, int) or not (0 <= channel < self.channel_count):
                raise ValueError(
                    f"Invalid channel {channel!r}. Must be 0-{self.channel_count - 1}"
                )
            if not isinstance(count, int) or not (1 <= count <= self.max_leds_per_channel):
                raise ValueError(
                    f"Invalid LED count {count!r} for channel {channel}. "
                    f"Must be 1-{self.max_leds_per_channel}"
                )
            validated[channel] = count
        return validated


def format_packet(packet: bytes | Sequence[int], limit: int = 16) -> str:
    """Hex dump of the first `limit` bytes of a packet, for debug logging."""
    data = bytes(packet)
    return f"{data[:limit].hex(' ').upper()} ... ({len(data)} bytes)"


def _load_all() -> dict[str, dict]:
    """Load raw protocol definitions from YAML."""
    with open(_PROTOCOLS_FILE) as f:
        return yaml.safe_load(f)


def available_protocols() -> list[str]:
    """Return the list of available protocol keys."""
    return list(_load_all().keys())


def load_protocol(key: str) -> Protocol:
    """Load a Protocol instance by key from protocols.yaml.

    Raises KeyError if the key is not found.
    """
    protocols = _load_all()
    if key not in protocols:
        available = ", ".join(sorted(protocols.keys()))
        raise KeyError(f"Unknown protocol '{key}'. Available: {available}")

    raw = dict(protocols[key])
    raw["channel_count_offsets"] = tuple(raw["channel_count_offsets"])
    raw["default_topology"] = tuple(sorted(raw["default_topology"].items()))
    return Protocol(**raw)

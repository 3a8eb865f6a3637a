"""Safe session controller for the Aura USB controller.

The firmware keeps two tiers of configuration: a volatile runtime topology
(per-channel LED counts) that must be sent before it accepts anything else in
a session, and the committed copy in EEPROM. Commands sent out of order are
accepted silently and do nothing, and a commit without topology can persist a
broken table. SessionController tracks this as an explicit state machine:

    DISCONNECTED -> LOCKED -> RUNTIME -> COMMITTED

Every public operation goes through transition(), so the legal orderings and
the auto-initialization of topology live in one table.
"""

import logging
from enum import Enum
from typing import Mapping, Sequence

from aura_unbrick.errors import AuraError, StateError
from aura_unbrick.protocol import BLACK, ConfigSnapshot, Protocol
from aura_unbrick.transport import HidTransport

log = logging.getLogger(__name__)


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    LOCKED = "locked"
    RUNTIME = "runtime"
    COMMITTED = "committed"

    def __str__(self) -> str:
        return self.value


class Operation(str, Enum):
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    INIT_TOPOLOGY = "initialize topology"
    WRITE = "write LEDs"
    COMMIT = "commit"
    READ_CONFIG = "read config"
    UNBRICK = "unbrick"

    def __str__(self) -> str:
        return self.value


class Effect(Enum):
    NONE = "none"
    INIT_TOPOLOGY = "init_topology"  # send topology before the operation


_S = SessionState
_O = Operation

_TRANSITIONS: dict[tuple[SessionState, Operation], tuple[SessionState, Effect]] = {
    (_S.DISCONNECTED, _O.CONNECT): (_S.LOCKED, Effect.NONE),

    (_S.LOCKED, _O.INIT_TOPOLOGY): (_S.RUNTIME, Effect.NONE),
    (_S.LOCKED, _O.WRITE): (_S.RUNTIME, Effect.INIT_TOPOLOGY),
    (_S.LOCKED, _O.READ_CONFIG): (_S.LOCKED, Effect.NONE),
    (_S.LOCKED, _O.UNBRICK): (_S.COMMITTED, Effect.NONE),

    (_S.RUNTIME, _O.INIT_TOPOLOGY): (_S.RUNTIME, Effect.NONE),
    (_S.RUNTIME, _O.WRITE): (_S.RUNTIME, Effect.NONE),
    (_S.RUNTIME, _O.COMMIT): (_S.COMMITTED, Effect.NONE),
    (_S.RUNTIME, _O.READ_CONFIG): (_S.RUNTIME, Effect.NONE),
    (_S.RUNTIME, _O.UNBRICK): (_S.COMMITTED, Effect.NONE),

    (_S.COMMITTED, _O.INIT_TOPOLOGY): (_S.RUNTIME, Effect.NONE),
    (_S.COMMITTED, _O.WRITE): (_S.COMMITTED, Effect.NONE),
    (_S.COMMITTED, _O.COMMIT): (_S.COMMITTED, Effect.NONE),
    (_S.COMMITTED, _O.READ_CONFIG): (_S.COMMITTED, Effect.NONE),
    (_S.COMMITTED, _O.UNBRICK): (_S.COMMITTED, Effect.NONE),
}

# Disconnect is legal from anywhere
for _state in SessionState:
    _TRANSITIONS[(_state, _O.DISCONNECT)] = (_S.DISCONNECTED, Effect.NONE)


def transition(state: SessionState, operation: Operation) -> tuple[SessionState, Effect]:
    """Return (next state, effect) for an operation, or raise StateError."""
    try:
        return _TRANSITIONS[(state, operation)]
    except KeyError:
        raise StateError(state, str(operation)) from None


def looks_bricked(snapshot: ConfigSnapshot, default_leds: int) -> bool:
    """Best-effort brick classifier over a config snapshot.

    Bricked if any channel reads exactly 0 LEDs, or if every channel reports
    the same count and that count is not the factory default (the pattern
    left by an accidental whole-device reset). A single degraded channel
    (e.g. 15/15/9) is not detected.
    """
    counts = snapshot.led_counts
    if any(count == 0 for count in counts):
        return True
    return len(set(counts)) == 1 and counts[0] != default_leds


class SessionController:
    """Sequences commands against the controller's two-tier firmware state.

    Not thread-safe: one controller owns one device.
    """

    def __init__(
        self,
        protocol: Protocol,
        topology: Mapping[int, int] | None = None,
        transport: HidTransport | None = None,
        device_path: str | None = None,
    ) -> None:
        self._protocol = protocol
        self._topology = protocol.validate_topology(
            topology if topology is not None else dict(protocol.default_topology)
        )
        self._transport = transport if transport is not None else HidTransport(protocol)
        self._device_path = device_path
        self._state = SessionState.DISCONNECTED

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def topology(self) -> dict[int, int]:
        return dict(self._topology)

    @property
    def protocol(self) -> Protocol:
        return self._protocol

    def __enter__(self) -> "SessionController":
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.disconnect()

    def _set_state(self, new_state: SessionState) -> None:
        if new_state is not self._state:
            log.info("State: %s -> %s", self._state, new_state)
            self._state = new_state

    def _begin(self, operation: Operation) -> SessionState:
        """Validate an operation and run its pre-effect. Returns the target state."""
        target, effect = transition(self._state, operation)
        if effect is Effect.INIT_TOPOLOGY:
            log.info("Topology not initialized, initializing before %s", operation)
            self.init_topology()
        return target

    def _send(self, packet: bytes) -> None:
        self._transport.write(packet)

    def _send_topology(self, topology: Mapping[int, int]) -> None:
        for channel, count in sorted(topology.items()):
            log.debug("Channel %d: %d LEDs", channel, count)
            self._send(self._protocol.build_set_topology(channel, count))

    def connect(self) -> None:
        """Open the device and initialize topology (DISCONNECTED -> RUNTIME).

        The transport is closed again if topology initialization fails.
        """
        target = self._begin(Operation.CONNECT)
        self._transport.open(self._device_path)
        self._set_state(target)

        try:
            self.init_topology()
        except (AuraError, OSError):
            log.warning("Topology initialization failed during connect, closing device")
            self.disconnect()
            raise

    def disconnect(self) -> None:
        """Close the device. A no-op when already disconnected."""
        target = self._begin(Operation.DISCONNECT)
        self._transport.close()
        self._set_state(target)

    def init_topology(self) -> None:
        """Send the configured LED count for every channel, in channel order.

        Idempotent. A failed write leaves the session LOCKED.
        """
        target = self._begin(Operation.INIT_TOPOLOGY)
        log.info("Initializing topology %s", self._topology)
        try:
            self._send_topology(self._topology)
        except (AuraError, OSError):
            self._set_state(SessionState.LOCKED)
            raise
        self._set_state(target)

    def set_led(self, channel: int, index: int, color: Sequence[int]) -> None:
        """Set a single LED on a channel."""
        target = self._begin(Operation.WRITE)
        self._send(self._protocol.build_direct_colors(channel, index, [color]))
        self._set_state(target)

    def set_all_leds(self, channel: int, color: Sequence[int]) -> None:
        """Fill every LED the topology declares for `channel` with one color.

        Channels of up to max_direct_colors LEDs take a single packet; longer
        channels are written in consecutive full packets.

        Raises ValueError if the channel is not part of the topology.
        """
        if channel not in self._topology:
            raise ValueError(f"Channel {channel} is not in the topology {self._topology}")

        target = self._begin(Operation.WRITE)
        count = self._topology[channel]
        step = self._protocol.max_direct_colors
        for offset in range(0, count, step):
            colors = [color] * min(step, count - offset)
            self._send(self._protocol.build_direct_colors(channel, offset, colors))
        self._set_state(target)

    def set_effect(
        self,
        channel: int,
        mode: int,
        color: Sequence[int] = BLACK,
        brightness: int = 0xFF,
    ) -> None:
        """Select a built-in effect mode on a channel."""
        target = self._begin(Operation.WRITE)
        self._send(self._protocol.build_set_effect(channel, mode, color, brightness))
        self._set_state(target)

    def commit(self) -> None:
        """Persist the runtime configuration to EEPROM.

        Only valid once topology is initialized: the firmware acknowledges a
        commit in other states without persisting anything.
        """
        target = self._begin(Operation.COMMIT)
        log.info("Committing runtime configuration to EEPROM")
        self._send(self._protocol.build_commit())
        self._set_state(target)

    def get_config(self) -> ConfigSnapshot:
        """Read and decode the device config table.

        Raises ProtocolError on a missing or malformed response.
        """
        self._begin(Operation.READ_CONFIG)
        self._send(self._protocol.build_read_config())
        response = self._transport.read(self._protocol.read_timeout_ms)
        return self._protocol.decode_config(response)

    def is_bricked(self) -> bool:
        """Heuristically decide whether the device is bricked.

        Returns True when the config table cannot be read at all.
        """
        try:
            snapshot = self.get_config()
        except (AuraError, OSError) as e:
            log.warning("Could not read config, assuming bricked: %s", e)
            return True

        bricked = looks_bricked(snapshot, self._protocol.default_channel_leds)
        log.debug("LED counts %s, bricked=%s", snapshot.led_counts, bricked)
        return bricked

    def unbrick(self, target_topology: Mapping[int, int] | None = None) -> bool:
        """Force topology and commit it, whatever state is being tracked.

        Returns True if the reference channel reads back at least
        reference_min_leds LEDs. The session ends COMMITTED either way, so
        callers must check the result.
        """
        target = self._begin(Operation.UNBRICK)
        topology = (
            self._protocol.validate_topology(target_topology)
            if target_topology is not None
            else self._topology
        )

        p = self._protocol
        log.info("Unbricking with topology %s", topology)
        self._send_topology(topology)
        self._send(p.build_commit())
        self._set_state(target)

        snapshot = self.get_config()
        success = snapshot.led_count(p.reference_channel) >= p.reference_min_leds
        if success:
            log.info("Recovery verified: channel %d reports %d LEDs",
                     p.reference_channel, snapshot.led_count(p.reference_channel))
        else:
            log.warning("Recovery not verified: channel %d reports %d LEDs (expected >= %d)",
                        p.reference_channel, snapshot.led_count(p.reference_channel),
                        p.reference_min_leds)
        return success

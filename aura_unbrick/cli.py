"""Command-line entry point: unbrick, verify and test commands."""

import logging
import sys
import time
from typing import Callable

from aura_unbrick.config import Config
from aura_unbrick.controller import SessionController, SessionState
from aura_unbrick.errors import AuraError, ProtocolError
from aura_unbrick.protocol import BLACK, Color, ConfigSnapshot, load_protocol

log = logging.getLogger(__name__)

LED_TEST_INDEX = 9  # LED 10
LED_TEST_SECONDS = 3.0


def _print_config(snapshot: ConfigSnapshot) -> None:
    for channel, count in enumerate(snapshot.led_counts):
        print(f"  Channel {channel}: {count} LEDs")


def cmd_unbrick(ctl: SessionController, config: Config) -> int:
    """Repair the topology if a brick is detected (or always with --force)."""
    print("Reading current configuration...")
    try:
        _print_config(ctl.get_config())
    except ProtocolError as e:
        print(f"  Could not read configuration: {e}")

    if config.force:
        print("Forcing unbrick procedure...")
    elif ctl.is_bricked():
        print("Bricked state detected, starting unbrick procedure...")
    else:
        print("Configuration looks OK, no unbrick needed.")
        return 0

    if ctl.unbrick():
        print("Unbrick successful. LEDs should respond to commands again.")
        print("Verify with: aura-unbrick verify")
        return 0

    print("Unbrick failed. Power cycle the system, run this command again "
          "and check the BIOS Aura settings.")
    return 1


def cmd_verify(ctl: SessionController, config: Config) -> int:
    """Report the config table and the brick verdict."""
    snapshot = ctl.get_config()
    print("Current configuration:")
    _print_config(snapshot)
    print(f"Session state: {ctl.state}")

    if ctl.is_bricked():
        print("Bricked: YES")
        print("Run: aura-unbrick unbrick")
        return 1

    print("Bricked: NO")

    if config.led_test:
        channel = ctl.protocol.reference_channel
        if snapshot.led_count(channel) > LED_TEST_INDEX:
            print(f"LED {LED_TEST_INDEX + 1} on channel {channel} should be red "
                  f"for {LED_TEST_SECONDS:.0f} seconds...")
            ctl.set_led(channel, LED_TEST_INDEX, Color(0xFF, 0x00, 0x00))
            time.sleep(LED_TEST_SECONDS)
            ctl.set_led(channel, LED_TEST_INDEX, BLACK)
        else:
            print(f"Channel {channel} only has {snapshot.led_count(channel)} LEDs, "
                  f"skipping LED test")

    return 0


def cmd_test(ctl: SessionController, config: Config) -> int:
    """Drive the session through its states against the real device."""
    results: list[bool] = []

    def check(name: str, step: Callable[[], bool]) -> None:
        try:
            ok = step()
        except AuraError as e:
            log.debug("Step '%s' raised", name, exc_info=True)
            ok = False
            name = f"{name} ({type(e).__name__}: {e})"
        print(f"{'PASS' if ok else 'FAIL'}  {name}")
        results.append(ok)

    def connect() -> bool:
        ctl.connect()
        return ctl.state is SessionState.RUNTIME

    def reinit() -> bool:
        ctl.init_topology()
        ctl.init_topology()
        return ctl.state is SessionState.RUNTIME

    def topology_applied() -> bool:
        return any(count > 0 for count in ctl.get_config().led_counts)

    def commit() -> bool:
        ctl.commit()
        return ctl.state is SessionState.COMMITTED

    def disconnect() -> bool:
        ctl.disconnect()
        ctl.disconnect()
        return ctl.state is SessionState.DISCONNECTED

    check("initial state is disconnected", lambda: ctl.state is SessionState.DISCONNECTED)
    check("connect initializes topology", connect)
    if ctl.state is not SessionState.DISCONNECTED:
        check("topology re-initialization is idempotent", reinit)
        check("config table reports LEDs", topology_applied)
        print(f"INFO  brick heuristic: {'bricked' if ctl.is_bricked() else 'healthy'}")
        if config.allow_commit:
            check("commit persists runtime state", commit)
        check("disconnect is idempotent", disconnect)

    failed = results.count(False)
    print(f"{len(results) - failed} passed, {failed} failed")
    return 1 if failed else 0


COMMAND_HANDLERS: dict[str, Callable[[SessionController, Config], int]] = {
    "unbrick": cmd_unbrick,
    "verify": cmd_verify,
    "test": cmd_test,
}


def run(config: Config, controller: SessionController | None = None) -> int:
    """Run the configured command and return the process exit code."""
    ctl = controller or SessionController(
        load_protocol(config.protocol),
        topology=config.topology,
        device_path=config.device_path,
    )

    try:
        if config.command != "test":
            ctl.connect()
        return COMMAND_HANDLERS[config.command](ctl, config)
    except AuraError as e:
        print(f"{type(e).__name__}: {e}", file=sys.stderr)
        print(f"Hint: {e.hint}", file=sys.stderr)
        return 1
    finally:
        ctl.disconnect()


def main(argv: list[str] | None = None) -> None:
    """Entry point."""
    try:
        config = Config.load(argv)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    config.setup_logging()
    sys.exit(run(config))


if __name__ == "__main__":
    main()

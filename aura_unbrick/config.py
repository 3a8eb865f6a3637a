"""Configuration parsing from /etc/default/aura-unbrick and CLI arguments."""

import argparse
import logging
import os
from dataclasses import dataclass

from dotenv import dotenv_values

from aura_unbrick.protocol import DEFAULT_PROTOCOL_KEY, available_protocols, load_protocol

DEFAULT_CONFIG_PATH = "/etc/default/aura-unbrick"
COMMANDS = ("unbrick", "verify", "test")
DEFAULT_COMMAND = "verify"


def _parse_topology(raw: str) -> dict[int, int]:
    """Parse a comma-separated list of channel:count pairs, e.g. "0:15,1:15,2:16"."""
    topology: dict[int, int] = {}
    for item in raw.split(","):
        channel, sep, count = item.partition(":")
        if not sep:
            raise ValueError(f"Invalid topology entry '{item.strip()}'. Expected channel:count")
        channel_num = int(channel.strip())
        if channel_num in topology:
            raise ValueError(f"Channel {channel_num} listed twice in topology: {raw}")
        topology[channel_num] = int(count.strip())
    return topology


def _topology_arg(raw: str) -> dict[int, int]:
    try:
        return _parse_topology(raw)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _parse_cli_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="aura-unbrick",
        description="ASUS Aura USB controller recovery tool",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=None,
        help="Enable debug logging (packet dumps)",
    )
    parser.add_argument(
        "--log-level",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Log level (overrides config file)",
    )
    parser.add_argument(
        "--topology",
        type=_topology_arg,
        help="LED count per channel, e.g. 0:15,1:15,2:16",
    )
    parser.add_argument(
        "--device",
        help="hidraw device node to open instead of enumerating by USB id",
    )
    parser.add_argument(
        "--protocol",
        help="Controller protocol key (see protocols.yaml)",
    )

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    unbrick = commands.add_parser("unbrick", help="Detect and repair a bricked topology")
    unbrick.add_argument(
        "--force",
        action="store_true",
        help="Rewrite and commit the topology even if no brick is detected",
    )

    verify = commands.add_parser("verify", help="Show the config table and brick verdict")
    verify.add_argument(
        "--led-test",
        action="store_true",
        help="Light LED 10 on the reference channel red for a few seconds",
    )

    test = commands.add_parser("test", help="Exercise the session state machine on the device")
    test.add_argument(
        "--commit",
        action="store_true",
        help="Also exercise commit (uses an EEPROM write cycle)",
    )

    return parser.parse_args(argv)


@dataclass
class Config:
    """Tool configuration."""

    command: str = DEFAULT_COMMAND
    protocol: str = DEFAULT_PROTOCOL_KEY
    topology: dict[int, int] | None = None
    device_path: str | None = None
    log_level: str = "INFO"
    debug: bool = False
    force: bool = False
    led_test: bool = False
    allow_commit: bool = False

    def __post_init__(self) -> None:
        if self.command not in COMMANDS:
            raise ValueError(
                f"Invalid command '{self.command}'. Must be one of: {', '.join(COMMANDS)}"
            )

        valid_protocols = available_protocols()
        if self.protocol not in valid_protocols:
            raise ValueError(
                f"Unknown protocol '{self.protocol}'. "
                f"Available: {', '.join(sorted(valid_protocols))}"
            )

        if self.topology is not None:
            self.topology = load_protocol(self.protocol).validate_topology(self.topology)

        if self.debug:
            self.log_level = "DEBUG"

    @classmethod
    def load(cls, argv: list[str] | None = None) -> "Config":
        """Load configuration from environment file, env vars, and CLI args.

        Priority (highest to lowest):
        1. CLI arguments
        2. Environment variables
        3. /etc/default/aura-unbrick file
        4. Dataclass defaults
        """
        file_env = {k: v for k, v in dotenv_values(DEFAULT_CONFIG_PATH).items() if v is not None}

        def env(key: str) -> str | None:
            if key in os.environ:
                return os.environ[key]
            return file_env.get(key)

        kwargs: dict[str, object] = {}

        if (v := env("PROTOCOL")) is not None:
            kwargs["protocol"] = v.lower()

        if (v := env("TOPOLOGY")) is not None:
            try:
                kwargs["topology"] = _parse_topology(v)
            except ValueError:
                pass

        if (v := env("DEVICE_PATH")) is not None and v:
            kwargs["device_path"] = v

        if (v := env("LOG_LEVEL")) is not None:
            kwargs["log_level"] = v.upper()

        if (v := env("DEBUG")) is not None:
            kwargs["debug"] = v.lower() in ("true", "1", "yes")

        # CLI arguments override everything
        args = _parse_cli_args(argv)

        if args.command is not None:
            kwargs["command"] = args.command

        if args.protocol is not None:
            kwargs["protocol"] = args.protocol.lower()

        if args.topology is not None:
            kwargs["topology"] = args.topology

        if args.device is not None:
            kwargs["device_path"] = args.device

        if args.log_level is not None:
            kwargs["log_level"] = args.log_level

        if args.debug is True:
            kwargs["debug"] = True

        kwargs["force"] = getattr(args, "force", False)
        kwargs["led_test"] = getattr(args, "led_test", False)
        kwargs["allow_commit"] = getattr(args, "commit", False)

        return cls(**kwargs)

    def setup_logging(self) -> None:
        """Configure logging based on this config."""
        logging.basicConfig(
            level=getattr(logging, self.log_level, logging.INFO),
            format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

#!/usr/bin/env python3
"""
Console Beacon - make remote-play clients believe a game console is on the LAN.

Answers the discovery probes of PS4 / Steam Deck / Switch (text protocol,
UDP 987) and Xbox (SmartGlass binary protocol, UDP 5050, plus SSDP on
239.255.255.250:1900). Nothing beyond discovery is implemented.

Usage:
    python console_beacon.py --type ps4
    python console_beacon.py --type switch,steamdeck
    python console_beacon.py --type xbox [--config config.yaml]

    Or with environment variables:
    BEACON_TYPE=xbox LOG_LEVEL=DEBUG python console_beacon.py
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional, Sequence

import yaml

from beacon_profiles import ConfigError, ProfileCatalog
from beacon_supervisor import BeaconSupervisor, NoListenersError, plan_endpoints, validate_port

EXIT_OK = 0
EXIT_RUNTIME = 1
EXIT_CONFIG = 2

# -----------------------------------------------------------------------------
# Logging setup
# -----------------------------------------------------------------------------

def setup_logging(level: str = "INFO") -> None:
    """Configure logging format and level."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # psutil is quiet, asyncio is not
    logging.getLogger("asyncio").setLevel(logging.WARNING)


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------

DEFAULTS = {
    "device_type": "ps4",
    "bind_host": "0.0.0.0",
    "port": None,
    "text_port": 987,
    "binary_port": 5050,
    "ssdp_port": 1900,
    "ssdp_group": "239.255.255.250",
    "ssdp_join_group": True,
    "ssdp_advertise_ip": "",
    "profiles_file": "",
    "log_level": "INFO",
}


def load_config(config_path: Optional[Path] = None, environ: Optional[dict] = None) -> dict:
    """Load configuration from YAML file with environment overrides.

    Without an explicit path, config.yaml next to this file is used if present;
    otherwise the defaults apply.
    """
    environ = os.environ if environ is None else environ
    config = DEFAULTS.copy()

    if config_path:
        if not config_path.exists():
            raise FileNotFoundError(f"Config not found: {config_path}")
        path = config_path
    else:
        path = Path(__file__).parent / "config.yaml"
    if path.exists():
        try:
            with open(path) as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid config {path}: {e}") from e
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config {path} must be a mapping")
        config.update(loaded)

    # Environment overrides
    if environ.get("BEACON_TYPE"):
        config["device_type"] = environ["BEACON_TYPE"]
    if environ.get("BEACON_PORT"):
        config["port"] = validate_port(environ["BEACON_PORT"], "BEACON_PORT")
    if environ.get("BEACON_BIND_HOST"):
        config["bind_host"] = environ["BEACON_BIND_HOST"]
    if environ.get("BEACON_ADVERTISE_IP"):
        config["ssdp_advertise_ip"] = environ["BEACON_ADVERTISE_IP"]
    if environ.get("LOG_LEVEL"):
        config["log_level"] = environ["LOG_LEVEL"]

    return config


def build_supervisor(config: dict, logger: logging.Logger) -> BeaconSupervisor:
    """Resolve profiles and plan endpoints. Raises ConfigError before any socket is opened."""
    catalog = ProfileCatalog.load(config.get("profiles_file") or None)
    profiles = catalog.resolve_all(str(config.get("device_type") or ""))
    port = config.get("port")
    specs = plan_endpoints(profiles, config, port_override=port if port not in (None, "") else None)
    logger.info("Emulating: %s", ", ".join(f"{p.name} ({p.binding.value})" for p in profiles))
    return BeaconSupervisor(specs, config, logger)


# -----------------------------------------------------------------------------
# Main entry point
# -----------------------------------------------------------------------------

async def main_async(config: dict) -> int:
    """Run the beacon until a signal arrives or every listener has exited."""
    logger = logging.getLogger("console-beacon")
    supervisor = build_supervisor(config, logger)

    # Handle shutdown gracefully - must not block event loop or Ctrl-C won't work
    stop_event = asyncio.Event()
    _shutting_down = False

    def shutdown():
        nonlocal _shutting_down
        if _shutting_down:
            logger.warning("Second Ctrl-C: forcing exit")
            os._exit(EXIT_RUNTIME)
        _shutting_down = True
        stop_event.set()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown)
    except (NotImplementedError, OSError, RuntimeError):
        # add_signal_handler not supported on Windows - use signal.signal
        try:
            signal.signal(signal.SIGINT, lambda s, f: shutdown())
            signal.signal(signal.SIGTERM, lambda s, f: shutdown())
        except (ValueError, OSError):
            pass

    try:
        await supervisor.start()
    except NoListenersError as e:
        logger.error("%s", e)
        return EXIT_RUNTIME

    stop_wait = asyncio.ensure_future(stop_event.wait())
    all_done = asyncio.ensure_future(supervisor.wait())
    await asyncio.wait({stop_wait, all_done}, return_when=asyncio.FIRST_COMPLETED)
    stop_wait.cancel()

    logger.info("Shutting down...")
    try:
        await asyncio.wait_for(supervisor.stop(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning("Shutdown timed out, exiting anyway")
    all_done.cancel()

    if supervisor.fatal_error is not None:
        return EXIT_RUNTIME
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Console Beacon - emulate game console discovery on the LAN"
    )
    parser.add_argument(
        "--type", "-t",
        dest="device_type",
        default=None,
        help="Device(s) to emulate, comma-separated: ps4, steamdeck, switch (ns), xbox (default: ps4)",
    )
    parser.add_argument(
        "--port", "-p",
        default=None,
        help="Override the text/binary discovery port",
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=None,
        help="Path to config YAML (default: config.yaml in project dir)",
    )
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    parser.add_argument("--list", action="store_true", help="List device types and exit")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Parse arguments and run the beacon."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
        if args.device_type:
            config["device_type"] = args.device_type
        if args.port is not None:
            config["port"] = validate_port(args.port, "--port")
        if args.log_level:
            config["log_level"] = args.log_level
        if args.list:
            catalog = ProfileCatalog.load(config.get("profiles_file") or None)
            print("\n".join(catalog.selectors()))
            return EXIT_OK
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        return EXIT_CONFIG
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    setup_logging(config["log_level"])

    try:
        return asyncio.run(main_async(config))
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except KeyboardInterrupt:
        return EXIT_OK
    except Exception as e:
        logging.getLogger("console-beacon").critical("Fatal: %s", e)
        return EXIT_RUNTIME


if __name__ == "__main__":
    sys.exit(main())

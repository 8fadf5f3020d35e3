#!/usr/bin/env python3
"""
Command-line tools for the DBT-44 bridge.

Usage:
    dbt44 monitor --config config.yaml
    dbt44 monitor --host 192.168.1.100 --device-name dbt44-device
    dbt44 action set_output_mute output=5 mute=toggle --config config.yaml
    dbt44 action step_input_gain input=2 output=5 step_preset=custom step_custom=-1.5
    dbt44 capture 192.168.1.100 dbt44-device

Connection settings come from --config (YAML, see config.yaml.example) and
are overridden by --host/--device-name/--target-port/--feedback-port.
"""

import argparse
import asyncio
import sys
from typing import Dict, List, Optional

from dbt44 import log, osc
from dbt44.capture import DEFAULT_DURATION_S, run_capture
from dbt44.config import ConfigError, DeviceConfig, load_config
from dbt44.log import get_logger
from dbt44.mixer import ACTIONS, ActionError, MixerController
from dbt44.session import SYNC_DELAY_S, ConnectionStatus, DeviceSession

logger = get_logger(__name__)

# How long `action` waits for the initial sync before acting, and for the
# device echo afterwards (seconds)
ACTION_SYNC_WAIT_S = SYNC_DELAY_S + 1.0
ACTION_ECHO_WAIT_S = 0.5


def parse_options(pairs: List[str]) -> Dict[str, str]:
    """Parse key=value action options.

    Raises:
        ActionError: If a pair has no '='
    """
    options = {}
    for pair in pairs:
        key, sep, value = pair.partition('=')
        if not sep or not key:
            raise ActionError(f"Option must be key=value, got {pair!r}")
        options[key.strip()] = value.strip()
    return options


def build_config(args: argparse.Namespace) -> DeviceConfig:
    """Config file values overridden by command-line flags."""
    config = load_config(args.config) if args.config else DeviceConfig()
    if args.host:
        config.host = args.host
    if args.device_name:
        config.device_name = args.device_name
    if args.target_port:
        config.target_port = args.target_port
    if args.feedback_port:
        config.feedback_port = args.feedback_port
    config.validate()
    return config


def _log_status(status: ConnectionStatus, label: Optional[str]) -> None:
    logger.info(f"Status: {status.name.lower()}{f' ({label})' if label else ''}")


async def monitor(config: DeviceConfig) -> None:
    """Run a session and log every variable change until cancelled."""
    session = DeviceSession(config)
    session.add_status_listener(_log_status)
    last: Dict[str, str] = {}

    def _on_state(state) -> None:
        for variable_id, value in state.variables(config.name).items():
            if last.get(variable_id) != value:
                logger.info(f"{state.label(variable_id)} [{variable_id}] = {value}")
        last.clear()
        last.update(state.variables(config.name))

    session.state.subscribe(_on_state)
    if not await session.start():
        return
    try:
        await asyncio.Event().wait()
    finally:
        session.close()


async def run_action(config: DeviceConfig, name: str, options: Dict[str, str]) -> bool:
    """Connect, wait for the initial sync, run one action, wait for the echo."""
    session = DeviceSession(config)
    session.add_status_listener(_log_status)
    mixer = MixerController(session)
    if not await session.start():
        return False
    try:
        # Step and toggle actions need the device's current values
        await asyncio.sleep(ACTION_SYNC_WAIT_S)
        result = mixer.run_action(name, options)
        logger.info(f"{ACTIONS[name].label}: {result}")
        await asyncio.sleep(ACTION_ECHO_WAIT_S)
    finally:
        session.close()
    return True


def _add_connection_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", "-c", help="YAML config file (see config.yaml.example)")
    parser.add_argument("--host", help="DBT-44 IP address or hostname")
    parser.add_argument("--device-name", help="Device name set on the unit")
    parser.add_argument("--target-port", type=int,
                        help=f"Port the device listens on (default: {osc.DEFAULT_TARGET_PORT})")
    parser.add_argument("--feedback-port", type=int,
                        help=f"Port to receive replies on (default: {osc.DEFAULT_FEEDBACK_PORT})")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dbt44",
        description="OSC control bridge for the SYNQ DBT-44 audio matrix"
    )
    parser.add_argument("--log-level", default=None,
                        help="DEBUG, INFO, WARNING or ERROR (default: $DBT44_LOG_LEVEL or INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    monitor_parser = subparsers.add_parser("monitor", help="Connect and log state changes")
    _add_connection_args(monitor_parser)

    action_parser = subparsers.add_parser("action", help="Run one mixer action")
    action_parser.add_argument("name", choices=sorted(ACTIONS), help="Action name")
    action_parser.add_argument("options", nargs="*", help="Action options as key=value")
    _add_connection_args(action_parser)

    capture_parser = subparsers.add_parser("capture", help="Dump the device's reply to /sync")
    capture_parser.add_argument("host", help="DBT-44 IP address or hostname")
    capture_parser.add_argument("device_name", help="Device name set on the unit")
    capture_parser.add_argument("--target-port", type=int, default=osc.DEFAULT_TARGET_PORT)
    capture_parser.add_argument("--listen-port", type=int, default=osc.CAPTURE_PORT)
    capture_parser.add_argument("--duration", type=float, default=DEFAULT_DURATION_S,
                                help=f"Seconds to wait for replies (default: {DEFAULT_DURATION_S:g})")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    if args.log_level:
        log.set_level(args.log_level)

    try:
        if args.command == "capture":
            asyncio.run(run_capture(args.host, args.device_name,
                                    target_port=args.target_port,
                                    listen_port=args.listen_port,
                                    duration=args.duration))
            return

        config = build_config(args)
        if args.command == "monitor":
            asyncio.run(monitor(config))
        elif args.command == "action":
            options = parse_options(args.options)
            if not asyncio.run(run_action(config, args.name, options)):
                sys.exit(1)
    except (ConfigError, ActionError, FileNotFoundError, OSError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()

#!/usr/bin/env python
"""sshmon CLI entry point.

Run the honeypot with: python -m sshmon
Or after installation: sshmon

Usage:
    sshmon [OPTIONS]          Start the honeypot server
    sshmon profiles           List the available device personas

Options:
    --host HOST           SSH bind address (default: 0.0.0.0)
    --port PORT           SSH port (default: 2222)
    --profile NAME        Device persona to emulate (default: raspberry-pi)
    --log-level LEVEL     Logging level (default: INFO)
    --metrics-port PORT   Serve Prometheus metrics on this port (0 disables)
    --version             Show version and exit
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
import sys
from typing import List, Optional

from colorama import Fore, Style, init as colorama_init

from . import __version__
from .config import Config, get_config
from .profiles import DEFAULT_PROFILE, PROFILES, get_persona


def setup_logging(level: str, fmt: str, log_file=None) -> None:
    """Configure logging for the application."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(level=numeric_level, format=fmt, handlers=handlers)
    # Paramiko is very chatty below WARNING
    logging.getLogger("paramiko").setLevel(max(numeric_level, logging.WARNING))


def print_banner() -> None:
    """Print the sshmon startup banner."""
    banner = r"""
             _
     ___ ___| |__  _ __ ___   ___  _ __
    / __/ __| '_ \| '_ ` _ \ / _ \| '_ \
    \__ \__ \ | | | | | | | | (_) | | | |
    |___/___/_| |_|_| |_| |_|\___/|_| |_|

    SSH Honeypot v{}
    """.format(__version__)
    print(Fore.CYAN + banner + Style.RESET_ALL)


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Return ``config`` with CLI arguments taking precedence."""
    ssh = config.ssh
    if args.host or args.port:
        ssh = dataclasses.replace(
            ssh, host=args.host or ssh.host, port=args.port or ssh.port
        )
    emulation = config.emulation
    if args.profile:
        emulation = dataclasses.replace(emulation, profile=args.profile)
    logging_cfg = config.logging
    if args.log_level:
        logging_cfg = dataclasses.replace(logging_cfg, level=args.log_level)
    metrics = config.metrics
    if args.metrics_port is not None:
        metrics = dataclasses.replace(metrics, port=args.metrics_port)
    return dataclasses.replace(
        config, ssh=ssh, emulation=emulation, logging=logging_cfg, metrics=metrics
    )


def cmd_profiles(args: argparse.Namespace) -> int:
    """List the available device personas."""
    print()
    print(f"{'PROFILE':<16} {'HOSTNAME':<14} {'ARCH':<8} {'OS'}")
    print("-" * 72)
    for name, persona in PROFILES.items():
        marker = " *" if name == DEFAULT_PROFILE else ""
        print(
            f"{name:<16} {persona.hostname:<14} {persona.architecture:<8} "
            f"{persona.os_pretty_name}{marker}"
        )
    print()
    print("* default")
    return 0


def run_server(config: Config) -> int:
    """Run the SSH honeypot server until interrupted."""
    # Import here so `sshmon profiles` works without touching the log directory
    from .metrics import get_metrics_collector, start_metrics_server
    from .server import HoneypotServer

    persona = get_persona(config.emulation.profile)
    metrics = get_metrics_collector(profile=persona.name)
    if config.metrics.port:
        try:
            start_metrics_server(port=config.metrics.port)
        except OSError as exc:
            logging.error("Could not start metrics server on port %d: %s", config.metrics.port, exc)

    server = HoneypotServer(config=config, persona=persona, metrics=metrics)

    def signal_handler(sig, frame):
        print("\n" + Fore.YELLOW + "[!] Shutting down sshmon..." + Style.RESET_ALL)
        logging.info("Received signal %d, shutting down", sig)
        server.shutdown()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    host = config.ssh.host
    port = config.ssh.port
    print(
        Fore.GREEN
        + f"[+] Emulating {persona.hostname} ({persona.name}) on {host}:{port}"
        + Style.RESET_ALL
    )
    print(
        f"Connect with: ssh root@{host if host != '0.0.0.0' else '127.0.0.1'} -p {port}"
    )
    print("Press Ctrl+C to stop\n")

    try:
        server.run()
    except OSError as exc:
        print(Fore.RED + f"[-] Could not start server: {exc}" + Style.RESET_ALL)
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sshmon",
        description="sshmon - SSH honeypot that emulates a small Linux device",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    sshmon                             Start honeypot on default port 2222
    sshmon --profile ubuntu-server     Emulate an x86 Ubuntu server
    sshmon --metrics-port 9090         Also expose Prometheus metrics
    sshmon profiles                    List device personas

Environment variables:
    SSHMON_SSH_HOST          SSH bind address
    SSHMON_SSH_PORT          SSH port
    SSHMON_PROFILE           Device persona
    SSHMON_IDLE_TIMEOUT      Idle session timeout in seconds
    SSHMON_LOG_LEVEL         Logging level
        """,
    )
    parser.add_argument(
        "--host",
        default=None,
        help="SSH bind address (default: 0.0.0.0, or SSHMON_SSH_HOST)",
    )
    parser.add_argument(
        "--port",
        "-p",
        type=int,
        default=None,
        help="SSH port (default: 2222, or SSHMON_SSH_PORT)",
    )
    parser.add_argument(
        "--profile",
        default=None,
        choices=sorted(PROFILES),
        help="Device persona (default: raspberry-pi, or SSHMON_PROFILE)",
    )
    parser.add_argument(
        "--log-level",
        "-l",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO, or SSHMON_LOG_LEVEL)",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Prometheus metrics port, 0 disables (default: SSHMON_METRICS_PORT)",
    )
    parser.add_argument(
        "--version",
        "-v",
        action="version",
        version=f"sshmon {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")
    profiles_parser = subparsers.add_parser("profiles", help="List device personas")
    profiles_parser.set_defaults(func=cmd_profiles)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    colorama_init()
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "profiles":
        return args.func(args)

    config = apply_overrides(get_config(), args)
    setup_logging(config.logging.level, config.logging.format, config.logging.file)
    print_banner()
    return run_server(config)


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
Car Sharing CLI

Operator tooling for the car sharing node.

Usage:
    carsharing <command> [subcommand] [options]

Commands:
    config      Configuration management
    envelope    Sign and verify legacy command envelopes

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from enum import Enum
from typing import Any, List, Optional

from carsharing import __version__


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        import yaml
        return yaml.dump(data, default_flow_style=False)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


class CarSharingCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="carsharing",
            description="Car sharing command node CLI",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"carsharing {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="YAML configuration file",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress non-essential output",
        )
        self.parser.add_argument(
            "--log",
            action="store_true",
            help="Emit structured logs to stderr",
        )
        self.parser.add_argument(
            "--log-level",
            choices=["debug", "info", "warning", "error"],
            help="Log level (default: observability.log_level)",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_config_commands()
        self._register_envelope_commands()

    def _register_config_commands(self) -> None:
        """Register config subcommands."""
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("key", help="Dotted path, e.g. command.message_ttl_seconds")

        config_sub.add_parser("show", help="Show all configuration")
        config_sub.add_parser("validate", help="Validate configuration")
        config_sub.add_parser("schema", help="Export configuration schema")

    def _register_envelope_commands(self) -> None:
        """Register envelope subcommands."""
        envelope = self.subparsers.add_parser("envelope", help="Legacy command envelopes")
        envelope_sub = envelope.add_subparsers(dest="subcommand")

        sign = envelope_sub.add_parser("sign", help="Sign a lock/unlock command")
        sign.add_argument("--key", "-k", required=True, help="Hex private key of the signer")
        sign.add_argument("--cmd", required=True, choices=["lock", "unlock"], help="Command")
        sign.add_argument("--dated", action="store_true", help="Produce a dated envelope")
        sign.add_argument("--date", type=int, help="Unix seconds to embed (default: now)")
        sign.add_argument("--no-address", action="store_true", help="Omit the signer address (ad hoc only)")

        verify = envelope_sub.add_parser("verify", help="Verify an envelope offline")
        verify.add_argument("--payload", "-p", required=True, help="Raw envelope text")
        verify.add_argument("--ttl", type=int, help="TTL in seconds (default: configured)")
        verify.add_argument("--now", type=float, help="Unix seconds to verify at (default: now)")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            if parsed.config:
                from carsharing.config import get_config_manager
                get_config_manager().load_from_file(parsed.config)
            if parsed.log:
                from carsharing.config import get_config
                from carsharing.observability import configure_from_config
                configure_from_config(get_config(), level=parsed.log_level)

            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except Exception as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}")

        return handler(args)

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        from carsharing.config import get_config_manager
        mgr = get_config_manager()
        return {"key": args.key, "value": mgr.get(args.key)}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        from carsharing.config import get_config_manager
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        from carsharing.config import get_config_manager
        errors = get_config_manager().validate()
        if errors:
            raise CLIError("; ".join(errors), exit_code=2)
        return {"valid": True}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        from carsharing.config import get_config_manager
        return get_config_manager().export_schema()

    # Envelope handlers
    def _handle_envelope_sign(self, args: argparse.Namespace) -> Any:
        from carsharing.security import address_of, make_adhoc_envelope, make_dated_envelope

        try:
            signer = address_of(args.key)
        except ValueError as e:
            raise CLIError(f"Invalid private key: {e}")

        if args.dated:
            date = args.date if args.date is not None else int(time.time())
            payload = make_dated_envelope(args.key, args.cmd, date)
        else:
            payload = make_adhoc_envelope(args.key, args.cmd, include_address=not args.no_address)
        return {"signer": signer, "payload": payload}

    def _handle_envelope_verify(self, args: argparse.Namespace) -> Any:
        from carsharing.config import get_config_manager
        from carsharing.security import SignatureVerifier

        ttl = args.ttl if args.ttl is not None else get_config_manager().get("command.message_ttl_seconds")
        result = SignatureVerifier(ttl_seconds=ttl).verify(args.payload, now=args.now)
        output = {
            "pass": result.passed,
            "reason": result.reason.value,
            "format": result.format.value if result.format else None,
            "address": result.address,
            "cmd": result.cmd.value if result.cmd else None,
        }
        if not result.passed:
            raise CLIError(json.dumps(output), exit_code=3)
        return output


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    cli = CarSharingCLI()
    return cli.run(argv)


if __name__ == "__main__":
    sys.exit(main())
